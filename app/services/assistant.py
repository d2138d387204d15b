"""
Assistant Service - Token-metered chat for the general, SQL and roadmap assistants.

The assistants share one implementation parameterized by a variant
descriptor (tables, system instruction, usage-log action names).

A generation call never raises for its expected failures. Insufficient
tokens, a failed provider call and a failed database write each come back
as a GenerationResult carrying an error code.
"""

import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import (
    AiChat,
    AiChatGroup,
    AiMessage,
    AiRoadmapChat,
    AiRoadmapChatGroup,
    AiRoadmapMessage,
    AiSqlChat,
    AiSqlChatGroup,
    AiSqlMessage,
)
from app.exceptions import (
    DashboardError,
    DataIntegrityError,
    GenerationProviderError,
    InsufficientTokensError,
    ResourceNotFoundError,
    WriteVerificationError,
)
from app.models.api import AssistantVariant, GenerationErrorCode, MessageRole
from app.models.domain import GenerationRequest, GenerationResult, estimate_tokens
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.generation_provider import GenerationPrompt, GenerationProvider
from app.services.token_metering import TokenMeteringService

logger = get_logger(__name__)

ChatGroupModel = AiChatGroup | AiSqlChatGroup | AiRoadmapChatGroup
ChatModel = AiChat | AiSqlChat | AiRoadmapChat
MessageModel = AiMessage | AiSqlMessage | AiRoadmapMessage


GENERAL_SYSTEM_INSTRUCTION = (
    "You are a helpful AI assistant. You must ONLY generate text. Do not generate, "
    "create, or describe images. If asked to generate an image, politely decline."
)

SQL_SYSTEM_INSTRUCTION = """
You are an expert Senior Database Engineer and SQL Architect. Provide precise,
optimized and secure SQL solutions.

Response guidelines:
1. Wrap SQL in ```sql Markdown blocks. Uppercase keywords, snake_case identifiers.
2. Briefly explain the chosen approach (JOIN vs. subquery, indexing strategy).
3. For every table involved, first output a schema summary table:
   | Column Name | Data Type | Constraints | Description/Sample Content |
   | :--- | :--- | :--- | :--- |
4. If the solution contains an INSERT, UPDATE or DELETE, add a second table right
   after the schema table previewing the affected rows, primary key included.
5. Prefer parameterized queries or prepared statements over raw string SQL.
6. Be professional and direct.

If the user names a specific RDBMS (PostgreSQL, MySQL, ScyllaDB), follow its syntax
and conventions strictly (e.g. JSONB on Postgres, JSON on MySQL).
""".strip()

# The dashboard's roadmap graph parses the table; its header row must not change
ROADMAP_SYSTEM_INSTRUCTION = """
You are a senior Product Manager and Technical Architect. Produce precise technical
product roadmaps that expose dependencies and the critical path.

Output rules:
1. Always give one Markdown table with exactly these headers:
   | ID | Feature | Type | Timeline | Dependency |
   | :--- | :--- | :--- | :--- | :--- |
   - ID: short alphanumeric (1, 2, A, B).
   - Feature: action-oriented, at most 4 words ("Design Schema").
   - Type: exactly one of Frontend, Backend, Design, Database, DevOps, Strategy,
     AI/ML, Security, Mobile, QA.
   - Timeline: grouping bucket ("Sprint 1", "Phase 1", "Q3").
   - Dependency: ID of the blocker, "None" for roots, comma-separated for several.
   Keep the table pure data and never break its format.
2. After the table, add three short sections headed "### Architecture Strategy",
   "### Risk Analysis" and "### MVP Definition".
3. Clean, technical tone. Favour engineering reality over marketing language.
""".strip()


@dataclass(frozen=True)
class AssistantVariantConfig:
    """Everything that differs between the assistants."""

    variant: AssistantVariant
    group_model: type[ChatGroupModel]
    chat_model: type[ChatModel]
    message_model: type[MessageModel]
    system_instruction: str
    response_action: str
    regeneration_action: str
    groups_start_with_tags: bool

    def action_for(self, is_regeneration: bool) -> str:
        """Usage-log action name."""
        return self.regeneration_action if is_regeneration else self.response_action


ASSISTANT_VARIANTS: dict[AssistantVariant, AssistantVariantConfig] = {
    AssistantVariant.GENERAL: AssistantVariantConfig(
        variant=AssistantVariant.GENERAL,
        group_model=AiChatGroup,
        chat_model=AiChat,
        message_model=AiMessage,
        system_instruction=GENERAL_SYSTEM_INSTRUCTION,
        response_action="chat_response",
        regeneration_action="chat_regeneration",
        groups_start_with_tags=False,
    ),
    AssistantVariant.SQL: AssistantVariantConfig(
        variant=AssistantVariant.SQL,
        group_model=AiSqlChatGroup,
        chat_model=AiSqlChat,
        message_model=AiSqlMessage,
        system_instruction=SQL_SYSTEM_INSTRUCTION,
        response_action="sql_chat_response",
        regeneration_action="sql_chat_regeneration",
        groups_start_with_tags=True,
    ),
    AssistantVariant.ROADMAP: AssistantVariantConfig(
        variant=AssistantVariant.ROADMAP,
        group_model=AiRoadmapChatGroup,
        chat_model=AiRoadmapChat,
        message_model=AiRoadmapMessage,
        system_instruction=ROADMAP_SYSTEM_INSTRUCTION,
        response_action="roadmap_chat_response",
        regeneration_action="roadmap_chat_regeneration",
        groups_start_with_tags=True,
    ),
}


def get_variant_config(variant: AssistantVariant | str) -> AssistantVariantConfig:
    """Descriptor for an assistant variant."""
    return ASSISTANT_VARIANTS[AssistantVariant(variant)]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def make_chat_title(prompt: str, max_chars: int = 30) -> str:
    """First max_chars characters of the prompt, with an ellipsis when cut."""
    if len(prompt) > max_chars:
        return prompt[:max_chars] + "..."
    return prompt


class AssistantService:
    """
    Token-metered generation and chat management for one assistant variant.

    The generation write path is one transaction: chat, messages, chat
    total, pack deduction (under row lock) and usage log are committed
    together or rolled back together.
    """

    def __init__(
        self,
        session: AsyncSession,
        provider: GenerationProvider | None,
        config: AssistantVariantConfig,
    ) -> None:
        """
        Initialize assistant service for one variant.

        provider may be None for chat management, which never generates.
        """
        self.session = session
        self.provider = provider
        self.config = config
        self.metering = TokenMeteringService(session)

    # ========================================================================
    # Generation
    # ========================================================================

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Run one metered generation call.

        1. Estimate input cost and require input + buffer <= model balance
        2. Call the provider once (outside any row lock)
        3. Persist chat, messages, totals, deduction and usage log atomically
        """
        variant = self.config.variant.value
        input_tokens = estimate_tokens(request.prompt, settings.chars_per_token)
        required = input_tokens + settings.token_output_buffer

        log = logger.bind(
            variant=variant,
            project_id=str(request.project_id),
            user_id=str(request.user_id),
            model=request.model_key,
            chat_id=str(request.chat_id) if request.chat_id else None,
            is_regeneration=request.is_regeneration,
        )

        try:
            balance = await self.metering.check_balance(
                request.project_id, request.model_key, required
            )
        except InsufficientTokensError as exc:
            metrics.record_generation(variant, request.model_key, "insufficient_tokens")
            log.info(
                "generation_rejected_insufficient_tokens", balance=exc.balance, required=required
            )
            return GenerationResult.failure(
                GenerationErrorCode.INSUFFICIENT_TOKENS, "Insufficient tokens."
            )

        if request.chat_id is not None:
            chat = await self._find_user_chat(request.user_id, request.chat_id)
            if chat is None or chat.project_id != request.project_id:
                return GenerationResult.failure(
                    GenerationErrorCode.NOT_FOUND, f"Chat not found: {request.chat_id}"
                )
        elif request.group_id is not None:
            group = await self._find_project_group(
                request.user_id, request.project_id, request.group_id
            )
            if group is None:
                return GenerationResult.failure(
                    GenerationErrorCode.NOT_FOUND, f"Chat group not found: {request.group_id}"
                )

        started = time.perf_counter()
        try:
            if self.provider is None:
                raise GenerationProviderError(
                    request.model_key, "Generation provider not configured"
                )
            with trace_operation("assistant_generate", variant=variant, model=request.model_key):
                output = await self.provider.generate(
                    GenerationPrompt(
                        model_key=request.model_key,
                        system_instruction=self.config.system_instruction,
                        prompt=request.prompt,
                    )
                )
        except GenerationProviderError as exc:
            metrics.record_generation(variant, request.model_key, "generation_failed")
            metrics.record_error("GenerationProviderError", "generate")
            log.error("generation_provider_failed", error=exc.message)
            return GenerationResult.failure(
                GenerationErrorCode.GENERATION_FAILED, f"AI Error: {exc.message}"
            )
        duration = time.perf_counter() - started

        output_tokens = estimate_tokens(output.text, settings.chars_per_token)
        total_tokens = input_tokens + output_tokens

        pack_id = balance.pack_id

        try:
            if pack_id is None:
                raise DataIntegrityError(
                    f"Balance check passed without a token pack for project {request.project_id}"
                )
            chat_id = await self._persist_exchange(
                request, output.text, input_tokens, output_tokens, total_tokens
            )
            deduction = await self.metering.deduct(pack_id, request.model_key, total_tokens)
            self.metering.record_usage(
                project_id=request.project_id,
                user_id=request.user_id,
                pack_id=pack_id,
                model_key=request.model_key,
                tokens_used=total_tokens,
                action=self.config.action_for(request.is_regeneration),
            )
            await self.session.flush()
            await self.session.commit()
        except (SQLAlchemyError, DashboardError) as exc:
            await self.session.rollback()
            metrics.record_generation(variant, request.model_key, "database_error")
            metrics.record_error(type(exc).__name__, "generate")
            log.error("generation_persist_failed", error=str(exc), error_type=type(exc).__name__)
            return GenerationResult.failure(
                GenerationErrorCode.DATABASE_ERROR, "Failed to save the conversation."
            )

        metrics.record_generation(
            variant, request.model_key, "success", tokens_used=total_tokens, duration=duration
        )
        log.info(
            "generation_completed",
            chat_id=str(chat_id),
            tokens_used=total_tokens,
            balance_before=deduction.balance_before,
            balance_after=deduction.balance_after,
        )

        return GenerationResult(
            success=True,
            chat_id=chat_id,
            message=output.text,
            tokens_used=total_tokens,
            new_balance=deduction.remaining,
            ai_model=request.model_key,
        )

    async def _persist_exchange(
        self,
        request: GenerationRequest,
        text: str,
        input_tokens: int,
        output_tokens: int,
        total_tokens: int,
    ) -> UUID:
        """Stage chat, messages and the chat total. Returns the chat id."""
        chat_model = self.config.chat_model
        message_model = self.config.message_model

        chat_id = request.chat_id
        if chat_id is None:
            chat = chat_model(
                project_id=request.project_id,
                user_id=request.user_id,
                group_id=request.group_id,
                title=make_chat_title(request.prompt, settings.chat_title_max_chars),
                total_tokens_used=0,
            )
            self.session.add(chat)
            await self.session.flush()

            verified_chat = await self.session.get(chat_model, chat.id)
            if verified_chat is None:
                raise WriteVerificationError(f"Chat {chat.id} not found after insert")
            chat_id = verified_chat.id

        if not request.is_regeneration:
            self.session.add(
                message_model(
                    chat_id=chat_id,
                    user_id=request.user_id,
                    role=MessageRole.USER.value,
                    content=request.prompt,
                    tokens_used=input_tokens,
                    ai_model=None,
                )
            )

        self.session.add(
            message_model(
                chat_id=chat_id,
                user_id=None,
                role=MessageRole.AI.value,
                content=text,
                tokens_used=output_tokens,
                ai_model=request.model_key,
            )
        )

        # In-database increment so concurrent calls on one chat don't lose updates
        await self.session.execute(
            update(chat_model)
            .where(chat_model.id == chat_id)
            .values(
                total_tokens_used=chat_model.total_tokens_used + total_tokens,
                updated_at=_utc_now(),
            )
        )
        return chat_id

    # ========================================================================
    # Groups
    # ========================================================================

    async def create_group(self, project_id: UUID, user_id: UUID, name: str) -> ChatGroupModel:
        """Create a chat folder."""
        group_model = self.config.group_model
        group = group_model(
            project_id=project_id,
            user_id=user_id,
            name=name,
            metadata_={"tags": []} if self.config.groups_start_with_tags else {},
        )
        self.session.add(group)
        await self.session.flush()

        verified_group = await self.session.get(group_model, group.id)
        if verified_group is None:
            raise WriteVerificationError(f"Chat group {group.id} not found after insert")

        await self.session.commit()
        logger.info(
            "chat_group_created",
            variant=self.config.variant.value,
            group_id=str(verified_group.id),
            project_id=str(project_id),
        )
        return verified_group

    async def list_groups(self, project_id: UUID) -> list[ChatGroupModel]:
        """Chat folders of a project, oldest first."""
        group_model = self.config.group_model
        stmt = (
            select(group_model)
            .where(group_model.project_id == project_id)
            .order_by(group_model.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete_group(self, user_id: UUID, group_id: UUID) -> None:
        """
        Delete a chat folder. Its chats become ungrouped (FK SET NULL).

        Raises:
            ResourceNotFoundError: Group missing or owned by someone else
        """
        group = await self._find_user_group(user_id, group_id)
        if group is None:
            raise ResourceNotFoundError("ChatGroup", group_id)

        await self.session.delete(group)
        await self.session.commit()
        logger.info(
            "chat_group_deleted", variant=self.config.variant.value, group_id=str(group_id)
        )

    async def update_group_tags(
        self, user_id: UUID, group_id: UUID, tags: list[dict[str, Any]]
    ) -> ChatGroupModel:
        """
        Replace the tags of a chat folder.

        Raises:
            ResourceNotFoundError: Group missing or owned by someone else
        """
        group = await self._find_user_group(user_id, group_id)
        if group is None:
            raise ResourceNotFoundError("ChatGroup", group_id)

        group.metadata_ = {**(group.metadata_ or {}), "tags": tags}
        await self.session.flush()
        await self.session.commit()
        return group

    # ========================================================================
    # Chats
    # ========================================================================

    async def list_chats(self, project_id: UUID, user_id: UUID) -> list[ChatModel]:
        """The user's chats in a project, most recently active first."""
        chat_model = self.config.chat_model
        stmt = (
            select(chat_model)
            .where(chat_model.project_id == project_id, chat_model.user_id == user_id)
            .order_by(chat_model.updated_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_messages(self, user_id: UUID, chat_id: UUID) -> list[MessageModel]:
        """
        Messages of one of the user's chats, oldest first.

        Raises:
            ResourceNotFoundError: Chat missing or owned by someone else
        """
        chat = await self._find_user_chat(user_id, chat_id)
        if chat is None:
            raise ResourceNotFoundError("Chat", chat_id)

        message_model = self.config.message_model
        stmt = (
            select(message_model)
            .where(message_model.chat_id == chat_id)
            .order_by(message_model.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def rename_chat(self, user_id: UUID, chat_id: UUID, title: str) -> ChatModel:
        """Rename one of the user's chats."""
        chat = await self._find_user_chat(user_id, chat_id)
        if chat is None:
            raise ResourceNotFoundError("Chat", chat_id)

        chat.title = title
        chat.updated_at = _utc_now()
        await self.session.flush()
        await self.session.commit()
        return chat

    async def move_chat(self, user_id: UUID, chat_id: UUID, group_id: UUID | None) -> ChatModel:
        """
        Move one of the user's chats into a folder, or out of any folder.

        Raises:
            ResourceNotFoundError: Chat, or the user's target group in its project, missing
        """
        chat = await self._find_user_chat(user_id, chat_id)
        if chat is None:
            raise ResourceNotFoundError("Chat", chat_id)

        if group_id is not None:
            group = await self._find_project_group(user_id, chat.project_id, group_id)
            if group is None:
                raise ResourceNotFoundError("ChatGroup", group_id)

        chat.group_id = group_id
        chat.updated_at = _utc_now()
        await self.session.flush()
        await self.session.commit()
        return chat

    async def delete_chat(self, user_id: UUID, chat_id: UUID) -> None:
        """Delete one of the user's chats. Messages cascade."""
        chat = await self._find_user_chat(user_id, chat_id)
        if chat is None:
            raise ResourceNotFoundError("Chat", chat_id)

        await self.session.delete(chat)
        await self.session.commit()
        logger.info("chat_deleted", variant=self.config.variant.value, chat_id=str(chat_id))

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _find_user_chat(self, user_id: UUID, chat_id: UUID) -> ChatModel | None:
        chat_model = self.config.chat_model
        stmt = select(chat_model).where(chat_model.id == chat_id, chat_model.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_user_group(self, user_id: UUID, group_id: UUID) -> ChatGroupModel | None:
        group_model = self.config.group_model
        stmt = select(group_model).where(group_model.id == group_id, group_model.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_project_group(
        self, user_id: UUID, project_id: UUID, group_id: UUID
    ) -> ChatGroupModel | None:
        """The user's group, only when it belongs to the given project."""
        group = await self.session.get(self.config.group_model, group_id)
        if group is None or group.project_id != project_id or group.user_id != user_id:
            return None
        return group
