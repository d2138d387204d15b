"""
Assistant Routes - Token-metered AI chat for the general, SQL and roadmap assistants.

All variants share these endpoints; the {variant} path segment selects the
tables, system instruction and usage action names.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_current_user, get_generation_provider
from app.config import settings
from app.db.session import get_db
from app.exceptions import ResourceNotFoundError, WriteVerificationError
from app.models.api import (
    AssistantVariant,
    ChatGroupListResponse,
    ChatGroupResponse,
    ChatListResponse,
    ChatResponse,
    CreateChatGroupRequest,
    GenerateRequest,
    GenerateResponse,
    GenerationErrorCode,
    GenerationErrorResponse,
    MessageListResponse,
    MessageResponse,
    MessageRole,
    SuccessResponse,
    TagItem,
    UpdateChatRequest,
    UpdateGroupTagsRequest,
)
from app.models.domain import AuthenticatedUser, GenerationRequest
from app.services.assistant import (
    AssistantService,
    ChatGroupModel,
    ChatModel,
    MessageModel,
    get_variant_config,
)
from app.services.catalog import is_known_model
from app.services.generation_provider import GenerationProvider
from app.services.projects import ProjectService

router = APIRouter(prefix="/v1/assistants/{variant}", tags=["assistants"])

GENERATION_ERROR_STATUS: dict[GenerationErrorCode, int] = {
    GenerationErrorCode.INSUFFICIENT_TOKENS: status.HTTP_402_PAYMENT_REQUIRED,
    GenerationErrorCode.GENERATION_FAILED: status.HTTP_502_BAD_GATEWAY,
    GenerationErrorCode.DATABASE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    GenerationErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


# =============================================================================
# Response builders
# =============================================================================


def _parse_tags(raw: Any) -> list[TagItem]:
    if not isinstance(raw, list):
        return []
    return [TagItem.model_validate(t) for t in raw if isinstance(t, dict) and t.get("name")]


def group_to_response(group: ChatGroupModel) -> ChatGroupResponse:
    """Build the chat group response."""
    return ChatGroupResponse(
        id=group.id,
        project_id=group.project_id,
        name=group.name,
        tags=_parse_tags((group.metadata_ or {}).get("tags")),
        created_at=group.created_at.isoformat(),
    )


def chat_to_response(chat: ChatModel) -> ChatResponse:
    """Build the chat session response."""
    return ChatResponse(
        id=chat.id,
        project_id=chat.project_id,
        group_id=chat.group_id,
        title=chat.title,
        total_tokens_used=chat.total_tokens_used,
        created_at=chat.created_at.isoformat(),
        updated_at=chat.updated_at.isoformat(),
    )


def message_to_response(message: MessageModel) -> MessageResponse:
    """Build the chat message response."""
    return MessageResponse(
        id=message.id,
        chat_id=message.chat_id,
        role=MessageRole(message.role),
        content=message.content,
        tokens_used=message.tokens_used,
        ai_model=message.ai_model,
        created_at=message.created_at.isoformat(),
    )


def _service(
    db: AsyncSession, provider: GenerationProvider | None, variant: AssistantVariant
) -> AssistantService:
    return AssistantService(db, provider, get_variant_config(variant))


async def _require_project(db: AsyncSession, project_id: UUID, user_id: UUID) -> None:
    try:
        await ProjectService(db).require_access(project_id, user_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc


# =============================================================================
# Generation
# =============================================================================


@router.post(
    "/projects/{project_id}/generate",
    response_model=GenerateResponse,
    responses={
        402: {"model": GenerationErrorResponse},
        404: {"model": GenerationErrorResponse},
        500: {"model": GenerationErrorResponse},
        502: {"model": GenerationErrorResponse},
    },
)
async def generate(
    variant: AssistantVariant,
    project_id: UUID,
    request: GenerateRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
    provider: GenerationProvider = Depends(get_generation_provider),
) -> GenerateResponse:
    """
    Send a prompt to the assistant and store the exchange.

    The project's pack must hold at least the estimated input tokens plus
    the output buffer for the chosen model. On success the input and output
    tokens are deducted from that model's balance.

    Errors: 402 insufficient tokens, 404 chat not found, 502 model failure,
    500 failure to save. The detail is a GenerationErrorResponse.
    """
    model_key = request.model_key or settings.default_model_key
    if not is_known_model(model_key):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown model: {model_key}",
        )

    await _require_project(db, project_id, user.user_id)

    service = _service(db, provider, variant)
    result = await service.generate(
        GenerationRequest(
            project_id=project_id,
            user_id=user.user_id,
            prompt=request.prompt,
            model_key=model_key,
            chat_id=request.chat_id,
            group_id=request.group_id,
            is_regeneration=request.is_regeneration,
        )
    )

    if not result.success or result.chat_id is None:
        error_code = result.error_code or GenerationErrorCode.DATABASE_ERROR
        raise HTTPException(
            status_code=GENERATION_ERROR_STATUS[error_code],
            detail=GenerationErrorResponse(
                error_code=error_code,
                error=result.error or "Generation failed",
            ).model_dump(mode="json"),
        )

    return GenerateResponse(
        chat_id=result.chat_id,
        message=result.message or "",
        tokens_used=result.tokens_used,
        new_balance=result.new_balance,
        ai_model=result.ai_model or model_key,
    )


# =============================================================================
# Chat groups
# =============================================================================


@router.get("/projects/{project_id}/groups", response_model=ChatGroupListResponse)
async def list_groups(
    variant: AssistantVariant,
    project_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ChatGroupListResponse:
    """Chat folders of a project."""
    await _require_project(db, project_id, user.user_id)
    groups = await _service(db, None, variant).list_groups(project_id)
    return ChatGroupListResponse(groups=[group_to_response(g) for g in groups])


@router.post(
    "/projects/{project_id}/groups",
    response_model=ChatGroupResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_group(
    variant: AssistantVariant,
    project_id: UUID,
    request: CreateChatGroupRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ChatGroupResponse:
    """Create a chat folder."""
    await _require_project(db, project_id, user.user_id)
    try:
        group = await _service(db, None, variant).create_group(
            project_id, user.user_id, request.name
        )
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    return group_to_response(group)


@router.delete("/groups/{group_id}", response_model=SuccessResponse)
async def delete_group(
    variant: AssistantVariant,
    group_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> SuccessResponse:
    """Delete a chat folder. Its chats become uncategorized."""
    try:
        await _service(db, None, variant).delete_group(user.user_id, group_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    return SuccessResponse()


@router.put("/groups/{group_id}/tags", response_model=ChatGroupResponse)
async def update_group_tags(
    variant: AssistantVariant,
    group_id: UUID,
    request: UpdateGroupTagsRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ChatGroupResponse:
    """Replace the tags of a chat folder."""
    tags = [t.model_dump(exclude_none=True) for t in request.tags]
    try:
        group = await _service(db, None, variant).update_group_tags(
            user.user_id, group_id, tags
        )
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    return group_to_response(group)


# =============================================================================
# Chats
# =============================================================================


@router.get("/projects/{project_id}/chats", response_model=ChatListResponse)
async def list_chats(
    variant: AssistantVariant,
    project_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ChatListResponse:
    """The current user's chats in a project, most recently active first."""
    await _require_project(db, project_id, user.user_id)
    chats = await _service(db, None, variant).list_chats(project_id, user.user_id)
    return ChatListResponse(chats=[chat_to_response(c) for c in chats])


@router.get("/chats/{chat_id}/messages", response_model=MessageListResponse)
async def list_messages(
    variant: AssistantVariant,
    chat_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> MessageListResponse:
    """Messages of a chat, oldest first."""
    try:
        messages = await _service(db, None, variant).list_messages(user.user_id, chat_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    return MessageListResponse(messages=[message_to_response(m) for m in messages])


@router.patch("/chats/{chat_id}", response_model=ChatResponse)
async def update_chat(
    variant: AssistantVariant,
    chat_id: UUID,
    request: UpdateChatRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ChatResponse:
    """
    Rename a chat and/or move it between folders.

    An explicit "group_id": null moves the chat out of any folder.
    """
    move = "group_id" in request.model_fields_set
    title = request.title
    if title is None and not move:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Provide title and/or group_id",
        )

    service = _service(db, None, variant)
    try:
        if move:
            if title is not None:
                await service.rename_chat(user.user_id, chat_id, title)
            chat = await service.move_chat(user.user_id, chat_id, request.group_id)
        elif title is not None:
            chat = await service.rename_chat(user.user_id, chat_id, title)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc

    return chat_to_response(chat)


@router.delete("/chats/{chat_id}", response_model=SuccessResponse)
async def delete_chat(
    variant: AssistantVariant,
    chat_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> SuccessResponse:
    """Delete a chat and its messages."""
    try:
        await _service(db, None, variant).delete_chat(user.user_id, chat_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    return SuccessResponse()
