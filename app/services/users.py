"""
User Service - Profile reads, updates and personal data export.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import (
    Concept,
    Project,
    ProjectUser,
    TokenTransaction,
    TokenUsageLog,
    User,
)
from app.exceptions import ExportCooldownError, WriteVerificationError
from app.models.domain import AuthenticatedUser
from app.services.assistant import ASSISTANT_VARIANTS, ChatModel, MessageModel

logger = get_logger(__name__)

EXPORT_COOLDOWN = timedelta(days=30)
LAST_EXPORT_KEY = "last_data_export"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class UserDataExport:
    """Everything stored about one user."""

    exported_at: datetime
    user: User
    projects: list[tuple[Project, str]]
    chats: list[ChatModel]
    messages: list[MessageModel]
    concepts: list[Concept]
    token_transactions: list[TokenTransaction]
    token_usage: list[TokenUsageLog]


class UserService:
    """Profile management for the authenticated user."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize user service with database session."""
        self.session = session

    async def get_or_create_user(self, identity: AuthenticatedUser) -> User:
        """
        Get the user row, creating it on first sight of a new auth user.

        The signup trigger normally creates the row; this covers users
        that predate it.
        """
        db_user = await self.session.get(User, identity.user_id)
        if db_user is not None:
            return db_user

        new_user = User(id=identity.user_id, email=identity.email, metadata_={})
        self.session.add(new_user)

        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError as e:
            # Race condition - row created by another request
            logger.info("user_creation_race", user_id=str(identity.user_id), error=str(e))
            await self.session.rollback()
            db_user = await self.session.get(User, identity.user_id)
            if db_user is None:
                raise WriteVerificationError(f"User creation failed: {e}") from e
            return db_user

        logger.info("user_created", user_id=str(identity.user_id))
        return new_user

    async def update_profile(
        self,
        identity: AuthenticatedUser,
        name: str | None = None,
        surname: str | None = None,
        avatar_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> User:
        """Update profile fields. metadata is merged; avatar_url lives in it."""
        db_user = await self.get_or_create_user(identity)

        if name is not None:
            db_user.name = name
        if surname is not None:
            db_user.surname = surname

        if metadata is not None or avatar_url is not None:
            merged = {**(db_user.metadata_ or {}), **(metadata or {})}
            if avatar_url is not None:
                merged["avatar_url"] = avatar_url
            db_user.metadata_ = merged

        await self.session.flush()
        await self.session.commit()
        logger.info("profile_updated", user_id=str(identity.user_id))
        return db_user

    async def export_user_data(self, identity: AuthenticatedUser) -> UserDataExport:
        """
        Collect all data of the user. Allowed once every 30 days.

        Raises:
            ExportCooldownError: Previous export is less than 30 days old
        """
        db_user = await self.get_or_create_user(identity)
        now = _utc_now()

        last_export = self._last_export_at(db_user)
        if last_export is not None and now - last_export < EXPORT_COOLDOWN:
            raise ExportCooldownError(last_export + EXPORT_COOLDOWN)

        user_id = identity.user_id
        projects_stmt = (
            select(Project, ProjectUser.role)
            .join(ProjectUser, ProjectUser.project_id == Project.id)
            .where(ProjectUser.user_id == user_id)
        )
        projects = [(p, role) for p, role in (await self.session.execute(projects_stmt)).all()]

        chats: list[ChatModel] = []
        messages: list[MessageModel] = []
        for config in ASSISTANT_VARIANTS.values():
            chat_model, message_model = config.chat_model, config.message_model
            chats.extend(await self._all(select(chat_model).where(chat_model.user_id == user_id)))
            messages.extend(
                await self._all(select(message_model).where(message_model.user_id == user_id))
            )

        concepts = await self._all(select(Concept).where(Concept.created_by == user_id))
        transactions = await self._all(
            select(TokenTransaction).where(TokenTransaction.user_id == user_id)
        )
        usage = await self._all(select(TokenUsageLog).where(TokenUsageLog.user_id == user_id))

        db_user.metadata_ = {**(db_user.metadata_ or {}), LAST_EXPORT_KEY: now.isoformat()}
        await self.session.flush()
        await self.session.commit()

        logger.info(
            "user_data_exported",
            user_id=str(user_id),
            projects=len(projects),
            chats=len(chats),
            messages=len(messages),
        )

        return UserDataExport(
            exported_at=now,
            user=db_user,
            projects=projects,
            chats=chats,
            messages=messages,
            concepts=concepts,
            token_transactions=transactions,
            token_usage=usage,
        )

    async def _all(self, stmt: Any) -> list[Any]:
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def _last_export_at(db_user: User) -> datetime | None:
        raw = (db_user.metadata_ or {}).get(LAST_EXPORT_KEY)
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(str(raw))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
