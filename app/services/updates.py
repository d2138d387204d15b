"""
Update Service - Changelog / blog posts.
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Update, User
from app.exceptions import ResourceNotFoundError, WriteVerificationError

logger = get_logger(__name__)


class UpdateService:
    """Read and publish changelog posts."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize update service with database session."""
        self.session = session

    async def list_updates(
        self, limit: int = 20, offset: int = 0
    ) -> tuple[list[tuple[Update, User | None]], int]:
        """Posts newest first with their authors, and the total count."""
        total = (await self.session.execute(select(func.count()).select_from(Update))).scalar_one()

        stmt = (
            select(Update, User)
            .outerjoin(User, User.id == Update.author_id)
            .order_by(Update.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return [(update, author) for update, author in result.all()], int(total or 0)

    async def get_update(self, update_id: UUID) -> tuple[Update, User | None]:
        """One post with its author."""
        stmt = (
            select(Update, User)
            .outerjoin(User, User.id == Update.author_id)
            .where(Update.id == update_id)
        )
        row = (await self.session.execute(stmt)).first()
        if row is None:
            raise ResourceNotFoundError("Update", update_id)
        return row[0], row[1]

    async def create_update(
        self,
        author_id: UUID,
        title: str,
        content: str,
        tag: str | None = None,
        version: str | None = None,
    ) -> Update:
        """Publish a post."""
        update = Update(
            author_id=author_id, title=title, content=content, tag=tag, version=version
        )
        self.session.add(update)
        await self.session.flush()

        verified = await self.session.get(Update, update.id)
        if verified is None:
            raise WriteVerificationError(f"Update {update.id} not found after insert")

        await self.session.commit()
        logger.info("update_published", update_id=str(update.id), author_id=str(author_id))
        return verified
