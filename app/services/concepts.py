"""
Concept Service - Kanban / calendar cards.

Cards are reachable only through membership of their project. metadata
holds tags, the completed flag and the calendar date (YYYY-MM-DD).
"""

from datetime import UTC, date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Concept, ProjectUser, User
from app.exceptions import ResourceNotFoundError, WriteVerificationError

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class ConceptService:
    """Concept CRUD scoped by project membership."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize concept service with database session."""
        self.session = session

    async def list_concepts(
        self,
        project_id: UUID,
        start: date | None = None,
        end: date | None = None,
    ) -> list[tuple[Concept, User | None]]:
        """
        Concepts of a project with their creators, oldest first.

        With a window, a card is placed on metadata.date, falling back to
        its creation day; both bounds are inclusive.
        """
        placed_on = func.coalesce(
            Concept.metadata_["date"].astext,
            func.to_char(Concept.created_at, "YYYY-MM-DD"),
        )
        stmt = (
            select(Concept, User)
            .outerjoin(User, User.id == Concept.created_by)
            .where(Concept.project_id == project_id)
            .order_by(Concept.created_at)
        )
        if start is not None:
            stmt = stmt.where(placed_on >= start.isoformat())
        if end is not None:
            stmt = stmt.where(placed_on <= end.isoformat())

        result = await self.session.execute(stmt)
        return [(concept, creator) for concept, creator in result.all()]

    async def create_concept(
        self,
        project_id: UUID,
        user_id: UUID,
        title: str,
        description: str | None = None,
        group_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Concept:
        """Create a card. The caller must have checked project access."""
        concept = Concept(
            project_id=project_id,
            created_by=user_id,
            title=title,
            description=description,
            group_name=group_name,
            metadata_=dict(metadata or {}),
        )
        self.session.add(concept)
        await self.session.flush()

        verified = await self.session.get(Concept, concept.id)
        if verified is None:
            raise WriteVerificationError(f"Concept {concept.id} not found after insert")

        await self.session.commit()
        logger.info("concept_created", concept_id=str(concept.id), project_id=str(project_id))
        return verified

    async def update_concept(
        self,
        concept_id: UUID,
        user_id: UUID,
        title: str | None = None,
        description: str | None = None,
        group_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Concept:
        """Update card fields; metadata is merged."""
        concept = await self._get_accessible_concept(concept_id, user_id)

        if title is not None:
            concept.title = title
        if description is not None:
            concept.description = description
        if group_name is not None:
            concept.group_name = group_name
        if metadata is not None:
            concept.metadata_ = {**(concept.metadata_ or {}), **metadata}
        concept.updated_at = _utc_now()

        await self.session.flush()
        await self.session.commit()
        return concept

    async def move_concept(self, concept_id: UUID, user_id: UUID, group_name: str) -> Concept:
        """Move a card to another kanban column."""
        concept = await self._get_accessible_concept(concept_id, user_id)
        concept.group_name = group_name
        concept.updated_at = _utc_now()
        await self.session.flush()
        await self.session.commit()
        return concept

    async def toggle_complete(self, concept_id: UUID, user_id: UUID) -> Concept:
        """Flip metadata.completed."""
        concept = await self._get_accessible_concept(concept_id, user_id)
        current = dict(concept.metadata_ or {})
        current["completed"] = not bool(current.get("completed", False))
        concept.metadata_ = current
        concept.updated_at = _utc_now()
        await self.session.flush()
        await self.session.commit()
        return concept

    async def delete_concept(self, concept_id: UUID, user_id: UUID) -> None:
        """Delete one card."""
        concept = await self._get_accessible_concept(concept_id, user_id)
        await self.session.delete(concept)
        await self.session.commit()
        logger.info("concept_deleted", concept_id=str(concept_id))

    async def delete_group(self, project_id: UUID, group_name: str) -> int:
        """Delete every card in a kanban column. Returns the number deleted."""
        stmt = delete(Concept).where(
            Concept.project_id == project_id, Concept.group_name == group_name
        )
        result = await self.session.execute(stmt)
        await self.session.commit()

        deleted = int(result.rowcount or 0)  # type: ignore[attr-defined]
        logger.info(
            "concept_group_deleted",
            project_id=str(project_id),
            group_name=group_name,
            deleted_count=deleted,
        )
        return deleted

    async def get_creator(self, concept: Concept) -> User | None:
        """Creator row of a card, if still present."""
        if concept.created_by is None:
            return None
        return await self.session.get(User, concept.created_by)

    async def _get_accessible_concept(self, concept_id: UUID, user_id: UUID) -> Concept:
        stmt = (
            select(Concept)
            .join(ProjectUser, ProjectUser.project_id == Concept.project_id)
            .where(Concept.id == concept_id, ProjectUser.user_id == user_id)
        )
        result = await self.session.execute(stmt)
        concept = result.scalar_one_or_none()
        if concept is None:
            raise ResourceNotFoundError("Concept", concept_id)
        return concept
