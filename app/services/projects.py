"""
Project Service - Projects and project membership.

Membership (project_users) is the only access path to a project and to
everything scoped by it (concepts, chats, token packs). Owners and admins
manage the team; collaborators join by email invite or by the project's
invite code, up to the member limit of the owner's plan.
"""

from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Project, ProjectUser, User
from app.exceptions import (
    AuthorizationError,
    MembershipConflictError,
    PlanLimitError,
    ResourceNotFoundError,
    WriteVerificationError,
)
from app.models.api import ProjectRole
from app.services.catalog import SUBSCRIPTION_PLANS, member_limit_for

logger = get_logger(__name__)

MANAGER_ROLES = frozenset({ProjectRole.OWNER.value, ProjectRole.ADMIN.value})


class ProjectService:
    """Project CRUD with membership checks."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize project service with database session."""
        self.session = session

    async def create_project(
        self,
        user_id: UUID,
        name: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Project:
        """
        Create a project owned by the user.

        Raises:
            ResourceNotFoundError: User row missing
            PlanLimitError: No plan, or the plan's project limit is reached
        """
        db_user = await self.session.get(User, user_id)
        if db_user is None:
            raise ResourceNotFoundError("User", user_id)

        plan = SUBSCRIPTION_PLANS.get(db_user.plan_id) if db_user.plan_id else None
        if plan is None:
            raise PlanLimitError("projects", 0)

        owned = await self._count_owned_projects(user_id)
        if owned >= plan.project_limit:
            logger.info(
                "project_limit_reached",
                user_id=str(user_id),
                plan=plan.name,
                limit=plan.project_limit,
            )
            raise PlanLimitError("projects", plan.project_limit)

        project = Project(
            owner_id=user_id,
            name=name,
            description=description,
            metadata_=dict(metadata or {}),
        )
        self.session.add(project)
        await self.session.flush()

        self.session.add(
            ProjectUser(project_id=project.id, user_id=user_id, role=ProjectRole.OWNER.value)
        )
        await self.session.flush()

        verified_project = await self.session.get(Project, project.id)
        if verified_project is None:
            raise WriteVerificationError(f"Project {project.id} not found after insert")

        await self.session.commit()
        logger.info("project_created", project_id=str(project.id), user_id=str(user_id))
        return verified_project

    async def list_projects(self, user_id: UUID) -> list[tuple[Project, str]]:
        """Projects the user is a member of, with the user's role, newest first."""
        stmt = (
            select(Project, ProjectUser.role)
            .join(ProjectUser, ProjectUser.project_id == Project.id)
            .where(ProjectUser.user_id == user_id)
            .order_by(Project.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return [(project, role) for project, role in result.all()]

    async def require_access(self, project_id: UUID, user_id: UUID) -> tuple[Project, str]:
        """
        The project and the caller's role.

        Raises:
            ResourceNotFoundError: Project missing or the user isn't a member
        """
        stmt = (
            select(Project, ProjectUser.role)
            .join(ProjectUser, ProjectUser.project_id == Project.id)
            .where(Project.id == project_id, ProjectUser.user_id == user_id)
        )
        result = await self.session.execute(stmt)
        row = result.first()
        if row is None:
            raise ResourceNotFoundError("Project", project_id)
        return row[0], row[1]

    async def update_project(
        self,
        project_id: UUID,
        user_id: UUID,
        name: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Project, str]:
        """
        Update project fields. Owners and admins only.

        metadata is merged into the existing metadata.
        """
        project, role = await self._require_manager(project_id, user_id, "project:update")

        if name is not None:
            project.name = name
        if description is not None:
            project.description = description
        if metadata is not None:
            project.metadata_ = {**(project.metadata_ or {}), **metadata}

        await self.session.flush()
        await self.session.commit()
        return project, role

    async def delete_project(self, project_id: UUID, user_id: UUID) -> None:
        """Delete a project. Owner only; scoped rows cascade."""
        project, role = await self.require_access(project_id, user_id)
        if role != ProjectRole.OWNER.value:
            raise AuthorizationError("project:delete")

        await self.session.delete(project)
        await self.session.commit()
        logger.info("project_deleted", project_id=str(project_id), user_id=str(user_id))

    # ========================================================================
    # Team
    # ========================================================================

    async def list_members(self, project_id: UUID, user_id: UUID) -> list[tuple[ProjectUser, User]]:
        """Memberships of a project with their users, oldest first. Any member may list."""
        await self.require_access(project_id, user_id)
        stmt = (
            select(ProjectUser, User)
            .join(User, User.id == ProjectUser.user_id)
            .where(ProjectUser.project_id == project_id)
            .order_by(ProjectUser.created_at)
        )
        result = await self.session.execute(stmt)
        return [(membership, member) for membership, member in result.all()]

    async def add_member(
        self,
        project_id: UUID,
        user_id: UUID,
        email: str,
        role: ProjectRole = ProjectRole.MEMBER,
    ) -> tuple[ProjectUser, User]:
        """
        Add a registered user to the project by email. Owners and admins only.

        Raises:
            ResourceNotFoundError: Project, or a user with that email, missing
            AuthorizationError: Caller isn't a manager, or role is owner
            MembershipConflictError: The user is already a member
            PlanLimitError: The owner's plan member limit is reached
            WriteVerificationError: Membership missing after insert
        """
        project, _ = await self._require_manager(project_id, user_id, "project:members")
        if role == ProjectRole.OWNER:
            raise AuthorizationError("project:transfer_ownership")

        stmt = select(User).where(func.lower(User.email) == email.strip().lower())
        result = await self.session.execute(stmt)
        member = result.scalar_one_or_none()
        if member is None:
            raise ResourceNotFoundError("User", email)

        existing = await self.session.get(ProjectUser, (project.id, member.id))
        if existing is not None:
            raise MembershipConflictError(project.id, member.id)

        membership = await self._insert_member(project, member.id, role)
        logger.info(
            "project_member_added",
            project_id=str(project.id),
            member_id=str(member.id),
            role=role.value,
            added_by=str(user_id),
        )
        return membership, member

    async def change_member_role(
        self, project_id: UUID, user_id: UUID, member_id: UUID, role: ProjectRole
    ) -> tuple[ProjectUser, User | None]:
        """
        Change a member's role between admin and member. Owners and admins only.

        The owner's role is fixed and no one can be made owner.
        """
        await self._require_manager(project_id, user_id, "project:members")
        if role == ProjectRole.OWNER:
            raise AuthorizationError("project:transfer_ownership")

        membership = await self.session.get(ProjectUser, (project_id, member_id))
        if membership is None:
            raise ResourceNotFoundError("Project member", member_id)
        if membership.role == ProjectRole.OWNER.value:
            raise AuthorizationError("project:change_owner_role")

        membership.role = role.value
        await self.session.flush()
        await self.session.commit()

        logger.info(
            "project_member_role_changed",
            project_id=str(project_id),
            member_id=str(member_id),
            role=role.value,
        )
        return membership, await self.session.get(User, member_id)

    async def remove_member(self, project_id: UUID, user_id: UUID, member_id: UUID) -> None:
        """
        Remove a member. Managers remove anyone but the owner; members may leave.

        Raises:
            ResourceNotFoundError: Project or membership missing
            AuthorizationError: Not a manager removing someone else, or target is the owner
        """
        _, role = await self.require_access(project_id, user_id)
        if member_id != user_id and role not in MANAGER_ROLES:
            raise AuthorizationError("project:members")

        membership = await self.session.get(ProjectUser, (project_id, member_id))
        if membership is None:
            raise ResourceNotFoundError("Project member", member_id)
        if membership.role == ProjectRole.OWNER.value:
            raise AuthorizationError("project:remove_owner")

        await self.session.delete(membership)
        await self.session.commit()
        logger.info(
            "project_member_removed",
            project_id=str(project_id),
            member_id=str(member_id),
            removed_by=str(user_id),
        )

    async def get_invite_code(self, project_id: UUID, user_id: UUID) -> UUID:
        """The project's invite code. Owners and admins only."""
        project, _ = await self._require_manager(project_id, user_id, "project:invite")
        return project.invite_code

    async def regenerate_invite_code(self, project_id: UUID, user_id: UUID) -> UUID:
        """Replace the invite code; the previous one stops working."""
        project, _ = await self._require_manager(project_id, user_id, "project:invite")
        project.invite_code = uuid4()
        await self.session.flush()
        await self.session.commit()
        logger.info("project_invite_code_regenerated", project_id=str(project_id))
        return project.invite_code

    async def join_by_invite_code(self, user_id: UUID, invite_code: UUID) -> tuple[Project, str]:
        """
        Join the project an invite code belongs to, as a member.

        Joining a project the user already belongs to keeps their current role.

        Raises:
            ResourceNotFoundError: No project has this code
            PlanLimitError: The owner's plan member limit is reached
        """
        stmt = select(Project).where(Project.invite_code == invite_code)
        result = await self.session.execute(stmt)
        project = result.scalar_one_or_none()
        if project is None:
            raise ResourceNotFoundError("Project invite", invite_code)

        existing = await self.session.get(ProjectUser, (project.id, user_id))
        if existing is not None:
            return project, existing.role

        membership = await self._insert_member(project, user_id, ProjectRole.MEMBER)
        logger.info("project_joined", project_id=str(project.id), user_id=str(user_id))
        return project, membership.role

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _require_manager(
        self, project_id: UUID, user_id: UUID, permission: str
    ) -> tuple[Project, str]:
        project, role = await self.require_access(project_id, user_id)
        if role not in MANAGER_ROLES:
            raise AuthorizationError(permission)
        return project, role

    async def _insert_member(
        self, project: Project, user_id: UUID, role: ProjectRole
    ) -> ProjectUser:
        # The owner counts toward the limit
        limit = await self._member_limit(project)
        stmt = (
            select(func.count())
            .select_from(ProjectUser)
            .where(ProjectUser.project_id == project.id)
        )
        result = await self.session.execute(stmt)
        if int(result.scalar_one() or 0) >= limit:
            logger.info("project_member_limit_reached", project_id=str(project.id), limit=limit)
            raise PlanLimitError("members", limit)

        self.session.add(ProjectUser(project_id=project.id, user_id=user_id, role=role.value))
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise MembershipConflictError(project.id, user_id) from exc

        verified = await self.session.get(ProjectUser, (project.id, user_id))
        if verified is None:
            raise WriteVerificationError(
                f"Membership of {user_id} in project {project.id} not found after insert"
            )

        await self.session.commit()
        return verified

    async def _member_limit(self, project: Project) -> int:
        owner = await self.session.get(User, project.owner_id)
        return member_limit_for(owner.plan_id if owner is not None else None)

    async def _count_owned_projects(self, user_id: UUID) -> int:
        stmt = select(func.count()).select_from(Project).where(Project.owner_id == user_id)
        result = await self.session.execute(stmt)
        return int(result.scalar_one() or 0)
