"""
Team Routes - Project members and invite codes.

Owners and admins manage the team; any member can see it. Collaborators
join by being added by email or with the project's invite code.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_current_user
from app.api.routes import project_to_response
from app.db.models import ProjectUser, User
from app.db.session import get_db
from app.exceptions import (
    AuthorizationError,
    DashboardError,
    MembershipConflictError,
    PlanLimitError,
    ResourceNotFoundError,
    WriteVerificationError,
)
from app.models.api import (
    AddMemberRequest,
    InviteCodeResponse,
    JoinProjectRequest,
    ProjectMemberListResponse,
    ProjectMemberResponse,
    ProjectResponse,
    ProjectRole,
    SuccessResponse,
    UpdateMemberRoleRequest,
)
from app.models.domain import AuthenticatedUser
from app.services.projects import ProjectService

router = APIRouter(prefix="/v1/projects", tags=["team"])

TEAM_ERROR_STATUS: dict[type[DashboardError], int] = {
    ResourceNotFoundError: status.HTTP_404_NOT_FOUND,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    PlanLimitError: status.HTTP_403_FORBIDDEN,
    MembershipConflictError: status.HTTP_409_CONFLICT,
    WriteVerificationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def member_to_response(membership: ProjectUser, member: User | None) -> ProjectMemberResponse:
    """Build the member response. A missing user row still lists the membership."""
    return ProjectMemberResponse(
        user_id=membership.user_id,
        email=member.email if member else None,
        name=member.name if member else None,
        surname=member.surname if member else None,
        role=ProjectRole(membership.role),
        joined_at=membership.created_at.isoformat(),
    )


def _http_error(exc: DashboardError) -> HTTPException:
    return HTTPException(
        status_code=TEAM_ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=str(exc),
    )


# =============================================================================
# Members
# =============================================================================


@router.get("/{project_id}/members", response_model=ProjectMemberListResponse)
async def list_members(
    project_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ProjectMemberListResponse:
    """Members of a project, in the order they joined."""
    try:
        rows = await ProjectService(db).list_members(project_id, user.user_id)
    except ResourceNotFoundError as exc:
        raise _http_error(exc) from exc
    return ProjectMemberListResponse(members=[member_to_response(m, u) for m, u in rows])


@router.post(
    "/{project_id}/members",
    response_model=ProjectMemberResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_member(
    project_id: UUID,
    request: AddMemberRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ProjectMemberResponse:
    """
    Add a registered user by email. Owners and admins only.

    Errors: 404 project or user not found, 403 not a manager or member
    limit reached, 409 already a member.
    """
    try:
        membership, member = await ProjectService(db).add_member(
            project_id, user.user_id, request.email, request.role
        )
    except (
        ResourceNotFoundError,
        AuthorizationError,
        PlanLimitError,
        MembershipConflictError,
        WriteVerificationError,
    ) as exc:
        raise _http_error(exc) from exc
    return member_to_response(membership, member)


@router.patch("/{project_id}/members/{member_id}", response_model=ProjectMemberResponse)
async def update_member_role(
    project_id: UUID,
    member_id: UUID,
    request: UpdateMemberRoleRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ProjectMemberResponse:
    """Make a member an admin or back. The owner's role can't change."""
    try:
        membership, member = await ProjectService(db).change_member_role(
            project_id, user.user_id, member_id, request.role
        )
    except (ResourceNotFoundError, AuthorizationError) as exc:
        raise _http_error(exc) from exc
    return member_to_response(membership, member)


@router.delete("/{project_id}/members/{member_id}", response_model=SuccessResponse)
async def remove_member(
    project_id: UUID,
    member_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> SuccessResponse:
    """Remove a member, or leave when member_id is the caller."""
    try:
        await ProjectService(db).remove_member(project_id, user.user_id, member_id)
    except (ResourceNotFoundError, AuthorizationError) as exc:
        raise _http_error(exc) from exc
    return SuccessResponse()


# =============================================================================
# Invite codes
# =============================================================================


@router.get("/{project_id}/invite-code", response_model=InviteCodeResponse)
async def get_invite_code(
    project_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> InviteCodeResponse:
    """The project's invite code. Owners and admins only."""
    try:
        code = await ProjectService(db).get_invite_code(project_id, user.user_id)
    except (ResourceNotFoundError, AuthorizationError) as exc:
        raise _http_error(exc) from exc
    return InviteCodeResponse(project_id=project_id, invite_code=code)


@router.post("/{project_id}/invite-code", response_model=InviteCodeResponse)
async def regenerate_invite_code(
    project_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> InviteCodeResponse:
    """Issue a new invite code. The old one stops working."""
    try:
        code = await ProjectService(db).regenerate_invite_code(project_id, user.user_id)
    except (ResourceNotFoundError, AuthorizationError) as exc:
        raise _http_error(exc) from exc
    return InviteCodeResponse(project_id=project_id, invite_code=code)


@router.post("/join", response_model=ProjectResponse)
async def join_project(
    request: JoinProjectRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ProjectResponse:
    """Join a project with its invite code."""
    try:
        project, role = await ProjectService(db).join_by_invite_code(
            user.user_id, request.invite_code
        )
    except (
        ResourceNotFoundError,
        PlanLimitError,
        MembershipConflictError,
        WriteVerificationError,
    ) as exc:
        raise _http_error(exc) from exc
    return project_to_response(project, role)
