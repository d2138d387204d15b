"""
API Routes - FastAPI endpoints for profile, projects, concepts and updates.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, date, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.assistant_routes import chat_to_response, message_to_response
from app.api.billing_routes import transaction_to_item, usage_log_to_item
from app.api.dependencies import get_current_user, require_admin
from app.db.models import Concept, Project, Update, User
from app.db.session import get_db
from app.exceptions import (
    AuthorizationError,
    DataIntegrityError,
    ExportCooldownError,
    PlanLimitError,
    ResourceNotFoundError,
    WriteVerificationError,
)
from app.models.api import (
    ConceptCreator,
    ConceptListResponse,
    ConceptResponse,
    CreateConceptRequest,
    CreateProjectRequest,
    CreateUpdateRequest,
    DeleteGroupResponse,
    HealthResponse,
    MoveConceptRequest,
    ProjectListResponse,
    ProjectResponse,
    ProjectRole,
    SuccessResponse,
    UpdateConceptRequest,
    UpdateListResponse,
    UpdateProfileRequest,
    UpdateProjectRequest,
    UpdateResponse,
    UserExportResponse,
    UserProfileResponse,
)
from app.models.domain import AuthenticatedUser
from app.services.concepts import ConceptService
from app.services.projects import ProjectService
from app.services.updates import UpdateService
from app.services.users import UserService

router = APIRouter()


# =============================================================================
# Response builders
# =============================================================================


def _seconds_until(moment: datetime) -> int:
    return max(0, int((moment - datetime.now(UTC)).total_seconds()))


def profile_to_response(db_user: User) -> UserProfileResponse:
    """Build the profile response from a user row."""
    metadata = dict(db_user.metadata_ or {})
    avatar_url = metadata.get("avatar_url")
    return UserProfileResponse(
        id=db_user.id,
        email=db_user.email,
        name=db_user.name,
        surname=db_user.surname,
        avatar_url=str(avatar_url) if avatar_url else None,
        metadata=metadata,
        plan_id=db_user.plan_id,
        has_billing_account=db_user.stripe_customer_id is not None,
        created_at=db_user.created_at.isoformat(),
    )


def project_to_response(project: Project, role: str | None) -> ProjectResponse:
    """Build the project response, with the caller's role when known."""
    return ProjectResponse(
        id=project.id,
        owner_id=project.owner_id,
        name=project.name,
        description=project.description,
        metadata=dict(project.metadata_ or {}),
        role=ProjectRole(role) if role else None,
        created_at=project.created_at.isoformat(),
        updated_at=project.updated_at.isoformat(),
    )


def concept_to_response(concept: Concept, creator: User | None) -> ConceptResponse:
    """Build the concept card response with its creator summary."""
    metadata = dict(concept.metadata_ or {})
    creator_summary = None
    if creator is not None:
        avatar_url = (creator.metadata_ or {}).get("avatar_url")
        creator_summary = ConceptCreator(
            id=creator.id,
            name=creator.name,
            surname=creator.surname,
            avatar_url=str(avatar_url) if avatar_url else None,
        )
    return ConceptResponse(
        id=concept.id,
        project_id=concept.project_id,
        title=concept.title,
        description=concept.description,
        group_name=concept.group_name,
        metadata=metadata,
        completed=bool(metadata.get("completed", False)),
        creator=creator_summary,
        created_at=concept.created_at.isoformat(),
        updated_at=concept.updated_at.isoformat(),
    )


def update_to_response(update: Update, author: User | None) -> UpdateResponse:
    """Build the changelog post response with its author."""
    author_name = None
    author_avatar_url = None
    if author is not None:
        author_name = " ".join(p for p in (author.name, author.surname) if p) or None
        avatar_url = (author.metadata_ or {}).get("avatar_url")
        author_avatar_url = str(avatar_url) if avatar_url else None
    return UpdateResponse(
        id=update.id,
        title=update.title,
        content=update.content,
        tag=update.tag,
        version=update.version,
        author_id=update.author_id,
        author_name=author_name,
        author_avatar_url=author_avatar_url,
        created_at=update.created_at.isoformat(),
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc


# =============================================================================
# Profile
# =============================================================================


@router.get("/v1/me", response_model=UserProfileResponse)
async def get_profile(
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> UserProfileResponse:
    """Current user's profile. Creates the row on first sight."""
    service = UserService(db)
    try:
        db_user = await service.get_or_create_user(user)
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    return profile_to_response(db_user)


@router.patch("/v1/me", response_model=UserProfileResponse)
async def update_profile(
    request: UpdateProfileRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> UserProfileResponse:
    """Update name, surname, avatar and metadata of the current user."""
    service = UserService(db)
    try:
        db_user = await service.update_profile(
            identity=user,
            name=request.name,
            surname=request.surname,
            avatar_url=request.avatar_url,
            metadata=request.metadata,
        )
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    return profile_to_response(db_user)


@router.get("/v1/me/export", response_model=UserExportResponse)
async def export_user_data(
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> UserExportResponse:
    """
    Export everything stored about the current user as one document.

    Limited to one export every 30 days.
    """
    service = UserService(db)
    try:
        export = await service.export_user_data(user)
    except ExportCooldownError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(exc),
            headers={"Retry-After": str(_seconds_until(exc.next_available_at))},
        ) from exc
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc

    return UserExportResponse(
        exported_at=export.exported_at.isoformat(),
        profile=profile_to_response(export.user),
        projects=[project_to_response(p, role) for p, role in export.projects],
        chats=[chat_to_response(c) for c in export.chats],
        messages=[message_to_response(m) for m in export.messages],
        concepts=[concept_to_response(c, export.user) for c in export.concepts],
        token_transactions=[transaction_to_item(t) for t in export.token_transactions],
        token_usage=[usage_log_to_item(u) for u in export.token_usage],
    )


# =============================================================================
# Projects
# =============================================================================


@router.post(
    "/v1/projects",
    response_model=ProjectResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_project(
    request: CreateProjectRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ProjectResponse:
    """
    Create a project owned by the current user.

    Requires an active plan; the plan caps how many projects one user owns.
    """
    service = ProjectService(db)
    try:
        project = await service.create_project(
            user_id=user.user_id,
            name=request.name,
            description=request.description,
            metadata=request.metadata,
        )
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except PlanLimitError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(exc),
        ) from exc
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc

    return project_to_response(project, ProjectRole.OWNER.value)


@router.get("/v1/projects", response_model=ProjectListResponse)
async def list_projects(
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ProjectListResponse:
    """Projects the current user is a member of."""
    service = ProjectService(db)
    rows = await service.list_projects(user.user_id)
    return ProjectListResponse(
        projects=[project_to_response(p, role) for p, role in rows],
        total_count=len(rows),
    )


@router.get("/v1/projects/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ProjectResponse:
    """One project the current user is a member of."""
    service = ProjectService(db)
    try:
        project, role = await service.require_access(project_id, user.user_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    return project_to_response(project, role)


@router.patch("/v1/projects/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: UUID,
    request: UpdateProjectRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ProjectResponse:
    """Update a project. Owners and admins only."""
    service = ProjectService(db)
    try:
        project, role = await service.update_project(
            project_id=project_id,
            user_id=user.user_id,
            name=request.name,
            description=request.description,
            metadata=request.metadata,
        )
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except AuthorizationError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(exc),
        ) from exc
    return project_to_response(project, role)


@router.delete("/v1/projects/{project_id}", response_model=SuccessResponse)
async def delete_project(
    project_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> SuccessResponse:
    """Delete a project and everything scoped by it. Owner only."""
    service = ProjectService(db)
    try:
        await service.delete_project(project_id, user.user_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except AuthorizationError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(exc),
        ) from exc
    return SuccessResponse()


# =============================================================================
# Concepts
# =============================================================================


@router.get("/v1/projects/{project_id}/concepts", response_model=ConceptListResponse)
async def list_concepts(
    project_id: UUID,
    start: date | None = Query(None, description="First calendar day (inclusive)"),
    end: date | None = Query(None, description="Last calendar day (inclusive)"),
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ConceptListResponse:
    """Concept cards of a project, optionally limited to a calendar window."""
    if start is not None and end is not None and start > end:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="start must not be after end",
        )

    try:
        await ProjectService(db).require_access(project_id, user.user_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc

    rows = await ConceptService(db).list_concepts(project_id, start=start, end=end)
    return ConceptListResponse(
        concepts=[concept_to_response(c, creator) for c, creator in rows],
        total_count=len(rows),
    )


@router.post(
    "/v1/projects/{project_id}/concepts",
    response_model=ConceptResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_concept(
    project_id: UUID,
    request: CreateConceptRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ConceptResponse:
    """Add a concept card to a project."""
    try:
        await ProjectService(db).require_access(project_id, user.user_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc

    service = ConceptService(db)
    try:
        concept = await service.create_concept(
            project_id=project_id,
            user_id=user.user_id,
            title=request.title,
            description=request.description,
            group_name=request.group_name,
            metadata=request.metadata,
        )
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc

    creator = await service.get_creator(concept)
    return concept_to_response(concept, creator)


@router.patch("/v1/concepts/{concept_id}", response_model=ConceptResponse)
async def update_concept(
    concept_id: UUID,
    request: UpdateConceptRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ConceptResponse:
    """Edit a concept card."""
    service = ConceptService(db)
    try:
        concept = await service.update_concept(
            concept_id=concept_id,
            user_id=user.user_id,
            title=request.title,
            description=request.description,
            group_name=request.group_name,
            metadata=request.metadata,
        )
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc

    creator = await service.get_creator(concept)
    return concept_to_response(concept, creator)


@router.post("/v1/concepts/{concept_id}/move", response_model=ConceptResponse)
async def move_concept(
    concept_id: UUID,
    request: MoveConceptRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ConceptResponse:
    """Move a concept card to another kanban column."""
    service = ConceptService(db)
    try:
        concept = await service.move_concept(concept_id, user.user_id, request.group_name)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc

    creator = await service.get_creator(concept)
    return concept_to_response(concept, creator)


@router.post("/v1/concepts/{concept_id}/toggle-complete", response_model=ConceptResponse)
async def toggle_concept_complete(
    concept_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ConceptResponse:
    """Flip the completed flag of a concept card."""
    service = ConceptService(db)
    try:
        concept = await service.toggle_complete(concept_id, user.user_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc

    creator = await service.get_creator(concept)
    return concept_to_response(concept, creator)


@router.delete("/v1/concepts/{concept_id}", response_model=SuccessResponse)
async def delete_concept(
    concept_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> SuccessResponse:
    """Delete a concept card."""
    try:
        await ConceptService(db).delete_concept(concept_id, user.user_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    return SuccessResponse()


@router.delete(
    "/v1/projects/{project_id}/concept-groups/{group_name}",
    response_model=DeleteGroupResponse,
)
async def delete_concept_group(
    project_id: UUID,
    group_name: str,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> DeleteGroupResponse:
    """Delete a kanban column together with all its cards."""
    try:
        await ProjectService(db).require_access(project_id, user.user_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc

    deleted = await ConceptService(db).delete_group(project_id, group_name)
    return DeleteGroupResponse(group_name=group_name, deleted_count=deleted)


# =============================================================================
# Updates (changelog)
# =============================================================================


@router.get("/v1/updates", response_model=UpdateListResponse)
async def list_updates(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> UpdateListResponse:
    """Changelog posts, newest first."""
    rows, total = await UpdateService(db).list_updates(limit=limit, offset=offset)
    return UpdateListResponse(
        updates=[update_to_response(u, author) for u, author in rows],
        total_count=total,
    )


@router.get("/v1/updates/{update_id}", response_model=UpdateResponse)
async def get_update(
    update_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> UpdateResponse:
    """One changelog post."""
    try:
        update, author = await UpdateService(db).get_update(update_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    return update_to_response(update, author)


@router.post(
    "/v1/updates",
    response_model=UpdateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_update(
    request: CreateUpdateRequest,
    db: AsyncSession = Depends(get_db),
    admin: AuthenticatedUser = Depends(require_admin),
) -> UpdateResponse:
    """
    Publish a changelog post.

    Auth: Bearer token with app_metadata.role == "admin"
    """
    service = UpdateService(db)
    try:
        update = await service.create_update(
            author_id=admin.user_id,
            title=request.title,
            content=request.content,
            tag=request.tag,
            version=request.version,
        )
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc

    author = await db.get(User, admin.user_id)
    return update_to_response(update, author)
