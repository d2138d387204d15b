"""
Tests for API Routes.

Route handler functions are called directly with mocked services; a few
requests go through the TestClient to cover wiring and auth.
"""

from collections.abc import AsyncGenerator, Iterator
from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
import structlog
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from app.exceptions import (
    AuthorizationError,
    ExportCooldownError,
    PlanLimitError,
    ResourceNotFoundError,
    WriteVerificationError,
)
from app.models.api import (
    CreateConceptRequest,
    CreateProjectRequest,
    CreateUpdateRequest,
    MoveConceptRequest,
    UpdateProfileRequest,
    UpdateProjectRequest,
)
from app.models.domain import AuthenticatedUser
from app.services.users import UserDataExport
from conftest import (
    create_mock_chat,
    create_mock_concept,
    create_mock_message,
    create_mock_project,
    create_mock_transaction,
    create_mock_update,
    create_mock_usage_log,
    create_mock_user,
    make_result,
)

# ============================================================================
# Response builder tests
# ============================================================================


class TestResponseBuilders:
    """Tests for the row-to-response helpers."""

    def test_profile_avatar_from_metadata(self):
        """The avatar url is read from metadata."""
        from app.api.routes import profile_to_response

        db_user = create_mock_user(
            metadata={"avatar_url": "https://cdn.test/a.png"}, stripe_customer_id="cus_1"
        )
        response = profile_to_response(db_user)

        assert response.avatar_url == "https://cdn.test/a.png"
        assert response.has_billing_account is True

    def test_concept_creator_and_completed(self):
        """Completed comes from metadata; the creator is summarized."""
        from app.api.routes import concept_to_response

        creator = create_mock_user(name="Grace", surname="Hopper")
        concept = create_mock_concept(created_by=creator.id, metadata={"completed": True})

        response = concept_to_response(concept, creator)

        assert response.completed is True
        assert response.creator.name == "Grace"

    def test_update_author_name(self):
        """Author name joins name and surname."""
        from app.api.routes import update_to_response

        author = create_mock_user(name="Ada", surname=None)
        response = update_to_response(create_mock_update(author_id=author.id), author)

        assert response.author_name == "Ada"

    def test_update_without_author(self):
        """Deleted authors leave the author fields empty."""
        from app.api.routes import update_to_response

        response = update_to_response(create_mock_update(), None)
        assert response.author_name is None


# ============================================================================
# Profile route tests
# ============================================================================


class TestProfileRoutes:
    """Tests for the /v1/me routes."""

    async def test_get_profile(self, db_session: AsyncMock, auth_user: AuthenticatedUser):
        """The profile of the current user is returned."""
        from app.api.routes import get_profile

        with patch("app.api.routes.UserService") as MockService:
            MockService.return_value.get_or_create_user = AsyncMock(
                return_value=create_mock_user(user_id=auth_user.user_id)
            )
            result = await get_profile(db_session, auth_user)

        assert result.id == auth_user.user_id
        assert result.name == "Ada"

    async def test_update_profile(self, db_session: AsyncMock, auth_user: AuthenticatedUser):
        """Request fields are passed through to the service."""
        from app.api.routes import update_profile

        with patch("app.api.routes.UserService") as MockService:
            service = MockService.return_value
            service.update_profile = AsyncMock(return_value=create_mock_user(name="Grace"))
            result = await update_profile(
                UpdateProfileRequest(name="Grace", avatar_url="https://cdn.test/g.png"),
                db_session,
                auth_user,
            )

        kwargs = service.update_profile.call_args.kwargs
        assert kwargs["name"] == "Grace"
        assert kwargs["avatar_url"] == "https://cdn.test/g.png"
        assert kwargs["surname"] is None
        assert result.name == "Grace"

    async def test_export(self, db_session: AsyncMock, auth_user: AuthenticatedUser):
        """Every collection of the export is serialized."""
        from app.api.routes import export_user_data

        db_user = create_mock_user(user_id=auth_user.user_id)
        export = UserDataExport(
            exported_at=datetime.now(UTC),
            user=db_user,
            projects=[(create_mock_project(owner_id=db_user.id), "owner")],
            chats=[create_mock_chat()],
            messages=[create_mock_message(role="ai", ai_model="gemini-2.5-flash")],
            concepts=[create_mock_concept(created_by=db_user.id)],
            token_transactions=[create_mock_transaction()],
            token_usage=[create_mock_usage_log()],
        )

        with patch("app.api.routes.UserService") as MockService:
            MockService.return_value.export_user_data = AsyncMock(return_value=export)
            result = await export_user_data(db_session, auth_user)

        assert result.profile.id == auth_user.user_id
        assert result.projects[0].role == "owner"
        assert result.messages[0].role == "ai"
        assert len(result.token_transactions) == 1
        assert len(result.token_usage) == 1

    async def test_export_cooldown(self, db_session: AsyncMock, auth_user: AuthenticatedUser):
        """The cooldown is a 429 with Retry-After in seconds."""
        from app.api.routes import export_user_data

        next_at = datetime.now(UTC) + timedelta(days=2)
        with patch("app.api.routes.UserService") as MockService:
            MockService.return_value.export_user_data = AsyncMock(
                side_effect=ExportCooldownError(next_at)
            )
            with pytest.raises(HTTPException) as exc_info:
                await export_user_data(db_session, auth_user)

        assert exc_info.value.status_code == 429
        retry_after = int(exc_info.value.headers["Retry-After"])
        assert 2 * 86400 - 60 <= retry_after <= 2 * 86400


# ============================================================================
# Project route tests
# ============================================================================


class TestProjectRoutes:
    """Tests for the /v1/projects routes."""

    async def test_create_project(self, db_session: AsyncMock, auth_user: AuthenticatedUser):
        """The creator is reported as owner."""
        from app.api.routes import create_project

        project = create_mock_project(owner_id=auth_user.user_id)
        with patch("app.api.routes.ProjectService") as MockService:
            MockService.return_value.create_project = AsyncMock(return_value=project)
            result = await create_project(
                CreateProjectRequest(name="Warehouse"), db_session, auth_user
            )

        assert result.id == project.id
        assert result.role == "owner"

    async def test_create_project_limit(
        self, db_session: AsyncMock, auth_user: AuthenticatedUser
    ):
        """Plan limits are 403."""
        from app.api.routes import create_project

        with patch("app.api.routes.ProjectService") as MockService:
            MockService.return_value.create_project = AsyncMock(
                side_effect=PlanLimitError("projects", 5)
            )
            with pytest.raises(HTTPException) as exc_info:
                await create_project(CreateProjectRequest(name="Sixth"), db_session, auth_user)

        assert exc_info.value.status_code == 403
        assert "projects" in exc_info.value.detail

    async def test_create_project_verification_failure(
        self, db_session: AsyncMock, auth_user: AuthenticatedUser
    ):
        """Write verification failures are 500."""
        from app.api.routes import create_project

        with patch("app.api.routes.ProjectService") as MockService:
            MockService.return_value.create_project = AsyncMock(
                side_effect=WriteVerificationError("Project missing")
            )
            with pytest.raises(HTTPException) as exc_info:
                await create_project(CreateProjectRequest(name="Lost"), db_session, auth_user)

        assert exc_info.value.status_code == 500

    async def test_list_projects(self, db_session: AsyncMock, auth_user: AuthenticatedUser):
        """Each project carries the caller's role."""
        from app.api.routes import list_projects

        rows = [(create_mock_project(), "owner"), (create_mock_project(), "member")]
        with patch("app.api.routes.ProjectService") as MockService:
            MockService.return_value.list_projects = AsyncMock(return_value=rows)
            result = await list_projects(db_session, auth_user)

        assert result.total_count == 2
        assert [p.role for p in result.projects] == ["owner", "member"]

    async def test_get_project_not_member(
        self, db_session: AsyncMock, auth_user: AuthenticatedUser
    ):
        """Non-members get 404."""
        from app.api.routes import get_project

        with patch("app.api.routes.ProjectService") as MockService:
            MockService.return_value.require_access = AsyncMock(
                side_effect=ResourceNotFoundError("Project", "x")
            )
            with pytest.raises(HTTPException) as exc_info:
                await get_project(uuid4(), db_session, auth_user)

        assert exc_info.value.status_code == 404

    async def test_update_project_forbidden(
        self, db_session: AsyncMock, auth_user: AuthenticatedUser
    ):
        """Members can't update."""
        from app.api.routes import update_project

        with patch("app.api.routes.ProjectService") as MockService:
            MockService.return_value.update_project = AsyncMock(
                side_effect=AuthorizationError("project:update")
            )
            with pytest.raises(HTTPException) as exc_info:
                await update_project(
                    uuid4(), UpdateProjectRequest(name="Nope"), db_session, auth_user
                )

        assert exc_info.value.status_code == 403

    async def test_delete_project(self, db_session: AsyncMock, auth_user: AuthenticatedUser):
        """Owners delete their project."""
        from app.api.routes import delete_project

        project_id = uuid4()
        with patch("app.api.routes.ProjectService") as MockService:
            MockService.return_value.delete_project = AsyncMock()
            result = await delete_project(project_id, db_session, auth_user)

        assert result.success is True
        MockService.return_value.delete_project.assert_awaited_once_with(
            project_id, auth_user.user_id
        )


# ============================================================================
# Concept route tests
# ============================================================================


class TestConceptRoutes:
    """Tests for the concept routes."""

    async def test_list_window_reversed(
        self, db_session: AsyncMock, auth_user: AuthenticatedUser
    ):
        """A window ending before it starts is 422."""
        from app.api.routes import list_concepts

        with pytest.raises(HTTPException) as exc_info:
            await list_concepts(
                uuid4(), date(2026, 10, 31), date(2026, 10, 1), db_session, auth_user
            )
        assert exc_info.value.status_code == 422

    async def test_list_requires_membership(
        self, db_session: AsyncMock, auth_user: AuthenticatedUser
    ):
        """Concepts of foreign projects are 404."""
        from app.api.routes import list_concepts

        with patch("app.api.routes.ProjectService") as MockProjects:
            MockProjects.return_value.require_access = AsyncMock(
                side_effect=ResourceNotFoundError("Project", "x")
            )
            with pytest.raises(HTTPException) as exc_info:
                await list_concepts(uuid4(), None, None, db_session, auth_user)

        assert exc_info.value.status_code == 404

    async def test_list_with_window(self, db_session: AsyncMock, auth_user: AuthenticatedUser):
        """The window is passed to the service."""
        from app.api.routes import list_concepts

        project_id = uuid4()
        concept = create_mock_concept(project_id=project_id)
        with (
            patch("app.api.routes.ProjectService") as MockProjects,
            patch("app.api.routes.ConceptService") as MockConcepts,
        ):
            MockProjects.return_value.require_access = AsyncMock()
            MockConcepts.return_value.list_concepts = AsyncMock(
                return_value=[(concept, None)]
            )
            result = await list_concepts(
                project_id, date(2026, 10, 1), date(2026, 10, 31), db_session, auth_user
            )

        MockConcepts.return_value.list_concepts.assert_awaited_once_with(
            project_id, start=date(2026, 10, 1), end=date(2026, 10, 31)
        )
        assert result.total_count == 1

    async def test_create_concept(self, db_session: AsyncMock, auth_user: AuthenticatedUser):
        """The created card comes back with its creator."""
        from app.api.routes import create_concept

        creator = create_mock_user(user_id=auth_user.user_id)
        concept = create_mock_concept(created_by=creator.id)
        with (
            patch("app.api.routes.ProjectService") as MockProjects,
            patch("app.api.routes.ConceptService") as MockConcepts,
        ):
            MockProjects.return_value.require_access = AsyncMock()
            MockConcepts.return_value.create_concept = AsyncMock(return_value=concept)
            MockConcepts.return_value.get_creator = AsyncMock(return_value=creator)
            result = await create_concept(
                concept.project_id,
                CreateConceptRequest(title="Design schema", group_name="Todo"),
                db_session,
                auth_user,
            )

        assert result.id == concept.id
        assert result.creator.id == creator.id

    async def test_move_unknown_concept(
        self, db_session: AsyncMock, auth_user: AuthenticatedUser
    ):
        """Moving an inaccessible card is 404."""
        from app.api.routes import move_concept

        with patch("app.api.routes.ConceptService") as MockConcepts:
            MockConcepts.return_value.move_concept = AsyncMock(
                side_effect=ResourceNotFoundError("Concept", "x")
            )
            with pytest.raises(HTTPException) as exc_info:
                await move_concept(
                    uuid4(), MoveConceptRequest(group_name="Done"), db_session, auth_user
                )

        assert exc_info.value.status_code == 404

    async def test_toggle_complete(self, db_session: AsyncMock, auth_user: AuthenticatedUser):
        """The toggled card is returned."""
        from app.api.routes import toggle_concept_complete

        concept = create_mock_concept(metadata={"completed": True})
        with patch("app.api.routes.ConceptService") as MockConcepts:
            MockConcepts.return_value.toggle_complete = AsyncMock(return_value=concept)
            MockConcepts.return_value.get_creator = AsyncMock(return_value=None)
            result = await toggle_concept_complete(concept.id, db_session, auth_user)

        assert result.completed is True
        assert result.creator is None

    async def test_delete_group(self, db_session: AsyncMock, auth_user: AuthenticatedUser):
        """The deleted count is reported."""
        from app.api.routes import delete_concept_group

        with (
            patch("app.api.routes.ProjectService") as MockProjects,
            patch("app.api.routes.ConceptService") as MockConcepts,
        ):
            MockProjects.return_value.require_access = AsyncMock()
            MockConcepts.return_value.delete_group = AsyncMock(return_value=4)
            result = await delete_concept_group(uuid4(), "Done", db_session, auth_user)

        assert result.deleted_count == 4
        assert result.group_name == "Done"


# ============================================================================
# Update route tests
# ============================================================================


class TestUpdateRoutes:
    """Tests for the changelog routes."""

    async def test_list_updates(self, db_session: AsyncMock, auth_user: AuthenticatedUser):
        """The total comes from the service, not the page length."""
        from app.api.routes import list_updates

        with patch("app.api.routes.UpdateService") as MockService:
            MockService.return_value.list_updates = AsyncMock(
                return_value=([(create_mock_update(), None)], 12)
            )
            result = await list_updates(1, 0, db_session, auth_user)

        assert result.total_count == 12
        assert len(result.updates) == 1

    async def test_get_missing_update(self, db_session: AsyncMock, auth_user: AuthenticatedUser):
        """Unknown posts are 404."""
        from app.api.routes import get_update

        with patch("app.api.routes.UpdateService") as MockService:
            MockService.return_value.get_update = AsyncMock(
                side_effect=ResourceNotFoundError("Update", "x")
            )
            with pytest.raises(HTTPException) as exc_info:
                await get_update(uuid4(), db_session, auth_user)

        assert exc_info.value.status_code == 404

    async def test_create_update(self, db_session: AsyncMock, admin_user: AuthenticatedUser):
        """Admins publish with themselves as the author."""
        from app.api.routes import create_update

        post = create_mock_update(author_id=admin_user.user_id)
        db_session.get = AsyncMock(
            return_value=create_mock_user(user_id=admin_user.user_id, name="Root", surname=None)
        )
        with patch("app.api.routes.UpdateService") as MockService:
            MockService.return_value.create_update = AsyncMock(return_value=post)
            result = await create_update(
                CreateUpdateRequest(title="Release 1.2", content="Notes"),
                db_session,
                admin_user,
            )

        assert MockService.return_value.create_update.call_args.kwargs["author_id"] == (
            admin_user.user_id
        )
        assert result.author_name == "Root"


# ============================================================================
# Application wiring tests
# ============================================================================


@pytest.fixture
def unauthenticated_client(app: FastAPI, db_session: AsyncMock) -> Iterator[TestClient]:
    """Test client with a mocked database and real auth."""
    from app.db.session import get_db

    async def override_get_db() -> AsyncGenerator[AsyncMock, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestApplication:
    """Tests going through the FastAPI app."""

    def test_root(self, client: TestClient):
        """Root reports the service."""
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "running"
        assert "X-Request-ID" in response.headers

    def test_health(self, unauthenticated_client: TestClient):
        """Health runs SELECT 1."""
        response = unauthenticated_client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    def test_health_database_down(
        self, unauthenticated_client: TestClient, db_session: AsyncMock
    ):
        """A failing database is 503."""
        db_session.execute = AsyncMock(side_effect=ConnectionError("refused"))

        response = unauthenticated_client.get("/health")
        assert response.status_code == 503

    def test_requires_bearer_token(self, unauthenticated_client: TestClient):
        """Protected routes are 401 without a token."""
        response = unauthenticated_client.get("/v1/projects")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_list_projects_authenticated(
        self, authenticated_client: TestClient, db_session: AsyncMock
    ):
        """An authenticated request reaches the database."""
        project = create_mock_project()
        db_session.execute = AsyncMock(return_value=make_result(rows=[(project, "owner")]))

        response = authenticated_client.get("/v1/projects")

        assert response.status_code == 200
        assert response.json()["projects"][0]["id"] == str(project.id)

    def test_create_update_requires_admin(self, authenticated_client: TestClient):
        """Regular users can't publish changelog posts."""
        response = authenticated_client.post(
            "/v1/updates", json={"title": "Release", "content": "Notes"}
        )
        assert response.status_code == 403

    def test_validation_error_shape(self, authenticated_client: TestClient):
        """Validation errors are sanitized lists."""
        response = authenticated_client.post("/v1/projects", json={"name": ""})

        assert response.status_code == 422
        assert response.json()["detail"][0]["loc"][-1] == "name"

    def test_request_context_bound_to_logs(
        self, authenticated_client: TestClient, db_session: AsyncMock
    ):
        """Log lines written while handling a request carry its id, method and path."""
        seen: dict = {}

        async def execute(*args, **kwargs):
            seen.update(structlog.contextvars.get_contextvars())
            return make_result(rows=[])

        db_session.execute = AsyncMock(side_effect=execute)

        response = authenticated_client.get("/v1/projects", headers={"X-Request-ID": "req-42"})

        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-42"
        assert seen["request_id"] == "req-42"
        assert seen["method"] == "GET"
        assert seen["path"] == "/v1/projects"

    def test_request_context_generated_per_request(
        self, authenticated_client: TestClient, db_session: AsyncMock
    ):
        """Without an X-Request-ID header each request gets its own id."""
        seen: list = []

        async def execute(*args, **kwargs):
            seen.append(structlog.contextvars.get_contextvars().get("request_id"))
            return make_result(rows=[])

        db_session.execute = AsyncMock(side_effect=execute)

        first = authenticated_client.get("/v1/projects")
        second = authenticated_client.get("/v1/projects")

        assert seen == [first.headers["X-Request-ID"], second.headers["X-Request-ID"]]
        assert seen[0] != seen[1]

    def test_metrics(self, client: TestClient):
        """Prometheus metrics are exposed."""
        response = client.get("/metrics")
        assert response.status_code == 200


