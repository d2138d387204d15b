"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from datetime import datetime
from uuid import UUID


class DashboardError(Exception):
    """Base exception for all dashboard errors."""

    pass


class InsufficientTokensError(DashboardError):
    """Raised when a project's token pack cannot cover a request."""

    def __init__(self, model_key: str, balance: int, required: int) -> None:
        self.model_key = model_key
        self.balance = balance
        self.required = required
        super().__init__(
            f"Insufficient tokens for {model_key}. Balance: {balance}, Required: {required}"
        )


class ResourceNotFoundError(DashboardError):
    """Raised when a requested resource doesn't exist or isn't visible to the caller."""

    def __init__(self, resource: str, resource_id: UUID | str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class WriteVerificationError(DashboardError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(DashboardError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class DatabaseError(DashboardError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


class PaymentProviderError(DashboardError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(DashboardError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class GenerationProviderError(DashboardError):
    """Raised when the text generation API call fails."""

    def __init__(self, model_key: str, message: str) -> None:
        self.model_key = model_key
        self.message = message
        super().__init__(f"Generation failed for {model_key}: {message}")


class InvalidPlanError(DashboardError):
    """Raised when a subscription plan or billing interval is unknown."""

    def __init__(self, plan_id: str, interval: str | None = None) -> None:
        self.plan_id = plan_id
        self.interval = interval
        detail = f"{plan_id}/{interval}" if interval else plan_id
        super().__init__(f"Invalid plan selected: {detail}")


class InvalidPackError(DashboardError):
    """Raised when a token pack configuration can't be turned into a checkout line."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid pack configuration: {message}")


class PlanLimitError(DashboardError):
    """Raised when a plan limit (e.g. number of projects) would be exceeded."""

    def __init__(self, limit_name: str, limit: int) -> None:
        self.limit_name = limit_name
        self.limit = limit
        super().__init__(f"Plan limit reached for {limit_name}: {limit}")


class AuthenticationError(DashboardError):
    """Raised when authentication fails (missing, expired or forged access token)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AuthorizationError(DashboardError):
    """Raised when the user lacks access to a resource."""

    def __init__(self, required_permission: str) -> None:
        self.required_permission = required_permission
        super().__init__(f"Authorization failed: missing permission {required_permission}")


class PaymentNotCompletedError(DashboardError):
    """Raised when a checkout session hasn't been paid yet."""

    def __init__(self, session_id: str, payment_status: str) -> None:
        self.session_id = session_id
        self.payment_status = payment_status
        super().__init__(f"Payment not completed for {session_id}: {payment_status}")


class ExportCooldownError(DashboardError):
    """Raised when a data export is requested again too soon."""

    def __init__(self, next_available_at: datetime) -> None:
        self.next_available_at = next_available_at
        super().__init__(
            f"Data can only be exported once every 30 days. Next available: "
            f"{next_available_at.date().isoformat()}"
        )


class MembershipConflictError(DashboardError):
    """Raised when a user is added to a project they already belong to."""

    def __init__(self, project_id: UUID, user_id: UUID) -> None:
        self.project_id = project_id
        self.user_id = user_id
        super().__init__(f"User {user_id} is already a member of project {project_id}")
