"""
API Models - Pydantic models for request/response validation.

All request and response bodies are strongly typed.
"""

from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class ProjectRole(str, Enum):
    """Project membership role."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class MessageRole(str, Enum):
    """Chat message author."""

    USER = "user"
    AI = "ai"


class AssistantVariant(str, Enum):
    """The token-metered assistants."""

    GENERAL = "general"
    SQL = "sql"
    ROADMAP = "roadmap"


class BillingInterval(str, Enum):
    """Subscription billing interval."""

    MONTH = "month"
    YEAR = "year"


class GenerationErrorCode(str, Enum):
    """Terminal failure modes of a generation call."""

    INSUFFICIENT_TOKENS = "insufficient_tokens"
    GENERATION_FAILED = "generation_failed"
    DATABASE_ERROR = "database_error"
    NOT_FOUND = "not_found"


# ============================================================================
# Profile Models
# ============================================================================


class UserProfileResponse(BaseModel):
    """GET /v1/me response."""

    id: UUID
    email: str | None = None
    name: str | None = None
    surname: str | None = None
    avatar_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    plan_id: UUID | None = None
    has_billing_account: bool = False
    created_at: str


class UpdateProfileRequest(BaseModel):
    """PATCH /v1/me request body. Only provided fields are changed."""

    name: str | None = Field(None, min_length=1, max_length=255)
    surname: str | None = Field(None, min_length=1, max_length=255)
    avatar_url: str | None = Field(None, max_length=2048)
    metadata: dict[str, Any] | None = None


# ============================================================================
# Project Models
# ============================================================================


class CreateProjectRequest(BaseModel):
    """POST /v1/projects request body."""

    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=5000)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        """Reject whitespace-only names."""
        v = v.strip()
        if not v:
            raise ValueError("name cannot be blank")
        return v


class UpdateProjectRequest(BaseModel):
    """PATCH /v1/projects/{project_id} request body."""

    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, max_length=5000)
    metadata: dict[str, Any] | None = None


class ProjectResponse(BaseModel):
    """Single project."""

    id: UUID
    owner_id: UUID
    name: str
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    role: ProjectRole | None = None
    created_at: str
    updated_at: str


class ProjectListResponse(BaseModel):
    """GET /v1/projects response."""

    projects: list[ProjectResponse]
    total_count: int


def _reject_owner(role: ProjectRole) -> ProjectRole:
    if role == ProjectRole.OWNER:
        raise ValueError("the owner role can't be assigned")
    return role


class AddMemberRequest(BaseModel):
    """POST /v1/projects/{project_id}/members request body."""

    email: str = Field(..., min_length=3, max_length=255)
    role: ProjectRole = ProjectRole.MEMBER

    @field_validator("role")
    @classmethod
    def check_role(cls, v: ProjectRole) -> ProjectRole:
        return _reject_owner(v)


class UpdateMemberRoleRequest(BaseModel):
    """PATCH /v1/projects/{project_id}/members/{member_id} request body."""

    role: ProjectRole

    @field_validator("role")
    @classmethod
    def check_role(cls, v: ProjectRole) -> ProjectRole:
        return _reject_owner(v)


class ProjectMemberResponse(BaseModel):
    """One project member."""

    user_id: UUID
    email: str | None = None
    name: str | None = None
    surname: str | None = None
    role: ProjectRole
    joined_at: str


class ProjectMemberListResponse(BaseModel):
    """GET /v1/projects/{project_id}/members response."""

    members: list[ProjectMemberResponse]


class InviteCodeResponse(BaseModel):
    """A project's invite code."""

    project_id: UUID
    invite_code: UUID


class JoinProjectRequest(BaseModel):
    """POST /v1/projects/join request body."""

    invite_code: UUID


# ============================================================================
# Concept Models
# ============================================================================


class CreateConceptRequest(BaseModel):
    """POST /v1/projects/{project_id}/concepts request body."""

    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=10000)
    group_name: str | None = Field(None, max_length=100)
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateConceptRequest(BaseModel):
    """PATCH /v1/concepts/{concept_id} request body."""

    title: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, max_length=10000)
    group_name: str | None = Field(None, max_length=100)
    metadata: dict[str, Any] | None = None


class MoveConceptRequest(BaseModel):
    """POST /v1/concepts/{concept_id}/move request body."""

    group_name: str = Field(..., min_length=1, max_length=100)


class ConceptCreator(BaseModel):
    """Creator summary shown on calendar cards."""

    id: UUID
    name: str | None = None
    surname: str | None = None
    avatar_url: str | None = None


class ConceptResponse(BaseModel):
    """Single concept card."""

    id: UUID
    project_id: UUID
    title: str
    description: str | None = None
    group_name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    completed: bool = False
    creator: ConceptCreator | None = None
    created_at: str
    updated_at: str


class ConceptListResponse(BaseModel):
    """GET /v1/projects/{project_id}/concepts response."""

    concepts: list[ConceptResponse]
    total_count: int


class DeleteGroupResponse(BaseModel):
    """DELETE /v1/projects/{project_id}/concept-groups/{group_name} response."""

    group_name: str
    deleted_count: int


# ============================================================================
# Update (changelog) Models
# ============================================================================


class CreateUpdateRequest(BaseModel):
    """POST /v1/updates request body."""

    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    tag: str | None = Field(None, max_length=50)
    version: str | None = Field(None, max_length=50)


class UpdateResponse(BaseModel):
    """Single changelog post."""

    id: UUID
    title: str
    content: str
    tag: str | None = None
    version: str | None = None
    author_id: UUID | None = None
    author_name: str | None = None
    author_avatar_url: str | None = None
    created_at: str


class UpdateListResponse(BaseModel):
    """GET /v1/updates response."""

    updates: list[UpdateResponse]
    total_count: int


# ============================================================================
# Assistant Models
# ============================================================================


class GenerateRequest(BaseModel):
    """POST /v1/assistants/{variant}/projects/{project_id}/generate request body."""

    prompt: str = Field(..., min_length=1, max_length=200_000)
    chat_id: UUID | None = None
    group_id: UUID | None = None
    model_key: str | None = Field(None, min_length=1, max_length=100)
    is_regeneration: bool = False

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        """Reject whitespace-only prompts."""
        if not v.strip():
            raise ValueError("prompt cannot be blank")
        return v


class GenerateResponse(BaseModel):
    """Successful generation."""

    success: bool = True
    chat_id: UUID
    message: str
    tokens_used: int
    new_balance: dict[str, int]
    ai_model: str


class GenerationErrorResponse(BaseModel):
    """Failed generation (returned as the HTTPException detail)."""

    success: bool = False
    error_code: GenerationErrorCode
    error: str


class TagItem(BaseModel):
    """Tag attached to a chat group."""

    name: str = Field(..., min_length=1, max_length=50)
    color: str | None = Field(None, max_length=20)


class CreateChatGroupRequest(BaseModel):
    """POST /v1/assistants/{variant}/projects/{project_id}/groups request body."""

    name: str = Field(..., min_length=1, max_length=255)


class UpdateGroupTagsRequest(BaseModel):
    """PUT /v1/assistants/{variant}/groups/{group_id}/tags request body."""

    tags: list[TagItem] = Field(default_factory=list, max_length=50)


class ChatGroupResponse(BaseModel):
    """Single chat group."""

    id: UUID
    project_id: UUID
    name: str
    tags: list[TagItem] = Field(default_factory=list)
    created_at: str


class ChatGroupListResponse(BaseModel):
    """List of chat groups."""

    groups: list[ChatGroupResponse]


class UpdateChatRequest(BaseModel):
    """
    PATCH /v1/assistants/{variant}/chats/{chat_id} request body.

    Send title to rename. Send group_id (null for "Uncategorized") to move.
    """

    title: str | None = Field(None, min_length=1, max_length=255)
    group_id: UUID | None = None


class ChatResponse(BaseModel):
    """Single chat session."""

    id: UUID
    project_id: UUID
    group_id: UUID | None = None
    title: str
    total_tokens_used: int
    created_at: str
    updated_at: str


class ChatListResponse(BaseModel):
    """List of chat sessions."""

    chats: list[ChatResponse]


class MessageResponse(BaseModel):
    """Single chat message."""

    id: UUID
    chat_id: UUID
    role: MessageRole
    content: str
    tokens_used: int
    ai_model: str | None = None
    created_at: str


class MessageListResponse(BaseModel):
    """Messages of a chat, oldest first."""

    messages: list[MessageResponse]


class SuccessResponse(BaseModel):
    """Generic acknowledgement."""

    success: bool = True


# ============================================================================
# Token Models
# ============================================================================


class TokenBalanceResponse(BaseModel):
    """GET /v1/projects/{project_id}/tokens response."""

    project_id: UUID
    pack_id: UUID | None = None
    remaining: dict[str, int] = Field(default_factory=dict)
    purchased: dict[str, int] = Field(default_factory=dict)
    total_remaining: int = 0
    expires_at: str | None = None


class TokenPackOfferResponse(BaseModel):
    """Single purchasable pack."""

    amount: int
    price_id: str | None = None
    unit_amount: int
    currency: str
    display_price: str
    is_ad_hoc: bool
    base_product_id: str


class TokenPackListResponse(BaseModel):
    """GET /v1/billing/token-packs response."""

    model_key: str
    enterprise: bool
    packs: list[TokenPackOfferResponse]


class TokenCheckoutRequest(BaseModel):
    """POST /v1/projects/{project_id}/token-checkout request body."""

    model_key: str = Field(..., min_length=1, max_length=100)
    amount: int = Field(..., gt=0)
    price_id: str | None = Field(None, max_length=255)
    unit_amount: int | None = Field(None, gt=0)
    base_product_id: str | None = Field(None, max_length=255)
    is_ad_hoc: bool = False


class CheckoutResponse(BaseModel):
    """Checkout/plan-change redirect."""

    url: str
    session_id: str | None = None
    updated_in_place: bool = False


class VerifyPurchaseRequest(BaseModel):
    """POST /v1/billing/token-purchases/verify request body."""

    session_id: str = Field(..., min_length=1, max_length=255)


class VerifyPurchaseResponse(BaseModel):
    """Result of a purchase verification."""

    session_id: str
    already_processed: bool
    pack_id: UUID | None = None
    tokens_added: dict[str, int] = Field(default_factory=dict)
    remaining: dict[str, int] = Field(default_factory=dict)


class TokenTransactionItem(BaseModel):
    """Single purchase ledger row."""

    id: UUID
    model_key: str
    tokens_added: int
    amount_paid_minor: int
    currency: str
    source: str
    created_at: str


class TokenTransactionListResponse(BaseModel):
    """GET /v1/projects/{project_id}/tokens/transactions response."""

    transactions: list[TokenTransactionItem]
    total_count: int


class UsageLogItem(BaseModel):
    """Single consumption ledger row."""

    id: UUID
    model: str
    tokens_used: int
    action: str
    user_id: UUID | None = None
    created_at: str


class UsageSummaryItem(BaseModel):
    """Consumption per model."""

    model: str
    tokens_used: int
    calls: int


class TokenUsageResponse(BaseModel):
    """GET /v1/projects/{project_id}/tokens/usage response."""

    summary: list[UsageSummaryItem]
    logs: list[UsageLogItem]


class ReconciliationItem(BaseModel):
    """Ledger vs. pack balance for one model."""

    model: str
    purchased: int
    consumed: int
    expected_remaining: int
    actual_remaining: int
    drift: int


class ReconciliationResponse(BaseModel):
    """GET /v1/projects/{project_id}/tokens/reconciliation response."""

    project_id: UUID
    pack_id: UUID | None = None
    items: list[ReconciliationItem]
    consistent: bool


# ============================================================================
# Subscription Models
# ============================================================================


class SubscriptionCheckoutRequest(BaseModel):
    """POST /v1/billing/subscription/checkout and /preview request body."""

    plan_id: str = Field(..., min_length=1, max_length=64)
    interval: BillingInterval = BillingInterval.MONTH


class ProrationPreviewResponse(BaseModel):
    """POST /v1/billing/subscription/preview response."""

    subscription_id: str
    target_price_id: str
    amount_due_minor: int
    currency: str
    proration_minor: int


class InvoiceItem(BaseModel):
    """Single paid invoice."""

    id: str
    date: str
    amount: str
    amount_minor: int
    currency: str
    pdf_url: str | None = None
    status: str | None = None


class SubscriptionResponse(BaseModel):
    """Active subscription."""

    id: str
    plan_name: str
    amount: str
    interval: str
    status: str
    current_period_start: str | None = None
    current_period_end: str | None = None
    cancel_at_period_end: bool


class PlanResponse(BaseModel):
    """Plan reference row."""

    id: UUID
    name: str
    monthly_price: int
    yearly_price: int
    features: list[Any] = Field(default_factory=list)


class BillingInfoResponse(BaseModel):
    """GET /v1/billing/info response."""

    invoices: list[InvoiceItem]
    subscription: SubscriptionResponse | None = None
    plan_details: PlanResponse | None = None


class SubscriptionStatusResponse(BaseModel):
    """GET /v1/billing/subscription/status response."""

    is_valid: bool
    plan_name: str | None = None
    subscription: SubscriptionResponse | None = None


# ============================================================================
# Health / Export
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str


class UserExportResponse(BaseModel):
    """GET /v1/me/export response."""

    exported_at: str
    profile: UserProfileResponse
    projects: list[ProjectResponse]
    chats: list[ChatResponse]
    messages: list[MessageResponse]
    concepts: list[ConceptResponse]
    token_transactions: list[TokenTransactionItem]
    token_usage: list[UsageLogItem]
