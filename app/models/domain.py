"""
Domain Models - Internal business logic models using dataclasses.

NO LOOSE DICTIONARIES - Data crossing service boundaries is a frozen
dataclass. The only mappings are per-model token maps (model key -> tokens),
which are the natural shape of a token pack balance.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from app.models.api import BillingInterval, GenerationErrorCode


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    """Estimate the token cost of a text as ceil(len / chars_per_token)."""
    return math.ceil(len(text) / chars_per_token)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity extracted from a verified Supabase access token."""

    user_id: UUID
    email: str | None = None
    role: str | None = None
    is_admin: bool = False


# ============================================================================
# Token accounting
# ============================================================================


@dataclass(frozen=True)
class TokenBalance:
    """Snapshot of a project's authoritative token pack."""

    pack_id: UUID | None
    project_id: UUID
    remaining: dict[str, int]
    purchased: dict[str, int]
    expires_at: datetime | None

    def for_model(self, model_key: str) -> int:
        """Remaining tokens for one model (0 when the model was never bought)."""
        return int(self.remaining.get(model_key, 0) or 0)

    @property
    def total(self) -> int:
        """Remaining tokens summed over all models."""
        return sum(int(v or 0) for v in self.remaining.values())


@dataclass(frozen=True)
class TokenDeduction:
    """Result of deducting tokens from a pack under row lock."""

    pack_id: UUID
    model_key: str
    balance_before: int
    balance_after: int
    remaining: dict[str, int]


@dataclass(frozen=True)
class GenerationRequest:
    """Immutable request for one assistant generation call."""

    project_id: UUID
    user_id: UUID
    prompt: str
    model_key: str
    chat_id: UUID | None = None
    group_id: UUID | None = None
    is_regeneration: bool = False

    def __post_init__(self) -> None:
        """Validate generation request."""
        if not self.prompt.strip():
            raise ValueError("Prompt cannot be empty")
        if not self.model_key:
            raise ValueError("Model key cannot be empty")


@dataclass(frozen=True)
class GenerationResult:
    """
    Outcome of a generation call.

    Failures are values, not exceptions: error_code and error are set and
    success is False.
    """

    success: bool
    chat_id: UUID | None = None
    message: str | None = None
    tokens_used: int = 0
    new_balance: dict[str, int] = field(default_factory=dict)
    ai_model: str | None = None
    error_code: GenerationErrorCode | None = None
    error: str | None = None

    @classmethod
    def failure(cls, code: GenerationErrorCode, error: str) -> "GenerationResult":
        """Build a failed result."""
        return cls(success=False, error_code=code, error=error)


@dataclass(frozen=True)
class UsageSummary:
    """Consumption of one model within a project."""

    model: str
    tokens_used: int
    calls: int


@dataclass(frozen=True)
class BalanceReconciliation:
    """Comparison of the denormalized pack balance with the audit ledgers."""

    project_id: UUID
    pack_id: UUID | None
    model: str
    purchased: int
    consumed: int
    expected_remaining: int
    actual_remaining: int

    @property
    def drift(self) -> int:
        """Positive when the pack holds more than the ledgers justify."""
        return self.actual_remaining - self.expected_remaining


# ============================================================================
# Purchases and subscriptions
# ============================================================================


@dataclass(frozen=True)
class TokenPackOffer:
    """One purchasable token pack size for a model."""

    amount: int
    price_id: str | None
    unit_amount: int
    currency: str
    display_price: str
    is_ad_hoc: bool
    base_product_id: str


@dataclass(frozen=True)
class TokenPackSelection:
    """The pack a user picked for checkout."""

    model_key: str
    amount: int
    price_id: str | None = None
    unit_amount: int | None = None
    base_product_id: str | None = None
    is_ad_hoc: bool = False

    def __post_init__(self) -> None:
        """Validate pack selection."""
        if self.amount <= 0:
            raise ValueError(f"Pack amount must be positive: {self.amount}")
        if not self.model_key:
            raise ValueError("Model key cannot be empty")


@dataclass(frozen=True)
class CheckoutSessionData:
    """Provider-agnostic view of a completed checkout session."""

    session_id: str
    payment_status: str
    mode: str
    amount_total_minor: int
    currency: str
    purchase_type: str | None
    project_id: UUID | None
    user_id: UUID | None
    purchased_tokens: dict[str, int]

    @property
    def is_token_refill(self) -> bool:
        """Whether this session bought a token pack."""
        return self.purchase_type == "token_refill"


@dataclass(frozen=True)
class PurchaseCreditResult:
    """Result of crediting a checkout session to a token pack."""

    session_id: str
    already_processed: bool
    pack_id: UUID | None
    tokens_added: dict[str, int]
    remaining: dict[str, int]


@dataclass(frozen=True)
class InvoiceSummary:
    """Paid invoice as shown on the billing page."""

    invoice_id: str
    created_at: datetime
    amount_minor: int
    currency: str
    pdf_url: str | None
    status: str | None


@dataclass(frozen=True)
class SubscriptionDetails:
    """Active subscription as read from Stripe."""

    subscription_id: str
    status: str
    plan_name: str
    price_id: str | None
    amount_minor: int
    interval: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    item_id: str | None = None
    customer_id: str | None = None


@dataclass(frozen=True)
class SubscriptionStatus:
    """Whether the user holds a valid subscription."""

    is_valid: bool
    subscription: SubscriptionDetails | None = None
    plan_name: str | None = None


@dataclass(frozen=True)
class ProrationPreview:
    """Preview of the invoice a plan change would produce."""

    subscription_id: str
    target_price_id: str
    amount_due_minor: int
    currency: str
    proration_minor: int


@dataclass(frozen=True)
class CheckoutRedirect:
    """Where to send the browser after starting a checkout or plan change."""

    url: str
    session_id: str | None = None
    updated_in_place: bool = False


@dataclass(frozen=True)
class PlanChange:
    """Request to subscribe to or switch to a plan."""

    plan_id: str
    interval: BillingInterval


@dataclass(frozen=True)
class PlanDetails:
    """Plan reference row from the database."""

    plan_id: UUID
    name: str
    monthly_price: int
    yearly_price: int
    features: list[object]


@dataclass(frozen=True)
class BillingInfo:
    """Everything the billing page shows."""

    invoices: list[InvoiceSummary]
    subscription: SubscriptionDetails | None
    plan: PlanDetails | None
