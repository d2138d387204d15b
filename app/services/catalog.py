"""
Billing catalog configuration.

Subscription plans (keyed by the plans table UUID) and token products
(keyed by model). Must match the Stripe dashboard configuration.
"""

from dataclasses import dataclass
from uuid import UUID

from app.exceptions import InvalidPlanError
from app.models.api import BillingInterval

# Token pack sizes offered for every model, smallest first
PACK_AMOUNTS: tuple[int, ...] = (100_000, 250_000, 500_000, 1_000_000, 2_000_000)

# Enterprise products with fewer prices than this get ad-hoc pricing
MIN_ENTERPRISE_PRICES = 3

# Ad-hoc prices are scaled from the cheapest price per this many tokens
AD_HOC_REFERENCE_TOKENS = 1_000_000

# Collaborator cap for projects whose owner has no plan
DEFAULT_MEMBER_LIMIT = 2


@dataclass(frozen=True)
class SubscriptionPlan:
    """Subscription plan configuration."""

    plan_id: UUID
    name: str
    month_price_id: str
    year_price_id: str
    project_limit: int
    member_limit: int = DEFAULT_MEMBER_LIMIT

    def __post_init__(self) -> None:
        """Validate plan configuration."""
        if not self.name:
            raise ValueError("Name required")
        if not self.month_price_id or not self.year_price_id:
            raise ValueError(f"Both price IDs required for plan {self.name}")
        if self.project_limit <= 0:
            raise ValueError(f"Project limit must be positive: {self.project_limit}")
        if self.member_limit <= 0:
            raise ValueError(f"Member limit must be positive: {self.member_limit}")

    def price_for(self, interval: BillingInterval) -> str:
        """Stripe price ID for a billing interval."""
        if interval == BillingInterval.YEAR:
            return self.year_price_id
        return self.month_price_id


@dataclass(frozen=True)
class TokenProduct:
    """Stripe products selling tokens for one model."""

    model_key: str
    standard_product_id: str
    enterprise_product_id: str

    def product_for(self, enterprise: bool) -> str:
        """Stripe product ID for the standard or enterprise rate."""
        return self.enterprise_product_id if enterprise else self.standard_product_id


INDIVIDUAL_PLAN_ID = UUID("a2c06716-8900-4ddf-ac1c-878ec72136c5")
DEVELOPERS_PLAN_ID = UUID("43e952ee-ce17-4258-93ed-466386231e20")
ENTERPRISE_PLAN_ID = UUID("186774c3-cdb5-441b-8f3b-69b2af59eeef")

SUBSCRIPTION_PLANS: dict[UUID, SubscriptionPlan] = {
    INDIVIDUAL_PLAN_ID: SubscriptionPlan(
        plan_id=INDIVIDUAL_PLAN_ID,
        name="Individual",
        month_price_id="price_1SbSNUCApZQlVD3lD47n3Vyn",
        year_price_id="price_1SbSPxCApZQlVD3lzw5PeubP",
        project_limit=5,
        member_limit=2,
    ),
    DEVELOPERS_PLAN_ID: SubscriptionPlan(
        plan_id=DEVELOPERS_PLAN_ID,
        name="Developers",
        month_price_id="price_1SbSOBCApZQlVD3l4t3YD8Zu",
        year_price_id="price_1SbSRBCApZQlVD3lOYFeJiXj",
        project_limit=10,
        member_limit=10,
    ),
    ENTERPRISE_PLAN_ID: SubscriptionPlan(
        plan_id=ENTERPRISE_PLAN_ID,
        name="Enterprise",
        month_price_id="price_1SbSPJCApZQlVD3lbyIRHXqT",
        year_price_id="price_1SbSRWCApZQlVD3lVygxedWv",
        project_limit=9999,
        member_limit=999,
    ),
}

TOKEN_PRODUCTS: dict[str, TokenProduct] = {
    "gemini-2.5-flash": TokenProduct(
        model_key="gemini-2.5-flash",
        standard_product_id="prod_TYZqW1aGYIANHn",
        enterprise_product_id="prod_TYZqW1aGYIANHn",
    ),
    "gemini-2.5-pro": TokenProduct(
        model_key="gemini-2.5-pro",
        standard_product_id="prod_TYZs5FlS0Z2MH8",
        enterprise_product_id="prod_TYZxYNpduVmJwH",
    ),
    "gemini-3-pro-preview": TokenProduct(
        model_key="gemini-3-pro-preview",
        standard_product_id="prod_TYZvCyk8Ol3xED",
        enterprise_product_id="prod_TYZy6F1JiT9P5I",
    ),
}


def get_plan(plan_id: str | UUID) -> SubscriptionPlan:
    """
    Get plan configuration by ID.

    Raises:
        InvalidPlanError: If the plan ID is malformed or unknown
    """
    try:
        key = plan_id if isinstance(plan_id, UUID) else UUID(str(plan_id))
    except ValueError as exc:
        raise InvalidPlanError(str(plan_id)) from exc

    plan = SUBSCRIPTION_PLANS.get(key)
    if plan is None:
        raise InvalidPlanError(str(plan_id))
    return plan


def get_plan_by_price(price_id: str | None) -> SubscriptionPlan | None:
    """Find the plan that sells a given Stripe price (either interval)."""
    if not price_id:
        return None
    for plan in SUBSCRIPTION_PLANS.values():
        if price_id in (plan.month_price_id, plan.year_price_id):
            return plan
    return None


def member_limit_for(plan_id: UUID | None) -> int:
    """Collaborator cap of a project owned by someone on this plan."""
    plan = SUBSCRIPTION_PLANS.get(plan_id) if plan_id else None
    return plan.member_limit if plan is not None else DEFAULT_MEMBER_LIMIT


def get_token_product(model_key: str) -> TokenProduct | None:
    """Get the token products for a model, None when the model isn't sold."""
    return TOKEN_PRODUCTS.get(model_key)


def is_known_model(model_key: str) -> bool:
    """Whether tokens for this model can be bought and spent."""
    return model_key in TOKEN_PRODUCTS
