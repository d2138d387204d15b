"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from app.models.domain import (
    CheckoutRedirect,
    CheckoutSessionData,
    InvoiceSummary,
    ProrationPreview,
    SubscriptionDetails,
    TokenPackSelection,
)


@dataclass(frozen=True)
class ProviderPrice:
    """
    Provider-agnostic one-off price.

    Used to build the token pack catalog.
    """

    price_id: str
    unit_amount: int
    currency: str


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event.

    checkout_session is set for checkout.session.* events only.
    """

    event_id: str
    event_type: str
    object_id: str | None
    checkout_session: CheckoutSessionData | None = None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    The billing services depend on this interface, never on the SDK.
    """

    async def list_active_prices(self, product_id: str) -> list[ProviderPrice]:
        """List active prices of a product in the configured currency."""
        ...

    async def create_token_checkout(
        self,
        project_id: UUID,
        user_id: UUID,
        customer_email: str | None,
        selection: TokenPackSelection,
    ) -> CheckoutRedirect:
        """
        Create a one-off checkout for a token pack.

        Raises:
            InvalidPackError: Neither a price id nor an ad-hoc amount
            PaymentProviderError: If the provider call fails
        """
        ...

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionData:
        """Fetch a checkout session."""
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse webhook event from provider.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...

    async def create_customer(self, email: str | None, user_id: UUID) -> str:
        """Create a billing customer and return its id."""
        ...

    async def get_active_subscription(self, customer_id: str) -> SubscriptionDetails | None:
        """The customer's active subscription, if any."""
        ...

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionDetails:
        """Fetch one subscription."""
        ...

    async def create_subscription_checkout(
        self, customer_id: str, price_id: str, user_id: UUID, plan_id: UUID
    ) -> CheckoutRedirect:
        """Create a subscription-mode checkout."""
        ...

    async def change_subscription_price(
        self, subscription: SubscriptionDetails, price_id: str, user_id: UUID, plan_id: UUID
    ) -> SubscriptionDetails:
        """Swap the subscription's price with immediate prorated invoicing."""
        ...

    async def set_cancel_at_period_end(
        self, subscription_id: str, cancel: bool
    ) -> SubscriptionDetails:
        """Schedule or unschedule cancellation at period end."""
        ...

    async def list_paid_invoices(self, customer_id: str, limit: int = 10) -> list[InvoiceSummary]:
        """Most recent paid invoices."""
        ...

    async def preview_price_change(
        self, customer_id: str, subscription: SubscriptionDetails, price_id: str
    ) -> ProrationPreview:
        """Preview the invoice a price change would produce."""
        ...
