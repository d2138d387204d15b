"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data leaving this module uses strongly typed models.
Stripe objects are read defensively: fields moved between API versions
(e.g. current_period_end now lives on subscription items).
"""

import json
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import httpx
import stripe
from structlog import get_logger

from app.exceptions import InvalidPackError, PaymentProviderError, WebhookVerificationError
from app.models.domain import (
    CheckoutRedirect,
    CheckoutSessionData,
    InvoiceSummary,
    ProrationPreview,
    SubscriptionDetails,
    TokenPackSelection,
)
from app.observability.metrics import metrics
from app.services.catalog import get_plan_by_price
from app.services.payment_provider import ProviderPrice, WebhookEvent

logger = get_logger(__name__)

TOKEN_REFILL_TYPE = "token_refill"
SUBSCRIPTION_UPDATE_TYPE = "subscription_update"


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
    else:
        try:
            value = obj[key]
        except (KeyError, TypeError):
            value = getattr(obj, key, default)
    return default if value is None else value


def _from_timestamp(value: Any) -> datetime | None:
    """Convert a Unix timestamp to an aware datetime."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return None


def _parse_uuid(value: Any) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def parse_purchased_tokens(raw: Any) -> dict[str, int]:
    """Parse the purchased_tokens metadata (JSON model -> amount)."""
    if not raw:
        return {}
    try:
        data = json.loads(raw) if isinstance(raw, str) else dict(raw)
    except (TypeError, ValueError):
        logger.warning("purchased_tokens_metadata_invalid", raw=str(raw)[:200])
        return {}
    if not isinstance(data, dict):
        return {}

    tokens: dict[str, int] = {}
    for model_key, amount in data.items():
        try:
            tokens[str(model_key)] = int(amount)
        except (TypeError, ValueError):
            continue
    return tokens


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        site_url: str,
        currency: str = "eur",
        api_base: str = "https://api.stripe.com",
    ) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            site_url: Dashboard base URL for checkout return URLs
            currency: Currency for prices and ad-hoc checkouts
            api_base: REST base URL for endpoints called over raw HTTP
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.site_url = site_url.rstrip("/")
        self.currency = currency.lower()
        self.api_base = api_base.rstrip("/")
        stripe.api_key = api_key

    # ========================================================================
    # Token packs
    # ========================================================================

    async def list_active_prices(self, product_id: str) -> list[ProviderPrice]:
        """
        List active prices of a product.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            prices = stripe.Price.list(
                product=product_id, active=True, limit=20, currency=self.currency
            )
        except stripe.StripeError as exc:
            metrics.record_stripe_call("price_list", False)
            logger.error("stripe_price_list_failed", product_id=product_id, error=str(exc))
            raise PaymentProviderError(f"Failed to list prices: {exc}") from exc

        metrics.record_stripe_call("price_list", True)
        return [
            ProviderPrice(
                price_id=_get(price, "id"),
                unit_amount=int(_get(price, "unit_amount", 0)),
                currency=_get(price, "currency", self.currency),
            )
            for price in _get(prices, "data", [])
        ]

    async def create_token_checkout(
        self,
        project_id: UUID,
        user_id: UUID,
        customer_email: str | None,
        selection: TokenPackSelection,
    ) -> CheckoutRedirect:
        """
        Create a payment-mode Checkout Session for a token pack.

        The session metadata carries everything needed to credit the
        purchase later: projectId, userId, type and purchased_tokens.

        Raises:
            InvalidPackError: Neither a price id nor ad-hoc amount + product
            PaymentProviderError: If Stripe API call fails
        """
        line_item = self._token_line_item(selection)

        params: dict[str, Any] = {
            "line_items": [line_item],
            "mode": "payment",
            "success_url": f"{self.site_url}/dashboard/projects/{project_id}/payments/completed",
            "cancel_url": f"{self.site_url}/dashboard/projects/{project_id}/payments/failed",
            "metadata": {
                "projectId": str(project_id),
                "userId": str(user_id),
                "type": TOKEN_REFILL_TYPE,
                "purchased_tokens": json.dumps({selection.model_key: selection.amount}),
            },
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            logger.info(
                "creating_stripe_token_checkout",
                project_id=str(project_id),
                model=selection.model_key,
                amount=selection.amount,
                is_ad_hoc=selection.is_ad_hoc,
            )
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as exc:
            metrics.record_stripe_call("token_checkout", False)
            logger.error(
                "stripe_token_checkout_failed",
                project_id=str(project_id),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe checkout failed: {exc}") from exc

        metrics.record_stripe_call("token_checkout", True)
        logger.info("stripe_token_checkout_created", session_id=_get(session, "id"))
        return CheckoutRedirect(url=_get(session, "url", ""), session_id=_get(session, "id"))

    def _token_line_item(self, selection: TokenPackSelection) -> dict[str, Any]:
        if selection.is_ad_hoc and selection.unit_amount and selection.base_product_id:
            return {
                "price_data": {
                    "currency": self.currency,
                    "product": selection.base_product_id,
                    "unit_amount": selection.unit_amount,
                    "tax_behavior": "exclusive",
                },
                "quantity": 1,
            }
        if selection.price_id:
            return {"price": selection.price_id, "quantity": 1}
        raise InvalidPackError("a price id or an ad-hoc amount with a base product is required")

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionData:
        """
        Fetch a Checkout Session.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as exc:
            metrics.record_stripe_call("checkout_retrieve", False)
            logger.error("stripe_checkout_retrieve_failed", session_id=session_id, error=str(exc))
            raise PaymentProviderError(f"Failed to retrieve checkout session: {exc}") from exc

        metrics.record_stripe_call("checkout_retrieve", True)
        return self._to_checkout_session(session)

    @staticmethod
    def _to_checkout_session(session: Any) -> CheckoutSessionData:
        metadata = _get(session, "metadata", {})
        return CheckoutSessionData(
            session_id=_get(session, "id", ""),
            payment_status=_get(session, "payment_status", ""),
            mode=_get(session, "mode", ""),
            amount_total_minor=int(_get(session, "amount_total", 0)),
            currency=str(_get(session, "currency", "eur")).upper(),
            purchase_type=_get(metadata, "type"),
            project_id=_parse_uuid(_get(metadata, "projectId")),
            user_id=_parse_uuid(_get(metadata, "userId")),
            purchased_tokens=parse_purchased_tokens(_get(metadata, "purchased_tokens")),
        )

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Returns:
            Parsed webhook event

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        try:
            logger.info("verifying_stripe_webhook", signature_present=bool(signature))

            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        event_type = _get(event, "type", "")
        data_object = _get(_get(event, "data"), "object")

        logger.info("stripe_webhook_verified", event_id=_get(event, "id"), event_type=event_type)

        checkout_session = None
        if event_type.startswith("checkout.session."):
            checkout_session = self._to_checkout_session(data_object)

        return WebhookEvent(
            event_id=_get(event, "id", ""),
            event_type=event_type,
            object_id=_get(data_object, "id"),
            checkout_session=checkout_session,
        )

    # ========================================================================
    # Subscriptions
    # ========================================================================

    async def create_customer(self, email: str | None, user_id: UUID) -> str:
        """
        Create a Stripe customer linked to the dashboard user.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            customer = stripe.Customer.create(
                email=email, metadata={"supabase_user_id": str(user_id)}
            )
        except stripe.StripeError as exc:
            metrics.record_stripe_call("customer_create", False)
            logger.error("stripe_customer_create_failed", user_id=str(user_id), error=str(exc))
            raise PaymentProviderError(f"Failed to create customer: {exc}") from exc

        metrics.record_stripe_call("customer_create", True)
        customer_id: str = _get(customer, "id")
        logger.info("stripe_customer_created", user_id=str(user_id), customer_id=customer_id)
        return customer_id

    async def get_active_subscription(self, customer_id: str) -> SubscriptionDetails | None:
        """
        The customer's first active subscription, if any.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            subscriptions = stripe.Subscription.list(
                customer=customer_id, status="active", limit=1
            )
        except stripe.StripeError as exc:
            metrics.record_stripe_call("subscription_list", False)
            logger.error("stripe_subscription_list_failed", customer_id=customer_id, error=str(exc))
            raise PaymentProviderError(f"Failed to list subscriptions: {exc}") from exc

        metrics.record_stripe_call("subscription_list", True)
        data = _get(subscriptions, "data", [])
        if not data:
            return None
        return self._to_subscription(data[0])

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionDetails:
        """
        Fetch one subscription.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as exc:
            metrics.record_stripe_call("subscription_retrieve", False)
            logger.error(
                "stripe_subscription_retrieve_failed",
                subscription_id=subscription_id,
                error=str(exc),
            )
            raise PaymentProviderError(f"Failed to retrieve subscription: {exc}") from exc

        metrics.record_stripe_call("subscription_retrieve", True)
        return self._to_subscription(subscription)

    async def create_subscription_checkout(
        self, customer_id: str, price_id: str, user_id: UUID, plan_id: UUID
    ) -> CheckoutRedirect:
        """
        Create a subscription-mode Checkout Session.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        metadata = {
            "userId": str(user_id),
            "targetPlanId": str(plan_id),
            "type": SUBSCRIPTION_UPDATE_TYPE,
        }
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=f"{self.site_url}/dashboard?subscription_success=true",
                cancel_url=f"{self.site_url}/dashboard/components/subscriptionFolder?canceled=true",
                metadata=metadata,
                subscription_data={
                    "metadata": {"userId": str(user_id), "targetPlanId": str(plan_id)}
                },
            )
        except stripe.StripeError as exc:
            metrics.record_stripe_call("subscription_checkout", False)
            logger.error(
                "stripe_subscription_checkout_failed",
                customer_id=customer_id,
                price_id=price_id,
                error=str(exc),
            )
            raise PaymentProviderError(f"Stripe checkout failed: {exc}") from exc

        metrics.record_stripe_call("subscription_checkout", True)
        return CheckoutRedirect(url=_get(session, "url", ""), session_id=_get(session, "id"))

    async def change_subscription_price(
        self, subscription: SubscriptionDetails, price_id: str, user_id: UUID, plan_id: UUID
    ) -> SubscriptionDetails:
        """
        Swap the subscription's first item to a new price.

        Proration is invoiced immediately (always_invoice).

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        if not subscription.item_id:
            raise PaymentProviderError(
                f"Subscription {subscription.subscription_id} has no items"
            )

        try:
            logger.info(
                "changing_stripe_subscription_price",
                subscription_id=subscription.subscription_id,
                from_price=subscription.price_id,
                to_price=price_id,
            )
            updated = stripe.Subscription.modify(
                subscription.subscription_id,
                items=[{"id": subscription.item_id, "price": price_id}],
                metadata={
                    "userId": str(user_id),
                    "targetPlanId": str(plan_id),
                    "type": SUBSCRIPTION_UPDATE_TYPE,
                },
                proration_behavior="always_invoice",
            )
        except stripe.StripeError as exc:
            metrics.record_stripe_call("subscription_update", False)
            logger.error(
                "stripe_subscription_update_failed",
                subscription_id=subscription.subscription_id,
                error=str(exc),
            )
            raise PaymentProviderError(f"Failed to update subscription: {exc}") from exc

        metrics.record_stripe_call("subscription_update", True)
        return self._to_subscription(updated)

    async def set_cancel_at_period_end(
        self, subscription_id: str, cancel: bool
    ) -> SubscriptionDetails:
        """
        Schedule (True) or unschedule (False) cancellation at period end.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            updated = stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel)
        except stripe.StripeError as exc:
            metrics.record_stripe_call("subscription_cancel_toggle", False)
            logger.error(
                "stripe_subscription_cancel_toggle_failed",
                subscription_id=subscription_id,
                cancel=cancel,
                error=str(exc),
            )
            raise PaymentProviderError(f"Failed to update subscription: {exc}") from exc

        metrics.record_stripe_call("subscription_cancel_toggle", True)
        logger.info(
            "stripe_subscription_cancel_toggled", subscription_id=subscription_id, cancel=cancel
        )
        return self._to_subscription(updated)

    async def list_paid_invoices(self, customer_id: str, limit: int = 10) -> list[InvoiceSummary]:
        """
        Most recent paid invoices of a customer.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            invoices = stripe.Invoice.list(customer=customer_id, limit=limit, status="paid")
        except stripe.StripeError as exc:
            metrics.record_stripe_call("invoice_list", False)
            logger.error("stripe_invoice_list_failed", customer_id=customer_id, error=str(exc))
            raise PaymentProviderError(f"Failed to list invoices: {exc}") from exc

        metrics.record_stripe_call("invoice_list", True)
        summaries = []
        for invoice in _get(invoices, "data", []):
            summaries.append(
                InvoiceSummary(
                    invoice_id=_get(invoice, "id", ""),
                    created_at=_from_timestamp(_get(invoice, "created")) or datetime.now(UTC),
                    amount_minor=int(_get(invoice, "amount_paid", 0)),
                    currency=str(_get(invoice, "currency", self.currency)).upper(),
                    pdf_url=_get(invoice, "invoice_pdf"),
                    status=_get(invoice, "status"),
                )
            )
        return summaries

    async def preview_price_change(
        self, customer_id: str, subscription: SubscriptionDetails, price_id: str
    ) -> ProrationPreview:
        """
        Preview the invoice for swapping to price_id.

        The SDK has no stable binding for this endpoint across versions, so
        it is called over raw HTTP.

        Raises:
            PaymentProviderError: Transport error or non-2xx response
        """
        if not subscription.item_id:
            raise PaymentProviderError(
                f"Subscription {subscription.subscription_id} has no items"
            )

        form = {
            "customer": customer_id,
            "subscription": subscription.subscription_id,
            "subscription_details[items][0][id]": subscription.item_id,
            "subscription_details[items][0][price]": price_id,
            "subscription_details[proration_behavior]": "always_invoice",
        }

        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    f"{self.api_base}/v1/invoices/create_preview",
                    data=form,
                    auth=(self.api_key, ""),
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            metrics.record_stripe_call("invoice_preview", False)
            logger.error(
                "stripe_invoice_preview_rejected",
                subscription_id=subscription.subscription_id,
                status_code=exc.response.status_code,
                body=exc.response.text[:500],
            )
            raise PaymentProviderError(
                f"Invoice preview failed with status {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            metrics.record_stripe_call("invoice_preview", False)
            logger.error(
                "stripe_invoice_preview_failed",
                subscription_id=subscription.subscription_id,
                error=str(exc),
            )
            raise PaymentProviderError(f"Invoice preview failed: {exc}") from exc

        metrics.record_stripe_call("invoice_preview", True)

        proration_minor = 0
        for line in _get(_get(data, "lines"), "data", []):
            if self._is_proration_line(line):
                proration_minor += int(_get(line, "amount", 0))

        return ProrationPreview(
            subscription_id=subscription.subscription_id,
            target_price_id=price_id,
            amount_due_minor=int(_get(data, "amount_due", 0)),
            currency=str(_get(data, "currency", self.currency)).upper(),
            proration_minor=proration_minor,
        )

    @staticmethod
    def _is_proration_line(line: Any) -> bool:
        if _get(line, "proration", False):
            return True
        details = _get(_get(line, "parent"), "subscription_item_details")
        return bool(_get(details, "proration", False))

    @staticmethod
    def _to_subscription(subscription: Any) -> SubscriptionDetails:
        items = _get(_get(subscription, "items"), "data", [])
        item = items[0] if items else None
        price = _get(item, "price")
        price_id = _get(price, "id")

        plan = get_plan_by_price(price_id)
        if plan is not None:
            plan_name = plan.name
        else:
            # product is an id unless the subscription was fetched with expand
            product = _get(price, "product")
            plan_name = "Unknown Plan"
            if product is not None and not isinstance(product, str):
                plan_name = _get(product, "name", plan_name)

        # Period bounds moved from the subscription to its items in newer API versions
        period_start = _get(subscription, "current_period_start") or _get(
            item, "current_period_start"
        )
        period_end = _get(subscription, "current_period_end") or _get(item, "current_period_end")

        return SubscriptionDetails(
            subscription_id=_get(subscription, "id", ""),
            status=_get(subscription, "status", ""),
            plan_name=plan_name,
            price_id=price_id,
            amount_minor=int(_get(price, "unit_amount", 0)),
            interval=_get(_get(price, "recurring"), "interval", "month"),
            current_period_start=_from_timestamp(period_start),
            current_period_end=_from_timestamp(period_end),
            cancel_at_period_end=bool(_get(subscription, "cancel_at_period_end", False)),
            item_id=_get(item, "id"),
            customer_id=_get(subscription, "customer"),
        )
