"""
Subscription Service - Plan checkout, plan changes and billing overview.

Stripe is the source of truth for subscription state. The users table only
caches the Stripe customer id and the current plan id.
"""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Plan, User
from app.exceptions import AuthorizationError, ResourceNotFoundError, WriteVerificationError
from app.models.domain import (
    AuthenticatedUser,
    BillingInfo,
    CheckoutRedirect,
    PlanChange,
    PlanDetails,
    ProrationPreview,
    SubscriptionDetails,
    SubscriptionStatus,
)
from app.services.catalog import get_plan, get_plan_by_price
from app.services.payment_provider import PaymentProvider

logger = get_logger(__name__)

INVOICE_HISTORY_LIMIT = 10


class SubscriptionService:
    """Subscription lifecycle for the authenticated user."""

    def __init__(
        self, session: AsyncSession, provider: PaymentProvider, site_url: str
    ) -> None:
        """Initialize subscription service."""
        self.session = session
        self.provider = provider
        self.site_url = site_url.rstrip("/")

    async def create_subscription_checkout(
        self, user: AuthenticatedUser, change: PlanChange
    ) -> CheckoutRedirect:
        """
        Subscribe to a plan, or switch the existing subscription to it.

        An existing active subscription has its price swapped in place with
        immediate prorated invoicing; the browser goes straight back to the
        dashboard. Otherwise a subscription-mode checkout is created.

        Raises:
            InvalidPlanError: Unknown plan
            ResourceNotFoundError: User row missing
        """
        plan = get_plan(change.plan_id)
        price_id = plan.price_for(change.interval)

        db_user = await self._get_user(user.user_id)
        customer_id = await self._ensure_customer(db_user, user.email)

        current = await self.provider.get_active_subscription(customer_id)
        if current is not None:
            await self.provider.change_subscription_price(
                current, price_id, user.user_id, plan.plan_id
            )
            await self._set_user_plan(db_user, plan.plan_id)
            logger.info(
                "subscription_plan_changed",
                user_id=str(user.user_id),
                subscription_id=current.subscription_id,
                plan=plan.name,
                interval=change.interval.value,
            )
            return CheckoutRedirect(
                url=f"{self.site_url}/dashboard?updated=true", updated_in_place=True
            )

        redirect = await self.provider.create_subscription_checkout(
            customer_id, price_id, user.user_id, plan.plan_id
        )
        logger.info(
            "subscription_checkout_created",
            user_id=str(user.user_id),
            plan=plan.name,
            interval=change.interval.value,
            session_id=redirect.session_id,
        )
        return redirect

    async def preview_plan_change(self, user_id: UUID, change: PlanChange) -> ProrationPreview:
        """
        Preview the prorated invoice for switching the active subscription.

        Raises:
            InvalidPlanError: Unknown plan
            ResourceNotFoundError: No billing account or no active subscription
        """
        plan = get_plan(change.plan_id)
        price_id = plan.price_for(change.interval)

        db_user = await self._get_user(user_id)
        if not db_user.stripe_customer_id:
            raise ResourceNotFoundError("Subscription", str(user_id))

        current = await self.provider.get_active_subscription(db_user.stripe_customer_id)
        if current is None:
            raise ResourceNotFoundError("Subscription", str(user_id))

        return await self.provider.preview_price_change(
            db_user.stripe_customer_id, current, price_id
        )

    async def get_billing_info(self, user_id: UUID) -> BillingInfo:
        """Paid invoices, the active subscription and the plan row."""
        db_user = await self._get_user(user_id)
        if not db_user.stripe_customer_id:
            return BillingInfo(invoices=[], subscription=None, plan=None)

        plan_details = None
        if db_user.plan_id is not None:
            plan_row = await self.session.get(Plan, db_user.plan_id)
            if plan_row is not None:
                plan_details = PlanDetails(
                    plan_id=plan_row.id,
                    name=plan_row.name,
                    monthly_price=plan_row.monthly_price,
                    yearly_price=plan_row.yearly_price,
                    features=list(plan_row.features or []),
                )

        invoices = await self.provider.list_paid_invoices(
            db_user.stripe_customer_id, limit=INVOICE_HISTORY_LIMIT
        )
        subscription = await self.provider.get_active_subscription(db_user.stripe_customer_id)

        return BillingInfo(invoices=invoices, subscription=subscription, plan=plan_details)

    async def check_subscription_status(self, user_id: UUID) -> SubscriptionStatus:
        """
        Whether the user holds an active subscription, according to Stripe.

        When the active subscription maps to a known plan, the cached
        users.plan_id is brought in line with it.
        """
        db_user = await self._get_user(user_id)
        if not db_user.stripe_customer_id:
            return SubscriptionStatus(is_valid=False)

        subscription = await self.provider.get_active_subscription(db_user.stripe_customer_id)
        if subscription is None:
            return SubscriptionStatus(is_valid=False)

        plan = get_plan_by_price(subscription.price_id)
        if plan is not None and db_user.plan_id != plan.plan_id:
            await self._set_user_plan(db_user, plan.plan_id)

        return SubscriptionStatus(
            is_valid=True,
            subscription=subscription,
            plan_name=plan.name if plan is not None else subscription.plan_name,
        )

    async def set_cancel_at_period_end(
        self, user_id: UUID, subscription_id: str, cancel: bool
    ) -> SubscriptionDetails:
        """
        Schedule or undo cancellation of the user's own subscription.

        The renewal date is unchanged by either direction.

        Raises:
            AuthorizationError: Subscription belongs to another customer
        """
        db_user = await self._get_user(user_id)
        subscription = await self.provider.retrieve_subscription(subscription_id)

        if not db_user.stripe_customer_id or subscription.customer_id != db_user.stripe_customer_id:
            logger.warning(
                "subscription_modify_denied",
                user_id=str(user_id),
                subscription_id=subscription_id,
            )
            raise AuthorizationError("subscription:modify")

        updated = await self.provider.set_cancel_at_period_end(subscription_id, cancel)
        logger.info(
            "subscription_cancel_at_period_end_set",
            user_id=str(user_id),
            subscription_id=subscription_id,
            cancel=cancel,
        )
        return updated

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _get_user(self, user_id: UUID) -> User:
        db_user = await self.session.get(User, user_id)
        if db_user is None:
            raise ResourceNotFoundError("User", user_id)
        return db_user

    async def _ensure_customer(self, db_user: User, email: str | None) -> str:
        """Stripe customer id of the user, creating the customer on first use."""
        if db_user.stripe_customer_id:
            return db_user.stripe_customer_id

        customer_id = await self.provider.create_customer(email or db_user.email, db_user.id)
        db_user.stripe_customer_id = customer_id
        await self.session.flush()

        verified_user = await self.session.get(User, db_user.id)
        if verified_user is None or verified_user.stripe_customer_id != customer_id:
            raise WriteVerificationError(f"Customer id not stored for user {db_user.id}")

        await self.session.commit()
        return customer_id

    async def _set_user_plan(self, db_user: User, plan_id: UUID) -> None:
        db_user.plan_id = plan_id
        await self.session.flush()
        await self.session.commit()
        logger.info("user_plan_synced", user_id=str(db_user.id), plan_id=str(plan_id))
