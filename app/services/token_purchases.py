"""
Token Purchase Service - Token pack catalog, checkout and crediting.

Crediting is idempotent by checkout session id: the purchase ledger is
unique on (stripe_session_id, model_key), and a session that already has
ledger rows is reported as already processed without touching any balance.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import TokenPack, TokenTransaction
from app.exceptions import (
    AuthorizationError,
    DataIntegrityError,
    InvalidPackError,
    PaymentNotCompletedError,
    WriteVerificationError,
)
from app.models.domain import (
    CheckoutRedirect,
    CheckoutSessionData,
    PurchaseCreditResult,
    TokenPackOffer,
    TokenPackSelection,
)
from app.observability.metrics import metrics
from app.services.catalog import (
    AD_HOC_REFERENCE_TOKENS,
    MIN_ENTERPRISE_PRICES,
    PACK_AMOUNTS,
    get_token_product,
)
from app.services.payment_provider import PaymentProvider, ProviderPrice, WebhookEvent
from app.services.token_metering import TokenMeteringService

logger = get_logger(__name__)

PURCHASE_SOURCE = "Stripe Token Pack Purchase"

# Webhook events that mean a checkout session has been paid
CREDITING_EVENTS = frozenset(
    {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def format_minor(amount_minor: int) -> str:
    """Format minor units as a two-decimal major amount."""
    return f"{amount_minor / 100:.2f}"


def build_pack_offers(
    product_id: str, prices: list[ProviderPrice], enterprise: bool
) -> list[TokenPackOffer]:
    """
    Map a product's prices onto the fixed pack sizes.

    Prices are sorted by unit amount and assigned to PACK_AMOUNTS in order;
    sizes without a price are dropped. Enterprise products with fewer than
    MIN_ENTERPRISE_PRICES prices get ad-hoc prices scaled from the cheapest
    one: round(ref * size / 1_000_000).
    """
    sorted_prices = sorted(prices, key=lambda p: p.unit_amount)
    offers: list[TokenPackOffer] = []

    if enterprise and 0 < len(sorted_prices) < MIN_ENTERPRISE_PRICES:
        reference = sorted_prices[0]
        for amount in PACK_AMOUNTS:
            cost = round(reference.unit_amount * amount / AD_HOC_REFERENCE_TOKENS)
            offers.append(
                TokenPackOffer(
                    amount=amount,
                    price_id=None,
                    unit_amount=cost,
                    currency=reference.currency,
                    display_price=format_minor(cost),
                    is_ad_hoc=True,
                    base_product_id=product_id,
                )
            )
        return offers

    for amount, price in zip(PACK_AMOUNTS, sorted_prices):
        offers.append(
            TokenPackOffer(
                amount=amount,
                price_id=price.price_id,
                unit_amount=price.unit_amount,
                currency=price.currency,
                display_price=format_minor(price.unit_amount),
                is_ad_hoc=False,
                base_product_id=product_id,
            )
        )
    return offers


def split_amount_pro_rata(amount_minor: int, tokens: dict[str, int]) -> dict[str, int]:
    """
    Split a paid amount across models in proportion to tokens bought.

    Shares are floored and the remainder goes to the last model, so the
    shares always sum to amount_minor.
    """
    total_tokens = sum(tokens.values())
    if total_tokens <= 0:
        return {model: 0 for model in tokens}

    shares: dict[str, int] = {}
    allocated = 0
    models = list(tokens)
    for model in models[:-1]:
        share = amount_minor * tokens[model] // total_tokens
        shares[model] = share
        allocated += share
    shares[models[-1]] = amount_minor - allocated
    return shares


class TokenPurchaseService:
    """
    Token pack purchases with write verification.

    Crediting follows the pattern:
    1. Idempotency check on the session id
    2. Insert ledger rows and flush
    3. Lock the authoritative pack and add tokens (or create a pack)
    4. Verify and commit
    """

    def __init__(self, session: AsyncSession, provider: PaymentProvider) -> None:
        """Initialize token purchase service."""
        self.session = session
        self.provider = provider
        self.metering = TokenMeteringService(session)

    async def list_token_packs(self, model_key: str, enterprise: bool) -> list[TokenPackOffer]:
        """Purchasable packs for a model. Unknown models have none."""
        product = get_token_product(model_key)
        if product is None:
            return []

        product_id = product.product_for(enterprise)
        prices = await self.provider.list_active_prices(product_id)
        return build_pack_offers(product_id, prices, enterprise)

    async def create_token_checkout(
        self,
        project_id: UUID,
        user_id: UUID,
        customer_email: str | None,
        selection: TokenPackSelection,
    ) -> CheckoutRedirect:
        """
        Start a checkout for a token pack.

        The selection is matched against the live catalog, so the amount
        charged always comes from Stripe, never from the client.

        Raises:
            InvalidPackError: Selection doesn't match any offered pack
        """
        resolved = await self._resolve_selection(selection)
        return await self.provider.create_token_checkout(
            project_id, user_id, customer_email, resolved
        )

    async def verify_token_purchase(
        self, session_id: str, user_id: UUID | None = None
    ) -> PurchaseCreditResult:
        """
        Verify a checkout session with Stripe and credit it.

        Safe to call repeatedly: the second call reports already_processed.

        Raises:
            PaymentNotCompletedError: Session isn't paid
            InvalidPackError: Session isn't a token refill
            AuthorizationError: Session belongs to another user
        """
        data = await self.provider.retrieve_checkout_session(session_id)

        if data.payment_status != "paid":
            raise PaymentNotCompletedError(session_id, data.payment_status)
        if not data.is_token_refill:
            raise InvalidPackError(f"session {session_id} is not a token purchase")
        if user_id is not None and data.user_id is not None and data.user_id != user_id:
            raise AuthorizationError("token_purchase:verify")

        return await self.credit_checkout_session(data)

    async def handle_webhook_event(self, event: WebhookEvent) -> str:
        """
        Process a verified webhook event. Returns the outcome label.

        Only paid token-refill checkouts change state; subscription and
        invoice events are acknowledged (subscription state is read from
        Stripe on demand).
        """
        log = logger.bind(event_id=event.event_id, event_type=event.event_type)
        session = event.checkout_session

        if event.event_type not in CREDITING_EVENTS or session is None:
            log.info("stripe_webhook_acknowledged", object_id=event.object_id)
            return "ignored"

        if not session.is_token_refill:
            log.info("stripe_webhook_checkout_not_token_refill", session_id=session.session_id)
            return "ignored"

        if session.payment_status != "paid":
            log.info(
                "stripe_webhook_checkout_unpaid",
                session_id=session.session_id,
                payment_status=session.payment_status,
            )
            return "unpaid"

        result = await self.credit_checkout_session(session)
        return "already_processed" if result.already_processed else "credited"

    async def credit_checkout_session(self, data: CheckoutSessionData) -> PurchaseCreditResult:
        """
        Credit a paid token-refill session to the project's pack.

        Raises:
            DataIntegrityError: Session metadata lacks a project or tokens
            WriteVerificationError: Pack missing after write
        """
        project_id = data.project_id
        if project_id is None:
            raise DataIntegrityError(f"Checkout session {data.session_id} has no projectId")

        tokens = {model: amount for model, amount in data.purchased_tokens.items() if amount > 0}
        if not tokens:
            raise DataIntegrityError(f"Checkout session {data.session_id} has no purchased tokens")

        log = logger.bind(session_id=data.session_id, project_id=str(project_id))

        if await self._session_already_credited(data.session_id):
            log.info("token_purchase_already_processed")
            metrics.record_token_purchase("already_processed", {})
            return await self._already_processed(data.session_id, project_id)

        shares = split_amount_pro_rata(data.amount_total_minor, tokens)
        for model_key, amount in tokens.items():
            self.session.add(
                TokenTransaction(
                    user_id=data.user_id,
                    project_id=project_id,
                    model_key=model_key,
                    tokens_added=amount,
                    amount_paid_minor=shares[model_key],
                    currency=data.currency,
                    source=PURCHASE_SOURCE,
                    stripe_session_id=data.session_id,
                    metadata_={
                        "checkout_session_id": data.session_id,
                        "token_pack_breakdown": tokens,
                    },
                )
            )

        try:
            await self.session.flush()
        except IntegrityError:
            # A concurrent request credited this session first
            await self.session.rollback()
            log.info("token_purchase_credited_concurrently")
            metrics.record_token_purchase("already_processed", {})
            return await self._already_processed(data.session_id, project_id)

        now = _utc_now()
        expires_at = now + timedelta(days=settings.token_pack_validity_days)
        pack = await self.metering.lock_active_pack(project_id)

        if pack is not None:
            purchased = dict(pack.tokens_purchased or {})
            remaining = dict(pack.remaining_tokens or {})
            for model_key, amount in tokens.items():
                purchased[model_key] = int(purchased.get(model_key, 0) or 0) + amount
                remaining[model_key] = int(remaining.get(model_key, 0) or 0) + amount
            pack.tokens_purchased = purchased
            pack.remaining_tokens = remaining
            pack.price_paid_minor = pack.price_paid_minor + data.amount_total_minor
            pack.expires_at = expires_at
            pack.updated_at = now
        else:
            pack = TokenPack(
                project_id=project_id,
                user_id=data.user_id,
                tokens_purchased=dict(tokens),
                remaining_tokens=dict(tokens),
                price_paid_minor=data.amount_total_minor,
                currency=data.currency,
                purchased_at=now,
                expires_at=expires_at,
                metadata_={"stripe_session_id": data.session_id},
            )
            self.session.add(pack)

        await self.session.flush()

        verified_pack = await self.session.get(TokenPack, pack.id)
        if verified_pack is None:
            raise WriteVerificationError(f"TokenPack {pack.id} not found after credit")

        await self.session.commit()

        metrics.record_token_purchase("credited", tokens)
        log.info(
            "token_pack_credited",
            pack_id=str(verified_pack.id),
            tokens_added=tokens,
            amount_paid_minor=data.amount_total_minor,
        )

        return PurchaseCreditResult(
            session_id=data.session_id,
            already_processed=False,
            pack_id=verified_pack.id,
            tokens_added=tokens,
            remaining=dict(verified_pack.remaining_tokens),
        )

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _session_already_credited(self, session_id: str) -> bool:
        stmt = (
            select(TokenTransaction.id)
            .where(TokenTransaction.stripe_session_id == session_id)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def _already_processed(self, session_id: str, project_id: UUID) -> PurchaseCreditResult:
        balance = await self.metering.get_balance(project_id)
        return PurchaseCreditResult(
            session_id=session_id,
            already_processed=True,
            pack_id=balance.pack_id,
            tokens_added={},
            remaining=balance.remaining,
        )

    async def _resolve_selection(self, selection: TokenPackSelection) -> TokenPackSelection:
        product = get_token_product(selection.model_key)
        if product is None:
            raise InvalidPackError(f"unknown model {selection.model_key}")

        for enterprise in (False, True):
            for offer in await self.list_token_packs(selection.model_key, enterprise):
                if offer.amount != selection.amount:
                    continue
                if selection.price_id and offer.price_id == selection.price_id:
                    return self._selection_from_offer(selection.model_key, offer)
                if (
                    selection.is_ad_hoc
                    and offer.is_ad_hoc
                    and selection.base_product_id in (None, offer.base_product_id)
                ):
                    return self._selection_from_offer(selection.model_key, offer)

        raise InvalidPackError(
            f"no {selection.amount}-token pack for {selection.model_key} matches the selection"
        )

    @staticmethod
    def _selection_from_offer(model_key: str, offer: TokenPackOffer) -> TokenPackSelection:
        return TokenPackSelection(
            model_key=model_key,
            amount=offer.amount,
            price_id=offer.price_id,
            unit_amount=offer.unit_amount,
            base_product_id=offer.base_product_id,
            is_ad_hoc=offer.is_ad_hoc,
        )
