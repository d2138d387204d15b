"""
Billing Routes - Token packs, token balances, subscriptions and Stripe webhooks.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import get_current_user, get_payment_provider
from app.config import settings
from app.db.models import TokenTransaction, TokenUsageLog
from app.db.session import get_db
from app.exceptions import (
    AuthorizationError,
    DataIntegrityError,
    InvalidPackError,
    InvalidPlanError,
    PaymentNotCompletedError,
    PaymentProviderError,
    ResourceNotFoundError,
    WebhookVerificationError,
    WriteVerificationError,
)
from app.models.api import (
    BillingInfoResponse,
    CheckoutResponse,
    InvoiceItem,
    PlanResponse,
    ProrationPreviewResponse,
    ReconciliationItem,
    ReconciliationResponse,
    SubscriptionCheckoutRequest,
    SubscriptionResponse,
    SubscriptionStatusResponse,
    TokenBalanceResponse,
    TokenCheckoutRequest,
    TokenPackListResponse,
    TokenPackOfferResponse,
    TokenTransactionItem,
    TokenTransactionListResponse,
    TokenUsageResponse,
    UsageLogItem,
    UsageSummaryItem,
    VerifyPurchaseRequest,
    VerifyPurchaseResponse,
)
from app.models.domain import (
    AuthenticatedUser,
    InvoiceSummary,
    PlanChange,
    SubscriptionDetails,
    TokenPackSelection,
)
from app.services.catalog import is_known_model
from app.services.payment_provider import PaymentProvider
from app.services.projects import ProjectService
from app.services.subscriptions import SubscriptionService
from app.services.token_metering import TokenMeteringService
from app.services.token_purchases import TokenPurchaseService, format_minor

logger = get_logger(__name__)

router = APIRouter()


# =============================================================================
# Response builders
# =============================================================================


def transaction_to_item(transaction: TokenTransaction) -> TokenTransactionItem:
    """Build a purchase ledger item."""
    return TokenTransactionItem(
        id=transaction.id,
        model_key=transaction.model_key,
        tokens_added=transaction.tokens_added,
        amount_paid_minor=transaction.amount_paid_minor,
        currency=transaction.currency,
        source=transaction.source,
        created_at=transaction.created_at.isoformat(),
    )


def usage_log_to_item(usage: TokenUsageLog) -> UsageLogItem:
    """Build a consumption ledger item."""
    return UsageLogItem(
        id=usage.id,
        model=usage.model,
        tokens_used=usage.tokens_used,
        action=usage.action,
        user_id=usage.user_id,
        created_at=usage.created_at.isoformat(),
    )


def subscription_to_response(subscription: SubscriptionDetails) -> SubscriptionResponse:
    """Build the subscription response; amounts are formatted major units."""
    return SubscriptionResponse(
        id=subscription.subscription_id,
        plan_name=subscription.plan_name,
        amount=format_minor(subscription.amount_minor),
        interval=subscription.interval,
        status=subscription.status,
        current_period_start=(
            subscription.current_period_start.isoformat()
            if subscription.current_period_start
            else None
        ),
        current_period_end=(
            subscription.current_period_end.isoformat()
            if subscription.current_period_end
            else None
        ),
        cancel_at_period_end=subscription.cancel_at_period_end,
    )


def invoice_to_item(invoice: InvoiceSummary) -> InvoiceItem:
    """Build a paid invoice item."""
    return InvoiceItem(
        id=invoice.invoice_id,
        date=invoice.created_at.isoformat(),
        amount=format_minor(invoice.amount_minor),
        amount_minor=invoice.amount_minor,
        currency=invoice.currency,
        pdf_url=invoice.pdf_url,
        status=invoice.status,
    )


async def _require_project(db: AsyncSession, project_id: UUID, user_id: UUID) -> None:
    try:
        await ProjectService(db).require_access(project_id, user_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc


# =============================================================================
# Token packs
# =============================================================================


@router.get("/v1/billing/token-packs", response_model=TokenPackListResponse)
async def list_token_packs(
    model_key: str = Query(..., min_length=1, max_length=100),
    enterprise: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> TokenPackListResponse:
    """
    Purchasable token packs for a model, read from the live Stripe catalog.

    Enterprise catalogs with fewer than three prices are offered as ad-hoc
    packs priced from the reference price.
    """
    if not is_known_model(model_key):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown model: {model_key}",
        )

    service = TokenPurchaseService(db, provider)
    try:
        offers = await service.list_token_packs(model_key, enterprise)
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Payment provider error: {exc}",
        ) from exc

    return TokenPackListResponse(
        model_key=model_key,
        enterprise=enterprise,
        packs=[
            TokenPackOfferResponse(
                amount=o.amount,
                price_id=o.price_id,
                unit_amount=o.unit_amount,
                currency=o.currency,
                display_price=o.display_price,
                is_ad_hoc=o.is_ad_hoc,
                base_product_id=o.base_product_id,
            )
            for o in offers
        ],
    )


@router.post(
    "/v1/projects/{project_id}/token-checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_token_checkout(
    project_id: UUID,
    request: TokenCheckoutRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> CheckoutResponse:
    """
    Start a Stripe checkout for a token pack of one model.

    The browser is sent to the returned url; tokens are credited once the
    session is paid (webhook or verify endpoint, whichever comes first).
    """
    if not is_known_model(request.model_key):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown model: {request.model_key}",
        )

    await _require_project(db, project_id, user.user_id)

    selection = TokenPackSelection(
        model_key=request.model_key,
        amount=request.amount,
        price_id=request.price_id,
        unit_amount=request.unit_amount,
        base_product_id=request.base_product_id,
        is_ad_hoc=request.is_ad_hoc,
    )

    service = TokenPurchaseService(db, provider)
    try:
        redirect = await service.create_token_checkout(
            project_id=project_id,
            user_id=user.user_id,
            customer_email=user.email,
            selection=selection,
        )
    except InvalidPackError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Payment provider error: {exc}",
        ) from exc

    return CheckoutResponse(url=redirect.url, session_id=redirect.session_id)


@router.post("/v1/billing/token-purchases/verify", response_model=VerifyPurchaseResponse)
async def verify_token_purchase(
    request: VerifyPurchaseRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> VerifyPurchaseResponse:
    """
    Verify a checkout session after the success redirect and credit it.

    Idempotent: a session that was already credited (by the webhook or an
    earlier call) returns already_processed=true and adds nothing.
    """
    service = TokenPurchaseService(db, provider)
    try:
        result = await service.verify_token_purchase(request.session_id, user.user_id)
    except PaymentNotCompletedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except InvalidPackError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except AuthorizationError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(exc),
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Payment provider error: {exc}",
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc

    return VerifyPurchaseResponse(
        session_id=result.session_id,
        already_processed=result.already_processed,
        pack_id=result.pack_id,
        tokens_added=result.tokens_added,
        remaining=result.remaining,
    )


# =============================================================================
# Token balances and ledgers
# =============================================================================


@router.get("/v1/projects/{project_id}/tokens", response_model=TokenBalanceResponse)
async def get_token_balance(
    project_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> TokenBalanceResponse:
    """Remaining and purchased tokens per model of the project's active pack."""
    await _require_project(db, project_id, user.user_id)

    balance = await TokenMeteringService(db).get_balance(project_id)
    return TokenBalanceResponse(
        project_id=project_id,
        pack_id=balance.pack_id,
        remaining=balance.remaining,
        purchased=balance.purchased,
        total_remaining=balance.total,
        expires_at=balance.expires_at.isoformat() if balance.expires_at else None,
    )


@router.get(
    "/v1/projects/{project_id}/tokens/transactions",
    response_model=TokenTransactionListResponse,
)
async def list_token_transactions(
    project_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> TokenTransactionListResponse:
    """Token purchase history of a project, newest first."""
    await _require_project(db, project_id, user.user_id)

    transactions, total = await TokenMeteringService(db).list_transactions(
        project_id, limit=limit, offset=offset
    )
    return TokenTransactionListResponse(
        transactions=[transaction_to_item(t) for t in transactions],
        total_count=total,
    )


@router.get("/v1/projects/{project_id}/tokens/usage", response_model=TokenUsageResponse)
async def get_token_usage(
    project_id: UUID,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> TokenUsageResponse:
    """Token consumption per model plus the most recent usage log rows."""
    await _require_project(db, project_id, user.user_id)

    service = TokenMeteringService(db)
    summary = await service.get_usage_summary(project_id)
    logs = await service.list_usage_logs(project_id, limit=limit)
    return TokenUsageResponse(
        summary=[
            UsageSummaryItem(model=s.model, tokens_used=s.tokens_used, calls=s.calls)
            for s in summary
        ],
        logs=[usage_log_to_item(u) for u in logs],
    )


@router.get(
    "/v1/projects/{project_id}/tokens/reconciliation",
    response_model=ReconciliationResponse,
)
async def reconcile_tokens(
    project_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ReconciliationResponse:
    """
    Compare the active pack against the purchase and usage ledgers.

    drift is actual minus expected remaining; zero everywhere means the
    denormalized balance agrees with the ledgers.
    """
    await _require_project(db, project_id, user.user_id)

    service = TokenMeteringService(db)
    rows = await service.reconcile(project_id)
    pack = await service.find_active_pack(project_id)

    items = [
        ReconciliationItem(
            model=r.model,
            purchased=r.purchased,
            consumed=r.consumed,
            expected_remaining=r.expected_remaining,
            actual_remaining=r.actual_remaining,
            drift=r.drift,
        )
        for r in rows
    ]
    return ReconciliationResponse(
        project_id=project_id,
        pack_id=pack.id if pack is not None else None,
        items=items,
        consistent=all(item.drift == 0 for item in items),
    )


# =============================================================================
# Subscriptions
# =============================================================================


@router.post("/v1/billing/subscription/checkout", response_model=CheckoutResponse)
async def create_subscription_checkout(
    request: SubscriptionCheckoutRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> CheckoutResponse:
    """
    Subscribe to a plan, or switch the active subscription to it.

    A switch happens in place with immediate prorated invoicing and returns
    updated_in_place=true with a dashboard url.
    """
    service = SubscriptionService(db, provider, settings.site_url)
    change = PlanChange(plan_id=request.plan_id, interval=request.interval)
    try:
        redirect = await service.create_subscription_checkout(user, change)
    except InvalidPlanError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Payment provider error: {exc}",
        ) from exc
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc

    return CheckoutResponse(
        url=redirect.url,
        session_id=redirect.session_id,
        updated_in_place=redirect.updated_in_place,
    )


@router.post("/v1/billing/subscription/preview", response_model=ProrationPreviewResponse)
async def preview_subscription_change(
    request: SubscriptionCheckoutRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> ProrationPreviewResponse:
    """Preview the prorated invoice for switching the active subscription."""
    service = SubscriptionService(db, provider, settings.site_url)
    change = PlanChange(plan_id=request.plan_id, interval=request.interval)
    try:
        preview = await service.preview_plan_change(user.user_id, change)
    except InvalidPlanError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Payment provider error: {exc}",
        ) from exc

    return ProrationPreviewResponse(
        subscription_id=preview.subscription_id,
        target_price_id=preview.target_price_id,
        amount_due_minor=preview.amount_due_minor,
        currency=preview.currency,
        proration_minor=preview.proration_minor,
    )


@router.get("/v1/billing/info", response_model=BillingInfoResponse)
async def get_billing_info(
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> BillingInfoResponse:
    """Paid invoices, the active subscription and the current plan."""
    service = SubscriptionService(db, provider, settings.site_url)
    try:
        info = await service.get_billing_info(user.user_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Payment provider error: {exc}",
        ) from exc

    plan_details = None
    if info.plan is not None:
        plan_details = PlanResponse(
            id=info.plan.plan_id,
            name=info.plan.name,
            monthly_price=info.plan.monthly_price,
            yearly_price=info.plan.yearly_price,
            features=list(info.plan.features),
        )

    return BillingInfoResponse(
        invoices=[invoice_to_item(i) for i in info.invoices],
        subscription=(
            subscription_to_response(info.subscription) if info.subscription else None
        ),
        plan_details=plan_details,
    )


@router.get("/v1/billing/subscription/status", response_model=SubscriptionStatusResponse)
async def check_subscription_status(
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> SubscriptionStatusResponse:
    """Whether the user has an active subscription, and which plan it is."""
    service = SubscriptionService(db, provider, settings.site_url)
    try:
        result = await service.check_subscription_status(user.user_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Payment provider error: {exc}",
        ) from exc

    return SubscriptionStatusResponse(
        is_valid=result.is_valid,
        plan_name=result.plan_name,
        subscription=(
            subscription_to_response(result.subscription) if result.subscription else None
        ),
    )


async def _set_cancel_at_period_end(
    subscription_id: str,
    cancel: bool,
    db: AsyncSession,
    user: AuthenticatedUser,
    provider: PaymentProvider,
) -> SubscriptionResponse:
    service = SubscriptionService(db, provider, settings.site_url)
    try:
        subscription = await service.set_cancel_at_period_end(
            user.user_id, subscription_id, cancel
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
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Payment provider error: {exc}",
        ) from exc
    return subscription_to_response(subscription)


@router.post(
    "/v1/billing/subscription/{subscription_id}/cancel",
    response_model=SubscriptionResponse,
)
async def cancel_subscription(
    subscription_id: str,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> SubscriptionResponse:
    """Cancel at the end of the current period. The renewal date is kept."""
    return await _set_cancel_at_period_end(subscription_id, True, db, user, provider)


@router.post(
    "/v1/billing/subscription/{subscription_id}/resume",
    response_model=SubscriptionResponse,
)
async def resume_subscription(
    subscription_id: str,
    db: AsyncSession = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> SubscriptionResponse:
    """Undo a scheduled cancellation."""
    return await _set_cancel_at_period_end(subscription_id, False, db, user, provider)


# =============================================================================
# Webhooks
# =============================================================================


@router.post("/v1/billing/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> dict[str, str]:
    """
    Handle Stripe webhook events.

    Paid token-refill checkouts are credited to the project's pack; other
    events are acknowledged. Crediting is idempotent, so Stripe retries and
    the verify endpoint never double-credit.
    """
    # Read raw webhook payload
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        webhook_event = await provider.verify_webhook(payload, signature)

        logger.info(
            "stripe_webhook_received",
            event_id=webhook_event.event_id,
            event_type=webhook_event.event_type,
            object_id=webhook_event.object_id,
        )

        outcome = await TokenPurchaseService(db, provider).handle_webhook_event(webhook_event)
        return {"status": outcome, "event_id": webhook_event.event_id}

    except WebhookVerificationError as exc:
        logger.error("stripe_webhook_verification_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        ) from exc

    except Exception as exc:
        logger.error("stripe_webhook_processing_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc
