"""
Tests for TokenPurchaseService and the pack pricing helpers.

Crediting must be idempotent per checkout session: verifying the same
session twice adds tokens once.
"""

from dataclasses import replace
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from app.db.models import TokenPack, TokenTransaction
from app.exceptions import (
    AuthorizationError,
    DataIntegrityError,
    InvalidPackError,
    PaymentNotCompletedError,
)
from app.models.domain import CheckoutRedirect, TokenPackSelection
from app.services.catalog import PACK_AMOUNTS, TOKEN_PRODUCTS
from app.services.payment_provider import ProviderPrice, WebhookEvent
from app.services.token_purchases import (
    PURCHASE_SOURCE,
    TokenPurchaseService,
    build_pack_offers,
    format_minor,
    split_amount_pro_rata,
)
from conftest import create_checkout_session_data, create_mock_token_pack, make_result

FLASH = "gemini-2.5-flash"
PRO = "gemini-2.5-pro"


def _prices(*amounts: int) -> list[ProviderPrice]:
    return [ProviderPrice(price_id=f"price_{a}", unit_amount=a, currency="eur") for a in amounts]


def _added(db_session: AsyncMock, model: type) -> list:
    return [c.args[0] for c in db_session.add.call_args_list if isinstance(c.args[0], model)]


class TestFormatMinor:
    """Tests for format_minor."""

    @pytest.mark.parametrize("minor,expected", [(0, "0.00"), (5, "0.05"), (1999, "19.99")])
    def test_two_decimals(self, minor, expected):
        """Minor units render with two decimals."""
        assert format_minor(minor) == expected


class TestBuildPackOffers:
    """Tests for build_pack_offers."""

    def test_prices_sorted_onto_sizes(self):
        """Cheapest price goes to the smallest pack."""
        offers = build_pack_offers("prod_1", _prices(3000, 500, 1200), enterprise=False)

        assert [o.amount for o in offers] == list(PACK_AMOUNTS[:3])
        assert [o.unit_amount for o in offers] == [500, 1200, 3000]
        assert offers[0].price_id == "price_500"
        assert offers[0].display_price == "5.00"
        assert all(not o.is_ad_hoc for o in offers)

    def test_extra_prices_dropped(self):
        """Prices beyond the pack sizes are ignored."""
        offers = build_pack_offers("prod_1", _prices(*range(100, 800, 100)), enterprise=False)
        assert len(offers) == len(PACK_AMOUNTS)

    def test_enterprise_ad_hoc_scaling(self):
        """Sparse enterprise products get prices scaled from the cheapest one."""
        offers = build_pack_offers("prod_ent", _prices(10_000, 20_000), enterprise=True)

        assert [o.amount for o in offers] == list(PACK_AMOUNTS)
        assert [o.unit_amount for o in offers] == [1000, 2500, 5000, 10_000, 20_000]
        assert all(o.is_ad_hoc and o.price_id is None for o in offers)
        assert offers[0].base_product_id == "prod_ent"

    def test_enterprise_with_full_catalog(self):
        """Enterprise products with enough prices use them as is."""
        offers = build_pack_offers("prod_ent", _prices(1, 2, 3), enterprise=True)
        assert all(not o.is_ad_hoc for o in offers)

    def test_no_prices(self):
        """No prices, no offers, even for enterprise."""
        assert build_pack_offers("prod_ent", [], enterprise=True) == []


class TestSplitAmountProRata:
    """Tests for split_amount_pro_rata."""

    def test_single_model(self):
        """One model gets everything."""
        assert split_amount_pro_rata(1500, {FLASH: 100_000}) == {FLASH: 1500}

    def test_remainder_to_last_model(self):
        """Shares are floored and the last model absorbs the remainder."""
        shares = split_amount_pro_rata(100, {FLASH: 1, PRO: 1, "gemini-3-pro-preview": 1})
        assert shares == {FLASH: 33, PRO: 33, "gemini-3-pro-preview": 34}

    def test_zero_tokens(self):
        """No tokens, nothing to allocate."""
        assert split_amount_pro_rata(100, {FLASH: 0}) == {FLASH: 0}


class TestListTokenPacks:
    """Tests for list_token_packs."""

    async def test_unknown_model(self, db_session: AsyncMock, mock_payment_provider: AsyncMock):
        """Unknown models have no packs and Stripe isn't asked."""
        service = TokenPurchaseService(db_session, mock_payment_provider)
        assert await service.list_token_packs("gpt-4", enterprise=False) == []
        mock_payment_provider.list_active_prices.assert_not_called()

    async def test_enterprise_product_used(
        self, db_session: AsyncMock, mock_payment_provider: AsyncMock
    ):
        """The enterprise flag picks the enterprise product."""
        mock_payment_provider.list_active_prices = AsyncMock(return_value=_prices(900))
        service = TokenPurchaseService(db_session, mock_payment_provider)

        offers = await service.list_token_packs(PRO, enterprise=True)

        mock_payment_provider.list_active_prices.assert_awaited_once_with(
            TOKEN_PRODUCTS[PRO].enterprise_product_id
        )
        assert offers[0].is_ad_hoc is True


class TestCreateTokenCheckout:
    """Tests for create_token_checkout selection resolution."""

    async def test_price_matched_against_catalog(
        self, db_session: AsyncMock, mock_payment_provider: AsyncMock
    ):
        """Client-sent amounts are replaced by the catalog's."""
        mock_payment_provider.list_active_prices = AsyncMock(return_value=_prices(500, 1200))
        mock_payment_provider.create_token_checkout = AsyncMock(
            return_value=CheckoutRedirect(url="https://checkout.test", session_id="cs_1")
        )
        service = TokenPurchaseService(db_session, mock_payment_provider)
        selection = TokenPackSelection(
            model_key=FLASH, amount=PACK_AMOUNTS[1], price_id="price_1200", unit_amount=1
        )

        redirect = await service.create_token_checkout(uuid4(), uuid4(), None, selection)

        resolved = mock_payment_provider.create_token_checkout.call_args.args[3]
        assert resolved.unit_amount == 1200
        assert resolved.price_id == "price_1200"
        assert redirect.session_id == "cs_1"

    async def test_ad_hoc_matched_on_enterprise(
        self, db_session: AsyncMock, mock_payment_provider: AsyncMock
    ):
        """Ad-hoc selections resolve against the enterprise offers."""

        async def prices(product_id: str):
            if product_id == TOKEN_PRODUCTS[PRO].enterprise_product_id:
                return _prices(10_000)
            return _prices(700, 1500, 2800)

        mock_payment_provider.list_active_prices = AsyncMock(side_effect=prices)
        service = TokenPurchaseService(db_session, mock_payment_provider)
        selection = TokenPackSelection(
            model_key=PRO, amount=250_000, unit_amount=1, is_ad_hoc=True
        )

        await service.create_token_checkout(uuid4(), uuid4(), None, selection)

        resolved = mock_payment_provider.create_token_checkout.call_args.args[3]
        assert resolved.is_ad_hoc is True
        assert resolved.unit_amount == 2500
        assert resolved.base_product_id == TOKEN_PRODUCTS[PRO].enterprise_product_id

    async def test_no_matching_pack(
        self, db_session: AsyncMock, mock_payment_provider: AsyncMock
    ):
        """A price id not in the catalog is rejected."""
        mock_payment_provider.list_active_prices = AsyncMock(return_value=_prices(500))
        service = TokenPurchaseService(db_session, mock_payment_provider)
        selection = TokenPackSelection(model_key=FLASH, amount=100_000, price_id="price_forged")

        with pytest.raises(InvalidPackError):
            await service.create_token_checkout(uuid4(), uuid4(), None, selection)
        mock_payment_provider.create_token_checkout.assert_not_called()

    async def test_unknown_model(self, db_session: AsyncMock, mock_payment_provider: AsyncMock):
        """Unknown models are invalid packs."""
        service = TokenPurchaseService(db_session, mock_payment_provider)
        with pytest.raises(InvalidPackError, match="unknown model"):
            await service.create_token_checkout(
                uuid4(), uuid4(), None, TokenPackSelection(model_key="gpt-4", amount=1)
            )


class TestCreditCheckoutSession:
    """Tests for credit_checkout_session."""

    async def test_creates_pack_when_none(self, db_session: AsyncMock):
        """Without an active pack a new one is created."""
        data = create_checkout_session_data(
            purchased_tokens={FLASH: 100_000, PRO: 300_000}, amount_total_minor=1001
        )
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=None), make_result(scalar=None)]
        )
        created = create_mock_token_pack(
            project_id=data.project_id, remaining={FLASH: 100_000, PRO: 300_000}
        )
        db_session.get = AsyncMock(return_value=created)

        result = await TokenPurchaseService(db_session, AsyncMock()).credit_checkout_session(data)

        transactions = _added(db_session, TokenTransaction)
        assert {t.model_key: t.amount_paid_minor for t in transactions} == {FLASH: 250, PRO: 751}
        assert all(t.source == PURCHASE_SOURCE for t in transactions)
        assert all(t.stripe_session_id == data.session_id for t in transactions)

        packs = _added(db_session, TokenPack)
        assert packs[0].remaining_tokens == {FLASH: 100_000, PRO: 300_000}
        assert packs[0].price_paid_minor == 1001

        assert result.already_processed is False
        assert result.tokens_added == {FLASH: 100_000, PRO: 300_000}
        db_session.commit.assert_awaited_once()

    async def test_tops_up_existing_pack(self, db_session: AsyncMock):
        """An active pack is topped up per model and its expiry extended."""
        data = create_checkout_session_data(purchased_tokens={FLASH: 100_000})
        pack = create_mock_token_pack(
            project_id=data.project_id,
            remaining={FLASH: 5_000, PRO: 7},
            purchased={FLASH: 100_000, PRO: 10},
            price_paid_minor=500,
        )
        old_expiry = pack.expires_at
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=None), make_result(scalar=pack)]
        )
        db_session.get = AsyncMock(return_value=pack)

        result = await TokenPurchaseService(db_session, AsyncMock()).credit_checkout_session(data)

        assert pack.remaining_tokens == {FLASH: 105_000, PRO: 7}
        assert pack.tokens_purchased == {FLASH: 200_000, PRO: 10}
        assert pack.price_paid_minor == 1000
        assert pack.expires_at > old_expiry
        assert result.remaining == {FLASH: 105_000, PRO: 7}
        assert _added(db_session, TokenPack) == []

    async def test_already_credited(self, db_session: AsyncMock):
        """A session with ledger rows is reported without changing balances."""
        data = create_checkout_session_data()
        pack = create_mock_token_pack(project_id=data.project_id, remaining={FLASH: 42})
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=uuid4()), make_result(scalar=pack)]
        )

        result = await TokenPurchaseService(db_session, AsyncMock()).credit_checkout_session(data)

        assert result.already_processed is True
        assert result.tokens_added == {}
        assert result.session_id == data.session_id
        assert result.pack_id == pack.id
        assert result.remaining == {FLASH: 42}
        db_session.add.assert_not_called()
        db_session.commit.assert_not_called()

    async def test_concurrent_credit_detected(self, db_session: AsyncMock):
        """A unique-constraint violation on flush means another request won."""
        data = create_checkout_session_data()
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=None), make_result(scalar=None)]
        )
        db_session.flush = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("uq_token_transaction_session"))
        )

        result = await TokenPurchaseService(db_session, AsyncMock()).credit_checkout_session(data)

        assert result.already_processed is True
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_called()

    async def test_missing_project(self, db_session: AsyncMock):
        """Sessions without a projectId can't be credited."""
        data = create_checkout_session_data()
        data = replace(data, project_id=None)
        with pytest.raises(DataIntegrityError, match="no projectId"):
            await TokenPurchaseService(db_session, AsyncMock()).credit_checkout_session(data)

    async def test_no_tokens(self, db_session: AsyncMock):
        """Sessions without positive token amounts can't be credited."""
        data = create_checkout_session_data(purchased_tokens={FLASH: 0})
        with pytest.raises(DataIntegrityError, match="no purchased tokens"):
            await TokenPurchaseService(db_session, AsyncMock()).credit_checkout_session(data)


class TestVerifyTokenPurchase:
    """Tests for verify_token_purchase."""

    async def test_verify_twice_credits_once(
        self, db_session: AsyncMock, mock_payment_provider: AsyncMock
    ):
        """The second verification finds the ledger rows and adds nothing."""
        user_id = uuid4()
        data = create_checkout_session_data(user_id=user_id)
        mock_payment_provider.retrieve_checkout_session = AsyncMock(return_value=data)
        pack = create_mock_token_pack(project_id=data.project_id, remaining={FLASH: 100_000})
        db_session.execute = AsyncMock(
            side_effect=[
                # first call: not credited, no pack yet
                make_result(scalar=None),
                make_result(scalar=None),
                # second call: credited, balance read
                make_result(scalar=uuid4()),
                make_result(scalar=pack),
            ]
        )
        db_session.get = AsyncMock(return_value=pack)
        service = TokenPurchaseService(db_session, mock_payment_provider)

        first = await service.verify_token_purchase(data.session_id, user_id)
        second = await service.verify_token_purchase(data.session_id, user_id)

        assert first.already_processed is False
        assert first.tokens_added == {FLASH: 100_000}
        assert second.already_processed is True
        assert second.remaining == {FLASH: 100_000}
        assert len(_added(db_session, TokenTransaction)) == 1
        db_session.commit.assert_awaited_once()

    async def test_unpaid(self, db_session: AsyncMock, mock_payment_provider: AsyncMock):
        """Unpaid sessions are rejected."""
        mock_payment_provider.retrieve_checkout_session = AsyncMock(
            return_value=create_checkout_session_data(payment_status="unpaid")
        )
        with pytest.raises(PaymentNotCompletedError):
            await TokenPurchaseService(db_session, mock_payment_provider).verify_token_purchase(
                "cs_test_123"
            )

    async def test_not_token_refill(
        self, db_session: AsyncMock, mock_payment_provider: AsyncMock
    ):
        """Subscription checkouts aren't token purchases."""
        mock_payment_provider.retrieve_checkout_session = AsyncMock(
            return_value=create_checkout_session_data(purchase_type="subscription_update")
        )
        with pytest.raises(InvalidPackError):
            await TokenPurchaseService(db_session, mock_payment_provider).verify_token_purchase(
                "cs_test_123"
            )

    async def test_other_users_session(
        self, db_session: AsyncMock, mock_payment_provider: AsyncMock
    ):
        """Sessions bought by another user are forbidden."""
        mock_payment_provider.retrieve_checkout_session = AsyncMock(
            return_value=create_checkout_session_data(user_id=uuid4())
        )
        with pytest.raises(AuthorizationError):
            await TokenPurchaseService(db_session, mock_payment_provider).verify_token_purchase(
                "cs_test_123", uuid4()
            )
        db_session.execute.assert_not_called()


class TestHandleWebhookEvent:
    """Tests for handle_webhook_event."""

    async def test_non_checkout_event_ignored(self, db_session: AsyncMock):
        """Invoice and subscription events are acknowledged only."""
        event = WebhookEvent(event_id="evt_1", event_type="invoice.paid", object_id="in_1")
        outcome = await TokenPurchaseService(db_session, AsyncMock()).handle_webhook_event(event)
        assert outcome == "ignored"

    async def test_subscription_checkout_ignored(self, db_session: AsyncMock):
        """Subscription checkouts don't credit tokens."""
        event = WebhookEvent(
            event_id="evt_2",
            event_type="checkout.session.completed",
            object_id="cs_1",
            checkout_session=create_checkout_session_data(purchase_type="subscription_update"),
        )
        outcome = await TokenPurchaseService(db_session, AsyncMock()).handle_webhook_event(event)
        assert outcome == "ignored"
        db_session.execute.assert_not_called()

    async def test_unpaid_checkout(self, db_session: AsyncMock):
        """Completed but unpaid sessions wait for async payment."""
        event = WebhookEvent(
            event_id="evt_3",
            event_type="checkout.session.completed",
            object_id="cs_1",
            checkout_session=create_checkout_session_data(payment_status="unpaid"),
        )
        outcome = await TokenPurchaseService(db_session, AsyncMock()).handle_webhook_event(event)
        assert outcome == "unpaid"

    async def test_async_payment_credited(self, db_session: AsyncMock):
        """async_payment_succeeded credits the pack."""
        data = create_checkout_session_data()
        pack = create_mock_token_pack(project_id=data.project_id, remaining={FLASH: 100_000})
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=None), make_result(scalar=None)]
        )
        db_session.get = AsyncMock(return_value=pack)
        event = WebhookEvent(
            event_id="evt_4",
            event_type="checkout.session.async_payment_succeeded",
            object_id=data.session_id,
            checkout_session=data,
        )

        outcome = await TokenPurchaseService(db_session, AsyncMock()).handle_webhook_event(event)

        assert outcome == "credited"

    async def test_replayed_event(self, db_session: AsyncMock):
        """Replays of a credited session report already_processed."""
        data = create_checkout_session_data()
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=uuid4()), make_result(scalar=None)]
        )
        event = WebhookEvent(
            event_id="evt_5",
            event_type="checkout.session.completed",
            object_id=data.session_id,
            checkout_session=data,
        )

        outcome = await TokenPurchaseService(db_session, AsyncMock()).handle_webhook_event(event)

        assert outcome == "already_processed"
