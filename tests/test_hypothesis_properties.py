"""
Hypothesis Property-Based Tests for token accounting.

Estimation, pro-rata splitting and pack offer building invariants.
"""

import math

from hypothesis import given, settings
from hypothesis import strategies as st

from app.models.domain import estimate_tokens
from app.services.assistant import make_chat_title
from app.services.catalog import PACK_AMOUNTS
from app.services.payment_provider import ProviderPrice
from app.services.token_metering import _as_token_map
from app.services.token_purchases import build_pack_offers, format_minor, split_amount_pro_rata

# ============================================================================
# Hypothesis Strategies
# ============================================================================

model_keys = st.sampled_from(["gemini-2.5-flash", "gemini-2.5-pro", "gemini-3-pro-preview"])
amounts_minor = st.integers(min_value=0, max_value=10_000_000)
token_maps = st.dictionaries(
    model_keys, st.integers(min_value=1, max_value=5_000_000), min_size=1, max_size=3
)
provider_prices = st.lists(
    st.builds(
        ProviderPrice,
        price_id=st.text(alphabet="abcdef0123456789", min_size=4, max_size=12).map(
            lambda s: f"price_{s}"
        ),
        unit_amount=st.integers(min_value=1, max_value=500_000),
        currency=st.just("eur"),
    ),
    max_size=8,
)


class TestEstimateTokensProperties:
    """Property-based tests for estimate_tokens."""

    @given(st.text(max_size=2000))
    @settings(max_examples=100)
    def test_is_ceiling_of_quarter_length(self, text):
        """Estimate is ceil(len / 4)."""
        assert estimate_tokens(text) == math.ceil(len(text) / 4)

    @given(st.text(max_size=500), st.text(max_size=500))
    @settings(max_examples=100)
    def test_monotonic_in_length(self, a, b):
        """Longer text never costs fewer tokens."""
        assert estimate_tokens(a + b) >= estimate_tokens(a)

    @given(st.text(min_size=1, max_size=500))
    @settings(max_examples=50)
    def test_non_empty_costs_something(self, text):
        """Any non-empty text costs at least one token."""
        assert estimate_tokens(text) >= 1


class TestSplitAmountProperties:
    """Property-based tests for split_amount_pro_rata."""

    @given(amounts_minor, token_maps)
    @settings(max_examples=200)
    def test_shares_sum_to_amount(self, amount, tokens):
        """Shares always add up to the amount paid."""
        assert sum(split_amount_pro_rata(amount, tokens).values()) == amount

    @given(amounts_minor, token_maps)
    @settings(max_examples=200)
    def test_shares_non_negative(self, amount, tokens):
        """No model gets a negative share."""
        assert all(v >= 0 for v in split_amount_pro_rata(amount, tokens).values())

    @given(amounts_minor, token_maps)
    @settings(max_examples=100)
    def test_every_model_present(self, amount, tokens):
        """Each purchased model gets a ledger share."""
        assert set(split_amount_pro_rata(amount, tokens)) == set(tokens)


class TestBuildPackOffersProperties:
    """Property-based tests for build_pack_offers."""

    @given(provider_prices)
    @settings(max_examples=100)
    def test_standard_offers_sorted_and_bounded(self, prices):
        """Standard offers follow the pack sizes with non-decreasing prices."""
        offers = build_pack_offers("prod_1", prices, enterprise=False)

        assert len(offers) == min(len(prices), len(PACK_AMOUNTS))
        assert [o.amount for o in offers] == list(PACK_AMOUNTS[: len(offers)])
        unit_amounts = [o.unit_amount for o in offers]
        assert unit_amounts == sorted(unit_amounts)
        assert not any(o.is_ad_hoc for o in offers)

    @given(provider_prices.filter(lambda p: 0 < len(p) < 3))
    @settings(max_examples=100)
    def test_sparse_enterprise_is_ad_hoc(self, prices):
        """Sparse enterprise catalogs give every pack size an ad-hoc price."""
        offers = build_pack_offers("prod_ent", prices, enterprise=True)

        assert [o.amount for o in offers] == list(PACK_AMOUNTS)
        assert all(o.is_ad_hoc and o.price_id is None for o in offers)
        reference = min(p.unit_amount for p in prices)
        assert offers[3].unit_amount == reference

    @given(provider_prices)
    @settings(max_examples=50)
    def test_display_price_matches_unit_amount(self, prices):
        """The display price is the unit amount in major units."""
        for offer in build_pack_offers("prod_1", prices, enterprise=True):
            assert offer.display_price == format_minor(offer.unit_amount)


class TestTitleAndMapProperties:
    """Property-based tests for chat titles and token map parsing."""

    @given(st.text(max_size=200))
    @settings(max_examples=100)
    def test_title_bounded(self, prompt):
        """Titles never exceed 30 characters plus the ellipsis."""
        title = make_chat_title(prompt)
        assert len(title) <= 33
        assert prompt.startswith(title.removesuffix("...")) or title == prompt

    @given(st.dictionaries(model_keys, st.integers(min_value=0, max_value=10**9)))
    @settings(max_examples=100)
    def test_integer_maps_unchanged(self, raw):
        """Well-formed maps parse to themselves."""
        assert _as_token_map(raw) == raw
