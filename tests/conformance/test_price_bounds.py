"""
Price Bound Conformance Tests

INVARIANT: The guard measures every move in whole basis points within
[0, MAX_BPS], and accepts a price exactly when the move is within the
configured ceiling.

    accepted(old, new) ⟺ bps(old, new) ≤ max_price_change_bps
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal
from datetime import datetime

from poolledger import Clock, PriceGuard, PriceChangeTooLarge, MAX_BPS, price_change_bps


PRICES = st.decimals(min_value=Decimal("0.000001"), max_value=Decimal("1000000"),
                     places=6, allow_nan=False, allow_infinity=False)


def _guard(max_bps: int) -> PriceGuard:
    guard = PriceGuard(Clock(datetime(2025, 1, 1)))
    guard.grant_admin(1, "admin")
    guard.configure_guard(1, "admin", max_price_change_bps=max_bps)
    return guard


class TestPriceBoundProperties:
    """Property-based guard tests."""

    @given(PRICES, PRICES)
    @settings(max_examples=50)
    def test_bps_bounded(self, old, new):
        """
        PROPERTY: 0 ≤ bps ≤ MAX_BPS.
        """
        assert 0 <= price_change_bps(old, new) <= MAX_BPS

    @given(PRICES)
    @settings(max_examples=50)
    def test_unchanged_price_is_zero(self, price):
        assert price_change_bps(price, price) == 0

    @given(PRICES, PRICES, st.integers(min_value=0, max_value=MAX_BPS))
    @settings(max_examples=50)
    def test_acceptance_matches_ceiling(self, old, new, max_bps):
        """
        PROPERTY: validate_price() accepts iff the move is within the ceiling,
        and a rejected price never becomes the baseline.
        """
        guard = _guard(max_bps)
        guard.validate_price(1, "0xsc", old)
        change = price_change_bps(old, new)

        if change <= max_bps:
            assert guard.validate_price(1, "0xsc", new) == change
            assert guard.last_validated_price(1, "0xsc") == new
        else:
            with pytest.raises(PriceChangeTooLarge):
                guard.validate_price(1, "0xsc", new)
            assert guard.last_validated_price(1, "0xsc") == old
