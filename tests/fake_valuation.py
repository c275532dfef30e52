"""
fake_valuation.py - Test Helper for ValuationProvider

Provides a minimal ValuationProvider whose prices and update times are set
directly by the test, without going through a clock.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from poolledger import PriceUnavailable


class FakeValuation:
    """
    Minimal ValuationProvider for testing holdings and the price guard.

    Example:
        valuation = FakeValuation(
            prices={asset: Decimal("1.5")},
            updated={asset: datetime(2025, 1, 1)},
        )

        valuation.get_quote(Decimal("10"), asset)
        # Returns: Decimal("15.0")
    """

    def __init__(
        self,
        prices: Optional[Dict[int, Decimal]] = None,
        updated: Optional[Dict[int, datetime]] = None,
    ):
        self.prices = dict(prices or {})
        self.updated = dict(updated or {})

    def set(self, asset_id: int, price: Decimal, at: Optional[datetime] = None) -> None:
        self.prices[asset_id] = Decimal(price)
        if at is not None:
            self.updated[asset_id] = at

    def get_price(self, asset_id: int) -> Decimal:
        if asset_id not in self.prices:
            raise PriceUnavailable(f"No price for {asset_id}", asset_id=asset_id)
        return self.prices[asset_id]

    def get_quote(self, base_amount: Decimal, asset_id: int) -> Decimal:
        return Decimal(base_amount) * self.get_price(asset_id)

    def is_supported(self, asset_id: int) -> bool:
        return asset_id in self.prices

    def last_updated(self, asset_id: int) -> Optional[datetime]:
        return self.updated.get(asset_id)
