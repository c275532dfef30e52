"""
valuation.py - Valuation providers for holdings and the price guard

Provides the pluggable pricing capability consumed by the Holdings Tracker
(to requote positions) and the Price Guard (to check staleness).

Classes:
- ValuationProvider: Protocol defining the valuation interface
- IdentityValuation: Every supported asset prices at exactly 1.0
- StaticValuation: Settable prices, each stamped with the time it was set
- TimeSeriesValuation: Historical prices, read at the clock's current time

All prices are normalized: one unit of the asset expressed in the pool's
accounting currency, at PRICE_DECIMAL_PLACES.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple, runtime_checkable
from bisect import bisect_right

from .core import (
    AMOUNT_DECIMAL_PLACES, AssetId, TimeSource,
    PriceUnavailable,
    quantize, require_amount, to_decimal,
)


@runtime_checkable
class ValuationProvider(Protocol):
    """
    Protocol for valuation providers.

    A valuation provider prices an asset in the pool's accounting currency
    and reports when that price was last refreshed.
    """

    def get_price(self, asset_id: AssetId) -> Decimal:
        """Price of one unit of the asset."""
        ...

    def get_quote(self, base_amount: Decimal, asset_id: AssetId) -> Decimal:
        """Value of base_amount units of the asset."""
        ...

    def is_supported(self, asset_id: AssetId) -> bool:
        ...

    def last_updated(self, asset_id: AssetId) -> Optional[datetime]:
        """Time of the price currently in force, or None if never priced."""
        ...


def _quote(base_amount: Decimal, price: Decimal) -> Decimal:
    return quantize(to_decimal(base_amount) * price, AMOUNT_DECIMAL_PLACES)


class IdentityValuation:
    """
    Valuation that prices every asset at 1.0.

    Used for the pool's own accounting currency. It never goes stale.
    """

    def __init__(self, clock: TimeSource):
        self.clock = clock

    def get_price(self, asset_id: AssetId) -> Decimal:
        return Decimal("1")

    def get_quote(self, base_amount: Decimal, asset_id: AssetId) -> Decimal:
        return _quote(base_amount, Decimal("1"))

    def is_supported(self, asset_id: AssetId) -> bool:
        return True

    def last_updated(self, asset_id: AssetId) -> Optional[datetime]:
        return self.clock.current_time

    def __repr__(self):
        return "IdentityValuation()"


class StaticValuation:
    """
    Valuation with explicitly set prices.

    Each price is stamped with the clock's time when it is set, so staleness
    checks see exactly when an oracle last pushed an update.
    """

    def __init__(self, clock: TimeSource, prices: Optional[Dict[AssetId, Decimal]] = None):
        """
        Initialize with an optional starting price map.

        Args:
            clock: Time source used to stamp updates
            prices: Dictionary mapping asset ids to prices
        """
        self.clock = clock
        self.prices: Dict[AssetId, Decimal] = {}
        self.updated_at: Dict[AssetId, datetime] = {}
        if prices:
            self.update_prices(prices)

    def get_price(self, asset_id: AssetId) -> Decimal:
        """
        Raises:
            PriceUnavailable: If the asset has never been priced
        """
        price = self.prices.get(asset_id)
        if price is None:
            raise PriceUnavailable(f"No price for asset {asset_id}", asset_id=asset_id)
        return price

    def get_quote(self, base_amount: Decimal, asset_id: AssetId) -> Decimal:
        return _quote(base_amount, self.get_price(asset_id))

    def is_supported(self, asset_id: AssetId) -> bool:
        return asset_id in self.prices

    def last_updated(self, asset_id: AssetId) -> Optional[datetime]:
        return self.updated_at.get(asset_id)

    def update_price(self, asset_id: AssetId, price: Decimal) -> None:
        """Set the price of an asset, stamped with the current time."""
        self.prices[asset_id] = require_amount(price, "price", allow_zero=True)
        self.updated_at[asset_id] = self.clock.current_time

    def update_prices(self, prices: Dict[AssetId, Decimal]) -> None:
        """Update multiple prices at once."""
        for asset_id, price in prices.items():
            self.update_price(asset_id, price)

    def __repr__(self):
        return f"StaticValuation({len(self.prices)} prices)"


class TimeSeriesValuation:
    """
    Valuation backed by price history.

    Uses the most recent observation at or before the clock's current time,
    and reports that observation's timestamp as the last update.
    """

    def __init__(
        self,
        clock: TimeSource,
        price_paths: Optional[Dict[AssetId, Iterable[Tuple[datetime, Decimal]]]] = None,
    ):
        """
        Initialize the valuation.

        Args:
            clock: Time source that selects the observation in force
            price_paths: Optional dict mapping asset ids to (timestamp, price) pairs

        Example:
            valuation = TimeSeriesValuation(clock, {
                usdc: [(t0, Decimal("1")), (t1, Decimal("0.999"))],
            })
        """
        self.clock = clock
        self.price_history: Dict[AssetId, List[Tuple[datetime, Decimal]]] = {}

        if price_paths:
            for asset_id, path in price_paths.items():
                for timestamp, price in path:
                    self.add_price(asset_id, timestamp, price)

    def add_price(self, asset_id: AssetId, timestamp: datetime, price: Decimal) -> None:
        """Add a price observation for an asset at a specific time."""
        history = self.price_history.setdefault(asset_id, [])
        history.append((timestamp, require_amount(price, "price", allow_zero=True)))
        history.sort(key=lambda x: x[0])

    def _observation(self, asset_id: AssetId) -> Optional[Tuple[datetime, Decimal]]:
        history = self.price_history.get(asset_id)
        if not history:
            return None
        # Rightmost observation with ts <= now
        timestamps = [ts for ts, _ in history]
        idx = bisect_right(timestamps, self.clock.current_time)
        if idx == 0:
            return None
        return history[idx - 1]

    def get_price(self, asset_id: AssetId) -> Decimal:
        """
        Raises:
            PriceUnavailable: If there is no observation at or before now
        """
        observation = self._observation(asset_id)
        if observation is None:
            raise PriceUnavailable(
                f"No price for asset {asset_id} at {self.clock.current_time}",
                asset_id=asset_id, timestamp=self.clock.current_time,
            )
        return observation[1]

    def get_quote(self, base_amount: Decimal, asset_id: AssetId) -> Decimal:
        return _quote(base_amount, self.get_price(asset_id))

    def is_supported(self, asset_id: AssetId) -> bool:
        return asset_id in self.price_history

    def last_updated(self, asset_id: AssetId) -> Optional[datetime]:
        observation = self._observation(asset_id)
        return observation[0] if observation else None

    def get_all_timestamps(self, asset_id: Optional[AssetId] = None) -> List[datetime]:
        """
        Get all observation timestamps, for one asset or the union over all.
        """
        if asset_id is not None:
            return [ts for ts, _ in self.price_history.get(asset_id, [])]
        all_times: Set[datetime] = set()
        for path in self.price_history.values():
            all_times.update(ts for ts, _ in path)
        return sorted(all_times)

    def __repr__(self):
        total_observations = sum(len(history) for history in self.price_history.values())
        return f"TimeSeriesValuation({len(self.price_history)} assets, {total_observations} observations)"
