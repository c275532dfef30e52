"""
settlement.py - Batch Settlement

Converts the deposit and redemption fulfillments of one epoch into shares or
assets at a single price, feeds the totals into the share class registry, and
keeps a cumulative summary per (pool, share class, epoch). Each processing
call replaces that epoch's summary with one whose totals only grow; the
append-only audit trail is `history`, one immutable record per call.

    shares = amount / price     (truncated to AMOUNT_DECIMAL_PLACES)
    assets = shares * price     (truncated to AMOUNT_DECIMAL_PLACES)

A conversion that truncates to zero is rejected rather than silently minting
or burning nothing. Truncation always favours the pool.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from .core import (
    AMOUNT_DECIMAL_PLACES, EpochId, NetworkId, PoolId, ShareClassId, TimeSource, ZERO,
    DustOrder, ZeroPrice,
    quantize, require_amount,
)
from .share_class import ShareClassRegistry

logger = logging.getLogger(__name__)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class DepositFulfillment:
    """A deposit order filled this epoch: amount of pool currency in, shares out on network_id."""
    amount: Decimal
    network_id: NetworkId
    investor: Optional[str] = None


@dataclass(frozen=True, slots=True)
class RedeemFulfillment:
    """A redemption order filled this epoch: shares in on network_id, assets out."""
    shares: Decimal
    network_id: NetworkId
    investor: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SettledOrder:
    investor: Optional[str]
    network_id: NetworkId
    assets: Decimal
    shares: Decimal


@dataclass(frozen=True, slots=True)
class SettlementResult:
    """
    Outcome of one process_deposits() or process_redemptions() call.

    Attributes:
        is_deposit: True for deposits, False for redemptions
        orders: Per-fulfillment conversion, in input order
        total_assets: Sum of assets deposited or returned
        total_shares: Sum of shares issued or redeemed
        per_network: Shares issued or revoked per network, in first-seen order
    """
    pool_id: PoolId
    sc_id: ShareClassId
    epoch_id: EpochId
    price: Decimal
    is_deposit: bool
    orders: Tuple[SettledOrder, ...]
    total_assets: Decimal
    total_shares: Decimal
    per_network: Dict[NetworkId, Decimal]
    processed_at: datetime


@dataclass(frozen=True, slots=True)
class BatchSummary:
    """Cumulative settlement totals of one epoch."""
    pool_id: PoolId
    sc_id: ShareClassId
    epoch_id: EpochId
    deposited: Decimal = ZERO
    shares_issued: Decimal = ZERO
    shares_redeemed: Decimal = ZERO
    assets_returned: Decimal = ZERO
    processed_at: Optional[datetime] = None


# ============================================================================
# PURE CONVERSIONS
# ============================================================================

def _require_price(price: Decimal) -> Decimal:
    price = require_amount(price, "price", allow_zero=True)
    if price == 0:
        raise ZeroPrice("Settlement price must be positive, got 0", price=price)
    return price


def calculate_shares_for_deposit(amount: Decimal, price: Decimal) -> Decimal:
    """Shares bought by amount at price, truncated to the share scale."""
    price = _require_price(price)
    amount = require_amount(amount, allow_zero=True)
    return quantize(amount / price, AMOUNT_DECIMAL_PLACES)


def calculate_assets_for_redeem(shares: Decimal, price: Decimal) -> Decimal:
    """Assets paid for shares at price, truncated to the amount scale."""
    price = _require_price(price)
    shares = require_amount(shares, "shares", allow_zero=True)
    return quantize(shares * price, AMOUNT_DECIMAL_PLACES)


# ============================================================================
# BATCH SETTLEMENT
# ============================================================================

class BatchSettlement:
    """Epoch settlement feeding issuance counters of the share class registry."""

    def __init__(self, share_classes: ShareClassRegistry, clock: TimeSource):
        self.share_classes = share_classes
        self.clock = clock
        self.history: List[SettlementResult] = []
        self._summaries: Dict[Tuple[PoolId, ShareClassId, EpochId], BatchSummary] = {}

    def summary(self, pool_id: PoolId, sc_id: ShareClassId, epoch_id: EpochId) -> Optional[BatchSummary]:
        """
        Latest cumulative totals of an epoch, or None if nothing settled.

        The record is replaced on every processing call for the epoch; use
        history for the per-call records.
        """
        return self._summaries.get((pool_id, sc_id, epoch_id))

    def summaries(self, pool_id: PoolId, sc_id: ShareClassId) -> List[BatchSummary]:
        """All epoch summaries of a share class, ordered by epoch."""
        found = [s for (p, c, _), s in self._summaries.items() if p == pool_id and c == sc_id]
        return sorted(found, key=lambda s: s.epoch_id)

    def process_deposits(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        epoch_id: EpochId,
        price: Decimal,
        fulfillments: Sequence[DepositFulfillment],
    ) -> SettlementResult:
        """
        Convert deposits into shares and record the issuance per network.

        Raises:
            ZeroPrice: If price is not positive
            DustOrder: If any deposit converts to zero shares
            ShareClassNotFound: If the share class does not exist
        """
        price = _require_price(price)
        self.share_classes.get(pool_id, sc_id)

        orders = []
        for fulfillment in fulfillments:
            amount = require_amount(fulfillment.amount)
            shares = calculate_shares_for_deposit(amount, price)
            if shares == 0:
                raise DustOrder(
                    f"Deposit of {amount} at price {price} converts to zero shares",
                    pool_id=pool_id, sc_id=sc_id, epoch_id=epoch_id,
                    amount=amount, price=price, investor=fulfillment.investor,
                )
            orders.append(SettledOrder(fulfillment.investor, fulfillment.network_id, amount, shares))

        result = self._record(pool_id, sc_id, epoch_id, price, True, orders)
        for network_id, shares in result.per_network.items():
            self.share_classes.update_shares(pool_id, sc_id, network_id, shares, ZERO)
        return result

    def process_redemptions(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        epoch_id: EpochId,
        price: Decimal,
        fulfillments: Sequence[RedeemFulfillment],
    ) -> SettlementResult:
        """
        Convert redeemed shares into assets and record the revocation per network.

        Raises:
            ZeroPrice: If price is not positive
            DustOrder: If any redemption converts to zero assets
            ShareClassNotFound: If the share class does not exist
        """
        price = _require_price(price)
        self.share_classes.get(pool_id, sc_id)

        orders = []
        for fulfillment in fulfillments:
            shares = require_amount(fulfillment.shares, "shares")
            assets = calculate_assets_for_redeem(shares, price)
            if assets == 0:
                raise DustOrder(
                    f"Redemption of {shares} shares at price {price} converts to zero assets",
                    pool_id=pool_id, sc_id=sc_id, epoch_id=epoch_id,
                    shares=shares, price=price, investor=fulfillment.investor,
                )
            orders.append(SettledOrder(fulfillment.investor, fulfillment.network_id, assets, shares))

        result = self._record(pool_id, sc_id, epoch_id, price, False, orders)
        for network_id, shares in result.per_network.items():
            self.share_classes.update_shares(pool_id, sc_id, network_id, ZERO, shares)
        return result

    # ========================================================================
    # CHECKPOINTS
    # ========================================================================

    def checkpoint(self) -> Tuple[int, Dict]:
        return len(self.history), dict(self._summaries)

    def restore(self, checkpoint: Tuple[int, Dict]) -> None:
        history_length, summaries = checkpoint
        del self.history[history_length:]
        self._summaries = dict(summaries)

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _record(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        epoch_id: EpochId,
        price: Decimal,
        is_deposit: bool,
        orders: List[SettledOrder],
    ) -> SettlementResult:
        """Append the call to history and fold it into the epoch's summary record."""
        per_network: Dict[NetworkId, Decimal] = {}
        for order in orders:
            per_network[order.network_id] = per_network.get(order.network_id, ZERO) + order.shares
        total_assets = sum((o.assets for o in orders), ZERO)
        total_shares = sum((o.shares for o in orders), ZERO)
        now = self.clock.current_time

        key = (pool_id, sc_id, epoch_id)
        summary = self._summaries.get(key) or BatchSummary(pool_id, sc_id, epoch_id)
        if is_deposit:
            summary = replace(
                summary,
                deposited=summary.deposited + total_assets,
                shares_issued=summary.shares_issued + total_shares,
                processed_at=now,
            )
        else:
            summary = replace(
                summary,
                shares_redeemed=summary.shares_redeemed + total_shares,
                assets_returned=summary.assets_returned + total_assets,
                processed_at=now,
            )
        self._summaries[key] = summary

        result = SettlementResult(
            pool_id=pool_id,
            sc_id=sc_id,
            epoch_id=epoch_id,
            price=price,
            is_deposit=is_deposit,
            orders=tuple(orders),
            total_assets=total_assets,
            total_shares=total_shares,
            per_network=per_network,
            processed_at=now,
        )
        self.history.append(result)
        logger.info("pool %s share class %s epoch %s: %s %d orders, %s assets / %s shares at %s",
                    pool_id, sc_id, epoch_id, "deposited" if is_deposit else "redeemed",
                    len(orders), total_assets, total_shares, price)
        return result
