"""
epoch.py - Epoch Orchestration

Drives the close of one epoch for a share class across every component, as
a single all-or-nothing unit of work:

    1. checkpoint every component
    2. open a ledger batch for the pool
    3. require fresh valuations, then revalue the share class's holdings
    4. price = pool NAV / outstanding shares (or an explicit price)
    5. price guard approval, then store the price
    6. post holding increases (deposits) and decreases (redemptions)
    7. commit the batch
    8. settle deposits/redemptions into issuance counters
    9. optionally realize gain/loss into equity per network

If any step raises, the open batch is aborted, every component is restored
to its checkpoint and the error propagates unchanged. There is no retry;
the caller re-drives the epoch.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Sequence
import logging

from .core import (
    AMOUNT_DECIMAL_PLACES, PRICE_DECIMAL_PLACES,
    AssetId, Clock, EpochId, NetworkId, PoolId, ShareClassId,
    ZeroPrice,
    quantize, require_amount,
)
from .holdings import Holdings
from .ledger import JournalCommit, Ledger
from .nav import NavCalculator
from .price_guard import PriceGuard
from .settlement import (
    BatchSettlement, DepositFulfillment, RedeemFulfillment, SettlementResult,
    calculate_assets_for_redeem,
)
from .share_class import ShareClassRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EpochResult:
    """
    Outcome of a closed epoch.

    Attributes:
        price: Price per share the epoch settled at
        nav: Pool NAV the price was derived from (before settlement)
        change_bps: Price move approved by the guard
        commit: Ledger commit record of the epoch's batch
        deposits: Deposit settlement, or None if there were no deposits
        redemptions: Redemption settlement, or None if there were none
        realized: Net gain/loss moved into equity per network (if realized)
    """
    pool_id: PoolId
    sc_id: ShareClassId
    epoch_id: EpochId
    price: Decimal
    nav: Decimal
    change_bps: int
    commit: JournalCommit
    deposits: Optional[SettlementResult] = None
    redemptions: Optional[SettlementResult] = None
    realized: Dict[NetworkId, Decimal] = field(default_factory=dict)


class EpochProcessor:
    """Closes epochs by composing the ledger, holdings, NAV, pricing and settlement."""

    def __init__(
        self,
        ledger: Ledger,
        holdings: Holdings,
        nav: NavCalculator,
        share_classes: ShareClassRegistry,
        guard: PriceGuard,
        settlement: BatchSettlement,
    ):
        self.ledger = ledger
        self.holdings = holdings
        self.nav = nav
        self.share_classes = share_classes
        self.guard = guard
        self.settlement = settlement

    def derive_price(self, pool_id: PoolId, sc_id: ShareClassId) -> Decimal:
        """
        Pool NAV divided by the share class's outstanding shares.

        With no shares outstanding the stored price is kept, or 1 if none.
        The whole pool NAV is attributed to this share class; pools with
        several share classes pass an explicit price to close_epoch().
        """
        supply = self.share_classes.total_issuance(pool_id, sc_id)
        if supply == 0:
            price, _ = self.share_classes.price_per_share(pool_id, sc_id)
            return price if price else Decimal("1")
        nav = self.nav.pool_net_asset_value(pool_id)
        return quantize(nav / supply, PRICE_DECIMAL_PLACES)

    def close_epoch(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        epoch_id: EpochId,
        asset_id: AssetId,
        deposits: Sequence[DepositFulfillment] = (),
        redemptions: Sequence[RedeemFulfillment] = (),
        price: Optional[Decimal] = None,
        realize_gains: bool = False,
    ) -> EpochResult:
        """
        Close one epoch all-or-nothing.

        Args:
            asset_id: Holding that receives deposits and pays redemptions
            deposits: Deposit fulfillments, amounts in pool currency
            redemptions: Redemption fulfillments, in shares
            price: Explicit price per share; derived from NAV when None
            realize_gains: Fold gain/loss into equity on every network afterwards

        Returns:
            EpochResult describing the settlement

        Raises:
            LedgerError: Any failure of a component; nothing is left applied
        """
        self.share_classes.get(pool_id, sc_id)
        self.holdings.get_holding(pool_id, sc_id, asset_id)
        checkpoints = self._checkpoint()
        try:
            return self._close_epoch(
                pool_id, sc_id, epoch_id, asset_id, deposits, redemptions, price, realize_gains,
            )
        except Exception:
            logger.warning("epoch %s of pool %s / %s failed; rolling back",
                           epoch_id, pool_id, sc_id)
            self._restore(checkpoints)
            raise

    def _close_epoch(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        epoch_id: EpochId,
        asset_id: AssetId,
        deposits: Sequence[DepositFulfillment],
        redemptions: Sequence[RedeemFulfillment],
        price: Optional[Decimal],
        realize_gains: bool,
    ) -> EpochResult:
        now = self.ledger.current_time
        batch = self.ledger.open_batch(pool_id)

        for held_asset in self.holdings.list_assets(pool_id, sc_id):
            valuation = self.holdings.valuation(pool_id, sc_id, held_asset)
            if valuation is not None:
                self.guard.require_fresh_valuation(pool_id, valuation, held_asset)
            self.holdings.update(pool_id, sc_id, held_asset)

        nav = self.nav.pool_net_asset_value(pool_id)
        if price is None:
            price = self.derive_price(pool_id, sc_id)
        else:
            price = require_amount(price, "price")
        change_bps = self.guard.validate_price(pool_id, sc_id, price)
        self.share_classes.update_share_price(pool_id, sc_id, price, now)

        for deposit in deposits:
            amount = require_amount(deposit.amount)
            self.holdings.increase(pool_id, sc_id, asset_id, self._quantity(pool_id, sc_id, asset_id, amount), amount)
        for redemption in redemptions:
            assets = calculate_assets_for_redeem(redemption.shares, price)
            if assets > 0:
                self.holdings.decrease(pool_id, sc_id, asset_id, self._quantity(pool_id, sc_id, asset_id, assets), assets)

        commit = self.ledger.commit_batch(batch)

        deposit_result = None
        if deposits:
            deposit_result = self.settlement.process_deposits(pool_id, sc_id, epoch_id, price, deposits)
        redeem_result = None
        if redemptions:
            redeem_result = self.settlement.process_redemptions(pool_id, sc_id, epoch_id, price, redemptions)

        realized = {}
        if realize_gains:
            for network_id in self.nav.networks(pool_id):
                realized[network_id] = self.nav.close_gain_loss(pool_id, network_id)

        logger.info("closed epoch %s of pool %s / %s at price %s (NAV %s, %d bps)",
                    epoch_id, pool_id, sc_id, price, nav, change_bps)
        return EpochResult(
            pool_id=pool_id,
            sc_id=sc_id,
            epoch_id=epoch_id,
            price=price,
            nav=nav,
            change_bps=change_bps,
            commit=commit,
            deposits=deposit_result,
            redemptions=redeem_result,
            realized=realized,
        )

    def _quantity(self, pool_id: PoolId, sc_id: ShareClassId, asset_id: AssetId, value: Decimal) -> Decimal:
        """Units of the asset worth value in pool currency."""
        valuation = self.holdings.valuation(pool_id, sc_id, asset_id)
        if valuation is None:
            return value
        price = valuation.get_price(asset_id)
        if price <= 0:
            raise ZeroPrice(
                f"Asset {asset_id} has no positive price to convert {value} at",
                pool_id=pool_id, sc_id=sc_id, asset_id=asset_id, price=price,
            )
        return quantize(value / price, AMOUNT_DECIMAL_PLACES)

    def _checkpoint(self) -> dict:
        return {
            'ledger': self.ledger.checkpoint(),
            'holdings': self.holdings.checkpoint(),
            'nav': self.nav.checkpoint(),
            'share_classes': self.share_classes.checkpoint(),
            'guard': self.guard.checkpoint(),
            'settlement': self.settlement.checkpoint(),
        }

    def _restore(self, checkpoints: dict) -> None:
        self.ledger.restore(checkpoints['ledger'])
        self.holdings.restore(checkpoints['holdings'])
        self.nav.restore(checkpoints['nav'])
        self.share_classes.restore(checkpoints['share_classes'])
        self.guard.restore(checkpoints['guard'])
        self.settlement.restore(checkpoints['settlement'])


# ============================================================================
# WIRING
# ============================================================================

@dataclass
class Engine:
    """All components of one engine, sharing one clock and one ledger."""
    clock: Clock
    ledger: Ledger
    holdings: Holdings
    nav: NavCalculator
    share_classes: ShareClassRegistry
    guard: PriceGuard
    settlement: BatchSettlement
    epochs: EpochProcessor


def build_engine(
    name: str = "main",
    initial_time: Optional[datetime] = None,
    exclusive: bool = True,
) -> Engine:
    """
    Wire a complete engine.

    Example:
        engine = build_engine(initial_time=datetime(2025, 1, 1))
        engine.nav.initialize_network(pool, network)
        sc = engine.share_classes.add_share_class(pool, "Senior", "SNR", "salt-1")
    """
    clock = Clock(initial_time)
    ledger = Ledger(name, clock=clock, exclusive=exclusive)
    holdings = Holdings(ledger)
    nav = NavCalculator(ledger, holdings)
    share_classes = ShareClassRegistry(clock)
    guard = PriceGuard(clock)
    settlement = BatchSettlement(share_classes, clock)
    epochs = EpochProcessor(ledger, holdings, nav, share_classes, guard, settlement)
    return Engine(clock, ledger, holdings, nav, share_classes, guard, settlement, epochs)
