"""
holdings.py - Holdings Tracker

Tracks every asset and liability position a pool holds per share class, and
turns each position change into a balanced pair of ledger postings through
the holding's linked accounts.

Posting rules (debit / credit):

    asset holding           increase   ASSET   / EQUITY
                            decrease   EQUITY  / ASSET
                            value up   ASSET   / GAIN
                            value down LOSS    / ASSET

    liability holding       increase   EXPENSE / LIABILITY
                            decrease   LIABILITY / EXPENSE
                            value up   EXPENSE / LIABILITY
                            value down LIABILITY / EXPENSE

A liability becoming more expensive is adverse, so it books like an increase.

All postings go into the pool's currently open ledger batch; the caller owns
the batch boundaries. A position only moves after its postings are in, and
moves back if that batch is aborted or fails to commit.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from .core import (
    AccountId, AccountType, AssetId, NetworkId, PoolId, ShareClassId, ZERO,
    HoldingAlreadyInitialized, HoldingNotInitialized, InsufficientQuantity,
    InvalidLinkedAccounts, InvalidValuation,
    require_amount,
)
from .ledger import JournalBatch, Ledger
from .valuation import ValuationProvider

logger = logging.getLogger(__name__)

ASSET_ACCOUNT_TYPES = frozenset({
    AccountType.ASSET, AccountType.EQUITY, AccountType.LOSS, AccountType.GAIN,
})
LIABILITY_ACCOUNT_TYPES = frozenset({AccountType.EXPENSE, AccountType.LIABILITY})

HoldingKey = Tuple[PoolId, ShareClassId, AssetId]


@dataclass(frozen=True, slots=True)
class HoldingAccount:
    """Reference from a holding to one of its ledger accounts."""
    account_type: AccountType
    account_id: AccountId


@dataclass(slots=True)
class Holding:
    """
    A tracked asset or liability position.

    Attributes:
        quantity: Units of the asset held
        value: Book value of the quantity in the pool currency
        valuation: Provider used by update(); None disables revaluation
        is_liability: True for liability positions
        accounts: Linked account id per account type
    """
    quantity: Decimal
    value: Decimal
    valuation: Optional[ValuationProvider]
    is_liability: bool
    accounts: Dict[AccountType, AccountId] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Whether a network's view of a share class is a consistent snapshot."""
    is_snapshot: bool = False
    nonce: int = 0


class Holdings:
    """
    Holdings tracker for all pools.

    Holdings must be initialized before any mutation. Quantity and value move
    together on increase/decrease and independently on revaluation.
    """

    def __init__(self, ledger: Ledger):
        self.ledger = ledger
        self._holdings: Dict[HoldingKey, Holding] = {}
        self._snapshots: Dict[Tuple[PoolId, ShareClassId, NetworkId], Snapshot] = {}

    # ========================================================================
    # READ-ONLY ACCESS
    # ========================================================================

    def is_initialized(self, pool_id: PoolId, sc_id: ShareClassId, asset_id: AssetId) -> bool:
        return (pool_id, sc_id, asset_id) in self._holdings

    def get_holding(self, pool_id: PoolId, sc_id: ShareClassId, asset_id: AssetId) -> Holding:
        """
        Raises:
            HoldingNotInitialized: If the holding has not been initialized
        """
        holding = self._holdings.get((pool_id, sc_id, asset_id))
        if holding is None:
            raise HoldingNotInitialized(
                f"Holding {asset_id} of share class {sc_id} in pool {pool_id} not initialized",
                pool_id=pool_id, sc_id=sc_id, asset_id=asset_id,
            )
        return holding

    def amount(self, pool_id: PoolId, sc_id: ShareClassId, asset_id: AssetId) -> Decimal:
        return self.get_holding(pool_id, sc_id, asset_id).quantity

    def value(self, pool_id: PoolId, sc_id: ShareClassId, asset_id: AssetId) -> Decimal:
        return self.get_holding(pool_id, sc_id, asset_id).value

    def valuation(self, pool_id: PoolId, sc_id: ShareClassId, asset_id: AssetId) -> Optional[ValuationProvider]:
        return self.get_holding(pool_id, sc_id, asset_id).valuation

    def is_liability(self, pool_id: PoolId, sc_id: ShareClassId, asset_id: AssetId) -> bool:
        return self.get_holding(pool_id, sc_id, asset_id).is_liability

    def account_id(
        self, pool_id: PoolId, sc_id: ShareClassId, asset_id: AssetId, account_type: AccountType,
    ) -> Optional[AccountId]:
        """Linked account of the given type, or None if the holding has none."""
        return self.get_holding(pool_id, sc_id, asset_id).accounts.get(account_type)

    def list_assets(self, pool_id: PoolId, sc_id: ShareClassId) -> List[AssetId]:
        """Asset ids with an initialized holding for the share class, sorted."""
        return sorted(a for (p, s, a) in self._holdings if p == pool_id and s == sc_id)

    def snapshot(self, pool_id: PoolId, sc_id: ShareClassId, network_id: NetworkId) -> Snapshot:
        return self._snapshots.get((pool_id, sc_id, network_id), Snapshot())

    # ========================================================================
    # CONFIGURATION (Mutating)
    # ========================================================================

    def initialize(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        asset_id: AssetId,
        valuation: Optional[ValuationProvider],
        is_liability: bool,
        accounts: Sequence[HoldingAccount],
    ) -> Holding:
        """
        Start tracking a position with zero quantity and value.

        Args:
            accounts: Four accounts (ASSET, EQUITY, LOSS, GAIN) for an asset
                      holding, two (EXPENSE, LIABILITY) for a liability

        Raises:
            HoldingAlreadyInitialized: If the holding already exists
            InvalidLinkedAccounts: If the account count or types are wrong
            InvalidValuation: If valuation does not implement ValuationProvider
        """
        key = (pool_id, sc_id, asset_id)
        if key in self._holdings:
            raise HoldingAlreadyInitialized(
                f"Holding {asset_id} of share class {sc_id} in pool {pool_id} already initialized",
                pool_id=pool_id, sc_id=sc_id, asset_id=asset_id,
            )
        expected = LIABILITY_ACCOUNT_TYPES if is_liability else ASSET_ACCOUNT_TYPES
        linked = {a.account_type: a.account_id for a in accounts}
        if len(accounts) != len(expected) or set(linked) != expected:
            raise InvalidLinkedAccounts(
                f"Holding {asset_id} needs accounts {sorted(t.name for t in expected)}, "
                f"got {[a.account_type.name for a in accounts]}",
                pool_id=pool_id, asset_id=asset_id,
                expected=sorted(t.name for t in expected),
                actual=[a.account_type.name for a in accounts],
            )
        self._check_valuation(valuation)

        holding = Holding(
            quantity=ZERO,
            value=ZERO,
            valuation=valuation,
            is_liability=is_liability,
            accounts=linked,
        )
        self._holdings[key] = holding
        logger.debug("initialized %s holding %s for pool %s / %s",
                     "liability" if is_liability else "asset", asset_id, pool_id, sc_id)
        return holding

    def update_valuation(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        asset_id: AssetId,
        valuation: Optional[ValuationProvider],
    ) -> None:
        """Attach a different valuation provider; the book value is untouched until update()."""
        holding = self.get_holding(pool_id, sc_id, asset_id)
        self._check_valuation(valuation)
        holding.valuation = valuation

    def set_account_id(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        asset_id: AssetId,
        account_type: AccountType,
        account_id: AccountId,
    ) -> None:
        """
        Relink one of the holding's accounts.

        Raises:
            InvalidLinkedAccounts: If the type does not belong to this kind of holding
        """
        holding = self.get_holding(pool_id, sc_id, asset_id)
        allowed = LIABILITY_ACCOUNT_TYPES if holding.is_liability else ASSET_ACCOUNT_TYPES
        if account_type not in allowed:
            raise InvalidLinkedAccounts(
                f"{account_type.name} cannot be linked to this holding",
                pool_id=pool_id, asset_id=asset_id,
                expected=sorted(t.name for t in allowed), actual=[account_type.name],
            )
        holding.accounts[account_type] = account_id

    def set_snapshot(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        network_id: NetworkId,
        is_snapshot: bool,
        nonce: int,
    ) -> None:
        """Record whether a network's holdings view is a consistent snapshot."""
        self._snapshots[(pool_id, sc_id, network_id)] = Snapshot(is_snapshot, nonce)

    # ========================================================================
    # POSITION CHANGES (Mutating; require an open batch)
    # ========================================================================

    def increase(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        asset_id: AssetId,
        amount: Decimal,
        value: Decimal,
    ) -> Decimal:
        """
        Add quantity and value to a holding and post the matching entries.

        Returns:
            The holding's new book value
        """
        holding = self.get_holding(pool_id, sc_id, asset_id)
        amount = require_amount(amount)
        value = require_amount(value, "value", allow_zero=True)

        batch = self.ledger.require_batch(pool_id)
        if holding.is_liability:
            self._post_pair(pool_id, holding, AccountType.EXPENSE, AccountType.LIABILITY, value)
        else:
            self._post_pair(pool_id, holding, AccountType.ASSET, AccountType.EQUITY, value)
        self._apply(batch, holding, holding.quantity + amount, holding.value + value)
        return holding.value

    def decrease(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        asset_id: AssetId,
        amount: Decimal,
        value: Decimal,
    ) -> Decimal:
        """
        Remove quantity and value from a holding and post the mirrored entries.

        Returns:
            The holding's new book value

        Raises:
            InsufficientQuantity: If amount exceeds the quantity held, or value
                                  exceeds the book value
        """
        holding = self.get_holding(pool_id, sc_id, asset_id)
        amount = require_amount(amount)
        value = require_amount(value, "value", allow_zero=True)
        if amount > holding.quantity:
            raise InsufficientQuantity(
                f"Cannot decrease holding {asset_id} by {amount}: holds {holding.quantity}",
                pool_id=pool_id, sc_id=sc_id, asset_id=asset_id,
                requested=amount, available=holding.quantity,
            )
        if value > holding.value:
            raise InsufficientQuantity(
                f"Cannot decrease holding {asset_id} value by {value}: book value {holding.value}",
                pool_id=pool_id, sc_id=sc_id, asset_id=asset_id,
                requested_value=value, available_value=holding.value,
            )

        batch = self.ledger.require_batch(pool_id)
        if holding.is_liability:
            self._post_pair(pool_id, holding, AccountType.LIABILITY, AccountType.EXPENSE, value)
        else:
            self._post_pair(pool_id, holding, AccountType.EQUITY, AccountType.ASSET, value)
        self._apply(batch, holding, holding.quantity - amount, holding.value - value)
        return holding.value

    def update(self, pool_id: PoolId, sc_id: ShareClassId, asset_id: AssetId) -> Tuple[bool, Decimal]:
        """
        Requote the held quantity and book the difference as gain or loss.

        Returns:
            (is_positive, |change in value|); (True, 0) when the holding has no
            valuation provider or the value did not move
        """
        holding = self.get_holding(pool_id, sc_id, asset_id)
        if holding.valuation is None:
            return True, ZERO

        new_value = holding.valuation.get_quote(holding.quantity, asset_id)
        diff = new_value - holding.value
        if diff == 0:
            return True, ZERO

        batch = self.ledger.require_batch(pool_id)
        magnitude = abs(diff)
        if holding.is_liability:
            if diff > 0:
                self._post_pair(pool_id, holding, AccountType.EXPENSE, AccountType.LIABILITY, magnitude)
            else:
                self._post_pair(pool_id, holding, AccountType.LIABILITY, AccountType.EXPENSE, magnitude)
        elif diff > 0:
            self._post_pair(pool_id, holding, AccountType.ASSET, AccountType.GAIN, magnitude)
        else:
            self._post_pair(pool_id, holding, AccountType.LOSS, AccountType.ASSET, magnitude)
        self._apply(batch, holding, holding.quantity, new_value)

        logger.debug("revalued holding %s of pool %s / %s: %s -> %s",
                     asset_id, pool_id, sc_id, new_value - diff, new_value)
        return diff > 0, magnitude

    # ========================================================================
    # CHECKPOINTS
    # ========================================================================

    def checkpoint(self) -> Tuple[Dict[HoldingKey, Holding], Dict]:
        """Copy the tracker state so a failed unit of work can be rolled back."""
        holdings = {k: replace(h, accounts=dict(h.accounts)) for k, h in self._holdings.items()}
        return holdings, dict(self._snapshots)

    def restore(self, checkpoint: Tuple[Dict[HoldingKey, Holding], Dict]) -> None:
        holdings, snapshots = checkpoint
        self._holdings = holdings
        self._snapshots = snapshots

    # ========================================================================
    # INTERNALS
    # ========================================================================

    @staticmethod
    def _apply(batch: JournalBatch, holding: Holding, quantity: Decimal, value: Decimal) -> None:
        """Move the position once its postings are in, undoing it if the batch is reverted."""
        previous = (holding.quantity, holding.value)

        def undo() -> None:
            holding.quantity, holding.value = previous

        batch.on_revert(undo)
        holding.quantity = quantity
        holding.value = value

    def _post_pair(
        self,
        pool_id: PoolId,
        holding: Holding,
        debit: AccountType,
        credit: AccountType,
        amount: Decimal,
    ) -> None:
        if amount == 0:
            return
        self.ledger.post_debit(pool_id, holding.accounts[debit], amount)
        self.ledger.post_credit(pool_id, holding.accounts[credit], amount)

    @staticmethod
    def _check_valuation(valuation: Optional[ValuationProvider]) -> None:
        if valuation is not None and not isinstance(valuation, ValuationProvider):
            raise InvalidValuation(
                f"{type(valuation).__name__} does not implement ValuationProvider",
                valuation=repr(valuation),
            )
