"""
nav.py - Per-Network Net Asset Value

Derives ledger account ids deterministically, initializes the accounts each
settlement network contributes to a pool, and computes NAV from them:

    NAV(pool, network) = max(0, Equity + Gain - Loss - Liability)

Account ids are never stored in a lookup table. They are recomputed from
(entity id, account type): the 16-bit type code sits in the low bits and the
entity id above it. Asset and Expense accounts key on the asset id; Equity,
Gain, Loss and Liability key on the network id.

Unrealized gain and loss stay in their own accounts until close_gain_loss()
folds them into Equity.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
import logging

from .core import (
    ACCOUNT_TYPE_BITS, ACCOUNT_TYPE_MASK, ASSET_ID_BITS, MAX_NETWORK_ID, NETWORK_ID_BITS,
    AccountId, AccountType, AssetId, NetworkId, PoolId, ShareClassId, ZERO,
    NetworkAlreadyInitialized, NetworkNotInitialized, InvalidAmount,
)
from .holdings import Holding, HoldingAccount, Holdings
from .ledger import Ledger
from .valuation import ValuationProvider

logger = logging.getLogger(__name__)


# ============================================================================
# ACCOUNT ID DERIVATION (pure)
# ============================================================================

def account_id(entity_id: int, account_type: AccountType) -> AccountId:
    """Pack an account type code into the low 16 bits of an entity id."""
    if entity_id < 0:
        raise InvalidAmount(f"Entity id must not be negative, got {entity_id}", entity_id=entity_id)
    return (entity_id << ACCOUNT_TYPE_BITS) | account_type.value


def split_account_id(account: AccountId) -> Tuple[int, AccountType]:
    """Inverse of account_id(): return (entity_id, AccountType)."""
    return account >> ACCOUNT_TYPE_BITS, AccountType(account & ACCOUNT_TYPE_MASK)


def asset_account(asset_id: AssetId) -> AccountId:
    return account_id(asset_id, AccountType.ASSET)


def expense_account(asset_id: AssetId) -> AccountId:
    return account_id(asset_id, AccountType.EXPENSE)


def equity_account(network_id: NetworkId) -> AccountId:
    return account_id(network_id, AccountType.EQUITY)


def gain_account(network_id: NetworkId) -> AccountId:
    return account_id(network_id, AccountType.GAIN)


def loss_account(network_id: NetworkId) -> AccountId:
    return account_id(network_id, AccountType.LOSS)


def liability_account(network_id: NetworkId) -> AccountId:
    return account_id(network_id, AccountType.LIABILITY)


def new_asset_id(network_id: NetworkId, index: int) -> AssetId:
    """Build a 128-bit asset id whose upper 16 bits name its network."""
    _check_network_id(network_id)
    return (network_id << (ASSET_ID_BITS - NETWORK_ID_BITS)) + index


def network_of(asset_id: AssetId) -> NetworkId:
    """Network an asset id belongs to."""
    return asset_id >> (ASSET_ID_BITS - NETWORK_ID_BITS)


def _check_network_id(network_id: NetworkId) -> None:
    if not 0 <= network_id <= MAX_NETWORK_ID:
        raise InvalidAmount(
            f"Network id must fit in {NETWORK_ID_BITS} bits, got {network_id}",
            network_id=network_id,
        )


# ============================================================================
# NAV CALCULATOR
# ============================================================================

@dataclass(frozen=True, slots=True)
class NavAccountValues:
    """
    Balances behind one network's NAV.

    equity, gain and liability are signed balances of their credit-normal
    accounts. loss is the debit excess of the loss account, i.e. the amount
    of loss recorded, so NAV reads as equity + gain - loss - liability.
    """
    equity: Decimal
    gain: Decimal
    loss: Decimal
    liability: Decimal

    @property
    def net(self) -> Decimal:
        return self.equity + self.gain - self.loss - self.liability


class NavCalculator:
    """Per-network account setup, NAV and gain/loss realization."""

    NETWORK_ACCOUNT_TYPES = (
        AccountType.EQUITY, AccountType.LIABILITY, AccountType.GAIN, AccountType.LOSS,
    )

    def __init__(self, ledger: Ledger, holdings: Holdings):
        self.ledger = ledger
        self.holdings = holdings
        self._networks: Dict[PoolId, List[NetworkId]] = {}

    # ========================================================================
    # SETUP
    # ========================================================================

    def is_network_initialized(self, pool_id: PoolId, network_id: NetworkId) -> bool:
        return network_id in self._networks.get(pool_id, ())

    def networks(self, pool_id: PoolId) -> List[NetworkId]:
        """Initialized networks of a pool, in initialization order."""
        return list(self._networks.get(pool_id, ()))

    def initialize_network(self, pool_id: PoolId, network_id: NetworkId) -> None:
        """
        Create the Equity, Liability, Gain and Loss accounts of a network.

        Raises:
            NetworkAlreadyInitialized: If the network was already set up for the pool
        """
        _check_network_id(network_id)
        if self.is_network_initialized(pool_id, network_id):
            raise NetworkAlreadyInitialized(
                f"Network {network_id} already initialized for pool {pool_id}",
                pool_id=pool_id, network_id=network_id,
            )
        for account_type in self.NETWORK_ACCOUNT_TYPES:
            self.ledger.create_account(
                pool_id,
                account_id(network_id, account_type),
                account_type,
                metadata=f"network {network_id} {account_type.name.lower()}",
            )
        self._networks.setdefault(pool_id, []).append(network_id)
        logger.info("initialized network %s for pool %s", network_id, pool_id)

    def initialize_holding(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        asset_id: AssetId,
        valuation: Optional[ValuationProvider],
    ) -> Holding:
        """
        Create the asset's account (if missing) and start tracking the holding,
        linked to the Equity, Loss and Gain accounts of the asset's network.

        Raises:
            NetworkNotInitialized: If the asset's network has no accounts yet
        """
        network_id = self._require_network(pool_id, network_of(asset_id))
        asset_acc = asset_account(asset_id)
        if not self.ledger.account_exists(pool_id, asset_acc):
            self.ledger.create_account(pool_id, asset_acc, AccountType.ASSET,
                                       metadata=f"asset {asset_id}")
        return self.holdings.initialize(
            pool_id, sc_id, asset_id, valuation, False,
            [
                HoldingAccount(AccountType.ASSET, asset_acc),
                HoldingAccount(AccountType.EQUITY, equity_account(network_id)),
                HoldingAccount(AccountType.LOSS, loss_account(network_id)),
                HoldingAccount(AccountType.GAIN, gain_account(network_id)),
            ],
        )

    def initialize_liability(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        asset_id: AssetId,
        valuation: Optional[ValuationProvider],
    ) -> Holding:
        """
        Create the asset's expense account (if missing) and start tracking a
        liability linked to its network's Liability account.
        """
        network_id = self._require_network(pool_id, network_of(asset_id))
        expense_acc = expense_account(asset_id)
        if not self.ledger.account_exists(pool_id, expense_acc):
            self.ledger.create_account(pool_id, expense_acc, AccountType.EXPENSE,
                                       metadata=f"expense {asset_id}")
        return self.holdings.initialize(
            pool_id, sc_id, asset_id, valuation, True,
            [
                HoldingAccount(AccountType.EXPENSE, expense_acc),
                HoldingAccount(AccountType.LIABILITY, liability_account(network_id)),
            ],
        )

    # ========================================================================
    # VALUES
    # ========================================================================

    def get_account_values(self, pool_id: PoolId, network_id: NetworkId) -> NavAccountValues:
        self._require_network(pool_id, network_id)
        ledger = self.ledger
        return NavAccountValues(
            equity=ledger.get_account(pool_id, equity_account(network_id)).signed_value(),
            gain=ledger.get_account(pool_id, gain_account(network_id)).signed_value(),
            loss=-ledger.get_account(pool_id, loss_account(network_id)).signed_value(),
            liability=ledger.get_account(pool_id, liability_account(network_id)).signed_value(),
        )

    def net_asset_value(self, pool_id: PoolId, network_id: NetworkId) -> Decimal:
        """
        Equity + Gain - Loss - Liability, clamped at zero.

        Zero means the network slice is technically insolvent; a negative
        figure is never returned.
        """
        values = self.get_account_values(pool_id, network_id)
        return max(ZERO, values.net)

    def pool_net_asset_value(self, pool_id: PoolId) -> Decimal:
        """Sum of the per-network NAVs of every initialized network."""
        return sum((self.net_asset_value(pool_id, n) for n in self.networks(pool_id)), ZERO)

    # ========================================================================
    # REALIZATION
    # ========================================================================

    def close_gain_loss(self, pool_id: PoolId, network_id: NetworkId) -> Decimal:
        """
        Realize unrealized P&L into Equity in its own batch.

        Gain and Loss are zeroed with offsetting postings and the net is posted
        to Equity (credit for a net gain, debit for a net loss).

        Returns:
            The signed net amount moved into Equity

        Raises:
            BatchAlreadyOpen: If a batch is already open
        """
        self._require_network(pool_id, network_id)
        gain_acc = gain_account(network_id)
        loss_acc = loss_account(network_id)
        equity_acc = equity_account(network_id)

        with self.ledger.batch(pool_id):
            gain = self.ledger.get_account(pool_id, gain_acc).signed_value()
            loss = self.ledger.get_account(pool_id, loss_acc).signed_value()
            # Both are credit-normal: a positive balance is zeroed with a debit
            self._zero(pool_id, gain_acc, gain)
            self._zero(pool_id, loss_acc, loss)
            net = gain + loss
            if net > 0:
                self.ledger.post_credit(pool_id, equity_acc, net)
            elif net < 0:
                self.ledger.post_debit(pool_id, equity_acc, -net)

        logger.info("closed gain/loss for pool %s network %s: net %s", pool_id, network_id, net)
        return net

    # ========================================================================
    # CHECKPOINTS
    # ========================================================================

    def checkpoint(self) -> Dict[PoolId, List[NetworkId]]:
        return {pool: list(networks) for pool, networks in self._networks.items()}

    def restore(self, checkpoint: Dict[PoolId, List[NetworkId]]) -> None:
        self._networks = {pool: list(networks) for pool, networks in checkpoint.items()}

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _require_network(self, pool_id: PoolId, network_id: NetworkId) -> NetworkId:
        if not self.is_network_initialized(pool_id, network_id):
            raise NetworkNotInitialized(
                f"Network {network_id} not initialized for pool {pool_id}",
                pool_id=pool_id, network_id=network_id,
            )
        return network_id

    def _zero(self, pool_id: PoolId, account: AccountId, balance: Decimal) -> None:
        if balance > 0:
            self.ledger.post_debit(pool_id, account, balance)
        elif balance < 0:
            self.ledger.post_credit(pool_id, account, -balance)
