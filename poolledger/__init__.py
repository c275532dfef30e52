"""
poolledger - Pool Accounting Engine

Double-entry accounting for investment pools: a ledger with batched units of
work, a holdings tracker, per-network NAV, share class pricing with a price
guard, and epoch settlement of deposits and redemptions.

Usage:
    from datetime import datetime
    from decimal import Decimal
    from poolledger import build_engine, new_asset_id, IdentityValuation, DepositFulfillment

    engine = build_engine(initial_time=datetime(2025, 1, 1))
    pool, network = 1, 1
    usdc = new_asset_id(network, 1)

    engine.nav.initialize_network(pool, network)
    sc = engine.share_classes.add_share_class(pool, "Senior", "SNR", "senior-salt")
    engine.nav.initialize_holding(pool, sc, usdc, IdentityValuation(engine.clock))

    result = engine.epochs.close_epoch(
        pool, sc, epoch_id=1, asset_id=usdc,
        deposits=[DepositFulfillment(Decimal("1000"), network)],
    )
    # result.price == 1, 1000 shares issued on network 1
"""

# Core types
from .core import (
    AMOUNT_DECIMAL_PLACES,
    PRICE_DECIMAL_PLACES,
    MAX_BPS,
    DEFAULT_MAX_PRICE_CHANGE_BPS,
    DEFAULT_MAX_VALUATION_AGE,
    AccountType,
    EntrySide,
    Clock,
    TimeSource,
    LedgerError,
    UnbalancedEntries,
    PriceChangeTooLarge,
    StaleValuation,
    InsufficientQuantity,
    AccountNotFound,
    HoldingNotInitialized,
    NetworkNotInitialized,
    ShareClassNotFound,
    BatchAlreadyOpen,
    NoOpenBatch,
    BatchNotActive,
    InvalidGuardState,
    GuardPaused,
    Unauthorized,
    DustOrder,
    ZeroPrice,
    InvalidAmount,
    AccountAlreadyExists,
    HoldingAlreadyInitialized,
    NetworkAlreadyInitialized,
    InvalidLinkedAccounts,
    InvalidValuation,
    PriceUnavailable,
    InvalidMetadata,
    SaltAlreadyUsed,
    CannotSetFuturePrice,
    CannotSetOlderPrice,
    InvalidGuardConfig,
    to_decimal,
    quantize,
    signed,
    unsigned,
)

# Ledger
from .ledger import (
    Ledger,
    Account,
    JournalEntry,
    JournalCommit,
    JournalBatch,
)

# Valuation
from .valuation import (
    ValuationProvider,
    IdentityValuation,
    StaticValuation,
    TimeSeriesValuation,
)

# Holdings
from .holdings import (
    Holdings,
    Holding,
    HoldingAccount,
    Snapshot,
)

# NAV
from .nav import (
    NavCalculator,
    NavAccountValues,
    account_id,
    split_account_id,
    asset_account,
    expense_account,
    equity_account,
    gain_account,
    loss_account,
    liability_account,
    new_asset_id,
    network_of,
)

# Share classes
from .share_class import (
    ShareClassRegistry,
    ShareClass,
    share_class_id,
)

# Price guard
from .price_guard import (
    PriceGuard,
    GuardConfig,
    GuardState,
    price_change_bps,
)

# Settlement
from .settlement import (
    BatchSettlement,
    BatchSummary,
    DepositFulfillment,
    RedeemFulfillment,
    SettledOrder,
    SettlementResult,
    calculate_shares_for_deposit,
    calculate_assets_for_redeem,
)

# Epochs
from .epoch import (
    EpochProcessor,
    EpochResult,
    Engine,
    build_engine,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    'AMOUNT_DECIMAL_PLACES', 'PRICE_DECIMAL_PLACES', 'MAX_BPS',
    'DEFAULT_MAX_PRICE_CHANGE_BPS', 'DEFAULT_MAX_VALUATION_AGE',
    'AccountType', 'EntrySide', 'Clock', 'TimeSource',
    'to_decimal', 'quantize', 'signed', 'unsigned',
    # Errors
    'LedgerError', 'UnbalancedEntries', 'PriceChangeTooLarge', 'StaleValuation',
    'InsufficientQuantity', 'AccountNotFound', 'HoldingNotInitialized',
    'NetworkNotInitialized', 'ShareClassNotFound', 'BatchAlreadyOpen', 'NoOpenBatch',
    'BatchNotActive', 'InvalidGuardState', 'GuardPaused', 'Unauthorized', 'DustOrder',
    'ZeroPrice', 'InvalidAmount', 'AccountAlreadyExists', 'HoldingAlreadyInitialized',
    'NetworkAlreadyInitialized', 'InvalidLinkedAccounts', 'InvalidValuation',
    'PriceUnavailable', 'InvalidMetadata', 'SaltAlreadyUsed', 'CannotSetFuturePrice',
    'CannotSetOlderPrice', 'InvalidGuardConfig',
    # Ledger
    'Ledger', 'Account', 'JournalEntry', 'JournalCommit', 'JournalBatch',
    # Valuation
    'ValuationProvider', 'IdentityValuation', 'StaticValuation', 'TimeSeriesValuation',
    # Holdings
    'Holdings', 'Holding', 'HoldingAccount', 'Snapshot',
    # NAV
    'NavCalculator', 'NavAccountValues', 'account_id', 'split_account_id',
    'asset_account', 'expense_account', 'equity_account', 'gain_account',
    'loss_account', 'liability_account', 'new_asset_id', 'network_of',
    # Share classes
    'ShareClassRegistry', 'ShareClass', 'share_class_id',
    # Price guard
    'PriceGuard', 'GuardConfig', 'GuardState', 'price_change_bps',
    # Settlement
    'BatchSettlement', 'BatchSummary', 'DepositFulfillment', 'RedeemFulfillment',
    'SettledOrder', 'SettlementResult', 'calculate_shares_for_deposit',
    'calculate_assets_for_redeem',
    # Epochs
    'EpochProcessor', 'EpochResult', 'Engine', 'build_engine',
]
