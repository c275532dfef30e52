"""
Core types and pure functions for the pool ledger system.

This module provides the foundational pieces shared by every component:
1. Decimal context and numeric constants (normalized 18-decimal amounts)
2. Identifier aliases and the AccountType enum with its 16-bit codes
3. Clock: the logical time source shared across components
4. Exceptions: LedgerError and its typed conditions (kind + operands)
5. Pure helpers: quantization, validation, id packing

Nothing here mutates ledger state.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_EVEN, getcontext
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# All ledger arithmetic is Decimal. The global context is configured once at
# import time; callers needing a different context must use localcontext().
#
_POOL_DECIMAL_CONTEXT = getcontext()
_POOL_DECIMAL_CONTEXT.prec = 50
_POOL_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Normalized fixed scale for amounts, values, shares and prices.
AMOUNT_DECIMAL_PLACES = 18
PRICE_DECIMAL_PLACES = 18

# Basis points in one whole (100%).
MAX_BPS = 10_000

# Default price guard limits.
DEFAULT_MAX_PRICE_CHANGE_BPS = 1_000
DEFAULT_MAX_VALUATION_AGE = timedelta(hours=1)

# Share class metadata limits.
MAX_NAME_LENGTH = 128
MAX_SYMBOL_LENGTH = 32

# Account ids pack a 16-bit type code into the low bits of an entity id.
ACCOUNT_TYPE_BITS = 16
ACCOUNT_TYPE_MASK = (1 << ACCOUNT_TYPE_BITS) - 1

# Asset ids carry their network id in the upper 16 of 128 bits.
ASSET_ID_BITS = 128
NETWORK_ID_BITS = 16
MAX_NETWORK_ID = (1 << NETWORK_ID_BITS) - 1

ZERO = Decimal("0")


# ============================================================================
# TYPE ALIASES
# ============================================================================

PoolId = int
NetworkId = int
AssetId = int
AccountId = int
ShareClassId = str
EpochId = int


# ============================================================================
# ENUMS
# ============================================================================

class AccountType(Enum):
    """
    Class of a ledger account.

    The enum value is the 16-bit type code packed into derived account ids,
    so the values must never be renumbered.
    """
    ASSET = 0
    EQUITY = 1
    LOSS = 2
    GAIN = 3
    EXPENSE = 4
    LIABILITY = 5

    @property
    def is_debit_normal(self) -> bool:
        """Asset and Expense accounts grow with debits; everything else with credits."""
        return self in (AccountType.ASSET, AccountType.EXPENSE)


class EntrySide(Enum):
    """Side of a single posting."""
    DEBIT = "debit"
    CREDIT = "credit"


# ============================================================================
# CLOCK
# ============================================================================

@runtime_checkable
class TimeSource(Protocol):
    """Anything exposing the current logical time."""

    @property
    def current_time(self) -> datetime:
        ...


class Clock:
    """
    Logical clock shared by the components of one engine.

    Time only moves forward. Tests and simulations drive it explicitly with
    advance_time(); nothing reads the wall clock.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)

    @property
    def current_time(self) -> datetime:
        return self._current_time

    def advance_time(self, new_time: datetime) -> None:
        """
        Move the clock to new_time.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    def advance_by(self, delta: timedelta) -> datetime:
        """Advance the clock by a non-negative delta and return the new time."""
        self.advance_time(self._current_time + delta)
        return self._current_time

    def __repr__(self) -> str:
        return f"Clock({self._current_time.isoformat()})"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """
    Base exception for all pool ledger errors.

    Every error is a typed condition: a stable ``kind`` string plus the
    ``operands`` involved, so tooling can render the cause without parsing
    the message.
    """
    kind = "ledger_error"

    def __init__(self, message: str = "", **operands: Any):
        self.operands: Dict[str, Any] = operands
        super().__init__(message or self.kind)

    def __repr__(self) -> str:
        ops = ", ".join(f"{k}={v!r}" for k, v in self.operands.items())
        return f"{type(self).__name__}({self.kind}: {ops})"


# -- invariant violations ----------------------------------------------------

class UnbalancedEntries(LedgerError):
    """Raised when a batch is committed with debit sum != credit sum."""
    kind = "unbalanced_entries"


class PriceChangeTooLarge(LedgerError):
    """Raised when a proposed price moves further than the configured ceiling."""
    kind = "price_change_too_large"


class StaleValuation(LedgerError):
    """Raised when a valuation's last update is older than the allowed age."""
    kind = "stale_valuation"


class InsufficientQuantity(LedgerError):
    """Raised when decreasing a holding by more than it holds."""
    kind = "insufficient_quantity"


# -- not found / not initialized ---------------------------------------------

class AccountNotFound(LedgerError):
    kind = "account_not_found"


class HoldingNotInitialized(LedgerError):
    kind = "holding_not_initialized"


class NetworkNotInitialized(LedgerError):
    kind = "network_not_initialized"


class ShareClassNotFound(LedgerError):
    kind = "share_class_not_found"


# -- state machine -------------------------------------------------------------

class BatchAlreadyOpen(LedgerError):
    """Raised when opening a batch while another one is open."""
    kind = "batch_already_open"


class NoOpenBatch(LedgerError):
    """Raised when posting without an open batch for the pool."""
    kind = "no_open_batch"


class BatchNotActive(LedgerError):
    """Raised when committing or aborting a batch token that is no longer active."""
    kind = "batch_not_active"


class InvalidGuardState(LedgerError):
    kind = "invalid_guard_state"


class GuardPaused(LedgerError):
    kind = "guard_paused"


class Unauthorized(LedgerError):
    kind = "unauthorized"


# -- degenerate results --------------------------------------------------------

class DustOrder(LedgerError):
    """Raised when a deposit or redemption converts to zero shares or assets."""
    kind = "dust_order"


class ZeroPrice(LedgerError):
    kind = "zero_price"


# -- validation ----------------------------------------------------------------

class InvalidAmount(LedgerError):
    kind = "invalid_amount"


class AccountAlreadyExists(LedgerError):
    kind = "account_already_exists"


class HoldingAlreadyInitialized(LedgerError):
    kind = "holding_already_initialized"


class NetworkAlreadyInitialized(LedgerError):
    kind = "network_already_initialized"


class InvalidLinkedAccounts(LedgerError):
    kind = "invalid_linked_accounts"


class InvalidValuation(LedgerError):
    kind = "invalid_valuation"


class PriceUnavailable(LedgerError):
    """Raised when a valuation provider has no price for an asset."""
    kind = "price_unavailable"


class InvalidMetadata(LedgerError):
    kind = "invalid_metadata"


class SaltAlreadyUsed(LedgerError):
    kind = "salt_already_used"


class CannotSetFuturePrice(LedgerError):
    kind = "cannot_set_future_price"


class CannotSetOlderPrice(LedgerError):
    kind = "cannot_set_older_price"


class InvalidGuardConfig(LedgerError):
    kind = "invalid_guard_config"


# ============================================================================
# PURE HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """
    Convert ints, strings and Decimals to Decimal.

    Floats go through str() so 0.1 becomes Decimal("0.1"), not its binary
    expansion.

    Raises:
        InvalidAmount: If the value is a boolean or not a number
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidAmount(f"Boolean is not an amount: {value!r}", amount=value)
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise InvalidAmount(f"Not a number: {value!r}", amount=value) from e


def quantize(value: Decimal, places: int = AMOUNT_DECIMAL_PLACES, rounding: str = ROUND_DOWN) -> Decimal:
    """Round a value to a fixed number of decimal places (truncating by default)."""
    quantizer = Decimal(10) ** -places
    return value.quantize(quantizer, rounding=rounding)


def require_amount(value: Any, name: str = "amount", allow_zero: bool = False) -> Decimal:
    """
    Validate and normalize a non-negative finite amount.

    Raises:
        InvalidAmount: If the value is NaN, infinite, negative, or zero when
                       allow_zero is False
    """
    amount = to_decimal(value)
    if amount.is_nan() or amount.is_infinite():
        raise InvalidAmount(f"{name} must be finite, got {amount}", name=name, amount=amount)
    if amount < 0:
        raise InvalidAmount(f"{name} must not be negative, got {amount}", name=name, amount=amount)
    if amount == 0 and not allow_zero:
        raise InvalidAmount(f"{name} must be positive", name=name, amount=amount)
    return amount


def signed(is_positive: bool, magnitude: Decimal) -> Decimal:
    """Turn an (is_positive, magnitude) pair into a signed Decimal."""
    return magnitude if is_positive else -magnitude


def unsigned(value: Decimal) -> Tuple[bool, Decimal]:
    """Turn a signed Decimal into an (is_positive, magnitude) pair; zero is positive."""
    return value >= 0, abs(value)
