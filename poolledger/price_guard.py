"""
price_guard.py - Price Safety Guard

Validates proposed share prices before they are stored:
1. Pause state machine per pool: ACTIVE <-> PAUSED
2. Maximum price movement, in basis points, from the last validated price
3. Maximum valuation age (staleness)

Trust is asymmetric. Guardians or admins may pause a pool; only admins may
unpause it or change its limits. Halting must be easier than resuming.

Roles are granted by the hosting registry through grant_admin() and
grant_guardian(); the guard only checks membership.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Hashable, Optional, Set
import logging

from .core import (
    DEFAULT_MAX_PRICE_CHANGE_BPS, DEFAULT_MAX_VALUATION_AGE, MAX_BPS,
    AssetId, PoolId, ShareClassId, TimeSource,
    GuardPaused, InvalidGuardConfig, InvalidGuardState, PriceChangeTooLarge,
    StaleValuation, Unauthorized,
    require_amount,
)
from .valuation import ValuationProvider

logger = logging.getLogger(__name__)

Caller = Hashable


class GuardState(Enum):
    ACTIVE = "active"
    PAUSED = "paused"


@dataclass(slots=True)
class GuardConfig:
    """
    Price guard settings for one pool.

    Attributes:
        max_price_change_bps: Largest accepted move from the last validated price
        max_valuation_age: Oldest acceptable valuation update
        paused: True while the pool is halted
        enforce_limits: When False every price is accepted (baseline still recorded)
        last_validated_price: Baseline price per share class
    """
    max_price_change_bps: int = DEFAULT_MAX_PRICE_CHANGE_BPS
    max_valuation_age: timedelta = DEFAULT_MAX_VALUATION_AGE
    paused: bool = False
    enforce_limits: bool = True
    last_validated_price: Dict[ShareClassId, Decimal] = field(default_factory=dict)

    @property
    def state(self) -> GuardState:
        return GuardState.PAUSED if self.paused else GuardState.ACTIVE


def price_change_bps(old_price: Decimal, new_price: Decimal) -> int:
    """
    Relative move from old_price to new_price in basis points.

    Rounded half-up to a whole basis point and capped at MAX_BPS.
    old_price must be positive.
    """
    change = abs(new_price - old_price) * MAX_BPS / old_price
    bps = int(change.to_integral_value(rounding=ROUND_HALF_UP))
    return min(bps, MAX_BPS)


class PriceGuard:
    """Per-pool price movement and staleness guard."""

    def __init__(self, clock: TimeSource):
        self.clock = clock
        self._configs: Dict[PoolId, GuardConfig] = {}
        self._admins: Dict[PoolId, Set[Caller]] = {}
        self._guardians: Dict[PoolId, Set[Caller]] = {}

    # ========================================================================
    # ROLES
    # ========================================================================

    def grant_admin(self, pool_id: PoolId, who: Caller) -> None:
        self._admins.setdefault(pool_id, set()).add(who)

    def revoke_admin(self, pool_id: PoolId, who: Caller) -> None:
        self._admins.get(pool_id, set()).discard(who)

    def grant_guardian(self, pool_id: PoolId, who: Caller) -> None:
        self._guardians.setdefault(pool_id, set()).add(who)

    def revoke_guardian(self, pool_id: PoolId, who: Caller) -> None:
        self._guardians.get(pool_id, set()).discard(who)

    def is_admin(self, pool_id: PoolId, who: Caller) -> bool:
        return who in self._admins.get(pool_id, ())

    def is_guardian(self, pool_id: PoolId, who: Caller) -> bool:
        return who in self._guardians.get(pool_id, ())

    # ========================================================================
    # CONFIGURATION
    # ========================================================================

    def get_config(self, pool_id: PoolId) -> GuardConfig:
        """Return the pool's config, or the defaults for a pool never configured."""
        config = self._configs.get(pool_id)
        return config if config is not None else GuardConfig()

    def state(self, pool_id: PoolId) -> GuardState:
        return self.get_config(pool_id).state

    def is_paused(self, pool_id: PoolId) -> bool:
        return self.get_config(pool_id).paused

    def last_validated_price(self, pool_id: PoolId, sc_id: ShareClassId) -> Optional[Decimal]:
        return self.get_config(pool_id).last_validated_price.get(sc_id)

    def is_configured(self, pool_id: PoolId) -> bool:
        """True once the pool has been configured, paused or validated a price."""
        return pool_id in self._configs

    def configure_guard(
        self,
        pool_id: PoolId,
        caller: Caller,
        max_price_change_bps: Optional[int] = None,
        max_valuation_age: Optional[timedelta] = None,
        enforce_limits: Optional[bool] = None,
    ) -> GuardConfig:
        """
        Change a pool's limits. Arguments left as None keep their current value.

        Every argument is checked before any is applied.

        Raises:
            Unauthorized: If caller is not an admin of the pool
            InvalidGuardConfig: If bps is outside [0, MAX_BPS] or the age is not positive
        """
        self._require_admin(pool_id, caller, "configure_guard")
        if max_price_change_bps is not None:
            if isinstance(max_price_change_bps, bool) or not isinstance(max_price_change_bps, int) \
                    or not 0 <= max_price_change_bps <= MAX_BPS:
                raise InvalidGuardConfig(
                    f"max_price_change_bps must be an integer in [0, {MAX_BPS}], "
                    f"got {max_price_change_bps!r}",
                    pool_id=pool_id, max_price_change_bps=max_price_change_bps,
                )
        if max_valuation_age is not None and max_valuation_age <= timedelta(0):
            raise InvalidGuardConfig(
                f"max_valuation_age must be positive, got {max_valuation_age}",
                pool_id=pool_id, max_valuation_age=max_valuation_age,
            )

        config = self._stored_config(pool_id)
        if max_price_change_bps is not None:
            config.max_price_change_bps = max_price_change_bps
        if max_valuation_age is not None:
            config.max_valuation_age = max_valuation_age
        if enforce_limits is not None:
            config.enforce_limits = enforce_limits
        logger.info("pool %s guard configured: %s bps, max age %s, enforce=%s",
                    pool_id, config.max_price_change_bps, config.max_valuation_age,
                    config.enforce_limits)
        return config

    # ========================================================================
    # STATE MACHINE
    # ========================================================================

    def pause(self, pool_id: PoolId, caller: Caller) -> None:
        """
        Halt price validation for a pool.

        Raises:
            Unauthorized: If caller is neither guardian nor admin
            InvalidGuardState: If the pool is already paused
        """
        if not (self.is_guardian(pool_id, caller) or self.is_admin(pool_id, caller)):
            raise Unauthorized(
                f"{caller!r} may not pause pool {pool_id}",
                pool_id=pool_id, caller=caller, required="guardian or admin", action="pause",
            )
        config = self._stored_config(pool_id)
        self._require_state(pool_id, config, GuardState.ACTIVE, "pause")
        config.paused = True
        logger.warning("pool %s paused by %r", pool_id, caller)

    def unpause(self, pool_id: PoolId, caller: Caller) -> None:
        """
        Resume a paused pool. Admins only.

        Raises:
            Unauthorized: If caller is not an admin
            InvalidGuardState: If the pool is not paused
        """
        self._require_admin(pool_id, caller, "unpause")
        config = self.get_config(pool_id)
        self._require_state(pool_id, config, GuardState.PAUSED, "unpause")
        config.paused = False
        logger.info("pool %s unpaused by %r", pool_id, caller)

    # ========================================================================
    # VALIDATION
    # ========================================================================

    def validate_price(self, pool_id: PoolId, sc_id: ShareClassId, new_price: Decimal) -> int:
        """
        Accept or reject a proposed price and record it as the new baseline.

        With limits disabled, or with no prior positive price, the price is
        accepted unconditionally.

        Returns:
            The change in basis points from the previous baseline (0 if none)

        Raises:
            GuardPaused: If the pool is paused
            PriceChangeTooLarge: If the move exceeds max_price_change_bps
        """
        config = self.get_config(pool_id)
        if config.paused:
            raise GuardPaused(
                f"Pool {pool_id} is paused",
                pool_id=pool_id, sc_id=sc_id, expected=GuardState.ACTIVE.value,
                actual=GuardState.PAUSED.value,
            )
        new_price = require_amount(new_price, "price", allow_zero=True)
        old_price = config.last_validated_price.get(sc_id)

        change = 0
        if old_price is not None and old_price > 0:
            change = price_change_bps(old_price, new_price)
            if config.enforce_limits and change > config.max_price_change_bps:
                logger.warning(
                    "pool %s share class %s: price %s -> %s moves %d bps (max %d); rejected",
                    pool_id, sc_id, old_price, new_price, change, config.max_price_change_bps,
                )
                raise PriceChangeTooLarge(
                    f"Price change {change} bps exceeds {config.max_price_change_bps} bps",
                    pool_id=pool_id, sc_id=sc_id, old_price=old_price, new_price=new_price,
                    change_bps=change, max_bps=config.max_price_change_bps,
                )

        config.last_validated_price[sc_id] = new_price
        self._configs[pool_id] = config
        return change

    def valuation_age(self, valuation: ValuationProvider, asset_id: AssetId) -> Optional[timedelta]:
        """Age of the valuation's current price, or None if it was never updated."""
        last = valuation.last_updated(asset_id)
        if last is None:
            return None
        return self.clock.current_time - last

    def check_staleness(self, pool_id: PoolId, valuation: ValuationProvider, asset_id: AssetId) -> bool:
        """Return True if the valuation is older than the pool's max age (or never updated)."""
        age = self.valuation_age(valuation, asset_id)
        return age is None or age > self.get_config(pool_id).max_valuation_age

    def require_fresh_valuation(self, pool_id: PoolId, valuation: ValuationProvider, asset_id: AssetId) -> None:
        """
        Raises:
            StaleValuation: If check_staleness() would return True
        """
        if self.check_staleness(pool_id, valuation, asset_id):
            max_age = self.get_config(pool_id).max_valuation_age
            age = self.valuation_age(valuation, asset_id)
            raise StaleValuation(
                f"Valuation of asset {asset_id} is stale (age {age}, max {max_age})",
                pool_id=pool_id, asset_id=asset_id, age=age, max_age=max_age,
                last_updated=valuation.last_updated(asset_id),
            )

    # ========================================================================
    # CHECKPOINTS
    # ========================================================================

    def checkpoint(self) -> Dict[PoolId, GuardConfig]:
        return {pool: self._copy_config(config) for pool, config in self._configs.items()}

    def restore(self, checkpoint: Dict[PoolId, GuardConfig]) -> None:
        self._configs = {pool: self._copy_config(config) for pool, config in checkpoint.items()}

    # ========================================================================
    # INTERNALS
    # ========================================================================

    @staticmethod
    def _copy_config(config: GuardConfig) -> GuardConfig:
        return GuardConfig(
            max_price_change_bps=config.max_price_change_bps,
            max_valuation_age=config.max_valuation_age,
            paused=config.paused,
            enforce_limits=config.enforce_limits,
            last_validated_price=dict(config.last_validated_price),
        )

    def _stored_config(self, pool_id: PoolId) -> GuardConfig:
        config = self._configs.get(pool_id)
        if config is None:
            config = self._configs[pool_id] = GuardConfig()
        return config

    def _require_admin(self, pool_id: PoolId, caller: Caller, action: str) -> None:
        if not self.is_admin(pool_id, caller):
            raise Unauthorized(
                f"{caller!r} is not an admin of pool {pool_id}",
                pool_id=pool_id, caller=caller, required="admin", action=action,
            )

    @staticmethod
    def _require_state(pool_id: PoolId, config: GuardConfig, expected: GuardState, action: str) -> None:
        if config.state is not expected:
            raise InvalidGuardState(
                f"Cannot {action} pool {pool_id}: expected {expected.value}, "
                f"actual {config.state.value}",
                pool_id=pool_id, expected=expected.value, actual=config.state.value,
            )
