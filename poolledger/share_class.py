"""
share_class.py - Share Class & Pricing Registry

Keeps per-share-class metadata, the latest price per share and cumulative
issuance/revocation counters per network.

Share class ids are derived, not chosen: the first 16 bytes of
sha256(pool id, per-pool index), rendered as 0x-prefixed hex. The same pool
and index always give the same id, and ids never collide within a pool.

Total supply is the sum over active networks of (issuances - revocations),
each network floored at zero.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple, Union
import copy
import hashlib
import logging

from .core import (
    MAX_NAME_LENGTH, MAX_SYMBOL_LENGTH,
    NetworkId, PoolId, ShareClassId, TimeSource, ZERO,
    CannotSetFuturePrice, CannotSetOlderPrice, InvalidAmount, InvalidMetadata, SaltAlreadyUsed,
    ShareClassNotFound,
    require_amount,
)

logger = logging.getLogger(__name__)

Salt = Union[str, bytes]


def share_class_id(pool_id: PoolId, index: int) -> ShareClassId:
    """
    Derive the id of the index-th share class of a pool.

    Raises:
        InvalidAmount: If the pool id does not fit 128 unsigned bits or the
                       index does not fit 64
    """
    if not 0 <= pool_id < 1 << 128:
        raise InvalidAmount(f"Pool id must fit in 128 bits, got {pool_id}", pool_id=pool_id)
    if not 0 <= index < 1 << 64:
        raise InvalidAmount(f"Share class index must fit in 64 bits, got {index}",
                            pool_id=pool_id, index=index)
    digest = hashlib.sha256(
        pool_id.to_bytes(16, "big") + index.to_bytes(8, "big")
    ).digest()
    return "0x" + digest[:16].hex()


@dataclass(slots=True)
class ShareClass:
    """
    A tranche of pool ownership.

    Attributes:
        pool_id: Owning pool
        sc_id: Derived share class id
        index: Position among the pool's share classes (1-based)
        name: Display name
        symbol: Ticker-like symbol
        salt: Deployment salt, unique across all pools
        price: Latest price per share (None until first set)
        price_computed_at: When that price was computed
        issuances: Cumulative shares issued per network
        revocations: Cumulative shares revoked per network
        active_networks: Networks with counters, in first-use order
    """
    pool_id: PoolId
    sc_id: ShareClassId
    index: int
    name: str
    symbol: str
    salt: Salt
    price: Optional[Decimal] = None
    price_computed_at: Optional[datetime] = None
    issuances: Dict[NetworkId, Decimal] = field(default_factory=dict)
    revocations: Dict[NetworkId, Decimal] = field(default_factory=dict)
    active_networks: List[NetworkId] = field(default_factory=list)

    def net_issuance(self, network_id: NetworkId) -> Decimal:
        issued = self.issuances.get(network_id, ZERO)
        revoked = self.revocations.get(network_id, ZERO)
        return max(ZERO, issued - revoked)


class ShareClassRegistry:
    """Registry of share classes for all pools."""

    def __init__(self, clock: TimeSource):
        self.clock = clock
        self._share_classes: Dict[Tuple[PoolId, ShareClassId], ShareClass] = {}
        self._counts: Dict[PoolId, int] = {}
        self._salts: Set[Salt] = set()

    # ========================================================================
    # READ-ONLY ACCESS
    # ========================================================================

    def exists(self, pool_id: PoolId, sc_id: ShareClassId) -> bool:
        return (pool_id, sc_id) in self._share_classes

    def get(self, pool_id: PoolId, sc_id: ShareClassId) -> ShareClass:
        """
        Raises:
            ShareClassNotFound: If the share class does not exist in the pool
        """
        share_class = self._share_classes.get((pool_id, sc_id))
        if share_class is None:
            raise ShareClassNotFound(
                f"Share class {sc_id} not found in pool {pool_id}",
                pool_id=pool_id, sc_id=sc_id,
            )
        return share_class

    def share_class_count(self, pool_id: PoolId) -> int:
        return self._counts.get(pool_id, 0)

    def list_share_classes(self, pool_id: PoolId) -> List[ShareClassId]:
        """Share class ids of a pool in creation order."""
        classes = [sc for (p, _), sc in self._share_classes.items() if p == pool_id]
        return [sc.sc_id for sc in sorted(classes, key=lambda sc: sc.index)]

    def metadata(self, pool_id: PoolId, sc_id: ShareClassId) -> Tuple[str, str, Salt]:
        """Return (name, symbol, salt)."""
        share_class = self.get(pool_id, sc_id)
        return share_class.name, share_class.symbol, share_class.salt

    def price_per_share(self, pool_id: PoolId, sc_id: ShareClassId) -> Tuple[Optional[Decimal], Optional[datetime]]:
        """Return (price, computed_at); both None until a price is set."""
        share_class = self.get(pool_id, sc_id)
        return share_class.price, share_class.price_computed_at

    def issuance(self, pool_id: PoolId, sc_id: ShareClassId, network_id: NetworkId) -> Tuple[Decimal, Decimal]:
        """Return cumulative (issuances, revocations) on one network."""
        share_class = self.get(pool_id, sc_id)
        return (
            share_class.issuances.get(network_id, ZERO),
            share_class.revocations.get(network_id, ZERO),
        )

    def total_issuance(self, pool_id: PoolId, sc_id: ShareClassId) -> Decimal:
        """Outstanding supply across active networks; O(active networks)."""
        share_class = self.get(pool_id, sc_id)
        return sum((share_class.net_issuance(n) for n in share_class.active_networks), ZERO)

    def get_active_networks(self, pool_id: PoolId, sc_id: ShareClassId) -> List[NetworkId]:
        return list(self.get(pool_id, sc_id).active_networks)

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def add_share_class(self, pool_id: PoolId, name: str, symbol: str, salt: Salt) -> ShareClassId:
        """
        Register a new share class with no price.

        Returns:
            The derived share class id

        Raises:
            InvalidMetadata: If name, symbol or salt is empty or too long
            SaltAlreadyUsed: If the salt was used by any share class before
        """
        self._check_metadata(name, symbol)
        if not salt:
            raise InvalidMetadata("Salt cannot be empty", field="salt")
        if salt in self._salts:
            raise SaltAlreadyUsed(f"Salt {salt!r} already used", salt=salt)

        index = self._counts.get(pool_id, 0) + 1
        sc_id = share_class_id(pool_id, index)
        self._share_classes[(pool_id, sc_id)] = ShareClass(
            pool_id=pool_id,
            sc_id=sc_id,
            index=index,
            name=name,
            symbol=symbol,
            salt=salt,
        )
        self._counts[pool_id] = index
        self._salts.add(salt)
        logger.info("added share class %s (%s) to pool %s", sc_id, symbol, pool_id)
        return sc_id

    def update_metadata(self, pool_id: PoolId, sc_id: ShareClassId, name: str, symbol: str) -> None:
        """Rename a share class; the salt never changes."""
        share_class = self.get(pool_id, sc_id)
        self._check_metadata(name, symbol)
        share_class.name = name
        share_class.symbol = symbol

    def update_share_price(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        price: Decimal,
        computed_at: datetime,
    ) -> None:
        """
        Store a new price per share.

        Price time is non-decreasing. An equal timestamp is accepted so a
        price can be corrected.

        Raises:
            CannotSetFuturePrice: If computed_at is after the current time
            CannotSetOlderPrice: If computed_at is before the stored price's time
        """
        share_class = self.get(pool_id, sc_id)
        price = require_amount(price, "price", allow_zero=True)
        now = self.clock.current_time
        if computed_at > now:
            raise CannotSetFuturePrice(
                f"Price computed at {computed_at} is in the future (now {now})",
                pool_id=pool_id, sc_id=sc_id, computed_at=computed_at, now=now,
            )
        stored_at = share_class.price_computed_at
        if stored_at is not None and computed_at < stored_at:
            raise CannotSetOlderPrice(
                f"Price computed at {computed_at} is older than stored {stored_at}",
                pool_id=pool_id, sc_id=sc_id, computed_at=computed_at, stored_at=stored_at,
            )
        share_class.price = price
        share_class.price_computed_at = computed_at
        logger.debug("pool %s share class %s price %s at %s", pool_id, sc_id, price, computed_at)

    def update_shares(
        self,
        pool_id: PoolId,
        sc_id: ShareClassId,
        network_id: NetworkId,
        issuances: Decimal,
        revocations: Decimal,
    ) -> None:
        """Add to a network's cumulative counters, registering the network on first use."""
        share_class = self.get(pool_id, sc_id)
        issuances = require_amount(issuances, "issuances", allow_zero=True)
        revocations = require_amount(revocations, "revocations", allow_zero=True)
        if network_id not in share_class.issuances:
            share_class.active_networks.append(network_id)
            share_class.issuances[network_id] = ZERO
            share_class.revocations[network_id] = ZERO
        share_class.issuances[network_id] += issuances
        share_class.revocations[network_id] += revocations

    # ========================================================================
    # CHECKPOINTS
    # ========================================================================

    def checkpoint(self) -> Dict[str, Any]:
        return {
            'share_classes': copy.deepcopy(self._share_classes),
            'counts': dict(self._counts),
            'salts': set(self._salts),
        }

    def restore(self, checkpoint: Dict[str, Any]) -> None:
        self._share_classes = copy.deepcopy(checkpoint['share_classes'])
        self._counts = dict(checkpoint['counts'])
        self._salts = set(checkpoint['salts'])

    # ========================================================================
    # INTERNALS
    # ========================================================================

    @staticmethod
    def _check_metadata(name: str, symbol: str) -> None:
        if not name or len(name) > MAX_NAME_LENGTH:
            raise InvalidMetadata(
                f"Name must be 1-{MAX_NAME_LENGTH} characters",
                field="name", value=name,
            )
        if not symbol or len(symbol) > MAX_SYMBOL_LENGTH:
            raise InvalidMetadata(
                f"Symbol must be 1-{MAX_SYMBOL_LENGTH} characters",
                field="symbol", value=symbol,
            )
