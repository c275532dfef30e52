"""
ledger.py - Per-Pool Double-Entry Accounting Ledger

The Ledger owns every pool's chart of accounts and is the only module that
changes account balances. All changes happen inside a journal batch: an
explicit unit of work opened for one pool, filled with debit and credit
postings, and committed only when both sides balance.

Key responsibilities:
    - Creates accounts with an immutable class and normal side
    - Opens, commits and aborts journal batches (one per pool; exclusive by default)
    - Applies postings to cumulative debit/credit totals
    - Reverts every posting of a batch that fails to commit, and runs the
      undo callbacks registered on it
    - Keeps the audit journal of committed entries and commit records
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import logging

from .core import (
    # Types
    AccountId, AccountType, EntrySide, PoolId, Clock,
    # Constants
    ZERO,
    # Exceptions
    AccountAlreadyExists, AccountNotFound, BatchAlreadyOpen, BatchNotActive,
    NoOpenBatch, UnbalancedEntries,
    # Helpers
    require_amount,
)

logger = logging.getLogger(__name__)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Account:
    """
    A single account in a pool's chart of accounts.

    Attributes:
        pool_id: Pool owning the account
        account_id: Identifier, unique within the pool
        account_type: Class of the account (fixed at creation)
        total_debit: Cumulative debits ever posted
        total_credit: Cumulative credits ever posted
        last_updated: Logical time of the last posting (or creation)
        metadata: Free-form description supplied at creation
    """
    pool_id: PoolId
    account_id: AccountId
    account_type: AccountType
    total_debit: Decimal = ZERO
    total_credit: Decimal = ZERO
    last_updated: Optional[datetime] = None
    metadata: Optional[str] = None

    @property
    def is_debit_normal(self) -> bool:
        return self.account_type.is_debit_normal

    def value(self) -> Tuple[bool, Decimal]:
        """
        Return the account balance oriented by its normal side.

        Debit-normal accounts are positive when debits >= credits;
        credit-normal accounts are positive when credits >= debits.
        """
        if self.is_debit_normal:
            if self.total_debit >= self.total_credit:
                return True, self.total_debit - self.total_credit
            return False, self.total_credit - self.total_debit
        if self.total_credit >= self.total_debit:
            return True, self.total_credit - self.total_debit
        return False, self.total_debit - self.total_credit

    def signed_value(self) -> Decimal:
        is_positive, magnitude = self.value()
        return magnitude if is_positive else -magnitude


@dataclass(frozen=True, slots=True)
class JournalEntry:
    """Immutable audit record of one posting."""
    pool_id: PoolId
    journal_id: int
    account_id: AccountId
    side: EntrySide
    amount: Decimal
    timestamp: datetime

    def __repr__(self) -> str:
        return (f"JournalEntry(pool={self.pool_id} #{self.journal_id} "
                f"{self.side.value} {self.amount} -> {self.account_id})")


@dataclass(frozen=True, slots=True)
class JournalCommit:
    """Immutable record of a committed batch."""
    pool_id: PoolId
    journal_id: int
    debited: Decimal
    credited: Decimal
    entry_count: int
    timestamp: datetime


@dataclass(slots=True, eq=False)
class JournalBatch:
    """
    Token for one open unit of work on a pool.

    Returned by Ledger.open_batch() and handed back to commit_batch() or
    abort_batch(). Once closed, the token is dead: the ledger rejects it.

    Attributes:
        pool_id: Pool the batch is scoped to
        journal_id: Monotonic per-pool journal number
        debited: Running sum of debit postings
        credited: Running sum of credit postings
        entries: Postings made through this batch, in order
        closed: True after commit or abort
    """
    pool_id: PoolId
    journal_id: int
    debited: Decimal = ZERO
    credited: Decimal = ZERO
    entries: List[JournalEntry] = field(default_factory=list)
    closed: bool = False
    # Account state as it was before the batch first touched it
    _originals: Dict[AccountId, Account] = field(default_factory=dict)
    # Callbacks run newest-first when the batch is reverted
    _undo: List[Callable[[], None]] = field(default_factory=list)

    def on_revert(self, undo: Callable[[], None]) -> None:
        """Register state outside the ledger to roll back if this batch is reverted."""
        self._undo.append(undo)

    @property
    def is_balanced(self) -> bool:
        return self.debited == self.credited

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return (f"JournalBatch(pool={self.pool_id} #{self.journal_id} {state}, "
                f"debited={self.debited}, credited={self.credited})")


# ============================================================================
# LEDGER
# ============================================================================

class Ledger:
    """
    Double-entry ledger holding one chart of accounts per pool.

    Protocol:
        batch = ledger.open_batch(pool_id)
        ledger.post_debit(pool_id, cash_account, amount)
        ledger.post_credit(pool_id, equity_account, amount)
        ledger.commit_batch(batch)

    or, equivalently:
        with ledger.batch(pool_id):
            ...

    Batches:
        At most one batch may be open per pool. In exclusive mode (the
        default) at most one batch may be open across all pools, so a unit of
        work is strictly sequenced. Opening while a batch is open fails
        immediately; nothing queues.

    Thread Safety:
        Not thread-safe. Each thread should maintain its own Ledger instance.
    """

    def __init__(
        self,
        name: str = "main",
        clock: Optional[Clock] = None,
        exclusive: bool = True,
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier (used in log lines)
            clock: Shared logical clock (a fresh Clock by default)
            exclusive: Allow only one open batch across all pools
        """
        self.name = name
        self.clock = clock or Clock()
        self.exclusive = exclusive
        self.accounts: Dict[Tuple[PoolId, AccountId], Account] = {}
        self.journal: List[JournalEntry] = []
        self.commits: List[JournalCommit] = []
        self._open_batches: Dict[PoolId, JournalBatch] = {}
        self._next_journal_id: Dict[PoolId, int] = {}

    # ========================================================================
    # TIME
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self.clock.current_time

    def advance_time(self, new_time: datetime) -> None:
        self.clock.advance_time(new_time)

    # ========================================================================
    # READ-ONLY ACCESS
    # ========================================================================

    def account_exists(self, pool_id: PoolId, account_id: AccountId) -> bool:
        return (pool_id, account_id) in self.accounts

    def get_account(self, pool_id: PoolId, account_id: AccountId) -> Account:
        """
        Return the account record.

        Raises:
            AccountNotFound: If the account does not exist in the pool
        """
        account = self.accounts.get((pool_id, account_id))
        if account is None:
            raise AccountNotFound(
                f"Account {account_id} not found in pool {pool_id}",
                pool_id=pool_id, account_id=account_id,
            )
        return account

    def account_value(self, pool_id: PoolId, account_id: AccountId) -> Tuple[bool, Decimal]:
        """
        Return (is_positive, magnitude) of an account, oriented by its normal side.

        This is the single source of truth for balances consumed by NAV.
        """
        return self.get_account(pool_id, account_id).value()

    def account_totals(self, pool_id: PoolId, account_id: AccountId) -> Tuple[Decimal, Decimal]:
        """Return the cumulative (debit, credit) totals of an account."""
        account = self.get_account(pool_id, account_id)
        return account.total_debit, account.total_credit

    def list_accounts(self, pool_id: PoolId) -> List[Account]:
        """List the pool's accounts ordered by account id."""
        return sorted(
            (a for (p, _), a in self.accounts.items() if p == pool_id),
            key=lambda a: a.account_id,
        )

    def active_batch(self, pool_id: PoolId) -> Optional[JournalBatch]:
        """Return the open batch for the pool, if any."""
        return self._open_batches.get(pool_id)

    def require_batch(self, pool_id: PoolId) -> JournalBatch:
        """
        Return the open batch for the pool.

        Raises:
            NoOpenBatch: If the pool has no open batch
        """
        batch = self._open_batches.get(pool_id)
        if batch is None:
            raise NoOpenBatch(
                f"No open batch for pool {pool_id}",
                pool_id=pool_id, expected="open", actual="closed",
            )
        return batch

    def has_open_batch(self) -> bool:
        return bool(self._open_batches)

    def verify_double_entry(self, pool_id: PoolId) -> Dict[str, Any]:
        """
        Verify that the pool's committed debits equal its committed credits.

        Returns:
            Dict with keys:
            - 'valid': bool - True if total debits == total credits
            - 'debited': Decimal - Sum of debits over all pool accounts
            - 'credited': Decimal - Sum of credits over all pool accounts
        """
        debited = sum((a.total_debit for a in self.list_accounts(pool_id)), ZERO)
        credited = sum((a.total_credit for a in self.list_accounts(pool_id)), ZERO)
        return {
            'valid': debited == credited,
            'debited': debited,
            'credited': credited,
        }

    # ========================================================================
    # ACCOUNTS (Mutating)
    # ========================================================================

    def create_account(
        self,
        pool_id: PoolId,
        account_id: AccountId,
        account_type: AccountType,
        metadata: Optional[str] = None,
    ) -> Account:
        """
        Create an account in a pool's chart of accounts.

        The normal side follows from the class and can never change.

        Raises:
            AccountAlreadyExists: If the account id is taken in this pool
        """
        key = (pool_id, account_id)
        if key in self.accounts:
            raise AccountAlreadyExists(
                f"Account {account_id} already exists in pool {pool_id}",
                pool_id=pool_id, account_id=account_id,
            )
        account = Account(
            pool_id=pool_id,
            account_id=account_id,
            account_type=account_type,
            last_updated=self.current_time,
            metadata=metadata,
        )
        self.accounts[key] = account
        logger.debug("%s: created account %s (%s) in pool %s",
                     self.name, account_id, account_type.name, pool_id)
        return account

    # ========================================================================
    # BATCHES (Mutating)
    # ========================================================================

    def open_batch(self, pool_id: PoolId) -> JournalBatch:
        """
        Open a unit of work for a pool.

        Returns:
            The batch token to pass to commit_batch() or abort_batch()

        Raises:
            BatchAlreadyOpen: If the pool already has an open batch, or any
                              batch is open and the ledger is exclusive
        """
        current = self._open_batches.get(pool_id)
        if current is None and self.exclusive and self._open_batches:
            current = next(iter(self._open_batches.values()))
        if current is not None:
            raise BatchAlreadyOpen(
                f"Cannot open batch for pool {pool_id}: "
                f"batch #{current.journal_id} of pool {current.pool_id} is open",
                pool_id=pool_id, expected="closed",
                open_pool_id=current.pool_id, open_journal_id=current.journal_id,
            )
        journal_id = self._next_journal_id.get(pool_id, 1)
        self._next_journal_id[pool_id] = journal_id + 1
        batch = JournalBatch(pool_id=pool_id, journal_id=journal_id)
        self._open_batches[pool_id] = batch
        logger.debug("%s: opened batch #%d for pool %s", self.name, journal_id, pool_id)
        return batch

    def post_debit(self, pool_id: PoolId, account_id: AccountId, amount: Decimal) -> JournalEntry:
        """Debit an account inside the pool's open batch."""
        return self._post(pool_id, account_id, amount, EntrySide.DEBIT)

    def post_credit(self, pool_id: PoolId, account_id: AccountId, amount: Decimal) -> JournalEntry:
        """Credit an account inside the pool's open batch."""
        return self._post(pool_id, account_id, amount, EntrySide.CREDIT)

    def commit_batch(self, batch: JournalBatch) -> JournalCommit:
        """
        Close a batch, keeping its postings.

        Raises:
            BatchNotActive: If the token is not the pool's open batch
            UnbalancedEntries: If debits != credits; every posting of the
                               batch has been reverted and the batch closed
        """
        self._require_active(batch)
        if not batch.is_balanced:
            self._revert(batch)
            logger.warning(
                "%s: batch #%d of pool %s unbalanced (debited=%s, credited=%s); reverted",
                self.name, batch.journal_id, batch.pool_id, batch.debited, batch.credited,
            )
            raise UnbalancedEntries(
                f"Unbalanced entries in batch #{batch.journal_id}: "
                f"debited {batch.debited} != credited {batch.credited}",
                pool_id=batch.pool_id, journal_id=batch.journal_id,
                debited=batch.debited, credited=batch.credited,
            )
        record = JournalCommit(
            pool_id=batch.pool_id,
            journal_id=batch.journal_id,
            debited=batch.debited,
            credited=batch.credited,
            entry_count=len(batch.entries),
            timestamp=self.current_time,
        )
        self.journal.extend(batch.entries)
        self.commits.append(record)
        self._close(batch)
        logger.info("%s: committed batch #%d for pool %s (%d entries, %s)",
                    self.name, batch.journal_id, batch.pool_id,
                    len(batch.entries), batch.debited)
        return record

    def abort_batch(self, batch: JournalBatch) -> None:
        """
        Discard a batch: every posting is reverted and the slot is freed.

        Raises:
            BatchNotActive: If the token is not the pool's open batch
        """
        self._require_active(batch)
        self._revert(batch)
        logger.info("%s: aborted batch #%d for pool %s (%d entries discarded)",
                    self.name, batch.journal_id, batch.pool_id, len(batch.entries))

    @contextmanager
    def batch(self, pool_id: PoolId) -> Iterator[JournalBatch]:
        """
        Run a block as one unit of work.

        Commits on normal exit; aborts and re-raises if the block raises.
        """
        batch = self.open_batch(pool_id)
        try:
            yield batch
        except BaseException:
            if not batch.closed:
                self.abort_batch(batch)
            raise
        self.commit_batch(batch)

    # ========================================================================
    # CHECKPOINTS
    # ========================================================================

    def checkpoint(self) -> Dict[str, Any]:
        """
        Capture committed state so an enclosing unit of work can be undone.

        Accounts are immutable records, so copying the mapping is enough.
        """
        return {
            'accounts': dict(self.accounts),
            'journal_length': len(self.journal),
            'commits_length': len(self.commits),
            'open_batches': list(self._open_batches.values()),
        }

    def restore(self, checkpoint: Dict[str, Any]) -> None:
        """
        Return to a checkpoint, aborting any batch opened since it was taken.

        Journal ids are not reused: numbering continues from where it was.
        """
        for batch in list(self._open_batches.values()):
            if not any(batch is kept for kept in checkpoint['open_batches']):
                self.abort_batch(batch)
        self.accounts = dict(checkpoint['accounts'])
        del self.journal[checkpoint['journal_length']:]
        del self.commits[checkpoint['commits_length']:]

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _post(self, pool_id: PoolId, account_id: AccountId, amount: Decimal, side: EntrySide) -> JournalEntry:
        batch = self.require_batch(pool_id)
        account = self.get_account(pool_id, account_id)
        amount = require_amount(amount)

        batch._originals.setdefault(account_id, account)
        now = self.current_time
        if side is EntrySide.DEBIT:
            updated = replace(account, total_debit=account.total_debit + amount, last_updated=now)
            batch.debited += amount
        else:
            updated = replace(account, total_credit=account.total_credit + amount, last_updated=now)
            batch.credited += amount
        self.accounts[(pool_id, account_id)] = updated

        entry = JournalEntry(
            pool_id=pool_id,
            journal_id=batch.journal_id,
            account_id=account_id,
            side=side,
            amount=amount,
            timestamp=now,
        )
        batch.entries.append(entry)
        logger.debug("%s: %r", self.name, entry)
        return entry

    def _require_active(self, batch: JournalBatch) -> None:
        if batch.closed or self._open_batches.get(batch.pool_id) is not batch:
            raise BatchNotActive(
                f"Batch #{batch.journal_id} of pool {batch.pool_id} is not the active batch",
                pool_id=batch.pool_id, journal_id=batch.journal_id,
                expected="open", actual="closed" if batch.closed else "superseded",
            )

    def _revert(self, batch: JournalBatch) -> None:
        for account_id, original in batch._originals.items():
            self.accounts[(batch.pool_id, account_id)] = original
        for undo in reversed(batch._undo):
            undo()
        self._close(batch)

    def _close(self, batch: JournalBatch) -> None:
        batch.closed = True
        del self._open_batches[batch.pool_id]
