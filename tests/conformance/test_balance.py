"""
Balance Conformance Tests

INVARIANT: For every pool p, at every point between batches:
    Σ_{a ∈ accounts(p)} total_debit(a) = Σ_{a ∈ accounts(p)} total_credit(a)

Balanced batches commit; unbalanced batches revert every posting they made.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal
from datetime import datetime

from poolledger import Ledger, Clock, AccountType, UnbalancedEntries


ACCOUNTS = list(range(1, 7))


# =============================================================================
# STRATEGIES FOR PROPERTY-BASED TESTING
# =============================================================================

@st.composite
def decimal_amount(draw, min_value=Decimal("0.000001"), max_value=Decimal("1000000")):
    """Generate a positive amount as Decimal."""
    return draw(st.decimals(
        min_value=min_value,
        max_value=max_value,
        places=6,
        allow_nan=False,
        allow_infinity=False,
    ))


@st.composite
def balanced_transfer(draw):
    """A (debit account, credit account, amount) triple."""
    debit = draw(st.sampled_from(ACCOUNTS))
    credit = draw(st.sampled_from(ACCOUNTS))
    return debit, credit, draw(decimal_amount())


def _ledger() -> Ledger:
    ledger = Ledger("conformance", clock=Clock(datetime(2025, 1, 1)))
    for i, account_type in zip(ACCOUNTS, AccountType):
        ledger.create_account(1, i, account_type)
    return ledger


class TestBalanceProperties:
    """Property-based balance tests."""

    @given(st.lists(st.lists(balanced_transfer(), min_size=1, max_size=5), min_size=1, max_size=10))
    @settings(max_examples=50)
    def test_balanced_batches_keep_ledger_balanced(self, batches):
        """
        PROPERTY: Any sequence of balanced batches leaves debits == credits.
        """
        ledger = _ledger()
        expected = Decimal("0")
        for transfers in batches:
            with ledger.batch(1):
                for debit, credit, amount in transfers:
                    ledger.post_debit(1, debit, amount)
                    ledger.post_credit(1, credit, amount)
                    expected += amount

        result = ledger.verify_double_entry(1)
        assert result['valid']
        assert result['debited'] == expected

    @given(st.lists(balanced_transfer(), min_size=1, max_size=5), decimal_amount())
    @settings(max_examples=50)
    def test_unbalanced_batch_leaves_no_trace(self, transfers, extra):
        """
        PROPERTY: An unbalanced batch changes no account.
        """
        ledger = _ledger()
        before = dict(ledger.accounts)

        batch = ledger.open_batch(1)
        for debit, credit, amount in transfers:
            ledger.post_debit(1, debit, amount)
            ledger.post_credit(1, credit, amount)
        ledger.post_debit(1, ACCOUNTS[0], extra)
        with pytest.raises(UnbalancedEntries):
            ledger.commit_batch(batch)

        assert ledger.accounts == before
        assert ledger.journal == []

    @given(st.lists(balanced_transfer(), min_size=1, max_size=5))
    @settings(max_examples=50)
    def test_orientation_is_sign_of_normal_side(self, transfers):
        """
        PROPERTY: For every account, signed value == (debit - credit) when
        debit-normal and (credit - debit) otherwise.
        """
        ledger = _ledger()
        with ledger.batch(1):
            for debit, credit, amount in transfers:
                ledger.post_debit(1, debit, amount)
                ledger.post_credit(1, credit, amount)

        for account in ledger.list_accounts(1):
            diff = account.total_debit - account.total_credit
            expected = diff if account.is_debit_normal else -diff
            assert account.signed_value() == expected
