"""
test_nav.py - Unit tests for account derivation and NAV

Tests:
- Deterministic account id packing
- Asset ids carrying their network
- Network initialization
- NAV formula and clamp at zero
- Realizing gain/loss into equity
"""

import pytest
from decimal import Decimal

from poolledger import (
    AccountType, InvalidAmount, NetworkAlreadyInitialized, NetworkNotInitialized,
    BatchAlreadyOpen,
    account_id, split_account_id, asset_account, equity_account, gain_account,
    liability_account, loss_account, new_asset_id, network_of,
)


def _book(pool, equity, gain, loss, liability):
    """Post balances onto the pool network's NAV accounts, balanced against cash."""
    ledger = pool.engine.ledger
    network = pool.network_id
    postings = [
        (ledger.post_debit, asset_account(pool.cash), equity + gain + liability - loss),
        (ledger.post_credit, equity_account(network), equity),
        (ledger.post_credit, gain_account(network), gain),
        (ledger.post_debit, loss_account(network), loss),
        (ledger.post_credit, liability_account(network), liability),
    ]
    with ledger.batch(pool.pool_id):
        for post, account, amount in postings:
            if amount:
                post(pool.pool_id, account, amount)


class TestAccountIds:
    """Tests for pure account id derivation."""

    def test_type_code_in_low_bits(self):
        """The type code occupies the low 16 bits."""
        assert account_id(5, AccountType.EQUITY) == (5 << 16) | 1
        assert account_id(5, AccountType.ASSET) == 5 << 16

    def test_split_is_inverse(self):
        """split_account_id() recovers entity and type."""
        for account_type in AccountType:
            assert split_account_id(account_id(1234, account_type)) == (1234, account_type)

    def test_distinct_per_type(self):
        """The four network buckets never collide."""
        ids = {equity_account(7), gain_account(7), loss_account(7), liability_account(7)}
        assert len(ids) == 4

    def test_negative_entity_rejected(self):
        """Entity ids cannot be negative."""
        with pytest.raises(InvalidAmount):
            account_id(-1, AccountType.ASSET)

    def test_asset_id_carries_network(self):
        """The network id sits in the upper 16 of 128 bits."""
        asset = new_asset_id(42, 7)
        assert network_of(asset) == 42
        assert asset < 1 << 128

    def test_network_id_range(self):
        """Network ids must fit in 16 bits."""
        with pytest.raises(InvalidAmount):
            new_asset_id(1 << 16, 1)


class TestNetworkInitialization:
    """Tests for initialize_network()."""

    def test_creates_four_accounts(self, engine):
        """Equity, Liability, Gain and Loss are created."""
        engine.nav.initialize_network(1, 3)
        for account in (equity_account(3), liability_account(3), gain_account(3), loss_account(3)):
            assert engine.ledger.account_exists(1, account)
        assert engine.nav.networks(1) == [3]

    def test_double_initialize_raises(self, engine):
        """A network can only be initialized once per pool."""
        engine.nav.initialize_network(1, 3)
        with pytest.raises(NetworkAlreadyInitialized):
            engine.nav.initialize_network(1, 3)

    def test_same_network_other_pool(self, engine):
        """Networks are scoped to their pool."""
        engine.nav.initialize_network(1, 3)
        engine.nav.initialize_network(2, 3)
        assert engine.nav.is_network_initialized(2, 3)

    def test_holding_requires_network(self, engine):
        """Holdings cannot be created on an uninitialized network."""
        with pytest.raises(NetworkNotInitialized):
            engine.nav.initialize_holding(1, "0x00", new_asset_id(9, 1), None)


class TestNetAssetValue:
    """Tests for the NAV formula."""

    def test_formula(self, pool):
        """Equity 100000 + Gain 5000 - Loss 1000 - Liability 2000 = 102000."""
        _book(pool, Decimal("100000"), Decimal("5000"), Decimal("1000"), Decimal("2000"))
        values = pool.engine.nav.get_account_values(pool.pool_id, pool.network_id)
        assert (values.equity, values.gain, values.loss, values.liability) == (
            Decimal("100000"), Decimal("5000"), Decimal("1000"), Decimal("2000"),
        )
        assert pool.engine.nav.net_asset_value(pool.pool_id, pool.network_id) == Decimal("102000")

    def test_clamped_at_zero(self, pool):
        """Liabilities beyond net equity clamp NAV to zero."""
        _book(pool, Decimal("100000"), Decimal("5000"), Decimal("1000"), Decimal("200000"))
        values = pool.engine.nav.get_account_values(pool.pool_id, pool.network_id)
        assert values.net < 0
        assert pool.engine.nav.net_asset_value(pool.pool_id, pool.network_id) == Decimal("0")

    def test_pool_nav_sums_networks(self, pool):
        """Pool NAV is the sum over initialized networks."""
        _book(pool, Decimal("100"), Decimal("0"), Decimal("0"), Decimal("0"))
        pool.engine.nav.initialize_network(pool.pool_id, 2)
        assert pool.engine.nav.pool_net_asset_value(pool.pool_id) == Decimal("100")

    def test_unknown_network_raises(self, pool):
        """NAV of an uninitialized network raises."""
        with pytest.raises(NetworkNotInitialized):
            pool.engine.nav.net_asset_value(pool.pool_id, 99)


class TestCloseGainLoss:
    """Tests for realizing unrealized P&L."""

    def test_net_gain_credits_equity(self, pool):
        """Gain 5000 and Loss 1000 move a net 4000 into Equity."""
        _book(pool, Decimal("100000"), Decimal("5000"), Decimal("1000"), Decimal("2000"))
        nav = pool.engine.nav

        net = nav.close_gain_loss(pool.pool_id, pool.network_id)

        values = nav.get_account_values(pool.pool_id, pool.network_id)
        assert net == Decimal("4000")
        assert values.equity == Decimal("104000")
        assert values.gain == Decimal("0")
        assert values.loss == Decimal("0")
        assert nav.net_asset_value(pool.pool_id, pool.network_id) == Decimal("102000")

    def test_net_loss_debits_equity(self, pool):
        """A net loss reduces Equity."""
        _book(pool, Decimal("1000"), Decimal("100"), Decimal("300"), Decimal("0"))
        net = pool.engine.nav.close_gain_loss(pool.pool_id, pool.network_id)
        values = pool.engine.nav.get_account_values(pool.pool_id, pool.network_id)
        assert net == Decimal("-200")
        assert values.equity == Decimal("800")

    def test_nothing_to_close(self, pool):
        """With no gain or loss nothing moves."""
        assert pool.engine.nav.close_gain_loss(pool.pool_id, pool.network_id) == Decimal("0")
        assert pool.engine.ledger.verify_double_entry(pool.pool_id)['valid']

    def test_requires_free_batch_slot(self, pool):
        """close_gain_loss() opens its own batch."""
        pool.engine.ledger.open_batch(pool.pool_id)
        with pytest.raises(BatchAlreadyOpen):
            pool.engine.nav.close_gain_loss(pool.pool_id, pool.network_id)
