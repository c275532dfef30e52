"""
test_epoch_scenarios.py - End-to-end epoch scenario tests

Tests complete pool flows through EpochProcessor.close_epoch():
- Deposit, revaluation, realization
- Redemptions
- Guard rejection and staleness rolling back the whole epoch
- Failures after the ledger commit rolling back the whole epoch
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from poolledger import (
    StaticValuation, DepositFulfillment, RedeemFulfillment,
    BatchAlreadyOpen, DustOrder, PriceChangeTooLarge, StaleValuation, HoldingNotInitialized,
    ZeroPrice,
    asset_account, equity_account, gain_account, new_asset_id,
)


@pytest.fixture
def tbill(pool):
    """A second holding priced by a settable oracle, starting at 1."""
    asset = new_asset_id(pool.network_id, 2)
    valuation = StaticValuation(pool.engine.clock, {asset: Decimal("1")})
    pool.engine.nav.initialize_holding(pool.pool_id, pool.sc_id, asset, valuation)
    return asset, valuation


def _account(pool, account):
    return pool.engine.ledger.get_account(pool.pool_id, account).signed_value()


class TestDepositRevalueRealize:
    """Deposit 1000 at price 1, revalue +500, realize into equity."""

    def test_first_deposit(self, pool):
        """An empty share class prices at 1 and issues 1:1."""
        engine = pool.engine
        result = engine.epochs.close_epoch(
            pool.pool_id, pool.sc_id, 1, pool.cash,
            deposits=[DepositFulfillment(Decimal("1000"), pool.network_id, "alice")],
        )

        assert result.price == Decimal("1")
        assert result.deposits.total_shares == Decimal("1000")
        assert result.redemptions is None
        assert engine.share_classes.total_issuance(pool.pool_id, pool.sc_id) == Decimal("1000")
        assert _account(pool, equity_account(pool.network_id)) == Decimal("1000")
        assert _account(pool, asset_account(pool.cash)) == Decimal("1000")
        assert engine.nav.net_asset_value(pool.pool_id, pool.network_id) == Decimal("1000")
        assert engine.share_classes.price_per_share(pool.pool_id, pool.sc_id) \
            == (Decimal("1"), engine.clock.current_time)

    def test_revaluation_books_gain(self, pool, tbill):
        """A +50% oracle move books Gain 500 and leaves Equity at 1000."""
        engine = pool.engine
        asset, valuation = tbill
        engine.guard.grant_admin(pool.pool_id, "admin")
        engine.guard.configure_guard(pool.pool_id, "admin", max_price_change_bps=5000)

        engine.epochs.close_epoch(
            pool.pool_id, pool.sc_id, 1, asset,
            deposits=[DepositFulfillment(Decimal("1000"), pool.network_id)],
        )
        engine.clock.advance_by(timedelta(minutes=10))
        valuation.update_price(asset, Decimal("1.5"))

        result = engine.epochs.close_epoch(pool.pool_id, pool.sc_id, 2, asset)

        assert result.change_bps == 5000
        assert result.price == Decimal("1.5")
        assert result.nav == Decimal("1500")
        assert _account(pool, gain_account(pool.network_id)) == Decimal("500")
        assert _account(pool, equity_account(pool.network_id)) == Decimal("1000")

        result = engine.epochs.close_epoch(pool.pool_id, pool.sc_id, 3, asset, realize_gains=True)

        assert result.realized == {pool.network_id: Decimal("500")}
        assert _account(pool, equity_account(pool.network_id)) == Decimal("1500")
        assert _account(pool, gain_account(pool.network_id)) == Decimal("0")
        assert engine.nav.net_asset_value(pool.pool_id, pool.network_id) == Decimal("1500")

    def test_deposit_at_higher_price(self, pool, tbill):
        """Later deposits buy fewer shares once the price has risen."""
        engine = pool.engine
        asset, valuation = tbill
        engine.guard.grant_admin(pool.pool_id, "admin")
        engine.guard.configure_guard(pool.pool_id, "admin", enforce_limits=False)
        engine.epochs.close_epoch(
            pool.pool_id, pool.sc_id, 1, asset,
            deposits=[DepositFulfillment(Decimal("1000"), pool.network_id)],
        )
        valuation.update_price(asset, Decimal("2"))

        result = engine.epochs.close_epoch(
            pool.pool_id, pool.sc_id, 2, asset,
            deposits=[DepositFulfillment(Decimal("500"), pool.network_id)],
        )

        assert result.price == Decimal("2")
        assert result.deposits.total_shares == Decimal("250")
        assert engine.holdings.amount(pool.pool_id, pool.sc_id, asset) == Decimal("1250")
        assert engine.holdings.value(pool.pool_id, pool.sc_id, asset) == Decimal("2500")


class TestRedemptions:
    """Redemptions pay assets out of the holding."""

    def test_partial_redemption(self, pool):
        engine = pool.engine
        engine.epochs.close_epoch(
            pool.pool_id, pool.sc_id, 1, pool.cash,
            deposits=[DepositFulfillment(Decimal("1000"), pool.network_id)],
        )
        result = engine.epochs.close_epoch(
            pool.pool_id, pool.sc_id, 2, pool.cash,
            redemptions=[RedeemFulfillment(Decimal("400"), pool.network_id, "alice")],
        )

        assert result.redemptions.total_assets == Decimal("400")
        assert engine.share_classes.total_issuance(pool.pool_id, pool.sc_id) == Decimal("600")
        assert engine.holdings.amount(pool.pool_id, pool.sc_id, pool.cash) == Decimal("600")
        assert _account(pool, equity_account(pool.network_id)) == Decimal("600")

    def test_deposits_and_redemptions_same_epoch(self, pool):
        engine = pool.engine
        engine.epochs.close_epoch(
            pool.pool_id, pool.sc_id, 1, pool.cash,
            deposits=[DepositFulfillment(Decimal("1000"), pool.network_id)],
        )
        engine.epochs.close_epoch(
            pool.pool_id, pool.sc_id, 2, pool.cash,
            deposits=[DepositFulfillment(Decimal("300"), pool.network_id)],
            redemptions=[RedeemFulfillment(Decimal("100"), pool.network_id)],
        )
        summary = engine.settlement.summary(pool.pool_id, pool.sc_id, 2)
        assert (summary.deposited, summary.shares_redeemed) == (Decimal("300"), Decimal("100"))
        assert engine.share_classes.total_issuance(pool.pool_id, pool.sc_id) == Decimal("1200")
        assert engine.ledger.verify_double_entry(pool.pool_id)['valid']


class TestEpochRollback:
    """A failing epoch leaves every component as it was."""

    def _seed(self, pool, asset):
        pool.engine.epochs.close_epoch(
            pool.pool_id, pool.sc_id, 1, asset,
            deposits=[DepositFulfillment(Decimal("1000"), pool.network_id)],
        )

    def test_guard_rejection_rolls_back(self, pool, tbill):
        """A +50% move under the default 1000 bps ceiling undoes the revaluation."""
        engine = pool.engine
        asset, valuation = tbill
        self._seed(pool, asset)
        commits = len(engine.ledger.commits)
        valuation.update_price(asset, Decimal("1.5"))

        with pytest.raises(PriceChangeTooLarge):
            engine.epochs.close_epoch(pool.pool_id, pool.sc_id, 2, asset)

        assert _account(pool, gain_account(pool.network_id)) == Decimal("0")
        assert engine.holdings.value(pool.pool_id, pool.sc_id, asset) == Decimal("1000")
        assert engine.share_classes.price_per_share(pool.pool_id, pool.sc_id)[0] == Decimal("1")
        assert engine.guard.last_validated_price(pool.pool_id, pool.sc_id) == Decimal("1")
        assert len(engine.ledger.commits) == commits
        assert not engine.ledger.has_open_batch()

    def test_stale_valuation_rolls_back(self, pool, tbill):
        """An oracle silent for longer than the max age blocks the epoch."""
        engine = pool.engine
        asset, _ = tbill
        self._seed(pool, asset)
        engine.clock.advance_by(timedelta(hours=2))

        with pytest.raises(StaleValuation):
            engine.epochs.close_epoch(
                pool.pool_id, pool.sc_id, 2, asset,
                deposits=[DepositFulfillment(Decimal("10"), pool.network_id)],
            )
        assert engine.holdings.amount(pool.pool_id, pool.sc_id, asset) == Decimal("1000")
        assert engine.settlement.summary(pool.pool_id, pool.sc_id, 2) is None

    def test_failure_after_commit_rolls_back(self, pool):
        """A dust order found at settlement undoes the committed postings."""
        engine = pool.engine

        with pytest.raises(DustOrder):
            engine.epochs.close_epoch(
                pool.pool_id, pool.sc_id, 1, pool.cash,
                deposits=[DepositFulfillment(Decimal("1"), pool.network_id)],
                price=Decimal("1e20"),
            )

        assert engine.ledger.journal == []
        assert engine.ledger.commits == []
        assert engine.holdings.amount(pool.pool_id, pool.sc_id, pool.cash) == Decimal("0")
        assert engine.share_classes.price_per_share(pool.pool_id, pool.sc_id) == (None, None)
        assert engine.guard.last_validated_price(pool.pool_id, pool.sc_id) is None

    def test_open_batch_blocks_epoch(self, pool):
        """The exclusive ledger refuses a second unit of work."""
        engine = pool.engine
        engine.ledger.open_batch(2)
        with pytest.raises(BatchAlreadyOpen):
            engine.epochs.close_epoch(
                pool.pool_id, pool.sc_id, 1, pool.cash,
                deposits=[DepositFulfillment(Decimal("1"), pool.network_id)],
            )
        assert engine.share_classes.total_issuance(pool.pool_id, pool.sc_id) == Decimal("0")

    def test_zero_priced_holding_rejects_deposit(self, pool, tbill):
        """A holding marked at 0 cannot convert a deposit into units."""
        engine = pool.engine
        asset, valuation = tbill
        valuation.update_price(asset, Decimal("0"))

        with pytest.raises(ZeroPrice) as exc_info:
            engine.epochs.close_epoch(
                pool.pool_id, pool.sc_id, 1, asset,
                deposits=[DepositFulfillment(Decimal("10"), pool.network_id)],
            )
        assert exc_info.value.operands["asset_id"] == asset
        assert engine.holdings.amount(pool.pool_id, pool.sc_id, asset) == Decimal("0")
        assert engine.ledger.journal == []
        assert engine.share_classes.price_per_share(pool.pool_id, pool.sc_id) == (None, None)
        assert not engine.ledger.has_open_batch()

    def test_unknown_holding(self, pool):
        with pytest.raises(HoldingNotInitialized):
            pool.engine.epochs.close_epoch(pool.pool_id, pool.sc_id, 1, new_asset_id(1, 99))
