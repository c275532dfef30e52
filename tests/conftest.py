"""
conftest.py - Shared pytest fixtures for pool ledger tests

Provides common fixtures used across unit and functional tests:
- A clock pinned to a fixed start time
- A bare ledger on that clock
- A fully wired engine
- A pool with one initialized network, one share class and a cash holding
"""

import pytest
from dataclasses import dataclass
from datetime import datetime

from poolledger import (
    Clock, Engine, Ledger, IdentityValuation,
    build_engine, new_asset_id,
)


START = datetime(2025, 1, 1, 9, 0)
POOL = 1
NETWORK = 1
CASH = new_asset_id(NETWORK, 1)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

@dataclass
class PoolSetup:
    """An engine with one pool ready to settle epochs."""
    engine: Engine
    pool_id: int
    network_id: int
    sc_id: str
    cash: int


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    """Clock starting at 2025-01-01 09:00."""
    return Clock(START)


@pytest.fixture
def ledger(clock):
    """Empty ledger on the shared clock."""
    return Ledger("test", clock=clock)


@pytest.fixture
def engine():
    """Fully wired engine starting at 2025-01-01 09:00."""
    return build_engine("test", initial_time=START)


@pytest.fixture
def pool(engine):
    """Pool 1 with network 1, a 'Senior' share class and a cash holding priced at 1."""
    engine.nav.initialize_network(POOL, NETWORK)
    sc_id = engine.share_classes.add_share_class(POOL, "Senior", "SNR", "senior-salt")
    engine.nav.initialize_holding(POOL, sc_id, CASH, IdentityValuation(engine.clock))
    return PoolSetup(engine, POOL, NETWORK, sc_id, CASH)
