"""
conftest.py - Shared pytest fixtures for vaultledger tests

Provides common fixtures used across unit, functional and conformance tests:
- Price sources and fee trackers
- Engines (empty, funded with pool liquidity, with an open position)
- A bare ledger holding only a lending pool, for compute-level tests

Engine builders and invariant checks live in tests/scenario.py.
"""

import pytest
from decimal import Decimal

from vaultledger import (
    Ledger,
    StaticPricingSource, ProfitShareTracker,
    InterestRateModel,
    create_lending_pool, token, pool_share,
    BAD_DEBT_SOCIALIZE,
)
from vaultledger.units.pool import compute_register_vault

from tests.scenario import T0, BTC_PRICE, ETH_PRICE, make_engine, seed


# =============================================================================
# BASIC FIXTURES
# =============================================================================

@pytest.fixture
def prices():
    """BTC at 50,000 and ETH at 3,000; quotes never age."""
    return StaticPricingSource({"BTC": BTC_PRICE, "ETH": ETH_PRICE})


@pytest.fixture
def tracker():
    return ProfitShareTracker(fee_wallet="treasury", platform_fee_bps=1000)


@pytest.fixture
def engine(prices, tracker):
    """Empty engine: no liquidity, no accounts beyond the system ones."""
    return make_engine(prices, tracker)


@pytest.fixture
def funded_engine(prices, tracker):
    """100,000 USDC of pool liquidity; alice and bob hold 10,000 each; admin holds 5,000."""
    engine = make_engine(prices, tracker)
    seed(engine, Decimal("100000"), alice=Decimal("10000"), bob=Decimal("10000"))
    engine.fund("admin", Decimal("5000"))
    return engine


@pytest.fixture
def open_position(funded_engine):
    """funded_engine with alice holding a 5x BTC position opened with 1,000 at 50,000."""
    position_id = funded_engine.open_position("alice", "BTC", Decimal("1000"), Decimal("5"))
    return funded_engine, position_id


# =============================================================================
# LEDGER-LEVEL FIXTURES
# =============================================================================

@pytest.fixture
def pool_ledger():
    """Bare ledger with a USDC pool (vault "VAULT" registered) and funded wallets."""
    ledger = Ledger("pool", T0, verbose=False, test_mode=True)
    ledger.register_unit(token("USDC", "USD Coin"))
    ledger.register_unit(pool_share("lpUSDC", "USDC pool share", "POOL-USDC"))
    ledger.register_unit(create_lending_pool(
        "POOL-USDC", "USDC lending pool", "USDC", "lpUSDC", admin="admin",
        rate_model=InterestRateModel(200, 400, 6000, 8000),
        insurance_fraction_bps=1000, flash_fee_bps=5,
        bad_debt_policy=BAD_DEBT_SOCIALIZE, created_at=T0,
    ))
    for wallet in ("POOL-USDC", "VAULT", "admin", "alice", "bob"):
        ledger.register_wallet(wallet)
    ledger.set_balance("alice", "USDC", Decimal("100000"))
    ledger.set_balance("bob", "USDC", Decimal("100000"))
    ledger.set_balance("VAULT", "USDC", Decimal("100000"))
    ledger.commit(compute_register_vault(ledger, "POOL-USDC", "admin", "VAULT"))
    return ledger
