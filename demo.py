#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: A Leveraged Lending Vault Step by Step

This is a pedagogical walk through the vault engine. Each step builds on the
previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:   The Pool        - Wiring, deposits and shares, the rate curve
  4-6:   Leverage        - Opening a position, interest over time, closing
  7-8:   Risk            - Crash, keeper liquidation, bad debt, E-Mode tiers
  9-10:  Atomicity       - Flash loans, rejected operations
  11:    Audit           - Event feed and conservation

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import sys

from vaultledger import (
    LeverageEngine, StaticPricingSource, ProfitShareTracker, InterestRateModel, LedgerError,
    create_engine,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)

    # Pool
    lp_liquidity: Decimal = Decimal("100000")

    # Traders
    alice_initial: Decimal = Decimal("10000")
    bob_initial: Decimal = Decimal("10000")
    position_amount: Decimal = Decimal("1000")
    leverage: Decimal = Decimal("5")

    # Prices
    btc_price: Decimal = Decimal("50000")
    eth_price: Decimal = Decimal("3000")
    btc_rally: Decimal = Decimal("60000")
    btc_crash: Decimal = Decimal("38000")

    # Flash loan
    flash_amount: Decimal = Decimal("1000")


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    print(f"\n--- {text} ---\n")


def show_pool(engine: LeverageEngine):
    state = engine.pool_state()
    print(f"total_deposits:    {state.total_deposits}")
    print(f"total_borrowed:    {state.total_borrowed}")
    print(f"total_shares:      {state.total_shares}")
    print(f"insurance_reserve: {state.insurance_reserve}")
    print(f"total_bad_debt:    {state.total_bad_debt}")
    print(f"utilization:       {engine.utilization():.6f}")
    print(f"borrow rate:       {engine.borrow_rate():.4f} bps")


# ============================================================================
# PHASE 1: THE POOL (Steps 1-3)
# ============================================================================

def step_01_wire_engine():
    """Build a fully wired engine."""
    step_header(1, "Wiring the Engine",
        "One ledger holds the pool, the risk registry, the vault and the liquidator.")

    print("""
    create_engine() registers every unit on a fresh ledger:

    USDC         - the pool asset (6 decimals, no overdrafts)
    lpUSDC       - pool shares, minted on deposit and burned on withdraw
    POOL-USDC    - pool state: deposits, borrows, insurance, borrow index
    EMODE        - risk tiers (tier 0 is the default)
    VAULT        - leveraged positions, each its own unit
    LIQUIDATOR   - keeper allow-list and batch limits
    """)

    prices = StaticPricingSource({"BTC": CONFIG.btc_price, "ETH": CONFIG.eth_price})
    tracker = ProfitShareTracker(fee_wallet="treasury", platform_fee_bps=1000)
    print(">>> engine = create_engine(prices=prices, tracker=tracker, start=...)")
    engine = create_engine(prices=prices, tracker=tracker, start=CONFIG.start_time)

    section_header("Registered Units")
    for symbol in engine.ledger.list_units():
        print(f"  {symbol}")
    return engine, prices


def step_02_deposits(engine: LeverageEngine):
    """Depositors mint shares."""
    step_header(2, "Deposits and Shares",
        "The first deposit mints shares 1:1; later deposits mint at the current share price.")

    engine.open_account("lp", fund=CONFIG.lp_liquidity)
    engine.open_account("alice", fund=CONFIG.alice_initial)
    engine.open_account("bob", fund=CONFIG.bob_initial)
    engine.open_account("keeper", fund=Decimal("1"))

    print(f">>> engine.deposit('lp', {CONFIG.lp_liquidity})")
    shares = engine.deposit("lp", CONFIG.lp_liquidity)
    print(f"shares minted: {shares}")

    section_header("Pool")
    show_pool(engine)
    return engine


def step_03_rate_curve(engine: LeverageEngine):
    """Sample the kinked rate model."""
    step_header(3, "The Rate Curve",
        "Borrow rates rise gently up to the kink, then steeply.")

    irm = InterestRateModel.from_dict(engine.ledger.get_unit_state(engine.pool)["rate_model"])
    print(f"rate model: {irm}")
    utilization, borrow, supply = irm.rate_curve(n_points=11, reserve_factor_bps=1000)
    print(f"\n{'U':>6} {'borrow bps':>12} {'supply bps':>12}")
    for u, b, s in zip(utilization, borrow, supply):
        print(f"{u:>6.1f} {b:>12.2f} {s:>12.2f}")
    return engine


# ============================================================================
# PHASE 2: LEVERAGE (Steps 4-6)
# ============================================================================

def step_04_open_position(engine: LeverageEngine):
    """Open a 5x BTC position."""
    step_header(4, "Opening a Leveraged Position",
        "deposit * leverage = exposure; the vault borrows the difference from the pool.")

    print(f">>> engine.open_position('alice', 'BTC', {CONFIG.position_amount}, {CONFIG.leverage})")
    position_id = engine.open_position("alice", "BTC", CONFIG.position_amount, CONFIG.leverage)
    position = engine.get_position(position_id)

    section_header("Position")
    print(f"deposit (after 0.1% entry fee): {position.deposit_amount}")
    print(f"total exposure:                 {position.total_exposure}")
    print(f"borrowed:                       {position.borrowed_amount}")
    print(f"entry price:                    {position.entry_price}")
    print(f"health factor:                  {engine.health_factor(position_id)}")
    return engine, position_id


def step_05_time_passes(engine: LeverageEngine, position_id: int):
    """Interest accrues lazily."""
    step_header(5, "Interest Over Time",
        "Accrual happens on every call; debt compounds through the borrow index.")

    later = engine.current_time + timedelta(days=30)
    print(f">>> engine.advance_time({later})")
    engine.advance_time(later)

    print(f"position debt:   {engine.position_debt(position_id)}")
    print(f"lp share value:  {engine.deposited_amount('lp')}")
    section_header("Pool (accrued view)")
    show_pool(engine)
    return engine


def step_06_close_position(engine: LeverageEngine, prices: StaticPricingSource, position_id: int):
    """Close with a profit."""
    step_header(6, "Closing at a Profit",
        "Debt is repaid first; the platform fee is taken from the equity gain only.")

    prices.update_price("BTC", CONFIG.btc_rally)
    result = engine.close_position("alice", position_id)

    print(f"current value:  {result.current_value}")
    print(f"debt repaid:    {result.debt_repaid}")
    print(f"value increase: {result.value_increase}")
    print(f"platform fee:   {result.platform_fee}")
    print(f"user payout:    {result.user_payout}")
    print(f"alice balance:  {engine.balance_of('alice')}")
    prices.update_price("BTC", CONFIG.btc_price)
    return engine


# ============================================================================
# PHASE 3: RISK (Steps 7-8)
# ============================================================================

def step_07_liquidation(engine: LeverageEngine, prices: StaticPricingSource):
    """A crash makes a position unsafe and a keeper liquidates it."""
    step_header(7, "Crash and Liquidation",
        "Debt to the pool first, then the keeper's bonus; any shortfall is bad debt.")

    position_id = engine.open_position("bob", "BTC", CONFIG.position_amount, CONFIG.leverage)
    print(f"bob's health factor at open: {engine.health_factor(position_id)}")

    prices.update_price("BTC", CONFIG.btc_crash)
    print(f"BTC -> {CONFIG.btc_crash}; health factor: {engine.health_factor(position_id):.4f}")
    print(f"liquidatable: {engine.find_liquidatable()}")

    result = engine.sweep("keeper")
    for outcome in result.outcomes:
        print(f"\nposition {outcome.position_id}:")
        print(f"  collateral seized: {outcome.collateral_seized}")
        print(f"  liquidator bonus:  {outcome.liquidator_bonus}")
        print(f"  debt repaid:       {outcome.debt_repaid}")
        print(f"  bad debt:          {outcome.bad_debt_recorded}")

    section_header("Pool after absorbing the shortfall")
    show_pool(engine)
    prices.update_price("BTC", CONFIG.btc_price)
    return engine


def step_08_risk_tiers(engine: LeverageEngine):
    """Correlated-asset tiers allow a higher threshold."""
    step_header(8, "E-Mode Tiers",
        "A tier restricted to BTC may run closer to its collateral value.")

    tier_id = engine.add_tier("admin", 9000, 9300, 200, "btc-correlated", ("BTC",))
    engine.set_user_tier("alice", tier_id)
    tier = engine.account_tier("alice")
    print(f"tier {tier_id}: {tier.label}")
    print(f"  ltv {tier.ltv_bps} bps, threshold {tier.liquidation_threshold_bps} bps")
    print(f"  liquidatable below health factor {tier.health_threshold:.4f}")

    section_header("Opening ETH in a BTC-only tier")
    try:
        engine.open_position("alice", "ETH", Decimal("100"), Decimal("2"))
    except LedgerError as e:
        print(f"{type(e).__name__}: {e}")
    return engine


# ============================================================================
# PHASE 4: ATOMICITY (Steps 9-10)
# ============================================================================

class Arbitrageur:
    """Flash receiver that repays principal plus fee from its own wallet."""
    wallet = "arb"

    def __init__(self, repay: bool = True):
        self.repay = repay

    def on_flash_loan(self, engine, loan_id, amount, fee, data):
        print(f"  callback: holding {engine.balance_of(self.wallet)} USDC, fee {fee}")
        if self.repay:
            engine.repay_flash_loan(loan_id, self.wallet)


def step_09_flash_loan(engine: LeverageEngine):
    """Borrow and repay inside one call."""
    step_header(9, "Flash Loans",
        "The loan is a record in pool state; if it is still open after the callback, nothing happened.")

    engine.open_account("arb", fund=Decimal("10"))
    before = engine.pool_state().total_deposits

    fee = engine.flash_loan(Arbitrageur(), CONFIG.flash_amount)
    print(f"repaid; fee {fee} credited to depositors "
          f"({before} -> {engine.pool_state().total_deposits})")

    section_header("A receiver that does not repay")
    try:
        engine.flash_loan(Arbitrageur(repay=False), CONFIG.flash_amount)
    except LedgerError as e:
        print(f"{type(e).__name__}: {e}")
    print(f"arb balance: {engine.balance_of('arb')} (loan rolled back)")
    return engine


def step_10_rejections(engine: LeverageEngine):
    """Every rejection leaves the ledger untouched."""
    step_header(10, "Rejected Operations",
        "Typed errors are raised before anything is applied.")

    attempts = [
        ("withdraw more than available", lambda: engine.withdraw("lp", engine.shares_of("lp") * 2)),
        ("leverage above 5x", lambda: engine.open_position("bob", "BTC", Decimal("100"), Decimal("6"))),
        ("unpriced asset", lambda: engine.open_position("bob", "SOL", Decimal("100"), Decimal("2"))),
        ("vault-only borrow", lambda: engine.borrow("bob", Decimal("1"), "bob")),
    ]
    log_length = len(engine.ledger.transaction_log)
    for label, attempt in attempts:
        try:
            attempt()
        except LedgerError as e:
            print(f"{label:32} -> {type(e).__name__}")
    print(f"\ntransaction log unchanged: {len(engine.ledger.transaction_log) == log_length}")
    return engine


# ============================================================================
# PHASE 5: AUDIT (Step 11)
# ============================================================================

def step_11_audit(engine: LeverageEngine):
    """The event feed and conservation."""
    step_header(11, "Event Feed and Conservation",
        "Every committed transition produced an event; every unit still sums to zero.")

    for event in engine.events:
        print(f"  #{event.sequence:<3} {event.name}")

    section_header("Invariants")
    for name, ok in engine.check_invariants().items():
        print(f"  {name:28} {ok}")
    return engine


def main():
    """Run the complete tutorial."""
    print("=" * 70)
    print("       VAULTLEDGER - INTERACTIVE TUTORIAL")
    print("=" * 70)

    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")
    wait_for_enter()

    engine, prices = step_01_wire_engine()
    wait_for_enter()
    step_02_deposits(engine)
    wait_for_enter()
    step_03_rate_curve(engine)
    wait_for_enter()

    engine, position_id = step_04_open_position(engine)
    wait_for_enter()
    step_05_time_passes(engine, position_id)
    wait_for_enter()
    step_06_close_position(engine, prices, position_id)
    wait_for_enter()

    step_07_liquidation(engine, prices)
    wait_for_enter()
    step_08_risk_tiers(engine)
    wait_for_enter()

    step_09_flash_loan(engine)
    wait_for_enter()
    step_10_rejections(engine)
    wait_for_enter()

    step_11_audit(engine)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    Next steps:
      - See vaultledger/units/*.py for the pool, tiers and vault
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
