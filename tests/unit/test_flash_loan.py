"""
test_flash_loan.py - Unit tests for flash loans

Tests:
- Fee accrues to depositors
- Liquidity visible to the receiver while the loan is out
- Unrepaid loans and failing callbacks roll the ledger back
- Fees, events and tracker entries from inside a rolled-back callback are discarded
- Nested flash loans are rejected
"""

import pytest
from decimal import Decimal

from tests.scenario import seed, pool_cash, assert_pool_invariants
from vaultledger import (
    ValidationError, LiquidityError, ReentrancyError, FlashLoanNotRepaid, TransferFailure,
    FEE_TYPE_ENTRY,
)


class Arbitrageur:
    """Receiver that repays from its own wallet, optionally doing something first."""

    def __init__(self, wallet, action=None, repay=True):
        self.wallet = wallet
        self.action = action
        self.repay = repay
        self.calls = []

    def on_flash_loan(self, engine, loan_id, amount, fee, data):
        self.calls.append((loan_id, amount, fee, data, engine.balance_of(self.wallet)))
        if self.action is not None:
            self.action(engine, loan_id)
        if self.repay:
            engine.repay_flash_loan(loan_id, self.wallet)


@pytest.fixture
def flash_engine(funded_engine):
    funded_engine.open_account("arb", fund=Decimal("10"))
    return funded_engine


class TestFlashLoan:

    def test_fee_accrues_to_depositors(self, flash_engine):
        receiver = Arbitrageur("arb")
        fee = flash_engine.flash_loan(receiver, Decimal("1000"), data="route-1")
        assert fee == Decimal("0.5")
        assert receiver.calls == [(1, Decimal("1000"), Decimal("0.5"), "route-1", Decimal("1010"))]
        assert flash_engine.balance_of("arb") == Decimal("9.5")
        state = flash_engine.pool_state()
        assert state.total_deposits == Decimal("100000.5")
        assert state.flash_loans == {}
        assert flash_engine.deposited_amount("lp") == Decimal("100000.5")
        assert pool_cash(flash_engine) == Decimal("100000.5")
        assert_pool_invariants(flash_engine)

    def test_event_after_repayment(self, flash_engine):
        flash_engine.flash_loan(Arbitrageur("arb"), Decimal("1000"))
        event = flash_engine.events[-1]
        assert event.name == "FlashLoan"
        assert event["receiver"] == "arb"
        assert event["fee"] == Decimal("0.5")
        assert event["total_deposits"] == Decimal("100000.5")

    def test_loan_ids_increase(self, flash_engine):
        receiver = Arbitrageur("arb")
        flash_engine.flash_loan(receiver, Decimal("100"))
        flash_engine.flash_loan(receiver, Decimal("100"))
        assert [c[0] for c in receiver.calls] == [1, 2]

    def test_liquidity_reduced_while_out(self, flash_engine):
        seen = []
        receiver = Arbitrageur("arb", action=lambda engine, _: seen.append(engine.available_liquidity()))
        flash_engine.flash_loan(receiver, Decimal("1000"))
        assert seen == [Decimal("99000")]
        assert flash_engine.available_liquidity() == Decimal("100000.5")

    def test_exceeds_liquidity(self, flash_engine):
        with pytest.raises(LiquidityError):
            flash_engine.flash_loan(Arbitrageur("arb"), Decimal("100001"))

    def test_non_positive_amount(self, flash_engine):
        with pytest.raises(ValidationError):
            flash_engine.flash_loan(Arbitrageur("arb"), Decimal("0"))

    def test_fee_rounds_up(self, flash_engine):
        fee = flash_engine.flash_loan(Arbitrageur("arb"), Decimal("0.000001"))
        assert fee == Decimal("0.000001")


class TestFlashLoanRollback:

    def test_unrepaid_loan_rolls_back(self, flash_engine):
        before = flash_engine.pool_state()
        log_length = len(flash_engine.ledger.transaction_log)
        with pytest.raises(FlashLoanNotRepaid):
            flash_engine.flash_loan(Arbitrageur("arb", repay=False), Decimal("1000"))
        assert flash_engine.pool_state() == before
        assert flash_engine.balance_of("arb") == Decimal("10")
        assert pool_cash(flash_engine) == Decimal("100000")
        assert len(flash_engine.ledger.transaction_log) == log_length
        assert flash_engine.events[-1].name != "FlashLoan"
        assert_pool_invariants(flash_engine)

    def test_not_repaid_is_a_transfer_failure(self):
        assert issubclass(FlashLoanNotRepaid, TransferFailure)

    def test_depositing_the_loan_is_not_repayment(self, flash_engine):
        def deposit_instead(engine, _):
            engine.deposit("arb", Decimal("1000"))

        with pytest.raises(FlashLoanNotRepaid):
            flash_engine.flash_loan(Arbitrageur("arb", action=deposit_instead, repay=False), Decimal("1000"))
        assert flash_engine.shares_of("arb") == 0
        assert flash_engine.pool_state().total_deposits == Decimal("100000")

    def test_repayment_without_funds(self, funded_engine):
        funded_engine.open_account("broke")
        with pytest.raises(TransferFailure):
            funded_engine.flash_loan(Arbitrageur("broke"), Decimal("1000"))
        assert funded_engine.balance_of("broke") == 0
        assert funded_engine.pool_state().flash_loans == {}

    def test_callback_error_discards_fees_and_events(self, flash_engine, tracker):
        events_before = len(flash_engine.events)

        def open_then_fail(engine, _):
            engine.open_position("arb", "BTC", Decimal("10"), Decimal("2"))
            raise RuntimeError("route failed")

        with pytest.raises(RuntimeError, match="route failed"):
            flash_engine.flash_loan(Arbitrageur("arb", action=open_then_fail), Decimal("1000"))
        assert len(flash_engine.events) == events_before
        assert FEE_TYPE_ENTRY not in tracker.collected
        assert tracker.entries == {}
        assert flash_engine.get_user_positions("arb") == ()
        assert flash_engine.balance_of("arb") == Decimal("10")
        assert flash_engine.balance_of("treasury") == 0
        assert_pool_invariants(flash_engine)

    def test_work_inside_callback_commits_with_the_loan(self, flash_engine, tracker):
        def open_position(engine, _):
            engine.open_position("arb", "BTC", Decimal("10"), Decimal("2"))

        flash_engine.flash_loan(Arbitrageur("arb", action=open_position), Decimal("1000"))
        assert flash_engine.get_user_positions("arb") == (1,)
        assert tracker.collected[FEE_TYPE_ENTRY] == Decimal("0.01")
        assert tracker.entries[1].deposit_value == Decimal("9.99")
        names = [e.name for e in flash_engine.events]
        assert names[-3:] == ["Borrow", "PositionOpened", "FlashLoan"]
        assert_pool_invariants(flash_engine)

    def test_open_and_close_inside_one_callback(self, flash_engine, tracker):
        closes = []

        def round_trip(engine, _):
            position_id = engine.open_position("arb", "BTC", Decimal("10"), Decimal("2"))
            closes.append(engine.close_position("arb", position_id))

        flash_engine.flash_loan(Arbitrageur("arb", action=round_trip), Decimal("1000"))
        assert closes[0].platform_fee == 0
        assert closes[0].user_payout == Decimal("9.99")
        assert tracker.entries[1].deposit_value == Decimal("9.99")
        assert_pool_invariants(flash_engine)


class TestFlashLoanReentrancy:

    def test_nested_flash_loan_rejected(self, flash_engine):
        inner = Arbitrageur("arb")

        def nest(engine, _):
            engine.flash_loan(inner, Decimal("10"))

        with pytest.raises(ReentrancyError):
            flash_engine.flash_loan(Arbitrageur("arb", action=nest), Decimal("1000"))
        assert inner.calls == []
        assert flash_engine.pool_state().flash_loans == {}
        assert pool_cash(flash_engine) == Decimal("100000")

    def test_guard_released_after_failure(self, flash_engine):
        with pytest.raises(FlashLoanNotRepaid):
            flash_engine.flash_loan(Arbitrageur("arb", repay=False), Decimal("1000"))
        assert flash_engine.flash_loan(Arbitrageur("arb"), Decimal("1000")) == Decimal("0.5")

    def test_liquidation_allowed_inside_flash_loan(self, flash_engine, prices):
        position_id = flash_engine.open_position("alice", "BTC", Decimal("1000"), Decimal("5"))
        prices.update_price("BTC", Decimal("42000"))
        outcomes = []

        def liquidate(engine, _):
            outcomes.append(engine.liquidate("arb", position_id))

        flash_engine.flash_loan(Arbitrageur("arb", action=liquidate), Decimal("1000"))
        assert outcomes[0].liquidator_bonus == Decimal("199.8")
        assert flash_engine.balance_of("arb") == Decimal("209.3")
