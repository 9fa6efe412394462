"""
test_ledger_operations.py - Unit tests for Ledger class operations

Tests:
- Ledger creation, wallet and unit registration
- Balance constraints and transfer rules
- Atomic execute / commit and rejection reasons
- Optimistic concurrency on unit state (StateConflict)
- Time management
- Snapshot / restore
- Double-entry verification and supplies
"""

import pytest
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

from vaultledger import (
    Ledger, Move, UnitStateChange, ExecuteResult, SYSTEM_WALLET,
    build_transaction, empty_pending_transaction, token, pool_share,
    LedgerError, WalletNotRegistered, UnitNotRegistered, TransferFailure, StateConflict,
    UNIT_TYPE_VAULT,
)
from vaultledger.core import state_unit, quantize, year_fraction
from tests.scenario import T0, ONE_YEAR


@pytest.fixture
def ledger():
    ledger = Ledger("test", T0, verbose=False)
    ledger.register_unit(token("USDC", "USD Coin"))
    ledger.register_unit(pool_share("lpUSDC", "pool share", "POOL"))
    ledger.register_unit(state_unit("VAULT", "vault", UNIT_TYPE_VAULT, {'next_position_id': 1}))
    for wallet in ("alice", "bob", "POOL"):
        ledger.register_wallet(wallet)
    ledger.commit(build_transaction(ledger, [
        Move(Decimal("100"), "USDC", SYSTEM_WALLET, "alice", "fund"),
    ]))
    return ledger


class TestRegistration:

    def test_system_wallet_always_present(self):
        assert Ledger("x", verbose=False).is_registered(SYSTEM_WALLET)

    def test_duplicate_wallet(self, ledger):
        with pytest.raises(ValueError, match="already registered"):
            ledger.register_wallet("alice")

    def test_duplicate_unit(self, ledger):
        with pytest.raises(ValueError, match="already registered"):
            ledger.register_unit(token("USDC", "again"))

    def test_unknown_wallet_and_unit(self, ledger):
        with pytest.raises(WalletNotRegistered):
            ledger.get_balance("carol", "USDC")
        with pytest.raises(UnitNotRegistered):
            ledger.get_balance("alice", "DAI")
        with pytest.raises(UnitNotRegistered):
            ledger.get_unit_state("DAI")

    def test_list_units_by_type(self, ledger):
        assert ledger.list_units(UNIT_TYPE_VAULT) == ["VAULT"]
        assert ledger.has_unit("lpUSDC")

    def test_set_balance_requires_test_mode(self, ledger):
        with pytest.raises(LedgerError, match="production"):
            ledger.set_balance("alice", "USDC", Decimal("5"))


class TestCommit:

    def test_transfer(self, ledger):
        tx = ledger.commit(build_transaction(ledger, [Move(Decimal("40"), "USDC", "alice", "bob", "pay")]))
        assert ledger.get_balance("alice", "USDC") == Decimal("60")
        assert ledger.get_balance("bob", "USDC") == Decimal("40")
        assert tx.contract_ids == frozenset({"pay"})
        assert tx.exec_id.startswith("exec:test:000000000001:")

    def test_overdraw_rejected(self, ledger):
        pending = build_transaction(ledger, [Move(Decimal("100.000001"), "USDC", "alice", "bob", "pay")])
        with pytest.raises(TransferFailure, match="insufficient USDC in alice"):
            ledger.commit(pending)
        assert ledger.get_balance("alice", "USDC") == Decimal("100")

    def test_all_or_nothing(self, ledger):
        pending = build_transaction(ledger, [
            Move(Decimal("50"), "USDC", "alice", "bob", "leg1"),
            Move(Decimal("60"), "USDC", "alice", "bob", "leg2"),
        ])
        assert ledger.execute(pending) == ExecuteResult.REJECTED
        assert ledger.get_balance("bob", "USDC") == 0
        assert len(ledger.transaction_log) == 1

    def test_unregistered_wallet_rejected(self, ledger):
        with pytest.raises(TransferFailure, match="wallet not registered"):
            ledger.commit(build_transaction(ledger, [Move(Decimal("1"), "USDC", "alice", "carol", "pay")]))

    def test_shares_cannot_move_between_accounts(self, ledger):
        ledger.commit(build_transaction(ledger, [Move(Decimal("5"), "lpUSDC", SYSTEM_WALLET, "alice", "mint")]))
        with pytest.raises(TransferFailure, match="minted or burned"):
            ledger.commit(build_transaction(ledger, [Move(Decimal("5"), "lpUSDC", "alice", "bob", "gift")]))
        ledger.commit(build_transaction(ledger, [Move(Decimal("5"), "lpUSDC", "alice", SYSTEM_WALLET, "burn")]))
        assert ledger.get_balance("alice", "lpUSDC") == 0

    def test_future_timestamp_rejected(self, ledger):
        pending = build_transaction(ledger, [Move(Decimal("1"), "USDC", "alice", "bob", "pay")])
        early = replace(pending, timestamp=T0 + timedelta(days=1))
        assert ledger.execute(early) == ExecuteResult.REJECTED
        assert ledger.last_rejection == "future timestamp"

    def test_empty_pending_is_noop(self, ledger):
        assert ledger.commit(empty_pending_transaction(ledger)) is None
        assert len(ledger.transaction_log) == 1

    def test_move_validation(self):
        with pytest.raises(ValueError):
            Move(Decimal("0"), "USDC", "alice", "bob", "x")
        with pytest.raises(ValueError):
            Move(Decimal("1"), "USDC", "alice", "alice", "x")
        with pytest.raises(ValueError):
            Move(1, "USDC", "alice", "bob", "x")
        with pytest.raises(ValueError):
            Move(Decimal("NaN"), "USDC", "alice", "bob", "x")


class TestUnitState:

    def test_state_change_applied(self, ledger):
        old = ledger.get_unit_state("VAULT")
        ledger.commit(build_transaction(ledger, [], [UnitStateChange("VAULT", old, {'next_position_id': 2})]))
        assert ledger.get_unit_state("VAULT") == {'next_position_id': 2}

    def test_stale_state_is_conflict(self, ledger):
        old = ledger.get_unit_state("VAULT")
        first = build_transaction(ledger, [], [UnitStateChange("VAULT", old, {'next_position_id': 2})])
        second = build_transaction(ledger, [], [UnitStateChange("VAULT", old, {'next_position_id': 7})])
        ledger.commit(first)
        with pytest.raises(StateConflict, match="stale state for VAULT.next_position_id"):
            ledger.commit(second)
        assert ledger.get_unit_state("VAULT") == {'next_position_id': 2}

    def test_conflict_blocks_moves_too(self, ledger):
        old = ledger.get_unit_state("VAULT")
        stale = build_transaction(ledger, [Move(Decimal("10"), "USDC", "alice", "bob", "pay")],
                                  [UnitStateChange("VAULT", old, {'next_position_id': 9})])
        ledger.commit(build_transaction(ledger, [], [UnitStateChange("VAULT", old, {'next_position_id': 2})]))
        with pytest.raises(StateConflict):
            ledger.commit(stale)
        assert ledger.get_balance("bob", "USDC") == 0

    def test_state_reads_are_copies(self, ledger):
        state = ledger.get_unit_state("VAULT")
        state['next_position_id'] = 99
        assert ledger.get_unit_state("VAULT") == {'next_position_id': 1}

    def test_units_created_in_transaction(self, ledger):
        unit = state_unit("VAULT-POS-1", "position 1", UNIT_TYPE_VAULT, {'status': "ACTIVE"})
        tx = ledger.commit(build_transaction(ledger, [], units_to_create=(unit,)))
        assert ledger.has_unit("VAULT-POS-1")
        assert tx.units_to_create == (unit,)
        with pytest.raises(TransferFailure, match="already registered"):
            ledger.commit(build_transaction(ledger, [], units_to_create=(unit,)))


class TestTime:

    def test_time_moves_forward_only(self, ledger):
        ledger.advance_time(T0 + timedelta(hours=1))
        with pytest.raises(ValueError, match="backwards"):
            ledger.advance_time(T0)

    def test_year_fraction(self):
        assert year_fraction(T0, T0 + ONE_YEAR) == Decimal("1")
        assert year_fraction(T0 + ONE_YEAR, T0) == 0
        assert year_fraction(None, T0) == 0

    def test_quantize_defaults_down(self):
        assert quantize(Decimal("1.0000009"), 6) == Decimal("1.000000")


class TestSnapshots:

    def test_restore_rolls_back_everything_but_time(self, ledger):
        snapshot = ledger.snapshot()
        ledger.register_wallet("carol")
        ledger.commit(build_transaction(ledger, [Move(Decimal("30"), "USDC", "alice", "carol", "pay")]))
        ledger.advance_time(T0 + timedelta(hours=1))

        ledger.restore(snapshot)
        assert ledger.get_balance("alice", "USDC") == Decimal("100")
        assert not ledger.is_registered("carol")
        assert len(ledger.transaction_log) == 1
        assert ledger.current_time == T0 + timedelta(hours=1)
        holders = ledger.get_positions("USDC")
        assert holders["alice"] == Decimal("100")
        assert "carol" not in holders

    def test_snapshot_reusable(self, ledger):
        snapshot = ledger.snapshot()
        for _ in range(2):
            ledger.commit(build_transaction(ledger, [Move(Decimal("30"), "USDC", "alice", "bob", "pay")]))
            ledger.restore(snapshot)
        assert ledger.get_balance("bob", "USDC") == 0

    def test_sequence_numbers_resume(self, ledger):
        snapshot = ledger.snapshot()
        ledger.commit(build_transaction(ledger, [Move(Decimal("1"), "USDC", "alice", "bob", "a")]))
        ledger.restore(snapshot)
        tx = ledger.commit(build_transaction(ledger, [Move(Decimal("1"), "USDC", "alice", "bob", "b")]))
        assert tx.sequence_number == 1

    def test_foreign_snapshot_rejected(self, ledger):
        with pytest.raises(LedgerError):
            ledger.restore(Ledger("other", T0, verbose=False))


class TestDoubleEntry:

    def test_supplies_net_to_zero(self, ledger):
        result = ledger.verify_double_entry()
        assert result['valid']
        assert result['supplies']["USDC"] == 0
        assert ledger.total_supply("USDC", include_system=False) == Decimal("100")

    def test_set_balance_breaks_double_entry(self):
        ledger = Ledger("t", T0, verbose=False, test_mode=True)
        ledger.register_unit(token("USDC", "USD Coin"))
        ledger.register_wallet("alice")
        ledger.set_balance("alice", "USDC", Decimal("5"))
        result = ledger.verify_double_entry()
        assert not result['valid']
        assert result['discrepancies'] == [{'unit': "USDC", 'actual': Decimal("5")}]

