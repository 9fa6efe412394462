"""
ledger.py - Stateful Double-Entry Ledger

The Ledger class is the only component that mutates state. Pools, vaults,
positions and registries are units whose state dicts change only through
transactions executed here, next to the token moves they imply.

Key responsibilities:
    - Implements LedgerView for the pure compute functions
    - Executes transactions atomically (all moves and state changes, or nothing)
    - Rejects transactions computed against stale unit state
    - Tracks logical time and keeps the transaction log (audit trail)
    - Provides snapshot/restore for operations spanning external callbacks
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Set, Optional, Tuple, Any
import copy
from decimal import Decimal

from .core import (
    # Types
    Move, Transaction, Unit,
    PendingTransaction,
    ExecuteResult,
    Positions, UnitState, BalanceMap,
    # Constants
    QUANTITY_EPSILON, SYSTEM_WALLET,
    # Exceptions
    LedgerError, TransferRuleViolation, UnitNotRegistered, WalletNotRegistered,
    TransferFailure, StateConflict,
    # Helper functions
    _freeze_state,
)


class Ledger:
    """
    Double-entry ledger with full validation and audit trail.

    Design Principles:
        - Always validates: balance constraints, transfer rules, timestamps,
          registration and unit-state freshness are checked for every
          transaction before anything is applied.
        - Always logs: every applied transaction is appended to
          transaction_log with its origin and before/after unit state.

    Thread Safety:
        Not thread-safe. Callers serialize access (the engine does).

    Example:
        ledger = Ledger("main")
        ledger.register_unit(token("USDC", "USD Coin"))
        ledger.register_wallet("alice")
        ledger.register_wallet("pool")

        tx = build_transaction(ledger, [
            Move(Decimal("100"), "USDC", "alice", "pool", "deposit")
        ])
        ledger.commit(tx)
    """

    POSITION_EPSILON = QUANTITY_EPSILON

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Print applied and rejected transactions (default: True)
            test_mode: Allow set_balance() calls (default: False)
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self.last_rejection: Optional[str] = None
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        # unit -> {wallet -> quantity} for O(1) holder lookups
        self._positions_by_unit: Dict[str, Dict[str, Decimal]] = defaultdict(dict)

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Get the balance of a unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """
        Get a deep copy of a unit's state.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return copy.deepcopy(self.units[unit_symbol].state)

    def get_positions(self, unit_symbol: str) -> Positions:
        """Get all non-zero holdings of a unit across wallets."""
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self, unit_type: Optional[str] = None) -> List[str]:
        """List registered unit symbols, optionally filtered by type."""
        return sorted(
            s for s, u in self.units.items()
            if unit_type is None or u.unit_type == unit_type
        )

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def has_unit(self, symbol: str) -> bool:
        return symbol in self.units

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        """Get all balances for a wallet."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return dict(self.balances[wallet_id])

    def total_supply(self, unit_symbol: str, include_system: bool = True) -> Decimal:
        """
        Sum of a unit's balances across wallets.

        With include_system=True the result is the conservation total and is
        zero for any unit that only entered circulation through SYSTEM_WALLET.
        With include_system=False it is the circulating supply.
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            (self.balances[w].get(unit_symbol, Decimal("0"))
             for w in sorted(self.registered_wallets)
             if include_system or w != SYSTEM_WALLET),
            Decimal("0"),
        )

    def verify_double_entry(self, tolerance: Decimal = Decimal("1e-9")) -> Dict[str, Any]:
        """
        Verify that every balance-bearing unit sums to zero across all wallets.

        Every unit enters circulation by a move out of SYSTEM_WALLET, so the
        sum including the system wallet is always zero when no value was
        created or destroyed.

        Returns:
            Dict with 'valid', 'supplies' and 'discrepancies'.
        """
        supplies = {}
        discrepancies = []
        for unit_symbol in self.units:
            total = self.total_supply(unit_symbol)
            supplies[unit_symbol] = total
            if abs(total) > tolerance:
                discrepancies.append({'unit': unit_symbol, 'actual': total})
        return {
            'valid': not discrepancies,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the logical clock. Time only moves forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet.

        Raises:
            ValueError: If wallet is already registered
        """
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit.

        Raises:
            ValueError: If unit symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            print(f"registered {unit.symbol} ({unit.name}) [{unit.unit_type}]")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Set a balance directly, bypassing double entry. Test mode only.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Fund wallets with a transaction from SYSTEM_WALLET instead."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if not isinstance(quantity, Decimal):
            quantity = Decimal(str(quantity))
        self.balances[wallet_id][unit_symbol] = quantity
        self._update_position_index(wallet_id, unit_symbol, quantity)

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}"""
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        Validation runs against the untouched ledger; only when every check
        passes are units created, moves applied and states replaced. On
        rejection the reason is kept in last_rejection.

        Returns:
            ExecuteResult.APPLIED or ExecuteResult.REJECTED
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        valid, reason = self._validate_pending(pending)
        if not valid:
            self.last_rejection = reason
            if self.verbose:
                print(f"REJECTED {pending.origin}: {reason}")
            return ExecuteResult.REJECTED
        self.last_rejection = None

        sequence = self._next_sequence
        self._next_sequence += 1
        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
            units_to_create=pending.units_to_create,
        )

        for unit in tx.units_to_create:
            self.units[unit.symbol] = unit

        self._execute_moves(tx.moves)

        # Unit is frozen: replace the instance with one carrying the new state
        for sc in tx.state_changes:
            new_state = copy.deepcopy(sc.new_state if isinstance(sc.new_state, dict) else {})
            self.units[sc.unit] = replace(self.units[sc.unit], _frozen_state=_freeze_state(new_state))

        self.transaction_log.append(tx)
        if self.verbose:
            print(f"APPLIED {tx.summary()}")
        return ExecuteResult.APPLIED

    def commit(self, pending: PendingTransaction) -> Optional[Transaction]:
        """
        Execute and raise on rejection.

        Returns:
            The logged Transaction, or None for an empty pending transaction.

        Raises:
            StateConflict: If a unit's state changed after the transaction was computed
            TransferFailure: For any other rejection (balances, rules, registration)
        """
        if pending.is_empty():
            return None
        result = self.execute(pending)
        if result == ExecuteResult.REJECTED:
            reason = self.last_rejection or "rejected"
            if reason.startswith("stale state"):
                raise StateConflict(reason)
            raise TransferFailure(reason)
        return self.transaction_log[-1]

    def _validate_pending(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Validate a pending transaction against all constraints.

        Checks performed:
        1. Timestamp (not from the future)
        2. Units to create do not already exist
        3. Unit state freshness (old_state matches current state)
        4. Unit and wallet registration
        5. Transfer rules
        6. Balance constraints (min/max), SYSTEM_WALLET exempt

        Returns:
            (success, reason)
        """
        if pending.timestamp > self._current_time:
            return False, "future timestamp"

        created = {}
        for unit in pending.units_to_create:
            if unit.symbol in self.units or unit.symbol in created:
                return False, f"unit already registered: {unit.symbol}"
            created[unit.symbol] = unit

        for sc in pending.state_changes:
            if sc.unit in created:
                continue
            if sc.unit not in self.units:
                return False, f"unit not registered: {sc.unit}"
            current_state = self.units[sc.unit].state
            expected = sc.old_state if isinstance(sc.old_state, dict) else {}
            for key in set(expected.keys()) | set(current_state.keys()):
                if expected.get(key) != current_state.get(key):
                    return False, f"stale state for {sc.unit}.{key}"

        units = {**self.units, **created}
        for move in pending.moves:
            if move.unit_symbol not in units:
                return False, f"unit not registered: {move.unit_symbol}"
            if not self.is_registered(move.source):
                return False, f"wallet not registered: {move.source}"
            if not self.is_registered(move.dest):
                return False, f"wallet not registered: {move.dest}"
            unit = units[move.unit_symbol]
            if unit.transfer_rule:
                try:
                    unit.transfer_rule(self, move)
                except TransferRuleViolation as e:
                    return False, str(e)

        net: Dict[Tuple[str, str], Decimal] = {}
        for move in pending.moves:
            unit = units[move.unit_symbol]
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = unit.round(net.get(key_src, Decimal("0")) - move.quantity)
            net[key_dst] = unit.round(net.get(key_dst, Decimal("0")) + move.quantity)

        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            unit = units[unit_sym]
            proposed = unit.round(self.balances[wallet][unit_sym] + delta)
            if proposed < unit.min_balance:
                return False, f"insufficient {unit_sym} in {wallet}: {proposed} < min {unit.min_balance}"
            if proposed > unit.max_balance:
                return False, f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"

        return True, ""

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """Keep the holder index in sync; dust balances are dropped from it."""
        if abs(quantity) > self.POSITION_EPSILON:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _execute_moves(self, moves) -> None:
        """Apply moves to balances with unit rounding and update the holder index."""
        for move in moves:
            unit = self.units[move.unit_symbol]
            new_src_balance = unit.round(
                self.balances[move.source][move.unit_symbol] - move.quantity
            )
            self.balances[move.source][move.unit_symbol] = new_src_balance
            self._update_position_index(move.source, move.unit_symbol, new_src_balance)
            new_dst_balance = unit.round(
                self.balances[move.dest][move.unit_symbol] + move.quantity
            )
            self.balances[move.dest][move.unit_symbol] = new_dst_balance
            self._update_position_index(move.dest, move.unit_symbol, new_dst_balance)

    # ========================================================================
    # SNAPSHOTS
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Create a fully independent deep copy of this ledger.

        Units are frozen and their state is copied on read, so sharing Unit
        instances is safe; balances, indexes and the log are copied.
        """
        cloned = Ledger.__new__(Ledger)
        cloned.name = self.name
        cloned._current_time = self._current_time
        cloned.verbose = self.verbose
        cloned._test_mode = self._test_mode
        cloned.last_rejection = self.last_rejection
        cloned.units = dict(self.units)
        cloned.registered_wallets = self.registered_wallets.copy()
        cloned.transaction_log = list(self.transaction_log)
        cloned._next_sequence = self._next_sequence

        cloned.balances = {}
        for wallet, bals in self.balances.items():
            cloned.balances[wallet] = defaultdict(lambda: Decimal("0"), bals)

        cloned._positions_by_unit = defaultdict(dict)
        for unit_symbol, holders in self._positions_by_unit.items():
            cloned._positions_by_unit[unit_symbol] = dict(holders)

        return cloned

    def snapshot(self) -> Ledger:
        """Capture the current state for a later restore()."""
        return self.clone()

    def restore(self, snapshot: Ledger) -> None:
        """
        Roll this ledger back, in place, to a snapshot taken from it.

        Time is not rolled back: the clock only moves forward.

        Raises:
            LedgerError: If the snapshot belongs to a different ledger
        """
        if snapshot.name != self.name:
            raise LedgerError(f"Snapshot of {snapshot.name} cannot restore {self.name}")
        restored = snapshot.clone()
        self.units = restored.units
        self.registered_wallets = restored.registered_wallets
        self.transaction_log = restored.transaction_log
        self._next_sequence = restored._next_sequence
        self.balances = restored.balances
        self._positions_by_unit = restored._positions_by_unit
