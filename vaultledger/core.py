"""
Core types and pure helpers for the vault ledger.

This module provides the foundational data structures used by every other module:
1. Protocols: LedgerView for read-only ledger access
2. Immutable data structures: Move, UnitStateChange, PendingTransaction, Transaction, Unit
3. Exceptions: LedgerError and the engine's rejection taxonomy
4. Fixed-point helpers: basis points, token quantization, year fractions
5. Unit factories: tokens, pool shares and state-only units

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, getcontext
from enum import Enum
from typing import (
    Dict, List, Set, Optional, Callable, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable, Mapping
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Accounting must be deterministic, so the global context is configured once
# at import time.
#
# PRECONDITION: No other code should modify the global Decimal context.
# If thread-local contexts are needed, use decimal.localcontext().
#
_LEDGER_DECIMAL_CONTEXT = getcontext()
_LEDGER_DECIMAL_CONTEXT.prec = 50
_LEDGER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for minting, burning and acting as market counterparty.
# The system wallet is exempt from balance validation and can hold any balance.
SYSTEM_WALLET = "system"

# Unit types (strings, not enum).
UNIT_TYPE_TOKEN = "TOKEN"
UNIT_TYPE_POOL_SHARE = "POOL_SHARE"
UNIT_TYPE_LENDING_POOL = "LENDING_POOL"
UNIT_TYPE_RISK_REGISTRY = "RISK_REGISTRY"
UNIT_TYPE_VAULT = "LEVERAGED_VAULT"
UNIT_TYPE_POSITION = "LEVERAGED_POSITION"
UNIT_TYPE_LIQUIDATOR = "LIQUIDATOR"

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-12")

# One whole, expressed in basis points.
BPS = 10000

SECONDS_PER_YEAR = Decimal(365 * 86400)

# Balances of balance-bearing units are truncated, never rounded up.
DECIMAL_ROUNDING = {
    UNIT_TYPE_TOKEN: ROUND_DOWN,
    UNIT_TYPE_POOL_SHARE: ROUND_DOWN,
}


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from wallet ID to quantity held by that wallet for a specific unit.
Positions = Dict[str, Decimal]

# Mapping from unit symbol to quantity held in a single wallet.
BalanceMap = Dict[str, Decimal]

# Internal state for a unit (pool totals, position terms, registry entries...).
UnitState = Dict[str, Any]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Compute functions take a LedgerView to declare that they only read. The
    Ledger class implements this protocol; tests use FakeView.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Return the balance of a unit in a wallet (Decimal("0") if none)."""
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Return a copy of the unit's internal state."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Return all non-zero holdings of a unit across wallets."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: validated and applied.
    REJECTED: failed validation (balances, transfer rules, stale unit state).
    """
    APPLIED = "applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Classification of where a transaction originated."""
    USER_ACTION = "user_action"           # Depositor, trader or receiver call
    KEEPER = "keeper"                     # Third-party liquidation
    ADMIN = "admin"                       # Guarded configuration change
    SYSTEM = "system"                     # Setup, funding, accrual


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger and engine errors."""
    pass


class TransferRuleViolation(LedgerError):
    """Raised when a move violates the unit's transfer rule."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when operating on a unit that has not been registered."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when operating on a wallet that has not been registered."""
    pass


class ValidationError(LedgerError, ValueError):
    """Bad input (zero amount, leverage out of range, unsupported asset, unknown id)."""
    pass


class AuthorizationError(LedgerError):
    """Caller is not the owner, the registered vault, the admin or an allowed keeper."""
    pass


class LiquidityError(LedgerError):
    """Not enough unborrowed pool liquidity for a withdraw, borrow or flash loan."""
    pass


class HealthError(LedgerError):
    """A withdrawal or tier switch would break collateralization, or a liquidation target is healthy."""
    pass


class StaleDataError(LedgerError):
    """Oracle price missing or older than the allowed age."""
    pass


class TransferFailure(LedgerError):
    """The ledger rejected a token movement; nothing was applied."""
    pass


class StateConflict(LedgerError):
    """Unit state changed between compute and commit (lost race)."""
    pass


class ReentrancyError(LedgerError):
    """A guarded entry point was re-entered while already in flight."""
    pass


class FlashLoanNotRepaid(TransferFailure):
    """A flash loan record was still outstanding when the callback returned."""
    pass


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source
        source_id: Calling wallet (depositor, owner, keeper, admin)
        unit_symbol: Unit the operation targets (pool, vault, position)
        event_type: Operation name (e.g., "DEPOSIT", "LIQUIDATE")
    """
    origin_type: OriginType
    source_id: str
    unit_symbol: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.unit_symbol:
            parts.append(f"unit={self.unit_symbol}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# UNIT STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class UnitStateChange:
    """
    Before/after snapshot of one unit's state.

    old_state doubles as the optimistic-concurrency token: the ledger refuses
    to apply the change if the unit no longer holds old_state. old_state is
    None for units created in the same transaction.
    """
    unit: str
    old_state: Any
    new_state: Any


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: Amount to transfer (finite, non-zero Decimal)
        unit_symbol: Token or share unit being transferred
        source: Wallet debited
        dest: Wallet credited
        contract_id: Label of the operation leg generating the move
        metadata: Optional additional information
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if not self.quantity.is_finite():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if abs(self.quantity) < QUANTITY_EPSILON:
            raise ValueError("Move quantity is effectively zero")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}->{self.dest})"


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction before execution: what an operation intends to do.

    Built by compute functions and handed to Ledger.execute(). Compute
    functions raise before building one, so an existing PendingTransaction
    has already passed every business check; the ledger then applies
    balance, transfer-rule and concurrency checks.
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    units_to_create: Tuple['Unit', ...] = ()

    def is_empty(self) -> bool:
        """Return True if there are no moves, no state changes and no units to create."""
        return not self.moves and not self.state_changes and not self.units_to_create

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} deltas, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[UnitStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
    units_to_create: Optional[Tuple['Unit', ...]] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction stamped with the view's current time.

    State snapshots are deep-copied so later mutation of the caller's dicts
    cannot leak into the transaction.

    Example:
        old = view.get_unit_state("POOL")
        new = {**old, "total_deposits": old["total_deposits"] + amount}
        return build_transaction(view, [Move(amount, "USDC", "alice", "POOL", "deposit")],
                                 [UnitStateChange("POOL", old, new)])
    """
    import copy

    if origin is None:
        origin = TransactionOrigin(OriginType.SYSTEM, "engine")

    copied_changes: Tuple[UnitStateChange, ...] = ()
    if state_changes:
        copied_changes = tuple(
            UnitStateChange(
                unit=sc.unit,
                old_state=copy.deepcopy(sc.old_state),
                new_state=copy.deepcopy(sc.new_state),
            )
            for sc in state_changes
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied_changes,
        origin=origin,
        timestamp=view.current_time,
        units_to_create=units_to_create or (),
    )


def empty_pending_transaction(view: LedgerView) -> PendingTransaction:
    """Create a PendingTransaction that does nothing."""
    return PendingTransaction(
        moves=(),
        state_changes=(),
        origin=TransactionOrigin(OriginType.SYSTEM, "noop"),
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger changes.

    Attributes:
        moves: Value transfers applied
        state_changes: Unit state changes applied
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was built
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the executing ledger
        execution_time: Ledger time at execution
        sequence_number: Monotonic sequence within the ledger
        units_to_create: Units registered by this transaction
        contract_ids: Contract IDs of the moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    units_to_create: Tuple['Unit', ...] = ()
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes and not self.units_to_create:
            raise ValueError("Transaction must have moves, state_changes, or units_to_create")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def summary(self) -> str:
        """One-line description used by verbose output."""
        legs = ", ".join(
            f"{m.quantity} {m.unit_symbol} {m.source}->{m.dest}" for m in self.moves
        )
        units = ",".join(sc.unit for sc in self.state_changes)
        return f"#{self.sequence_number} {self.origin} moves=[{legs}] units=[{units}]"


@dataclass(frozen=True, slots=True)
class EventRecord:
    """
    Structured record of one committed state transition.

    Emitted by the engine after commit for an external indexing layer.
    fields carries identifiers, amounts and resulting balances.
    """
    name: str
    sequence: int
    timestamp: datetime
    fields: Mapping[str, Any]

    def __getitem__(self, key: str) -> Any:
        return self.fields[key]


# Transfer rules validate moves and raise TransferRuleViolation if invalid.
TransferRule = Callable[[LedgerView, Move], None]


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a state dict to a sorted tuple of (key, value) pairs."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    """Convert a frozen state representation back to a dict."""
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a unit registered in the ledger.

    Balance-bearing units (tokens, pool shares) move between wallets.
    State-only units (pool, vault, positions, registries) never hold balances;
    they exist to carry their state dict through atomic transactions.

    Attributes:
        symbol: Identifier (e.g., "USDC", "lpUSDC", "VAULT-POS-7")
        name: Human-readable name
        unit_type: One of the UNIT_TYPE_* constants
        min_balance: Minimum allowed balance in any non-system wallet
        max_balance: Maximum allowed balance in any wallet
        decimal_places: Rounding precision for balances (None = no rounding)
        transfer_rule: Optional move validator
        _frozen_state: Internal frozen state representation
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None
    transfer_rule: Optional[TransferRule] = None
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """Return the unit's state as a fresh dict."""
        return _thaw_state(self._frozen_state)

    def round(self, value: Decimal) -> Decimal:
        """Quantize a balance to this unit's precision (unchanged if decimal_places is None)."""
        if self.decimal_places is None:
            return value
        return quantize(value, self.decimal_places, DECIMAL_ROUNDING.get(self.unit_type, ROUND_HALF_EVEN))


# ============================================================================
# FIXED-POINT HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """Convert int/float/str to Decimal via str() so floats do not leak binary noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize(value: Decimal, places: int, rounding: str = ROUND_DOWN) -> Decimal:
    """Round value to a fixed number of decimal places."""
    return to_decimal(value).quantize(Decimal(10) ** -places, rounding=rounding)


def bps_of(amount: Decimal, bps: int) -> Decimal:
    """Return amount * bps / 10000 at full precision."""
    return to_decimal(amount) * Decimal(bps) / Decimal(BPS)


def year_fraction(start: Optional[datetime], end: Optional[datetime]) -> Decimal:
    """Elapsed time as a fraction of a 365-day year; zero if unknown or negative."""
    if start is None or end is None or end <= start:
        return Decimal("0")
    return Decimal(str((end - start).total_seconds())) / SECONDS_PER_YEAR


# ============================================================================
# TRANSFER RULES
# ============================================================================

def mint_burn_only_rule(view: LedgerView, move: Move) -> None:
    """
    Restrict a unit to minting and burning against SYSTEM_WALLET.

    Pool shares only move on deposit (mint) and withdraw (burn); the
    withdrawal health check assumes an account keeps the shares it minted.

    Raises:
        TransferRuleViolation: If neither side of the move is SYSTEM_WALLET.
    """
    if SYSTEM_WALLET not in (move.source, move.dest):
        raise TransferRuleViolation(
            f"{move.unit_symbol} can only be minted or burned, "
            f"not moved {move.source}->{move.dest}"
        )


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def token(symbol: str, name: str, decimal_places: int = 6) -> Unit:
    """
    Create a fungible token unit (the pool asset, e.g. "USDC").

    Wallets cannot overdraw a token; SYSTEM_WALLET is exempt and acts as the
    external world (funding, market counterparty).
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_TOKEN,
        decimal_places=decimal_places,
        min_balance=Decimal("0"),
        _frozen_state=_freeze_state({'issuer': SYSTEM_WALLET}),
    )


def pool_share(symbol: str, name: str, pool_symbol: str, decimal_places: int = 18) -> Unit:
    """Create a non-transferable pool share unit minted on deposit and burned on withdraw."""
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_POOL_SHARE,
        decimal_places=decimal_places,
        min_balance=Decimal("0"),
        transfer_rule=mint_burn_only_rule,
        _frozen_state=_freeze_state({'pool': pool_symbol}),
    )


def state_unit(symbol: str, name: str, unit_type: str, state: UnitState) -> Unit:
    """Create a state-only unit (pool, vault, registry, position)."""
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=unit_type,
        min_balance=Decimal("0"),
        max_balance=Decimal("0"),
        _frozen_state=_freeze_state(state),
    )
