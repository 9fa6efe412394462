"""
vault.py - Leveraged Position Engine

Opens, tops up and closes leveraged positions funded by the lending pool.
Each position is its own state unit, created in the opening transaction and
addressed by integer id; the vault unit keeps the id counter and the
owner index.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASSES: VaultTerms, VaultState, Position, CloseResult
2. PURE CALCULATIONS: calculate_position_value, calculate_health_factor,
   calculate_is_liquidatable, settle_position_debt
3. ADAPTERS: load_vault, load_position, *_state_dict
4. CONVENIENCE: compute_open_position, compute_add_collateral, compute_close_position

Cash model:
    The vault wallet holds every active position's exposure in the pool
    asset. At settlement the price move is realized against the market
    wallet, after which the vault holds exactly the position's value:

        value = total_exposure * price / entry_price
        pnl_move = value - total_exposure        (market <-> vault)

Lifecycle:
    ACTIVE -> CLOSED       (owner)
    ACTIVE -> LIQUIDATED   (third party)
    Both terminal; a position is never reopened.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from typing import Dict, Any, List, Optional, Protocol, Tuple, Mapping, Iterable

from ..core import (
    LedgerView, Move, PendingTransaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType,
    SYSTEM_WALLET, BPS, QUANTITY_EPSILON, UNIT_TYPE_VAULT, UNIT_TYPE_POSITION,
    ValidationError, AuthorizationError, UnitNotRegistered,
    build_transaction, state_unit, quantize, bps_of, to_decimal,
)
from .pool import (
    PoolTerms, PoolState,
    load_accrued, apply_borrow, apply_repay, apply_bad_debt,
    to_state_dict as pool_state_dict,
)
from .risk_tiers import RiskTier


POSITION_ACTIVE = "ACTIVE"
POSITION_CLOSED = "CLOSED"
POSITION_LIQUIDATED = "LIQUIDATED"

ZERO = Decimal("0")
INFINITE_HEALTH = Decimal("Infinity")


class FeeQuote(Protocol):
    """The slice of the value tracker a close needs."""

    def calculate_value_increase(
        self, position_id: int, current_value: Decimal
    ) -> Tuple[Decimal, Decimal, Decimal]:
        ...


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class VaultTerms:
    pool: str
    wallet: str
    admin: str
    supported_assets: Tuple[str, ...]
    fee_wallet: str
    market_wallet: str = SYSTEM_WALLET
    entry_fee_bps: int = 10
    min_leverage: Decimal = Decimal("1")
    max_leverage: Decimal = Decimal("5")
    decimal_places: int = 6


@dataclass(frozen=True, slots=True)
class VaultState:
    next_position_id: int = 1
    positions_by_owner: Mapping[str, Tuple[int, ...]] = None

    def __post_init__(self):
        if self.positions_by_owner is None:
            object.__setattr__(self, 'positions_by_owner', {})


@dataclass(frozen=True, slots=True)
class Position:
    """
    One leveraged position.

    scaled_debt is the position's part of its owner's pool debt; multiplied
    by the pool's borrow index it gives the debt including accrual.
    """
    position_id: int
    vault: str
    owner: str
    asset: str
    deposit_amount: Decimal
    leverage: Decimal
    total_exposure: Decimal
    borrowed_amount: Decimal
    scaled_debt: Decimal
    entry_price: Decimal
    entry_timestamp: Optional[datetime]
    status: str = POSITION_ACTIVE
    exit_price: Optional[Decimal] = None
    closed_at: Optional[datetime] = None
    realized_pnl: Optional[Decimal] = None

    @property
    def is_active(self) -> bool:
        return self.status == POSITION_ACTIVE

    @property
    def symbol(self) -> str:
        return position_symbol(self.vault, self.position_id)


@dataclass(frozen=True, slots=True)
class DebtSettlement:
    """Outcome of paying a position's debt out of the funds available for it."""
    pool_state: PoolState
    moves: Tuple[Move, ...]
    outstanding_debt: Decimal
    debt_repaid: Decimal
    bad_debt: Decimal


@dataclass(frozen=True, slots=True)
class CloseResult:
    position_id: int
    owner: str
    exit_price: Decimal
    current_value: Decimal
    outstanding_debt: Decimal
    debt_repaid: Decimal
    bad_debt: Decimal
    value_increase: Decimal
    platform_fee: Decimal
    user_payout: Decimal

    @property
    def shortfall(self) -> bool:
        return self.bad_debt > 0


# ============================================================================
# ADAPTERS
# ============================================================================

def position_symbol(vault_symbol: str, position_id: int) -> str:
    return f"{vault_symbol}-POS-{position_id}"


def load_vault(view: LedgerView, symbol: str) -> Tuple[VaultTerms, VaultState]:
    raw = view.get_unit_state(symbol)
    terms = VaultTerms(
        pool=raw['pool'],
        wallet=raw.get('wallet', symbol),
        admin=raw['admin'],
        supported_assets=tuple(raw['supported_assets']),
        fee_wallet=raw['fee_wallet'],
        market_wallet=raw.get('market_wallet', SYSTEM_WALLET),
        entry_fee_bps=int(raw.get('entry_fee_bps', 10)),
        min_leverage=to_decimal(raw.get('min_leverage', 1)),
        max_leverage=to_decimal(raw.get('max_leverage', 5)),
        decimal_places=int(raw.get('decimal_places', 6)),
    )
    state = VaultState(
        next_position_id=int(raw.get('next_position_id', 1)),
        positions_by_owner={o: tuple(ids) for o, ids in raw.get('positions_by_owner', {}).items()},
    )
    return terms, state


def vault_state_dict(terms: VaultTerms, state: VaultState) -> Dict[str, Any]:
    return {
        'pool': terms.pool,
        'wallet': terms.wallet,
        'admin': terms.admin,
        'supported_assets': tuple(terms.supported_assets),
        'fee_wallet': terms.fee_wallet,
        'market_wallet': terms.market_wallet,
        'entry_fee_bps': terms.entry_fee_bps,
        'min_leverage': terms.min_leverage,
        'max_leverage': terms.max_leverage,
        'decimal_places': terms.decimal_places,
        'next_position_id': state.next_position_id,
        'positions_by_owner': {o: tuple(ids) for o, ids in state.positions_by_owner.items()},
    }


def load_position(view: LedgerView, vault_symbol: str, position_id: int) -> Position:
    """
    Raises:
        ValidationError: no such position
    """
    symbol = position_symbol(vault_symbol, position_id)
    try:
        raw = view.get_unit_state(symbol)
    except UnitNotRegistered:
        raise ValidationError(f"unknown position {position_id}") from None
    if not raw:
        raise ValidationError(f"unknown position {position_id}")
    return Position(
        position_id=int(raw['position_id']),
        vault=raw['vault'],
        owner=raw['owner'],
        asset=raw['asset'],
        deposit_amount=to_decimal(raw['deposit_amount']),
        leverage=to_decimal(raw['leverage']),
        total_exposure=to_decimal(raw['total_exposure']),
        borrowed_amount=to_decimal(raw['borrowed_amount']),
        scaled_debt=to_decimal(raw['scaled_debt']),
        entry_price=to_decimal(raw['entry_price']),
        entry_timestamp=raw.get('entry_timestamp'),
        status=raw.get('status', POSITION_ACTIVE),
        exit_price=raw.get('exit_price'),
        closed_at=raw.get('closed_at'),
        realized_pnl=raw.get('realized_pnl'),
    )


def position_state_dict(position: Position) -> Dict[str, Any]:
    return {
        'position_id': position.position_id,
        'vault': position.vault,
        'owner': position.owner,
        'asset': position.asset,
        'deposit_amount': position.deposit_amount,
        'leverage': position.leverage,
        'total_exposure': position.total_exposure,
        'borrowed_amount': position.borrowed_amount,
        'scaled_debt': position.scaled_debt,
        'entry_price': position.entry_price,
        'entry_timestamp': position.entry_timestamp,
        'status': position.status,
        'is_active': position.is_active,
        'exit_price': position.exit_price,
        'closed_at': position.closed_at,
        'realized_pnl': position.realized_pnl,
    }


def create_vault(
    symbol: str,
    name: str,
    pool: str,
    admin: str,
    supported_assets: Iterable[str],
    fee_wallet: str,
    market_wallet: str = SYSTEM_WALLET,
    entry_fee_bps: int = 10,
    min_leverage: Decimal = Decimal("1"),
    max_leverage: Decimal = Decimal("5"),
    decimal_places: int = 6,
) -> Unit:
    """
    Create the vault's state unit. Its cash sits in a wallet named after it.

    Raises:
        ValidationError: no supported assets, fee out of range, bad leverage bounds
    """
    supported = tuple(supported_assets)
    if not supported:
        raise ValidationError("vault needs at least one supported asset")
    if not 0 <= entry_fee_bps < BPS:
        raise ValidationError(f"entry_fee_bps must be in [0, {BPS}), got {entry_fee_bps}")
    min_leverage, max_leverage = to_decimal(min_leverage), to_decimal(max_leverage)
    if min_leverage < 1 or max_leverage < min_leverage:
        raise ValidationError(f"invalid leverage bounds [{min_leverage}, {max_leverage}]")
    terms = VaultTerms(
        pool=pool, wallet=symbol, admin=admin, supported_assets=supported,
        fee_wallet=fee_wallet, market_wallet=market_wallet, entry_fee_bps=entry_fee_bps,
        min_leverage=min_leverage, max_leverage=max_leverage, decimal_places=decimal_places,
    )
    return state_unit(symbol, name, UNIT_TYPE_VAULT, vault_state_dict(terms, VaultState()))


# ============================================================================
# PURE CALCULATIONS
# ============================================================================

def calculate_position_value(position: Position, price: Decimal, places: int = 6) -> Decimal:
    """value = total_exposure * price / entry_price, rounded down."""
    return quantize(position.total_exposure * to_decimal(price) / position.entry_price, places, ROUND_DOWN)


def calculate_position_debt(position: Position, pool_state: PoolState) -> Decimal:
    if not position.is_active:
        return ZERO
    return position.scaled_debt * pool_state.borrow_index


def calculate_health_factor(value: Decimal, debt: Decimal) -> Decimal:
    """value / debt; Infinity when there is no debt."""
    if debt <= QUANTITY_EPSILON:
        return INFINITE_HEALTH
    return to_decimal(value) / to_decimal(debt)


def calculate_is_liquidatable(value: Decimal, debt: Decimal, tier: RiskTier) -> bool:
    """True iff there is debt and the health factor is below the tier's threshold."""
    if debt <= QUANTITY_EPSILON:
        return False
    return calculate_health_factor(value, debt) < tier.health_threshold


def calculate_pnl(position: Position, value: Decimal, debt: Decimal) -> Tuple[Decimal, Decimal]:
    """
    Unrealized (pnl, pnl_percent) of the owner's equity against the deposit.

    Terminal positions report what was realized.
    """
    if position.realized_pnl is not None:
        pnl = to_decimal(position.realized_pnl)
    else:
        pnl = to_decimal(value) - to_decimal(debt) - position.deposit_amount
    if position.deposit_amount <= 0:
        return pnl, ZERO
    return pnl, pnl * Decimal(100) / position.deposit_amount


def settle_price_move(terms: VaultTerms, position: Position, value: Decimal, asset_symbol: str) -> List[Move]:
    """Realize the price move against the market wallet so the vault holds `value`."""
    pnl = value - position.total_exposure
    if pnl > 0:
        return [Move(pnl, asset_symbol, terms.market_wallet, terms.wallet, f'pnl_{position.position_id}')]
    if pnl < 0:
        return [Move(-pnl, asset_symbol, terms.wallet, terms.market_wallet, f'pnl_{position.position_id}')]
    return []


def settle_position_debt(
    pool_terms: PoolTerms,
    pool_state: PoolState,
    position: Position,
    available: Decimal,
    payer: str,
    now: Optional[datetime] = None,
) -> DebtSettlement:
    """
    Pay a position's debt out of `available` funds held by payer.

    The debt owed in token units is the accrued debt rounded up. If the
    funds cover it, it is repaid in full. Otherwise everything available is
    repaid and the rest is absorbed by the pool as bad debt.

    debt_repaid + bad_debt == outstanding_debt
    """
    debt = calculate_position_debt(position, pool_state)
    owed = quantize(debt, pool_terms.decimal_places, ROUND_UP)
    if owed <= 0:
        return DebtSettlement(pool_state, (), ZERO, ZERO, ZERO)

    moves: List[Move] = []
    state = pool_state
    paid = min(to_decimal(available), owed)
    if paid > 0:
        update = apply_repay(pool_terms, state, position.owner, paid, payer, max_debt=debt, now=now)
        state = update.state
        moves.extend(update.moves)
    bad_debt = owed - paid
    if bad_debt > 0:
        state = apply_bad_debt(pool_terms, state, position.owner, bad_debt, now).state
    return DebtSettlement(state, tuple(moves), owed, paid, bad_debt)


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def _require_active_owned(position: Position, caller: str) -> None:
    if caller != position.owner:
        raise AuthorizationError(f"{caller} does not own position {position.position_id}")
    if not position.is_active:
        raise ValidationError(f"position {position.position_id} is {position.status}")


def compute_open_position(
    view: LedgerView,
    vault_symbol: str,
    owner: str,
    asset: str,
    amount: Decimal,
    leverage: Decimal,
    price: Decimal,
    tier: Optional[RiskTier] = None,
) -> PendingTransaction:
    """
    Open a leveraged position.

    The entry fee is taken from amount; the rest is the deposit.
        exposure = deposit * leverage
        borrow = exposure - deposit      (borrowed from the pool against owner)

    The new position unit is units_to_create[0] of the returned transaction.

    Raises:
        ValidationError: unsupported asset, non-positive amount, leverage out
            of range, deposit nothing after fee, or asset not allowed by tier
        LiquidityError: pool cannot lend the borrow amount

    Example:
        pending = compute_open_position(ledger, "VAULT", "alice", "BTC",
                                        Decimal("1000"), Decimal("5"), Decimal("50000"))
        tx = ledger.commit(pending)
    """
    terms, state = load_vault(view, vault_symbol)
    amount, leverage, price = to_decimal(amount), to_decimal(leverage), to_decimal(price)

    if asset not in terms.supported_assets:
        raise ValidationError(f"asset {asset} is not supported by {vault_symbol}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"amount must be positive, got {amount}")
    if not leverage.is_finite() or not terms.min_leverage <= leverage <= terms.max_leverage:
        raise ValidationError(
            f"leverage {leverage} outside [{terms.min_leverage}, {terms.max_leverage}]"
        )
    if price <= 0:
        raise ValidationError(f"price must be positive, got {price}")
    if tier is not None and not tier.allows(asset):
        raise ValidationError(f"tier {tier.tier_id} ({tier.label}) does not allow {asset}")

    places = terms.decimal_places
    amount = quantize(amount, places, ROUND_DOWN)
    fee = quantize(bps_of(amount, terms.entry_fee_bps), places, ROUND_UP)
    deposit = amount - fee
    if deposit <= 0:
        raise ValidationError(f"amount {amount} leaves no deposit after entry fee {fee}")
    exposure = quantize(deposit * leverage, places, ROUND_DOWN)
    borrow = exposure - deposit

    pool_terms, pool_state, pool_old = load_accrued(view, terms.pool)
    now = view.current_time
    moves: List[Move] = []
    if fee > 0:
        moves.append(Move(fee, pool_terms.asset, owner, terms.fee_wallet, 'entry_fee'))
    moves.append(Move(deposit, pool_terms.asset, owner, terms.wallet, 'open_deposit'))

    scaled = ZERO
    if borrow > 0:
        update = apply_borrow(pool_terms, pool_state, owner, borrow, terms.wallet, now)
        pool_state, scaled = update.state, update.scaled
        moves.extend(update.moves)

    position_id = state.next_position_id
    position = Position(
        position_id=position_id,
        vault=vault_symbol,
        owner=owner,
        asset=asset,
        deposit_amount=deposit,
        leverage=leverage,
        total_exposure=exposure,
        borrowed_amount=borrow,
        scaled_debt=scaled,
        entry_price=price,
        entry_timestamp=now,
    )
    owned = dict(state.positions_by_owner)
    owned[owner] = tuple(owned.get(owner, ())) + (position_id,)
    new_state = replace(state, next_position_id=position_id + 1, positions_by_owner=owned)

    vault_old = view.get_unit_state(vault_symbol)
    unit = state_unit(
        position.symbol, f"{asset} {leverage}x #{position_id}", UNIT_TYPE_POSITION,
        position_state_dict(position),
    )
    changes = [
        UnitStateChange(terms.pool, pool_old, pool_state_dict(pool_terms, pool_state)),
        UnitStateChange(vault_symbol, vault_old, vault_state_dict(terms, new_state)),
    ]
    origin = TransactionOrigin(OriginType.USER_ACTION, owner, vault_symbol, "OPEN_POSITION")
    return build_transaction(view, moves, changes, origin, units_to_create=(unit,))


def compute_add_collateral(
    view: LedgerView,
    vault_symbol: str,
    caller: str,
    position_id: int,
    amount: Decimal,
) -> PendingTransaction:
    """
    Add to an active position's deposit and exposure without borrowing more.

    Raises:
        AuthorizationError: caller is not the owner
        ValidationError: inactive position or non-positive amount
    """
    terms, _ = load_vault(view, vault_symbol)
    position = load_position(view, vault_symbol, position_id)
    _require_active_owned(position, caller)
    amount = quantize(to_decimal(amount), terms.decimal_places, ROUND_DOWN)
    if amount <= 0:
        raise ValidationError(f"amount must be positive, got {amount}")

    pool_terms, _, _ = load_accrued(view, terms.pool)
    old = view.get_unit_state(position.symbol)
    updated = replace(
        position,
        deposit_amount=position.deposit_amount + amount,
        total_exposure=position.total_exposure + amount,
    )
    moves = [Move(amount, pool_terms.asset, caller, terms.wallet, f'add_collateral_{position_id}')]
    origin = TransactionOrigin(OriginType.USER_ACTION, caller, position.symbol, "ADD_COLLATERAL")
    return build_transaction(
        view, moves, [UnitStateChange(position.symbol, old, position_state_dict(updated))], origin
    )


def compute_close_position(
    view: LedgerView,
    vault_symbol: str,
    caller: str,
    position_id: int,
    price: Decimal,
    tracker: FeeQuote,
) -> Tuple[PendingTransaction, CloseResult]:
    """
    Close an active position at `price`.

    Settles the price move, repays the debt, charges the platform fee on the
    owner's equity gain (never on a loss) and pays the rest to the owner.
    If the value does not cover the debt the owner receives nothing and the
    shortfall is recorded as bad debt.

    Raises:
        AuthorizationError: caller is not the owner
        ValidationError: inactive or unknown position, non-positive price
    """
    terms, _ = load_vault(view, vault_symbol)
    position = load_position(view, vault_symbol, position_id)
    _require_active_owned(position, caller)
    price = to_decimal(price)
    if price <= 0:
        raise ValidationError(f"price must be positive, got {price}")

    pool_terms, pool_state, pool_old = load_accrued(view, terms.pool)
    asset_symbol = pool_terms.asset
    now = view.current_time
    value = calculate_position_value(position, price, terms.decimal_places)

    moves = settle_price_move(terms, position, value, asset_symbol)
    settlement = settle_position_debt(pool_terms, pool_state, position, value, terms.wallet, now)
    moves.extend(settlement.moves)

    equity = value - settlement.debt_repaid
    value_increase = platform_fee = user_payout = ZERO
    if equity > 0:
        value_increase, platform_fee, _ = tracker.calculate_value_increase(position_id, equity)
        platform_fee = min(quantize(platform_fee, terms.decimal_places, ROUND_UP), equity)
        user_payout = equity - platform_fee
        if platform_fee > 0:
            moves.append(Move(platform_fee, asset_symbol, terms.wallet, terms.fee_wallet,
                              f'platform_fee_{position_id}'))
        if user_payout > 0:
            moves.append(Move(user_payout, asset_symbol, terms.wallet, position.owner,
                              f'payout_{position_id}'))

    closed = replace(
        position,
        status=POSITION_CLOSED,
        scaled_debt=ZERO,
        exit_price=price,
        closed_at=now,
        realized_pnl=user_payout - position.deposit_amount,
    )
    changes = [
        UnitStateChange(terms.pool, pool_old, pool_state_dict(pool_terms, settlement.pool_state)),
        UnitStateChange(position.symbol, view.get_unit_state(position.symbol), position_state_dict(closed)),
    ]
    origin = TransactionOrigin(OriginType.USER_ACTION, caller, position.symbol, "CLOSE_POSITION")
    result = CloseResult(
        position_id=position_id,
        owner=position.owner,
        exit_price=price,
        current_value=value,
        outstanding_debt=settlement.outstanding_debt,
        debt_repaid=settlement.debt_repaid,
        bad_debt=settlement.bad_debt,
        value_increase=value_increase,
        platform_fee=platform_fee,
        user_payout=user_payout,
    )
    return build_transaction(view, moves, changes, origin), result


# ============================================================================
# VIEWS
# ============================================================================

@dataclass(frozen=True, slots=True)
class PositionHealth:
    value: Decimal
    debt: Decimal
    health_factor: Decimal


def get_position_health(
    view: LedgerView, vault_symbol: str, position_id: int, price: Decimal
) -> PositionHealth:
    """Value, accrued debt and health factor of a position at `price`."""
    terms, _ = load_vault(view, vault_symbol)
    position = load_position(view, vault_symbol, position_id)
    _, pool_state, _ = load_accrued(view, terms.pool)
    value = calculate_position_value(position, price, terms.decimal_places) if position.is_active else ZERO
    debt = calculate_position_debt(position, pool_state)
    return PositionHealth(value, debt, calculate_health_factor(value, debt))


def get_user_positions(view: LedgerView, vault_symbol: str, owner: str) -> Tuple[int, ...]:
    """Ids of every position the owner ever opened in this vault, oldest first."""
    _, state = load_vault(view, vault_symbol)
    return tuple(state.positions_by_owner.get(owner, ()))


def get_active_positions(view: LedgerView, vault_symbol: str, owner: Optional[str] = None) -> List[Position]:
    """Active positions, for one owner or for the whole vault."""
    _, state = load_vault(view, vault_symbol)
    owners = [owner] if owner is not None else sorted(state.positions_by_owner)
    active = []
    for o in owners:
        for pid in state.positions_by_owner.get(o, ()):
            position = load_position(view, vault_symbol, pid)
            if position.is_active:
                active.append(position)
    return sorted(active, key=lambda p: p.position_id)
