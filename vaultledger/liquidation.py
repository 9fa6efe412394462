"""
liquidation.py - Forced closure of unsafe positions

A position whose health factor has fallen below its owner's tier threshold
can be closed by a third party. Proceeds at spot value are distributed:

    1. outstanding debt to the pool, up to the full value
    2. liquidation bonus (tier bonus * value) to the caller, out of what is left
    3. whatever remains to the fee wallet (insurance / treasury)

Bad debt exists only when the value is below the debt. The shortfall is
absorbed by the pool's insurance reserve and bad-debt policy, and no bonus
is paid.

    debt_repaid + liquidator_bonus + insurance_routed == collateral_seized
    debt_repaid + bad_debt_recorded == outstanding_debt

The liquidator unit holds the keeper allow-list and batch limits.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Any, List, Tuple

from .core import (
    LedgerView, Move, PendingTransaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType,
    UNIT_TYPE_LIQUIDATOR,
    ValidationError, AuthorizationError, HealthError,
    build_transaction, state_unit, quantize, bps_of,
)
from .units.pool import load_accrued, to_state_dict as pool_state_dict
from .units.risk_tiers import RiskTier
from .units.vault import (
    POSITION_LIQUIDATED,
    load_vault, load_position, position_state_dict,
    calculate_position_value, calculate_position_debt, calculate_health_factor,
    calculate_is_liquidatable, settle_price_move, settle_position_debt,
)


DEFAULT_MAX_BATCH_SIZE = 20

ZERO = Decimal("0")


@dataclass(frozen=True, slots=True)
class LiquidatorConfig:
    vault: str
    admin: str
    keepers: Tuple[str, ...] = ()
    keeper_only: bool = False
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE


@dataclass(frozen=True, slots=True)
class LiquidationOutcome:
    """Result of one liquidation. Persisted only through its ledger effects."""
    position_id: int
    owner: str
    liquidator: str
    price: Decimal
    health_factor: Decimal
    collateral_seized: Decimal
    outstanding_debt: Decimal
    debt_repaid: Decimal
    liquidator_bonus: Decimal
    insurance_routed: Decimal
    bad_debt_recorded: Decimal

    @property
    def total_outflow(self) -> Decimal:
        """Everything paid out of the seized collateral."""
        return self.debt_repaid + self.liquidator_bonus + self.insurance_routed


@dataclass(frozen=True, slots=True)
class BatchLiquidationResult:
    """
    Best-effort batch result: each id succeeds or fails on its own.

    failures holds (position_id, exception) for every id that was rejected.
    """
    outcomes: Tuple[LiquidationOutcome, ...]
    failures: Tuple[Tuple[int, Exception], ...]

    @property
    def total_debt_repaid(self) -> Decimal:
        return sum((o.debt_repaid for o in self.outcomes), ZERO)

    @property
    def total_collateral_seized(self) -> Decimal:
        return sum((o.collateral_seized for o in self.outcomes), ZERO)

    @property
    def total_bonus(self) -> Decimal:
        return sum((o.liquidator_bonus for o in self.outcomes), ZERO)

    @property
    def total_bad_debt(self) -> Decimal:
        return sum((o.bad_debt_recorded for o in self.outcomes), ZERO)

    @property
    def liquidated_ids(self) -> Tuple[int, ...]:
        return tuple(o.position_id for o in self.outcomes)

    @property
    def failed_ids(self) -> Tuple[int, ...]:
        return tuple(pid for pid, _ in self.failures)


def load_liquidator(view: LedgerView, symbol: str) -> LiquidatorConfig:
    raw = view.get_unit_state(symbol)
    return LiquidatorConfig(
        vault=raw['vault'],
        admin=raw['admin'],
        keepers=tuple(raw.get('keepers', ())),
        keeper_only=bool(raw.get('keeper_only', False)),
        max_batch_size=int(raw.get('max_batch_size', DEFAULT_MAX_BATCH_SIZE)),
    )


def liquidator_state_dict(config: LiquidatorConfig) -> Dict[str, Any]:
    return {
        'vault': config.vault,
        'admin': config.admin,
        'keepers': tuple(config.keepers),
        'keeper_only': config.keeper_only,
        'max_batch_size': config.max_batch_size,
    }


def create_liquidator(
    symbol: str,
    name: str,
    vault: str,
    admin: str,
    keeper_only: bool = False,
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
) -> Unit:
    if max_batch_size < 1:
        raise ValidationError(f"max_batch_size must be at least 1, got {max_batch_size}")
    config = LiquidatorConfig(vault, admin, (), keeper_only, max_batch_size)
    return state_unit(symbol, name, UNIT_TYPE_LIQUIDATOR, liquidator_state_dict(config))


def validate_batch(config: LiquidatorConfig, position_ids: List[int]) -> None:
    """
    Raises:
        ValidationError: empty batch or more than max_batch_size ids
    """
    if not position_ids:
        raise ValidationError("batch is empty")
    if len(position_ids) > config.max_batch_size:
        raise ValidationError(
            f"batch of {len(position_ids)} exceeds max batch size {config.max_batch_size}"
        )


def check_caller(config: LiquidatorConfig, caller: str, owner: str) -> None:
    """
    Raises:
        AuthorizationError: self-liquidation, or a non-keeper in keeper-only mode
    """
    if caller == owner:
        raise AuthorizationError(f"{caller} cannot liquidate their own position")
    if config.keeper_only and caller not in config.keepers:
        raise AuthorizationError(f"{caller} is not a keeper and keeper-only mode is on")


def calculate_waterfall(
    value: Decimal, debt_repaid: Decimal, bonus_bps: int, places: int = 6
) -> Tuple[Decimal, Decimal]:
    """
    Split what is left of seized value after debt into (liquidator bonus, routed).

    The bonus is capped at the remainder, so it is zero for an underwater position.
    """
    remainder = value - debt_repaid
    bonus = min(quantize(bps_of(value, bonus_bps), places, ROUND_DOWN), remainder)
    return bonus, remainder - bonus


def compute_liquidation(
    view: LedgerView,
    liquidator_symbol: str,
    caller: str,
    position_id: int,
    price: Decimal,
    tier: RiskTier,
) -> Tuple[PendingTransaction, LiquidationOutcome]:
    """
    Liquidate an unsafe position at spot `price`.

    tier is the position owner's current risk tier.

    Raises:
        ValidationError: unknown or inactive position
        AuthorizationError: see check_caller
        HealthError: the position is not liquidatable
    """
    config = load_liquidator(view, liquidator_symbol)
    terms, _ = load_vault(view, config.vault)
    position = load_position(view, config.vault, position_id)
    if not position.is_active:
        raise ValidationError(f"position {position_id} is {position.status}")
    check_caller(config, caller, position.owner)

    pool_terms, pool_state, pool_old = load_accrued(view, terms.pool)
    places = terms.decimal_places
    value = calculate_position_value(position, price, places)
    debt = calculate_position_debt(position, pool_state)
    health = calculate_health_factor(value, debt)
    if not calculate_is_liquidatable(value, debt, tier):
        raise HealthError(
            f"position {position_id} is healthy: health factor {health} "
            f">= {tier.health_threshold}"
        )

    now = view.current_time
    asset = pool_terms.asset
    moves: List[Move] = settle_price_move(terms, position, value, asset)
    settlement = settle_position_debt(pool_terms, pool_state, position, value, terms.wallet, now)
    moves.extend(settlement.moves)
    bonus, routed = calculate_waterfall(value, settlement.debt_repaid, tier.liquidation_bonus_bps, places)
    if bonus > 0:
        moves.append(Move(bonus, asset, terms.wallet, caller, f'liquidation_bonus_{position_id}'))
    if routed > 0:
        moves.append(Move(routed, asset, terms.wallet, terms.fee_wallet, f'liquidation_fee_{position_id}'))

    liquidated = replace(
        position,
        status=POSITION_LIQUIDATED,
        scaled_debt=ZERO,
        exit_price=price,
        closed_at=now,
        realized_pnl=-position.deposit_amount,
    )
    changes = [
        UnitStateChange(terms.pool, pool_old, pool_state_dict(pool_terms, settlement.pool_state)),
        UnitStateChange(position.symbol, view.get_unit_state(position.symbol), position_state_dict(liquidated)),
    ]
    origin = TransactionOrigin(OriginType.KEEPER, caller, position.symbol, "LIQUIDATE")
    outcome = LiquidationOutcome(
        position_id=position_id,
        owner=position.owner,
        liquidator=caller,
        price=price,
        health_factor=health,
        collateral_seized=value,
        outstanding_debt=settlement.outstanding_debt,
        debt_repaid=settlement.debt_repaid,
        liquidator_bonus=bonus,
        insurance_routed=routed,
        bad_debt_recorded=settlement.bad_debt,
    )
    return build_transaction(view, moves, changes, origin), outcome


def _require_admin(config: LiquidatorConfig, caller: str) -> None:
    if caller != config.admin:
        raise AuthorizationError(f"{caller} is not the liquidator admin")


def _config_change(
    view: LedgerView, symbol: str, caller: str, event: str, new: LiquidatorConfig
) -> PendingTransaction:
    origin = TransactionOrigin(OriginType.ADMIN, caller, symbol, event)
    return build_transaction(
        view, [], [UnitStateChange(symbol, view.get_unit_state(symbol), liquidator_state_dict(new))], origin
    )


def compute_add_keeper(view: LedgerView, symbol: str, caller: str, keeper: str) -> PendingTransaction:
    """
    Raises:
        AuthorizationError: caller is not admin
        ValidationError: keeper already registered
    """
    config = load_liquidator(view, symbol)
    _require_admin(config, caller)
    if keeper in config.keepers:
        raise ValidationError(f"{keeper} is already a keeper")
    return _config_change(view, symbol, caller, "ADD_KEEPER",
                          replace(config, keepers=config.keepers + (keeper,)))


def compute_remove_keeper(view: LedgerView, symbol: str, caller: str, keeper: str) -> PendingTransaction:
    """
    Raises:
        AuthorizationError: caller is not admin
        ValidationError: keeper not registered
    """
    config = load_liquidator(view, symbol)
    _require_admin(config, caller)
    if keeper not in config.keepers:
        raise ValidationError(f"{keeper} is not a keeper")
    return _config_change(view, symbol, caller, "REMOVE_KEEPER",
                          replace(config, keepers=tuple(k for k in config.keepers if k != keeper)))


def compute_set_keeper_only(view: LedgerView, symbol: str, caller: str, enabled: bool) -> PendingTransaction:
    config = load_liquidator(view, symbol)
    _require_admin(config, caller)
    return _config_change(view, symbol, caller, "SET_KEEPER_ONLY", replace(config, keeper_only=bool(enabled)))
