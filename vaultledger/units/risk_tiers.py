"""
risk_tiers.py - E-Mode Risk Tier Registry

Named risk profiles (loan-to-value, liquidation threshold, liquidation bonus)
an account may opt into. The registry unit holds the tier table; the
account's chosen tier lives in its pool entry, since the pool owns the
account ledger.

Tier 0 is the default tier every account starts in.

A tier may list allowed_assets. When it does, an account can only enter the
tier if every open position is in one of them, and cannot open positions in
other assets while in it. A tier with no allowed_assets checks debt against
loan-to-value only: whether the account's collateral actually belongs to the
tier's correlated-asset class is left to the account holder.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Any, Iterable, Optional, Tuple, Mapping

from ..core import (
    LedgerView, PendingTransaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType,
    BPS, QUANTITY_EPSILON, UNIT_TYPE_RISK_REGISTRY,
    ValidationError, AuthorizationError, HealthError,
    build_transaction, state_unit, to_decimal,
)
from .pool import (
    load_accrued, calculate_account_debt, to_state_dict as pool_state_dict,
)


DEFAULT_TIER_ID = 0

# Upper bounds for tier parameters
MAX_LTV_BPS = 9900            # exclusive
MAX_LIQUIDATION_BONUS_BPS = 1000


@dataclass(frozen=True, slots=True)
class RiskTier:
    """
    One risk profile. All ratios in basis points.

    liquidation_threshold_bps is the share of collateral value the debt may
    reach before the position can be liquidated; in health-factor terms the
    position is unsafe once value / debt < 10000 / liquidation_threshold_bps.
    """
    tier_id: int
    ltv_bps: int
    liquidation_threshold_bps: int
    liquidation_bonus_bps: int
    label: str
    allowed_assets: Tuple[str, ...] = ()

    def max_borrow(self, collateral_value: Decimal) -> Decimal:
        return to_decimal(collateral_value) * Decimal(self.ltv_bps) / Decimal(BPS)

    @property
    def health_threshold(self) -> Decimal:
        """Health factor below which a position in this tier is liquidatable."""
        return Decimal(BPS) / Decimal(self.liquidation_threshold_bps)

    def allows(self, asset: str) -> bool:
        return not self.allowed_assets or asset in self.allowed_assets

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ltv_bps': self.ltv_bps,
            'liquidation_threshold_bps': self.liquidation_threshold_bps,
            'liquidation_bonus_bps': self.liquidation_bonus_bps,
            'label': self.label,
            'allowed_assets': tuple(self.allowed_assets),
        }


@dataclass(frozen=True, slots=True)
class RiskRegistry:
    admin: str
    tiers: Mapping[int, RiskTier]
    next_tier_id: int


def validate_tier_params(
    ltv_bps: int,
    liquidation_threshold_bps: int,
    liquidation_bonus_bps: int,
    label: str,
) -> None:
    """
    Raises:
        ValidationError: ltv >= 99%, threshold not above ltv, threshold
            above 100%, bonus above 10% or negative, empty label
    """
    if ltv_bps < 0 or ltv_bps >= MAX_LTV_BPS:
        raise ValidationError(f"ltv_bps must be in [0, {MAX_LTV_BPS}), got {ltv_bps}")
    if liquidation_threshold_bps <= ltv_bps:
        raise ValidationError(
            f"liquidation threshold {liquidation_threshold_bps} must exceed ltv {ltv_bps}"
        )
    if liquidation_threshold_bps > BPS:
        raise ValidationError(f"liquidation threshold {liquidation_threshold_bps} exceeds {BPS}")
    if liquidation_bonus_bps < 0 or liquidation_bonus_bps > MAX_LIQUIDATION_BONUS_BPS:
        raise ValidationError(
            f"liquidation bonus must be in [0, {MAX_LIQUIDATION_BONUS_BPS}], got {liquidation_bonus_bps}"
        )
    if not label or not label.strip():
        raise ValidationError("tier label cannot be empty")


def _tier_from_dict(tier_id: int, raw: Dict[str, Any]) -> RiskTier:
    return RiskTier(
        tier_id=tier_id,
        ltv_bps=int(raw['ltv_bps']),
        liquidation_threshold_bps=int(raw['liquidation_threshold_bps']),
        liquidation_bonus_bps=int(raw['liquidation_bonus_bps']),
        label=raw['label'],
        allowed_assets=tuple(raw.get('allowed_assets', ())),
    )


def load_registry(view: LedgerView, symbol: str) -> RiskRegistry:
    raw = view.get_unit_state(symbol)
    tiers = {int(k): _tier_from_dict(int(k), v) for k, v in raw.get('tiers', {}).items()}
    return RiskRegistry(raw['admin'], tiers, int(raw.get('next_tier_id', 1)))


def registry_state_dict(registry: RiskRegistry) -> Dict[str, Any]:
    return {
        'admin': registry.admin,
        'tiers': {tid: t.to_dict() for tid, t in registry.tiers.items()},
        'next_tier_id': registry.next_tier_id,
    }


def get_tier(view: LedgerView, registry_symbol: str, tier_id: int) -> RiskTier:
    """
    Raises:
        ValidationError: unknown tier id
    """
    registry = load_registry(view, registry_symbol)
    if tier_id not in registry.tiers:
        raise ValidationError(f"unknown risk tier {tier_id}")
    return registry.tiers[tier_id]


def get_account_tier(view: LedgerView, registry_symbol: str, pool_symbol: str, account: str) -> RiskTier:
    """The tier an account is currently in."""
    _, state, _ = load_accrued(view, pool_symbol)
    return get_tier(view, registry_symbol, state.entry(account).risk_tier)


def create_risk_registry(
    symbol: str,
    name: str,
    admin: str,
    default_ltv_bps: int = 8000,
    default_liquidation_threshold_bps: int = 8500,
    default_liquidation_bonus_bps: int = 500,
) -> Unit:
    """
    Create a registry unit with tier 0 ("default") in place.

    Example:
        ledger.register_unit(create_risk_registry("EMODE", "Risk tiers", admin="admin"))
    """
    validate_tier_params(
        default_ltv_bps, default_liquidation_threshold_bps, default_liquidation_bonus_bps, "default"
    )
    if not admin or not admin.strip():
        raise ValidationError("admin cannot be empty")
    default = RiskTier(
        DEFAULT_TIER_ID, default_ltv_bps, default_liquidation_threshold_bps,
        default_liquidation_bonus_bps, "default",
    )
    registry = RiskRegistry(admin, {DEFAULT_TIER_ID: default}, DEFAULT_TIER_ID + 1)
    return state_unit(symbol, name, UNIT_TYPE_RISK_REGISTRY, registry_state_dict(registry))


def compute_add_tier(
    view: LedgerView,
    registry_symbol: str,
    caller: str,
    ltv_bps: int,
    liquidation_threshold_bps: int,
    liquidation_bonus_bps: int,
    label: str,
    allowed_assets: Iterable[str] = (),
) -> PendingTransaction:
    """
    Register a new tier under the next free id (registry next_tier_id).

    Raises:
        AuthorizationError: caller is not the registry admin
        ValidationError: see validate_tier_params
    """
    old = view.get_unit_state(registry_symbol)
    registry = load_registry(view, registry_symbol)
    if caller != registry.admin:
        raise AuthorizationError(f"{caller} is not the risk registry admin")
    validate_tier_params(ltv_bps, liquidation_threshold_bps, liquidation_bonus_bps, label)

    tier_id = registry.next_tier_id
    tiers = dict(registry.tiers)
    tiers[tier_id] = RiskTier(
        tier_id, ltv_bps, liquidation_threshold_bps, liquidation_bonus_bps,
        label, tuple(allowed_assets),
    )
    new_registry = replace(registry, tiers=tiers, next_tier_id=tier_id + 1)
    origin = TransactionOrigin(OriginType.ADMIN, caller, registry_symbol, "ADD_TIER")
    return build_transaction(
        view, [], [UnitStateChange(registry_symbol, old, registry_state_dict(new_registry))], origin
    )


def compute_update_tier(
    view: LedgerView,
    registry_symbol: str,
    caller: str,
    tier_id: int,
    ltv_bps: int,
    liquidation_threshold_bps: int,
    liquidation_bonus_bps: int,
    label: Optional[str] = None,
    allowed_assets: Optional[Iterable[str]] = None,
) -> PendingTransaction:
    """
    Change an existing tier's parameters. Admin only.

    This is the only way a tier referenced by open debt changes; accounts in
    the tier are not re-checked, so a tighter tier can make positions
    liquidatable at once.
    """
    old = view.get_unit_state(registry_symbol)
    registry = load_registry(view, registry_symbol)
    if caller != registry.admin:
        raise AuthorizationError(f"{caller} is not the risk registry admin")
    if tier_id not in registry.tiers:
        raise ValidationError(f"unknown risk tier {tier_id}")
    current = registry.tiers[tier_id]
    label = current.label if label is None else label
    validate_tier_params(ltv_bps, liquidation_threshold_bps, liquidation_bonus_bps, label)

    tiers = dict(registry.tiers)
    tiers[tier_id] = RiskTier(
        tier_id, ltv_bps, liquidation_threshold_bps, liquidation_bonus_bps, label,
        current.allowed_assets if allowed_assets is None else tuple(allowed_assets),
    )
    new_registry = replace(registry, tiers=tiers)
    origin = TransactionOrigin(OriginType.ADMIN, caller, registry_symbol, "UPDATE_TIER")
    return build_transaction(
        view, [], [UnitStateChange(registry_symbol, old, registry_state_dict(new_registry))], origin
    )


def compute_set_user_tier(
    view: LedgerView,
    registry_symbol: str,
    pool_symbol: str,
    account: str,
    tier_id: int,
    collateral_value: Decimal = Decimal("0"),
    position_assets: Iterable[str] = (),
) -> PendingTransaction:
    """
    Move an account into tier_id.

    collateral_value is the account's share value plus the current value of
    its open positions; position_assets are the assets of those positions.

    Raises:
        ValidationError: unknown tier, or an open position in an asset the
            tier does not allow
        HealthError: outstanding debt above collateral_value * new ltv
    """
    tier = get_tier(view, registry_symbol, tier_id)
    terms, state, old = load_accrued(view, pool_symbol)
    entry = state.entry(account)

    disallowed = sorted(a for a in set(position_assets) if not tier.allows(a))
    if disallowed:
        raise ValidationError(
            f"tier {tier_id} ({tier.label}) does not allow assets {disallowed}"
        )

    debt = calculate_account_debt(state, account)
    if entry.risk_tier != tier_id and debt > QUANTITY_EPSILON:
        max_borrow = tier.max_borrow(collateral_value)
        if debt > max_borrow:
            raise HealthError(
                f"debt {debt} exceeds max borrow {max_borrow} under tier {tier_id} ({tier.label})"
            )

    accounts = dict(state.accounts)
    accounts[account] = replace(entry, risk_tier=tier_id)
    new_state = replace(state, accounts=accounts)
    origin = TransactionOrigin(OriginType.USER_ACTION, account, pool_symbol, "SET_USER_TIER")
    return build_transaction(
        view, [], [UnitStateChange(pool_symbol, old, pool_state_dict(terms, new_state))], origin
    )
