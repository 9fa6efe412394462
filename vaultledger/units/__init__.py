"""
Units module - State units of the leverage engine.

- Lending pool: deposits, shares, borrowing, accrual, flash loans, bad debt
- Risk tier registry: E-Mode tiers and per-account tier selection
- Leveraged vault: position lifecycle

All unit factories and related functions are re-exported here for convenience.
"""

# Lending pool
from .pool import (
    PoolTerms,
    PoolState,
    AccountEntry,
    FlashLoanRecord,
    PoolUpdate,
    BAD_DEBT_SOCIALIZE,
    BAD_DEBT_DEFICIT,
    load_pool,
    to_state_dict as pool_state_dict,
    calculate_accrual,
    calculate_available_liquidity,
    calculate_account_debt,
    calculate_shares_for_deposit,
    calculate_amount_for_shares,
    calculate_flash_fee,
    create_lending_pool,
    load_accrued,
    compute_accrue,
    compute_deposit,
    compute_withdraw,
    compute_borrow,
    compute_repay,
    compute_register_vault,
    compute_cover_bad_debt,
    compute_flash_issue,
    compute_flash_repay,
    get_outstanding,
    get_share_value,
    get_utilization,
    get_borrow_rate,
    get_supply_rate,
)

# Risk tiers
from .risk_tiers import (
    RiskTier,
    RiskRegistry,
    DEFAULT_TIER_ID,
    create_risk_registry,
    load_registry,
    get_tier,
    get_account_tier,
    compute_add_tier,
    compute_update_tier,
    compute_set_user_tier,
)

# Leveraged vault
from .vault import (
    VaultTerms,
    VaultState,
    Position,
    CloseResult,
    PositionHealth,
    POSITION_ACTIVE,
    POSITION_CLOSED,
    POSITION_LIQUIDATED,
    create_vault,
    load_vault,
    load_position,
    position_symbol,
    calculate_position_value,
    calculate_position_debt,
    calculate_health_factor,
    calculate_is_liquidatable,
    calculate_pnl,
    compute_open_position,
    compute_add_collateral,
    compute_close_position,
    get_position_health,
    get_user_positions,
    get_active_positions,
)

__all__ = [
    # Pool
    'PoolTerms', 'PoolState', 'AccountEntry', 'FlashLoanRecord', 'PoolUpdate',
    'BAD_DEBT_SOCIALIZE', 'BAD_DEBT_DEFICIT',
    'load_pool', 'pool_state_dict', 'calculate_accrual', 'calculate_available_liquidity',
    'calculate_account_debt', 'calculate_shares_for_deposit', 'calculate_amount_for_shares',
    'calculate_flash_fee', 'create_lending_pool', 'load_accrued',
    'compute_accrue', 'compute_deposit', 'compute_withdraw', 'compute_borrow', 'compute_repay',
    'compute_register_vault', 'compute_cover_bad_debt', 'compute_flash_issue', 'compute_flash_repay',
    'get_outstanding', 'get_share_value', 'get_utilization', 'get_borrow_rate', 'get_supply_rate',
    # Risk tiers
    'RiskTier', 'RiskRegistry', 'DEFAULT_TIER_ID', 'create_risk_registry', 'load_registry',
    'get_tier', 'get_account_tier', 'compute_add_tier', 'compute_update_tier', 'compute_set_user_tier',
    # Vault
    'VaultTerms', 'VaultState', 'Position', 'CloseResult', 'PositionHealth',
    'POSITION_ACTIVE', 'POSITION_CLOSED', 'POSITION_LIQUIDATED',
    'create_vault', 'load_vault', 'load_position', 'position_symbol',
    'calculate_position_value', 'calculate_position_debt', 'calculate_health_factor',
    'calculate_is_liquidatable', 'calculate_pnl',
    'compute_open_position', 'compute_add_collateral', 'compute_close_position',
    'get_position_health', 'get_user_positions', 'get_active_positions',
]
