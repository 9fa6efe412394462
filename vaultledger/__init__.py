"""
vaultledger - Leveraged Lending Ledger

Accounting and risk engine for a pooled lending market that funds
leveraged positions: an interest-bearing pool, E-Mode risk tiers, a vault
of leveraged positions, liquidation with bad-debt absorption and flash loans.

Usage:
    from decimal import Decimal
    from vaultledger import create_engine, StaticPricingSource

    prices = StaticPricingSource({"BTC": Decimal("50000")})
    engine = create_engine(asset="USDC", supported_assets=("BTC",), prices=prices)

    engine.open_account("lp", fund=Decimal("100000"))
    engine.open_account("alice", fund=Decimal("1000"))
    engine.deposit("lp", Decimal("100000"))

    position_id = engine.open_position("alice", "BTC", Decimal("1000"), Decimal("5"))
    engine.health_factor(position_id)
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    empty_pending_transaction,
    Unit,
    UnitStateChange,
    EventRecord,
    ExecuteResult,
    LedgerError,
    TransferRuleViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    ValidationError,
    AuthorizationError,
    LiquidityError,
    HealthError,
    StaleDataError,
    TransferFailure,
    StateConflict,
    ReentrancyError,
    FlashLoanNotRepaid,
    token,
    pool_share,
    SYSTEM_WALLET,
    BPS,
    UNIT_TYPE_TOKEN,
    UNIT_TYPE_POOL_SHARE,
    UNIT_TYPE_LENDING_POOL,
    UNIT_TYPE_RISK_REGISTRY,
    UNIT_TYPE_VAULT,
    UNIT_TYPE_POSITION,
    UNIT_TYPE_LIQUIDATOR,
)

# Ledger
from .ledger import Ledger

# Interest rate model
from .interest_rate import InterestRateModel, calculate_utilization

# Pricing sources
from .pricing_source import (
    PriceQuote,
    PriceSource,
    StaticPricingSource,
    TimeSeriesPricingSource,
)

# Value tracker
from .value_tracker import (
    ValueTracker,
    ProfitShareTracker,
    FEE_TYPE_ENTRY,
    FEE_TYPE_PLATFORM,
    FEE_TYPE_LIQUIDATION,
)

# Units
from .units.pool import (
    PoolTerms,
    PoolState,
    BAD_DEBT_SOCIALIZE,
    BAD_DEBT_DEFICIT,
    create_lending_pool,
)
from .units.risk_tiers import RiskTier, DEFAULT_TIER_ID, create_risk_registry
from .units.vault import (
    Position,
    CloseResult,
    POSITION_ACTIVE,
    POSITION_CLOSED,
    POSITION_LIQUIDATED,
    create_vault,
)

# Liquidation
from .liquidation import (
    LiquidationOutcome,
    BatchLiquidationResult,
    create_liquidator,
    compute_liquidation,
)

# Engine
from .engine import LeverageEngine, FlashLoanReceiver, create_engine

__all__ = [
    # Core
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction', 'TransactionOrigin', 'OriginType',
    'build_transaction', 'empty_pending_transaction',
    'Unit', 'UnitStateChange', 'EventRecord', 'ExecuteResult',
    'LedgerError', 'TransferRuleViolation', 'UnitNotRegistered', 'WalletNotRegistered',
    'ValidationError', 'AuthorizationError', 'LiquidityError', 'HealthError',
    'StaleDataError', 'TransferFailure', 'StateConflict', 'ReentrancyError', 'FlashLoanNotRepaid',
    'token', 'pool_share', 'SYSTEM_WALLET', 'BPS',
    'UNIT_TYPE_TOKEN', 'UNIT_TYPE_POOL_SHARE', 'UNIT_TYPE_LENDING_POOL', 'UNIT_TYPE_RISK_REGISTRY',
    'UNIT_TYPE_VAULT', 'UNIT_TYPE_POSITION', 'UNIT_TYPE_LIQUIDATOR',
    # Ledger
    'Ledger',
    # Interest rates
    'InterestRateModel', 'calculate_utilization',
    # Pricing
    'PriceQuote', 'PriceSource', 'StaticPricingSource', 'TimeSeriesPricingSource',
    # Value tracker
    'ValueTracker', 'ProfitShareTracker', 'FEE_TYPE_ENTRY', 'FEE_TYPE_PLATFORM', 'FEE_TYPE_LIQUIDATION',
    # Units
    'PoolTerms', 'PoolState', 'BAD_DEBT_SOCIALIZE', 'BAD_DEBT_DEFICIT', 'create_lending_pool',
    'RiskTier', 'DEFAULT_TIER_ID', 'create_risk_registry',
    'Position', 'CloseResult', 'POSITION_ACTIVE', 'POSITION_CLOSED', 'POSITION_LIQUIDATED',
    'create_vault',
    # Liquidation
    'LiquidationOutcome', 'BatchLiquidationResult', 'create_liquidator', 'compute_liquidation',
    # Engine
    'LeverageEngine', 'FlashLoanReceiver', 'create_engine',
]

__version__ = '1.0.0'
