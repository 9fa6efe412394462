"""
pool.py - Interest-Bearing Lending Pool

This module provides the pooled ledger: depositors mint non-transferable
shares against a single asset, the registered vault borrows against it, and
interest accrues on every state-mutating call.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASSES (explicit inputs):
   - PoolTerms: Configuration (asset, rate model, fees, bad-debt policy, admin)
   - PoolState: Aggregates, per-account entries, outstanding flash loans

2. PURE CALCULATION FUNCTIONS (calculate_*, apply_*):
   - calculate_* return numbers
   - apply_* take (terms, state, ...) and return a PoolUpdate carrying the
     next state and the token moves; they compose, so a vault operation can
     thread one PoolState through several steps inside a single transaction

3. ADAPTER FUNCTIONS (load_pool, to_state_dict):
   - The only place that touches LedgerView for reads

4. CONVENIENCE FUNCTIONS (compute_*):
   - load + accrue + apply + build_transaction

Key Formulas:
    utilization = total_borrowed / total_deposits
    interest = total_borrowed * rate(utilization) * elapsed / year
    shares = amount * total_shares / total_deposits      (amount on an empty pool)
    amount = shares * total_deposits / total_shares
    account debt = scaled_debt * borrow_index

Cash held by the pool wallet is total_deposits - total_borrowed +
insurance_reserve - deficit, minus principal out on flash loans.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from typing import Dict, Any, Optional, Tuple, Mapping

from ..core import (
    LedgerView, Move, PendingTransaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType,
    SYSTEM_WALLET, BPS, QUANTITY_EPSILON, UNIT_TYPE_LENDING_POOL,
    ValidationError, AuthorizationError, LiquidityError, HealthError,
    build_transaction, empty_pending_transaction, state_unit, quantize, bps_of, to_decimal, year_fraction,
)
from ..interest_rate import InterestRateModel, calculate_utilization


# Bad-debt policies for the part of a shortfall the insurance reserve cannot cover
BAD_DEBT_SOCIALIZE = "SOCIALIZE"   # haircut total_deposits, lowering the share price
BAD_DEBT_DEFICIT = "DEFICIT"       # carry as a deficit until an admin covers it

ZERO = Decimal("0")
ONE = Decimal("1")


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class PoolTerms:
    """Pool configuration. Changed only by guarded admin operations."""
    asset: str
    share_unit: str
    wallet: str
    admin: str
    rate_model: InterestRateModel
    insurance_fraction_bps: int = 1000
    flash_fee_bps: int = 5
    bad_debt_policy: str = BAD_DEBT_SOCIALIZE
    decimal_places: int = 6
    share_decimal_places: int = 18


@dataclass(frozen=True, slots=True)
class AccountEntry:
    """
    One account's debt in the pool.

    scaled_debt * borrow_index is the outstanding debt including accrual;
    principal is the part of it that was actually lent out.
    """
    scaled_debt: Decimal = ZERO
    principal: Decimal = ZERO
    risk_tier: int = 0
    last_interest: Optional[datetime] = None

    def debt(self, borrow_index: Decimal) -> Decimal:
        return self.scaled_debt * borrow_index


@dataclass(frozen=True, slots=True)
class FlashLoanRecord:
    """Outstanding flash loan. Cleared only by its matching repayment."""
    receiver: str
    amount: Decimal
    fee: Decimal
    issued_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class PoolState:
    total_deposits: Decimal = ZERO
    total_borrowed: Decimal = ZERO
    total_shares: Decimal = ZERO
    last_accrual: Optional[datetime] = None
    insurance_reserve: Decimal = ZERO
    total_bad_debt: Decimal = ZERO
    deficit: Decimal = ZERO
    borrow_index: Decimal = ONE
    accounts: Mapping[str, AccountEntry] = None
    vault: Optional[str] = None
    flash_loans: Mapping[int, FlashLoanRecord] = None
    next_flash_id: int = 1

    def __post_init__(self):
        if self.accounts is None:
            object.__setattr__(self, 'accounts', {})
        if self.flash_loans is None:
            object.__setattr__(self, 'flash_loans', {})

    def entry(self, account: str) -> AccountEntry:
        return self.accounts.get(account, AccountEntry())


@dataclass(frozen=True, slots=True)
class PoolUpdate:
    """
    Result of one pool step.

    amount is the step's headline number: shares minted, tokens withdrawn,
    interest paid, bad debt recorded, flash loan id.
    """
    state: PoolState
    moves: Tuple[Move, ...] = ()
    amount: Decimal = ZERO
    scaled: Decimal = ZERO


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def load_pool(view: LedgerView, symbol: str) -> Tuple[PoolTerms, PoolState]:
    """
    Load a pool from ledger state as typed frozen dataclasses.

    Example:
        terms, state = load_pool(view, "POOL-USDC")
        state = calculate_accrual(terms, state, view.current_time)
    """
    raw = view.get_unit_state(symbol)

    terms = PoolTerms(
        asset=raw['asset'],
        share_unit=raw['share_unit'],
        wallet=raw.get('wallet', symbol),
        admin=raw['admin'],
        rate_model=InterestRateModel.from_dict(raw['rate_model']),
        insurance_fraction_bps=int(raw.get('insurance_fraction_bps', 1000)),
        flash_fee_bps=int(raw.get('flash_fee_bps', 5)),
        bad_debt_policy=raw.get('bad_debt_policy', BAD_DEBT_SOCIALIZE),
        decimal_places=int(raw.get('decimal_places', 6)),
        share_decimal_places=int(raw.get('share_decimal_places', 18)),
    )

    accounts = {
        name: AccountEntry(
            scaled_debt=to_decimal(e.get('scaled_debt', 0)),
            principal=to_decimal(e.get('principal', 0)),
            risk_tier=int(e.get('risk_tier', 0)),
            last_interest=e.get('last_interest'),
        )
        for name, e in raw.get('accounts', {}).items()
    }
    flash_loans = {
        int(loan_id): FlashLoanRecord(
            receiver=r['receiver'],
            amount=to_decimal(r['amount']),
            fee=to_decimal(r['fee']),
            issued_at=r.get('issued_at'),
        )
        for loan_id, r in raw.get('flash_loans', {}).items()
    }

    state = PoolState(
        total_deposits=to_decimal(raw.get('total_deposits', 0)),
        total_borrowed=to_decimal(raw.get('total_borrowed', 0)),
        total_shares=to_decimal(raw.get('total_shares', 0)),
        last_accrual=raw.get('last_accrual'),
        insurance_reserve=to_decimal(raw.get('insurance_reserve', 0)),
        total_bad_debt=to_decimal(raw.get('total_bad_debt', 0)),
        deficit=to_decimal(raw.get('deficit', 0)),
        borrow_index=to_decimal(raw.get('borrow_index', 1)),
        accounts=accounts,
        vault=raw.get('vault'),
        flash_loans=flash_loans,
        next_flash_id=int(raw.get('next_flash_id', 1)),
    )
    return terms, state


def to_state_dict(terms: PoolTerms, state: PoolState) -> Dict[str, Any]:
    """Inverse of load_pool(), used for UnitStateChange.new_state."""
    return {
        'asset': terms.asset,
        'share_unit': terms.share_unit,
        'wallet': terms.wallet,
        'admin': terms.admin,
        'rate_model': terms.rate_model.to_dict(),
        'insurance_fraction_bps': terms.insurance_fraction_bps,
        'flash_fee_bps': terms.flash_fee_bps,
        'bad_debt_policy': terms.bad_debt_policy,
        'decimal_places': terms.decimal_places,
        'share_decimal_places': terms.share_decimal_places,
        'total_deposits': state.total_deposits,
        'total_borrowed': state.total_borrowed,
        'total_shares': state.total_shares,
        'last_accrual': state.last_accrual,
        'insurance_reserve': state.insurance_reserve,
        'total_bad_debt': state.total_bad_debt,
        'deficit': state.deficit,
        'borrow_index': state.borrow_index,
        'accounts': {
            name: {
                'scaled_debt': e.scaled_debt,
                'principal': e.principal,
                'risk_tier': e.risk_tier,
                'last_interest': e.last_interest,
            }
            for name, e in state.accounts.items()
        },
        'vault': state.vault,
        'flash_loans': {
            loan_id: {
                'receiver': r.receiver,
                'amount': r.amount,
                'fee': r.fee,
                'issued_at': r.issued_at,
            }
            for loan_id, r in state.flash_loans.items()
        },
        'next_flash_id': state.next_flash_id,
    }


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_accrual(terms: PoolTerms, state: PoolState, now: datetime) -> PoolState:
    """
    Bring the pool's interest up to `now`.

    The full interest is added to total_borrowed and the borrow index. A
    fraction goes to the insurance reserve and the rest to total_deposits.
    The insurance cut is capped at total_deposits - total_borrowed so the
    pool never reports more borrowed than deposited.
    """
    if state.last_accrual is None:
        return replace(state, last_accrual=now)
    if now <= state.last_accrual:
        return state
    if state.total_borrowed <= 0:
        return replace(state, last_accrual=now)

    elapsed = year_fraction(state.last_accrual, now)
    utilization = calculate_utilization(state.total_borrowed, state.total_deposits)
    growth = terms.rate_model.borrow_rate(utilization) / Decimal(BPS) * elapsed
    interest = state.total_borrowed * growth

    headroom = max(ZERO, state.total_deposits - state.total_borrowed)
    insurance_cut = min(bps_of(interest, terms.insurance_fraction_bps), headroom)

    return replace(
        state,
        total_borrowed=state.total_borrowed + interest,
        total_deposits=state.total_deposits + interest - insurance_cut,
        insurance_reserve=state.insurance_reserve + insurance_cut,
        borrow_index=state.borrow_index * (ONE + growth),
        last_accrual=now,
    )


def calculate_available_liquidity(state: PoolState) -> Decimal:
    """Unborrowed deposits not tied up by a deficit or an in-flight flash loan."""
    in_flight = sum((r.amount for r in state.flash_loans.values()), ZERO)
    return max(ZERO, state.total_deposits - state.total_borrowed - state.deficit - in_flight)


def calculate_account_debt(state: PoolState, account: str) -> Decimal:
    return state.entry(account).debt(state.borrow_index)


def calculate_shares_for_deposit(terms: PoolTerms, state: PoolState, amount: Decimal) -> Decimal:
    """Shares minted for a deposit, rounded down in the pool's favor."""
    if state.total_shares <= 0:
        return quantize(amount, terms.share_decimal_places, ROUND_DOWN)
    return quantize(
        amount * state.total_shares / state.total_deposits,
        terms.share_decimal_places, ROUND_DOWN,
    )


def calculate_amount_for_shares(terms: PoolTerms, state: PoolState, shares: Decimal) -> Decimal:
    """Tokens redeemable for shares, rounded down in the pool's favor."""
    if state.total_shares <= 0:
        return ZERO
    return quantize(
        shares * state.total_deposits / state.total_shares,
        terms.decimal_places, ROUND_DOWN,
    )


def calculate_flash_fee(terms: PoolTerms, amount: Decimal) -> Decimal:
    """Flash loan fee, rounded up."""
    return quantize(bps_of(amount, terms.flash_fee_bps), terms.decimal_places, ROUND_UP)


def _require_positive(amount: Decimal, what: str) -> Decimal:
    amount = to_decimal(amount)
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{what} must be positive, got {amount}")
    return amount


def _with_entry(state: PoolState, account: str, entry: AccountEntry) -> Dict[str, AccountEntry]:
    accounts = dict(state.accounts)
    accounts[account] = entry
    return accounts


def _reduce_borrowed(total_borrowed: Decimal, amount: Decimal) -> Decimal:
    """total_borrowed - amount, with sub-epsilon division dust snapped to zero."""
    remaining = total_borrowed - amount
    if remaining <= QUANTITY_EPSILON:
        return ZERO
    return remaining


def apply_deposit(terms: PoolTerms, state: PoolState, account: str, amount: Decimal) -> PoolUpdate:
    """
    Take `amount` of the asset from account and mint shares to it.

    Raises:
        ValidationError: zero amount, zero resulting shares, or a pool whose
            shares have no deposit value left behind them
    """
    amount = quantize(_require_positive(amount, "deposit amount"), terms.decimal_places, ROUND_DOWN)
    if amount <= 0:
        raise ValidationError("deposit amount rounds to zero")
    if state.total_shares > 0 and state.total_deposits <= 0:
        raise ValidationError("pool shares have no deposits behind them")

    shares = calculate_shares_for_deposit(terms, state, amount)
    if shares <= 0:
        raise ValidationError(f"deposit of {amount} mints zero shares")

    moves = (
        Move(amount, terms.asset, account, terms.wallet, 'deposit'),
        Move(shares, terms.share_unit, SYSTEM_WALLET, account, 'deposit_mint'),
    )
    new_state = replace(
        state,
        total_deposits=state.total_deposits + amount,
        total_shares=state.total_shares + shares,
    )
    return PoolUpdate(new_state, moves, shares)


def apply_withdraw(
    terms: PoolTerms,
    state: PoolState,
    account: str,
    shares: Decimal,
    held_shares: Decimal,
    ltv_bps: int = 0,
    position_value: Decimal = ZERO,
) -> PoolUpdate:
    """
    Burn shares and pay out their share of total_deposits.

    An account with debt must stay within its tier's loan-to-value on what
    remains: debt <= (remaining share value + position_value) * ltv.
    Redeeming the last shares leaves total_deposits at zero.

    Raises:
        ValidationError: zero shares or more than held
        LiquidityError: payout exceeds unborrowed liquidity
        HealthError: the account would be over its loan-to-value
    """
    shares = _require_positive(shares, "shares")
    if shares > held_shares:
        raise ValidationError(f"{account} holds {held_shares} shares, cannot withdraw {shares}")

    amount = calculate_amount_for_shares(terms, state, shares)
    if amount <= 0:
        raise ValidationError(f"{shares} shares redeem for zero")
    available = calculate_available_liquidity(state)
    if amount > available:
        raise LiquidityError(f"withdraw of {amount} exceeds available liquidity {available}")

    debt = calculate_account_debt(state, account)
    if debt > QUANTITY_EPSILON:
        remaining_value = (held_shares - shares) * state.total_deposits / state.total_shares
        max_debt = (remaining_value + to_decimal(position_value)) * Decimal(ltv_bps) / Decimal(BPS)
        if debt > max_debt:
            raise HealthError(
                f"withdraw leaves {account} with debt {debt} above borrowing limit {max_debt}"
            )

    moves = (
        Move(shares, terms.share_unit, account, SYSTEM_WALLET, 'withdraw_burn'),
        Move(amount, terms.asset, terms.wallet, account, 'withdraw'),
    )
    remaining = state.total_deposits - amount
    insurance = state.insurance_reserve
    if shares == state.total_shares:
        # last shares out: rounding dust joins the insurance reserve
        insurance += remaining
        remaining = ZERO
    new_state = replace(
        state,
        total_deposits=remaining,
        total_shares=state.total_shares - shares,
        insurance_reserve=insurance,
    )
    return PoolUpdate(new_state, moves, amount)


def apply_borrow(
    terms: PoolTerms,
    state: PoolState,
    account: str,
    amount: Decimal,
    recipient: str,
    now: Optional[datetime] = None,
) -> PoolUpdate:
    """
    Lend `amount` against account, paying it to recipient (the vault wallet).

    PoolUpdate.scaled is the scaled debt added, so the caller can attribute
    it to a position.

    Raises:
        LiquidityError: amount exceeds unborrowed liquidity
    """
    amount = quantize(_require_positive(amount, "borrow amount"), terms.decimal_places, ROUND_DOWN)
    if amount <= 0:
        raise ValidationError("borrow amount rounds to zero")
    available = calculate_available_liquidity(state)
    if amount > available:
        raise LiquidityError(f"borrow of {amount} exceeds available liquidity {available}")

    scaled = amount / state.borrow_index
    entry = state.entry(account)
    new_entry = replace(
        entry,
        scaled_debt=entry.scaled_debt + scaled,
        principal=entry.principal + amount,
        last_interest=now,
    )
    moves = (Move(amount, terms.asset, terms.wallet, recipient, 'borrow'),)
    new_state = replace(
        state,
        total_borrowed=state.total_borrowed + amount,
        accounts=_with_entry(state, account, new_entry),
    )
    return PoolUpdate(new_state, moves, amount, scaled)


def apply_repay(
    terms: PoolTerms,
    state: PoolState,
    account: str,
    amount: Decimal,
    payer: str,
    max_debt: Optional[Decimal] = None,
    now: Optional[datetime] = None,
) -> PoolUpdate:
    """
    Take `amount` from payer against account's debt.

    Applied to accrued interest first, then principal. At most max_debt of
    the account's debt is discharged (a single position's share of it);
    anything paid beyond that is credited to total_deposits for depositors.

    Returns:
        PoolUpdate with amount = interest paid
    """
    amount = quantize(_require_positive(amount, "repay amount"), terms.decimal_places, ROUND_DOWN)
    if amount <= 0:
        raise ValidationError("repay amount rounds to zero")
    entry = state.entry(account)
    debt = entry.debt(state.borrow_index)
    cap = debt if max_debt is None else min(debt, to_decimal(max_debt))
    discharged = min(amount, cap)
    excess = amount - discharged

    interest_owed = max(ZERO, debt - entry.principal)
    interest_paid = min(discharged, interest_owed)
    principal_paid = discharged - interest_paid

    if debt - discharged <= QUANTITY_EPSILON:
        new_entry = replace(entry, scaled_debt=ZERO, principal=ZERO, last_interest=now)
    else:
        new_entry = replace(
            entry,
            scaled_debt=entry.scaled_debt - discharged / state.borrow_index,
            principal=max(ZERO, entry.principal - principal_paid),
            last_interest=now,
        )

    moves = (Move(amount, terms.asset, payer, terms.wallet, 'repay'),)
    new_state = replace(
        state,
        total_borrowed=_reduce_borrowed(state.total_borrowed, discharged),
        total_deposits=state.total_deposits + excess,
        accounts=_with_entry(state, account, new_entry),
    )
    return PoolUpdate(new_state, moves, interest_paid)


def apply_bad_debt(
    terms: PoolTerms,
    state: PoolState,
    account: str,
    shortfall: Decimal,
    now: Optional[datetime] = None,
) -> PoolUpdate:
    """
    Write off `shortfall` of account's debt that no collateral will cover.

    The insurance reserve absorbs it first. Whatever is left follows the
    pool's bad-debt policy: SOCIALIZE lowers total_deposits (every share
    loses value pro rata); DEFICIT leaves deposits alone and records the
    uncovered amount in `deficit`. Every shortfall is added to total_bad_debt.

    Returns:
        PoolUpdate with amount = shortfall recorded
    """
    shortfall = to_decimal(shortfall)
    if shortfall <= 0:
        return PoolUpdate(state)

    entry = state.entry(account)
    debt = entry.debt(state.borrow_index)
    written_off = min(shortfall, debt)
    remaining = debt - written_off
    if remaining <= QUANTITY_EPSILON:
        new_entry = replace(entry, scaled_debt=ZERO, principal=ZERO, last_interest=now)
    else:
        new_entry = replace(
            entry,
            scaled_debt=entry.scaled_debt - written_off / state.borrow_index,
            principal=min(entry.principal, remaining),
            last_interest=now,
        )

    from_insurance = min(state.insurance_reserve, shortfall)
    uncovered = shortfall - from_insurance
    total_deposits = state.total_deposits
    deficit = state.deficit
    if terms.bad_debt_policy == BAD_DEBT_DEFICIT:
        deficit += uncovered
    else:
        total_deposits -= uncovered

    new_state = replace(
        state,
        total_borrowed=_reduce_borrowed(state.total_borrowed, written_off),
        total_deposits=max(ZERO, total_deposits),
        insurance_reserve=state.insurance_reserve - from_insurance,
        total_bad_debt=state.total_bad_debt + shortfall,
        deficit=deficit,
        accounts=_with_entry(state, account, new_entry),
    )
    return PoolUpdate(new_state, (), shortfall)


def apply_flash_issue(
    terms: PoolTerms,
    state: PoolState,
    receiver: str,
    amount: Decimal,
    now: Optional[datetime] = None,
) -> PoolUpdate:
    """
    Open a flash loan record and send the principal to receiver.

    Returns:
        PoolUpdate with amount = loan id
    """
    amount = quantize(_require_positive(amount, "flash loan amount"), terms.decimal_places, ROUND_DOWN)
    if amount <= 0:
        raise ValidationError("flash loan amount rounds to zero")
    available = calculate_available_liquidity(state)
    if amount > available:
        raise LiquidityError(f"flash loan of {amount} exceeds available liquidity {available}")

    loan_id = state.next_flash_id
    loans = dict(state.flash_loans)
    loans[loan_id] = FlashLoanRecord(receiver, amount, calculate_flash_fee(terms, amount), now)
    moves = (Move(amount, terms.asset, terms.wallet, receiver, f'flash_{loan_id}'),)
    new_state = replace(state, flash_loans=loans, next_flash_id=loan_id + 1)
    return PoolUpdate(new_state, moves, Decimal(loan_id))


def apply_flash_repay(terms: PoolTerms, state: PoolState, loan_id: int, payer: str) -> PoolUpdate:
    """
    Clear a flash loan: principal plus fee from payer, fee credited to depositors.

    Raises:
        ValidationError: unknown or already repaid loan id

    Returns:
        PoolUpdate with amount = fee
    """
    record = state.flash_loans.get(loan_id)
    if record is None:
        raise ValidationError(f"no outstanding flash loan {loan_id}")
    loans = dict(state.flash_loans)
    del loans[loan_id]
    moves = (Move(record.amount + record.fee, terms.asset, payer, terms.wallet, f'flash_{loan_id}_repay'),)
    new_state = replace(
        state,
        flash_loans=loans,
        total_deposits=state.total_deposits + record.fee,
    )
    return PoolUpdate(new_state, moves, record.fee)


# ============================================================================
# FACTORY
# ============================================================================

def create_lending_pool(
    symbol: str,
    name: str,
    asset: str,
    share_unit: str,
    admin: str,
    rate_model: Optional[InterestRateModel] = None,
    insurance_fraction_bps: int = 1000,
    flash_fee_bps: int = 5,
    bad_debt_policy: str = BAD_DEBT_SOCIALIZE,
    created_at: Optional[datetime] = None,
    decimal_places: int = 6,
    share_decimal_places: int = 18,
) -> Unit:
    """
    Create the state unit of a lending pool.

    The pool's cash sits in a wallet named after the pool symbol; shares are
    a separate pool_share unit registered alongside it.

    Raises:
        ValidationError: fractions outside [0, 10000], unknown policy, empty admin

    Example:
        ledger.register_unit(token("USDC", "USD Coin"))
        ledger.register_unit(pool_share("lpUSDC", "USDC pool share", "POOL-USDC"))
        ledger.register_unit(create_lending_pool(
            "POOL-USDC", "USDC lending pool", "USDC", "lpUSDC", admin="admin"))
        ledger.register_wallet("POOL-USDC")
    """
    if not 0 <= insurance_fraction_bps <= BPS:
        raise ValidationError(f"insurance_fraction_bps must be in [0, {BPS}], got {insurance_fraction_bps}")
    if not 0 <= flash_fee_bps <= BPS:
        raise ValidationError(f"flash_fee_bps must be in [0, {BPS}], got {flash_fee_bps}")
    if bad_debt_policy not in (BAD_DEBT_SOCIALIZE, BAD_DEBT_DEFICIT):
        raise ValidationError(f"unknown bad debt policy {bad_debt_policy}")
    if not admin or not admin.strip():
        raise ValidationError("admin cannot be empty")

    terms = PoolTerms(
        asset=asset,
        share_unit=share_unit,
        wallet=symbol,
        admin=admin,
        rate_model=rate_model or InterestRateModel(),
        insurance_fraction_bps=insurance_fraction_bps,
        flash_fee_bps=flash_fee_bps,
        bad_debt_policy=bad_debt_policy,
        decimal_places=decimal_places,
        share_decimal_places=share_decimal_places,
    )
    state = PoolState(last_accrual=created_at)
    return state_unit(symbol, name, UNIT_TYPE_LENDING_POOL, to_state_dict(terms, state))


# ============================================================================
# CONVENIENCE FUNCTIONS - load + accrue + apply + build
# ============================================================================

def load_accrued(view: LedgerView, pool_symbol: str) -> Tuple[PoolTerms, PoolState, Dict[str, Any]]:
    """Load a pool and bring it to view.current_time. Also returns the raw old state."""
    old = view.get_unit_state(pool_symbol)
    terms, state = load_pool(view, pool_symbol)
    return terms, calculate_accrual(terms, state, view.current_time), old


def _pool_transaction(
    view: LedgerView,
    pool_symbol: str,
    old: Dict[str, Any],
    terms: PoolTerms,
    update: PoolUpdate,
    origin: TransactionOrigin,
) -> PendingTransaction:
    change = UnitStateChange(pool_symbol, old, to_state_dict(terms, update.state))
    return build_transaction(view, list(update.moves), [change], origin)


def compute_accrue(view: LedgerView, pool_symbol: str) -> PendingTransaction:
    """Persist accrued interest without any other change."""
    terms, state, old = load_accrued(view, pool_symbol)
    if to_state_dict(terms, state) == old:
        return empty_pending_transaction(view)
    origin = TransactionOrigin(OriginType.SYSTEM, "engine", pool_symbol, "ACCRUE")
    return _pool_transaction(view, pool_symbol, old, terms, PoolUpdate(state), origin)


def compute_deposit(
    view: LedgerView, pool_symbol: str, account: str, amount: Decimal
) -> Tuple[PendingTransaction, Decimal]:
    """
    Deposit `amount` of the pool asset from account.

    Returns:
        (pending transaction, shares minted)

    Example:
        pending, shares = compute_deposit(ledger, "POOL-USDC", "alice", Decimal("1000"))
        ledger.commit(pending)
    """
    terms, state, old = load_accrued(view, pool_symbol)
    update = apply_deposit(terms, state, account, amount)
    origin = TransactionOrigin(OriginType.USER_ACTION, account, pool_symbol, "DEPOSIT")
    return _pool_transaction(view, pool_symbol, old, terms, update, origin), update.amount


def compute_withdraw(
    view: LedgerView,
    pool_symbol: str,
    account: str,
    shares: Decimal,
    ltv_bps: int = 0,
    position_value: Decimal = ZERO,
) -> Tuple[PendingTransaction, Decimal]:
    """
    Redeem shares for the pool asset.

    ltv_bps is the account's tier loan-to-value and position_value the current
    value of its open leveraged positions; both only matter when it has debt.

    Returns:
        (pending transaction, amount paid out)
    """
    terms, state, old = load_accrued(view, pool_symbol)
    held = view.get_balance(account, terms.share_unit)
    update = apply_withdraw(terms, state, account, shares, held, ltv_bps, position_value)
    origin = TransactionOrigin(OriginType.USER_ACTION, account, pool_symbol, "WITHDRAW")
    return _pool_transaction(view, pool_symbol, old, terms, update, origin), update.amount


def _require_vault(state: PoolState, caller: str) -> None:
    if state.vault is None or caller != state.vault:
        raise AuthorizationError(f"{caller} is not the registered vault")


def compute_borrow(
    view: LedgerView, pool_symbol: str, caller: str, amount: Decimal, account: str
) -> Tuple[PendingTransaction, Decimal]:
    """
    Registered vault borrows `amount` against account; proceeds go to the vault wallet.

    Returns:
        (pending transaction, amount lent)
    """
    terms, state, old = load_accrued(view, pool_symbol)
    _require_vault(state, caller)
    update = apply_borrow(terms, state, account, amount, caller, view.current_time)
    origin = TransactionOrigin(OriginType.USER_ACTION, caller, pool_symbol, "BORROW")
    return _pool_transaction(view, pool_symbol, old, terms, update, origin), update.amount


def compute_repay(
    view: LedgerView, pool_symbol: str, caller: str, amount: Decimal, account: str
) -> Tuple[PendingTransaction, Decimal]:
    """
    Registered vault repays `amount` of account's debt from the vault wallet.

    Returns:
        (pending transaction, interest paid)
    """
    terms, state, old = load_accrued(view, pool_symbol)
    _require_vault(state, caller)
    update = apply_repay(terms, state, account, amount, caller, now=view.current_time)
    origin = TransactionOrigin(OriginType.USER_ACTION, caller, pool_symbol, "REPAY")
    return _pool_transaction(view, pool_symbol, old, terms, update, origin), update.amount


def compute_register_vault(view: LedgerView, pool_symbol: str, caller: str, vault: str) -> PendingTransaction:
    """
    Authorize the pool's single borrower. Admin only, exactly once.

    Raises:
        AuthorizationError: caller is not admin, or a vault is already registered
    """
    terms, state, old = load_accrued(view, pool_symbol)
    if caller != terms.admin:
        raise AuthorizationError(f"{caller} is not the pool admin")
    if state.vault is not None:
        raise AuthorizationError(f"{pool_symbol} already has vault {state.vault}")
    if not vault or not vault.strip():
        raise ValidationError("vault cannot be empty")
    update = PoolUpdate(replace(state, vault=vault))
    origin = TransactionOrigin(OriginType.ADMIN, caller, pool_symbol, "REGISTER_VAULT")
    return _pool_transaction(view, pool_symbol, old, terms, update, origin)


def compute_cover_bad_debt(view: LedgerView, pool_symbol: str, caller: str, amount: Decimal) -> PendingTransaction:
    """
    Admin injects cash to retire an outstanding deficit.

    Raises:
        AuthorizationError: caller is not admin
        ValidationError: amount is not positive or exceeds the deficit
    """
    terms, state, old = load_accrued(view, pool_symbol)
    if caller != terms.admin:
        raise AuthorizationError(f"{caller} is not the pool admin")
    amount = quantize(_require_positive(amount, "cover amount"), terms.decimal_places, ROUND_DOWN)
    if amount <= 0 or amount > state.deficit:
        raise ValidationError(f"cover of {amount} must be positive and at most deficit {state.deficit}")
    moves = (Move(amount, terms.asset, caller, terms.wallet, 'cover_bad_debt'),)
    update = PoolUpdate(replace(state, deficit=state.deficit - amount), moves, amount)
    origin = TransactionOrigin(OriginType.ADMIN, caller, pool_symbol, "COVER_BAD_DEBT")
    return _pool_transaction(view, pool_symbol, old, terms, update, origin)


def compute_flash_issue(
    view: LedgerView, pool_symbol: str, receiver: str, amount: Decimal
) -> Tuple[PendingTransaction, int]:
    """
    Issue a flash loan to receiver.

    Returns:
        (pending transaction, loan id)
    """
    terms, state, old = load_accrued(view, pool_symbol)
    update = apply_flash_issue(terms, state, receiver, amount, view.current_time)
    origin = TransactionOrigin(OriginType.USER_ACTION, receiver, pool_symbol, "FLASH_LOAN")
    return _pool_transaction(view, pool_symbol, old, terms, update, origin), int(update.amount)


def compute_flash_repay(
    view: LedgerView, pool_symbol: str, loan_id: int, payer: str
) -> Tuple[PendingTransaction, Decimal]:
    """
    Repay a flash loan in full from payer.

    Returns:
        (pending transaction, fee paid)
    """
    terms, state, old = load_accrued(view, pool_symbol)
    update = apply_flash_repay(terms, state, loan_id, payer)
    origin = TransactionOrigin(OriginType.USER_ACTION, payer, pool_symbol, "FLASH_REPAY")
    return _pool_transaction(view, pool_symbol, old, terms, update, origin), update.amount


# ============================================================================
# VIEWS
# ============================================================================

def get_outstanding(view: LedgerView, pool_symbol: str, account: str) -> Decimal:
    """Account debt including interest accrued since the last persisted accrual."""
    terms, state, _ = load_accrued(view, pool_symbol)
    return calculate_account_debt(state, account)


def get_share_value(view: LedgerView, pool_symbol: str, account: str) -> Decimal:
    """Current redemption value of the account's shares."""
    terms, state, _ = load_accrued(view, pool_symbol)
    held = view.get_balance(account, terms.share_unit)
    if held <= 0:
        return ZERO
    return calculate_amount_for_shares(terms, state, held)


def get_utilization(view: LedgerView, pool_symbol: str) -> Decimal:
    terms, state, _ = load_accrued(view, pool_symbol)
    return calculate_utilization(state.total_borrowed, state.total_deposits)


def get_borrow_rate(view: LedgerView, pool_symbol: str) -> Decimal:
    """Current annual borrow rate in bps."""
    terms, state, _ = load_accrued(view, pool_symbol)
    return terms.rate_model.borrow_rate(calculate_utilization(state.total_borrowed, state.total_deposits))


def get_supply_rate(view: LedgerView, pool_symbol: str) -> Decimal:
    """Current annual depositor rate in bps, net of the insurance cut."""
    terms, state, _ = load_accrued(view, pool_symbol)
    utilization = calculate_utilization(state.total_borrowed, state.total_deposits)
    return terms.rate_model.supply_rate(utilization, terms.insurance_fraction_bps)
