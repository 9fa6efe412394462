"""
engine.py - Leverage Engine

Stateful facade over one ledger: a lending pool, a risk tier registry, a
leveraged vault and a liquidator, plus the price source and value tracker
they consult.

Every entry point follows the same shape:
1. Read prices (missing or stale -> StaleDataError, nothing else happens)
2. Call a pure compute_* function (raises before anything is mutated)
3. Commit the PendingTransaction in one atomic ledger.execute()
4. Notify collaborators and emit EventRecords

Step 4 is deferred until the outermost operation finishes, so when a flash
loan is rolled back the fees, tracker entries and events produced inside
its callback are discarded with it.

The transaction log is the audit trail; EventRecords are the feed for an
external indexing layer.
"""

from __future__ import annotations
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .core import (
    EventRecord, Transaction, Move, TransactionOrigin, OriginType,
    StaleDataError, ReentrancyError, FlashLoanNotRepaid,
    SYSTEM_WALLET, QUANTITY_EPSILON,
    token, pool_share, build_transaction, quantize, to_decimal,
)
from .ledger import Ledger
from .interest_rate import InterestRateModel
from .pricing_source import PriceSource, StaticPricingSource
from .value_tracker import (
    ValueTracker, ProfitShareTracker,
    FEE_TYPE_ENTRY, FEE_TYPE_PLATFORM, FEE_TYPE_LIQUIDATION,
)
from .units.pool import (
    BAD_DEBT_SOCIALIZE, PoolState,
    create_lending_pool, load_accrued, calculate_available_liquidity,
    compute_accrue, compute_deposit, compute_withdraw, compute_borrow, compute_repay,
    compute_register_vault, compute_cover_bad_debt, compute_flash_issue, compute_flash_repay,
    get_outstanding, get_share_value, get_utilization, get_borrow_rate, get_supply_rate,
)
from .units.risk_tiers import (
    RiskTier, create_risk_registry, get_tier, load_registry,
    compute_add_tier, compute_update_tier, compute_set_user_tier,
)
from .units.vault import (
    Position, CloseResult,
    create_vault, load_vault, load_position, get_user_positions, get_active_positions,
    calculate_position_value, calculate_position_debt, calculate_health_factor,
    calculate_is_liquidatable, calculate_pnl,
    compute_open_position, compute_add_collateral, compute_close_position,
)
from .liquidation import (
    LiquidationOutcome, BatchLiquidationResult,
    create_liquidator, load_liquidator, validate_batch, compute_liquidation,
    compute_add_keeper, compute_remove_keeper, compute_set_keeper_only,
)


class FlashLoanReceiver(Protocol):
    """
    Receives a flash loan.

    on_flash_loan must call engine.repay_flash_loan(loan_id, payer) before
    returning; otherwise the whole flash loan is rolled back.
    """
    wallet: str

    def on_flash_loan(self, engine: LeverageEngine, loan_id: int, amount: Decimal,
                      fee: Decimal, data: Any) -> None:
        ...


EventListener = Callable[[EventRecord], None]


class LeverageEngine:
    """
    Accounting and risk engine for one pooled asset.

    Not thread-safe: callers serialize entry points. Races between callers
    are resolved by the ledger's stale-state check, so the loser of a race
    gets StateConflict and leaves no trace.

    Example:
        engine = create_engine(prices=StaticPricingSource({"BTC": Decimal("50000")}))
        engine.open_account("alice", fund=Decimal("10000"))
        engine.deposit("alice", Decimal("1000"))
    """

    def __init__(
        self,
        ledger: Ledger,
        pool: str,
        registry: str,
        vault: str,
        liquidator: str,
        prices: PriceSource,
        tracker: ValueTracker,
        max_price_age: Decimal = Decimal("3600"),
    ):
        """
        Args:
            ledger: Ledger holding every unit below
            pool, registry, vault, liquidator: Unit symbols
            prices: Oracle for position assets
            tracker: Fee collaborator
            max_price_age: Oldest acceptable quote, in seconds
        """
        self.ledger = ledger
        self.pool = pool
        self.registry = registry
        self.vault = vault
        self.liquidator = liquidator
        self.prices = prices
        self.tracker = tracker
        self.max_price_age = to_decimal(max_price_age)
        self.verbose = ledger.verbose

        self.events: List[EventRecord] = []
        self.listeners: List[EventListener] = []

        self._depth = 0
        self._deferred: List[Callable[[], None]] = []
        self._pending_entries: Dict[int, Tuple[str, Decimal]] = {}
        self._flash_in_flight = False
        self._liquidation_in_flight = False

    # ========================================================================
    # PLUMBING
    # ========================================================================

    @property
    def asset(self) -> str:
        terms, _, _ = load_accrued(self.ledger, self.pool)
        return terms.asset

    @property
    def share_unit(self) -> str:
        terms, _, _ = load_accrued(self.ledger, self.pool)
        return terms.share_unit

    @property
    def current_time(self) -> datetime:
        return self.ledger.current_time

    def advance_time(self, new_time: datetime) -> None:
        self.ledger.advance_time(new_time)

    def subscribe(self, listener: EventListener) -> None:
        """Receive every EventRecord after its operation completes."""
        self.listeners.append(listener)

    @contextmanager
    def _operation(self):
        self._depth += 1
        try:
            yield
        except BaseException:
            if self._depth == 1:
                self._deferred.clear()
                self._pending_entries.clear()
            raise
        else:
            if self._depth == 1:
                while self._deferred:
                    deferred, self._deferred = self._deferred, []
                    for notify in deferred:
                        notify()
        finally:
            self._depth -= 1

    def _emit(self, name: str, **fields: Any) -> None:
        timestamp = self.ledger.current_time

        def publish():
            record = EventRecord(name, len(self.events) + 1, timestamp, dict(fields))
            self.events.append(record)
            if self.verbose:
                print(f"EVENT {name} {fields}")
            for listener in self.listeners:
                listener(record)

        self._deferred.append(publish)

    def _collect(self, amount: Decimal, fee_type: str) -> None:
        if amount <= 0:
            return
        asset = self.asset
        self._deferred.append(lambda: self.tracker.collect_fees(asset, amount, fee_type))

    def _record_entry(self, position_id: int, asset: str, deposit_value: Decimal) -> None:
        """Queue tracker.record_entry; only the latest entry per position is delivered."""
        if position_id not in self._pending_entries:
            self._deferred.append(lambda: self._flush_entry(position_id))
        self._pending_entries[position_id] = (asset, deposit_value)

    def _flush_entry(self, position_id: int) -> None:
        entry = self._pending_entries.pop(position_id, None)
        if entry is not None:
            self.tracker.record_entry(position_id, *entry)

    def _price(self, asset: str) -> Decimal:
        """
        Raises:
            StaleDataError: no quote, a quote older than max_price_age, or a
                price that is not a positive finite number
        """
        quote = self.prices.get_price(asset, self.ledger.current_time)
        if quote is None:
            raise StaleDataError(f"no price for {asset}")
        if self.prices.is_stale(quote, self.max_price_age):
            raise StaleDataError(
                f"price for {asset} is {quote.age_seconds}s old, max {self.max_price_age}s"
            )
        price = to_decimal(quote.price)
        if not price.is_finite():
            raise StaleDataError(f"price for {asset} is not finite: {price}")
        if price <= 0:
            raise StaleDataError(f"price for {asset} is not positive: {price}")
        return price

    def _pool_state(self) -> PoolState:
        _, state, _ = load_accrued(self.ledger, self.pool)
        return state

    def _pool_fields(self) -> Dict[str, Decimal]:
        state = self._pool_state()
        return {
            'total_deposits': state.total_deposits,
            'total_borrowed': state.total_borrowed,
            'total_shares': state.total_shares,
            'insurance_reserve': state.insurance_reserve,
        }

    def _account_tier(self, account: str) -> RiskTier:
        return get_tier(self.ledger, self.registry, self._pool_state().entry(account).risk_tier)

    def _positions_value(self, account: str) -> Tuple[Decimal, List[str]]:
        """Current value and assets of an account's active positions."""
        total = Decimal("0")
        assets = []
        terms, _ = load_vault(self.ledger, self.vault)
        for position in get_active_positions(self.ledger, self.vault, account):
            total += calculate_position_value(position, self._price(position.asset), terms.decimal_places)
            assets.append(position.asset)
        return total, assets

    # ========================================================================
    # ACCOUNTS
    # ========================================================================

    def open_account(self, wallet: str, fund: Optional[Decimal] = None) -> str:
        """Register a wallet (if new) and optionally fund it from SYSTEM_WALLET."""
        if not self.ledger.is_registered(wallet):
            self.ledger.register_wallet(wallet)
        if fund is not None:
            self.fund(wallet, fund)
        return wallet

    def fund(self, wallet: str, amount: Decimal) -> Transaction:
        """Issue pool asset to a wallet from outside the system."""
        origin = TransactionOrigin(OriginType.SYSTEM, SYSTEM_WALLET, self.asset, "FUND")
        move = Move(to_decimal(amount), self.asset, SYSTEM_WALLET, wallet, 'fund')
        return self.ledger.commit(build_transaction(self.ledger, [move], origin=origin))

    def balance_of(self, wallet: str) -> Decimal:
        return self.ledger.get_balance(wallet, self.asset)

    # ========================================================================
    # POOL
    # ========================================================================

    def deposit(self, account: str, amount: Decimal) -> Decimal:
        """Deposit into the pool; returns shares minted."""
        with self._operation():
            pending, shares = compute_deposit(self.ledger, self.pool, account, amount)
            self.ledger.commit(pending)
            self._emit("Deposit", account=account, amount=to_decimal(amount), shares=shares,
                       share_balance=self.shares_of(account), **self._pool_fields())
            return shares

    def withdraw(self, account: str, shares: Decimal) -> Decimal:
        """
        Redeem shares; returns the amount paid out.

        Accounts with debt are held to their tier's loan-to-value on what
        remains, counting open positions at current prices.
        """
        with self._operation():
            ltv_bps, position_value = 0, Decimal("0")
            if self.get_outstanding(account) > QUANTITY_EPSILON:
                ltv_bps = self._account_tier(account).ltv_bps
                position_value, _ = self._positions_value(account)
            pending, amount = compute_withdraw(
                self.ledger, self.pool, account, to_decimal(shares), ltv_bps, position_value
            )
            self.ledger.commit(pending)
            self._emit("Withdraw", account=account, shares=to_decimal(shares), amount=amount,
                       share_balance=self.shares_of(account), **self._pool_fields())
            return amount

    def borrow(self, caller: str, amount: Decimal, account: str) -> Decimal:
        """Vault-only: lend against account, paid to the vault wallet."""
        with self._operation():
            pending, lent = compute_borrow(self.ledger, self.pool, caller, amount, account)
            self.ledger.commit(pending)
            self._emit("Borrow", account=account, amount=lent,
                       outstanding=self.get_outstanding(account), **self._pool_fields())
            return lent

    def repay(self, caller: str, amount: Decimal, account: str) -> Decimal:
        """Vault-only: repay account's debt; returns interest paid."""
        with self._operation():
            pending, interest_paid = compute_repay(self.ledger, self.pool, caller, amount, account)
            self.ledger.commit(pending)
            self._emit("Repay", account=account, amount=to_decimal(amount), interest_paid=interest_paid,
                       outstanding=self.get_outstanding(account), **self._pool_fields())
            return interest_paid

    def register_vault(self, caller: str, vault: str) -> None:
        """Admin-only, once per pool."""
        with self._operation():
            self.ledger.commit(compute_register_vault(self.ledger, self.pool, caller, vault))

    def accrue(self) -> None:
        """Persist interest accrued up to now."""
        with self._operation():
            self.ledger.commit(compute_accrue(self.ledger, self.pool))

    def cover_bad_debt(self, caller: str, amount: Decimal) -> None:
        """Admin-only: pay cash into the pool to retire an outstanding deficit."""
        with self._operation():
            self.ledger.commit(compute_cover_bad_debt(self.ledger, self.pool, caller, amount))

    def get_outstanding(self, account: str) -> Decimal:
        """Debt including interest accrued up to now."""
        return get_outstanding(self.ledger, self.pool, account)

    def shares_of(self, account: str) -> Decimal:
        return self.ledger.get_balance(account, self.share_unit)

    def deposited_amount(self, account: str) -> Decimal:
        """Current redemption value of the account's shares."""
        return get_share_value(self.ledger, self.pool, account)

    def pool_state(self) -> PoolState:
        """Pool aggregates as of now, including accrual not yet persisted."""
        return self._pool_state()

    def utilization(self) -> Decimal:
        return get_utilization(self.ledger, self.pool)

    def borrow_rate(self) -> Decimal:
        """Current annual borrow rate in bps."""
        return get_borrow_rate(self.ledger, self.pool)

    def supply_rate(self) -> Decimal:
        """Current depositor APY in bps."""
        return get_supply_rate(self.ledger, self.pool)

    def available_liquidity(self) -> Decimal:
        return calculate_available_liquidity(self._pool_state())

    # ========================================================================
    # RISK TIERS
    # ========================================================================

    def add_tier(
        self,
        caller: str,
        ltv_bps: int,
        liquidation_threshold_bps: int,
        liquidation_bonus_bps: int,
        label: str,
        allowed_assets: Iterable[str] = (),
    ) -> int:
        """Admin-only; returns the new tier id."""
        with self._operation():
            tier_id = load_registry(self.ledger, self.registry).next_tier_id
            self.ledger.commit(compute_add_tier(
                self.ledger, self.registry, caller, ltv_bps, liquidation_threshold_bps,
                liquidation_bonus_bps, label, allowed_assets,
            ))
            self._emit("TierAdded", tier_id=tier_id, ltv_bps=ltv_bps,
                       liquidation_threshold_bps=liquidation_threshold_bps,
                       liquidation_bonus_bps=liquidation_bonus_bps, label=label)
            return tier_id

    def update_tier(
        self,
        caller: str,
        tier_id: int,
        ltv_bps: int,
        liquidation_threshold_bps: int,
        liquidation_bonus_bps: int,
        label: Optional[str] = None,
        allowed_assets: Optional[Iterable[str]] = None,
    ) -> None:
        with self._operation():
            self.ledger.commit(compute_update_tier(
                self.ledger, self.registry, caller, tier_id, ltv_bps,
                liquidation_threshold_bps, liquidation_bonus_bps, label, allowed_assets,
            ))
            self._emit("TierUpdated", tier_id=tier_id, ltv_bps=ltv_bps,
                       liquidation_threshold_bps=liquidation_threshold_bps,
                       liquidation_bonus_bps=liquidation_bonus_bps)

    def get_tier(self, tier_id: int) -> RiskTier:
        return get_tier(self.ledger, self.registry, tier_id)

    def account_tier(self, account: str) -> RiskTier:
        return self._account_tier(account)

    def set_user_tier(self, account: str, tier_id: int) -> None:
        """
        Switch the account's tier.

        Collateral is the account's share value plus its open positions at
        current prices; debt above collateral * new ltv rejects the switch.
        """
        with self._operation():
            previous = self._pool_state().entry(account).risk_tier
            position_value, assets = self._positions_value(account)
            collateral = self.deposited_amount(account) + position_value
            self.ledger.commit(compute_set_user_tier(
                self.ledger, self.registry, self.pool, account, tier_id, collateral, assets,
            ))
            self._emit("UserTierChanged", account=account, old_tier=previous, new_tier=tier_id,
                       outstanding=self.get_outstanding(account))

    # ========================================================================
    # POSITIONS
    # ========================================================================

    def open_position(self, owner: str, asset: str, amount: Decimal, leverage: Decimal) -> int:
        """
        Open a leveraged position; returns its id.

        The tracker learns the entry when the outermost operation succeeds;
        a close earlier than that delivers it first.
        """
        with self._operation():
            price = self._price(asset)
            tier = self._account_tier(owner)
            pending = compute_open_position(
                self.ledger, self.vault, owner, asset, to_decimal(amount), to_decimal(leverage), price, tier,
            )
            tx = self.ledger.commit(pending)
            position = self.get_position(tx.units_to_create[0].state['position_id'])
            terms, _ = load_vault(self.ledger, self.vault)
            entry_fee = quantize(to_decimal(amount), terms.decimal_places) - position.deposit_amount
            self._record_entry(position.position_id, asset, position.deposit_amount)

            self._collect(entry_fee, FEE_TYPE_ENTRY)
            if position.borrowed_amount > 0:
                self._emit("Borrow", account=owner, amount=position.borrowed_amount,
                           outstanding=self.get_outstanding(owner), **self._pool_fields())
            self._emit("PositionOpened", position_id=position.position_id, owner=owner, asset=asset,
                       deposit_amount=position.deposit_amount, leverage=position.leverage,
                       total_exposure=position.total_exposure, borrowed_amount=position.borrowed_amount,
                       entry_price=price, entry_fee=entry_fee)
            return position.position_id

    def add_collateral(self, owner: str, position_id: int, amount: Decimal) -> Position:
        with self._operation():
            self.ledger.commit(compute_add_collateral(self.ledger, self.vault, owner, position_id, amount))
            position = self.get_position(position_id)
            self._record_entry(position_id, position.asset, position.deposit_amount)
            self._emit("CollateralAdded", position_id=position_id, owner=owner, amount=to_decimal(amount),
                       deposit_amount=position.deposit_amount, total_exposure=position.total_exposure)
            return position

    def close_position(self, owner: str, position_id: int) -> CloseResult:
        """Close at spot; see compute_close_position for the distribution."""
        with self._operation():
            position = self.get_position(position_id)
            price = self._price(position.asset)
            self._flush_entry(position_id)
            pending, result = compute_close_position(
                self.ledger, self.vault, owner, position_id, price, self.tracker
            )
            self.ledger.commit(pending)

            self._collect(result.platform_fee, FEE_TYPE_PLATFORM)
            if result.debt_repaid > 0:
                self._emit("Repay", account=owner, amount=result.debt_repaid,
                           outstanding=self.get_outstanding(owner), **self._pool_fields())
            if result.bad_debt > 0:
                self._emit_bad_debt(position_id, result.bad_debt)
            self._emit("PositionClosed", position_id=position_id, owner=owner, exit_price=price,
                       current_value=result.current_value, debt_repaid=result.debt_repaid,
                       value_increase=result.value_increase, platform_fee=result.platform_fee,
                       user_payout=result.user_payout, bad_debt=result.bad_debt)
            return result

    def _emit_bad_debt(self, position_id: int, amount: Decimal) -> None:
        state = self._pool_state()
        self._emit("BadDebtAbsorbed", position_id=position_id, amount=amount,
                   insurance_reserve=state.insurance_reserve, total_bad_debt=state.total_bad_debt,
                   deficit=state.deficit, total_deposits=state.total_deposits)

    def get_position(self, position_id: int) -> Position:
        return load_position(self.ledger, self.vault, position_id)

    def get_user_positions(self, owner: str) -> Tuple[int, ...]:
        return get_user_positions(self.ledger, self.vault, owner)

    def position_value(self, position_id: int) -> Decimal:
        position = self.get_position(position_id)
        if not position.is_active:
            return Decimal("0")
        terms, _ = load_vault(self.ledger, self.vault)
        return calculate_position_value(position, self._price(position.asset), terms.decimal_places)

    def position_debt(self, position_id: int) -> Decimal:
        return calculate_position_debt(self.get_position(position_id), self._pool_state())

    def health_factor(self, position_id: int) -> Decimal:
        """value / debt at spot; Decimal('Infinity') without debt."""
        position = self.get_position(position_id)
        debt = calculate_position_debt(position, self._pool_state())
        if debt <= QUANTITY_EPSILON:
            return calculate_health_factor(Decimal("0"), debt)
        return calculate_health_factor(self.position_value(position_id), debt)

    def is_liquidatable(self, position_id: int) -> bool:
        position = self.get_position(position_id)
        debt = calculate_position_debt(position, self._pool_state())
        if debt <= QUANTITY_EPSILON:
            return False
        return calculate_is_liquidatable(
            self.position_value(position_id), debt, self._account_tier(position.owner)
        )

    def position_pnl(self, position_id: int) -> Tuple[Decimal, Decimal]:
        """(pnl, pnl_percent) of the owner's equity against the deposit."""
        position = self.get_position(position_id)
        if not position.is_active:
            return calculate_pnl(position, Decimal("0"), Decimal("0"))
        debt = calculate_position_debt(position, self._pool_state())
        return calculate_pnl(position, self.position_value(position_id), debt)

    # ========================================================================
    # LIQUIDATION
    # ========================================================================

    def liquidate(self, caller: str, position_id: int) -> LiquidationOutcome:
        """
        Liquidate one unsafe position.

        Raises:
            ReentrancyError: a liquidation is already in flight
        """
        with self._single_flight('_liquidation_in_flight', "liquidation"):
            with self._operation():
                return self._liquidate_one(caller, position_id)

    def batch_liquidate(self, caller: str, position_ids: Sequence[int]) -> BatchLiquidationResult:
        """
        Best-effort batch: each id is liquidated in its own atomic transaction.

        A rejected id does not affect the others; it is reported in
        result.failures with its exception, whatever its type, so the
        liquidations already committed keep their events and fee records.

        Raises:
            ValidationError: empty batch or more than max_batch_size ids
        """
        validate_batch(load_liquidator(self.ledger, self.liquidator), list(position_ids))
        with self._single_flight('_liquidation_in_flight', "liquidation"):
            with self._operation():
                outcomes: List[LiquidationOutcome] = []
                failures: List[Tuple[int, Exception]] = []
                for position_id in position_ids:
                    try:
                        outcomes.append(self._liquidate_one(caller, position_id))
                    except Exception as e:
                        failures.append((position_id, e))
                return BatchLiquidationResult(tuple(outcomes), tuple(failures))

    def _liquidate_one(self, caller: str, position_id: int) -> LiquidationOutcome:
        position = self.get_position(position_id)
        price = self._price(position.asset)
        tier = self._account_tier(position.owner)
        pending, outcome = compute_liquidation(
            self.ledger, self.liquidator, caller, position_id, price, tier
        )
        self.ledger.commit(pending)

        self._collect(outcome.insurance_routed, FEE_TYPE_LIQUIDATION)
        if outcome.debt_repaid > 0:
            self._emit("Repay", account=position.owner, amount=outcome.debt_repaid,
                       outstanding=self.get_outstanding(position.owner), **self._pool_fields())
        if outcome.bad_debt_recorded > 0:
            self._emit_bad_debt(position_id, outcome.bad_debt_recorded)
        self._emit("PositionLiquidated", position_id=position_id, owner=position.owner,
                   liquidator=caller, price=price, health_factor=outcome.health_factor,
                   collateral_seized=outcome.collateral_seized, debt_repaid=outcome.debt_repaid,
                   liquidator_bonus=outcome.liquidator_bonus, insurance_routed=outcome.insurance_routed,
                   bad_debt=outcome.bad_debt_recorded)
        return outcome

    def find_liquidatable(self) -> List[int]:
        """
        Ids of active positions that are liquidatable now.

        Positions whose asset has no fresh price are left out.
        """
        state = self._pool_state()
        terms, _ = load_vault(self.ledger, self.vault)
        found = []
        for position in get_active_positions(self.ledger, self.vault):
            try:
                price = self._price(position.asset)
            except StaleDataError:
                continue
            value = calculate_position_value(position, price, terms.decimal_places)
            debt = calculate_position_debt(position, state)
            if calculate_is_liquidatable(value, debt, self._account_tier(position.owner)):
                found.append(position.position_id)
        return found

    def sweep(self, caller: str) -> BatchLiquidationResult:
        """Liquidate everything find_liquidatable() reports, in batches."""
        ids = self.find_liquidatable()
        if not ids:
            return BatchLiquidationResult((), ())
        size = load_liquidator(self.ledger, self.liquidator).max_batch_size
        outcomes: List[LiquidationOutcome] = []
        failures: List[Tuple[int, Exception]] = []
        for start in range(0, len(ids), size):
            result = self.batch_liquidate(caller, ids[start:start + size])
            outcomes.extend(result.outcomes)
            failures.extend(result.failures)
        return BatchLiquidationResult(tuple(outcomes), tuple(failures))

    def add_keeper(self, caller: str, keeper: str) -> None:
        with self._operation():
            self.ledger.commit(compute_add_keeper(self.ledger, self.liquidator, caller, keeper))
            self._emit("KeeperAdded", keeper=keeper)

    def remove_keeper(self, caller: str, keeper: str) -> None:
        with self._operation():
            self.ledger.commit(compute_remove_keeper(self.ledger, self.liquidator, caller, keeper))
            self._emit("KeeperRemoved", keeper=keeper)

    def set_keeper_only(self, caller: str, enabled: bool) -> None:
        with self._operation():
            self.ledger.commit(compute_set_keeper_only(self.ledger, self.liquidator, caller, enabled))

    # ========================================================================
    # FLASH LOANS
    # ========================================================================

    @contextmanager
    def _single_flight(self, flag: str, what: str):
        if getattr(self, flag):
            raise ReentrancyError(f"{what} already in flight")
        setattr(self, flag, True)
        try:
            yield
        finally:
            setattr(self, flag, False)

    def flash_loan(self, receiver: FlashLoanReceiver, amount: Decimal, data: Any = None) -> Decimal:
        """
        Lend `amount` to receiver.wallet for the duration of its callback.

        The loan is an explicit record in pool state. The receiver must clear
        it with repay_flash_loan() before the callback returns. If it does not,
        or the callback raises, the ledger is restored to its state before the
        loan and the error propagates.

        Returns:
            The fee paid.

        Raises:
            ReentrancyError: another flash loan is in flight
            LiquidityError: amount exceeds available liquidity
            FlashLoanNotRepaid: the record was still open after the callback
        """
        with self._single_flight('_flash_in_flight', "flash loan"):
            with self._operation():
                snapshot = self.ledger.snapshot()
                pending, loan_id = compute_flash_issue(self.ledger, self.pool, receiver.wallet, amount)
                self.ledger.commit(pending)
                record = self._pool_state().flash_loans[loan_id]
                try:
                    receiver.on_flash_loan(self, loan_id, record.amount, record.fee, data)
                    if loan_id in self._pool_state().flash_loans:
                        raise FlashLoanNotRepaid(
                            f"flash loan {loan_id} of {record.amount} was not repaid"
                        )
                except Exception:
                    self.ledger.restore(snapshot)
                    raise
                self._emit("FlashLoan", loan_id=loan_id, receiver=receiver.wallet,
                           amount=record.amount, fee=record.fee, **self._pool_fields())
                return record.fee

    def repay_flash_loan(self, loan_id: int, payer: str) -> Decimal:
        """Clear flash loan loan_id with principal plus fee from payer; returns the fee."""
        pending, fee = compute_flash_repay(self.ledger, self.pool, loan_id, payer)
        self.ledger.commit(pending)
        return fee

    # ========================================================================
    # INVARIANTS
    # ========================================================================

    def check_invariants(self) -> Dict[str, bool]:
        """Pool-level invariants as of now."""
        state = self._pool_state()
        circulating = self.ledger.total_supply(self.share_unit, include_system=False)
        return {
            'shares_match': abs(circulating - state.total_shares) <= QUANTITY_EPSILON,
            'borrowed_within_deposits': state.total_borrowed <= state.total_deposits,
            'empty_pool_consistent': (state.total_shares == 0) == (state.total_deposits == 0),
            'double_entry': self.ledger.verify_double_entry()['valid'],
        }


def create_engine(
    asset: str = "USDC",
    supported_assets: Iterable[str] = ("BTC", "ETH"),
    prices: Optional[PriceSource] = None,
    tracker: Optional[ValueTracker] = None,
    admin: str = "admin",
    rate_model: Optional[InterestRateModel] = None,
    insurance_fraction_bps: int = 1000,
    flash_fee_bps: int = 5,
    entry_fee_bps: int = 10,
    bad_debt_policy: str = BAD_DEBT_SOCIALIZE,
    default_tier: Tuple[int, int, int] = (8000, 8500, 500),
    max_price_age: Decimal = Decimal("3600"),
    keeper_only: bool = False,
    max_batch_size: int = 20,
    market_wallet: str = SYSTEM_WALLET,
    start: Optional[datetime] = None,
    ledger: Optional[Ledger] = None,
    verbose: bool = False,
    test_mode: bool = False,
) -> LeverageEngine:
    """
    Build a fully wired engine on a fresh (or given empty) ledger.

    Units: the asset token, its pool share "lp{asset}", pool "POOL-{asset}",
    registry "EMODE", vault "VAULT", liquidator "LIQUIDATOR". The pool and
    vault hold cash in wallets named after their units; fees go to the
    tracker's fee_wallet. The vault is registered with the pool.

    Example:
        engine = create_engine(prices=StaticPricingSource({"BTC": Decimal("50000")}))
    """
    ledger = ledger or Ledger("vault", start or datetime(2025, 1, 1), verbose=verbose, test_mode=test_mode)
    prices = prices if prices is not None else StaticPricingSource({})
    tracker = tracker if tracker is not None else ProfitShareTracker()
    fee_wallet = getattr(tracker, 'fee_wallet', "treasury")

    pool_symbol = f"POOL-{asset}"
    share_symbol = f"lp{asset}"
    registry_symbol = "EMODE"
    vault_symbol = "VAULT"
    liquidator_symbol = "LIQUIDATOR"

    ledger.register_unit(token(asset, asset))
    ledger.register_unit(pool_share(share_symbol, f"{asset} pool share", pool_symbol))
    ledger.register_unit(create_lending_pool(
        pool_symbol, f"{asset} lending pool", asset, share_symbol, admin,
        rate_model=rate_model, insurance_fraction_bps=insurance_fraction_bps,
        flash_fee_bps=flash_fee_bps, bad_debt_policy=bad_debt_policy, created_at=ledger.current_time,
    ))
    ltv, threshold, bonus = default_tier
    ledger.register_unit(create_risk_registry(registry_symbol, "Risk tiers", admin, ltv, threshold, bonus))
    ledger.register_unit(create_vault(
        vault_symbol, "Leveraged vault", pool_symbol, admin, supported_assets,
        fee_wallet=fee_wallet, market_wallet=market_wallet, entry_fee_bps=entry_fee_bps,
    ))
    ledger.register_unit(create_liquidator(
        liquidator_symbol, "Liquidator", vault_symbol, admin, keeper_only, max_batch_size,
    ))

    for wallet in (pool_symbol, vault_symbol, fee_wallet, admin, market_wallet):
        if not ledger.is_registered(wallet):
            ledger.register_wallet(wallet)

    engine = LeverageEngine(
        ledger, pool_symbol, registry_symbol, vault_symbol, liquidator_symbol,
        prices, tracker, max_price_age,
    )
    engine.register_vault(admin, vault_symbol)
    return engine
