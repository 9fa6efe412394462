"""
value_tracker.py - Fee collaborator for leveraged positions

The vault tells the tracker what each position started with, asks it how
much of a closing position's equity is fee, and notifies it of every fee
that landed in the fee wallet.

Classes:
- ValueTracker: Protocol the engine depends on
- ProfitShareTracker: Platform fee as a share of the equity gain
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict, List, Tuple, Protocol, runtime_checkable

from .core import BPS, ValidationError, quantize, bps_of, to_decimal


FEE_TYPE_ENTRY = "entry"
FEE_TYPE_PLATFORM = "platform"
FEE_TYPE_LIQUIDATION = "liquidation"


@runtime_checkable
class ValueTracker(Protocol):
    """Protocol for value-tracking / fee collaborators."""

    def record_entry(self, position_id: int, asset: str, deposit_value: Decimal) -> None:
        """Remember the value a position's owner put in. Called again on top-ups."""
        ...

    def calculate_value_increase(
        self, position_id: int, current_value: Decimal
    ) -> Tuple[Decimal, Decimal, Decimal]:
        """
        Split the owner's current equity into (value_increase, platform_fee, user_amount).

        platform_fee is zero when current_value does not exceed the recorded entry.
        """
        ...

    def collect_fees(self, token: str, amount: Decimal, fee_type: str) -> None:
        """Notification that `amount` of `token` was paid to the fee wallet."""
        ...


@dataclass(frozen=True, slots=True)
class EntryRecord:
    asset: str
    deposit_value: Decimal


class ProfitShareTracker:
    """
    Charges platform_fee_bps of the gain over the recorded deposit.

    Fees are rounded up to the token's decimal places. Collected fees are
    tallied per fee type.
    """

    def __init__(self, fee_wallet: str = "treasury", platform_fee_bps: int = 1000, decimal_places: int = 6):
        if not 0 <= platform_fee_bps <= BPS:
            raise ValidationError(f"platform_fee_bps must be in [0, {BPS}], got {platform_fee_bps}")
        self.fee_wallet = fee_wallet
        self.platform_fee_bps = platform_fee_bps
        self.decimal_places = decimal_places
        self.entries: Dict[int, EntryRecord] = {}
        self.collected: Dict[str, Decimal] = {}
        self.collections: List[Tuple[str, Decimal, str]] = []

    def record_entry(self, position_id: int, asset: str, deposit_value: Decimal) -> None:
        self.entries[position_id] = EntryRecord(asset, to_decimal(deposit_value))

    def calculate_value_increase(
        self, position_id: int, current_value: Decimal
    ) -> Tuple[Decimal, Decimal, Decimal]:
        """
        Raises:
            ValidationError: no entry was recorded for position_id
        """
        entry = self.entries.get(position_id)
        if entry is None:
            raise ValidationError(f"no entry recorded for position {position_id}")
        current_value = to_decimal(current_value)
        increase = max(Decimal("0"), current_value - entry.deposit_value)
        fee = min(quantize(bps_of(increase, self.platform_fee_bps), self.decimal_places, ROUND_UP), increase)
        return increase, fee, current_value - fee

    def collect_fees(self, token: str, amount: Decimal, fee_type: str) -> None:
        amount = to_decimal(amount)
        self.collected[fee_type] = self.collected.get(fee_type, Decimal("0")) + amount
        self.collections.append((token, amount, fee_type))

    def total_collected(self) -> Decimal:
        return sum(self.collected.values(), Decimal("0"))

    def __repr__(self):
        return f"ProfitShareTracker({self.platform_fee_bps} bps -> {self.fee_wallet})"
