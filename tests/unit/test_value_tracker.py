"""
test_value_tracker.py - Unit tests for the fee collaborator

Tests:
- Entry recording and top-ups
- Fee on the gain only, rounded up
- Collection tallies per fee type
- Engine notifications for entry, platform and liquidation fees
"""

import pytest
from decimal import Decimal

from vaultledger import (
    ProfitShareTracker, ValueTracker, ValidationError,
    FEE_TYPE_ENTRY, FEE_TYPE_PLATFORM, FEE_TYPE_LIQUIDATION,
)
from tests.scenario import make_engine


class TestProfitShareTracker:

    def test_protocol(self):
        assert isinstance(ProfitShareTracker(), ValueTracker)

    def test_fee_on_gain(self):
        tracker = ProfitShareTracker(platform_fee_bps=1000)
        tracker.record_entry(1, "BTC", Decimal("999"))
        assert tracker.calculate_value_increase(1, Decimal("1998")) == (
            Decimal("999"), Decimal("99.9"), Decimal("1898.1"),
        )

    def test_no_fee_on_loss(self):
        tracker = ProfitShareTracker()
        tracker.record_entry(1, "BTC", Decimal("999"))
        assert tracker.calculate_value_increase(1, Decimal("499.5")) == (
            Decimal("0"), Decimal("0"), Decimal("499.5"),
        )

    def test_fee_rounds_up(self):
        tracker = ProfitShareTracker(platform_fee_bps=1000, decimal_places=2)
        tracker.record_entry(1, "BTC", Decimal("100"))
        _, fee, user = tracker.calculate_value_increase(1, Decimal("100.01"))
        assert fee == Decimal("0.01")
        assert user == Decimal("100.00")

    def test_top_up_replaces_entry(self):
        tracker = ProfitShareTracker()
        tracker.record_entry(1, "BTC", Decimal("999"))
        tracker.record_entry(1, "BTC", Decimal("1499"))
        increase, _, _ = tracker.calculate_value_increase(1, Decimal("1500"))
        assert increase == Decimal("1")

    def test_unknown_position(self):
        with pytest.raises(ValidationError, match="no entry"):
            ProfitShareTracker().calculate_value_increase(7, Decimal("1"))

    def test_fee_bounds(self):
        with pytest.raises(ValidationError):
            ProfitShareTracker(platform_fee_bps=10001)
        assert ProfitShareTracker(platform_fee_bps=0).platform_fee_bps == 0

    def test_collections(self):
        tracker = ProfitShareTracker()
        tracker.collect_fees("USDC", Decimal("1"), FEE_TYPE_ENTRY)
        tracker.collect_fees("USDC", Decimal("2.5"), FEE_TYPE_ENTRY)
        tracker.collect_fees("USDC", Decimal("3"), FEE_TYPE_LIQUIDATION)
        assert tracker.collected == {FEE_TYPE_ENTRY: Decimal("3.5"), FEE_TYPE_LIQUIDATION: Decimal("3")}
        assert tracker.total_collected() == Decimal("6.5")
        assert tracker.collections[0] == ("USDC", Decimal("1"), FEE_TYPE_ENTRY)


class TestEngineNotifications:

    def test_entry_and_platform_fees(self, open_position, prices, tracker):
        engine, position_id = open_position
        assert tracker.entries[position_id].deposit_value == Decimal("999")
        prices.update_price("BTC", Decimal("60000"))
        engine.close_position("alice", position_id)
        assert tracker.collections == [
            ("USDC", Decimal("1"), FEE_TYPE_ENTRY),
            ("USDC", Decimal("99.9"), FEE_TYPE_PLATFORM),
        ]
        assert engine.balance_of("treasury") == tracker.total_collected()

    def test_top_up_is_recorded(self, open_position, tracker):
        engine, position_id = open_position
        engine.add_collateral("alice", position_id, Decimal("500"))
        assert tracker.entries[position_id].deposit_value == Decimal("1499")

    def test_fee_wallet_follows_tracker(self, prices):
        engine = make_engine(prices, ProfitShareTracker(fee_wallet="insurance-fund"))
        assert engine.ledger.is_registered("insurance-fund")
        assert not engine.ledger.is_registered("treasury")
