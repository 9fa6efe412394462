"""
test_pricing_source.py - Unit tests for pricing_source.py

Tests:
- StaticPricingSource: prices, updates, observation ages, removal
- TimeSeriesPricingSource: lookups at or before a timestamp, ages
- Staleness and the engine's refusal to act on bad quotes
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from vaultledger import (
    PriceQuote, PriceSource, StaticPricingSource, TimeSeriesPricingSource, StaleDataError,
)
from tests.scenario import T0, make_engine, seed


class TestStaticPricingSource:

    def test_get_price(self):
        source = StaticPricingSource({'BTC': Decimal("50000"), 'ETH': Decimal("3000")})
        quote = source.get_price('BTC', T0)
        assert quote == PriceQuote(Decimal("50000"), Decimal("0"))

    def test_unknown_asset(self):
        assert StaticPricingSource({'BTC': Decimal("50000")}).get_price('DOGE', T0) is None

    def test_unobserved_price_never_ages(self):
        source = StaticPricingSource({'BTC': Decimal("50000")})
        quote = source.get_price('BTC', T0 + timedelta(days=400))
        assert quote.age_seconds == 0
        assert not source.is_stale(quote, Decimal("60"))

    def test_observed_price_ages(self):
        source = StaticPricingSource({'BTC': Decimal("50000")}, observed_at=T0)
        quote = source.get_price('BTC', T0 + timedelta(minutes=5))
        assert quote.age_seconds == Decimal("300")
        assert source.is_stale(quote, Decimal("299"))
        assert not source.is_stale(quote, Decimal("300"))

    def test_age_never_negative(self):
        source = StaticPricingSource({'BTC': Decimal("50000")}, observed_at=T0 + timedelta(hours=1))
        assert source.get_price('BTC', T0).age_seconds == 0

    def test_update_price_resets_observation(self):
        source = StaticPricingSource({'BTC': Decimal("50000")}, observed_at=T0)
        source.update_price('BTC', Decimal("51000"), observed_at=T0 + timedelta(hours=2))
        quote = source.get_price('BTC', T0 + timedelta(hours=2, seconds=10))
        assert quote == PriceQuote(Decimal("51000"), Decimal("10"))

    def test_update_prices(self):
        source = StaticPricingSource({})
        source.update_prices({'BTC': Decimal("1"), 'ETH': Decimal("2")})
        assert source.get_price('ETH', T0).price == Decimal("2")

    def test_remove_price(self):
        source = StaticPricingSource({'BTC': Decimal("50000")})
        source.remove_price('BTC')
        source.remove_price('BTC')
        assert source.get_price('BTC', T0) is None

    def test_satisfies_protocol(self):
        assert isinstance(StaticPricingSource({}), PriceSource)
        assert isinstance(TimeSeriesPricingSource(), PriceSource)


class TestTimeSeriesPricingSource:

    @pytest.fixture
    def source(self):
        return TimeSeriesPricingSource({
            'BTC': [
                (T0 + timedelta(days=1), Decimal("45000")),
                (T0, Decimal("50000")),
            ],
            'EMPTY': [],
        })

    def test_unsorted_paths_are_sorted(self, source):
        assert source.get_all_timestamps('BTC') == [T0, T0 + timedelta(days=1)]

    def test_exact_timestamp(self, source):
        assert source.get_price('BTC', T0).price == Decimal("50000")

    def test_between_observations(self, source):
        quote = source.get_price('BTC', T0 + timedelta(hours=6))
        assert quote.price == Decimal("50000")
        assert quote.age_seconds == Decimal("21600")

    def test_after_last_observation(self, source):
        assert source.get_price('BTC', T0 + timedelta(days=5)).price == Decimal("45000")

    def test_before_first_observation(self, source):
        assert source.get_price('BTC', T0 - timedelta(seconds=1)) is None

    def test_empty_path_ignored(self, source):
        assert source.assets() == {'BTC'}
        assert source.get_price('EMPTY', T0) is None

    def test_add_price(self, source):
        source.add_price('ETH', T0, Decimal("3000"))
        source.add_prices({'ETH': Decimal("3100"), 'BTC': Decimal("46000")}, T0 + timedelta(days=2))
        assert source.get_price('ETH', T0 + timedelta(days=3)).price == Decimal("3100")
        assert source.get_all_timestamps() == [T0, T0 + timedelta(days=1), T0 + timedelta(days=2)]


class TestEngineQuoteChecks:

    def test_series_goes_stale_between_updates(self):
        source = TimeSeriesPricingSource({'BTC': [(T0, Decimal("50000"))]})
        engine = make_engine(source, max_price_age=Decimal("600"))
        seed(engine, alice=Decimal("2000"))
        engine.open_position("alice", "BTC", Decimal("1000"), Decimal("2"))

        engine.advance_time(T0 + timedelta(minutes=11))
        with pytest.raises(StaleDataError, match="old"):
            engine.open_position("alice", "BTC", Decimal("100"), Decimal("2"))

        source.add_price('BTC', T0 + timedelta(minutes=11), Decimal("50500"))
        engine.open_position("alice", "BTC", Decimal("100"), Decimal("2"))

    def test_missing_and_negative_prices(self):
        source = StaticPricingSource({'BTC': Decimal("-1")})
        engine = make_engine(source)
        seed(engine, alice=Decimal("1000"))
        with pytest.raises(StaleDataError, match="no price"):
            engine.open_position("alice", "ETH", Decimal("100"), Decimal("2"))
        with pytest.raises(StaleDataError, match="not positive"):
            engine.open_position("alice", "BTC", Decimal("100"), Decimal("2"))
