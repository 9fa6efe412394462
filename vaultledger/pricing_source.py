"""
pricing_source.py - Oracle interface for position valuation

The engine never synthesizes a price: every quote carries its age, and a
missing or stale quote aborts the calling operation.

Classes:
- PriceQuote: A price together with how old the observation is
- PriceSource: Protocol defining the oracle interface
- StaticPricingSource: Manually set prices with optional observation times
- TimeSeriesPricingSource: Time-varying prices with historical data
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Set, Optional, List, Tuple, Protocol, runtime_checkable
from bisect import bisect_right


@dataclass(frozen=True, slots=True)
class PriceQuote:
    """A price in the pool asset and the age of the observation in seconds."""
    price: Decimal
    age_seconds: Decimal


def is_stale(quote: PriceQuote, max_age_seconds: Decimal) -> bool:
    """True when the quote is older than max_age_seconds."""
    return quote.age_seconds > max_age_seconds


def _age(observed_at: Optional[datetime], timestamp: datetime) -> Decimal:
    if observed_at is None:
        return Decimal("0")
    return max(Decimal("0"), Decimal(str((timestamp - observed_at).total_seconds())))


@runtime_checkable
class PriceSource(Protocol):
    """
    Protocol for price oracles.

    get_price returns None when the asset has never been observed; the
    engine turns that into StaleDataError.
    """

    def get_price(self, asset: str, timestamp: datetime) -> Optional[PriceQuote]:
        """Get the latest quote for an asset as seen at timestamp."""
        ...

    def is_stale(self, quote: PriceQuote, max_age_seconds: Decimal) -> bool:
        """Whether a quote is too old to act on."""
        ...


class StaticPricingSource:
    """
    Pricing source with manually set prices.

    A price set without an observation time never ages. A price set with
    observed_at ages as the ledger clock moves past it.
    """

    def __init__(
        self,
        prices: Dict[str, Decimal],
        observed_at: Optional[datetime] = None,
    ):
        """
        Args:
            prices: Dictionary mapping asset symbols to prices
            observed_at: Observation time applied to every initial price
        """
        self.prices = dict(prices)
        self.observed: Dict[str, Optional[datetime]] = {a: observed_at for a in prices}

    def get_price(self, asset: str, timestamp: datetime) -> Optional[PriceQuote]:
        """Get the current quote; age is measured from the observation time."""
        if asset not in self.prices:
            return None
        return PriceQuote(self.prices[asset], _age(self.observed.get(asset), timestamp))

    def is_stale(self, quote: PriceQuote, max_age_seconds: Decimal) -> bool:
        return is_stale(quote, max_age_seconds)

    def update_price(self, asset: str, price: Decimal, observed_at: Optional[datetime] = None):
        """Update the price of an asset."""
        self.prices[asset] = price
        self.observed[asset] = observed_at

    def update_prices(self, prices: Dict[str, Decimal], observed_at: Optional[datetime] = None):
        """Update multiple prices at once."""
        for asset, price in prices.items():
            self.update_price(asset, price, observed_at)

    def remove_price(self, asset: str):
        """Forget an asset so later lookups report it as missing."""
        self.prices.pop(asset, None)
        self.observed.pop(asset, None)

    def __repr__(self):
        return f"StaticPricingSource({len(self.prices)} prices)"


class TimeSeriesPricingSource:
    """
    Pricing source with time-varying prices.

    Uses the most recent observation at or before the requested timestamp;
    the quote's age is the distance to that observation.

    Examples:
        pricer = TimeSeriesPricingSource({
            'BTC': [(t0, Decimal("50000")), (t1, Decimal("40000"))],
        })
        pricer.add_price('ETH', t0, Decimal("3000"))
    """

    def __init__(
        self,
        price_paths: Optional[Dict[str, List[Tuple[datetime, Decimal]]]] = None,
    ):
        self.price_history: Dict[str, List[Tuple[datetime, Decimal]]] = {}

        if price_paths:
            for asset, path in price_paths.items():
                if not path:
                    continue
                self.price_history[asset] = sorted(path, key=lambda x: x[0])

    def add_price(self, asset: str, timestamp: datetime, price: Decimal):
        """Add a price observation for an asset at a specific time."""
        if asset not in self.price_history:
            self.price_history[asset] = []
        self.price_history[asset].append((timestamp, price))
        self.price_history[asset].sort(key=lambda x: x[0])

    def add_prices(self, prices: Dict[str, Decimal], timestamp: datetime):
        """Add multiple price observations at the same timestamp."""
        for asset, price in prices.items():
            self.add_price(asset, timestamp, price)

    def get_price(self, asset: str, timestamp: datetime) -> Optional[PriceQuote]:
        """
        Get the quote at or before the specified timestamp.

        Returns None if no observation exists at or before the timestamp.
        Uses binary search for O(log n) lookup.
        """
        history = self.price_history.get(asset)
        if not history:
            return None

        timestamps = [ts for ts, _ in history]
        idx = bisect_right(timestamps, timestamp)
        if idx == 0:
            return None

        observed_at, price = history[idx - 1]
        return PriceQuote(price, _age(observed_at, timestamp))

    def is_stale(self, quote: PriceQuote, max_age_seconds: Decimal) -> bool:
        return is_stale(quote, max_age_seconds)

    def get_all_timestamps(self, asset: Optional[str] = None) -> List[datetime]:
        """All observation times, for one asset or across all of them."""
        if asset:
            return [ts for ts, _ in self.price_history.get(asset, [])]
        all_ts = set()
        for history in self.price_history.values():
            all_ts.update(ts for ts, _ in history)
        return sorted(all_ts)

    def assets(self) -> Set[str]:
        return set(self.price_history)

    def __repr__(self):
        total_points = sum(len(h) for h in self.price_history.values())
        return f"TimeSeriesPricingSource({len(self.price_history)} assets, {total_points} points)"
