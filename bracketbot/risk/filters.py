"""
Exchange Trading Filters.

A FilterSet carries the per-symbol quantization rules published by the
exchange (price tick, quantity step, minimum quantities and minimum
notional). Prices and quantities are always rounded DOWN onto the grid so
a clamped value can never exceed what the caller asked for.

FilterSets are immutable. A refresh replaces the whole set in the
FilterRepository; nobody mutates a set in place.
"""

import logging
import threading
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Dict, Iterable, List, Optional

from bracketbot.lib.constants import PRICE_SCALE

logger = logging.getLogger(__name__)


class MissingFilterSetError(KeyError):
    """Raised when a symbol has no trading filters loaded."""

    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"No filters loaded for {symbol}")


def _floor_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Largest multiple of step that is <= value."""
    return (value / step).to_integral_value(rounding=ROUND_FLOOR) * step


@dataclass(frozen=True)
class FilterSet:
    """
    Per-symbol exchange filters.

    Attributes:
        symbol: Exchange symbol (e.g. BTCUSDT)
        tick_size: Price increment, > 0
        step_size: Quantity increment, > 0
        min_qty: Minimum order quantity (None = unconstrained)
        market_min_qty: Minimum quantity for market orders (None = use min_qty)
        min_notional: Minimum quantity x price (None = unconstrained)
    """
    symbol: str
    tick_size: Decimal
    step_size: Decimal
    min_qty: Optional[Decimal] = None
    market_min_qty: Optional[Decimal] = None
    min_notional: Optional[Decimal] = None

    def __post_init__(self):
        if self.tick_size <= 0:
            raise ValueError(f"{self.symbol}: tick_size must be > 0, got {self.tick_size}")
        if self.step_size <= 0:
            raise ValueError(f"{self.symbol}: step_size must be > 0, got {self.step_size}")

    def clamp_price(self, price: Decimal) -> Decimal:
        """
        Floor a price onto the tick grid.

        The floored price is quantized to 8 fractional digits. Non-positive
        prices are not rejected; they are floored like any other value.

        Args:
            price: Raw price

        Returns:
            Largest tick multiple <= price, at 8 decimal places
        """
        return _floor_to_step(price, self.tick_size).quantize(PRICE_SCALE)

    def clamp_quantity(self, quantity: Decimal) -> Decimal:
        """
        Floor a quantity onto the step grid.

        Args:
            quantity: Raw quantity

        Returns:
            0 for non-positive input, else the largest step multiple <= quantity
        """
        if quantity <= 0:
            return Decimal("0")
        return _floor_to_step(quantity, self.step_size)

    @classmethod
    def from_exchange_info(cls, symbol_info: Dict[str, Any]) -> "FilterSet":
        """
        Build a FilterSet from one symbol entry of the exchangeInfo response.

        Recognized filters: PRICE_FILTER (tickSize), LOT_SIZE (stepSize,
        minQty), MARKET_LOT_SIZE (minQty), MIN_NOTIONAL / NOTIONAL
        (notional or minNotional). Zero or missing minimums are treated as
        unconstrained.

        Args:
            symbol_info: Parsed JSON object with "symbol" and "filters"

        Returns:
            FilterSet

        Raises:
            ValueError: If tick size or step size is missing or not positive
        """
        symbol = symbol_info["symbol"]
        tick_size = step_size = Decimal("0")
        min_qty = market_min_qty = min_notional = None

        for flt in symbol_info.get("filters", []):
            filter_type = flt.get("filterType")
            if filter_type == "PRICE_FILTER":
                tick_size = Decimal(flt["tickSize"])
            elif filter_type == "LOT_SIZE":
                step_size = Decimal(flt["stepSize"])
                min_qty = _positive_or_none(flt.get("minQty"))
            elif filter_type == "MARKET_LOT_SIZE":
                market_min_qty = _positive_or_none(flt.get("minQty"))
            elif filter_type in ("MIN_NOTIONAL", "NOTIONAL"):
                min_notional = _positive_or_none(flt.get("notional", flt.get("minNotional")))

        return cls(
            symbol=symbol,
            tick_size=tick_size,
            step_size=step_size,
            min_qty=min_qty,
            market_min_qty=market_min_qty,
            min_notional=min_notional,
        )


def _positive_or_none(raw: Optional[str]) -> Optional[Decimal]:
    if raw is None:
        return None
    value = Decimal(str(raw))
    return value if value > 0 else None


class FilterRepository:
    """
    Thread-safe symbol -> FilterSet map.

    Symbol keys are case-insensitive. Loading replaces entries wholesale.

    Usage:
        repo = FilterRepository()
        repo.set(FilterSet("BTCUSDT", Decimal("0.1"), Decimal("0.001")))
        filters = repo.require("btcusdt")
    """

    def __init__(self, filter_sets: Optional[Iterable[FilterSet]] = None):
        self._lock = threading.Lock()
        self._filters: Dict[str, FilterSet] = {}
        for filter_set in filter_sets or ():
            self.set(filter_set)

    def set(self, filter_set: FilterSet) -> None:
        """Install or replace the filters for filter_set.symbol."""
        with self._lock:
            self._filters[filter_set.symbol.upper()] = filter_set
        logger.debug(
            f"Filters loaded for {filter_set.symbol}: tick={filter_set.tick_size} "
            f"step={filter_set.step_size} minQty={filter_set.min_qty} "
            f"minNotional={filter_set.min_notional}"
        )

    def get(self, symbol: str) -> Optional[FilterSet]:
        """Filters for symbol, or None if not loaded."""
        with self._lock:
            return self._filters.get(symbol.upper())

    def require(self, symbol: str) -> FilterSet:
        """
        Filters for symbol.

        Raises:
            MissingFilterSetError: If no filters are loaded for symbol
        """
        filter_set = self.get(symbol)
        if filter_set is None:
            raise MissingFilterSetError(symbol)
        return filter_set

    def symbols(self) -> List[str]:
        with self._lock:
            return sorted(self._filters)

    def __contains__(self, symbol: str) -> bool:
        return self.get(symbol) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._filters)
