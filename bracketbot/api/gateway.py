"""
Exchange Gateway Interface.

The trading core talks to the exchange only through ExchangeGateway. The
production implementation is BinanceFuturesClient; tests substitute
AsyncMock fakes.

Also defines the wire-level value types shared by gateway implementations:
OrderSide, OrderResult and Kline.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Protocol, Sequence

import pandas as pd

from bracketbot.risk.filters import FilterSet
from bracketbot.risk.stops import Side


class OrderSide(Enum):
    """Order side as sent to the exchange."""
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def entry_for(cls, side: Side) -> "OrderSide":
        """Side of the order that opens a trade in direction side."""
        return cls.BUY if side is Side.LONG else cls.SELL

    @classmethod
    def exit_for(cls, side: Side) -> "OrderSide":
        """Side of the orders (stop, target, market close) that flatten side."""
        return cls.SELL if side is Side.LONG else cls.BUY


@dataclass(frozen=True)
class OrderResult:
    """Outcome of an order submission."""
    success: bool
    error: Optional[str] = None
    order_id: Optional[int] = None


@dataclass(frozen=True)
class Kline:
    """One OHLCV bar. Times are timezone-aware UTC."""
    open_time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    close_time: datetime
    is_closed: bool = True


def klines_to_frame(klines: Sequence[Kline]) -> pd.DataFrame:
    """
    Convert bars to the OHLCV DataFrame used by indicators and strategies.

    Args:
        klines: Bars in chronological order

    Returns:
        DataFrame indexed by open time (DatetimeIndex, UTC) with float
        columns open, high, low, close, volume
    """
    frame = pd.DataFrame(
        {
            "open": [float(k.open) for k in klines],
            "high": [float(k.high) for k in klines],
            "low": [float(k.low) for k in klines],
            "close": [float(k.close) for k in klines],
            "volume": [float(k.volume) for k in klines],
        },
        index=pd.DatetimeIndex([k.open_time for k in klines], name="timestamp"),
    )
    return frame


class ExchangeGateway(Protocol):
    """
    Asynchronous exchange operations required by the trading core.

    side arguments of the close orders are the EXIT side (SELL closes a long).
    """

    async def place_market_order(
        self, symbol: str, side: OrderSide, quantity: Decimal
    ) -> OrderResult:
        ...

    async def place_stop_close(
        self, symbol: str, side: OrderSide, stop_price: Decimal
    ) -> None:
        ...

    async def place_take_profit_close(
        self, symbol: str, side: OrderSide, price: Decimal
    ) -> None:
        ...

    async def close_position_at_market(self, symbol: str) -> None:
        ...

    async def get_filter_set(self, symbol: str) -> FilterSet:
        ...

    async def get_available_balance(self) -> Decimal:
        ...

    async def get_open_position_size(self, symbol: str) -> Decimal:
        """Signed position amount (> 0 long, < 0 short, 0 flat)."""
        ...

    async def get_klines(self, symbol: str, interval: str, limit: int) -> List[Kline]:
        ...

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        ...
