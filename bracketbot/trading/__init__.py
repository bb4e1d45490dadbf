"""
Trading module.

- indicators: EMA, RSI and ATR over pandas Series
- strategy: Strategy protocol and the EMA/RSI trend strategy
- order_executor: bracketed entries, stop replacement and market closes
- live_trader: multi-symbol polling loop
"""

from bracketbot.trading.indicators import atr, ema, rsi, to_decimal, true_range
from bracketbot.trading.strategy import EmaRsiStrategy, SignalType, Strategy
from bracketbot.trading.order_executor import (
    BracketOrderExecutor,
    EntryResult,
    ExecutionStatus,
    bracket_prices,
)
from bracketbot.trading.live_trader import LiveTrader, SessionMetrics, run_live_trading

__all__ = [
    "atr",
    "ema",
    "rsi",
    "to_decimal",
    "true_range",
    "EmaRsiStrategy",
    "SignalType",
    "Strategy",
    "BracketOrderExecutor",
    "EntryResult",
    "ExecutionStatus",
    "bracket_prices",
    "LiveTrader",
    "SessionMetrics",
    "run_live_trading",
]
