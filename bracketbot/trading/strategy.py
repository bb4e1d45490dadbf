"""
Entry Signal Strategies.

A strategy looks at closed bars only and answers one question: open long,
open short, or do nothing. Stops, targets and sizing are decided elsewhere.

EmaRsiStrategy (default):
- LONG: EMA(fast) > EMA(slow), RSI > long threshold, close > EMA(fast)
- SHORT: EMA(fast) < EMA(slow), RSI < short threshold, close < EMA(fast)
- NONE otherwise, and during warm-up (fewer than slow + 5 bars)
"""

import logging
from enum import Enum
from typing import Optional, Protocol

import pandas as pd

from bracketbot.lib.config import StrategyConfig
from bracketbot.risk.stops import Side
from bracketbot.trading.indicators import ema, rsi

logger = logging.getLogger(__name__)


class SignalType(Enum):
    """Strategy output."""
    NONE = "none"
    LONG = "long"
    SHORT = "short"

    def to_side(self) -> Optional[Side]:
        """Trade direction of the signal (None for NONE)."""
        if self is SignalType.LONG:
            return Side.LONG
        if self is SignalType.SHORT:
            return Side.SHORT
        return None


class Strategy(Protocol):
    """Anything with evaluate(bars) -> SignalType."""

    def evaluate(self, bars: pd.DataFrame) -> SignalType:
        ...


class EmaRsiStrategy:
    """
    Trend-following pullback strategy on EMA crossover state and RSI.

    Usage:
        strategy = EmaRsiStrategy()
        signal = strategy.evaluate(bars)  # bars: OHLCV DataFrame, closed bars only
    """

    def __init__(self, config: Optional[StrategyConfig] = None):
        """
        Initialize strategy.

        Args:
            config: Indicator periods and RSI thresholds (uses defaults if None)
        """
        self.config = config or StrategyConfig()

    @property
    def warmup_bars(self) -> int:
        """Minimum number of bars before a signal can be produced."""
        return self.config.ema_slow + 5

    def evaluate(self, bars: pd.DataFrame) -> SignalType:
        """
        Evaluate the latest closed bar.

        Args:
            bars: OHLCV DataFrame in chronological order

        Returns:
            SignalType.LONG, SignalType.SHORT or SignalType.NONE
        """
        if len(bars) < self.warmup_bars:
            return SignalType.NONE

        close = bars["close"].astype(float)
        ema_fast = ema(close, self.config.ema_fast).iloc[-1]
        ema_slow = ema(close, self.config.ema_slow).iloc[-1]
        last_rsi = rsi(close, self.config.rsi_period).iloc[-1]
        last_close = close.iloc[-1]

        if pd.isna(ema_fast) or pd.isna(ema_slow) or pd.isna(last_rsi):
            return SignalType.NONE

        trend_up = ema_fast > ema_slow
        trend_down = ema_fast < ema_slow

        if trend_up and last_rsi > self.config.rsi_long_threshold and last_close > ema_fast:
            return SignalType.LONG
        if trend_down and last_rsi < self.config.rsi_short_threshold and last_close < ema_fast:
            return SignalType.SHORT
        return SignalType.NONE
