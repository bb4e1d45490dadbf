"""
Technical indicators over OHLCV DataFrames.

All smoothers are seeded with a simple average so the first value appears
once a full period of input is available, and are NaN before that:
- EMA: first value at index period-1, then span smoothing (2 / (n + 1))
- RSI: Wilder smoothing of gains/losses, first value at index period
- ATR: Wilder smoothing of true range, first value at index period
  (true range needs a previous close, so the first bar has none)

Values are floats; callers that feed the Decimal core convert with
to_decimal().
"""

from decimal import Decimal
from typing import Optional

import numpy as np
import pandas as pd


def _seeded_smoothing(values: pd.Series, start: int, period: int, alpha: float) -> pd.Series:
    """
    Exponential smoothing seeded with the mean of values[start-period+1 .. start].

    Args:
        values: Input series
        start: Index of the first output value
        period: Number of inputs averaged for the seed
        alpha: Smoothing factor

    Returns:
        Series aligned with values, NaN before start
    """
    result = pd.Series(np.nan, index=values.index, dtype=float)
    if len(values) <= start:
        return result

    tail = values.iloc[start:].astype(float).copy()
    tail.iloc[0] = float(values.iloc[start - period + 1:start + 1].mean())
    result.iloc[start:] = tail.ewm(alpha=alpha, adjust=False).mean().to_numpy()
    return result


def ema(series: pd.Series, period: int) -> pd.Series:
    """
    Exponential moving average.

    Args:
        series: Price series
        period: EMA period

    Returns:
        EMA series (NaN for the first period-1 values)
    """
    if period <= 0:
        raise ValueError(f"period must be > 0, got {period}")
    return _seeded_smoothing(series, period - 1, period, 2.0 / (period + 1))


def rsi(series: pd.Series, period: int = 14) -> pd.Series:
    """
    Calculate RSI (Relative Strength Index) with Wilder smoothing.

    RSI = 100 - (100 / (1 + RS))
    RS = Average Gain / Average Loss

    A window with no losses yields 100.
    """
    if period <= 0:
        raise ValueError(f"period must be > 0, got {period}")

    delta = series.astype(float).diff()
    gain = delta.clip(lower=0)
    loss = (-delta).clip(lower=0)

    avg_gain = _seeded_smoothing(gain, period, period, 1.0 / period)
    avg_loss = _seeded_smoothing(loss, period, period, 1.0 / period)

    rs = avg_gain / avg_loss.replace(0, np.nan)
    result = 100 - (100 / (1 + rs))
    # No losses in the window: RS is infinite
    result = result.where(~((avg_loss == 0) & avg_gain.notna()), 100.0)
    return result


def true_range(df: pd.DataFrame) -> pd.Series:
    """
    True range: max(high - low, |high - prev_close|, |low - prev_close|).

    NaN for the first bar.
    """
    high = df["high"].astype(float)
    low = df["low"].astype(float)
    prev_close = df["close"].astype(float).shift(1)

    tr1 = high - low
    tr2 = (high - prev_close).abs()
    tr3 = (low - prev_close).abs()

    tr = pd.concat([tr1, tr2, tr3], axis=1).max(axis=1)
    tr.iloc[:1] = np.nan
    return tr


def atr(df: pd.DataFrame, period: int = 14) -> pd.Series:
    """
    Calculate Average True Range (Wilder).

    The first ATR is the mean of true ranges 1..period (at index period);
    subsequent values use ATR = (prev x (period - 1) + TR) / period.

    Args:
        df: DataFrame with high, low, close columns
        period: ATR period (default 14)

    Returns:
        ATR series aligned with df (NaN for the first period values)
    """
    if period <= 0:
        raise ValueError(f"period must be > 0, got {period}")
    return _seeded_smoothing(true_range(df), period, period, 1.0 / period)


def to_decimal(value: float) -> Optional[Decimal]:
    """Convert an indicator float to Decimal via its string form (None for NaN)."""
    if value is None or pd.isna(value):
        return None
    return Decimal(str(float(value)))
