"""
Historical bar loading for replays.

Bars come either from a local CSV/parquet file or from the exchange kline
endpoint, paged 1500 bars at a time. Both produce the OHLCV DataFrame the
replay engine expects (DatetimeIndex named "timestamp", float columns).
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Union

import pandas as pd

from bracketbot.api.gateway import Kline, klines_to_frame
from bracketbot.lib.constants import MAX_KLINES_PER_REQUEST, UTC

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["open", "high", "low", "close"]

# Column names accepted for the bar time when the file has no index
_TIME_COLUMNS = ("timestamp", "open_time", "time", "date", "datetime")


def load_bars(file_path: Union[str, Path]) -> pd.DataFrame:
    """
    Load OHLCV bars from a CSV or parquet file.

    The time column may be named timestamp, open_time, time, date or
    datetime; epoch milliseconds and ISO strings are both accepted.

    Raises:
        ValueError: Unsupported file type or missing columns
    """
    file_path = Path(file_path)
    if file_path.suffix == ".parquet":
        df = pd.read_parquet(file_path)
    elif file_path.suffix in [".csv", ".txt"]:
        df = pd.read_csv(file_path)
    else:
        raise ValueError(f"Unsupported file type: {file_path.suffix}")

    df.columns = [str(c).lower() for c in df.columns]

    if not isinstance(df.index, pd.DatetimeIndex):
        time_column = next((c for c in _TIME_COLUMNS if c in df.columns), None)
        if time_column is None:
            raise ValueError(f"No time column found in {file_path.name}")
        raw = df[time_column]
        if pd.api.types.is_numeric_dtype(raw):
            index = pd.to_datetime(raw, unit="ms", utc=True)
        else:
            index = pd.to_datetime(raw, utc=True)
        df = df.drop(columns=[time_column])
        df.index = pd.DatetimeIndex(index, name="timestamp")

    missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"Data missing required columns: {missing}")

    df = df.sort_index()
    for col in REQUIRED_COLUMNS + (["volume"] if "volume" in df.columns else []):
        df[col] = df[col].astype(float)

    logger.info(f"Loaded {len(df)} bars from {file_path.name} ({df.index[0]} -> {df.index[-1]})")
    return df


def _to_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return int(moment.timestamp() * 1000)


async def download_klines(
    client,
    symbol: str,
    interval: str,
    start: datetime,
    end: datetime,
    pause_seconds: float = 0.05,
) -> List[Kline]:
    """
    Download all bars between start and end.

    Args:
        client: BinanceFuturesClient (anything with a ranged get_klines)
        symbol: Exchange symbol
        interval: Kline interval, e.g. "1h"
        start: First bar open time (naive values are UTC)
        end: Last bar open time
        pause_seconds: Delay between pages

    Returns:
        Bars in chronological order
    """
    start_ms = _to_ms(start)
    end_ms = _to_ms(end)
    klines: List[Kline] = []

    while start_ms < end_ms:
        page = await client.get_klines(
            symbol, interval, MAX_KLINES_PER_REQUEST, start_ms=start_ms, end_ms=end_ms
        )
        if not page:
            break
        klines.extend(page)
        start_ms = _to_ms(page[-1].close_time) + 1
        logger.debug(f"{symbol}: downloaded {len(klines)} bars")
        await asyncio.sleep(pause_seconds)

    logger.info(f"Downloaded {len(klines)} {interval} bars for {symbol}")
    return klines


async def download_bars(
    client,
    symbol: str,
    interval: str,
    start: datetime,
    end: datetime,
) -> pd.DataFrame:
    """download_klines() as an OHLCV DataFrame."""
    return klines_to_frame(await download_klines(client, symbol, interval, start, end))
