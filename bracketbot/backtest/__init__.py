"""
Bar replay module.

Replays historical bars through the live strategy and stop management:
- engine: ReplayEngine, ReplayConfig, BacktestResult, TradeRecord
- data: CSV/parquet loading and exchange downloads
"""

from bracketbot.backtest.engine import (
    BacktestResult,
    ExitReason,
    ReplayConfig,
    ReplayEngine,
    TradeRecord,
    summarize,
)
from bracketbot.backtest.data import download_bars, download_klines, load_bars

__all__ = [
    "BacktestResult",
    "ExitReason",
    "ReplayConfig",
    "ReplayEngine",
    "TradeRecord",
    "summarize",
    "download_bars",
    "download_klines",
    "load_bars",
]
