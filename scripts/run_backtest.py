#!/usr/bin/env python3
"""
Run Backtest Entry Point for the Bracket Bot.

Replays historical bars through the EMA/RSI strategy with the live stop
management (break-even, ATR trailing, optional time stop).

Features:
- Load bars from CSV/parquet, or download them from Binance
- Optional exchange filters so entries go through the position sizer
- Prints headline metrics and exports the full result as JSON

Usage:
    # Replay a local file
    python scripts/run_backtest.py --data data/BTCUSDT_1h.parquet

    # Download and replay a date range
    python scripts/run_backtest.py --symbol BTCUSDT --interval 1h \\
        --start 2024-01-01 --end 2024-06-30

    # Use exchange filters and write the result
    python scripts/run_backtest.py --data bars.csv --with-filters --output results/
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from bracketbot.api.binance_client import BinanceConfig, BinanceFuturesClient
from bracketbot.backtest.data import download_bars, load_bars
from bracketbot.backtest.engine import BacktestResult, ReplayConfig, ReplayEngine, summarize
from bracketbot.lib.config import BotConfig, load_config
from bracketbot.lib.constants import UTC
from bracketbot.lib.logging_utils import setup_logging
from bracketbot.risk.filters import FilterSet
from bracketbot.trading.strategy import EmaRsiStrategy

logger = logging.getLogger(__name__)


async def fetch_inputs(
    config: BotConfig,
    symbol: str,
    interval: str,
    start: Optional[datetime],
    end: Optional[datetime],
    with_filters: bool,
):
    """Download bars (when a range is given) and the symbol's filters."""
    bars = None
    filters = None
    client = BinanceFuturesClient(BinanceConfig.from_exchange_config(config.exchange))
    async with client:
        if start is not None:
            bars = await download_bars(client, symbol, interval, start, end or datetime.now(tz=UTC))
        if with_filters:
            filters = await client.get_filter_set(symbol)
    return bars, filters


def run_backtest(
    bars: pd.DataFrame,
    config: BotConfig,
    symbol: str,
    filters: Optional[FilterSet] = None,
    output_dir: Optional[str] = None,
) -> BacktestResult:
    """
    Run a replay and optionally export it.

    Args:
        bars: OHLCV DataFrame
        config: Bot configuration (strategy, risk and gate sections are used)
        symbol: Symbol being replayed
        filters: Exchange filters (enables sizing checks)
        output_dir: Directory for result.json and config.json

    Returns:
        BacktestResult
    """
    replay_config = ReplayConfig.from_bot_config(config, symbol)
    engine = ReplayEngine(EmaRsiStrategy(config.strategy), replay_config, filters=filters)

    logger.info(f"Replaying {len(bars):,} bars of {symbol}")
    result = engine.run(bars)

    logger.info("=" * 60)
    logger.info("BACKTEST RESULTS")
    logger.info("=" * 60)
    for line in summarize(result).splitlines():
        logger.info(line)
    logger.info("=" * 60)

    if output_dir:
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Exporting results to {output_path}")
        result.export_json(str(output_path / "result.json"))
        with open(output_path / "config.json", 'w') as f:
            json.dump(replay_config.to_dict(), f, indent=2)

    return result


def parse_date(value: str) -> datetime:
    return datetime.fromisoformat(value)


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Replay historical bars through the bracket bot strategy',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        '--config',
        type=str,
        default=str(PROJECT_ROOT / 'config' / 'default.yaml'),
        help='Path to YAML config file',
    )

    # Data
    parser.add_argument(
        '--data',
        type=str,
        default=None,
        help='CSV or parquet file with OHLCV bars',
    )
    parser.add_argument(
        '--symbol',
        type=str,
        default='BTCUSDT',
        help='Symbol to replay',
    )
    parser.add_argument(
        '--interval',
        type=str,
        default=None,
        help='Kline interval for downloads (defaults to config)',
    )
    parser.add_argument(
        '--start',
        type=parse_date,
        default=None,
        help='Download start (ISO date, UTC)',
    )
    parser.add_argument(
        '--end',
        type=parse_date,
        default=None,
        help='Download end (ISO date, UTC; defaults to now)',
    )
    parser.add_argument(
        '--with-filters',
        action='store_true',
        help='Fetch exchange filters and size every entry',
    )

    # Output
    parser.add_argument(
        '--output',
        type=str,
        default=None,
        help='Directory for JSON export (defaults to output.output_dir of the config)',
    )
    parser.add_argument(
        '--verbose',
        '-v',
        action='store_true',
        help='Enable debug logging',
    )

    return parser.parse_args()


def main():
    """Main entry point."""
    args = parse_args()

    setup_logging(level='DEBUG' if args.verbose else 'INFO')

    config_path = args.config if Path(args.config).exists() else None
    config = load_config(config_path)
    symbol = args.symbol.upper()
    interval = args.interval or config.interval

    if args.data is None and args.start is None:
        logger.error("Provide --data or --start")
        sys.exit(2)

    try:
        bars = None
        filters = None
        if args.start is not None or args.with_filters:
            start = args.start if args.data is None else None
            bars, filters = asyncio.run(
                fetch_inputs(config, symbol, interval, start, args.end, args.with_filters)
            )
        if args.data is not None:
            bars = load_bars(args.data)

        output_dir = args.output or config.output.output_dir
        result = run_backtest(bars, config, symbol, filters=filters, output_dir=output_dir)

        if result.trade_count == 0:
            logger.warning("No trades generated - check data length and strategy settings")
            sys.exit(1)

        sys.exit(0)

    except Exception as e:
        logger.error(f"Backtest failed: {e}")
        raise


if __name__ == '__main__':
    main()
