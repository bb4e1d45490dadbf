"""
Pytest fixtures for bracket bot tests.

This module provides:
- Exchange filter fixtures
- Synthetic bar data (DataFrames and Kline lists)
- AsyncMock gateway fakes
- Configuration fixtures
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import List
from unittest.mock import AsyncMock

import numpy as np
import pandas as pd
import pytest

from bracketbot.api.gateway import Kline, OrderResult
from bracketbot.lib.config import BotConfig
from bracketbot.lib.constants import UTC
from bracketbot.risk.filters import FilterRepository, FilterSet


def make_klines(closes: List[float], start: datetime = None, spread: float = 0.0) -> List[Kline]:
    """Hourly closed bars with high/low at close +/- spread."""
    start = start or datetime(2024, 1, 1, tzinfo=UTC)
    klines = []
    for i, close in enumerate(closes):
        price = Decimal(str(close))
        open_time = start + timedelta(hours=i)
        klines.append(Kline(
            open_time=open_time,
            open=price,
            high=price + Decimal(str(spread)),
            low=price - Decimal(str(spread)),
            close=price,
            volume=Decimal("1"),
            close_time=open_time + timedelta(hours=1) - timedelta(milliseconds=1),
            is_closed=True,
        ))
    return klines


@pytest.fixture
def btc_filters():
    """BTCUSDT futures filters."""
    return FilterSet(
        symbol="BTCUSDT",
        tick_size=Decimal("0.10"),
        step_size=Decimal("0.001"),
        min_qty=Decimal("0.001"),
        market_min_qty=Decimal("0.001"),
        min_notional=Decimal("100"),
    )


@pytest.fixture
def eth_filters():
    """ETHUSDT futures filters."""
    return FilterSet(
        symbol="ETHUSDT",
        tick_size=Decimal("0.01"),
        step_size=Decimal("0.001"),
        min_qty=Decimal("0.001"),
        min_notional=Decimal("20"),
    )


@pytest.fixture
def filter_repo(btc_filters, eth_filters):
    return FilterRepository([btc_filters, eth_filters])


@pytest.fixture
def linear_bars():
    """
    20 hourly bars priced 100 + i with high = low = close.

    Every true range after the first bar is exactly 1.
    """
    index = pd.date_range("2024-01-01", periods=20, freq="1h", tz="UTC", name="timestamp")
    prices = [100.0 + i for i in range(20)]
    return pd.DataFrame({
        "open": prices,
        "high": prices,
        "low": prices,
        "close": prices,
        "volume": [1.0] * 20,
    }, index=index)


@pytest.fixture
def random_walk_bars():
    """300 hourly bars of a seeded random walk around 100."""
    np.random.seed(42)
    index = pd.date_range("2024-01-01", periods=300, freq="1h", tz="UTC", name="timestamp")
    close = 100.0 * np.cumprod(1 + np.random.randn(300) * 0.01)
    high = close * (1 + np.abs(np.random.randn(300)) * 0.005)
    low = close * (1 - np.abs(np.random.randn(300)) * 0.005)
    open_ = np.roll(close, 1)
    open_[0] = 100.0
    high = np.maximum(high, np.maximum(open_, close))
    low = np.minimum(low, np.minimum(open_, close))
    return pd.DataFrame({
        "open": open_,
        "high": high,
        "low": low,
        "close": close,
        "volume": np.random.randint(10, 1000, 300).astype(float),
    }, index=index)


@pytest.fixture
def mock_gateway(btc_filters, eth_filters):
    """AsyncMock ExchangeGateway with a flat account and 1000 USDT available."""
    gateway = AsyncMock()
    by_symbol = {"BTCUSDT": btc_filters, "ETHUSDT": eth_filters}
    gateway.get_filter_set.side_effect = lambda symbol: by_symbol[symbol.upper()]
    gateway.get_available_balance.return_value = Decimal("1000")
    gateway.get_open_position_size.return_value = Decimal("0")
    gateway.get_klines.return_value = []
    gateway.place_market_order.return_value = OrderResult(success=True, order_id=1)
    gateway.place_stop_close.return_value = None
    gateway.place_take_profit_close.return_value = None
    gateway.close_position_at_market.return_value = None
    gateway.set_leverage.return_value = None
    return gateway


@pytest.fixture
def bot_config():
    """Live config for one symbol with short indicator periods."""
    config = BotConfig()
    config.symbols = ["BTCUSDT"]
    config.dry_run = False
    config.poll_interval_seconds = 0.01
    config.strategy.atr_period = 14
    return config
