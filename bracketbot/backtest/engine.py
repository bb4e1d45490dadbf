"""
Bar Replay Engine.

Replays historical bars through the same strategy and stop management the
live bot uses, resolving one trade at a time with fixed-fractional risk.

Per bar, in order:
1. Open trade: stop test, then target test (stop wins when both touch)
2. Resolved trade: equity += equity x risk fraction x R, drawdown update
3. Still open: stop update on the bar close, then the optional time stop
4. Flat: strategy signal (after ATR period + 1 bars), entry gates,
   optional sizing check, entry at the bar close

R is -1 for a stop hit before break-even, the reward:risk ratio for a
target hit, and the realized (exit - entry) / initial risk (signed by side)
for a stop hit after break-even or a time exit.

Usage:
    engine = ReplayEngine(EmaRsiStrategy(), ReplayConfig())
    result = engine.run(bars)
    print(result.trade_count, result.win_rate_pct)
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from bracketbot.lib.config import BotConfig
from bracketbot.lib.constants import (
    DEFAULT_ATR_MULTIPLE,
    DEFAULT_ATR_PERIOD,
    DEFAULT_ATR_TRAIL_MULTIPLE,
    DEFAULT_BREAK_EVEN_AT_R,
    DEFAULT_INITIAL_EQUITY,
    DEFAULT_MAX_BARS_IN_TRADE,
    DEFAULT_REWARD_RISK_RATIO,
    DEFAULT_RISK_PER_TRADE_PCT,
    FALLBACK_STEP_SIZE,
    MIN_STOP_DISTANCE,
    PRICE_SCALE,
)
from bracketbot.lib.logging_utils import DecisionLogger
from bracketbot.risk.entry_gate import VolatilityBand, is_funding_blackout
from bracketbot.risk.filters import FilterSet
from bracketbot.risk.position_sizing import OrderKind, PositionSizer
from bracketbot.risk.stops import Side, TradeState
from bracketbot.trading.indicators import atr, to_decimal
from bracketbot.trading.order_executor import bracket_prices
from bracketbot.trading.strategy import Strategy

logger = logging.getLogger(__name__)


class ExitReason(Enum):
    """Reasons for exiting a trade."""
    STOP = "stop"  # Initial stop before break-even
    TRAILING_STOP = "trailing_stop"  # Stop hit after break-even promotion
    TARGET = "target"  # Take profit hit
    TIME = "time"  # Time stop at bar close


@dataclass(frozen=True)
class TradeRecord:
    """
    Complete record of a replayed trade.

    Attributes:
        trade_id: Sequential identifier (1-based)
        side: LONG or SHORT
        entry_time: Bar at which the trade was opened
        exit_time: Bar at which the trade was resolved
        entry_price: Entry (bar close)
        exit_price: Stop, target or close price at exit
        initial_stop: Stop at entry
        target_price: Take profit price
        exit_reason: Why the trade was closed
        reward_multiple: Realized R
        bars_held: Stop updates run while open
        equity_after: Equity after applying the result
    """
    trade_id: int
    side: Side
    entry_time: datetime
    exit_time: datetime
    entry_price: Decimal
    exit_price: Decimal
    initial_stop: Decimal
    target_price: Decimal
    exit_reason: ExitReason
    reward_multiple: Decimal
    bars_held: int
    equity_after: Decimal

    @property
    def is_winner(self) -> bool:
        return self.reward_multiple > 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "trade_id": self.trade_id,
            "side": self.side.name,
            "entry_time": self.entry_time.isoformat(),
            "exit_time": self.exit_time.isoformat(),
            "entry_price": str(self.entry_price),
            "exit_price": str(self.exit_price),
            "initial_stop": str(self.initial_stop),
            "target_price": str(self.target_price),
            "exit_reason": self.exit_reason.value,
            "reward_multiple": str(self.reward_multiple),
            "bars_held": self.bars_held,
            "equity_after": str(self.equity_after),
        }


@dataclass
class ReplayConfig:
    """
    Configuration for a replay run.

    Attributes:
        symbol: Symbol used for filter lookups and logging
        initial_equity: Starting equity
        risk_fraction: Fraction of equity risked per trade
        atr_period: ATR period (warm-up is atr_period + 1 bars)
        atr_multiple: Stop distance in ATRs
        reward_risk_ratio: Target distance in multiples of the stop distance
        manage_stops: Run break-even and trailing on open trades
        break_even_at_r: Reward multiple that promotes the stop to entry
        trail_multiple: Trailing distance in ATRs after break-even
        min_stop_distance: Floor for the stop distance
        max_bars_in_trade: Time stop (0 disables)
        funding_blackout_minutes: Skip entries near funding (0 disables)
        volatility_band: Skip entries when ATR ranks outside the band
    """
    symbol: str = "BTCUSDT"
    initial_equity: Decimal = DEFAULT_INITIAL_EQUITY
    risk_fraction: Decimal = DEFAULT_RISK_PER_TRADE_PCT
    atr_period: int = DEFAULT_ATR_PERIOD
    atr_multiple: Decimal = DEFAULT_ATR_MULTIPLE
    reward_risk_ratio: Decimal = DEFAULT_REWARD_RISK_RATIO
    manage_stops: bool = True
    break_even_at_r: Decimal = DEFAULT_BREAK_EVEN_AT_R
    trail_multiple: Decimal = DEFAULT_ATR_TRAIL_MULTIPLE
    min_stop_distance: Decimal = MIN_STOP_DISTANCE
    max_bars_in_trade: int = DEFAULT_MAX_BARS_IN_TRADE
    funding_blackout_minutes: int = 0
    volatility_band: Optional[VolatilityBand] = None

    @classmethod
    def from_bot_config(cls, config: BotConfig, symbol: str) -> "ReplayConfig":
        """Build replay settings from the bot configuration."""
        gates = config.gates
        band = None
        if gates.volatility_band_enabled:
            band = VolatilityBand(
                min_pct=Decimal(str(gates.volatility_min_pct)),
                max_pct=Decimal(str(gates.volatility_max_pct)),
                lookback=gates.volatility_lookback,
            )
        return cls(
            symbol=symbol.upper(),
            initial_equity=config.risk.initial_equity,
            risk_fraction=config.risk.risk_per_trade_pct,
            atr_period=config.strategy.atr_period,
            atr_multiple=config.risk.atr_multiple,
            reward_risk_ratio=config.risk.reward_risk_ratio,
            break_even_at_r=config.risk.break_even_at_r,
            trail_multiple=config.risk.atr_trail_multiple,
            min_stop_distance=config.risk.min_stop_distance,
            max_bars_in_trade=config.risk.max_bars_in_trade,
            funding_blackout_minutes=(
                gates.funding_blackout_minutes if gates.funding_blackout_enabled else 0
            ),
            volatility_band=band,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "initial_equity": str(self.initial_equity),
            "risk_fraction": str(self.risk_fraction),
            "atr_period": self.atr_period,
            "atr_multiple": str(self.atr_multiple),
            "reward_risk_ratio": str(self.reward_risk_ratio),
            "manage_stops": self.manage_stops,
            "break_even_at_r": str(self.break_even_at_r),
            "trail_multiple": str(self.trail_multiple),
            "min_stop_distance": str(self.min_stop_distance),
            "max_bars_in_trade": self.max_bars_in_trade,
            "funding_blackout_minutes": self.funding_blackout_minutes,
            "volatility_band": (
                None if self.volatility_band is None else
                [str(self.volatility_band.min_pct), str(self.volatility_band.max_pct),
                 self.volatility_band.lookback]
            ),
        }


@dataclass(frozen=True)
class BacktestResult:
    """
    Immutable outcome of a replay.

    Attributes:
        trade_count: Number of resolved trades
        win_rate_pct: Percentage of trades with R > 0 (0 if none)
        average_reward_multiple: Mean R (0 if none)
        max_drawdown_pct: Worst peak-to-trough move in percent (<= 0)
        equity_curve: Initial equity followed by equity after each trade
        trades: Per-trade records
        rejected_entries: Signals dropped by the sizing check
    """
    trade_count: int
    win_rate_pct: Decimal
    average_reward_multiple: Decimal
    max_drawdown_pct: Decimal
    equity_curve: Tuple[Decimal, ...]
    trades: Tuple[TradeRecord, ...] = ()
    rejected_entries: int = 0

    @property
    def final_equity(self) -> Decimal:
        return self.equity_curve[-1]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "trade_count": self.trade_count,
            "win_rate_pct": str(self.win_rate_pct),
            "average_reward_multiple": str(self.average_reward_multiple),
            "max_drawdown_pct": str(self.max_drawdown_pct),
            "final_equity": str(self.final_equity),
            "rejected_entries": self.rejected_entries,
            "equity_curve": [str(e) for e in self.equity_curve],
            "trades": [t.to_dict() for t in self.trades],
        }

    def export_json(self, filepath: str) -> None:
        """Write the result as JSON."""
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


@dataclass
class _OpenTrade:
    state: TradeState
    initial_stop: Decimal
    entry_time: datetime


class ReplayEngine:
    """
    Single-symbol bar replay.

    The engine is strictly sequential; each run() starts from a clean
    state, so one engine can replay several datasets.
    """

    def __init__(
        self,
        strategy: Strategy,
        config: Optional[ReplayConfig] = None,
        filters: Optional[FilterSet] = None,
        decisions: Optional[DecisionLogger] = None,
    ):
        """
        Initialize the replay engine.

        Args:
            strategy: Entry strategy
            config: Replay settings (defaults if None)
            filters: Symbol filters; when given, entries are clamped to the
                tick grid and must pass PositionSizer
            decisions: Decision event logger
        """
        self.strategy = strategy
        self.config = config or ReplayConfig()
        self.filters = filters
        self.decisions = decisions or DecisionLogger("bracketbot.replay")
        # Stop updates need a tick grid even without exchange filters
        self._grid = filters or FilterSet(
            symbol=self.config.symbol, tick_size=PRICE_SCALE, step_size=FALLBACK_STEP_SIZE
        )
        self._sizer = PositionSizer(lambda _symbol: filters) if filters is not None else None

    def run(self, bars: pd.DataFrame) -> BacktestResult:
        """
        Replay bars in chronological order.

        Args:
            bars: OHLCV DataFrame with a DatetimeIndex

        Returns:
            BacktestResult

        Raises:
            ValueError: If data is empty or missing required columns
        """
        self._validate_data(bars)
        cfg = self.config

        atr_values = atr(bars, cfg.atr_period)
        highs = [Decimal(str(v)) for v in bars["high"]]
        lows = [Decimal(str(v)) for v in bars["low"]]
        closes = [Decimal(str(v)) for v in bars["close"]]
        volatility: List[Optional[Decimal]] = [to_decimal(v) for v in atr_values]
        warmup = cfg.atr_period + 1

        equity = cfg.initial_equity
        peak = equity
        max_drawdown = Decimal("0")
        equity_curve = [equity]
        trades: List[TradeRecord] = []
        rejected = 0
        open_trade: Optional[_OpenTrade] = None

        for i in range(len(bars)):
            if i + 1 < warmup:
                continue

            timestamp = bars.index[i].to_pydatetime()
            high, low, close = highs[i], lows[i], closes[i]
            vol = volatility[i] if volatility[i] is not None else Decimal("0")

            if open_trade is not None:
                exit_info = self._check_exit(open_trade.state, low, high, close, vol)
                if exit_info is not None:
                    reason, exit_price, reward = exit_info
                    equity += equity * cfg.risk_fraction * reward
                    equity_curve.append(equity)
                    peak = max(peak, equity)
                    max_drawdown = min(max_drawdown, (equity - peak) / peak)
                    trades.append(TradeRecord(
                        trade_id=len(trades) + 1,
                        side=open_trade.state.side,
                        entry_time=open_trade.entry_time,
                        exit_time=timestamp,
                        entry_price=open_trade.state.entry_price,
                        exit_price=exit_price,
                        initial_stop=open_trade.initial_stop,
                        target_price=open_trade.state.target,
                        exit_reason=reason,
                        reward_multiple=reward,
                        bars_held=open_trade.state.bars_held,
                        equity_after=equity,
                    ))
                    logger.debug(
                        f"{cfg.symbol} {timestamp}: {reason.value} R={reward} equity={equity}"
                    )
                    open_trade = None

            if open_trade is not None:
                continue

            side = self.strategy.evaluate(bars.iloc[:i + 1]).to_side()
            if side is None:
                continue

            if not self._entry_allowed(timestamp, volatility[:i + 1]):
                continue

            stop_distance = max(vol * cfg.atr_multiple, cfg.min_stop_distance)
            stop, target = self._bracket(side, close, stop_distance)

            if self._sizer is not None:
                decision = self._sizer.size(
                    cfg.symbol, OrderKind.MARKET, close, stop, equity * cfg.risk_fraction
                )
                if not decision.accepted:
                    rejected += 1
                    self.decisions.sizing_rejected(cfg.symbol, decision.reason, time=timestamp.isoformat())
                    continue

            open_trade = _OpenTrade(
                state=TradeState(side=side, entry_price=close, stop=stop, target=target),
                initial_stop=stop,
                entry_time=timestamp,
            )

        return self._build_result(trades, equity_curve, max_drawdown, rejected)

    def _validate_data(self, data: pd.DataFrame) -> None:
        """Validate input data has required columns and format."""
        if data is None or len(data) == 0:
            raise ValueError("Data cannot be empty")

        required_columns = ['open', 'high', 'low', 'close']
        missing = [col for col in required_columns if col not in data.columns]
        if missing:
            raise ValueError(f"Data missing required columns: {missing}")

        if not isinstance(data.index, pd.DatetimeIndex):
            raise ValueError("Data index must be DatetimeIndex")

    def _bracket(self, side: Side, close: Decimal, stop_distance: Decimal) -> Tuple[Decimal, Decimal]:
        if self.filters is not None:
            return bracket_prices(side, close, stop_distance, self.config.reward_risk_ratio, self.filters)
        offset = stop_distance * side.sign
        return close - offset, close + offset * self.config.reward_risk_ratio

    def _check_exit(
        self,
        trade: TradeState,
        low: Decimal,
        high: Decimal,
        close: Decimal,
        volatility: Decimal,
    ) -> Optional[Tuple[ExitReason, Decimal, Decimal]]:
        """
        Resolve the open trade against one bar.

        Returns:
            (reason, exit price, R) if the trade closed on this bar
        """
        cfg = self.config
        if trade.stop_hit(low, high):
            if trade.break_even_active:
                return ExitReason.TRAILING_STOP, trade.stop, trade.reward_multiple(trade.stop)
            return ExitReason.STOP, trade.stop, Decimal("-1")

        if trade.target_hit(low, high):
            return ExitReason.TARGET, trade.target, cfg.reward_risk_ratio

        if cfg.manage_stops:
            trade.update(close, volatility, cfg.break_even_at_r, cfg.trail_multiple, self._grid)
        else:
            trade.bars_held += 1

        if trade.is_time_expired(cfg.max_bars_in_trade):
            return ExitReason.TIME, close, trade.reward_multiple(close)
        return None

    def _entry_allowed(self, timestamp: datetime, volatility: List[Optional[Decimal]]) -> bool:
        cfg = self.config
        if cfg.funding_blackout_minutes > 0 and is_funding_blackout(timestamp, cfg.funding_blackout_minutes):
            self.decisions.entry_gated(cfg.symbol, "funding blackout", time=timestamp.isoformat())
            return False

        if cfg.volatility_band is not None:
            series = [v for v in volatility if v is not None]
            if not cfg.volatility_band.allows(series):
                self.decisions.entry_gated(cfg.symbol, "volatility band", time=timestamp.isoformat())
                return False
        return True

    @staticmethod
    def _build_result(
        trades: List[TradeRecord],
        equity_curve: List[Decimal],
        max_drawdown: Decimal,
        rejected: int,
    ) -> BacktestResult:
        count = len(trades)
        if count:
            wins = sum(1 for t in trades if t.is_winner)
            win_rate = Decimal(wins) / Decimal(count) * 100
            average_r = sum((t.reward_multiple for t in trades), Decimal("0")) / Decimal(count)
        else:
            win_rate = Decimal("0")
            average_r = Decimal("0")

        return BacktestResult(
            trade_count=count,
            win_rate_pct=win_rate,
            average_reward_multiple=average_r,
            max_drawdown_pct=max_drawdown * 100,
            equity_curve=tuple(equity_curve),
            trades=tuple(trades),
            rejected_entries=rejected,
        )


def summarize(result: BacktestResult) -> str:
    """Format the headline metrics of a replay."""
    return "\n".join([
        f"Trades: {result.trade_count}",
        f"Winrate: {result.win_rate_pct:.2f}%",
        f"Avg RR: {result.average_reward_multiple:.2f}",
        f"Max DD: {result.max_drawdown_pct:.2f}%",
        f"Final equity: {result.final_equity:.2f}",
        f"Rejected entries: {result.rejected_entries}",
    ])
