"""
Live Trading Loop.

Polls the exchange for closed bars and runs one decision cycle per symbol:
1. Fetch bars, drop the still-forming one, check warm-up
2. Compute the strategy signal and ATR
3. Reconcile the local trade with the exchange position
4. Manage an open trade: flip close, time stop, or stop update
5. When flat: entry gates, risk budget, sizing, bracketed entry

Symbols are evaluated concurrently; a failure in one symbol is logged and
alerted without affecting the others. Each closed bar is processed once
per symbol; later polls on the same bar only re-send a stop or take
profit that failed to reach the exchange.

Usage:
    config = load_config("config/default.yaml")
    async with BinanceFuturesClient(BinanceConfig.from_exchange_config(config.exchange)) as client:
        trader = LiveTrader(config, client)
        await trader.start()
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from bracketbot.api.binance_client import BinanceConfig, BinanceFuturesClient
from bracketbot.api.gateway import ExchangeGateway, Kline, klines_to_frame
from bracketbot.lib.alerts import AlertManager, AlertPriority, create_decision_event_handler
from bracketbot.lib.config import BotConfig
from bracketbot.lib.constants import UTC
from bracketbot.lib.logging_utils import DecisionLogger
from bracketbot.risk.entry_gate import VolatilityBand, is_funding_blackout
from bracketbot.risk.filters import FilterRepository
from bracketbot.risk.position_sizing import OrderKind, PositionSizer
from bracketbot.risk.stops import Side, TradeState, TradeStore
from bracketbot.trading.indicators import atr, to_decimal
from bracketbot.trading.order_executor import (
    BracketOrderExecutor,
    ExecutionStatus,
    bracket_prices,
)
from bracketbot.trading.strategy import EmaRsiStrategy, SignalType, Strategy

logger = logging.getLogger(__name__)


@dataclass
class SessionMetrics:
    """Counters for a live session."""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    cycles: int = 0
    signals: int = 0
    entries_opened: int = 0
    entries_rejected: int = 0
    entries_gated: int = 0
    stop_updates: int = 0
    closes: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        duration = 0.0
        if self.start_time and self.end_time:
            duration = (self.end_time - self.start_time).total_seconds() / 60
        return {
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_minutes": duration,
            "cycles": self.cycles,
            "signals": self.signals,
            "entries_opened": self.entries_opened,
            "entries_rejected": self.entries_rejected,
            "entries_gated": self.entries_gated,
            "stop_updates": self.stop_updates,
            "closes": self.closes,
            "errors": self.errors,
        }


class LiveTrader:
    """
    Multi-symbol polling trader.

    Owns the FilterRepository and TradeStore for the session. The gateway
    is injected so tests can drive the loop with AsyncMock fakes.
    """

    def __init__(
        self,
        config: BotConfig,
        gateway: ExchangeGateway,
        strategy: Optional[Strategy] = None,
        decisions: Optional[DecisionLogger] = None,
        alert_manager: Optional[AlertManager] = None,
        store: Optional[TradeStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize live trader.

        Args:
            config: Bot configuration
            gateway: Exchange gateway
            strategy: Entry strategy (EmaRsiStrategy from config if None)
            decisions: Decision event logger
            alert_manager: Alert manager; decision events are forwarded to it
            store: Trade store (a new one if None)
            clock: Returns the current UTC time (used by the funding gate)
        """
        self.config = config
        self.gateway = gateway
        self.strategy = strategy or EmaRsiStrategy(config.strategy)
        self.decisions = decisions or DecisionLogger()
        self.alert_manager = alert_manager
        if alert_manager is not None:
            self.decisions.set_sink(create_decision_event_handler(alert_manager))

        self.store = store or TradeStore()
        self.filters = FilterRepository()
        self.sizer = PositionSizer(self.filters.get)
        self.executor = BracketOrderExecutor(
            gateway,
            reward_risk_ratio=config.risk.reward_risk_ratio,
            dry_run=config.dry_run,
            decisions=self.decisions,
        )
        self.volatility_band = VolatilityBand(
            min_pct=Decimal(str(config.gates.volatility_min_pct)),
            max_pct=Decimal(str(config.gates.volatility_max_pct)),
            lookback=config.gates.volatility_lookback,
        )
        self._clock = clock or (lambda: datetime.now(tz=UTC))

        self.metrics = SessionMetrics()
        self._last_bar: Dict[str, datetime] = {}
        self._shutdown_event = asyncio.Event()
        self._running = False

    @property
    def symbols(self) -> List[str]:
        return [s.upper() for s in self.config.symbols]

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Start the trading session.

        Runs until stop() is called.
        """
        logger.info("=" * 60)
        mode = "DRY-RUN" if self.config.dry_run else "LIVE"
        logger.info(f"STARTING {mode} TRADING SESSION: {', '.join(self.symbols)} {self.config.interval}")
        logger.info("=" * 60)

        try:
            await self._startup()
            await self._trading_loop()
        finally:
            await self._shutdown()

    async def _startup(self) -> None:
        """Load filters and set leverage for every symbol."""
        logger.info("Executing startup sequence...")
        self.metrics.start_time = self._clock()

        for symbol in self.symbols:
            filter_set = await self.gateway.get_filter_set(symbol)
            self.filters.set(filter_set)
            logger.info(
                f"Filters {symbol}: tick={filter_set.tick_size} step={filter_set.step_size} "
                f"minQty={filter_set.min_qty} minNotional={filter_set.min_notional}"
            )

            if self.config.dry_run:
                logger.info(f"{symbol}: [DRY] leverage x{self.config.risk.leverage} not applied")
            else:
                await self.gateway.set_leverage(symbol, self.config.risk.leverage)

        self._running = True
        logger.info("Startup complete - trading session active")

    async def _trading_loop(self) -> None:
        """Run cycles until stopped, waiting poll_interval_seconds between them."""
        while self._running and not self._shutdown_event.is_set():
            await self.run_cycle()
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.poll_interval_seconds,
                )
            except asyncio.TimeoutError:
                pass

    async def run_cycle(self) -> None:
        """Evaluate all symbols once, concurrently."""
        self.metrics.cycles += 1
        results = await asyncio.gather(
            *[self._run_symbol(symbol) for symbol in self.symbols],
            return_exceptions=True,
        )
        for symbol, result in zip(self.symbols, results):
            if isinstance(result, Exception):
                await self._on_symbol_error(symbol, result)

    async def _on_symbol_error(self, symbol: str, error: Exception) -> None:
        self.metrics.errors += 1
        logger.error(
            f"Error processing {symbol}: {error}",
            exc_info=(type(error), error, error.__traceback__),
        )
        if self.alert_manager is not None:
            await self.alert_manager.send_alert(
                title=f"Cycle error: {symbol}",
                message=str(error),
                priority=AlertPriority.HIGH,
                category="loop",
                details={"symbol": symbol, "error_type": type(error).__name__},
            )

    async def _shutdown(self) -> None:
        """Stop the loop and log the session report. Open positions keep their exchange-side bracket."""
        logger.info("Executing shutdown sequence...")
        self._running = False
        self.metrics.end_time = self._clock()

        open_trades = self.store.symbols()
        if open_trades:
            logger.info(f"Leaving open trades protected on exchange: {', '.join(open_trades)}")

        m = self.metrics.to_dict()
        logger.info(
            f"Session report: cycles={m['cycles']} signals={m['signals']} "
            f"opened={m['entries_opened']} rejected={m['entries_rejected']} "
            f"gated={m['entries_gated']} stop_updates={m['stop_updates']} "
            f"closes={m['closes']} errors={m['errors']} "
            f"duration={m['duration_minutes']:.1f}min"
        )
        logger.info("=" * 60)
        logger.info("TRADING SESSION ENDED")
        logger.info("=" * 60)

    async def stop(self) -> None:
        """Stop the trading session after the in-flight cycle."""
        logger.info("Stop requested")
        self._shutdown_event.set()

    # =========================================================================
    # Per-symbol cycle
    # =========================================================================

    async def _closed_klines(self, symbol: str) -> List[Kline]:
        klines = await self.gateway.get_klines(
            symbol, self.config.interval, self.config.strategy.klines_limit
        )
        if klines and not klines[-1].is_closed:
            klines = klines[:-1]
        return klines

    async def _run_symbol(self, symbol: str) -> None:
        klines = await self._closed_klines(symbol)
        if not klines:
            logger.debug(f"{symbol}: no closed bars")
            return

        bar_time = klines[-1].open_time
        if self._last_bar.get(symbol) == bar_time:
            await self._resync_protection(symbol)
            return

        warmup = getattr(self.strategy, "warmup_bars", self.config.strategy.atr_period + 1)
        if len(klines) < warmup:
            logger.info(f"{symbol}: warming up ({len(klines)}/{warmup} bars)")
            return

        bars = klines_to_frame(klines)
        signal_type = self.strategy.evaluate(bars)
        atr_values = atr(bars, self.config.strategy.atr_period)
        volatility = to_decimal(atr_values.iloc[-1])
        if volatility is None:
            logger.info(f"{symbol}: ATR not available yet")
            return

        price = klines[-1].close
        if signal_type is not SignalType.NONE:
            self.metrics.signals += 1
        logger.debug(f"{symbol}: close={price} atr={volatility} signal={signal_type.value}")

        position = await self.gateway.get_open_position_size(symbol)
        self._reconcile(symbol, position)
        self._last_bar[symbol] = bar_time

        if position != 0:
            await self._manage_position(symbol, position, signal_type, price, volatility)
            return

        side = signal_type.to_side()
        if side is None:
            return

        series = [d for d in (to_decimal(v) for v in atr_values) if d is not None]
        if not self._entry_allowed(symbol, series):
            self.metrics.entries_gated += 1
            return

        await self._open_trade(symbol, side, price, volatility)

    def _reconcile(self, symbol: str, position: Decimal) -> None:
        """Drop the local trade when the exchange is flat (stop or target filled)."""
        slot = self.store.get(symbol)
        if slot is not None and position == 0:
            self.store.remove(symbol)
            self.metrics.closes += 1
            self.decisions.trade_closed(symbol, "exchange position flat")

    async def _manage_position(
        self,
        symbol: str,
        position: Decimal,
        signal_type: SignalType,
        price: Decimal,
        volatility: Decimal,
    ) -> None:
        side = Side.LONG if position > 0 else Side.SHORT
        flip = signal_type.to_side() is side.opposite

        if flip:
            if await self.executor.flip_close(symbol, side):
                self._close_slot(symbol, "flip", price)
            return

        slot = self.store.get(symbol)
        if slot is None:
            logger.info(f"{symbol}: holding unmanaged {side.name} position {position}")
            return

        trade = slot.trade
        old_stop = trade.stop
        was_break_even = trade.break_even_active
        changed = trade.update(
            price,
            volatility,
            self.config.risk.break_even_at_r,
            self.config.risk.atr_trail_multiple,
            self.filters.require(symbol),
        )

        if trade.is_time_expired(self.config.risk.max_bars_in_trade):
            if await self.executor.close_at_market(symbol, side, "time stop"):
                self._close_slot(symbol, "time stop", price)
            return

        if changed:
            self.decisions.stop_updated(
                symbol, old_stop, trade.stop,
                break_even=trade.break_even_active and not was_break_even,
            )
            self.metrics.stop_updates += 1
            self.store.mark_stop_synced(symbol, False)

        await self._resync_protection(symbol)

    async def _resync_protection(self, symbol: str) -> None:
        """Send the stop and take profit of the slot that the exchange does not hold yet."""
        slot = self.store.get(symbol)
        if slot is None:
            return

        trade = slot.trade
        if not slot.stop_synced:
            logger.info(f"{symbol}: sending stop {trade.stop}")
            synced = await self.executor.update_stop(symbol, trade.side, trade.stop)
            self.store.mark_stop_synced(symbol, synced)

        if not slot.target_synced:
            logger.info(f"{symbol}: re-issuing take profit {trade.target}")
            synced = await self.executor.place_target(symbol, trade.side, trade.target)
            self.store.mark_target_synced(symbol, synced)

    def _close_slot(self, symbol: str, reason: str, price: Decimal) -> None:
        slot = self.store.remove(symbol)
        self.metrics.closes += 1
        reward = slot.trade.reward_multiple(price) if slot is not None else None
        self.decisions.trade_closed(symbol, reason, reward)

    def _entry_allowed(self, symbol: str, volatility_series: List[Decimal]) -> bool:
        gates = self.config.gates
        if gates.funding_blackout_enabled:
            now = self._clock()
            if is_funding_blackout(now, gates.funding_blackout_minutes):
                self.decisions.entry_gated(
                    symbol, "funding blackout", window_minutes=gates.funding_blackout_minutes
                )
                return False

        if gates.volatility_band_enabled and not self.volatility_band.allows(volatility_series):
            self.decisions.entry_gated(
                symbol, "volatility band",
                rank=str(self.volatility_band.rank(volatility_series)),
                min_pct=gates.volatility_min_pct,
                max_pct=gates.volatility_max_pct,
            )
            return False
        return True

    async def _open_trade(self, symbol: str, side: Side, price: Decimal, volatility: Decimal) -> None:
        risk = self.config.risk
        filters = self.filters.get(symbol)
        balance = await self.gateway.get_available_balance()
        budget = balance * risk.risk_per_trade_pct
        stop_distance = max(volatility * risk.atr_multiple, risk.min_stop_distance)

        if filters is None:
            stop_price = price - stop_distance * side.sign
        else:
            stop_price, _ = bracket_prices(side, price, stop_distance, risk.reward_risk_ratio, filters)

        decision = self.sizer.size(symbol, OrderKind.MARKET, price, stop_price, budget)
        if not decision.accepted:
            self.metrics.entries_rejected += 1
            self.decisions.sizing_rejected(
                symbol, decision.reason, balance=str(balance), budget=str(budget)
            )
            return

        result = await self.executor.open_with_bracket(
            symbol, side, decision.quantity, price, stop_distance, filters
        )
        if result.status is not ExecutionStatus.FILLED:
            return

        self.metrics.entries_opened += 1
        trade = TradeState(
            side=side,
            entry_price=result.entry_price,
            stop=result.stop_price,
            target=result.target_price,
        )
        self.store.put(
            symbol, trade,
            stop_synced=result.stop_placed,
            target_synced=result.target_placed,
        )


# Entry point for running live trading
async def run_live_trading(
    config: BotConfig,
    alert_manager: Optional[AlertManager] = None,
) -> None:
    """
    Run a live trading session against Binance until SIGINT/SIGTERM.

    Args:
        config: Bot configuration
        alert_manager: Optional alert manager
    """
    client = BinanceFuturesClient(BinanceConfig.from_exchange_config(config.exchange))
    async with client:
        trader = LiveTrader(config=config, gateway=client, alert_manager=alert_manager)

        loop = asyncio.get_running_loop()

        def signal_handler():
            logger.info("Shutdown signal received")
            asyncio.create_task(trader.stop())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        await trader.start()
