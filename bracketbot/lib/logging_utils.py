"""
Logging setup and decision events for the trading core.

Contents:
- setup_logging: console handler plus an optional rotating log file
- TradingFormatter: UTC millisecond timestamps, extra= fields as key=value
- DecisionLogger: structured decision events (sizing rejected, stop
  updated, trade opened/closed, entry gated) that an external notifier
  may forward

Log Format:
    YYYY-MM-DD HH:MM:SS.mmm [LEVEL] module - message [key=value ...]

Usage:
    setup_logging(level="INFO", log_dir="logs")

    logger = logging.getLogger(__name__)
    logger.info("Stop updated", extra={"symbol": "BTCUSDT"})
"""

import logging
import sys
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from bracketbot.lib.constants import UTC


# =============================================================================
# Log Formatting
# =============================================================================

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_RECORD_KEYS = frozenset((
    "message", "asctime", "args", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated", "levelno",
    "levelname", "pathname", "filename", "module", "name", "msg",
    "processName", "process", "threadName", "thread", "taskName",
))

# Decision events kept in memory per DecisionLogger
HISTORY_LIMIT = 1000


class TradingFormatter(logging.Formatter):
    """
    Formatter for bot logs.

    Timestamps are UTC with milliseconds so log lines line up with
    exchange kline and order times. Fields passed through extra= (symbol,
    stop, qty) are appended as key=value pairs. Colors apply only when
    stderr is a terminal.
    """

    COLORS = {
        logging.DEBUG: "\033[36m",     # Cyan
        logging.INFO: "\033[32m",      # Green
        logging.WARNING: "\033[33m",   # Yellow
        logging.ERROR: "\033[31m",     # Red
        logging.CRITICAL: "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False, include_extras: bool = True):
        self.use_colors = use_colors
        self.include_extras = include_extras
        super().__init__("[%(levelname)-8s] %(name)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=UTC)
        timestamp_str = timestamp.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

        message = super().format(record)

        if self.include_extras:
            extras = {
                k: v for k, v in record.__dict__.items()
                if k not in _RESERVED_RECORD_KEYS and not k.startswith("_")
            }
            if extras:
                extras_str = " ".join(f"{k}={v}" for k, v in extras.items())
                message = f"{message} [{extras_str}]"

        full_message = f"{timestamp_str} {message}"

        if self.use_colors and sys.stderr.isatty():
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{full_message}{self.RESET}"

        return full_message


# =============================================================================
# Logging Setup
# =============================================================================

def setup_logging(
    level: str = "INFO",
    log_dir: Optional[str] = None,
    log_file: Optional[str] = None,
    use_colors: bool = True,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for a bot or replay run.

    Existing root handlers are replaced, so calling this twice does not
    duplicate output.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for the rotating log file (console only if None)
        log_file: Specific log file name (default: bracketbot_YYYY-MM-DD.log)
        use_colors: Enable colored console output
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep

    Returns:
        Root logger
    """
    root_logger = logging.getLogger()

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(TradingFormatter(use_colors=use_colors))
    root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        if not log_file:
            today = datetime.now(tz=UTC).strftime("%Y-%m-%d")
            log_file = f"bracketbot_{today}.log"

        file_handler = RotatingFileHandler(
            log_path / log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8"
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(TradingFormatter(use_colors=False))
        root_logger.addHandler(file_handler)

    # aiohttp access logs are noise at INFO
    logging.getLogger("aiohttp").setLevel(max(log_level, logging.WARNING))

    return root_logger


# =============================================================================
# Decision Events
# =============================================================================

class DecisionKind(Enum):
    """Kinds of decision events emitted by the trading core."""
    SIZING_REJECTED = "sizing_rejected"
    ENTRY_GATED = "entry_gated"
    TRADE_OPENED = "trade_opened"
    ORDER_FAILED = "order_failed"
    STOP_UPDATED = "stop_updated"
    TRADE_CLOSED = "trade_closed"


@dataclass
class DecisionEvent:
    """A single observable decision taken for a symbol."""
    kind: DecisionKind
    symbol: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "kind": self.kind.value,
            "symbol": self.symbol,
            "message": self.message,
            "details": {k: str(v) for k, v in self.details.items()},
            "timestamp": self.timestamp.isoformat(),
        }


EventSink = Callable[[DecisionEvent], None]


class DecisionLogger:
    """
    Logger for trading decisions.

    Each method logs one structured event and hands it to the optional
    sink (typically the alert manager bridge). Sinks are observational:
    a failing sink is logged and never interrupts the caller.

    Usage:
        decisions = DecisionLogger()
        decisions.sizing_rejected("BTCUSDT", "Below minQty. ...")
    """

    def __init__(self, name: str = "bracketbot.decisions", sink: Optional[EventSink] = None):
        self._logger = logging.getLogger(name)
        self._sink = sink
        self._history: deque = deque(maxlen=HISTORY_LIMIT)

    @property
    def history(self) -> list:
        """The most recent HISTORY_LIMIT events (most recent last)."""
        return list(self._history)

    def set_sink(self, sink: Optional[EventSink]) -> None:
        """Attach or detach the event sink."""
        self._sink = sink

    def _emit(self, event: DecisionEvent, level: int = logging.INFO) -> DecisionEvent:
        self._logger.log(
            level,
            f"{event.kind.value.upper()}: {event.symbol} {event.message}",
            extra={"symbol": event.symbol, **event.details},
        )
        self._history.append(event)

        if self._sink is not None:
            try:
                self._sink(event)
            except Exception as e:
                self._logger.error(f"Decision sink failed for {event.kind.value}: {e}")
        return event

    def sizing_rejected(self, symbol: str, reason: str, **details: Any) -> DecisionEvent:
        """Log a rejected sizing attempt with its machine-readable reason."""
        return self._emit(
            DecisionEvent(DecisionKind.SIZING_REJECTED, symbol, reason, details),
            logging.WARNING,
        )

    def entry_gated(self, symbol: str, gate: str, **details: Any) -> DecisionEvent:
        """Log an entry suppressed by an entry gate (funding blackout, volatility band)."""
        return self._emit(DecisionEvent(DecisionKind.ENTRY_GATED, symbol, gate, details))

    def trade_opened(
        self,
        symbol: str,
        side: str,
        quantity: Any,
        entry_price: Any,
        stop_price: Any,
        target_price: Any,
        dry_run: bool = False,
    ) -> DecisionEvent:
        """Log a bracketed entry."""
        prefix = "[DRY] " if dry_run else ""
        message = (
            f"{prefix}OPEN {side} qty={quantity} @~{entry_price} "
            f"| SL={stop_price} TP={target_price}"
        )
        return self._emit(DecisionEvent(
            DecisionKind.TRADE_OPENED, symbol, message,
            {"side": side, "quantity": quantity, "entry": entry_price,
             "stop": stop_price, "target": target_price, "dry_run": dry_run},
        ))

    def order_failed(self, symbol: str, error: str, **details: Any) -> DecisionEvent:
        """Log an order the gateway did not accept."""
        return self._emit(
            DecisionEvent(DecisionKind.ORDER_FAILED, symbol, error, details),
            logging.ERROR,
        )

    def stop_updated(self, symbol: str, old_stop: Any, new_stop: Any, break_even: bool) -> DecisionEvent:
        """Log a stop move (break-even promotion or trailing step)."""
        label = "break-even" if break_even else "trail"
        return self._emit(DecisionEvent(
            DecisionKind.STOP_UPDATED, symbol,
            f"stop {old_stop} -> {new_stop} ({label})",
            {"old_stop": old_stop, "new_stop": new_stop, "break_even": break_even},
        ))

    def trade_closed(self, symbol: str, reason: str, reward_multiple: Any = None) -> DecisionEvent:
        """Log a flattened trade and, when known, its reward multiple."""
        message = f"closed ({reason})"
        if reward_multiple is not None:
            message += f" R={reward_multiple}"
        return self._emit(DecisionEvent(
            DecisionKind.TRADE_CLOSED, symbol, message,
            {"reason": reason, "reward_multiple": reward_multiple},
        ))
