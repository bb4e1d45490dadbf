"""
Alert Delivery for Trading Decisions.

Decision events and loop failures are turned into alerts and delivered to
the enabled channels:
- console (always the logger)
- Telegram bot sendMessage
- a generic JSON webhook

Each channel has a minimum priority; CRITICAL alerts bypass routing,
cooldown and throttling and go to every channel. Delivery never raises:
a failed send is logged and reported as False so trading continues.
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import aiohttp

from bracketbot.lib.constants import TELEGRAM_API_URL, UTC
from bracketbot.lib.logging_utils import DecisionEvent, DecisionKind

logger = logging.getLogger(__name__)

SEND_TIMEOUT_SECONDS = 10
HISTORY_SIZE = 1000


class AlertChannel(Enum):
    """Delivery channels."""
    CONSOLE = "console"
    TELEGRAM = "telegram"
    WEBHOOK = "webhook"


class AlertPriority(Enum):
    """Alert priority; higher values route to more channels."""
    LOW = 1         # Stop moves, gated entries
    MEDIUM = 2      # Trade opened / closed
    HIGH = 3        # Order failures, sizing rejections, cycle errors
    CRITICAL = 4    # Every channel, never suppressed

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass
class Alert:
    """One alert as handed to the senders."""
    timestamp: datetime
    priority: AlertPriority
    title: str
    message: str
    category: str = "system"  # sizing, order, stop, trade, gate, loop
    details: Optional[Dict[str, Any]] = None
    source: str = "bracketbot"

    @property
    def dedup_key(self) -> Tuple[str, str, str]:
        return (self.category, self.title, self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "priority": self.priority.label,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "details": self.details,
            "source": self.source,
        }

    def format_text(self) -> str:
        """Plain-text rendering for log files and chat channels."""
        text = (
            f"[{self.priority.label.upper()}] {self.title}\n"
            f"Time: {self.timestamp:%Y-%m-%d %H:%M:%S} UTC\n"
            f"Message: {self.message}"
        )
        if self.details:
            text += f"\nDetails: {json.dumps(self.details, indent=2, default=str)}"
        return text


@dataclass
class AlertConfig:
    """
    Alert channel and suppression settings.

    Attributes:
        console_enabled: Log every routed alert
        telegram_enabled: Send through the Telegram bot
        webhook_enabled: POST JSON to webhook_url
        telegram_bot_token: Bot token (masked when the config is dumped)
        telegram_chat_id: Target chat
        webhook_url: Webhook endpoint
        webhook_headers: Extra request headers (auth tokens)
        throttle_window_seconds: Sliding window for max_alerts_per_window
        max_alerts_per_window: Alerts allowed per window before throttling
        cooldown_seconds: Identical alerts within this period are dropped
        min_priority_for_telegram: Lowest priority sent to Telegram
        min_priority_for_webhook: Lowest priority sent to the webhook
    """
    console_enabled: bool = True
    telegram_enabled: bool = False
    webhook_enabled: bool = False

    telegram_bot_token: str = ""
    telegram_chat_id: str = ""

    webhook_url: str = ""
    webhook_headers: Dict[str, str] = field(default_factory=dict)

    throttle_window_seconds: float = 60.0
    max_alerts_per_window: int = 20
    cooldown_seconds: float = 5.0

    min_priority_for_telegram: AlertPriority = AlertPriority.MEDIUM
    min_priority_for_webhook: AlertPriority = AlertPriority.MEDIUM


# =============================================================================
# Senders
# =============================================================================

class AlertSender(ABC):
    """Delivers alerts to one channel."""

    @property
    @abstractmethod
    def channel(self) -> AlertChannel:
        pass

    @abstractmethod
    async def send(self, alert: Alert) -> bool:
        """Deliver alert; True on success."""
        pass


class ConsoleAlertSender(AlertSender):
    """Writes alerts to the module logger."""

    _LEVELS = {
        AlertPriority.LOW: logging.INFO,
        AlertPriority.MEDIUM: logging.INFO,
        AlertPriority.HIGH: logging.WARNING,
        AlertPriority.CRITICAL: logging.CRITICAL,
    }

    @property
    def channel(self) -> AlertChannel:
        return AlertChannel.CONSOLE

    async def send(self, alert: Alert) -> bool:
        logger.log(
            self._LEVELS[alert.priority],
            f"ALERT [{alert.category}]: {alert.title} - {alert.message}",
        )
        return True


class HttpAlertSender(AlertSender):
    """
    Base for senders that deliver with one HTTP POST.

    Subclasses build the request; this class owns the session, the
    timeout and the status check.
    """

    ok_statuses: Tuple[int, ...] = (200,)

    def __init__(self, config: AlertConfig):
        self.config = config

    @abstractmethod
    def build_request(self, alert: Alert) -> Optional[Tuple[str, Dict[str, Any]]]:
        """Return (url, post kwargs), or None if the channel is not configured."""

    async def send(self, alert: Alert) -> bool:
        request = self.build_request(alert)
        if request is None:
            logger.warning(f"{self.channel.value} alerts enabled but not configured")
            return False

        url, kwargs = request
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    timeout=aiohttp.ClientTimeout(total=SEND_TIMEOUT_SECONDS),
                    **kwargs,
                ) as response:
                    if response.status in self.ok_statuses:
                        return True
                    body = await response.text()
                    logger.error(
                        f"{self.channel.value} alert rejected: HTTP {response.status} {body}"
                    )
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.error(f"{self.channel.value} alert not delivered: {e}")
            return False


class TelegramAlertSender(HttpAlertSender):
    """Telegram bot sendMessage with a form-encoded chat_id and text."""

    def __init__(self, config: AlertConfig, base_url: str = TELEGRAM_API_URL):
        super().__init__(config)
        self.base_url = base_url

    @property
    def channel(self) -> AlertChannel:
        return AlertChannel.TELEGRAM

    @property
    def url(self) -> str:
        return f"{self.base_url}/bot{self.config.telegram_bot_token}/sendMessage"

    def build_request(self, alert: Alert) -> Optional[Tuple[str, Dict[str, Any]]]:
        if not (self.config.telegram_bot_token and self.config.telegram_chat_id):
            return None
        payload = {
            "chat_id": self.config.telegram_chat_id,
            "text": f"{alert.title}\n{alert.message}",
        }
        return self.url, {"data": payload}


class WebhookAlertSender(HttpAlertSender):
    """JSON POST of Alert.to_dict() to a configured URL."""

    ok_statuses = (200, 201, 202, 204)

    @property
    def channel(self) -> AlertChannel:
        return AlertChannel.WEBHOOK

    def build_request(self, alert: Alert) -> Optional[Tuple[str, Dict[str, Any]]]:
        if not self.config.webhook_url:
            return None
        headers = {"Content-Type": "application/json", **self.config.webhook_headers}
        body = json.dumps(alert.to_dict(), default=str)
        return self.config.webhook_url, {"data": body, "headers": headers}


# =============================================================================
# Manager
# =============================================================================

class AlertManager:
    """
    Routes alerts to channels by priority and suppresses floods.

    An alert is dropped (unless forced or CRITICAL) when an identical one
    was delivered within cooldown_seconds, or when max_alerts_per_window
    alerts were delivered in the last throttle_window_seconds. Only
    delivered alerts count towards either limit.
    """

    def __init__(self, config: Optional[AlertConfig] = None):
        self.config = config or AlertConfig()
        self._senders: Dict[AlertChannel, AlertSender] = {}
        self._history: deque = deque(maxlen=HISTORY_SIZE)
        self._last_delivery: Dict[Tuple[str, str, str], datetime] = {}
        self._window: deque = deque()
        self._lock: Optional[asyncio.Lock] = None

        if self.config.console_enabled:
            self.register_sender(ConsoleAlertSender())
        if self.config.telegram_enabled:
            self.register_sender(TelegramAlertSender(self.config))
        if self.config.webhook_enabled:
            self.register_sender(WebhookAlertSender(self.config))

    def register_sender(self, sender: AlertSender) -> None:
        """Install or replace the sender for its channel."""
        self._senders[sender.channel] = sender

    def _suppression_reason(self, alert: Alert, now: datetime) -> Optional[str]:
        horizon = now - timedelta(seconds=self.config.throttle_window_seconds)
        while self._window and self._window[0] < horizon:
            self._window.popleft()
        if len(self._window) >= self.config.max_alerts_per_window:
            return "throttled"

        cooldown_start = now - timedelta(seconds=self.config.cooldown_seconds)
        expired = [key for key, sent in self._last_delivery.items() if sent <= cooldown_start]
        for key in expired:
            del self._last_delivery[key]

        if alert.dedup_key in self._last_delivery:
            return "duplicate"
        return None

    def _channels_for(self, priority: AlertPriority) -> List[AlertChannel]:
        if priority is AlertPriority.CRITICAL:
            return list(self._senders)

        thresholds = {
            AlertChannel.CONSOLE: AlertPriority.LOW,
            AlertChannel.TELEGRAM: self.config.min_priority_for_telegram,
            AlertChannel.WEBHOOK: self.config.min_priority_for_webhook,
        }
        return [
            channel for channel in self._senders
            if priority.value >= thresholds[channel].value
        ]

    async def send_alert(
        self,
        title: str,
        message: str,
        priority: AlertPriority = AlertPriority.MEDIUM,
        category: str = "system",
        details: Optional[Dict[str, Any]] = None,
        force: bool = False,
    ) -> bool:
        """
        Deliver an alert to the channels its priority routes to.

        Args:
            title: Short headline (usually "<event>: <symbol>")
            message: Alert body
            priority: Routing priority
            category: sizing, order, stop, trade, gate or loop
            details: Extra fields for the webhook payload
            force: Bypass cooldown and throttling

        Returns:
            True if at least one channel accepted the alert
        """
        # Created here so it binds to the loop that delivers alerts
        if self._lock is None:
            self._lock = asyncio.Lock()

        async with self._lock:
            now = datetime.now(tz=UTC)
            alert = Alert(now, priority, title, message, category, details)

            if not force and priority is not AlertPriority.CRITICAL:
                reason = self._suppression_reason(alert, now)
                if reason is not None:
                    logger.debug(f"Alert {reason}: {title}")
                    return False

            channels = self._channels_for(priority)
            if not channels:
                logger.warning(f"No alert channel for {priority.label} alert: {title}")
                return False

            outcomes = await asyncio.gather(
                *(self._senders[channel].send(alert) for channel in channels),
                return_exceptions=True,
            )
            for channel, outcome in zip(channels, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(f"{channel.value} sender raised: {outcome}")

            delivered = any(outcome is True for outcome in outcomes)
            if delivered:
                self._last_delivery[alert.dedup_key] = now
                self._window.append(now)
                self._history.append(alert)
            return delivered

    async def send_critical_alert(
        self,
        title: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send to every channel, bypassing suppression."""
        return await self.send_alert(
            title, message, AlertPriority.CRITICAL, "critical", details, force=True
        )

    def get_alert_history(self, limit: int = 100) -> List[Alert]:
        """Most recent delivered alerts, oldest first."""
        return list(self._history)[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        """Delivered alert counts by priority and category."""
        return {
            "total_alerts": len(self._history),
            "throttle_limit": self.config.max_alerts_per_window,
            "enabled_channels": [channel.value for channel in self._senders],
            "by_priority": dict(Counter(a.priority.label for a in self._history)),
            "by_category": dict(Counter(a.category for a in self._history)),
        }


# =============================================================================
# Factories
# =============================================================================

# Decision kind -> (priority, category, title)
_DECISION_ROUTING = {
    DecisionKind.SIZING_REJECTED: (AlertPriority.HIGH, "sizing", "Entry rejected by sizing"),
    DecisionKind.ENTRY_GATED: (AlertPriority.LOW, "gate", "Entry gated"),
    DecisionKind.TRADE_OPENED: (AlertPriority.MEDIUM, "trade", "Trade opened"),
    DecisionKind.ORDER_FAILED: (AlertPriority.HIGH, "order", "Order failed"),
    DecisionKind.STOP_UPDATED: (AlertPriority.LOW, "stop", "Stop updated"),
    DecisionKind.TRADE_CLOSED: (AlertPriority.MEDIUM, "trade", "Trade closed"),
}


def create_decision_event_handler(alert_manager: AlertManager) -> Callable[[DecisionEvent], None]:
    """
    Create a DecisionLogger sink that forwards events to alert_manager.

    Delivery is scheduled on the running event loop; the sink returns
    immediately. Scheduled deliveries are held in handler.pending until
    they finish. Outside an event loop the event is only logged.

    Usage:
        decisions = DecisionLogger(sink=create_decision_event_handler(alert_manager))
    """
    pending: Set[asyncio.Task] = set()

    def on_done(task: asyncio.Task) -> None:
        pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Alert delivery raised: {task.exception()}")

    def handler(event: DecisionEvent) -> None:
        priority, category, title = _DECISION_ROUTING[event.kind]
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop; {event.kind.value} alert dropped")
            return

        task = loop.create_task(alert_manager.send_alert(
            title=f"{title}: {event.symbol}",
            message=event.message,
            priority=priority,
            category=category,
            details=event.to_dict()["details"],
        ))
        pending.add(task)
        task.add_done_callback(on_done)

    handler.pending = pending
    return handler


def create_alert_manager_from_env() -> AlertManager:
    """
    Create an AlertManager from environment variables.

    Environment variables:
        TELEGRAM_BOT_TOKEN: Bot token (Telegram is enabled when set together with the chat id)
        TELEGRAM_CHAT_ID: Target chat
        ALERT_WEBHOOK_ENABLED: "true" to enable the webhook
        ALERT_WEBHOOK_URL: Webhook endpoint
    """
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    chat_id = os.getenv("TELEGRAM_CHAT_ID", "")

    return AlertManager(AlertConfig(
        telegram_enabled=bool(token and chat_id),
        telegram_bot_token=token,
        telegram_chat_id=chat_id,
        webhook_enabled=os.getenv("ALERT_WEBHOOK_ENABLED", "").lower() == "true",
        webhook_url=os.getenv("ALERT_WEBHOOK_URL", ""),
    ))
