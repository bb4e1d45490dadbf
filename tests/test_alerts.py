"""
Tests for the Alert System Module.

Tests cover:
- Alert dataclass creation and formatting
- Individual senders (Console, Telegram, Webhook)
- AlertManager routing, throttling, and deduplication
- Bridging DecisionLogger events to alerts
- Environment variable configuration
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from bracketbot.lib.alerts import (
    Alert,
    AlertChannel,
    AlertConfig,
    AlertManager,
    AlertPriority,
    AlertSender,
    ConsoleAlertSender,
    TelegramAlertSender,
    WebhookAlertSender,
    create_alert_manager_from_env,
    create_decision_event_handler,
)
from bracketbot.lib.constants import UTC
from bracketbot.lib.logging_utils import DecisionLogger


def _mock_client_session(status: int):
    """Build a patched aiohttp.ClientSession whose post() answers with status."""
    mock_response = MagicMock()
    mock_response.status = status
    mock_response.text = AsyncMock(return_value="error body")

    mock_post_cm = AsyncMock()
    mock_post_cm.__aenter__.return_value = mock_response
    mock_post_cm.__aexit__.return_value = None

    mock_session = MagicMock()
    mock_session.post.return_value = mock_post_cm

    mock_session_cm = AsyncMock()
    mock_session_cm.__aenter__.return_value = mock_session
    mock_session_cm.__aexit__.return_value = None
    return mock_session_cm, mock_session


class RecordingSender(AlertSender):
    """Sender that records alerts for a given channel."""

    def __init__(self, channel: AlertChannel, result: bool = True):
        self._channel = channel
        self.result = result
        self.sent = []

    @property
    def channel(self) -> AlertChannel:
        return self._channel

    async def send(self, alert: Alert) -> bool:
        self.sent.append(alert)
        return self.result


# =============================================================================
# Alert dataclass
# =============================================================================

class TestAlert:
    """Tests for Alert formatting."""

    def test_to_dict(self):
        alert = Alert(
            timestamp=datetime(2024, 1, 1, 12, 0, tzinfo=UTC),
            priority=AlertPriority.HIGH,
            title="Order failed: BTCUSDT",
            message="-2019 Margin is insufficient",
            category="order",
        )
        data = alert.to_dict()

        assert data["priority"] == "high"
        assert data["category"] == "order"
        assert data["source"] == "bracketbot"

    def test_format_text(self):
        alert = Alert(
            timestamp=datetime(2024, 1, 1, 12, 0, tzinfo=UTC),
            priority=AlertPriority.MEDIUM,
            title="Trade opened: BTCUSDT",
            message="OPEN LONG",
            details={"qty": "0.034"},
        )
        text = alert.format_text()

        assert text.startswith("[MEDIUM] Trade opened: BTCUSDT")
        assert "2024-01-01 12:00:00 UTC" in text
        assert '"qty": "0.034"' in text

    def test_priority_ordering(self):
        assert AlertPriority.LOW.value < AlertPriority.MEDIUM.value < AlertPriority.HIGH.value
        assert AlertPriority.CRITICAL.label == "critical"


# =============================================================================
# Senders
# =============================================================================

class TestSenders:
    """Tests for the channel senders."""

    @pytest.mark.asyncio
    async def test_console_sender(self):
        alert = Alert(datetime.now(tz=UTC), AlertPriority.LOW, "t", "m")
        assert await ConsoleAlertSender().send(alert)

    @pytest.mark.asyncio
    async def test_telegram_posts_to_send_message(self):
        config = AlertConfig(telegram_bot_token="123:abc", telegram_chat_id="42")
        sender = TelegramAlertSender(config)
        alert = Alert(datetime.now(tz=UTC), AlertPriority.HIGH, "Order failed: BTCUSDT", "rejected")

        with patch("bracketbot.lib.alerts.aiohttp.ClientSession") as mock_session_cls:
            session_cm, session = _mock_client_session(200)
            mock_session_cls.return_value = session_cm

            assert await sender.send(alert)

        url = session.post.call_args.args[0]
        assert url == "https://api.telegram.org/bot123:abc/sendMessage"
        payload = session.post.call_args.kwargs["data"]
        assert payload == {"chat_id": "42", "text": "Order failed: BTCUSDT\nrejected"}

    @pytest.mark.asyncio
    async def test_telegram_failure_status(self):
        config = AlertConfig(telegram_bot_token="123:abc", telegram_chat_id="42")
        alert = Alert(datetime.now(tz=UTC), AlertPriority.HIGH, "t", "m")

        with patch("bracketbot.lib.alerts.aiohttp.ClientSession") as mock_session_cls:
            session_cm, _ = _mock_client_session(400)
            mock_session_cls.return_value = session_cm

            assert not await TelegramAlertSender(config).send(alert)

    @pytest.mark.asyncio
    async def test_telegram_not_configured(self):
        alert = Alert(datetime.now(tz=UTC), AlertPriority.HIGH, "t", "m")
        assert not await TelegramAlertSender(AlertConfig()).send(alert)

    @pytest.mark.asyncio
    async def test_telegram_network_error(self):
        config = AlertConfig(telegram_bot_token="123:abc", telegram_chat_id="42")
        alert = Alert(datetime.now(tz=UTC), AlertPriority.HIGH, "t", "m")

        with patch("bracketbot.lib.alerts.aiohttp.ClientSession", side_effect=OSError("down")):
            assert not await TelegramAlertSender(config).send(alert)

    @pytest.mark.asyncio
    async def test_webhook_sender(self):
        config = AlertConfig(webhook_url="https://hooks.example/alert", webhook_headers={"X-Token": "t"})
        alert = Alert(datetime.now(tz=UTC), AlertPriority.MEDIUM, "Trade closed: BTCUSDT", "closed (flip)")

        with patch("bracketbot.lib.alerts.aiohttp.ClientSession") as mock_session_cls:
            session_cm, session = _mock_client_session(204)
            mock_session_cls.return_value = session_cm

            assert await WebhookAlertSender(config).send(alert)

        headers = session.post.call_args.kwargs["headers"]
        assert headers["X-Token"] == "t"
        assert headers["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_webhook_without_url(self):
        alert = Alert(datetime.now(tz=UTC), AlertPriority.MEDIUM, "t", "m")
        assert not await WebhookAlertSender(AlertConfig()).send(alert)


# =============================================================================
# AlertManager
# =============================================================================

class TestAlertManager:
    """Tests for routing, throttling and deduplication."""

    @pytest.fixture
    def manager(self):
        config = AlertConfig(
            console_enabled=False,
            min_priority_for_telegram=AlertPriority.HIGH,
            min_priority_for_webhook=AlertPriority.MEDIUM,
            cooldown_seconds=60.0,
        )
        manager = AlertManager(config)
        for channel in AlertChannel:
            manager.register_sender(RecordingSender(channel))
        return manager

    @pytest.mark.asyncio
    async def test_priority_routing(self, manager):
        await manager.send_alert("Stop updated", "trail", priority=AlertPriority.LOW)
        await manager.send_alert("Trade opened", "OPEN", priority=AlertPriority.MEDIUM)
        await manager.send_alert("Order failed", "rejected", priority=AlertPriority.HIGH)

        assert len(manager._senders[AlertChannel.CONSOLE].sent) == 3
        assert [a.title for a in manager._senders[AlertChannel.WEBHOOK].sent] == ["Trade opened", "Order failed"]
        assert [a.title for a in manager._senders[AlertChannel.TELEGRAM].sent] == ["Order failed"]

    @pytest.mark.asyncio
    async def test_critical_goes_everywhere(self, manager):
        assert await manager.send_critical_alert("Loop failed", "boom")
        assert len(manager._senders[AlertChannel.TELEGRAM].sent) == 1
        assert len(manager._senders[AlertChannel.WEBHOOK].sent) == 1

    @pytest.mark.asyncio
    async def test_duplicate_suppressed(self, manager):
        assert await manager.send_alert("Order failed", "rejected", priority=AlertPriority.HIGH)
        assert not await manager.send_alert("Order failed", "rejected", priority=AlertPriority.HIGH)
        assert await manager.send_alert("Order failed", "rejected", priority=AlertPriority.HIGH, force=True)

    @pytest.mark.asyncio
    async def test_throttle(self, manager):
        manager.config.max_alerts_per_window = 2

        assert await manager.send_alert("a", "1")
        assert await manager.send_alert("b", "2")
        assert not await manager.send_alert("c", "3")

    @pytest.mark.asyncio
    async def test_failed_delivery_not_recorded(self, manager):
        for sender in manager._senders.values():
            sender.result = False

        assert not await manager.send_alert("Order failed", "x", priority=AlertPriority.HIGH)
        assert manager.get_alert_history() == []

    @pytest.mark.asyncio
    async def test_stats(self, manager):
        await manager.send_alert("Trade opened", "OPEN", category="trade")
        await manager.send_alert("Order failed", "x", priority=AlertPriority.HIGH, category="order")

        stats = manager.get_stats()
        assert stats["total_alerts"] == 2
        assert stats["by_category"] == {"trade": 1, "order": 1}
        assert stats["by_priority"] == {"medium": 1, "high": 1}

    @pytest.mark.asyncio
    async def test_no_channels(self):
        manager = AlertManager(AlertConfig(console_enabled=False))
        assert not await manager.send_alert("t", "m")

    @pytest.mark.asyncio
    async def test_expired_cooldown_entries_are_pruned(self, manager):
        await manager.send_alert("Stop updated: BTCUSDT", "stop 100 -> 101")
        old_key = ("system", "Stop updated: BTCUSDT", "stop 100 -> 101")
        manager._last_delivery[old_key] = datetime.now(tz=UTC) - timedelta(seconds=120)

        await manager.send_alert("Stop updated: BTCUSDT", "stop 101 -> 102")

        assert old_key not in manager._last_delivery
        assert len(manager._last_delivery) == 1

    def test_manager_built_before_event_loop(self):
        manager = AlertManager(AlertConfig(console_enabled=False, cooldown_seconds=0))
        sender = RecordingSender(AlertChannel.CONSOLE)
        manager.register_sender(sender)
        assert manager._lock is None

        async def burst():
            return await asyncio.gather(*[
                manager.send_alert(f"Order failed: S{i}", "rejected") for i in range(3)
            ])

        assert asyncio.run(burst()) == [True, True, True]
        assert len(sender.sent) == 3


# =============================================================================
# DecisionLogger bridge
# =============================================================================

class TestDecisionEventHandler:
    """Tests for create_decision_event_handler."""

    @pytest.mark.asyncio
    async def test_routes_decision_events(self):
        alert_manager = MagicMock()
        alert_manager.send_alert = AsyncMock(return_value=True)
        decisions = DecisionLogger("test.bridge", sink=create_decision_event_handler(alert_manager))

        decisions.sizing_rejected("BTCUSDT", "Below minNotional", balance="5")
        await asyncio.sleep(0.01)

        kwargs = alert_manager.send_alert.await_args.kwargs
        assert kwargs["title"] == "Entry rejected by sizing: BTCUSDT"
        assert kwargs["priority"] is AlertPriority.HIGH
        assert kwargs["category"] == "sizing"
        assert kwargs["details"]["balance"] == "5"

    @pytest.mark.asyncio
    async def test_pending_deliveries_are_tracked(self, caplog):
        alert_manager = MagicMock()
        alert_manager.send_alert = AsyncMock(side_effect=RuntimeError("sender exploded"))
        handler = create_decision_event_handler(alert_manager)
        decisions = DecisionLogger("test.bridge", sink=handler)

        decisions.trade_closed("BTCUSDT", "flip")
        assert len(handler.pending) == 1

        await asyncio.sleep(0.01)

        assert handler.pending == set()
        assert "Alert delivery raised: sender exploded" in caplog.text

    def test_outside_event_loop_is_dropped(self):
        alert_manager = MagicMock()
        alert_manager.send_alert = AsyncMock()
        decisions = DecisionLogger("test.bridge", sink=create_decision_event_handler(alert_manager))

        decisions.entry_gated("BTCUSDT", "funding blackout")

        alert_manager.send_alert.assert_not_called()


class TestEnvironment:
    """Tests for create_alert_manager_from_env."""

    def test_telegram_enabled_with_token_and_chat(self, monkeypatch):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
        monkeypatch.setenv("TELEGRAM_CHAT_ID", "42")
        monkeypatch.delenv("ALERT_WEBHOOK_ENABLED", raising=False)

        manager = create_alert_manager_from_env()

        assert manager.config.telegram_enabled
        assert "telegram" in manager.get_stats()["enabled_channels"]
        assert "webhook" not in manager.get_stats()["enabled_channels"]

    def test_telegram_disabled_without_chat(self, monkeypatch):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
        monkeypatch.delenv("TELEGRAM_CHAT_ID", raising=False)

        assert not create_alert_manager_from_env().config.telegram_enabled
