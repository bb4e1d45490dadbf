"""
Tests for the bracket order executor.

Tests cover:
- Stop/target price computation and clamping
- Dry-run mode never calls order endpoints
- Exit orders use the side opposite the entry
- Failed entry and failed protection handling
- Stop updates and market closes
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from bracketbot.api.binance_client import ExchangeAPIError
from bracketbot.api.gateway import OrderResult, OrderSide
from bracketbot.lib.logging_utils import DecisionKind, DecisionLogger
from bracketbot.risk.stops import Side
from bracketbot.trading.order_executor import (
    BracketOrderExecutor,
    ExecutionStatus,
    bracket_prices,
)


@pytest.fixture
def gateway():
    gw = AsyncMock()
    gw.place_market_order.return_value = OrderResult(success=True, order_id=42)
    return gw


@pytest.fixture
def decisions():
    return DecisionLogger("test.decisions")


class TestBracketPrices:
    """Tests for bracket_prices()."""

    def test_long(self, btc_filters):
        stop, target = bracket_prices(
            Side.LONG, Decimal("100"), Decimal("2"), Decimal("2"), btc_filters
        )
        assert stop == Decimal("98")
        assert target == Decimal("104")

    def test_short(self, btc_filters):
        stop, target = bracket_prices(
            Side.SHORT, Decimal("100"), Decimal("2"), Decimal("2"), btc_filters
        )
        assert stop == Decimal("102")
        assert target == Decimal("96")

    def test_clamped_down_to_tick(self, btc_filters):
        stop, target = bracket_prices(
            Side.LONG, Decimal("113985.80"), Decimal("4329.447"), Decimal("2"), btc_filters
        )
        # 109656.353 -> 109656.3 ; 122644.694 -> 122644.6
        assert stop == Decimal("109656.3")
        assert target == Decimal("122644.6")


class TestOpenWithBracket:
    """Tests for BracketOrderExecutor.open_with_bracket."""

    @pytest.mark.asyncio
    async def test_dry_run_never_calls_order_endpoints(self, gateway, btc_filters, decisions):
        executor = BracketOrderExecutor(gateway, Decimal("2"), dry_run=True, decisions=decisions)

        result = await executor.open_with_bracket(
            "BTCUSDT", Side.LONG, Decimal("0.01"), Decimal("100"), Decimal("2"), btc_filters
        )

        assert result.status is ExecutionStatus.DRY_RUN
        assert not result.success
        assert result.stop_price == Decimal("98")
        assert result.target_price == Decimal("104")
        gateway.place_market_order.assert_not_called()
        gateway.place_stop_close.assert_not_called()
        gateway.place_take_profit_close.assert_not_called()

        event = decisions.history[-1]
        assert event.kind is DecisionKind.TRADE_OPENED
        assert event.details["dry_run"] is True

    @pytest.mark.asyncio
    async def test_long_entry_places_bracket(self, gateway, btc_filters):
        executor = BracketOrderExecutor(gateway, Decimal("2"))

        result = await executor.open_with_bracket(
            "BTCUSDT", Side.LONG, Decimal("0.01"), Decimal("100"), Decimal("2"), btc_filters
        )

        assert result.status is ExecutionStatus.FILLED
        assert result.success
        assert result.stop_placed and result.target_placed
        gateway.place_market_order.assert_awaited_once_with("BTCUSDT", OrderSide.BUY, Decimal("0.01"))
        gateway.place_stop_close.assert_awaited_once_with("BTCUSDT", OrderSide.SELL, Decimal("98"))
        gateway.place_take_profit_close.assert_awaited_once_with(
            "BTCUSDT", OrderSide.SELL, Decimal("104")
        )

    @pytest.mark.asyncio
    async def test_short_entry_exits_with_buy(self, gateway, btc_filters):
        executor = BracketOrderExecutor(gateway, Decimal("2"))

        await executor.open_with_bracket(
            "BTCUSDT", Side.SHORT, Decimal("0.01"), Decimal("100"), Decimal("2"), btc_filters
        )

        gateway.place_market_order.assert_awaited_once_with("BTCUSDT", OrderSide.SELL, Decimal("0.01"))
        gateway.place_stop_close.assert_awaited_once_with("BTCUSDT", OrderSide.BUY, Decimal("102"))
        gateway.place_take_profit_close.assert_awaited_once_with(
            "BTCUSDT", OrderSide.BUY, Decimal("96")
        )

    @pytest.mark.asyncio
    async def test_failed_entry_sends_nothing_else(self, gateway, btc_filters, decisions):
        gateway.place_market_order.return_value = OrderResult(success=False, error="-2019 Margin is insufficient")
        executor = BracketOrderExecutor(gateway, Decimal("2"), decisions=decisions)

        result = await executor.open_with_bracket(
            "BTCUSDT", Side.LONG, Decimal("0.01"), Decimal("100"), Decimal("2"), btc_filters
        )

        assert result.status is ExecutionStatus.REJECTED
        assert "Margin is insufficient" in result.error_message
        gateway.place_stop_close.assert_not_called()
        gateway.place_take_profit_close.assert_not_called()
        assert decisions.history[-1].kind is DecisionKind.ORDER_FAILED

    @pytest.mark.asyncio
    async def test_failed_stop_reported_unprotected(self, gateway, btc_filters):
        gateway.place_stop_close.side_effect = ExchangeAPIError("stop rejected", status_code=400)
        executor = BracketOrderExecutor(gateway, Decimal("2"))

        result = await executor.open_with_bracket(
            "BTCUSDT", Side.LONG, Decimal("0.01"), Decimal("100"), Decimal("2"), btc_filters
        )

        assert result.status is ExecutionStatus.FILLED
        assert not result.stop_placed
        assert result.target_placed
        gateway.place_take_profit_close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_take_profit(self, gateway, btc_filters):
        gateway.place_take_profit_close.side_effect = ExchangeAPIError("tp rejected")
        executor = BracketOrderExecutor(gateway, Decimal("2"))

        result = await executor.open_with_bracket(
            "BTCUSDT", Side.LONG, Decimal("0.01"), Decimal("100"), Decimal("2"), btc_filters
        )

        assert result.stop_placed
        assert not result.target_placed
        assert "take-profit" in result.error_message


class TestStopAndClose:
    """Tests for update_stop, close_at_market and flip_close."""

    @pytest.mark.asyncio
    async def test_update_stop(self, gateway):
        executor = BracketOrderExecutor(gateway)

        assert await executor.update_stop("BTCUSDT", Side.LONG, Decimal("100"))
        gateway.place_stop_close.assert_awaited_once_with("BTCUSDT", OrderSide.SELL, Decimal("100"))

    @pytest.mark.asyncio
    async def test_update_stop_failure(self, gateway, decisions):
        gateway.place_stop_close.side_effect = ExchangeAPIError("rejected")
        executor = BracketOrderExecutor(gateway, decisions=decisions)

        assert not await executor.update_stop("BTCUSDT", Side.SHORT, Decimal("100"))
        assert decisions.history[-1].kind is DecisionKind.ORDER_FAILED

    @pytest.mark.asyncio
    async def test_update_stop_dry_run(self, gateway):
        executor = BracketOrderExecutor(gateway, dry_run=True)

        assert await executor.update_stop("BTCUSDT", Side.LONG, Decimal("100"))
        gateway.place_stop_close.assert_not_called()

    @pytest.mark.asyncio
    async def test_place_target(self, gateway):
        executor = BracketOrderExecutor(gateway)

        assert await executor.place_target("BTCUSDT", Side.SHORT, Decimal("96"))
        gateway.place_take_profit_close.assert_awaited_once_with("BTCUSDT", OrderSide.BUY, Decimal("96"))

    @pytest.mark.asyncio
    async def test_place_target_failure(self, gateway, decisions):
        gateway.place_take_profit_close.side_effect = ExchangeAPIError("rejected")
        executor = BracketOrderExecutor(gateway, decisions=decisions)

        assert not await executor.place_target("BTCUSDT", Side.LONG, Decimal("104"))
        assert decisions.history[-1].kind is DecisionKind.ORDER_FAILED
        assert decisions.history[-1].details["target"] == Decimal("104")

    @pytest.mark.asyncio
    async def test_close_at_market(self, gateway):
        executor = BracketOrderExecutor(gateway)

        assert await executor.close_at_market("BTCUSDT", Side.LONG, "time stop")
        gateway.close_position_at_market.assert_awaited_once_with("BTCUSDT")

    @pytest.mark.asyncio
    async def test_close_dry_run(self, gateway):
        executor = BracketOrderExecutor(gateway, dry_run=True)

        assert not await executor.close_at_market("BTCUSDT", Side.LONG, "time stop")
        gateway.close_position_at_market.assert_not_called()

    @pytest.mark.asyncio
    async def test_flip_close(self, gateway):
        executor = BracketOrderExecutor(gateway)

        assert await executor.flip_close("BTCUSDT", Side.SHORT)
        gateway.close_position_at_market.assert_awaited_once_with("BTCUSDT")
