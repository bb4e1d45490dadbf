"""
Tests for the Binance futures client.

These are unit tests using a fake HTTP session; no network access.

Tests cover:
- Signing, parameter encoding and decimal formatting
- Signed query construction with the server time offset
- Retry policy: GET retried on 5xx/connection errors, POST sent once
- Error mapping (auth, rate limit)
- Kline and exchangeInfo parsing
- Stop replacement cancels previous STOP_MARKET orders first
"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from bracketbot.api.binance_client import (
    BinanceConfig,
    BinanceFuturesClient,
    ExchangeAPIError,
    ExchangeAuthError,
    ExchangeConnectionError,
    ExchangeRateLimitError,
    encode_params,
    format_decimal,
    sign_query,
)
from bracketbot.api.gateway import OrderSide
from bracketbot.lib.config import ExchangeConfig


class FakeResponse:
    def __init__(self, status=200, body=None, headers=None):
        self.status = status
        self._text = "" if body is None else json.dumps(body)
        self.headers = headers or {}

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None


class FakeSession:
    """Replays queued responses (or raises queued exceptions)."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def request(self, method, url, headers=None):
        self.calls.append((method, str(url), headers))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True


@pytest.fixture
def client():
    config = BinanceConfig(
        base_url="https://testnet.example",
        api_key="key",
        api_secret="secret",
        max_retries=3,
    )
    return BinanceFuturesClient(config)


@pytest.fixture
def no_sleep():
    with patch("bracketbot.api.binance_client.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


# =============================================================================
# Helpers
# =============================================================================

class TestSigning:
    """Tests for sign_query, encode_params and format_decimal."""

    def test_sign_query_reference_vector(self):
        secret = "NhqPtmdSJYdKjVHjA7PZj4Mge3R5YNiP1e3UZjInClVN65XAbvqqM6A7H5fATj0j"
        query = (
            "symbol=LTCBTC&side=BUY&type=LIMIT&timeInForce=GTC&quantity=1"
            "&price=0.1&recvWindow=5000&timestamp=1499827319559"
        )
        assert sign_query(secret, query) == (
            "c8db56825ae71d6d79447849e617115f4a920fa2acdcab2b053c4b2838bd6b71"
        )

    def test_encode_params_sorted_and_escaped(self):
        assert encode_params({"b": "2", "a": "x y/z"}) == "a=x%20y%2Fz&b=2"

    def test_encode_params_empty(self):
        assert encode_params({}) == ""

    @pytest.mark.parametrize("value,expected", [
        (Decimal("0.0340"), "0.034"),
        (Decimal("1E+2"), "100"),
        (Decimal("117.50000000"), "117.5"),
        (Decimal("-0"), "0"),
    ])
    def test_format_decimal(self, value, expected):
        assert format_decimal(value) == expected

    def test_build_signed_query(self, client):
        client._time_offset_ms = 250
        with patch("bracketbot.api.binance_client.time.time", return_value=1700000000.0):
            query = client.build_signed_query({"symbol": "BTCUSDT"})

        unsigned = "recvWindow=5000&symbol=BTCUSDT&timestamp=1700000000250"
        assert query == f"{unsigned}&signature={sign_query('secret', unsigned)}"


class TestBinanceConfig:
    """Tests for BinanceConfig construction."""

    def test_from_exchange_config(self):
        exchange = ExchangeConfig(
            use_testnet=False, api_key="k", api_secret="s", max_retries=2, timeout_seconds=5.0
        )
        config = BinanceConfig.from_exchange_config(exchange)

        assert config.base_url == exchange.resolved_base_url
        assert config.api_key == "k"
        assert config.max_retries == 2
        assert config.request_timeout == 5.0

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("BINANCE_API_KEY", "env-key")
        monkeypatch.setenv("BINANCE_USE_TESTNET", "true")
        config = BinanceConfig.from_env()

        assert config.api_key == "env-key"
        assert "testnet" in config.base_url


# =============================================================================
# Request plumbing
# =============================================================================

class TestRequest:
    """Tests for the retry policy and error mapping."""

    @pytest.mark.asyncio
    async def test_get_retried_on_server_error(self, client, no_sleep):
        client._session = FakeSession(FakeResponse(503, {"msg": "busy"}), FakeResponse(200, []))

        assert await client.get_open_orders("BTCUSDT") == []
        assert len(client._session.calls) == 2
        no_sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_gives_up_after_max_retries(self, client, no_sleep):
        client._session = FakeSession(*[FakeResponse(500, {"msg": "down"}) for _ in range(3)])

        with pytest.raises(ExchangeAPIError) as exc_info:
            await client.request("GET", "/fapi/v1/time")
        assert exc_info.value.status_code == 500
        assert len(client._session.calls) == 3

    @pytest.mark.asyncio
    async def test_get_retried_on_connection_error(self, client, no_sleep):
        client._session = FakeSession(
            aiohttp.ClientConnectionError("reset"),
            FakeResponse(200, {"serverTime": 1}),
        )

        data = await client.request("GET", "/fapi/v1/time")
        assert data == {"serverTime": 1}

    @pytest.mark.asyncio
    async def test_connection_error_surfaces(self, client, no_sleep):
        client._session = FakeSession(*[aiohttp.ClientConnectionError("reset") for _ in range(3)])

        with pytest.raises(ExchangeConnectionError):
            await client.request("GET", "/fapi/v1/time")

    @pytest.mark.asyncio
    async def test_post_sent_once(self, client, no_sleep):
        client._session = FakeSession(FakeResponse(503, {"msg": "busy"}))

        result = await client.place_market_order("BTCUSDT", OrderSide.BUY, Decimal("0.01"))

        assert not result.success
        assert len(client._session.calls) == 1
        no_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_auth_error(self, client):
        client._session = FakeSession(FakeResponse(401, {"code": -2015, "msg": "Invalid API-key"}))

        with pytest.raises(ExchangeAuthError) as exc_info:
            await client.request("GET", "/fapi/v2/balance", signed=True)
        assert "-2015" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_rate_limit_after_retries(self, client, no_sleep):
        client._session = FakeSession(
            *[FakeResponse(429, {"msg": "slow down"}, {"Retry-After": "7"}) for _ in range(3)]
        )

        with pytest.raises(ExchangeRateLimitError) as exc_info:
            await client.request("GET", "/fapi/v1/klines")
        assert exc_info.value.retry_after == 7.0

    @pytest.mark.asyncio
    async def test_signed_request_carries_key_and_signature(self, client):
        client._session = FakeSession(FakeResponse(200, []))

        await client.request("GET", "/fapi/v2/balance", signed=True)

        method, url, headers = client._session.calls[0]
        assert method == "GET"
        assert url.startswith("https://testnet.example/fapi/v2/balance?")
        assert "&signature=" in url
        assert headers == {"X-MBX-APIKEY": "key"}


# =============================================================================
# Endpoints
# =============================================================================

class TestEndpoints:
    """Tests for response parsing and order sequencing."""

    @pytest.mark.asyncio
    async def test_sync_time(self, client):
        client.request = AsyncMock(return_value={"serverTime": 1700000001000})
        with patch("bracketbot.api.binance_client.time.time", return_value=1700000000.0):
            offset = await client.sync_time()

        assert offset == 1000
        assert client.time_offset_ms == 1000

    @pytest.mark.asyncio
    async def test_get_klines_marks_forming_bar(self, client):
        rows = [
            [1700000000000, "100", "101", "99", "100.5", "10", 1700003599999],
            [1700003600000, "100.5", "102", "100", "101.5", "12", 1700007199999],
        ]
        client.request = AsyncMock(return_value=rows)
        with patch("bracketbot.api.binance_client.time.time", return_value=1700005000.0):
            klines = await client.get_klines("btcusdt", "1h", limit=5000, start_ms=1)

        params = client.request.await_args.args[2]
        assert params["symbol"] == "BTCUSDT"
        assert params["limit"] == "1500"
        assert params["startTime"] == "1"
        assert "endTime" not in params

        assert klines[0].is_closed
        assert not klines[1].is_closed
        assert klines[1].close == Decimal("101.5")

    @pytest.mark.asyncio
    async def test_get_filter_set(self, client):
        client.request = AsyncMock(return_value={"symbols": [{
            "symbol": "BTCUSDT",
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001"},
                {"filterType": "MIN_NOTIONAL", "notional": "100"},
            ],
        }]})

        filters = await client.get_filter_set("BTCUSDT")

        assert filters.tick_size == Decimal("0.10")
        assert filters.min_notional == Decimal("100")

    @pytest.mark.asyncio
    async def test_balance_and_position(self, client):
        client.request = AsyncMock(side_effect=[
            [{"asset": "BNB", "availableBalance": "3"}, {"asset": "USDT", "availableBalance": "812.5"}],
            [{"symbol": "BTCUSDT", "positionAmt": "-0.020"}],
        ])

        assert await client.get_available_balance() == Decimal("812.5")
        assert await client.get_open_position_size("BTCUSDT") == Decimal("-0.020")

    @pytest.mark.asyncio
    async def test_stop_replacement_cancels_first(self, client):
        client.request = AsyncMock(side_effect=[
            [{"orderId": 1, "type": "STOP_MARKET"}, {"orderId": 2, "type": "TAKE_PROFIT_MARKET"}],
            {},
            {"orderId": 3},
        ])

        await client.place_stop_close("BTCUSDT", OrderSide.SELL, Decimal("117.50"))

        calls = client.request.await_args_list
        assert [c.args[0] for c in calls] == ["GET", "DELETE", "POST"]
        assert calls[1].args[2]["orderId"] == "1"
        stop_params = calls[2].args[2]
        assert stop_params["type"] == "STOP_MARKET"
        assert stop_params["side"] == "SELL"
        assert stop_params["stopPrice"] == "117.5"
        assert stop_params["closePosition"] == "true"

    @pytest.mark.asyncio
    async def test_close_position_reduce_only(self, client):
        client.request = AsyncMock(side_effect=[
            [{"symbol": "BTCUSDT", "positionAmt": "-0.5"}],
            {"orderId": 9},
        ])

        await client.close_position_at_market("BTCUSDT")

        params = client.request.await_args.args[2]
        assert params["side"] == "BUY"
        assert params["quantity"] == "0.5"
        assert params["reduceOnly"] == "true"

    @pytest.mark.asyncio
    async def test_close_when_flat_is_noop(self, client):
        client.request = AsyncMock(return_value=[{"symbol": "BTCUSDT", "positionAmt": "0"}])

        await client.close_position_at_market("BTCUSDT")

        assert client.request.await_count == 1

    @pytest.mark.asyncio
    async def test_context_manager_syncs_and_closes(self, client):
        client.sync_time = AsyncMock(return_value=0)
        session = FakeSession()
        client._session = session

        async with client:
            client.sync_time.assert_awaited_once()
        assert session.closed
