"""
Binance USDT-M Futures Client.

Implements ExchangeGateway over the Binance futures REST API.

Key Features:
- HMAC-SHA256 signed requests (X-MBX-APIKEY header, hex signature)
- Server time offset correction for signed timestamps
- Retry with exponential backoff and jitter for idempotent (GET) requests
  on 429, 5xx and connection errors
- Signed order placement is sent exactly once; failures are surfaced, never
  silently retried
- Protective stop replacement cancels the previous STOP_MARKET orders first

API Reference: https://developers.binance.com/docs/derivatives/usds-margined-futures
"""

import asyncio
import hashlib
import hmac
import json
import logging
import os
import random
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import aiohttp
from yarl import URL

from bracketbot.api.gateway import Kline, OrderResult, OrderSide
from bracketbot.lib.config import ExchangeConfig
from bracketbot.lib.constants import (
    BINANCE_FUTURES_BASE_URL,
    BINANCE_FUTURES_TESTNET_URL,
    MAX_KLINES_PER_REQUEST,
    UTC,
)
from bracketbot.risk.filters import FilterSet

logger = logging.getLogger(__name__)


class ExchangeAPIError(Exception):
    """Base exception for exchange API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, response: Optional[Any] = None):
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(message)


class ExchangeAuthError(ExchangeAPIError):
    """API key rejected or signature invalid."""
    pass


class ExchangeRateLimitError(ExchangeAPIError):
    """Rate limit exceeded."""

    def __init__(self, message: str, retry_after: float = 30.0, status_code: Optional[int] = 429):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class ExchangeConnectionError(ExchangeAPIError):
    """Connection error."""
    pass


@dataclass
class BinanceConfig:
    """Configuration for the Binance futures client.

    Attributes:
        base_url: REST base URL (testnet by default)
        api_key: API key sent in X-MBX-APIKEY
        api_secret: Secret used to sign requests
        recv_window_ms: Validity window of signed requests
        request_timeout: Default request timeout in seconds
        max_retries: Maximum attempts for idempotent requests
        initial_backoff: First retry delay in seconds (doubles per attempt)
        max_backoff: Maximum backoff delay in seconds
        time_offset_warn_ms: Log a warning when the clock offset exceeds this
    """
    base_url: str = BINANCE_FUTURES_TESTNET_URL
    api_key: str = ""
    api_secret: str = ""
    recv_window_ms: int = 5000
    request_timeout: float = 30.0
    max_retries: int = 5
    initial_backoff: float = 1.0
    max_backoff: float = 30.0
    time_offset_warn_ms: int = 1000

    @classmethod
    def from_env(cls) -> "BinanceConfig":
        """Create config from environment variables.

        Environment variables:
            BINANCE_API_KEY: API key
            BINANCE_API_SECRET: API secret
            BINANCE_USE_TESTNET: "false" to trade mainnet (default true)
        """
        use_testnet = os.getenv("BINANCE_USE_TESTNET", "true").lower() in ("true", "1", "yes")
        return cls(
            base_url=BINANCE_FUTURES_TESTNET_URL if use_testnet else BINANCE_FUTURES_BASE_URL,
            api_key=os.getenv("BINANCE_API_KEY", ""),
            api_secret=os.getenv("BINANCE_API_SECRET", ""),
        )

    @classmethod
    def from_exchange_config(cls, config: ExchangeConfig) -> "BinanceConfig":
        """Create config from the application's exchange section."""
        return cls(
            base_url=config.resolved_base_url,
            api_key=config.api_key or "",
            api_secret=config.api_secret or "",
            recv_window_ms=config.recv_window_ms,
            request_timeout=config.timeout_seconds,
            max_retries=config.max_retries,
            initial_backoff=config.retry_base_delay_seconds,
            max_backoff=config.max_retry_delay_seconds,
        )


def sign_query(secret: str, query: str) -> str:
    """HMAC-SHA256 of query keyed by secret, as lowercase hex."""
    return hmac.new(secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()


def encode_params(params: Dict[str, str]) -> str:
    """Percent-encode params in ordinal key order (the order that gets signed)."""
    return urlencode(sorted(params.items()), quote_via=quote, safe="")


def format_decimal(value: Decimal) -> str:
    """Plain (non-scientific) decimal string without trailing zeros."""
    text = format(value.normalize(), "f")
    return text if text != "-0" else "0"


def _ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=UTC)


class BinanceFuturesClient:
    """Async client for Binance USDT-M futures.

    Example:
        async with BinanceFuturesClient(config=BinanceConfig.from_env()) as client:
            filters = await client.get_filter_set("BTCUSDT")
            balance = await client.get_available_balance()
    """

    RETRYABLE_STATUS = (429, 500, 502, 503, 504)

    def __init__(self, config: Optional[BinanceConfig] = None):
        """Initialize the client.

        Args:
            config: Configuration object (uses env vars if not provided)
        """
        self.config = config or BinanceConfig.from_env()
        self._session: Optional[aiohttp.ClientSession] = None
        self._time_offset_ms = 0

    @property
    def time_offset_ms(self) -> int:
        """Server time minus local time, from the last sync."""
        return self._time_offset_ms

    def now_ms(self) -> int:
        """Local epoch milliseconds corrected by the server offset."""
        return int(time.time() * 1000) + self._time_offset_ms

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    # =========================================================================
    # Request plumbing
    # =========================================================================

    def build_signed_query(self, params: Dict[str, str]) -> str:
        """Add timestamp and recvWindow, encode, and append the signature."""
        signed = dict(params)
        signed["timestamp"] = str(self.now_ms())
        signed["recvWindow"] = str(self.config.recv_window_ms)
        query = encode_params(signed)
        signature = sign_query(self.config.api_secret, query)
        return f"{query}&signature={signature}"

    def _auth_headers(self) -> Dict[str, str]:
        return {"X-MBX-APIKEY": self.config.api_key}

    def _backoff_delay(self, attempt: int) -> float:
        delay = min(self.config.initial_backoff * (2 ** attempt), self.config.max_backoff)
        return delay + random.uniform(0.0, 1.0)

    @staticmethod
    def _parse_body(text: str) -> Any:
        if not text:
            return {}
        try:
            return json.loads(text)
        except ValueError:
            return {"msg": text}

    @staticmethod
    def _raise_for_status(status: int, data: Any, headers: Any) -> None:
        if status < 400:
            return

        msg = data.get("msg", f"HTTP {status}") if isinstance(data, dict) else f"HTTP {status}"
        if isinstance(data, dict) and "code" in data:
            msg = f"{msg} (code {data['code']})"

        if status in (401, 403):
            raise ExchangeAuthError(msg, status_code=status, response=data)
        if status in (418, 429):
            retry_after = float(headers.get("Retry-After", 30))
            raise ExchangeRateLimitError(msg, retry_after=retry_after, status_code=status)
        raise ExchangeAPIError(msg, status_code=status, response=data)

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        signed: bool = False,
    ) -> Any:
        """Make an HTTP request to the API.

        GET requests are retried on 429, 5xx and connection errors with
        exponential backoff plus up to one second of jitter. Other methods
        are sent once.

        Args:
            method: HTTP method (GET, POST, DELETE)
            path: API path (e.g., "/fapi/v1/order")
            params: Query parameters (string values)
            signed: Whether to sign the request

        Returns:
            Parsed JSON response

        Raises:
            ExchangeAPIError: On API error
            ExchangeAuthError: On 401/403
            ExchangeRateLimitError: If still rate limited after retries
            ExchangeConnectionError: On network failure after retries
        """
        params = params or {}
        attempts = self.config.max_retries if method.upper() == "GET" else 1
        session = await self._get_session()
        last_error: Optional[ExchangeAPIError] = None

        for attempt in range(attempts):
            query = self.build_signed_query(params) if signed else encode_params(params)
            raw_url = f"{self.config.base_url}{path}"
            if query:
                raw_url = f"{raw_url}?{query}"
            headers = self._auth_headers() if signed or self.config.api_key else {}
            is_last = attempt == attempts - 1

            try:
                async with session.request(
                    method,
                    URL(raw_url, encoded=True),
                    headers=headers,
                ) as response:
                    text = await response.text()
                    data = self._parse_body(text)

                    if response.status in self.RETRYABLE_STATUS and not is_last:
                        delay = self._backoff_delay(attempt)
                        logger.warning(
                            f"HTTP {response.status} on {method} {path}, retrying in "
                            f"{delay:.2f}s (attempt {attempt + 1})"
                        )
                        await asyncio.sleep(delay)
                        continue

                    if response.status >= 400:
                        logger.error(f"Binance error {response.status} on {method} {path}: {text}")
                    self._raise_for_status(response.status, data, response.headers)
                    return data

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = ExchangeConnectionError(f"Connection error: {e}")
                if not is_last:
                    delay = self._backoff_delay(attempt)
                    logger.warning(f"Connection error on {method} {path}, retrying in {delay:.2f}s: {e}")
                    await asyncio.sleep(delay)
                    continue
                raise last_error from e

        if last_error:
            raise last_error
        raise ExchangeAPIError(f"{method} {path} failed after {attempts} attempts")

    # =========================================================================
    # Market data and account
    # =========================================================================

    async def sync_time(self) -> int:
        """Measure the server clock offset used for signed timestamps.

        Returns:
            Offset in milliseconds (server minus local)
        """
        data = await self.request("GET", "/fapi/v1/time")
        server_ms = int(data["serverTime"])
        local_ms = int(time.time() * 1000)
        self._time_offset_ms = server_ms - local_ms
        if abs(self._time_offset_ms) > self.config.time_offset_warn_ms:
            logger.warning(f"Binance time offset = {self._time_offset_ms} ms")
        else:
            logger.debug(f"Binance time offset = {self._time_offset_ms} ms")
        return self._time_offset_ms

    async def get_klines(
        self,
        symbol: str,
        interval: str,
        limit: int = 500,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> List[Kline]:
        """Fetch bars, the most recent ones unless a time range is given.

        The limit is clamped to 1..1500. A bar whose close time is still in
        the future is returned with is_closed=False.
        """
        limit = max(1, min(limit, MAX_KLINES_PER_REQUEST))
        params = {"symbol": symbol.upper(), "interval": interval, "limit": str(limit)}
        if start_ms is not None:
            params["startTime"] = str(start_ms)
        if end_ms is not None:
            params["endTime"] = str(end_ms)
        data = await self.request("GET", "/fapi/v1/klines", params)
        now_ms = self.now_ms()

        klines = []
        for row in data:
            close_ms = int(row[6])
            klines.append(Kline(
                open_time=_ms_to_datetime(int(row[0])),
                open=Decimal(str(row[1])),
                high=Decimal(str(row[2])),
                low=Decimal(str(row[3])),
                close=Decimal(str(row[4])),
                volume=Decimal(str(row[5])),
                close_time=_ms_to_datetime(close_ms),
                is_closed=close_ms < now_ms,
            ))
        return klines

    async def get_filter_set(self, symbol: str) -> FilterSet:
        """Load the trading filters of symbol from exchangeInfo."""
        data = await self.request("GET", "/fapi/v1/exchangeInfo", {"symbol": symbol.upper()})
        for entry in data.get("symbols", []):
            if entry.get("symbol", "").upper() == symbol.upper():
                return FilterSet.from_exchange_info(entry)
        raise ExchangeAPIError(f"Symbol {symbol} not found in exchangeInfo", response=data)

    async def get_available_balance(self) -> Decimal:
        """Available USDT balance (0 if the asset is absent)."""
        data = await self.request("GET", "/fapi/v2/balance", signed=True)
        for entry in data:
            if str(entry.get("asset", "")).upper() == "USDT":
                return Decimal(str(entry.get("availableBalance", "0")))
        return Decimal("0")

    async def get_open_position_size(self, symbol: str) -> Decimal:
        """Signed position amount for symbol (0 when flat)."""
        data = await self.request(
            "GET", "/fapi/v2/positionRisk", {"symbol": symbol.upper()}, signed=True
        )
        for entry in data:
            if str(entry.get("symbol", "")).upper() == symbol.upper():
                return Decimal(str(entry.get("positionAmt", "0")))
        return Decimal("0")

    async def get_open_orders(self, symbol: str) -> List[Dict[str, Any]]:
        data = await self.request(
            "GET", "/fapi/v1/openOrders", {"symbol": symbol.upper()}, signed=True
        )
        return list(data)

    # =========================================================================
    # Orders
    # =========================================================================

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        """Set the account leverage for symbol."""
        data = await self.request(
            "POST",
            "/fapi/v1/leverage",
            {"symbol": symbol.upper(), "leverage": str(leverage)},
            signed=True,
        )
        logger.info(f"Leverage changed on {symbol} -> x{leverage}. Response: {data}")

    async def place_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        reduce_only: bool = False,
    ) -> OrderResult:
        """Submit a market order.

        Returns:
            OrderResult; exchange rejections and network failures are
            reported as success=False instead of raising
        """
        params = {
            "symbol": symbol.upper(),
            "side": side.value,
            "type": "MARKET",
            "quantity": format_decimal(quantity),
            "reduceOnly": "true" if reduce_only else "false",
        }
        try:
            data = await self.request("POST", "/fapi/v1/order", params, signed=True)
        except ExchangeAPIError as e:
            logger.error(f"Market order failed for {symbol} {side.value} {quantity}: {e}")
            return OrderResult(success=False, error=str(e))

        return OrderResult(success=True, order_id=data.get("orderId") if isinstance(data, dict) else None)

    async def cancel_open_orders(self, symbol: str, order_type: Optional[str] = None) -> int:
        """Cancel open orders of symbol, optionally only those of order_type.

        Returns:
            Number of orders cancelled
        """
        orders = await self.get_open_orders(symbol)
        cancelled = 0
        for order in orders:
            if order_type and order.get("type") != order_type:
                continue
            await self.request(
                "DELETE",
                "/fapi/v1/order",
                {"symbol": symbol.upper(), "orderId": str(order["orderId"])},
                signed=True,
            )
            cancelled += 1
        if cancelled:
            logger.debug(f"Cancelled {cancelled} {order_type or 'open'} orders on {symbol}")
        return cancelled

    async def _place_close_trigger(
        self, symbol: str, side: OrderSide, order_type: str, trigger_price: Decimal
    ) -> None:
        params = {
            "symbol": symbol.upper(),
            "side": side.value,
            "type": order_type,
            "stopPrice": format_decimal(trigger_price),
            "closePosition": "true",
            "timeInForce": "GTC",
        }
        await self.request("POST", "/fapi/v1/order", params, signed=True)

    async def place_stop_close(self, symbol: str, side: OrderSide, stop_price: Decimal) -> None:
        """Replace the protective stop: cancel previous STOP_MARKET orders, then place one."""
        await self.cancel_open_orders(symbol, order_type="STOP_MARKET")
        await self._place_close_trigger(symbol, side, "STOP_MARKET", stop_price)

    async def place_take_profit_close(self, symbol: str, side: OrderSide, price: Decimal) -> None:
        """Place a TAKE_PROFIT_MARKET order that closes the whole position."""
        await self._place_close_trigger(symbol, side, "TAKE_PROFIT_MARKET", price)

    async def close_position_at_market(self, symbol: str) -> None:
        """Flatten symbol with a reduce-only market order (no-op when flat)."""
        amount = await self.get_open_position_size(symbol)
        if amount == 0:
            return

        side = OrderSide.SELL if amount > 0 else OrderSide.BUY
        result = await self.place_market_order(symbol, side, abs(amount), reduce_only=True)
        if not result.success:
            raise ExchangeAPIError(f"Failed to close {symbol} at market: {result.error}")

    async def __aenter__(self) -> "BinanceFuturesClient":
        """Async context manager entry."""
        await self.sync_time()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
