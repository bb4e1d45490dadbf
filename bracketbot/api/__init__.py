"""
Exchange API integration.

- gateway: ExchangeGateway protocol and shared value types
- binance_client: Binance USDT-M futures REST client
"""

from bracketbot.api.gateway import (
    ExchangeGateway,
    Kline,
    OrderResult,
    OrderSide,
    klines_to_frame,
)
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

__all__ = [
    "ExchangeGateway",
    "Kline",
    "OrderResult",
    "OrderSide",
    "klines_to_frame",
    "BinanceConfig",
    "BinanceFuturesClient",
    "ExchangeAPIError",
    "ExchangeAuthError",
    "ExchangeConnectionError",
    "ExchangeRateLimitError",
    "encode_params",
    "format_decimal",
    "sign_query",
]
