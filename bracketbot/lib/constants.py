"""
Trading constants and default parameters.

This module defines the constants shared by the live bot and the replay
engine:
- Exchange endpoints (Binance USDT-M futures, live and testnet)
- Funding settlement schedule
- Default risk and stop-management parameters
- Quantization constants

Defaults mirror the production settings of the bot: 1% risk per trade,
stop at 1.5 x ATR(14), target at 2R, break-even at 1R, trail by 1 x ATR.
"""

from datetime import timezone
from decimal import Decimal


# =============================================================================
# Timezone
# =============================================================================

UTC = timezone.utc


# =============================================================================
# Exchange Endpoints
# =============================================================================

BINANCE_FUTURES_BASE_URL = "https://fapi.binance.com"
BINANCE_FUTURES_TESTNET_URL = "https://testnet.binancefuture.com"
TELEGRAM_API_URL = "https://api.telegram.org"

# Maximum klines per request accepted by the exchange
MAX_KLINES_PER_REQUEST = 1500
DEFAULT_KLINES_LIMIT = 500


# =============================================================================
# Funding Schedule
# =============================================================================

# Perpetual funding settles three times a day at these UTC hours
FUNDING_HOURS_UTC = (0, 8, 16)


# =============================================================================
# Quantization
# =============================================================================

PRICE_SCALE = Decimal("0.00000001")  # 8 fractional digits
FALLBACK_STEP_SIZE = Decimal("0.000001")  # Used when an exchange reports no step
MIN_STOP_DISTANCE = Decimal("0.001")  # Floor for volatility-derived stop distance


# =============================================================================
# Risk Defaults
# =============================================================================

DEFAULT_RISK_PER_TRADE_PCT = Decimal("0.01")
DEFAULT_ATR_MULTIPLE = Decimal("1.5")
DEFAULT_REWARD_RISK_RATIO = Decimal("2.0")
DEFAULT_BREAK_EVEN_AT_R = Decimal("1.0")
DEFAULT_ATR_TRAIL_MULTIPLE = Decimal("1.0")
DEFAULT_LEVERAGE = 3
DEFAULT_MAX_BARS_IN_TRADE = 0  # 0 disables the time stop


# =============================================================================
# Strategy Defaults
# =============================================================================

DEFAULT_INTERVAL = "1h"
DEFAULT_SYMBOLS = ("BTCUSDT", "ETHUSDT")
DEFAULT_EMA_FAST = 50
DEFAULT_EMA_SLOW = 200
DEFAULT_RSI_PERIOD = 14
DEFAULT_ATR_PERIOD = 14
DEFAULT_RSI_LONG_THRESHOLD = 45.0
DEFAULT_RSI_SHORT_THRESHOLD = 55.0


# =============================================================================
# Replay Defaults
# =============================================================================

DEFAULT_INITIAL_EQUITY = Decimal("1000")
