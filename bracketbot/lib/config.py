"""
Bot configuration: dataclass sections loaded from YAML, overridden from
the environment, and checked by validate_config before anything trades.

Configuration Hierarchy (highest to lowest priority):
1. Environment variables (BINANCE_API_KEY, BINANCE_API_SECRET, BRACKETBOT_*)
2. User-provided config file
3. Default values from constants.py

Risk fields are held as Decimal; YAML floats are converted through their
string form so 0.01 stays exactly 0.01.

Usage:
    config = load_config("config/default.yaml")
    print(config.risk.risk_per_trade_pct)
    print(config.symbols)
"""

import os
from dataclasses import asdict, dataclass, field, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, List, Optional

import yaml

from bracketbot.lib.alerts import AlertConfig, AlertPriority
from bracketbot.lib.constants import (
    # Exchange defaults
    BINANCE_FUTURES_BASE_URL,
    BINANCE_FUTURES_TESTNET_URL,
    # Risk defaults
    DEFAULT_RISK_PER_TRADE_PCT,
    DEFAULT_ATR_MULTIPLE,
    DEFAULT_REWARD_RISK_RATIO,
    DEFAULT_BREAK_EVEN_AT_R,
    DEFAULT_ATR_TRAIL_MULTIPLE,
    DEFAULT_LEVERAGE,
    DEFAULT_MAX_BARS_IN_TRADE,
    MIN_STOP_DISTANCE,
    # Strategy defaults
    DEFAULT_INTERVAL,
    DEFAULT_SYMBOLS,
    DEFAULT_EMA_FAST,
    DEFAULT_EMA_SLOW,
    DEFAULT_RSI_PERIOD,
    DEFAULT_ATR_PERIOD,
    DEFAULT_RSI_LONG_THRESHOLD,
    DEFAULT_RSI_SHORT_THRESHOLD,
    DEFAULT_KLINES_LIMIT,
    # Replay defaults
    DEFAULT_INITIAL_EQUITY,
)


# =============================================================================
# Configuration Dataclasses
# =============================================================================

@dataclass
class ExchangeConfig:
    """Configuration for the exchange connection."""
    use_testnet: bool = True
    # Explicit base URL (overrides use_testnet when set)
    base_url: Optional[str] = None
    # Credentials (loaded from env)
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    # Request settings
    recv_window_ms: int = 5000
    max_retries: int = 5
    retry_base_delay_seconds: float = 1.0
    max_retry_delay_seconds: float = 30.0
    timeout_seconds: float = 30.0

    @property
    def resolved_base_url(self) -> str:
        """Base URL actually used for requests."""
        if self.base_url:
            return self.base_url
        return BINANCE_FUTURES_TESTNET_URL if self.use_testnet else BINANCE_FUTURES_BASE_URL


@dataclass
class StrategyConfig:
    """Configuration for the EMA/RSI trend strategy and its indicators."""
    ema_fast: int = DEFAULT_EMA_FAST
    ema_slow: int = DEFAULT_EMA_SLOW
    rsi_period: int = DEFAULT_RSI_PERIOD
    atr_period: int = DEFAULT_ATR_PERIOD
    rsi_long_threshold: float = DEFAULT_RSI_LONG_THRESHOLD
    rsi_short_threshold: float = DEFAULT_RSI_SHORT_THRESHOLD
    # Bars requested per poll
    klines_limit: int = DEFAULT_KLINES_LIMIT


@dataclass
class RiskConfig:
    """Configuration for sizing and stop management."""
    risk_per_trade_pct: Decimal = DEFAULT_RISK_PER_TRADE_PCT
    atr_multiple: Decimal = DEFAULT_ATR_MULTIPLE
    reward_risk_ratio: Decimal = DEFAULT_REWARD_RISK_RATIO
    break_even_at_r: Decimal = DEFAULT_BREAK_EVEN_AT_R
    atr_trail_multiple: Decimal = DEFAULT_ATR_TRAIL_MULTIPLE
    min_stop_distance: Decimal = MIN_STOP_DISTANCE
    leverage: int = DEFAULT_LEVERAGE
    # 0 disables the time stop
    max_bars_in_trade: int = DEFAULT_MAX_BARS_IN_TRADE
    # Replay only
    initial_equity: Decimal = DEFAULT_INITIAL_EQUITY


@dataclass
class EntryGateConfig:
    """Configuration for the optional entry gates."""
    funding_blackout_enabled: bool = False
    funding_blackout_minutes: int = 10
    volatility_band_enabled: bool = False
    volatility_min_pct: float = 10.0
    volatility_max_pct: float = 90.0
    volatility_lookback: int = 100


@dataclass
class OutputConfig:
    """Configuration for output and logging."""
    output_dir: str = "./results"
    logs_dir: str = "./logs"
    log_level: str = "INFO"
    use_colors: bool = True


@dataclass
class BotConfig:
    """Main configuration container."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    gates: EntryGateConfig = field(default_factory=EntryGateConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    # Symbols traded concurrently
    symbols: List[str] = field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    interval: str = DEFAULT_INTERVAL
    # Dry-run never calls order endpoints
    dry_run: bool = True
    poll_interval_seconds: float = 30.0


# Fields converted to Decimal when loaded
_DECIMAL_FIELDS = {
    "risk_per_trade_pct", "atr_multiple", "reward_risk_ratio",
    "break_even_at_r", "atr_trail_multiple", "min_stop_distance",
    "initial_equity",
}

# Alert routing thresholds given by name in YAML
_PRIORITY_FIELDS = {"min_priority_for_telegram", "min_priority_for_webhook"}


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(
    config_path: Optional[str] = None,
    override_env: bool = True
) -> BotConfig:
    """
    Load configuration from YAML file with optional environment overrides.

    Args:
        config_path: Path to YAML config file (optional)
        override_env: If True, apply environment variable overrides

    Returns:
        BotConfig instance

    Example:
        config = load_config("config/default.yaml")
        print(config.risk.atr_multiple)  # Decimal('1.5')
    """
    config = BotConfig()

    if config_path:
        config = _load_from_yaml(config_path, config)

    if override_env:
        config = _apply_env_overrides(config)

    return config


def _load_from_yaml(config_path: str, base_config: BotConfig) -> BotConfig:
    """Load configuration from YAML file."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path) as f:
        yaml_data = yaml.safe_load(f)

    if yaml_data is None:
        return base_config

    if not isinstance(yaml_data, dict):
        raise ConfigValidationError(f"Config file must contain a mapping: {config_path}")

    for section in ("exchange", "strategy", "risk", "gates", "alerts", "output"):
        if section in yaml_data:
            setattr(
                base_config,
                section,
                _update_dataclass(getattr(base_config, section), yaml_data[section]),
            )

    if "symbols" in yaml_data:
        symbols = yaml_data["symbols"]
        if isinstance(symbols, str):
            symbols = symbols.split(",")
        base_config.symbols = [s.strip().upper() for s in symbols if s and s.strip()]

    if "interval" in yaml_data:
        base_config.interval = str(yaml_data["interval"])

    if "dry_run" in yaml_data:
        base_config.dry_run = bool(yaml_data["dry_run"])

    if "poll_interval_seconds" in yaml_data:
        base_config.poll_interval_seconds = float(yaml_data["poll_interval_seconds"])

    return base_config


def _to_decimal(name: str, value: Any) -> Decimal:
    """Convert a config value to Decimal without binary float artifacts."""
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ConfigValidationError(f"{name} must be numeric, got {value!r}") from e


def _update_dataclass(instance: Any, data: dict) -> Any:
    """Update dataclass fields from dictionary."""
    if not data:
        return instance

    field_names = {f.name for f in fields(instance)}

    for key, value in data.items():
        normalized_key = key.replace(".", "_").replace("-", "_")
        if normalized_key not in field_names:
            continue

        if normalized_key in _DECIMAL_FIELDS:
            value = _to_decimal(normalized_key, value)
        elif normalized_key in _PRIORITY_FIELDS and isinstance(value, str):
            value = AlertPriority[value.upper()]

        setattr(instance, normalized_key, value)

    return instance


def _env_flag(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: BotConfig) -> BotConfig:
    """Apply environment variable overrides to config."""

    # API credentials (always from env for security)
    if env_val := os.getenv("BINANCE_API_KEY"):
        config.exchange.api_key = env_val

    if env_val := os.getenv("BINANCE_API_SECRET"):
        config.exchange.api_secret = env_val

    if env_val := os.getenv("BRACKETBOT_USE_TESTNET"):
        config.exchange.use_testnet = _env_flag(env_val)

    if env_val := os.getenv("BRACKETBOT_DRY_RUN"):
        config.dry_run = _env_flag(env_val)

    # Risk parameters
    if env_val := os.getenv("BRACKETBOT_RISK_PER_TRADE_PCT"):
        config.risk.risk_per_trade_pct = _to_decimal("BRACKETBOT_RISK_PER_TRADE_PCT", env_val)

    if env_val := os.getenv("BRACKETBOT_LEVERAGE"):
        config.risk.leverage = int(env_val)

    # Universe
    if env_val := os.getenv("BRACKETBOT_SYMBOLS"):
        config.symbols = [s.strip().upper() for s in env_val.split(",") if s.strip()]

    if env_val := os.getenv("BRACKETBOT_INTERVAL"):
        config.interval = env_val

    # Alerts
    if env_val := os.getenv("TELEGRAM_BOT_TOKEN"):
        config.alerts.telegram_bot_token = env_val

    if env_val := os.getenv("TELEGRAM_CHAT_ID"):
        config.alerts.telegram_chat_id = env_val

    # Output
    if env_val := os.getenv("BRACKETBOT_LOG_LEVEL"):
        config.output.log_level = env_val.upper()

    return config


def load_config_from_env() -> BotConfig:
    """
    Load configuration purely from environment variables.

    Useful for containerized deployments where config files aren't available.

    Returns:
        BotConfig instance
    """
    return load_config(config_path=None, override_env=True)


# =============================================================================
# Configuration Validation
# =============================================================================

class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


def validate_config(config: BotConfig) -> List[str]:
    """
    Validate configuration values.

    Args:
        config: BotConfig to validate

    Returns:
        List of validation warnings (empty if valid)

    Raises:
        ConfigValidationError: If critical validation fails
    """
    warnings = []
    errors = []
    risk = config.risk

    # Risk validation
    if risk.risk_per_trade_pct <= 0:
        errors.append(f"risk_per_trade_pct ({risk.risk_per_trade_pct}) must be > 0")
    elif risk.risk_per_trade_pct > Decimal("0.05"):
        warnings.append(
            f"risk_per_trade_pct ({risk.risk_per_trade_pct}) above 5% risks fast ruin"
        )

    if risk.atr_multiple <= 0:
        errors.append(f"atr_multiple ({risk.atr_multiple}) must be > 0")

    if risk.reward_risk_ratio <= 0:
        errors.append(f"reward_risk_ratio ({risk.reward_risk_ratio}) must be > 0")

    if risk.break_even_at_r <= 0:
        errors.append(f"break_even_at_r ({risk.break_even_at_r}) must be > 0")
    elif risk.break_even_at_r >= risk.reward_risk_ratio:
        warnings.append(
            f"break_even_at_r ({risk.break_even_at_r}) >= reward_risk_ratio "
            f"({risk.reward_risk_ratio}) - break-even will never trigger before target"
        )

    if risk.atr_trail_multiple <= 0:
        errors.append(f"atr_trail_multiple ({risk.atr_trail_multiple}) must be > 0")

    if risk.min_stop_distance <= 0:
        errors.append(f"min_stop_distance ({risk.min_stop_distance}) must be > 0")

    if risk.max_bars_in_trade < 0:
        errors.append("max_bars_in_trade cannot be negative")

    if not 1 <= risk.leverage <= 125:
        errors.append(f"leverage ({risk.leverage}) must be between 1 and 125")
    elif risk.leverage > 10:
        warnings.append(f"leverage ({risk.leverage}) above 10x magnifies liquidation risk")

    # Strategy validation
    strategy = config.strategy
    if strategy.ema_fast >= strategy.ema_slow:
        errors.append(
            f"ema_fast ({strategy.ema_fast}) must be < ema_slow ({strategy.ema_slow})"
        )

    if strategy.klines_limit < strategy.ema_slow + 5:
        warnings.append(
            f"klines_limit ({strategy.klines_limit}) below ema_slow + 5 - "
            f"strategy will never leave warm-up"
        )

    # Gate validation
    gates = config.gates
    if gates.volatility_band_enabled and not (
        0 <= gates.volatility_min_pct < gates.volatility_max_pct <= 100
    ):
        errors.append(
            f"volatility band [{gates.volatility_min_pct}, {gates.volatility_max_pct}] "
            f"must satisfy 0 <= min < max <= 100"
        )

    # Universe
    if not config.symbols:
        errors.append("at least one symbol is required")

    if config.poll_interval_seconds <= 0:
        errors.append("poll_interval_seconds must be > 0")

    # API validation (only for live trading)
    if not config.dry_run:
        if not config.exchange.api_key:
            errors.append("API key required for live trading - set BINANCE_API_KEY")
        if not config.exchange.api_secret:
            errors.append("API secret required for live trading - set BINANCE_API_SECRET")
        if not config.exchange.use_testnet:
            warnings.append("live trading against mainnet")

    if errors:
        raise ConfigValidationError("Configuration validation failed:\n" +
                                    "\n".join(f"  - {e}" for e in errors))

    return warnings


# =============================================================================
# Configuration Export
# =============================================================================

def config_to_dict(config: BotConfig) -> dict:
    """
    Convert BotConfig to dictionary for serialization.

    Args:
        config: Configuration to convert

    Returns:
        Dictionary representation (YAML-safe)
    """
    result = asdict(config)

    # Remove sensitive data
    for key in ("api_key", "api_secret"):
        result["exchange"][key] = "***" if result["exchange"].get(key) else None
    result["alerts"]["telegram_bot_token"] = (
        "***" if result["alerts"].get("telegram_bot_token") else ""
    )

    for section in result.values():
        if isinstance(section, dict):
            for key, value in section.items():
                if isinstance(value, Decimal):
                    section[key] = str(value)
                elif isinstance(value, AlertPriority):
                    section[key] = value.name

    return result


def save_config(config: BotConfig, path: str) -> None:
    """
    Save configuration to YAML file.

    Args:
        config: Configuration to save
        path: Output file path
    """
    data = config_to_dict(config)

    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
