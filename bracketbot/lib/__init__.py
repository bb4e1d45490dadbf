"""
Configuration, logging and alerting shared by the live bot and the replay engine.

- constants: Exchange endpoints, funding schedule, risk defaults
- config: Unified configuration loading from YAML and environment variables
- logging_utils: Structured logging with rotation and decision events
- alerts: Console, Telegram and webhook notifications
"""

from bracketbot.lib.constants import (
    UTC,
    BINANCE_FUTURES_BASE_URL,
    BINANCE_FUTURES_TESTNET_URL,
    FUNDING_HOURS_UTC,
    PRICE_SCALE,
    FALLBACK_STEP_SIZE,
    MIN_STOP_DISTANCE,
)

from bracketbot.lib.logging_utils import (
    setup_logging,
    TradingFormatter,
    DecisionKind,
    DecisionEvent,
    DecisionLogger,
)

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

from bracketbot.lib.config import (
    BotConfig,
    ExchangeConfig,
    StrategyConfig,
    RiskConfig,
    EntryGateConfig,
    OutputConfig,
    ConfigValidationError,
    load_config,
    load_config_from_env,
    validate_config,
)

__all__ = [
    # Constants
    "UTC",
    "BINANCE_FUTURES_BASE_URL",
    "BINANCE_FUTURES_TESTNET_URL",
    "FUNDING_HOURS_UTC",
    "PRICE_SCALE",
    "FALLBACK_STEP_SIZE",
    "MIN_STOP_DISTANCE",
    # Logging
    "setup_logging",
    "TradingFormatter",
    "DecisionKind",
    "DecisionEvent",
    "DecisionLogger",
    # Alerts
    "Alert",
    "AlertChannel",
    "AlertConfig",
    "AlertManager",
    "AlertPriority",
    "AlertSender",
    "ConsoleAlertSender",
    "TelegramAlertSender",
    "WebhookAlertSender",
    "create_alert_manager_from_env",
    "create_decision_event_handler",
    # Config
    "BotConfig",
    "ExchangeConfig",
    "StrategyConfig",
    "RiskConfig",
    "EntryGateConfig",
    "OutputConfig",
    "ConfigValidationError",
    "load_config",
    "load_config_from_env",
    "validate_config",
]
