#!/usr/bin/env python3
"""
Run Live Trading Entry Point for the Bracket Bot.

Starts the polling trader against Binance USDT-M futures.

IMPORTANT REQUIREMENTS:
- Set BINANCE_API_KEY and BINANCE_API_SECRET for live order placement
- Testnet is used unless the config (or BRACKETBOT_USE_TESTNET=false) says otherwise
- Review all risk parameters before starting

Usage:
    # Dry run with defaults (no orders are sent)
    python scripts/run_live.py

    # Custom config file
    python scripts/run_live.py --config config/default.yaml

    # Send real orders (CAUTION!)
    python scripts/run_live.py --live

Safety Features:
- Dry run by default (must explicitly enable live)
- Every entry carries an exchange-side stop and take profit
- CTRL+C for graceful shutdown
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from bracketbot.lib.alerts import AlertManager
from bracketbot.lib.config import ConfigValidationError, load_config, validate_config
from bracketbot.lib.logging_utils import setup_logging
from bracketbot.trading.live_trader import run_live_trading

logger = logging.getLogger(__name__)


def confirm_live_trading(base_url: str) -> bool:
    """
    Require explicit user confirmation for live trading.

    Returns:
        True if user confirms, False otherwise
    """
    print()
    print("=" * 60)
    print("WARNING: LIVE TRADING MODE")
    print("=" * 60)
    print()
    print(f"You are about to send REAL orders to {base_url}.")
    print()

    try:
        response = input("Type 'I ACCEPT THE RISK' to continue: ")
        return response.strip() == "I ACCEPT THE RISK"
    except (EOFError, KeyboardInterrupt):
        return False


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Run the bracket bot against Binance USDT-M futures',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        '--config',
        type=str,
        default=str(PROJECT_ROOT / 'config' / 'default.yaml'),
        help='Path to YAML config file',
    )

    # Mode
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        '--live',
        action='store_true',
        help='Send real orders (overrides dry_run in config)',
    )
    mode.add_argument(
        '--dry-run',
        action='store_true',
        help='Never call order endpoints (overrides config)',
    )

    parser.add_argument(
        '--symbols',
        type=str,
        default=None,
        help='Comma-separated symbols (overrides config)',
    )
    parser.add_argument(
        '--yes',
        action='store_true',
        help='Skip the live trading confirmation prompt',
    )

    # Logging
    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Log level (overrides config)',
    )
    parser.add_argument(
        '--log-dir',
        type=str,
        default=None,
        help='Directory for log files (overrides config)',
    )

    return parser.parse_args()


def main():
    """Main entry point."""
    args = parse_args()

    config_path = args.config if Path(args.config).exists() else None
    config = load_config(config_path)

    if args.live:
        config.dry_run = False
    elif args.dry_run:
        config.dry_run = True
    if args.symbols:
        config.symbols = [s.strip().upper() for s in args.symbols.split(',') if s.strip()]
    if args.log_level:
        config.output.log_level = args.log_level
    if args.log_dir:
        config.output.logs_dir = args.log_dir

    setup_logging(
        level=config.output.log_level,
        log_dir=config.output.logs_dir,
        use_colors=config.output.use_colors,
    )

    logger.info("=" * 60)
    logger.info("BRACKET BOT")
    logger.info("=" * 60)

    if config_path is None:
        logger.warning(f"Config file {args.config} not found - using defaults")

    try:
        for warning in validate_config(config):
            logger.warning(f"Config: {warning}")
    except ConfigValidationError as e:
        logger.error(str(e))
        sys.exit(1)

    if not config.dry_run and not args.yes:
        if not confirm_live_trading(config.exchange.resolved_base_url):
            logger.info("Live trading cancelled by user")
            sys.exit(0)

    mode = "DRY-RUN" if config.dry_run else "LIVE"
    logger.info(f"Mode: {mode}")
    logger.info(f"Exchange: {config.exchange.resolved_base_url}")
    logger.info(f"Symbols: {', '.join(config.symbols)} @ {config.interval}")
    logger.info(
        f"Risk: {config.risk.risk_per_trade_pct} per trade, "
        f"SL {config.risk.atr_multiple} ATR, RRR {config.risk.reward_risk_ratio}, "
        f"BE at {config.risk.break_even_at_r}R, trail {config.risk.atr_trail_multiple} ATR, "
        f"leverage x{config.risk.leverage}"
    )
    logger.info("Press CTRL+C to stop gracefully")
    logger.info("=" * 60)

    alert_manager = AlertManager(config.alerts)

    try:
        asyncio.run(run_live_trading(config, alert_manager=alert_manager))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Trading error: {e}")
        raise


if __name__ == '__main__':
    main()
