"""
bracketbot - risk-sized futures execution and stop management.

Subpackages:
- lib: constants, configuration, logging and alerting
- risk: exchange filters, position sizing, stop engine, entry gates
- trading: indicators, strategies, bracket order execution, live loop
- api: exchange gateway protocol and the Binance USDT-M futures client
- backtest: deterministic bar-by-bar replay engine
"""

__version__ = "1.0.0"
