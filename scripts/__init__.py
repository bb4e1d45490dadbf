"""
Entry point scripts for the bracket bot.

Scripts:
- run_live.py: Start a live (or dry-run) trading session
- run_backtest.py: Replay historical bars through the strategy
"""
