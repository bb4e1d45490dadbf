"""
Bracket Order Executor.

Places risk-sized entries together with their protective orders:
- Entry: market order in the trade direction
- Stop loss: STOP_MARKET close-position order at entry -/+ stop distance
- Take profit: TAKE_PROFIT_MARKET close-position order at entry +/- stop
  distance x reward:risk

Stop and target prices are floored onto the symbol's tick grid. Exit
orders always use the side opposite the entry.

Dry-run mode logs what would be sent and never calls an order endpoint.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from bracketbot.api.binance_client import ExchangeAPIError
from bracketbot.api.gateway import ExchangeGateway, OrderSide
from bracketbot.lib.constants import DEFAULT_REWARD_RISK_RATIO, UTC
from bracketbot.lib.logging_utils import DecisionLogger
from bracketbot.risk.filters import FilterSet
from bracketbot.risk.stops import Side

logger = logging.getLogger(__name__)


class ExecutionStatus(Enum):
    """Entry execution status."""
    FILLED = "filled"
    DRY_RUN = "dry_run"
    REJECTED = "rejected"


@dataclass
class EntryResult:
    """
    Result of a bracketed entry.

    A FILLED entry may still lack protection (stop_placed or
    target_placed False); the caller keeps the missing order unsynced and
    re-issues it.
    """
    status: ExecutionStatus
    side: Side
    quantity: Decimal
    entry_price: Decimal
    stop_price: Decimal
    target_price: Decimal
    stop_placed: bool = False
    target_placed: bool = False
    error_message: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def success(self) -> bool:
        """Check if a position was actually opened."""
        return self.status == ExecutionStatus.FILLED


def bracket_prices(
    side: Side,
    price: Decimal,
    stop_distance: Decimal,
    reward_risk_ratio: Decimal,
    filters: FilterSet,
) -> Tuple[Decimal, Decimal]:
    """
    Stop and target for an entry at price, clamped to the tick grid.

    Returns:
        (stop_price, target_price)
    """
    if side is Side.LONG:
        stop_price = price - stop_distance
        target_price = price + stop_distance * reward_risk_ratio
    else:
        stop_price = price + stop_distance
        target_price = price - stop_distance * reward_risk_ratio
    return filters.clamp_price(stop_price), filters.clamp_price(target_price)


class BracketOrderExecutor:
    """
    Executes bracketed entries, stop updates and market closes.

    Usage:
        executor = BracketOrderExecutor(gateway, reward_risk_ratio=Decimal("2"))
        result = await executor.open_with_bracket(
            "BTCUSDT", Side.LONG, Decimal("0.034"), Decimal("113985.8"),
            Decimal("4329.44"), filters,
        )
        if result.success:
            ...
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        reward_risk_ratio: Decimal = DEFAULT_REWARD_RISK_RATIO,
        dry_run: bool = False,
        decisions: Optional[DecisionLogger] = None,
    ):
        """
        Initialize executor.

        Args:
            gateway: Exchange gateway
            reward_risk_ratio: Target distance in multiples of the stop distance
            dry_run: Log intended orders without calling order endpoints
            decisions: Decision event logger (a private one is created if None)
        """
        self.gateway = gateway
        self.reward_risk_ratio = reward_risk_ratio
        self.dry_run = dry_run
        self.decisions = decisions or DecisionLogger()

    async def open_with_bracket(
        self,
        symbol: str,
        side: Side,
        quantity: Decimal,
        price: Decimal,
        stop_distance: Decimal,
        filters: FilterSet,
    ) -> EntryResult:
        """
        Open a position with protective stop and take-profit.

        Args:
            symbol: Exchange symbol
            side: Trade direction
            quantity: Order quantity (already sized and clamped)
            price: Reference entry price (last close)
            stop_distance: Distance from entry to stop
            filters: Symbol filters for price clamping

        Returns:
            EntryResult; REJECTED when the entry order failed (nothing else
            is sent), FILLED otherwise with the protection outcome
        """
        stop_price, target_price = bracket_prices(
            side, price, stop_distance, self.reward_risk_ratio, filters
        )
        entry_side = OrderSide.entry_for(side)
        exit_side = OrderSide.exit_for(side)

        result = EntryResult(
            status=ExecutionStatus.DRY_RUN,
            side=side,
            quantity=quantity,
            entry_price=price,
            stop_price=stop_price,
            target_price=target_price,
        )

        if self.dry_run:
            self.decisions.trade_opened(
                symbol, entry_side.value, quantity, price, stop_price, target_price, dry_run=True
            )
            return result

        entry = await self.gateway.place_market_order(symbol, entry_side, quantity)
        if not entry.success:
            result.status = ExecutionStatus.REJECTED
            result.error_message = entry.error
            self.decisions.order_failed(symbol, f"entry failed - {entry.error}", side=entry_side.value)
            return result

        result.status = ExecutionStatus.FILLED

        try:
            await self.gateway.place_stop_close(symbol, exit_side, stop_price)
            result.stop_placed = True
        except ExchangeAPIError as e:
            result.error_message = f"stop placement failed: {e}"
            self.decisions.order_failed(symbol, result.error_message, stop=stop_price)

        result.target_placed = await self.place_target(symbol, side, target_price)
        if not result.target_placed:
            result.error_message = "take-profit placement failed"

        self.decisions.trade_opened(
            symbol, entry_side.value, quantity, price, stop_price, target_price
        )
        return result

    async def update_stop(self, symbol: str, side: Side, new_stop: Decimal) -> bool:
        """
        Replace the protective stop of an open trade.

        Returns:
            True if the exchange now holds new_stop (always True in dry-run)
        """
        if self.dry_run:
            logger.info(f"{symbol}: [DRY] would move stop to {new_stop}")
            return True

        try:
            await self.gateway.place_stop_close(symbol, OrderSide.exit_for(side), new_stop)
        except ExchangeAPIError as e:
            self.decisions.order_failed(symbol, f"stop update failed: {e}", stop=new_stop)
            return False
        return True

    async def place_target(self, symbol: str, side: Side, target: Decimal) -> bool:
        """
        Place the take profit of an open trade.

        Returns:
            True if the exchange now holds the take profit (always True in dry-run)
        """
        if self.dry_run:
            logger.info(f"{symbol}: [DRY] would place take profit at {target}")
            return True

        try:
            await self.gateway.place_take_profit_close(symbol, OrderSide.exit_for(side), target)
        except ExchangeAPIError as e:
            self.decisions.order_failed(symbol, f"take-profit placement failed: {e}", target=target)
            return False
        return True

    async def close_at_market(self, symbol: str, side: Side, reason: str) -> bool:
        """
        Flatten an open trade at market.

        Returns:
            True if the close was sent (False in dry-run)
        """
        label = "LONG" if side is Side.LONG else "SHORT"
        if self.dry_run:
            logger.info(f"{symbol}: {reason} - [DRY] would close {label} at market")
            return False

        logger.info(f"{symbol}: {reason} - closing {label} at market")
        await self.gateway.close_position_at_market(symbol)
        return True

    async def flip_close(self, symbol: str, side: Side) -> bool:
        """Close a position because the strategy now signals the opposite direction."""
        return await self.close_at_market(symbol, side, "flip detected")
