"""
Stop Management Module.

Per-trade stop state machine shared by the live driver and the replay
engine:
1. Initial stop at entry -/+ ATR x multiple (set at entry)
2. Break-even promotion once the close reaches break_even_at_r x initial risk
3. Volatility trailing after break-even: close -/+ ATR x trail multiple,
   clamped to the tick grid, moved only in the favorable direction

Break-even is one-way and never trails on the bar that promoted it. An
optional time stop counts bars held; callers close at market on expiry.

TradeStore holds the live trades, one slot per symbol.
"""

import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from bracketbot.risk.filters import FilterSet

logger = logging.getLogger(__name__)


class Side(Enum):
    """Trade direction."""
    LONG = 1
    SHORT = -1

    @property
    def sign(self) -> int:
        return self.value

    @property
    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG


@dataclass
class TradeState:
    """
    State of one open trade.

    Attributes:
        side: LONG or SHORT
        entry_price: Fill (or assumed fill) price
        stop: Current protective stop
        target: Take-profit price
        initial_risk: |entry - initial stop|, fixed at creation
        break_even_active: Stop has been promoted to entry
        bars_held: Number of update() calls since entry

    Usage:
        trade = TradeState(Side.LONG, Decimal("100"), Decimal("98"), Decimal("104"))
        changed = trade.update(Decimal("102"), Decimal("1"), Decimal("1"), Decimal("1"), filters)
    """
    side: Side
    entry_price: Decimal
    stop: Decimal
    target: Decimal
    initial_risk: Decimal = field(init=False)
    break_even_active: bool = False
    bars_held: int = 0

    def __post_init__(self):
        self.initial_risk = abs(self.entry_price - self.stop)
        if self.initial_risk <= 0:
            raise ValueError(
                f"Stop {self.stop} must differ from entry {self.entry_price}"
            )

    def reward_multiple(self, price: Decimal) -> Decimal:
        """Signed distance from entry to price in units of initial risk."""
        return (price - self.entry_price) * self.side.sign / self.initial_risk

    def update(
        self,
        close: Decimal,
        volatility: Decimal,
        break_even_at_r: Decimal,
        trail_multiple: Decimal,
        filters: FilterSet,
    ) -> bool:
        """
        Advance the stop on a closed bar.

        Args:
            close: Bar close price
            volatility: Current ATR
            break_even_at_r: Reward multiple that promotes the stop to entry
            trail_multiple: Trailing distance in ATRs (after break-even)
            filters: Symbol filters used to clamp the new stop

        Returns:
            True if the stop changed
        """
        old_stop = self.stop
        promoted = False
        self.bars_held += 1

        if not self.break_even_active:
            if self.reward_multiple(close) >= break_even_at_r:
                self.stop = filters.clamp_price(self.entry_price)
                self.break_even_active = True
                promoted = True

        if self.break_even_active and not promoted:
            offset = volatility * trail_multiple
            if self.side is Side.LONG:
                candidate = filters.clamp_price(close - offset)
                self.stop = max(self.stop, candidate)
            else:
                candidate = filters.clamp_price(close + offset)
                self.stop = min(self.stop, candidate)

        return self.stop != old_stop

    def is_time_expired(self, max_bars: int) -> bool:
        """True once the trade has been held for max_bars bars (0 disables)."""
        return max_bars > 0 and self.bars_held >= max_bars

    def stop_hit(self, low: Decimal, high: Decimal) -> bool:
        """Whether a bar with this range touches the stop."""
        if self.side is Side.LONG:
            return low <= self.stop
        return high >= self.stop

    def target_hit(self, low: Decimal, high: Decimal) -> bool:
        """Whether a bar with this range touches the target."""
        if self.side is Side.LONG:
            return high >= self.target
        return low <= self.target


@dataclass
class TradeSlot:
    """A live trade plus whether its stop and take profit are confirmed on the exchange."""
    trade: TradeState
    stop_synced: bool = True
    target_synced: bool = True


class TradeStore:
    """
    Lock-guarded symbol -> TradeSlot map.

    One active trade per symbol. The store is created by the driver and
    passed in explicitly; there is no global instance.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._slots: Dict[str, TradeSlot] = {}

    def get(self, symbol: str) -> Optional[TradeSlot]:
        with self._lock:
            return self._slots.get(symbol.upper())

    def put(
        self,
        symbol: str,
        trade: TradeState,
        stop_synced: bool = True,
        target_synced: bool = True,
    ) -> TradeSlot:
        """Install the trade for symbol, replacing any previous one."""
        slot = TradeSlot(trade=trade, stop_synced=stop_synced, target_synced=target_synced)
        with self._lock:
            self._slots[symbol.upper()] = slot
        return slot

    def remove(self, symbol: str) -> Optional[TradeSlot]:
        with self._lock:
            return self._slots.pop(symbol.upper(), None)

    def mark_stop_synced(self, symbol: str, synced: bool) -> None:
        with self._lock:
            slot = self._slots.get(symbol.upper())
            if slot is not None:
                slot.stop_synced = synced

    def mark_target_synced(self, symbol: str, synced: bool) -> None:
        with self._lock:
            slot = self._slots.get(symbol.upper())
            if slot is not None:
                slot.target_synced = synced

    def symbols(self) -> List[str]:
        with self._lock:
            return sorted(self._slots)

    def __contains__(self, symbol: str) -> bool:
        return self.get(symbol) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)
