"""
Risk management: exchange filters, position sizing, stop management and
entry gates.

Everything in this package is synchronous and Decimal-only.
"""

from bracketbot.risk.filters import (
    FilterSet,
    FilterRepository,
    MissingFilterSetError,
)
from bracketbot.risk.position_sizing import (
    OrderKind,
    PositionSizer,
    SizingDecision,
    SizingRejection,
)
from bracketbot.risk.stops import (
    Side,
    TradeSlot,
    TradeState,
    TradeStore,
)
from bracketbot.risk.entry_gate import (
    VolatilityBand,
    is_funding_blackout,
    percentile_rank,
)

__all__ = [
    "FilterSet",
    "FilterRepository",
    "MissingFilterSetError",
    "OrderKind",
    "PositionSizer",
    "SizingDecision",
    "SizingRejection",
    "Side",
    "TradeSlot",
    "TradeState",
    "TradeStore",
    "VolatilityBand",
    "is_funding_blackout",
    "percentile_rank",
]
