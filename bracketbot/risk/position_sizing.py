"""
Position Sizing Module.

Converts a risk budget and a stop distance into an exchange-valid order
quantity.

Sizing rules:
- quantity = risk budget / stop distance, rounded to the nearest step
- the rounded quantity never risks more than the budget
- quantities below the exchange minimum (market minimum for market
  orders) are bumped up only if the bumped quantity still fits the budget
- the same bump applies to the minimum notional
- otherwise the entry is rejected with a machine-readable reason

Rejections are values, never exceptions: the caller logs them and skips
the entry.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_EVEN, Decimal
from enum import Enum
from typing import Callable, Optional

from bracketbot.lib.constants import FALLBACK_STEP_SIZE
from bracketbot.risk.filters import FilterSet

logger = logging.getLogger(__name__)


class OrderKind(Enum):
    """Order type the quantity is sized for."""
    LIMIT = "limit"
    MARKET = "market"


class SizingRejection(Enum):
    """Why a sizing attempt produced no tradable quantity."""
    MISSING_FILTER_SET = "missing_filter_set"
    INVALID_STOP_DISTANCE = "invalid_stop_distance"
    BELOW_MIN_QUANTITY = "below_min_quantity"
    BELOW_MIN_NOTIONAL = "below_min_notional"
    ZERO_QUANTITY_AFTER_FILTERS = "zero_quantity_after_filters"


@dataclass(frozen=True)
class SizingDecision:
    """
    Result of a sizing attempt.

    Accepted decisions carry quantity > 0 and an empty reason. Rejected
    decisions carry quantity 0, a rejection kind and a reason string that
    includes the inputs that caused it.
    """
    quantity: Decimal
    accepted: bool
    reason: str = ""
    rejection: Optional[SizingRejection] = None

    @classmethod
    def accept(cls, quantity: Decimal) -> "SizingDecision":
        return cls(quantity=quantity, accepted=True)

    @classmethod
    def reject(cls, rejection: SizingRejection, reason: str) -> "SizingDecision":
        return cls(quantity=Decimal("0"), accepted=False, reason=reason, rejection=rejection)


FilterLookup = Callable[[str], Optional[FilterSet]]


def _ceil_to_step(value: Decimal, step: Decimal) -> Decimal:
    return (value / step).to_integral_value(rounding=ROUND_CEILING) * step


class PositionSizer:
    """
    Risk-based quantity calculator.

    Usage:
        repo = FilterRepository([btc_filters])
        sizer = PositionSizer(repo.get)
        decision = sizer.size(
            "BTCUSDT", OrderKind.MARKET,
            entry_price=Decimal("113985.80"),
            stop_price=Decimal("109656.36"),
            risk_budget=Decimal("150"),
        )
        if decision.accepted:
            place(decision.quantity)
    """

    def __init__(self, filters_lookup: FilterLookup):
        """
        Initialize position sizer.

        Args:
            filters_lookup: Callable returning the FilterSet of a symbol, or None
        """
        self._filters_lookup = filters_lookup

    def size(
        self,
        symbol: str,
        order_kind: OrderKind,
        entry_price: Decimal,
        stop_price: Decimal,
        risk_budget: Decimal,
    ) -> SizingDecision:
        """
        Size an entry so that a stop-out loses at most risk_budget.

        Args:
            symbol: Exchange symbol
            order_kind: LIMIT or MARKET (selects the applicable minimum quantity)
            entry_price: Expected entry price
            stop_price: Protective stop price
            risk_budget: Maximum loss in quote currency if the stop is hit

        Returns:
            SizingDecision (accepted with quantity, or rejected with reason)
        """
        filters = self._filters_lookup(symbol)
        if filters is None:
            return SizingDecision.reject(SizingRejection.MISSING_FILTER_SET, "No filters.")

        stop_distance = abs(entry_price - stop_price)
        if stop_distance <= 0:
            return SizingDecision.reject(
                SizingRejection.INVALID_STOP_DISTANCE, "Invalid stop distance."
            )

        qty_raw = risk_budget / stop_distance
        step = filters.step_size if filters.step_size > 0 else FALLBACK_STEP_SIZE

        qty = (qty_raw / step).to_integral_value(rounding=ROUND_HALF_EVEN) * step
        # Nearest-step rounding may round up past the budget
        while qty > 0 and qty * stop_distance > risk_budget:
            qty -= step

        if qty < step:
            qty = Decimal("0")

        if order_kind == OrderKind.MARKET and filters.market_min_qty is not None:
            min_qty = filters.market_min_qty
        else:
            min_qty = filters.min_qty if filters.min_qty is not None else step

        if qty < min_qty:
            needed_qty = _ceil_to_step(min_qty, step)
            needed_risk = needed_qty * stop_distance
            if needed_risk > risk_budget:
                return SizingDecision.reject(
                    SizingRejection.BELOW_MIN_QUANTITY,
                    f"Below minQty. minQty={min_qty} step={step} qtyRaw={qty_raw} "
                    f"risk={risk_budget} neededRisk={needed_risk} stop={stop_distance} "
                    f"price={entry_price}",
                )
            qty = needed_qty

        if filters.min_notional is not None:
            notional = qty * entry_price
            if notional < filters.min_notional:
                needed_qty = _ceil_to_step(filters.min_notional / entry_price, step)
                needed_risk = needed_qty * stop_distance
                if needed_risk > risk_budget:
                    return SizingDecision.reject(
                        SizingRejection.BELOW_MIN_NOTIONAL,
                        f"Below minNotional. minNotional={filters.min_notional} "
                        f"notional={notional} step={step} qty={qty} risk={risk_budget} "
                        f"neededRisk={needed_risk} stop={stop_distance} price={entry_price}",
                    )
                qty = needed_qty

        if qty <= 0:
            return SizingDecision.reject(
                SizingRejection.ZERO_QUANTITY_AFTER_FILTERS,
                f"Qty <= 0 after filters. qtyRaw={qty_raw} step={step} risk={risk_budget} "
                f"stop={stop_distance} price={entry_price}",
            )

        logger.debug(
            f"Sized {symbol} {order_kind.value} qty={qty} (raw={qty_raw}) risk={risk_budget} "
            f"stop={stop_distance} step={step} minQty={min_qty} minNotional={filters.min_notional}"
        )
        return SizingDecision.accept(qty)

