"""
Entry Gates.

Conditions that suppress NEW entries without touching open trades:
- Funding blackout: too close to a perpetual funding settlement
  (00:00, 08:00, 16:00 UTC)
- Volatility band: current ATR ranks outside a percentile band of its
  recent history
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Sequence

from bracketbot.lib.constants import FUNDING_HOURS_UTC, UTC

logger = logging.getLogger(__name__)


def _as_utc(moment: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def is_funding_blackout(moment: datetime, window_minutes: int) -> bool:
    """
    Check whether moment lies within window_minutes of a funding settlement.

    Settlements of the previous, current and next UTC day are considered,
    so 23:55 is inside the window of the next day's 00:00. The boundary is
    inclusive.

    Args:
        moment: Time to check (naive = UTC)
        window_minutes: Half-width of the blackout window; <= 0 disables

    Returns:
        True if new entries should be suppressed
    """
    if window_minutes <= 0:
        return False

    moment = _as_utc(moment)
    window = timedelta(minutes=window_minutes)
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)

    for day_offset in (-1, 0, 1):
        day = midnight + timedelta(days=day_offset)
        for hour in FUNDING_HOURS_UTC:
            funding = day + timedelta(hours=hour)
            if abs(moment - funding) <= window:
                return True

    return False


def percentile_rank(values: Sequence[Decimal], current: Decimal) -> Decimal:
    """
    Percentile rank of current within values (midpoint convention).

    rank = (count(v < current) + 0.5 x count(v == current)) / n x 100

    Args:
        values: Reference sample
        current: Value to rank

    Returns:
        Rank in [0, 100]; 0 for an empty sample
    """
    if not values:
        return Decimal("0")

    less = sum(1 for v in values if v < current)
    equal = sum(1 for v in values if v == current)
    return (Decimal(less) + Decimal("0.5") * equal) / len(values) * 100


@dataclass(frozen=True)
class VolatilityBand:
    """
    Percentile band on volatility.

    allows() ranks the latest value of a volatility series against its
    trailing lookback window (latest value included) and passes only ranks
    inside [min_pct, max_pct].

    Usage:
        band = VolatilityBand(min_pct=10, max_pct=90, lookback=100)
        if not band.allows(atr_values):
            skip_entry()
    """
    min_pct: Decimal = Decimal("10")
    max_pct: Decimal = Decimal("90")
    lookback: int = 100

    def __post_init__(self):
        if self.lookback <= 0:
            raise ValueError(f"lookback must be > 0, got {self.lookback}")
        if not Decimal("0") <= Decimal(str(self.min_pct)) <= Decimal(str(self.max_pct)) <= Decimal("100"):
            raise ValueError(
                f"band [{self.min_pct}, {self.max_pct}] must satisfy 0 <= min <= max <= 100"
            )

    def rank(self, series: Sequence[Decimal]) -> Decimal:
        """Percentile rank of the latest value in its trailing window."""
        if not series:
            return Decimal("0")
        window = list(series[-self.lookback:])
        return percentile_rank(window, window[-1])

    def allows(self, series: Sequence[Decimal]) -> bool:
        """True if the latest volatility is inside the band (empty series passes)."""
        if not series:
            return True
        rank = self.rank(series)
        return Decimal(str(self.min_pct)) <= rank <= Decimal(str(self.max_pct))
