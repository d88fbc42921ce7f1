"""
Bar aggregation for the live bar stream.

Folds trade ticks into fixed-period OHLC bars. Period boundaries follow a
fixed UTC calendar rule derived from the subscription's resolution:

- intraday ("1S", "1", "60", ...): previous start + period length
- daily / weekly ("D", "1D", "W", ...): previous start + N UTC days
- monthly ("M", "1M", ...): previous start + N calendar months (UTC)

Exactly one new period is opened when a tick crosses the boundary; skipped
periods are never backfilled.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache

from barfeed.live.errors import ConfigurationError
from barfeed.live.types import Bar, Tick

SECONDS_PER_MINUTE = 60
SECONDS_PER_DAY = 86_400
_EPOCH_MONDAY_OFFSET_S = -3 * SECONDS_PER_DAY  # 1969-12-29

# Longest accepted period, nominal (ten 365 day years)
MAX_PERIOD_S = 10 * 365 * SECONDS_PER_DAY

_RESOLUTION_RE = re.compile(r"^(\d*)([SDWM]?)$")


class PeriodUnit(str, Enum):
    SECOND = "S"
    MINUTE = ""
    DAY = "D"
    WEEK = "W"
    MONTH = "M"


@dataclass(frozen=True, slots=True)
class Resolution:
    """Parsed chart resolution, e.g. "1D" -> (1, DAY)."""

    count: int
    unit: PeriodUnit

    @property
    def length_s(self) -> int:
        """Nominal period length in seconds (months count as 30 days)."""
        if self.unit is PeriodUnit.SECOND:
            return self.count
        if self.unit is PeriodUnit.MINUTE:
            return self.count * SECONDS_PER_MINUTE
        if self.unit is PeriodUnit.DAY:
            return self.count * SECONDS_PER_DAY
        if self.unit is PeriodUnit.WEEK:
            return self.count * 7 * SECONDS_PER_DAY
        return self.count * 30 * SECONDS_PER_DAY


@lru_cache(maxsize=64)
def parse_resolution(resolution: str) -> Resolution:
    """
    Parse a TradingView style resolution string.

    Raises:
        ConfigurationError: If the resolution is not understood
    """
    match = _RESOLUTION_RE.match(resolution.strip().upper()) if resolution else None
    if match is None or not resolution.strip():
        raise ConfigurationError(
            f"Unsupported resolution: {resolution!r}",
            field="resolution",
            value=resolution,
        )

    digits, suffix = match.groups()
    count = int(digits) if digits else 1
    if count <= 0:
        raise ConfigurationError(
            "resolution count must be positive",
            field="resolution",
            value=resolution,
        )
    parsed = Resolution(count=count, unit=PeriodUnit(suffix))
    if parsed.length_s > MAX_PERIOD_S:
        raise ConfigurationError(
            f"resolution period exceeds {MAX_PERIOD_S // SECONDS_PER_DAY} days",
            field="resolution",
            value=resolution,
        )
    return parsed


def period_length_s(resolution: str) -> int:
    """Nominal length of one period in seconds."""
    return parse_resolution(resolution).length_s


def _add_months(ts_s: int, months: int) -> int:
    start = datetime.fromtimestamp(ts_s, tz=timezone.utc)
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    # Clamp to the last day of the target month
    day = min(start.day, calendar.monthrange(year, month)[1])
    return int(start.replace(year=year, month=month, day=day).timestamp())


def next_period_start(period_start_s: int, resolution: str) -> int:
    """Boundary strictly after the period that starts at `period_start_s`."""
    parsed = parse_resolution(resolution)
    if parsed.unit is PeriodUnit.MONTH:
        return _add_months(period_start_s, parsed.count)
    return period_start_s + parsed.length_s


def align_to_period(ts_s: int, resolution: str) -> int:
    """Start of the UTC aligned period containing `ts_s`."""
    parsed = parse_resolution(resolution)
    if parsed.unit is PeriodUnit.MONTH:
        moment = datetime.fromtimestamp(ts_s, tz=timezone.utc)
        month_index = moment.year * 12 + moment.month - 1
        month_index -= month_index % parsed.count
        aligned = datetime(month_index // 12, month_index % 12 + 1, 1, tzinfo=timezone.utc)
        return int(aligned.timestamp())
    length = parsed.length_s
    if parsed.unit is PeriodUnit.WEEK:
        # Weeks start on Monday; the epoch fell on a Thursday
        return ts_s - ((ts_s - _EPOCH_MONDAY_OFFSET_S) % length)
    return ts_s - (ts_s % length)


def next_bar(previous: Bar, tick: Tick, resolution: str) -> Bar:
    """
    Compute the bar that results from applying `tick` to `previous`.

    Pure: the same inputs always produce the same bar.
    """
    boundary = next_period_start(previous.period_start_s, resolution)

    if tick.timestamp_s >= boundary:
        return Bar.from_price(boundary, tick.price)

    return Bar(
        period_start_s=previous.period_start_s,
        open=previous.open,
        high=max(previous.high, tick.price),
        low=min(previous.low, tick.price),
        close=tick.price,
    )


def first_bar(tick: Tick, resolution: str) -> Bar:
    """Open a bar for a subscription that was created without a seed."""
    return Bar.from_price(align_to_period(tick.timestamp_s, resolution), tick.price)
