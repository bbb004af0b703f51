from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from fractions import Fraction
from typing import Iterable

from .models import EnrichedEvent

WEI_PER_ETH  = 10**18
WEI_PER_GWEI = 10**9


@dataclass(slots=True, frozen=True)
class DailyGasCost:
    date: date
    gas_cost_wei: int

    @property
    def gas_cost_eth(self) -> float: return self.gas_cost_wei / WEI_PER_ETH


@dataclass(slots=True, frozen=True)
class MovingAverage:
    date: date
    ma_wei: int                        # floor of the exact mean
    ma_exact: Fraction

    @property
    def ma_gwei(self) -> float: return float(self.ma_exact / WEI_PER_GWEI)


@dataclass(slots=True, frozen=True)
class CumulativeCost:
    date: date
    cum_wei: int

    @property
    def cum_eth(self) -> float: return self.cum_wei / WEI_PER_ETH


def _by_day(events: Iterable[EnrichedEvent]) -> dict[date, list[EnrichedEvent]]:
    days: dict[date, list[EnrichedEvent]] = defaultdict(list)
    for ev in events:
        days[ev.event_date].append(ev)
    return days


def daily_gas_cost(events: Iterable[EnrichedEvent]) -> list[DailyGasCost]:
    """Sum of gas cost per UTC day, ascending."""
    days = _by_day(events)
    return [DailyGasCost(d, sum(ev.gas_cost for ev in days[d])) for d in sorted(days)]


def daily_mean_gas_price(events: Iterable[EnrichedEvent]) -> dict[date, Fraction]:
    days = _by_day(events)
    return {
        d: Fraction(sum(ev.effective_gas_price for ev in evs), len(evs))
        for d, evs in sorted(days.items())
    }


def moving_average_gas_price(events: Iterable[EnrichedEvent], window_days: int = 7) -> list[MovingAverage]:
    """Trailing mean of daily mean effective gas price.

    The window for day ``d`` is ``[d - (window_days - 1), d]`` in calendar days;
    only days that have events contribute, so early days average whatever
    history exists.
    """
    if window_days < 1:
        raise ValueError("window_days must be >= 1")
    means = daily_mean_gas_price(events)
    out: list[MovingAverage] = []
    for d in means:
        lo = d - timedelta(days=window_days - 1)
        window = [m for day, m in means.items() if lo <= day <= d]
        avg = sum(window, Fraction(0)) / len(window)
        out.append(MovingAverage(d, avg.numerator // avg.denominator, avg))
    return out


def cumulative_gas_cost(events: Iterable[EnrichedEvent]) -> list[CumulativeCost]:
    out: list[CumulativeCost] = []
    running = 0
    for day in daily_gas_cost(events):
        running += day.gas_cost_wei
        out.append(CumulativeCost(day.date, running))
    return out
