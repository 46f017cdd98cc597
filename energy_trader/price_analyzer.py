"""Price analysis: turns a day of slot prices into charge/discharge cycles"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from energy_trader.models import SLOT, SLOTS_PER_HOUR, PricePoint, TimeWindow, TradeCycle, TradingPlan

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SLOTS = 2 * SLOTS_PER_HOUR  # used when power is not configured
DEFAULT_MAX_CYCLES = 2


@dataclass(frozen=True)
class AnalyzerConfig:
    """Battery and market parameters for price analysis"""
    efficiency: Decimal          # round-trip, (0, 1]
    min_price_spread: Decimal    # per kWh
    battery_capacity_kwh: Decimal
    battery_min_soc: Decimal     # fraction, e.g. 0.11
    charge_power_w: int
    discharge_power_w: int
    max_cycles_per_day: int = DEFAULT_MAX_CYCLES

    @property
    def usable_capacity_kwh(self) -> Decimal:
        return self.battery_capacity_kwh * (1 - self.battery_min_soc)


def calculate_window_size(capacity_kwh: Decimal, power_w: int) -> int:
    """Number of 15-minute slots needed to move capacity_kwh at power_w"""
    if power_w <= 0:
        return DEFAULT_WINDOW_SLOTS
    hours = Decimal(capacity_kwh) / (Decimal(power_w) / 1000)
    return max(1, math.ceil(hours * SLOTS_PER_HOUR))


def window_means(values: Sequence[Decimal], size: int) -> List[Decimal]:
    """Mean of every window of `size` consecutive values, using a running sum"""
    if size <= 0 or len(values) < size:
        return []
    window_sum = sum(values[:size], Decimal(0))
    means = [window_sum / size]
    for i in range(1, len(values) - size + 1):
        window_sum += values[i + size - 1] - values[i - 1]
        means.append(window_sum / size)
    return means


def best_window_from(means: Sequence[Decimal]) -> List[int]:
    """For each position k, the index of the highest mean at or after k.

    Ties resolve to the leftmost window.
    """
    best = [0] * len(means)
    for k in range(len(means) - 1, -1, -1):
        if k == len(means) - 1 or means[k] >= means[best[k + 1]]:
            best[k] = k
        else:
            best[k] = best[k + 1]
    return best


def current_price(prices: Sequence[PricePoint], t: datetime) -> Optional[Decimal]:
    """Price of the slot covering t, or None if no slot does"""
    for p in prices:
        if p.covers(t):
            return p.value
    return None


def time_weighted_price(prices: Sequence[PricePoint], start: datetime, end: datetime) -> Optional[Decimal]:
    """Average price over [start, end), each slot weighted by its overlap in seconds"""
    weighted_sum = Decimal(0)
    total_seconds = Decimal(0)
    for p in prices:
        overlap_start = max(start, p.timestamp)
        overlap_end = min(end, p.end)
        if overlap_end <= overlap_start:
            continue
        seconds = Decimal(str((overlap_end - overlap_start).total_seconds()))
        weighted_sum += p.value * seconds
        total_seconds += seconds
    if total_seconds == 0:
        return None
    return weighted_sum / total_seconds


class PriceAnalyzer:
    """Finds profitable, non-overlapping charge/discharge pairs in a day of prices"""

    def __init__(self, config: AnalyzerConfig):
        self.config = config
        usable = config.usable_capacity_kwh
        self.charge_window_size = calculate_window_size(usable, config.charge_power_w)
        self.discharge_window_size = calculate_window_size(usable, config.discharge_power_w)

    def analyze(self, prices: Sequence[PricePoint]) -> TradingPlan:
        if not prices:
            return TradingPlan()

        ordered = sorted(prices, key=lambda p: p.timestamp)
        values = [p.value for p in ordered]
        min_price, max_price = min(values), max(values)
        plan_date = ordered[0].timestamp.date()

        if len(ordered) < self.charge_window_size or len(ordered) < self.discharge_window_size:
            logger.debug(f"analyze insufficient_data slots={len(ordered)} "
                         f"charge_window={self.charge_window_size} discharge_window={self.discharge_window_size}")
            return TradingPlan(date=plan_date, min_price=min_price, max_price=max_price,
                               spread=max_price - min_price)

        charge_means = window_means(values, self.charge_window_size)
        discharge_means = window_means(values, self.discharge_window_size)
        best_discharge = best_window_from(discharge_means)

        max_cycles = self.config.max_cycles_per_day
        if max_cycles <= 0:
            max_cycles = DEFAULT_MAX_CYCLES

        cycles: List[TradeCycle] = []
        cursor = 0
        for _ in range(max_cycles):
            found = self.find_best_cycle(ordered, charge_means, discharge_means, best_discharge, cursor)
            if found is None:
                break
            cycle, discharge_start = found
            cycles.append(cycle)
            # NOTE: the next search starts after this discharge window, so cheaper
            # charge slots that sit before it are not revisited
            cursor = discharge_start + self.discharge_window_size
            if cursor >= len(ordered):
                break

        logger.debug(f"analyze date={plan_date} slots={len(ordered)} min={min_price:.4f} "
                     f"max={max_price:.4f} cycles={len(cycles)}")
        return TradingPlan(
            date=plan_date,
            cycles=tuple(cycles),
            min_price=min_price,
            max_price=max_price,
            spread=max_price - min_price,
            is_profitable=len(cycles) > 0,
        )

    def find_best_cycle(
            self, prices: Sequence[PricePoint], charge_means: Sequence[Decimal],
            discharge_means: Sequence[Decimal], best_discharge: Sequence[int], start_idx: int
    ) -> Optional[Tuple[TradeCycle, int]]:
        """Most profitable qualifying pair whose charge starts at or after start_idx.

        Returns the cycle and the index of its discharge window, or None.
        """
        efficiency = self.config.efficiency
        best: Optional[Tuple[TradeCycle, int]] = None
        best_profit: Optional[Decimal] = None

        for charge_start in range(start_idx, len(charge_means)):
            discharge_from = charge_start + self.charge_window_size
            if discharge_from >= len(discharge_means):
                break

            charge_avg = charge_means[charge_start]
            discharge_start = best_discharge[discharge_from]
            discharge_avg = discharge_means[discharge_start]

            if not self.is_profitable_pair(charge_avg, discharge_avg):
                continue

            profit = discharge_avg * efficiency - charge_avg
            if best_profit is None or profit > best_profit:
                best_profit = profit
                best = (
                    TradeCycle(
                        charge_window=self._window(prices, charge_start, self.charge_window_size, charge_avg),
                        discharge_window=self._window(prices, discharge_start, self.discharge_window_size,
                                                      discharge_avg),
                        profit=profit,
                    ),
                    discharge_start,
                )

        return best

    def is_profitable_pair(self, charge_avg: Decimal, discharge_avg: Decimal) -> bool:
        """Discharge must beat the breakeven price and the minimum spread"""
        break_even = charge_avg / self.config.efficiency
        return discharge_avg > break_even and discharge_avg - charge_avg >= self.config.min_price_spread

    @staticmethod
    def _window(prices: Sequence[PricePoint], start: int, size: int, avg: Decimal) -> TimeWindow:
        return TimeWindow(start=prices[start].timestamp, end=prices[start + size - 1].timestamp + SLOT, price=avg)


def analyze_prices(prices: Sequence[PricePoint], config: AnalyzerConfig) -> TradingPlan:
    """Build a trading plan for one day of prices"""
    return PriceAnalyzer(config).analyze(prices)
