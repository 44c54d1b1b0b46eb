# pvbatt_sim/schedules.py
"""
Dense per-interval schedules.

Recurring rules (hour window x months x weekdays) are expanded once into
numpy arrays covering every interval of the reference year, so the
simulation loop only does an O(1) lookup. Unscheduled intervals hold NaN
(0 is a legal target). When several rules cover the same interval the one
that comes later in the input wins.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .system_model import INTERVAL_MINUTES, REFERENCE_YEAR, DischargeRule, LoadShiftRule

__all__ = [
    "reference_calendar_arrays", "expand_rules",
    "GridChargeSchedule", "ForcedDischargeSchedule",
    "expand_grid_charge", "expand_forced_discharge",
]

_LOGGER = logging.getLogger(__name__)


@lru_cache(maxsize=8)
def reference_calendar_arrays(interval_count: int, interval_minutes: int = INTERVAL_MINUTES,
                              year: int = REFERENCE_YEAR) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """(month 1..12, weekday 0=Sunday..6, hour 0..23) for each interval."""
    idx = pd.date_range(start=f"{year}-01-01", periods=int(interval_count), freq=f"{int(interval_minutes)}min")
    month = np.asarray(idx.month, dtype=np.int64)
    dow = (np.asarray(idx.dayofweek, dtype=np.int64) + 1) % 7  # pandas: Monday=0
    hour = np.asarray(idx.hour, dtype=np.int64)
    for a in (month, dow, hour):
        a.setflags(write=False)
    return month, dow, hour


def _hour_mask(hour: np.ndarray, begin: int, end: int) -> np.ndarray:
    if begin <= end:
        return (hour >= begin) & (hour <= end)
    return (hour >= begin) | (hour <= end)  # wraps midnight


def expand_rules(rules: Sequence, interval_count: int, fields: Sequence[str],
                 interval_minutes: int = INTERVAL_MINUTES, year: int = REFERENCE_YEAR) -> Dict[str, np.ndarray]:
    out = {f: np.full(int(interval_count), np.nan, dtype=float) for f in fields}
    if interval_count <= 0 or not rules:
        return out
    month, dow, hour = reference_calendar_arrays(int(interval_count), interval_minutes, year)
    for rule in rules:
        mask = np.isin(month, rule.months) & np.isin(dow, rule.days) & _hour_mask(hour, rule.begin, rule.end)
        for f in fields:
            out[f][mask] = float(getattr(rule, f))
    return out


@dataclass(frozen=True)
class GridChargeSchedule:
    target_pct: np.ndarray

    def __len__(self):
        return len(self.target_pct)

    def target_at(self, i: int) -> Optional[float]:
        if i >= len(self.target_pct):
            return None
        v = self.target_pct[i]
        return None if np.isnan(v) else float(v)


@dataclass(frozen=True)
class ForcedDischargeSchedule:
    floor_pct: np.ndarray
    rate_kwh: np.ndarray

    def __len__(self):
        return len(self.floor_pct)

    def at(self, i: int) -> Optional[Tuple[float, float]]:
        """(floor %, rate kWh/interval) or None when not scheduled."""
        if i >= len(self.floor_pct):
            return None
        floor = self.floor_pct[i]
        if np.isnan(floor):
            return None
        return float(floor), float(self.rate_kwh[i])


def expand_grid_charge(rules: Sequence[LoadShiftRule], interval_count: int,
                       interval_minutes: int = INTERVAL_MINUTES, year: int = REFERENCE_YEAR) -> GridChargeSchedule:
    arrays = expand_rules(rules, interval_count, ("stop_at_pct",), interval_minutes, year)
    sched = GridChargeSchedule(target_pct=arrays["stop_at_pct"])
    _LOGGER.debug("Grid-charge schedule: %d rules, %d of %d intervals active",
                  len(rules), int(np.count_nonzero(~np.isnan(sched.target_pct))), len(sched))
    return sched


def expand_forced_discharge(rules: Sequence[DischargeRule], interval_count: int,
                            interval_minutes: int = INTERVAL_MINUTES,
                            year: int = REFERENCE_YEAR) -> ForcedDischargeSchedule:
    arrays = expand_rules(rules, interval_count, ("stop_at_pct", "rate_kwh"), interval_minutes, year)
    sched = ForcedDischargeSchedule(floor_pct=arrays["stop_at_pct"], rate_kwh=arrays["rate_kwh"])
    _LOGGER.debug("Forced-discharge schedule: %d rules, %d of %d intervals active",
                  len(rules), int(np.count_nonzero(~np.isnan(sched.floor_pct))), len(sched))
    return sched
