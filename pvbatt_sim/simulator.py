# pvbatt_sim/simulator.py
from __future__ import annotations
import logging
from dataclasses import asdict, dataclass
from typing import Callable, List, Optional, Sequence

import pandas as pd

from .controller import STEP_FIELDS, InverterContext
from .errors import ConfigurationError, InsufficientInputDataError, IntervalOrderError, SimulationCancelled

__all__ = ["OutputRecord", "StepSimulator", "run_scenario", "records_to_frame"]

_LOGGER = logging.getLogger(__name__)

CURTAILMENT_WARN_SHARE = 0.05


@dataclass
class OutputRecord:
    date: str
    minute: str
    mod: int
    dow: int
    do2001: int
    load: float = 0.0
    pv: float = 0.0
    buy: float = 0.0
    feed: float = 0.0
    battery_to_load: float = 0.0
    pv_to_charge: float = 0.0
    grid_to_battery: float = 0.0
    soc: float = 0.0
    pv_to_load: float = 0.0
    battery_to_grid: float = 0.0
    direct_ev_charge: float = 0.0
    immersion_load: float = 0.0
    div_to_water: float = 0.0
    div_to_ev: float = 0.0


class StepSimulator:
    """Steps every inverter context for one interval and sums the results."""

    def __init__(self, contexts: Sequence[InverterContext]):
        if not contexts:
            raise ConfigurationError("a scenario needs at least one inverter context")
        self.contexts = list(contexts)
        self.records: List[OutputRecord] = []

    @property
    def next_interval(self) -> int:
        return len(self.records)

    def process_interval(self, i: int) -> OutputRecord:
        if i != self.next_interval:
            raise IntervalOrderError(self.next_interval, i)
        # All inputs are checked before any battery moves, so a failed interval can be retried.
        for ctx in self.contexts:
            if i >= len(ctx):
                raise InsufficientInputDataError(ctx.name, i, len(ctx))
        rec = OutputRecord(**self.contexts[0].calendar_tags(i))
        # SOC is summed for reporting only; batteries never share capacity.
        for ctx in self.contexts:
            step = ctx.step(i)
            for f in STEP_FIELDS:
                setattr(rec, f, getattr(rec, f) + getattr(step, f))
        self.records.append(rec)
        return rec


def run_scenario(
    contexts: Sequence[InverterContext],
    interval_count: Optional[int] = None,
    *,
    should_stop: Optional[Callable[[], bool]] = None,
    on_cancel: str = "discard",
) -> List[OutputRecord]:
    """Run intervals 0..interval_count-1 in order and return the output records.

    `should_stop` is polled between intervals. With on_cancel="discard" a stop
    raises SimulationCancelled carrying no records; with "return" the records
    produced so far are returned.
    """
    if on_cancel not in {"discard", "return"}:
        raise ValueError("on_cancel must be 'discard' or 'return'.")
    sim = StepSimulator(contexts)
    if interval_count is None:
        interval_count = min(len(c) for c in sim.contexts)
    # Pre-flight: every context must cover the whole run.
    for ctx in sim.contexts:
        ctx.check_length(interval_count)

    _LOGGER.info("Simulating %d intervals across %d inverter(s)", interval_count, len(sim.contexts))
    for i in range(interval_count):
        if should_stop is not None and should_stop():
            _LOGGER.info("Run cancelled before interval %d", i)
            if on_cancel == "return":
                return sim.records
            raise SimulationCancelled(i)
        sim.process_interval(i)
    _LOGGER.debug("Run finished with %d records", len(sim.records))
    pv_kwh = sum(r.pv for r in sim.records)
    curtailed = sum(c.curtailed_kwh for c in sim.contexts)
    if pv_kwh > 0.0 and curtailed > CURTAILMENT_WARN_SHARE * pv_kwh:
        _LOGGER.warning("%.1f kWh of %.1f kWh PV curtailed (export or throughput caps)", curtailed, pv_kwh)
    return sim.records


def records_to_frame(records: Sequence[OutputRecord], interval_minutes: int = 5, reference_year: int = 2001) -> pd.DataFrame:
    """Output records as a DataFrame indexed by reference-year timestamps."""
    df = pd.DataFrame([asdict(r) for r in records], columns=[*OutputRecord.__dataclass_fields__])
    df.index = pd.date_range(start=f"{reference_year}-01-01", periods=len(df), freq=f"{interval_minutes}min")
    return df
