# pvbatt_sim/controller.py
from __future__ import annotations
import logging
from dataclasses import dataclass, fields
from datetime import date, timedelta
from typing import Dict, Optional

import numpy as np
import pandas as pd

from .battery import BatteryState
from .errors import ConfigurationError, InsufficientInputDataError, InvariantViolation
from .schedules import (ForcedDischargeSchedule, GridChargeSchedule,
                        expand_forced_discharge, expand_grid_charge)
from .system_model import (INTERVAL_MINUTES, NO_BATTERY, REFERENCE_YEAR, BatteryConfig,
                           InverterConfig, InverterSetup, intervals_per_day)

__all__ = ["StepResult", "InverterContext", "PASS_THROUGH_COLUMNS", "CALENDAR_COLUMNS"]

_LOGGER = logging.getLogger(__name__)

# Externally computed EV / hot-water figures; the first two add to demand.
PASS_THROUGH_COLUMNS = ("direct_ev_charge", "immersion_load", "div_to_water", "div_to_ev")
CALENDAR_COLUMNS = ("date", "minute", "mod", "dow", "do2001")
_FLOW_TOLERANCE = 1e-9


@dataclass
class StepResult:
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


STEP_FIELDS = tuple(f.name for f in fields(StepResult))


def _column(samples: pd.DataFrame, name: str, n: int, owner: str, *, required: bool) -> np.ndarray:
    if name not in samples.columns:
        if required:
            raise ConfigurationError(f"samples for inverter '{owner}' have no '{name}' column")
        return np.zeros(n, dtype=float)
    values = pd.to_numeric(samples[name], errors="coerce").to_numpy(dtype=float)
    if not np.all(np.isfinite(values)) or np.any(values < 0.0):
        raise ConfigurationError(f"samples for inverter '{owner}': '{name}' must be finite and non-negative")
    return values


class InverterContext:
    """One inverter+battery pair: configuration, schedules, inputs and the SOC it owns."""

    def __init__(
        self,
        inverter: InverterConfig,
        samples: pd.DataFrame,
        *,
        battery: BatteryConfig = NO_BATTERY,
        initial_soc_kwh: float = 0.0,
        grid_charge: Optional[GridChargeSchedule] = None,
        forced_discharge: Optional[ForcedDischargeSchedule] = None,
        interval_minutes: int = INTERVAL_MINUTES,
        reference_year: int = REFERENCE_YEAR,
    ):
        self.inverter = inverter
        self.state = BatteryState(battery, initial_soc_kwh)
        self.grid_charge = grid_charge
        self.forced_discharge = forced_discharge
        self.interval_minutes = int(interval_minutes)
        self.reference_year = int(reference_year)
        self._per_day = intervals_per_day(self.interval_minutes)
        self._throughput = inverter.throughput_kwh(self.interval_minutes)
        self.curtailed_kwh = 0.0

        n = len(samples)
        self._n = n
        self._load = _column(samples, "load", n, inverter.name, required=True)
        self._pv = _column(samples, "pv", n, inverter.name, required=True)
        self._extra = {c: _column(samples, c, n, inverter.name, required=False) for c in PASS_THROUGH_COLUMNS}
        if all(c in samples.columns for c in CALENDAR_COLUMNS):
            self._calendar = {c: samples[c].tolist() for c in CALENDAR_COLUMNS}
        else:
            self._calendar = None

    @classmethod
    def from_setup(cls, setup: InverterSetup, samples: pd.DataFrame, interval_count: int,
                   interval_minutes: int = INTERVAL_MINUTES,
                   reference_year: int = REFERENCE_YEAR) -> "InverterContext":
        has_battery = setup.battery.is_present
        grid_charge = forced = None
        if has_battery and setup.load_shifts:
            grid_charge = expand_grid_charge(setup.load_shifts, interval_count, interval_minutes, reference_year)
        if has_battery and setup.forced_discharges:
            forced = expand_forced_discharge(setup.forced_discharges, interval_count, interval_minutes, reference_year)
        _LOGGER.debug("Inverter '%s': battery %.2f kWh, soc0 %.2f kWh, %d load shift(s), %d forced discharge(s)",
                      setup.inverter.name, setup.battery.capacity_kwh, setup.initial_soc_kwh,
                      len(setup.load_shifts), len(setup.forced_discharges))
        return cls(setup.inverter, samples, battery=setup.battery, initial_soc_kwh=setup.initial_soc_kwh,
                   grid_charge=grid_charge, forced_discharge=forced,
                   interval_minutes=interval_minutes, reference_year=reference_year)

    def __len__(self):
        return self._n

    def __repr__(self):
        return f"InverterContext({self.name!r}, samples={self._n}, {self.state!r})"

    @property
    def name(self) -> str:
        return self.inverter.name

    @property
    def battery(self) -> BatteryConfig:
        return self.state.battery

    def calendar_tags(self, i: int) -> Dict[str, object]:
        if self._calendar is not None:
            return {c: self._calendar[c][i] for c in CALENDAR_COLUMNS}
        day, slot = divmod(i, self._per_day)
        d = date(self.reference_year, 1, 1) + timedelta(days=day)
        mod = slot * self.interval_minutes
        return {"date": d.isoformat(), "minute": f"{mod // 60:02d}:{mod % 60:02d}", "mod": mod,
                "dow": (d.weekday() + 1) % 7, "do2001": day + 1}

    def check_length(self, interval_count: int) -> None:
        if self._n < interval_count:
            raise InsufficientInputDataError(self.name, interval_count - 1, self._n)

    def step(self, i: int) -> StepResult:
        if i < 0 or i >= self._n:
            raise InsufficientInputDataError(self.name, i, self._n)
        inv, st = self.inverter, self.state
        bat = st.battery

        load = float(self._load[i])
        pv = float(self._pv[i])
        ev = float(self._extra["direct_ev_charge"][i])
        immersion = float(self._extra["immersion_load"][i])

        usable = pv * inv.dc2ac
        demand = load + ev + immersion
        net = usable - demand
        r = StepResult(load=load, pv=pv, direct_ev_charge=ev, immersion_load=immersion,
                       div_to_water=float(self._extra["div_to_water"][i]),
                       div_to_ev=float(self._extra["div_to_ev"][i]))

        # Load shift: top up from the grid towards the window's target SOC.
        target = self.grid_charge.target_at(i) if self.grid_charge is not None else None
        grid_charging = target is not None and bat.is_present
        # Grid and PV charging share one charge-model allowance per interval.
        headroom = st.charge_capacity()
        if grid_charging and st.soc_pct < target:
            stored = min(headroom, target / 100.0 * bat.capacity_kwh - st.soc)
            if stored > 0.0:
                st.apply_charge(stored)
                headroom -= stored
                r.grid_to_battery = stored / inv.ac2dc
                r.buy += r.grid_to_battery

        if net > inv.min_excess_kwh:
            r.pv_to_load = demand
            charge = min(net, headroom, self._throughput)
            if charge > 0.0:
                st.apply_charge(charge * inv.dc2dc)
                r.pv_to_charge = charge
            r.feed = max(0.0, min(net - charge, self._throughput - charge, inv.export_max_kwh))
            self.curtailed_kwh += net - charge - r.feed
        elif net > 0.0:
            # Excess too small to bother the battery with.
            r.pv_to_load = demand
            self.curtailed_kwh += net
        else:
            r.pv_to_load = usable
            shortfall = -net
            delivered = 0.0
            # The battery is held while it is being charged from the grid.
            if shortfall > 0.0 and not grid_charging:
                delivered = min(shortfall, st.deliverable())
                if delivered > 0.0:
                    r.battery_to_load = st.withdrawal_for(delivered)
                    st.apply_discharge(r.battery_to_load)
            r.buy += shortfall - delivered

        # Forced discharge to the grid, within export and throughput headroom.
        slot = self.forced_discharge.at(i) if self.forced_discharge is not None else None
        if slot is not None and bat.is_present:
            floor_pct, rate = slot
            if st.soc_pct > floor_pct:
                room = min(inv.export_max_kwh - r.feed, self._throughput - r.feed - r.pv_to_charge)
                out = min(max(0.0, room), st.deliverable(forced_rate=rate, floor_pct=floor_pct))
                if out > 0.0:
                    r.battery_to_grid = st.withdrawal_for(out)
                    st.apply_discharge(r.battery_to_grid)
                    r.feed += out

        st.check()
        r.soc = st.soc
        for f in STEP_FIELDS:
            if getattr(r, f) < -_FLOW_TOLERANCE:
                raise InvariantViolation(f"inverter '{self.name}' interval {i}: negative {f} = {getattr(r, f)}")
        return r
