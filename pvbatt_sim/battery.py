# pvbatt_sim/battery.py
from __future__ import annotations
from typing import Optional

from .errors import ConfigurationError, InvariantViolation
from .system_model import BatteryConfig, NO_BATTERY

__all__ = ["max_charge_for_soc", "BatteryState", "SOC_TOLERANCE_KWH"]

SOC_TOLERANCE_KWH = 1e-9


def max_charge_for_soc(soc_kwh: float, battery: BatteryConfig) -> float:
    """Charge (kWh/interval) the battery accepts at `soc_kwh`.

    Brackets: <12% | 12..90% (both inclusive) | >90% and <100% | 100%.
    """
    if battery.capacity_kwh <= 0.0:
        return 0.0
    cm = battery.charge_model
    pct = 100.0 * soc_kwh / battery.capacity_kwh
    if pct < 12.0:
        frac = cm.percent0
    elif pct <= 90.0:
        frac = cm.percent12
    elif pct < 100.0:
        frac = cm.percent90
    else:
        frac = cm.percent100
    return battery.max_charge_kwh * (frac / 100.0)


class BatteryState:
    """Mutable SOC of one battery. All quantities in kWh per interval."""

    def __init__(self, battery: BatteryConfig = NO_BATTERY, soc_kwh: float = 0.0):
        self.battery = battery
        if not battery.is_present:
            soc_kwh = 0.0
        if not 0.0 <= soc_kwh <= battery.capacity_kwh:
            raise ConfigurationError(
                f"initial SOC {soc_kwh} kWh outside [0, {battery.capacity_kwh}] kWh"
            )
        self.soc = float(soc_kwh)

    def __repr__(self):
        return f"BatteryState(soc={self.soc:.4f}, capacity={self.battery.capacity_kwh})"

    @property
    def soc_pct(self) -> float:
        b = self.battery
        return 100.0 * self.soc / b.capacity_kwh if b.capacity_kwh > 0 else 0.0

    def discharge_floor(self, floor_pct: Optional[float] = None) -> float:
        pct = self.battery.discharge_stop_pct if floor_pct is None else floor_pct
        return pct / 100.0 * self.battery.capacity_kwh

    def discharge_capacity(self, forced_rate: Optional[float] = None, floor_pct: Optional[float] = None) -> float:
        """SOC that may be withdrawn this interval."""
        rate = self.battery.max_discharge_kwh if forced_rate is None else forced_rate
        return max(0.0, min(rate, self.soc - self.discharge_floor(floor_pct)))

    def deliverable(self, forced_rate: Optional[float] = None, floor_pct: Optional[float] = None) -> float:
        """Energy that can reach the load (or grid) this interval.

        The rate limit applies to delivered energy; the floor applies to the
        withdrawal, which includes the storage loss.
        """
        rate = self.battery.max_discharge_kwh if forced_rate is None else forced_rate
        headroom = max(0.0, self.soc - self.discharge_floor(floor_pct))
        return max(0.0, min(rate, headroom / self.battery.storage_factor))

    def charge_capacity(self) -> float:
        return max(0.0, min(max_charge_for_soc(self.soc, self.battery), self.battery.capacity_kwh - self.soc))

    def withdrawal_for(self, need: float) -> float:
        return need * self.battery.storage_factor

    def apply_charge(self, amount: float) -> float:
        if amount < 0.0:
            raise InvariantViolation(f"negative charge requested: {amount}")
        self.soc += amount
        return amount

    def apply_discharge(self, amount: float) -> float:
        """Withdraw `amount` from SOC; returns what reaches the load."""
        if amount < 0.0:
            raise InvariantViolation(f"negative discharge requested: {amount}")
        self.soc -= amount
        return amount / self.battery.storage_factor

    def check(self) -> None:
        """Raise if SOC left [0, capacity]; float round-off inside the tolerance is snapped back."""
        cap = self.battery.capacity_kwh
        if self.soc < -SOC_TOLERANCE_KWH or self.soc > cap + SOC_TOLERANCE_KWH:
            raise InvariantViolation(f"SOC {self.soc} kWh outside [0, {cap}] kWh")
        self.soc = min(max(self.soc, 0.0), cap)
