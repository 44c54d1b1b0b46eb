# pvbatt_sim/__init__.py
"""Reference-year PV + battery + grid energy-flow simulation."""
from __future__ import annotations

from .battery import BatteryState, max_charge_for_soc
from .controller import InverterContext, StepResult
from .errors import (ConfigurationError, InsufficientInputDataError, IntervalOrderError,
                     InvariantViolation, SimulationCancelled, SimulationError)
from .schedules import expand_forced_discharge, expand_grid_charge
from .simulator import OutputRecord, StepSimulator, records_to_frame, run_scenario
from .system_model import (NO_BATTERY, BatteryConfig, ChargeModel, DischargeRule, InverterConfig,
                           LoadShiftRule, ScenarioConfig, year_interval_count)

__all__ = [
    "BatteryState", "max_charge_for_soc", "InverterContext", "StepResult",
    "ConfigurationError", "InsufficientInputDataError", "IntervalOrderError",
    "InvariantViolation", "SimulationCancelled", "SimulationError",
    "expand_forced_discharge", "expand_grid_charge",
    "OutputRecord", "StepSimulator", "records_to_frame", "run_scenario",
    "NO_BATTERY", "BatteryConfig", "ChargeModel", "DischargeRule", "InverterConfig",
    "LoadShiftRule", "ScenarioConfig", "year_interval_count",
]

__version__ = "0.1.0"
