# pvbatt_sim/system_model.py
from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Tuple

from .errors import ConfigurationError

__all__ = [
    "INTERVAL_MINUTES", "REFERENCE_YEAR", "DAYS_IN_REFERENCE_YEAR",
    "intervals_per_day", "year_interval_count",
    "ChargeModel", "BatteryConfig", "NO_BATTERY", "InverterConfig",
    "LoadShiftRule", "DischargeRule", "InverterSetup", "ScenarioConfig",
]

INTERVAL_MINUTES = 5
REFERENCE_YEAR = 2001
DAYS_IN_REFERENCE_YEAR = 365
ALL_MONTHS = tuple(range(1, 13))
ALL_DAYS = tuple(range(7))


def intervals_per_day(interval_minutes: int = INTERVAL_MINUTES) -> int:
    if interval_minutes <= 0 or (24 * 60) % interval_minutes:
        raise ConfigurationError(f"interval_minutes must divide a day evenly, got {interval_minutes}")
    return (24 * 60) // interval_minutes


def year_interval_count(interval_minutes: int = INTERVAL_MINUTES, days: int = DAYS_IN_REFERENCE_YEAR) -> int:
    """105,120 for the default 5-minute, 365-day reference year."""
    return intervals_per_day(interval_minutes) * int(days)


# ---------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------

def _require(conf: Mapping, key: str, where: str) -> Any:
    if not isinstance(conf, Mapping):
        raise ConfigurationError(f"{where}: expected a mapping, got {type(conf).__name__}")
    if key not in conf or conf[key] is None:
        raise ConfigurationError(f"{where}: missing required field '{key}'")
    return conf[key]


def _number(value: Any, name: str, *, minimum: float = 0.0, maximum: Optional[float] = None,
            below_max: bool = False) -> float:
    try:
        x = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None
    if math.isnan(x):
        raise ConfigurationError(f"{name} must not be NaN")
    if x < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {x}")
    if maximum is not None and (x >= maximum if below_max else x > maximum):
        raise ConfigurationError(f"{name} must be {'<' if below_max else '<='} {maximum}, got {x}")
    return x


def _int_set(values: Iterable, name: str, valid: Tuple[int, ...]) -> Tuple[int, ...]:
    try:
        items = [int(v) for v in values]
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a list of integers, got {values!r}") from None
    bad = [v for v in items if v not in valid]
    if bad:
        raise ConfigurationError(f"{name} contains out-of-range values {bad}")
    return tuple(sorted(set(items)))


# ---------------------------------------------------------------------
# Battery
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ChargeModel:
    """Percent of the rated charge power available in each SOC bracket."""
    percent0: float
    percent12: float
    percent90: float
    percent100: float

    def __post_init__(self):
        for f in ("percent0", "percent12", "percent90", "percent100"):
            object.__setattr__(self, f, _number(getattr(self, f), f"charge_model.{f}", maximum=100.0))

    @classmethod
    def from_conf(cls, conf: Mapping) -> "ChargeModel":
        if not isinstance(conf, Mapping):
            raise ConfigurationError("charge_model must be a mapping of bracket -> percent")
        values = {}
        for bracket in ("0", "12", "90", "100"):
            for key in (bracket, int(bracket), f"percent{bracket}"):
                if key in conf and conf[key] is not None:
                    values[f"percent{bracket}"] = conf[key]
                    break
            else:
                raise ConfigurationError(f"charge_model is missing the {bracket}% bracket")
        return cls(**values)


@dataclass(frozen=True)
class BatteryConfig:
    capacity_kwh: float
    max_charge_kwh: float  # per interval
    max_discharge_kwh: float  # per interval
    discharge_stop_pct: float
    storage_loss_pct: float
    charge_model: ChargeModel

    def __post_init__(self):
        object.__setattr__(self, "capacity_kwh", _number(self.capacity_kwh, "battery.capacity_kwh"))
        object.__setattr__(self, "max_charge_kwh", _number(self.max_charge_kwh, "battery.max_charge_kwh"))
        object.__setattr__(self, "max_discharge_kwh", _number(self.max_discharge_kwh, "battery.max_discharge_kwh"))
        object.__setattr__(self, "discharge_stop_pct",
                           _number(self.discharge_stop_pct, "battery.discharge_stop_pct", maximum=100.0))
        object.__setattr__(self, "storage_loss_pct", _number(self.storage_loss_pct, "battery.storage_loss_pct"))
        if not isinstance(self.charge_model, ChargeModel):
            raise ConfigurationError("battery.charge_model must be a ChargeModel")

    @property
    def storage_factor(self) -> float:
        """Energy withdrawn from storage per unit delivered."""
        return 1.0 + self.storage_loss_pct / 100.0

    @property
    def is_present(self) -> bool:
        return self.capacity_kwh > 0.0

    @classmethod
    def from_conf(cls, conf: Mapping) -> "BatteryConfig":
        w = "battery"
        return cls(
            capacity_kwh=_require(conf, "capacity_kwh", w),
            max_charge_kwh=_require(conf, "max_charge_kwh", w),
            max_discharge_kwh=_require(conf, "max_discharge_kwh", w),
            discharge_stop_pct=_require(conf, "discharge_stop_pct", w),
            storage_loss_pct=_require(conf, "storage_loss_pct", w),
            charge_model=ChargeModel.from_conf(_require(conf, "charge_model", w)),
        )


# Inverters without storage get this instead of None.
NO_BATTERY = BatteryConfig(
    capacity_kwh=0.0, max_charge_kwh=0.0, max_discharge_kwh=0.0,
    discharge_stop_pct=100.0, storage_loss_pct=0.0,
    charge_model=ChargeModel(0.0, 0.0, 0.0, 0.0),
)


# ---------------------------------------------------------------------
# Inverter
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class InverterConfig:
    name: str
    dc2ac_loss_pct: float
    ac2dc_loss_pct: float
    dc2dc_loss_pct: float
    min_excess_kwh: float
    max_throughput_kw: float
    export_max_kwh: float  # per interval

    def __post_init__(self):
        if not str(self.name):
            raise ConfigurationError("inverter.name must not be empty")
        for f in ("dc2ac_loss_pct", "ac2dc_loss_pct", "dc2dc_loss_pct"):
            object.__setattr__(self, f, _number(getattr(self, f), f"inverter.{f}", maximum=100.0, below_max=True))
        for f in ("min_excess_kwh", "max_throughput_kw", "export_max_kwh"):
            object.__setattr__(self, f, _number(getattr(self, f), f"inverter.{f}"))

    # Efficiencies as fractions
    @property
    def dc2ac(self) -> float: return 1.0 - self.dc2ac_loss_pct / 100.0

    @property
    def ac2dc(self) -> float: return 1.0 - self.ac2dc_loss_pct / 100.0

    @property
    def dc2dc(self) -> float: return 1.0 - self.dc2dc_loss_pct / 100.0

    def throughput_kwh(self, interval_minutes: int = INTERVAL_MINUTES) -> float:
        return self.max_throughput_kw * interval_minutes / 60.0

    @classmethod
    def perfect(cls, name: str = "grid") -> "InverterConfig":
        """Lossless, unbounded inverter used for load-only scenarios."""
        return cls(name=name, dc2ac_loss_pct=0.0, ac2dc_loss_pct=0.0, dc2dc_loss_pct=0.0,
                   min_excess_kwh=0.0, max_throughput_kw=math.inf, export_max_kwh=math.inf)

    @classmethod
    def from_conf(cls, conf: Mapping) -> "InverterConfig":
        w = f"inverter '{conf.get('name', '?')}'" if isinstance(conf, Mapping) else "inverter"
        return cls(
            name=str(_require(conf, "name", w)),
            dc2ac_loss_pct=_require(conf, "dc2ac_loss_pct", w),
            ac2dc_loss_pct=_require(conf, "ac2dc_loss_pct", w),
            dc2dc_loss_pct=_require(conf, "dc2dc_loss_pct", w),
            min_excess_kwh=_require(conf, "min_excess_kwh", w),
            max_throughput_kw=_require(conf, "max_throughput_kw", w),
            export_max_kwh=_require(conf, "export_max_kwh", w),
        )


# ---------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------

def _window(conf: Mapping, where: str) -> dict:
    return {
        "begin": _require(conf, "begin", where),
        "end": _require(conf, "end", where),
        "months": _require(conf, "months", where),
        "days": _require(conf, "days", where),
    }


def _check_window(rule) -> None:
    name = type(rule).__name__
    for f in ("begin", "end"):
        v = _number(getattr(rule, f), f"{name}.{f}", maximum=24)
        if not v.is_integer():
            raise ConfigurationError(f"{name}.{f} must be a whole hour, got {v!r}")
        object.__setattr__(rule, f, int(v))
    object.__setattr__(rule, "months", _int_set(rule.months, f"{name}.months", ALL_MONTHS))
    days = _int_set(rule.days, f"{name}.days", ALL_DAYS + (7,))
    object.__setattr__(rule, "days", tuple(sorted({0 if d == 7 else d for d in days})))  # 7 is Sunday too


@dataclass(frozen=True)
class LoadShiftRule:
    """Charge from the grid between `begin` and `end` (hours, inclusive) up to `stop_at_pct`."""
    begin: int
    end: int
    stop_at_pct: float
    months: Tuple[int, ...] = ALL_MONTHS
    days: Tuple[int, ...] = ALL_DAYS

    def __post_init__(self):
        _check_window(self)
        object.__setattr__(self, "stop_at_pct", _number(self.stop_at_pct, "load_shift.stop_at_pct", maximum=100.0))

    @classmethod
    def from_conf(cls, conf: Mapping) -> "LoadShiftRule":
        return cls(stop_at_pct=_require(conf, "stop_at_pct", "load_shift"), **_window(conf, "load_shift"))


@dataclass(frozen=True)
class DischargeRule:
    """Force the battery to export between `begin` and `end` down to `stop_at_pct`."""
    begin: int
    end: int
    stop_at_pct: float
    rate_kwh: float  # per interval
    months: Tuple[int, ...] = ALL_MONTHS
    days: Tuple[int, ...] = ALL_DAYS

    def __post_init__(self):
        _check_window(self)
        object.__setattr__(self, "stop_at_pct", _number(self.stop_at_pct, "forced_discharge.stop_at_pct", maximum=100.0))
        object.__setattr__(self, "rate_kwh", _number(self.rate_kwh, "forced_discharge.rate_kwh"))

    @classmethod
    def from_conf(cls, conf: Mapping) -> "DischargeRule":
        w = "forced_discharge"
        return cls(stop_at_pct=_require(conf, "stop_at_pct", w), rate_kwh=_require(conf, "rate_kwh", w),
                   **_window(conf, w))


# ---------------------------------------------------------------------
# Scenario assembly
# ---------------------------------------------------------------------

def _initial_soc_kwh(battery: BatteryConfig, value: Any) -> float:
    if not battery.is_present:
        return 0.0
    if isinstance(value, str):
        if value.strip().lower() != "floor":
            raise ConfigurationError(f"battery.initial_soc_pct must be a percentage or 'floor', got {value!r}")
        return battery.discharge_stop_pct / 100.0 * battery.capacity_kwh
    pct = _number(value, "battery.initial_soc_pct", maximum=100.0)
    return pct / 100.0 * battery.capacity_kwh


@dataclass(frozen=True)
class InverterSetup:
    """Everything needed to build one inverter+battery context."""
    inverter: InverterConfig
    battery: BatteryConfig
    initial_soc_kwh: float
    load_shifts: Tuple[LoadShiftRule, ...] = ()
    forced_discharges: Tuple[DischargeRule, ...] = ()
    load_share: float = 0.0

    @classmethod
    def from_conf(cls, conf: Mapping, *, load_share: float = 0.0) -> "InverterSetup":
        inverter = InverterConfig.from_conf(conf)
        b = conf.get("battery")
        if b:
            battery = BatteryConfig.from_conf(b)
            soc0 = _initial_soc_kwh(battery, _require(b, "initial_soc_pct", "battery"))
        else:
            battery, soc0 = NO_BATTERY, 0.0
        return cls(
            inverter=inverter,
            battery=battery,
            initial_soc_kwh=soc0,
            load_shifts=tuple(LoadShiftRule.from_conf(r) for r in conf.get("load_shifts") or ()),
            forced_discharges=tuple(DischargeRule.from_conf(r) for r in conf.get("forced_discharges") or ()),
            load_share=_number(conf.get("load_share", load_share), "inverter.load_share", maximum=1.0),
        )


class ScenarioConfig:
    """Parsed scenario: reference-year timing plus one setup per inverter."""

    def __init__(self, conf: dict):
        t = conf.get("time", {}) or {}
        self.interval_minutes = int(t.get("interval_minutes", INTERVAL_MINUTES))
        self.reference_year = int(t.get("reference_year", REFERENCE_YEAR))
        self.days = int(t.get("days", DAYS_IN_REFERENCE_YEAR))
        if not 0 < self.days <= DAYS_IN_REFERENCE_YEAR:
            raise ConfigurationError(f"time.days must be within 1..{DAYS_IN_REFERENCE_YEAR}, got {self.days}")
        self.interval_count = year_interval_count(self.interval_minutes, self.days)

        inverters = conf.get("inverters") or []
        if not inverters:
            # No inverters: load-only household behind a lossless meter.
            self.inverters = (InverterSetup(InverterConfig.perfect(), NO_BATTERY, 0.0, load_share=1.0),)
        else:
            # The household load sits on the first inverter unless shares say otherwise.
            self.inverters = tuple(
                InverterSetup.from_conf(c, load_share=1.0 if i == 0 else 0.0) for i, c in enumerate(inverters)
            )
        names = [s.inverter.name for s in self.inverters]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"inverter names must be unique, got {names}")
        if not math.isclose(sum(s.load_share for s in self.inverters), 1.0, abs_tol=1e-9):
            raise ConfigurationError("inverter load_share values must add up to 1")
