# pvbatt_sim/data_generator.py
from __future__ import annotations
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

from .system_model import DAYS_IN_REFERENCE_YEAR, INTERVAL_MINUTES, REFERENCE_YEAR, ScenarioConfig

__all__ = ["generate_time_index", "reference_calendar", "build_samples",
           "resample_to_interval", "build_reference_inputs"]


def _get(cfg: Optional[dict], path: str, default: Any) -> Any:
    cur = cfg or {}
    for k in path.split("."):
        if not isinstance(cur, dict) or k not in cur: return default
        cur = cur[k]
    return cur


def generate_time_index(periods: int, interval_minutes: int = INTERVAL_MINUTES, year: int = REFERENCE_YEAR):
    return pd.date_range(start=f"{year}-01-01", periods=int(periods), freq=f"{int(interval_minutes)}min")


def reference_calendar(periods: int, interval_minutes: int = INTERVAL_MINUTES, year: int = REFERENCE_YEAR) -> pd.DataFrame:
    """Calendar tags (date, minute, mod, dow 0=Sunday, do2001) for each interval."""
    idx = generate_time_index(periods, interval_minutes, year)
    mod = idx.hour * 60 + idx.minute
    return pd.DataFrame({
        "date": idx.strftime("%Y-%m-%d"),
        "minute": idx.strftime("%H:%M"),
        "mod": np.asarray(mod, dtype=int),
        "dow": (np.asarray(idx.dayofweek, dtype=int) + 1) % 7,
        "do2001": np.asarray(idx.dayofyear, dtype=int),
    }, index=idx)


def build_samples(load, pv, *, interval_minutes: int = INTERVAL_MINUTES, year: int = REFERENCE_YEAR,
                  **extra) -> pd.DataFrame:
    """Sample frame for one inverter from per-interval load/pv (kWh) arrays.

    Extra keyword arrays (direct_ev_charge, immersion_load, ...) become columns.
    """
    load = np.asarray(load, dtype=float)
    pv = np.asarray(pv, dtype=float)
    if load.shape != pv.shape:
        raise ValueError(f"load and pv must have the same length, got {load.shape} and {pv.shape}")
    df = reference_calendar(len(load), interval_minutes, year)
    df["load"] = load
    df["pv"] = pv
    for name, values in extra.items():
        df[name] = np.asarray(values, dtype=float)
    return df


def resample_to_interval(series: pd.Series, interval_minutes: int = INTERVAL_MINUTES) -> pd.Series:
    """Spread coarse energy reads (e.g. 30-minute meter data, kWh) evenly over finer intervals."""
    if not isinstance(series.index, pd.DatetimeIndex) or len(series) < 2:
        raise ValueError("series needs a DatetimeIndex with at least two reads")
    step = series.index[1] - series.index[0]
    parts = int(step / pd.Timedelta(minutes=interval_minutes))
    if parts < 1:
        raise ValueError(f"series is already finer than {interval_minutes} minutes")
    idx = pd.date_range(series.index[0], periods=len(series) * parts, freq=f"{interval_minutes}min")
    return pd.Series(np.repeat(series.to_numpy(dtype=float) / parts, parts), index=idx, name=series.name)


def _load(idx, base=0.45, peak=2.8, noise=0.2, seed=42):
    tmins = idx.hour*60 + idx.minute
    d = tmins/(24*60.0)
    morning = base + (peak-base)*np.exp(-((d-0.30)**2)/(2*0.003))
    evening = (peak-base)*np.exp(-((d-0.78)**2)/(2*0.004))
    weekly = 1.0 + 0.10*np.sin(2*np.pi*((idx.dayofweek+1) % 7/7.0))
    rng = np.random.default_rng(int(seed))
    eps = rng.normal(0, noise, len(idx))
    return np.maximum(0.1, (morning+evening)*weekly + eps)


def _irr(idx):
    doy = idx.dayofyear.values
    tday = idx.hour.values + idx.minute.values/60.0
    season = 0.5 + 0.5*np.cos(2*np.pi*(doy-172)/365.0)
    daylen = 12.0 + 4.0*np.cos(2*np.pi*(doy-172)/365.0)
    sunrise = 12.0 - daylen/2.0
    diurnal = np.maximum(0.0, np.sin(np.pi*(tday - sunrise)/daylen))
    return np.clip(season*diurnal, 0.0, 1.0)


def _calibrate(kw: np.ndarray, dt_h: float, target_kwh: Optional[float]) -> np.ndarray:
    """kW profile -> kWh per interval, scaled to the annual target when given."""
    kwh = kw*dt_h
    if target_kwh:
        cur = float(kwh.sum())
        if cur > 1e-9: kwh = kwh*float(target_kwh)/cur
    return kwh


def build_reference_inputs(conf: Optional[dict] = None) -> Dict[str, pd.DataFrame]:
    """Synthetic reference-year samples, one frame per configured inverter.

    The household load is split by each inverter's load_share; each inverter
    gets its own PV array from its `pv` block.
    """
    scenario = ScenarioConfig(conf or {})
    periods = scenario.interval_count
    idx = generate_time_index(periods, scenario.interval_minutes, scenario.reference_year)
    dt_h = scenario.interval_minutes/60.0
    # Annual targets are pro-rated when only part of the year is simulated.
    part = scenario.days/DAYS_IN_REFERENCE_YEAR

    base_kw = _get(conf,"load.base_kw",0.35); peak_kw = _get(conf,"load.peak_kw",2.2)
    noise = _get(conf,"load.noise",0.15); seed = int(_get(conf,"load.seed",42))
    load = _calibrate(_load(idx, base_kw, peak_kw, noise, seed), dt_h, _get(conf,"load.annual_kwh",4200)*part)
    load *= float(_get(conf,"calibration.load_multiplier",1.0))

    irr = _irr(idx)
    inverter_confs = {c.get("name"): c for c in (conf or {}).get("inverters") or []}
    out = {}
    for setup in scenario.inverters:
        ic = inverter_confs.get(setup.inverter.name, {})
        pdc_kw = _get(ic,"pv.p_dc_stc_kw",0.0)
        annual = _get(ic,"pv.annual_kwh",None)
        pv = _calibrate(pdc_kw*irr, dt_h, annual*part if annual else None)
        pv *= float(_get(conf,"calibration.pv_multiplier",1.0))
        out[setup.inverter.name] = build_samples(load*setup.load_share, pv,
                                                 interval_minutes=scenario.interval_minutes,
                                                 year=scenario.reference_year)
    return out
