# pvbatt_sim/evaluation.py
from __future__ import annotations
import pandas as pd
from typing import Dict, Any

__all__ = ["ENERGY_COLUMNS", "kpi_energy_totals", "kpi_lifecycle", "summarize_totals", "monthly_totals"]

ENERGY_COLUMNS = ("load", "pv", "buy", "feed", "battery_to_load", "pv_to_charge",
                  "grid_to_battery", "pv_to_load", "battery_to_grid")

def kpi_energy_totals(df: pd.DataFrame) -> Dict[str, Any]:
    out = {f"{c}_kwh": float(df[c].sum()) for c in ENERGY_COLUMNS if c in df.columns}
    pv = out.get("pv_kwh", 0.0); load = out.get("load_kwh", 0.0)
    pv_used = out.get("pv_to_load_kwh", 0.0) + out.get("pv_to_charge_kwh", 0.0)
    out["self_consumption"] = pv_used/pv if pv > 1e-9 else None
    out["self_sufficiency"] = max(0.0, 1.0 - out.get("buy_kwh", 0.0)/load) if load > 1e-9 else None
    return out

def kpi_lifecycle(df: pd.DataFrame, capacity_kwh: float) -> Dict[str, Any]:
    dis_kwh = float(df[["battery_to_load", "battery_to_grid"]].clip(lower=0.0).sum().sum())
    efc = dis_kwh/capacity_kwh if capacity_kwh > 0 else 0.0
    return {"equivalent_full_cycles": float(efc), "battery_throughput_kwh": dis_kwh,
            "max_soc_kwh": float(df["soc"].max()) if len(df) else 0.0}

def summarize_totals(df: pd.DataFrame, capacity_kwh: float = 0.0) -> Dict[str, Any]:
    """Annual totals for one scenario output frame; `capacity_kwh` is the summed battery size."""
    out: Dict[str, Any] = {"intervals": int(len(df))}
    out.update(kpi_energy_totals(df))
    out.update(kpi_lifecycle(df, capacity_kwh))
    return out

def monthly_totals(df: pd.DataFrame) -> pd.DataFrame:
    cols = [c for c in ENERGY_COLUMNS if c in df.columns]
    if isinstance(df.index, pd.DatetimeIndex):
        return df[cols].resample("MS").sum()
    month = pd.to_datetime(df["date"]).dt.month
    return df[cols].groupby(month.values).sum()
