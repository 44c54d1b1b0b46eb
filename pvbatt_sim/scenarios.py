# pvbatt_sim/scenarios.py
from __future__ import annotations
import copy
import logging
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from functools import partial
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import pandas as pd

from .controller import InverterContext
from .data_generator import build_reference_inputs
from .errors import ConfigurationError
from .evaluation import summarize_totals
from .simulator import records_to_frame, run_scenario
from .system_model import ScenarioConfig

__all__ = ["BASE_SCENARIO", "apply_overrides", "scenario_table", "build_contexts",
           "simulate", "run_scenarios", "totals_table"]

_LOGGER = logging.getLogger(__name__)

BASE_SCENARIO = "base"


# ---------------------------------------------------------------------
# Configuration overrides
# ---------------------------------------------------------------------


def _merge(base, override):
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            out[k] = _merge(base.get(k), v) if k in base else copy.deepcopy(v)
        return out
    return copy.deepcopy(override)


def apply_overrides(conf: dict, overrides: Optional[dict]) -> dict:
    """
    Deep-merge a what-if override onto the base config.

    `inverters` entries are matched by name, so an override only has to carry
    the fields it changes; unknown names are appended as new inverters.
    """
    if not overrides:
        return copy.deepcopy(conf)
    overrides = dict(overrides)
    inv_over = overrides.pop("inverters", None)
    out = _merge(conf, overrides)
    if inv_over is not None:
        merged = [copy.deepcopy(c) for c in conf.get("inverters") or []]
        by_name = {c.get("name"): i for i, c in enumerate(merged)}
        for c in inv_over:
            name = c.get("name")
            if name in by_name:
                merged[by_name[name]] = _merge(merged[by_name[name]], c)
            else:
                merged.append(copy.deepcopy(c))
        out["inverters"] = merged
    return out


def scenario_table(conf: dict) -> Dict[str, dict]:
    """Base scenario plus every named entry under `scenarios`, fully merged."""
    base = {k: v for k, v in conf.items() if k != "scenarios"}
    table = {BASE_SCENARIO: copy.deepcopy(base)}
    for name, overrides in (conf.get("scenarios") or {}).items():
        if name == BASE_SCENARIO:
            raise ConfigurationError(f"scenario name '{BASE_SCENARIO}' is reserved")
        table[str(name)] = apply_overrides(base, overrides)
    return table


# ---------------------------------------------------------------------
# Running one scenario
# ---------------------------------------------------------------------


def build_contexts(conf: dict, inputs: Mapping[str, pd.DataFrame]) -> Tuple[ScenarioConfig, List[InverterContext]]:
    scenario = ScenarioConfig(conf)
    contexts = []
    for setup in scenario.inverters:
        name = setup.inverter.name
        if name not in inputs:
            raise ConfigurationError(f"no input samples for inverter '{name}'")
        contexts.append(InverterContext.from_setup(setup, inputs[name], scenario.interval_count,
                                                   scenario.interval_minutes, scenario.reference_year))
    return scenario, contexts


def simulate(
    conf: dict,
    inputs: Optional[Mapping[str, pd.DataFrame]] = None,
    *,
    should_stop: Optional[Callable[[], bool]] = None,
    on_cancel: str = "discard",
) -> pd.DataFrame:
    """Run one configured scenario over the reference year; returns the output frame."""
    if inputs is None:
        inputs = build_reference_inputs(conf)
    scenario, contexts = build_contexts(conf, inputs)
    records = run_scenario(contexts, scenario.interval_count, should_stop=should_stop, on_cancel=on_cancel)
    df = records_to_frame(records, scenario.interval_minutes, scenario.reference_year)
    df.attrs["capacity_kwh"] = float(sum(s.battery.capacity_kwh for s in scenario.inverters))
    return df


def _simulate_named(item: Tuple[str, dict], inputs: Optional[Mapping[str, pd.DataFrame]]) -> Tuple[str, pd.DataFrame]:
    name, conf = item
    _LOGGER.info("Scenario '%s' started", name)
    df = simulate(conf, inputs)
    _LOGGER.info("Scenario '%s' finished (%d intervals)", name, len(df))
    return name, df


def run_scenarios(
    conf: dict,
    inputs: Optional[Mapping[str, pd.DataFrame]] = None,
    names: Optional[List[str]] = None,
    concurrency: Optional[str] = None,
    max_workers: Optional[int] = None,
) -> Dict[str, pd.DataFrame]:
    """
    Run the base scenario and its what-if variants.

    Scenarios share no state, so with concurrency="thread" or "process" each
    one runs in its own worker. Process pools need picklable inputs.
    """
    table = scenario_table(conf)
    if names:
        unknown = [n for n in names if n not in table]
        if unknown:
            raise ConfigurationError(f"unknown scenario(s): {unknown}")
        table = {n: table[n] for n in names}

    run_fn = partial(_simulate_named, inputs=inputs)
    if concurrency is None:
        return dict(run_fn(item) for item in table.items())
    if concurrency not in {"thread", "process"}:
        raise ValueError("concurrency must be 'thread', 'process', or None.")
    executor_cls = ThreadPoolExecutor if concurrency == "thread" else ProcessPoolExecutor
    with executor_cls(max_workers=max_workers) as executor:
        return dict(executor.map(run_fn, table.items()))


def totals_table(results: Mapping[str, pd.DataFrame]) -> pd.DataFrame:
    rows = {name: summarize_totals(df, df.attrs.get("capacity_kwh", 0.0)) for name, df in results.items()}
    return pd.DataFrame.from_dict(rows, orient="index")
