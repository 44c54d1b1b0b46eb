# main.py
from __future__ import annotations
import os, json, yaml, argparse, logging
import pandas as pd
from datetime import datetime, timezone

from pvbatt_sim.data_generator import build_reference_inputs
from pvbatt_sim.scenarios import run_scenarios, totals_table

def load_conf(path: str = "config.yaml"):
    with open(path, "r") as f:
        return yaml.safe_load(f)

def load_inputs(conf: dict, data_dir: str = "data") -> dict:
    """Per-inverter samples from data/<inverter>.csv, generated when missing."""
    names = [c["name"] for c in conf.get("inverters") or []] or ["grid"]
    paths = {n: os.path.join(data_dir, f"{n}.csv") for n in names}
    if not all(os.path.exists(p) for p in paths.values()):
        print(f"No existing simulation input found. Generating {data_dir}/*.csv ...")
        inputs = build_reference_inputs(conf)
        os.makedirs(data_dir, exist_ok=True)
        for name, df in inputs.items():
            df.to_csv(paths[name])
            print(f"Generated {paths[name]} with shape {df.shape} | "
                  f"load={int(df['load'].sum())}kWh pv={int(df['pv'].sum())}kWh")
        return inputs
    return {n: pd.read_csv(p, index_col=0, parse_dates=True, dtype={"date": str, "minute": str})
            for n, p in paths.items()}

def run_all(conf: dict, out_dir: str = "results", names=None, workers: int = 0):
    os.makedirs(out_dir, exist_ok=True)
    inputs = load_inputs(conf)

    print("\n--- Running reference-year simulation ---")
    concurrency = "process" if workers and workers > 1 else None
    results = run_scenarios(conf, inputs, names=names, concurrency=concurrency, max_workers=workers or None)

    for name, df in results.items():
        df.to_csv(os.path.join(out_dir, f"{name}.csv"))
        print(f"Saved {out_dir}/{name}.csv ({len(df)} intervals)")

    totals = totals_table(results)
    totals.to_csv(os.path.join(out_dir, "totals.csv"))
    print(f"Saved annual totals to {out_dir}/totals.csv")
    for name, row in totals.iterrows():
        print(f"  {name}: buy {row['buy_kwh']:.0f} kWh, feed {row['feed_kwh']:.0f} kWh, "
              f"EFC {row['equivalent_full_cycles']:.1f}")

    meta = {
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "interval_minutes": conf.get("time", {}).get("interval_minutes", 5),
        "reference_year": conf.get("time", {}).get("reference_year", 2001),
        "inverters": [c["name"] for c in conf.get("inverters") or []],
        "scenarios": list(results),
    }
    with open(os.path.join(out_dir, "run_metadata.json"), "w") as f:
        json.dump(meta, f, indent=2)
    return results

def _parse_args(argv=None):
    p = argparse.ArgumentParser(description="Simulate a household PV/battery system over the reference year.")
    p.add_argument("--config", default="config.yaml", help="YAML configuration file")
    p.add_argument("--out", default="results", help="output directory")
    p.add_argument("--scenario", action="append", dest="scenarios",
                   help="run only this scenario (repeatable); default runs all")
    p.add_argument("--workers", type=int, default=0, help="parallel worker processes for scenarios")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return p.parse_args(argv)

if __name__ == "__main__":
    args = _parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    conf = load_conf(args.config)
    run_all(conf, out_dir=args.out, names=args.scenarios, workers=args.workers)
