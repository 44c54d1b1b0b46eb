import math

import numpy as np
import pandas as pd
import pytest

from pvbatt_sim.controller import InverterContext
from pvbatt_sim.errors import ConfigurationError, InsufficientInputDataError
from pvbatt_sim.schedules import expand_forced_discharge, expand_grid_charge
from pvbatt_sim.system_model import NO_BATTERY, ChargeModel, DischargeRule, LoadShiftRule

from conftest import make_battery, make_context, make_inverter


def test_shortfall_drawn_from_battery_with_storage_loss(battery):
    # Worked example run from a full battery; started at the 1.14 kWh floor it would breach the floor.
    ctx = make_context([1.1], [0.0], battery=battery, soc=5.7)
    r = ctx.step(0)
    assert r.battery_to_load == pytest.approx(0.225 * 1.01)
    assert r.buy == pytest.approx(1.1 - 0.225)
    assert r.soc == pytest.approx(5.7 - 0.22725)
    assert r.feed == 0.0


def test_no_discharge_when_starting_at_floor(battery):
    ctx = make_context([1.1], [0.0], battery=battery, soc=1.14)
    r = ctx.step(0)
    assert r.battery_to_load == 0.0
    assert r.buy == pytest.approx(1.1)
    assert r.soc == pytest.approx(1.14)


def test_near_full_battery_charges_at_top_bracket_rate():
    b = make_battery(capacity_kwh=10.0, charge_model=ChargeModel(100.0, 100.0, 50.0, 0.0))
    ctx = make_context([0.0], [1.0], inverter=make_inverter(dc2ac_loss_pct=5.0), battery=b, soc=9.1)
    r = ctx.step(0)
    assert r.pv_to_charge == pytest.approx(0.1125)
    assert r.feed == pytest.approx(0.95 - 0.1125)
    assert r.soc == pytest.approx(9.1 + 0.1125)
    assert r.buy == 0.0


def test_dc2dc_loss_applied_to_stored_energy(battery):
    ctx = make_context([0.0], [1.0], inverter=make_inverter(dc2dc_loss_pct=10.0), battery=battery, soc=2.0)
    r = ctx.step(0)
    assert r.pv_to_charge == pytest.approx(0.225)
    assert r.soc == pytest.approx(2.0 + 0.225 * 0.9)


def test_balanced_interval_moves_nothing(battery):
    ctx = make_context([0.7], [0.7], battery=battery, soc=3.0)
    r = ctx.step(0)
    assert (r.buy, r.feed, r.battery_to_load, r.pv_to_charge) == (0.0, 0.0, 0.0, 0.0)
    assert r.soc == 3.0


def test_no_battery_buys_and_feeds_in_full():
    ctx = make_context([1.0, 0.2, 0.1], [0.3, 1.0, 2.0], inverter=make_inverter(export_max_kwh=1.5))
    rows = [ctx.step(i) for i in range(3)]
    assert [r.soc for r in rows] == [0.0, 0.0, 0.0]
    assert all(r.battery_to_load == 0.0 and r.pv_to_charge == 0.0 for r in rows)
    assert rows[0].buy == pytest.approx(0.7)
    assert rows[1].feed == pytest.approx(0.8)
    assert rows[2].feed == pytest.approx(1.5)  # export cap, rest curtailed


def test_lossless_no_battery_reduces_to_energy_balance():
    rng = np.random.default_rng(3)
    load = rng.uniform(0.0, 2.0, 500)
    pv = rng.uniform(0.0, 2.0, 500)
    ctx = make_context(load, pv)
    rows = [ctx.step(i) for i in range(500)]
    np.testing.assert_allclose([r.buy for r in rows], np.maximum(0.0, load - pv))
    np.testing.assert_allclose([r.feed for r in rows], np.maximum(0.0, pv - load))


def test_small_excess_below_threshold_is_ignored(battery):
    ctx = make_context([1.0], [1.005], inverter=make_inverter(min_excess_kwh=0.008), battery=battery, soc=3.0)
    r = ctx.step(0)
    assert r.pv_to_charge == 0.0
    assert r.feed == 0.0
    assert r.buy == 0.0
    assert r.soc == 3.0


def test_throughput_caps_charge_and_feed(battery):
    # 1.2 kW over 5 minutes is 0.1 kWh
    ctx = make_context([0.0], [0.5], inverter=make_inverter(max_throughput_kw=1.2), battery=battery, soc=2.0)
    r = ctx.step(0)
    assert r.pv_to_charge == pytest.approx(0.1)
    assert r.feed == pytest.approx(0.0)
    assert r.soc == pytest.approx(2.1)


def test_grid_charge_tops_up_towards_target(battery):
    sched = expand_grid_charge([LoadShiftRule(begin=0, end=24, stop_at_pct=80)], 3)
    inv = make_inverter(ac2dc_loss_pct=5.0)
    ctx = make_context([1.0, 1.0, 1.0], [0.0, 0.0, 0.0], inverter=inv, battery=battery, soc=2.85,
                       grid_charge=sched)
    r = ctx.step(0)
    assert r.grid_to_battery == pytest.approx(0.225 / 0.95)
    assert r.buy == pytest.approx(1.0 + 0.225 / 0.95)
    assert r.battery_to_load == 0.0  # held while charging from the grid
    assert r.soc == pytest.approx(3.075)


def test_grid_charge_bounded_by_target_gap(battery):
    sched = expand_grid_charge([LoadShiftRule(begin=0, end=24, stop_at_pct=80)], 1)
    ctx = make_context([0.0], [0.0], battery=battery, soc=4.5, grid_charge=sched)
    r = ctx.step(0)
    assert r.grid_to_battery == pytest.approx(0.06)
    assert r.soc == pytest.approx(4.56)


def test_grid_charge_window_above_target_buys_load_only(battery):
    sched = expand_grid_charge([LoadShiftRule(begin=0, end=24, stop_at_pct=80)], 1)
    ctx = make_context([1.0], [0.0], battery=battery, soc=5.13, grid_charge=sched)
    r = ctx.step(0)
    assert r.grid_to_battery == 0.0
    assert r.battery_to_load == 0.0
    assert r.buy == pytest.approx(1.0)
    assert r.soc == pytest.approx(5.13)


def test_grid_charge_and_pv_charge_add_up_within_capacity(battery):
    sched = expand_grid_charge([LoadShiftRule(begin=0, end=24, stop_at_pct=100)], 1)
    ctx = make_context([0.0], [1.0], battery=battery, soc=5.5, grid_charge=sched)
    r = ctx.step(0)
    assert r.grid_to_battery == pytest.approx(0.2)
    assert r.pv_to_charge == pytest.approx(0.0)
    assert r.feed == pytest.approx(1.0)
    assert r.soc == pytest.approx(5.7)


def test_grid_and_pv_charge_share_one_rate_allowance(battery):
    sched = expand_grid_charge([LoadShiftRule(begin=0, end=24, stop_at_pct=100)], 1)
    ctx = make_context([0.0], [1.0], battery=battery, soc=2.0, grid_charge=sched)
    r = ctx.step(0)
    assert r.grid_to_battery == pytest.approx(0.225)
    assert r.pv_to_charge == 0.0
    assert r.feed == pytest.approx(1.0)
    assert r.soc - 2.0 <= battery.max_charge_kwh + 1e-12


def test_forced_discharge_exports_at_scheduled_rate(battery):
    sched = expand_forced_discharge([DischargeRule(begin=0, end=24, stop_at_pct=40, rate_kwh=0.2)], 1)
    ctx = make_context([0.0], [0.0], inverter=make_inverter(export_max_kwh=0.5), battery=battery, soc=5.7,
                       forced_discharge=sched)
    r = ctx.step(0)
    assert r.feed == pytest.approx(0.2)
    assert r.battery_to_grid == pytest.approx(0.202)
    assert r.battery_to_load == 0.0
    assert r.soc == pytest.approx(5.7 - 0.202)


def test_forced_discharge_limited_by_export_headroom(battery):
    sched = expand_forced_discharge([DischargeRule(begin=0, end=24, stop_at_pct=0, rate_kwh=0.2)], 1)
    full = make_battery(charge_model=ChargeModel(100.0, 100.0, 100.0, 0.0))
    ctx = make_context([0.0], [0.45], inverter=make_inverter(export_max_kwh=0.5), battery=full, soc=5.7,
                       forced_discharge=sched)
    r = ctx.step(0)
    assert r.pv_to_charge == 0.0
    assert r.feed == pytest.approx(0.5)
    assert r.battery_to_grid == pytest.approx(0.05 * 1.01)


def test_forced_discharge_stops_at_its_floor(battery):
    sched = expand_forced_discharge([DischargeRule(begin=0, end=24, stop_at_pct=40, rate_kwh=0.2)], 2)
    ctx = make_context([0.0, 0.0], [0.0, 0.0], battery=battery, soc=2.3, forced_discharge=sched)
    r = ctx.step(0)
    assert r.battery_to_grid == pytest.approx(0.02)
    assert r.soc == pytest.approx(2.28)
    r = ctx.step(1)
    assert r.battery_to_grid == pytest.approx(0.0)
    assert r.feed == pytest.approx(0.0)


def test_pass_through_loads_add_to_demand():
    samples = pd.DataFrame({"load": [0.5], "pv": [1.0], "direct_ev_charge": [0.5], "div_to_water": [0.1]})
    ctx = InverterContext(make_inverter(), samples)
    r = ctx.step(0)
    assert r.load == 0.5
    assert r.direct_ev_charge == 0.5
    assert r.div_to_water == 0.1
    assert r.buy == pytest.approx(0.0)
    assert r.feed == pytest.approx(0.0)


def test_calendar_tags_derived_when_samples_lack_them():
    ctx = InverterContext(make_inverter(), pd.DataFrame({"load": [0.0] * 300, "pv": [0.0] * 300}))
    assert ctx.calendar_tags(289) == {"date": "2001-01-02", "minute": "00:05", "mod": 5, "dow": 2, "do2001": 2}


def test_step_beyond_input_fails_fast(battery):
    ctx = make_context([1.0, 1.0], [0.0, 0.0], inverter=make_inverter("west"), battery=battery, soc=3.0)
    with pytest.raises(InsufficientInputDataError) as exc:
        ctx.step(2)
    assert exc.value.inverter == "west"
    assert exc.value.interval == 2


def test_samples_are_validated_at_construction():
    with pytest.raises(ConfigurationError, match="'pv'"):
        InverterContext(make_inverter(), pd.DataFrame({"load": [1.0]}))
    with pytest.raises(ConfigurationError):
        InverterContext(make_inverter(), pd.DataFrame({"load": [-1.0], "pv": [0.0]}))
    with pytest.raises(ConfigurationError):
        InverterContext(make_inverter(), pd.DataFrame({"load": [math.nan], "pv": [0.0]}))


@pytest.mark.parametrize("scale", [0.0, 1.0, 1e6])
def test_soc_stays_within_bounds_for_any_input(battery, scale):
    rng = np.random.default_rng(11)
    n = 2000
    load = rng.uniform(0.0, 1.0, n) * scale
    pv = rng.uniform(0.0, 1.0, n) * scale
    charge = expand_grid_charge([LoadShiftRule(begin=1, end=3, stop_at_pct=90)], n)
    ctx = make_context(load, pv, inverter=make_inverter(dc2ac_loss_pct=4.0, min_excess_kwh=0.008),
                       battery=battery, soc=2.0, grid_charge=charge)
    floor = battery.discharge_stop_pct / 100.0 * battery.capacity_kwh
    for i in range(n):
        r = ctx.step(i)
        assert 0.0 <= r.soc <= battery.capacity_kwh
        assert r.soc >= floor - 1e-9
        assert min(r.buy, r.feed, r.battery_to_load, r.pv_to_charge, r.grid_to_battery) >= 0.0


def test_no_battery_context_ignores_schedules():
    sched = expand_grid_charge([LoadShiftRule(begin=0, end=24, stop_at_pct=100)], 1)
    ctx = make_context([1.0], [0.0], battery=NO_BATTERY, grid_charge=sched)
    r = ctx.step(0)
    assert r.grid_to_battery == 0.0
    assert r.buy == pytest.approx(1.0)
