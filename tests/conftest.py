import math

import pytest

from pvbatt_sim.controller import InverterContext
from pvbatt_sim.data_generator import build_samples
from pvbatt_sim.system_model import NO_BATTERY, BatteryConfig, ChargeModel, InverterConfig


def make_inverter(name="inv", **kw):
    params = dict(name=name, dc2ac_loss_pct=0.0, ac2dc_loss_pct=0.0, dc2dc_loss_pct=0.0,
                  min_excess_kwh=0.0, max_throughput_kw=math.inf, export_max_kwh=math.inf)
    params.update(kw)
    return InverterConfig(**params)


def make_battery(**kw):
    params = dict(capacity_kwh=5.7, max_charge_kwh=0.225, max_discharge_kwh=0.225,
                  discharge_stop_pct=20.0, storage_loss_pct=1.0,
                  charge_model=ChargeModel(100.0, 100.0, 100.0, 0.0))
    params.update(kw)
    return BatteryConfig(**params)


def make_context(load, pv, *, inverter=None, battery=NO_BATTERY, soc=0.0, **kw):
    samples = build_samples(load, pv)
    return InverterContext(inverter or make_inverter(), samples, battery=battery, initial_soc_kwh=soc, **kw)


@pytest.fixture
def battery():
    return make_battery()


@pytest.fixture
def inverter():
    return make_inverter()
