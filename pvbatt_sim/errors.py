# pvbatt_sim/errors.py
from __future__ import annotations

__all__ = [
    "SimulationError", "ConfigurationError", "InsufficientInputDataError",
    "IntervalOrderError", "InvariantViolation", "SimulationCancelled",
]


class SimulationError(Exception):
    """Base class for everything the simulation core raises."""


class ConfigurationError(SimulationError, ValueError):
    pass


class InsufficientInputDataError(SimulationError):
    def __init__(self, inverter: str, interval: int, available: int):
        self.inverter = inverter
        self.interval = interval
        self.available = available
        super().__init__(
            f"insufficient input data for inverter '{inverter}': "
            f"interval {interval} requested, {available} samples available"
        )


class IntervalOrderError(SimulationError):
    def __init__(self, expected: int, got: int):
        self.expected = expected
        self.got = got
        super().__init__(f"intervals must be processed in order: expected {expected}, got {got}")


class InvariantViolation(SimulationError):
    pass


class SimulationCancelled(SimulationError):
    """Raised when a run is stopped by the caller. `records` holds whatever the
    cancel policy kept (empty when partial output is discarded)."""

    def __init__(self, interval: int, records=None):
        self.interval = interval
        self.records = list(records or [])
        super().__init__(f"simulation cancelled before interval {interval}")
