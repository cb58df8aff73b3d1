"""
cux_lib - Live-data polling library for the Lucas 14CUX engine management unit.

Drives a device link from a dedicated worker thread: tiered polling, fault
codes, fuel maps and cancellable PROM dumps.
"""

from cux_lib.controller import ECUController
from cux_lib.errors import (
    CUXError,
    InvalidCommandValue,
    LifecycleError,
    LinkIOError,
    NotConnectedError,
)
from cux_lib.models import (
    Event,
    FaultCodes,
    LastKnownValues,
    LifecycleState,
    Notification,
    ReadOutcome,
    SampleKind,
    SpeedUnits,
    TemperatureUnits,
)

__version__ = "0.1.0"

__all__ = [
    "ECUController",
    "ReadOutcome",
    "SampleKind",
    "SpeedUnits",
    "TemperatureUnits",
    "LifecycleState",
    "Notification",
    "Event",
    "FaultCodes",
    "LastKnownValues",
    "CUXError",
    "NotConnectedError",
    "InvalidCommandValue",
    "LinkIOError",
    "LifecycleError",
]
