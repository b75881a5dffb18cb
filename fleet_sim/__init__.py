"""
Fleet Simulator

Simulated IoT devices that publish MQTT telemetry, plus a failure simulator
and a fleet manager to drive them.
"""

__version__ = "1.0.0"

from .config import FleetSettings
from .devices import SimulatedButton, SimulatedDevice, SimulatedRepeater, SimulatedSmartwatch
from .events import DeviceEvent, EventRecorder
from .exceptions import (
    BrokerConnectionError,
    ConfigurationError,
    DeviceNotFoundError,
    FleetSimError,
    UnknownActionError,
    UnknownFailureKindError,
)
from .failures import FailureHandle, FailureKind, FailureScenario, FailureSimulator
from .manager import FleetManager
from .models import DeviceConfig, DeviceKind, DeviceOptions, Location
from .scenarios import PREDEFINED_SCENARIOS, get_predefined_scenario

__all__ = [
    "BrokerConnectionError",
    "ConfigurationError",
    "DeviceConfig",
    "DeviceEvent",
    "DeviceKind",
    "DeviceNotFoundError",
    "DeviceOptions",
    "EventRecorder",
    "FailureHandle",
    "FailureKind",
    "FailureScenario",
    "FailureSimulator",
    "FleetManager",
    "FleetSettings",
    "FleetSimError",
    "Location",
    "PREDEFINED_SCENARIOS",
    "SimulatedButton",
    "SimulatedDevice",
    "SimulatedRepeater",
    "SimulatedSmartwatch",
    "UnknownActionError",
    "UnknownFailureKindError",
    "get_predefined_scenario",
]
