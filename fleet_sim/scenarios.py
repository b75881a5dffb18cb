"""Ready-made failure scenarios."""

from typing import List, Optional

from .exceptions import UnknownScenarioError
from .failures import FailureKind, FailureScenario
from .models import Severity

PREDEFINED_SCENARIOS: List[FailureScenario] = [
    FailureScenario(
        id="low_battery_warning",
        name="Low Battery Warning",
        description="Simulates devices reaching low battery levels",
        failure_kind=FailureKind.BATTERY_DRAIN,
        parameters={"target_level": 15, "drain_rate": 2},
    ),
    FailureScenario(
        id="poor_signal_area",
        name="Poor Signal Area",
        description="Simulates devices in areas with poor signal coverage",
        failure_kind=FailureKind.SIGNAL_LOSS,
        severity=Severity.MEDIUM,
        duration=60,
    ),
    FailureScenario(
        id="network_outage",
        name="Network Outage",
        description="Simulates complete network failure",
        failure_kind=FailureKind.DEVICE_OFFLINE,
        duration=120,
        target_devices=["all"],
    ),
    FailureScenario(
        id="unstable_connection",
        name="Unstable Connection",
        description="Simulates intermittent connectivity issues",
        failure_kind=FailureKind.INTERMITTENT_CONNECTION,
        duration=300,
        parameters={"interval": 10, "offline_duration": 3},
    ),
    FailureScenario(
        id="button_stuck",
        name="Stuck Button",
        description="Simulates a button that is physically stuck",
        failure_kind=FailureKind.BUTTON_MALFUNCTION,
        duration=10,
        parameters={"type": "stuck"},
    ),
    FailureScenario(
        id="repeater_congestion",
        name="Repeater Congestion",
        description="Simulates high traffic through repeater",
        failure_kind=FailureKind.NETWORK_CONGESTION,
        duration=60,
        parameters={"message_count": 500},
    ),
    FailureScenario(
        id="device_crash",
        name="Device Firmware Crash",
        description="Simulates a device firmware crash and reboot",
        failure_kind=FailureKind.FIRMWARE_CRASH,
        severity=Severity.HIGH,
        parameters={"reboot_time": 45},
    ),
    FailureScenario(
        id="memory_leak_critical",
        name="Critical Memory Leak",
        description="Simulates a memory leak leading to device crash",
        failure_kind=FailureKind.MEMORY_LEAK,
        parameters={"leak_rate": 2},
    ),
]


def list_predefined_scenarios() -> List[FailureScenario]:
    return [s.model_copy(deep=True) for s in PREDEFINED_SCENARIOS]


def get_predefined_scenario(scenario_id: str, target_devices: Optional[List[str]] = None) -> FailureScenario:
    """Return a copy of a predefined scenario, optionally retargeted."""
    for scenario in PREDEFINED_SCENARIOS:
        if scenario.id == scenario_id:
            copy = scenario.model_copy(deep=True)
            if target_devices is not None:
                copy.target_devices = list(target_devices)
            return copy
    raise UnknownScenarioError(f"Unknown predefined scenario: {scenario_id}")
