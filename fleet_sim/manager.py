"""
Fleet manager: device factory, registry and test-topology builder.

Usage:
    async with FleetManager(settings) as fleet:
        await fleet.create_test_scenario("basic_setup")
        fleet.execute_predefined_scenario("network_outage")
        print(fleet.get_statistics())
"""

import random
from typing import Any, Dict, List, Optional, Union

import structlog
from pydantic import ValidationError

from . import metrics
from .actions import perform_action
from .config import FleetSettings
from .devices import DEVICE_CLASSES, SimulatedDevice
from .devices.base import ClientFactory
from .events import EventEmitter
from .exceptions import ConfigurationError, DeviceNotFoundError, DuplicateDeviceError, UnknownDeviceKindError, UnknownScenarioError
from .failures import FailureHandle, FailureScenario, FailureSimulator
from .models import DeviceConfig, DeviceKind, DeviceOptions, generate_device_id
from .persistence import DeviceRecord, DeviceStore
from .scenarios import get_predefined_scenario

logger = structlog.get_logger(__name__)

DEFAULT_CREW_LOCATION = {"lat": 43.7, "lng": 7.3}

YACHT_ROOMS = [
    "Master Cabin", "VIP Cabin", "Guest Cabin 1", "Guest Cabin 2",
    "Main Salon", "Upper Salon", "Bridge", "Galley",
    "Crew Mess", "Engine Room", "Beach Club", "Sun Deck",
]
YACHT_CREW = [
    ("Captain", 1),
    ("Chief Steward", 2),
    ("Steward 1", 3),
    ("Steward 2", 4),
    ("Engineer", 5),
    ("Deckhand", 6),
]
YACHT_REPEATER_ZONES = ["Main Deck", "Upper Deck", "Sun Deck", "Engine Room"]

STRESS_COUNTS = {
    DeviceKind.BUTTON: 50,
    DeviceKind.SMARTWATCH: 20,
    DeviceKind.REPEATER: 10,
}


class FleetManager:
    """Creates, tracks and tears down simulated devices."""

    def __init__(
        self,
        settings: Optional[FleetSettings] = None,
        client_factory: Optional[ClientFactory] = None,
        store: Optional[DeviceStore] = None,
        rng: Optional[random.Random] = None
    ):
        self.settings = settings or FleetSettings()
        self.client_factory = client_factory
        self.store = store
        self.rng = rng or random.Random()
        self.failure_simulator = FailureSimulator()
        self.events = EventEmitter()
        self._devices: Dict[str, SimulatedDevice] = {}

    async def __aenter__(self) -> "FleetManager":
        if self.store:
            await self.store.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def shutdown(self) -> None:
        await self.remove_all_devices()
        if self.store:
            await self.store.disconnect()

    def on(self, event: str, listener) -> None:
        self.events.on(event, listener)

    # Devices

    async def create_device(self, options: Optional[Union[DeviceOptions, Dict[str, Any]]] = None, **kwargs) -> SimulatedDevice:
        """Build, connect and register a device.

        Broker connection errors propagate; the device is then not registered.
        """
        if options is None:
            options = kwargs
        if isinstance(options, dict):
            kind = options.get("kind")
            if kind not in DeviceKind._value2member_map_ and not isinstance(kind, DeviceKind):
                raise UnknownDeviceKindError(f"Unknown device kind: {kind}")
            try:
                options = DeviceOptions(**options)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid device options: {e}") from e

        device_id = options.device_id or generate_device_id(options.kind, self.rng)
        if device_id in self._devices:
            raise DuplicateDeviceError(f"Device {device_id} already exists")

        config = DeviceConfig(
            device_id=device_id,
            name=options.name,
            location=options.location,
            kind=options.kind,
            initial_battery=100.0 if options.initial_battery is None else options.initial_battery,
            initial_signal=100.0 if options.initial_signal is None else options.initial_signal,
        )
        device = self._build(config, options.extra)

        await device.connect()

        self._devices[device_id] = device
        self.failure_simulator.register_device(device)
        metrics.fleet_devices.labels(kind=options.kind.value).inc()

        if options.persist and self.store:
            try:
                await self.store.save(DeviceRecord.from_device(device, self.settings.broker_url))
            except Exception as e:
                logger.error("device_persist_failed", device_id=device_id, error=str(e))
                self._devices.pop(device_id, None)
                await self._teardown(device)
                raise

        logger.info("device_created", device_id=device_id, kind=options.kind.value, location=options.location)
        self.events.emit("device_created", {
            "device_id": device_id,
            "kind": options.kind.value,
            "name": options.name,
            "location": options.location,
        })
        return device

    def _build(self, config: DeviceConfig, extra: Dict[str, Any]) -> SimulatedDevice:
        cls = DEVICE_CLASSES[config.kind]
        common = dict(settings=self.settings, client_factory=self.client_factory)
        if config.kind == DeviceKind.SMARTWATCH:
            return cls(
                config,
                assigned_crew_id=extra.get("assigned_crew_id"),
                initial_location=extra.get("initial_location"),
                **common
            )
        if config.kind == DeviceKind.REPEATER:
            return cls(
                config,
                signal_range=extra.get("signal_range"),
                initial_signal_strength=extra.get("initial_signal_strength"),
                **common
            )
        return cls(config, **common)

    def get_device(self, device_id: str) -> Optional[SimulatedDevice]:
        return self._devices.get(device_id)

    def require_device(self, device_id: str) -> SimulatedDevice:
        device = self._devices.get(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    def get_all_devices(self) -> List[SimulatedDevice]:
        return list(self._devices.values())

    def get_devices_by_kind(self, kind: Union[DeviceKind, str]) -> List[SimulatedDevice]:
        try:
            kind = DeviceKind(kind)
        except ValueError:
            raise UnknownDeviceKindError(f"Unknown device kind: {kind}")
        return [d for d in self._devices.values() if d.kind == kind]

    def get_devices_by_location(self, location: str) -> List[SimulatedDevice]:
        return [d for d in self._devices.values() if d.location == location]

    async def remove_device(self, device_id: str) -> bool:
        device = self._devices.pop(device_id, None)
        if device is None:
            return False

        await self._teardown(device)

        if self.store:
            await self.store.delete(device_id)

        logger.info("device_removed", device_id=device_id)
        self.events.emit("device_removed", {"device_id": device_id})
        return True

    async def _teardown(self, device: SimulatedDevice) -> None:
        self.failure_simulator.unregister_device(device.device_id)
        await device.disconnect()
        metrics.fleet_devices.labels(kind=device.kind.value).dec()

    async def remove_all_devices(self) -> int:
        removed = 0
        for device_id in list(self._devices):
            if await self.remove_device(device_id):
                removed += 1
        return removed

    def perform_action(self, device_id: str, action: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return perform_action(self.require_device(device_id), action, data)

    # Failures

    def execute_failure_scenario(self, scenario: Union[FailureScenario, Dict[str, Any]]) -> List[FailureHandle]:
        scenario = FailureScenario.from_data(scenario)
        handles = self.failure_simulator.execute_scenario(scenario)
        self.events.emit("failure_scenario_executed", {
            "scenario": scenario.model_dump(mode="json"),
            "handles": len(handles),
        })
        return handles

    def execute_predefined_scenario(self, scenario_id: str, target_devices: Optional[List[str]] = None) -> List[FailureHandle]:
        return self.execute_failure_scenario(get_predefined_scenario(scenario_id, target_devices))

    def stop_all_failures(self) -> int:
        stopped = self.failure_simulator.stop_all_failures()
        self.events.emit("failures_stopped", {"count": stopped})
        return stopped

    def stop_device_failures(self, device_id: str) -> int:
        stopped = self.failure_simulator.stop_device_failures(device_id)
        self.events.emit("device_failures_stopped", {"device_id": device_id, "count": stopped})
        return stopped

    def get_active_failures(self) -> List[FailureHandle]:
        return self.failure_simulator.get_active_failures()

    # Test topologies

    async def create_test_scenario(self, name: str) -> List[SimulatedDevice]:
        builders = {
            "basic_setup": self._basic_setup,
            "full_yacht": self._full_yacht,
            "stress_test": self._stress_test,
        }
        builder = builders.get(name)
        if builder is None:
            raise UnknownScenarioError(f"Unknown test scenario: {name}")

        devices = await builder()
        logger.info("test_scenario_created", name=name, devices=len(devices))
        self.events.emit("test_scenario_created", {"name": name, "device_count": len(devices)})
        return devices

    async def _button(self, name: str, location: str, **options) -> SimulatedDevice:
        return await self.create_device(kind=DeviceKind.BUTTON, name=name, location=location, **options)

    async def _watch(self, name: str, location: str, crew_id: int, position=None, **options) -> SimulatedDevice:
        extra = {"assigned_crew_id": crew_id, "initial_location": position or DEFAULT_CREW_LOCATION}
        return await self.create_device(kind=DeviceKind.SMARTWATCH, name=name, location=location, extra=extra, **options)

    async def _repeater(self, name: str, location: str, signal_range: int, **options) -> SimulatedDevice:
        return await self.create_device(
            kind=DeviceKind.REPEATER, name=name, location=location, extra={"signal_range": signal_range}, **options
        )

    async def _basic_setup(self) -> List[SimulatedDevice]:
        return [
            await self._button("Master Cabin Button", "Master Cabin", persist=True),
            await self._button("Guest Cabin Button", "Guest Cabin", persist=True),
            await self._watch("Captain Watch", "Bridge", 1, persist=True),
            await self._watch("Steward Watch", "Crew Quarters", 2, persist=True),
            await self._repeater("Main Deck Repeater", "Main Deck", 150, persist=True),
        ]

    async def _full_yacht(self) -> List[SimulatedDevice]:
        devices = []
        for room in YACHT_ROOMS:
            devices.append(await self._button(f"{room} Button", room, persist=True))
        for position, crew_id in YACHT_CREW:
            devices.append(await self._watch(f"{position} Watch", "Crew Quarters", crew_id, persist=True))
        for zone in YACHT_REPEATER_ZONES:
            devices.append(await self._repeater(f"{zone} Repeater", zone, 200, persist=True))
        return devices

    async def _stress_test(self) -> List[SimulatedDevice]:
        devices = []
        for i in range(STRESS_COUNTS[DeviceKind.BUTTON]):
            devices.append(await self._button(
                f"Test Button {i + 1}", f"Test Room {i // 5 + 1}",
                initial_battery=self.rng.random() * 100,
                initial_signal=self.rng.random() * 100,
            ))
        for i in range(STRESS_COUNTS[DeviceKind.SMARTWATCH]):
            position = {
                "lat": DEFAULT_CREW_LOCATION["lat"] + (self.rng.random() - 0.5) * 0.01,
                "lng": DEFAULT_CREW_LOCATION["lng"] + (self.rng.random() - 0.5) * 0.01,
            }
            devices.append(await self._watch(f"Test Watch {i + 1}", "Test Area", i + 1, position))
        for i in range(STRESS_COUNTS[DeviceKind.REPEATER]):
            devices.append(await self._repeater(
                f"Test Repeater {i + 1}", f"Zone {i + 1}", int(100 + self.rng.random() * 200)
            ))
        return devices

    # Reporting

    def get_statistics(self) -> Dict[str, Any]:
        devices = self.get_all_devices()
        count = len(devices)
        return {
            "total_devices": count,
            "devices_by_kind": {
                kind.value: len([d for d in devices if d.kind == kind]) for kind in DeviceKind
            },
            "online_devices": len([d for d in devices if d.is_online]),
            "active_failures": self.failure_simulator.active_failure_count,
            "average_battery": round(sum(d.battery for d in devices) / count, 2) if count else 0,
            "average_signal": round(sum(d.signal for d in devices) / count, 2) if count else 0,
        }

    def export_device_events(self, device_id: str) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.require_device(device_id).get_events()]

    def export_all_events(self) -> Dict[str, List[Dict[str, Any]]]:
        return {device_id: self.export_device_events(device_id) for device_id in self._devices}
