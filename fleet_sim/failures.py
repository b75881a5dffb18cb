"""
Failure injection for simulated devices.

A ``FailureScenario`` is declarative data; ``FailureSimulator`` turns it into
scheduled effects on the targeted devices. Every running effect is tracked by
a ``FailureHandle`` keyed by (device id, failure kind), so re-triggering a
kind on a device replaces the previous effect instead of stacking timers.
"""

import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import structlog
from pydantic import BaseModel, Field, ValidationError

from . import metrics
from .devices import SimulatedButton, SimulatedDevice, SimulatedRepeater
from .exceptions import ConfigurationError, UnknownFailureKindError
from .logging_config import scenario_context
from .models import Severity
from .scheduler import ScheduledTask

logger = structlog.get_logger(__name__)


class FailureKind(str, Enum):
    BATTERY_DRAIN = "battery_drain"
    SIGNAL_LOSS = "signal_loss"
    DEVICE_OFFLINE = "device_offline"
    INTERMITTENT_CONNECTION = "intermittent_connection"
    BUTTON_MALFUNCTION = "button_malfunction"
    NETWORK_CONGESTION = "network_congestion"
    FIRMWARE_CRASH = "firmware_crash"
    MEMORY_LEAK = "memory_leak"


ALL_DEVICES = "all"

# Signal floor (percent) reached by signal_loss per severity
SIGNAL_LOSS_FLOORS = {
    Severity.LOW: 30,
    Severity.MEDIUM: 15,
    Severity.HIGH: 5,
}
SIGNAL_LOSS_STEP = 5
SIGNAL_LOSS_TICK = 0.5
BATTERY_DRAIN_TICK = 1.0
MEMORY_LEAK_TICK = 1.0
MEMORY_LEAK_START = 50.0

DEFAULT_STUCK_DURATION = 5
DEFAULT_UNRESPONSIVE_DURATION = 10
DEFAULT_CONGESTION_MESSAGES = 100
DEFAULT_CONGESTION_DURATION = 30
DEFAULT_REBOOT_TIME = 30
DEFAULT_INTERMITTENT_INTERVAL = 5
DEFAULT_INTERMITTENT_OFFLINE = 2


class FailureScenario(BaseModel):
    """Declarative description of a fault to inject."""
    id: str
    name: str
    description: str = ""
    failure_kind: FailureKind
    duration: Optional[float] = Field(None, ge=0)
    severity: Optional[Severity] = None
    target_devices: Optional[List[str]] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_data(cls, data: Union["FailureScenario", Dict[str, Any]]) -> "FailureScenario":
        """Build a scenario from a model or a plain dict."""
        if isinstance(data, cls):
            return data

        kind = data.get("failure_kind")
        if kind not in FailureKind._value2member_map_ and not isinstance(kind, FailureKind):
            raise UnknownFailureKindError(f"Unknown failure kind: {kind}")
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid failure scenario: {e}") from e

    def param(self, key: str, default: Any = None) -> Any:
        value = self.parameters.get(key)
        return default if value is None else value

    def targets_all(self) -> bool:
        return not self.target_devices or ALL_DEVICES in self.target_devices


class FailureHandle:
    """Cancellation handle for one failure effect on one device."""

    def __init__(
        self,
        device_id: str,
        kind: FailureKind,
        tasks: Iterable[ScheduledTask] = (),
        undo: Optional[Callable[[], Any]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        self.device_id = device_id
        self.kind = kind
        self.tasks = [t for t in tasks if t is not None]
        self.undo = undo
        self.metadata = metadata or {}
        self.started_at = time.time()
        self._stopped = False
        self._settled = False

    @property
    def key(self) -> Tuple[str, FailureKind]:
        return self.device_id, self.kind

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def active(self) -> bool:
        if self._stopped or self._settled:
            return False
        return not self.tasks or any(t.active for t in self.tasks)

    def settle(self) -> None:
        """Mark an effect without timers as over once the device recovered."""
        self._settled = True

    def cancel(self) -> bool:
        """Cancel the scheduled tasks without reverting the effect."""
        if self._stopped:
            return False
        self._stopped = True
        for task in self.tasks:
            task.cancel()
        return True

    def stop(self) -> bool:
        """Cancel the effect and revert it. Safe to call more than once."""
        if not self.cancel():
            return False
        if self.undo:
            self.undo()
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "failure_kind": self.kind.value,
            "started_at": self.started_at,
            "active": self.active,
            "metadata": dict(self.metadata),
        }

    def __repr__(self) -> str:
        return f"<FailureHandle {self.device_id}:{self.kind.value} active={self.active}>"


class FailureSimulator:
    """Injects failure scenarios into registered devices."""

    def __init__(self):
        self._devices: Dict[str, SimulatedDevice] = {}
        self._active: Dict[Tuple[str, FailureKind], FailureHandle] = {}
        self._injectors = {
            FailureKind.BATTERY_DRAIN: self._battery_drain,
            FailureKind.SIGNAL_LOSS: self._signal_loss,
            FailureKind.DEVICE_OFFLINE: self._device_offline,
            FailureKind.INTERMITTENT_CONNECTION: self._intermittent_connection,
            FailureKind.BUTTON_MALFUNCTION: self._button_malfunction,
            FailureKind.NETWORK_CONGESTION: self._network_congestion,
            FailureKind.FIRMWARE_CRASH: self._firmware_crash,
            FailureKind.MEMORY_LEAK: self._memory_leak,
        }

    # Registry

    def register_device(self, device: SimulatedDevice) -> None:
        self._devices[device.device_id] = device

    def unregister_device(self, device_id: str) -> int:
        """Forget a device and cancel every effect running on it."""
        self._devices.pop(device_id, None)
        cancelled = 0
        for key in [k for k in self._active if k[0] == device_id]:
            handle = self._active.pop(key)
            if handle.cancel():
                cancelled += 1
        self._sync_gauge()
        return cancelled

    @property
    def devices(self) -> List[SimulatedDevice]:
        return list(self._devices.values())

    # Execution

    def execute_scenario(self, scenario: Union[FailureScenario, Dict[str, Any]]) -> List[FailureHandle]:
        """Apply ``scenario`` to its target devices; returns installed handles."""
        scenario = FailureScenario.from_data(scenario)
        targets = self._target_devices(scenario)
        logger.info(
            "executing_failure_scenario",
            scenario_id=scenario.id,
            failure_kind=scenario.failure_kind.value,
            targets=len(targets),
        )

        handles = []
        with scenario_context(scenario.id, scenario.failure_kind.value):
            for device in targets:
                handle = self._apply(device, scenario)
                if handle is not None:
                    handles.append(handle)
        return handles

    def _target_devices(self, scenario: FailureScenario) -> List[SimulatedDevice]:
        if scenario.targets_all():
            return list(self._devices.values())

        devices = []
        for device_id in scenario.target_devices:
            device = self._devices.get(device_id)
            if device is None:
                logger.warning("failure_target_unknown", device_id=device_id, scenario_id=scenario.id)
                continue
            devices.append(device)
        return devices

    def _apply(self, device: SimulatedDevice, scenario: FailureScenario) -> Optional[FailureHandle]:
        kind = scenario.failure_kind
        key = (device.device_id, kind)
        previous = self._active.get(key)

        # A rejected scenario leaves the running effect in place.
        handle = self._injectors[kind](device, scenario, previous)
        if previous is not None and self._active.get(key) is previous:
            del self._active[key]
            previous.cancel()

        metrics.failures_injected_total.labels(failure_kind=kind.value).inc()
        if handle is None:
            self._sync_gauge()
            return None

        self._active[handle.key] = handle
        for task in handle.tasks:
            task.add_done_callback(lambda _t, h=handle: self._task_done(h))
        self._sync_gauge()
        return handle

    def _task_done(self, handle: FailureHandle) -> None:
        if handle.active:
            return
        if self._active.get(handle.key) is handle:
            del self._active[handle.key]
            self._sync_gauge()

    def _sync_gauge(self) -> None:
        metrics.active_failures.set(len(self._active))

    # Injectors

    def _battery_drain(self, device, scenario, previous):
        target = float(scenario.param("target_level", 0))
        rate = float(scenario.param("drain_rate", 1))

        if scenario.param("instant", False):
            device.simulate_battery_drain(instant=True, target_level=target)
            return None

        def tick():
            current = device.battery
            if current <= target:
                task.cancel()
                return
            device.simulate_battery_drain(instant=True, target_level=max(target, current - rate))

        task = device.scheduler.call_every(BATTERY_DRAIN_TICK, tick, name="battery_drain")
        return FailureHandle(device.device_id, FailureKind.BATTERY_DRAIN, [task],
                             metadata={"target_level": target, "drain_rate": rate})

    def _signal_loss(self, device, scenario, previous):
        severity = scenario.severity or Severity.MEDIUM
        floor = SIGNAL_LOSS_FLOORS[severity]
        if previous is not None and "baseline" in previous.metadata:
            baseline = previous.metadata["baseline"]
        else:
            baseline = device.signal

        def tick():
            current = device.signal
            # Repeaters round-trip through dBm, allow float noise at the floor.
            if current - floor < 1e-6:
                loss.cancel()
                return
            device.set_signal(max(floor, current - SIGNAL_LOSS_STEP))

        def restore():
            loss.cancel()
            device.set_signal(baseline)
            device.recorder.record("signal_restored", {"signal": device.signal})

        loss = device.scheduler.call_every(SIGNAL_LOSS_TICK, tick, name="signal_loss")
        tasks = [loss]
        if scenario.duration:
            tasks.append(device.scheduler.call_later(scenario.duration, restore, name="signal_restore"))

        return FailureHandle(
            device.device_id, FailureKind.SIGNAL_LOSS, tasks,
            undo=lambda: device.set_signal(baseline),
            metadata={"baseline": baseline, "floor": floor, "severity": severity.value},
        )

    def _device_offline(self, device, scenario, previous):
        restore = device.simulate_offline(scenario.duration)
        handle = FailureHandle(
            device.device_id, FailureKind.DEVICE_OFFLINE, [restore] if restore else [],
            undo=device.simulate_online,
            metadata={"duration": scenario.duration},
        )
        if restore is None:
            def came_online(_payload):
                handle.settle()
                self._task_done(handle)

            device.emitter.once("device_online", came_online)
        return handle

    def _intermittent_connection(self, device, scenario, previous):
        interval = float(scenario.param("interval", DEFAULT_INTERMITTENT_INTERVAL))
        offline_for = float(scenario.param("offline_duration", DEFAULT_INTERMITTENT_OFFLINE))

        task = device.scheduler.call_every(
            interval, device.simulate_offline, offline_for,
            name="intermittent_connection", until=scenario.duration,
        )
        return FailureHandle(
            device.device_id, FailureKind.INTERMITTENT_CONNECTION, [task],
            undo=device.simulate_online,
            metadata={"interval": interval, "offline_duration": offline_for},
        )

    def _button_malfunction(self, device, scenario, previous):
        if not isinstance(device, SimulatedButton):
            logger.debug("failure_not_applicable", device_id=device.device_id, failure_kind="button_malfunction")
            return None

        mode = scenario.param("type", "stuck")
        default = DEFAULT_STUCK_DURATION if mode == "stuck" else DEFAULT_UNRESPONSIVE_DURATION
        task = device.simulate_malfunction(mode, scenario.duration or default)
        return FailureHandle(
            device.device_id, FailureKind.BUTTON_MALFUNCTION, [task],
            undo=device.restore,
            metadata={"type": mode},
        )

    def _network_congestion(self, device, scenario, previous):
        if not isinstance(device, SimulatedRepeater):
            logger.debug("failure_not_applicable", device_id=device.device_id, failure_kind="network_congestion")
            return None

        message_count = int(scenario.param("message_count", DEFAULT_CONGESTION_MESSAGES))
        task = device.simulate_congestion(message_count, scenario.duration or DEFAULT_CONGESTION_DURATION)
        return FailureHandle(
            device.device_id, FailureKind.NETWORK_CONGESTION, [task],
            metadata={"message_count": message_count},
        )

    def _firmware_crash(self, device, scenario, previous):
        reboot_time = float(scenario.param("reboot_time", DEFAULT_REBOOT_TIME))
        crash = {"severity": (scenario.severity or Severity.HIGH).value}
        if scenario.param("crash_reason"):
            crash["crash_reason"] = scenario.param("crash_reason")

        device.simulate_offline()
        device.log.error("firmware_crash", **crash)
        device.notify("firmware_crash", crash)

        def recover():
            device.simulate_online()
            device.notify("firmware_recovered", {"downtime": reboot_time})

        task = device.scheduler.call_later(reboot_time, recover, name="firmware_reboot")
        return FailureHandle(
            device.device_id, FailureKind.FIRMWARE_CRASH, [task],
            undo=device.simulate_online,
            metadata=dict(crash, reboot_time=reboot_time),
        )

    def _memory_leak(self, device, scenario, previous):
        leak_rate = float(scenario.param("leak_rate", 1))
        state = {"usage": MEMORY_LEAK_START}

        def tick():
            state["usage"] = min(100.0, state["usage"] + leak_rate)
            device.notify("memory_usage", {"usage": state["usage"]})
            if state["usage"] >= 100:
                task.cancel()
                crash = scenario.model_copy(update={
                    "failure_kind": FailureKind.FIRMWARE_CRASH,
                    "parameters": dict(scenario.parameters, crash_reason="out_of_memory"),
                })
                self._apply(device, crash)

        task = device.scheduler.call_every(MEMORY_LEAK_TICK, tick, name="memory_leak")
        return FailureHandle(
            device.device_id, FailureKind.MEMORY_LEAK, [task],
            metadata={"leak_rate": leak_rate},
        )

    # Stopping and inspection

    def stop_all_failures(self) -> int:
        handles = list(self._active.values())
        self._active.clear()
        stopped = sum(1 for h in handles if h.stop())
        self._sync_gauge()
        logger.info("failures_stopped", count=stopped)
        return stopped

    def stop_device_failures(self, device_id: str) -> int:
        stopped = 0
        for key in [k for k in self._active if k[0] == device_id]:
            if self._active.pop(key).stop():
                stopped += 1
        self._sync_gauge()
        return stopped

    def get_active_failures(self) -> List[FailureHandle]:
        return [h for h in self._active.values() if h.active]

    @property
    def active_failure_count(self) -> int:
        return len(self.get_active_failures())
