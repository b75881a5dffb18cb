"""
Base capability shared by every simulated device.

A device owns its broker connection, its heartbeat, its battery and signal
drift, and every timer it schedules. Effects are observable only through
broker messages, emitted events, the event recorder and ``get_status()``.
"""

import json
import random
import threading
from abc import ABC
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

from .. import metrics
from ..config import FleetSettings
from ..events import DeviceEvent, EventEmitter, EventRecorder
from ..exceptions import ConfigurationError
from ..models import DeviceConfig, DeviceKind, clamp, utc_now_iso
from ..mqtt_client import MQTTClient
from ..scheduler import ScheduledTask, TaskScheduler

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[str, FleetSettings], Any]


def default_client_factory(client_id: str, settings: FleetSettings) -> MQTTClient:
    return MQTTClient.from_settings(client_id, settings)


class NetworkFailureKind(str, Enum):
    """Transport faults a device can suffer on its own."""
    PACKET_LOSS = "packet_loss"
    HIGH_LATENCY = "high_latency"
    DISCONNECT = "disconnect"


class NetworkCondition(str, Enum):
    NORMAL = "normal"
    PACKET_LOSS = "packet_loss"
    HIGH_LATENCY = "high_latency"


class SimulatedDevice(ABC):
    """Abstract simulated IoT endpoint."""

    kind: DeviceKind = None

    def __init__(
        self,
        config: DeviceConfig,
        settings: Optional[FleetSettings] = None,
        client_factory: Optional[ClientFactory] = None,
        rng: Optional[random.Random] = None
    ):
        if config.kind != self.kind:
            raise ConfigurationError(f"{type(self).__name__} cannot be built from a {config.kind.value} config")

        self.config = config
        self.settings = settings or FleetSettings()
        self._client_factory = client_factory or default_client_factory
        self._rng = rng or random.Random()
        self._client = None

        # Mutable runtime state, guarded by _lock
        self._lock = threading.RLock()
        self._battery = float(config.initial_battery)
        self._signal = float(config.initial_signal)
        self._online = False
        self._active = True
        self._network = NetworkCondition.NORMAL

        self.created_at = utc_now_iso()
        self.last_heartbeat: Optional[str] = None

        self.recorder = EventRecorder(config.device_id)
        self.emitter = EventEmitter()
        self.scheduler = TaskScheduler(config.device_id, self.settings.time_scale, on_error=self._on_task_error)

        self._heartbeat_task: Optional[ScheduledTask] = None
        self._restore_task: Optional[ScheduledTask] = None
        self._network_task: Optional[ScheduledTask] = None

        self.log = logger.bind(device_id=config.device_id, kind=self.kind.value)

    # Identity

    @property
    def device_id(self) -> str:
        return self.config.device_id

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def location(self) -> str:
        return self.config.location

    # Runtime state

    @property
    def battery(self) -> float:
        return self._battery

    @property
    def signal(self) -> float:
        return self._signal

    @property
    def is_connected(self) -> bool:
        return self._client is not None and bool(self._client.connected)

    @property
    def is_online(self) -> bool:
        return self._online and self.is_connected

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def network_condition(self) -> NetworkCondition:
        return self._network

    # Connection lifecycle

    async def connect(self) -> None:
        """Connect to the broker and start the heartbeat. Idempotent."""
        if self.is_connected:
            return

        self.scheduler.reopen()
        client = self._client_factory(f"virtual-{self.device_id}", self.settings)
        await client.connect()

        self._client = client
        self._online = True
        self._start_heartbeat()
        self.log.info("device_connected")
        self.notify("connected", {"client_id": f"virtual-{self.device_id}"})
        self.publish_status()

    async def disconnect(self) -> None:
        """Cancel every pending task and close the broker connection."""
        cancelled = self.scheduler.close()
        self._heartbeat_task = None
        self._restore_task = None
        self._network_task = None
        self._network = NetworkCondition.NORMAL
        self._online = False

        client, self._client = self._client, None
        if client is not None:
            await client.disconnect()
        self.log.info("device_disconnected", cancelled_tasks=cancelled)
        self.notify("disconnected", {"cancelled_tasks": cancelled})

    # Heartbeat

    def _start_heartbeat(self) -> None:
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
        self._heartbeat_task = self.scheduler.call_every(
            self.settings.heartbeat_interval, self._heartbeat_tick, name="heartbeat"
        )

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    def _heartbeat_tick(self) -> None:
        if not self.is_online:
            return
        self.send_heartbeat()
        self.simulate_battery_drain()
        self._simulate_signal_fluctuation()
        self.publish_status()

    def send_heartbeat(self) -> None:
        self.last_heartbeat = utc_now_iso()
        payload = {"timestamp": self.last_heartbeat}
        self.publish("heartbeat", payload)
        self.recorder.record("heartbeat", payload)

    # Publishing

    def topic(self, channel: str, scope: str = "device") -> str:
        return f"{self.settings.namespace}/{scope}/{self.device_id}/{channel}"

    def publish(self, channel: str, payload: Dict[str, Any], scope: str = "device") -> bool:
        """Publish ``payload`` on ``channel``.

        Returns False when nothing was sent; an offline device silently
        drops the message.
        """
        message = dict(payload)
        message.setdefault("timestamp", utc_now_iso())
        message["is_virtual"] = True

        if not self.is_online:
            metrics.messages_dropped_total.labels(kind=self.kind.value, reason="offline").inc()
            return False

        topic = self.topic(channel, scope)
        if self._network == NetworkCondition.PACKET_LOSS and self._rng.random() < self.settings.packet_loss_rate:
            metrics.messages_dropped_total.labels(kind=self.kind.value, reason="packet_loss").inc()
            return False
        if self._network == NetworkCondition.HIGH_LATENCY:
            delay = self._rng.uniform(0, self.settings.max_latency)
            self.scheduler.call_later(delay, self._transmit, topic, channel, message, name="delayed_publish")
            return True
        return self._transmit(topic, channel, message)

    def _transmit(self, topic: str, channel: str, message: Dict[str, Any]) -> bool:
        if not self.is_online:
            metrics.messages_dropped_total.labels(kind=self.kind.value, reason="offline").inc()
            return False
        sent = self._client.publish(topic, json.dumps(message, default=str), qos=self.settings.mqtt_qos)
        if sent:
            metrics.messages_published_total.labels(kind=self.kind.value, channel=channel).inc()
        return sent

    def get_status(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "name": self.name,
            "location": self.location,
            "kind": self.kind.value,
            "battery": round(self._battery, 2),
            "signal": round(self._signal, 2),
            "is_online": self.is_online,
            "is_active": self._active,
            "is_virtual": True,
            "network": self._network.value,
            "created_at": self.created_at,
            "last_heartbeat": self.last_heartbeat,
        }

    def publish_status(self) -> Dict[str, Any]:
        payload = self.get_status()
        payload["timestamp"] = utc_now_iso()
        self.publish("status", payload)
        self.notify("status_update", payload)
        return payload

    # Battery

    def _update_battery(self, update: Callable[[float], float]) -> float:
        threshold = self.settings.low_battery_threshold
        with self._lock:
            previous = self._battery
            self._battery = clamp(update(previous), 0.0, 100.0)
            current = self._battery
        if previous >= threshold > current:
            self.log.warning("low_battery", battery=current)
            self.notify("low_battery", {"battery": current})
        return current

    def drain_battery(self, amount: float) -> float:
        """Reduce the battery by ``amount`` percent."""
        if amount < 0:
            raise ValueError("drain amount must be non-negative")
        return self._update_battery(lambda level: level - amount)

    def simulate_battery_drain(self, instant: bool = False, target_level: Optional[float] = None) -> float:
        if instant and target_level is not None:
            level = self._update_battery(lambda current: min(current, target_level))
            self.publish_status()
            self.recorder.record("battery_drain", {"instant": True, "level": level})
            return level
        if self._battery > 0:
            return self.drain_battery(self._rng.random() * self.settings.heartbeat_battery_drain)
        return self._battery

    def recharge(self, level: float = 100.0) -> float:
        with self._lock:
            self._battery = clamp(level, 0.0, 100.0)
        self.notify("battery_recharged", {"battery": self._battery})
        self.publish_status()
        return self._battery

    # Signal

    def _update_signal(self, update: Callable[[float], float]) -> float:
        threshold = self.settings.poor_signal_threshold
        with self._lock:
            previous = self._signal
            self._signal = clamp(update(previous), 0.0, 100.0)
            current = self._signal
        if previous >= threshold > current:
            self.log.warning("poor_signal", signal=current)
            self.notify("poor_signal", {"signal": current})
        return current

    def set_signal(self, level: float, publish: bool = True) -> float:
        current = self._update_signal(lambda _previous: level)
        if publish:
            self.publish_status()
        return current

    def _simulate_signal_fluctuation(self) -> float:
        span = self.settings.signal_fluctuation
        delta = (self._rng.random() - 0.5) * span
        return self.set_signal(self._signal + delta, publish=False)

    # Connectivity faults

    def simulate_offline(self, duration: Optional[float] = None) -> Optional[ScheduledTask]:
        """Take the device offline; with ``duration`` it comes back by itself."""
        self._online = False
        self._stop_heartbeat()
        if self._restore_task:
            self._restore_task.cancel()
            self._restore_task = None

        self.log.info("device_offline", duration=duration)
        self.notify("device_offline", {"duration": duration})

        if duration:
            self._restore_task = self.scheduler.call_later(duration, self.simulate_online, name="restore_online")
        return self._restore_task

    def simulate_online(self) -> bool:
        if self._restore_task:
            self._restore_task.cancel()
            self._restore_task = None

        if not self.is_connected:
            self.log.warning("online_without_connection")
            self.recorder.record("online_failed", {"reason": "not_connected"})
            return False

        self._online = True
        self._start_heartbeat()
        self.publish_status()
        self.log.info("device_online")
        self.notify("device_online", {})
        return True

    def simulate_network_failure(self, kind: str) -> Optional[ScheduledTask]:
        try:
            kind = NetworkFailureKind(kind)
        except ValueError:
            raise ConfigurationError(f"Unknown network failure: {kind}")

        self.recorder.record("network_failure", {"type": kind.value})

        if kind == NetworkFailureKind.DISCONNECT:
            return self.simulate_offline(self.settings.disconnect_duration)

        self._network = NetworkCondition(kind.value)
        if self._network_task:
            self._network_task.cancel()
        self._network_task = self.scheduler.call_later(
            self.settings.network_failure_window, self._restore_network, name="restore_network"
        )
        return self._network_task

    def _restore_network(self) -> None:
        previous = self._network
        self._network = NetworkCondition.NORMAL
        self._network_task = None
        self.recorder.record("network_restored", {"type": previous.value})

    def set_active(self, active: bool) -> None:
        self._active = bool(active)
        self.notify("active_changed", {"is_active": self._active})
        self.publish_status()

    # Events

    def notify(self, event_type: str, data: Dict[str, Any] = None) -> DeviceEvent:
        """Record an event and fan it out to listeners."""
        event = self.recorder.record(event_type, data)
        self.emitter.emit(event_type, event.data)
        return event

    def on(self, event_type: str, listener: Callable[[Dict[str, Any]], Any]) -> None:
        self.emitter.on(event_type, listener)

    def get_events(self) -> List[DeviceEvent]:
        return self.recorder.get_events()

    def clear_events(self) -> None:
        self.recorder.clear()

    def _on_task_error(self, task_name: str, error: Exception) -> None:
        self.recorder.record("timer_error", {"task": task_name, "error": str(error)})

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.device_id} online={self.is_online}>"
