"""Radio repeater: peer table, message relay and radio-level faults."""

import math
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Deque, Dict, List, Optional, Union

from ..exceptions import ConfigurationError
from ..models import DeviceKind, Severity, clamp, utc_now_iso
from ..scheduler import ScheduledTask
from .base import SimulatedDevice

MIN_DBM = -100.0
MAX_DBM = -30.0
RSSI_FLOOR = -90
RSSI_CEILING = -40
DEFAULT_DBM = -50.0
DEFAULT_RANGE_M = 100
INITIAL_FIRMWARE = "1.0.0"

RELAY_DELAY_MIN = 0.05
RELAY_DELAY_MAX = 0.15
CONGESTION_TICK = 0.1
CONGESTION_PEERS = 10

INTERFERENCE_DROP = {
    Severity.LOW: -10,
    Severity.MEDIUM: -25,
    Severity.HIGH: -40,
}

QUALITY_BANDS = [
    (-50, "excellent"),
    (-60, "good"),
    (-70, "fair"),
    (-80, "poor"),
]


def dbm_to_percent(dbm: float) -> float:
    return (clamp(dbm, MIN_DBM, MAX_DBM) - MIN_DBM) / (MAX_DBM - MIN_DBM) * 100


def percent_to_dbm(percent: float) -> float:
    return MIN_DBM + clamp(percent, 0.0, 100.0) / 100 * (MAX_DBM - MIN_DBM)


def signal_quality(dbm: float) -> str:
    for floor, label in QUALITY_BANDS:
        if dbm >= floor:
            return label
    return "very poor"


@dataclass
class ConnectedPeer:
    device_id: str
    kind: str
    rssi: int
    last_seen: str = field(default_factory=utc_now_iso)
    seen_at: float = field(default_factory=time.monotonic)

    def touch(self, rssi: int) -> None:
        self.rssi = rssi
        self.last_seen = utc_now_iso()
        self.seen_at = time.monotonic()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("seen_at")
        return data


class SimulatedRepeater(SimulatedDevice):
    """Mesh repeater relaying traffic for nearby devices.

    The radio strength is tracked in dBm; the inherited percentage ``signal``
    is always derived from it.
    """

    kind = DeviceKind.REPEATER

    def __init__(
        self,
        config,
        settings=None,
        client_factory=None,
        rng=None,
        signal_range: int = DEFAULT_RANGE_M,
        initial_signal_strength: float = DEFAULT_DBM
    ):
        super().__init__(config, settings, client_factory, rng)
        self.signal_range = signal_range or DEFAULT_RANGE_M
        self._dbm = clamp(float(initial_signal_strength or DEFAULT_DBM), MIN_DBM, MAX_DBM)
        self._signal = dbm_to_percent(self._dbm)

        self.firmware_version = INITIAL_FIRMWARE
        self.uptime_start = time.monotonic()
        self.messages_relayed = 0
        self.last_relay_time: Optional[str] = None

        self.peers: Dict[str, ConnectedPeer] = {}
        self.relay_queue: Deque[Dict[str, Any]] = deque()

        self._interference_task: Optional[ScheduledTask] = None
        self._interference_baseline: Optional[float] = None
        self._congestion_task: Optional[ScheduledTask] = None
        self._firmware_task: Optional[ScheduledTask] = None

    @property
    def signal_strength(self) -> float:
        return self._dbm

    @property
    def uptime(self) -> int:
        return int(time.monotonic() - self.uptime_start)

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "messages_relayed": self.messages_relayed,
            "devices_connected": len(self.peers),
            "signal_strength": self._dbm,
            "uptime": self.uptime,
            "last_relay_time": self.last_relay_time,
        }

    def publish_repeater(self, channel: str, payload: Dict[str, Any]) -> bool:
        return self.publish(channel, payload, scope="repeater")

    # Peers

    def calculate_rssi(self, device_id: str) -> int:
        """Estimate a peer's RSSI; stable for a given id and repeater strength."""
        variance = sum(ord(c) for c in device_id) % 20 - 10
        return int(clamp(self._dbm + variance, RSSI_FLOOR, RSSI_CEILING))

    def register_device(self, device_id: str, device_kind: str) -> ConnectedPeer:
        peer = ConnectedPeer(device_id=device_id, kind=str(device_kind), rssi=self.calculate_rssi(device_id))
        with self._lock:
            self.peers[device_id] = peer
            total = len(self.peers)

        payload = {"device": peer.to_dict(), "total_devices": total}
        self.publish_repeater("device/connected", payload)
        self.notify("device_connected", payload)
        self.publish_status()
        return peer

    def unregister_device(self, device_id: str) -> bool:
        with self._lock:
            peer = self.peers.pop(device_id, None)
            total = len(self.peers)
        if peer is None:
            return False

        payload = {"device_id": device_id, "total_devices": total}
        self.publish_repeater("device/disconnected", payload)
        self.notify("device_disconnected", payload)
        self.publish_status()
        return True

    def cleanup_stale_connections(self, max_age: Optional[float] = None) -> List[str]:
        """Evict peers not seen for ``max_age`` seconds."""
        if max_age is None:
            max_age = self.settings.stale_peer_age
        cutoff = self.scheduler.scale(max_age)
        now = time.monotonic()
        stale = [pid for pid, peer in list(self.peers.items()) if now - peer.seen_at > cutoff]

        for device_id in stale:
            self.unregister_device(device_id)

        if stale:
            payload = {"removed_devices": stale}
            self.publish_repeater("cleanup", payload)
            self.recorder.record("cleanup_performed", payload)
        return stale

    # Relay

    def relay_message(self, from_device: str, to_device: str, message: Any) -> ScheduledTask:
        """Queue a relay; it is published after a short propagation delay.

        ``message`` may be any JSON-serialisable payload; only dict payloads
        carry a ``hop_count`` forward.
        """
        entry = {
            "from": from_device,
            "to": to_device,
            "message": message,
            "queued_at": utc_now_iso(),
        }
        with self._lock:
            self.relay_queue.append(entry)
        delay = self._rng.uniform(RELAY_DELAY_MIN, RELAY_DELAY_MAX)
        return self.scheduler.call_later(delay, self._process_relay, name="relay")

    def _process_relay(self) -> None:
        with self._lock:
            if not self.relay_queue:
                return
            relay = self.relay_queue.popleft()

        message = relay["message"]
        hops = message.get("hop_count", 0) if isinstance(message, dict) else 0
        hop_count = int(hops or 0) + 1
        payload = dict(relay)
        payload.update({
            "rssi": self.calculate_rssi(relay["from"]),
            "hop_count": hop_count,
        })
        self.publish_repeater("relay", payload)
        self.notify("message_relayed", payload)

        with self._lock:
            self.messages_relayed += 1
            self.last_relay_time = utc_now_iso()
            peer = self.peers.get(relay["from"])
            if peer:
                peer.touch(self.calculate_rssi(relay["from"]))
        self.publish_status()

    # Signal

    def _set_dbm(self, dbm: float) -> float:
        with self._lock:
            self._dbm = clamp(float(dbm), MIN_DBM, MAX_DBM)
            current = self._dbm
        self._update_signal(lambda _previous: dbm_to_percent(current))
        return current

    def set_signal_strength(self, dbm: float) -> Dict[str, Any]:
        previous = self._dbm
        current = self._set_dbm(dbm)
        payload = {
            "signal_strength": current,
            "previous_strength": previous,
            "quality": signal_quality(current),
        }
        self.publish_repeater("signal", payload)
        self.notify("signal_update", payload)
        self.publish_status()
        return payload

    def update_signal_strength(self, delta: float) -> Dict[str, Any]:
        return self.set_signal_strength(self._dbm + delta)

    def set_signal(self, level: float, publish: bool = True) -> float:
        dbm = percent_to_dbm(level)
        if publish:
            self.set_signal_strength(dbm)
        else:
            self._set_dbm(dbm)
        return self._signal

    @property
    def signal_quality(self) -> str:
        return signal_quality(self._dbm)

    def simulate_interference(self, duration: float, severity: Union[Severity, str]) -> ScheduledTask:
        """Drop the signal by a severity-sized amount, restoring it after ``duration``."""
        try:
            severity = Severity(severity)
        except ValueError:
            raise ConfigurationError(f"Unknown interference severity: {severity}")

        if self._interference_task and self._interference_task.cancel():
            baseline = self._interference_baseline
        else:
            baseline = self._dbm
        self._interference_baseline = baseline

        drop = INTERFERENCE_DROP[severity]
        self.set_signal_strength(baseline + drop)

        payload = {"severity": severity.value, "duration": duration, "signal_drop": drop}
        self.publish_repeater("interference", payload)
        self.recorder.record("interference_started", payload)
        self.emitter.emit("interference", payload)

        self._interference_task = self.scheduler.call_later(
            duration, self._end_interference, duration, name="interference"
        )
        return self._interference_task

    def _end_interference(self, duration: float) -> None:
        baseline, self._interference_baseline = self._interference_baseline, None
        self._interference_task = None
        if baseline is not None:
            self.set_signal_strength(baseline)
        self.recorder.record("interference_ended", {"duration": duration})

    def simulate_congestion(self, message_count: int, duration: float) -> ScheduledTask:
        """Flood the relay queue with synthetic traffic until ``duration`` elapses."""
        per_tick = int(math.ceil(message_count / 10))

        def burst():
            for i in range(per_tick):
                self.relay_message(
                    f"DEVICE_{self._rng.randrange(CONGESTION_PEERS)}",
                    f"DEVICE_{self._rng.randrange(CONGESTION_PEERS)}",
                    {"type": "congestion_test", "data": f"Test message {i}"},
                )

        if self._congestion_task:
            self._congestion_task.cancel()
        self._congestion_task = self.scheduler.call_every(CONGESTION_TICK, burst, name="congestion", until=duration)

        payload = {"message_count": message_count, "duration": duration}
        self.publish_repeater("congestion", payload)
        self.recorder.record("congestion_test", payload)
        return self._congestion_task

    def simulate_mesh_network(self, other_repeaters: List[str]) -> Dict[str, Any]:
        payload = {
            "mesh_id": f"MESH_{int(time.time() * 1000)}",
            "repeaters": [self.device_id] + list(other_repeaters),
            "topology": "star",
        }
        self.publish_repeater("mesh", payload)
        self.notify("mesh_formed", payload)
        return payload

    # Firmware

    def simulate_firmware_update(self, version: str, duration: float = 30) -> ScheduledTask:
        """Run download, install and reboot phases, then switch version."""
        if self._firmware_task:
            self._firmware_task.cancel()

        start = {
            "current_version": self.firmware_version,
            "target_version": version,
            "status": "downloading",
        }
        self.publish_repeater("firmware/update", start)
        self.recorder.record("firmware_update_started", start)
        self.emitter.emit("firmware_update", start)

        self._firmware_task = self.scheduler.spawn(self._run_firmware_update, version, duration, start)
        return self._firmware_task

    async def _run_firmware_update(self, version: str, duration: float, start: Dict[str, Any]) -> None:
        for progress in range(10, 101, 10):
            await self.scheduler.sleep(duration / 10)
            self.publish_repeater("firmware/update", dict(start, progress=progress))

        self.publish_repeater("firmware/update", dict(start, status="installing", progress=100))
        await self.scheduler.sleep(self.settings.firmware_reboot_delay)

        self.firmware_version = version
        self.uptime_start = time.monotonic()
        self.publish_repeater("firmware/update", {"current_version": version, "status": "completed"})
        self.recorder.record("firmware_update_completed", {"version": version})
        self.publish_status()

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status.update({
            "stats": self.stats,
            "connected_devices": [p.to_dict() for p in self.peers.values()],
            "signal_quality": self.signal_quality,
            "relay_queue_size": len(self.relay_queue),
            "signal_range": self.signal_range,
            "firmware_version": self.firmware_version,
        })
        return status
