"""Per-device event log and listener fan-out."""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DeviceEvent:
    """A single recorded device event."""
    timestamp: float
    device_id: str
    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "device_id": self.device_id,
            "event_type": self.event_type,
            "data": dict(self.data),
        }


class EventRecorder:
    """Append-only event log owned by one device."""

    def __init__(self, device_id: str):
        self.device_id = device_id
        self._events: List[DeviceEvent] = []
        self._lock = threading.Lock()

    def record(self, event_type: str, data: Dict[str, Any] = None) -> DeviceEvent:
        event = DeviceEvent(
            timestamp=time.time(),
            device_id=self.device_id,
            event_type=event_type,
            data=dict(data or {}),
        )
        with self._lock:
            self._events.append(event)
        return event

    def get_events(self) -> List[DeviceEvent]:
        with self._lock:
            return list(self._events)

    def events_of(self, event_type: str) -> List[DeviceEvent]:
        return [e for e in self.get_events() if e.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self._events = []

    def __len__(self) -> int:
        return len(self._events)


class EventEmitter:
    """Minimal observer: named events fanned out to registered listeners."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable[[Dict[str, Any]], Any]]] = {}

    def on(self, event: str, listener: Callable[[Dict[str, Any]], Any]) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Callable[[Dict[str, Any]], Any]) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def once(self, event: str, listener: Callable[[Dict[str, Any]], Any]) -> None:
        def wrapper(payload):
            self.off(event, wrapper)
            return listener(payload)
        self.on(event, wrapper)

    def emit(self, event: str, payload: Dict[str, Any] = None) -> int:
        """Call every listener of ``event``; returns how many were called."""
        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            try:
                listener(payload if payload is not None else {})
            except Exception as e:
                logger.error("listener_failed", event_name=event, error=str(e))
        return len(listeners)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))
