"""Crew smartwatch: service requests, location, SOS and fall detection."""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from ..exceptions import ConfigurationError
from ..geo import initial_bearing, speed_kmh
from ..models import CrewStatus, DeviceKind, Location
from ..scheduler import ScheduledTask
from .base import SimulatedDevice

# Nominal time between two location fixes, used for derived speed.
LOCATION_FIX_INTERVAL = 5.0
PATROL_STEP_DEG = 0.0001
PATROL_LEG_TICKS = 1
RANDOM_WALK_SPAN_DEG = 0.0002
FALL_SOS_MESSAGE = "Fall detected - crew member may need assistance"


class MovementPattern(str, Enum):
    PATROL = "patrol"
    RANDOM = "random"
    STATIONARY = "stationary"


class SimulatedSmartwatch(SimulatedDevice):
    """Smartwatch worn by a crew member."""

    kind = DeviceKind.SMARTWATCH

    def __init__(
        self,
        config,
        settings=None,
        client_factory=None,
        rng=None,
        assigned_crew_id: Optional[int] = None,
        initial_location: Optional[Union[Location, Dict[str, float]]] = None
    ):
        super().__init__(config, settings, client_factory, rng)
        self.assigned_crew_id = assigned_crew_id
        self.current_location = _as_location(initial_location) if initial_location else Location()
        self.crew_status = CrewStatus.AVAILABLE
        self.active_requests: List[int] = []
        self._accepted: Set[int] = set()
        self.last_activity_time = time.time()
        self._movement_task: Optional[ScheduledTask] = None

    def _touch(self) -> None:
        self.last_activity_time = time.time()

    # Crew binding and status

    def assign_to_crew(self, crew_id: int) -> Dict[str, Any]:
        self.assigned_crew_id = crew_id
        payload = {"crew_id": crew_id}
        self.publish("assign", payload)
        self.notify("crew_assignment", payload)
        self.publish_status()
        return payload

    def update_crew_status(self, status: Union[CrewStatus, str]) -> Dict[str, Any]:
        try:
            status = CrewStatus(status)
        except ValueError:
            raise ConfigurationError(f"Unknown crew status: {status}")

        with self._lock:
            previous = self.crew_status
            self.crew_status = status

        payload = {
            "crew_id": self.assigned_crew_id,
            "status": status.value,
            "previous_status": previous.value,
        }
        self.publish("crew/status", payload)
        self.notify("status_change", payload)
        self._touch()
        return payload

    # Location

    def update_location(self, location: Union[Location, Dict[str, float]]) -> Dict[str, Any]:
        location = _as_location(location)
        with self._lock:
            previous = self.current_location
            self.current_location = location

        start = (previous.lat, previous.lng)
        end = (location.lat, location.lng)
        payload = {
            "lat": location.lat,
            "lng": location.lng,
            "crew_id": self.assigned_crew_id,
            "previous_location": previous.model_dump(),
            "speed": round(speed_kmh(start, end, LOCATION_FIX_INTERVAL), 3),
            "heading": round(initial_bearing(start, end), 2),
        }
        self.publish("location", payload)
        self.notify("location_update", payload)
        return payload

    def simulate_movement(self, pattern: Union[MovementPattern, str], duration: float) -> ScheduledTask:
        """Drive periodic location updates until ``duration`` elapses."""
        try:
            pattern = MovementPattern(pattern)
        except ValueError:
            raise ConfigurationError(f"Unknown movement pattern: {pattern}")

        if self._movement_task:
            self._movement_task.cancel()

        ticks = {"n": 0}

        def step():
            here = self.current_location
            if pattern == MovementPattern.PATROL:
                # Square path: north, east, south, west.
                leg = (ticks["n"] // PATROL_LEG_TICKS) % 4
                d_lat, d_lng = [(1, 0), (0, 1), (-1, 0), (0, -1)][leg]
                target = Location(lat=here.lat + d_lat * PATROL_STEP_DEG, lng=here.lng + d_lng * PATROL_STEP_DEG)
            elif pattern == MovementPattern.RANDOM:
                target = Location(
                    lat=here.lat + (self._rng.random() - 0.5) * RANDOM_WALK_SPAN_DEG,
                    lng=here.lng + (self._rng.random() - 0.5) * RANDOM_WALK_SPAN_DEG,
                )
            else:
                target = here
            ticks["n"] += 1
            self.update_location(target)

        self.recorder.record("movement_started", {"pattern": pattern.value, "duration": duration})
        self._movement_task = self.scheduler.call_every(
            self.settings.movement_interval, step, name="movement", until=duration
        )
        return self._movement_task

    def stop_movement(self) -> bool:
        task, self._movement_task = self._movement_task, None
        return bool(task and task.cancel())

    # Service requests

    def receive_service_request(self, request_id: int, details: Optional[Dict[str, Any]] = None) -> bool:
        """Queue a request; returns False when the crew member is offline."""
        if self.crew_status == CrewStatus.OFFLINE:
            self.log.warning("request_while_crew_offline", request_id=request_id)
            self.recorder.record("request_ignored", {"request_id": request_id, "reason": "crew_offline"})
            return False

        with self._lock:
            if request_id not in self.active_requests:
                self.active_requests.append(request_id)

        payload = {
            "type": "service_request",
            "request_id": request_id,
            "request_details": details,
            "crew_id": self.assigned_crew_id,
        }
        self.publish("notification", payload)
        self.notify("request_received", payload)
        self._simulate_alert()

        if self.crew_status == CrewStatus.AVAILABLE:
            self.scheduler.call_later(
                self.settings.auto_accept_delay, self._auto_accept, request_id, name="auto_accept"
            )
        return True

    def _auto_accept(self, request_id: int) -> None:
        if request_id in self.active_requests and request_id not in self._accepted:
            self.accept_request(request_id)

    def _simulate_alert(self) -> None:
        self.notify("alert", {"type": "vibration", "duration": 500, "pattern": [100, 50, 100]})

    def _request_missing(self, request_id: int, action: str) -> bool:
        if request_id in self.active_requests:
            return False
        self.log.warning("request_not_found", request_id=request_id, action=action)
        self.recorder.record("request_not_found", {"request_id": request_id, "action": action})
        return True

    def accept_request(self, request_id: int) -> bool:
        if self._request_missing(request_id, "accept"):
            return False

        self._accepted.add(request_id)
        payload = {
            "request_id": request_id,
            "crew_id": self.assigned_crew_id,
            "location": self.current_location.model_dump(),
        }
        self.publish("request/accept", payload)
        self.notify("request_accepted", payload)
        self.update_crew_status(CrewStatus.BUSY)
        return True

    def decline_request(self, request_id: int, reason: Optional[str] = None) -> bool:
        if self._request_missing(request_id, "decline"):
            return False

        with self._lock:
            self.active_requests.remove(request_id)
            self._accepted.discard(request_id)
        payload = {"request_id": request_id, "crew_id": self.assigned_crew_id, "reason": reason}
        self.publish("request/decline", payload)
        self.notify("request_declined", payload)
        self._touch()
        return True

    def complete_request(self, request_id: int, notes: Optional[str] = None) -> bool:
        if self._request_missing(request_id, "complete"):
            return False

        with self._lock:
            self.active_requests.remove(request_id)
            self._accepted.discard(request_id)
            queue_empty = not self.active_requests

        payload = {"request_id": request_id, "crew_id": self.assigned_crew_id, "completion_notes": notes}
        self.publish("request/complete", payload)
        self.notify("request_completed", payload)

        if queue_empty:
            self.update_crew_status(CrewStatus.AVAILABLE)
        self._touch()
        return True

    # Emergencies

    def send_sos(self, message: Optional[str] = None) -> Dict[str, Any]:
        payload = {
            "crew_id": self.assigned_crew_id,
            "location": self.current_location.model_dump(),
            "message": message,
            "battery": round(self.battery, 2),
        }
        self.publish("sos", payload)
        self.notify("sos", payload)

        self.drain_battery(self.settings.sos_battery_drain)
        self.publish_status()
        return payload

    def simulate_fall(self) -> ScheduledTask:
        """Publish a fall and follow up with an automatic SOS."""
        payload = {
            "crew_id": self.assigned_crew_id,
            "location": self.current_location.model_dump(),
            "severity": "high",
        }
        self.publish("fall", payload)
        self.notify("fall_detected", payload)
        return self.scheduler.call_later(
            self.settings.fall_sos_delay, self.send_sos, FALL_SOS_MESSAGE, name="fall_sos"
        )

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status.update({
            "assigned_crew_id": self.assigned_crew_id,
            "crew_status": self.crew_status.value,
            "current_location": self.current_location.model_dump(),
            "active_requests": list(self.active_requests),
            "last_activity_time": datetime.fromtimestamp(self.last_activity_time, timezone.utc).isoformat(),
        })
        return status


def _as_location(value: Union[Location, Dict[str, float]]) -> Location:
    if isinstance(value, Location):
        return value
    return Location(**value)
