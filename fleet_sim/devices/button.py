"""Emergency/service call button."""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from ..exceptions import ConfigurationError
from ..models import DeviceKind, utc_now_iso
from ..scheduler import ScheduledTask
from .base import SimulatedDevice


class ButtonMode(str, Enum):
    """Malfunction state checked at the top of ``press``."""
    NORMAL = "normal"
    STUCK = "stuck"
    UNRESPONSIVE = "unresponsive"


STUCK_BURST_COUNT = 10
STUCK_BURST_INTERVAL = 0.05
STUCK_PRESS_INTERVAL = 0.1
DEFAULT_EMERGENCY_MESSAGE = "Emergency! Need immediate assistance!"


class SimulatedButton(SimulatedDevice):
    """Cabin call button with optional voice message."""

    kind = DeviceKind.BUTTON

    def __init__(self, config, settings=None, client_factory=None, rng=None):
        super().__init__(config, settings, client_factory, rng)
        self.press_count = 0
        self.last_press_time: Optional[float] = None
        self.mode = ButtonMode.NORMAL
        self._malfunction_task: Optional[ScheduledTask] = None

    def press(
        self,
        voice_message: Optional[str] = None,
        emergency: bool = False,
        long_press: bool = False
    ) -> Optional[Dict[str, Any]]:
        """Simulate a button press; returns the published payload."""
        if self.mode == ButtonMode.UNRESPONSIVE:
            self.log.info("press_ignored", reason="unresponsive")
            self.recorder.record("press_failed", {"reason": "unresponsive"})
            return None

        if not self.is_online:
            self.log.warning("press_while_offline")
            self.recorder.record("press_failed", {"reason": "offline"})
            return None

        with self._lock:
            self.press_count += 1
            self.last_press_time = time.time()
            count = self.press_count

        payload = {
            "press_type": "long" if long_press else "short",
            "emergency": emergency,
            "voice_message": voice_message,
            "press_count": count,
            "timestamp": utc_now_iso(),
            "location": self.location,
            "device_name": self.name,
        }

        self.publish("press", payload)
        self.notify("button_press", payload)

        self.drain_battery(self.settings.press_battery_drain)
        self.publish_status()

        if voice_message:
            self.scheduler.call_later(
                self.settings.voice_processing_delay,
                self._publish_voice_recording,
                voice_message,
                name="voice_processing",
            )
        return payload

    def _publish_voice_recording(self, transcript: str) -> None:
        payload = {
            "transcript": transcript,
            "duration": max(1.0, len(transcript) * 0.1),
            "quality": "high",
            "language": "en",
        }
        self.publish("voice", payload)
        self.notify("voice_recording", payload)

    def rapid_press(self, count: int, interval: float = 0.1) -> ScheduledTask:
        """Press ``count`` times on a fixed cadence."""
        state = {"pressed": 0}

        def tick():
            if state["pressed"] >= count:
                task.cancel()
                return
            state["pressed"] += 1
            self.press()
            if state["pressed"] >= count:
                task.cancel()

        task = self.scheduler.call_every(interval, tick, name="rapid_press")
        return task

    def emergency_press(self, message: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return self.press(
            voice_message=message or DEFAULT_EMERGENCY_MESSAGE,
            emergency=True,
            long_press=True,
        )

    def simulate_malfunction(self, kind: str, duration: Optional[float] = None) -> ScheduledTask:
        """Switch into a malfunction mode.

        ``stuck`` without a duration fires a short burst of presses, with a
        duration it keeps pressing until the window ends. ``unresponsive``
        ignores presses for ``duration`` (default: the unresponsive window).
        """
        try:
            mode = ButtonMode(kind)
        except ValueError:
            raise ConfigurationError(f"Unknown button malfunction: {kind}")
        if mode == ButtonMode.NORMAL:
            raise ConfigurationError("normal is not a malfunction")

        self._cancel_malfunction()
        self.recorder.record("malfunction", {"type": mode.value, "duration": duration})
        self.mode = mode

        if mode == ButtonMode.STUCK:
            if duration:
                task = self.scheduler.call_every(STUCK_PRESS_INTERVAL, self.press, name="stuck_button", until=duration)
            else:
                task = self.rapid_press(STUCK_BURST_COUNT, STUCK_BURST_INTERVAL)
            self._malfunction_task = task
            task.add_done_callback(lambda t: self._finish_malfunction(t, mode))
        else:
            window = duration or self.settings.unresponsive_window
            task = self.scheduler.call_later(
                window, lambda: self._finish_malfunction(task, mode), name="unresponsive_button"
            )
            self._malfunction_task = task
        return task

    def restore(self) -> None:
        """Return to normal mode immediately."""
        self._cancel_malfunction()
        if self.mode != ButtonMode.NORMAL:
            self._resolve_malfunction(self.mode)

    def _cancel_malfunction(self) -> None:
        task, self._malfunction_task = self._malfunction_task, None
        if task:
            task.cancel()

    def _finish_malfunction(self, task: ScheduledTask, mode: ButtonMode) -> None:
        # A replaced or manually restored malfunction must not reset the new mode.
        if self._malfunction_task is not task:
            return
        self._malfunction_task = None
        self._resolve_malfunction(mode)

    def _resolve_malfunction(self, mode: ButtonMode) -> None:
        if self.mode != mode:
            return
        self.mode = ButtonMode.NORMAL
        self.recorder.record("malfunction_resolved", {"type": mode.value})

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status.update({
            "press_count": self.press_count,
            "last_press_time": (
                datetime.fromtimestamp(self.last_press_time, timezone.utc).isoformat()
                if self.last_press_time else None
            ),
            "mode": self.mode.value,
        })
        return status
