"""
Operator actions on individual devices.

Maps action names sent by an operator surface onto device operations.
Each device kind accepts its own set of actions plus the connectivity
actions shared by every device.
"""

from typing import Any, Callable, Dict, Optional

import structlog

from .devices import SimulatedButton, SimulatedDevice, SimulatedRepeater, SimulatedSmartwatch
from .exceptions import ConfigurationError, UnknownActionError

logger = structlog.get_logger(__name__)

DEFAULT_VOICE_MESSAGE = "Service requested"
DEFAULT_RAPID_PRESS_COUNT = 3

Handler = Callable[[Any, Dict[str, Any]], Any]


def _require(data: Dict[str, Any], action: str, *keys: str) -> None:
    missing = [k for k in keys if data.get(k) is None]
    if missing:
        raise ConfigurationError(f"{', '.join(missing)} required for {action} action")


# Button

def _press(button: SimulatedButton, data):
    return button.press(
        voice_message=data.get("voice_message", DEFAULT_VOICE_MESSAGE),
        emergency=bool(data.get("emergency", False)),
        long_press=bool(data.get("long_press", False)),
    )


def _emergency_press(button: SimulatedButton, data):
    return button.emergency_press(data.get("message"))


def _rapid_press(button: SimulatedButton, data):
    count = int(data.get("count", DEFAULT_RAPID_PRESS_COUNT))
    button.rapid_press(count, float(data.get("interval", 0.1)))
    return {"count": count}


def _malfunction(button: SimulatedButton, data):
    kind = data.get("type", "stuck")
    button.simulate_malfunction(kind, data.get("duration"))
    return {"type": kind}


def _restore(button: SimulatedButton, data):
    button.restore()
    return {"mode": button.mode.value}


# Smartwatch

def _assign_crew(watch: SimulatedSmartwatch, data):
    _require(data, "assign_crew", "crew_id")
    return watch.assign_to_crew(data["crew_id"])


def _crew_status(watch: SimulatedSmartwatch, data):
    _require(data, "crew_status", "status")
    return watch.update_crew_status(data["status"])


def _update_location(watch: SimulatedSmartwatch, data):
    _require(data, "update_location", "location")
    return watch.update_location(data["location"])


def _receive_request(watch: SimulatedSmartwatch, data):
    _require(data, "receive_request", "request_id")
    return watch.receive_service_request(data["request_id"], data.get("details"))


def _accept_request(watch: SimulatedSmartwatch, data):
    _require(data, "accept_request", "request_id")
    return watch.accept_request(data["request_id"])


def _decline_request(watch: SimulatedSmartwatch, data):
    _require(data, "decline_request", "request_id")
    return watch.decline_request(data["request_id"], data.get("reason"))


def _complete_request(watch: SimulatedSmartwatch, data):
    _require(data, "complete_request", "request_id")
    return watch.complete_request(data["request_id"], data.get("notes"))


def _send_sos(watch: SimulatedSmartwatch, data):
    return watch.send_sos(data.get("message"))


def _simulate_fall(watch: SimulatedSmartwatch, data):
    watch.simulate_fall()
    return {"fall_detected": True}


def _simulate_movement(watch: SimulatedSmartwatch, data):
    _require(data, "simulate_movement", "pattern", "duration")
    watch.simulate_movement(data["pattern"], float(data["duration"]))
    return {"pattern": data["pattern"], "duration": data["duration"]}


# Repeater

def _update_signal_strength(repeater: SimulatedRepeater, data):
    _require(data, "update_signal_strength", "signal_strength")
    return repeater.set_signal_strength(float(data["signal_strength"]))


def _relay(repeater: SimulatedRepeater, data):
    _require(data, "relay", "from_device", "to_device", "message")
    repeater.relay_message(data["from_device"], data["to_device"], data["message"])
    return {"queued": len(repeater.relay_queue)}


def _register_device(repeater: SimulatedRepeater, data):
    _require(data, "register_device", "device_id", "device_kind")
    return repeater.register_device(data["device_id"], data["device_kind"]).to_dict()


def _unregister_device(repeater: SimulatedRepeater, data):
    _require(data, "unregister_device", "device_id")
    return {"removed": repeater.unregister_device(data["device_id"])}


def _interference(repeater: SimulatedRepeater, data):
    _require(data, "interference", "duration")
    repeater.simulate_interference(float(data["duration"]), data.get("severity", "medium"))
    return {"signal_strength": repeater.signal_strength}


def _congestion(repeater: SimulatedRepeater, data):
    _require(data, "congestion", "message_count", "duration")
    repeater.simulate_congestion(int(data["message_count"]), float(data["duration"]))
    return {"message_count": data["message_count"]}


def _firmware_update(repeater: SimulatedRepeater, data):
    _require(data, "firmware_update", "version")
    repeater.simulate_firmware_update(data["version"], float(data.get("duration", 30)))
    return {"target_version": data["version"]}


def _mesh(repeater: SimulatedRepeater, data):
    return repeater.simulate_mesh_network(data.get("repeaters", []))


# Any device

def _go_offline(device: SimulatedDevice, data):
    device.simulate_offline(data.get("duration"))
    return {"is_online": device.is_online}


def _go_online(device: SimulatedDevice, data):
    return {"is_online": device.simulate_online()}


def _network_failure(device: SimulatedDevice, data):
    _require(data, "network_failure", "type")
    device.simulate_network_failure(data["type"])
    return {"network": device.network_condition.value}


COMMON_ACTIONS: Dict[str, Handler] = {
    "go_offline": _go_offline,
    "go_online": _go_online,
    "network_failure": _network_failure,
}

DEVICE_ACTIONS: Dict[type, Dict[str, Handler]] = {
    SimulatedButton: {
        "press": _press,
        "emergency_press": _emergency_press,
        "rapid_press": _rapid_press,
        "malfunction": _malfunction,
        "restore": _restore,
    },
    SimulatedSmartwatch: {
        "assign_crew": _assign_crew,
        "crew_status": _crew_status,
        "update_location": _update_location,
        "receive_request": _receive_request,
        "accept_request": _accept_request,
        "decline_request": _decline_request,
        "complete_request": _complete_request,
        "send_sos": _send_sos,
        "simulate_fall": _simulate_fall,
        "simulate_movement": _simulate_movement,
    },
    SimulatedRepeater: {
        "update_signal_strength": _update_signal_strength,
        "relay": _relay,
        "register_device": _register_device,
        "unregister_device": _unregister_device,
        "interference": _interference,
        "congestion": _congestion,
        "firmware_update": _firmware_update,
        "mesh": _mesh,
    },
}


def available_actions(device: SimulatedDevice) -> Dict[str, Handler]:
    actions = dict(COMMON_ACTIONS)
    for cls, handlers in DEVICE_ACTIONS.items():
        if isinstance(device, cls):
            actions.update(handlers)
    return actions


def perform_action(device: SimulatedDevice, action: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Run ``action`` on ``device`` and describe the outcome."""
    handler = available_actions(device).get(action)
    if handler is None:
        raise UnknownActionError(f"Unknown action for {device.kind.value}: {action}")

    logger.info("device_action", device_id=device.device_id, action=action)
    result = handler(device, data or {})
    return {"success": True, "action": action, "device_id": device.device_id, "result": result}
