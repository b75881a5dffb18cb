"""Simulated device variants."""

from ..models import DeviceKind
from .base import NetworkCondition, NetworkFailureKind, SimulatedDevice
from .button import ButtonMode, SimulatedButton
from .repeater import ConnectedPeer, SimulatedRepeater
from .smartwatch import MovementPattern, SimulatedSmartwatch

DEVICE_CLASSES = {
    DeviceKind.BUTTON: SimulatedButton,
    DeviceKind.SMARTWATCH: SimulatedSmartwatch,
    DeviceKind.REPEATER: SimulatedRepeater,
}

__all__ = [
    "DEVICE_CLASSES",
    "ButtonMode",
    "ConnectedPeer",
    "MovementPattern",
    "NetworkCondition",
    "NetworkFailureKind",
    "SimulatedButton",
    "SimulatedDevice",
    "SimulatedRepeater",
    "SimulatedSmartwatch",
]
