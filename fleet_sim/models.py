"""Data models for the virtual device fleet."""

import random
import string
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class DeviceKind(str, Enum):
    """Kinds of simulated device."""
    BUTTON = "button"
    SMARTWATCH = "smartwatch"
    REPEATER = "repeater"


KIND_PREFIXES = {
    DeviceKind.BUTTON: "BTN",
    DeviceKind.SMARTWATCH: "SWT",
    DeviceKind.REPEATER: "RPT",
}


class CrewStatus(str, Enum):
    """Crew member availability reported by a smartwatch."""
    AVAILABLE = "available"
    BUSY = "busy"
    BREAK = "break"
    OFFLINE = "offline"


class Severity(str, Enum):
    """Severity levels shared by interference and failure scenarios."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Location(BaseModel):
    """Geographic position of a crew member."""
    lat: float = Field(0.0, ge=-90, le=90)
    lng: float = Field(0.0, ge=-180, le=180)


class DeviceConfig(BaseModel):
    """Immutable identity and seed values of a simulated device."""
    device_id: str
    name: str
    location: str
    kind: DeviceKind
    initial_battery: float = Field(100.0, ge=0, le=100)
    initial_signal: float = Field(100.0, ge=0, le=100)

    class Config:
        frozen = True


class DeviceOptions(BaseModel):
    """Options accepted by ``FleetManager.create_device``."""
    kind: DeviceKind
    name: str
    location: str
    device_id: Optional[str] = None
    initial_battery: Optional[float] = Field(None, ge=0, le=100)
    initial_signal: Optional[float] = Field(None, ge=0, le=100)
    extra: Dict[str, Any] = Field(default_factory=dict)
    persist: bool = False


def generate_device_id(kind: DeviceKind, rng: Optional[random.Random] = None) -> str:
    """Build a legible id such as ``VD-2026-BTN-K3ZQ042-V``.

    Encodes the creation year and device kind; the random suffix is four
    base36 characters followed by three digits.
    """
    rng = rng or random.SystemRandom()
    year = datetime.now(timezone.utc).year
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(rng.choice(alphabet) for _ in range(4))
    counter = f"{rng.randrange(1000):03d}"
    return f"VD-{year}-{KIND_PREFIXES[DeviceKind(kind)]}-{suffix}{counter}-V"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))
