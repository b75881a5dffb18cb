import asyncio
import json
import random
from typing import Any, Callable, Dict, List, Tuple

import pytest
import pytest_asyncio

from fleet_sim.config import FleetSettings
from fleet_sim.exceptions import BrokerConnectionError
from fleet_sim.models import DeviceConfig, generate_device_id


class FakeBroker:
    """In-memory stand-in for the MQTT broker."""

    def __init__(self):
        self.published: List[Tuple[str, Dict[str, Any], int]] = []
        self.clients: Dict[str, "_StubMQTT"] = {}
        self.fail_connect = False

    def factory(self, client_id: str, settings: FleetSettings) -> "_StubMQTT":
        client = _StubMQTT(client_id, self)
        self.clients[client_id] = client
        return client

    def messages(self, channel: str = None, device_id: str = None) -> List[Dict[str, Any]]:
        found = []
        for topic, payload, _qos in self.published:
            if channel is not None and not topic.endswith("/" + channel):
                continue
            if device_id is not None and f"/{device_id}/" not in topic:
                continue
            found.append(payload)
        return found

    def topics(self) -> List[str]:
        return [t for t, _p, _q in self.published]

    def clear(self) -> None:
        self.published = []


class _StubMQTT:
    def __init__(self, client_id: str, broker: FakeBroker):
        self.client_id = client_id
        self.broker = broker
        self.connected = False

    async def connect(self):
        if self.broker.fail_connect:
            raise BrokerConnectionError("broker unavailable")
        self.connected = True

    async def disconnect(self):
        self.connected = False

    def publish(self, topic: str, message: str, qos: int = 1, retain: bool = False) -> bool:
        if not self.connected:
            return False
        self.broker.published.append((topic, json.loads(message), qos))
        return True


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.002)
    return True


def make_config(kind, name: str = "Test Device", location: str = "Lab", **kwargs) -> DeviceConfig:
    return DeviceConfig(
        device_id=kwargs.pop("device_id", None) or generate_device_id(kind),
        name=name,
        location=location,
        kind=kind,
        **kwargs
    )


@pytest.fixture
def settings() -> FleetSettings:
    # Delays run a thousand times faster; heartbeats stay out of the way.
    return FleetSettings(time_scale=0.001, heartbeat_interval=3600)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest_asyncio.fixture
async def make_device(settings, broker):
    created = []

    async def _make(cls, config=None, connect=True, **kwargs):
        config = config or make_config(cls.kind)
        device = cls(
            config,
            settings=kwargs.pop("settings", settings),
            client_factory=broker.factory,
            rng=kwargs.pop("rng", random.Random(7)),
            **kwargs
        )
        if connect:
            await device.connect()
        created.append(device)
        return device

    yield _make

    for device in created:
        await device.disconnect()
