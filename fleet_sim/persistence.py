"""Device record storage used when a fleet persists its devices."""

import json
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import redis.asyncio as redis
import structlog
from pydantic import BaseModel, Field
from redis.asyncio import Redis

from .models import DeviceKind, utc_now_iso

logger = structlog.get_logger(__name__)

RECORD_KEY_PREFIX = "virtual_device:"
RECORD_INDEX_KEY = "virtual_devices"


class VirtualConfig(BaseModel):
    broker_url: str
    created_at: str = Field(default_factory=utc_now_iso)


class DeviceRecord(BaseModel):
    """Persisted view of a simulated device."""
    device_id: str
    name: str
    kind: DeviceKind
    location: str
    battery: float
    signal: float
    is_virtual: bool = True
    virtual_config: VirtualConfig

    @classmethod
    def from_device(cls, device, broker_url: str) -> "DeviceRecord":
        status = device.get_status()
        return cls(
            device_id=device.device_id,
            name=device.name,
            kind=device.kind,
            location=device.location,
            battery=status["battery"],
            signal=status["signal"],
            virtual_config=VirtualConfig(broker_url=broker_url),
        )


class DeviceStore(ABC):
    """Async storage boundary for device records."""

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def save(self, record: DeviceRecord) -> None:
        ...

    @abstractmethod
    async def delete(self, device_id: str) -> bool:
        ...

    @abstractmethod
    async def get(self, device_id: str) -> Optional[DeviceRecord]:
        ...

    @abstractmethod
    async def list(self) -> List[DeviceRecord]:
        ...


class InMemoryDeviceStore(DeviceStore):
    """Dictionary-backed store, the default for tests and the CLI."""

    def __init__(self):
        self._records: Dict[str, DeviceRecord] = {}

    async def save(self, record: DeviceRecord) -> None:
        self._records[record.device_id] = record

    async def delete(self, device_id: str) -> bool:
        return self._records.pop(device_id, None) is not None

    async def get(self, device_id: str) -> Optional[DeviceRecord]:
        return self._records.get(device_id)

    async def list(self) -> List[DeviceRecord]:
        return list(self._records.values())


class RedisDeviceStore(DeviceStore):
    """Stores records as JSON blobs with an index set of device ids."""

    def __init__(self, redis_url: str, client: Optional[Redis] = None):
        self.redis_url = redis_url
        self.redis: Optional[Redis] = client

    async def connect(self):
        """Connect to Redis."""
        if self.redis is None:
            self.redis = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await self.redis.ping()
            logger.info("redis_connected", url=self.redis_url)
        except Exception as e:
            logger.error("redis_connect_failed", url=self.redis_url, error=str(e))
            raise

    async def disconnect(self):
        """Disconnect from Redis."""
        if self.redis:
            await self.redis.close()
            logger.info("redis_disconnected")

    def _client(self) -> Redis:
        if not self.redis:
            raise ConnectionError("Not connected to Redis")
        return self.redis

    async def save(self, record: DeviceRecord) -> None:
        client = self._client()
        await client.set(f"{RECORD_KEY_PREFIX}{record.device_id}", record.model_dump_json())
        await client.sadd(RECORD_INDEX_KEY, record.device_id)

    async def delete(self, device_id: str) -> bool:
        client = self._client()
        removed = await client.delete(f"{RECORD_KEY_PREFIX}{device_id}")
        await client.srem(RECORD_INDEX_KEY, device_id)
        return bool(removed)

    async def get(self, device_id: str) -> Optional[DeviceRecord]:
        raw = await self._client().get(f"{RECORD_KEY_PREFIX}{device_id}")
        if raw is None:
            return None
        return DeviceRecord(**json.loads(raw))

    async def list(self) -> List[DeviceRecord]:
        client = self._client()
        records = []
        for device_id in sorted(await client.smembers(RECORD_INDEX_KEY)):
            record = await self.get(device_id)
            if record is not None:
                records.append(record)
        return records
