"""MQTT client used by simulated devices."""

import asyncio
from typing import Optional

import paho.mqtt.client as mqtt
import structlog

from .config import FleetSettings
from .exceptions import BrokerConnectionError

logger = structlog.get_logger(__name__)


class MQTTClient:
    """paho-mqtt wrapper with an awaitable connect and fire-and-forget publish."""

    def __init__(
        self,
        client_id: str,
        broker: str,
        port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        keepalive: int = 60,
        connect_timeout: float = 4.0
    ):
        self.client_id = client_id
        self.broker = broker
        self.port = port
        self.keepalive = keepalive
        self.connect_timeout = connect_timeout

        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            clean_session=True,
        )
        if username:
            self.client.username_pw_set(username, password)
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)

        # Set up callbacks
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_publish = self._on_publish

        self.connected = False
        self._refused: Optional[str] = None

    @classmethod
    def from_settings(cls, client_id: str, settings: FleetSettings) -> "MQTTClient":
        return cls(
            client_id=client_id,
            broker=settings.mqtt_broker,
            port=settings.mqtt_port,
            username=settings.mqtt_username,
            password=settings.mqtt_password,
            keepalive=settings.mqtt_keepalive,
            connect_timeout=settings.connect_timeout,
        )

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """MQTT connection callback."""
        if not reason_code.is_failure:
            self.connected = True
            logger.info("mqtt_connected", client_id=self.client_id, broker=self.broker, port=self.port)
        else:
            self._refused = str(reason_code)
            logger.error("mqtt_connect_refused", client_id=self.client_id, reason=str(reason_code))

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        """MQTT disconnection callback."""
        self.connected = False
        logger.info("mqtt_disconnected", client_id=self.client_id, reason=str(reason_code))

    def _on_publish(self, client, userdata, mid, reason_code, properties):
        """MQTT publish callback."""
        logger.debug("mqtt_published", client_id=self.client_id, mid=mid)

    async def connect(self):
        """Connect to the broker; raises BrokerConnectionError on failure."""
        if self.connected:
            return
        try:
            self.client.connect(self.broker, self.port, self.keepalive)
        except OSError as e:
            logger.error("mqtt_connect_failed", client_id=self.client_id, error=str(e))
            raise BrokerConnectionError(f"Cannot reach MQTT broker {self.broker}:{self.port}: {e}") from e

        self.client.loop_start()

        # Wait for connection
        timeout = self.connect_timeout
        while not self.connected and self._refused is None and timeout > 0:
            await asyncio.sleep(0.1)
            timeout -= 0.1

        if not self.connected:
            self.client.loop_stop()
            reason = self._refused or "timed out"
            raise BrokerConnectionError(f"Failed to connect to MQTT broker {self.broker}:{self.port}: {reason}")

    async def disconnect(self):
        """Disconnect from the broker."""
        self.client.disconnect()
        self.client.loop_stop()
        self.connected = False

    def publish(self, topic: str, message: str, qos: int = 1, retain: bool = False) -> bool:
        """Queue a message for delivery; returns False if paho rejected it."""
        if not self.connected:
            return False
        result = self.client.publish(topic, message, qos=qos, retain=retain)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("mqtt_publish_rejected", topic=topic, rc=result.rc)
            return False
        return True
