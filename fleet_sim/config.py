"""Configuration settings for the virtual device fleet."""

from pydantic_settings import BaseSettings
from typing import Optional


class FleetSettings(BaseSettings):
    """Fleet settings.

    Every delay below is expressed in nominal seconds and multiplied by
    ``time_scale`` before it is scheduled.
    """

    # Service configuration
    service_name: str = "fleet-sim"
    log_level: str = "INFO"
    log_json: bool = True

    # MQTT configuration
    mqtt_broker: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_keepalive: int = 60
    mqtt_qos: int = 1
    connect_timeout: float = 4.0
    namespace: str = "fleetsim"

    # Optional Redis device store
    redis_url: str = "redis://localhost:6379/0"

    # Clock
    time_scale: float = 1.0

    # Heartbeat and drift
    heartbeat_interval: float = 30.0
    heartbeat_battery_drain: float = 0.1
    signal_fluctuation: float = 10.0
    low_battery_threshold: float = 20.0
    poor_signal_threshold: float = 30.0

    # Network failures
    network_failure_window: float = 10.0
    packet_loss_rate: float = 0.3
    max_latency: float = 2.0
    disconnect_duration: float = 5.0

    # Button
    press_battery_drain: float = 0.5
    voice_processing_delay: float = 0.5
    unresponsive_window: float = 30.0

    # Smartwatch
    sos_battery_drain: float = 5.0
    auto_accept_delay: float = 3.0
    fall_sos_delay: float = 2.0
    movement_interval: float = 5.0

    # Repeater
    firmware_reboot_delay: float = 5.0
    stale_peer_age: float = 300.0

    @property
    def broker_url(self) -> str:
        return f"mqtt://{self.mqtt_broker}:{self.mqtt_port}"

    class Config:
        env_file = ".env"
        env_prefix = "FLEETSIM_"
