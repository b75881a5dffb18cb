import pytest
import structlog
from prometheus_client import REGISTRY

from fleet_sim import metrics
from fleet_sim.cli import build_parser, main, settings_from_args
from fleet_sim.config import FleetSettings
from fleet_sim.devices import SimulatedButton
from fleet_sim.logging_config import configure_logging, get_logger, scenario_context


def test_settings_defaults():
    settings = FleetSettings()
    assert settings.namespace == "fleetsim"
    assert settings.heartbeat_interval == 30
    assert settings.mqtt_qos == 1
    assert settings.broker_url == "mqtt://localhost:1883"


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("FLEETSIM_MQTT_BROKER", "broker.yacht")
    monkeypatch.setenv("FLEETSIM_MQTT_PORT", "1884")
    monkeypatch.setenv("FLEETSIM_TIME_SCALE", "0.5")
    settings = FleetSettings()
    assert settings.broker_url == "mqtt://broker.yacht:1884"
    assert settings.time_scale == 0.5


def test_logging_configuration():
    configure_logging("fleet-sim-test", "DEBUG", json_logs=False, namespace="fleetsim")
    get_logger("tests").info("configured", ok=True)


def test_scenario_context_is_scoped():
    with scenario_context("network_outage", "device_offline"):
        bound = structlog.contextvars.get_contextvars()
        assert bound["scenario_id"] == "network_outage"
        assert bound["failure_kind"] == "device_offline"
    assert "scenario_id" not in structlog.contextvars.get_contextvars()


@pytest.mark.asyncio
async def test_published_messages_are_counted(make_device):
    button = await make_device(SimulatedButton)
    labels = {"kind": "button", "channel": "press"}
    before = REGISTRY.get_sample_value("fleetsim_messages_published_total", labels) or 0
    button.press()
    after = REGISTRY.get_sample_value("fleetsim_messages_published_total", labels)

    assert after == before + 1
    assert "fleetsim_messages_published_total" in metrics.metrics_snapshot()


def test_cli_lists_scenarios(capsys):
    assert main(["--list-scenarios"]) == 0
    out = capsys.readouterr().out
    assert "network_outage" in out
    assert "memory_leak_critical" in out


def test_cli_overrides_settings():
    args = build_parser().parse_args(["--broker", "10.0.0.5", "--time-scale", "0.1", "--console-logs"])
    settings = settings_from_args(args)
    assert settings.mqtt_broker == "10.0.0.5"
    assert settings.time_scale == 0.1
    assert settings.log_json is False
    assert args.topology == "basic_setup"
