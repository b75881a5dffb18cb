import asyncio

import pytest

from fleet_sim.config import FleetSettings
from fleet_sim.devices import NetworkCondition, SimulatedButton, SimulatedSmartwatch
from fleet_sim.exceptions import BrokerConnectionError, ConfigurationError
from fleet_sim.models import DeviceKind

from conftest import make_config, wait_until


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_connect_publishes_status(self, make_device, broker):
        device = await make_device(SimulatedButton)

        assert device.is_online
        assert f"virtual-{device.device_id}" in broker.clients
        status = broker.messages("status", device.device_id)[-1]
        assert status["is_virtual"] is True
        assert status["battery"] == 100
        assert "timestamp" in status
        assert broker.topics()[-1] == f"fleetsim/device/{device.device_id}/status"

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, make_device, broker):
        device = await make_device(SimulatedButton)
        await device.connect()
        assert len(broker.clients) == 1
        assert len(device.recorder.events_of("connected")) == 1

    @pytest.mark.asyncio
    async def test_connect_failure_propagates(self, make_device, broker):
        broker.fail_connect = True
        with pytest.raises(BrokerConnectionError):
            await make_device(SimulatedButton)

    @pytest.mark.asyncio
    async def test_disconnect_cancels_every_task(self, make_device):
        device = await make_device(SimulatedButton)
        device.simulate_malfunction("unresponsive", 10_000)
        device.simulate_network_failure("packet_loss")
        assert device.scheduler.pending

        await device.disconnect()

        assert device.scheduler.pending == []
        assert not device.is_online
        count = len(device.get_events())
        await asyncio.sleep(0.02)
        assert len(device.get_events()) == count

    def test_config_kind_must_match_class(self, settings):
        with pytest.raises(ConfigurationError):
            SimulatedButton(make_config(DeviceKind.REPEATER), settings=settings)


class TestHeartbeat:

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_values_in_bounds(self, make_device, broker):
        fast = FleetSettings(time_scale=0.001, heartbeat_interval=5)
        device = await make_device(SimulatedSmartwatch, settings=fast)

        assert await wait_until(lambda: len(device.recorder.events_of("heartbeat")) >= 5)
        assert 0 <= device.battery <= 100
        assert 0 <= device.signal <= 100
        assert device.battery < 100
        assert broker.messages("heartbeat", device.device_id)

    @pytest.mark.asyncio
    async def test_offline_device_is_silent(self, make_device, broker):
        fast = FleetSettings(time_scale=0.001, heartbeat_interval=2)
        device = await make_device(SimulatedButton, settings=fast)
        assert await wait_until(lambda: device.recorder.events_of("heartbeat"))

        device.simulate_offline()
        broker.clear()
        battery = device.battery
        beats = len(device.recorder.events_of("heartbeat"))

        await asyncio.sleep(0.03)
        assert device.press() is None
        assert device.publish("status", {"x": 1}) is False
        assert broker.published == []
        assert device.battery == battery
        assert len(device.recorder.events_of("heartbeat")) == beats

        assert device.simulate_online() is True
        assert broker.messages("status", device.device_id)


class TestBatteryAndSignal:

    @pytest.mark.asyncio
    async def test_drain_clamps_at_zero(self, make_device):
        device = await make_device(SimulatedButton)
        assert device.drain_battery(1000) == 0
        with pytest.raises(ValueError):
            device.drain_battery(-1)

    @pytest.mark.asyncio
    async def test_low_battery_fires_only_on_crossing(self, make_device):
        config = make_config(DeviceKind.BUTTON, initial_battery=25)
        device = await make_device(SimulatedButton, config=config)

        device.drain_battery(10)
        device.drain_battery(1)

        events = device.recorder.events_of("low_battery")
        assert len(events) == 1
        assert events[0].data["battery"] == 15

    @pytest.mark.asyncio
    async def test_instant_drain_never_raises_battery(self, make_device):
        config = make_config(DeviceKind.BUTTON, initial_battery=10)
        device = await make_device(SimulatedButton, config=config)
        assert device.simulate_battery_drain(instant=True, target_level=50) == 10

    @pytest.mark.asyncio
    async def test_recharge(self, make_device):
        device = await make_device(SimulatedButton)
        device.drain_battery(40)
        assert device.recharge() == 100
        assert device.recorder.events_of("battery_recharged")

    @pytest.mark.asyncio
    async def test_poor_signal_event_and_clamp(self, make_device):
        device = await make_device(SimulatedButton)
        assert device.set_signal(-20) == 0
        assert len(device.recorder.events_of("poor_signal")) == 1
        assert device.set_signal(250) == 100


class TestNetworkFailures:

    @pytest.mark.asyncio
    async def test_packet_loss_drops_some_messages(self, make_device, broker):
        slow_restore = FleetSettings(time_scale=0.001, heartbeat_interval=3600, network_failure_window=10_000)
        device = await make_device(SimulatedButton, settings=slow_restore)
        device.simulate_network_failure("packet_loss")
        assert device.network_condition == NetworkCondition.PACKET_LOSS

        broker.clear()
        sent = [device.publish("status", {"n": i}) for i in range(200)]
        assert 0 < sent.count(False) < 200
        assert len(broker.published) == sent.count(True)

    @pytest.mark.asyncio
    async def test_network_condition_restores(self, make_device):
        device = await make_device(SimulatedButton)
        device.simulate_network_failure("high_latency")
        assert await wait_until(lambda: device.network_condition == NetworkCondition.NORMAL)
        assert device.recorder.events_of("network_restored")

    @pytest.mark.asyncio
    async def test_high_latency_delays_publish(self, make_device, broker):
        slow_restore = FleetSettings(time_scale=0.001, heartbeat_interval=3600, network_failure_window=10_000)
        device = await make_device(SimulatedButton, settings=slow_restore)
        device.simulate_network_failure("high_latency")
        broker.clear()

        assert device.publish("status", {"delayed": True}) is True
        assert await wait_until(lambda: broker.messages("status"))
        assert broker.messages("status")[0]["delayed"] is True

    @pytest.mark.asyncio
    async def test_disconnect_failure_goes_offline_then_back(self, make_device):
        device = await make_device(SimulatedButton)
        device.simulate_network_failure("disconnect")
        assert not device.is_online
        assert await wait_until(lambda: device.is_online)

    @pytest.mark.asyncio
    async def test_unknown_network_failure(self, make_device):
        device = await make_device(SimulatedButton)
        with pytest.raises(ConfigurationError):
            device.simulate_network_failure("solar_flare")


@pytest.mark.asyncio
async def test_online_requires_connection(settings, broker):
    device = SimulatedButton(make_config(DeviceKind.BUTTON), settings=settings, client_factory=broker.factory)
    assert device.simulate_online() is False
    assert device.recorder.events_of("online_failed")


@pytest.mark.asyncio
async def test_set_active_is_reported(make_device, broker):
    device = await make_device(SimulatedButton)
    device.set_active(False)
    assert broker.messages("status", device.device_id)[-1]["is_active"] is False


@pytest.mark.asyncio
async def test_timer_errors_are_recorded(make_device):
    device = await make_device(SimulatedButton)

    def boom():
        raise RuntimeError("bad tick")

    device.scheduler.call_later(1, boom, name="boom")
    assert await wait_until(lambda: device.recorder.events_of("timer_error"))
    assert device.recorder.events_of("timer_error")[0].data["error"] == "bad tick"
