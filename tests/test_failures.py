import asyncio

import pytest

from fleet_sim.devices import ButtonMode, SimulatedButton, SimulatedRepeater, SimulatedSmartwatch
from fleet_sim.exceptions import ConfigurationError, UnknownFailureKindError
from fleet_sim.failures import FailureKind, FailureScenario, FailureSimulator
from fleet_sim.scenarios import get_predefined_scenario

from conftest import make_config, wait_until


@pytest.fixture
def simulator():
    return FailureSimulator()


@pytest.fixture
def register(make_device, simulator):
    async def _register(cls, **kwargs):
        device = await make_device(cls, **kwargs)
        simulator.register_device(device)
        return device
    return _register


def scenario(kind, **fields):
    fields.setdefault("id", f"test_{kind}")
    fields.setdefault("name", kind)
    return FailureScenario(failure_kind=kind, **fields)


class TestScenarioModel:

    def test_unknown_kind_from_dict(self):
        with pytest.raises(UnknownFailureKindError):
            FailureScenario.from_data({"id": "x", "name": "x", "failure_kind": "gremlins"})

    def test_invalid_fields_are_configuration_errors(self):
        with pytest.raises(ConfigurationError):
            FailureScenario.from_data({"id": "x", "name": "x", "failure_kind": "memory_leak", "duration": -1})

    def test_dict_is_accepted(self):
        parsed = FailureScenario.from_data({"id": "x", "name": "x", "failure_kind": "device_offline"})
        assert parsed.failure_kind == FailureKind.DEVICE_OFFLINE
        assert parsed.targets_all()


class TestBattery:

    @pytest.mark.asyncio
    async def test_instant_drain(self, register, simulator):
        device = await register(SimulatedButton)
        handles = simulator.execute_scenario(scenario("battery_drain", parameters={"instant": True, "target_level": 15}))
        assert handles == []
        assert device.battery == 15
        assert device.recorder.events_of("low_battery")

    @pytest.mark.asyncio
    async def test_periodic_drain_stops_at_target(self, register, simulator):
        device = await register(SimulatedButton)
        simulator.execute_scenario(scenario("battery_drain", parameters={"target_level": 90, "drain_rate": 4}))

        assert simulator.active_failure_count == 1
        assert await wait_until(lambda: simulator.active_failure_count == 0)
        assert device.battery == 90


class TestSignalLoss:

    @pytest.mark.asyncio
    async def test_signal_drops_to_floor(self, register, simulator):
        device = await register(SimulatedSmartwatch)
        simulator.execute_scenario(scenario("signal_loss", severity="high"))
        assert await wait_until(lambda: device.signal == 5)

    @pytest.mark.asyncio
    async def test_signal_restored_after_duration(self, register, simulator):
        device = await register(SimulatedSmartwatch, config=make_config(SimulatedSmartwatch.kind, initial_signal=80))
        simulator.execute_scenario(scenario("signal_loss", severity="medium", duration=30))

        assert await wait_until(lambda: device.recorder.events_of("signal_restored"))
        assert device.signal == 80
        assert simulator.active_failure_count == 0

    @pytest.mark.asyncio
    async def test_retrigger_keeps_first_baseline(self, register, simulator):
        device = await register(SimulatedSmartwatch)
        simulator.execute_scenario(scenario("signal_loss", severity="low", duration=10_000))
        assert await wait_until(lambda: device.signal < 100)

        simulator.execute_scenario(scenario("signal_loss", severity="high", duration=30))
        assert await wait_until(lambda: device.recorder.events_of("signal_restored"))
        assert device.signal == 100

    @pytest.mark.asyncio
    async def test_repeater_signal_loss_moves_dbm(self, register, simulator):
        repeater = await register(SimulatedRepeater)
        simulator.execute_scenario(scenario("signal_loss", severity="low"))
        assert await wait_until(lambda: repeater.signal < 31)
        assert repeater.signal_strength < -50
        assert repeater.recorder.events_of("signal_update")


class TestIdentity:

    @pytest.mark.asyncio
    async def test_retrigger_leaves_single_handle(self, register, simulator):
        device = await register(SimulatedButton)
        first = simulator.execute_scenario(scenario("memory_leak", parameters={"leak_rate": 0.001}))
        second = simulator.execute_scenario(scenario("memory_leak", parameters={"leak_rate": 0.001}))

        active = [h for h in simulator.get_active_failures() if h.key == (device.device_id, FailureKind.MEMORY_LEAK)]
        assert active == second
        assert not first[0].active

    @pytest.mark.asyncio
    async def test_stop_is_idempotent_and_undoes(self, register, simulator):
        device = await register(SimulatedButton)
        handle, = simulator.execute_scenario(scenario("device_offline"))
        assert not device.is_online

        assert handle.stop() is True
        assert handle.stop() is False
        assert device.is_online

    @pytest.mark.asyncio
    async def test_stop_device_failures(self, register, simulator):
        button = await register(SimulatedButton)
        watch = await register(SimulatedSmartwatch)
        simulator.execute_scenario(scenario("memory_leak", parameters={"leak_rate": 0.001}))

        assert simulator.stop_device_failures(button.device_id) == 1
        assert [h.device_id for h in simulator.get_active_failures()] == [watch.device_id]
        assert simulator.stop_all_failures() == 1
        assert simulator.get_active_failures() == []

    @pytest.mark.asyncio
    async def test_unregister_cancels_and_silences_device(self, register, simulator):
        device = await register(SimulatedButton)
        simulator.execute_scenario(scenario("memory_leak", parameters={"leak_rate": 0.001}))
        simulator.execute_scenario(scenario("intermittent_connection", duration=10_000))
        assert simulator.active_failure_count == 2

        assert simulator.unregister_device(device.device_id) == 2
        await device.disconnect()
        count = len(device.get_events())
        await asyncio.sleep(0.03)

        assert len(device.get_events()) == count
        assert device.scheduler.pending == []
        assert simulator.devices == []


class TestConnectivity:

    @pytest.mark.asyncio
    async def test_network_outage_recovers_every_device(self, register, simulator):
        first = await register(SimulatedButton)
        second = await register(SimulatedSmartwatch)

        handles = simulator.execute_scenario(get_predefined_scenario("network_outage"))

        assert len(handles) == 2
        assert not first.is_online and not second.is_online
        assert await wait_until(lambda: first.is_online and second.is_online)
        assert simulator.active_failure_count == 0

    @pytest.mark.asyncio
    async def test_intermittent_connection_flaps(self, register, simulator):
        device = await register(SimulatedButton)
        simulator.execute_scenario(scenario(
            "intermittent_connection", duration=40, parameters={"interval": 5, "offline_duration": 2}
        ))

        assert await wait_until(lambda: len(device.recorder.events_of("device_offline")) >= 2)
        assert await wait_until(lambda: simulator.active_failure_count == 0)
        assert await wait_until(lambda: device.is_online)

    @pytest.mark.asyncio
    async def test_firmware_crash_then_recovery(self, register, simulator):
        device = await register(SimulatedRepeater)
        simulator.execute_scenario(scenario("firmware_crash", parameters={"reboot_time": 10}))

        assert not device.is_online
        assert device.recorder.events_of("firmware_crash")[0].data["severity"] == "high"
        assert await wait_until(lambda: device.recorder.events_of("firmware_recovered"))
        assert device.is_online

        types = [e.event_type for e in device.get_events()]
        assert types.index("device_offline") < types.index("firmware_crash") < types.index("firmware_recovered")


@pytest.mark.asyncio
async def test_memory_leak_ends_in_single_oom_crash(register, simulator):
    device = await register(SimulatedSmartwatch)
    simulator.execute_scenario(scenario("memory_leak", parameters={"leak_rate": 20, "reboot_time": 5}))

    assert await wait_until(lambda: device.recorder.events_of("firmware_recovered"))
    await asyncio.sleep(0.02)

    usage = [e.data["usage"] for e in device.recorder.events_of("memory_usage")]
    assert usage == [70, 90, 100]
    crashes = device.recorder.events_of("firmware_crash")
    assert len(crashes) == 1
    assert crashes[0].data["crash_reason"] == "out_of_memory"
    assert len(device.recorder.events_of("firmware_recovered")) == 1
    assert device.is_online


@pytest.mark.asyncio
async def test_button_malfunction_only_targets_buttons(register, simulator):
    button = await register(SimulatedButton)
    await register(SimulatedSmartwatch)

    handles = simulator.execute_scenario(scenario("button_malfunction", parameters={"type": "unresponsive"}, duration=10_000))

    assert [h.device_id for h in handles] == [button.device_id]
    assert button.mode == ButtonMode.UNRESPONSIVE
    simulator.stop_all_failures()
    assert button.mode == ButtonMode.NORMAL


@pytest.mark.asyncio
async def test_congestion_only_targets_repeaters(register, simulator):
    await register(SimulatedButton)
    repeater = await register(SimulatedRepeater)

    handles = simulator.execute_scenario(scenario("network_congestion", duration=5, parameters={"message_count": 10}))

    assert [h.device_id for h in handles] == [repeater.device_id]
    assert await wait_until(lambda: simulator.active_failure_count == 0)
    assert await wait_until(lambda: repeater.messages_relayed >= 1)


@pytest.mark.asyncio
async def test_unknown_targets_are_skipped(register, simulator):
    device = await register(SimulatedButton)
    handles = simulator.execute_scenario(scenario("device_offline", target_devices=[device.device_id, "missing"]))
    assert [h.device_id for h in handles] == [device.device_id]


@pytest.mark.asyncio
async def test_rejected_retrigger_keeps_running_malfunction(register, simulator):
    button = await register(SimulatedButton)
    simulator.execute_scenario(scenario("button_malfunction", parameters={"type": "unresponsive"}, duration=10))

    with pytest.raises(ConfigurationError):
        simulator.execute_scenario(scenario("button_malfunction", parameters={"type": "sticky"}))

    assert [h.kind for h in simulator.get_active_failures()] == [FailureKind.BUTTON_MALFUNCTION]
    assert button.mode == ButtonMode.UNRESPONSIVE
    assert await wait_until(lambda: button.mode == ButtonMode.NORMAL)
    assert await wait_until(lambda: simulator.active_failure_count == 0)


@pytest.mark.asyncio
async def test_open_ended_offline_ends_when_device_returns(register, simulator):
    device = await register(SimulatedButton)
    handles = simulator.execute_scenario(scenario("device_offline"))

    assert simulator.active_failure_count == 1
    device.simulate_online()

    assert device.is_online
    assert not handles[0].active
    assert simulator.get_active_failures() == []


@pytest.mark.asyncio
async def test_open_ended_offline_ends_after_crash_recovery(register, simulator):
    device = await register(SimulatedRepeater)
    simulator.execute_scenario(scenario("device_offline"))
    simulator.execute_scenario(scenario("firmware_crash", parameters={"reboot_time": 5}))

    assert await wait_until(lambda: device.recorder.events_of("firmware_recovered"))
    assert await wait_until(lambda: simulator.active_failure_count == 0)
