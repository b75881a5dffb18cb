import asyncio

import pytest

from fleet_sim.devices import SimulatedSmartwatch
from fleet_sim.devices.smartwatch import FALL_SOS_MESSAGE
from fleet_sim.exceptions import ConfigurationError
from fleet_sim.models import CrewStatus, Location

from conftest import wait_until


@pytest.fixture
def make_watch(make_device):
    async def _make(**kwargs):
        kwargs.setdefault("assigned_crew_id", 7)
        kwargs.setdefault("initial_location", {"lat": 43.7, "lng": 7.3})
        return await make_device(SimulatedSmartwatch, **kwargs)
    return _make


class TestServiceRequests:

    @pytest.mark.asyncio
    async def test_offline_crew_never_queues(self, make_watch):
        watch = await make_watch()
        watch.update_crew_status("offline")

        assert watch.receive_service_request(11, {"room": "VIP"}) is False
        await asyncio.sleep(0.02)
        assert watch.active_requests == []
        assert watch.recorder.events_of("request_accepted") == []
        assert watch.recorder.events_of("request_ignored")

    @pytest.mark.asyncio
    async def test_available_crew_auto_accepts(self, make_watch, broker):
        watch = await make_watch()
        assert watch.receive_service_request(11, {"room": "VIP"}) is True
        assert watch.active_requests == [11]
        assert broker.messages("notification", watch.device_id)[0]["request_id"] == 11
        assert watch.recorder.events_of("alert")[0].data["pattern"] == [100, 50, 100]

        assert await wait_until(lambda: watch.crew_status == CrewStatus.BUSY)
        assert len(watch.recorder.events_of("request_accepted")) == 1
        assert broker.messages("request/accept", watch.device_id)

    @pytest.mark.asyncio
    async def test_busy_crew_does_not_auto_accept(self, make_watch):
        watch = await make_watch()
        watch.update_crew_status(CrewStatus.BUSY)
        watch.receive_service_request(12)
        await asyncio.sleep(0.02)
        assert watch.recorder.events_of("request_accepted") == []

    @pytest.mark.asyncio
    async def test_declined_request_is_not_auto_accepted(self, make_watch):
        watch = await make_watch()
        watch.receive_service_request(13)
        assert watch.decline_request(13, "on break") is True
        await asyncio.sleep(0.02)
        assert watch.recorder.events_of("request_accepted") == []
        assert watch.crew_status == CrewStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_complete_returns_available_only_when_queue_empty(self, make_watch):
        watch = await make_watch()
        watch.update_crew_status("busy")
        watch.receive_service_request(1)
        watch.receive_service_request(2)
        watch.accept_request(1)

        assert watch.complete_request(1, "done") is True
        assert watch.crew_status == CrewStatus.BUSY
        assert watch.active_requests == [2]

        assert watch.complete_request(2) is True
        assert watch.crew_status == CrewStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_unknown_request_is_recorded_not_raised(self, make_watch):
        watch = await make_watch()
        assert watch.accept_request(99) is False
        assert watch.complete_request(99) is False
        assert len(watch.recorder.events_of("request_not_found")) == 2


class TestEmergencies:

    @pytest.mark.asyncio
    async def test_sos_carries_location_and_drains_battery(self, make_watch, broker):
        watch = await make_watch()
        watch.update_crew_status("break")

        watch.send_sos("help")

        sos = watch.recorder.events_of("sos")
        assert len(sos) == 1
        assert sos[0].data["location"] == {"lat": 43.7, "lng": 7.3}
        assert sos[0].data["message"] == "help"
        assert watch.battery == pytest.approx(95)
        assert watch.crew_status == CrewStatus.BREAK
        assert broker.messages("sos", watch.device_id)

    @pytest.mark.asyncio
    async def test_fall_triggers_sos(self, make_watch, broker):
        watch = await make_watch()
        watch.simulate_fall()

        assert broker.messages("fall", watch.device_id)[0]["severity"] == "high"
        assert await wait_until(lambda: broker.messages("sos", watch.device_id))
        assert broker.messages("sos", watch.device_id)[0]["message"] == FALL_SOS_MESSAGE

        order = [e.event_type for e in watch.get_events() if e.event_type in ("fall_detected", "sos")]
        assert order == ["fall_detected", "sos"]


class TestLocation:

    @pytest.mark.asyncio
    async def test_update_location_derives_speed_and_heading(self, make_watch, broker):
        watch = await make_watch()
        # ~100 m due north over the nominal 5 s fix interval
        payload = watch.update_location(Location(lat=43.700899, lng=7.3))

        assert payload["speed"] == pytest.approx(72, abs=0.5)
        assert payload["heading"] == pytest.approx(0, abs=0.01)
        assert payload["previous_location"] == {"lat": 43.7, "lng": 7.3}
        assert broker.messages("location", watch.device_id)
        assert watch.recorder.events_of("location_update")

    @pytest.mark.asyncio
    async def test_patrol_movement_runs_until_duration(self, make_watch):
        watch = await make_watch()
        task = watch.simulate_movement("patrol", duration=60)

        assert await wait_until(lambda: not task.active)
        updates = watch.recorder.events_of("location_update")
        assert len(updates) >= 2
        assert updates[0].data["lat"] > 43.7

        count = len(updates)
        await asyncio.sleep(0.02)
        assert len(watch.recorder.events_of("location_update")) == count

    @pytest.mark.asyncio
    async def test_stationary_movement_keeps_position(self, make_watch):
        watch = await make_watch()
        task = watch.simulate_movement("stationary", duration=20)
        assert await wait_until(lambda: not task.active)
        assert watch.current_location == Location(lat=43.7, lng=7.3)

    @pytest.mark.asyncio
    async def test_new_movement_replaces_previous(self, make_watch):
        watch = await make_watch()
        first = watch.simulate_movement("random", duration=10_000)
        second = watch.simulate_movement("stationary", duration=10_000)
        assert not first.active
        assert second.active
        assert watch.stop_movement() is True

    @pytest.mark.asyncio
    async def test_unknown_pattern(self, make_watch):
        watch = await make_watch()
        with pytest.raises(ConfigurationError):
            watch.simulate_movement("moonwalk", 10)


@pytest.mark.asyncio
async def test_assign_and_status(make_watch, broker):
    watch = await make_watch()
    watch.assign_to_crew(3)

    assert broker.messages("assign", watch.device_id)[0]["crew_id"] == 3
    status = watch.get_status()
    assert status["assigned_crew_id"] == 3
    assert status["crew_status"] == "available"
    assert status["current_location"] == {"lat": 43.7, "lng": 7.3}
    assert status["active_requests"] == []
    assert status["last_activity_time"]


@pytest.mark.asyncio
async def test_crew_status_change_is_published(make_watch, broker):
    watch = await make_watch()
    watch.update_crew_status("break")
    message = broker.messages("crew/status", watch.device_id)[0]
    assert message["status"] == "break"
    assert message["previous_status"] == "available"
    with pytest.raises(ConfigurationError):
        watch.update_crew_status("asleep")
