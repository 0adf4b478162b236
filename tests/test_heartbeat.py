"""Tests for the heartbeat record and the coordinator link state."""
import pytest

from backend.session import CoordinatorLink
from conftest import settle
from job_queue.heartbeat import (
    HeartbeatWriter, decode_status, is_alive, read_backend_status,
)
from models.errors import BackendUnavailableError
from models.schemas import ConnectionState, ServiceState

NOW = 1_700_000_000_000


class TestLiveness:

    @pytest.mark.parametrize("age,alive", [
        (0, True), (1000, True), (14999, True), (15000, False), (20000, False), (None, False),
    ])
    def test_threshold(self, age, alive):
        assert is_alive(age) is alive

    def test_fresh_heartbeat_reports_sub_statuses(self):
        status = decode_status(str(NOW - 1000), "2", "2", now=NOW)
        assert status.alive
        assert status.age_ms == 1000
        assert status.connection == ConnectionState.AUTHENTICATED
        assert status.connection_text == "Connected and signed in."
        assert status.service_text == "Connected to Game Coordinator"
        assert status.component_text == "Working"

    def test_stale_heartbeat_hides_sub_statuses(self):
        status = decode_status(str(NOW - 20000), "2", "2", now=NOW)
        assert not status.alive
        assert status.component_text == "Not Responding"
        assert status.connection_text == "Unavailable"
        assert status.service_text == "Unavailable"
        assert status.connection is None

    def test_missing_record_is_dead(self):
        status = decode_status(None, None, None, now=NOW)
        assert not status.alive
        assert status.age_ms is None

    def test_unknown_state_values(self):
        status = decode_status(str(NOW), "7", "garbage", now=NOW)
        assert status.alive
        assert status.connection_text == "Unknown/Invalid"
        assert status.service_text == "Unknown/Invalid"

    @pytest.mark.asyncio
    async def test_read_from_store(self, store):
        await store.hset("dota_status", {"hb": NOW - 500, "steam": 1, "dota": 1})
        status = await read_backend_status(store, now=NOW)
        assert status.alive
        assert status.connection_text == "Connected, logging in."
        assert status.service_text == "Searching for Game Coordinator"


class TestHeartbeatWriter:

    @pytest.mark.asyncio
    async def test_beat_stamps_time(self, store):
        writer = HeartbeatWriter(store, clock_ms=lambda: NOW)
        await writer.beat()
        assert await store.hmget("dota_status", ["hb"]) == [str(NOW)]

    @pytest.mark.asyncio
    async def test_write_states_refreshes_heartbeat(self, store):
        writer = HeartbeatWriter(store, clock_ms=lambda: NOW)
        await writer.write_states(service=ServiceState.SEARCHING)
        assert await store.hmget("dota_status", ["hb", "steam", "dota"]) == [str(NOW), None, "1"]

    @pytest.mark.asyncio
    async def test_periodic_task(self, store):
        writer = HeartbeatWriter(store, interval_seconds=60, clock_ms=lambda: NOW)
        await writer.start()
        await settle()
        await writer.stop()
        assert await store.hmget("dota_status", ["hb"]) == [str(NOW)]


class TestCoordinatorLink:

    @pytest.mark.asyncio
    async def test_starts_disconnected(self, link):
        assert link.connection == ConnectionState.DISCONNECTED
        assert link.service == ServiceState.DISCONNECTED
        assert not link.is_ready

    @pytest.mark.asyncio
    async def test_full_progression(self, ready_link, store):
        assert ready_link.is_ready
        assert await store.hmget("dota_status", ["steam", "dota"]) == ["2", "2"]
        status = await read_backend_status(store)
        assert status.alive
        assert "Connected and signed in." in status.describe()

    @pytest.mark.asyncio
    async def test_regression_is_ignored(self, ready_link, store):
        await ready_link.on_searching()
        assert ready_link.service == ServiceState.READY
        assert await store.hmget("dota_status", ["dota"]) == ["2"]

    @pytest.mark.asyncio
    async def test_hello_timeout_returns_to_searching(self, ready_link, store):
        await ready_link.on_hello_timeout()
        assert ready_link.service == ServiceState.SEARCHING
        assert ready_link.connection == ConnectionState.AUTHENTICATED
        assert not ready_link.is_ready
        assert await store.hmget("dota_status", ["dota"]) == ["1"]

        await ready_link.on_ready()
        assert ready_link.is_ready

    @pytest.mark.asyncio
    async def test_ready_listeners_fire_on_each_ready_transition(self, link):
        calls = []
        link.add_ready_listener(lambda: calls.append(link.service))

        await link.on_connected()
        await link.on_logged_on()
        await link.on_searching()
        assert calls == []

        await link.on_ready()
        await link.on_ready()
        assert calls == [ServiceState.READY]

        await link.on_hello_timeout()
        await link.on_ready()
        assert calls == [ServiceState.READY, ServiceState.READY]

    @pytest.mark.asyncio
    async def test_error_resets_both_states(self, ready_link, store):
        episode = ready_link.episode
        await ready_link.on_error(RuntimeError("socket closed"))
        assert ready_link.connection == ConnectionState.DISCONNECTED
        assert ready_link.service == ServiceState.DISCONNECTED
        assert ready_link.episode == episode + 1
        assert await store.hmget("dota_status", ["steam", "dota"]) == ["0", "0"]

    @pytest.mark.asyncio
    async def test_logon_failure_resets(self, link):
        await link.on_connected()
        await link.on_logon_failed()
        assert link.connection == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_can_progress_again_after_reset(self, ready_link):
        await ready_link.reset()
        await ready_link.on_connected()
        assert ready_link.connection == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_require_ready(self, link):
        with pytest.raises(BackendUnavailableError):
            link.require_ready()
        await link.on_searching()
        with pytest.raises(BackendUnavailableError):
            link.require_ready()
        await link.on_ready()
        link.require_ready()

    @pytest.mark.asyncio
    async def test_count_request(self, link, store):
        await link.count_request("profile")
        await link.count_request("profile")
        assert await store.hmget("stats", ["dota_request_profile"]) == ["2"]

    @pytest.mark.asyncio
    async def test_separate_stats_store(self, heartbeat):
        from job_queue.store import InMemorySharedStore
        other = InMemorySharedStore()
        link = CoordinatorLink(heartbeat, other)
        await link.count_request("lastmatch")
        assert await other.hmget("stats", ["dota_request_lastmatch"]) == ["1"]
