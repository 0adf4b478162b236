"""Tests for the control channel consumer."""
import pytest

from conftest import wait_until
from job_queue.commands import CommandQueue, DrainLoop
from job_queue.consumer import ControlChannelConsumer
from models.schemas import ROUTES, CommandCode


class StubLoop:
    """DrainLoop stand-in that records submitted arguments."""

    def __init__(self):
        self.submitted = []
        self.started = False

    async def submit(self, argument):
        self.submitted.append(argument)

    async def start(self):
        self.started = True

    async def stop(self):
        self.started = False


@pytest.fixture
def loops():
    return {code: StubLoop() for code in CommandCode}


@pytest.fixture
def consumer(store, loops):
    return ControlChannelConsumer(store, loops)


class TestHandle:

    @pytest.mark.asyncio
    async def test_routes_profile_command(self, consumer, loops):
        assert await consumer.handle("0,111") == CommandCode.GET_PROFILE
        assert loops[CommandCode.GET_PROFILE].submitted == ["111"]
        assert loops[CommandCode.GET_LAST_MATCH].submitted == []

    @pytest.mark.asyncio
    async def test_routes_last_match_command(self, consumer, loops):
        assert await consumer.handle("1,222") == CommandCode.GET_LAST_MATCH
        assert loops[CommandCode.GET_LAST_MATCH].submitted == ["222"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", ["9,1", "nonsense", "x,1", "0,"])
    async def test_invalid_payloads_are_dropped(self, consumer, loops, payload):
        assert await consumer.handle(payload) is None
        assert consumer.dropped == 1
        assert all(not loop.submitted for loop in loops.values())

    @pytest.mark.asyncio
    async def test_unrouted_command_is_dropped(self, store):
        consumer = ControlChannelConsumer(store, {CommandCode.GET_PROFILE: StubLoop()})
        assert await consumer.handle("1,222") is None
        assert consumer.dropped == 1


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, consumer, loops, store):
        await consumer.start()
        assert all(loop.started for loop in loops.values())
        assert "dota:command" in store._handlers

        await consumer.stop()
        assert all(not loop.started for loop in loops.values())
        assert "dota:command" not in store._handlers

    @pytest.mark.asyncio
    async def test_published_command_reaches_queue(self, store):
        handled = []

        async def handler(argument):
            handled.append(argument)

        loop = DrainLoop(CommandQueue(store, ROUTES[CommandCode.GET_PROFILE]), handler, interval=0.01)
        consumer = ControlChannelConsumer(store, {CommandCode.GET_PROFILE: loop})
        await consumer.start()
        try:
            assert await store.publish("dota:command", "0,111") == 1
            await wait_until(lambda: handled == ["111"])
        finally:
            await consumer.stop()
