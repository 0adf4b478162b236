"""Tests for per-command queues and their rate-limited drain loops."""
import asyncio

import pytest

from conftest import wait_until
from job_queue.commands import CommandQueue, DrainLoop, DrainResult
from models.schemas import ROUTES, CommandCode

PROFILE = ROUTES[CommandCode.GET_PROFILE]


class Recorder:
    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on

    async def __call__(self, argument):
        self.calls.append(argument)
        if argument == self.fail_on:
            raise RuntimeError(f"cannot handle {argument}")


@pytest.fixture
def queue(store):
    return CommandQueue(store, PROFILE)


class TestCommandQueue:

    @pytest.mark.asyncio
    async def test_enqueue_pushes_to_route_list(self, queue, store):
        assert await queue.enqueue("111") == 1
        assert await store.lrange("dota_cmds_get_profile") == ["111"]

    @pytest.mark.asyncio
    async def test_empty_queue(self, queue):
        handler = Recorder()
        result = await queue.drain_once(handler)
        assert result == DrainResult()
        assert not result.had_work
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_newest_argument_is_served_first(self, queue):
        handler = Recorder()
        await queue.enqueue("old")
        await queue.enqueue("new")

        result = await queue.drain_once(handler)
        assert result.argument == "new"
        assert result.rerun is True

        result = await queue.drain_once(handler)
        assert result.argument == "old"
        assert result.rerun is False
        assert handler.calls == ["new", "old"]

    @pytest.mark.asyncio
    async def test_duplicates_cost_one_call(self, queue, store):
        handler = Recorder()
        for _ in range(3):
            await queue.enqueue("111")

        result = await queue.drain_once(handler)
        assert handler.calls == ["111"]
        assert result.coalesced == 2
        assert await store.llen("dota_cmds_get_profile") == 0

    @pytest.mark.asyncio
    async def test_rerun_reflects_pre_pop_length(self, queue):
        # Only duplicates remain after the pop: a rerun is still requested
        # and finds nothing to do.
        handler = Recorder()
        await queue.enqueue("111")
        await queue.enqueue("111")

        first = await queue.drain_once(handler)
        assert first.rerun is True
        second = await queue.drain_once(handler)
        assert not second.had_work
        assert handler.calls == ["111"]

    @pytest.mark.asyncio
    async def test_interleaved_duplicates_are_removed(self, queue, store):
        handler = Recorder()
        for arg in ("111", "222", "111", "333", "111"):
            await queue.enqueue(arg)

        await queue.drain_once(handler)
        assert handler.calls == ["111"]
        assert await store.lrange("dota_cmds_get_profile") == ["333", "222"]

    @pytest.mark.asyncio
    async def test_handler_error_is_contained(self, queue, store):
        handler = Recorder(fail_on="bad")
        await queue.enqueue("good")
        await queue.enqueue("bad")

        result = await queue.drain_once(handler)
        assert result.argument == "bad"
        assert isinstance(result.error, RuntimeError)
        assert result.rerun is True
        # the failed item is not requeued
        assert await store.lrange("dota_cmds_get_profile") == ["good"]


class TestDrainLoop:

    @pytest.mark.asyncio
    async def test_submit_drains_everything(self, queue):
        handler = Recorder()
        loop = DrainLoop(queue, handler, interval=0.01)
        await loop.start()
        try:
            await loop.submit("a")
            await loop.submit("b")
            await wait_until(lambda: len(handler.calls) == 2)
            await wait_until(lambda: loop.limiter.state.value == "idle")
            assert sorted(handler.calls) == ["a", "b"]
            assert await queue.length() == 0
        finally:
            await loop.stop()

    @pytest.mark.asyncio
    async def test_start_picks_up_backlog(self, queue):
        await queue.enqueue("left-over")
        handler = Recorder()
        loop = DrainLoop(queue, handler, interval=0.01)
        await loop.start()
        try:
            await wait_until(lambda: handler.calls == ["left-over"])
        finally:
            await loop.stop()

    @pytest.mark.asyncio
    async def test_backlog_can_wait_for_an_explicit_trigger(self, queue):
        await queue.enqueue("left-over")
        handler = Recorder()
        loop = DrainLoop(queue, handler, interval=0.01, drain_backlog_on_start=False)
        await loop.start()
        try:
            await asyncio.sleep(0.05)
            assert handler.calls == []
            assert await queue.length() == 1

            loop.trigger()
            await wait_until(lambda: handler.calls == ["left-over"])
        finally:
            await loop.stop()

    @pytest.mark.asyncio
    async def test_failing_item_does_not_block_the_rest(self, queue):
        handler = Recorder(fail_on="bad")
        loop = DrainLoop(queue, handler, interval=0.01)
        await loop.start()
        try:
            await queue.enqueue("good")
            await queue.enqueue("bad")
            loop.trigger()
            await wait_until(lambda: handler.calls == ["bad", "good"])
        finally:
            await loop.stop()

    @pytest.mark.asyncio
    async def test_drain_step_returns_rerun(self, queue):
        loop = DrainLoop(queue, Recorder(), interval=5.0)
        await queue.enqueue("a")
        await queue.enqueue("b")
        assert await loop.drain_step() is True
        assert loop.last_result.argument == "b"
        assert await loop.drain_step() is False
