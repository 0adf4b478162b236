"""
Command Queue — one redis list per command type, drained under rate limiting.

Producers LPUSH an argument; the single drain loop for that command pops the
newest argument, removes any other pending copies of it (so N identical
requests cost one coordinator call), and runs the handler. The pre-pop
length decides whether the drain loop goes round again.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from job_queue.rate_limiter import RateLimiter
from job_queue.store import SharedStore
from models.schemas import CommandRoute

logger = structlog.get_logger()

CommandHandler = Callable[[str], Awaitable[None]]


@dataclass
class DrainResult:
    """Outcome of one drain step."""
    argument: Optional[str] = None
    rerun: bool = False
    coalesced: int = 0                      # duplicate copies removed
    error: Optional[BaseException] = None

    @property
    def had_work(self) -> bool:
        return self.argument is not None


class CommandQueue:
    """Request list for a single command route."""

    def __init__(self, store: SharedStore, route: CommandRoute):
        self.store = store
        self.route = route

    @property
    def name(self) -> str:
        return self.route.queue

    async def enqueue(self, argument: str) -> int:
        length = await self.store.lpush(self.route.queue, argument)
        logger.info("command_enqueued",
                    queue=self.route.queue,
                    argument=argument,
                    length=length)
        return length

    async def length(self) -> int:
        return await self.store.llen(self.route.queue)

    async def drain_once(self, handler: CommandHandler) -> DrainResult:
        """
        Pop the newest argument, coalesce its duplicates and run handler once.

        Handler exceptions stop here: they are logged and returned on the
        result, and the rerun decision is unaffected.
        """
        length, argument = await self.store.pop_head(self.route.queue)
        if argument is None:
            logger.debug("command_queue_empty", queue=self.route.queue)
            return DrainResult()

        coalesced = await self.store.lrem(self.route.queue, argument)
        result = DrainResult(argument=argument, rerun=length > 1, coalesced=coalesced)
        if coalesced:
            logger.info("duplicate_commands_coalesced",
                        queue=self.route.queue,
                        argument=argument,
                        removed=coalesced)

        try:
            await handler(argument)
            logger.info("command_handled", queue=self.route.queue, argument=argument)
        except Exception as e:
            result.error = e
            logger.error("command_handler_error",
                         queue=self.route.queue,
                         argument=argument,
                         error_type=type(e).__name__,
                         error=str(e))
        return result


class DrainLoop:
    """
    Binds a CommandQueue, its handler and a RateLimiter.

    trigger() is called whenever something is pushed; the limiter keeps
    calling drain_step() while it reports more work.
    """

    def __init__(
        self,
        queue: CommandQueue,
        handler: CommandHandler,
        interval: float,
        *,
        limiter_factory: Callable[..., RateLimiter] = RateLimiter,
        drain_backlog_on_start: bool = True,
    ):
        self.queue = queue
        self.handler = handler
        self.drain_backlog_on_start = drain_backlog_on_start
        self.limiter = limiter_factory(self.drain_step, interval, name=queue.name)
        self.last_result: Optional[DrainResult] = None

    async def drain_step(self) -> bool:
        self.last_result = await self.queue.drain_once(self.handler)
        return self.last_result.rerun

    async def submit(self, argument: str):
        """Push an argument and wake the drain loop."""
        await self.queue.enqueue(argument)
        self.trigger()

    def trigger(self):
        self.limiter.trigger()

    async def start(self):
        await self.limiter.start()
        # Pick up anything left over from a previous worker run
        if await self.queue.length() > 0:
            logger.info("command_queue_backlog", queue=self.queue.name)
            if self.drain_backlog_on_start:
                self.trigger()

    async def stop(self):
        await self.limiter.stop()
