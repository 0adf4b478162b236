"""
Control Channel Consumer — turns "<code>,<argument>" messages into queued work.

Runs inside the worker process. Topology:

  ┌───────────┐  publish   ┌───────────────┐  LPUSH   ┌──────────────────────┐
  │ Front end │──────────▶ │ dota:command  │────────▶ │ dota_cmds_get_<kw>   │
  └───────────┘            └───────────────┘          └──────────┬───────────┘
        ▲                                                         │ rate limited
        │ wake                                                    ▼
  ┌─────┴──────┐  publish  ┌───────────────┐   SET EX  ┌──────────────────────┐
  │  Registry  │◀──────────│  dota:<kw>    │◀──────────│  Handler (worker)    │
  └────────────┘           └───────────────┘           └──────────────────────┘

The dispatch table is fixed at construction: one DrainLoop per CommandCode.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from job_queue.commands import DrainLoop
from job_queue.store import SharedStore
from models.errors import InvalidCommandError
from models.schemas import CommandCode, CommandEnvelope

logger = structlog.get_logger()


class ControlChannelConsumer:
    """
    Listens on the control channel and feeds the per-command drain loops.

    Usage:
        consumer = ControlChannelConsumer(store, {CommandCode.GET_PROFILE: loop})
        await consumer.start()
        await consumer.stop()
    """

    def __init__(
        self,
        store: SharedStore,
        dispatch: dict[CommandCode, DrainLoop],
        channel: str = "dota:command",
    ):
        self.store = store
        self.dispatch = dict(dispatch)
        self.channel = channel
        self._pending: set[asyncio.Task] = set()
        self.dropped = 0

    async def start(self):
        for loop in self.dispatch.values():
            await loop.start()
        await self.store.subscribe(self.channel, self._on_message)
        logger.info("control_consumer_started",
                    channel=self.channel,
                    commands=[code.name for code in self.dispatch])

    async def stop(self):
        await self.store.unsubscribe(self.channel)
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._pending.clear()
        for loop in self.dispatch.values():
            await loop.stop()
        logger.info("control_consumer_stopped", dropped=self.dropped)

    def _on_message(self, channel: str, payload: str):
        task = asyncio.create_task(self.handle(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def handle(self, payload: str) -> Optional[CommandCode]:
        """Decode one control message and push it to its queue. Returns the code handled."""
        try:
            envelope = CommandEnvelope.decode(payload)
        except InvalidCommandError as e:
            self.dropped += 1
            logger.warning("control_message_rejected", payload=payload, error=str(e))
            return None

        loop = self.dispatch.get(envelope.command)
        if loop is None:
            self.dropped += 1
            logger.warning("control_command_unrouted", command=envelope.command.name)
            return None

        try:
            await loop.submit(envelope.argument)
        except Exception as e:
            logger.error("control_enqueue_failed",
                         command=envelope.command.name,
                         argument=envelope.argument,
                         error=str(e))
            return None
        return envelope.command
