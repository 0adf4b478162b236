"""
Bridge Client — the front end's side of the command bus.

request() is the slow path used whenever a result is not cached yet:

    1. GET <prefix>_<arg>                → hit: done
    2. register a waiter on dota:<kw>
    3. GET again                         → hit: drop the waiter, done
    4. PUBLISH "<code>,<arg>" on dota:command
    5. await the waiter, then GET the freshly written value
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from core import strings
from job_queue.heartbeat import read_backend_status
from job_queue.registry import SubscriptionRegistry
from job_queue.store import SharedStore
from models.errors import BackendUnavailableError, ResultUnavailableError
from models.schemas import ROUTES, BackendStatus, CommandCode, CommandEnvelope

logger = structlog.get_logger()


class BridgeClient:

    def __init__(
        self,
        store: SharedStore,
        registry: SubscriptionRegistry,
        *,
        control_channel: str = "dota:command",
        heartbeat_key: str = "dota_status",
        stale_after_ms: int = 15000,
        request_timeout: Optional[float] = 30.0,
    ):
        self.store = store
        self.registry = registry
        self.control_channel = control_channel
        self.heartbeat_key = heartbeat_key
        self.stale_after_ms = stale_after_ms
        self.request_timeout = request_timeout

    async def send_command(self, command: CommandCode, argument: str) -> int:
        """Publish a command on the control channel. Returns the receiver count."""
        payload = CommandEnvelope(command=command, argument=argument).encode()
        receivers = await self.store.publish(self.control_channel, payload)
        if receivers == 0:
            logger.warning("command_not_received", command=command.name, argument=argument)
        else:
            logger.info("command_sent", command=command.name, argument=argument)
        return receivers

    async def cached(self, command: CommandCode, argument: str) -> Optional[str]:
        return await self.store.get(ROUTES[command].cache_key(argument))

    async def request(
        self,
        command: CommandCode,
        argument: str,
        timeout: Optional[float] = None,
    ) -> str:
        """Return the cached result for (command, argument), asking the worker on a miss."""
        route = ROUTES[command]
        key = route.cache_key(argument)
        # Validate before touching the registry so bad input never leaves a waiter behind
        payload = CommandEnvelope(command=command, argument=argument).encode()

        value = await self.store.get(key)
        if value is not None:
            return value

        waiter = await self.registry.wait(route.channel, argument)
        value = await self.store.get(key)
        if value is not None:
            waiter.cancel()
            return value

        await self.store.publish(self.control_channel, payload)
        logger.info("command_requested", command=command.name, argument=argument)

        timeout = self.request_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning("command_request_timeout",
                           command=command.name,
                           argument=argument,
                           timeout=timeout)
            raise ResultUnavailableError(f"Timed out waiting for {key}") from e

        value = await self.store.get(key)
        if value is None:
            logger.debug("result_evicted_before_read", key=key)
            raise ResultUnavailableError(f"{key} was evicted before it could be read")
        return value

    async def get_status(self) -> BackendStatus:
        return await read_backend_status(
            self.store,
            key=self.heartbeat_key,
            stale_after_ms=self.stale_after_ms,
        )

    async def ensure_available(self) -> BackendStatus:
        """Raise BackendUnavailableError unless the worker's heartbeat is fresh."""
        status = await self.get_status()
        if not status.alive:
            raise BackendUnavailableError(strings.DOTA_UNAVAILABLE)
        return status
