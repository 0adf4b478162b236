"""
Coordinator Link — connection state of the worker's game coordinator session.

Steam:  DISCONNECTED → CONNECTED → AUTHENTICATED
Dota:   DISCONNECTED → SEARCHING → READY

States only move forward within a connection episode. on_error() and
reset() start a new episode with both states DISCONNECTED; the one backward
step allowed inside an episode is READY → SEARCHING on a hello timeout. Every change is
written to the heartbeat record with a fresh timestamp.
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from job_queue.heartbeat import HeartbeatWriter
from job_queue.store import SharedStore
from models.errors import BackendUnavailableError
from models.schemas import ConnectionState, ServiceState

logger = structlog.get_logger()

STATS_KEY = "stats"


class CoordinatorLink:

    def __init__(self, heartbeat: HeartbeatWriter, store: Optional[SharedStore] = None):
        self.heartbeat = heartbeat
        self.store = store or heartbeat.store
        self.connection = ConnectionState.DISCONNECTED
        self.service = ServiceState.DISCONNECTED
        self.episode = 0
        self._ready_listeners: list[Callable[[], None]] = []

    def add_ready_listener(self, listener: Callable[[], None]):
        """Call `listener` every time the service becomes READY."""
        self._ready_listeners.append(listener)

    @property
    def is_ready(self) -> bool:
        return self.service == ServiceState.READY

    def require_ready(self):
        if not self.is_ready:
            raise BackendUnavailableError(
                f"Coordinator link not ready (steam={self.connection.name}, "
                f"dota={self.service.name})"
            )

    async def reset(self):
        self.connection = ConnectionState.DISCONNECTED
        self.service = ServiceState.DISCONNECTED
        self.episode += 1
        await self.heartbeat.write_states(self.connection, self.service)
        logger.info("coordinator_link_reset", episode=self.episode)

    async def _advance(
        self,
        connection: Optional[ConnectionState] = None,
        service: Optional[ServiceState] = None,
    ):
        if connection is not None and connection < self.connection:
            logger.warning("connection_state_regression_ignored",
                           current=self.connection.name,
                           requested=connection.name)
            connection = None
        if service is not None and service < self.service:
            logger.warning("service_state_regression_ignored",
                           current=self.service.name,
                           requested=service.name)
            service = None
        if connection is None and service is None:
            return

        became_ready = service == ServiceState.READY and self.service != ServiceState.READY
        if connection is not None:
            self.connection = connection
        if service is not None:
            self.service = service
        await self.heartbeat.write_states(connection, service)
        logger.info("coordinator_link_state",
                    steam=self.connection.name,
                    dota=self.service.name,
                    episode=self.episode)
        if became_ready:
            for listener in self._ready_listeners:
                listener()

    # ── Events reported by the coordinator client ─────────

    async def on_connected(self):
        await self._advance(connection=ConnectionState.CONNECTED)

    async def on_logged_on(self):
        await self._advance(connection=ConnectionState.AUTHENTICATED)

    async def on_logon_failed(self):
        logger.warning("steam_logon_failed")
        await self.reset()

    async def on_searching(self):
        await self._advance(service=ServiceState.SEARCHING)

    async def on_ready(self):
        await self._advance(service=ServiceState.READY)

    async def on_hello_timeout(self):
        """The game coordinator stopped answering; requests wait until it is found again."""
        if self.service == ServiceState.SEARCHING:
            return
        self.service = ServiceState.SEARCHING
        await self.heartbeat.write_states(service=self.service)
        logger.warning("coordinator_hello_timeout", episode=self.episode)

    async def on_error(self, error: Optional[BaseException] = None):
        logger.warning("coordinator_link_error", error=str(error) if error else "")
        await self.reset()

    async def count_request(self, kind: str):
        """Bump the upstream request counter for `kind` (e.g. "profile")."""
        try:
            await self.store.hincrby(STATS_KEY, f"dota_request_{kind}", 1)
        except Exception as e:
            logger.warning("stats_increment_failed", kind=kind, error=str(e))
