"""
Heartbeat — worker liveness and link status in one redis hash.

    dota_status = {hb: <epoch ms>, steam: <ConnectionState>, dota: <ServiceState>}

The worker refreshes `hb` on a fixed period and on every state transition.
Readers treat a heartbeat older than `stale_after_ms` as a dead worker, and a
dead worker's sub-statuses are never trusted.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Callable, Optional

from job_queue.store import SharedStore
from models.schemas import BackendStatus, ConnectionState, ServiceState

logger = structlog.get_logger()

HB_FIELD = "hb"
CONNECTION_FIELD = "steam"
SERVICE_FIELD = "dota"

DEFAULT_KEY = "dota_status"
DEFAULT_INTERVAL_S = 10.0
DEFAULT_STALE_AFTER_MS = 15000

UNAVAILABLE = "Unavailable"
UNKNOWN = "Unknown/Invalid"

CONNECTION_TEXT = {
    ConnectionState.DISCONNECTED: "Not connected.",
    ConnectionState.CONNECTED: "Connected, logging in.",
    ConnectionState.AUTHENTICATED: "Connected and signed in.",
}

SERVICE_TEXT = {
    ServiceState.DISCONNECTED: "Not connected.",
    ServiceState.SEARCHING: "Searching for Game Coordinator",
    ServiceState.READY: "Connected to Game Coordinator",
}


def now_ms() -> int:
    return int(time.time() * 1000)


def is_alive(age_ms: Optional[int], stale_after_ms: int = DEFAULT_STALE_AFTER_MS) -> bool:
    return age_ms is not None and age_ms < stale_after_ms


def component_text(alive: bool) -> str:
    return "Working" if alive else "Not Responding"


def connection_text(state: Optional[ConnectionState]) -> str:
    return CONNECTION_TEXT.get(state, UNKNOWN)


def service_text(state: Optional[ServiceState]) -> str:
    return SERVICE_TEXT.get(state, UNKNOWN)


def _parse_int(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _parse_enum(enum_cls, raw: Optional[str]):
    value = _parse_int(raw)
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        return None


# ──────────────────────────────────────────────────────────────
#  Writer (worker side)
# ──────────────────────────────────────────────────────────────

class HeartbeatWriter:
    """Periodically stamps `hb` and records link state transitions."""

    def __init__(
        self,
        store: SharedStore,
        key: str = DEFAULT_KEY,
        interval_seconds: float = DEFAULT_INTERVAL_S,
        clock_ms: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.key = key
        self.interval = interval_seconds
        self._clock_ms = clock_ms
        self._task: Optional[asyncio.Task] = None

    async def beat(self):
        await self.store.hset(self.key, {HB_FIELD: self._clock_ms()})

    async def write_states(
        self,
        connection: Optional[ConnectionState] = None,
        service: Optional[ServiceState] = None,
    ):
        """Record one or both sub-statuses together with a fresh heartbeat."""
        fields: dict[str, int] = {HB_FIELD: self._clock_ms()}
        if connection is not None:
            fields[CONNECTION_FIELD] = int(connection)
        if service is not None:
            fields[SERVICE_FIELD] = int(service)
        await self.store.hset(self.key, fields)

    async def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run(), name="heartbeat")
        logger.info("heartbeat_started", key=self.key, interval=self.interval)
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("heartbeat_stopped", key=self.key)

    async def _run(self):
        while True:
            try:
                await self.beat()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("heartbeat_write_failed", key=self.key, error=str(e))
            await asyncio.sleep(self.interval)


# ──────────────────────────────────────────────────────────────
#  Reader (front-end side)
# ──────────────────────────────────────────────────────────────

def decode_status(
    raw_hb: Optional[str],
    raw_connection: Optional[str],
    raw_service: Optional[str],
    now: int,
    stale_after_ms: int = DEFAULT_STALE_AFTER_MS,
) -> BackendStatus:
    hb = _parse_int(raw_hb)
    age = None if hb is None else now - hb
    alive = is_alive(age, stale_after_ms)

    if not alive:
        return BackendStatus(age_ms=age, alive=False, checked_at_ms=now)

    connection = _parse_enum(ConnectionState, raw_connection)
    service = _parse_enum(ServiceState, raw_service)
    return BackendStatus(
        age_ms=age,
        alive=True,
        connection=connection,
        service=service,
        component_text=component_text(True),
        connection_text=connection_text(connection),
        service_text=service_text(service),
        checked_at_ms=now,
    )


async def read_backend_status(
    store: SharedStore,
    key: str = DEFAULT_KEY,
    stale_after_ms: int = DEFAULT_STALE_AFTER_MS,
    now: Optional[int] = None,
) -> BackendStatus:
    raw_hb, raw_connection, raw_service = await store.hmget(
        key, [HB_FIELD, CONNECTION_FIELD, SERVICE_FIELD]
    )
    return decode_status(
        raw_hb, raw_connection, raw_service,
        now=now_ms() if now is None else now,
        stale_after_ms=stale_after_ms,
    )
