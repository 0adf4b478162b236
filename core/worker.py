"""
Bridge Worker — the long-lived process that owns the coordinator session.

Startup order:
  1. connect the shared store, reset dota_status to DISCONNECTED/DISCONNECTED
  2. start the heartbeat
  3. start one rate-limited drain loop per command and listen on dota:command
  4. connect to the coordinator, retrying after reconnect_delay on failure

Run:
  dota-bridge-worker --config config/settings.yaml
  dota-bridge-worker --coordinator mypkg.gc:create_client
"""
from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import signal
import structlog
from typing import Optional

from backend.coordinator import GameCoordinator, OfflineCoordinator
from backend.handlers import CommandHandlers
from backend.session import CoordinatorLink
from config.settings import Settings, SteamConfig, get_settings, load_settings
from job_queue.commands import CommandQueue, DrainLoop
from job_queue.consumer import ControlChannelConsumer
from job_queue.heartbeat import HeartbeatWriter
from job_queue.store import SharedStore, create_shared_store
from models.schemas import ROUTES

logger = structlog.get_logger()


class BridgeWorker:

    def __init__(
        self,
        store: SharedStore,
        coordinator: GameCoordinator,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.coordinator = coordinator

        self.heartbeat = HeartbeatWriter(
            store,
            key=self.settings.heartbeat.key,
            interval_seconds=self.settings.heartbeat.interval_seconds,
        )
        self.link = CoordinatorLink(self.heartbeat, store)
        self.handlers = CommandHandlers(
            store, self.link, coordinator,
            cache_ttl=self.settings.bus.cache_ttl_seconds,
        )
        self.drain_loops = {
            code: DrainLoop(
                CommandQueue(store, ROUTES[code]),
                handler,
                interval=self.settings.bus.rate_limit_seconds,
                drain_backlog_on_start=False,
            )
            for code, handler in self.handlers.table().items()
        }
        # Queued commands wait for the coordinator instead of failing on startup
        for loop in self.drain_loops.values():
            self.link.add_ready_listener(loop.trigger)
        self.consumer = ControlChannelConsumer(
            store, self.drain_loops,
            channel=self.settings.bus.control_channel,
        )
        self._connector: Optional[asyncio.Task] = None

    async def start(self):
        await self.store.connect()
        await self.link.reset()
        await self.heartbeat.start()
        await self.consumer.start()
        self._connector = asyncio.create_task(self._connect_loop(), name="coordinator_connect")
        logger.info("bridge_worker_started",
                    commands=[code.name for code in self.drain_loops],
                    rate_limit=self.settings.bus.rate_limit_seconds)

    async def stop(self):
        if self._connector:
            self._connector.cancel()
            try:
                await self._connector
            except asyncio.CancelledError:
                pass
            self._connector = None
        await self.consumer.stop()
        await self.heartbeat.stop()
        try:
            await self.link.reset()
        except Exception as e:
            logger.warning("status_reset_failed", error=str(e))
        await self.coordinator.close()
        await self.store.close()
        logger.info("bridge_worker_stopped")

    async def _connect_loop(self):
        delay = self.settings.steam.reconnect_delay_seconds
        while True:
            try:
                await self.coordinator.connect(self.link)
                logger.warning("coordinator_session_ended", retry_in=delay)
                await self.link.reset()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("coordinator_connect_failed", error=str(e), retry_in=delay)
                await self.link.on_error(e)
            await asyncio.sleep(delay)


# ──────────────────────────────────────────────────────────────
#  Entry point
# ──────────────────────────────────────────────────────────────

def configure_logging(level: str = "INFO"):
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
    )


def load_coordinator(factory_path: Optional[str], steam: Optional[SteamConfig] = None) -> GameCoordinator:
    """
    Build a coordinator from "module:factory", or the offline placeholder.
    The factory is called with the steam section (account name, password).
    """
    steam = steam or SteamConfig()
    if not factory_path:
        return OfflineCoordinator(steam)
    module_name, _, attr = factory_path.partition(":")
    factory = getattr(importlib.import_module(module_name), attr or "create_coordinator")
    return factory(steam)


async def run_worker(settings: Settings, coordinator: GameCoordinator):
    store = create_shared_store({
        "backend": settings.store.backend,
        "redis_url": settings.store.redis_url,
        "max_connections": settings.store.max_connections,
    })
    worker = BridgeWorker(store, coordinator, settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    await worker.start()
    try:
        await stop.wait()
    finally:
        await worker.stop()


def main():
    from dotenv import load_dotenv
    load_dotenv()

    parser = argparse.ArgumentParser(description="Dota Bridge worker")
    parser.add_argument("--config", help="Path to settings.yaml")
    parser.add_argument("--coordinator", help="Coordinator factory as module:attr")
    args = parser.parse_args()

    settings = load_settings(args.config)
    configure_logging(settings.log_level)
    asyncio.run(run_worker(settings, load_coordinator(args.coordinator, settings.steam)))


if __name__ == "__main__":
    main()
