"""
FastAPI Application — HTTP front of house for the Dota Bridge.

Provides:
- GET /health                        process liveness
- GET /status                        worker heartbeat and link status
- GET /profiles/{account}            cached or freshly fetched Dota profile
- GET /players/{account}/lastmatch   most recent match details

The app never talks to the coordinator; it goes through the shared store
and the worker's command queues.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.steam_api import SteamWebAPI
from config.settings import Settings, get_settings
from core import strings
from core.cached import CachedLookups
from core.client import BridgeClient
from job_queue.registry import SubscriptionRegistry
from job_queue.store import SharedStore, create_shared_store
from models.errors import (
    BackendUnavailableError, InvalidCommandError,
    ResultUnavailableError, UnknownAccountError,
)

logger = structlog.get_logger()


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[SharedStore] = None,
    steam: Optional[SteamWebAPI] = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store or create_shared_store({
        "backend": settings.store.backend,
        "redis_url": settings.store.redis_url,
        "max_connections": settings.store.max_connections,
    })
    steam = steam or SteamWebAPI(settings.steam)
    registry = SubscriptionRegistry(store, default_ttl=settings.bus.waiter_ttl_seconds)
    client = BridgeClient(
        store, registry,
        control_channel=settings.bus.control_channel,
        heartbeat_key=settings.heartbeat.key,
        stale_after_ms=settings.heartbeat.stale_after_ms,
        request_timeout=settings.bus.request_timeout_seconds,
    )
    lookups = CachedLookups(client, steam, ttl=settings.bus.cache_ttl_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.connect()
        await registry.start_sweeper()
        logger.info("dota_bridge_api_started", store=type(store).__name__)
        yield
        await registry.close()
        await steam.close()
        await store.close()
        logger.info("dota_bridge_api_stopped")

    app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)
    app.state.client = client
    app.state.lookups = lookups

    @app.exception_handler(BackendUnavailableError)
    async def backend_unavailable(request: Request, exc: BackendUnavailableError):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(ResultUnavailableError)
    async def result_unavailable(request: Request, exc: ResultUnavailableError):
        return JSONResponse(status_code=504, content={"detail": str(exc)})

    @app.exception_handler(UnknownAccountError)
    async def unknown_account(request: Request, exc: UnknownAccountError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(InvalidCommandError)
    async def invalid_command(request: Request, exc: InvalidCommandError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(httpx.HTTPError)
    async def steam_unavailable(request: Request, exc: httpx.HTTPError):
        logger.warning("steam_api_unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=503, content={"detail": strings.STEAM_UNAVAILABLE})

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/status")
    async def status():
        backend = await client.get_status()
        return {
            **backend.model_dump(mode="json"),
            "description": backend.describe(),
        }

    @app.get("/profiles/{account}")
    async def get_profile(account: str):
        account_id = await steam.resolve_account_id(account)
        profile = await lookups.get_dota_profile(account_id)
        return profile.model_dump()

    @app.get("/players/{account}/lastmatch")
    async def get_last_match(account: str):
        account_id = await steam.resolve_account_id(account)
        return await lookups.get_last_match(account_id)

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

def main():
    import uvicorn
    from core.worker import configure_logging

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        app,
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
