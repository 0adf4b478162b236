"""
Shared Store — the only coordination medium between front end and worker.

Key families:
  dota:command            — control channel (pub/sub), "<code>,<argument>"
  dota_cmds_get_<kw>      — per-command request lists
  dota:<kw>               — per-command notification channels (pub/sub)
  dota_<kw>_<argument>    — cached results, 24h TTL
  dota_status             — heartbeat hash {hb, steam, dota}
  steam_name_<id>         — cached persona names
  stats                   — upstream request counters (hash)

Two implementations share the SharedStore interface:
  - RedisSharedStore      (production, redis.asyncio)
  - InMemorySharedStore   (development/tests, single process)

Every component takes a SharedStore in its constructor; nothing reaches for
a global connection.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Optional

logger = structlog.get_logger()

MessageHandler = Callable[[str, str], Any]   # (channel, message)


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class SharedStore(ABC):
    """Key/value + list + hash + pub/sub primitives used by the bridge."""

    @abstractmethod
    async def connect(self):
        """Establish connection to the store backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down, including any pub/sub listener."""
        ...

    # ── Key/value ─────────────────────────────────────────

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def mget(self, keys: list[str]) -> list[Optional[str]]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None):
        """Write a value; when ttl is given the expiry is applied in the same command."""
        ...

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> bool:
        """Set a key's TTL. A non-positive TTL deletes the key, as in redis."""
        ...

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Remaining TTL in seconds: -2 if the key is missing, -1 if it never expires."""
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        ...

    # ── Hashes ────────────────────────────────────────────

    @abstractmethod
    async def hset(self, key: str, mapping: dict[str, Any]):
        ...

    @abstractmethod
    async def hmget(self, key: str, fields: list[str]) -> list[Optional[str]]:
        ...

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        ...

    # ── Lists ─────────────────────────────────────────────

    @abstractmethod
    async def lpush(self, key: str, value: str) -> int:
        """Push to the head of a list. Returns the new length."""
        ...

    @abstractmethod
    async def pop_head(self, key: str) -> tuple[int, Optional[str]]:
        """Atomically read a list's length and pop its head: (length_before, value)."""
        ...

    @abstractmethod
    async def lrem(self, key: str, value: str) -> int:
        """Remove every occurrence of value. Returns how many were removed."""
        ...

    @abstractmethod
    async def llen(self, key: str) -> int:
        ...

    # ── Pub/Sub ───────────────────────────────────────────

    @abstractmethod
    async def publish(self, channel: str, message: str) -> int:
        """Publish a message. Returns the number of receivers."""
        ...

    @abstractmethod
    async def subscribe(self, channel: str, handler: MessageHandler):
        """Start delivering messages on channel to handler(channel, message)."""
        ...

    @abstractmethod
    async def unsubscribe(self, channel: str):
        ...


def _safe_deliver(handler: MessageHandler, channel: str, message: str):
    try:
        handler(channel, message)
    except Exception as e:
        logger.error("store_message_handler_error",
                     channel=channel,
                     error=str(e),
                     exc_info=True)


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisSharedStore(SharedStore):
    """
    Production store backed by a single redis server.

    Commands go through one pooled client; pub/sub uses a dedicated
    connection with a background listener task started on first subscribe.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", max_connections: int = 20):
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis = None
        self._pubsub = None
        self._handlers: dict[str, MessageHandler] = {}
        self._listener_task: Optional[asyncio.Task] = None
        self._running = False

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=self._max_connections,
        )
        await self._redis.ping()
        self._running = True
        logger.info("redis_store_connected", url=self._redis_url)

    async def close(self):
        self._running = False
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
        if self._pubsub:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._redis:
            await self._redis.aclose()
            self._redis = None
        self._handlers.clear()
        logger.info("redis_store_closed")

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def mget(self, keys: list[str]) -> list[Optional[str]]:
        if not keys:
            return []
        return await self._redis.mget(keys)

    async def set(self, key: str, value: str, ttl: Optional[int] = None):
        await self._redis.set(key, value, ex=ttl)

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._redis.expire(key, seconds))

    async def ttl(self, key: str) -> int:
        return await self._redis.ttl(key)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._redis.delete(*keys)

    async def hset(self, key: str, mapping: dict[str, Any]):
        await self._redis.hset(key, mapping={k: str(v) for k, v in mapping.items()})

    async def hmget(self, key: str, fields: list[str]) -> list[Optional[str]]:
        return await self._redis.hmget(key, fields)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return await self._redis.hincrby(key, field, amount)

    async def lpush(self, key: str, value: str) -> int:
        return await self._redis.lpush(key, value)

    async def pop_head(self, key: str) -> tuple[int, Optional[str]]:
        pipe = self._redis.pipeline(transaction=True)
        pipe.llen(key)
        pipe.lpop(key)
        length, value = await pipe.execute()
        return int(length), value

    async def lrem(self, key: str, value: str) -> int:
        return await self._redis.lrem(key, 0, value)

    async def llen(self, key: str) -> int:
        return await self._redis.llen(key)

    async def publish(self, channel: str, message: str) -> int:
        return await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, handler: MessageHandler):
        self._handlers[channel] = handler
        if self._pubsub is None:
            self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(channel)
        if self._listener_task is None or self._listener_task.done():
            self._listener_task = asyncio.create_task(self._listen(), name="redis_store_listener")
        logger.info("redis_channel_subscribed", channel=channel)

    async def unsubscribe(self, channel: str):
        self._handlers.pop(channel, None)
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(channel)

    async def _listen(self):
        """Background loop delivering pub/sub messages to channel handlers."""
        while self._running:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("redis_listener_error", error=str(e))
                await asyncio.sleep(1)
                continue

            if not message or message.get("type") != "message":
                continue

            channel = message["channel"]
            handler = self._handlers.get(channel)
            if handler is None:
                continue
            _safe_deliver(handler, channel, message["data"])


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemorySharedStore(SharedStore):
    """
    Development/test store backed by dicts.
    Single-process only: front end and worker must share the instance.
    Pub/sub delivery is scheduled on the running loop, never inline.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._values: dict[str, str] = {}
        self._hashes: dict[str, dict[str, str]] = defaultdict(dict)
        self._lists: dict[str, list[str]] = defaultdict(list)
        self._expiry: dict[str, float] = {}
        self._handlers: dict[str, MessageHandler] = {}
        self.published: list[tuple[str, str]] = []   # inspection aid for tests

    async def connect(self):
        logger.info("inmemory_store_connected")

    async def close(self):
        self._handlers.clear()

    def _alive(self, key: str) -> bool:
        deadline = self._expiry.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._drop(key)
        return key in self._values or key in self._hashes or key in self._lists

    def _drop(self, key: str):
        self._values.pop(key, None)
        self._hashes.pop(key, None)
        self._lists.pop(key, None)
        self._expiry.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        if not self._alive(key):
            return None
        return self._values.get(key)

    async def mget(self, keys: list[str]) -> list[Optional[str]]:
        return [await self.get(k) for k in keys]

    async def set(self, key: str, value: str, ttl: Optional[int] = None):
        self._values[key] = value
        if ttl is None:
            self._expiry.pop(key, None)
        else:
            self._expiry[key] = self._clock() + ttl

    async def expire(self, key: str, seconds: int) -> bool:
        if not self._alive(key):
            return False
        if seconds <= 0:
            self._drop(key)
        else:
            self._expiry[key] = self._clock() + seconds
        return True

    async def ttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        deadline = self._expiry.get(key)
        if deadline is None:
            return -1
        return max(0, int(round(deadline - self._clock())))

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                self._drop(key)
                removed += 1
        return removed

    async def hset(self, key: str, mapping: dict[str, Any]):
        self._alive(key)
        self._hashes[key].update({k: str(v) for k, v in mapping.items()})

    async def hmget(self, key: str, fields: list[str]) -> list[Optional[str]]:
        if not self._alive(key):
            return [None for _ in fields]
        data = self._hashes.get(key, {})
        return [data.get(f) for f in fields]

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        self._alive(key)
        value = int(self._hashes[key].get(field, "0")) + amount
        self._hashes[key][field] = str(value)
        return value

    async def lpush(self, key: str, value: str) -> int:
        self._alive(key)
        items = self._lists[key]
        items.insert(0, value)
        return len(items)

    async def pop_head(self, key: str) -> tuple[int, Optional[str]]:
        if not self._alive(key):
            return 0, None
        items = self._lists[key]
        length = len(items)
        value = items.pop(0)
        if not items:
            self._drop(key)
        return length, value

    async def lrem(self, key: str, value: str) -> int:
        if not self._alive(key):
            return 0
        items = self._lists[key]
        kept = [v for v in items if v != value]
        removed = len(items) - len(kept)
        if kept:
            self._lists[key] = kept
        else:
            self._drop(key)
        return removed

    async def llen(self, key: str) -> int:
        if not self._alive(key):
            return 0
        return len(self._lists.get(key, []))

    async def lrange(self, key: str) -> list[str]:
        """Whole list, head first (not part of the SharedStore interface)."""
        if not self._alive(key):
            return []
        return list(self._lists.get(key, []))

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        handler = self._handlers.get(channel)
        if handler is None:
            return 0
        asyncio.get_running_loop().call_soon(_safe_deliver, handler, channel, message)
        return 1

    async def subscribe(self, channel: str, handler: MessageHandler):
        self._handlers[channel] = handler
        logger.debug("inmemory_channel_subscribed", channel=channel)

    async def unsubscribe(self, channel: str):
        self._handlers.pop(channel, None)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[SharedStore] = None


def create_shared_store(store_config: dict[str, Any] = None) -> SharedStore:
    """Factory: create the appropriate store backend."""
    global _instance
    if _instance:
        return _instance

    config = store_config or {}
    backend = config.get("backend", "memory")

    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        _instance = RedisSharedStore(
            redis_url=url,
            max_connections=config.get("max_connections", 20),
        )
    else:
        _instance = InMemorySharedStore()

    logger.info("shared_store_created", backend=backend)
    return _instance


def get_shared_store() -> SharedStore:
    """Return the singleton store instance."""
    global _instance
    if _instance is None:
        _instance = create_shared_store()
    return _instance


def reset_shared_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
