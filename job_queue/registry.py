"""
Subscription Registry — wakes front-end callers when their result is ready.

State is channel → key → [waiters]. The first waiter on a channel starts
listening to it on the store. When "<key>" arrives on a channel, every waiter
registered for that key is removed together and each continuation is
scheduled once, in registration order, on the event loop.

Notifications are not buffered. Callers must read the cache first, subscribe
only on a miss, and read the cache again right after subscribing:

    value = await store.get(key)
    if value is None:
        fut = await registry.wait(channel, arg)
        value = await store.get(key)        # closes the check/subscribe gap
        if value is None:
            await fut
"""
from __future__ import annotations

import asyncio
import inspect
import time
import structlog
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from job_queue.store import SharedStore

logger = structlog.get_logger()

Continuation = Callable[[], Any]


@dataclass
class Waiter:
    continuation: Continuation
    expires_at: Optional[float] = None
    registered_at: float = field(default_factory=time.monotonic)

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class SubscriptionRegistry:
    """
    Usage:
        registry = SubscriptionRegistry(store, default_ttl=300)
        await registry.subscribe("dota:profile", "111", on_ready)
        fut = await registry.wait("dota:profile", "111")
        await registry.start_sweeper()      # optional, prunes abandoned waiters
    """

    def __init__(
        self,
        store: SharedStore,
        default_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.default_ttl = default_ttl
        self._clock = clock
        self._waiters: dict[str, dict[str, list[Waiter]]] = {}
        self._listening: set[str] = set()
        self._sweeper: Optional[asyncio.Task] = None

    # ── Registration ──────────────────────────────────────

    async def subscribe(
        self,
        channel: str,
        key: str,
        continuation: Continuation,
        ttl: Optional[float] = None,
    ) -> Waiter:
        ttl = self.default_ttl if ttl is None else ttl
        waiter = Waiter(
            continuation=continuation,
            expires_at=(self._clock() + ttl) if ttl else None,
            registered_at=self._clock(),
        )
        self._waiters.setdefault(channel, {}).setdefault(key, []).append(waiter)

        if channel not in self._listening:
            self._listening.add(channel)
            try:
                await self.store.subscribe(channel, self._on_message)
            except Exception:
                self._listening.discard(channel)
                self._remove(channel, key, waiter)
                raise
            logger.info("registry_listening", channel=channel)
        return waiter

    async def wait(self, channel: str, key: str, ttl: Optional[float] = None) -> asyncio.Future:
        """Register a waiter and return a future resolved by the next notification."""
        fut = asyncio.get_running_loop().create_future()

        def _resolve():
            if not fut.done():
                fut.set_result(key)

        waiter = await self.subscribe(channel, key, _resolve, ttl=ttl)

        def _forget(f: asyncio.Future):
            # A timed-out or abandoned caller should not keep its slot
            if f.cancelled():
                self._remove(channel, key, waiter)

        fut.add_done_callback(_forget)
        return fut

    def unsubscribe(self, channel: str, key: str, continuation: Continuation) -> bool:
        bucket = self._waiters.get(channel, {}).get(key, [])
        for waiter in bucket:
            if waiter.continuation is continuation:
                self._remove(channel, key, waiter)
                return True
        return False

    def _remove(self, channel: str, key: str, waiter: Waiter):
        keys = self._waiters.get(channel)
        if not keys or key not in keys:
            return
        bucket = keys[key]
        if waiter in bucket:
            bucket.remove(waiter)
        if not bucket:
            del keys[key]
        if not keys:
            del self._waiters[channel]

    def pending(self, channel: str, key: Optional[str] = None) -> int:
        keys = self._waiters.get(channel, {})
        if key is not None:
            return len(keys.get(key, []))
        return sum(len(b) for b in keys.values())

    # ── Delivery ──────────────────────────────────────────

    def _on_message(self, channel: str, key: str):
        keys = self._waiters.get(channel)
        if not keys or key not in keys:
            logger.debug("registry_notification_dropped", channel=channel, key=key)
            return

        bucket = keys.pop(key)
        if not keys:
            del self._waiters[channel]

        now = self._clock()
        loop = asyncio.get_running_loop()
        fired = 0
        for waiter in bucket:
            if waiter.expired(now):
                continue
            loop.call_soon(self._invoke, waiter.continuation, channel, key)
            fired += 1
        logger.debug("registry_notification_delivered",
                     channel=channel,
                     key=key,
                     waiters=fired,
                     expired=len(bucket) - fired)

    def _invoke(self, continuation: Continuation, channel: str, key: str):
        try:
            result = continuation()
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)
        except Exception as e:
            logger.error("registry_continuation_error",
                         channel=channel,
                         key=key,
                         error=str(e),
                         exc_info=True)

    # ── Expiry ────────────────────────────────────────────

    def prune_expired(self) -> int:
        """Drop waiters past their deadline. Returns how many were removed."""
        now = self._clock()
        removed = 0
        for channel in list(self._waiters):
            keys = self._waiters[channel]
            for key in list(keys):
                live = [w for w in keys[key] if not w.expired(now)]
                removed += len(keys[key]) - len(live)
                if live:
                    keys[key] = live
                else:
                    del keys[key]
            if not keys:
                del self._waiters[channel]
        if removed:
            logger.info("registry_waiters_expired", count=removed)
        return removed

    async def start_sweeper(self, interval: float = 60.0) -> asyncio.Task:
        self._sweeper = asyncio.create_task(self._sweep(interval), name="registry_sweeper")
        return self._sweeper

    async def _sweep(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            self.prune_expired()

    async def close(self):
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        for channel in list(self._listening):
            await self.store.unsubscribe(channel)
        self._listening.clear()
        self._waiters.clear()
