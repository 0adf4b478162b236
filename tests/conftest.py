"""Shared test fixtures for the Dota Bridge."""
import asyncio
import time
from typing import Any, Callable

import pytest
import pytest_asyncio

from backend.coordinator import GameCoordinator
from backend.session import CoordinatorLink
from job_queue.heartbeat import HeartbeatWriter
from job_queue.store import InMemorySharedStore


class FakeCoordinator(GameCoordinator):
    """Coordinator double that records calls and answers from canned data."""

    def __init__(self):
        self.profile_calls: list[str] = []
        self.match_calls: list[str] = []
        self.fail_with: Exception | None = None
        self.last_matches: dict[str, str] = {}
        self._session_over: asyncio.Event | None = None

    async def connect(self, link: CoordinatorLink) -> None:
        self._session_over = asyncio.Event()
        await link.on_connected()
        await link.on_logged_on()
        await link.on_searching()
        await link.on_ready()
        await self._session_over.wait()

    async def fetch_profile(self, account_id: str) -> dict[str, Any]:
        self.profile_calls.append(account_id)
        if self.fail_with:
            raise self.fail_with
        return {
            "profile": {"$type": "CMsgProfileResponse", "rank_tier": 54, "leaderboard_rank": 0},
            "profile_card": {"toJSON": "fn", "badge_points": 1200},
            "stats": {"constructor": "fn", "mean_gpm": 512},
        }

    async def fetch_last_match(self, account_id: str) -> str:
        self.match_calls.append(account_id)
        if self.fail_with:
            raise self.fail_with
        return self.last_matches.get(account_id, "7000000001")

    async def close(self) -> None:
        if self._session_over:
            self._session_over.set()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


async def settle(rounds: int = 5):
    """Let call_soon callbacks and freshly created tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def store() -> InMemorySharedStore:
    return InMemorySharedStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def coordinator() -> FakeCoordinator:
    return FakeCoordinator()


@pytest.fixture
def heartbeat(store) -> HeartbeatWriter:
    return HeartbeatWriter(store)


@pytest.fixture
def link(heartbeat) -> CoordinatorLink:
    return CoordinatorLink(heartbeat)


@pytest_asyncio.fixture
async def ready_link(link) -> CoordinatorLink:
    await link.on_connected()
    await link.on_logged_on()
    await link.on_searching()
    await link.on_ready()
    return link
