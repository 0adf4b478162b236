"""
Game Coordinator — the opaque capability the worker talks to.

The wire protocol to Steam and the Dota 2 game coordinator lives outside this
package. A concrete client implements GameCoordinator, is built by a
factory that receives the steam settings (account name, password), and reports its
connection progress through the CoordinatorLink it is handed in connect().
"""
from __future__ import annotations

import abc
import asyncio
import structlog
from typing import TYPE_CHECKING, Any, Optional

from config.settings import SteamConfig

if TYPE_CHECKING:
    from backend.session import CoordinatorLink

logger = structlog.get_logger()


class GameCoordinator(abc.ABC):
    """Abstract base for game coordinator clients."""

    @abc.abstractmethod
    async def connect(self, link: CoordinatorLink) -> None:
        """
        Connect, sign in, launch the game client and hold the session.

        Implementations call link.on_connected(), link.on_logged_on(),
        link.on_searching() and link.on_ready() as the session progresses,
        and link.on_hello_timeout() when the game coordinator goes quiet.
        Return (or raise) only when the session is over; the worker resets
        the link and reconnects after its reconnect delay.
        """
        ...

    @abc.abstractmethod
    async def fetch_profile(self, account_id: str) -> dict[str, Any]:
        """
        Fetch raw profile data for a 32-bit account id.
        Returns {"profile": {...}, "profile_card": {...}, "stats": {...}}.
        """
        ...

    @abc.abstractmethod
    async def fetch_last_match(self, account_id: str) -> str:
        """Return the id of the account's most recent match."""
        ...

    async def close(self) -> None:
        """Release the connection. Default: nothing to release."""
        return None


class OfflineCoordinator(GameCoordinator):
    """
    Placeholder used when no coordinator client is configured.

    The worker still heartbeats and drains its queues; every request fails
    the readiness precondition, which is what the front end reports.
    """

    def __init__(self, steam: Optional[SteamConfig] = None):
        self.steam = steam or SteamConfig()

    async def connect(self, link: CoordinatorLink) -> None:
        logger.warning("coordinator_offline",
                       account=self.steam.username or None,
                       hint="start the worker with --coordinator module:factory")
        await asyncio.Event().wait()

    async def fetch_profile(self, account_id: str) -> dict[str, Any]:
        raise NotImplementedError("OfflineCoordinator cannot fetch profiles")

    async def fetch_last_match(self, account_id: str) -> str:
        raise NotImplementedError("OfflineCoordinator cannot fetch matches")
