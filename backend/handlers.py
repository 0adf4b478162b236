"""
Command Handlers — worker-side work for each queued command.

Every handler follows the same four steps:
  1. require a ready coordinator link (fail fast, the item is already dequeued)
  2. call the coordinator and keep only the fields the front end needs
  3. SET the JSON result with its TTL in one command
  4. publish the argument on the command's notification channel

Step 4 never runs before step 3 has completed, so a woken waiter always
finds the value in the cache.
"""
from __future__ import annotations

import json
import structlog
from typing import Any

from backend.coordinator import GameCoordinator
from backend.session import CoordinatorLink
from job_queue.commands import CommandHandler
from job_queue.store import SharedStore
from models.errors import UpstreamError
from models.schemas import ROUTES, CommandCode, CommandRoute, DotaProfile, LastMatch

logger = structlog.get_logger()

DEFAULT_CACHE_TTL = 24 * 3600

# Keys the protobuf layer attaches to decoded messages
_TRANSPORT_KEYS = {"$type", "toJSON", "constructor"}


def sanitize(obj: Any) -> dict[str, Any]:
    """Drop transport-only keys from a decoded coordinator message."""
    if not isinstance(obj, dict):
        return {}
    return {k: v for k, v in obj.items() if k not in _TRANSPORT_KEYS}


class CommandHandlers:
    """Builds the handler for each CommandCode."""

    def __init__(
        self,
        store: SharedStore,
        link: CoordinatorLink,
        coordinator: GameCoordinator,
        cache_ttl: int = DEFAULT_CACHE_TTL,
    ):
        self.store = store
        self.link = link
        self.coordinator = coordinator
        self.cache_ttl = cache_ttl

    def table(self) -> dict[CommandCode, CommandHandler]:
        return {
            CommandCode.GET_PROFILE: self.get_profile,
            CommandCode.GET_LAST_MATCH: self.get_last_match,
        }

    async def get_profile(self, account_id: str):
        self.link.require_ready()
        await self.link.count_request("profile")
        try:
            raw = await self.coordinator.fetch_profile(account_id)
        except Exception as e:
            raise UpstreamError(f"Profile request failed: {e}", account_id=account_id) from e

        profile = DotaProfile(
            account_id=account_id,
            profile=sanitize(raw.get("profile")),
            profile_card=sanitize(raw.get("profile_card")),
            stats=sanitize(raw.get("stats")),
        )
        await self._publish_result(
            ROUTES[CommandCode.GET_PROFILE],
            account_id,
            profile.model_dump(exclude_none=True),
        )

    async def get_last_match(self, account_id: str):
        self.link.require_ready()
        await self.link.count_request("lastmatch")
        try:
            match_id = await self.coordinator.fetch_last_match(account_id)
        except Exception as e:
            raise UpstreamError(f"Last match request failed: {e}", account_id=account_id) from e

        if match_id is None or str(match_id) == "":
            raise UpstreamError("No recent match returned", account_id=account_id)

        last = LastMatch(account_id=account_id, match_id=str(match_id))
        await self._publish_result(
            ROUTES[CommandCode.GET_LAST_MATCH],
            account_id,
            last.model_dump(),
        )

    async def _publish_result(self, route: CommandRoute, argument: str, payload: dict[str, Any]):
        key = route.cache_key(argument)
        await self.store.set(key, json.dumps(payload), ttl=self.cache_ttl)
        receivers = await self.store.publish(route.channel, argument)
        logger.info("command_result_published",
                    key=key,
                    channel=route.channel,
                    receivers=receivers)
