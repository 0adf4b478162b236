"""
Cached lookups — uniform read access to data that is cached in redis.

This sits above every data source (the worker's coordinator session and the
Steam Web API) so callers don't care where a value came from or whether it
was already cached. Everything written here expires after 24 hours.
"""
from __future__ import annotations

import json
import structlog
from typing import Any

from backend.steam_api import SteamWebAPI
from core import strings
from core.client import BridgeClient
from models.errors import ResultUnavailableError
from models.schemas import CommandCode, DotaProfile, LastMatch

logger = structlog.get_logger()

NAME_PREFIX = "steam_name_"
MATCH_PREFIX = "steam_match_"
CACHE_TTL = 24 * 3600


class CachedLookups:

    def __init__(self, client: BridgeClient, steam: SteamWebAPI, ttl: int = CACHE_TTL):
        self.client = client
        self.store = client.store
        self.steam = steam
        self.ttl = ttl

    async def get_names_for_accounts(self, account_ids: list[str]) -> dict[str, str]:
        """Persona name per account id; "Unknown" when Steam has nothing."""
        if not account_ids:
            return {}

        cached = await self.store.mget([NAME_PREFIX + a for a in account_ids])
        result = dict(zip(account_ids, cached))
        missing = [a for a, name in result.items() if name is None]

        if missing:
            try:
                found = await self.steam.get_player_names(missing)
            except Exception as e:
                # Nothing is cached so the next lookup asks Steam again
                logger.warning("steam_name_lookup_failed", count=len(missing), error=str(e))
                for account_id in missing:
                    result[account_id] = strings.UNKNOWN_NAME
                return result

            for account_id in missing:
                result[account_id] = found.get(account_id, strings.UNKNOWN_NAME)
                await self.store.set(NAME_PREFIX + account_id, result[account_id], ttl=self.ttl)

        return result

    async def get_dota_profile(self, account_id: str) -> DotaProfile:
        """Profile from cache, or from the worker when it is up."""
        raw = await self.client.cached(CommandCode.GET_PROFILE, account_id)
        if raw is None:
            await self.client.ensure_available()
            try:
                raw = await self.client.request(CommandCode.GET_PROFILE, account_id)
            except ResultUnavailableError as e:
                raise ResultUnavailableError(strings.DOTA_PROFILE_UNAVAILABLE) from e

        profile = DotaProfile.model_validate(json.loads(raw))
        names = await self.get_names_for_accounts([profile.account_id])
        profile.name = names[profile.account_id]
        return profile

    async def get_last_match(self, account_id: str) -> dict[str, Any]:
        """Details of the account's most recent match, with player names attached."""
        raw = await self.client.cached(CommandCode.GET_LAST_MATCH, account_id)
        if raw is None:
            await self.client.ensure_available()
            try:
                raw = await self.client.request(CommandCode.GET_LAST_MATCH, account_id)
            except ResultUnavailableError as e:
                raise ResultUnavailableError(strings.DOTA_LASTMATCH_UNAVAILABLE) from e

        last = LastMatch.model_validate(json.loads(raw))
        match = await self.get_match_details(last.match_id)
        player_ids = [
            str(p["account_id"]) for p in match.get("players", []) if "account_id" in p
        ]
        match["player_names"] = await self.get_names_for_accounts(player_ids)
        return match

    async def get_match_details(self, match_id: str) -> dict[str, Any]:
        key = MATCH_PREFIX + match_id
        raw = await self.store.get(key)
        if raw is not None:
            return json.loads(raw)

        match = await self.steam.get_match_details(match_id)
        await self.store.set(key, json.dumps(match), ttl=self.ttl)
        return match
