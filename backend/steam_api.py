"""
Steam Web API client — persona names, match details, vanity URL lookups.

These calls go straight to api.steampowered.com from the front end; they do
not use the coordinator session, so they are not rate limited by the worker.
"""
from __future__ import annotations

import re
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import SteamConfig, get_settings
from models.errors import UnknownAccountError

logger = structlog.get_logger()

STEAM_ID64_OFFSET = 76561197960265728

_NUMERIC = re.compile(r"^[0-9]+$")


def get_id64(account_id: str | int) -> str:
    """32-bit account id → 64-bit steam id (no validation)."""
    return str(int(account_id) + STEAM_ID64_OFFSET)


def get_id32(steam_id: str | int) -> str:
    """64-bit steam id → 32-bit account id (no validation)."""
    return str(int(steam_id) - STEAM_ID64_OFFSET)


def normalize_numeric_id(value: str) -> str:
    """Accept either id form and return the 32-bit one."""
    number = int(value)
    if number < STEAM_ID64_OFFSET:
        return str(number)
    return str(number - STEAM_ID64_OFFSET)


def vanity_name(value: str) -> str:
    """Last path segment of a profile URL, or the input itself."""
    return value.rstrip("/").split("/")[-1]


class SteamWebAPI:

    def __init__(self, config: SteamConfig = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_settings().steam
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(base_url=self.config.base_url, timeout=15.0)
        return self.client

    async def close(self):
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10), reraise=True)
    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.get(path, params={"key": self.config.api_key, **params})
        response.raise_for_status()
        return response.json()

    async def get_player_names(self, account_ids: list[str]) -> dict[str, str]:
        """
        Persona names keyed by 32-bit account id. Accounts hidden by privacy
        settings come back as "Unknown"; accounts Steam doesn't return are absent.
        """
        if not account_ids:
            return {}

        data = await self._get(
            "/ISteamUser/GetPlayerSummaries/v2",
            {"steamids": ",".join(get_id64(a) for a in account_ids)},
        )
        names = {}
        for player in data.get("response", {}).get("players", []):
            names[get_id32(player["steamid"])] = player.get("personaname") or "Unknown"
        logger.debug("steam_names_fetched", requested=len(account_ids), found=len(names))
        return names

    async def get_match_details(self, match_id: str) -> dict[str, Any]:
        data = await self._get(
            "/IDOTA2Match_570/GetMatchDetails/v1",
            {"match_id": match_id},
        )
        return data.get("result", data)

    async def resolve_account_id(self, value: str) -> str:
        """Turn a numeric id, profile URL or vanity name into a 32-bit account id."""
        value = value.strip()
        if _NUMERIC.match(value):
            return normalize_numeric_id(value)

        name = vanity_name(value)
        data = await self._get("/ISteamUser/ResolveVanityURL/v0001/", {"vanityurl": name})
        response = data.get("response", {})
        if response.get("success") == 1:
            return get_id32(response["steamid"])
        raise UnknownAccountError(f"No steamid found matching `{value}`")
