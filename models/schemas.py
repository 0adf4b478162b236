"""
Core data models for the Dota Bridge.
These are the wire and status types shared by the front end and the worker.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel, Field

from models.errors import InvalidCommandError


ENVELOPE_DELIMITER = ","


# ──────────────────────────────────────────────────────────────
#  Enums (stored in redis as their integer values)
# ──────────────────────────────────────────────────────────────

class CommandCode(IntEnum):
    GET_PROFILE = 0
    GET_LAST_MATCH = 1


class ConnectionState(IntEnum):
    """Steam connection state of the worker."""
    DISCONNECTED = 0
    CONNECTED = 1
    AUTHENTICATED = 2


class ServiceState(IntEnum):
    """Game coordinator state of the worker."""
    DISCONNECTED = 0
    SEARCHING = 1
    READY = 2


class LimiterState(str, Enum):
    IDLE = "idle"
    WAITING = "waiting"
    RUNNING = "running"


# ──────────────────────────────────────────────────────────────
#  Command wiring
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CommandRoute:
    """Queue, notification channel and cache prefix owned by one command type."""
    code: CommandCode
    queue: str
    channel: str
    cache_prefix: str

    def cache_key(self, argument: str) -> str:
        return f"{self.cache_prefix}_{argument}"


def _route(code: CommandCode, keyword: str) -> CommandRoute:
    return CommandRoute(
        code=code,
        queue=f"dota_cmds_get_{keyword}",
        channel=f"dota:{keyword}",
        cache_prefix=f"dota_{keyword}",
    )


ROUTES: dict[CommandCode, CommandRoute] = {
    CommandCode.GET_PROFILE: _route(CommandCode.GET_PROFILE, "profile"),
    CommandCode.GET_LAST_MATCH: _route(CommandCode.GET_LAST_MATCH, "lastmatch"),
}


class CommandEnvelope(BaseModel):
    """A command as sent over the control channel: "<code>,<argument>"."""
    command: CommandCode
    argument: str

    def encode(self) -> str:
        if not self.argument:
            raise InvalidCommandError("Command argument may not be empty")
        if ENVELOPE_DELIMITER in self.argument:
            raise InvalidCommandError(
                f"Argument may not contain {ENVELOPE_DELIMITER!r}: {self.argument!r}"
            )
        return f"{int(self.command)}{ENVELOPE_DELIMITER}{self.argument}"

    @classmethod
    def decode(cls, payload: str) -> CommandEnvelope:
        code, sep, argument = payload.partition(ENVELOPE_DELIMITER)
        if not sep:
            raise InvalidCommandError(f"Malformed command payload: {payload!r}")
        try:
            command = CommandCode(int(code))
        except ValueError as e:
            raise InvalidCommandError(f"Unknown command code: {code!r}") from e
        if not argument:
            raise InvalidCommandError(f"Command payload has no argument: {payload!r}")
        return cls(command=command, argument=argument)


# ──────────────────────────────────────────────────────────────
#  Results written by the worker
# ──────────────────────────────────────────────────────────────

class DotaProfile(BaseModel):
    """Profile composed from the coordinator's profile, card and stats replies."""
    account_id: str
    profile: dict[str, Any] = {}
    profile_card: dict[str, Any] = {}
    stats: dict[str, Any] = {}
    name: Optional[str] = None              # filled in by the front end


class LastMatch(BaseModel):
    account_id: str
    match_id: str


# ──────────────────────────────────────────────────────────────
#  Heartbeat / liveness
# ──────────────────────────────────────────────────────────────

class BackendStatus(BaseModel):
    """Decoded heartbeat record as seen by a consumer."""
    age_ms: Optional[int] = None
    alive: bool = False
    connection: Optional[ConnectionState] = None
    service: Optional[ServiceState] = None
    component_text: str = "Not Responding"
    connection_text: str = "Unavailable"
    service_text: str = "Unavailable"
    checked_at_ms: int = Field(default=0)

    def describe(self) -> str:
        return (
            f"Dota Component: {self.component_text}\n"
            f"Steam Connection: {self.connection_text}\n"
            f"Dota Game Coordinator: {self.service_text}"
        )
