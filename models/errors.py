"""
Error family shared by the front end and the worker.

Everything raised on purpose by the bridge derives from BridgeError so the
HTTP layer and the drain loop can tell expected failures from bugs.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base class for expected bridge failures."""


class InvalidCommandError(BridgeError):
    """A command envelope could not be encoded or decoded."""


class BackendUnavailableError(BridgeError):
    """The worker or its coordinator link is not ready to serve requests."""


class UpstreamError(BackendUnavailableError):
    """The game coordinator failed while answering a request."""

    def __init__(self, message: str, account_id: str = ""):
        super().__init__(message)
        self.account_id = account_id


class ResultUnavailableError(BridgeError):
    """A result was expected in the cache but could not be read."""


class UnknownAccountError(BridgeError):
    """User input could not be resolved to a Steam account."""
