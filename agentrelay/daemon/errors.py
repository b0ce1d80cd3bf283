"""Exception taxonomy for the daemon.

Parse failures never escape an adapter (they become ``agent.unparsed``
events); the remaining errors are raised synchronously from supervisor
operations and mapped to HTTP status codes by the routers.
"""

from __future__ import annotations


class AgentRelayError(RuntimeError):
    """Base class for daemon errors."""


class DecodeError(AgentRelayError):
    """A native frame did not match any known shape.

    ``location`` points at the failure (JSON line/column or the path of the
    offending field).
    """

    def __init__(self, error: str, location: str) -> None:
        super().__init__(f"{error} (at {location})")
        self.error = error
        self.location = location


class AgentUnavailableError(AgentRelayError):
    """The agent binary is not installed and could not be installed."""


class AgentCrashedError(AgentRelayError):
    """The agent process exited before it accepted the session."""


class SessionTerminatedError(AgentRelayError):
    """The session has ended; no further commands are accepted."""


class UnsupportedOperationError(AgentRelayError):
    """The agent kind does not declare the requested capability."""


class ShuttingDownError(AgentRelayError):
    """Raised when attempting to register work during shutdown."""


class SessionNotFoundError(LookupError):
    """No live or ended session with this id."""


class UnknownRequestError(LookupError):
    """No pending question or permission request with this id."""
