"""
Errors raised by the live class relay.

Registry operations raise these; consumers turn them into an `error` frame
sent to the originating connection only, so one bad request never reaches the
rest of the session.
"""

from __future__ import annotations

from typing import Any, Dict


class LiveClassError(Exception):
    """Base class for relay failures that are reported back to a client."""

    code = "error"
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def as_event(self) -> Dict[str, Any]:
        return {"type": "error", "code": self.code, "message": self.message}


class StreamNotFound(LiveClassError):
    code = "not_found"
    default_message = "Stream not found"


class Unauthorized(LiveClassError):
    code = "unauthorized"
    default_message = "Not allowed for this connection"


class Conflict(LiveClassError):
    code = "conflict"
    default_message = "Stream already live"


class InvalidTarget(LiveClassError):
    code = "invalid_target"
    default_message = "Target connection is not part of this stream"


class InvalidTicket(LiveClassError):
    code = "invalid_ticket"
    default_message = "Join ticket is invalid or expired"


class InvalidMessage(LiveClassError):
    code = "invalid_message"
    default_message = "Invalid message"


class PersistenceFailure(LiveClassError):
    """Store write failed. Logged by the registry, never sent to clients."""

    code = "persistence_failure"
    default_message = "Could not persist live class data"


__all__ = [
    "LiveClassError",
    "StreamNotFound",
    "Unauthorized",
    "Conflict",
    "InvalidTarget",
    "InvalidTicket",
    "InvalidMessage",
    "PersistenceFailure",
]
