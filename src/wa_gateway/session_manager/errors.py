"""Exception hierarchy for the gateway."""

from __future__ import annotations

from typing import Optional

from ..models.session import SessionSnapshot


class GatewayError(Exception):
    """Base error; carries the HTTP status the command surface should answer with."""

    http_status = 500

    def __init__(self, message: str, *, snapshot: Optional[SessionSnapshot] = None) -> None:
        super().__init__(message)
        self.message = message
        self.snapshot = snapshot


class PreconditionViolation(GatewayError):
    """The session is not in a state that allows the requested command."""

    http_status = 400


class AutomationFailure(GatewayError):
    """The automation client could not create, query, or log out the session."""


class SendFailure(GatewayError):
    """A message-send operation on the client handle failed."""

    def __init__(self, kind: str, reason: str) -> None:
        super().__init__(f"Failed to send {kind}: {reason}")
        self.kind = kind
        self.reason = reason


class SessionCreationError(Exception):
    """Raised by an automation client when a session cannot be brought up."""


class MediaSourceError(GatewayError, ValueError):
    """A media source could not be resolved to a file the gateway may upload."""

    http_status = 400
