"""Error taxonomy for the chat synchronization core.

Service code raises these; the HTTP layer translates them into
`fastapi.HTTPException` responses.
"""

from __future__ import annotations

from typing import Any, Optional


class ChatSyncError(Exception):
    """Base class for every error raised by the chat core."""


class InvalidCredential(ChatSyncError):
    """The completion credential is malformed and was never sent."""


class NotAuthenticated(ChatSyncError):
    """An operation needs an authenticated principal and none is present."""


class TurnInProgress(ChatSyncError):
    """A turn is already awaiting a response or streaming."""


class PersistenceError(ChatSyncError):
    """A durable write failed."""


class StreamReadError(ChatSyncError):
    """The transport failed while reading the response stream."""


class EndpointError(ChatSyncError):
    """The completion endpoint rejected the request.

    Attributes:
        status_code: HTTP status returned by the endpoint (None if unknown).
        body: Best-effort decoded error body.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class Unauthorized(EndpointError):
    """The endpoint rejected the credential."""


class RateLimited(EndpointError):
    """The endpoint reported a rate or quota limit."""
