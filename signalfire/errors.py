"""Exceptions raised by the signaling client."""

from __future__ import annotations

from typing import Optional


class SignalFireError(Exception):
    """Base class for every error raised by this package."""


class ProtocolError(SignalFireError):
    """A frame or payload that does not follow the wire protocol.

    Protocol errors are fatal to the connection; ``close_code`` is the
    WebSocket close code used when the client drops it.
    """

    def __init__(self, message: str, close_code: int = 1002) -> None:
        super().__init__(message)
        self.close_code = close_code


class RequestError(SignalFireError):
    """The server answered a request with ``ok: false``."""

    def __init__(self, reason: Optional[str], response=None) -> None:
        super().__init__(reason or "Request failed")
        self.reason = reason
        self.response = response


class RequestTimeoutError(RequestError):
    """No response arrived within the configured request timeout."""


class PreconditionError(SignalFireError):
    """An operation was refused locally, before anything reached the wire."""


class SessionSettledError(PreconditionError):
    """The session has already reached a terminal state."""


class ConnectionClosedBeforeWelcome(SignalFireError):
    """The socket closed before the server assigned a local identity."""


__all__ = [
    "SignalFireError",
    "ProtocolError",
    "RequestError",
    "RequestTimeoutError",
    "PreconditionError",
    "SessionSettledError",
    "ConnectionClosedBeforeWelcome",
]
