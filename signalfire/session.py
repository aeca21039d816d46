"""
Session requests between two peers.

:class:`IncomingSession` is the recipient's view of a ``session-start`` and
:class:`OutgoingSession` the initiator's. Both start ``PENDING`` and settle
exactly once into a terminal :class:`SessionState`. Settling emits the outcome
event (``accepted``, ``rejected``, ``canceled``, ``timed-out`` or ``error``)
followed by ``settled``, which the client uses to drop the session from its
registry.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from pyee.asyncio import AsyncIOEventEmitter

from .errors import PreconditionError, RequestError, SessionSettledError
from .protocol import Command, Message

if TYPE_CHECKING:
    from .client import Client
    from .peer_connection import PeerConnection

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELED = "canceled"
    TIMED_OUT = "timed-out"
    ERROR = "error"


class IncomingSession(AsyncIOEventEmitter):
    def __init__(self, client: "Client", origin: str) -> None:
        super().__init__()
        self.client = client
        self.origin = origin
        self.state = SessionState.PENDING
        self._responding = False

    @property
    def settled(self) -> bool:
        return self.state is not SessionState.PENDING

    async def accept(self) -> "PeerConnection":
        """Accept the session and return the peer connection the initiator negotiates.

        The initiator becomes the offering side, so the connection is the one
        the client creates when the peer's first signaling message arrives.
        """

        self._ensure_pending()
        self._responding = True

        # Listen before sending; the offer may follow the response closely.
        connection = self.client.wait_for_connection(self.origin)

        try:
            response = await self.client.send(Message(cmd=Command.SESSION_ACCEPT, target=self.origin))
        except BaseException:
            connection.cancel()
            self._responding = False
            raise

        if not response.ok:
            connection.cancel()
            self._responding = False
            error = RequestError(response.reason, response)
            self._settle(SessionState.ERROR, error)
            raise error

        if self.settled:
            connection.cancel()
            self._responding = False
            raise SessionSettledError(f"Session with {self.origin} {self.state.value}")

        def on_settled() -> None:
            if not connection.done():
                connection.set_exception(SessionSettledError(f"Session with {self.origin} {self.state.value}"))

        self.once("settled", on_settled)
        try:
            result = await connection
        finally:
            self._responding = False
            if on_settled in self.listeners("settled"):
                self.remove_listener("settled", on_settled)

        self._settle(SessionState.ACCEPTED, result)
        return result

    async def reject(self, reason: Optional[str] = None) -> None:
        self._ensure_pending()
        self._responding = True

        request = Message(cmd=Command.SESSION_REJECT, target=self.origin)
        if reason:
            request.data = {"message": reason}

        try:
            response = await self.client.send(request)
        finally:
            self._responding = False

        if not response.ok:
            error = RequestError(response.reason, response)
            self._settle(SessionState.ERROR, error)
            raise error

        self._settle(SessionState.REJECTED, reason)

    def handle_cancel(self, reason: Optional[str] = None) -> None:
        self._settle(SessionState.CANCELED, reason)

    def handle_timeout(self) -> None:
        self._settle(SessionState.TIMED_OUT)

    def _ensure_pending(self) -> None:
        if self.settled:
            raise SessionSettledError("Request already settled")
        if self._responding:
            raise PreconditionError("A response to this session is already in flight")

    def _settle(self, state: SessionState, arg: Any = None) -> None:
        if self.settled:
            return

        self.state = state
        logger.info("Incoming session from %s %s", self.origin, state.value)
        if state is SessionState.ERROR and not self.listeners("error"):
            logger.debug("Incoming session from %s failed: %s", self.origin, arg)
        else:
            self.emit(state.value, arg)
        self.emit("settled")


class OutgoingSession(AsyncIOEventEmitter):
    def __init__(self, client: "Client", target: str) -> None:
        super().__init__()
        self.client = client
        self.target = target
        self.state = SessionState.PENDING
        self._canceling = False

    @property
    def settled(self) -> bool:
        return self.state is not SessionState.PENDING

    async def cancel(self, reason: Optional[str] = None) -> None:
        if self.settled:
            raise SessionSettledError("Request already settled")
        if self._canceling:
            raise PreconditionError("A cancel for this session is already in flight")
        self._canceling = True

        request = Message(cmd=Command.SESSION_CANCEL, target=self.target)
        if reason:
            request.data = {"message": reason}

        try:
            response = await self.client.send(request)
        finally:
            self._canceling = False

        if not response.ok:
            error = RequestError(response.reason, response)
            self._settle(SessionState.ERROR, error)
            raise error

        self._settle(SessionState.CANCELED, reason)

    def handle_accept(self) -> "PeerConnection":
        """The peer accepted: create the offering side of the peer connection."""

        if self.settled:
            raise SessionSettledError("Request already settled")

        try:
            connection = self.client.create_peer_connection(self.target)
        except Exception as exc:
            self._settle(SessionState.ERROR, exc)
            raise

        self._settle(SessionState.ACCEPTED, connection)
        return connection

    def handle_reject(self, reason: Optional[str] = None) -> None:
        self._settle(SessionState.REJECTED, reason)

    def handle_timeout(self) -> None:
        self._settle(SessionState.TIMED_OUT)

    def _settle(self, state: SessionState, arg: Any = None) -> None:
        if self.settled:
            return

        self.state = state
        logger.info("Outgoing session to %s %s", self.target, state.value)
        if state is SessionState.ERROR and not self.listeners("error"):
            logger.debug("Outgoing session to %s failed: %s", self.target, arg)
        else:
            self.emit(state.value, arg)
        self.emit("settled")


__all__ = ["SessionState", "IncomingSession", "OutgoingSession"]
