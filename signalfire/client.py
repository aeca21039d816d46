"""
Connection hub for one signaling WebSocket.

The :class:`Client` is the only reader and writer of the socket. A single
receive loop decodes frames, hands responses to the request waiting for them
and routes pushes to the session or peer connection they concern. Sessions and
peer connections talk to the server exclusively through :meth:`Client.send`.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional, Set

from pyee.asyncio import AsyncIOEventEmitter
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from .config import merge_engine_config
from .engine import EngineFactory, default_engine_factory
from .errors import (
    PreconditionError,
    ProtocolError,
    RequestError,
    RequestTimeoutError,
    SignalFireError,
)
from .peer_connection import PeerConnection
from .protocol import (
    CLOSE_PROTOCOL_ERROR,
    PEER_COMMANDS,
    PROTOCOL,
    SESSION_UPDATES,
    Command,
    Message,
    decode_message,
    encode_message,
)
from .session import IncomingSession, OutgoingSession

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)


class Client(AsyncIOEventEmitter):
    """Signaling client bound to an open WebSocket.

    Events:

    * ``welcome(id)``: the server assigned our identity.
    * ``session(session)``: a peer wants to start an :class:`IncomingSession`.
    * ``incoming(connection)``: a peer started negotiating a new :class:`PeerConnection`.
    * ``error(exc)``: something failed outside of any caller.
    * ``close``: the socket closed; nothing else will be dispatched.

    ``config`` holds the engine defaults (an ``RTCConfiguration``-like dict).
    ``request_timeout`` bounds every :meth:`send`; ``None`` waits for as long
    as the connection stays open.
    """

    def __init__(
        self,
        socket: "ClientConnection",
        config: Optional[Mapping[str, Any]] = None,
        *,
        engine_factory: Optional[EngineFactory] = None,
        request_timeout: Optional[float] = None,
    ) -> None:
        super().__init__()

        if socket.state is not State.OPEN:
            raise PreconditionError("Expected an open socket")
        if socket.subprotocol != PROTOCOL:
            raise ProtocolError(
                f"Expected protocol to be {PROTOCOL} but got {socket.subprotocol or 'none'}",
                CLOSE_PROTOCOL_ERROR,
            )

        self.socket = socket
        self.config: Dict[str, Any] = dict(config or {})
        self.engine_factory = engine_factory or default_engine_factory
        self.request_timeout = request_timeout
        self.id: Optional[str] = None

        self._connections: Dict[str, PeerConnection] = {}
        self._pending_responses: Dict[str, "asyncio.Future[Message]"] = {}
        self._incoming_sessions: Dict[str, IncomingSession] = {}
        self._outgoing_sessions: Dict[str, OutgoingSession] = {}
        self._starting: Set[str] = set()
        self._receive_task: Optional["asyncio.Task[None]"] = None
        self._closed = False

    # ---------- lifecycle ----------
    @property
    def is_open(self) -> bool:
        return not self._closed and self.socket.state is State.OPEN

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> "asyncio.Task[None]":
        """Start the receive loop; calling it again returns the running loop task."""

        if self._receive_task is None:
            self._receive_task = asyncio.ensure_future(self._receive_loop())
        return self._receive_task

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.socket.close(code, reason)
        await self.wait_closed()

    async def wait_closed(self) -> None:
        if self._receive_task is not None:
            await asyncio.shield(self._receive_task)

    # ---------- registries ----------
    @property
    def connections(self) -> Dict[str, PeerConnection]:
        return dict(self._connections)

    @property
    def incoming_sessions(self) -> Dict[str, IncomingSession]:
        return dict(self._incoming_sessions)

    @property
    def outgoing_sessions(self) -> Dict[str, OutgoingSession]:
        return dict(self._outgoing_sessions)

    def get_peer_connection(self, target: str) -> Optional[PeerConnection]:
        return self._connections.get(target)

    def wait_for_connection(self, target: str) -> "asyncio.Future[PeerConnection]":
        """Future resolved with the peer connection for ``target`` once it exists."""

        future: "asyncio.Future[PeerConnection]" = asyncio.get_running_loop().create_future()

        existing = self._connections.get(target)
        if existing is not None:
            future.set_result(existing)
            return future

        def on_incoming(connection: PeerConnection) -> None:
            if connection.target == target and not future.done():
                future.set_result(connection)

        self.on("incoming", on_incoming)
        future.add_done_callback(lambda _: self.remove_listener("incoming", on_incoming))
        return future

    # ---------- operations ----------
    async def create_session(self, target: str) -> OutgoingSession:
        """Ask the server to start a session with ``target``."""

        self._check_target(target)
        if target in self._connections:
            raise PreconditionError("Peer connection already established")
        if (
            target in self._incoming_sessions
            or target in self._outgoing_sessions
            or target in self._starting
        ):
            raise PreconditionError("Session request already active")

        self._starting.add(target)
        try:
            response = await self.send(Message(cmd=Command.SESSION_START, target=target))
        finally:
            self._starting.discard(target)

        if not response.ok:
            raise RequestError(response.reason, response)

        session = OutgoingSession(self, target)
        session.once("settled", self._forget(self._outgoing_sessions, target, session))
        self._outgoing_sessions[target] = session
        logger.info("Session request to %s pending", target)
        return session

    def create_peer_connection(
        self, target: str, config: Optional[Mapping[str, Any]] = None
    ) -> PeerConnection:
        self._check_target(target)
        if target in self._connections:
            raise PreconditionError("Peer connection already created")

        engine = self.engine_factory(merge_engine_config(self.config, config))
        connection = PeerConnection(self, target, engine)

        connection.once("close", self._forget(self._connections, target, connection))
        self._connections[target] = connection
        return connection

    async def send(self, message: Message) -> Message:
        """Write ``message`` and wait for the response carrying the same id."""

        if not self.is_open:
            raise PreconditionError("Socket not open")
        if message.target is not None and message.target == self.id:
            raise PreconditionError("Cannot send a message to ourselves")

        if message.id is None:
            message.id = uuid.uuid4().hex
        if message.id in self._pending_responses:
            raise PreconditionError(f"Request {message.id} already pending")

        future: "asyncio.Future[Message]" = asyncio.get_running_loop().create_future()
        self._pending_responses[message.id] = future

        try:
            logger.debug("Sending %s %s to %s", message.cmd, message.id, message.target)
            await self.socket.send(encode_message(message))
            if self.request_timeout is None:
                return await future
            return await asyncio.wait_for(future, self.request_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"No response to {message.cmd} within {self.request_timeout}s"
            ) from None
        finally:
            if self._pending_responses.get(message.id) is future:
                del self._pending_responses[message.id]

    # ---------- inbound dispatch ----------
    async def _receive_loop(self) -> None:
        try:
            async for frame in self.socket:
                try:
                    self._handle_frame(frame)
                except ProtocolError as exc:
                    logger.warning("Protocol error, closing connection: %s", exc)
                    self._emit_error(exc)
                    await self.socket.close(exc.close_code, str(exc))
                    break
                except Exception as exc:
                    # Anything else, engine and listener failures included,
                    # only affects the frame at hand.
                    self._emit_error(exc)
        except ConnectionClosed as exc:
            logger.info("Signaling connection closed: %s", exc)
        finally:
            self._handle_close()

    def _handle_frame(self, frame: Any) -> None:
        message = decode_message(frame)

        if message.id is not None and message.id in self._pending_responses:
            future = self._pending_responses.pop(message.id)
            if not future.done():
                future.set_result(message)
            return

        if message.ok is not None:
            logger.warning("Dropping response %s with no pending request", message.id)
            return

        logger.debug("Received %s from %s", message.cmd, message.origin)

        if message.cmd == Command.WELCOME:
            self._handle_welcome(message)
        elif message.cmd == Command.SESSION_START:
            self._handle_session_start(message)
        elif message.cmd in SESSION_UPDATES:
            self._handle_session_update(message)
        elif message.cmd in PEER_COMMANDS:
            self._handle_peer_message(message)
        else:
            logger.warning("Ignoring message with unknown command %r", message.cmd)

    def _handle_welcome(self, message: Message) -> None:
        payload = message.payload()

        if self.id is not None:
            raise SignalFireError(f"Local identity already assigned ({self.id})")

        self.id = payload.id
        if payload.config:
            self.config = merge_engine_config(self.config, payload.config)

        logger.info("Welcomed by the signaling server as %s", self.id)
        self.emit("welcome", self.id)

    def _handle_session_start(self, message: Message) -> None:
        origin = self._origin(message)
        message.payload()

        if (
            origin in self._connections
            or origin in self._incoming_sessions
            or origin in self._outgoing_sessions
            or origin in self._starting
        ):
            raise PreconditionError(f"Session request from {origin} while one is already active")

        session = IncomingSession(self, origin)
        session.once("settled", self._forget(self._incoming_sessions, origin, session))
        self._incoming_sessions[origin] = session

        logger.info("Session request from %s", origin)
        self.emit("session", session)

    def _handle_session_update(self, message: Message) -> None:
        origin = self._origin(message)
        reason = message.payload().message

        incoming = self._incoming_sessions.get(origin)
        if incoming is not None:
            if message.cmd == Command.SESSION_CANCEL:
                incoming.handle_cancel(reason)
            elif message.cmd == Command.SESSION_TIMEOUT:
                incoming.handle_timeout()
            return

        outgoing = self._outgoing_sessions.get(origin)
        if outgoing is not None:
            if message.cmd == Command.SESSION_ACCEPT:
                outgoing.handle_accept()
            elif message.cmd == Command.SESSION_REJECT:
                outgoing.handle_reject(reason)
            elif message.cmd == Command.SESSION_TIMEOUT:
                outgoing.handle_timeout()
            return

        logger.debug("Ignoring %s from %s without a pending session", message.cmd, origin)

    def _handle_peer_message(self, message: Message) -> None:
        origin = self._origin(message)
        message.payload()

        connection = self._connections.get(origin)
        if connection is None:
            connection = self.create_peer_connection(origin)
            logger.info("Incoming peer connection from %s", origin)
            self.emit("incoming", connection)

        connection.dispatch(message)

    def _handle_close(self) -> None:
        if self._closed:
            return
        self._closed = True

        logger.info("Client %s disconnected", self.id)
        self.emit("close")

    # ---------- helpers ----------
    def _check_target(self, target: str) -> None:
        if not target:
            raise PreconditionError("A target peer id is required")
        if target == self.id:
            raise PreconditionError("Cannot target the local peer")

    @staticmethod
    def _origin(message: Message) -> str:
        if not message.origin:
            raise ProtocolError(f"Missing origin on {message.cmd} message", CLOSE_PROTOCOL_ERROR)
        return message.origin

    @staticmethod
    def _forget(registry: Dict[str, Any], key: str, entry: Any) -> Callable[[], None]:
        def forget() -> None:
            if registry.get(key) is entry:
                del registry[key]

        return forget

    def _emit_error(self, error: Exception) -> None:
        if self.listeners("error"):
            self.emit("error", error)
        else:
            logger.error("Unhandled client error: %s", error, exc_info=error)
