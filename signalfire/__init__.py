"""Signal-Fire signaling client.

Modules:
- ``protocol`` wire schema and command vocabulary.
- ``client`` the connection hub: dispatch, request correlation, registries.
- ``session`` incoming and outgoing session state machines.
- ``peer_connection`` offer/answer/ICE orchestration for one peer.
- ``data_channel`` lifecycle wrapper for engine data channels.
- ``engine`` the negotiation engine interface and its GStreamer implementation.
- ``config`` and ``log`` settings and logging setup.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

import websockets

from .client import Client
from .data_channel import DataChannel
from .engine import EngineFactory
from .errors import (
    ConnectionClosedBeforeWelcome,
    PreconditionError,
    ProtocolError,
    RequestError,
    RequestTimeoutError,
    SessionSettledError,
    SignalFireError,
)
from .peer_connection import PeerConnection
from .protocol import CLOSE_POLICY_VIOLATION, PROTOCOL, Command, Message
from .session import IncomingSession, OutgoingSession, SessionState

logger = logging.getLogger(__name__)


async def connect(
    url: str,
    config: Optional[Mapping[str, Any]] = None,
    *,
    engine_factory: Optional[EngineFactory] = None,
    request_timeout: Optional[float] = None,
    welcome_timeout: Optional[float] = None,
    **connect_kwargs: Any,
) -> Client:
    """Connect to a Signal-Fire server and wait until it assigns our identity.

    ``config`` holds the engine defaults; ``connect_kwargs`` go to
    :func:`websockets.connect`.
    """

    socket = await websockets.connect(url, subprotocols=[PROTOCOL], **connect_kwargs)

    try:
        client = Client(
            socket,
            config,
            engine_factory=engine_factory,
            request_timeout=request_timeout,
        )
    except ProtocolError as exc:
        await socket.close(exc.close_code, str(exc))
        raise
    except SignalFireError:
        await socket.close()
        raise

    welcomed: "asyncio.Future[str]" = asyncio.get_running_loop().create_future()

    def on_welcome(local_id: str) -> None:
        if not welcomed.done():
            welcomed.set_result(local_id)

    def on_close() -> None:
        if not welcomed.done():
            welcomed.set_exception(ConnectionClosedBeforeWelcome(f"{url} closed before welcome"))

    client.once("welcome", on_welcome)
    client.once("close", on_close)
    client.start()

    try:
        await asyncio.wait_for(welcomed, welcome_timeout)
    except asyncio.TimeoutError:
        await client.close(CLOSE_POLICY_VIOLATION, "No welcome received")
        raise SignalFireError(f"No welcome from {url} within {welcome_timeout}s") from None
    finally:
        for event, handler in (("welcome", on_welcome), ("close", on_close)):
            if handler in client.listeners(event):
                client.remove_listener(event, handler)

    logger.info("Connected to %s as %s", url, client.id)
    return client


__all__ = [
    "PROTOCOL",
    "connect",
    "Client",
    "Command",
    "Message",
    "IncomingSession",
    "OutgoingSession",
    "SessionState",
    "PeerConnection",
    "DataChannel",
    "SignalFireError",
    "ProtocolError",
    "RequestError",
    "RequestTimeoutError",
    "PreconditionError",
    "SessionSettledError",
    "ConnectionClosedBeforeWelcome",
]
