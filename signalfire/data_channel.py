from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Union

from pyee.asyncio import AsyncIOEventEmitter

from .engine import EngineDataChannel
from .errors import PreconditionError

if TYPE_CHECKING:
    from .peer_connection import PeerConnection

logger = logging.getLogger(__name__)


class DataChannel(AsyncIOEventEmitter):
    """
    Lifecycle wrapper around one engine data channel.

    Re-emits ``open``, ``message(data)``, ``error(exc)`` and ``close`` and
    stops listening to the engine channel once it reports closure.
    """

    def __init__(self, connection: "PeerConnection", raw: EngineDataChannel) -> None:
        super().__init__()
        self.connection = connection
        self.raw = raw
        self._closed = False

        raw.on("open", self._handle_open)
        raw.on("error", self._handle_error)
        raw.on("message", self._handle_message)
        raw.on("close", self._handle_close)

    @property
    def label(self) -> str:
        return self.raw.label

    @property
    def ready_state(self) -> str:
        return self.raw.ready_state

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, data: Union[str, bytes, bytearray, memoryview]) -> None:
        if self._closed:
            raise PreconditionError(f"Data channel {self.label!r} is closed")
        self.raw.send(data)

    async def close(self) -> None:
        """Close the channel and wait until the engine confirms it."""

        if self._closed:
            return

        closed = asyncio.get_running_loop().create_future()

        def on_close() -> None:
            if not closed.done():
                closed.set_result(None)

        self.once("close", on_close)
        self.raw.close()
        await closed

    def _handle_open(self) -> None:
        logger.debug("Data channel %r to %s open", self.label, self.connection.target)
        self.emit("open")

    def _handle_error(self, error: Any) -> None:
        if self.listeners("error"):
            self.emit("error", error)
        else:
            logger.warning("Data channel %r error: %s", self.label, error)

    def _handle_message(self, data: Union[str, bytes]) -> None:
        self.emit("message", data)

    def _handle_close(self) -> None:
        if self._closed:
            return
        self._closed = True

        self.raw.remove_listener("open", self._handle_open)
        self.raw.remove_listener("error", self._handle_error)
        self.raw.remove_listener("message", self._handle_message)
        self.raw.remove_listener("close", self._handle_close)

        logger.debug("Data channel %r to %s closed", self.label, self.connection.target)
        self.emit("close")
