"""
Offer/answer/ICE orchestration for one remote peer.

A :class:`PeerConnection` plays one of two roles depending on how it was made:

* offering: created when our outgoing session is accepted. The engine's
  ``negotiationneeded`` event makes us create and send an offer, and the
  peer's ``answer`` is applied as the remote description.
* answering: created lazily by the client when the peer's first signaling
  message arrives. An ``offer`` is applied and answered.

Inbound signaling is applied to the engine one message at a time, in arrival
order. ICE candidates received before any remote description are held back
and applied once it is set.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Dict, List, Optional, Set

from pyee.asyncio import AsyncIOEventEmitter

from .data_channel import DataChannel
from .engine import EngineDataChannel, NegotiationEngine
from .errors import PreconditionError, RequestError
from .protocol import (
    Command,
    IceCandidate,
    Message,
    SessionDescription,
    candidate_data,
    description_data,
)

if TYPE_CHECKING:
    from .client import Client

logger = logging.getLogger(__name__)


class PeerConnection(AsyncIOEventEmitter):
    """Emits ``connected``, ``failed``, ``close``, ``track`` and ``data-channel``."""

    def __init__(self, client: "Client", target: str, engine: NegotiationEngine) -> None:
        super().__init__()
        self.client = client
        self.target = target
        self.engine = engine

        self._data_channels: Dict[str, DataChannel] = {}
        self._pending_candidates: List[IceCandidate] = []
        self._has_remote_description = False
        self._closed = False
        self._negotiation_lock = asyncio.Lock()
        self._tasks: Set["asyncio.Future[Any]"] = set()

        engine.on("negotiationneeded", self._handle_negotiation_needed)
        engine.on("icecandidate", self._handle_ice_candidate)
        engine.on("connectionstatechange", self._handle_connection_state_change)
        engine.on("datachannel", self._handle_data_channel)
        engine.on("track", self._handle_track)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connection_state(self) -> str:
        return self.engine.connection_state

    @property
    def data_channels(self) -> Dict[str, DataChannel]:
        return dict(self._data_channels)

    def add_track(self, track: Any, *streams: Any) -> None:
        self.engine.add_track(track, *streams)

    def create_data_channel(self, label: str) -> DataChannel:
        if self._closed:
            raise PreconditionError(f"Peer connection to {self.target} is closed")
        if label in self._data_channels:
            raise PreconditionError(f"Data channel {label!r} already created")

        raw = self.engine.create_data_channel(label)
        return self._register_data_channel(DataChannel(self, raw))

    def get_data_channel(self, label: str) -> Optional[DataChannel]:
        return self._data_channels.get(label)

    def close(self) -> None:
        self.engine.close()

    def dispatch(self, message: Message) -> "asyncio.Future[Any]":
        """Schedule :meth:`handle_message` without blocking the caller."""

        return self._spawn(self.handle_message(message))

    async def handle_message(self, message: Message) -> None:
        """Apply one relayed ``ice``, ``offer`` or ``answer`` message."""

        payload = message.payload()
        answer: Optional[SessionDescription] = None

        async with self._negotiation_lock:
            if message.cmd == Command.ICE:
                if self._has_remote_description:
                    await self.engine.add_ice_candidate(payload.candidate)
                else:
                    self._pending_candidates.append(payload.candidate)
            elif message.cmd == Command.OFFER:
                logger.debug("Offer received from %s", self.target)
                await self._apply_remote_description(payload.sdp)
                local = await self.engine.create_answer()
                await self.engine.set_local_description(local)
                answer = self.engine.local_description or local
            elif message.cmd == Command.ANSWER:
                logger.debug("Answer received from %s", self.target)
                await self._apply_remote_description(payload.sdp)
            else:
                logger.warning("Ignoring %r message for peer connection %s", message.cmd, self.target)

        if answer is not None:
            await self._send(Command.ANSWER, description_data(answer))

    async def _apply_remote_description(self, description: SessionDescription) -> None:
        await self.engine.set_remote_description(description)
        self._has_remote_description = True

        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self.engine.add_ice_candidate(candidate)

    async def _send(self, cmd: Command, data: Dict[str, Any]) -> None:
        response = await self.client.send(Message(cmd=cmd, target=self.target, data=data))
        if response.ok is False:
            raise RequestError(response.reason, response)

    def _spawn(self, coro: Awaitable[Any]) -> "asyncio.Future[Any]":
        task = asyncio.ensure_future(self._guard(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Awaitable[Any]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._report_error(exc)

    def _report_error(self, error: Exception) -> None:
        if self.listeners("error"):
            self.emit("error", error)
        else:
            logger.error("Peer connection to %s failed to negotiate: %s", self.target, error, exc_info=error)

    def _register_data_channel(self, channel: DataChannel) -> DataChannel:
        label = channel.label

        def on_close() -> None:
            if self._data_channels.get(label) is channel:
                del self._data_channels[label]

        channel.once("close", on_close)
        self._data_channels[label] = channel
        return channel

    # ---------- engine callbacks ----------
    def _handle_negotiation_needed(self) -> None:
        if self._closed:
            return
        self._spawn(self._negotiate())

    async def _negotiate(self) -> None:
        async with self._negotiation_lock:
            offer = await self.engine.create_offer()
            await self.engine.set_local_description(offer)
            description = self.engine.local_description or offer

        logger.debug("Sending offer to %s", self.target)
        await self._send(Command.OFFER, description_data(description))

    def _handle_ice_candidate(self, candidate: Optional[IceCandidate]) -> None:
        # None marks the end of gathering and is not relayed.
        if candidate is None or self._closed:
            return
        self._spawn(self._send(Command.ICE, candidate_data(candidate)))

    def _handle_connection_state_change(self, state: str) -> None:
        logger.debug("Peer connection to %s is %s", self.target, state)
        if state == "connected":
            self.emit("connected")
        elif state == "failed":
            self.emit("failed")
            self._handle_close()
        elif state == "closed":
            self._handle_close()

    def _handle_data_channel(self, raw: EngineDataChannel) -> None:
        channel = self._register_data_channel(DataChannel(self, raw))
        self.emit("data-channel", channel)

    def _handle_track(self, track: Any, streams: Any = ()) -> None:
        self.emit("track", track, streams)

    def _handle_close(self) -> None:
        if self._closed:
            return
        self._closed = True

        self.engine.remove_listener("negotiationneeded", self._handle_negotiation_needed)
        self.engine.remove_listener("icecandidate", self._handle_ice_candidate)
        self.engine.remove_listener("connectionstatechange", self._handle_connection_state_change)
        self.engine.remove_listener("datachannel", self._handle_data_channel)
        self.engine.remove_listener("track", self._handle_track)

        logger.info("Peer connection to %s closed", self.target)
        self.emit("close")
