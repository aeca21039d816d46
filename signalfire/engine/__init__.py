"""
Interface of the peer negotiation engine consumed by :class:`~signalfire.peer_connection.PeerConnection`.

An engine owns ICE, DTLS and media for one peer. It reports what happens
through ``pyee`` events:

* ``negotiationneeded()``
* ``icecandidate(candidate)`` with an :class:`IceCandidate`, or ``None`` once
  gathering is complete
* ``connectionstatechange(state)`` with one of :data:`CONNECTION_STATES`
* ``datachannel(channel)`` with an :class:`EngineDataChannel` opened by the peer
* ``track(track, streams)``
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Union

from pyee.asyncio import AsyncIOEventEmitter

from ..protocol import IceCandidate, SessionDescription

CONNECTION_STATES = ("new", "connecting", "connected", "disconnected", "failed", "closed")


class EngineDataChannel(AsyncIOEventEmitter, ABC):
    """One data channel of an engine; emits ``open``, ``message``, ``error`` and ``close``."""

    @property
    @abstractmethod
    def label(self) -> str: ...

    @property
    @abstractmethod
    def ready_state(self) -> str: ...

    @abstractmethod
    def send(self, data: Union[str, bytes, bytearray, memoryview]) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


class NegotiationEngine(AsyncIOEventEmitter, ABC):
    @property
    @abstractmethod
    def connection_state(self) -> str: ...

    @property
    @abstractmethod
    def local_description(self) -> Optional[SessionDescription]: ...

    @abstractmethod
    async def create_offer(self) -> SessionDescription: ...

    @abstractmethod
    async def create_answer(self) -> SessionDescription: ...

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None: ...

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None: ...

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    @abstractmethod
    def create_data_channel(self, label: str) -> EngineDataChannel: ...

    @abstractmethod
    def add_track(self, track: Any, *streams: Any) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


EngineFactory = Callable[[Dict[str, Any]], NegotiationEngine]


def default_engine_factory(config: Dict[str, Any]) -> NegotiationEngine:
    """Build a GStreamer ``webrtcbin`` engine; GStreamer is only imported on first use."""

    from .gstreamer import WebRTCBinEngine

    return WebRTCBinEngine(config)


__all__ = [
    "CONNECTION_STATES",
    "EngineDataChannel",
    "NegotiationEngine",
    "EngineFactory",
    "default_engine_factory",
]
