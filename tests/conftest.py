"""Shared fakes: an in-memory WebSocket and a scripted negotiation engine."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Dict, List, Optional, TypeVar, Union

import pytest
import pytest_asyncio
from websockets.protocol import State

from signalfire.client import Client
from signalfire.engine import EngineDataChannel, NegotiationEngine
from signalfire.protocol import PROTOCOL, IceCandidate, SessionDescription

_CLOSED = object()
WAIT_TIMEOUT = 2.0

T = TypeVar("T")


class FakeSocket:
    """Stands in for ``websockets`` ``ClientConnection``.

    ``feed`` returns once the client has finished dispatching the frame, i.e.
    when it asks for the next one. With ``auto_ack`` every outbound request
    is answered with ``{"ok": true}``.
    """

    def __init__(self, subprotocol: Optional[str] = PROTOCOL) -> None:
        self.subprotocol = subprotocol
        self.state = State.OPEN
        self.sent: List[Dict[str, Any]] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.auto_ack = False
        self._inbound: "asyncio.Queue[Any]" = asyncio.Queue()
        self._current: Optional[asyncio.Event] = None

    async def send(self, frame: str) -> None:
        message = json.loads(frame)
        self.sent.append(message)
        if self.auto_ack:
            self._inbound.put_nowait((json.dumps({"id": message["id"], "ok": True}), asyncio.Event()))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.state is State.CLOSED:
            return
        self.state = State.CLOSED
        self.close_code = code
        self.close_reason = reason
        self._ack()
        self._inbound.put_nowait(_CLOSED)

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> Union[str, bytes]:
        self._ack()
        item = await self._inbound.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        frame, self._current = item
        return frame

    def push(self, message: Union[Dict[str, Any], str, bytes]) -> asyncio.Event:
        """Queue a frame without waiting for it to be dispatched."""

        frame = message if isinstance(message, (str, bytes)) else json.dumps(message)
        done = asyncio.Event()
        self._inbound.put_nowait((frame, done))
        return done

    async def feed(self, message: Union[Dict[str, Any], str, bytes]) -> None:
        await within(self.push(message).wait())

    async def reply(self, ok: bool = True, data: Optional[Dict[str, Any]] = None, index: int = -1) -> Dict[str, Any]:
        """Answer a recorded request (the last one by default)."""

        request = self.sent[index]
        response: Dict[str, Any] = {"id": request["id"], "ok": ok}
        if data is not None:
            response["data"] = data
        await self.feed(response)
        return request

    def sent_commands(self) -> List[str]:
        return [message.get("cmd") for message in self.sent]

    def _ack(self) -> None:
        if self._current is not None:
            self._current.set()
            self._current = None


class FakeChannel(EngineDataChannel):
    def __init__(self, label: str) -> None:
        super().__init__()
        self._label = label
        self._ready_state = "connecting"
        self.sent: List[Any] = []
        self.close_requested = False

    @property
    def label(self) -> str:
        return self._label

    @property
    def ready_state(self) -> str:
        return self._ready_state

    def send(self, data: Any) -> None:
        self.sent.append(data)

    def close(self) -> None:
        self.close_requested = True
        self._ready_state = "closing"

    def open(self) -> None:
        self._ready_state = "open"
        self.emit("open")

    def receive(self, data: Any) -> None:
        self.emit("message", data)

    def confirm_close(self) -> None:
        self._ready_state = "closed"
        self.emit("close")


class FakeEngine(NegotiationEngine):
    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        super().__init__()
        self.config = config or {}
        self.calls: List[str] = []
        self.remote_description: Optional[SessionDescription] = None
        self.candidates: List[IceCandidate] = []
        self.tracks: List[Any] = []
        self.channels: List[FakeChannel] = []
        self._local_description: Optional[SessionDescription] = None
        self._state = "new"

    @property
    def connection_state(self) -> str:
        return self._state

    @property
    def local_description(self) -> Optional[SessionDescription]:
        return self._local_description

    async def create_offer(self) -> SessionDescription:
        self.calls.append("create_offer")
        return SessionDescription(type="offer", sdp="v=0 local-offer")

    async def create_answer(self) -> SessionDescription:
        self.calls.append("create_answer")
        return SessionDescription(type="answer", sdp="v=0 local-answer")

    async def set_local_description(self, description: SessionDescription) -> None:
        self.calls.append("set_local_description")
        self._local_description = description

    async def set_remote_description(self, description: SessionDescription) -> None:
        self.calls.append("set_remote_description")
        self.remote_description = description

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        self.calls.append("add_ice_candidate")
        self.candidates.append(candidate)

    def create_data_channel(self, label: str) -> FakeChannel:
        channel = FakeChannel(label)
        self.channels.append(channel)
        return channel

    def add_track(self, track: Any, *streams: Any) -> None:
        self.tracks.append((track, streams))
        self.emit("negotiationneeded")

    def close(self) -> None:
        self.set_state("closed")

    def set_state(self, state: str) -> None:
        self._state = state
        self.emit("connectionstatechange", state)


class EngineRecorder:
    """Engine factory that keeps every engine it builds."""

    def __init__(self) -> None:
        self.engines: List[FakeEngine] = []

    def __call__(self, config: Dict[str, Any]) -> FakeEngine:
        engine = FakeEngine(config)
        self.engines.append(engine)
        return engine

    @property
    def last(self) -> FakeEngine:
        return self.engines[-1]


async def within(awaitable: Awaitable[T], timeout: float = WAIT_TIMEOUT) -> T:
    """Await with a bound so a stuck negotiation fails the test instead of hanging it."""

    return await asyncio.wait_for(awaitable, timeout)


async def flush(rounds: int = 10) -> None:
    """Let spawned tasks run to their next suspension point."""

    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def socket() -> FakeSocket:
    return FakeSocket()


@pytest.fixture
def engines() -> EngineRecorder:
    return EngineRecorder()


@pytest_asyncio.fixture
async def client(socket: FakeSocket, engines: EngineRecorder):
    client = Client(socket, {"iceServers": [{"urls": "stun:stun.example.com"}]}, engine_factory=engines)
    client.start()
    await socket.feed({"cmd": "welcome", "data": {"id": "A"}})
    yield client
    await client.close()
