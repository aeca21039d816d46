"""Tests for opening a client with ``signalfire.connect``."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Tuple

import pytest
import websockets

from signalfire import connect
from signalfire.errors import ConnectionClosedBeforeWelcome, ProtocolError, SignalFireError
from signalfire.protocol import CLOSE_POLICY_VIOLATION, CLOSE_PROTOCOL_ERROR, PROTOCOL

from .conftest import EngineRecorder, FakeSocket, flush, within

SERVER_URL = "ws://signal.example.com"


class Dialer:
    """Replacement for ``websockets.connect`` handing out a prepared socket."""

    def __init__(self, socket: FakeSocket) -> None:
        self.socket = socket
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    async def __call__(self, url: str, **kwargs: Any) -> FakeSocket:
        self.calls.append((url, kwargs))
        return self.socket


@pytest.fixture
def dialer(monkeypatch: pytest.MonkeyPatch, socket: FakeSocket) -> Dialer:
    dialer = Dialer(socket)
    monkeypatch.setattr(websockets, "connect", dialer)
    return dialer


@pytest.mark.asyncio
async def test_connect_returns_once_welcomed(dialer: Dialer, socket: FakeSocket, engines: EngineRecorder) -> None:
    task = asyncio.create_task(
        connect(SERVER_URL, {"iceServers": []}, engine_factory=engines, open_timeout=5)
    )
    await flush()
    assert not task.done()

    socket.push({"cmd": "welcome", "data": {"id": "A", "config": {"bundlePolicy": "balanced"}}})
    client = await within(task)

    assert client.id == "A"
    assert client.config == {"iceServers": [], "bundlePolicy": "balanced"}
    assert dialer.calls == [(SERVER_URL, {"subprotocols": [PROTOCOL], "open_timeout": 5})]
    assert client.listeners("welcome") == []
    assert client.listeners("close") == []
    await client.close()


@pytest.mark.asyncio
async def test_connect_fails_when_closed_before_welcome(dialer: Dialer, socket: FakeSocket) -> None:
    task = asyncio.create_task(connect(SERVER_URL))
    await flush()

    await socket.close(1001, "going away")

    with pytest.raises(ConnectionClosedBeforeWelcome):
        await within(task)


@pytest.mark.asyncio
async def test_connect_gives_up_without_welcome(dialer: Dialer, socket: FakeSocket) -> None:
    with pytest.raises(SignalFireError, match="No welcome"):
        await within(connect(SERVER_URL, welcome_timeout=0.01))

    assert socket.close_code == CLOSE_POLICY_VIOLATION


@pytest.mark.asyncio
async def test_connect_rejects_other_subprotocols(dialer: Dialer) -> None:
    dialer.socket = FakeSocket(subprotocol=None)

    with pytest.raises(ProtocolError):
        await within(connect(SERVER_URL))

    assert dialer.socket.close_code == CLOSE_PROTOCOL_ERROR
    assert PROTOCOL in dialer.socket.close_reason
