#!/usr/bin/env python3
"""Command line peer: connect, call or answer another peer and chat over a data channel."""

from __future__ import annotations

import argparse
import asyncio
import sys
from functools import partial
from pathlib import Path
from typing import Optional

from . import connect
from .client import Client
from .config import ClientSettings, ConfigValidationError
from .data_channel import DataChannel
from .errors import SignalFireError
from .log import configure_logging
from .peer_connection import PeerConnection
from .session import IncomingSession


class ChatPeer:
    def __init__(self, settings: ClientSettings, peer_id: Optional[str] = None,
                 auto_accept: bool = False, channel_label: str = "chat",
                 media: bool = False, live: bool = False):
        self.settings = settings
        self.peer_id = peer_id
        self.auto_accept = auto_accept
        self.channel_label = channel_label
        self.media = media
        self.live = live

        self.client: Optional[Client] = None

    async def run(self):
        engine_factory = None
        if self.media:
            from .engine.gstreamer import WebRTCBinEngine

            engine_factory = partial(WebRTCBinEngine, playback=True)

        self.client = await connect(
            self.settings.server_url,
            self.settings.engine_config(),
            engine_factory=engine_factory,
            request_timeout=self.settings.request_timeout,
            welcome_timeout=self.settings.welcome_timeout,
            open_timeout=self.settings.open_timeout,
        )
        print("[SIG] Connected as", self.client.id, flush=True)

        self.client.on("session", self.on_session)
        self.client.on("incoming", self.on_incoming)
        self.client.on("error", lambda exc: print("[SIG][ERROR]", exc, flush=True))
        self.client.on("close", lambda: print("[SIG] Connection closed", flush=True))

        if self.peer_id:
            await self.call(self.peer_id)

        await self.client.wait_closed()

    async def call(self, peer_id: str):
        session = await self.client.create_session(peer_id)
        print("[SIG] Session request sent to", peer_id, flush=True)

        session.on("accepted", self.on_accepted)
        session.on("rejected", lambda reason: print("[SIG] Rejected by", peer_id, reason or "", flush=True))
        session.on("timed-out", lambda _: print("[SIG] No answer from", peer_id, flush=True))

    # ---------- signaling callbacks ----------
    def on_session(self, session: IncomingSession):
        print("[SIG] Session request from", session.origin, flush=True)
        if self.auto_accept:
            asyncio.ensure_future(self._answer(session))
        else:
            asyncio.ensure_future(self._decline(session, "busy"))

    async def _answer(self, session: IncomingSession):
        try:
            await session.accept()
        except SignalFireError as exc:
            print("[SIG][ERROR] Accept failed:", exc, flush=True)

    async def _decline(self, session: IncomingSession, reason: str):
        try:
            await session.reject(reason)
        except SignalFireError as exc:
            print("[SIG][ERROR] Reject failed:", exc, flush=True)

    def on_accepted(self, connection: PeerConnection):
        """We called and the peer accepted: we are the offering side."""
        print("[WEBRTC] Session accepted by", connection.target, flush=True)
        self.watch(connection)
        self.watch_channel(connection.create_data_channel(self.channel_label))

        if self.media:
            from .engine.gstreamer import media_source

            connection.add_track(media_source("video", live=self.live))
            connection.add_track(media_source("audio", live=self.live))

    def on_incoming(self, connection: PeerConnection):
        print("[WEBRTC] Incoming connection from", connection.target, flush=True)
        self.watch(connection)

    # ---------- webrtc callbacks ----------
    def watch(self, connection: PeerConnection):
        peer = connection.target
        connection.on("connected", lambda: print("[WEBRTC] Connected to", peer, flush=True))
        connection.on("failed", lambda: print("[WEBRTC] Connection to", peer, "failed", flush=True))
        connection.on("close", lambda: print("[WEBRTC] Connection to", peer, "closed", flush=True))
        connection.on("error", lambda exc: print("[WEBRTC][ERROR]", exc, flush=True))
        connection.on("track", lambda track, streams: print("[WEBRTC] Incoming stream from", peer, flush=True))
        connection.on("data-channel", self.watch_channel)

    def watch_channel(self, channel: DataChannel):
        def on_open():
            print("[WEBRTC] DataChannel opened:", channel.label, flush=True)
            channel.send("hello-from-" + str(self.client.id))

        channel.on("open", on_open)
        channel.on("message", lambda msg: print("[DATA-CHANNEL]", msg, flush=True))
        channel.on("close", lambda: print("[WEBRTC] DataChannel closed:", channel.label, flush=True))


def parse_args(argv=None):
    ap = argparse.ArgumentParser(prog="signalfire")
    ap.add_argument("--config", type=Path, help="JSON settings file")
    ap.add_argument("--server", help="WS signaling URL")
    ap.add_argument("--call", metavar="PEER", help="remote peer id to call")
    ap.add_argument("--auto-accept", action="store_true", help="accept incoming sessions")
    ap.add_argument("--channel", default="chat", help="data channel label")
    ap.add_argument("--stun", help="STUN server, e.g. stun:stun.l.google.com:19302")
    ap.add_argument("--media", action="store_true", help="send audio/video test streams")
    ap.add_argument("--camera", action="store_true", help="use camera and mic instead of test streams")
    ap.add_argument("--request-timeout", type=float, help="seconds to wait for each server response")
    ap.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    return ap.parse_args(argv)


def build_settings(args) -> ClientSettings:
    settings = ClientSettings.from_env(base=ClientSettings.from_file(args.config))
    if args.server:
        settings.server_url = args.server
    if args.stun:
        settings.ice_servers = [{"urls": args.stun}]
    if args.request_timeout:
        settings.request_timeout = args.request_timeout
    if args.log_level:
        settings.log_level = args.log_level.upper()
    settings.validate()
    return settings


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        settings = build_settings(args)
    except ConfigValidationError as exc:
        print("[CONFIG][ERROR]", exc, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)
    peer = ChatPeer(settings, peer_id=args.call, auto_accept=args.auto_accept,
                    channel_label=args.channel, media=args.media or args.camera, live=args.camera)
    try:
        asyncio.run(peer.run())
    except (SignalFireError, OSError) as exc:
        print("[SIG][ERROR]", exc, file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
