"""
Negotiation engine built on GStreamer's ``webrtcbin``.

webrtcbin calls back from GStreamer streaming threads, so every signal is
hopped onto the asyncio loop with ``call_soon_threadsafe`` before it is
re-emitted, and Gst promises are bridged to asyncio futures.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Union

import gi

gi.require_version("Gst", "1.0")
gi.require_version("GstSdp", "1.0")
gi.require_version("GstWebRTC", "1.0")
from gi.repository import GLib, Gst, GstSdp, GstWebRTC  # noqa: E402

from ..config import ice_server_uris  # noqa: E402
from ..protocol import IceCandidate, SessionDescription  # noqa: E402
from . import EngineDataChannel, NegotiationEngine  # noqa: E402

Gst.init(None)

logger = logging.getLogger(__name__)

VIDEO_PAYLOADER = (
    "videoconvert ! queue ! vp8enc deadline=1 ! rtpvp8pay pt=96 ! "
    "application/x-rtp,media=video,encoding-name=VP8,payload=96"
)
AUDIO_PAYLOADER = (
    "audioconvert ! audioresample ! queue ! opusenc ! rtpopuspay pt=111 ! "
    "application/x-rtp,media=audio,encoding-name=OPUS,payload=111"
)
VIDEO_DEPAYLOADER = "queue ! rtpvp8depay ! vp8dec ! videoconvert ! autovideosink"
AUDIO_DEPAYLOADER = "queue ! rtpopusdepay ! opusdec ! audioconvert ! audioresample ! autoaudiosink"
DISCARD = "queue ! fakesink name=discard sync=false"

_SDP_TYPES = {
    "offer": GstWebRTC.WebRTCSDPType.OFFER,
    "answer": GstWebRTC.WebRTCSDPType.ANSWER,
    "pranswer": GstWebRTC.WebRTCSDPType.PRANSWER,
    "rollback": GstWebRTC.WebRTCSDPType.ROLLBACK,
}


def media_source(kind: str, live: bool = False) -> Gst.Bin:
    """Build a source bin ending in an RTP payloader, ready for :meth:`WebRTCBinEngine.add_track`.

    ``live`` uses the camera/microphone, otherwise test patterns.
    """

    if kind == "video":
        source = "autovideosrc" if live else "videotestsrc is-live=true pattern=ball"
        desc = f"{source} ! {VIDEO_PAYLOADER}"
    elif kind == "audio":
        source = "autoaudiosrc" if live else "audiotestsrc is-live=true"
        desc = f"{source} ! {AUDIO_PAYLOADER}"
    else:
        raise ValueError(f"Unknown media kind {kind!r}")
    return Gst.parse_bin_from_description(desc, True)


def media_sink(kind: str, playback: bool = True) -> Gst.Bin:
    """Build a bin consuming one incoming RTP stream, ready to link to a webrtcbin src pad.

    Without ``playback`` the stream is drained into a ``fakesink``.
    """

    if not playback:
        desc = DISCARD
    elif kind == "video":
        desc = VIDEO_DEPAYLOADER
    elif kind == "audio":
        desc = AUDIO_DEPAYLOADER
    else:
        raise ValueError(f"Unknown media kind {kind!r}")
    return Gst.parse_bin_from_description(desc, True)


def _to_description(gst_desc: Any) -> SessionDescription:
    sdp_type = GstWebRTC.webrtc_sdp_type_to_string(gst_desc.type)
    return SessionDescription(type=sdp_type, sdp=gst_desc.sdp.as_text())


def _from_description(description: SessionDescription) -> Any:
    res, sdpmsg = GstSdp.SDPMessage.new_from_text(description.sdp)
    if res != GstSdp.SDPResult.OK:
        raise ValueError(f"Unable to parse {description.type} SDP")
    return GstWebRTC.WebRTCSessionDescription.new(_SDP_TYPES[description.type], sdpmsg)


class WebRTCBinDataChannel(EngineDataChannel):
    def __init__(self, channel: Any, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(loop=loop)
        self.channel = channel
        self.loop = loop

        channel.connect("on-open", lambda _ch: self._post("open"))
        channel.connect("on-close", lambda _ch: self._post("close"))
        channel.connect("on-error", lambda _ch, err: self._post("error", err))
        channel.connect("on-message-string", lambda _ch, msg: self._post("message", msg))
        channel.connect(
            "on-message-data", lambda _ch, data: self._post("message", bytes(data.get_data()))
        )

    @property
    def label(self) -> str:
        return self.channel.props.label

    @property
    def ready_state(self) -> str:
        return self.channel.props.ready_state.value_nick

    def send(self, data: Union[str, bytes, bytearray, memoryview]) -> None:
        if isinstance(data, str):
            self.channel.emit("send-string", data)
        else:
            self.channel.emit("send-data", GLib.Bytes.new(bytes(data)))

    def close(self) -> None:
        self.channel.emit("close")

    def _post(self, event: str, *args: Any) -> None:
        self.loop.call_soon_threadsafe(self.emit, event, *args)


class WebRTCBinEngine(NegotiationEngine):
    """One ``webrtcbin`` in its own pipeline, configured from an RTCConfiguration-like dict.

    Incoming streams are linked as soon as webrtcbin exposes them: decoded and
    played with ``playback``, drained into a ``fakesink`` otherwise.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        playback: bool = False,
    ) -> None:
        self.loop = loop or asyncio.get_running_loop()
        super().__init__(loop=self.loop)
        self.playback = playback

        config = config or {}
        self._connection_state = "new"
        self._local_description: Optional[SessionDescription] = None

        self.pipeline = Gst.Pipeline.new(None)
        self.webrtc = Gst.ElementFactory.make("webrtcbin", None)
        if self.webrtc is None:
            raise RuntimeError("webrtcbin is not available; install gst-plugins-bad")
        self._configure(config)
        self.pipeline.add(self.webrtc)

        # webrtcbin signals
        self.webrtc.connect("on-negotiation-needed", self._on_negotiation_needed)
        self.webrtc.connect("on-ice-candidate", self._on_ice_candidate)
        self.webrtc.connect("on-data-channel", self._on_data_channel)
        self.webrtc.connect("pad-added", self._on_incoming_stream)
        self.webrtc.connect("notify::connection-state", self._on_connection_state)
        self.webrtc.connect("notify::ice-gathering-state", self._on_ice_gathering_state)

        bus = self.pipeline.get_bus()
        bus.enable_sync_message_emission()
        bus.connect("sync-message", self._on_bus_message)

        self.pipeline.set_state(Gst.State.PLAYING)

    def _configure(self, config: Dict[str, Any]) -> None:
        stun, turn = ice_server_uris(config.get("iceServers") or [])
        if stun:
            self.webrtc.set_property("stun-server", stun[0])
        for uri in turn:
            self.webrtc.emit("add-turn-server", uri)
        if config.get("bundlePolicy"):
            Gst.util_set_object_arg(self.webrtc, "bundle-policy", config["bundlePolicy"])
        if config.get("iceTransportPolicy"):
            Gst.util_set_object_arg(self.webrtc, "ice-transport-policy", config["iceTransportPolicy"])

    @property
    def connection_state(self) -> str:
        return self._connection_state

    @property
    def local_description(self) -> Optional[SessionDescription]:
        return self._local_description

    # ---------- SDP/ICE ----------
    async def create_offer(self) -> SessionDescription:
        reply = await self._call("create-offer", None)
        return _to_description(reply.get_value("offer"))

    async def create_answer(self) -> SessionDescription:
        reply = await self._call("create-answer", None)
        return _to_description(reply.get_value("answer"))

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._call("set-local-description", _from_description(description))
        self._local_description = description

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._call("set-remote-description", _from_description(description))

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if not candidate.candidate:
            return
        self.webrtc.emit("add-ice-candidate", candidate.sdp_mline_index or 0, candidate.candidate)

    def create_data_channel(self, label: str) -> WebRTCBinDataChannel:
        channel = self.webrtc.emit("create-data-channel", label, None)
        if channel is None:
            raise RuntimeError(f"webrtcbin refused to create data channel {label!r}")
        return WebRTCBinDataChannel(channel, self.loop)

    def add_track(self, track: Any, *streams: Any) -> None:
        """Link an element producing RTP (see :func:`media_source`) into webrtcbin."""

        if track.get_parent() is None:
            self.pipeline.add(track)
        if not track.link(self.webrtc):
            raise RuntimeError("Unable to link track into webrtcbin")
        track.sync_state_with_parent()

    def close(self) -> None:
        if self._connection_state == "closed":
            return
        self.pipeline.set_state(Gst.State.NULL)
        self._set_state("closed")

    async def _call(self, signal: str, arg: Any) -> Any:
        """Emit a webrtcbin action signal taking a Gst.Promise and await the reply."""

        future = self.loop.create_future()

        def on_reply(promise: Gst.Promise, *_user_data: Any) -> None:
            result = promise.wait()
            reply = promise.get_reply()
            if result != Gst.PromiseResult.REPLIED:
                self.loop.call_soon_threadsafe(_fail, future, RuntimeError(f"{signal} {result.value_nick}"))
            elif reply is not None and reply.has_field("error"):
                self.loop.call_soon_threadsafe(_fail, future, RuntimeError(str(reply.get_value("error"))))
            else:
                self.loop.call_soon_threadsafe(_resolve, future, reply)

        promise = Gst.Promise.new_with_change_func(on_reply, None)
        self.webrtc.emit(signal, arg, promise)
        return await future

    # ---------- webrtcbin callbacks (GStreamer threads) ----------
    def _post(self, event: str, *args: Any) -> None:
        self.loop.call_soon_threadsafe(self.emit, event, *args)

    def _on_negotiation_needed(self, _webrtc: Any) -> None:
        logger.debug("webrtcbin needs negotiation")
        self._post("negotiationneeded")

    def _on_ice_candidate(self, _webrtc: Any, mlineindex: int, candidate: str) -> None:
        self._post("icecandidate", IceCandidate(candidate=candidate, sdp_mline_index=int(mlineindex)))

    def _on_ice_gathering_state(self, webrtc: Any, _pspec: Any) -> None:
        if webrtc.props.ice_gathering_state == GstWebRTC.WebRTCICEGatheringState.COMPLETE:
            self._post("icecandidate", None)

    def _on_connection_state(self, webrtc: Any, _pspec: Any) -> None:
        state = webrtc.props.connection_state.value_nick
        self.loop.call_soon_threadsafe(self._set_state, state)

    def _on_data_channel(self, _webrtc: Any, channel: Any) -> None:
        self._post("datachannel", WebRTCBinDataChannel(channel, self.loop))

    def _on_incoming_stream(self, _webrtc: Any, pad: Gst.Pad) -> None:
        if pad.get_direction() != Gst.PadDirection.SRC:
            return

        caps = pad.get_current_caps()
        caps_text = caps.to_string() if caps else ""
        kind = "video" if "video" in caps_text else "audio"
        logger.debug("Incoming %s stream: %s", kind, caps_text)

        # Linked here, on the streaming thread, before any buffer reaches an unlinked pad.
        sink = media_sink(kind, self.playback)
        self.pipeline.add(sink)
        sink.sync_state_with_parent()
        if pad.link(sink.get_static_pad("sink")) != Gst.PadLinkReturn.OK:
            logger.warning("Unable to link incoming %s stream", kind)

        self._post("track", pad, ())

    def _on_bus_message(self, _bus: Gst.Bus, msg: Gst.Message) -> None:
        if msg.type == Gst.MessageType.ERROR:
            err, dbg = msg.parse_error()
            logger.error("GStreamer error: %s (%s)", err, dbg)
            self.loop.call_soon_threadsafe(self._set_state, "failed")
        elif msg.type == Gst.MessageType.EOS:
            logger.debug("GStreamer end-of-stream")

    def _set_state(self, state: str) -> None:
        if state == self._connection_state or self._connection_state == "closed":
            return
        self._connection_state = state
        self.emit("connectionstatechange", state)


def _resolve(future: "asyncio.Future[Any]", value: Any) -> None:
    if not future.done():
        future.set_result(value)


def _fail(future: "asyncio.Future[Any]", error: Exception) -> None:
    if not future.done():
        future.set_exception(error)
