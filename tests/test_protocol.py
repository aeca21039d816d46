"""Tests covering the wire schema."""

from __future__ import annotations

import json

import pytest

from signalfire.errors import ProtocolError
from signalfire.protocol import (
    CLOSE_INVALID_PAYLOAD,
    CLOSE_UNSUPPORTED_DATA,
    CandidatePayload,
    Command,
    DescriptionPayload,
    IceCandidate,
    Message,
    ReasonPayload,
    WelcomePayload,
    candidate_data,
    decode_message,
    encode_message,
)


def test_decode_message_reads_envelope() -> None:
    message = decode_message('{"id": "1", "ok": false, "data": {"message": "Peer not found"}}')

    assert message.id == "1"
    assert message.ok is False
    assert message.cmd is None
    assert message.reason == "Peer not found"


def test_decode_message_rejects_binary_frames() -> None:
    with pytest.raises(ProtocolError) as excinfo:
        decode_message(b'{"cmd": "welcome"}')

    assert excinfo.value.close_code == CLOSE_UNSUPPORTED_DATA


@pytest.mark.parametrize("frame", ["not json", "[1, 2]", '{"ok": "maybe"}'])
def test_decode_message_rejects_malformed_bodies(frame: str) -> None:
    with pytest.raises(ProtocolError) as excinfo:
        decode_message(frame)

    assert excinfo.value.close_code == CLOSE_INVALID_PAYLOAD


def test_encode_message_drops_unset_fields_and_uses_command_values() -> None:
    encoded = json.loads(encode_message(Message(id="x", cmd=Command.SESSION_START, target="B")))

    assert encoded == {"id": "x", "cmd": "session-start", "target": "B"}


def test_payload_validates_per_command() -> None:
    offer = Message(cmd="offer", origin="B", data={"sdp": {"type": "offer", "sdp": "v=0"}})
    ice = Message(
        cmd="ice",
        origin="B",
        data={"candidate": {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host", "sdpMLineIndex": 0}},
    )
    welcome = Message(cmd="welcome", data={"id": "A", "config": {"bundlePolicy": "balanced"}})
    cancel = Message(cmd="session-cancel", origin="B")

    assert isinstance(offer.payload(), DescriptionPayload)
    assert offer.payload().sdp.sdp == "v=0"
    assert isinstance(ice.payload(), CandidatePayload)
    assert ice.payload().candidate.sdp_mline_index == 0
    assert isinstance(welcome.payload(), WelcomePayload)
    assert welcome.payload().config == {"bundlePolicy": "balanced"}
    assert isinstance(cancel.payload(), ReasonPayload)
    assert cancel.payload().message is None


def test_payload_errors_are_protocol_errors() -> None:
    broken_offer = Message(cmd="offer", origin="B", data={"sdp": "v=0"})
    anonymous_welcome = Message(cmd="welcome")

    with pytest.raises(ProtocolError) as excinfo:
        broken_offer.payload()
    assert excinfo.value.close_code == CLOSE_INVALID_PAYLOAD

    with pytest.raises(ProtocolError):
        anonymous_welcome.payload()


def test_payload_requires_a_known_command() -> None:
    with pytest.raises(ProtocolError):
        Message(cmd="shrug").payload()


def test_candidate_data_uses_browser_field_names() -> None:
    candidate = IceCandidate(candidate="candidate:1", sdp_mid="0", sdp_mline_index=0)

    assert candidate_data(candidate) == {
        "candidate": {"candidate": "candidate:1", "sdpMid": "0", "sdpMLineIndex": 0}
    }
