"""
Wire schema for the Signal-Fire signaling protocol.

Every frame is a JSON object carried in a WebSocket text frame. Requests carry
an ``id`` that the server echoes in its response; pushes are dispatched by
``cmd``. The payload in ``data`` depends on the command and is validated
lazily with :meth:`Message.payload` so that responses, whose ``data`` follows
the request rather than the command, are never rejected by the wrong schema.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ProtocolError

#: Sub-protocol negotiated on the WebSocket handshake.
PROTOCOL = "Signal-Fire@2"

CLOSE_PROTOCOL_ERROR = 1002
CLOSE_UNSUPPORTED_DATA = 1003
CLOSE_INVALID_PAYLOAD = 1007
CLOSE_POLICY_VIOLATION = 1008


class Command(str, Enum):
    WELCOME = "welcome"
    SESSION_START = "session-start"
    SESSION_ACCEPT = "session-accept"
    SESSION_REJECT = "session-reject"
    SESSION_CANCEL = "session-cancel"
    SESSION_TIMEOUT = "session-timeout"
    OFFER = "offer"
    ANSWER = "answer"
    ICE = "ice"


SESSION_UPDATES = frozenset(
    {
        Command.SESSION_ACCEPT.value,
        Command.SESSION_REJECT.value,
        Command.SESSION_CANCEL.value,
        Command.SESSION_TIMEOUT.value,
    }
)
PEER_COMMANDS = frozenset({Command.ICE.value, Command.OFFER.value, Command.ANSWER.value})


class SessionDescription(BaseModel):
    """An SDP blob together with its role in the offer/answer exchange."""

    type: Literal["offer", "answer", "pranswer", "rollback"]
    sdp: str


class IceCandidate(BaseModel):
    """Serialisable ICE candidate, using the browser's JSON field names on the wire."""

    model_config = ConfigDict(populate_by_name=True)

    candidate: str
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")
    username_fragment: Optional[str] = Field(default=None, alias="usernameFragment")


class WelcomePayload(BaseModel):
    id: str
    config: Optional[Dict[str, Any]] = None


class ReasonPayload(BaseModel):
    message: Optional[str] = None


class DescriptionPayload(BaseModel):
    sdp: SessionDescription


class CandidatePayload(BaseModel):
    candidate: IceCandidate


Payload = Union[WelcomePayload, ReasonPayload, DescriptionPayload, CandidatePayload]

PAYLOAD_SCHEMAS: Dict[str, Type[BaseModel]] = {
    Command.WELCOME.value: WelcomePayload,
    Command.SESSION_START.value: ReasonPayload,
    Command.SESSION_ACCEPT.value: ReasonPayload,
    Command.SESSION_REJECT.value: ReasonPayload,
    Command.SESSION_CANCEL.value: ReasonPayload,
    Command.SESSION_TIMEOUT.value: ReasonPayload,
    Command.OFFER.value: DescriptionPayload,
    Command.ANSWER.value: DescriptionPayload,
    Command.ICE.value: CandidatePayload,
}


class Message(BaseModel):
    """The one entity that travels on the wire."""

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    cmd: Optional[str] = None
    ok: Optional[bool] = None
    origin: Optional[str] = None
    target: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    @field_validator("cmd", mode="before")
    @classmethod
    def _command_value(cls, value: Any) -> Any:
        if isinstance(value, Command):
            return value.value
        return value

    @property
    def reason(self) -> Optional[str]:
        """Free text reason carried in ``data.message``, if any."""

        if not self.data:
            return None
        message = self.data.get("message")
        return message if isinstance(message, str) else None

    def payload(self) -> Payload:
        """Validate ``data`` against the schema registered for ``cmd``."""

        schema = PAYLOAD_SCHEMAS.get(self.cmd or "")
        if schema is None:
            raise ProtocolError(f"No payload schema for command {self.cmd!r}", CLOSE_PROTOCOL_ERROR)
        try:
            return schema.model_validate(self.data or {})
        except ValidationError as exc:
            raise ProtocolError(
                f"Invalid {self.cmd} payload: {exc.error_count()} validation error(s)",
                CLOSE_INVALID_PAYLOAD,
            ) from exc


def description_data(description: SessionDescription) -> Dict[str, Any]:
    return {"sdp": description.model_dump()}


def candidate_data(candidate: IceCandidate) -> Dict[str, Any]:
    return {"candidate": candidate.model_dump(by_alias=True, exclude_none=True)}


def encode_message(message: Message) -> str:
    return message.model_dump_json(exclude_none=True)


def decode_message(frame: Union[str, bytes]) -> Message:
    """Parse one inbound frame, raising :class:`ProtocolError` on anything malformed."""

    if not isinstance(frame, str):
        raise ProtocolError("Expected a text frame", CLOSE_UNSUPPORTED_DATA)
    try:
        return Message.model_validate_json(frame)
    except ValidationError as exc:
        raise ProtocolError("Unable to parse message", CLOSE_INVALID_PAYLOAD) from exc


__all__ = [
    "PROTOCOL",
    "CLOSE_PROTOCOL_ERROR",
    "CLOSE_UNSUPPORTED_DATA",
    "CLOSE_INVALID_PAYLOAD",
    "CLOSE_POLICY_VIOLATION",
    "Command",
    "SESSION_UPDATES",
    "PEER_COMMANDS",
    "SessionDescription",
    "IceCandidate",
    "WelcomePayload",
    "ReasonPayload",
    "DescriptionPayload",
    "CandidatePayload",
    "Message",
    "description_data",
    "candidate_data",
    "encode_message",
    "decode_message",
]
