"""Signalling message types shared by the relay and the client."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ProtocolError(ValueError):
    """Raised when a signalling message or payload cannot be decoded."""


class SignalKind(str, Enum):
    """Message kinds carried over the relay."""

    WELCOME = "welcome"
    JOIN = "join"
    PARTICIPANT_JOINED = "participant-joined"
    PARTICIPANT_LEFT = "participant-left"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    NAME_CHANGED = "name-changed"
    CHAT = "chat"


# Kinds forwarded to a single named participant.
TARGETED_KINDS = frozenset({SignalKind.OFFER, SignalKind.ANSWER, SignalKind.ICE_CANDIDATE})

# Kinds broadcast to the whole room except the sender.
BROADCAST_KINDS = frozenset({SignalKind.NAME_CHANGED, SignalKind.CHAT})


class TrackKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


class Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class TargetedPayload(BaseModel):
    """Routing view of a targeted message; everything but ``to`` is opaque."""

    model_config = ConfigDict(extra="allow")

    to: str = Field(min_length=1, max_length=128)


class SessionDescriptionPayload(BaseModel):
    type: Literal["offer", "answer"]
    sdp: str


class IceCandidatePayload(BaseModel):
    candidate: str
    sdpMid: str | None = None
    sdpMLineIndex: int | None = Field(default=None, ge=0)


class NamePayload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=64)


class ChatPayload(BaseModel):
    text: str = Field(min_length=1, max_length=4096)


def _summarise_validation(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "payload"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)


@dataclass(frozen=True, slots=True)
class SessionDescription:
    """Opaque session description exchanged as an offer or an answer."""

    type: str
    sdp: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_payload(
        cls, payload: object, *, expected: str | None = None
    ) -> "SessionDescription":
        try:
            model = SessionDescriptionPayload.model_validate(payload)
        except ValidationError as exc:
            raise ProtocolError(f"Invalid session description ({_summarise_validation(exc)})") from exc
        if expected is not None and model.type != expected:
            raise ProtocolError(f"Expected an {expected} description, got {model.type!r}")
        return cls(type=model.type, sdp=model.sdp)


@dataclass(frozen=True, slots=True)
class IceCandidate:
    """A single reachability candidate in its browser-compatible JSON shape."""

    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    @classmethod
    def from_payload(cls, payload: object) -> "IceCandidate":
        try:
            model = IceCandidatePayload.model_validate(payload)
        except ValidationError as exc:
            raise ProtocolError(f"Invalid ICE candidate ({_summarise_validation(exc)})") from exc
        return cls(
            candidate=model.candidate,
            sdp_mid=model.sdpMid,
            sdp_mline_index=model.sdpMLineIndex,
        )


@dataclass(slots=True)
class SignalMessage:
    """A decoded relay message."""

    kind: SignalKind
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def sender(self) -> str | None:
        sender = self.data.get("from")
        return sender if isinstance(sender, str) and sender else None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind.value, "data": dict(self.data)}


def encode_message(kind: SignalKind | str, data: Mapping[str, Any] | None = None) -> str:
    """Serialise a message envelope to compact JSON text."""

    kind_value = kind.value if isinstance(kind, SignalKind) else str(kind)
    return json.dumps({"type": kind_value, "data": dict(data or {})}, separators=(",", ":"))


def decode_message(raw: str | bytes | Mapping[str, Any]) -> SignalMessage:
    """Parse *raw* into a :class:`SignalMessage`, raising :class:`ProtocolError`."""

    payload: object
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise ProtocolError("Message is not valid JSON") from exc
    else:
        payload = raw
    try:
        envelope = Envelope.model_validate(payload)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid message envelope ({_summarise_validation(exc)})") from exc
    try:
        kind = SignalKind(envelope.type)
    except ValueError:
        raise ProtocolError(f"Unknown message type {envelope.type!r}") from None
    return SignalMessage(kind=kind, data=envelope.data)


def routing_target(message: SignalMessage) -> str:
    """Return the ``to`` field of a targeted message."""

    try:
        return TargetedPayload.model_validate(message.data).to
    except ValidationError as exc:
        raise ProtocolError(
            f"{message.kind.value} message needs a target ({_summarise_validation(exc)})"
        ) from exc


def parse_name(data: Mapping[str, Any]) -> str:
    try:
        return NamePayload.model_validate(data).name
    except ValidationError as exc:
        raise ProtocolError(f"Invalid display name ({_summarise_validation(exc)})") from exc


def parse_chat(data: Mapping[str, Any]) -> str:
    try:
        return ChatPayload.model_validate(data).text
    except ValidationError as exc:
        raise ProtocolError(f"Invalid chat message ({_summarise_validation(exc)})") from exc


__all__ = [
    "BROADCAST_KINDS",
    "IceCandidate",
    "ProtocolError",
    "SessionDescription",
    "SignalKind",
    "SignalMessage",
    "TARGETED_KINDS",
    "TrackKind",
    "decode_message",
    "encode_message",
    "parse_chat",
    "parse_name",
    "routing_target",
]
