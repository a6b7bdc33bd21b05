"""Inbound and outbound frame types for the relay WebSocket protocol.

Inbound frames are decoded once, at the connection boundary, into one of the
event models below. Anything that does not decode to a known event becomes a
``Malformed`` value so callers can drop it without special cases.
"""
import json
from dataclasses import dataclass
from typing import Annotated, Any, Dict, Literal, Optional, Union
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from constants import MAX_FRAME_BYTES

SIGNAL_TYPES = ("voice-offer", "voice-answer", "voice-ice")


def _scalar_to_str(value):
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (bool, int, float)):
        return str(value)
    raise ValueError("expected a string")


# display names and ids from older clients sometimes arrive as numbers
LooseStr = Annotated[str, BeforeValidator(_scalar_to_str)]


def _none_to_false(value):
    return False if value is None else value


# explicit null flags mean "off"
LooseBool = Annotated[bool, BeforeValidator(_none_to_false)]


class InboundEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class SendEvent(InboundEvent):
    type: Literal["send"]
    user: Optional[LooseStr] = None
    text: LooseStr = ""
    cid: Optional[LooseStr] = None


class TypingEvent(InboundEvent):
    type: Literal["typing"]
    user: Optional[LooseStr] = None
    active: LooseBool = False

    @model_validator(mode="before")
    @classmethod
    def _legacy_on_flag(cls, data):
        # older clients send "on" instead of "active"
        if isinstance(data, dict) and data.get("active") is None and "on" in data:
            data = {**data, "active": data["on"]}
        return data


class VoiceJoinEvent(InboundEvent):
    type: Literal["voice-join"]
    user: Optional[LooseStr] = None


class VoiceLeaveEvent(InboundEvent):
    type: Literal["voice-leave"]


class VoiceMuteEvent(InboundEvent):
    type: Literal["voice-mute"]
    muted: LooseBool = False


class SignalEvent(InboundEvent):
    """WebRTC offer/answer/ICE payload addressed to one peer; relayed opaquely."""
    type: Literal["voice-offer", "voice-answer", "voice-ice"]
    to: LooseStr
    sdp: Any = None
    candidate: Any = None


class PongEvent(InboundEvent):
    type: Literal["pong"]


Event = Annotated[
    Union[SendEvent, TypingEvent, VoiceJoinEvent, VoiceLeaveEvent, VoiceMuteEvent, SignalEvent, PongEvent],
    Field(discriminator="type"),
]

EVENT_TYPES = frozenset(["send", "typing", "voice-join", "voice-leave", "voice-mute", "pong", *SIGNAL_TYPES])

_event_adapter = TypeAdapter(Event)


@dataclass(frozen=True)
class Malformed:
    reason: str


def decode_frame(raw: Union[str, bytes], max_bytes: int = MAX_FRAME_BYTES) -> Union[InboundEvent, Malformed]:
    if isinstance(raw, str):
        size = len(raw.encode("utf-8"))
    else:
        size = len(raw)
    if size > max_bytes:
        return Malformed(f"frame too large ({size} bytes)")

    try:
        payload = json.loads(raw)
    except (ValueError, TypeError):
        return Malformed("undecodable payload")
    if not isinstance(payload, dict):
        return Malformed("payload is not an object")

    event_type = payload.get("type")
    if not isinstance(event_type, str) or event_type not in EVENT_TYPES:
        return Malformed(f"unknown type {event_type!r}")

    try:
        return _event_adapter.validate_python(payload)
    except ValidationError as e:
        return Malformed(f"invalid {event_type} frame: {e.error_count()} error(s)")


OutboundType = Literal[
    "self-id",
    "voice-snapshot",
    "message",
    "typing",
    "voice-join",
    "voice-leave",
    "voice-mute",
    "voice-offer",
    "voice-answer",
    "voice-ice",
    "ping",
]


class OutboundFrame(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: OutboundType
    data: Dict[str, Any]

    def encode(self) -> str:
        return json.dumps({"type": self.type, "data": self.data})


def self_id_frame(connection_id: str) -> OutboundFrame:
    return OutboundFrame(type="self-id", data={"id": connection_id})


def presence_snapshot_frame(peers) -> OutboundFrame:
    return OutboundFrame(type="voice-snapshot", data={"peers": list(peers)})


def message_frame(user: str, text: str, ts: int, cid: Optional[str] = None) -> OutboundFrame:
    data = {"user": user, "text": text, "ts": ts}
    if cid:
        data["cid"] = cid
    return OutboundFrame(type="message", data=data)


def typing_frame(connection_id: str, user: str, active: bool) -> OutboundFrame:
    return OutboundFrame(type="typing", data={"id": connection_id, "user": user, "active": active})


def voice_join_frame(connection_id: str, user: str) -> OutboundFrame:
    return OutboundFrame(type="voice-join", data={"id": connection_id, "user": user})


def voice_leave_frame(connection_id: str, user: Optional[str] = None) -> OutboundFrame:
    data = {"id": connection_id}
    if user is not None:
        data["user"] = user
    return OutboundFrame(type="voice-leave", data=data)


def voice_mute_frame(connection_id: str, muted: bool) -> OutboundFrame:
    return OutboundFrame(type="voice-mute", data={"id": connection_id, "muted": muted})


def signal_frame(event: SignalEvent, from_id: str) -> OutboundFrame:
    data = {"from": from_id}
    if event.type == "voice-ice":
        data["candidate"] = event.candidate
    else:
        data["sdp"] = event.sdp
    return OutboundFrame(type=event.type, data=data)


def ping_frame(ts: int) -> OutboundFrame:
    return OutboundFrame(type="ping", data={"ts": ts})
