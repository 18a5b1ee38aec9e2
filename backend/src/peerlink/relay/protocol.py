"""Wire format of the signalling relay.

Every frame is a JSON object whose ``type`` field selects the message.
Inbound frames are validated with pydantic models; outbound frames are built
by the small helpers at the bottom of this module so the field names used on
the wire live in one place.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Literal, Mapping

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    constr,
    field_validator,
)

JOIN = "join"
SIGNAL = "signal"
LEAVE = "leave"

ROOM_JOINED = "room-joined"
USER_JOINED = "user-joined"
USER_LIST = "user-list"
USER_LEFT = "user-left"


class MalformedMessageError(ValueError):
    """Raised when a frame cannot be turned into a protocol message."""


class InboundMessage(BaseModel):
    """Base class for client to server messages."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("*", mode="after")
    @classmethod
    def enforce_length_limits(cls, value: Any, info: ValidationInfo) -> Any:
        limits = info.context or {}
        limit = limits.get(info.field_name)
        if limit and isinstance(value, str) and len(value) > limit:
            raise ValueError(f"{info.field_name} must be at most {limit} characters")
        return value


class JoinMessage(InboundMessage):
    type: Literal["join"]
    username: constr(strip_whitespace=True, min_length=1)
    room_id: constr(min_length=1) = Field(..., alias="roomId")


class SignalMessage(InboundMessage):
    type: Literal["signal"]
    target_id: constr(min_length=1) = Field(..., alias="targetId")
    signal: Any = Field(..., description="Opaque negotiation payload (offer/answer/candidate)")


class LeaveMessage(InboundMessage):
    type: Literal["leave"]


MESSAGE_MODELS: Dict[str, type[InboundMessage]] = {
    JOIN: JoinMessage,
    SIGNAL: SignalMessage,
    LEAVE: LeaveMessage,
}


def decode_frame(raw: str | bytes, *, max_bytes: int | None = None) -> dict[str, Any]:
    """Decode a transport frame into a JSON object."""

    size = len(raw.encode("utf-8")) if isinstance(raw, str) else len(raw)
    if max_bytes and size > max_bytes:
        raise MalformedMessageError(f"Frame of {size} bytes exceeds the {max_bytes} byte limit")
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedMessageError("Invalid message format") from exc
    if not isinstance(payload, dict):
        raise MalformedMessageError("Message payload must be a JSON object")
    return payload


def parse_message(
    payload: Mapping[str, Any], *, limits: Mapping[str, int] | None = None
) -> InboundMessage:
    """Validate *payload* against the model registered for its ``type``."""

    model = MESSAGE_MODELS.get(payload.get("type"))  # type: ignore[arg-type]
    if model is None:
        raise MalformedMessageError(f"Unsupported message type: {payload.get('type')!r}")
    try:
        return model.model_validate(payload, context=dict(limits or {}))
    except ValidationError as exc:
        raise MalformedMessageError(str(exc)) from exc


def encode_message(message: Mapping[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"))


def build_room_joined(room_id: str, user_id: str, users: list[dict[str, Any]]) -> dict[str, Any]:
    return {"type": ROOM_JOINED, "roomId": room_id, "userId": user_id, "users": users}


def build_user_joined(user_id: str, username: str) -> dict[str, Any]:
    return {"type": USER_JOINED, "userId": user_id, "username": username}


def build_user_left(user_id: str, username: str) -> dict[str, Any]:
    return {"type": USER_LEFT, "userId": user_id, "username": username}


def build_user_list(users: list[dict[str, Any]]) -> dict[str, Any]:
    return {"type": USER_LIST, "users": users}


def build_signal_envelope(from_id: str, signal: Any) -> dict[str, Any]:
    """Wrap an opaque peer payload for delivery to its target."""

    return {"type": SIGNAL, "fromId": from_id, "signal": signal}


__all__ = [
    "JOIN",
    "SIGNAL",
    "LEAVE",
    "ROOM_JOINED",
    "USER_JOINED",
    "USER_LIST",
    "USER_LEFT",
    "MalformedMessageError",
    "InboundMessage",
    "JoinMessage",
    "SignalMessage",
    "LeaveMessage",
    "MESSAGE_MODELS",
    "decode_frame",
    "parse_message",
    "encode_message",
    "build_room_joined",
    "build_user_joined",
    "build_user_left",
    "build_user_list",
    "build_signal_envelope",
]
