"""Inbound message routing and the per-connection protocol state machine."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Tuple

from app.monitoring.metrics import relay_messages_rejected_total, relay_messages_total

from .protocol import (
    JOIN,
    LEAVE,
    MESSAGE_MODELS,
    SIGNAL,
    InboundMessage,
    JoinMessage,
    MalformedMessageError,
    SignalMessage,
    decode_frame,
    parse_message,
)
from .service import SignalingRelay
from .sessions import SessionState

logger = logging.getLogger(__name__)

Handler = Callable[[Any, InboundMessage], Awaitable[None]]


class MessageRouter:
    """Decode frames and dispatch them according to the connection state.

    Allowed transitions are listed in one table keyed by
    ``(state, message type)``. Anything missing from the table is a protocol
    violation and is ignored.
    """

    def __init__(
        self,
        relay: SignalingRelay,
        *,
        max_message_bytes: int | None = None,
        max_username_length: int | None = None,
        max_room_id_length: int | None = None,
    ) -> None:
        self._relay = relay
        self._max_message_bytes = max_message_bytes
        self._limits = {
            name: limit
            for name, limit in (
                ("username", max_username_length),
                ("room_id", max_room_id_length),
            )
            if limit
        }
        self._transitions: Dict[Tuple[SessionState, str], Handler] = {
            (SessionState.UNIDENTIFIED, JOIN): self._handle_join,
            (SessionState.UNIDENTIFIED, LEAVE): self._handle_leave,
            (SessionState.JOINED, SIGNAL): self._handle_signal,
            (SessionState.JOINED, LEAVE): self._handle_leave,
        }

    async def dispatch(self, connection: Any, raw: str | bytes) -> None:
        """Process one inbound frame. Never raises for bad client input."""

        try:
            payload = decode_frame(raw, max_bytes=self._max_message_bytes)
        except MalformedMessageError as exc:
            self._reject("malformed", "Discarding malformed frame: %s", exc)
            return

        message_type = payload.get("type")
        if not isinstance(message_type, str) or message_type not in MESSAGE_MODELS:
            self._reject("unknown_type", "Unknown message type: %r", message_type)
            return

        state = await self._relay.state_of(connection)
        handler = self._transitions.get((state, message_type))
        if handler is None:
            relay_messages_rejected_total.labels("protocol").inc()
            logger.warning("Ignoring %s message from %s connection", message_type, state.value)
            return

        try:
            message = parse_message(payload, limits=self._limits)
        except MalformedMessageError as exc:
            self._reject("malformed", "Discarding invalid %s message: %s", message_type, exc)
            return

        relay_messages_total.labels("in", message_type).inc()
        await handler(connection, message)

    async def _handle_join(self, connection: Any, message: JoinMessage) -> None:
        await self._relay.join(connection, message.username, message.room_id)

    async def _handle_signal(self, connection: Any, message: SignalMessage) -> None:
        await self._relay.signal(connection, message.target_id, message.signal)

    async def _handle_leave(self, connection: Any, message: InboundMessage) -> None:
        await self._relay.leave(connection)

    @staticmethod
    def _reject(reason: str, msg: str, *args: Any) -> None:
        relay_messages_rejected_total.labels(reason).inc()
        logger.debug(msg, *args)


__all__ = ["MessageRouter"]
