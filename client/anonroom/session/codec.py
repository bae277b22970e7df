"""Protocol codec for the room's live transport.

Inbound frames are JSON objects tagged by ``type``:

    - history: {"messages": [...]} - full replay, replaces the timeline
    - message: one live chat message, appended to the timeline
    - user_joined / user_left: {"username", "timestamp"} - appended as a
      system notice; the occupant list must be re-pulled from the room-info
      endpoint because the frame does not carry it

Each frame is decoded exactly once, here, into one of the InboundEvent
variants. Nothing past this module looks at raw wire shapes.

Outbound frames are ``{"type": "text"|"image", "content": ..., "reply_to": ...}``
with ``reply_to`` omitted when there is no quote.
"""
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple, Union

from pydantic import BaseModel, ValidationError, field_validator

from .errors import ProtocolError
from .models import (
    ChatMessage,
    ContentKind,
    OutboundMessage,
    ReplySnapshot,
    SystemNotice,
)

logger = logging.getLogger(__name__)

HISTORY_ID_PREFIX = "history-"
LIVE_ID_PREFIX = "live-"


# =============================================================================
# Wire shapes (inbound)
# =============================================================================


def _known_kind(value):
    # Kinds added by newer servers render as text instead of failing the frame.
    if value is None or isinstance(value, ContentKind):
        return value
    try:
        return ContentKind(value)
    except ValueError:
        logger.warning("Unknown message_type %r, treating as text", value)
        return None


class _WireReply(BaseModel):
    username: str
    content: str
    message_type: Optional[ContentKind] = None

    @field_validator("message_type", mode="before")
    @classmethod
    def unknown_kind_as_text(cls, value):
        return _known_kind(value)

    def to_snapshot(self) -> ReplySnapshot:
        return ReplySnapshot(
            username=self.username,
            content=self.content,
            message_type=self.message_type or ContentKind.TEXT,
        )


class _WireChatMessage(BaseModel):
    username: str
    content: str
    message_type: Optional[ContentKind] = None
    timestamp: Optional[datetime] = None
    reply_to: Optional[_WireReply] = None

    @field_validator("message_type", mode="before")
    @classmethod
    def unknown_kind_as_text(cls, value):
        return _known_kind(value)

    def to_message(self, message_id: str) -> ChatMessage:
        return ChatMessage(
            id=message_id,
            username=self.username,
            content=self.content,
            # Older servers omit the field; treat that as text.
            message_type=self.message_type or ContentKind.TEXT,
            timestamp=self.timestamp,
            reply_to=self.reply_to.to_snapshot() if self.reply_to else None,
        )


class _WireHistory(BaseModel):
    messages: List[_WireChatMessage]


class _WirePresence(BaseModel):
    username: str
    timestamp: Optional[datetime] = None


# =============================================================================
# Decoded events
# =============================================================================


@dataclass(frozen=True)
class HistoryReplayed:
    """Replace the whole timeline with *messages*."""
    messages: Tuple[ChatMessage, ...]


@dataclass(frozen=True)
class MessageReceived:
    """Append one live chat message."""
    message: ChatMessage


@dataclass(frozen=True)
class PresenceChanged:
    """Append a join/leave notice and re-pull the occupant list."""
    notice: SystemNotice
    username: str
    joined: bool


InboundEvent = Union[HistoryReplayed, MessageReceived, PresenceChanged]


def _new_live_id() -> str:
    return f"{LIVE_ID_PREFIX}{uuid.uuid4()}"


class ProtocolCodec:
    """Translates between raw frames and engine events.

    Identifiers for replayed history are positional (``history-0``,
    ``history-1``...) so decoding the same replay twice gives identical
    messages; live messages and notices get a fresh ``live-<uuid>`` each.
    """

    def __init__(self, id_factory: Callable[[], str] = _new_live_id) -> None:
        self._new_id = id_factory

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def decode(self, raw: Union[str, bytes]) -> Optional[InboundEvent]:
        """Decode one frame.

        Returns:
            The decoded event, or None for a well-formed frame of a type this
            client does not handle.

        Raises:
            ProtocolError: The frame is not JSON, not an object, has no
                ``type``, or its fields do not match the declared type.
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError, RecursionError) as exc:
            raise ProtocolError(f"Frame is not valid JSON: {type(exc).__name__}") from exc

        if not isinstance(data, dict):
            raise ProtocolError(f"Frame is not an object: {type(data).__name__}")

        frame_type = data.get("type")
        if not isinstance(frame_type, str):
            raise ProtocolError("Frame has no type")

        try:
            if frame_type == "history":
                history = _WireHistory.model_validate(data)
                return HistoryReplayed(messages=tuple(
                    msg.to_message(f"{HISTORY_ID_PREFIX}{idx}")
                    for idx, msg in enumerate(history.messages)
                ))

            if frame_type == "message":
                wire = _WireChatMessage.model_validate(data)
                return MessageReceived(message=wire.to_message(self._new_id()))

            if frame_type in ("user_joined", "user_left"):
                wire = _WirePresence.model_validate(data)
                joined = frame_type == "user_joined"
                verb = "joined" if joined else "left"
                notice = SystemNotice(
                    id=self._new_id(),
                    content=f"{wire.username} {verb} the room",
                    timestamp=wire.timestamp,
                )
                return PresenceChanged(notice=notice, username=wire.username, joined=joined)
        except ValidationError as exc:
            raise ProtocolError(
                f"Malformed {frame_type!r} frame: {exc.error_count()} validation error(s)"
            ) from exc

        logger.debug("Ignoring frame of unknown type %r", frame_type)
        return None

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def encode(
        self,
        kind: ContentKind,
        content: str,
        reply_to: Optional[ReplySnapshot] = None,
    ) -> str:
        """Serialize an outbound frame."""
        frame = OutboundMessage(type=kind, content=content, reply_to=reply_to)
        return frame.model_dump_json(exclude_none=True)
