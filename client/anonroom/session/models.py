"""Data models shared by the session engine components.

Wire-facing fields keep the names the room server uses (``username``,
``message_type``, ``reply_to``, ``expire_at``) so the same models serve for
decoding inbound frames and for building outbound ones.

Chat messages, system notices and reply snapshots are frozen: once a message
is on the timeline nothing can mutate it, and a reply snapshot can never be
changed through the message it was copied from.
"""
from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ConnectionState(str, Enum):
    """Connectivity of the live transport.

    Attributes:
        DISCONNECTED: No transport (initial state, after a drop, after close).
        CONNECTING: A transport open is in flight.
        CONNECTED: The transport is open and frames are flowing.
        FAILED: The room was confirmed gone; the session will not reconnect.
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class ContentKind(str, Enum):
    """What the ``content`` field of a chat message holds."""
    TEXT = "text"
    IMAGE = "image"


class ReplySnapshot(BaseModel):
    """Immutable quote of a chat message.

    Attributes:
        username: Display name of the quoted sender.
        content: Quoted text, or the image data URI for image messages.
        message_type: Kind of the quoted content.
    """
    model_config = ConfigDict(frozen=True)

    username: str = Field(..., description="Sender of the quoted message")
    content: str = Field(..., description="Quoted content")
    message_type: ContentKind = Field(default=ContentKind.TEXT, description="Quoted content kind")


class ChatMessage(BaseModel):
    """A message sent by an occupant."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Locally unique identifier")
    type: Literal["message"] = "message"
    username: str = Field(..., description="Sender display name")
    content: str = Field(..., description="Text, or image data URI")
    message_type: ContentKind = Field(default=ContentKind.TEXT)
    timestamp: Optional[datetime] = Field(default=None, description="Server timestamp")
    reply_to: Optional[ReplySnapshot] = Field(default=None, description="Quoted message, if any")


class SystemNotice(BaseModel):
    """A human-readable room event such as a join or a leave."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Locally unique identifier")
    type: Literal["system"] = "system"
    content: str = Field(..., description="Notice text")
    timestamp: Optional[datetime] = Field(default=None)


Message = Union[ChatMessage, SystemNotice]


class RoomInfo(BaseModel):
    """Body of ``GET /api/room/{roomId}``."""
    users: List[str] = Field(default_factory=list, description="Current occupants")
    expire_at: Optional[datetime] = Field(default=None, description="Room expiry instant")


class OutboundMessage(BaseModel):
    """Frame sent from the engine to the room."""
    type: ContentKind
    content: str
    reply_to: Optional[ReplySnapshot] = None
