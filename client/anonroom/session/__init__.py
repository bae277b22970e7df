"""Realtime session engine: transport, protocol, timeline, presence, expiry."""
from .attachments import MAX_ATTACHMENT_BYTES, AttachmentEncoder, ImageFile
from .codec import HistoryReplayed, MessageReceived, PresenceChanged, ProtocolCodec
from .connection import ConnectionManager, ReconnectPolicy
from .countdown import EXPIRED_LABEL, CountdownState, ExpiryCountdown, format_remaining
from .engine import ChatSession, LeaveReason, SessionListener
from .errors import (
    AttachmentError,
    AttachmentReadError,
    AttachmentTooLargeError,
    MessageTooLongError,
    NotConnectedError,
    ProtocolError,
    RoomGoneError,
    SessionError,
    UnsupportedAttachmentTypeError,
)
from .models import (
    ChatMessage,
    ConnectionState,
    ContentKind,
    Message,
    ReplySnapshot,
    RoomInfo,
    SystemNotice,
)
from .presence import PresenceTracker, RefreshOutcome
from .replies import ReplyComposer, capture
from .room_api import RoomApiClient
from .timeline import Timeline

__all__ = [
    "MAX_ATTACHMENT_BYTES",
    "AttachmentEncoder",
    "AttachmentError",
    "AttachmentReadError",
    "AttachmentTooLargeError",
    "ChatMessage",
    "ChatSession",
    "ConnectionManager",
    "ConnectionState",
    "ContentKind",
    "CountdownState",
    "EXPIRED_LABEL",
    "ExpiryCountdown",
    "HistoryReplayed",
    "ImageFile",
    "LeaveReason",
    "Message",
    "MessageReceived",
    "MessageTooLongError",
    "NotConnectedError",
    "PresenceChanged",
    "PresenceTracker",
    "ProtocolCodec",
    "ProtocolError",
    "ReconnectPolicy",
    "RefreshOutcome",
    "ReplyComposer",
    "ReplySnapshot",
    "RoomApiClient",
    "RoomGoneError",
    "RoomInfo",
    "SessionError",
    "SessionListener",
    "SystemNotice",
    "Timeline",
    "UnsupportedAttachmentTypeError",
    "capture",
    "format_remaining",
]
