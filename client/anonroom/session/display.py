"""Presentation helpers hosts use when rendering session state."""
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from .models import ChatMessage, ContentKind, Message, ReplySnapshot

DEFAULT_TIMEZONE = "Asia/Kolkata"
DEFAULT_PREVIEW_CHARS = 50
IMAGE_PREVIEW = "[image]"


def format_time(timestamp: Optional[datetime], tz: str = DEFAULT_TIMEZONE) -> str:
    """Render *timestamp* as a 12-hour clock time (``02:05 PM``) in *tz*.

    Naive timestamps are taken as UTC. Returns "" when there is no timestamp.
    """
    if timestamp is None:
        return ""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(ZoneInfo(tz)).strftime("%I:%M %p")


def preview_text(snapshot: ReplySnapshot, limit: int = DEFAULT_PREVIEW_CHARS) -> str:
    """Short form of a quote for reply bars."""
    if snapshot.message_type is ContentKind.IMAGE:
        return IMAGE_PREVIEW
    if len(snapshot.content) > limit:
        return snapshot.content[:limit] + "..."
    return snapshot.content


def is_own(message: Message, user: str) -> bool:
    return isinstance(message, ChatMessage) and message.username == user


def occupant_label(name: str, user: str) -> str:
    return f"{name} (you)" if name == user else name
