"""Reply snapshots and the composer's pending reply."""
from typing import Optional

from .models import ChatMessage, ReplySnapshot


def capture(message: ChatMessage) -> ReplySnapshot:
    """Copy the quotable fields of *message* into a standalone snapshot.

    Raises:
        TypeError: *message* is not a chat message (system notices cannot be
            quoted).
    """
    if not isinstance(message, ChatMessage):
        raise TypeError(f"Only chat messages can be quoted, got {type(message).__name__}")
    return ReplySnapshot(
        username=message.username,
        content=message.content,
        message_type=message.message_type,
    )


class ReplyComposer:
    """Holds at most one pending reply.

    Starting a new reply replaces the previous one; a message carries a
    single quote.
    """

    def __init__(self) -> None:
        self._pending: Optional[ReplySnapshot] = None

    @property
    def pending(self) -> Optional[ReplySnapshot]:
        return self._pending

    def start(self, message: ChatMessage) -> ReplySnapshot:
        self._pending = capture(message)
        return self._pending

    def clear(self) -> None:
        self._pending = None
