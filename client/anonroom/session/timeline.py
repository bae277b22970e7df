"""Ordered in-memory record of room activity for one session.

Only two mutations exist: ``replace`` (history replay) and ``append``
(everything else). Order is arrival order; server timestamps are never used
to sort.
"""
from typing import Iterable, Iterator, List, Tuple

from .models import Message


class Timeline:
    """Message timeline driven by decoded protocol events."""

    def __init__(self) -> None:
        self._messages: List[Message] = []

    def replace(self, messages: Iterable[Message]) -> None:
        """Drop everything and start over from a history replay."""
        self._messages = list(messages)

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def snapshot(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))
