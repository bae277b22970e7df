"""Occupant list tracking.

Join/leave frames only name one user, so the list is never edited from them
directly; every change triggers a pull from the room-info endpoint instead.
If a pull fails the last-known list stays as it was.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

import httpx

from .errors import RoomGoneError
from .room_api import RoomApiClient

logger = logging.getLogger(__name__)


class RefreshOutcome(str, Enum):
    """Result of one presence refresh.

    Attributes:
        UPDATED: Occupants and expiry were replaced with the server's view.
        STALE: The pull failed; the last-known state is kept.
        SUPERSEDED: A later refresh finished first; this result was dropped.
        ROOM_GONE: The room no longer exists.
    """
    UPDATED = "updated"
    STALE = "stale"
    SUPERSEDED = "superseded"
    ROOM_GONE = "room_gone"


class PresenceTracker:
    """Last-known occupant list and expiry instant for one room."""

    def __init__(self, api: RoomApiClient, room_id: str) -> None:
        self._api = api
        self._room_id = room_id
        self._occupants: Tuple[str, ...] = ()
        self._expire_at: Optional[datetime] = None
        # Refresh tickets: only a result newer than the last applied one lands.
        self._issued = 0
        self._applied = 0

    @property
    def occupants(self) -> Tuple[str, ...]:
        return self._occupants

    @property
    def expire_at(self) -> Optional[datetime]:
        return self._expire_at

    async def refresh(self) -> RefreshOutcome:
        """Pull the occupant list and expiry instant from the server."""
        self._issued += 1
        ticket = self._issued

        try:
            info = await self._api.get_room_info(self._room_id)
        except RoomGoneError as e:
            logger.warning(f"Room {self._room_id} is gone: {e}")
            return RefreshOutcome.ROOM_GONE
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch room info for {self._room_id}: {e}")
            return RefreshOutcome.STALE

        if ticket < self._applied:
            logger.debug("Dropping room info from refresh #%d (have #%d)", ticket, self._applied)
            return RefreshOutcome.SUPERSEDED

        self._applied = ticket
        self._occupants = tuple(info.users)
        self._expire_at = info.expire_at
        logger.debug("Room %s occupants: %s", self._room_id, ", ".join(self._occupants))
        return RefreshOutcome.UPDATED
