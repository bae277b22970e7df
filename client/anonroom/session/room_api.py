"""HTTP client for the room server's request/response endpoints.

Endpoints:
    - GET /api/room/{roomId}: occupant list and expiry instant
    - DELETE /api/leave-room/{roomId}/{user}: best-effort leave on explicit exit
"""
import logging
from typing import Optional
from urllib.parse import quote

import httpx

from .errors import RoomGoneError
from .models import RoomInfo

logger = logging.getLogger(__name__)

# Statuses meaning the room no longer exists
ROOM_GONE_STATUSES = (404, 410)


def encode_segment(value: str) -> str:
    """Percent-encode one URL path segment."""
    return quote(value, safe="")


class RoomApiClient:
    """Async client for the room-info and leave endpoints.

    Args:
        base_url: Server root, e.g. ``http://localhost:8000``.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests mount an ASGI app here).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def get_room_info(self, room_id: str) -> RoomInfo:
        """Fetch the authoritative occupant list and expiry instant.

        Raises:
            RoomGoneError: The server answered 404 or 410.
            httpx.HTTPError: Network failure or any other error status.
            ValueError: The body is not a valid room-info document.
        """
        response = await self._client.get(f"/api/room/{encode_segment(room_id)}")
        if response.status_code in ROOM_GONE_STATUSES:
            raise RoomGoneError(room_id, response.status_code)
        response.raise_for_status()
        return RoomInfo.model_validate(response.json())

    async def leave_room(self, room_id: str, user: str) -> bool:
        """Tell the server *user* is leaving. Never raises.

        Returns:
            True if the server acknowledged the leave, False otherwise.
        """
        url = f"/api/leave-room/{encode_segment(room_id)}/{encode_segment(user)}"
        try:
            response = await self._client.delete(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to leave room {room_id}: {e}")
            return False
        return True

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "RoomApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
