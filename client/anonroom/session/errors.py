"""Exception hierarchy for the realtime session engine.

Only validation errors (attachments, message length), NotConnectedError and
ValueError for bad constructor arguments ever reach the host. Protocol errors
are dropped and logged inside the engine; room-gone is turned into a leave
notification.
"""


class SessionError(Exception):
    """Base class for all engine errors."""


class ProtocolError(SessionError):
    """An inbound frame could not be decoded."""


class AttachmentError(SessionError):
    """An attachment was rejected before it was sent."""


class AttachmentTooLargeError(AttachmentError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"File size ({size} bytes) exceeds limit ({limit} bytes)")
        self.size = size
        self.limit = limit


class UnsupportedAttachmentTypeError(AttachmentError):
    def __init__(self, mime_type: str) -> None:
        super().__init__(f"Only image files can be sent, got {mime_type or 'unknown type'!r}")
        self.mime_type = mime_type


class AttachmentReadError(AttachmentError):
    """The attachment passed validation but its contents could not be read."""


class MessageTooLongError(SessionError):
    def __init__(self, length: int, limit: int) -> None:
        super().__init__(f"Message is {length} characters, limit is {limit}")
        self.length = length
        self.limit = limit


class NotConnectedError(SessionError):
    """A send was attempted without an open transport."""


class RoomGoneError(SessionError):
    """The room-info endpoint reports that the room no longer exists."""

    def __init__(self, room_id: str, status_code: int) -> None:
        super().__init__(f"Room {room_id!r} is gone (HTTP {status_code})")
        self.room_id = room_id
        self.status_code = status_code
