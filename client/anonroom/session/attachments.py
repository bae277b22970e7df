"""Image attachment validation and encoding.

Images travel inline: the file is read and turned into a base64 ``data:`` URI
that is sent as the message content and can be rendered without another
fetch.
"""
import asyncio
import base64
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Optional, Union

from .errors import (
    AttachmentReadError,
    AttachmentTooLargeError,
    UnsupportedAttachmentTypeError,
)

logger = logging.getLogger(__name__)

# Attachment size limit: 5MB (inclusive)
MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024

IMAGE_MIME_PREFIX = "image/"


@dataclass(frozen=True)
class ImageFile:
    """A file the user picked for sending.

    Either *path* or *data* holds the contents. *size* and *mime_type* are
    what the picker reported and are what validation looks at.
    """
    name: str
    mime_type: str
    size: int
    path: Optional[Path] = None
    data: Optional[bytes] = None

    @classmethod
    def from_path(cls, path: Union[str, Path], mime_type: Optional[str] = None) -> "ImageFile":
        """Describe a file on disk, guessing the MIME type from its name.

        Raises:
            OSError: The file does not exist or cannot be stat'ed.
        """
        path = Path(path)
        size = path.stat().st_size
        if mime_type is None:
            mime_type, _ = mimetypes.guess_type(path.name)
        return cls(name=path.name, mime_type=mime_type or "", size=size, path=path)

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: Optional[str] = None) -> "ImageFile":
        if mime_type is None:
            mime_type, _ = mimetypes.guess_type(name)
        return cls(name=name, mime_type=mime_type or "", size=len(data), data=data)

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.path is None:
            raise AttachmentReadError(f"{self.name} has no contents")
        return self.path.read_bytes()


class AttachmentEncoder:
    """Validates image files and encodes them as data URIs."""

    def __init__(
        self,
        max_bytes: int = MAX_ATTACHMENT_BYTES,
        allowed_prefix: str = IMAGE_MIME_PREFIX,
    ) -> None:
        self.max_bytes = max_bytes
        self.allowed_prefix = allowed_prefix

    def validate(self, file: ImageFile) -> None:
        """Check type and size.

        A non-image is rejected as such whatever its size. An image exactly
        at the limit is accepted.

        Raises:
            UnsupportedAttachmentTypeError: The MIME type is not an image type.
            AttachmentTooLargeError: ``file.size`` is above the limit.
        """
        if not (file.mime_type or "").startswith(self.allowed_prefix):
            raise UnsupportedAttachmentTypeError(file.mime_type)
        if file.size > self.max_bytes:
            raise AttachmentTooLargeError(file.size, self.max_bytes)

    def encode(self, file: ImageFile) -> Awaitable[str]:
        """Validate *file* now and return an awaitable that yields its data URI.

        Validation errors are raised by this call itself, before anything is
        read. Read failures surface when the returned awaitable is awaited,
        as AttachmentReadError.
        """
        self.validate(file)
        return self._encode(file)

    async def _encode(self, file: ImageFile) -> str:
        try:
            data = await asyncio.to_thread(file.read_bytes)
        except OSError as exc:
            raise AttachmentReadError(f"Could not read {file.name}: {exc}") from exc

        # The file may have grown between picking and reading.
        if len(data) > self.max_bytes:
            raise AttachmentTooLargeError(len(data), self.max_bytes)

        encoded = base64.b64encode(data).decode("ascii")
        logger.debug("Encoded %s (%d bytes, %s)", file.name, len(data), file.mime_type)
        return f"data:{file.mime_type};base64,{encoded}"
