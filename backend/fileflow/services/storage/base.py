"""Storage backend contract and filename helpers shared by every backend."""
import hashlib
import logging
import mimetypes
import re
import unicodedata
import uuid
from abc import ABC, abstractmethod
from pathlib import PurePosixPath
from typing import AsyncIterable, AsyncIterator, Union

from fileflow.exceptions import StorageFault, ValidationFault

logger = logging.getLogger(__name__)

Content = Union[bytes, AsyncIterable[bytes]]

MAX_FILENAME_LENGTH = 255
READ_CHUNK_SIZE = 1024 * 1024

_RESERVED_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f\x7f]')

_FILE_TYPES = {
    "document": {
        "application/pdf", "application/msword", "application/rtf", "text/plain",
        "text/markdown", "application/vnd.oasis.opendocument.text",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    },
    "spreadsheet": {
        "application/vnd.ms-excel", "text/csv", "application/vnd.oasis.opendocument.spreadsheet",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    },
    "presentation": {
        "application/vnd.ms-powerpoint", "application/vnd.oasis.opendocument.presentation",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    },
}


def sanitize_filename(filename: str) -> str:
    """Strip path components and reserved characters, normalise to NFC, cap at 255 chars.

    Raises ValidationFault when nothing usable is left.
    """
    if filename is None:
        raise ValidationFault("Filename is required")
    name = unicodedata.normalize("NFC", filename)
    name = name.replace("\\", "/").rsplit("/", 1)[-1]
    name = _RESERVED_CHARS.sub("_", name).strip()
    name = name.lstrip(".")
    if not name or set(name) == {"_"}:
        raise ValidationFault(f"Invalid filename: {filename!r}")

    if len(name) > MAX_FILENAME_LENGTH:
        suffix = PurePosixPath(name).suffix
        if len(suffix) >= MAX_FILENAME_LENGTH:
            suffix = ""
        name = name[: MAX_FILENAME_LENGTH - len(suffix)] + suffix
    return name


def generate_unique_filename(original: str) -> str:
    """uuid-prefixed storage name so concurrent uploads of the same name never collide."""
    return f"{uuid.uuid4().hex}_{sanitize_filename(original)}"[:MAX_FILENAME_LENGTH]


def determine_file_type(mime_type: str | None, filename: str | None = None) -> str:
    """Coarse category used by search-by-type."""
    if not mime_type and filename:
        mime_type, _ = mimetypes.guess_type(filename)
    if not mime_type:
        return "other"
    mime_type = mime_type.lower()
    for category, types in _FILE_TYPES.items():
        if mime_type in types:
            return category
    for prefix in ("image", "video", "audio"):
        if mime_type.startswith(prefix + "/"):
            return prefix
    return "other"


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


async def iter_content(content: Content) -> AsyncIterator[bytes]:
    """Yield bytes from either a bytes object or an async byte stream."""
    if isinstance(content, (bytes, bytearray, memoryview)):
        data = bytes(content)
        if data:
            yield data
        return
    async for piece in content:
        if piece:
            yield piece


class StorageBackend(ABC):
    """Uniform interface over local disk and S3-compatible stores.

    Paths are backend-relative keys with forward slashes, e.g.
    ``users/u1/files/3f2a..._report.pdf``.
    """

    name: str = "abstract"

    async def initialize(self) -> None:
        """Startup hook (create root dir / bucket)."""
        return None

    @abstractmethod
    async def store(self, content: Content, declared_size: int | None,
                    filename: str, directory: str) -> str:
        """Write content and return its storage path. Overwrites an existing object."""

    @abstractmethod
    async def read(self, path: str) -> bytes:
        """Return the full object. Raises NotFound if absent."""

    @abstractmethod
    def stream(self, path: str, chunk_size: int = READ_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Async iterator over the object's bytes. Raises NotFound if absent."""

    @abstractmethod
    async def presigned_download_url(self, path: str, ttl_seconds: int) -> str:
        pass

    @abstractmethod
    async def presigned_upload_url(self, path: str, content_type: str, ttl_seconds: int) -> str:
        pass

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """True if an object was removed, False if it was already absent."""

    @abstractmethod
    async def copy(self, src: str, dst: str) -> bool:
        """Duplicate src at dst. Raises ValidationFault when both name the same object."""

    @abstractmethod
    async def exists(self, path: str) -> bool:
        pass

    @abstractmethod
    async def merge_chunks(self, chunk_paths: list[str], filename: str, directory: str) -> str:
        """Concatenate chunks in the given order. Raises StorageFault if any is missing."""

    async def move(self, src: str, dst: str) -> bool:
        """Copy then delete the source.

        A failed copy leaves the source untouched. A failed delete after a
        successful copy leaves both objects in place and reports False.
        """
        if not await self.copy(src, dst):
            return False
        try:
            removed = await self.delete(src)
        except StorageFault as e:
            logger.warning(f"Move {src} -> {dst}: source delete failed ({e}), duplicate left at both paths")
            return False
        if not removed:
            logger.warning(f"Move {src} -> {dst}: source vanished before delete, duplicate state unknown")
            return False
        return True

    async def compute_hash(self, path: str) -> str:
        digest = hashlib.sha256()
        async for piece in self.stream(path):
            digest.update(piece)
        return digest.hexdigest()
