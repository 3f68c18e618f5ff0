"""Plain-text extraction feeding the full-text index. Failures yield empty text."""
import logging

from fileflow.config import settings
from fileflow.services.storage import StorageBackend

logger = logging.getLogger(__name__)

_TEXT_TYPES = {
    "application/json", "application/xml", "application/x-yaml", "application/csv",
    "application/javascript", "application/x-sh",
}


def is_extractable(mime_type: str | None) -> bool:
    if not mime_type:
        return False
    mime_type = mime_type.split(";")[0].strip().lower()
    return mime_type.startswith("text/") or mime_type in _TEXT_TYPES or mime_type.endswith("+xml")


class TextExtractor:

    def __init__(self, max_bytes: int | None = None):
        self.max_bytes = max_bytes or settings.MAX_EXTRACT_BYTES

    async def extract(self, storage: StorageBackend, path: str, mime_type: str | None) -> str:
        if not is_extractable(mime_type):
            return ""
        buf = bytearray()
        try:
            async for piece in storage.stream(path):
                buf.extend(piece)
                if len(buf) >= self.max_bytes:
                    break
        except Exception as e:
            logger.warning(f"Text extraction failed for {path}: {e}")
            return ""
        return bytes(buf[: self.max_bytes]).decode("utf-8", errors="replace")
