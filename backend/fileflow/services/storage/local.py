"""Local filesystem backend (dev and single-node deployments)."""
import logging
import os
import uuid
from pathlib import Path
from typing import AsyncIterator

import aiofiles
import aiofiles.os

from fileflow.exceptions import NotFound, StorageFault, ValidationFault
from fileflow.services.storage.base import (
    Content, READ_CHUNK_SIZE, StorageBackend, iter_content, sanitize_filename,
)

logger = logging.getLogger(__name__)


class LocalStorageBackend(StorageBackend):
    """Stores objects under a root directory.

    "Presigned" URLs are API-relative paths served by the files router,
    not real signed URLs; clients must treat them as opaque.
    """

    name = "local"

    def __init__(self, root: str, download_prefix: str, upload_prefix: str):
        self.root = Path(root).resolve()
        self.download_prefix = download_prefix.rstrip("/")
        self.upload_prefix = upload_prefix.rstrip("/")

    async def initialize(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Local storage root: {self.root}")

    def _resolve(self, path: str) -> Path:
        full = (self.root / path).resolve()
        if full != self.root and self.root not in full.parents:
            raise ValidationFault(f"Path escapes storage root: {path}")
        return full

    def _relative(self, full: Path) -> str:
        return full.relative_to(self.root).as_posix()

    async def store(self, content: Content, declared_size: int | None,
                    filename: str, directory: str) -> str:
        name = sanitize_filename(filename)
        target = self._resolve(f"{directory.strip('/')}/{name}" if directory else name)
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.part")
        written = 0
        try:
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            async with aiofiles.open(tmp, "wb") as f:
                async for piece in iter_content(content):
                    await f.write(piece)
                    written += len(piece)
            if written == 0:
                raise StorageFault(f"Refusing to store empty content for {name}")
            if declared_size is not None and written != declared_size:
                raise StorageFault(
                    f"Size mismatch for {name}: declared {declared_size}, received {written}"
                )
            os.replace(tmp, target)
        except OSError as e:
            raise StorageFault(f"Failed to write {target}: {e}") from e
        finally:
            if tmp.exists():
                tmp.unlink()
        logger.debug(f"Stored {written} bytes at {target}")
        return self._relative(target)

    async def read(self, path: str) -> bytes:
        full = self._resolve(path)
        if not full.is_file():
            raise NotFound("Object", path)
        try:
            async with aiofiles.open(full, "rb") as f:
                return await f.read()
        except OSError as e:
            raise StorageFault(f"Failed to read {path}: {e}") from e

    async def stream(self, path: str, chunk_size: int = READ_CHUNK_SIZE) -> AsyncIterator[bytes]:
        full = self._resolve(path)
        if not full.is_file():
            raise NotFound("Object", path)
        try:
            async with aiofiles.open(full, "rb") as f:
                while True:
                    piece = await f.read(chunk_size)
                    if not piece:
                        break
                    yield piece
        except OSError as e:
            raise StorageFault(f"Failed to read {path}: {e}") from e

    async def presigned_download_url(self, path: str, ttl_seconds: int) -> str:
        return f"{self.download_prefix}/{path}"

    async def presigned_upload_url(self, path: str, content_type: str, ttl_seconds: int) -> str:
        return f"{self.upload_prefix}/{path}"

    async def delete(self, path: str) -> bool:
        full = self._resolve(path)
        if not full.exists():
            return False
        try:
            await aiofiles.os.remove(full)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageFault(f"Failed to delete {path}: {e}") from e
        return True

    async def copy(self, src: str, dst: str) -> bool:
        source = self._resolve(src)
        if not source.is_file():
            logger.warning(f"Copy skipped, source missing: {src}")
            return False
        target = self._resolve(dst)
        if target == source:
            raise ValidationFault(f"Source and destination are the same object: {src}")
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.part")
        try:
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            async with aiofiles.open(source, "rb") as fin, aiofiles.open(tmp, "wb") as fout:
                while True:
                    piece = await fin.read(READ_CHUNK_SIZE)
                    if not piece:
                        break
                    await fout.write(piece)
            os.replace(tmp, target)
        except OSError as e:
            logger.error(f"Copy {src} -> {dst} failed: {e}")
            return False
        finally:
            if tmp.exists():
                tmp.unlink()
        return True

    async def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    async def merge_chunks(self, chunk_paths: list[str], filename: str, directory: str) -> str:
        missing = [p for p in chunk_paths if not self._resolve(p).is_file()]
        if missing:
            raise StorageFault(f"Cannot merge, missing chunks: {missing}")

        async def _concatenated():
            for chunk_path in chunk_paths:
                async for piece in self.stream(chunk_path):
                    yield piece

        return await self.store(_concatenated(), None, filename, directory)
