"""S3-compatible object store backend (AWS S3, MinIO).

boto3 is synchronous, so every client call is pushed onto a worker thread.
"""
import asyncio
import logging
import tempfile
from typing import AsyncIterator

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from fileflow.exceptions import NotFound, StorageFault, ValidationFault
from fileflow.services.storage.base import (
    Content, READ_CHUNK_SIZE, StorageBackend, iter_content, sanitize_filename,
)

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_SPOOL_MAX_MEMORY = 8 * 1024 * 1024


def _is_missing(error: ClientError) -> bool:
    return str(error.response.get("Error", {}).get("Code")) in _MISSING_CODES


class S3ObjectStoreBackend(StorageBackend):
    name = "object-store"

    def __init__(self, bucket: str, endpoint_url: str | None = None, access_key: str | None = None,
                 secret_key: str | None = None, region: str = "us-east-1", client=None):
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key or None,
            aws_secret_access_key=secret_key or None,
            region_name=region,
        )

    async def initialize(self) -> None:
        try:
            await asyncio.to_thread(self.client.head_bucket, Bucket=self.bucket)
        except ClientError as e:
            if not _is_missing(e):
                raise StorageFault(f"Cannot access bucket {self.bucket}: {e}") from e
            await asyncio.to_thread(self.client.create_bucket, Bucket=self.bucket)
            logger.info(f"Created bucket {self.bucket}")

    @staticmethod
    def _key(filename: str, directory: str) -> str:
        name = sanitize_filename(filename)
        directory = directory.strip("/")
        return f"{directory}/{name}" if directory else name

    async def store(self, content: Content, declared_size: int | None,
                    filename: str, directory: str) -> str:
        key = self._key(filename, directory)
        written = 0
        with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_MEMORY) as spool:
            async for piece in iter_content(content):
                spool.write(piece)
                written += len(piece)
            if written == 0:
                raise StorageFault(f"Refusing to store empty content for {key}")
            if declared_size is not None and written != declared_size:
                raise StorageFault(
                    f"Size mismatch for {key}: declared {declared_size}, received {written}"
                )
            spool.seek(0)
            try:
                await asyncio.to_thread(self.client.upload_fileobj, spool, self.bucket, key)
            except (BotoCoreError, ClientError) as e:
                raise StorageFault(f"Upload of {key} failed: {e}") from e
        logger.debug(f"Stored {written} bytes at s3://{self.bucket}/{key}")
        return key

    async def _get_object(self, path: str) -> dict:
        try:
            return await asyncio.to_thread(self.client.get_object, Bucket=self.bucket, Key=path)
        except ClientError as e:
            if _is_missing(e):
                raise NotFound("Object", path) from e
            raise StorageFault(f"Read of {path} failed: {e}") from e
        except BotoCoreError as e:
            raise StorageFault(f"Read of {path} failed: {e}") from e

    async def read(self, path: str) -> bytes:
        obj = await self._get_object(path)
        try:
            return await asyncio.to_thread(obj["Body"].read)
        except BotoCoreError as e:
            raise StorageFault(f"Read of {path} failed: {e}") from e

    async def stream(self, path: str, chunk_size: int = READ_CHUNK_SIZE) -> AsyncIterator[bytes]:
        obj = await self._get_object(path)
        body = obj["Body"]
        try:
            while True:
                try:
                    piece = await asyncio.to_thread(body.read, chunk_size)
                except BotoCoreError as e:
                    raise StorageFault(f"Read of {path} failed: {e}") from e
                if not piece:
                    break
                yield piece
        finally:
            body.close()

    async def presigned_download_url(self, path: str, ttl_seconds: int) -> str:
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": path},
            ExpiresIn=ttl_seconds,
        )

    async def presigned_upload_url(self, path: str, content_type: str, ttl_seconds: int) -> str:
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            "put_object",
            Params={"Bucket": self.bucket, "Key": path, "ContentType": content_type},
            ExpiresIn=ttl_seconds,
        )

    async def exists(self, path: str) -> bool:
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=path)
            return True
        except ClientError as e:
            if _is_missing(e):
                return False
            raise StorageFault(f"Stat of {path} failed: {e}") from e
        except BotoCoreError as e:
            raise StorageFault(f"Stat of {path} failed: {e}") from e

    async def delete(self, path: str) -> bool:
        if not await self.exists(path):
            return False
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=path)
        except (BotoCoreError, ClientError) as e:
            raise StorageFault(f"Delete of {path} failed: {e}") from e
        return True

    async def copy(self, src: str, dst: str) -> bool:
        if src.strip("/") == dst.strip("/"):
            raise ValidationFault(f"Source and destination are the same object: {src}")
        try:
            await asyncio.to_thread(
                self.client.copy_object,
                Bucket=self.bucket,
                Key=dst,
                CopySource={"Bucket": self.bucket, "Key": src},
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Copy {src} -> {dst} failed: {e}")
            return False
        return True

    async def merge_chunks(self, chunk_paths: list[str], filename: str, directory: str) -> str:
        for chunk_path in chunk_paths:
            if not await self.exists(chunk_path):
                raise StorageFault(f"Cannot merge, missing chunk: {chunk_path}")

        async def _concatenated():
            for chunk_path in chunk_paths:
                async for piece in self.stream(chunk_path):
                    yield piece

        return await self.store(_concatenated(), None, filename, directory)
