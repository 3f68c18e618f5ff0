"""Tests for the S3-compatible backend against an in-memory stand-in for the boto3 client."""
import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from fileflow.exceptions import NotFound, StorageFault, ValidationFault
from fileflow.services.storage import S3ObjectStoreBackend
from fileflow.services.storage.base import hash_bytes


def _client_error(code: str, op: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


class _BrokenBody:
    """A response body whose connection drops mid-read."""

    def read(self, *args):
        raise ReadTimeoutError(endpoint_url="https://s3.test")

    def close(self):
        pass


class FakeS3:
    """Implements the handful of boto3 S3 client calls the backend makes."""

    def __init__(self, bucket_exists: bool = True):
        self.objects: dict[str, bytes] = {}
        self.bucket_exists = bucket_exists
        self.created_buckets: list[str] = []
        self.fail_delete = False
        self.unreachable = False
        self.broken_bodies = False

    def head_bucket(self, Bucket):
        if not self.bucket_exists:
            raise _client_error("404", "HeadBucket")

    def create_bucket(self, Bucket):
        self.created_buckets.append(Bucket)
        self.bucket_exists = True

    def upload_fileobj(self, fileobj, bucket, key):
        self.objects[key] = fileobj.read()

    def get_object(self, Bucket, Key):
        if self.broken_bodies:
            return {"Body": _BrokenBody()}
        if Key not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def head_object(self, Bucket, Key):
        if self.unreachable:
            raise EndpointConnectionError(endpoint_url="https://s3.test")
        if Key not in self.objects:
            raise _client_error("404", "HeadObject")
        return {"ContentLength": len(self.objects[Key])}

    def delete_object(self, Bucket, Key):
        if self.fail_delete:
            raise _client_error("AccessDenied", "DeleteObject")
        self.objects.pop(Key, None)

    def copy_object(self, Bucket, Key, CopySource):
        src = CopySource["Key"]
        if src not in self.objects:
            raise _client_error("NoSuchKey", "CopyObject")
        self.objects[Key] = self.objects[src]

    def generate_presigned_url(self, method, Params, ExpiresIn):
        return f"https://s3.test/{Params['Bucket']}/{Params['Key']}?method={method}&ttl={ExpiresIn}"


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def backend(fake_s3):
    return S3ObjectStoreBackend(bucket="test-bucket", client=fake_s3)


async def test_initialize_creates_missing_bucket():
    fake = FakeS3(bucket_exists=False)
    await S3ObjectStoreBackend(bucket="b", client=fake).initialize()
    assert fake.created_buckets == ["b"]


async def test_initialize_propagates_access_errors():
    client = MagicMock()
    client.head_bucket.side_effect = _client_error("403", "HeadBucket")
    with pytest.raises(StorageFault):
        await S3ObjectStoreBackend(bucket="b", client=client).initialize()
    client.create_bucket.assert_not_called()


async def test_store_read_and_hash(backend, fake_s3):
    key = await backend.store(b"payload", 7, "../report.pdf", "users/u1/files")
    assert key == "users/u1/files/report.pdf"
    assert fake_s3.objects[key] == b"payload"
    assert await backend.read(key) == b"payload"
    assert await backend.compute_hash(key) == hash_bytes(b"payload")


async def test_store_rejects_empty_and_mismatched_content(backend, fake_s3):
    with pytest.raises(StorageFault):
        await backend.store(b"", 0, "e.txt", "d")
    with pytest.raises(StorageFault):
        await backend.store(b"abc", 5, "m.txt", "d")
    assert fake_s3.objects == {}


async def test_read_missing_object_is_not_found(backend):
    with pytest.raises(NotFound):
        await backend.read("nothing/here")


async def test_delete_reports_absence(backend):
    key = await backend.store(b"x", 1, "x.txt", "d")
    assert await backend.delete(key) is True
    assert await backend.delete(key) is False


async def test_move_is_copy_then_delete(backend, fake_s3):
    key = await backend.store(b"x", 1, "x.txt", "d")
    assert await backend.move(key, "e/x.txt") is True
    assert list(fake_s3.objects) == ["e/x.txt"]


async def test_move_failing_delete_leaves_duplicate(backend, fake_s3):
    key = await backend.store(b"x", 1, "x.txt", "d")
    fake_s3.fail_delete = True
    assert await backend.move(key, "e/x.txt") is False
    assert set(fake_s3.objects) == {"d/x.txt", "e/x.txt"}


async def test_move_failing_copy_leaves_source(backend, fake_s3):
    assert await backend.move("d/missing.txt", "e/x.txt") is False
    assert fake_s3.objects == {}


async def test_merge_chunks_concatenates(backend):
    keys = [await backend.store(p, 2, f"c{i}", "chunks") for i, p in enumerate([b"aa", b"bb"])]
    merged = await backend.merge_chunks(keys, "whole.bin", "out")
    assert await backend.read(merged) == b"aabb"


async def test_merge_chunks_missing_chunk(backend):
    key = await backend.store(b"aa", 2, "c0", "chunks")
    with pytest.raises(StorageFault):
        await backend.merge_chunks([key, "chunks/c1"], "whole.bin", "out")


async def test_presigned_urls_are_real_signed_urls(backend):
    url = await backend.presigned_download_url("d/x.txt", 120)
    assert url.startswith("https://s3.test/test-bucket/d/x.txt")
    assert "ttl=120" in url
    up = await backend.presigned_upload_url("d/y.txt", "text/plain", 60)
    assert "put_object" in up


async def test_copy_onto_itself_is_rejected(backend, fake_s3):
    key = await backend.store(b"x", 1, "x.txt", "d")
    with pytest.raises(ValidationFault):
        await backend.move(key, "/d/x.txt")
    assert fake_s3.objects == {"d/x.txt": b"x"}


async def test_connection_failure_on_stat_is_a_storage_fault(backend, fake_s3):
    key = await backend.store(b"aa", 2, "c0", "chunks")
    fake_s3.unreachable = True
    with pytest.raises(StorageFault):
        await backend.exists(key)
    with pytest.raises(StorageFault):
        await backend.merge_chunks([key], "whole.bin", "out")


async def test_dropped_connection_while_reading_is_a_storage_fault(backend, fake_s3):
    key = await backend.store(b"aa", 2, "c0", "chunks")
    fake_s3.broken_bodies = True
    with pytest.raises(StorageFault):
        await backend.read(key)
    with pytest.raises(StorageFault):
        async for _ in backend.stream(key):
            pass
    with pytest.raises(StorageFault):
        await backend.merge_chunks([key], "whole.bin", "out")
