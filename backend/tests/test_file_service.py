"""End-to-end tests of upload orchestration across ledger, storage, assembler and dispatcher."""
import asyncio
import json
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select

from fileflow.exceptions import InvalidChunk, NotFound, QuotaExceededError, StorageFault, ValidationFault
from fileflow.models import FileRecord, QueuedNotification, UploadSession


@pytest_asyncio.fixture
async def user(services):
    await services.ledger.register_user("u1", base_quota=1000)
    return "u1"


async def _queued_actions(session_factory, user_id):
    async with session_factory() as db:
        rows = (await db.execute(
            select(QueuedNotification)
            .where(QueuedNotification.user_id == user_id)
            .order_by(QueuedNotification.id)
        )).scalars().all()
    return [(json.loads(r.payload)["type"], json.loads(r.payload)["action"]) for r in rows]


async def test_upload_reserves_stores_confirms_and_notifies(services, user, storage, session_factory):
    record = await services.files.upload_file(user, b"hello", "greet.txt", "text/plain")
    assert record.size_bytes == 5
    assert record.file_type == "document"
    assert await storage.read(record.storage_path) == b"hello"
    assert record.storage_path.startswith("users/u1/files/")

    usage = await services.ledger.get_usage(user)
    assert usage.used == 5
    assert usage.reserved == 0

    actions = await _queued_actions(session_factory, user)
    assert ("FILE_EVENT", "UPLOADED") in actions
    assert ("QUOTA_UPDATE", "UPDATED") in actions


async def test_upload_over_quota_is_rejected_before_writing(services, user, storage):
    with pytest.raises(QuotaExceededError) as exc:
        await services.files.upload_file(user, b"x" * 1001, "big.bin")
    assert exc.value.available == 1000
    assert list(storage.root.rglob("*.bin")) == []
    assert (await services.ledger.get_usage(user)).reserved == 0


async def test_storage_failure_releases_reservation(services, user, storage, monkeypatch):
    async def broken_store(*args, **kwargs):
        raise StorageFault("disk full")

    monkeypatch.setattr(storage, "store", broken_store)
    with pytest.raises(StorageFault):
        await services.files.upload_file(user, b"hello", "greet.txt")
    usage = await services.ledger.get_usage(user)
    assert usage.reserved == 0
    assert usage.used == 0


async def test_empty_and_oversized_uploads(services, user):
    with pytest.raises(ValidationFault):
        await services.files.upload_file(user, b"", "empty.txt")
    services.files.max_file_size = 3
    with pytest.raises(ValidationFault):
        await services.files.upload_file(user, b"abcd", "four.txt")


async def test_chunked_upload_flow(services, user, storage):
    session = await services.files.start_chunked_upload(user, "movie.mp4", 9, 3, "video/mp4")
    assert (await services.ledger.get_usage(user)).reserved == 9

    for n, part in [(2, b"ghi"), (0, b"abc"), (1, b"def")]:
        await services.files.upload_chunk(user, session.id, n, part)
    record = await services.files.complete_chunked_upload(user, session.id)

    assert await storage.read(record.storage_path) == b"abcdefghi"
    assert record.file_type == "video"
    usage = await services.ledger.get_usage(user)
    assert usage.used == 9
    assert usage.reserved == 0


async def test_chunked_upload_over_quota(services, user):
    with pytest.raises(QuotaExceededError):
        await services.files.start_chunked_upload(user, "huge.iso", 5000, 5)


async def test_failed_finalize_keeps_reservation_for_retry(services, user):
    session = await services.files.start_chunked_upload(user, "a.bin", 6, 2)
    await services.files.upload_chunk(user, session.id, 0, b"abc")
    with pytest.raises(InvalidChunk):
        await services.files.complete_chunked_upload(user, session.id)
    assert (await services.ledger.get_usage(user)).reserved == 6

    await services.files.upload_chunk(user, session.id, 1, b"def")
    await services.files.complete_chunked_upload(user, session.id)
    usage = await services.ledger.get_usage(user)
    assert (usage.used, usage.reserved) == (6, 0)


async def test_expired_upload_releases_reservation(services, user, session_factory):
    session = await services.files.start_chunked_upload(user, "a.bin", 6, 2)
    async with session_factory() as db:
        row = await db.get(UploadSession, session.id)
        row.expires_at = row.expires_at - timedelta(hours=2)
        await db.commit()

    assert await services.files.expire_uploads() == 1
    assert (await services.ledger.get_usage(user)).reserved == 0


async def test_other_users_cannot_touch_a_session(services, user):
    await services.ledger.register_user("intruder")
    session = await services.files.start_chunked_upload(user, "a.bin", 6, 2)
    with pytest.raises(NotFound):
        await services.files.upload_chunk("intruder", session.id, 0, b"abc")


async def test_delete_file_frees_space_and_object(services, user, storage, session_factory):
    record = await services.files.upload_file(user, b"hello", "greet.txt")
    await services.files.delete_file(user, record.id)

    assert not await storage.exists(record.storage_path)
    assert (await services.ledger.get_usage(user)).used == 0
    async with session_factory() as db:
        row = await db.get(FileRecord, record.id)
    assert row.is_deleted is True
    assert row.deleted_at is not None
    with pytest.raises(NotFound):
        await services.files.get_file(user, record.id)


async def test_move_and_copy(services, user, storage, session_factory):
    src_folder = await services.files.create_folder(user, "src")
    dst_folder = await services.files.create_folder(user, "dst")
    record = await services.files.upload_file(user, b"hello", "greet.txt", parent_folder_id=src_folder.id)

    moved = await services.files.move_file(user, record.id, dst_folder.id)
    assert moved.parent_folder_id == dst_folder.id
    assert moved.storage_path == record.storage_path

    copy = await services.files.copy_file(user, record.id)
    assert copy.id != record.id
    assert copy.storage_path != record.storage_path
    assert await storage.read(copy.storage_path) == b"hello"
    assert (await services.ledger.get_usage(user)).used == 10

    actions = await _queued_actions(session_factory, user)
    assert ("FILE_EVENT", "MOVED") in actions
    assert ("FOLDER_EVENT", "CREATED") in actions


async def test_move_into_foreign_folder_is_not_found(services, user):
    await services.ledger.register_user("u2")
    foreign = await services.files.create_folder("u2", "theirs")
    record = await services.files.upload_file(user, b"hello", "greet.txt")
    with pytest.raises(NotFound):
        await services.files.move_file(user, record.id, foreign.id)


async def test_copy_over_quota(services, user):
    record = await services.files.upload_file(user, b"x" * 600, "big.bin")
    with pytest.raises(QuotaExceededError):
        await services.files.copy_file(user, record.id)
    assert (await services.ledger.get_usage(user)).reserved == 0


async def test_delete_folder_cascades(services, user, storage):
    top = await services.files.create_folder(user, "top")
    child = await services.files.create_folder(user, "child", top.id)
    a = await services.files.upload_file(user, b"aaa", "a.txt", parent_folder_id=top.id)
    b = await services.files.upload_file(user, b"bbbb", "b.txt", parent_folder_id=child.id)
    keep = await services.files.upload_file(user, b"c", "c.txt")

    await services.files.delete_folder(user, top.id)
    with pytest.raises(NotFound):
        await services.files.get_folder(user, child.id)
    for gone in (a, b):
        assert not await storage.exists(gone.storage_path)
    assert await storage.exists(keep.storage_path)
    assert (await services.ledger.get_usage(user)).used == 1


async def test_download_url_and_streams(services, user):
    record = await services.files.upload_file(user, b"hello", "greet.txt")
    url, ttl = await services.files.download_url(user, record.id)
    assert url == f"/api/files/download/{record.storage_path}"
    assert ttl > 0

    _, stream = await services.files.open_download(user, record.id)
    assert b"".join([piece async for piece in stream]) == b"hello"

    by_path = await services.files.open_path(user, record.storage_path)
    assert b"".join([piece async for piece in by_path]) == b"hello"
    with pytest.raises(NotFound):
        await services.files.open_path("someone-else", record.storage_path)


async def test_tags_are_deduplicated(services, user):
    record = await services.files.upload_file(user, b"hello", "greet.txt")
    assert await services.files.tag_file(user, record.id, ["a", "b", " a "]) == ["a", "b"]
    assert await services.files.tag_file(user, record.id, ["c", "a"]) == ["a", "b", "c"]
    with pytest.raises(ValidationFault):
        await services.files.tag_file(user, record.id, ["  "])


async def test_concurrent_deletes_release_space_once(services, user, storage):
    a = await services.files.upload_file(user, b"a" * 300, "a.bin")
    b = await services.files.upload_file(user, b"b" * 300, "b.bin")

    results = await asyncio.gather(
        services.files.delete_file(user, a.id),
        services.files.delete_file(user, a.id),
        return_exceptions=True,
    )
    assert sum(isinstance(r, NotFound) for r in results) == 1
    assert sum(isinstance(r, FileRecord) for r in results) == 1
    assert (await services.ledger.get_usage(user)).used == 300
    assert await storage.exists(b.storage_path)


async def test_file_delete_racing_folder_delete(services, user):
    folder = await services.files.create_folder(user, "docs")
    inside = await services.files.upload_file(user, b"i" * 200, "in.bin", parent_folder_id=folder.id)
    await services.files.upload_file(user, b"o" * 100, "out.bin")

    await asyncio.gather(
        services.files.delete_file(user, inside.id),
        services.files.delete_folder(user, folder.id),
        return_exceptions=True,
    )
    assert (await services.ledger.get_usage(user)).used == 100
