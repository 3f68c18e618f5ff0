"""Tests for chunked upload sessions."""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from fileflow.exceptions import InvalidChunk, NotFound, SessionExpired, StorageFault, ValidationFault
from fileflow.models import UploadChunk, UploadSession
from fileflow.services.chunk_assembler import ChunkAssembler
from fileflow.services.storage.base import hash_bytes

PARTS = [b"alpha-", b"bravo-", b"charlie"]
TOTAL = sum(len(p) for p in PARTS)


@pytest.fixture
def assembler(storage, session_factory):
    return ChunkAssembler(storage=storage, session_factory=session_factory)


async def _upload(assembler, order):
    session = await assembler.open_session("u1", TOTAL, len(PARTS), "story.txt")
    for n in order:
        await assembler.receive_chunk(session.id, n, PARTS[n])
    return await assembler.finalize(session.id)


async def test_arrival_order_does_not_change_merged_bytes(assembler, storage):
    shuffled = await _upload(assembler, [2, 0, 1])
    ordered = await _upload(assembler, [0, 1, 2])
    assert await storage.read(shuffled.storage_path) == b"".join(PARTS)
    assert await storage.read(ordered.storage_path) == b"".join(PARTS)
    assert shuffled.checksum == ordered.checksum == hash_bytes(b"".join(PARTS))
    assert shuffled.size == TOTAL


async def test_finalize_cleans_up_chunks(assembler, storage, session_factory):
    result = await _upload(assembler, [0, 1, 2])
    async with session_factory() as db:
        session = await db.get(UploadSession, result.session_id)
        chunks = (await db.execute(select(UploadChunk))).scalars().all()
    assert session.status == "merged"
    assert session.storage_path == result.storage_path
    assert chunks == []
    chunk_dir = storage.root / ChunkAssembler.chunk_directory("u1", result.session_id)
    assert not chunk_dir.exists() or list(chunk_dir.iterdir()) == []


async def test_ack_reports_progress(assembler):
    session = await assembler.open_session("u1", TOTAL, len(PARTS), "story.txt")
    ack = await assembler.receive_chunk(session.id, 1, PARTS[1])
    assert ack.received_chunks == 1
    assert ack.total_chunks == 3
    assert ack.checksum == hash_bytes(PARTS[1])


@pytest.mark.parametrize("number", [-1, 3, 10])
async def test_out_of_range_chunk(assembler, number):
    session = await assembler.open_session("u1", TOTAL, len(PARTS), "story.txt")
    with pytest.raises(InvalidChunk):
        await assembler.receive_chunk(session.id, number, b"x")


async def test_empty_chunk_is_rejected(assembler):
    session = await assembler.open_session("u1", TOTAL, len(PARTS), "story.txt")
    with pytest.raises(ValidationFault):
        await assembler.receive_chunk(session.id, 0, b"")


async def test_identical_rereceipt_is_accepted(assembler):
    session = await assembler.open_session("u1", TOTAL, len(PARTS), "story.txt")
    await assembler.receive_chunk(session.id, 0, PARTS[0])
    ack = await assembler.receive_chunk(session.id, 0, PARTS[0])
    assert ack.received_chunks == 1


async def test_conflicting_rereceipt_is_rejected(assembler):
    session = await assembler.open_session("u1", TOTAL, len(PARTS), "story.txt")
    await assembler.receive_chunk(session.id, 0, PARTS[0])
    with pytest.raises(InvalidChunk):
        await assembler.receive_chunk(session.id, 0, b"different")


async def test_finalize_with_missing_chunk_keeps_session_open(assembler):
    session = await assembler.open_session("u1", TOTAL, len(PARTS), "story.txt")
    await assembler.receive_chunk(session.id, 0, PARTS[0])
    await assembler.receive_chunk(session.id, 2, PARTS[2])
    with pytest.raises(InvalidChunk, match=r"\[1\]"):
        await assembler.finalize(session.id)

    assert (await assembler.get_session(session.id)).status == "open"
    await assembler.receive_chunk(session.id, 1, PARTS[1])
    result = await assembler.finalize(session.id)
    assert result.size == TOTAL


async def test_finalize_rejects_size_mismatch(assembler):
    session = await assembler.open_session("u1", TOTAL + 5, len(PARTS), "story.txt")
    for n, part in enumerate(PARTS):
        await assembler.receive_chunk(session.id, n, part)
    with pytest.raises(InvalidChunk):
        await assembler.finalize(session.id)


async def test_merge_failure_keeps_chunks_and_session(assembler, storage, monkeypatch):
    session = await assembler.open_session("u1", TOTAL, len(PARTS), "story.txt")
    for n, part in enumerate(PARTS):
        await assembler.receive_chunk(session.id, n, part)

    original_merge = storage.merge_chunks

    async def failing_merge(paths, filename, directory):
        raise StorageFault("disk full")

    monkeypatch.setattr(storage, "merge_chunks", failing_merge)
    with pytest.raises(StorageFault):
        await assembler.finalize(session.id)
    assert (await assembler.get_session(session.id)).status == "open"
    assert await assembler.received_chunk_numbers(session.id) == [0, 1, 2]

    monkeypatch.setattr(storage, "merge_chunks", original_merge)
    result = await assembler.finalize(session.id)
    assert await storage.read(result.storage_path) == b"".join(PARTS)


async def test_finalize_twice_is_rejected(assembler):
    result = await _upload(assembler, [0, 1, 2])
    with pytest.raises(InvalidChunk):
        await assembler.finalize(result.session_id)


async def test_unknown_session(assembler):
    with pytest.raises(NotFound):
        await assembler.receive_chunk("missing", 0, b"x")


async def test_open_session_validation(assembler):
    with pytest.raises(ValidationFault):
        await assembler.open_session("u1", 0, 1, "a.txt")
    with pytest.raises(ValidationFault):
        await assembler.open_session("u1", 10, 0, "a.txt")
    with pytest.raises(ValidationFault):
        await assembler.open_session("u1", 10, 2, "")


async def test_expired_session_rejects_late_calls_and_is_swept(storage, session_factory):
    assembler = ChunkAssembler(storage=storage, session_factory=session_factory,
                               session_ttl=timedelta(seconds=-1))
    session = await assembler.open_session("u1", TOTAL, len(PARTS), "story.txt")
    with pytest.raises(SessionExpired):
        await assembler.receive_chunk(session.id, 0, PARTS[0])
    with pytest.raises(NotFound):
        await assembler.finalize(session.id)

    expired = await assembler.expire_sessions()
    assert [s.id for s in expired] == [session.id]
    assert (await assembler.get_session(session.id)).status == "expired"
    assert await assembler.expire_sessions() == []


async def test_sweep_deletes_chunks_of_abandoned_session(storage, session_factory):
    live = ChunkAssembler(storage=storage, session_factory=session_factory)
    session = await live.open_session("u1", TOTAL, len(PARTS), "story.txt")
    ack = await live.receive_chunk(session.id, 0, PARTS[0])
    async with session_factory() as db:
        row = await db.get(UploadSession, session.id)
        row.expires_at = row.expires_at - timedelta(hours=2)
        chunk_path = (await db.execute(select(UploadChunk.storage_path))).scalar_one()
        await db.commit()

    assert await storage.exists(chunk_path)
    await live.expire_sessions()
    assert not await storage.exists(chunk_path)
    assert ack.received_chunks == 1


async def test_parallel_receives_then_finalize(assembler, storage):
    parts = [bytes([65 + i]) * 10 for i in range(8)]
    session = await assembler.open_session("u1", 80, 8, "letters.txt")
    await asyncio.gather(*[
        assembler.receive_chunk(session.id, n, parts[n]) for n in reversed(range(8))
    ])
    result = await assembler.finalize(session.id)
    assert await storage.read(result.storage_path) == b"".join(parts)


async def test_unexpected_merge_error_reopens_session(assembler, storage, monkeypatch):
    session = await assembler.open_session("u1", TOTAL, len(PARTS), "story.txt")
    for n, part in enumerate(PARTS):
        await assembler.receive_chunk(session.id, n, part)

    original_merge = storage.merge_chunks

    async def dropped_connection(paths, filename, directory):
        raise ConnectionError("connection reset by peer")

    monkeypatch.setattr(storage, "merge_chunks", dropped_connection)
    with pytest.raises(ConnectionError):
        await assembler.finalize(session.id)
    assert (await assembler.get_session(session.id)).status == "open"

    monkeypatch.setattr(storage, "merge_chunks", original_merge)
    result = await assembler.finalize(session.id)
    assert await storage.read(result.storage_path) == b"".join(PARTS)


async def test_concurrent_identical_chunk_is_recorded_once(assembler, storage):
    session = await assembler.open_session("u1", TOTAL, len(PARTS), "story.txt")
    acks = await asyncio.gather(
        assembler.receive_chunk(session.id, 0, PARTS[0]),
        assembler.receive_chunk(session.id, 0, PARTS[0]),
    )
    assert [a.checksum for a in acks] == [hash_bytes(PARTS[0])] * 2
    assert await assembler.received_chunk_numbers(session.id) == [0]

    for n in (1, 2):
        await assembler.receive_chunk(session.id, n, PARTS[n])
    result = await assembler.finalize(session.id)
    assert await storage.read(result.storage_path) == b"".join(PARTS)


async def test_concurrent_conflicting_chunk_keeps_one_copy(assembler, storage):
    session = await assembler.open_session("u1", 4, 2, "pair.txt")
    results = await asyncio.gather(
        assembler.receive_chunk(session.id, 0, b"ab"),
        assembler.receive_chunk(session.id, 0, b"xy"),
        return_exceptions=True,
    )
    assert sum(isinstance(r, InvalidChunk) for r in results) == 1
    assert await assembler.received_chunk_numbers(session.id) == [0]
    chunk_dir = storage.root / ChunkAssembler.chunk_directory("u1", session.id)
    assert len(list(chunk_dir.iterdir())) == 1


async def test_session_gates_are_released(assembler, storage, monkeypatch):
    with pytest.raises(NotFound):
        await assembler.receive_chunk("missing", 0, b"x")

    session = await assembler.open_session("u1", TOTAL, len(PARTS), "story.txt")
    for n, part in enumerate(PARTS):
        await assembler.receive_chunk(session.id, n, part)

    async def failing_merge(paths, filename, directory):
        raise StorageFault("disk full")

    monkeypatch.setattr(storage, "merge_chunks", failing_merge)
    with pytest.raises(StorageFault):
        await assembler.finalize(session.id)
    assert assembler._gates == {}
