"""Chunked upload sessions: receive chunks, validate completeness, merge.

Session lifecycle: open -> complete -> merged, or open -> expired.
Chunk objects are only deleted after a merge has succeeded, so a failed
finalize leaves the session open and every received chunk intact.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError

from fileflow.config import settings
from fileflow.database import async_session
from fileflow.exceptions import InvalidChunk, NotFound, SessionExpired, StorageFault, ValidationFault
from fileflow.models import UploadSession, UploadChunk
from fileflow.models.base import utcnow, as_utc
from fileflow.models.upload import SESSION_OPEN, SESSION_COMPLETE, SESSION_MERGED, SESSION_EXPIRED
from fileflow.services.storage import StorageBackend, storage_selector, hash_bytes, sanitize_filename
from fileflow.services.storage.base import generate_unique_filename

logger = logging.getLogger(__name__)


@dataclass
class ChunkAck:
    session_id: str
    chunk_number: int
    size: int
    checksum: str
    received_chunks: int
    total_chunks: int


@dataclass
class FinalizedUpload:
    session_id: str
    owner: str
    filename: str
    storage_path: str
    size: int
    checksum: str
    mime_type: str | None
    parent_folder_id: str | None


class _SessionGate:
    """Many concurrent receivers, or one finalizer."""

    def __init__(self):
        self.holders = 0
        self._cond = asyncio.Condition()
        self._receivers = 0
        self._exclusive = False

    @asynccontextmanager
    async def shared(self):
        async with self._cond:
            await self._cond.wait_for(lambda: not self._exclusive)
            self._receivers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._receivers -= 1
                self._cond.notify_all()

    @asynccontextmanager
    async def exclusive(self):
        async with self._cond:
            await self._cond.wait_for(lambda: not self._exclusive and self._receivers == 0)
            self._exclusive = True
        try:
            yield
        finally:
            async with self._cond:
                self._exclusive = False
                self._cond.notify_all()


class ChunkAssembler:

    def __init__(self, storage: StorageBackend | None = None, session_factory=None,
                 session_ttl: timedelta | None = None):
        self._storage = storage
        self.session_factory = session_factory or async_session
        self.session_ttl = session_ttl or timedelta(minutes=settings.CHUNK_SESSION_TTL_MINUTES)
        self._gates: dict[str, _SessionGate] = {}

    @property
    def storage(self) -> StorageBackend:
        return self._storage or storage_selector.current()

    @asynccontextmanager
    async def _gated(self, session_id: str, exclusive: bool = False):
        """Enter the session's gate; the gate is dropped when its last holder leaves."""
        gate = self._gates.get(session_id)
        if gate is None:
            gate = self._gates[session_id] = _SessionGate()
        gate.holders += 1
        try:
            async with (gate.exclusive() if exclusive else gate.shared()):
                yield
        finally:
            gate.holders -= 1
            if not gate.holders and self._gates.get(session_id) is gate:
                del self._gates[session_id]

    @staticmethod
    def chunk_directory(owner: str, session_id: str) -> str:
        return f"users/{owner}/chunks/{session_id}"

    async def open_session(self, owner: str, total_size: int, total_chunks: int, filename: str,
                           directory: str | None = None, mime_type: str | None = None,
                           parent_folder_id: str | None = None,
                           session_id: str | None = None) -> UploadSession:
        if total_size <= 0:
            raise ValidationFault("Total size must be positive")
        if total_chunks <= 0:
            raise ValidationFault("Chunk count must be positive")
        if total_chunks > total_size:
            raise ValidationFault("More chunks than bytes")
        sanitize_filename(filename)

        session = UploadSession(
            id=session_id or str(uuid.uuid4()),
            user_id=owner,
            filename=filename,
            directory=directory or f"users/{owner}/files",
            mime_type=mime_type,
            parent_folder_id=parent_folder_id,
            total_size=total_size,
            total_chunks=total_chunks,
            status=SESSION_OPEN,
            expires_at=utcnow() + self.session_ttl,
        )
        async with self.session_factory() as db:
            db.add(session)
            await db.commit()
            await db.refresh(session)
        logger.info(f"Opened upload session {session.id} for {owner}: {total_chunks} chunks, {total_size} bytes")
        return session

    async def get_session(self, session_id: str) -> UploadSession:
        async with self.session_factory() as db:
            session = await db.get(UploadSession, session_id)
            if not session:
                raise NotFound("Upload session", session_id)
            return session

    async def received_chunk_numbers(self, session_id: str) -> list[int]:
        async with self.session_factory() as db:
            return list((await db.execute(
                select(UploadChunk.chunk_number)
                .where(UploadChunk.session_id == session_id)
                .order_by(UploadChunk.chunk_number)
            )).scalars())

    def _check_open(self, session: UploadSession | None, session_id: str) -> UploadSession:
        if not session:
            raise NotFound("Upload session", session_id)
        if session.status == SESSION_EXPIRED or as_utc(session.expires_at) <= utcnow():
            raise SessionExpired(session_id)
        if session.status != SESSION_OPEN:
            raise InvalidChunk(f"Upload session {session_id} is {session.status}")
        return session

    async def receive_chunk(self, session_id: str, chunk_number: int, data: bytes) -> ChunkAck:
        if not data:
            raise ValidationFault(f"Chunk {chunk_number} is empty")
        checksum = hash_bytes(data)

        async with self._gated(session_id):
            async with self.session_factory() as db:
                session = self._check_open(await db.get(UploadSession, session_id), session_id)
                total_chunks = session.total_chunks
                if not 0 <= chunk_number < total_chunks:
                    raise InvalidChunk(f"Chunk {chunk_number} out of range [0, {total_chunks})")

                existing = await self._find_chunk(db, session_id, chunk_number)
                self._check_same_content(existing, checksum, session_id, chunk_number)

                path = await self.storage.store(
                    data, len(data), f"chunk_{chunk_number:06d}_{checksum[:16]}",
                    self.chunk_directory(session.user_id, session_id),
                )
                if existing:
                    existing.received_at = utcnow()
                    await db.commit()
                else:
                    db.add(UploadChunk(
                        session_id=session_id,
                        chunk_number=chunk_number,
                        storage_path=path,
                        size_bytes=len(data),
                        checksum=checksum,
                    ))
                    try:
                        await db.commit()
                    except IntegrityError:
                        # A concurrent receive of the same chunk number won the insert
                        await db.rollback()
                        existing = await self._find_chunk(db, session_id, chunk_number)
                        if existing is None:
                            raise
                        if existing.checksum != checksum:
                            await self._delete_chunk_objects([path])
                        self._check_same_content(existing, checksum, session_id, chunk_number)

                received = (await db.execute(
                    select(func.count()).select_from(UploadChunk)
                    .where(UploadChunk.session_id == session_id)
                )).scalar_one()

        logger.debug(f"Chunk {chunk_number} of {session_id} stored ({len(data)} bytes)")
        return ChunkAck(
            session_id=session_id,
            chunk_number=chunk_number,
            size=len(data),
            checksum=checksum,
            received_chunks=received,
            total_chunks=total_chunks,
        )

    @staticmethod
    async def _find_chunk(db, session_id: str, chunk_number: int) -> UploadChunk | None:
        return (await db.execute(
            select(UploadChunk).where(
                UploadChunk.session_id == session_id,
                UploadChunk.chunk_number == chunk_number,
            )
        )).scalar_one_or_none()

    @staticmethod
    def _check_same_content(existing: UploadChunk | None, checksum: str,
                            session_id: str, chunk_number: int) -> None:
        if existing and existing.checksum != checksum:
            raise InvalidChunk(
                f"Chunk {chunk_number} of {session_id} already received with different content"
            )

    async def finalize(self, session_id: str) -> FinalizedUpload:
        """Merge every chunk in ascending order into one object.

        Missing chunks, a size mismatch or a storage failure raise and leave
        the session open so the client can resend and retry.
        """
        async with self._gated(session_id, exclusive=True):
            async with self.session_factory() as db:
                session = self._check_open(await db.get(UploadSession, session_id), session_id)
                chunks = (await db.execute(
                    select(UploadChunk)
                    .where(UploadChunk.session_id == session_id)
                    .order_by(UploadChunk.chunk_number)
                )).scalars().all()

                numbers = [c.chunk_number for c in chunks]
                missing = sorted(set(range(session.total_chunks)) - set(numbers))
                if missing or len(numbers) != session.total_chunks:
                    raise InvalidChunk(f"Upload {session_id} is missing chunks: {missing}")
                received_size = sum(c.size_bytes for c in chunks)
                if received_size != session.total_size:
                    raise InvalidChunk(
                        f"Upload {session_id}: received {received_size} bytes, declared {session.total_size}"
                    )

                session.status = SESSION_COMPLETE
                await db.commit()

                try:
                    path = await self.storage.merge_chunks(
                        [c.storage_path for c in chunks],
                        generate_unique_filename(session.filename),
                        session.directory,
                    )
                    checksum = await self.storage.compute_hash(path)
                except Exception:
                    await self._reopen(session_id)
                    raise

                session.status = SESSION_MERGED
                session.storage_path = path
                chunk_paths = [c.storage_path for c in chunks]
                await db.execute(delete(UploadChunk).where(UploadChunk.session_id == session_id))
                await db.commit()

                result = FinalizedUpload(
                    session_id=session_id,
                    owner=session.user_id,
                    filename=session.filename,
                    storage_path=path,
                    size=session.total_size,
                    checksum=checksum,
                    mime_type=session.mime_type,
                    parent_folder_id=session.parent_folder_id,
                )

        await self._delete_chunk_objects(chunk_paths)
        logger.info(f"Merged upload {session_id} into {path} ({result.size} bytes)")
        return result

    async def _reopen(self, session_id: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(UploadSession)
                .where(UploadSession.id == session_id, UploadSession.status == SESSION_COMPLETE)
                .values(status=SESSION_OPEN)
            )
            await db.commit()
        logger.warning(f"Merge of upload {session_id} failed; session reopened for retry")

    async def expire_sessions(self) -> list[UploadSession]:
        """Expire sessions past their TTL and garbage-collect their chunks."""
        async with self.session_factory() as db:
            candidates = list((await db.execute(
                select(UploadSession.id).where(
                    UploadSession.status.in_([SESSION_OPEN, SESSION_COMPLETE]),
                    UploadSession.expires_at <= utcnow(),
                )
            )).scalars())

        expired = []
        for session_id in candidates:
            async with self._gated(session_id, exclusive=True):
                async with self.session_factory() as db:
                    session = await db.get(UploadSession, session_id)
                    if session.status not in (SESSION_OPEN, SESSION_COMPLETE):
                        continue
                    chunk_paths = list((await db.execute(
                        select(UploadChunk.storage_path).where(UploadChunk.session_id == session_id)
                    )).scalars())
                    session.status = SESSION_EXPIRED
                    await db.execute(delete(UploadChunk).where(UploadChunk.session_id == session_id))
                    await db.commit()
            await self._delete_chunk_objects(chunk_paths)
            expired.append(session)

        if expired:
            logger.info(f"Expired {len(expired)} abandoned upload sessions")
        return expired

    async def _delete_chunk_objects(self, paths: list[str]) -> None:
        for path in paths:
            try:
                await self.storage.delete(path)
            except StorageFault as e:
                logger.error(f"Failed to delete chunk object {path}: {e}")


chunk_assembler = ChunkAssembler()
