"""Upload orchestration: reserve quota, write bytes, persist, confirm, notify, index.

Any failure after a reservation releases it. Publishing and indexing are
fire-and-forget from the caller's point of view.
"""
import asyncio
import logging
import uuid
from datetime import timedelta
from typing import AsyncIterator

from sqlalchemy import select, update

from fileflow.config import settings
from fileflow.database import async_session
from fileflow.exceptions import NotFound, QuotaExceededError, StorageFault, ValidationFault
from fileflow.models import FileRecord, FolderRecord, FileTag, UploadSession
from fileflow.models.base import utcnow
from fileflow.services.chunk_assembler import ChunkAck, ChunkAssembler
from fileflow.services.notifications import Action, NotificationDispatcher
from fileflow.services.quota_ledger import QuotaLedger
from fileflow.services.search import SearchCoordinator
from fileflow.services.storage import (
    StorageBackend, determine_file_type, generate_unique_filename, hash_bytes,
    sanitize_filename, storage_selector,
)

logger = logging.getLogger(__name__)


def _as_uuid(value, what: str) -> uuid.UUID | None:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFound(what, value)


def file_event_data(record: FileRecord) -> dict:
    return {
        "fileId": str(record.id),
        "name": record.original_name,
        "size": record.size_bytes,
        "mimeType": record.mime_type,
        "fileType": record.file_type,
        "parentFolderId": str(record.parent_folder_id) if record.parent_folder_id else None,
    }


class FileService:

    def __init__(self, ledger: QuotaLedger, assembler: ChunkAssembler,
                 dispatcher: NotificationDispatcher, search: SearchCoordinator,
                 storage: StorageBackend | None = None, session_factory=None,
                 max_file_size: int | None = None):
        self.ledger = ledger
        self.assembler = assembler
        self.dispatcher = dispatcher
        self.search = search
        self._storage = storage
        self.session_factory = session_factory or async_session
        self.max_file_size = max_file_size or settings.MAX_FILE_SIZE
        self._tasks: set[asyncio.Task] = set()

    @property
    def storage(self) -> StorageBackend:
        return self._storage or storage_selector.current()

    @staticmethod
    def user_directory(user_id: str) -> str:
        return f"users/{user_id}/files"

    # ── direct upload ────────────────────────────────────────────

    async def upload_file(self, user_id: str, content: bytes, filename: str,
                          mime_type: str | None = None, parent_folder_id=None) -> FileRecord:
        original = sanitize_filename(filename)
        size = len(content)
        if size == 0:
            raise ValidationFault("File is empty")
        if size > self.max_file_size:
            raise ValidationFault(f"File exceeds maximum size of {self.max_file_size} bytes")
        parent_id = await self._require_folder(user_id, parent_folder_id)

        file_id = uuid.uuid4()
        await self._reserve(user_id, size, str(file_id))

        path = None
        try:
            path = await self.storage.store(
                content, size, generate_unique_filename(original), self.user_directory(user_id)
            )
            record = await self._persist(
                file_id, user_id, original, mime_type, size, path, hash_bytes(content), parent_id
            )
        except Exception:
            await self._rollback_upload(user_id, size, str(file_id), path)
            raise

        await self.ledger.confirm(user_id, size, str(file_id))
        logger.info(f"Uploaded {original} ({size} bytes) for {user_id} as {record.id}")
        await self._announce(record, Action.UPLOADED)
        return record

    # ── chunked upload ───────────────────────────────────────────

    async def start_chunked_upload(self, user_id: str, filename: str, total_size: int,
                                   total_chunks: int, mime_type: str | None = None,
                                   parent_folder_id=None) -> UploadSession:
        sanitize_filename(filename)
        if total_size <= 0:
            raise ValidationFault("Total size must be positive")
        parent_id = await self._require_folder(user_id, parent_folder_id)

        upload_id = str(uuid.uuid4())
        await self._reserve(user_id, total_size, upload_id)
        try:
            return await self.assembler.open_session(
                user_id, total_size, total_chunks, filename,
                directory=self.user_directory(user_id),
                mime_type=mime_type,
                parent_folder_id=str(parent_id) if parent_id else None,
                session_id=upload_id,
            )
        except Exception:
            await self.ledger.release(user_id, total_size, upload_id)
            raise

    async def upload_chunk(self, user_id: str, upload_id: str, chunk_number: int, data: bytes) -> ChunkAck:
        await self._owned_session(user_id, upload_id)
        return await self.assembler.receive_chunk(upload_id, chunk_number, data)

    async def complete_chunked_upload(self, user_id: str, upload_id: str) -> FileRecord:
        """Finalize and persist. A finalize failure keeps the session and reservation for a retry."""
        await self._owned_session(user_id, upload_id)
        merged = await self.assembler.finalize(upload_id)

        original = sanitize_filename(merged.filename)
        try:
            record = await self._persist(
                uuid.uuid4(), user_id, original, merged.mime_type, merged.size,
                merged.storage_path, merged.checksum,
                _as_uuid(merged.parent_folder_id, "Folder"),
            )
        except Exception:
            await self._rollback_upload(user_id, merged.size, upload_id, merged.storage_path)
            raise

        await self.ledger.confirm(user_id, merged.size, upload_id)
        logger.info(f"Completed chunked upload {upload_id} as file {record.id}")
        await self._announce(record, Action.UPLOADED)
        return record

    async def expire_uploads(self) -> int:
        """Expire abandoned sessions and hand their reservations back."""
        expired = await self.assembler.expire_sessions()
        for session in expired:
            await self.ledger.release(session.user_id, session.total_size, session.id)
        return len(expired)

    # ── file operations ──────────────────────────────────────────

    async def get_file(self, user_id: str, file_id, include_deleted: bool = False) -> FileRecord:
        fid = _as_uuid(file_id, "File")
        async with self.session_factory() as db:
            record = await db.get(FileRecord, fid)
        if not record or record.user_id != user_id or (record.is_deleted and not include_deleted):
            raise NotFound("File", file_id)
        return record

    async def list_files(self, user_id: str, parent_folder_id=None) -> list[FileRecord]:
        parent_id = _as_uuid(parent_folder_id, "Folder")
        async with self.session_factory() as db:
            return list((await db.execute(
                select(FileRecord)
                .where(
                    FileRecord.user_id == user_id,
                    FileRecord.is_deleted == False,  # noqa: E712
                    FileRecord.parent_folder_id == parent_id if parent_id else FileRecord.parent_folder_id.is_(None),
                )
                .order_by(FileRecord.created_at.desc())
            )).scalars())

    async def delete_file(self, user_id: str, file_id) -> FileRecord:
        record = await self.get_file(user_id, file_id)
        if not await self._delete_file_record(record):
            raise NotFound("File", file_id)
        await self._publish(
            self.dispatcher.publish_file_event(
                record.id, Action.DELETED, file_event_data(record), user_id, record.parent_folder_id
            )
        )
        await self._notify_quota(user_id)
        return record

    async def _delete_file_record(self, record: FileRecord) -> bool:
        """Soft-delete and reclaim a live file. False if another caller got there first."""
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(FileRecord)
                .where(FileRecord.id == record.id, FileRecord.is_deleted == False)  # noqa: E712
                .values(is_deleted=True, deleted_at=now)
            )
            await db.commit()
        if result.rowcount != 1:
            return False
        record.is_deleted = True
        record.deleted_at = now

        try:
            await self.storage.delete(record.storage_path)
        except StorageFault as e:
            logger.error(f"Object for deleted file {record.id} could not be removed: {e}")
        await self.ledger.release_storage(record.user_id, record.size_bytes)
        self._schedule(self.search.remove_index(record.id))
        return True

    async def move_file(self, user_id: str, file_id, parent_folder_id) -> FileRecord:
        """Re-parent a file. Bytes stay where they are; only the record moves."""
        record = await self.get_file(user_id, file_id)
        new_parent = await self._require_folder(user_id, parent_folder_id)
        previous = record.parent_folder_id
        async with self.session_factory() as db:
            row = await db.get(FileRecord, record.id)
            row.parent_folder_id = new_parent
            await db.commit()
            await db.refresh(row)
        await self._publish(
            self.dispatcher.publish_file_event(
                row.id, Action.MOVED, file_event_data(row), user_id, new_parent, previous
            )
        )
        return row

    async def copy_file(self, user_id: str, file_id, parent_folder_id=None) -> FileRecord:
        source = await self.get_file(user_id, file_id)
        parent_id = await self._require_folder(user_id, parent_folder_id)

        new_id = uuid.uuid4()
        await self._reserve(user_id, source.size_bytes, str(new_id))
        dst = f"{self.user_directory(user_id)}/{generate_unique_filename(source.original_name)}"
        copied = False
        try:
            if not await self.storage.copy(source.storage_path, dst):
                raise StorageFault(f"Copy of {source.storage_path} failed")
            copied = True
            record = await self._persist(
                new_id, user_id, source.original_name, source.mime_type, source.size_bytes,
                dst, source.checksum, parent_id,
            )
        except Exception:
            await self._rollback_upload(user_id, source.size_bytes, str(new_id), dst if copied else None)
            raise

        await self.ledger.confirm(user_id, source.size_bytes, str(new_id))
        await self._announce(record, Action.UPLOADED)
        return record

    async def tag_file(self, user_id: str, file_id, tags: list[str]) -> list[str]:
        record = await self.get_file(user_id, file_id)
        wanted = {t.strip() for t in tags if t and t.strip()}
        if not wanted:
            raise ValidationFault("At least one non-empty tag is required")
        async with self.session_factory() as db:
            existing = set((await db.execute(
                select(FileTag.name).where(FileTag.file_id == record.id)
            )).scalars())
            for name in sorted(wanted - existing):
                db.add(FileTag(file_id=record.id, user_id=user_id, name=name))
            await db.commit()
        all_tags = sorted(existing | wanted)
        self._schedule(self.search.index_file(record, all_tags))
        return all_tags

    async def get_tags(self, file_id: uuid.UUID) -> list[str]:
        async with self.session_factory() as db:
            return sorted((await db.execute(
                select(FileTag.name).where(FileTag.file_id == file_id)
            )).scalars())

    # ── downloads ────────────────────────────────────────────────

    async def download_url(self, user_id: str, file_id, ttl: timedelta | None = None) -> tuple[str, int]:
        record = await self.get_file(user_id, file_id)
        ttl_seconds = int((ttl or timedelta(minutes=settings.PRESIGNED_URL_TTL_MINUTES)).total_seconds())
        await self._touch(record.id)
        url = await self.storage.presigned_download_url(record.storage_path, ttl_seconds)
        return url, ttl_seconds

    async def open_download(self, user_id: str, file_id) -> tuple[FileRecord, AsyncIterator[bytes]]:
        record = await self.get_file(user_id, file_id)
        await self._touch(record.id)
        return record, self.storage.stream(record.storage_path)

    async def open_path(self, user_id: str, path: str) -> AsyncIterator[bytes]:
        """Stream by storage path (local backend download URLs). Only the owner's prefix is readable."""
        if not path.startswith(f"users/{user_id}/"):
            raise NotFound("Object", path)
        if not await self.storage.exists(path):
            raise NotFound("Object", path)
        return self.storage.stream(path)

    # ── folders ──────────────────────────────────────────────────

    async def create_folder(self, user_id: str, name: str, parent_folder_id=None) -> FolderRecord:
        clean = sanitize_filename(name)
        parent_id = await self._require_folder(user_id, parent_folder_id)
        folder = FolderRecord(user_id=user_id, name=clean, parent_folder_id=parent_id)
        async with self.session_factory() as db:
            db.add(folder)
            await db.commit()
            await db.refresh(folder)
        await self._publish(
            self.dispatcher.publish_folder_event(
                folder.id, Action.CREATED, {"folderId": str(folder.id), "name": folder.name},
                user_id, parent_id,
            )
        )
        return folder

    async def get_folder(self, user_id: str, folder_id) -> FolderRecord:
        fid = _as_uuid(folder_id, "Folder")
        async with self.session_factory() as db:
            folder = await db.get(FolderRecord, fid)
        if not folder or folder.user_id != user_id or folder.is_deleted:
            raise NotFound("Folder", folder_id)
        return folder

    async def delete_folder(self, user_id: str, folder_id) -> FolderRecord:
        """Soft-delete a folder, its subfolders and every file beneath them."""
        folder = await self.get_folder(user_id, folder_id)
        folder_ids = [folder.id]
        async with self.session_factory() as db:
            frontier = [folder.id]
            while frontier:
                children = list((await db.execute(
                    select(FolderRecord.id).where(
                        FolderRecord.parent_folder_id.in_(frontier),
                        FolderRecord.user_id == user_id,
                        FolderRecord.is_deleted == False,  # noqa: E712
                    )
                )).scalars())
                folder_ids.extend(children)
                frontier = children
            files = (await db.execute(
                select(FileRecord).where(
                    FileRecord.parent_folder_id.in_(folder_ids),
                    FileRecord.user_id == user_id,
                    FileRecord.is_deleted == False,  # noqa: E712
                )
            )).scalars().all()
            now = utcnow()
            for row in (await db.execute(
                select(FolderRecord).where(FolderRecord.id.in_(folder_ids))
            )).scalars():
                row.is_deleted = True
                row.deleted_at = now
            await db.commit()

        for record in files:
            if not await self._delete_file_record(record):
                continue
            await self._publish(
                self.dispatcher.publish_file_event(record.id, Action.DELETED, file_event_data(record), user_id)
            )
        await self._publish(
            self.dispatcher.publish_folder_event(
                folder.id, Action.DELETED, {"folderId": str(folder.id), "name": folder.name},
                user_id, folder.parent_folder_id,
            )
        )
        if files:
            await self._notify_quota(user_id)
        logger.info(f"Deleted folder {folder.id} with {len(folder_ids) - 1} subfolders and {len(files)} files")
        folder.is_deleted = True
        return folder

    # ── background work ──────────────────────────────────────────

    def _schedule(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_for_background(self) -> None:
        """Wait for scheduled indexing work (shutdown, tests)."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ── internals ────────────────────────────────────────────────

    async def _reserve(self, user_id: str, size: int, reference: str) -> None:
        if not await self.ledger.check_and_reserve(user_id, size, reference):
            usage = await self.ledger.get_usage(user_id)
            raise QuotaExceededError(user_id, size, usage.available)

    async def _rollback_upload(self, user_id: str, size: int, reference: str, path: str | None) -> None:
        await self.ledger.release(user_id, size, reference)
        if path:
            try:
                await self.storage.delete(path)
            except StorageFault as e:
                logger.error(f"Could not remove orphaned object {path}: {e}")
        logger.warning(f"Upload {reference} for {user_id} rolled back")

    async def _persist(self, file_id: uuid.UUID, user_id: str, original: str, mime_type: str | None,
                       size: int, path: str, checksum: str, parent_id: uuid.UUID | None) -> FileRecord:
        record = FileRecord(
            id=file_id,
            user_id=user_id,
            filename=path.rsplit("/", 1)[-1],
            original_name=original,
            mime_type=mime_type,
            file_type=determine_file_type(mime_type, original),
            size_bytes=size,
            storage_path=path,
            checksum=checksum,
            parent_folder_id=parent_id,
        )
        async with self.session_factory() as db:
            db.add(record)
            await db.commit()
            await db.refresh(record)
        return record

    async def _require_folder(self, user_id: str, folder_id) -> uuid.UUID | None:
        if folder_id is None:
            return None
        return (await self.get_folder(user_id, folder_id)).id

    async def _owned_session(self, user_id: str, upload_id: str) -> UploadSession:
        session = await self.assembler.get_session(upload_id)
        if session.user_id != user_id:
            raise NotFound("Upload session", upload_id)
        return session

    async def _touch(self, file_id: uuid.UUID) -> None:
        async with self.session_factory() as db:
            row = await db.get(FileRecord, file_id)
            row.last_accessed = utcnow()
            await db.commit()

    async def _announce(self, record: FileRecord, action: Action) -> None:
        await self._publish(
            self.dispatcher.publish_file_event(
                record.id, action, file_event_data(record), record.user_id, record.parent_folder_id
            )
        )
        await self._notify_quota(record.user_id)
        self._schedule(self.search.index_file(record))

    async def _notify_quota(self, user_id: str) -> None:
        usage = await self.ledger.get_usage(user_id)
        await self._publish(
            self.dispatcher.notify_quota_update(user_id, usage.used, usage.effective_quota)
        )

    async def _publish(self, coro) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(f"Notification publish failed: {e}", exc_info=True)
