"""Routes queries to structured (database) matching or the full-text index.

Full-text availability is probed once at startup. Every call site branches on
that flag; full-text errors degrade to structured results, except content
search, which has nothing to fall back to and returns an empty result.
"""
import logging
import math
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select, func

from fileflow.config import settings
from fileflow.database import async_session
from fileflow.exceptions import ValidationFault
from fileflow.models import FileRecord, FolderRecord, FileTag
from fileflow.services.search.extraction import TextExtractor
from fileflow.services.search.fulltext import ElasticsearchIndex, FullTextIndex, FullTextHits
from fileflow.services.storage import StorageBackend, storage_selector

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


@dataclass
class SearchResult:
    page: int
    size: int
    files: list = field(default_factory=list)
    folders: list = field(default_factory=list)
    total_elements: int = 0
    total_pages: int = 0
    has_more: bool = False
    query: str | None = None
    source: str = "structured"


def _pages(total: int, size: int) -> int:
    return math.ceil(total / size) if size > 0 else 0


def _validate_paging(page: int, size: int) -> None:
    if page < 0:
        raise ValidationFault("Page must be >= 0")
    if not 1 <= size <= MAX_PAGE_SIZE:
        raise ValidationFault(f"Size must be between 1 and {MAX_PAGE_SIZE}")


def _validate_query(query: str | None) -> str:
    if query is None or not query.strip():
        raise ValidationFault("Search query must not be empty")
    return query.strip()


class SearchCoordinator:

    def __init__(self, session_factory=None, full_text: FullTextIndex | None = None,
                 storage: StorageBackend | None = None, extractor: TextExtractor | None = None,
                 full_text_min_length: int | None = None):
        self.session_factory = session_factory or async_session
        self.full_text = full_text
        self._storage = storage
        self.extractor = extractor or TextExtractor()
        self.full_text_min_length = (
            settings.SEARCH_FULLTEXT_MIN_LENGTH if full_text_min_length is None else full_text_min_length
        )
        self.full_text_available = False

    @property
    def storage(self) -> StorageBackend:
        return self._storage or storage_selector.current()

    async def probe(self) -> bool:
        """Check once whether the full-text backend is reachable."""
        if self.full_text is None:
            self.full_text_available = False
            logger.info("No full-text backend configured, using database search")
            return False
        try:
            self.full_text_available = await self.full_text.ping()
            if self.full_text_available:
                await self.full_text.initialize()
        except Exception as e:
            logger.warning(f"Full-text backend probe failed: {e}")
            self.full_text_available = False
        logger.info(f"Full-text search available: {self.full_text_available}")
        return self.full_text_available

    def should_use_full_text(self, query: str) -> bool:
        return self.full_text_available and (
            any(ch.isspace() for ch in query) or len(query) > self.full_text_min_length
        )

    # ── combined search ──────────────────────────────────────────

    async def search(self, query: str, user_id: str, page: int = 0, size: int = 20) -> SearchResult:
        query = _validate_query(query)
        _validate_paging(page, size)

        if self.should_use_full_text(query):
            try:
                hits = await self.full_text.search(query, user_id, page, size)
                return await self._from_hits(hits, user_id, page, size, query)
            except Exception as e:
                logger.warning(f"Full-text search failed, falling back to database: {e}")

        return await self._structured(query, user_id, page, size)

    async def _structured(self, query: str, user_id: str, page: int, size: int,
                          deleted: bool = False) -> SearchResult:
        """Files and folders share one page budget: each gets half (at least 1).

        total_pages is the larger of the two sub-results, so it is approximate
        when the categories differ in size.
        """
        half = max(1, size // 2)
        async with self.session_factory() as db:
            files, file_total = await self._page(
                db, FileRecord, FileRecord.original_name, query, user_id, page, half, deleted
            )
            folders, folder_total = await self._page(
                db, FolderRecord, FolderRecord.name, query, user_id, page, half, deleted
            )
        total_pages = max(_pages(file_total, half), _pages(folder_total, half))
        return SearchResult(
            page=page,
            size=size,
            files=files,
            folders=folders,
            total_elements=file_total + folder_total,
            total_pages=total_pages,
            has_more=page < total_pages - 1,
            query=query,
        )

    async def _page(self, db, model, name_column, query, user_id, page, size, deleted):
        conditions = [model.user_id == user_id, model.is_deleted == deleted]
        if query:
            conditions.append(name_column.icontains(query, autoescape=True))
        total = (await db.execute(
            select(func.count()).select_from(model).where(*conditions)
        )).scalar_one()
        order = model.deleted_at.desc() if deleted else model.updated_at.desc()
        rows = (await db.execute(
            select(model).where(*conditions).order_by(order, model.id).offset(page * size).limit(size)
        )).scalars().all()
        return list(rows), total

    async def _from_hits(self, hits: FullTextHits, user_id: str, page: int, size: int,
                         query: str | None) -> SearchResult:
        """Load ranked ids from the database, keeping rank order and dropping stale ones."""
        ids = []
        for raw in hits.ids:
            try:
                ids.append(uuid.UUID(raw))
            except ValueError:
                logger.debug(f"Ignoring non-file hit {raw}")
        files = []
        if ids:
            async with self.session_factory() as db:
                rows = (await db.execute(
                    select(FileRecord).where(
                        FileRecord.id.in_(ids),
                        FileRecord.user_id == user_id,
                        FileRecord.is_deleted == False,  # noqa: E712
                    )
                )).scalars().all()
            by_id = {r.id: r for r in rows}
            files = [by_id[i] for i in ids if i in by_id]
        total_pages = _pages(hits.total, size)
        return SearchResult(
            page=page,
            size=size,
            files=files,
            total_elements=hits.total,
            total_pages=total_pages,
            has_more=page < total_pages - 1,
            query=query,
            source="full_text",
        )

    # ── category searches ────────────────────────────────────────

    async def search_files(self, query: str, user_id: str, page: int = 0, size: int = 20) -> SearchResult:
        query = _validate_query(query)
        _validate_paging(page, size)
        async with self.session_factory() as db:
            files, total = await self._page(
                db, FileRecord, FileRecord.original_name, query, user_id, page, size, False
            )
        return self._single(files=files, total=total, page=page, size=size, query=query)

    async def search_folders(self, query: str, user_id: str, page: int = 0, size: int = 20) -> SearchResult:
        query = _validate_query(query)
        _validate_paging(page, size)
        async with self.session_factory() as db:
            folders, total = await self._page(
                db, FolderRecord, FolderRecord.name, query, user_id, page, size, False
            )
        return self._single(folders=folders, total=total, page=page, size=size, query=query)

    async def search_by_type(self, file_type: str, user_id: str, page: int = 0, size: int = 20) -> SearchResult:
        _validate_paging(page, size)
        if self.full_text_available:
            try:
                hits = await self.full_text.search_by_type(file_type, user_id, page, size)
                return await self._from_hits(hits, user_id, page, size, file_type)
            except Exception as e:
                logger.warning(f"Full-text type search failed, falling back to database: {e}")

        conditions = [
            FileRecord.user_id == user_id,
            FileRecord.is_deleted == False,  # noqa: E712
            FileRecord.file_type == file_type,
        ]
        async with self.session_factory() as db:
            total = (await db.execute(
                select(func.count()).select_from(FileRecord).where(*conditions)
            )).scalar_one()
            files = (await db.execute(
                select(FileRecord).where(*conditions)
                .order_by(FileRecord.updated_at.desc(), FileRecord.id)
                .offset(page * size).limit(size)
            )).scalars().all()
        return self._single(files=list(files), total=total, page=page, size=size, query=file_type)

    async def search_by_tag(self, tag: str, user_id: str, page: int = 0, size: int = 20) -> SearchResult:
        tag = _validate_query(tag)
        _validate_paging(page, size)
        if self.full_text_available:
            try:
                hits = await self.full_text.search_by_tag(tag, user_id, page, size)
                return await self._from_hits(hits, user_id, page, size, tag)
            except Exception as e:
                logger.warning(f"Full-text tag search failed, falling back to database: {e}")

        conditions = [
            FileRecord.user_id == user_id,
            FileRecord.is_deleted == False,  # noqa: E712
            FileTag.name == tag,
        ]
        base = select(FileRecord).join(FileTag, FileTag.file_id == FileRecord.id).where(*conditions)
        async with self.session_factory() as db:
            total = (await db.execute(
                select(func.count()).select_from(base.subquery())
            )).scalar_one()
            files = (await db.execute(
                base.order_by(FileRecord.updated_at.desc(), FileRecord.id)
                .offset(page * size).limit(size)
            )).scalars().all()
        return self._single(files=list(files), total=total, page=page, size=size, query=tag)

    async def search_content(self, query: str, user_id: str, page: int = 0, size: int = 20) -> SearchResult:
        """Full-text only. Without the backend there is no index to consult."""
        query = _validate_query(query)
        _validate_paging(page, size)
        if not self.full_text_available:
            return SearchResult(page=page, size=size, query=query, source="none")
        try:
            hits = await self.full_text.search_content(query, user_id, page, size)
        except Exception as e:
            logger.warning(f"Content search failed: {e}")
            return SearchResult(page=page, size=size, query=query, source="none")
        return await self._from_hits(hits, user_id, page, size, query)

    async def recent_items(self, user_id: str, limit: int = 20) -> SearchResult:
        _validate_paging(0, limit)
        async with self.session_factory() as db:
            files = (await db.execute(
                select(FileRecord)
                .where(FileRecord.user_id == user_id, FileRecord.is_deleted == False)  # noqa: E712
                .order_by(func.coalesce(FileRecord.last_accessed, FileRecord.updated_at).desc())
                .limit(limit)
            )).scalars().all()
            folders = (await db.execute(
                select(FolderRecord)
                .where(FolderRecord.user_id == user_id, FolderRecord.is_deleted == False)  # noqa: E712
                .order_by(func.coalesce(FolderRecord.last_accessed, FolderRecord.updated_at).desc())
                .limit(limit)
            )).scalars().all()
        return SearchResult(
            page=0, size=limit, files=list(files), folders=list(folders),
            total_elements=len(files) + len(folders), total_pages=1,
        )

    async def search_trash(self, user_id: str, query: str | None = None,
                           page: int = 0, size: int = 20) -> SearchResult:
        _validate_paging(page, size)
        query = query.strip() if query else None
        return await self._structured(query, user_id, page, size, deleted=True)

    def _single(self, page: int, size: int, total: int, query: str | None,
                files: list | None = None, folders: list | None = None) -> SearchResult:
        total_pages = _pages(total, size)
        return SearchResult(
            page=page,
            size=size,
            files=files or [],
            folders=folders or [],
            total_elements=total,
            total_pages=total_pages,
            has_more=page < total_pages - 1,
            query=query,
        )

    # ── indexing ─────────────────────────────────────────────────

    async def index_file(self, file: FileRecord, tags: list[str] | None = None) -> bool:
        """Push a file to the full-text index. No-op without the backend; errors are logged."""
        if not self.full_text_available:
            return False
        text = await self.extractor.extract(self.storage, file.storage_path, file.mime_type)
        try:
            await self.full_text.index(
                str(file.id), file.user_id, file.original_name, text, file.file_type, tags or [],
            )
        except Exception as e:
            logger.error(f"Indexing file {file.id} failed: {e}")
            return False
        return True

    async def remove_index(self, file_id) -> bool:
        if not self.full_text_available:
            return False
        try:
            await self.full_text.remove(str(file_id))
        except Exception as e:
            logger.error(f"Removing file {file_id} from index failed: {e}")
            return False
        return True

    async def close(self) -> None:
        if self.full_text is not None:
            await self.full_text.close()


def build_full_text_index() -> FullTextIndex | None:
    if not settings.ELASTICSEARCH_URL:
        return None
    return ElasticsearchIndex(settings.ELASTICSEARCH_URL, settings.ELASTICSEARCH_INDEX)


search_coordinator = SearchCoordinator(full_text=build_full_text_index())
