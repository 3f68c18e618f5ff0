"""Full-text index capability and its Elasticsearch implementation."""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from elasticsearch import AsyncElasticsearch, NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class FullTextHits:
    ids: list[str] = field(default_factory=list)
    total: int = 0


class FullTextIndex(ABC):
    """What the search coordinator needs from a full-text engine. Ranking is the engine's business."""

    @abstractmethod
    async def ping(self) -> bool:
        pass

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def index(self, file_id: str, owner_id: str, filename: str, text: str,
                    file_type: str, tags: list[str]) -> None:
        pass

    @abstractmethod
    async def remove(self, file_id: str) -> None:
        pass

    @abstractmethod
    async def search(self, query: str, owner_id: str, page: int, size: int) -> FullTextHits:
        pass

    @abstractmethod
    async def search_content(self, query: str, owner_id: str, page: int, size: int) -> FullTextHits:
        pass

    @abstractmethod
    async def search_by_type(self, file_type: str, owner_id: str, page: int, size: int) -> FullTextHits:
        pass

    @abstractmethod
    async def search_by_tag(self, tag: str, owner_id: str, page: int, size: int) -> FullTextHits:
        pass


class ElasticsearchIndex(FullTextIndex):

    MAPPINGS = {
        "properties": {
            "owner_id": {"type": "keyword"},
            "filename": {"type": "text", "fields": {"raw": {"type": "keyword"}}},
            "content": {"type": "text"},
            "file_type": {"type": "keyword"},
            "tags": {"type": "keyword"},
        }
    }

    def __init__(self, url: str | None = None, index_name: str = "fileflow-files",
                 client: AsyncElasticsearch | None = None):
        self.index_name = index_name
        self.client = client or AsyncElasticsearch(url)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def initialize(self) -> None:
        if not await self.client.indices.exists(index=self.index_name):
            await self.client.indices.create(index=self.index_name, mappings=self.MAPPINGS)
            logger.info(f"Created search index {self.index_name}")

    async def close(self) -> None:
        await self.client.close()

    async def index(self, file_id: str, owner_id: str, filename: str, text: str,
                    file_type: str, tags: list[str]) -> None:
        await self.client.index(
            index=self.index_name,
            id=file_id,
            document={
                "owner_id": owner_id,
                "filename": filename,
                "content": text,
                "file_type": file_type,
                "tags": tags,
            },
            refresh="wait_for",
        )

    async def remove(self, file_id: str) -> None:
        try:
            await self.client.delete(index=self.index_name, id=file_id, refresh="wait_for")
        except NotFoundError:
            logger.debug(f"Index entry {file_id} already absent")

    async def _query(self, must: dict, owner_id: str, page: int, size: int) -> FullTextHits:
        resp = await self.client.search(
            index=self.index_name,
            query={"bool": {"must": [must], "filter": [{"term": {"owner_id": owner_id}}]}},
            from_=page * size,
            size=size,
        )
        hits = resp["hits"]
        total = hits["total"]["value"] if isinstance(hits["total"], dict) else hits["total"]
        return FullTextHits(ids=[h["_id"] for h in hits["hits"]], total=total)

    async def search(self, query: str, owner_id: str, page: int, size: int) -> FullTextHits:
        return await self._query(
            {"multi_match": {"query": query, "fields": ["filename^3", "content", "tags^2"]}},
            owner_id, page, size,
        )

    async def search_content(self, query: str, owner_id: str, page: int, size: int) -> FullTextHits:
        return await self._query({"match": {"content": query}}, owner_id, page, size)

    async def search_by_type(self, file_type: str, owner_id: str, page: int, size: int) -> FullTextHits:
        return await self._query({"term": {"file_type": file_type}}, owner_id, page, size)

    async def search_by_tag(self, tag: str, owner_id: str, page: int, size: int) -> FullTextHits:
        return await self._query({"term": {"tags": tag}}, owner_id, page, size)
