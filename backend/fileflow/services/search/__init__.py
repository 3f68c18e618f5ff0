from fileflow.services.search.coordinator import SearchCoordinator, SearchResult, search_coordinator
from fileflow.services.search.extraction import TextExtractor
from fileflow.services.search.fulltext import ElasticsearchIndex, FullTextHits, FullTextIndex

__all__ = [
    "ElasticsearchIndex",
    "FullTextHits",
    "FullTextIndex",
    "SearchCoordinator",
    "SearchResult",
    "TextExtractor",
    "search_coordinator",
]
