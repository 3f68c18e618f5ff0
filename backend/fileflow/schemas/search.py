"""Search result schemas."""
from typing import Optional

from fileflow.schemas.base import CamelModel
from fileflow.schemas.file import FileResponse, FolderResponse


class SearchResponse(CamelModel):
    files: list[FileResponse] = []
    folders: list[FolderResponse] = []
    page: int
    size: int
    total_elements: int
    total_pages: int
    has_more: bool
    query: Optional[str] = None
    source: str = "structured"
