"""Search API routes."""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from fileflow.routes.deps import get_current_user, get_services
from fileflow.schemas.file import FileResponse, FolderResponse
from fileflow.schemas.search import SearchResponse
from fileflow.services.container import Services
from fileflow.services.search import SearchResult

router = APIRouter(prefix="/api/search", tags=["search"])


def _to_response(result: SearchResult) -> SearchResponse:
    return SearchResponse(
        files=[FileResponse.model_validate(f) for f in result.files],
        folders=[FolderResponse.model_validate(f) for f in result.folders],
        page=result.page,
        size=result.size,
        total_elements=result.total_elements,
        total_pages=result.total_pages,
        has_more=result.has_more,
        query=result.query,
        source=result.source,
    )


@router.get("", response_model=SearchResponse)
async def search(
    q: str = Query(...),
    page: int = Query(default=0),
    size: int = Query(default=20),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Files and folders by name; multi-word or long queries go to full-text when available."""
    return _to_response(await services.search.search(q, user_id, page, size))


@router.get("/files", response_model=SearchResponse)
async def search_files(
    q: str = Query(...),
    page: int = Query(default=0),
    size: int = Query(default=20),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return _to_response(await services.search.search_files(q, user_id, page, size))


@router.get("/folders", response_model=SearchResponse)
async def search_folders(
    q: str = Query(...),
    page: int = Query(default=0),
    size: int = Query(default=20),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return _to_response(await services.search.search_folders(q, user_id, page, size))


@router.get("/content", response_model=SearchResponse)
async def search_content(
    q: str = Query(...),
    page: int = Query(default=0),
    size: int = Query(default=20),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Full-text content search. Empty when no full-text backend is available."""
    return _to_response(await services.search.search_content(q, user_id, page, size))


@router.get("/type/{file_type}", response_model=SearchResponse)
async def search_by_type(
    file_type: str,
    page: int = Query(default=0),
    size: int = Query(default=20),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return _to_response(await services.search.search_by_type(file_type, user_id, page, size))


@router.get("/tag/{tag}", response_model=SearchResponse)
async def search_by_tag(
    tag: str,
    page: int = Query(default=0),
    size: int = Query(default=20),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return _to_response(await services.search.search_by_tag(tag, user_id, page, size))


@router.get("/recent", response_model=SearchResponse)
async def recent_items(
    limit: int = Query(default=20),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return _to_response(await services.search.recent_items(user_id, limit))


@router.get("/trash", response_model=SearchResponse)
async def search_trash(
    q: Optional[str] = Query(default=None),
    page: int = Query(default=0),
    size: int = Query(default=20),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return _to_response(await services.search.search_trash(user_id, q, page, size))
