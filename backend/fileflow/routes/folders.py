"""Folders API routes."""
from uuid import UUID

from fastapi import APIRouter, Depends

from fileflow.routes.deps import get_current_user, get_services
from fileflow.schemas.common import DeleteResponse
from fileflow.schemas.file import FileResponse, FolderCreate, FolderResponse
from fileflow.services.container import Services

router = APIRouter(prefix="/api/folders", tags=["folders"])


@router.post("", response_model=FolderResponse, status_code=201)
async def create_folder(
    body: FolderCreate,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.files.create_folder(user_id, body.name, body.parent_folder_id)


@router.get("/{folder_id}", response_model=FolderResponse)
async def get_folder(
    folder_id: UUID,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.files.get_folder(user_id, folder_id)


@router.get("/{folder_id}/files", response_model=list[FileResponse])
async def list_folder_files(
    folder_id: UUID,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.files.get_folder(user_id, folder_id)
    return await services.files.list_files(user_id, folder_id)


@router.delete("/{folder_id}", response_model=DeleteResponse)
async def delete_folder(
    folder_id: UUID,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Delete a folder with everything beneath it."""
    await services.files.delete_folder(user_id, folder_id)
    return DeleteResponse(deleted=True, id=str(folder_id))
