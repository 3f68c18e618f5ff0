"""Files API routes: uploads (direct and chunked), metadata, downloads, move/copy, tags."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File as FastAPIFile, Form, Query, Request, UploadFile
from fastapi.responses import StreamingResponse

from fileflow.routes.deps import get_current_user, get_services
from fileflow.schemas.common import DeleteResponse
from fileflow.schemas.file import (
    ChunkAckResponse, ChunkedUploadSession, ChunkedUploadStart, FileCopy, FileMove,
    FileResponse, PresignedUrlResponse, TagRequest,
)
from fileflow.services.container import Services

router = APIRouter(prefix="/api/files", tags=["files"])


@router.post("/upload", response_model=FileResponse, status_code=201)
async def upload_file(
    file: UploadFile = FastAPIFile(...),
    parent_folder_id: Optional[UUID] = Form(default=None, alias="parentFolderId"),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Upload a whole file in one request."""
    contents = await file.read()
    return await services.files.upload_file(
        user_id, contents, file.filename or "unnamed", file.content_type, parent_folder_id
    )


@router.get("", response_model=list[FileResponse])
async def list_files(
    parent_folder_id: Optional[UUID] = Query(default=None, alias="parentFolderId"),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.files.list_files(user_id, parent_folder_id)


@router.post("/uploads", response_model=ChunkedUploadSession, status_code=201)
async def start_chunked_upload(
    body: ChunkedUploadStart,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Reserve quota for the declared size and open an upload session."""
    session = await services.files.start_chunked_upload(
        user_id, body.filename, body.total_size, body.total_chunks,
        body.mime_type, body.parent_folder_id,
    )
    return ChunkedUploadSession(
        upload_id=session.id,
        total_size=session.total_size,
        total_chunks=session.total_chunks,
        expires_at=session.expires_at,
    )


@router.put("/uploads/{upload_id}/chunks/{chunk_number}", response_model=ChunkAckResponse)
async def upload_chunk(
    upload_id: str,
    chunk_number: int,
    request: Request,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Raw chunk bytes in the request body. Chunk numbers start at 0."""
    data = await request.body()
    ack = await services.files.upload_chunk(user_id, upload_id, chunk_number, data)
    return ChunkAckResponse(
        upload_id=ack.session_id,
        chunk_number=ack.chunk_number,
        size_bytes=ack.size,
        checksum=ack.checksum,
        received_chunks=ack.received_chunks,
        total_chunks=ack.total_chunks,
    )


@router.post("/uploads/{upload_id}/complete", response_model=FileResponse, status_code=201)
async def complete_chunked_upload(
    upload_id: str,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.files.complete_chunked_upload(user_id, upload_id)


@router.get("/download/{path:path}")
async def download_by_path(
    path: str,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Target of the local backend's download URLs."""
    stream = await services.files.open_path(user_id, path)
    return StreamingResponse(stream, media_type="application/octet-stream")


@router.get("/{file_id}", response_model=FileResponse)
async def get_file_metadata(
    file_id: UUID,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.files.get_file(user_id, file_id)


@router.get("/{file_id}/download")
async def download_file(
    file_id: UUID,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Stream a file through the API."""
    record, stream = await services.files.open_download(user_id, file_id)
    return StreamingResponse(
        stream,
        media_type=record.mime_type or "application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{record.original_name}"'},
    )


@router.get("/{file_id}/url", response_model=PresignedUrlResponse)
async def get_download_url(
    file_id: UUID,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Presigned URL on object stores, an API-relative path on local storage."""
    url, ttl = await services.files.download_url(user_id, file_id)
    return PresignedUrlResponse(url=url, expires_in_seconds=ttl)


@router.delete("/{file_id}", response_model=DeleteResponse)
async def delete_file(
    file_id: UUID,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.files.delete_file(user_id, file_id)
    return DeleteResponse(deleted=True, id=str(file_id))


@router.post("/{file_id}/move", response_model=FileResponse)
async def move_file(
    file_id: UUID,
    body: FileMove,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.files.move_file(user_id, file_id, body.parent_folder_id)


@router.post("/{file_id}/copy", response_model=FileResponse, status_code=201)
async def copy_file(
    file_id: UUID,
    body: FileCopy,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.files.copy_file(user_id, file_id, body.parent_folder_id)


@router.get("/{file_id}/tags")
async def list_file_tags(
    file_id: UUID,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    record = await services.files.get_file(user_id, file_id)
    return {"tags": await services.files.get_tags(record.id)}


@router.post("/{file_id}/tags")
async def tag_file(
    file_id: UUID,
    body: TagRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return {"tags": await services.files.tag_file(user_id, file_id, body.tags)}
