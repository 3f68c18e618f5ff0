"""File, folder and upload request/response schemas."""
import uuid
from datetime import datetime
from typing import Optional

from pydantic import Field

from fileflow.schemas.base import CamelModel, CamelORMModel


class FileResponse(CamelORMModel):
    id: uuid.UUID
    user_id: str
    filename: str
    original_name: str
    mime_type: Optional[str] = None
    file_type: str
    size_bytes: int
    checksum: Optional[str] = None
    parent_folder_id: Optional[uuid.UUID] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class FolderCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    parent_folder_id: Optional[uuid.UUID] = None


class FolderResponse(CamelORMModel):
    id: uuid.UUID
    user_id: str
    name: str
    parent_folder_id: Optional[uuid.UUID] = None
    is_deleted: bool = False
    created_at: datetime
    updated_at: datetime


class FileMove(CamelModel):
    parent_folder_id: Optional[uuid.UUID] = None


class FileCopy(CamelModel):
    parent_folder_id: Optional[uuid.UUID] = None


class TagRequest(CamelModel):
    tags: list[str] = Field(min_length=1)


class ChunkedUploadStart(CamelModel):
    filename: str = Field(min_length=1)
    total_size: int = Field(gt=0)
    total_chunks: int = Field(gt=0)
    mime_type: Optional[str] = None
    parent_folder_id: Optional[uuid.UUID] = None


class ChunkedUploadSession(CamelModel):
    upload_id: str
    total_size: int
    total_chunks: int
    expires_at: datetime


class ChunkAckResponse(CamelModel):
    upload_id: str
    chunk_number: int
    size_bytes: int
    checksum: str
    received_chunks: int
    total_chunks: int


class PresignedUrlResponse(CamelModel):
    url: str
    expires_in_seconds: int
