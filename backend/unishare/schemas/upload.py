from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel, ConfigDict, Field

from unishare.core.config import settings
from unishare.models.enums import OwnerKind, StorageBackendKind, UploadStatus


class InitializeUploadRequest(BaseModel):
    filename: str = Field(min_length=1, max_length=512)
    size: int = Field(ge=0)
    mime_type: str | None = None
    chunks_total: int = Field(default=1, ge=1, le=settings.max_chunks_total)
    owner_kind: OwnerKind = OwnerKind.DOCUMENT
    owner_id: int | None = None
    storage_backend: StorageBackendKind | None = None


class UploadSessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_token: str
    status: UploadStatus
    original_filename: str
    mime_type: str | None
    file_size: int
    chunks_total: int
    chunks_received: int
    storage_backend: StorageBackendKind
    owner_kind: OwnerKind
    owner_id: int | None
    error_message: str | None = None
    expires_at: datetime
    completed_at: datetime | None = None


class InitializeUploadResponse(BaseModel):
    session: UploadSessionResponse
    is_duplicate: bool = False


class ChunkUploadResponse(BaseModel):
    session: UploadSessionResponse
    received: int
    is_complete: bool
    file_url: str | None = None


class UploadStatusResponse(BaseModel):
    session: UploadSessionResponse
    progress: float
    file_url: str | None = None


class ResumeUploadResponse(BaseModel):
    session: UploadSessionResponse
    received: List[int]
    missing: List[int]
    can_resume: bool


class AttachOwnerRequest(BaseModel):
    owner_id: int = Field(ge=1)
