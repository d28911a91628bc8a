from __future__ import annotations

import hashlib
import io
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile, status

from unishare.api import deps
from unishare.core.config import settings
from unishare.models.enums import OwnerKind, StorageBackendKind
from unishare.models.upload import UploadSession
from unishare.schemas.upload import (
    AttachOwnerRequest,
    ChunkUploadResponse,
    InitializeUploadRequest,
    InitializeUploadResponse,
    ResumeUploadResponse,
    UploadSessionResponse,
    UploadStatusResponse,
)
from unishare.services.uploads import FileMeta, OwnerRef, UploadCoordinator

router = APIRouter(prefix="/uploads", tags=["uploads"])


async def _load_visible_session(
    coordinator: UploadCoordinator,
    db: deps.DatabaseSessionDep,
    session_token: str,
    current_user: deps.CurrentUser,
) -> UploadSession:
    session = await coordinator.get_session(db, session_token)
    if session.owner_user_id != current_user.id and not current_user.can_moderate:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Upload session not found")
    return session


def _progress(session: UploadSession) -> float:
    return round(session.chunks_received / session.chunks_total * 100, 2)


@router.post("/initialize", response_model=InitializeUploadResponse, status_code=status.HTTP_201_CREATED)
async def initialize_upload(
    payload: InitializeUploadRequest,
    db: deps.DatabaseSessionDep,
    coordinator: deps.UploadCoordinatorDep,
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
) -> InitializeUploadResponse:
    result = await coordinator.initialize_upload(
        db,
        FileMeta(filename=payload.filename, size=payload.size, mime_type=payload.mime_type),
        OwnerRef(kind=payload.owner_kind, id=payload.owner_id),
        user_id=current_user.id,
        chunks_total=payload.chunks_total,
        backend_kind=payload.storage_backend,
    )
    return InitializeUploadResponse(
        session=UploadSessionResponse.model_validate(result.session),
        is_duplicate=result.is_duplicate,
    )


@router.post("/single", response_model=ChunkUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_single_file(
    db: deps.DatabaseSessionDep,
    coordinator: deps.UploadCoordinatorDep,
    file: UploadFile = File(...),
    owner_kind: OwnerKind = Form(OwnerKind.DOCUMENT),
    owner_id: int | None = Form(None),
    storage_backend: StorageBackendKind | None = Form(None),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
) -> ChunkUploadResponse:
    data = await file.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    result = await coordinator.initialize_upload(
        db,
        FileMeta(filename=file.filename or "upload.bin", size=len(data), mime_type=file.content_type),
        OwnerRef(kind=owner_kind, id=owner_id),
        user_id=current_user.id,
        chunks_total=1,
        backend_kind=storage_backend,
        content=io.BytesIO(data),
    )
    session = result.session
    if not result.is_duplicate:
        chunk = await coordinator.submit_chunk(db, session.session_token, 0, data)
        session = chunk.session
    file_url = await coordinator.file_url(session) if session.is_complete else None
    return ChunkUploadResponse(
        session=UploadSessionResponse.model_validate(session),
        received=session.chunks_received,
        is_complete=session.is_complete,
        file_url=file_url,
    )


@router.put("/{session_token}/chunks/{index}", response_model=ChunkUploadResponse)
async def upload_chunk(
    session_token: str,
    index: int,
    request: Request,
    db: deps.DatabaseSessionDep,
    coordinator: deps.UploadCoordinatorDep,
    chunks_total: int | None = Query(default=None, ge=1, le=settings.max_chunks_total),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
) -> ChunkUploadResponse:
    await _load_visible_session(coordinator, db, session_token, current_user)

    raw_data = await request.body()
    actual_size = len(raw_data)
    if actual_size == 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty chunk")
    if actual_size > settings.max_chunk_size:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Chunk too large")

    checksum_header = request.headers.get("X-Chunk-Checksum")
    if checksum_header and checksum_header.lower() != hashlib.sha256(raw_data).hexdigest():
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Checksum mismatch")

    result = await coordinator.submit_chunk(db, session_token, index, raw_data, chunks_total)
    session = result.session
    if result.finalized is not None and result.finalized.location.url:
        file_url = result.finalized.location.url
    else:
        file_url = await coordinator.file_url(session) if session.is_complete else None
    return ChunkUploadResponse(
        session=UploadSessionResponse.model_validate(session),
        received=session.chunks_received,
        is_complete=session.is_complete,
        file_url=file_url,
    )


@router.get("/{session_token}", response_model=UploadStatusResponse)
async def get_upload_status(
    session_token: str,
    db: deps.DatabaseSessionDep,
    coordinator: deps.UploadCoordinatorDep,
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
) -> UploadStatusResponse:
    await _load_visible_session(coordinator, db, session_token, current_user)
    result = await coordinator.get_status(db, session_token)
    return UploadStatusResponse(
        session=UploadSessionResponse.model_validate(result.session),
        progress=_progress(result.session),
        file_url=result.file_url,
    )


@router.post("/{session_token}/resume", response_model=ResumeUploadResponse)
async def resume_upload(
    session_token: str,
    db: deps.DatabaseSessionDep,
    coordinator: deps.UploadCoordinatorDep,
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
) -> ResumeUploadResponse:
    await _load_visible_session(coordinator, db, session_token, current_user)
    result = await coordinator.resume_interrupted(db, session_token)
    return ResumeUploadResponse(
        session=UploadSessionResponse.model_validate(result.session),
        received=result.received_indices,
        missing=result.missing_indices,
        can_resume=result.can_resume,
    )


@router.delete("/{session_token}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_upload(
    session_token: str,
    db: deps.DatabaseSessionDep,
    coordinator: deps.UploadCoordinatorDep,
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
) -> Response:
    session = await coordinator.get_session(db, session_token)
    if session.owner_user_id != current_user.id and not current_user.can_moderate:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to cancel this upload")
    await coordinator.cancel_upload(db, session_token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{session_token}/content")
async def download_upload(
    session_token: str,
    db: deps.DatabaseSessionDep,
    coordinator: deps.UploadCoordinatorDep,
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
) -> Response:
    await _load_visible_session(coordinator, db, session_token, current_user)
    session, content = await coordinator.read_content(db, session_token)
    ascii_filename = session.original_filename.encode("ascii", "ignore").decode("ascii").replace('"', "") or "download"
    content_disposition = f'attachment; filename="{ascii_filename}"'
    if ascii_filename != session.original_filename:
        content_disposition += f"; filename*=UTF-8''{quote(session.original_filename)}"
    headers = {"Content-Disposition": content_disposition}
    return Response(content=content, media_type=session.mime_type or "application/octet-stream", headers=headers)


@router.patch("/{session_token}/owner", response_model=UploadSessionResponse)
async def attach_upload_owner(
    session_token: str,
    payload: AttachOwnerRequest,
    db: deps.DatabaseSessionDep,
    coordinator: deps.UploadCoordinatorDep,
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
) -> UploadSessionResponse:
    await _load_visible_session(coordinator, db, session_token, current_user)
    session = await coordinator.attach_owner(db, session_token, payload.owner_id)
    return UploadSessionResponse.model_validate(session)
