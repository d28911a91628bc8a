from __future__ import annotations

import asyncio
import logging
import mimetypes
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePath
from typing import BinaryIO

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from unishare.core.config import Settings, UploadConfig
from unishare.core.errors import (
    BackendUnavailable,
    InvalidChunk,
    InvalidSessionState,
    InvalidUser,
    LockTimeout,
    SessionNotFound,
    UploadError,
)
from unishare.models.enums import OwnerKind, StorageBackendKind, UploadStatus
from unishare.models.upload import UploadSession
from unishare.services.backends.base import StorageLocation
from unishare.services.backends.registry import BackendRegistry, build_storage_backends
from unishare.services.hashing import compute_fingerprint, fingerprint
from unishare.services.ledger import SpaceReservationLedger
from unishare.services.locks import NamedLockService, build_lock_service
from unishare.services.storage import ChunkStore

logger = logging.getLogger(__name__)

_SAFE_USER_ID = re.compile(r"^[A-Za-z0-9_@.-]{1,64}$")


@dataclass(frozen=True)
class FileMeta:
    filename: str
    size: int
    mime_type: str | None = None


@dataclass(frozen=True)
class OwnerRef:
    kind: OwnerKind
    id: int | None = None


@dataclass(frozen=True)
class FinalizedUpload:
    """What a completed upload hands to whoever persists the owning entity."""

    session_token: str
    location: StorageLocation
    size: int
    mime_type: str | None
    fingerprint: str | None
    original_filename: str
    owner: OwnerRef


@dataclass
class InitializeResult:
    session: UploadSession
    is_duplicate: bool

    @property
    def session_token(self) -> str:
        return self.session.session_token


@dataclass
class ChunkResult:
    session: UploadSession
    finalized: FinalizedUpload | None = None


@dataclass
class StatusResult:
    session: UploadSession
    file_url: str | None


@dataclass
class ResumeResult:
    session: UploadSession
    received_indices: list[int]
    missing_indices: list[int]
    can_resume: bool


def location_of(session: UploadSession) -> StorageLocation | None:
    if not session.has_location:
        return None
    return StorageLocation(
        kind=session.storage_backend,
        local_path=session.local_path,
        external_id=session.external_id,
        object_key=session.object_key,
    )


def is_usable_user_id(user_id: str) -> bool:
    """User ids become staging directory names."""
    return bool(_SAFE_USER_ID.match(user_id)) and user_id not in {".", ".."}


def _stored_filename(filename: str) -> str:
    return f"{uuid.uuid4()}{PurePath(filename).suffix.lower()}"


def _guess_mime_type(filename: str) -> str:
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or "application/octet-stream"


class UploadCoordinator:
    """Drives upload sessions from initialization to a published file.

    ``pending`` sessions collect chunks; the chunk that completes the set
    moves the session to ``processing``, merges the chunks and publishes the
    result on the session's backend, ending in ``completed``. Permanent
    errors end in ``failed``. ``BackendUnavailable`` leaves the session in
    ``processing`` with its chunks and reservation intact, so re-sending the
    last chunk retries the publish step.
    """

    def __init__(
        self,
        config: UploadConfig,
        chunk_store: ChunkStore,
        backends: BackendRegistry,
        ledger: SpaceReservationLedger,
        locks: NamedLockService,
    ) -> None:
        self.config = config
        self.chunk_store = chunk_store
        self.backends = backends
        self.ledger = ledger
        self.locks = locks

    def _upload_lock(self, session: UploadSession) -> str:
        return f"{session.storage_backend.value}-upload-{session.session_token}"

    async def get_session(self, db: AsyncSession, session_token: str) -> UploadSession:
        stmt = (
            select(UploadSession)
            .where(UploadSession.session_token == session_token)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        session = result.scalar_one_or_none()
        if session is None:
            raise SessionNotFound(session_token)
        return session

    async def find_completed_by_fingerprint(self, db: AsyncSession, content_fingerprint: str) -> UploadSession | None:
        stmt = (
            select(UploadSession)
            .where(
                UploadSession.fingerprint == content_fingerprint,
                UploadSession.status == UploadStatus.COMPLETED,
            )
            .order_by(UploadSession.id)
            .limit(1)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def initialize_upload(
        self,
        db: AsyncSession,
        meta: FileMeta,
        owner: OwnerRef,
        *,
        user_id: str,
        chunks_total: int = 1,
        backend_kind: StorageBackendKind | str | None = None,
        content: BinaryIO | None = None,
    ) -> InitializeResult:
        """Open a new upload session.

        When ``content`` is given its fingerprint is computed up front and a
        completed upload with the same fingerprint is returned instead, tagged
        ``is_duplicate``; nothing is stored or reserved in that case.
        """
        kind = StorageBackendKind(backend_kind) if backend_kind else self.config.default_backend
        self.backends.get(kind)
        if chunks_total < 1:
            raise InvalidChunk("chunks_total must be at least 1")
        if chunks_total > self.config.max_chunks_total:
            raise InvalidChunk(f"chunks_total cannot exceed {self.config.max_chunks_total}")
        if meta.size < 0:
            raise InvalidChunk("file size cannot be negative")
        if not is_usable_user_id(user_id):
            raise InvalidUser(f"Unusable user id {user_id!r}")

        content_fingerprint = None
        if content is not None:
            content_fingerprint = await asyncio.to_thread(
                fingerprint,
                content,
                meta.size,
                threshold=self.config.small_file_hash_threshold,
                sample_size=self.config.hash_sample_size,
            )
            existing = await self.find_completed_by_fingerprint(db, content_fingerprint)
            if existing is not None:
                logger.info(
                    "Upload of %s by user %s duplicates completed upload %s",
                    meta.filename,
                    user_id,
                    existing.session_token,
                )
                return InitializeResult(session=existing, is_duplicate=True)

        session_token = str(uuid.uuid4())
        if meta.size > 0:
            try:
                await self.ledger.reserve(kind, session_token, meta.size)
            except BackendUnavailable as exc:
                logger.error("Storage space check failed for upload %s: %s", session_token, exc)

        session = UploadSession(
            session_token=session_token,
            owner_user_id=user_id,
            original_filename=meta.filename,
            stored_filename=_stored_filename(meta.filename),
            mime_type=meta.mime_type or _guess_mime_type(meta.filename),
            file_size=meta.size,
            fingerprint=content_fingerprint,
            chunks_total=chunks_total,
            chunks_received=0,
            status=UploadStatus.PENDING,
            storage_backend=kind,
            owner_kind=owner.kind,
            owner_id=owner.id,
            expires_at=UploadSession.build_expiration(self.config.session_ttl_minutes),
        )
        db.add(session)
        try:
            await db.commit()
        except Exception:
            self.ledger.release(session_token)
            raise
        await db.refresh(session)
        logger.info(
            "Upload %s initialized: %s (%s bytes, %s chunks) on %s",
            session_token,
            meta.filename,
            meta.size,
            chunks_total,
            kind.value,
        )
        return InitializeResult(session=session, is_duplicate=False)

    async def submit_chunk(
        self,
        db: AsyncSession,
        session_token: str,
        index: int,
        data: bytes,
        chunks_total: int | None = None,
    ) -> ChunkResult:
        session = await self.get_session(db, session_token)
        if chunks_total is not None and chunks_total != session.chunks_total:
            raise InvalidChunk(f"Session expects {session.chunks_total} chunks, got chunks_total={chunks_total}")
        if not 0 <= index < session.chunks_total:
            raise InvalidChunk(f"Chunk index {index} is out of range")
        if session.status == UploadStatus.COMPLETED:
            return ChunkResult(session=session)
        if session.status == UploadStatus.FAILED:
            raise InvalidSessionState("Upload failed; start a new upload session")

        # A cancel holds the same lock while it removes the staged chunks and the row.
        try:
            async with self.locks.hold(self._upload_lock(session), self.config.lock_timeout_seconds):
                session = await self.get_session(db, session_token)
                if session.status == UploadStatus.COMPLETED:
                    return ChunkResult(session=session)
                if session.status == UploadStatus.FAILED:
                    raise InvalidSessionState("Upload failed; start a new upload session")
                written = await self.chunk_store.write_chunk(session.owner_user_id, session_token, index, data)
                if written:
                    await db.execute(
                        update(UploadSession)
                        .where(
                            UploadSession.id == session.id,
                            UploadSession.chunks_received < UploadSession.chunks_total,
                        )
                        .values(
                            chunks_received=UploadSession.chunks_received + 1,
                            expires_at=UploadSession.build_expiration(self.config.session_ttl_minutes),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    await db.commit()
                    await db.refresh(session)
        except LockTimeout as exc:
            raise BackendUnavailable("Upload is being processed, resend the chunk later") from exc

        if not session.all_chunks_received:
            return ChunkResult(session=session)
        finalized = await self._finalize(db, session)
        return ChunkResult(session=session, finalized=finalized)

    async def _finalize(self, db: AsyncSession, session: UploadSession) -> FinalizedUpload | None:
        try:
            async with self.locks.hold(self._upload_lock(session), self.config.lock_timeout_seconds):
                session = await self.get_session(db, session.session_token)
                if session.status == UploadStatus.COMPLETED:
                    return None
                if session.status == UploadStatus.FAILED:
                    raise InvalidSessionState("Upload failed; start a new upload session")
                if session.status == UploadStatus.PENDING:
                    session.status = UploadStatus.PROCESSING
                    await db.commit()
                    logger.info("Upload %s: all %s chunks received", session.session_token, session.chunks_total)
                return await self._publish(db, session)
        except LockTimeout as exc:
            raise BackendUnavailable("Storage backend is busy, resend the last chunk to retry") from exc

    async def _publish(self, db: AsyncSession, session: UploadSession) -> FinalizedUpload:
        backend = self.backends.get(session.storage_backend)
        location: StorageLocation | None = None
        try:
            merged_path, size = await self.chunk_store.merge_all(
                session.owner_user_id, session.session_token, session.chunks_total
            )
            if session.fingerprint is None:
                session.fingerprint = await compute_fingerprint(
                    merged_path,
                    threshold=self.config.small_file_hash_threshold,
                    sample_size=self.config.hash_sample_size,
                )
            location = await backend.put(merged_path, session.object_name, session.original_filename, session.mime_type)
            session.local_path = location.local_path
            session.external_id = location.external_id
            session.object_key = location.object_key
            session.file_size = size
            session.status = UploadStatus.COMPLETED
            session.error_message = None
            session.completed_at = datetime.now(timezone.utc)
            await db.commit()
        except BackendUnavailable as exc:
            logger.warning("Upload %s: publishing to %s failed, retryable: %s", session.session_token, backend.kind.value, exc)
            session.error_message = exc.message
            await db.commit()
            raise
        except Exception as exc:
            await self._fail(db, session, exc, location)
            raise

        await self.chunk_store.cleanup(session.owner_user_id, session.session_token)
        self.ledger.release(session.session_token)
        logger.info("Upload %s completed on %s", session.session_token, backend.kind.value)
        return FinalizedUpload(
            session_token=session.session_token,
            location=location,
            size=session.file_size,
            mime_type=session.mime_type,
            fingerprint=session.fingerprint,
            original_filename=session.original_filename,
            owner=OwnerRef(session.owner_kind, session.owner_id),
        )

    async def _fail(
        self,
        db: AsyncSession,
        session: UploadSession,
        exc: Exception,
        location: StorageLocation | None,
    ) -> None:
        message = str(exc) or exc.__class__.__name__
        logger.error("Upload %s failed: %s", session.session_token, message)
        try:
            await db.rollback()
            await db.refresh(session)
            session.status = UploadStatus.FAILED
            session.error_message = message
            await db.commit()
        except Exception:
            logger.exception("Could not record failure of upload %s", session.session_token)

        if location is not None:
            try:
                await self.backends.get(location.kind).delete(location)
            except Exception:
                logger.exception("Could not delete published object of failed upload %s", session.session_token)
        await self.chunk_store.cleanup(session.owner_user_id, session.session_token)
        self.ledger.release(session.session_token)

    async def get_status(self, db: AsyncSession, session_token: str) -> StatusResult:
        session = await self.get_session(db, session_token)
        file_url = await self.file_url(session) if session.is_complete else None
        return StatusResult(session=session, file_url=file_url)

    async def file_url(self, session: UploadSession) -> str | None:
        location = location_of(session)
        if location is None:
            return None
        backend = self.backends.get(location.kind)
        return await backend.signed_url(location, self.config.signed_url_ttl_seconds)

    async def read_content(self, db: AsyncSession, session_token: str) -> tuple[UploadSession, bytes]:
        session = await self.get_session(db, session_token)
        location = location_of(session)
        if not session.is_complete or location is None:
            raise InvalidSessionState("Upload is not completed")
        return session, await self.backends.get(location.kind).get(location)

    async def resume_interrupted(self, db: AsyncSession, session_token: str) -> ResumeResult:
        """Recount the chunks actually staged for a pending session.

        Guards against a crash between writing a chunk and counting it; the
        client resends only ``missing_indices``.
        """
        session = await self.get_session(db, session_token)
        if session.status != UploadStatus.PENDING:
            return ResumeResult(session=session, received_indices=[], missing_indices=[], can_resume=False)

        staged = await self.chunk_store.received_indices(session.owner_user_id, session_token)
        received = [index for index in staged if index < session.chunks_total]
        session.chunks_received = len(received)
        await db.commit()
        received_set = set(received)
        missing = [index for index in range(session.chunks_total) if index not in received_set]
        logger.info("Upload %s resumed with %s/%s chunks", session_token, len(received), session.chunks_total)
        return ResumeResult(session=session, received_indices=received, missing_indices=missing, can_resume=True)

    async def attach_owner(self, db: AsyncSession, session_token: str, owner_id: int) -> UploadSession:
        session = await self.get_session(db, session_token)
        session.owner_id = owner_id
        await db.commit()
        await db.refresh(session)
        return session

    async def cancel_upload(self, db: AsyncSession, session_token: str) -> None:
        session = await self.get_session(db, session_token)
        await self._discard(db, session)
        logger.info("Upload %s cancelled", session_token)

    async def _discard(self, db: AsyncSession, session: UploadSession) -> None:
        try:
            async with self.locks.hold(self._upload_lock(session), self.config.lock_timeout_seconds):
                session = await self.get_session(db, session.session_token)
                location = location_of(session)
                if location is not None:
                    await self.backends.get(location.kind).delete(location)
                await self.chunk_store.cleanup(session.owner_user_id, session.session_token)
                self.ledger.release(session.session_token)
                await db.delete(session)
                await db.commit()
        except LockTimeout as exc:
            raise BackendUnavailable("Upload is being processed, try again later") from exc

    async def delete_owner_uploads(self, db: AsyncSession, owner_kind: OwnerKind, owner_id: int) -> int:
        stmt = select(UploadSession).where(UploadSession.owner_kind == owner_kind, UploadSession.owner_id == owner_id)
        sessions = list((await db.execute(stmt)).scalars())
        removed = await self._discard_each(db, sessions)
        if removed:
            logger.info("Removed %s uploads of %s %s", removed, owner_kind.value, owner_id)
        return removed

    async def purge_stale_sessions(self, db: AsyncSession, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        stmt = select(UploadSession).where(
            UploadSession.status.in_([UploadStatus.PENDING, UploadStatus.PROCESSING]),
            UploadSession.expires_at < now,
        )
        stale = list((await db.execute(stmt)).scalars())
        try:
            return await self._discard_each(db, stale)
        finally:
            self.ledger.purge_expired()

    async def _discard_each(self, db: AsyncSession, sessions: list[UploadSession]) -> int:
        """Discard every session it can; sessions that fail stay for the next run."""
        removed = 0
        for session in sessions:
            session_token = session.session_token
            try:
                await self._discard(db, session)
            except UploadError:
                logger.exception("Could not discard upload %s, skipping it", session_token)
                continue
            removed += 1
            logger.info("Discarded upload %s", session_token)
        return removed


def build_upload_coordinator(settings: Settings, engine: AsyncEngine | None = None) -> UploadCoordinator:
    config = UploadConfig.from_settings(settings)
    backends = build_storage_backends(config)
    locks = build_lock_service(settings.lock_backend, engine)
    ledger = SpaceReservationLedger(
        backends,
        locks,
        ttl_seconds=config.reservation_ttl_seconds,
        lock_timeout=config.lock_timeout_seconds,
    )
    chunk_store = ChunkStore(config.staging_dir)
    chunk_store.ensure_base_dirs()
    return UploadCoordinator(config, chunk_store, backends, ledger, locks)
