from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, validates

from unishare.db.base import Base
from unishare.models.enums import OwnerKind, StorageBackendKind, UploadStatus


class UploadSession(Base):
    __tablename__ = "upload_sessions"
    __table_args__ = (
        CheckConstraint("chunks_received <= chunks_total", name="ck_chunks_received_bounded"),
        CheckConstraint("chunks_total >= 1", name="ck_chunks_total_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_token: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    owner_user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    original_filename: Mapped[str] = mapped_column(String(512), nullable=False)
    stored_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    fingerprint: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)

    chunks_total: Mapped[int] = mapped_column(Integer, nullable=False)
    chunks_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[UploadStatus] = mapped_column(Enum(UploadStatus), default=UploadStatus.PENDING, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    storage_backend: Mapped[StorageBackendKind] = mapped_column(Enum(StorageBackendKind), nullable=False)
    local_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    object_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    owner_kind: Mapped[OwnerKind] = mapped_column(Enum(OwnerKind), nullable=False)
    owner_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @validates("fingerprint")
    def _validate_fingerprint(self, key: str, value: str | None) -> str | None:
        current = self.__dict__.get("fingerprint")
        if current is not None and value != current:
            raise ValueError("fingerprint is immutable once computed")
        return value

    @property
    def object_name(self) -> str:
        return f"uploads/{self.owner_user_id}/{self.stored_filename}"

    @property
    def has_location(self) -> bool:
        return any(value is not None for value in (self.local_path, self.external_id, self.object_key))

    @property
    def is_complete(self) -> bool:
        return self.status == UploadStatus.COMPLETED

    @property
    def all_chunks_received(self) -> bool:
        return self.chunks_received >= self.chunks_total

    @staticmethod
    def build_expiration(ttl_minutes: int, now: datetime | None = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        return now + timedelta(minutes=ttl_minutes)
