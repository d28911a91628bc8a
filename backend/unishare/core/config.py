from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from unishare.models.enums import StorageBackendKind

MIB = 1024 * 1024
GIB = 1024 * MIB


class Settings(BaseSettings):
    project_name: str = "UniShare Uploads"
    api_prefix: str = "/api"
    log_level: str = Field(default="INFO")

    database_url: str = Field(
        default="postgresql+asyncpg://unishare:unishare@db:5432/unishare",
        description="SQLAlchemy async database URL",
    )
    redis_url: str = Field(default="redis://redis:6379/0", description="Redis connection URL")

    storage_root: Path = Field(
        default=Path(__file__).resolve().parents[3] / "Storage",
        description="Base directory for file storage",
    )
    tmp_dir_name: str = Field(default="uploads/chunks")
    files_dir_name: str = Field(default="files")
    local_public_base_url: str | None = Field(
        default=None,
        description="Public URL prefix under which the files directory is served",
    )

    max_chunk_size: int = Field(default=16 * MIB, ge=1)
    max_chunks_total: int = Field(default=100_000, ge=1, le=1_000_000)

    session_ttl_minutes: int = Field(default=60 * 6, ge=5)
    session_cleanup_minutes: int = Field(default=60, ge=1)

    default_storage: StorageBackendKind = StorageBackendKind.LOCAL
    reservation_ttl_seconds: int = Field(default=3600, ge=1)
    small_file_hash_threshold: int = Field(default=10 * MIB, ge=1)
    hash_sample_size: int = Field(default=1 * MIB, ge=1)
    signed_url_ttl_seconds: int = Field(default=3600, ge=1)

    lock_backend: str = Field(default="local", pattern="^(local|postgres)$")
    lock_timeout_seconds: float = Field(default=30.0, gt=0)

    use_minio: bool = False
    minio_endpoint: str = Field(default="minio:9000")
    minio_access_key: str | None = None
    minio_secret_key: str | None = None
    minio_bucket: str = Field(default="unishare")
    minio_secure: bool = False
    minio_region: str = Field(default="us-east-1")
    minio_max_size: int = Field(default=10 * GIB, ge=0)

    use_google_drive: bool = False
    google_drive_credentials_file: Path | None = None
    google_drive_folder_id: str | None = None

    jwt_secret: str = Field(default="change-me-in-production", min_length=10)
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60, ge=1)

    celery_broker_url: str | None = None
    celery_result_backend: str | None = None

    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    @field_validator("storage_root", mode="before")
    @classmethod
    def _build_storage_root(cls, value: Path | str) -> Path:
        return Path(value)

    @property
    def tmp_dir(self) -> Path:
        return self.storage_root / self.tmp_dir_name

    @property
    def files_dir(self) -> Path:
        return self.storage_root / self.files_dir_name

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url

    @property
    def celery_backend(self) -> str:
        return self.celery_result_backend or self.redis_url


@dataclass(frozen=True)
class LocalBackendConfig:
    root: Path
    public_base_url: str | None = None


@dataclass(frozen=True)
class MinIOBackendConfig:
    endpoint: str
    access_key: str
    secret_key: str
    bucket: str
    secure: bool = False
    region: str = "us-east-1"
    max_size: int = 10 * GIB


@dataclass(frozen=True)
class GoogleDriveBackendConfig:
    credentials_file: Path
    folder_id: str | None = None


@dataclass(frozen=True)
class UploadConfig:
    """Everything the upload coordinator and its collaborators need.

    Backends whose section is ``None`` are not configured; asking for one
    raises ``BackendNotConfigured``.
    """

    staging_dir: Path
    local: LocalBackendConfig
    default_backend: StorageBackendKind = StorageBackendKind.LOCAL
    minio: MinIOBackendConfig | None = None
    google_drive: GoogleDriveBackendConfig | None = None
    reservation_ttl_seconds: int = 3600
    small_file_hash_threshold: int = 10 * MIB
    hash_sample_size: int = 1 * MIB
    lock_timeout_seconds: float = 30.0
    signed_url_ttl_seconds: int = 3600
    session_ttl_minutes: int = 60 * 6
    max_chunks_total: int = 100_000

    @classmethod
    def from_settings(cls, settings: Settings) -> "UploadConfig":
        minio = None
        if settings.use_minio and settings.minio_access_key and settings.minio_secret_key:
            minio = MinIOBackendConfig(
                endpoint=settings.minio_endpoint,
                access_key=settings.minio_access_key,
                secret_key=settings.minio_secret_key,
                bucket=settings.minio_bucket,
                secure=settings.minio_secure,
                region=settings.minio_region,
                max_size=settings.minio_max_size,
            )
        google_drive = None
        if settings.use_google_drive and settings.google_drive_credentials_file is not None:
            google_drive = GoogleDriveBackendConfig(
                credentials_file=settings.google_drive_credentials_file,
                folder_id=settings.google_drive_folder_id,
            )
        return cls(
            staging_dir=settings.tmp_dir,
            local=LocalBackendConfig(root=settings.files_dir, public_base_url=settings.local_public_base_url),
            default_backend=settings.default_storage,
            minio=minio,
            google_drive=google_drive,
            reservation_ttl_seconds=settings.reservation_ttl_seconds,
            small_file_hash_threshold=settings.small_file_hash_threshold,
            hash_sample_size=settings.hash_sample_size,
            lock_timeout_seconds=settings.lock_timeout_seconds,
            signed_url_ttl_seconds=settings.signed_url_ttl_seconds,
            session_ttl_minutes=settings.session_ttl_minutes,
            max_chunks_total=settings.max_chunks_total,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
