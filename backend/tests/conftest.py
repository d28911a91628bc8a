"""Shared fixtures: an in-memory database, a staging area under tmp_path and
an upload coordinator wired to a local backend plus a recording object store."""

from __future__ import annotations

import os
import tempfile

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STORAGE_ROOT", tempfile.mkdtemp(prefix="unishare-tests-"))
os.environ.setdefault("JWT_SECRET", "unishare-test-secret-key")

from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from unishare.core.config import LocalBackendConfig, UploadConfig
from unishare.db.base import Base
from unishare.db.session import build_engine
from unishare.models.enums import StorageBackendKind
from unishare.services.backends.base import StorageBackend, StorageLocation
from unishare.services.backends.local import LocalStorageBackend
from unishare.services.backends.registry import BackendRegistry
from unishare.services.ledger import SpaceReservationLedger
from unishare.services.locks import InProcessLockService
from unishare.services.storage import ChunkStore
from unishare.services.uploads import UploadCoordinator


class RecordingBackend(StorageBackend):
    """Object store kept in a dict. Exceptions queued in ``failures`` are raised by the next puts."""

    def __init__(self, kind: StorageBackendKind = StorageBackendKind.MINIO, capacity: int = 64 * 1024 * 1024) -> None:
        self.kind = kind
        self.capacity = capacity
        self.objects: dict[str, bytes] = {}
        self.puts = 0
        self.deletes: list[str] = []
        self.failures: list[Exception] = []

    async def available_space(self) -> int:
        return self.capacity

    async def put(self, source: Path, object_name: str, filename: str, mime_type: str | None) -> StorageLocation:
        if self.failures:
            raise self.failures.pop(0)
        self.puts += 1
        self.objects[object_name] = source.read_bytes()
        return StorageLocation(kind=self.kind, object_key=object_name, url=f"https://objects.test/{object_name}")

    async def delete(self, location: StorageLocation) -> None:
        self.deletes.append(location.reference)
        self.objects.pop(location.reference, None)

    async def get(self, location: StorageLocation) -> bytes:
        return self.objects[location.reference]

    async def signed_url(self, location: StorageLocation, ttl_seconds: int) -> str | None:
        return f"https://objects.test/{location.reference}?ttl={ttl_seconds}"


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite shared by every session of one test."""
    engine = build_engine("sqlite+aiosqlite://")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def upload_config(tmp_path: Path) -> UploadConfig:
    return UploadConfig(
        staging_dir=tmp_path / "chunks",
        local=LocalBackendConfig(root=tmp_path / "files", public_base_url="http://files.test/storage"),
        lock_timeout_seconds=2.0,
        small_file_hash_threshold=1024,
        hash_sample_size=64,
        session_ttl_minutes=60,
    )


@pytest.fixture
def object_store() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def local_backend(upload_config: UploadConfig) -> LocalStorageBackend:
    backend = LocalStorageBackend(upload_config.local.root, upload_config.local.public_base_url)
    backend.ensure_base_dirs()
    return backend


@pytest.fixture
def backends(local_backend: LocalStorageBackend, object_store: RecordingBackend) -> BackendRegistry:
    return BackendRegistry({StorageBackendKind.LOCAL: local_backend, StorageBackendKind.MINIO: object_store})


@pytest.fixture
def locks() -> InProcessLockService:
    return InProcessLockService()


@pytest.fixture
def ledger(backends: BackendRegistry, locks: InProcessLockService) -> SpaceReservationLedger:
    return SpaceReservationLedger(backends, locks, ttl_seconds=3600, lock_timeout=2.0)


@pytest.fixture
def chunk_store(upload_config: UploadConfig) -> ChunkStore:
    store = ChunkStore(upload_config.staging_dir)
    store.ensure_base_dirs()
    return store


@pytest.fixture
def coordinator(upload_config, chunk_store, backends, ledger, locks) -> UploadCoordinator:
    return UploadCoordinator(upload_config, chunk_store, backends, ledger, locks)
