from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

from unishare.core.errors import BackendUnavailable
from unishare.models.enums import StorageBackendKind
from unishare.services.backends.base import StorageBackend, StorageLocation

logger = logging.getLogger(__name__)


class LocalStorageBackend(StorageBackend):
    kind = StorageBackendKind.LOCAL

    def __init__(self, root: Path, public_base_url: str | None = None) -> None:
        self._root = root
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def ensure_base_dirs(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, location: StorageLocation) -> Path:
        path = (self._root / location.reference).resolve()
        if not path.is_relative_to(self._root.resolve()):
            raise ValueError(f"{location.reference!r} escapes the storage root")
        return path

    async def available_space(self) -> int:
        def _free() -> int:
            self._root.mkdir(parents=True, exist_ok=True)
            return shutil.disk_usage(self._root).free

        try:
            return await asyncio.to_thread(_free)
        except OSError as exc:
            raise BackendUnavailable(f"Cannot read free space of {self._root}: {exc}") from exc

    async def put(self, source: Path, object_name: str, filename: str, mime_type: str | None) -> StorageLocation:
        target = self._root / object_name

        def _move() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), target)

        await asyncio.to_thread(_move)
        logger.info("Stored %s at %s", filename, target)
        return StorageLocation(kind=self.kind, local_path=object_name)

    async def delete(self, location: StorageLocation) -> None:
        path = self._resolve(location)

        def _delete() -> bool:
            existed = path.exists()
            path.unlink(missing_ok=True)
            parent = path.parent
            if parent != self._root.resolve() and parent.exists() and not any(parent.iterdir()):
                parent.rmdir()
            return existed

        if not await asyncio.to_thread(_delete):
            logger.info("Local file %s already absent", location.reference)

    async def get(self, location: StorageLocation) -> bytes:
        path = self._resolve(location)

        def _read() -> bytes:
            with open(path, "rb") as handle:
                return handle.read()

        return await asyncio.to_thread(_read)

    async def signed_url(self, location: StorageLocation, ttl_seconds: int) -> str | None:
        if self._public_base_url is None:
            return None
        return f"{self._public_base_url}/{location.reference}"
