from __future__ import annotations

import abc
from dataclasses import dataclass
from pathlib import Path

from unishare.models.enums import StorageBackendKind


@dataclass(frozen=True)
class StorageLocation:
    """Where a finished upload lives. Exactly one reference is set, matching ``kind``."""

    kind: StorageBackendKind
    local_path: str | None = None
    external_id: str | None = None
    object_key: str | None = None
    url: str | None = None

    def __post_init__(self) -> None:
        refs = [ref for ref in (self.local_path, self.external_id, self.object_key) if ref is not None]
        if len(refs) != 1:
            raise ValueError("a storage location needs exactly one reference")

    @property
    def reference(self) -> str:
        return self.local_path or self.external_id or self.object_key  # type: ignore[return-value]


class StorageBackend(abc.ABC):
    kind: StorageBackendKind

    @abc.abstractmethod
    async def available_space(self) -> int:
        """Free capacity in bytes, before in-flight reservations are subtracted."""

    @abc.abstractmethod
    async def put(self, source: Path, object_name: str, filename: str, mime_type: str | None) -> StorageLocation:
        """Publish the merged file at ``source``."""

    @abc.abstractmethod
    async def delete(self, location: StorageLocation) -> None:
        """Remove the object; an object that is already gone counts as deleted."""

    @abc.abstractmethod
    async def get(self, location: StorageLocation) -> bytes:
        ...

    async def signed_url(self, location: StorageLocation, ttl_seconds: int) -> str | None:
        return None
