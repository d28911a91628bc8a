from __future__ import annotations

import logging

from unishare.core.config import UploadConfig
from unishare.core.errors import BackendNotConfigured
from unishare.models.enums import StorageBackendKind
from unishare.services.backends.base import StorageBackend
from unishare.services.backends.local import LocalStorageBackend

logger = logging.getLogger(__name__)


class BackendRegistry:
    """The configured storage backends, one per ``StorageBackendKind``."""

    def __init__(self, backends: dict[StorageBackendKind, StorageBackend]) -> None:
        self._backends = dict(backends)

    def __contains__(self, kind: object) -> bool:
        return kind in self._backends

    def __iter__(self):
        return iter(self._backends.values())

    def get(self, kind: StorageBackendKind) -> StorageBackend:
        try:
            return self._backends[kind]
        except KeyError:
            raise BackendNotConfigured(getattr(kind, "value", str(kind))) from None

    def kinds(self) -> list[StorageBackendKind]:
        return list(self._backends)


def build_storage_backends(config: UploadConfig) -> BackendRegistry:
    backends: dict[StorageBackendKind, StorageBackend] = {
        StorageBackendKind.LOCAL: LocalStorageBackend(config.local.root, config.local.public_base_url),
    }
    if config.minio is not None:
        from unishare.services.backends.object_store import MinIOStorageBackend, build_minio_client

        backends[StorageBackendKind.MINIO] = MinIOStorageBackend(
            build_minio_client(config.minio),
            config.minio.bucket,
            config.minio.max_size,
            url_ttl_seconds=config.signed_url_ttl_seconds,
        )
    if config.google_drive is not None:
        from unishare.services.backends.google_drive import GoogleDriveStorageBackend, build_drive_service

        backends[StorageBackendKind.GOOGLE_DRIVE] = GoogleDriveStorageBackend(
            build_drive_service(config.google_drive),
            config.google_drive.folder_id,
        )
    logger.info("Storage backends configured: %s", ", ".join(kind.value for kind in backends))
    return BackendRegistry(backends)
