"""
MinIO (S3-compatible) storage backend.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from datetime import timedelta
from pathlib import Path

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError as TransportError

from unishare.core.config import MinIOBackendConfig
from unishare.core.errors import BackendUnavailable
from unishare.models.enums import StorageBackendKind
from unishare.services.backends.base import StorageBackend, StorageLocation

logger = logging.getLogger(__name__)

_ABSENT_CODES = {"NoSuchKey", "NoSuchBucket", "NoSuchObject"}
_BUCKET_EXISTS_CODES = {"BucketAlreadyOwnedByYou", "BucketAlreadyExists"}


def build_minio_client(config: MinIOBackendConfig) -> Minio:
    return Minio(
        endpoint=config.endpoint,
        access_key=config.access_key,
        secret_key=config.secret_key,
        secure=config.secure,
        region=config.region,
    )


class MinIOStorageBackend(StorageBackend):
    """
    Object storage on a single MinIO bucket.

    Object stores expose no free-space API, so capacity is the configured
    ceiling ``max_size``; the reservation ledger subtracts in-flight uploads.
    """

    kind = StorageBackendKind.MINIO

    def __init__(self, client: Minio, bucket: str, max_size: int, url_ttl_seconds: int = 3600) -> None:
        self.client = client
        self.bucket = bucket
        self._max_size = max_size
        self._url_ttl = timedelta(seconds=url_ttl_seconds)
        self._bucket_lock = threading.Lock()
        self._bucket_ready = False
        logger.info("MinIO backend initialized for bucket %s", bucket)

    def ensure_bucket_exists(self) -> None:
        """Create the bucket on first use.

        Uploads publish from worker threads, so the check runs under a lock
        held by the whole backend. Another process winning the race counts
        as success.
        """
        with self._bucket_lock:
            if self._bucket_ready:
                return
            if not self.client.bucket_exists(bucket_name=self.bucket):
                try:
                    self.client.make_bucket(bucket_name=self.bucket)
                    logger.info("Created MinIO bucket %s", self.bucket)
                except S3Error as exc:
                    if exc.code not in _BUCKET_EXISTS_CODES:
                        raise
                    logger.info("MinIO bucket %s was created concurrently", self.bucket)
            self._bucket_ready = True

    async def available_space(self) -> int:
        return self._max_size

    async def put(self, source: Path, object_name: str, filename: str, mime_type: str | None) -> StorageLocation:
        def _upload() -> str:
            self.ensure_bucket_exists()
            self.client.fput_object(
                bucket_name=self.bucket,
                object_name=object_name,
                file_path=str(source),
                content_type=mime_type or "application/octet-stream",
            )
            return self.client.presigned_get_object(
                bucket_name=self.bucket, object_name=object_name, expires=self._url_ttl
            )

        try:
            url = await asyncio.to_thread(_upload)
        except (S3Error, TransportError) as exc:
            logger.error("MinIO upload of %s failed: %s", object_name, exc)
            raise BackendUnavailable(f"Failed to upload file to MinIO: {exc}") from exc
        logger.info("Uploaded %s to %s/%s", filename, self.bucket, object_name)
        return StorageLocation(kind=self.kind, object_key=object_name, url=url)

    async def delete(self, location: StorageLocation) -> None:
        key = location.reference
        try:
            await asyncio.to_thread(self.client.remove_object, bucket_name=self.bucket, object_name=key)
        except S3Error as exc:
            if exc.code in _ABSENT_CODES:
                logger.info("MinIO object %s already absent", key)
                return
            logger.error("MinIO delete of %s failed: %s", key, exc)
            raise BackendUnavailable(f"Failed to delete file from MinIO: {exc}") from exc
        except TransportError as exc:
            raise BackendUnavailable(f"Failed to delete file from MinIO: {exc}") from exc
        logger.info("Deleted %s from %s", key, self.bucket)

    async def get(self, location: StorageLocation) -> bytes:
        def _download() -> bytes:
            response = self.client.get_object(bucket_name=self.bucket, object_name=location.reference)
            try:
                return response.read()
            finally:
                response.close()
                response.release_conn()

        try:
            return await asyncio.to_thread(_download)
        except (S3Error, TransportError) as exc:
            logger.error("MinIO download of %s failed: %s", location.reference, exc)
            raise BackendUnavailable(f"Failed to get file from MinIO: {exc}") from exc

    async def signed_url(self, location: StorageLocation, ttl_seconds: int) -> str | None:
        try:
            return await asyncio.to_thread(
                self.client.presigned_get_object,
                bucket_name=self.bucket,
                object_name=location.reference,
                expires=timedelta(seconds=ttl_seconds),
            )
        except (S3Error, TransportError) as exc:
            raise BackendUnavailable(f"Failed to get file URL from MinIO: {exc}") from exc
