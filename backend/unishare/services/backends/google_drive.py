"""
Google Drive storage backend.

Drive objects are addressed by an opaque file id and have no direct
byte-serving URL, so downloads are proxied through ``get``.
"""
from __future__ import annotations

import asyncio
import io
import logging
import sys
from pathlib import Path
from typing import Any

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload, MediaIoBaseDownload

from unishare.core.config import GoogleDriveBackendConfig
from unishare.core.errors import BackendUnavailable
from unishare.models.enums import StorageBackendKind
from unishare.services.backends.base import StorageBackend, StorageLocation

logger = logging.getLogger(__name__)

DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive"]


def build_drive_service(config: GoogleDriveBackendConfig) -> Any:
    credentials = service_account.Credentials.from_service_account_file(
        str(config.credentials_file), scopes=DRIVE_SCOPES
    )
    return build("drive", "v3", credentials=credentials, cache_discovery=False)


def _status_of(exc: HttpError) -> int | None:
    status = getattr(exc.resp, "status", None)
    return int(status) if status is not None else None


class GoogleDriveStorageBackend(StorageBackend):
    kind = StorageBackendKind.GOOGLE_DRIVE

    def __init__(self, service: Any, folder_id: str | None = None) -> None:
        self.service = service
        self.folder_id = folder_id

    async def available_space(self) -> int:
        def _quota() -> int:
            about = self.service.about().get(fields="storageQuota").execute()
            quota = about.get("storageQuota", {})
            limit = quota.get("limit")
            if limit is None:
                return sys.maxsize
            return int(limit) - int(quota.get("usage", 0))

        try:
            return await asyncio.to_thread(_quota)
        except (HttpError, OSError) as exc:
            raise BackendUnavailable(f"Failed to read Google Drive quota: {exc}") from exc

    async def put(self, source: Path, object_name: str, filename: str, mime_type: str | None) -> StorageLocation:
        metadata: dict[str, Any] = {"name": filename}
        if self.folder_id:
            metadata["parents"] = [self.folder_id]

        def _upload() -> str:
            media = MediaFileUpload(str(source), mimetype=mime_type or "application/octet-stream", resumable=True)
            created = self.service.files().create(body=metadata, media_body=media, fields="id").execute()
            return created["id"]

        try:
            file_id = await asyncio.to_thread(_upload)
        except (HttpError, OSError) as exc:
            logger.error("Google Drive upload of %s failed: %s", filename, exc)
            raise BackendUnavailable(f"Failed to upload file to Google Drive: {exc}") from exc
        logger.info("Uploaded %s to Google Drive as %s", filename, file_id)
        return StorageLocation(kind=self.kind, external_id=file_id)

    async def delete(self, location: StorageLocation) -> None:
        file_id = location.reference
        try:
            await asyncio.to_thread(lambda: self.service.files().delete(fileId=file_id).execute())
        except HttpError as exc:
            if _status_of(exc) == 404:
                logger.info("Google Drive file %s already absent", file_id)
                return
            logger.error("Google Drive delete of %s failed: %s", file_id, exc)
            raise BackendUnavailable(f"Failed to delete file from Google Drive: {exc}") from exc
        except OSError as exc:
            raise BackendUnavailable(f"Failed to delete file from Google Drive: {exc}") from exc
        logger.info("Deleted Google Drive file %s", file_id)

    async def get(self, location: StorageLocation) -> bytes:
        def _download() -> bytes:
            request = self.service.files().get_media(fileId=location.reference)
            buffer = io.BytesIO()
            downloader = MediaIoBaseDownload(buffer, request)
            done = False
            while not done:
                _, done = downloader.next_chunk()
            return buffer.getvalue()

        try:
            return await asyncio.to_thread(_download)
        except (HttpError, OSError) as exc:
            logger.error("Google Drive download of %s failed: %s", location.reference, exc)
            raise BackendUnavailable(f"Failed to get file from Google Drive: {exc}") from exc
