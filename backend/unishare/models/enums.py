from __future__ import annotations

import enum


class UploadStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StorageBackendKind(str, enum.Enum):
    LOCAL = "local"
    MINIO = "minio"
    GOOGLE_DRIVE = "google_drive"


class OwnerKind(str, enum.Enum):
    DOCUMENT = "document"
    POST_ATTACHMENT = "post_attachment"
    GROUP_COVER = "group_cover"
    MESSAGE_ATTACHMENT = "message_attachment"
    PROFILE_PICTURE = "profile_picture"
