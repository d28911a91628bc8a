from __future__ import annotations

from fastapi import status


class UploadError(Exception):
    """Base class for failures of the upload engine.

    ``status_code`` is what the HTTP layer answers with; ``retryable`` tells
    the client whether repeating the same request can succeed.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SessionNotFound(UploadError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, session_token: str) -> None:
        super().__init__("Upload session not found")
        self.session_token = session_token


class ChunkMissing(UploadError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, index: int) -> None:
        super().__init__(f"Chunk {index} is missing")
        self.index = index


class InvalidChunk(UploadError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidUser(UploadError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidSessionState(UploadError):
    status_code = status.HTTP_409_CONFLICT


class InsufficientSpace(UploadError):
    status_code = status.HTTP_507_INSUFFICIENT_STORAGE

    def __init__(self, backend: str, requested: int, available: int) -> None:
        super().__init__(f"Not enough free space on {backend}: requested {requested} bytes, {available} available")
        self.backend = backend
        self.requested = requested
        self.available = available


class BackendUnavailable(UploadError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class BackendNotConfigured(UploadError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, backend: str) -> None:
        super().__init__(f"Storage backend {backend!r} is not configured")
        self.backend = backend


class LockTimeout(Exception):
    def __init__(self, name: str, timeout: float) -> None:
        super().__init__(f"Could not acquire lock {name!r} within {timeout:g}s")
        self.name = name
        self.timeout = timeout
