from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from unishare.core.errors import BackendUnavailable, InsufficientSpace, LockTimeout
from unishare.models.enums import StorageBackendKind
from unishare.services.backends.registry import BackendRegistry
from unishare.services.locks import NamedLockService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    session_token: str
    backend: StorageBackendKind
    size: int
    expires_at: float


class SpaceReservationLedger:
    """In-flight capacity claims, indexed by backend.

    Entries expire after ``ttl_seconds`` so a crashed coordinator can only
    overcommit a backend for that long. Expired entries are dropped lazily
    whenever a backend's total is computed. The ledger is per process and is
    advisory: it does not survive a restart.
    """

    def __init__(
        self,
        backends: BackendRegistry,
        locks: NamedLockService,
        *,
        ttl_seconds: float = 3600,
        lock_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backends = backends
        self._locks = locks
        self._ttl = ttl_seconds
        self._lock_timeout = lock_timeout
        self._clock = clock
        self._by_backend: dict[StorageBackendKind, dict[str, Reservation]] = {}
        self._by_token: dict[str, Reservation] = {}

    def _evict_expired(self, backend: StorageBackendKind) -> None:
        now = self._clock()
        entries = self._by_backend.get(backend, {})
        for token in [token for token, entry in entries.items() if entry.expires_at <= now]:
            expired = entries.pop(token)
            if self._by_token.get(token) is expired:
                del self._by_token[token]
            logger.info("Reservation of %s bytes for upload %s on %s expired", expired.size, token, backend.value)

    def total_active(self, backend: StorageBackendKind) -> int:
        self._evict_expired(backend)
        return sum(entry.size for entry in self._by_backend.get(backend, {}).values())

    def get(self, session_token: str) -> Reservation | None:
        entry = self._by_token.get(session_token)
        if entry is not None and entry.expires_at <= self._clock():
            self._evict_expired(entry.backend)
            return None
        return entry

    async def reserve(self, backend: StorageBackendKind, session_token: str, size: int) -> Reservation:
        """Claim ``size`` bytes on ``backend`` for one upload session.

        Raises ``InsufficientSpace`` when the free space minus what other
        sessions hold is below ``size``, and ``BackendUnavailable`` when the
        space-check lock or the backend's capacity query fails.
        """
        storage = self._backends.get(backend)
        try:
            async with self._locks.hold(f"{backend.value}-space-check", self._lock_timeout):
                available = await storage.available_space()
                headroom = available - self.total_active(backend)
                previous = self.get(session_token)
                if previous is not None and previous.backend == backend:
                    headroom += previous.size
                if headroom < size:
                    logger.warning(
                        "Denied reservation of %s bytes for upload %s on %s (%s bytes free)",
                        size,
                        session_token,
                        backend.value,
                        headroom,
                    )
                    raise InsufficientSpace(backend.value, size, max(headroom, 0))
                self.release(session_token)
                entry = Reservation(session_token, backend, size, self._clock() + self._ttl)
                self._by_backend.setdefault(backend, {})[session_token] = entry
                self._by_token[session_token] = entry
        except LockTimeout as exc:
            raise BackendUnavailable("Could not check free space, try again later") from exc
        logger.info("Reserved %s bytes for upload %s on %s", size, session_token, backend.value)
        return entry

    def release(self, session_token: str) -> None:
        entry = self._by_token.pop(session_token, None)
        if entry is None:
            return
        self._by_backend.get(entry.backend, {}).pop(session_token, None)
        logger.info("Released %s bytes for upload %s on %s", entry.size, session_token, entry.backend.value)

    def purge_expired(self) -> None:
        for backend in list(self._by_backend):
            self._evict_expired(backend)
