from __future__ import annotations

import abc
import asyncio
import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator
from weakref import WeakValueDictionary

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from unishare.core.errors import LockTimeout

logger = logging.getLogger(__name__)

LOCK_PREFIX = "file_upload_lock:"


class NamedLockService(abc.ABC):
    """Advisory locks addressed by name.

    ``hold`` waits at most ``timeout`` seconds and raises ``LockTimeout``
    otherwise; the lock is released when the block exits, whether or not it
    raised.
    """

    @abc.abstractmethod
    def hold(self, name: str, timeout: float) -> AbstractAsyncContextManager[None]:
        raise NotImplementedError


class InProcessLockService(NamedLockService):
    """asyncio locks shared by every request of one process."""

    def __init__(self) -> None:
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    def locked(self, name: str) -> bool:
        lock = self._locks.get(name)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, name: str, timeout: float) -> AsyncIterator[None]:
        lock = self._lock_for(name)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("Timed out after %ss waiting for lock %s", timeout, name)
            raise LockTimeout(name, timeout) from exc
        try:
            yield
        finally:
            lock.release()


class PostgresAdvisoryLockService(NamedLockService):
    """Session-level ``pg_advisory_lock`` keyed by ``hashtext(name)``.

    Works across processes and hosts sharing the database. The lock lives on
    a dedicated pooled connection for the duration of the block.
    """

    def __init__(self, engine: AsyncEngine, poll_interval: float = 0.1) -> None:
        self._engine = engine
        self._poll_interval = poll_interval

    @asynccontextmanager
    async def hold(self, name: str, timeout: float) -> AsyncIterator[None]:
        key = LOCK_PREFIX + name
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        async with self._engine.connect() as conn:
            while True:
                result = await conn.execute(text("SELECT pg_try_advisory_lock(hashtext(:key))"), {"key": key})
                if result.scalar():
                    break
                await conn.rollback()
                if loop.time() >= deadline:
                    logger.warning("Timed out after %ss waiting for advisory lock %s", timeout, key)
                    raise LockTimeout(name, timeout)
                await asyncio.sleep(self._poll_interval)
            try:
                yield
            finally:
                await conn.execute(text("SELECT pg_advisory_unlock(hashtext(:key))"), {"key": key})
                await conn.commit()


def build_lock_service(backend: str, engine: AsyncEngine | None = None) -> NamedLockService:
    if backend == "postgres":
        if engine is None:
            raise ValueError("postgres lock backend needs a database engine")
        return PostgresAdvisoryLockService(engine)
    return InProcessLockService()
