from __future__ import annotations

import asyncio
import logging

from celery import Celery

from unishare.core.config import settings
from unishare.db.session import async_session_factory, engine
from unishare.services.uploads import build_upload_coordinator

logger = logging.getLogger(__name__)

celery_app = Celery(
    "unishare_uploads",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
)
celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    beat_schedule={
        "purge-stale-uploads": {
            "task": "purge_stale_uploads",
            "schedule": settings.session_cleanup_minutes * 60,
        },
    },
)


async def _purge_stale_uploads() -> int:
    coordinator = build_upload_coordinator(settings, engine)
    async with async_session_factory() as db:
        purged = await coordinator.purge_stale_sessions(db)
    await engine.dispose()
    if purged:
        logger.info("Purged %s stale upload sessions", purged)
    return purged


@celery_app.task(name="purge_stale_uploads")
def purge_stale_uploads_task() -> int:
    return asyncio.run(_purge_stale_uploads())
