from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from unishare.api.deps import get_upload_coordinator
from unishare.api.router import api_router
from unishare.core.config import settings
from unishare.core.errors import UploadError
from unishare.db.base import Base
from unishare.db.session import engine

logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger(__name__)


async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "retryable": exc.retryable},
    )


def create_application() -> FastAPI:
    app = FastAPI(title=settings.project_name)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(UploadError, upload_error_handler)

    @app.on_event("startup")
    async def startup_event() -> None:  # noqa: D401
        coordinator = get_upload_coordinator()
        for backend in coordinator.backends:
            ensure_dirs = getattr(backend, "ensure_base_dirs", None)
            if ensure_dirs is not None:
                ensure_dirs()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Storage directories ensured under %s", settings.storage_root)

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_application()
