from __future__ import annotations

from fastapi import APIRouter

from unishare.api.routes import uploads

api_router = APIRouter()
api_router.include_router(uploads.router)
