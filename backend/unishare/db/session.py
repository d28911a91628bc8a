from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from unishare.core.config import settings


def build_engine(database_url: str) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        # one shared connection, otherwise every checkout sees a fresh :memory: database
        return create_async_engine(database_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_async_engine(database_url, pool_pre_ping=True)


engine = build_engine(settings.database_url)

async_session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_db_session() -> AsyncIterator[AsyncSession]:
    async with async_session_factory() as session:
        yield session
