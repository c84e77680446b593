# app/db/session.py
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool
from app.core.config import settings

# ---- Engine ----
_engine_kwargs = {"echo": settings.DB_ECHO, "pool_pre_ping": True}
if settings.DATABASE_URL.startswith("sqlite"):
    # SQLite（測試）每次都開新連線，不跨 event loop 共用
    _engine_kwargs["poolclass"] = NullPool

engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs)

# ---- Session factory ----
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# ---- Dependency ----
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI 依賴：每個 request 一個 AsyncSession，結束時一定關閉"""
    async with AsyncSessionLocal() as session:
        yield session
