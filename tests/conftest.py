# tests/conftest.py
import asyncio
import os
from typing import Awaitable, Callable, Optional

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select

# ---- 測試期環境變數（先於 app 載入）----
os.environ.setdefault("ENV", "test")

from app.main import app  # noqa: E402
from app.core.config import settings  # noqa: E402
from app.core.security import hash_password  # noqa: E402
from app.db.session import AsyncSessionLocal, engine  # noqa: E402
from app.models.base import Base  # noqa: E402
from app.models.users import LOCAL_PROVIDER, User  # noqa: E402
from app.services.audit_log import AuditLog  # noqa: E402
from app.services.registry import SecurityServices, build_security_services, get_security_services  # noqa: E402
from app.services.ttl_store import InMemoryTTLStore  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    """測試前自動 create_all，測試後 drop_all（用 asyncio.run 避免事件圈衝突）。"""
    async def init_models():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)

    async def drop_models():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()

    asyncio.run(init_models())
    yield
    asyncio.run(drop_models())


@pytest.fixture(autouse=True)
def reset_security_store():
    """每個測試都從乾淨的 in-memory store 開始（計數器 / 封鎖 / refresh 不互相影響）"""
    store = get_security_services().store
    if isinstance(store, InMemoryTTLStore):
        store.clear()
    yield


@pytest.fixture(scope="session")
def anyio_backend():
    """讓 pytest 使用 asyncio event loop。"""
    return "asyncio"


@pytest.fixture
async def client(anyio_backend):
    """使用 ASGITransport 直接掛載 app，不需啟動伺服器。"""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
def services() -> SecurityServices:
    """app 實際使用的那一組服務"""
    return get_security_services()


@pytest.fixture
def fresh_services() -> SecurityServices:
    """獨立的一組服務（自己的 in-memory store），給單元測試用"""
    return build_security_services(InMemoryTTLStore(), settings)


@pytest.fixture
def audit(fresh_services: SecurityServices) -> AuditLog:
    return fresh_services.audit


UserFactory = Callable[..., Awaitable[User]]


@pytest.fixture
def ensure_user() -> UserFactory:
    """確保測試帳號存在；沒有就建立"""
    async def _ensure_user(
        email: str,
        password: Optional[str] = "MyStrongPass",
        name: str = "Kevin5",
        role: str = "TENANT",
        provider: str = LOCAL_PROVIDER,
    ) -> User:
        async with AsyncSessionLocal() as session:
            res = await session.execute(select(User).where(User.email == email))
            user = res.scalar_one_or_none()
            if user is None:
                user = User(
                    email=email,
                    name=name,
                    password_hash=hash_password(password) if password else None,
                    role=role,
                    oauth_provider=provider,
                )
                session.add(user)
                await session.commit()
                await session.refresh(user)
            return user

    return _ensure_user
