# tests/test_basic_endpoints.py
import pytest
from httpx import AsyncClient

pytestmark = pytest.mark.anyio

async def test_ping_health(client: AsyncClient):
    r = await client.get("/api/v1/ping/")
    assert r.status_code == 200
    assert r.json().get("message") == "pong"

    r = await client.get("/api/v1/health/")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "store": "memory", "store_ok": True}

async def test_security_headers(client: AsyncClient):
    r = await client.get("/api/v1/ping/")
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert r.headers["X-Frame-Options"] == "DENY"

async def test_me_unauthorized(client: AsyncClient):
    r = await client.get("/api/v1/auth/me")
    assert r.status_code == 401
