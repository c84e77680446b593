# tests/test_ops_and_protected.py
import pytest
from httpx import AsyncClient

from app.core.permissions import Permission, Role, has_permission, permissions_for
from app.services.scheduler import run_security_sweep

pytestmark = pytest.mark.anyio


async def _login_pair(client: AsyncClient, email: str, password: str):
    """模擬登入流程"""
    r = await client.post(
        "/api/v1/auth/login",
        data={"username": email, "password": password},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert r.status_code == 200, f"Login failed: {r.text}"
    data = r.json()
    return data["access_token"], data["refresh_token"]


# --- Monitoring & Health ---
async def test_metrics_and_health(client: AsyncClient):
    """測試 /metrics, /healthz, /readyz 都能正確回應"""
    r = await client.get("/metrics")
    assert r.status_code == 200
    assert "# HELP" in r.text  # Prometheus metrics 格式驗證

    r = await client.get("/healthz")
    assert r.status_code == 200
    assert r.json().get("ok") is True

    r = await client.get("/readyz")
    assert r.status_code == 200
    assert r.json().get("ready") is True


# --- Permission matrix ---
def test_role_permissions():
    assert has_permission(Role.TENANT, Permission.APPLICATION_CREATE)
    assert not has_permission(Role.TENANT, Permission.PROPERTY_CREATE)
    assert has_permission("LANDLORD", Permission.LANDLORD_INCOME)
    assert not has_permission("LANDLORD", Permission.PROPERTY_APPROVE)
    assert has_permission(Role.AGENT, Permission.PROPERTY_APPROVE)
    assert permissions_for(Role.LANDLORD) < permissions_for(Role.AGENT)
    assert permissions_for(Role.ADMIN) == frozenset(Permission)
    assert permissions_for("GHOST") == frozenset()


# --- Protected: admin security ---
async def test_admin_routes_require_auth_and_permission(client: AsyncClient, ensure_user):
    r = await client.get("/api/v1/admin/security/events")
    assert r.status_code == 401

    await ensure_user("tenant.ops@example.com", "MyStrongPass")
    access, _ = await _login_pair(client, "tenant.ops@example.com", "MyStrongPass")
    r = await client.get("/api/v1/admin/security/events", headers={"Authorization": f"Bearer {access}"})
    assert r.status_code == 403


async def test_admin_can_inspect_and_block_ip(client: AsyncClient, ensure_user):
    await ensure_user("admin.ops@example.com", "MyStrongPass", role="ADMIN")
    access, _ = await _login_pair(client, "admin.ops@example.com", "MyStrongPass")
    auth = {"Authorization": f"Bearer {access}"}

    # 先製造一筆 XSS 紀錄
    ip = "192.0.2.99"
    await client.get("/api/v1/ping/", params={"q": "eval(1)"}, headers={"X-Forwarded-For": ip})

    r = await client.get(f"/api/v1/admin/security/ips/{ip}", headers=auth)
    assert r.status_code == 200
    status = r.json()
    assert status["blocked"] is False
    assert status["threats"]["xss"] == 1
    assert status["threats"]["total"] == 1

    r = await client.post(
        f"/api/v1/admin/security/ips/{ip}/block",
        json={"reason": "Scraping", "minutes": 10},
        headers=auth,
    )
    assert r.status_code == 200
    assert r.json()["blocked"] is True
    assert r.json()["reason"] == "Scraping"

    r = await client.get("/api/v1/ping/", headers={"X-Forwarded-For": ip})
    assert r.status_code == 403

    r = await client.get("/api/v1/admin/security/events", params={"limit": 100}, headers=auth)
    assert r.status_code == 200
    event_types = [e["event_type"] for e in r.json()["items"]]
    assert "IP_BLOCKED" in event_types
    assert "XSS" in event_types


# --- Scheduled sweep ---
async def test_security_sweep_counts_recent_events(services):
    await services.audit.log_security_event(None, "X", "one")
    await services.audit.log_security_event(None, "Y", "two")
    assert await run_security_sweep() == 2
