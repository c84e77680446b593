# tests/test_audit_log.py
import logging

import pytest

from app.core.config import settings
from app.schemas.audit import AuditCategory, Severity
from app.services.audit_log import (
    RECENT_EVENTS_KEY,
    SECURITY_EVENT_PREFIX,
    USER_ACTION_PREFIX,
    AuditLog,
    is_sensitive_endpoint,
)
from app.services.ttl_store import InMemoryTTLStore, StoreUnavailableError

pytestmark = pytest.mark.anyio

DAY = 24 * 60 * 60


async def test_security_event_is_listed_globally_and_per_user(audit: AuditLog):
    record = await audit.log_security_event(7, "PASSWORD_CHANGED", "Password changed", ip_address="10.0.0.1")

    assert record.category == AuditCategory.SECURITY
    assert record.severity == Severity.HIGH
    assert [e.id for e in await audit.recent_events()] == [record.id]
    assert [e.id for e in await audit.user_security_events(7)] == [record.id]
    assert await audit.store.ttl(SECURITY_EVENT_PREFIX + record.id) == pytest.approx(30 * DAY, abs=5)


async def test_user_action_ttl_and_list(audit: AuditLog):
    record = await audit.log_user_action(3, "PROFILE_UPDATE", "Changed display name", "name")

    assert [e.id for e in await audit.user_actions(3)] == [record.id]
    assert await audit.store.ttl(USER_ACTION_PREFIX + record.id) == pytest.approx(7 * DAY, abs=5)
    assert await audit.store.ttl(RECENT_EVENTS_KEY) == pytest.approx(7 * DAY, abs=5)


async def test_api_access_only_for_sensitive_paths_or_errors(audit: AuditLog):
    assert await audit.log_api_access(None, "/api/v1/ping/", "GET", "10.0.0.1", 200, 3.2) is None
    assert await audit.recent_event_count() == 0

    ok = await audit.log_api_access("1", "/api/v1/auth/me", "GET", "10.0.0.1", 200, 4.0)
    err = await audit.log_api_access(None, "/api/v1/ping/", "GET", "10.0.0.1", 500, 12.346)

    assert ok.severity == Severity.DEBUG
    assert err.severity == Severity.WARN
    assert err.response_time_ms == 12.35
    assert await audit.recent_event_count() == 2


def test_sensitive_endpoint_markers():
    assert is_sensitive_endpoint("/api/v1/admin/security/events")
    assert is_sensitive_endpoint("/api/v1/users/me")
    assert is_sensitive_endpoint("/api/v1/account/password")
    assert not is_sensitive_endpoint("/api/v1/health/")


async def test_recent_list_is_capped():
    capped = settings.model_copy(update={"RECENT_EVENTS_CAP": 5, "USER_ACTIONS_CAP": 2})
    audit = AuditLog(InMemoryTTLStore(), capped)
    for i in range(8):
        await audit.log_user_action(1, "CLICK", f"click {i}")

    assert await audit.recent_event_count() == 5
    actions = await audit.user_actions(1, limit=50)
    assert [a.description for a in actions] == ["click 7", "click 6"]


async def test_expired_records_are_skipped_on_read(audit: AuditLog):
    record = await audit.log_security_event(None, "X", "gone soon")
    await audit.store.delete(SECURITY_EVENT_PREFIX + record.id)
    assert await audit.recent_events() == []


class _DownStore(InMemoryTTLStore):
    async def set(self, key, value, ttl=None):
        raise StoreUnavailableError("down")


async def test_audit_writes_fail_open():
    audit = AuditLog(_DownStore(), settings)
    record = await audit.log_security_event(1, "X", "store is down")
    assert record.event_type == "X"
    assert await audit.recent_event_count() == 0


async def test_log_level_follows_severity(audit: AuditLog, caplog):
    with caplog.at_level(logging.DEBUG, logger="app.services.audit_log"):
        await audit.log_security_event(1, "USER_REGISTERED", "New user", severity=Severity.INFO)
        await audit.log_security_event(None, "XSS", "Threat", severity=Severity.HIGH)

    levels = {
        r.getMessage().split("Event: ")[1].split(" ")[0]: r.levelno
        for r in caplog.records
        if r.getMessage().startswith("Security Event")
    }
    assert levels == {"USER_REGISTERED": logging.INFO, "XSS": logging.WARNING}
