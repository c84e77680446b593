# app/services/audit_log.py
"""
稽核紀錄：每筆紀錄以 JSON 存進 TTL store（依類別給不同 TTL），
並把 key 推進有上限的 recency list，方便快速查「最近發生什麼事」。

寫入失敗一律 fail-open：只記 log，不影響主要請求。
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple
from uuid import uuid4

from pydantic import ValidationError

from app.core.config import Settings
from app.schemas.audit import AuditCategory, AuditRecord, Severity
from app.services.ttl_store import StoreUnavailableError, TTLStore

logger = logging.getLogger(__name__)

SECURITY_EVENT_PREFIX = "security_event:"
USER_ACTION_PREFIX = "user_action:"
AUDIT_LOG_PREFIX = "audit_log:"
RECENT_EVENTS_KEY = "security:events:recent"

_DAY = 24 * 60 * 60
_RECENT_LIST_TTL = 7 * _DAY

_LOG_LEVELS = {
    Severity.DEBUG: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.WARN: logging.WARNING,
    Severity.HIGH: logging.WARNING,
}

# 只有這些路徑（或錯誤回應）才寫 API 存取紀錄，控制寫入量
SENSITIVE_PATH_MARKERS: Tuple[str, ...] = (
    "/auth/",
    "/sessions/",
    "/admin/",
    "/profile/",
    "/password",
    "/properties/create",
    "/properties/update",
    "/users/",
)


def is_sensitive_endpoint(endpoint: str) -> bool:
    return any(marker in endpoint for marker in SENSITIVE_PATH_MARKERS)


def _event_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid4().hex[:8]}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AuditLog:
    def __init__(self, store: TTLStore, settings: Settings) -> None:
        self.store = store
        self.security_ttl = settings.SECURITY_EVENT_TTL_DAYS * _DAY
        self.action_ttl = settings.USER_ACTION_TTL_DAYS * _DAY
        self.recent_cap = settings.RECENT_EVENTS_CAP
        self.user_cap = settings.USER_ACTIONS_CAP

    async def _persist(
        self,
        key: str,
        record: AuditRecord,
        ttl: float,
        user_lists: Sequence[Tuple[str, float]] = (),
    ) -> None:
        try:
            await self.store.set(key, record.model_dump_json(), ttl)
            await self.store.push_capped(RECENT_EVENTS_KEY, key, self.recent_cap, _RECENT_LIST_TTL)
            for list_key, list_ttl in user_lists:
                await self.store.push_capped(list_key, key, self.user_cap, list_ttl)
        except StoreUnavailableError as e:
            logger.warning("Audit write dropped [%s] %s: %s", record.id, record.event_type, e)

    async def log_security_event(
        self,
        user_id: Optional[object],
        event_type: str,
        description: str,
        details: Optional[str] = None,
        *,
        severity: Severity = Severity.HIGH,
        ip_address: Optional[str] = None,
    ) -> AuditRecord:
        record = AuditRecord(
            id=_event_id(),
            timestamp=_now(),
            event_type=event_type,
            category=AuditCategory.SECURITY,
            severity=severity,
            user_id=None if user_id is None else str(user_id),
            description=description,
            details=details,
            ip_address=ip_address,
        )
        logger.log(
            _LOG_LEVELS.get(record.severity, logging.WARNING),
            "Security Event [%s] User: %s Event: %s Description: %s Details: %s",
            record.id, record.user_id, event_type, description, details,
        )
        user_lists = []
        if record.user_id is not None:
            user_lists.append((f"user_security_events:{record.user_id}", self.security_ttl))
        await self._persist(SECURITY_EVENT_PREFIX + record.id, record, self.security_ttl, user_lists)
        return record

    async def log_user_action(
        self,
        user_id: object,
        action_type: str,
        description: str,
        details: Optional[str] = None,
    ) -> AuditRecord:
        record = AuditRecord(
            id=_event_id(),
            timestamp=_now(),
            event_type=action_type,
            category=AuditCategory.USER_ACTION,
            severity=Severity.INFO,
            user_id=str(user_id),
            description=description,
            details=details,
        )
        logger.info("User Action [%s] User: %s Action: %s Description: %s",
                    record.id, record.user_id, action_type, description)
        await self._persist(
            USER_ACTION_PREFIX + record.id,
            record,
            self.action_ttl,
            [(f"user_actions:{record.user_id}", self.action_ttl)],
        )
        return record

    async def log_login_attempt(
        self,
        email: str,
        ip_address: str,
        successful: bool,
        user_agent: Optional[str] = None,
    ) -> AuditRecord:
        record = AuditRecord(
            id=_event_id(),
            timestamp=_now(),
            event_type="LOGIN_ATTEMPT",
            category=AuditCategory.AUTHENTICATION,
            severity=Severity.INFO if successful else Severity.WARN,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            successful=successful,
        )
        if successful:
            logger.info("Successful login attempt [%s] Email: %s IP: %s", record.id, email, ip_address)
        else:
            logger.warning("Failed login attempt [%s] Email: %s IP: %s", record.id, email, ip_address)
        await self._persist(f"{AUDIT_LOG_PREFIX}login:{record.id}", record, self.security_ttl)
        return record

    async def log_oauth2_event(
        self,
        email: Optional[str],
        provider: str,
        event_type: str,
        ip_address: Optional[str],
        successful: bool,
    ) -> AuditRecord:
        record = AuditRecord(
            id=_event_id(),
            timestamp=_now(),
            event_type=event_type,
            category=AuditCategory.OAUTH2,
            severity=Severity.INFO if successful else Severity.WARN,
            email=email,
            provider=provider,
            ip_address=ip_address,
            successful=successful,
        )
        logger.info("OAuth2 Event [%s] Email: %s Provider: %s Event: %s Success: %s",
                    record.id, email, provider, event_type, successful)
        await self._persist(f"{AUDIT_LOG_PREFIX}oauth2:{record.id}", record, self.security_ttl)
        return record

    async def log_api_access(
        self,
        user_id: Optional[object],
        endpoint: str,
        method: str,
        ip_address: str,
        response_status: int,
        response_time_ms: float,
    ) -> Optional[AuditRecord]:
        if not (is_sensitive_endpoint(endpoint) or response_status >= 400):
            return None

        record = AuditRecord(
            id=_event_id(),
            timestamp=_now(),
            event_type="API_ACCESS",
            category=AuditCategory.ACCESS,
            severity=Severity.WARN if response_status >= 400 else Severity.DEBUG,
            user_id=None if user_id is None else str(user_id),
            endpoint=endpoint,
            method=method,
            ip_address=ip_address,
            response_status=response_status,
            response_time_ms=round(response_time_ms, 2),
        )
        if response_status >= 400:
            logger.warning("API Error [%s] User: %s %s %s Status: %s Time: %.1fms",
                           record.id, record.user_id, method, endpoint, response_status, response_time_ms)
        else:
            logger.debug("API Access [%s] User: %s %s %s Status: %s Time: %.1fms",
                         record.id, record.user_id, method, endpoint, response_status, response_time_ms)
        await self._persist(f"{AUDIT_LOG_PREFIX}api:{record.id}", record, self.action_ttl)
        return record

    # === 查詢 ===
    async def _load(self, keys: List[str]) -> List[AuditRecord]:
        records: List[AuditRecord] = []
        for key in keys:
            raw = await self.store.get(key)
            if raw is None:
                # 紀錄本身已過期，但 list 還留著 key
                continue
            try:
                records.append(AuditRecord.model_validate_json(raw))
            except ValidationError:
                logger.warning("Skipping unreadable audit record %s", key)
        return records

    async def recent_events(self, limit: int = 50) -> List[AuditRecord]:
        return await self._load(await self.store.lrange(RECENT_EVENTS_KEY, 0, limit - 1))

    async def user_actions(self, user_id: object, limit: int = 50) -> List[AuditRecord]:
        return await self._load(await self.store.lrange(f"user_actions:{user_id}", 0, limit - 1))

    async def user_security_events(self, user_id: object, limit: int = 50) -> List[AuditRecord]:
        return await self._load(await self.store.lrange(f"user_security_events:{user_id}", 0, limit - 1))

    async def recent_event_count(self) -> int:
        return await self.store.llen(RECENT_EVENTS_KEY)
