# app/services/ip_ledger.py
"""
IP 層級的防護，兩套機制刻意分開、互不共用狀態：

1) IPThreatLedger：依 ThreatScanner 偵測到的攻擊樣式計數（threat:<ip>:<category>），
   超過門檻即寫入 blocked_ip:<ip>。
2) LoginFailureGuard：只計算登入失敗次數（failed_login:<ip>），登入成功即清空。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from app.core.config import Settings
from app.services.audit_log import AuditLog
from app.services.ttl_store import StoreUnavailableError, TTLStore

logger = logging.getLogger(__name__)


class ThreatCategory(str, Enum):
    SQLI = "SQLI"
    XSS = "XSS"
    PATH_TRAVERSAL = "PATH_TRAVERSAL"


def threat_key(ip: str, category: ThreatCategory) -> str:
    return f"threat:{ip}:{category.value}"

def blocked_key(ip: str) -> str:
    return f"blocked_ip:{ip}"

def failed_login_key(ip: str) -> str:
    return f"failed_login:{ip}"


@dataclass(frozen=True)
class ThreatCounts:
    sqli: int = 0
    xss: int = 0
    path_traversal: int = 0

    @property
    def total(self) -> int:
        return self.sqli + self.xss + self.path_traversal


@dataclass(frozen=True)
class BlockDecision:
    reason: str
    duration: timedelta


class IPThreatLedger:
    def __init__(self, store: TTLStore, audit: AuditLog, settings: Settings) -> None:
        self.store = store
        self.audit = audit
        self.window = settings.THREAT_COUNTER_WINDOW_SEC
        self.category_threshold = settings.THREAT_CATEGORY_THRESHOLD
        self.total_threshold = settings.THREAT_TOTAL_THRESHOLD
        self.category_block = timedelta(minutes=settings.THREAT_CATEGORY_BLOCK_MINUTES)
        self.total_block = timedelta(minutes=settings.THREAT_TOTAL_BLOCK_MINUTES)

    async def record_threat(self, ip: str, category: ThreatCategory) -> int:
        """計數 +1 並把視窗重設為 1 小時；持續的低頻攻擊會讓視窗一直延長"""
        key = threat_key(ip, category)
        try:
            count = await self.store.incr(key)
            await self.store.expire(key, self.window)
            return count
        except StoreUnavailableError:
            logger.warning("Threat counter not updated for %s (%s)", ip, category.value)
            return 0

    async def _count(self, ip: str, category: ThreatCategory) -> int:
        raw = await self.store.get(threat_key(ip, category))
        return int(raw) if raw else 0

    async def threat_counts(self, ip: str) -> ThreatCounts:
        return ThreatCounts(
            sqli=await self._count(ip, ThreatCategory.SQLI),
            xss=await self._count(ip, ThreatCategory.XSS),
            path_traversal=await self._count(ip, ThreatCategory.PATH_TRAVERSAL),
        )

    def evaluate(self, counts: ThreatCounts) -> Optional[BlockDecision]:
        # 依序判斷，第一個符合的規則生效
        if counts.total >= self.total_threshold:
            return BlockDecision("Multiple security threats detected", self.total_block)
        if counts.sqli >= self.category_threshold:
            return BlockDecision("Multiple SQL injection attempts", self.category_block)
        if counts.xss >= self.category_threshold:
            return BlockDecision("Multiple XSS attempts", self.category_block)
        if counts.path_traversal >= self.category_threshold:
            return BlockDecision("Multiple path traversal attempts", self.category_block)
        return None

    async def check_and_block(self, ip: str) -> Optional[BlockDecision]:
        try:
            decision = self.evaluate(await self.threat_counts(ip))
            if decision is not None:
                await self.block(ip, decision.reason, decision.duration)
            return decision
        except StoreUnavailableError:
            logger.warning("Cannot evaluate threat counters for %s", ip)
            return None

    async def block(self, ip: str, reason: str, duration: timedelta) -> None:
        await self.store.set(blocked_key(ip), reason, duration.total_seconds())
        minutes = int(duration.total_seconds() // 60)
        await self.audit.log_security_event(
            None,
            "IP_BLOCKED",
            f"IP {ip} blocked for {minutes} minutes. Reason: {reason}",
            f"IP: {ip}, Duration: {minutes} minutes",
            ip_address=ip,
        )
        logger.warning("IP %s blocked for %s minutes. Reason: %s", ip, minutes, reason)

    async def is_blocked(self, ip: str) -> bool:
        return await self.store.exists(blocked_key(ip))

    async def block_reason(self, ip: str) -> Optional[str]:
        return await self.store.get(blocked_key(ip))

    async def block_remaining(self, ip: str) -> Optional[float]:
        return await self.store.ttl(blocked_key(ip))


class LoginFailureGuard:
    def __init__(self, store: TTLStore, audit: AuditLog, settings: Settings) -> None:
        self.store = store
        self.audit = audit
        self.threshold = settings.FAILED_LOGIN_THRESHOLD
        self.window = settings.FAILED_LOGIN_WINDOW_SEC

    async def record_login_attempt(
        self,
        email: str,
        ip: str,
        success: bool,
        user_agent: Optional[str] = None,
    ) -> int:
        """寫入 LoginAttempt 紀錄；失敗 +1，成功清空。回傳目前失敗次數"""
        await self.audit.log_login_attempt(email, ip, success, user_agent)
        key = failed_login_key(ip)
        try:
            if success:
                await self.store.delete(key)
                return 0
            count = await self.store.incr(key)
            await self.store.expire(key, self.window)
            return count
        except StoreUnavailableError:
            logger.warning("Failed-login counter not updated for %s", ip)
            return 0

    async def failed_login_count(self, ip: str) -> int:
        raw = await self.store.get(failed_login_key(ip))
        return int(raw) if raw else 0

    async def is_ip_blocked_by_login_failures(self, ip: str) -> bool:
        return await self.failed_login_count(ip) >= self.threshold

    async def retry_after(self, ip: str) -> int:
        remaining = await self.store.ttl(failed_login_key(ip))
        return max(1, int(remaining or self.window))
