# app/services/threat_scanner.py
"""
Regex 攻擊樣式掃描（SQL injection / XSS / path traversal）。

偵測只會累加 IP 計數並寫入稽核紀錄，不會擋下「這一次」請求；
是否封鎖由 IPThreatLedger 依門檻決定，影響的是之後的請求。
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Pattern, Tuple
from urllib.parse import parse_qsl

from starlette.requests import Request

from app.core.client_ip import extract_client_ip
from app.services.audit_log import AuditLog
from app.services.ip_ledger import IPThreatLedger, ThreatCategory

logger = logging.getLogger(__name__)

_I = re.IGNORECASE

SQL_INJECTION_PATTERNS: List[Pattern[str]] = [
    re.compile(r"('|(--)|(;)|(\|)|(\*)|(%))", _I),
    re.compile(r"(union|select|insert|update|delete|drop|create|alter|exec|execute)", _I),
    re.compile(r"(script|javascript|vbscript|onload|onerror|onclick)", _I),
    re.compile(r"(<script|</script|<iframe|</iframe)", _I),
]

XSS_PATTERNS: List[Pattern[str]] = [
    re.compile(r"<script[^>]*>.*?</script>", _I | re.DOTALL),
    re.compile(r"javascript:", _I),
    re.compile(r"on\w+\s*=", _I),
    re.compile(r"<iframe[^>]*>.*?</iframe>", _I | re.DOTALL),
    re.compile(r"eval\s*\(", _I),
]

PATH_TRAVERSAL_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\.\.[/\\]", _I),
    re.compile(r"[/\\]etc[/\\]passwd", _I),
    re.compile(r"[/\\]windows[/\\]system32", _I),
]

PATTERNS: Dict[ThreatCategory, List[Pattern[str]]] = {
    ThreatCategory.SQLI: SQL_INJECTION_PATTERNS,
    ThreatCategory.XSS: XSS_PATTERNS,
    ThreatCategory.PATH_TRAVERSAL: PATH_TRAVERSAL_PATTERNS,
}

# 稽核紀錄上的 event type
THREAT_EVENT_TYPES: Dict[ThreatCategory, str] = {
    ThreatCategory.SQLI: "SQL_INJECTION",
    ThreatCategory.XSS: "XSS",
    ThreatCategory.PATH_TRAVERSAL: "PATH_TRAVERSAL",
}

# 憑證本身不掃（base64url 的 JWT 常含 "--"）
CREDENTIAL_PARAMS = frozenset({"token"})

MAX_LOGGED_INPUT = 100


@dataclass(frozen=True)
class ThreatScanResult:
    sql_injection: bool = False
    xss: bool = False
    path_traversal: bool = False

    @property
    def detected(self) -> bool:
        return self.sql_injection or self.xss or self.path_traversal


def _truncate(value: str) -> str:
    return value[:MAX_LOGGED_INPUT] + "..." if len(value) > MAX_LOGGED_INPUT else value


class ThreatScanner:
    def __init__(self, ledger: IPThreatLedger, audit: AuditLog) -> None:
        self.ledger = ledger
        self.audit = audit

    async def _scan_category(
        self, category: ThreatCategory, value: Optional[str], source: str, client_ip: str
    ) -> bool:
        if value is None or not value.strip():
            return False
        for pattern in PATTERNS[category]:
            if pattern.search(value):
                await self._report(category, value, source, client_ip, pattern.pattern)
                return True
        return False

    async def _report(
        self, category: ThreatCategory, value: str, source: str, client_ip: str, pattern: str
    ) -> None:
        threat_type = THREAT_EVENT_TYPES[category]
        message = (
            f"Security threat detected - Type: {threat_type}, Source: {source}, "
            f"Pattern: {pattern}, Input: {_truncate(value)}"
        )
        logger.warning("Security threat detected from IP %s: %s in %s", client_ip, threat_type, source)
        await self.audit.log_security_event(None, threat_type, message, f"IP: {client_ip}", ip_address=client_ip)
        await self.ledger.record_threat(client_ip, category)

    async def scan_for_sql_injection(self, value: Optional[str], source: str, client_ip: str) -> bool:
        return await self._scan_category(ThreatCategory.SQLI, value, source, client_ip)

    async def scan_for_xss(self, value: Optional[str], source: str, client_ip: str) -> bool:
        return await self._scan_category(ThreatCategory.XSS, value, source, client_ip)

    async def scan_for_path_traversal(self, value: Optional[str], source: str, client_ip: str) -> bool:
        return await self._scan_category(ThreatCategory.PATH_TRAVERSAL, value, source, client_ip)

    async def scan(self, value: Optional[str], source: str, client_ip: str) -> ThreatScanResult:
        """三個類別都各自掃一次"""
        return ThreatScanResult(
            sql_injection=await self.scan_for_sql_injection(value, source, client_ip),
            xss=await self.scan_for_xss(value, source, client_ip),
            path_traversal=await self.scan_for_path_traversal(value, source, client_ip),
        )

    async def _scan_param(self, name: str, value: str, client_ip: str) -> bool:
        source = f"PARAM:{name}"
        # 同一個參數值命中一個類別就不再往下掃
        return (
            await self.scan_for_sql_injection(value, source, client_ip)
            or await self.scan_for_xss(value, source, client_ip)
            or await self.scan_for_path_traversal(value, source, client_ip)
        )

    async def scan_request(self, request: Request, client_ip: Optional[str] = None) -> bool:
        """掃 query / form 參數、所有 header（XSS）與 URI（path traversal）"""
        client_ip = client_ip or extract_client_ip(request)
        threat_detected = False

        for name, value in await _request_params(request):
            if name in CREDENTIAL_PARAMS:
                continue
            if await self._scan_param(name, value, client_ip):
                threat_detected = True

        for name, value in request.headers.items():
            if await self.scan_for_xss(value, f"HEADER:{name}", client_ip):
                threat_detected = True

        if await self.scan_for_path_traversal(request.url.path, "URI", client_ip):
            threat_detected = True

        return threat_detected


async def _request_params(request: Request) -> Iterable[Tuple[str, str]]:
    params = list(request.query_params.multi_items())
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/x-www-form-urlencoded"):
        body = await request.body()
        params.extend(parse_qsl(body.decode("utf-8", "replace"), keep_blank_values=True))
    return params
