# app/services/registry.py
"""
安全相關服務的組裝點：共用同一個 TTL store，整個程序只建一份（lazy）。
測試可用 set_security_services() 換成自己組好的版本。
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.core.config import Settings, settings as default_settings
from app.services.audit_log import AuditLog
from app.services.identity_bridge import IdentityBridge
from app.services.ip_ledger import IPThreatLedger, LoginFailureGuard
from app.services.threat_scanner import ThreatScanner
from app.services.token_service import TokenService
from app.services.ttl_store import TTLStore, build_store


@dataclass
class SecurityServices:
    store: TTLStore
    audit: AuditLog
    tokens: TokenService
    ledger: IPThreatLedger
    login_guard: LoginFailureGuard
    scanner: ThreatScanner
    identity: IdentityBridge


def build_security_services(store: TTLStore, settings: Settings = default_settings) -> SecurityServices:
    audit = AuditLog(store, settings)
    ledger = IPThreatLedger(store, audit, settings)
    return SecurityServices(
        store=store,
        audit=audit,
        tokens=TokenService(store, settings),
        ledger=ledger,
        login_guard=LoginFailureGuard(store, audit, settings),
        scanner=ThreatScanner(ledger, audit),
        identity=IdentityBridge(audit, settings),
    )


_services: Optional[SecurityServices] = None


def get_security_services() -> SecurityServices:
    global _services
    if _services is None:
        _services = build_security_services(build_store(default_settings))
    return _services


def set_security_services(services: Optional[SecurityServices]) -> None:
    global _services
    _services = services


async def close_security_services() -> None:
    global _services
    if _services is not None:
        await _services.store.aclose()
        _services = None
