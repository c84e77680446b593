# app/api/v1/endpoints/admin_security.py
from datetime import timedelta

from fastapi import APIRouter, Depends, Query

from app.core.deps import get_services, require_permission
from app.core.permissions import Permission
from app.core.security import Principal
from app.schemas.audit import AuditRecordList
from app.schemas.security import BlockRequest, IPStatus, ThreatCountsRead
from app.services.registry import SecurityServices

router = APIRouter(tags=["admin"])


@router.get("/events", response_model=AuditRecordList)
async def recent_security_events(
    limit: int = Query(50, ge=1, le=1000),
    _: Principal = Depends(require_permission(Permission.SYSTEM_LOGS)),
    services: SecurityServices = Depends(get_services),
):
    items = await services.audit.recent_events(limit)
    return AuditRecordList(count=len(items), items=items)


@router.get("/ips/{ip}", response_model=IPStatus)
async def ip_status(
    ip: str,
    _: Principal = Depends(require_permission(Permission.SYSTEM_LOGS)),
    services: SecurityServices = Depends(get_services),
):
    counts = await services.ledger.threat_counts(ip)
    blocked = await services.ledger.is_blocked(ip)
    return IPStatus(
        ip=ip,
        blocked=blocked,
        reason=await services.ledger.block_reason(ip) if blocked else None,
        remaining_seconds=await services.ledger.block_remaining(ip) if blocked else None,
        threats=ThreatCountsRead(
            sqli=counts.sqli,
            xss=counts.xss,
            path_traversal=counts.path_traversal,
            total=counts.total,
        ),
        failed_logins=await services.login_guard.failed_login_count(ip),
    )


@router.post("/ips/{ip}/block", response_model=IPStatus)
async def block_ip(
    ip: str,
    payload: BlockRequest,
    principal: Principal = Depends(require_permission(Permission.ADMIN_SETTINGS)),
    services: SecurityServices = Depends(get_services),
):
    await services.ledger.block(ip, payload.reason, timedelta(minutes=payload.minutes))
    await services.audit.log_user_action(principal.user_id, "ADMIN_BLOCK_IP", f"Blocked IP {ip}", payload.reason)
    return await ip_status(ip, principal, services)
