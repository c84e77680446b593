# app/middleware/auth.py
"""
每個 request 的安全檢查入口：

1. 解析 client IP，已封鎖 → 403（在驗證之前）
2. ThreatScanner 掃參數 / header / URI，有命中就交給 ledger 判斷是否封鎖（影響之後的請求）
3. 取出憑證並驗證 → request.state.principal
4. 回應後寫 API 存取紀錄

這裡不會直接回 401；需要登入的路由透過 deps.get_current_principal() 決定。
"""
import logging
import time
from typing import Optional, Tuple

from fastapi.security.utils import get_authorization_scheme_param
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from app.core.client_ip import extract_client_ip
from app.core.errors import CredentialProblem
from app.core.security import Principal
from app.schemas.audit import Severity
from app.services.registry import SecurityServices, get_security_services
from app.services.ttl_store import StoreUnavailableError

logger = logging.getLogger(__name__)

IP_BLOCKED_BODY = {"error": "Access denied", "code": "IP_BLOCKED"}


def extract_credentials(request: Request) -> Tuple[Optional[str], CredentialProblem]:
    """
    Authorization: Bearer → X-Auth-Token → ?token=
    回傳 (token, 若驗證失敗時要回報的問題類型)
    """
    authorization = request.headers.get("authorization")
    scheme, param = get_authorization_scheme_param(authorization)
    if scheme.lower() == "bearer" and param:
        return param.strip(), CredentialProblem.INVALID

    token = request.headers.get("x-auth-token") or request.query_params.get("token")
    if token and token.strip():
        return token.strip(), CredentialProblem.INVALID

    if authorization:
        return None, CredentialProblem.BAD_SCHEME
    return None, CredentialProblem.MISSING


async def authenticate(request: Request, services: SecurityServices) -> Optional[Principal]:
    request.state.principal = None
    request.state.auth_failure = None
    request.state.access_token = None

    token, problem = extract_credentials(request)
    request.state.auth_problem = problem
    if token is None:
        return None

    check = await services.tokens.validate_access(token)
    if not check.ok:
        request.state.auth_failure = check.failure
        await services.audit.log_security_event(
            None,
            "INVALID_TOKEN",
            f"Rejected access token: {check.failure.value}",
            f"Path: {request.url.path}",
            severity=Severity.WARN,
            ip_address=getattr(request.state, "client_ip", None),
        )
        return None

    request.state.principal = check.principal
    request.state.access_token = token
    return check.principal


async def _is_blocked(services: SecurityServices, client_ip: str) -> bool:
    try:
        return await services.ledger.is_blocked(client_ip)
    except StoreUnavailableError:
        # 查不到封鎖狀態時放行，token 驗證仍會 fail closed
        logger.warning("Cannot check IP block status for %s", client_ip)
        return False


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        services = get_security_services()
        started = time.perf_counter()

        client_ip = extract_client_ip(request)
        request.state.client_ip = client_ip

        if await _is_blocked(services, client_ip):
            logger.warning("Blocked IP attempted access: %s %s", client_ip, request.url.path)
            return JSONResponse(status_code=403, content=IP_BLOCKED_BODY)

        if await services.scanner.scan_request(request, client_ip):
            logger.warning("Security threat detected from IP: %s", client_ip)
            await services.ledger.check_and_block(client_ip)

        principal = await authenticate(request, services)

        response = await call_next(request)

        elapsed_ms = (time.perf_counter() - started) * 1000
        await services.audit.log_api_access(
            principal.user_id if principal else None,
            request.url.path,
            request.method,
            client_ip,
            response.status_code,
            elapsed_ms,
        )
        return response
