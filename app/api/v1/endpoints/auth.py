# app/api/v1/endpoints/auth.py
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.client_ip import extract_client_ip
from app.core.config import settings
from app.core.deps import get_current_principal, get_current_user, get_services
from app.core.security import AuthFailure, Principal, verify_password
from app.db.session import get_db
from app.models.users import User
from app.schemas.auth import (
    LogoutRequest,
    OAuth2CallbackRequest,
    PrincipalRead,
    RefreshRequest,
    TokenPair,
)
from app.schemas.user import UserRead
from app.services.registry import SecurityServices
from app.services.ttl_store import StoreUnavailableError

router = APIRouter(tags=["auth"])


def _client_ip(request: Request) -> str:
    return getattr(request.state, "client_ip", None) or extract_client_ip(request)


async def _issue_pair(services: SecurityServices, user: User) -> TokenPair:
    access_token = services.tokens.issue_access(user.id, user.role)
    refresh_token = await services.tokens.issue_refresh(user.id)
    return TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        token_type="bearer",
        expires_in=settings.access_ttl_seconds,
        role=user.role,
        user_id=str(user.id),
    )


# === 登入（email + 密碼，含失敗次數防護） ===
@router.post("/login", response_model=TokenPair)
async def login(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: AsyncSession = Depends(get_db),
    services: SecurityServices = Depends(get_services),
):
    ip = _client_ip(request)
    email = (form_data.username or "").strip()
    user_agent = request.headers.get("user-agent")
    guard = services.login_guard

    if await guard.is_ip_blocked_by_login_failures(ip):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many failed login attempts. Please try again later.",
            headers={"Retry-After": str(await guard.retry_after(ip))},
        )

    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()

    if not user or not user.is_active or not verify_password(form_data.password, user.password_hash):
        await guard.record_login_attempt(email, ip, False, user_agent)
        # 統一訊息避免帳號探測
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    await guard.record_login_attempt(email, ip, True, user_agent)
    user.last_login_at = datetime.utcnow()
    await db.commit()

    pair = await _issue_pair(services, user)
    await services.audit.log_user_action(user.id, "LOGIN", "User logged in with password")
    return pair


# === Refresh Token 兌換（refresh 本身不輪替） ===
@router.post("/refresh", response_model=TokenPair)
async def refresh_token(
    payload: RefreshRequest,
    db: AsyncSession = Depends(get_db),
    services: SecurityServices = Depends(get_services),
):
    async def role_lookup(user_id: str) -> Optional[str]:
        try:
            user = await db.get(User, int(user_id))
        except ValueError:
            return None
        if user is None or not user.is_active:
            return None
        return user.role

    outcome = await services.tokens.refresh(payload.refresh_token, role_lookup)
    if outcome.failure == AuthFailure.STORE_UNAVAILABLE:
        raise StoreUnavailableError("refresh token lookup failed")
    if not outcome.ok:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired refresh token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenPair(
        access_token=outcome.access_token,
        refresh_token=payload.refresh_token,
        token_type="bearer",
        expires_in=settings.access_ttl_seconds,
        role=outcome.principal.role,
        user_id=outcome.principal.user_id,
    )


# === 單次登出 ===
@router.post("/logout", response_model=dict)
async def logout(
    request: Request,
    payload: Optional[LogoutRequest] = None,
    principal: Principal = Depends(get_current_principal),
    services: SecurityServices = Depends(get_services),
):
    """目前的 access（以及有帶的 refresh）加入黑名單"""
    await services.tokens.blacklist(request.state.access_token)
    if payload and payload.refresh_token:
        await services.tokens.blacklist(payload.refresh_token)

    await services.audit.log_user_action(principal.user_id, "LOGOUT", "User logged out")
    return {"detail": "Logged out"}


# === 登出全部裝置 ===
@router.post("/logout-all", response_model=dict)
async def logout_all(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    services: SecurityServices = Depends(get_services),
):
    await services.tokens.revoke_all(principal.user_id)
    await services.tokens.blacklist(request.state.access_token)

    await services.audit.log_security_event(
        principal.user_id,
        "LOGOUT_ALL",
        "All sessions revoked by user",
        ip_address=_client_ip(request),
    )
    return {"detail": "Logged out from all devices"}


# === 只撤銷 refresh token ===
@router.post("/revoke", response_model=dict)
async def revoke_refresh_token(
    principal: Principal = Depends(get_current_principal),
    services: SecurityServices = Depends(get_services),
):
    await services.tokens.revoke_refresh(principal.user_id)
    await services.audit.log_user_action(principal.user_id, "REVOKE_REFRESH", "Refresh token revoked")
    return {"detail": "Refresh token revoked successfully"}


# === 目前使用者 ===
@router.get("/me", response_model=UserRead)
async def read_me(current_user: User = Depends(get_current_user)):
    return current_user


@router.get("/principal", response_model=PrincipalRead)
async def read_principal(principal: Principal = Depends(get_current_principal)):
    return principal


# === OAuth2：前端交回 provider credential，由 server 向 provider 驗證 ===
@router.post("/oauth2/callback/{provider}", response_model=TokenPair)
async def oauth2_callback(
    provider: str,
    payload: OAuth2CallbackRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: SecurityServices = Depends(get_services),
):
    user = await services.identity.authenticate(db, provider, payload.to_credential(), _client_ip(request))
    return await _issue_pair(services, user)
