# app/services/token_service.py
"""
Access / Refresh Token 的簽發、驗證、兌換、黑名單與全面撤銷。

Access token 完全 stateless；所有「提早失效」的判斷（blacklist / revoked）
都在驗證當下 lazy 地查 TTL store，沒有背景排程。
驗證失敗一律回傳結果物件（TokenCheck / RefreshOutcome），不丟例外。
"""
from __future__ import annotations

import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from uuid import uuid4

from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

from app.core.config import Settings
from app.core.security import (
    AuthFailure,
    Principal,
    TokenType,
    _now_utc,
    decode_claims,
    encode_claims,
    peek_claims,
    token_fingerprint,
)
from app.services.ttl_store import StoreUnavailableError, TTLStore

logger = logging.getLogger(__name__)

RoleLookup = Callable[[str], Awaitable[Optional[str]]]


def refresh_key(user_id: object) -> str:
    return f"refresh:{user_id}"

def blacklist_key(token: str) -> str:
    return f"blacklist:{token_fingerprint(token)}"

def revoked_key(user_id: object) -> str:
    return f"revoked:{user_id}"


@dataclass(frozen=True)
class TokenCheck:
    principal: Optional[Principal] = None
    failure: Optional[AuthFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass(frozen=True)
class RefreshOutcome:
    access_token: Optional[str] = None
    principal: Optional[Principal] = None
    failure: Optional[AuthFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


class TokenService:
    def __init__(self, store: TTLStore, settings: Settings) -> None:
        self.store = store
        self.access_ttl = settings.access_ttl_seconds
        self.refresh_ttl = settings.refresh_ttl_seconds
        self.default_role = settings.DEFAULT_ROLE

    # === Issue ===
    def _claims(self, user_id: object, token_type: TokenType, ttl: int) -> Dict[str, Any]:
        iat = int(_now_utc().timestamp())
        return {
            "sub": str(user_id),
            "type": token_type.value,
            # 同一秒內簽出的 token 也要彼此不同
            "jti": str(uuid4()),
            "iat": iat,
            "exp": iat + ttl,
        }

    def issue_access(self, user_id: object, role: str) -> str:
        claims = self._claims(user_id, TokenType.ACCESS, self.access_ttl)
        claims["role"] = role
        return encode_claims(claims)

    async def issue_refresh(self, user_id: object) -> str:
        """簽發 refresh 並覆寫 refresh:<userID>（last-write-wins，舊的即不再被信任）"""
        token = encode_claims(self._claims(user_id, TokenType.REFRESH, self.refresh_ttl))
        await self.store.set(refresh_key(user_id), token, self.refresh_ttl)
        return token

    # === Verify ===
    def _decode(self, token: Optional[str]) -> Tuple[Optional[Dict[str, Any]], Optional[AuthFailure]]:
        if not token:
            return None, AuthFailure.MALFORMED
        try:
            peek_claims(token)
        except JWTError:
            return None, AuthFailure.MALFORMED
        try:
            return decode_claims(token), None
        except ExpiredSignatureError:
            return None, AuthFailure.EXPIRED
        except JWTClaimsError:
            return None, AuthFailure.MALFORMED
        except JWTError:
            return None, AuthFailure.INVALID_SIGNATURE

    async def _is_blacklisted(self, token: str) -> bool:
        return await self.store.exists(blacklist_key(token))

    async def _is_revoked(self, user_id: str, issued_at: int) -> bool:
        marker = await self.store.get(revoked_key(user_id))
        if marker is None:
            return False
        try:
            revoked_at = float(marker)
        except ValueError:
            # 無法判讀的 marker 一律視為全部撤銷
            return True
        # 撤銷當下以前（含同一秒）簽出的 token 全部失效
        return issued_at <= revoked_at

    async def validate_access(self, token: Optional[str]) -> TokenCheck:
        claims, failure = self._decode(token)
        if failure is not None:
            logger.warning("Access token rejected: %s", failure.value)
            return TokenCheck(failure=failure)

        if claims.get("type") != TokenType.ACCESS.value:
            logger.warning("Access token rejected: %s", AuthFailure.WRONG_TYPE.value)
            return TokenCheck(failure=AuthFailure.WRONG_TYPE)

        sub, role = claims.get("sub"), claims.get("role")
        if not sub or not role or "exp" not in claims:
            return TokenCheck(failure=AuthFailure.MALFORMED)

        iat = int(claims.get("iat", 0))
        try:
            if await self._is_blacklisted(token):
                logger.warning("Token is blacklisted (user %s)", sub)
                return TokenCheck(failure=AuthFailure.BLACKLISTED)
            if await self._is_revoked(sub, iat):
                logger.warning("Token belongs to revoked session set (user %s)", sub)
                return TokenCheck(failure=AuthFailure.REVOKED)
        except StoreUnavailableError:
            # 無法確認撤銷狀態 → fail closed
            return TokenCheck(failure=AuthFailure.STORE_UNAVAILABLE)

        return TokenCheck(
            principal=Principal(user_id=str(sub), role=str(role), issued_at=iat, expires_at=int(claims["exp"]))
        )

    # === Refresh ===
    async def refresh(self, presented: Optional[str], role_lookup: Optional[RoleLookup] = None) -> RefreshOutcome:
        """
        用 refresh token 換新的 access token。
        refresh token 本身不輪替：到期前可重複使用（已知的 replay 風險，維持原行為）。
        有給 role_lookup 時，查不到（有效的）使用者就視為 REFRESH_NOT_FOUND。
        """
        claims, failure = self._decode(presented)
        if failure is not None:
            logger.warning("Refresh rejected: %s", failure.value)
            return RefreshOutcome(failure=failure)

        if claims.get("type") != TokenType.REFRESH.value:
            logger.warning("Token is not a refresh token")
            return RefreshOutcome(failure=AuthFailure.WRONG_TYPE)

        sub = claims.get("sub")
        if not sub:
            return RefreshOutcome(failure=AuthFailure.MALFORMED)

        try:
            if await self._is_blacklisted(presented):
                return RefreshOutcome(failure=AuthFailure.BLACKLISTED)
            stored = await self.store.get(refresh_key(sub))
        except StoreUnavailableError:
            return RefreshOutcome(failure=AuthFailure.STORE_UNAVAILABLE)

        if stored is None:
            logger.warning("Refresh token not found for user %s", sub)
            return RefreshOutcome(failure=AuthFailure.REFRESH_NOT_FOUND)
        if not hmac.compare_digest(stored, presented):
            logger.warning("Refresh token superseded for user %s", sub)
            return RefreshOutcome(failure=AuthFailure.REFRESH_MISMATCHED)

        role = self.default_role
        if role_lookup is not None:
            role = await role_lookup(sub)
            if role is None:
                # 帳號已刪除或停用
                logger.warning("Refresh rejected: no active user %s", sub)
                return RefreshOutcome(failure=AuthFailure.REFRESH_NOT_FOUND)

        access = self.issue_access(sub, role)
        new_claims = decode_claims(access)
        return RefreshOutcome(
            access_token=access,
            principal=Principal(
                user_id=str(sub), role=role, issued_at=int(new_claims["iat"]), expires_at=int(new_claims["exp"])
            ),
        )

    # === Revoke ===
    async def blacklist(self, token: str) -> bool:
        """把單一 token 加入黑名單；TTL = 當下剩餘壽命，已過期或無法解析則不動作"""
        try:
            claims = decode_claims(token)
        except JWTError:
            logger.debug("Skip blacklisting undecodable or expired token")
            return False

        if "exp" not in claims:
            return False
        remaining = float(claims["exp"]) - time.time()
        if remaining <= 0:
            return False
        await self.store.set(blacklist_key(token), "1", remaining)
        logger.info("Token blacklisted (user %s, %.0fs remaining)", claims.get("sub"), remaining)
        return True

    async def revoke_refresh(self, user_id: object) -> None:
        await self.store.delete(refresh_key(user_id))
        logger.info("Refresh token revoked for user: %s", user_id)

    async def revoke_all(self, user_id: object) -> None:
        """登出所有裝置：刪 refresh，並以 revoked marker 蓋住仍在效期內的 access token"""
        await self.store.delete(refresh_key(user_id))
        await self.store.set(revoked_key(user_id), repr(time.time()), self.access_ttl)
        logger.info("All tokens revoked for user: %s", user_id)
