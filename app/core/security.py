# app/core/security.py
import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from jose import jwt
from passlib.context import CryptContext

from app.core.config import settings

# === Password Hashing ===
pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__ident="2b",
    # 若密碼超過 72 bytes，不拋錯（與現有流程相容）
    bcrypt__truncate_error=False,
)

def _sanitize_password(p: str) -> str:
    # bcrypt 只吃前 72 bytes，避免極長密碼在某些環境報錯
    return p[:72] if isinstance(p, str) else p

def hash_password(plain: str) -> str:
    return pwd_context.hash(_sanitize_password(plain))

def verify_password(plain: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        # OAuth2 帳號沒有密碼，不可走密碼登入
        return False
    return pwd_context.verify(_sanitize_password(plain), password_hash)


# === Token 型別 / 失敗原因 ===
class TokenType(str, Enum):
    ACCESS = "ACCESS"
    REFRESH = "REFRESH"


class AuthFailure(str, Enum):
    MALFORMED = "MALFORMED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    EXPIRED = "EXPIRED"
    WRONG_TYPE = "WRONG_TYPE"
    BLACKLISTED = "BLACKLISTED"
    REVOKED = "REVOKED"
    REFRESH_NOT_FOUND = "REFRESH_NOT_FOUND"
    REFRESH_MISMATCHED = "REFRESH_MISMATCHED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


@dataclass(frozen=True)
class Principal:
    """通過驗證的呼叫者；明確地沿著 request 傳遞，不放在全域狀態"""
    user_id: str
    role: str
    issued_at: int
    expires_at: int


# === JWT Helpers ===
def _now_utc() -> datetime:
    return datetime.now(timezone.utc)

def encode_claims(claims: Dict[str, Any]) -> str:
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

def decode_claims(token: str) -> Dict[str, Any]:
    """驗證簽章與 exp；失敗時拋出 jose 的 JWTError 子類別"""
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])

def peek_claims(token: str) -> Dict[str, Any]:
    """不驗證簽章直接讀 payload（只用來判斷結構是否正確）"""
    return jwt.get_unverified_claims(token)

def token_fingerprint(token: str) -> str:
    # blacklist key 用雜湊，不把整個 token 當 key
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
