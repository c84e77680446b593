# app/core/errors.py
from datetime import datetime, timezone
from enum import Enum

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.services.ttl_store import StoreUnavailableError


# === 未登入 / 憑證有問題 ===
class CredentialProblem(str, Enum):
    MISSING = "MISSING"
    BAD_SCHEME = "BAD_SCHEME"
    INVALID = "INVALID"


_REASONS = {
    CredentialProblem.MISSING: (
        "Missing authentication token",
        "Include 'Authorization: Bearer <token>' header",
    ),
    CredentialProblem.BAD_SCHEME: (
        "Invalid authentication format",
        "Use 'Bearer <token>' format in Authorization header",
    ),
    CredentialProblem.INVALID: (
        "Invalid or expired authentication token",
        "Please login again to obtain a valid token",
    ),
}


class UnauthenticatedError(Exception):
    def __init__(self, problem: CredentialProblem = CredentialProblem.MISSING) -> None:
        super().__init__(problem.value)
        self.problem = problem

    @property
    def reason(self) -> str:
        return _REASONS[self.problem][0]

    @property
    def hint(self) -> str:
        return _REASONS[self.problem][1]


# === OAuth2 ===
class OAuth2AuthenticationError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "OAUTH2_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class EmailMissingError(OAuth2AuthenticationError):
    code = "EMAIL_NOT_FOUND"

    def __init__(self, provider: str) -> None:
        super().__init__(f"Email not found from OAuth2 provider: {provider}")
        self.provider = provider


class ProviderMismatchError(OAuth2AuthenticationError):
    status_code = status.HTTP_409_CONFLICT
    code = "PROVIDER_MISMATCH"

    def __init__(self, existing_provider: str) -> None:
        super().__init__(
            f"Looks like you're signed up with {existing_provider} account. "
            f"Please use your {existing_provider} account to login."
        )
        self.existing_provider = existing_provider


class UnsupportedProviderError(OAuth2AuthenticationError):
    code = "UNSUPPORTED_PROVIDER"

    def __init__(self, provider: str) -> None:
        super().__init__(f"Login with {provider} is not supported")
        self.provider = provider


class ProviderVerificationError(OAuth2AuthenticationError):
    """provider 不承認這個 credential（或連不上 provider）"""
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "OAUTH2_VERIFICATION_FAILED"

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(f"Could not verify {provider} credentials")
        self.provider = provider
        self.reason = reason


def unauthorized_body(request: Request, exc: UnauthenticatedError) -> dict:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "status": status.HTTP_401_UNAUTHORIZED,
        "error": "Unauthorized",
        "message": "Authentication required to access this resource",
        "path": request.url.path,
        "reason": exc.reason,
        "hint": exc.hint,
    }


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):
        # 統一輸出格式
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):
        # 客製化，但保持資訊節制
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(UnauthenticatedError)
    async def unauthenticated_handler(request: Request, exc: UnauthenticatedError):
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content=unauthorized_body(request, exc),
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(OAuth2AuthenticationError)
    async def oauth2_handler(request: Request, exc: OAuth2AuthenticationError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code},
        )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Security store unavailable"},
        )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        # 小強化：避免洩露伺服器細節
        resp = await call_next(request)
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        return resp
