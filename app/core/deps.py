# app/core/deps.py
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import CredentialProblem, UnauthenticatedError
from app.core.permissions import Permission, has_permission
from app.core.security import Principal
from app.db.session import get_db
from app.models.users import User
from app.services.registry import SecurityServices, get_security_services


def get_services() -> SecurityServices:
    return get_security_services()


def get_current_principal_optional(request: Request) -> Optional[Principal]:
    """AuthMiddleware 已經驗證過；沒帶 / 無效 → None"""
    return getattr(request.state, "principal", None)


def get_current_principal(request: Request) -> Principal:
    principal = get_current_principal_optional(request)
    if principal is None:
        problem = getattr(request.state, "auth_problem", CredentialProblem.MISSING)
        raise UnauthenticatedError(problem)
    return principal


async def get_current_user(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Principal → DB 上的 User。
    token 有效但帳號已刪除 / 停用，一樣當作未登入。
    """
    try:
        user_id = int(principal.user_id)
    except ValueError:
        raise UnauthenticatedError(CredentialProblem.INVALID)

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise UnauthenticatedError(CredentialProblem.INVALID)
    return user


def require_permission(permission: Permission) -> Callable[..., Principal]:
    def _checker(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not has_permission(principal.role, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission.value}",
            )
        return principal

    return _checker
