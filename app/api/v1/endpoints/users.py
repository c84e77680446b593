# app/api/v1/endpoints/users.py
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.deps import get_current_user, get_services
from app.core.security import hash_password
from app.db.session import get_db
from app.models.users import LOCAL_PROVIDER, User
from app.schemas.user import UserCreate, UserRead
from app.services.registry import SecurityServices

router = APIRouter(tags=["users"])

# === 註冊（開放，本地帳號） ===
@router.post("/", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def create_user(
    payload: UserCreate,
    db: AsyncSession = Depends(get_db),
    services: SecurityServices = Depends(get_services),
):
    # 檢查 email 是否已存在（不論是哪個 provider 註冊的）
    result = await db.execute(select(User).where(User.email == payload.email))
    if result.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already exists",
        )

    user = User(
        email=payload.email,
        name=payload.name,
        password_hash=hash_password(payload.password),
        oauth_provider=LOCAL_PROVIDER,
        role=services.tokens.default_role,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)

    await services.audit.log_user_action(user.id, "REGISTER", "Registered with email and password")
    return user

# === 取得目前登入者（需要登入） ===
@router.get("/me", response_model=UserRead)
async def users_me(current_user: User = Depends(get_current_user)):
    return current_user
