# app/schemas/user.py
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, EmailStr, Field

class UserCreate(BaseModel):
    email: EmailStr
    name: str
    # 僅用於建立帳號的輸入，不會在輸出 schema 中出現
    password: str = Field(min_length=8)

class UserRead(BaseModel):
    id: int
    email: EmailStr
    name: str
    role: str
    oauth_provider: str
    profile_image_url: Optional[str] = None
    is_email_verified: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime

    # Pydantic v2：允許從 ORM 物件轉模型
    model_config = ConfigDict(from_attributes=True)
