from typing import Optional

from pydantic import BaseModel, ConfigDict, model_validator

from app.services.oauth_providers import OAuth2Credential


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    role: Optional[str] = None
    user_id: Optional[str] = None


class TokenPair(Token):
    refresh_token: str


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class PrincipalRead(BaseModel):
    user_id: str
    role: str
    issued_at: int
    expires_at: int

    model_config = ConfigDict(from_attributes=True)


class OAuth2CallbackRequest(BaseModel):
    """
    前端完成 provider 授權後交回的 credential（google / kakao / apple）。
    authorization code、access token 或 id_token 至少要有一個；
    不接受 email / name 等 profile 欄位，profile 由 server 向 provider 取得。
    """
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    access_token: Optional[str] = None
    id_token: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _require_credential(self) -> "OAuth2CallbackRequest":
        if not (self.code or self.access_token or self.id_token):
            raise ValueError("code, access_token or id_token is required")
        return self

    def to_credential(self) -> OAuth2Credential:
        return OAuth2Credential(
            code=self.code,
            redirect_uri=self.redirect_uri,
            access_token=self.access_token,
            id_token=self.id_token,
        )
