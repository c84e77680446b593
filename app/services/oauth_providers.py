# app/services/oauth_providers.py
"""
向 OAuth2 provider 驗證前端交來的 credential，取得 provider 認可的 attributes。

- google / kakao：authorization code 先換 access token，再打 userinfo
- apple：驗 id_token 簽章（Apple JWKS），claims 就是 attributes

request body 只提供 credential，profile 一律以 provider 的回應為準。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
from jose import jwt
from jose.exceptions import JWTError

from app.core.config import Settings
from app.core.errors import ProviderVerificationError, UnsupportedProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OAuth2Credential:
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    access_token: Optional[str] = None
    id_token: Optional[str] = None


@dataclass(frozen=True)
class ProviderEndpoints:
    token_url: str
    userinfo_url: Optional[str] = None
    tokeninfo_url: Optional[str] = None
    jwks_url: Optional[str] = None
    issuer: Optional[str] = None


PROVIDER_ENDPOINTS: Dict[str, ProviderEndpoints] = {
    "google": ProviderEndpoints(
        token_url="https://oauth2.googleapis.com/token",
        userinfo_url="https://openidconnect.googleapis.com/v1/userinfo",
        tokeninfo_url="https://oauth2.googleapis.com/tokeninfo",
    ),
    "kakao": ProviderEndpoints(
        token_url="https://kauth.kakao.com/oauth/token",
        userinfo_url="https://kapi.kakao.com/v2/user/me",
        tokeninfo_url="https://kapi.kakao.com/v1/user/access_token_info",
    ),
    "apple": ProviderEndpoints(
        token_url="https://appleid.apple.com/auth/token",
        jwks_url="https://appleid.apple.com/auth/keys",
        issuer="https://appleid.apple.com",
    ),
}


def _json_object(resp: httpx.Response, provider: str, what: str) -> Dict[str, Any]:
    if resp.status_code != 200:
        logger.warning("%s %s rejected with status %s", provider, what, resp.status_code)
        raise ProviderVerificationError(provider, f"{what} rejected ({resp.status_code})")
    try:
        data = resp.json()
    except ValueError:
        data = None
    if not isinstance(data, Mapping):
        raise ProviderVerificationError(provider, f"{what} returned an unexpected body")
    return dict(data)


class OAuth2ProviderClient:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.timeout = settings.OAUTH2_HTTP_TIMEOUT_SEC
        # 測試用 httpx.MockTransport 取代真實網路
        self.transport = transport
        self.client_credentials: Dict[str, Tuple[Optional[str], Optional[str]]] = {
            "google": (settings.GOOGLE_CLIENT_ID, settings.GOOGLE_CLIENT_SECRET),
            "kakao": (settings.KAKAO_CLIENT_ID, settings.KAKAO_CLIENT_SECRET),
            "apple": (settings.APPLE_CLIENT_ID, settings.APPLE_CLIENT_SECRET),
        }
        self.kakao_app_id = settings.KAKAO_APP_ID

    def supports(self, provider_id: str) -> bool:
        return (provider_id or "").lower() in PROVIDER_ENDPOINTS

    async def fetch_attributes(self, provider_id: str, credential: OAuth2Credential) -> Dict[str, Any]:
        provider = (provider_id or "").lower()
        endpoints = PROVIDER_ENDPOINTS.get(provider)
        if endpoints is None:
            raise UnsupportedProviderError(provider_id)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as http:
                issued: Dict[str, Any] = {}
                if credential.code:
                    issued = await self._exchange_code(http, provider, endpoints, credential)

                if provider == "apple":
                    return await self._verify_id_token(
                        http, provider, endpoints, issued.get("id_token") or credential.id_token
                    )

                access_token = issued.get("access_token") or credential.access_token
                if not access_token:
                    raise ProviderVerificationError(provider, "access token required")
                # 自己用 code 換來的 token 一定是發給本服務的
                if not credential.code:
                    await self._check_audience(http, provider, endpoints, access_token)
                resp = await http.get(endpoints.userinfo_url, headers={"Authorization": f"Bearer {access_token}"})
                return _json_object(resp, provider, "userinfo")
        except httpx.HTTPError as e:
            logger.warning("OAuth2 provider %s unreachable: %s", provider, e)
            raise ProviderVerificationError(provider, "provider unreachable") from e

    async def _exchange_code(
        self, http: httpx.AsyncClient, provider: str, endpoints: ProviderEndpoints, credential: OAuth2Credential
    ) -> Dict[str, Any]:
        client_id, client_secret = self.client_credentials[provider]
        form = {
            "grant_type": "authorization_code",
            "code": credential.code,
            "redirect_uri": credential.redirect_uri,
            "client_id": client_id,
            "client_secret": client_secret,
        }
        resp = await http.post(endpoints.token_url, data={k: v for k, v in form.items() if v})
        return _json_object(resp, provider, "code exchange")

    async def _check_audience(
        self, http: httpx.AsyncClient, provider: str, endpoints: ProviderEndpoints, access_token: str
    ) -> None:
        """前端直接帶 access token 時，確認 token 是發給本服務的 client"""
        if provider == "google":
            expected = self.client_credentials["google"][0]
            if not expected:
                return
            resp = await http.get(endpoints.tokeninfo_url, params={"access_token": access_token})
            info = _json_object(resp, provider, "tokeninfo")
            if expected not in (info.get("aud"), info.get("azp")):
                raise ProviderVerificationError(provider, "token issued to another client")
        elif provider == "kakao":
            if not self.kakao_app_id:
                return
            resp = await http.get(endpoints.tokeninfo_url, headers={"Authorization": f"Bearer {access_token}"})
            info = _json_object(resp, provider, "tokeninfo")
            if str(info.get("app_id")) != str(self.kakao_app_id):
                raise ProviderVerificationError(provider, "token issued to another app")

    async def _verify_id_token(
        self, http: httpx.AsyncClient, provider: str, endpoints: ProviderEndpoints, id_token: Optional[str]
    ) -> Dict[str, Any]:
        if not id_token:
            raise ProviderVerificationError(provider, "id token required")
        client_id = self.client_credentials[provider][0]
        if not client_id:
            raise ProviderVerificationError(provider, "client id not configured")

        jwks = _json_object(await http.get(endpoints.jwks_url), provider, "jwks")
        try:
            return jwt.decode(
                id_token,
                jwks,
                algorithms=["RS256"],
                audience=client_id,
                issuer=endpoints.issuer,
                options={"verify_at_hash": False},
            )
        except JWTError as e:
            logger.warning("%s id token rejected: %s", provider, e)
            raise ProviderVerificationError(provider, "id token rejected") from e
