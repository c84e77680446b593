# app/services/identity_bridge.py
"""
OAuth2 帳號對應：把 provider 回傳的 profile 對到本地 User。

一個 email 只綁一個 provider；用別的 provider 登入同一個 email 會被拒絕，
且不修改任何既有資料。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.errors import (
    EmailMissingError,
    ProviderMismatchError,
    ProviderVerificationError,
    UnsupportedProviderError,
)
from app.models.users import User
from app.schemas.audit import Severity
from app.services.audit_log import AuditLog
from app.services.oauth_providers import OAuth2Credential, OAuth2ProviderClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderProfile:
    provider: str
    subject_id: Optional[str]
    email: Optional[str]
    name: Optional[str]
    image_url: Optional[str]


def _str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _mapping(value: Any) -> Mapping[str, Any]:
    # provider 回應格式不對時當作沒有這一層
    return value if isinstance(value, Mapping) else {}


def _verified_email(email: Any, verified: Any) -> Optional[str]:
    """provider 明確標示未驗證的 email 不採用"""
    if verified is False or (isinstance(verified, str) and verified.lower() == "false"):
        return None
    return _text(email)


def _google(attrs: Mapping[str, Any]) -> ProviderProfile:
    return ProviderProfile(
        provider="GOOGLE",
        subject_id=_str(attrs.get("sub") or attrs.get("id")),
        email=_verified_email(attrs.get("email"), attrs.get("email_verified")),
        name=_text(attrs.get("name")),
        image_url=_text(attrs.get("picture")),
    )


def _kakao(attrs: Mapping[str, Any]) -> ProviderProfile:
    account = _mapping(attrs.get("kakao_account"))
    profile = _mapping(account.get("profile"))
    return ProviderProfile(
        provider="KAKAO",
        subject_id=_str(attrs.get("id")),
        email=_verified_email(account.get("email"), account.get("is_email_verified")),
        name=_text(profile.get("nickname")),
        image_url=_text(profile.get("profile_image_url")),
    )


def _apple(attrs: Mapping[str, Any]) -> ProviderProfile:
    return ProviderProfile(
        provider="APPLE",
        subject_id=_str(attrs.get("sub")),
        email=_verified_email(attrs.get("email"), attrs.get("email_verified")),
        name=_text(attrs.get("name")),
        image_url=None,
    )


PROVIDER_ADAPTERS: Dict[str, Callable[[Mapping[str, Any]], ProviderProfile]] = {
    "google": _google,
    "kakao": _kakao,
    "apple": _apple,
}


def extract_profile(provider_id: str, attributes: Mapping[str, Any]) -> ProviderProfile:
    adapter = PROVIDER_ADAPTERS.get((provider_id or "").lower())
    if adapter is None:
        raise UnsupportedProviderError(provider_id)
    return adapter(attributes)


class IdentityBridge:
    def __init__(
        self,
        audit: AuditLog,
        settings: Settings,
        providers: Optional[OAuth2ProviderClient] = None,
    ) -> None:
        self.audit = audit
        self.default_role = settings.DEFAULT_ROLE
        self.providers = providers or OAuth2ProviderClient(settings)

    async def authenticate(
        self,
        db: AsyncSession,
        provider_id: str,
        credential: OAuth2Credential,
        ip_address: Optional[str] = None,
    ) -> User:
        """先向 provider 驗證 credential，再用 provider 回傳的 attributes 做 reconcile"""
        try:
            attributes = await self.providers.fetch_attributes(provider_id, credential)
        except UnsupportedProviderError:
            await self.audit.log_oauth2_event(None, provider_id, "OAUTH2_UNSUPPORTED_PROVIDER", ip_address, False)
            raise
        except ProviderVerificationError as e:
            await self.audit.log_security_event(
                None,
                "OAUTH2_VERIFICATION_FAILED",
                f"OAuth2 credential rejected by {provider_id}",
                e.reason,
                severity=Severity.WARN,
                ip_address=ip_address,
            )
            raise
        return await self.reconcile(db, provider_id, attributes, ip_address)

    async def reconcile(
        self,
        db: AsyncSession,
        provider_id: str,
        attributes: Mapping[str, Any],
        ip_address: Optional[str] = None,
    ) -> User:
        try:
            profile = extract_profile(provider_id, attributes)
        except UnsupportedProviderError:
            await self.audit.log_oauth2_event(
                attributes.get("email"), provider_id, "OAUTH2_UNSUPPORTED_PROVIDER", ip_address, False
            )
            raise

        if not profile.email:
            await self.audit.log_security_event(
                None,
                "OAUTH2_EMAIL_MISSING",
                f"Email not found from OAuth2 provider: {profile.provider}",
                severity=Severity.WARN,
                ip_address=ip_address,
            )
            raise EmailMissingError(profile.provider)

        user = (await db.execute(select(User).where(User.email == profile.email))).scalar_one_or_none()

        if user is not None and user.oauth_provider != profile.provider:
            await self.audit.log_security_event(
                user.id,
                "OAUTH2_PROVIDER_MISMATCH",
                f"Login with {profile.provider} rejected; account is registered with {user.oauth_provider}",
                f"Email: {profile.email}",
                severity=Severity.WARN,
                ip_address=ip_address,
            )
            await self.audit.log_oauth2_event(
                profile.email, profile.provider, "OAUTH2_LOGIN", ip_address, False
            )
            raise ProviderMismatchError(user.oauth_provider)

        if user is None:
            user = await self._register(db, profile, ip_address)
        else:
            await self._update_existing(db, user, profile)

        await self.audit.log_oauth2_event(profile.email, profile.provider, "OAUTH2_LOGIN", ip_address, True)
        return user

    async def _register(self, db: AsyncSession, profile: ProviderProfile, ip_address: Optional[str]) -> User:
        logger.info("Registering new user with email: %s", profile.email)
        user = User(
            email=profile.email,
            name=profile.name or profile.email.split("@")[0],
            profile_image_url=profile.image_url,
            oauth_provider=profile.provider,
            oauth_provider_id=profile.subject_id,
            role=self.default_role,
            is_active=True,
            is_email_verified=True,
            last_login_at=datetime.utcnow(),
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)

        await self.audit.log_security_event(
            user.id,
            "USER_REGISTERED",
            f"New user registered via {profile.provider}",
            f"Email: {profile.email}",
            severity=Severity.INFO,
            ip_address=ip_address,
        )
        await self.audit.log_user_action(user.id, "REGISTER", f"Registered via {profile.provider} OAuth2")
        return user

    async def _update_existing(self, db: AsyncSession, user: User, profile: ProviderProfile) -> None:
        logger.info("Updating existing user with email: %s", profile.email)
        changes = []

        if profile.name and profile.name != user.name:
            user.name = profile.name
            changes.append("name")
        if profile.image_url is not None and profile.image_url != user.profile_image_url:
            user.profile_image_url = profile.image_url
            changes.append("profile_image_url")
        if not user.is_active:
            user.is_active = True
            changes.append("is_active")
            logger.info("Reactivated user %s on OAuth2 login", user.id)

        user.last_login_at = datetime.utcnow()
        await db.commit()
        await db.refresh(user)

        if changes:
            await self.audit.log_user_action(
                user.id, "PROFILE_SYNC", f"Profile updated from {profile.provider}", ", ".join(changes)
            )
