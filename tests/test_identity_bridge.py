# tests/test_identity_bridge.py
import pytest
from sqlalchemy import select

from app.core.errors import EmailMissingError, ProviderMismatchError, UnsupportedProviderError
from app.db.session import AsyncSessionLocal
from app.models.users import User
from app.services.identity_bridge import extract_profile
from app.services.registry import SecurityServices

pytestmark = pytest.mark.anyio


async def _load(email: str) -> User:
    async with AsyncSessionLocal() as session:
        return (await session.execute(select(User).where(User.email == email))).scalar_one()


def test_kakao_profile_is_read_from_nested_account():
    profile = extract_profile(
        "kakao",
        {
            "id": 123456,
            "kakao_account": {
                "email": "k@example.com",
                "profile": {"nickname": "Kim", "profile_image_url": "https://img/k.png"},
            },
        },
    )
    assert profile.provider == "KAKAO"
    assert profile.subject_id == "123456"
    assert profile.email == "k@example.com"
    assert profile.name == "Kim"
    assert profile.image_url == "https://img/k.png"


def test_kakao_profile_tolerates_unexpected_shapes():
    assert extract_profile("kakao", {"id": 1, "kakao_account": "oops"}).email is None

    profile = extract_profile("kakao", {"id": 1, "kakao_account": {"email": "k@example.com", "profile": ["x"]}})
    assert profile.email == "k@example.com"
    assert profile.name is None

    assert extract_profile("kakao", {"id": 1, "kakao_account": {"email": 12345}}).email is None


def test_unverified_email_is_dropped():
    assert extract_profile("google", {"sub": "1", "email": "g@example.com", "email_verified": False}).email is None
    assert extract_profile("apple", {"sub": "1", "email": "a@example.com", "email_verified": "false"}).email is None
    assert extract_profile("apple", {"sub": "1", "email": "a@example.com", "email_verified": "true"}).email == (
        "a@example.com"
    )


def test_unknown_provider_is_rejected():
    with pytest.raises(UnsupportedProviderError) as exc:
        extract_profile("github", {"email": "x@example.com"})
    assert str(exc.value) == "Login with github is not supported"


async def test_new_user_is_registered(fresh_services: SecurityServices):
    async with AsyncSessionLocal() as db:
        user = await fresh_services.identity.reconcile(
            db, "google", {"sub": "g-1", "email": "new.g@example.com", "name": "Gina", "picture": "https://p/1"}
        )

    assert user.oauth_provider == "GOOGLE"
    assert user.oauth_provider_id == "g-1"
    assert user.role == "TENANT"
    assert user.is_email_verified is True
    assert user.password_hash is None

    event_types = [e.event_type for e in await fresh_services.audit.recent_events()]
    assert "USER_REGISTERED" in event_types
    assert "OAUTH2_LOGIN" in event_types


async def test_same_provider_updates_profile(fresh_services: SecurityServices, ensure_user):
    await ensure_user("same.g@example.com", password=None, name="Old Name", provider="GOOGLE")

    async with AsyncSessionLocal() as db:
        user = await fresh_services.identity.reconcile(
            db, "google", {"sub": "g-2", "email": "same.g@example.com", "name": "New Name"}
        )

    assert user.name == "New Name"
    assert user.last_login_at is not None
    actions = await fresh_services.audit.user_actions(user.id)
    assert actions[0].event_type == "PROFILE_SYNC"


async def test_inactive_user_is_reactivated(fresh_services: SecurityServices, ensure_user):
    user = await ensure_user("sleepy@example.com", password=None, name="Sleepy", provider="APPLE")
    async with AsyncSessionLocal() as db:
        stored = await db.get(User, user.id)
        stored.is_active = False
        await db.commit()

    async with AsyncSessionLocal() as db:
        await fresh_services.identity.reconcile(db, "apple", {"sub": "a-1", "email": "sleepy@example.com"})

    assert (await _load("sleepy@example.com")).is_active is True


async def test_provider_mismatch_names_original_provider_and_changes_nothing(
    fresh_services: SecurityServices, ensure_user
):
    await ensure_user("mixed@example.com", password=None, name="Original", provider="GOOGLE")
    before = await _load("mixed@example.com")

    async with AsyncSessionLocal() as db:
        with pytest.raises(ProviderMismatchError) as exc:
            await fresh_services.identity.reconcile(
                db,
                "kakao",
                {"id": 99, "kakao_account": {"email": "mixed@example.com", "profile": {"nickname": "Other"}}},
            )

    assert exc.value.existing_provider == "GOOGLE"
    assert "signed up with GOOGLE account" in exc.value.message

    after = await _load("mixed@example.com")
    assert after.oauth_provider == "GOOGLE"
    assert after.name == "Original"
    assert after.oauth_provider_id == before.oauth_provider_id
    assert after.last_login_at == before.last_login_at

    events = await fresh_services.audit.recent_events()
    assert any(e.event_type == "OAUTH2_PROVIDER_MISMATCH" for e in events)


async def test_missing_email(fresh_services: SecurityServices):
    async with AsyncSessionLocal() as db:
        with pytest.raises(EmailMissingError):
            await fresh_services.identity.reconcile(db, "apple", {"sub": "a-2"})

    events = await fresh_services.audit.recent_events()
    assert events[-1].event_type == "OAUTH2_EMAIL_MISSING"
