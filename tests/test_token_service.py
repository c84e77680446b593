# tests/test_token_service.py
import time

import pytest
from jose import jwt

from app.core.config import settings
from app.core.security import AuthFailure, TokenType, encode_claims
from app.services.registry import SecurityServices
from app.services.token_service import TokenService, blacklist_key, refresh_key, revoked_key
from app.services.ttl_store import InMemoryTTLStore, StoreUnavailableError

pytestmark = pytest.mark.anyio


@pytest.fixture
def tokens(fresh_services: SecurityServices) -> TokenService:
    return fresh_services.tokens


async def test_issue_then_validate_round_trip(tokens: TokenService):
    token = tokens.issue_access(42, "LANDLORD")

    check = await tokens.validate_access(token)
    assert check.ok
    assert check.principal.user_id == "42"
    assert check.principal.role == "LANDLORD"
    assert check.principal.expires_at - check.principal.issued_at == settings.access_ttl_seconds


async def test_access_tokens_issued_together_are_distinct(tokens: TokenService):
    assert tokens.issue_access(1, "TENANT") != tokens.issue_access(1, "TENANT")


async def test_expired_token(tokens: TokenService):
    now = int(time.time())
    expired = encode_claims(
        {"sub": "1", "role": "TENANT", "type": TokenType.ACCESS.value, "iat": now - 120, "exp": now - 60}
    )
    check = await tokens.validate_access(expired)
    assert check.failure == AuthFailure.EXPIRED


async def test_wrong_signature_and_garbage(tokens: TokenService):
    now = int(time.time())
    forged = jwt.encode(
        {"sub": "1", "role": "ADMIN", "type": "ACCESS", "iat": now, "exp": now + 60},
        "some-other-secret",
        algorithm=settings.JWT_ALGORITHM,
    )
    assert (await tokens.validate_access(forged)).failure == AuthFailure.INVALID_SIGNATURE
    assert (await tokens.validate_access("not.a.jwt")).failure == AuthFailure.MALFORMED
    assert (await tokens.validate_access("")).failure == AuthFailure.MALFORMED


async def test_refresh_token_is_not_an_access_token(tokens: TokenService):
    refresh = await tokens.issue_refresh(7)
    assert (await tokens.validate_access(refresh)).failure == AuthFailure.WRONG_TYPE


async def test_access_token_without_role_is_malformed(tokens: TokenService):
    now = int(time.time())
    token = encode_claims({"sub": "1", "type": "ACCESS", "iat": now, "exp": now + 60})
    assert (await tokens.validate_access(token)).failure == AuthFailure.MALFORMED


async def test_blacklist_ttl_matches_remaining_lifetime(fresh_services: SecurityServices):
    tokens, store = fresh_services.tokens, fresh_services.store
    now = int(time.time())
    # 簽出已久、只剩 60 秒的 token
    token = encode_claims(
        {"sub": "5", "role": "TENANT", "type": TokenType.ACCESS.value, "jti": "old", "iat": now - 3000, "exp": now + 60}
    )

    assert await tokens.blacklist(token) is True
    remaining = await store.ttl(blacklist_key(token))
    assert remaining == pytest.approx(60, abs=2)
    assert remaining < settings.access_ttl_seconds

    assert (await tokens.validate_access(token)).failure == AuthFailure.BLACKLISTED
    # 其他 token 不受影響
    assert (await tokens.validate_access(tokens.issue_access(5, "TENANT"))).ok


async def test_blacklist_ignores_expired_or_undecodable(tokens: TokenService):
    now = int(time.time())
    expired = encode_claims({"sub": "1", "role": "TENANT", "type": "ACCESS", "iat": now - 20, "exp": now - 10})
    assert await tokens.blacklist(expired) is False
    assert await tokens.blacklist("garbage") is False


async def test_revoke_all_kills_outstanding_tokens(fresh_services: SecurityServices):
    tokens, store = fresh_services.tokens, fresh_services.store
    access = tokens.issue_access(9, "TENANT")
    refresh = await tokens.issue_refresh(9)
    other_user = tokens.issue_access(10, "TENANT")

    await tokens.revoke_all(9)

    assert (await tokens.validate_access(access)).failure == AuthFailure.REVOKED
    assert (await tokens.refresh(refresh)).failure == AuthFailure.REFRESH_NOT_FOUND
    assert await store.get(refresh_key(9)) is None
    assert await store.ttl(revoked_key(9)) == pytest.approx(settings.access_ttl_seconds, abs=5)
    assert (await tokens.validate_access(other_user)).ok


async def test_tokens_issued_after_revocation_are_valid(fresh_services: SecurityServices):
    tokens, store = fresh_services.tokens, fresh_services.store
    # 撤銷發生在 10 秒前
    await store.set(revoked_key(11), repr(time.time() - 10), settings.access_ttl_seconds)

    assert (await tokens.validate_access(tokens.issue_access(11, "TENANT"))).ok


async def test_superseded_refresh_token_is_rejected(tokens: TokenService):
    first = await tokens.issue_refresh(3)
    second = await tokens.issue_refresh(3)

    assert (await tokens.refresh(first)).failure == AuthFailure.REFRESH_MISMATCHED

    # 最新的可以重複使用（不輪替）
    for _ in range(2):
        outcome = await tokens.refresh(second)
        assert outcome.ok
        assert outcome.principal.user_id == "3"
        assert outcome.principal.role == settings.DEFAULT_ROLE


async def test_refresh_uses_role_lookup(tokens: TokenService):
    refresh = await tokens.issue_refresh(4)

    async def lookup(user_id: str):
        return "AGENT" if user_id == "4" else None

    outcome = await tokens.refresh(refresh, lookup)
    assert outcome.ok
    check = await tokens.validate_access(outcome.access_token)
    assert check.principal.role == "AGENT"


async def test_refresh_for_missing_user_is_rejected(tokens: TokenService):
    refresh = await tokens.issue_refresh(12)

    async def lookup(user_id: str):
        return None

    outcome = await tokens.refresh(refresh, lookup)
    assert outcome.failure == AuthFailure.REFRESH_NOT_FOUND
    assert outcome.access_token is None


async def test_refresh_rejects_access_token(tokens: TokenService):
    access = tokens.issue_access(4, "TENANT")
    assert (await tokens.refresh(access)).failure == AuthFailure.WRONG_TYPE


class _FlakyStore(InMemoryTTLStore):
    async def exists(self, key: str) -> bool:
        raise StoreUnavailableError("timeout")

    async def get(self, key: str):
        raise StoreUnavailableError("timeout")


async def test_store_outage_fails_closed():
    tokens = TokenService(_FlakyStore(), settings)
    token = tokens.issue_access(1, "TENANT")
    assert (await tokens.validate_access(token)).failure == AuthFailure.STORE_UNAVAILABLE

    refresh = encode_claims(
        {"sub": "1", "type": "REFRESH", "iat": int(time.time()), "exp": int(time.time()) + 60}
    )
    assert (await tokens.refresh(refresh)).failure == AuthFailure.STORE_UNAVAILABLE
