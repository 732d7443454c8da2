"""Unit tests for the bearer token issuer/validator.

Covers:
- issue/validate round trip and response shape
- expiry with and without clock-skew leeway
- tampered, foreign and structurally broken tokens
- refresh and best-effort invalidation via the denylist
- denylist behaviour when Redis misbehaves
"""

import base64
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from taskdeck.config import Settings
from taskdeck.service.errors import TokenExpired, TokenMalformed, UserNotFound
from taskdeck.service.tokens import TokenService
from taskdeck.storage.memory import MemoryStore

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BrokenCache:
    """Cache double whose every call fails like a Redis outage."""

    def __init__(self) -> None:
        self.calls = 0

    async def denylist_access_token(self, jti, ttl_seconds):
        self.calls += 1
        raise RedisConnectionError("redis down")

    async def is_access_token_denylisted(self, jti):
        self.calls += 1
        raise RedisConnectionError("redis down")


class RecordingCache:
    def __init__(self) -> None:
        self.entries = {}

    async def denylist_access_token(self, jti, ttl_seconds):
        self.entries[jti] = ttl_seconds

    async def is_access_token_denylisted(self, jti):
        return jti in self.entries


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET, access_token_ttl_minutes=15)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tokens(settings, store, clock):
    return TokenService(settings, store, clock=clock)


@pytest.fixture
def user(store):
    return store.create_user("Ana", "ana@x.com")


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestIssue:
    def test_issue_response_shape(self, tokens, user):
        issued = tokens.issue(user)
        response = issued.to_response()
        assert response == {
            "access_token": issued.access_token,
            "token_type": "bearer",
            "expires_in": 15 * 60,
        }

    def test_claims_carry_subject_and_audience(self, tokens, user, clock):
        issued = tokens.issue(user)
        payload = _payload(issued.access_token)
        assert payload["sub"] == user.id
        assert payload["iss"] == "taskdeck"
        assert payload["aud"] == "taskdeck-clients"
        assert payload["token_type"] == "access"
        assert payload["exp"] == int(clock.now) + 15 * 60
        assert payload["jti"] == issued.jti

    def test_each_token_gets_unique_jti(self, tokens, user):
        assert tokens.issue(user).jti != tokens.issue(user).jti


class TestValidate:
    async def test_valid_token_resolves_user(self, tokens, user):
        issued = tokens.issue(user)
        resolved, claims = await tokens.resolve_user(issued.access_token)
        assert resolved.id == user.id
        assert claims.user_id == user.id
        assert claims.jti == issued.jti

    async def test_expired_token_rejected(self, tokens, user, clock):
        issued = tokens.issue(user)
        clock.advance(15 * 60)
        with pytest.raises(TokenExpired):
            await tokens.validate(issued.access_token)

    async def test_token_valid_just_before_expiry(self, tokens, user, clock):
        issued = tokens.issue(user)
        clock.advance(15 * 60 - 1)
        claims = await tokens.validate(issued.access_token)
        assert claims.user_id == user.id

    async def test_leeway_extends_acceptance(self, store, user, clock):
        settings = Settings(
            jwt_secret=SECRET, access_token_ttl_minutes=1, clock_skew_leeway_seconds=30
        )
        tokens = TokenService(settings, store, clock=clock)
        issued = tokens.issue(user)
        clock.advance(60 + 10)
        await tokens.validate(issued.access_token)
        clock.advance(30)
        with pytest.raises(TokenExpired):
            await tokens.validate(issued.access_token)

    async def test_tampered_payload_rejected(self, tokens, user):
        issued = tokens.issue(user)
        header, _, signature = issued.access_token.split(".")
        payload = _payload(issued.access_token)
        payload["sub"] = "someone-else"
        forged = f"{header}.{_b64(payload)}.{signature}"
        with pytest.raises(TokenMalformed):
            await tokens.validate(forged)

    async def test_alg_none_rejected(self, tokens, user):
        issued = tokens.issue(user)
        payload = _payload(issued.access_token)
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(payload)}."
        with pytest.raises(TokenMalformed):
            await tokens.validate(forged)

    async def test_token_from_other_secret_rejected(self, store, tokens, user, clock):
        other = TokenService(
            Settings(jwt_secret="another-secret-that-is-long-enough-1234567890"),
            store,
            clock=clock,
        )
        with pytest.raises(TokenMalformed):
            await tokens.validate(other.issue(user).access_token)

    async def test_wrong_audience_rejected(self, store, tokens, user, clock):
        other = TokenService(
            Settings(jwt_secret=SECRET, jwt_audience="someone-else"), store, clock=clock
        )
        with pytest.raises(TokenMalformed):
            await tokens.validate(other.issue(user).access_token)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!!.???.###"])
    async def test_garbage_rejected(self, tokens, garbage):
        with pytest.raises(TokenMalformed):
            await tokens.validate(garbage)

    async def test_non_ascii_signature_rejected(self, tokens, user):
        header, payload, _ = tokens.issue(user).access_token.split(".")
        with pytest.raises(TokenMalformed):
            await tokens.validate(f"{header}.{payload}.\u00e9\u00e9\u00e9")

    async def test_deleted_user_reported(self, tokens, store, user):
        issued = tokens.issue(user)
        store.users.pop(user.id)
        with pytest.raises(UserNotFound):
            await tokens.resolve_user(issued.access_token)


class TestRefreshAndInvalidate:
    async def test_refresh_issues_new_token_and_retires_old(self, tokens, user):
        issued = tokens.issue(user)
        refreshed_user, fresh = await tokens.refresh(issued.access_token)
        assert refreshed_user.id == user.id
        assert fresh.jti != issued.jti
        await tokens.validate(fresh.access_token)
        with pytest.raises(TokenMalformed):
            await tokens.validate(issued.access_token)

    async def test_refresh_of_expired_token_fails(self, tokens, user, clock):
        issued = tokens.issue(user)
        clock.advance(16 * 60)
        with pytest.raises(TokenExpired):
            await tokens.refresh(issued.access_token)

    async def test_invalidate_denylists_token(self, tokens, user):
        issued = tokens.issue(user)
        assert await tokens.invalidate(issued.access_token) is True
        with pytest.raises(TokenMalformed):
            await tokens.validate(issued.access_token)

    async def test_invalidate_ignores_garbage(self, tokens):
        assert await tokens.invalidate("not-a-token") is False

    async def test_invalidate_expired_token_is_noop(self, tokens, user, clock):
        issued = tokens.issue(user)
        clock.advance(16 * 60)
        assert await tokens.invalidate(issued.access_token) is False

    async def test_denylist_written_to_cache(self, settings, store, user, clock):
        cache = RecordingCache()
        tokens = TokenService(settings, store, cache, clock=clock)
        issued = tokens.issue(user)
        await tokens.invalidate(issued.access_token)
        assert cache.entries == {issued.jti: 15 * 60}

    async def test_cache_denylist_honoured_across_instances(self, settings, store, user, clock):
        cache = RecordingCache()
        first = TokenService(settings, store, cache, clock=clock)
        second = TokenService(settings, store, cache, clock=clock)
        issued = first.issue(user)
        await first.invalidate(issued.access_token)
        with pytest.raises(TokenMalformed):
            await second.validate(issued.access_token)

    async def test_redis_outage_fails_open(self, settings, store, user, clock):
        cache = BrokenCache()
        tokens = TokenService(settings, store, cache, clock=clock)
        issued = tokens.issue(user)
        claims = await tokens.validate(issued.access_token)
        assert claims.user_id == user.id
        assert cache.calls == 1

    async def test_local_denylist_survives_redis_outage(self, settings, store, user, clock):
        tokens = TokenService(settings, store, BrokenCache(), clock=clock)
        issued = tokens.issue(user)
        assert await tokens.invalidate(issued.access_token) is True
        with pytest.raises(TokenMalformed):
            await tokens.validate(issued.access_token)
