from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from redis.exceptions import RedisError

from taskdeck.config import Settings
from taskdeck.logging import get_logger
from taskdeck.service.errors import TokenExpired, TokenMalformed, UserNotFound
from taskdeck.storage.models import User
from taskdeck.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class UserLookup(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class IssuedToken:
    access_token: str
    expires_in: int
    expires_at: datetime
    jti: str
    token_type: str = "bearer"

    def to_response(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


@dataclass
class TokenClaims:
    user_id: str
    jti: str
    issued_at: datetime
    expires_at: datetime


def _from_ts(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class TokenService:
    """Issue and validate HS256 bearer tokens.

    Tokens are stateless; the only server-side state is a best-effort
    denylist of ``jti`` values recorded on logout and refresh. The denylist
    lives in Redis when a cache is configured and is always mirrored in
    process so a single node honors its own logouts during a Redis outage.
    """

    def __init__(
        self,
        settings: Settings,
        store: UserLookup,
        cache: Optional[RedisCache] = None,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        self._clock = clock or time.time
        self._leeway = float(settings.clock_skew_leeway_seconds)
        self._denylist: dict[str, float] = {}
        self._denylist_lock = threading.Lock()

    @property
    def ttl_seconds(self) -> int:
        return int(self.settings.access_token_ttl_minutes) * 60

    # encoding
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, verify_exp: bool = True) -> dict[str, Any]:
        """Verify structure, algorithm, signature and claims.

        Raises ``TokenMalformed`` for anything that is not a token we issued and
        ``TokenExpired`` once ``exp`` has passed (beyond the configured leeway).
        """
        if not token or not isinstance(token, str):
            raise TokenMalformed("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenMalformed("token is not a JWT") from None

        # pin the algorithm so a forged "none" or RS256 header is rejected
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenMalformed("token header unreadable") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenMalformed("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # header values arrive latin-1 decoded; compare bytes so non-ASCII is a mismatch
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            raise TokenMalformed("token signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformed("token payload unreadable") from None
        if not isinstance(payload, dict):
            raise TokenMalformed("token payload unreadable")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenMalformed("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenMalformed("token audience mismatch")
        if payload.get("token_type") != "access":
            raise TokenMalformed("unexpected token type")
        if not payload.get("sub") or not payload.get("jti"):
            raise TokenMalformed("token missing subject")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenMalformed("token missing expiry") from None
        if verify_exp and exp_ts <= self._clock() - self._leeway:
            raise TokenExpired("token has expired")
        return payload

    # public operations
    def issue(self, user: User) -> IssuedToken:
        now = self._clock()
        ttl = self.ttl_seconds
        exp = int(now) + ttl
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "token_type": "access",
            "jti": jti,
            "iat": int(now),
            "exp": exp,
        }
        token = self._encode_jwt(payload)
        logger.info("access_token_issued", user_id=user.id, jti=jti)
        return IssuedToken(
            access_token=token,
            expires_in=ttl,
            expires_at=_from_ts(exp),
            jti=jti,
        )

    async def validate(self, token: str) -> TokenClaims:
        payload = self._decode_jwt(token)
        jti = str(payload["jti"])
        if await self._is_denylisted(jti):
            logger.info("access_token_denylisted", jti=jti)
            raise TokenMalformed("token has been revoked")
        return TokenClaims(
            user_id=str(payload["sub"]),
            jti=jti,
            issued_at=_from_ts(float(payload.get("iat") or 0)),
            expires_at=_from_ts(float(payload["exp"])),
        )

    async def resolve_user(self, token: str) -> tuple[User, TokenClaims]:
        claims = await self.validate(token)
        user = self.store.get_user(claims.user_id)
        if not user:
            logger.warning("token_subject_missing", user_id=claims.user_id)
            raise UserNotFound("user no longer exists")
        return user, claims

    async def refresh(self, token: str) -> tuple[User, IssuedToken]:
        """Exchange a currently valid token for a fresh one and retire the old ``jti``."""
        user, claims = await self.resolve_user(token)
        issued = self.issue(user)
        await self._denylist_jti(claims.jti, claims.expires_at.timestamp())
        logger.info("access_token_refreshed", user_id=user.id, old_jti=claims.jti)
        return user, issued

    async def invalidate(self, token: str) -> bool:
        """Best-effort revocation. Returns True when the ``jti`` was recorded.

        Expired tokens are accepted (there is nothing left to revoke) and
        malformed ones are ignored; this never raises.
        """
        try:
            payload = self._decode_jwt(token, verify_exp=False)
        except TokenMalformed as exc:
            logger.info("invalidate_ignored_malformed", reason=exc.message)
            return False
        return await self._denylist_jti(str(payload["jti"]), float(payload["exp"]))

    # denylist
    async def _denylist_jti(self, jti: str, exp_ts: float) -> bool:
        now = self._clock()
        if exp_ts <= now:
            return False
        with self._denylist_lock:
            self._denylist = {k: v for k, v in self._denylist.items() if v > now}
            self._denylist[jti] = exp_ts
        if self.cache:
            try:
                await self.cache.denylist_access_token(jti, max(1, int(exp_ts - now)))
            except RedisError as exc:
                logger.warning("denylist_write_failed", jti=jti, error=str(exc))
        return True

    async def _is_denylisted(self, jti: str) -> bool:
        with self._denylist_lock:
            exp_ts = self._denylist.get(jti)
        if exp_ts is not None and exp_ts > self._clock():
            return True
        if self.cache:
            try:
                return await self.cache.is_access_token_denylisted(jti)
            except RedisError as exc:
                # fail open: a Redis outage must not lock every user out
                logger.warning("denylist_check_failed", jti=jti, error=str(exc))
        return False
