from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from taskdeck.config import Settings
from taskdeck.logging import get_logger
from taskdeck.service.errors import MalformedAssertion, UpstreamFailure

logger = get_logger(__name__)

JwksFetcher = Callable[[str], Awaitable[Mapping[str, Any]]]


@dataclass
class FederatedClaims:
    subject: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None
    email_verified: bool = False


def _b64url_decode(segment: str) -> bytes:
    padding_len = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding_len)


async def fetch_jwks(url: str) -> Mapping[str, Any]:
    """Download a JWKS document; transport and HTTP failures become ``UpstreamFailure``."""
    try:
        async with httpx.AsyncClient(timeout=10.0, follow_redirects=False) as client:
            response = await client.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
            document = response.json()
    except httpx.HTTPError as exc:
        logger.error("jwks_fetch_failed", url=url, error=str(exc))
        raise UpstreamFailure("unable to fetch identity provider keys") from exc
    except ValueError as exc:
        logger.error("jwks_parse_failed", url=url, error=str(exc))
        raise UpstreamFailure("identity provider keys unreadable") from exc
    if not isinstance(document, Mapping):
        raise UpstreamFailure("identity provider keys unreadable")
    return document


class GoogleIdentityVerifier:
    """Verify Google ID tokens against Google's published signing keys.

    The token must be an RS256 JWT whose ``kid`` is present in the JWKS at
    ``settings.google_jwks_url``. Keys are cached for
    ``google_jwks_cache_seconds`` and refetched once when an unknown ``kid``
    shows up, which covers Google's key rotation.

    Claim checks: ``iss`` in the configured issuers, ``aud`` contains our
    client id, ``exp`` in the future, ``iat`` not in the future, and both
    ``sub`` and ``email`` present.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        jwks_fetcher: Optional[JwksFetcher] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings
        self._jwks_fetcher = jwks_fetcher or fetch_jwks
        self._clock = clock or time.time
        self._jwks_cache: Optional[list[Mapping[str, Any]]] = None
        self._jwks_fetched_at = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.settings.google_client_id)

    async def verify(self, assertion: str) -> FederatedClaims:
        if not self.configured:
            raise UpstreamFailure("google sign-in not configured")
        if not assertion or not isinstance(assertion, str):
            raise MalformedAssertion("google token missing")
        parts = assertion.split(".")
        if len(parts) != 3:
            raise MalformedAssertion("google token is not a JWT")
        header_segment, payload_segment, signature_segment = parts
        header = self._decode_json_segment(header_segment)
        if header.get("alg") != "RS256":
            logger.warning("google_token_bad_alg", alg=header.get("alg"))
            raise MalformedAssertion("unsupported token algorithm")
        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise MalformedAssertion("token key id missing")

        key = await self._resolve_key(kid)
        signing_input = f"{header_segment}.{payload_segment}".encode()
        self._verify_signature(key, signing_input, signature_segment)

        claims = self._decode_json_segment(payload_segment)
        return self._validate_claims(claims)

    def _decode_json_segment(self, segment: str) -> Mapping[str, Any]:
        try:
            decoded = json.loads(_b64url_decode(segment))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            raise MalformedAssertion("google token segment unreadable") from exc
        if not isinstance(decoded, Mapping):
            raise MalformedAssertion("google token segment unreadable")
        return decoded

    # keys
    async def _load_jwks(self, *, force: bool = False) -> list[Mapping[str, Any]]:
        age = self._clock() - self._jwks_fetched_at
        stale = age >= self.settings.google_jwks_cache_seconds
        if force or self._jwks_cache is None or stale:
            document = await self._jwks_fetcher(self.settings.google_jwks_url)
            keys = document.get("keys") if isinstance(document, Mapping) else None
            if not isinstance(keys, list):
                raise UpstreamFailure("identity provider keys unreadable")
            self._jwks_cache = [k for k in keys if isinstance(k, Mapping)]
            self._jwks_fetched_at = self._clock()
            logger.info("google_jwks_loaded", keys=len(self._jwks_cache))
        return self._jwks_cache

    async def _resolve_key(self, kid: str) -> Mapping[str, Any]:
        def select(keys: list[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
            for candidate in keys:
                if candidate.get("kid") == kid and candidate.get("kty") == "RSA":
                    return candidate
            return None

        key = select(await self._load_jwks())
        if key is None:
            key = select(await self._load_jwks(force=True))
        if key is None:
            logger.warning("google_token_unknown_kid", kid=kid)
            raise MalformedAssertion("token signed with unknown key")
        if key.get("use") not in (None, "sig"):
            raise MalformedAssertion("token signed with non-signing key")
        return key

    def _verify_signature(
        self, key: Mapping[str, Any], signing_input: bytes, signature_segment: str
    ) -> None:
        try:
            signature = _b64url_decode(signature_segment)
            modulus = int.from_bytes(_b64url_decode(str(key["n"])), "big")
            exponent = int.from_bytes(_b64url_decode(str(key["e"])), "big")
            public_key = rsa.RSAPublicNumbers(exponent, modulus).public_key()
        except (KeyError, binascii.Error, ValueError) as exc:
            raise MalformedAssertion("token signature unreadable") from exc
        try:
            public_key.verify(
                signature, signing_input, padding.PKCS1v15(), hashes.SHA256()
            )
        except InvalidSignature:
            logger.warning("google_token_bad_signature", kid=key.get("kid"))
            raise MalformedAssertion("token signature invalid") from None

    # claims
    def _validate_claims(self, claims: Mapping[str, Any]) -> FederatedClaims:
        if claims.get("iss") not in self.settings.google_issuers:
            raise MalformedAssertion("token issuer not accepted")
        aud = claims.get("aud")
        if isinstance(aud, str):
            audiences = {aud}
        elif isinstance(aud, list):
            audiences = {a for a in aud if isinstance(a, str)}
        else:
            audiences = set()
        if self.settings.google_client_id not in audiences:
            raise MalformedAssertion("token audience mismatch")

        now = self._clock()
        leeway = float(self.settings.clock_skew_leeway_seconds)
        try:
            exp = float(claims["exp"])
        except (KeyError, TypeError, ValueError):
            raise MalformedAssertion("token expiry missing") from None
        if exp <= now - leeway:
            raise MalformedAssertion("google token expired")
        iat = claims.get("iat")
        if iat is not None:
            try:
                issued_at = float(iat)
            except (TypeError, ValueError):
                raise MalformedAssertion("token issue time unreadable") from None
            if issued_at > now + leeway:
                raise MalformedAssertion("token issued in the future")

        subject = claims.get("sub")
        email = claims.get("email")
        if not isinstance(subject, str) or not subject:
            raise MalformedAssertion("token subject missing")
        if not isinstance(email, str) or not email.strip():
            raise MalformedAssertion("token email missing")
        name = claims.get("name")
        picture = claims.get("picture")
        return FederatedClaims(
            subject=subject,
            email=email.strip().lower(),
            name=name if isinstance(name, str) and name.strip() else None,
            picture=picture if isinstance(picture, str) and picture else None,
            email_verified=claims.get("email_verified") in (True, "true"),
        )
