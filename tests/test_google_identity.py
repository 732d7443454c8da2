"""Google ID-token verification against a locally generated RSA key."""

import base64
import json
import time

import httpx
import pytest

from taskdeck.config import Settings
from taskdeck.service import identity as identity_module
from taskdeck.service.errors import MalformedAssertion, UpstreamFailure
from taskdeck.service.identity import GoogleIdentityVerifier

from conftest import GOOGLE_CLIENT_ID, GoogleSigner

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET, google_client_id=GOOGLE_CLIENT_ID)


@pytest.fixture
def verifier(settings, google_signer):
    return GoogleIdentityVerifier(settings, jwks_fetcher=google_signer.fetch)


async def test_valid_token_yields_claims(verifier, google_signer):
    claims = await verifier.verify(google_signer.mint(email="Ana@X.com"))
    assert claims.subject == "g-123"
    assert claims.email == "ana@x.com"
    assert claims.name == "Ana G"
    assert claims.picture == "http://example.com/ana.png"
    assert claims.email_verified is True


async def test_optional_claims_may_be_absent(verifier, google_signer):
    claims = await verifier.verify(google_signer.mint(name=None, picture=None))
    assert claims.name is None
    assert claims.picture is None


async def test_audience_list_accepted(verifier, google_signer):
    token = google_signer.mint(aud=["other-client", GOOGLE_CLIENT_ID])
    claims = await verifier.verify(token)
    assert claims.subject == "g-123"


@pytest.mark.parametrize(
    "overrides",
    [
        {"aud": "someone-elses-client"},
        {"iss": "https://evil.example.com"},
        {"exp": int(time.time()) - 10},
        {"iat": int(time.time()) + 600},
        {"sub": None},
        {"email": None},
    ],
)
async def test_bad_claims_rejected(verifier, google_signer, overrides):
    with pytest.raises(MalformedAssertion):
        await verifier.verify(google_signer.mint(**overrides))


async def test_signature_from_other_key_rejected(verifier):
    impostor = GoogleSigner(kid="test-key-1")
    with pytest.raises(MalformedAssertion):
        await verifier.verify(impostor.mint())


async def test_tampered_payload_rejected(verifier, google_signer):
    header, payload, signature = google_signer.mint().split(".")
    claims = google_signer.claims(sub="g-999")
    forged_payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    with pytest.raises(MalformedAssertion):
        await verifier.verify(f"{header}.{forged_payload}.{signature}")


async def test_unsigned_decode_is_not_enough(verifier, google_signer):
    """A well-formed but unsigned assertion must never be trusted."""
    token = google_signer.mint(header={"alg": "none", "kid": google_signer.kid})
    header, payload, _ = token.split(".")
    with pytest.raises(MalformedAssertion):
        await verifier.verify(f"{header}.{payload}.")


@pytest.mark.parametrize("garbage", ["", "one-part", "two.parts", "a.b.c.d", "%%%.%%%.%%%"])
async def test_structural_garbage_rejected(verifier, garbage):
    with pytest.raises(MalformedAssertion):
        await verifier.verify(garbage)


async def test_unknown_kid_refetches_once(verifier, google_signer):
    await verifier.verify(google_signer.mint())
    assert google_signer.fetch_count == 1
    token = google_signer.mint(header={"alg": "RS256", "kid": "rotated-away"})
    with pytest.raises(MalformedAssertion):
        await verifier.verify(token)
    assert google_signer.fetch_count == 2


async def test_jwks_cached_between_verifications(verifier, google_signer):
    await verifier.verify(google_signer.mint())
    await verifier.verify(google_signer.mint(sub="g-456"))
    assert google_signer.fetch_count == 1


async def test_unconfigured_client_id_is_upstream_failure(google_signer):
    verifier = GoogleIdentityVerifier(
        Settings(jwt_secret=SECRET, google_client_id=""),
        jwks_fetcher=google_signer.fetch,
    )
    assert verifier.configured is False
    with pytest.raises(UpstreamFailure):
        await verifier.verify(google_signer.mint())


async def test_unreadable_jwks_is_upstream_failure(settings, google_signer):
    async def broken_fetch(url):
        return {"not_keys": True}

    verifier = GoogleIdentityVerifier(settings, jwks_fetcher=broken_fetch)
    with pytest.raises(UpstreamFailure):
        await verifier.verify(google_signer.mint())


async def test_fetch_jwks_maps_http_errors(monkeypatch):
    def handler(request):
        return httpx.Response(503, json={"error": "unavailable"})

    transport = httpx.MockTransport(handler)
    real_client = httpx.AsyncClient

    def client_factory(*args, **kwargs):
        kwargs["transport"] = transport
        return real_client(*args, **kwargs)

    monkeypatch.setattr(identity_module.httpx, "AsyncClient", client_factory)
    with pytest.raises(UpstreamFailure):
        await identity_module.fetch_jwks("https://keys.example.com/certs")


async def test_fetch_jwks_returns_document(monkeypatch, google_signer):
    def handler(request):
        assert request.url.path == "/certs"
        return httpx.Response(200, json=google_signer.jwks)

    transport = httpx.MockTransport(handler)
    real_client = httpx.AsyncClient

    def client_factory(*args, **kwargs):
        kwargs["transport"] = transport
        return real_client(*args, **kwargs)

    monkeypatch.setattr(identity_module.httpx, "AsyncClient", client_factory)
    document = await identity_module.fetch_jwks("https://keys.example.com/certs")
    assert document["keys"][0]["kid"] == google_signer.kid
