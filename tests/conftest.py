import asyncio
import base64
import inspect
import json
import os
import sys
import tempfile
import time
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="taskdeck_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in tests; the token denylist falls back to process memory
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id.apps.googleusercontent.com")

import pytest  # noqa: E402
from cryptography.hazmat.primitives import hashes  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import padding, rsa  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from taskdeck.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

GOOGLE_CLIENT_ID = os.environ["GOOGLE_CLIENT_ID"]


def _clear_memory_state() -> None:
    state_file = Path(os.environ["SHARED_FS_ROOT"]) / "state" / "memory_store.json"
    state_file.unlink(missing_ok=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _clear_memory_state()
    reset_runtime_for_tests()
    yield
    _clear_memory_state()
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _int_b64url(value: int) -> str:
    return _b64url(value.to_bytes((value.bit_length() + 7) // 8, "big"))


class GoogleSigner:
    """Mints RS256 ID tokens and serves the matching JWKS, like Google would."""

    def __init__(self, kid: str = "test-key-1") -> None:
        self.kid = kid
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.fetch_count = 0

    @property
    def jwks(self) -> dict:
        numbers = self.private_key.public_key().public_numbers()
        return {
            "keys": [
                {
                    "kty": "RSA",
                    "use": "sig",
                    "alg": "RS256",
                    "kid": self.kid,
                    "n": _int_b64url(numbers.n),
                    "e": _int_b64url(numbers.e),
                }
            ]
        }

    async def fetch(self, url: str) -> dict:
        self.fetch_count += 1
        return self.jwks

    def claims(self, **overrides) -> dict:
        now = int(time.time())
        claims = {
            "iss": "https://accounts.google.com",
            "aud": GOOGLE_CLIENT_ID,
            "sub": "g-123",
            "email": "ana@x.com",
            "email_verified": True,
            "name": "Ana G",
            "picture": "http://example.com/ana.png",
            "iat": now,
            "exp": now + 3600,
        }
        claims.update(overrides)
        return {k: v for k, v in claims.items() if v is not None}

    def mint(self, header: dict | None = None, **overrides) -> str:
        header = header or {"alg": "RS256", "kid": self.kid, "typ": "JWT"}
        header_enc = _b64url(json.dumps(header).encode())
        payload_enc = _b64url(json.dumps(self.claims(**overrides)).encode())
        signing_input = f"{header_enc}.{payload_enc}".encode()
        signature = self.private_key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())
        return f"{header_enc}.{payload_enc}.{_b64url(signature)}"


@pytest.fixture(scope="session")
def _google_signer_session():
    return GoogleSigner()


@pytest.fixture
def google_signer(_google_signer_session):
    _google_signer_session.fetch_count = 0
    return _google_signer_session


@pytest.fixture
def google_keys(google_signer):
    """Point the live runtime's identity verifier at the test signer's JWKS."""
    get_runtime().identity._jwks_fetcher = google_signer.fetch
    return google_signer
