# tests/conftest.py
import asyncio
import os
import sys
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi.testclient import TestClient

# --- Make 'authgate' importable from the repo root ---
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# --- Ephemeral key generation (RSA 2048) ---
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


def _generate_ephemeral_keys(keys_dir: Path) -> tuple[Path, Path]:
    keys_dir.mkdir(parents=True, exist_ok=True)

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem_priv = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    (keys_dir / "issuer_private.pem").write_bytes(pem_priv)

    pem_pub = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    (keys_dir / "issuer_public.pem").write_bytes(pem_pub)

    return (keys_dir / "issuer_private.pem"), (keys_dir / "issuer_public.pem")


def _prepare_test_env() -> None:
    tmp = (ROOT / ".pytest_tmp").absolute()
    tmp.mkdir(exist_ok=True)

    # Minimal variables so Settings works without a .env
    os.environ["JWT_ALG"] = "RS256"
    os.environ["JWT_ISSUER"] = "authgate-test"
    os.environ["SESSION_SECRET"] = "test-session-secret-with-enough-entropy-0123456789"
    os.environ["UPSTREAM_CLIENT_ID"] = "test-client"
    os.environ["UPSTREAM_CLIENT_SECRET"] = "test-secret"
    os.environ["UPSTREAM_REDIRECT_URI"] = "http://testserver/auth/callback"
    os.environ["UPSTREAM_AUTH_URL"] = "https://upstream.test/oauth/authorize"
    os.environ["UPSTREAM_TOKEN_URL"] = "https://upstream.test/oauth/token"
    os.environ["UPSTREAM_API_BASE_URL"] = "https://upstream.test/api/v2"
    os.environ["MCP_READ_ONLY_MODE"] = "false"

    # Ephemeral keys (paths via ENV, matching the Settings aliases)
    priv_path, pub_path = _generate_ephemeral_keys(tmp)
    os.environ["ISSUER_PRIVATE_KEY_PATH"] = priv_path.as_posix()
    os.environ["ISSUER_PUBLIC_KEY_PATH"] = pub_path.as_posix()


# Settings is read at import time, so the environment goes first
_prepare_test_env()

from authgate.core.config import settings  # noqa: E402

UPSTREAM_USER = {"id": 42, "name": "Ada Lovelace", "email": "ada@example.com"}


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstream:
    """Upstream OAuth provider and API served through ``httpx.MockTransport``."""

    def __init__(self):
        self.expires_in = 3600
        self.fail_token = False
        self.timeout_token = False
        self.fail_refresh = False
        self.refresh_delay = 0.0
        self.exchanged_codes: list[str] = []
        self.refresh_calls = 0
        self.api_calls: list[tuple[str, str]] = []
        self._issued = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def _tokens(self) -> dict:
        self._issued += 1
        return {
            "access_token": f"upstream-access-{self._issued}",
            "refresh_token": f"upstream-refresh-{self._issued}",
            "token_type": "bearer",
            "expires_in": self.expires_in,
        }

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/oauth/token":
            return await self._token(request)

        self.api_calls.append((request.method, path))
        if not request.headers.get("Authorization", "").startswith("Bearer upstream-access-"):
            return httpx.Response(401, json={"error": "unauthorized"})
        if path == "/api/v2/users/me":
            return httpx.Response(200, json=UPSTREAM_USER)
        if path == "/api/v2/departments":
            return httpx.Response(200, json=[{"id": 1, "name": "Kitchen"}])
        if path == "/api/v2/locations":
            return httpx.Response(200, json=[{"id": 7, "name": "Brisbane"}])
        if path.startswith("/api/v2/users/") and request.method == "PUT":
            return httpx.Response(200, json={"id": 42, "updated": True})
        return httpx.Response(404, json={"error": "not found"})

    async def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        if form.get("grant_type") == "refresh_token":
            self.refresh_calls += 1
            if self.refresh_delay:
                await asyncio.sleep(self.refresh_delay)
            if self.fail_refresh:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json=self._tokens())

        if self.timeout_token:
            raise httpx.ReadTimeout("timed out", request=request)
        if self.fail_token:
            return httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "Code is invalid"}
            )
        self.exchanged_codes.append(form.get("code"))
        return httpx.Response(200, json=self._tokens())


def query_of(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def app(upstream, clock):
    from authgate.main import create_app
    return create_app(settings, upstream_transport=upstream.transport, clock=clock)


@pytest.fixture
def client(app):
    """
    Test client with an ephemeral environment:
    - RSA keys generated on the fly in .pytest_tmp/
    - upstream provider served by FakeUpstream, time driven by FakeClock
    """
    # 'with' runs the lifespan: sweeper starts on startup, stops on shutdown
    with TestClient(app) as c:
        yield c


# --- Reset settings after each test (autouse) ---
@pytest.fixture(autouse=True)
def _reset_settings_between_tests():
    snapshot = (settings.read_only_mode, settings.public_base_url, settings.auth_exempt_methods)
    yield
    settings.read_only_mode, settings.public_base_url, settings.auth_exempt_methods = snapshot
