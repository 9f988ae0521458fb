# tests/test_auth.py
import asyncio
import logging

import pytest

from authgate.core.config import settings
from authgate.core.crypto import CredentialIssuer
from authgate.services.auth import AuthResolver, extract_bearer_token
from authgate.store.models import UpstreamCredentials, UserIdentity
from authgate.store.sessions import SessionStore
from authgate.upstream.client import UpstreamOAuthClient

IDENTITY = UserIdentity(user_id="42", name="Ada", email="ada@example.com")


@pytest.fixture
def resolver(upstream, clock):
    return AuthResolver(
        SessionStore(settings.session_ttl_seconds, clock=clock),
        CredentialIssuer(settings, clock=clock),
        UpstreamOAuthClient(settings, transport=upstream.transport, clock=clock),
        settings,
        clock=clock,
    )


def _signed_in(resolver, clock, expires_in=3600):
    creds = UpstreamCredentials("upstream-access-0", "upstream-refresh-0", clock() + expires_in)
    session = resolver.sessions.create_authenticated(creds, IDENTITY)
    token = resolver.issuer.issue(session.id, IDENTITY.user_id, IDENTITY.email).token
    return session, f"Bearer {token}"


@pytest.mark.parametrize("header,expected", [
    ("Bearer abc", "abc"),
    ("bearer abc", "abc"),
    ("Basic abc", None),
    ("Bearer", None),
    ("Bearer a b", None),
    ("", None),
    (None, None),
])
def test_extract_bearer_token(header, expected):
    assert extract_bearer_token(header) == expected


def test_resolves_live_session(resolver, clock, upstream):
    session, header = _signed_in(resolver, clock)
    ctx = asyncio.run(resolver.resolve(header))

    assert ctx is not None
    assert ctx.session_id == session.id
    assert ctx.claims.user_id == "42"
    assert upstream.refresh_calls == 0


@pytest.mark.parametrize("header", [None, "Bearer nope", "Token something"])
def test_bad_tokens_degrade_to_unauthenticated(resolver, header):
    assert asyncio.run(resolver.resolve(header)) is None


def test_deleted_session_revokes_token(resolver, clock):
    session, header = _signed_in(resolver, clock)
    resolver.sessions.delete(session.id)
    assert asyncio.run(resolver.resolve(header)) is None


def test_expired_bearer_token(resolver, clock):
    _, header = _signed_in(resolver, clock, expires_in=10 * settings.jwt_expiry_seconds)
    clock.advance(settings.jwt_expiry_seconds)
    assert asyncio.run(resolver.resolve(header)) is None


def test_refreshes_upstream_token_near_expiry(resolver, clock, upstream):
    session, header = _signed_in(resolver, clock, expires_in=settings.refresh_margin_seconds - 1)
    ctx = asyncio.run(resolver.resolve(header))

    assert ctx is not None
    assert upstream.refresh_calls == 1
    assert session.credentials.access_token == "upstream-access-1"
    assert session.credentials.refresh_token == "upstream-refresh-1"


def test_concurrent_requests_share_one_refresh(resolver, clock, upstream):
    upstream.refresh_delay = 0.01
    session, header = _signed_in(resolver, clock, expires_in=0)

    async def scenario():
        return await asyncio.gather(*(resolver.resolve(header) for _ in range(5)))

    results = asyncio.run(scenario())

    assert all(ctx is not None for ctx in results)
    assert upstream.refresh_calls == 1
    assert session.credentials.access_token == "upstream-access-1"


def test_failed_refresh_means_unauthenticated(resolver, clock, upstream):
    upstream.fail_refresh = True
    session, header = _signed_in(resolver, clock, expires_in=0)

    assert asyncio.run(resolver.resolve(header)) is None
    # the session survives; the client is expected to sign in again
    assert resolver.sessions.get(session.id) is session


def test_missing_refresh_token_means_unauthenticated(resolver, clock, upstream):
    creds = UpstreamCredentials("upstream-access-0", None, clock())
    session = resolver.sessions.create_authenticated(creds, IDENTITY)
    token = resolver.issuer.issue(session.id, "42", None).token

    assert asyncio.run(resolver.resolve(f"Bearer {token}")) is None
    assert upstream.refresh_calls == 0


def test_malformed_expires_in_on_refresh_means_unauthenticated(resolver, clock, upstream):
    upstream.expires_in = "soon"
    session, header = _signed_in(resolver, clock, expires_in=0)

    assert asyncio.run(resolver.resolve(header)) is None
    assert upstream.refresh_calls == 1
    assert session.credentials.access_token == "upstream-access-0"


def test_unexpected_failure_degrades_to_unauthenticated(resolver, clock, monkeypatch, caplog):
    async def broken_refresh(refresh_token):
        raise RuntimeError("boom")

    monkeypatch.setattr(resolver.upstream, "refresh", broken_refresh)
    _, header = _signed_in(resolver, clock, expires_in=0)

    with caplog.at_level(logging.ERROR, logger="authgate.services.auth"):
        assert asyncio.run(resolver.resolve(header)) is None
    assert "Unexpected error while resolving bearer token" in caplog.text


def test_swept_session_revokes_a_still_valid_token(upstream, clock, caplog):
    resolver = AuthResolver(
        SessionStore(ttl_seconds=60, clock=clock),
        CredentialIssuer(settings, clock=clock),
        UpstreamOAuthClient(settings, transport=upstream.transport, clock=clock),
        settings,
        clock=clock,
    )
    _, header = _signed_in(resolver, clock)
    clock.advance(61)
    assert resolver.sessions.sweep_expired() == 1
    assert resolver.issuer.verify(header.split()[1]) is not None

    with caplog.at_level(logging.INFO, logger="authgate.services.auth"):
        assert asyncio.run(resolver.resolve(header)) is None
    assert "outlived its session" in caplog.text
    assert upstream.refresh_calls == 0
