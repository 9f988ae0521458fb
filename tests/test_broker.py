# tests/test_broker.py
import asyncio

import pytest

from authgate.core.config import settings
from authgate.core.crypto import CredentialIssuer, encode_state, pkce_challenge
from authgate.core.errors import (
    CallbackAlreadyHandled,
    CodeAlreadyUsed,
    CsrfMismatch,
    PkceMismatch,
    SessionExpiredOrMissing,
    UpstreamExchangeFailed,
)
from authgate.services.broker import OAuthBroker, with_query
from authgate.store.codes import AuthorizationCodeStore
from authgate.store.models import AuthStatus, DownstreamClient
from authgate.store.sessions import SessionStore
from authgate.upstream.client import UpstreamOAuthClient

from conftest import UPSTREAM_USER, query_of

VERIFIER = "broker-test-verifier-0123456789-abcdefghijklmnopqrstuvwxyz"


@pytest.fixture
def broker(upstream, clock):
    return OAuthBroker(
        SessionStore(settings.session_ttl_seconds, clock=clock),
        AuthorizationCodeStore(settings.auth_code_ttl_seconds, clock=clock),
        CredentialIssuer(settings, clock=clock),
        UpstreamOAuthClient(settings, transport=upstream.transport, clock=clock),
        settings,
    )


def _state_of(start) -> str:
    return query_of(start.redirect_url)["state"]


def test_authorization_url_targets_upstream(broker):
    start = broker.begin_authorization()
    params = query_of(start.redirect_url)

    assert start.redirect_url.startswith(settings.upstream_auth_url)
    assert params["client_id"] == settings.upstream_client_id
    assert params["redirect_uri"] == settings.upstream_redirect_uri
    assert params["response_type"] == "code"
    assert broker.recover_session_id(params["state"], None) == start.session_id


def test_direct_callback_issues_credential(broker, upstream):
    start = broker.begin_authorization()
    result = asyncio.run(broker.handle_callback(start.session_id, "upstream-code", _state_of(start)))

    assert result.redirect_url is None
    assert result.identity.user_id == str(UPSTREAM_USER["id"])
    claims = broker.issuer.verify(result.credential.token)
    assert claims.session_id == start.session_id

    session = broker.sessions.get(start.session_id)
    assert session.status is AuthStatus.SUCCEEDED
    assert session.credentials.access_token.startswith("upstream-access-")
    assert upstream.exchanged_codes == ["upstream-code"]


def test_state_mismatch_fails_the_attempt(broker, upstream):
    start = broker.begin_authorization()
    other = broker.begin_authorization()

    with pytest.raises(CsrfMismatch):
        asyncio.run(broker.handle_callback(start.session_id, "code", _state_of(other)))

    session = broker.sessions.get(start.session_id)
    assert session.status is AuthStatus.FAILED
    assert session.credentials is None
    assert upstream.exchanged_codes == []


def test_missing_session(broker):
    with pytest.raises(SessionExpiredOrMissing):
        asyncio.run(broker.handle_callback("does-not-exist", "code", "state"))
    with pytest.raises(SessionExpiredOrMissing):
        asyncio.run(broker.handle_callback(None, "code", None))


def test_expired_session(broker, clock):
    start = broker.begin_authorization()
    clock.advance(settings.session_ttl_seconds + 1)
    with pytest.raises(SessionExpiredOrMissing):
        asyncio.run(broker.handle_callback(start.session_id, "code", _state_of(start)))


def test_replayed_callback_is_refused(broker, upstream):
    start = broker.begin_authorization()
    state = _state_of(start)
    asyncio.run(broker.handle_callback(start.session_id, "code-1", state))

    with pytest.raises(CallbackAlreadyHandled):
        asyncio.run(broker.handle_callback(start.session_id, "code-2", state))
    assert upstream.exchanged_codes == ["code-1"]


def test_concurrent_callbacks_mutate_once(broker, upstream):
    start = broker.begin_authorization()
    state = _state_of(start)

    async def scenario():
        return await asyncio.gather(
            broker.handle_callback(start.session_id, "code-a", state),
            broker.handle_callback(start.session_id, "code-b", state),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1 and isinstance(errors[0], CallbackAlreadyHandled)
    assert len(upstream.exchanged_codes) == 1


def test_upstream_timeout_leaves_session_failed(broker, upstream):
    upstream.timeout_token = True
    start = broker.begin_authorization()

    with pytest.raises(UpstreamExchangeFailed) as exc:
        asyncio.run(broker.handle_callback(start.session_id, "code", _state_of(start)))

    assert "timed out" in exc.value.description
    session = broker.sessions.get(start.session_id)
    assert session.status is AuthStatus.FAILED
    assert session.credentials is None and session.identity is None


def test_upstream_rejection_leaves_session_failed(broker, upstream):
    upstream.fail_token = True
    start = broker.begin_authorization()

    with pytest.raises(UpstreamExchangeFailed) as exc:
        asyncio.run(broker.handle_callback(start.session_id, "code", _state_of(start)))

    assert exc.value.status_code == 400
    assert exc.value.description == "Code is invalid"
    assert broker.sessions.get(start.session_id).status is AuthStatus.FAILED


def test_fractional_expires_in_string_is_accepted(broker, upstream, clock):
    upstream.expires_in = "3600.0"
    start = broker.begin_authorization()
    asyncio.run(broker.handle_callback(start.session_id, "code", _state_of(start)))

    session = broker.sessions.get(start.session_id)
    assert session.status is AuthStatus.SUCCEEDED
    assert session.credentials.expires_at == clock() + 3600


def test_malformed_expires_in_leaves_session_failed(broker, upstream):
    upstream.expires_in = "soon"
    start = broker.begin_authorization()

    with pytest.raises(UpstreamExchangeFailed) as exc:
        asyncio.run(broker.handle_callback(start.session_id, "code", _state_of(start)))

    assert "expires_in" in exc.value.description
    session = broker.sessions.get(start.session_id)
    assert session.status is AuthStatus.FAILED
    assert session.credentials is None


def test_delegated_flow_redirects_with_code_and_client_state(broker):
    downstream = DownstreamClient(
        redirect_uri="http://localhost:9999/callback?keep=1",
        state="client-state",
        code_challenge=pkce_challenge(VERIFIER),
        code_challenge_method="S256",
    )
    start = broker.begin_authorization(downstream)
    result = asyncio.run(broker.handle_callback(start.session_id, "code", _state_of(start)))

    assert result.credential is None
    assert result.redirect_url.startswith("http://localhost:9999/callback?")
    params = query_of(result.redirect_url)
    assert params["keep"] == "1"
    assert params["state"] == "client-state"

    credential = broker.redeem_downstream_code(params["code"], VERIFIER)
    assert broker.issuer.verify(credential.token).session_id == start.session_id

    with pytest.raises(CodeAlreadyUsed):
        broker.redeem_downstream_code(params["code"], VERIFIER)


@pytest.mark.parametrize("verifier", [None, "the-wrong-verifier-0123456789-abcdefghijklmnopqrstuvwxyz"])
def test_delegated_flow_rejects_bad_pkce(broker, verifier):
    downstream = DownstreamClient(
        redirect_uri="http://localhost:9999/callback",
        code_challenge=pkce_challenge(VERIFIER),
        code_challenge_method="S256",
    )
    start = broker.begin_authorization(downstream)
    result = asyncio.run(broker.handle_callback(start.session_id, "code", _state_of(start)))
    code = query_of(result.redirect_url)["code"]

    with pytest.raises(PkceMismatch):
        broker.redeem_downstream_code(code, verifier)


def test_failure_redirect_only_for_delegated_sessions(broker):
    direct = broker.begin_authorization()
    delegated = broker.begin_authorization(
        DownstreamClient(redirect_uri="http://localhost:9999/callback", state="s1")
    )

    assert broker.failure_redirect(direct.session_id, "access_denied") is None
    url = broker.failure_redirect(delegated.session_id, "access_denied", "denied by user")
    assert query_of(url) == {"error": "access_denied", "error_description": "denied by user", "state": "s1"}


def test_recover_session_prefers_state_over_cookie(broker):
    start = broker.begin_authorization()
    state = _state_of(start)

    assert broker.recover_session_id(state, "cookie-session") == start.session_id
    assert broker.recover_session_id("undecodable", "cookie-session") == "cookie-session"
    assert broker.recover_session_id(None, None) is None


def test_cookie_fallback_still_requires_exact_state(broker):
    start = broker.begin_authorization()
    session = broker.sessions.get(start.session_id)
    forged = encode_state(start.session_id, "guessed-csrf", settings)

    with pytest.raises(CsrfMismatch):
        asyncio.run(broker.handle_callback(start.session_id, "code", forged))
    assert session.status is AuthStatus.FAILED


def test_authenticate_with_code_creates_session(broker):
    session, credential = asyncio.run(broker.authenticate_with_code("api-code"))
    assert session.status is AuthStatus.SUCCEEDED
    assert broker.issuer.verify(credential.token).user_id == "42"
    assert broker.stats()["active_sessions"] == 1


def test_logout_revokes_session(broker):
    session, credential = asyncio.run(broker.authenticate_with_code("api-code"))
    assert broker.logout(session.id) is True
    assert broker.sessions.get(session.id) is None


def test_with_query_skips_missing_values():
    assert with_query("http://x/cb", {"code": "c", "state": None}) == "http://x/cb?code=c"
