"""Double-hop OAuth broker.

Toward the upstream provider the gateway is an ordinary authorization-code
client. Toward downstream clients it is an authorization server that issues its
own single-use codes and bearer credentials.

Per attempt: STARTED -> CALLBACK_RECEIVED -> SUCCEEDED | FAILED, whether the
attempt is a direct browser login or a delegated downstream flow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from authgate.core.config import Settings, settings as default_settings
from authgate.core.crypto import CredentialIssuer, IssuedCredential, decode_state, encode_state, state_matches
from authgate.core.errors import (
    CallbackAlreadyHandled,
    CsrfMismatch,
    GatewayError,
    SessionExpiredOrMissing,
    UpstreamExchangeFailed,
)
from authgate.store.codes import AuthorizationCodeStore
from authgate.store.models import DownstreamClient, Session, UserIdentity
from authgate.store.sessions import SessionStore
from authgate.upstream.client import UpstreamOAuthClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationStart:
    session_id: str
    redirect_url: str


@dataclass(frozen=True)
class CallbackResult:
    session_id: str
    identity: UserIdentity
    credential: IssuedCredential | None = None
    redirect_url: str | None = None


def with_query(url: str, params: dict[str, str | None]) -> str:
    """Append ``params`` to ``url`` keeping any query it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


class OAuthBroker:
    def __init__(
        self,
        sessions: SessionStore,
        codes: AuthorizationCodeStore,
        issuer: CredentialIssuer,
        upstream: UpstreamOAuthClient,
        cfg: Settings | None = None,
    ):
        self.sessions = sessions
        self.codes = codes
        self.issuer = issuer
        self.upstream = upstream
        self.cfg = cfg or default_settings

    def begin_authorization(self, downstream: DownstreamClient | None = None) -> AuthorizationStart:
        session = self.sessions.create(downstream)
        state = encode_state(session.id, session.csrf_state, self.cfg)
        if downstream:
            logger.info("OAuth authorize initiated for redirect_uri: %s, session: %s",
                        downstream.redirect_uri, session.id)
        return AuthorizationStart(session.id, self.upstream.authorization_url(state))

    def recover_session_id(self, state: str | None, cookie_session_id: str | None) -> str | None:
        """Session id from the signed state, else from the cookie."""
        if state:
            session_id = decode_state(state, self.cfg)
            if session_id:
                return session_id
        return cookie_session_id or None

    def downstream_for(self, session_id: str | None) -> DownstreamClient | None:
        if not session_id:
            return None
        session = self.sessions.get(session_id)
        return session.downstream if session else None

    async def handle_callback(self, session_id: str | None, code: str,
                              returned_state: str | None) -> CallbackResult:
        session = self.sessions.get(session_id) if session_id else None
        if session is None:
            logger.warning("Session not found: %s", session_id)
            raise SessionExpiredOrMissing()

        if not state_matches(returned_state, session.id, session.csrf_state, self.cfg):
            logger.warning("State mismatch for session: %s", session.id)
            self.sessions.mark_failed(session.id)
            raise CsrfMismatch()

        if not self.sessions.begin_callback(session.id):
            logger.warning("Replayed callback for session %s (status=%s)",
                           session.id, session.status.value)
            raise CallbackAlreadyHandled()

        try:
            credentials = await self.upstream.exchange_code(code)
            identity = await self.upstream.fetch_identity(credentials.access_token)
        except UpstreamExchangeFailed as e:
            logger.error("OAuth callback failed for session %s: %s (upstream status %s)",
                         session.id, e.description, e.status_code)
            self.sessions.mark_failed(session.id)
            raise
        except BaseException:
            self.sessions.mark_failed(session.id)
            raise

        if not self.sessions.mutate_on_callback(session.id, credentials, identity):
            # swept or otherwise gone while we were talking to the upstream
            raise SessionExpiredOrMissing()

        logger.info("OAuth callback successful for user: %s", identity.user_id)

        if session.downstream is None:
            credential = self.issuer.issue(session.id, identity.user_id, identity.email)
            return CallbackResult(session.id, identity, credential=credential)

        downstream = session.downstream
        code_for_client = self.codes.issue(
            session.id, downstream.code_challenge, downstream.code_challenge_method
        )
        redirect_url = with_query(
            downstream.redirect_uri, {"code": code_for_client, "state": downstream.state}
        )
        logger.info("OAuth successful, redirecting to downstream client: %s", downstream.redirect_uri)
        return CallbackResult(session.id, identity, redirect_url=redirect_url)

    def abandon(self, session_id: str | None) -> None:
        """The upstream provider reported an error instead of a code."""
        if session_id:
            self.sessions.mark_failed(session_id)

    def failure_redirect(self, session_id: str | None, error: str,
                         description: str | None = None) -> str | None:
        """Error redirect back to a delegated client, None for direct flows."""
        downstream = self.downstream_for(session_id)
        if downstream is None:
            return None
        return with_query(downstream.redirect_uri, {
            "error": error,
            "error_description": description,
            "state": downstream.state,
        })

    def error_redirect(self, session_id: str | None, exc: GatewayError) -> str | None:
        return self.failure_redirect(session_id, exc.oauth_error, exc.description)

    def redeem_downstream_code(self, code: str, code_verifier: str | None = None) -> IssuedCredential:
        session_id = self.codes.redeem(code, code_verifier)
        session = self.sessions.get(session_id)
        if session is None or session.identity is None:
            logger.warning("Session not found for auth code: %s", session_id)
            raise SessionExpiredOrMissing("Session not found")
        credential = self.issuer.issue(session.id, session.identity.user_id, session.identity.email)
        logger.info("Auth code exchanged for session: %s", session.id)
        return credential

    async def authenticate_with_code(self, code: str) -> tuple[Session, IssuedCredential]:
        """API flow: the caller already holds an upstream authorization code."""
        credentials = await self.upstream.exchange_code(code)
        identity = await self.upstream.fetch_identity(credentials.access_token)
        session = self.sessions.create_authenticated(credentials, identity)
        credential = self.issuer.issue(session.id, identity.user_id, identity.email)
        logger.info("Token exchange successful for user: %s", identity.user_id)
        return session, credential

    def logout(self, session_id: str) -> bool:
        return self.sessions.delete(session_id)

    def stats(self) -> dict:
        return {**self.sessions.stats(), "pending_codes": len(self.codes)}
