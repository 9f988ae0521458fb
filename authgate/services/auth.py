"""Bearer token -> live session -> upstream API handle."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from authgate.core.config import Settings, settings as default_settings
from authgate.core.crypto import BearerClaims, CredentialIssuer
from authgate.core.errors import CredentialInvalidOrExpired, SessionExpiredOrMissing, UpstreamRefreshFailed
from authgate.store.models import Session, UpstreamCredentials
from authgate.store.sessions import SessionStore
from authgate.upstream.client import UpstreamApi, UpstreamOAuthClient

logger = logging.getLogger(__name__)


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        return None
    return parts[1]


@dataclass(frozen=True)
class AuthContext:
    claims: BearerClaims
    session: Session
    api: UpstreamApi

    @property
    def session_id(self) -> str:
        return self.session.id


class AuthResolver:
    """Resolves a request's bearer token without ever raising.

    Any failure degrades to "unauthenticated" and the caller decides whether
    that is acceptable for the method at hand. Concurrent requests hitting the
    same expired upstream token share one refresh call.
    """

    def __init__(
        self,
        sessions: SessionStore,
        issuer: CredentialIssuer,
        upstream: UpstreamOAuthClient,
        cfg: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.sessions = sessions
        self.issuer = issuer
        self.upstream = upstream
        self.cfg = cfg or default_settings
        self._clock = clock
        self._refreshing: dict[str, asyncio.Task] = {}

    async def resolve(self, authorization: str | None) -> AuthContext | None:
        token = extract_bearer_token(authorization)
        if token is None:
            return None
        try:
            return await self._resolve(token)
        except CredentialInvalidOrExpired as e:
            logger.debug("Unauthenticated request: %s", e.description)
        except SessionExpiredOrMissing as e:
            logger.info("Bearer token outlived its session: %s", e.description)
        except UpstreamRefreshFailed as e:
            logger.warning("Upstream refresh failed, re-authentication required: %s", e.description)
        except Exception:
            logger.exception("Unexpected error while resolving bearer token")
        return None

    async def _resolve(self, token: str) -> AuthContext:
        claims = self.issuer.verify(token)
        if claims is None:
            raise CredentialInvalidOrExpired()

        session = self.sessions.get(claims.session_id)
        if session is None:
            raise SessionExpiredOrMissing(f"No live session {claims.session_id}")
        if session.credentials is None:
            raise CredentialInvalidOrExpired(f"Session {claims.session_id} holds no upstream credentials")

        credentials = await self._fresh_credentials(session)
        return AuthContext(claims=claims, session=session, api=self.upstream.api(credentials.access_token))

    def _needs_refresh(self, credentials: UpstreamCredentials) -> bool:
        return credentials.expires_at - self.cfg.refresh_margin_seconds <= self._clock()

    async def _fresh_credentials(self, session: Session) -> UpstreamCredentials:
        current = session.credentials
        if not self._needs_refresh(current):
            return current

        task = self._refreshing.get(session.id)
        if task is None:
            task = asyncio.create_task(self._refresh(session.id, current))
            self._refreshing[session.id] = task
            task.add_done_callback(lambda _t, sid=session.id: self._refreshing.pop(sid, None))
        # shield: one cancelled request must not cancel the refresh others wait on
        return await asyncio.shield(task)

    async def _refresh(self, session_id: str, current: UpstreamCredentials) -> UpstreamCredentials:
        new = await self.upstream.refresh(current.refresh_token)
        if not self.sessions.replace_credentials(session_id, current, new):
            session = self.sessions.get(session_id)
            if session is None or session.credentials is None:
                raise UpstreamRefreshFailed("Session disappeared during refresh")
            # someone else already stored newer credentials
            return session.credentials
        return new
