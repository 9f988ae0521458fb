"""In-memory session store.

Sessions live for the life of the process only; a restart invalidates every
session and every bearer credential that points at one.

Mutations of a single session are guarded by that session's own lock, held only
for the synchronous critical section. Nothing here awaits, so an upstream call
never runs while a lock is held and unrelated sessions never contend.
"""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from typing import Callable

from authgate.store.models import (
    AuthStatus,
    DownstreamClient,
    Session,
    UpstreamCredentials,
    UserIdentity,
)

logger = logging.getLogger(__name__)


class SessionStore:
    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def _expired(self, session: Session, now: float) -> bool:
        return now - session.created_at > self.ttl_seconds

    def create(self, downstream: DownstreamClient | None = None) -> Session:
        session = Session(
            id=str(uuid.uuid4()),
            csrf_state=secrets.token_urlsafe(32),
            created_at=self._clock(),
            downstream=downstream,
        )
        self._sessions[session.id] = session
        logger.info(
            "Created session %s (delegated=%s)", session.id, session.is_delegated
        )
        return session

    def create_authenticated(
        self, credentials: UpstreamCredentials, identity: UserIdentity
    ) -> Session:
        """Session for a caller that completed the upstream exchange itself."""
        session = Session(
            id=str(uuid.uuid4()),
            csrf_state="",
            created_at=self._clock(),
            credentials=credentials,
            identity=identity,
            status=AuthStatus.SUCCEEDED,
        )
        self._sessions[session.id] = session
        logger.info("Created authenticated session %s", session.id)
        return session

    def get(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._expired(session, self._clock()):
            return None
        return session

    def begin_callback(self, session_id: str) -> bool:
        """STARTED -> CALLBACK_RECEIVED. False if any callback got here first."""
        session = self.get(session_id)
        if session is None:
            return False
        with session.lock:
            if session.status is not AuthStatus.STARTED:
                return False
            session.status = AuthStatus.CALLBACK_RECEIVED
            return True

    def mark_failed(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        with session.lock:
            if session.status is not AuthStatus.SUCCEEDED:
                session.status = AuthStatus.FAILED

    def mutate_on_callback(
        self, session_id: str, credentials: UpstreamCredentials, identity: UserIdentity
    ) -> bool:
        session = self.get(session_id)
        if session is None:
            logger.warning("Session %s vanished before callback completed", session_id)
            return False
        with session.lock:
            if session.status not in (AuthStatus.STARTED, AuthStatus.CALLBACK_RECEIVED):
                logger.warning(
                    "Refusing to overwrite session %s in state %s",
                    session_id,
                    session.status.value,
                )
                return False
            session.credentials = credentials
            session.identity = identity
            session.status = AuthStatus.SUCCEEDED
        return True

    def replace_credentials(
        self,
        session_id: str,
        expected: UpstreamCredentials | None,
        new: UpstreamCredentials,
    ) -> bool:
        """Compare-and-swap of the session's upstream credentials."""
        session = self.get(session_id)
        if session is None:
            return False
        with session.lock:
            if session.credentials is not expected:
                return False
            session.credentials = new
        return True

    def delete(self, session_id: str) -> bool:
        existed = self._sessions.pop(session_id, None) is not None
        if existed:
            logger.info("Session invalidated: %s", session_id)
        return existed

    def sweep_expired(self) -> int:
        now = self._clock()
        removed = 0
        for session_id, session in list(self._sessions.items()):
            if self._expired(session, now):
                self._sessions.pop(session_id, None)
                removed += 1
                logger.debug("Cleaned up expired session: %s", session_id)
        return removed

    def stats(self) -> dict:
        oldest = min((s.created_at for s in self._sessions.values()), default=None)
        return {"active_sessions": len(self._sessions), "oldest_session": oldest}
