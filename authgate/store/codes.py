"""Single-use authorization codes handed to downstream OAuth clients."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable

from authgate.core.crypto import verify_pkce
from authgate.core.errors import CodeAlreadyUsed, CodeExpired, CodeNotFound, PkceMismatch
from authgate.store.models import AuthorizationCode

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _Tombstone:
    created_at: float


class AuthorizationCodeStore:
    """Codes are deleted on first redemption.

    A tombstone keyed by the code outlives the record until the code's TTL so
    that replays report ``CodeAlreadyUsed`` instead of ``CodeNotFound``. The
    tombstone is claimed with ``dict.setdefault``, which makes the first
    redeemer the only winner even when redemptions run on several threads.
    """

    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._codes: dict[str, AuthorizationCode] = {}
        self._redeemed: dict[str, _Tombstone] = {}

    def __len__(self) -> int:
        return len(self._codes)

    def issue(
        self,
        session_id: str,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
    ) -> str:
        code = secrets.token_urlsafe(32)
        self._codes[code] = AuthorizationCode(
            code=code,
            session_id=session_id,
            created_at=self._clock(),
            code_challenge=code_challenge,
            code_challenge_method=(code_challenge_method or "S256") if code_challenge else None,
        )
        logger.info("Generated auth code for session: %s", session_id)
        return code

    def redeem(self, code: str, code_verifier: str | None = None) -> str:
        """Consume ``code`` and return the session id it unlocks."""
        if code in self._redeemed:
            logger.warning("Auth code already used")
            raise CodeAlreadyUsed()

        record = self._codes.get(code)
        if record is None:
            if code in self._redeemed:
                raise CodeAlreadyUsed()
            logger.warning("Auth code not found")
            raise CodeNotFound()

        if self._clock() - record.created_at > self.ttl_seconds:
            self._codes.pop(code, None)
            logger.warning("Auth code expired for session: %s", record.session_id)
            raise CodeExpired()

        marker = _Tombstone(record.created_at)
        if self._redeemed.setdefault(code, marker) is not marker:
            raise CodeAlreadyUsed()
        self._codes.pop(code, None)
        record.used = True

        if record.code_challenge is not None:
            if not code_verifier or not verify_pkce(
                code_verifier, record.code_challenge, record.code_challenge_method or "S256"
            ):
                logger.warning("PKCE verification failed for session: %s", record.session_id)
                raise PkceMismatch()

        logger.info("Auth code redeemed for session: %s", record.session_id)
        return record.session_id

    def sweep_expired(self) -> int:
        now = self._clock()
        removed = 0
        for code, record in list(self._codes.items()):
            if now - record.created_at > self.ttl_seconds:
                self._codes.pop(code, None)
                removed += 1
        for code, tombstone in list(self._redeemed.items()):
            if now - tombstone.created_at > self.ttl_seconds:
                self._redeemed.pop(code, None)
        return removed
