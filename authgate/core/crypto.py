# authgate/core/crypto.py
from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import jwt
from jwt import InvalidTokenError
from cryptography.hazmat.primitives import serialization

from authgate.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

STATE_ALG = "HS256"


def _uses_key_pair(alg: str) -> bool:
    return alg[:2] in ("RS", "ES", "PS")


def _load_private_key(cfg: Settings):
    return serialization.load_pem_private_key(
        Path(cfg.priv_key_path).read_bytes(), password=None
    )


def _load_public_key_pem(cfg: Settings):
    return serialization.load_pem_public_key(
        Path(cfg.pub_key_path).read_bytes()
    )


@dataclass(frozen=True)
class BearerClaims:
    session_id: str
    user_id: str
    email: str | None
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class IssuedCredential:
    token: str
    expires_in: int
    claims: BearerClaims


class CredentialIssuer:
    """Mints and verifies the bearer JWT handed to downstream clients.

    The token only names a session. Deleting the session revokes every token
    that references it, which signature checks alone cannot detect.
    """

    def __init__(self, cfg: Settings | None = None, clock: Callable[[], float] = time.time):
        self.cfg = cfg or default_settings
        self._clock = clock

    def _signing_key(self):
        if _uses_key_pair(self.cfg.jwt_alg):
            return _load_private_key(self.cfg)
        return self.cfg.jwt_secret

    def _verification_key(self):
        if _uses_key_pair(self.cfg.jwt_alg):
            return _load_public_key_pem(self.cfg)
        return self.cfg.jwt_secret

    def issue(self, session_id: str, user_id: str, email: str | None) -> IssuedCredential:
        now = int(self._clock())
        exp = now + self.cfg.jwt_expiry_seconds
        payload = {
            "iss": self.cfg.jwt_issuer,
            "sub": str(user_id),
            "sid": session_id,
            "email": email,
            "iat": now,
            "exp": exp,
            "jti": uuid.uuid4().hex,
        }
        token = jwt.encode(payload, self._signing_key(), algorithm=self.cfg.jwt_alg)
        claims = BearerClaims(
            session_id=session_id, user_id=str(user_id), email=email, issued_at=now, expires_at=exp
        )
        return IssuedCredential(token=token, expires_in=self.cfg.jwt_expiry_seconds, claims=claims)

    def verify(self, token: str) -> BearerClaims | None:
        """Claims for a good token, None otherwise.

        Tampered and expired tokens are indistinguishable to the caller; the
        reason only reaches the debug log.
        """
        try:
            data = jwt.decode(
                token,
                self._verification_key(),
                algorithms=[self.cfg.jwt_alg],
                issuer=self.cfg.jwt_issuer,
                options={
                    "require": ["exp", "iat", "sid", "sub"],
                    # expiry is judged against our own clock below
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except InvalidTokenError as e:
            logger.debug("Bearer token rejected: invalid (%s)", e)
            return None

        if int(data["exp"]) <= self._clock():
            logger.debug("Bearer token rejected: expired (session %s)", data.get("sid"))
            return None

        return BearerClaims(
            session_id=data["sid"],
            user_id=str(data["sub"]),
            email=data.get("email"),
            issued_at=int(data["iat"]),
            expires_at=int(data["exp"]),
        )


def encode_state(session_id: str, csrf_state: str, cfg: Settings | None = None) -> str:
    """Build the ``state`` sent upstream.

    It carries the session id so the callback can find the session when the
    browser drops our cookie across the cross-site redirect.
    """
    cfg = cfg or default_settings
    return jwt.encode({"sid": session_id, "csrf": csrf_state}, cfg.session_secret, algorithm=STATE_ALG)


def decode_state(state: str, cfg: Settings | None = None) -> str | None:
    cfg = cfg or default_settings
    try:
        data = jwt.decode(state, cfg.session_secret, algorithms=[STATE_ALG])
    except InvalidTokenError as e:
        logger.debug("State parameter could not be decoded: %s", e)
        return None
    sid = data.get("sid")
    return sid if isinstance(sid, str) else None


def state_matches(returned_state: str | None, session_id: str, csrf_state: str,
                  cfg: Settings | None = None) -> bool:
    if not returned_state or not csrf_state:
        return False
    expected = encode_state(session_id, csrf_state, cfg)
    return secrets.compare_digest(returned_state.encode(), expected.encode())


def pkce_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def verify_pkce(code_verifier: str, code_challenge: str, method: str = "S256") -> bool:
    if method != "S256":
        return False
    return secrets.compare_digest(pkce_challenge(code_verifier).encode(), code_challenge.encode())
