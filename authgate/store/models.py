# authgate/store/models.py
from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from enum import Enum


class AuthStatus(str, Enum):
    STARTED = "started"
    CALLBACK_RECEIVED = "callback_received"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class DownstreamClient:
    """OAuth parameters of the client that started a delegated flow."""

    redirect_uri: str
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    client_id: str | None = None


@dataclass(frozen=True)
class UpstreamCredentials:
    access_token: str
    refresh_token: str | None
    expires_at: float

    @classmethod
    def from_token_response(cls, data: dict, now: float) -> UpstreamCredentials:
        # providers that omit expires_in get a conservative hour; some send "3600.0"
        expires_in = float(data.get("expires_in") or 3600)
        if not math.isfinite(expires_in):
            raise ValueError(f"expires_in is not a finite number: {expires_in!r}")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=now + expires_in,
        )

    def __repr__(self) -> str:
        return f"UpstreamCredentials(expires_at={self.expires_at})"


@dataclass(frozen=True)
class UserIdentity:
    user_id: str
    name: str | None
    email: str | None

    def as_dict(self) -> dict:
        return {"id": self.user_id, "name": self.name, "email": self.email}


@dataclass
class Session:
    id: str
    csrf_state: str
    created_at: float
    downstream: DownstreamClient | None = None
    credentials: UpstreamCredentials | None = None
    identity: UserIdentity | None = None
    status: AuthStatus = AuthStatus.STARTED
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def is_delegated(self) -> bool:
        return self.downstream is not None


@dataclass
class AuthorizationCode:
    code: str
    session_id: str
    created_at: float
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    used: bool = False
