from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Literal

from mytube.app.models.outcomes import NextAction, ResultKind, guidance_for

LoginMethod = Literal["browser", "oauth", "cookie"]
TOKEN_EXPIRY_SKEW = timedelta(seconds=60)


@dataclass(frozen=True)
class CookieCredential:
    value: str
    kind: Literal["cookie"] = "cookie"


@dataclass(frozen=True)
class OAuthCredential:
    access_token: str
    refresh_token: str
    expiry: datetime
    scope: str | None = None
    token_type: str = "Bearer"
    kind: Literal["oauth"] = "oauth"

    def is_expired(self, *, now: datetime | None = None) -> bool:
        current = now if now is not None else datetime.now(UTC)
        return current + TOKEN_EXPIRY_SKEW >= self.expiry


Credential = CookieCredential | OAuthCredential


class AuthState(str, Enum):
    ANONYMOUS = "anonymous"
    LOGIN_PENDING = "login_pending"
    AUTHENTICATED = "authenticated"
    LOGIN_FAILED = "login_failed"


@dataclass(frozen=True)
class DeviceChallenge:
    verification_url: str
    user_code: str
    device_code: str = field(default="", repr=False)
    interval_seconds: float = 5.0
    expires_at: datetime | None = None


@dataclass(frozen=True)
class PendingChallenge:
    verification_url: str
    user_code: str


@dataclass(frozen=True)
class AuthStatus:
    authenticated: bool
    login_in_progress: bool
    pending_challenge: PendingChallenge | None
    state: AuthState
    method: LoginMethod | None = None
    error: str | None = None


@dataclass(frozen=True)
class LoginResult:
    kind: ResultKind
    message: str = ""
    next_action: NextAction = NextAction.NONE
    challenge: PendingChallenge | None = None
    authenticated: bool = False

    @property
    def ok(self) -> bool:
        return self.kind is ResultKind.OK

    @classmethod
    def success(
        cls,
        *,
        authenticated: bool,
        challenge: PendingChallenge | None = None,
    ) -> LoginResult:
        return cls(kind=ResultKind.OK, challenge=challenge, authenticated=authenticated)

    @classmethod
    def failure(cls, kind: ResultKind, *, message: str | None = None) -> LoginResult:
        guidance = guidance_for(kind)
        return cls(
            kind=kind,
            message=message or guidance.message,
            next_action=guidance.next_action,
        )


class LoginCancelledError(Exception):
    """A login strategy stopped because `cancel_login` was requested."""
