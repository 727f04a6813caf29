from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ResultKind(str, Enum):
    OK = "ok"
    STRATEGY_UNAVAILABLE = "strategy_unavailable"
    CREDENTIAL_INVALID = "credential_invalid"
    TRANSIENT_FAILURE = "transient_failure"
    AUTH_EXPIRED = "auth_expired"
    FATAL = "fatal"


class NextAction(str, Enum):
    NONE = "none"
    SWITCH_METHOD = "switch_method"
    REENTER_COOKIE = "reenter_cookie"
    RETRY_LATER = "retry_later"
    SIGN_IN_AGAIN = "sign_in_again"


@dataclass(frozen=True)
class Guidance:
    message: str
    next_action: NextAction


GUIDANCE: dict[ResultKind, Guidance] = {
    ResultKind.OK: Guidance(message="", next_action=NextAction.NONE),
    ResultKind.STRATEGY_UNAVAILABLE: Guidance(
        message=(
            "A controllable browser is not available on the server. "
            "Sign in with a device code or paste your YouTube cookies instead."
        ),
        next_action=NextAction.SWITCH_METHOD,
    ),
    ResultKind.CREDENTIAL_INVALID: Guidance(
        message="The supplied YouTube cookies were rejected. Copy them again and retry.",
        next_action=NextAction.REENTER_COOKIE,
    ),
    ResultKind.TRANSIENT_FAILURE: Guidance(
        message="YouTube did not respond as expected. Try again in a moment.",
        next_action=NextAction.RETRY_LATER,
    ),
    ResultKind.AUTH_EXPIRED: Guidance(
        message="Your YouTube sign-in expired. Sign in again to see personalized results.",
        next_action=NextAction.SIGN_IN_AGAIN,
    ),
    ResultKind.FATAL: Guidance(
        message="The server is missing required configuration.",
        next_action=NextAction.NONE,
    ),
}


def guidance_for(kind: ResultKind) -> Guidance:
    return GUIDANCE[kind]
