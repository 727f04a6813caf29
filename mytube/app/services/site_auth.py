from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time

from mytube.app.config import AppSettings, require_site_login_secrets

LOGGER = logging.getLogger("mytube.site_auth")

SESSION_COOKIE_NAME = "session"
PUBLIC_PATHS: frozenset[str] = frozenset({"/login", "/api/login", "/health"})
PUBLIC_PREFIXES: tuple[str, ...] = ("/api/auth",)


class SiteLoginRejectedError(Exception):
    pass


class SiteSessionSigner:
    """Issues and checks the signed `session` cookie for the site login gate.

    Tokens are `<payload>.<signature>`, both base64url without padding; the
    payload is JSON with `sub`, `iat` and `exp` (epoch seconds) and the
    signature is HMAC-SHA256 over the encoded payload.
    """

    def __init__(self, *, secret: str, ttl_seconds: int) -> None:
        self._secret = secret.encode("utf-8")
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def issue(self, subject: str, *, now: float | None = None) -> str:
        issued_at = int(now if now is not None else time.time())
        payload = {"sub": subject, "iat": issued_at, "exp": issued_at + self._ttl_seconds}
        encoded = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return f"{encoded}.{self._sign(encoded)}"

    def verify(self, token: str | None, *, now: float | None = None) -> str | None:
        if not token or token.count(".") != 1:
            return None
        encoded, signature = token.split(".")
        if not hmac.compare_digest(signature, self._sign(encoded)):
            return None
        try:
            payload = json.loads(_b64decode(encoded))
        except (ValueError, UnicodeDecodeError):
            return None
        if not isinstance(payload, dict):
            return None
        subject = payload.get("sub")
        expires_at = payload.get("exp")
        if not isinstance(subject, str) or not isinstance(expires_at, int):
            return None
        current = now if now is not None else time.time()
        if current >= expires_at:
            return None
        return subject

    def _sign(self, encoded_payload: str) -> str:
        digest = hmac.new(self._secret, encoded_payload.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)


def authenticate_site_user(settings: AppSettings, login_id: str, password: str) -> str:
    """Check the configured site credentials and return a signed session token.

    Raises `FatalConfigError` when the gate is not configured.
    """

    expected_id, expected_password, secret = require_site_login_secrets(settings)
    id_matches = hmac.compare_digest(login_id.encode("utf-8"), expected_id.encode("utf-8"))
    password_matches = hmac.compare_digest(
        password.encode("utf-8"), expected_password.encode("utf-8")
    )
    if not (id_matches and password_matches):
        LOGGER.info("site login rejected")
        raise SiteLoginRejectedError("invalid id or password")
    signer = SiteSessionSigner(secret=secret, ttl_seconds=settings.site_session_ttl_seconds)
    LOGGER.info("site login accepted")
    return signer.issue(login_id)


def is_public_path(path: str) -> bool:
    if path in PUBLIC_PATHS:
        return True
    return any(path == prefix or path.startswith(f"{prefix}/") for prefix in PUBLIC_PREFIXES)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(encoded: str) -> bytes:
    padding = "=" * (-len(encoded) % 4)
    return base64.urlsafe_b64decode(encoded + padding)
