from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast

from mytube.app.models.auth import CookieCredential, Credential, OAuthCredential

LOGGER = logging.getLogger("mytube.credentials")


class CredentialStore:
    """Durable home for the single active credential.

    Cookie credentials are kept as the raw cookie string, OAuth token sets as
    JSON. Saving one kind removes the other.
    """

    def __init__(self, *, cookie_path: Path, oauth_token_path: Path) -> None:
        self._cookie_path = cookie_path
        self._oauth_token_path = oauth_token_path

    @property
    def cookie_path(self) -> Path:
        return self._cookie_path

    @property
    def oauth_token_path(self) -> Path:
        return self._oauth_token_path

    def load(self) -> Credential | None:
        oauth_credential = self._load_oauth()
        if oauth_credential is not None:
            return oauth_credential
        return self._load_cookie()

    def save(self, credential: Credential) -> None:
        if isinstance(credential, CookieCredential):
            _atomic_write(self._cookie_path, credential.value)
            _unlink_quietly(self._oauth_token_path)
        else:
            _atomic_write(self._oauth_token_path, json.dumps(_oauth_to_json(credential)))
            _unlink_quietly(self._cookie_path)
        LOGGER.info("credential saved kind=%s", credential.kind)

    def delete(self) -> None:
        removed_cookie = _unlink_quietly(self._cookie_path)
        removed_token = _unlink_quietly(self._oauth_token_path)
        LOGGER.info(
            "credential deleted cookie_removed=%s oauth_removed=%s",
            removed_cookie,
            removed_token,
        )

    def _load_cookie(self) -> CookieCredential | None:
        if not self._cookie_path.is_file():
            return None
        try:
            raw_value = self._cookie_path.read_text(encoding="utf-8").strip()
        except OSError:
            LOGGER.warning("credential unreadable path=%s", self._cookie_path, exc_info=True)
            return None
        if not raw_value:
            return None
        LOGGER.info("credential loaded kind=cookie path=%s", self._cookie_path)
        return CookieCredential(value=raw_value)

    def _load_oauth(self) -> OAuthCredential | None:
        if not self._oauth_token_path.is_file():
            return None
        try:
            payload = json.loads(self._oauth_token_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            LOGGER.warning(
                "credential unreadable path=%s", self._oauth_token_path, exc_info=True
            )
            return None
        credential = _oauth_from_json(payload)
        if credential is None:
            LOGGER.warning("credential malformed path=%s", self._oauth_token_path)
            return None
        LOGGER.info("credential loaded kind=oauth path=%s", self._oauth_token_path)
        return credential


def _oauth_to_json(credential: OAuthCredential) -> dict[str, Any]:
    return {
        "access_token": credential.access_token,
        "refresh_token": credential.refresh_token,
        "expiry": credential.expiry.astimezone(UTC).isoformat(),
        "scope": credential.scope,
        "token_type": credential.token_type,
    }


def _oauth_from_json(payload: object) -> OAuthCredential | None:
    if not isinstance(payload, dict):
        return None
    data = cast(dict[str, Any], payload)
    access_token = data.get("access_token")
    refresh_token = data.get("refresh_token")
    raw_expiry = data.get("expiry")
    if not isinstance(access_token, str) or not isinstance(refresh_token, str):
        return None
    if not isinstance(raw_expiry, str):
        return None
    try:
        expiry = datetime.fromisoformat(raw_expiry)
    except ValueError:
        return None
    expiry = expiry.replace(tzinfo=UTC) if expiry.tzinfo is None else expiry.astimezone(UTC)
    scope = data.get("scope")
    token_type = data.get("token_type")
    return OAuthCredential(
        access_token=access_token,
        refresh_token=refresh_token,
        expiry=expiry,
        scope=scope if isinstance(scope, str) else None,
        token_type=token_type if isinstance(token_type, str) and token_type else "Bearer",
    )


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.tmp")
    temp_path.write_text(text, encoding="utf-8")
    os.chmod(temp_path, 0o600)
    temp_path.replace(path)


def _unlink_quietly(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
