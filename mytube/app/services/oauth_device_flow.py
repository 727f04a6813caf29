from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from importlib import import_module
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from mytube.app.config import AppSettings, FatalConfigError
from mytube.app.models.auth import DeviceChallenge, LoginCancelledError, OAuthCredential

LOGGER = logging.getLogger("mytube.auth.oauth")

DEVICE_CODE_URL = "https://oauth2.googleapis.com/device/code"
TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"
DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
_SLOW_DOWN_STEP_SECONDS = 5.0


class DeviceFlowError(Exception):
    """The device authorization ended without a usable token."""


class DeviceFlowProvider(Protocol):
    def run(
        self,
        *,
        on_pending: Callable[[DeviceChallenge], None],
        cancel_event: threading.Event,
    ) -> OAuthCredential:
        ...

    def refresh(self, credential: OAuthCredential) -> OAuthCredential:
        ...

    def revoke(self, credential: OAuthCredential) -> None:
        ...


PostForm = Callable[[str, dict[str, str], float], tuple[int, dict[str, Any]]]


class GoogleDeviceFlow:
    """OAuth 2.0 device authorization grant against Google's endpoints.

    `run` requests a device code, reports the verification URL and user code
    through `on_pending`, then polls the token endpoint at the provider's
    interval until the user approves, denies, or the code expires.
    """

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        scope: str,
        timeout_seconds: float,
        post_form: PostForm | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._timeout_seconds = timeout_seconds
        self._post_form = post_form or _post_form

    @classmethod
    def from_settings(cls, settings: AppSettings) -> GoogleDeviceFlow:
        return cls(
            client_id=settings.oauth_client_id,
            client_secret=settings.oauth_client_secret,
            scope=settings.oauth_scope,
            timeout_seconds=settings.upstream_timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def run(
        self,
        *,
        on_pending: Callable[[DeviceChallenge], None],
        cancel_event: threading.Event,
    ) -> OAuthCredential:
        client_id, client_secret = self._require_client()
        challenge = self.request_challenge()
        on_pending(challenge)
        LOGGER.info(
            "oauth device flow pending verification_url=%s interval_seconds=%s",
            challenge.verification_url,
            challenge.interval_seconds,
        )

        interval = challenge.interval_seconds
        while True:
            if cancel_event.wait(interval):
                raise LoginCancelledError("device flow cancelled")
            if challenge.expires_at is not None and datetime.now(UTC) >= challenge.expires_at:
                raise DeviceFlowError("the device code expired before it was approved")

            status, payload = self._post_form(
                TOKEN_URL,
                {
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "device_code": challenge.device_code,
                    "grant_type": DEVICE_GRANT_TYPE,
                },
                self._timeout_seconds,
            )
            if status == 200:
                credential = _credential_from_token_payload(payload, fallback_refresh_token=None)
                LOGGER.info("oauth device flow approved expiry=%s", credential.expiry.isoformat())
                return credential

            error = str(payload.get("error") or f"http_{status}")
            if error == "authorization_pending":
                continue
            if error == "slow_down":
                interval += _SLOW_DOWN_STEP_SECONDS
                continue
            if error == "access_denied":
                raise DeviceFlowError("the sign-in request was denied")
            if error == "expired_token":
                raise DeviceFlowError("the device code expired before it was approved")
            raise DeviceFlowError(f"device flow failed: {error}")

    def request_challenge(self) -> DeviceChallenge:
        client_id, _ = self._require_client()
        status, payload = self._post_form(
            DEVICE_CODE_URL,
            {"client_id": client_id, "scope": self._scope},
            self._timeout_seconds,
        )
        if status != 200:
            raise DeviceFlowError(
                f"device code request failed status={status} error={payload.get('error')}"
            )
        verification_url = payload.get("verification_url") or payload.get("verification_uri")
        user_code = payload.get("user_code")
        device_code = payload.get("device_code")
        if not (
            isinstance(verification_url, str)
            and isinstance(user_code, str)
            and isinstance(device_code, str)
        ):
            raise DeviceFlowError("device code response is missing required fields")
        expires_in = _as_float(payload.get("expires_in"))
        return DeviceChallenge(
            verification_url=verification_url,
            user_code=user_code,
            device_code=device_code,
            interval_seconds=_as_float(payload.get("interval")) or 5.0,
            expires_at=(
                datetime.now(UTC) + timedelta(seconds=expires_in) if expires_in else None
            ),
        )

    def refresh(self, credential: OAuthCredential) -> OAuthCredential:
        client_id, client_secret = self._require_client()
        try:
            requests_module = import_module("google.auth.transport.requests")
            credentials_module = import_module("google.oauth2.credentials")
        except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
            raise DeviceFlowError("token refresh requires the google-auth dependency") from exc

        request_cls: Any = requests_module.Request
        credentials_cls: Any = credentials_module.Credentials
        google_credentials = credentials_cls(
            token=credential.access_token,
            refresh_token=credential.refresh_token,
            token_uri=TOKEN_URL,
            client_id=client_id,
            client_secret=client_secret,
            scopes=credential.scope.split() if credential.scope else None,
        )
        try:
            google_credentials.refresh(request_cls())
        except Exception as exc:
            LOGGER.warning("oauth token refresh failed", exc_info=True)
            raise DeviceFlowError(f"token refresh failed: {exc}") from exc

        expiry = google_credentials.expiry
        if isinstance(expiry, datetime):
            # google-auth reports naive UTC expiry values.
            expiry = expiry.replace(tzinfo=UTC) if expiry.tzinfo is None else expiry
        else:
            expiry = datetime.now(UTC) + timedelta(hours=1)
        return OAuthCredential(
            access_token=str(google_credentials.token),
            refresh_token=str(google_credentials.refresh_token or credential.refresh_token),
            expiry=expiry,
            scope=credential.scope,
            token_type=credential.token_type,
        )

    def revoke(self, credential: OAuthCredential) -> None:
        token = credential.refresh_token or credential.access_token
        status, payload = self._post_form(REVOKE_URL, {"token": token}, self._timeout_seconds)
        if status != 200:
            raise DeviceFlowError(f"token revoke failed status={status} error={payload.get('error')}")
        LOGGER.info("oauth token revoked")

    def _require_client(self) -> tuple[str, str]:
        if not self._client_id or not self._client_secret:
            raise FatalConfigError(
                "OAuth sign-in needs MYTUBE_OAUTH_CLIENT_ID and MYTUBE_OAUTH_CLIENT_SECRET"
            )
        return self._client_id, self._client_secret


def _credential_from_token_payload(
    payload: dict[str, Any],
    *,
    fallback_refresh_token: str | None,
) -> OAuthCredential:
    access_token = payload.get("access_token")
    refresh_token = payload.get("refresh_token") or fallback_refresh_token
    if not isinstance(access_token, str) or not isinstance(refresh_token, str):
        raise DeviceFlowError("token response is missing access or refresh token")
    expires_in = _as_float(payload.get("expires_in")) or 3600.0
    scope = payload.get("scope")
    token_type = payload.get("token_type")
    return OAuthCredential(
        access_token=access_token,
        refresh_token=refresh_token,
        expiry=datetime.now(UTC) + timedelta(seconds=expires_in),
        scope=scope if isinstance(scope, str) else None,
        token_type=token_type if isinstance(token_type, str) and token_type else "Bearer",
    )


def _post_form(
    url: str,
    fields: dict[str, str],
    timeout_seconds: float,
) -> tuple[int, dict[str, Any]]:
    request = Request(
        url,
        data=urlencode(fields).encode("utf-8"),
        headers={
            "content-type": "application/x-www-form-urlencoded",
            "accept": "application/json",
        },
        method="POST",
    )
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status_code = int(response.getcode() or 0)
            raw_body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        status_code = int(exc.code)
        raw_body = exc.read().decode("utf-8", errors="replace")
    except (URLError, TimeoutError, OSError) as exc:
        raise DeviceFlowError(f"oauth request failed: {exc}") from exc
    return status_code, _parse_json_dict(raw_body)


def _parse_json_dict(raw_body: str) -> dict[str, Any]:
    if not raw_body.strip():
        return {}
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {str(key): value for key, value in parsed.items()}


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float) and value > 0:
        return float(value)
    return None
