from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from mytube.app.config import FatalConfigError
from mytube.app.models.auth import DeviceChallenge, LoginCancelledError, OAuthCredential
from mytube.app.services.oauth_device_flow import (
    DEVICE_CODE_URL,
    REVOKE_URL,
    TOKEN_URL,
    DeviceFlowError,
    GoogleDeviceFlow,
)


class _ScriptedPostForm:
    def __init__(self, responses: dict[str, list[tuple[int, dict[str, Any]]]]) -> None:
        self._responses = responses
        self.requests: list[tuple[str, dict[str, str]]] = []

    def __call__(
        self, url: str, fields: dict[str, str], timeout_seconds: float
    ) -> tuple[int, dict[str, Any]]:
        self.requests.append((url, dict(fields)))
        return self._responses[url].pop(0)


_CHALLENGE_RESPONSE = (
    200,
    {
        "device_code": "device-123",
        "user_code": "WXYZ-1234",
        "verification_url": "https://www.google.com/device",
        "expires_in": 1800,
        "interval": 0.01,
    },
)


def _flow(post_form: _ScriptedPostForm, *, client_id: str | None = "client-id") -> GoogleDeviceFlow:
    return GoogleDeviceFlow(
        client_id=client_id,
        client_secret="client-secret",
        scope="scope-a scope-b",
        timeout_seconds=5.0,
        post_form=post_form,
    )


def test_run_reports_challenge_then_polls_until_approved() -> None:
    post_form = _ScriptedPostForm(
        {
            DEVICE_CODE_URL: [_CHALLENGE_RESPONSE],
            TOKEN_URL: [
                (428, {"error": "authorization_pending"}),
                (
                    200,
                    {
                        "access_token": "access-abc",
                        "refresh_token": "refresh-abc",
                        "expires_in": 3599,
                        "token_type": "Bearer",
                    },
                ),
            ],
        }
    )
    challenges: list[DeviceChallenge] = []

    credential = _flow(post_form).run(
        on_pending=challenges.append,
        cancel_event=threading.Event(),
    )

    assert [challenge.user_code for challenge in challenges] == ["WXYZ-1234"]
    assert credential.access_token == "access-abc"
    assert credential.refresh_token == "refresh-abc"
    assert credential.expiry > datetime.now(UTC) + timedelta(minutes=50)
    token_requests = [fields for url, fields in post_form.requests if url == TOKEN_URL]
    assert len(token_requests) == 2
    assert token_requests[0]["device_code"] == "device-123"
    assert token_requests[0]["grant_type"] == "urn:ietf:params:oauth:grant-type:device_code"


@pytest.mark.parametrize("error", ["access_denied", "expired_token", "invalid_client"])
def test_run_stops_on_terminal_errors(error: str) -> None:
    post_form = _ScriptedPostForm(
        {DEVICE_CODE_URL: [_CHALLENGE_RESPONSE], TOKEN_URL: [(400, {"error": error})]}
    )

    with pytest.raises(DeviceFlowError):
        _flow(post_form).run(on_pending=lambda _: None, cancel_event=threading.Event())


def test_run_honours_cancellation() -> None:
    post_form = _ScriptedPostForm({DEVICE_CODE_URL: [_CHALLENGE_RESPONSE], TOKEN_URL: []})
    cancel_event = threading.Event()

    with pytest.raises(LoginCancelledError):
        _flow(post_form).run(on_pending=lambda _: cancel_event.set(), cancel_event=cancel_event)

    assert all(url != TOKEN_URL for url, _ in post_form.requests)


def test_challenge_request_failure_is_device_flow_error() -> None:
    post_form = _ScriptedPostForm({DEVICE_CODE_URL: [(403, {"error": "restricted_client"})]})

    with pytest.raises(DeviceFlowError):
        _flow(post_form).request_challenge()


def test_missing_client_configuration_is_fatal() -> None:
    flow = _flow(_ScriptedPostForm({}), client_id=None)

    assert flow.configured is False
    with pytest.raises(FatalConfigError):
        flow.request_challenge()


def test_revoke_posts_refresh_token() -> None:
    post_form = _ScriptedPostForm({REVOKE_URL: [(200, {}), (400, {"error": "invalid_token"})]})
    credential = OAuthCredential(
        access_token="access",
        refresh_token="refresh",
        expiry=datetime.now(UTC) + timedelta(hours=1),
    )
    flow = _flow(post_form)

    flow.revoke(credential)
    with pytest.raises(DeviceFlowError):
        flow.revoke(credential)

    assert post_form.requests[0] == (REVOKE_URL, {"token": "refresh"})


def test_refresh_uses_google_auth_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    new_expiry = datetime(2030, 1, 1, 12, 0, 0)

    class FakeRequest:
        pass

    class FakeCredentials:
        def __init__(self, **kwargs: Any) -> None:
            self.kwargs = kwargs
            self.token = kwargs["token"]
            self.refresh_token = kwargs["refresh_token"]
            self.expiry: datetime | None = None

        def refresh(self, request: Any) -> None:
            assert isinstance(request, FakeRequest)
            self.token = "access-refreshed"
            self.expiry = new_expiry

    class FakeModule:
        Request = FakeRequest
        Credentials = FakeCredentials

    def fake_import_module(name: str) -> Any:
        assert name in {"google.auth.transport.requests", "google.oauth2.credentials"}
        return FakeModule

    monkeypatch.setattr(
        "mytube.app.services.oauth_device_flow.import_module", fake_import_module
    )
    credential = OAuthCredential(
        access_token="access-old",
        refresh_token="refresh-keep",
        expiry=datetime.now(UTC) - timedelta(minutes=1),
        scope="scope-a",
    )

    refreshed = _flow(_ScriptedPostForm({})).refresh(credential)

    assert refreshed.access_token == "access-refreshed"
    assert refreshed.refresh_token == "refresh-keep"
    assert refreshed.expiry == new_expiry.replace(tzinfo=UTC)
    assert refreshed.scope == "scope-a"
