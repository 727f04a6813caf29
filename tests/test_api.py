from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from google import genai
from google.genai import errors as genai_errors

from mytube.app.dependencies import reset_cached_dependencies
from mytube.app.main import create_app
from tests.fakes import VALID_COOKIE, FakeUpstream


@contextmanager
def _gated_client(
    app_env: Path,
    monkeypatch: pytest.MonkeyPatch,
    *,
    with_secret: bool = True,
) -> Iterator[TestClient]:
    monkeypatch.setenv("MYTUBE_SITE_LOGIN_ENABLED", "1")
    monkeypatch.setenv("MYTUBE_SITE_LOGIN_ID", "owner")
    monkeypatch.setenv("MYTUBE_SITE_LOGIN_PASSWORD", "hunter22")
    if with_secret:
        monkeypatch.setenv("MYTUBE_SITE_SESSION_SECRET", "signing-secret")
    reset_cached_dependencies()
    try:
        with TestClient(create_app()) as test_client:
            yield test_client
    finally:
        reset_cached_dependencies()


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_request_id_is_echoed(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]


def test_status_starts_anonymous(client: TestClient) -> None:
    response = client.get("/api/auth/status")

    assert response.status_code == 200
    body = response.json()
    assert body["authenticated"] is False
    assert body["loginInProgress"] is False
    assert body["pendingChallenge"] is None
    assert body["state"] == "anonymous"


def test_short_cookie_is_rejected_with_guidance(client: TestClient) -> None:
    response = client.post("/api/auth/cookie", json={"cookie": "SID=1"})

    assert response.status_code == 400
    body = response.json()
    assert body["nextAction"] == "reenter_cookie"
    assert "error" in body


def test_valid_cookie_signs_in_and_persists(client: TestClient, app_env: Path) -> None:
    response = client.post("/api/auth/cookie", json={"cookie": VALID_COOKIE})

    assert response.status_code == 200
    assert response.json() == {"ok": True, "authenticated": True}
    status = client.get("/api/auth/status").json()
    assert status["authenticated"] is True
    assert status["method"] == "cookie"
    assert (app_env / "youtube-cookie.txt").read_text(encoding="utf-8").strip() == VALID_COOKIE


def test_rejected_cookie_reports_failure_without_signing_in(
    client: TestClient, upstream: FakeUpstream
) -> None:
    upstream.rejected_cookies = frozenset({VALID_COOKIE})

    response = client.post("/api/auth/cookie", json={"cookie": VALID_COOKIE})

    assert response.status_code == 200
    body = response.json()
    assert body["authenticated"] is False
    assert body["nextAction"] == "reenter_cookie"
    assert body["error"]


def test_sign_out_clears_the_session(client: TestClient, app_env: Path) -> None:
    client.post("/api/auth/cookie", json={"cookie": VALID_COOKIE})

    response = client.delete("/api/auth")

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert client.get("/api/auth/status").json()["authenticated"] is False
    assert not (app_env / "youtube-cookie.txt").exists()


def test_begin_login_without_any_strategy_asks_for_cookie(client: TestClient) -> None:
    response = client.post("/api/auth")

    assert response.status_code == 501
    body = response.json()
    assert body["needsCookieMethod"] is True
    assert body["nextAction"] == "switch_method"


def test_cancel_login_without_attempt_is_a_no_op(client: TestClient) -> None:
    response = client.post("/api/auth/cancel")

    assert response.status_code == 200
    assert response.json()["loginInProgress"] is False


def test_feed_returns_first_page(client: TestClient) -> None:
    response = client.get("/api/feed")

    assert response.status_code == 200
    body = response.json()
    assert len(body["videos"]) == 1
    assert isinstance(body["hasMore"], bool)
    assert set(body["videos"][0]) >= {"id", "title", "thumbnail", "channelName"}


def test_search_pages_forward_and_degrades_on_failed_hop(client: TestClient) -> None:
    first = client.get("/api/search", params={"q": "cats"})
    assert first.status_code == 200
    assert [video["id"] for video in first.json()["videos"]] == ["cats-1"]
    assert first.json()["hasMore"] is True

    second = client.get("/api/search", params={"q": "cats", "page": 1})
    assert second.status_code == 200
    assert second.json()["hasMore"] is False
    assert second.json()["videos"] == []


@pytest.mark.parametrize(
    "params",
    [
        {},
        {"q": "   "},
        {"q": "cats", "page": -1},
        {"q": "cats", "sort_by": "loudest"},
    ],
)
def test_search_rejects_invalid_input(client: TestClient, params: dict[str, object]) -> None:
    response = client.get("/api/search", params=params)

    assert response.status_code == 400
    assert response.json()["error"]


def test_channel_requires_id(client: TestClient) -> None:
    assert client.get("/api/channel").status_code == 400

    response = client.get("/api/channel", params={"id": "UC123"})
    assert response.status_code == 200
    assert [video["id"] for video in response.json()["videos"]] == ["UC123-1"]


def test_history_requires_sign_in(client: TestClient) -> None:
    response = client.get("/api/history")

    assert response.status_code == 401
    assert response.json()["nextAction"] == "sign_in_again"


def test_history_after_cookie_sign_in(client: TestClient) -> None:
    client.post("/api/auth/cookie", json={"cookie": VALID_COOKIE})

    response = client.get("/api/history")

    assert response.status_code == 200
    assert response.json() == {"sections": [], "hasMore": False}


@pytest.mark.parametrize(
    "payload",
    [{}, {"videoId": "  "}, {"videoId": "abc", "mode": "claude"}],
)
def test_summary_validates_input(client: TestClient, payload: dict[str, str]) -> None:
    response = client.post("/api/summary", json=payload)

    assert response.status_code == 400


def test_summary_without_api_key_is_a_server_configuration_error(client: TestClient) -> None:
    response = client.post("/api/summary", json={"videoId": "abc", "mode": "gemini"})

    assert response.status_code == 500


def test_summary_upstream_model_error_is_rendered_as_json(
    app_env: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    class _DeniedModels:
        def generate_content(self, *, model: str, contents: object) -> object:
            raise genai_errors.ClientError(
                403,
                {"error": {"code": 403, "message": "denied", "status": "PERMISSION_DENIED"}},
            )

    class _DeniedClient:
        def __init__(self, *, api_key: str) -> None:
            self.models = _DeniedModels()

    monkeypatch.setenv("MYTUBE_GEMINI_API_KEYS", "key-a")
    monkeypatch.setattr(genai, "Client", _DeniedClient)
    reset_cached_dependencies()
    try:
        with TestClient(create_app()) as test_client:
            response = test_client.post(
                "/api/summary", json={"videoId": "abc", "mode": "gemini"}
            )
    finally:
        reset_cached_dependencies()

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/json")
    body = response.json()
    assert body["error"] == "The summary could not be generated."
    assert "PERMISSION_DENIED" in body["detail"]


def test_site_gate_requires_session_cookie(
    app_env: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    with _gated_client(app_env, monkeypatch) as gated:
        assert gated.get("/health").status_code == 200
        assert gated.get("/api/auth/status").status_code == 200
        denied = gated.get("/api/feed")
        assert denied.status_code == 401
        assert denied.json() == {"error": "Site login required."}
        redirected = gated.get("/docs", follow_redirects=False)
        assert redirected.status_code == 307
        assert redirected.headers["location"] == "/login"

        rejected = gated.post("/api/login", json={"id": "owner", "pw": "wrong"})
        assert rejected.status_code == 401

        accepted = gated.post("/api/login", json={"id": "owner", "pw": "hunter22"})
        assert accepted.status_code == 200
        assert "session" in accepted.cookies
        set_cookie = accepted.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie

        assert gated.get("/api/feed").status_code == 200

        gated.delete("/api/login")
        gated.cookies.clear()
        assert gated.get("/api/feed").status_code == 401


def test_site_gate_without_secret_is_a_server_error(
    app_env: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    with _gated_client(app_env, monkeypatch, with_secret=False) as gated:
        response = gated.get("/api/feed")
        assert response.status_code == 500

        login = gated.post("/api/login", json={"id": "owner", "pw": "hunter22"})
        assert login.status_code == 500
