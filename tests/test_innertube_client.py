from __future__ import annotations

import hashlib
from datetime import timedelta
from email.message import Message
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request

import pytest

from mytube.app.models.auth import CookieCredential, OAuthCredential
from mytube.app.models.listing import CaptionTrack, Cursor, SearchFilters
from mytube.app.services.innertube_client import (
    InnertubeClientFactory,
    InnertubeConfig,
    UpstreamAuthError,
    UpstreamError,
    UrllibTransport,
    encode_search_params,
    parse_cookie_header,
    sapisid_hash_header,
)
from tests.fakes import VALID_COOKIE, oauth_credential

_CONFIG = InnertubeConfig(
    base_url="https://www.youtube.com/youtubei/v1",
    client_version="2.20250312.04.00",
    language="ko",
    region="KR",
    timeout_seconds=5.0,
)


class _RecordingTransport:
    def __init__(self, response: dict[str, Any] | None = None) -> None:
        self.response = response or {}
        self.posts: list[tuple[str, dict[str, Any], dict[str, str]]] = []
        self.gets: list[str] = []

    def post_json(
        self,
        url: str,
        *,
        body: dict[str, Any],
        headers: dict[str, str],
        timeout_seconds: float,
    ) -> dict[str, Any]:
        self.posts.append((url, body, headers))
        return self.response

    def get_json(self, url: str, *, timeout_seconds: float) -> dict[str, Any]:
        self.gets.append(url)
        return {"events": [{"segs": [{"utf8": "caption text"}]}]}


def test_encode_search_params_matches_known_filter_blobs() -> None:
    assert encode_search_params(SearchFilters()) == "EgIQAQ=="
    assert encode_search_params(SearchFilters(sort_by="upload_date")) == "CAISAhAB"


def test_encode_search_params_changes_with_each_filter() -> None:
    blobs = {
        encode_search_params(SearchFilters()),
        encode_search_params(SearchFilters(upload_date="week")),
        encode_search_params(SearchFilters(duration="short")),
        encode_search_params(SearchFilters(sort_by="view_count")),
    }
    assert len(blobs) == 4


def test_sapisid_hash_header_format() -> None:
    header = sapisid_hash_header("sapisid-value", now=1_700_000_000)

    expected_digest = hashlib.sha1(
        b"1700000000 sapisid-value https://www.youtube.com"
    ).hexdigest()
    assert header == f"SAPISIDHASH 1700000000_{expected_digest}"


def test_parse_cookie_header_ignores_malformed_chunks() -> None:
    assert parse_cookie_header("A=1; junk; B = 2 ;=3") == {"A": "1", "B": "2"}


def test_cookie_without_sapisid_cannot_create_session() -> None:
    factory = InnertubeClientFactory(config=_CONFIG, transport=_RecordingTransport())

    with pytest.raises(UpstreamAuthError):
        factory.create_session(CookieCredential(value="SID=only-sid-cookie"))


def test_cookie_session_signs_requests() -> None:
    transport = _RecordingTransport()
    factory = InnertubeClientFactory(config=_CONFIG, transport=transport)
    session = factory.create_session(CookieCredential(value=VALID_COOKIE))

    session.fetch_feed()

    url, body, headers = transport.posts[0]
    assert url == "https://www.youtube.com/youtubei/v1/browse?prettyPrint=false"
    assert body["browseId"] == "FEwhat_to_watch"
    assert body["context"]["client"]["clientName"] == "WEB"
    assert body["context"]["client"]["hl"] == "ko"
    assert headers["cookie"] == VALID_COOKIE
    assert headers["authorization"].startswith("SAPISIDHASH ")
    assert session.authenticated is True


def test_anonymous_session_sends_no_credentials() -> None:
    transport = _RecordingTransport()
    session = InnertubeClientFactory(config=_CONFIG, transport=transport).create_session()

    session.fetch_search("cats", SearchFilters())

    url, body, headers = transport.posts[0]
    assert url.endswith("/search?prettyPrint=false")
    assert body["query"] == "cats"
    assert body["params"] == "EgIQAQ=="
    assert "cookie" not in headers
    assert "authorization" not in headers
    assert session.authenticated is False


def test_continuation_posts_to_the_cursor_endpoint() -> None:
    transport = _RecordingTransport()
    session = InnertubeClientFactory(config=_CONFIG, transport=transport).create_session()

    session.fetch_continuation(Cursor(token="abc", endpoint="search"))

    url, body, _ = transport.posts[0]
    assert url.endswith("/search?prettyPrint=false")
    assert body["continuation"] == "abc"


def test_expired_oauth_token_is_refreshed_once_and_reported() -> None:
    transport = _RecordingTransport()
    refreshed_seen: list[OAuthCredential] = []
    refresher_calls: list[OAuthCredential] = []
    fresh = oauth_credential()

    def refresher(credential: OAuthCredential) -> OAuthCredential:
        refresher_calls.append(credential)
        return OAuthCredential(
            access_token="access-2",
            refresh_token=credential.refresh_token,
            expiry=fresh.expiry,
        )

    factory = InnertubeClientFactory(config=_CONFIG, token_refresher=refresher, transport=transport)
    session = factory.create_session(
        oauth_credential(expires_in=timedelta(seconds=-1)),
        on_credential_refreshed=refreshed_seen.append,
    )

    session.fetch_feed()
    session.fetch_trending()

    assert len(refresher_calls) == 1
    assert [credential.access_token for credential in refreshed_seen] == ["access-2"]
    assert transport.posts[0][2]["authorization"] == "Bearer access-2"
    assert transport.posts[1][2]["authorization"] == "Bearer access-2"


def test_expired_oauth_token_without_refresher_is_auth_error() -> None:
    session = InnertubeClientFactory(
        config=_CONFIG, transport=_RecordingTransport()
    ).create_session(oauth_credential(expires_in=timedelta(seconds=-1)))

    with pytest.raises(UpstreamAuthError):
        session.fetch_feed()


def test_fetch_caption_text_requests_json3() -> None:
    transport = _RecordingTransport()
    session = InnertubeClientFactory(config=_CONFIG, transport=transport).create_session()

    text = session.fetch_caption_text(
        CaptionTrack(base_url="https://www.youtube.com/api/timedtext?v=1", language_code="ko")
    )

    assert transport.gets == ["https://www.youtube.com/api/timedtext?v=1&fmt=json3"]
    assert text == "caption text"


@pytest.mark.parametrize(
    ("status_code", "expected"),
    [(401, UpstreamAuthError), (403, UpstreamAuthError), (500, UpstreamError)],
)
def test_urllib_transport_maps_http_errors(
    monkeypatch: pytest.MonkeyPatch,
    status_code: int,
    expected: type[Exception],
) -> None:
    def fake_urlopen(request: Request, timeout: float) -> Any:
        raise HTTPError(request.full_url, status_code, "error", Message(), None)

    monkeypatch.setattr("mytube.app.services.innertube_client.urlopen", fake_urlopen)

    with pytest.raises(expected) as exc_info:
        UrllibTransport().post_json(
            "https://example.invalid/browse",
            body={},
            headers={},
            timeout_seconds=1.0,
        )
    if expected is UpstreamError:
        assert not isinstance(exc_info.value, UpstreamAuthError)


def test_urllib_transport_maps_network_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(request: Request, timeout: float) -> Any:
        raise URLError("connection refused")

    monkeypatch.setattr("mytube.app.services.innertube_client.urlopen", fake_urlopen)

    with pytest.raises(UpstreamError):
        UrllibTransport().get_json("https://example.invalid/timedtext", timeout_seconds=1.0)
