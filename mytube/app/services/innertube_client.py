from __future__ import annotations

import base64
import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from mytube.app.config import AppSettings
from mytube.app.models.auth import CookieCredential, Credential, OAuthCredential
from mytube.app.models.listing import (
    CaptionTrack,
    Cursor,
    ResultPage,
    SearchFilters,
    VideoInfo,
)
from mytube.app.services.extractors import (
    parse_browse_page,
    parse_caption_events,
    parse_channel_page,
    parse_continuation_page,
    parse_history_page,
    parse_search_page,
    parse_video_info,
)

LOGGER = logging.getLogger("mytube.upstream")

YOUTUBE_ORIGIN = "https://www.youtube.com"
HOME_BROWSE_ID = "FEwhat_to_watch"
TRENDING_BROWSE_ID = "FEtrending"
HISTORY_BROWSE_ID = "FEhistory"
CHANNEL_VIDEOS_PARAMS = "EgZ2aWRlb3PyBgQKAjoA"
_SAPISID_COOKIE_NAMES: tuple[str, ...] = ("SAPISID", "__Secure-3PAPISID", "__Secure-1PAPISID")

_SORT_CODES: dict[str, int] = {
    "relevance": 0,
    "rating": 1,
    "upload_date": 2,
    "view_count": 3,
}
_UPLOAD_DATE_CODES: dict[str, int] = {
    "hour": 1,
    "today": 2,
    "week": 3,
    "month": 4,
    "year": 5,
}
_DURATION_CODES: dict[str, int] = {
    "short": 1,
    "long": 2,
    "medium": 3,
}
_VIDEO_TYPE_CODE = 1


class UpstreamError(Exception):
    pass


class UpstreamAuthError(UpstreamError):
    """The upstream rejected the credential, or the credential cannot sign in."""


TokenRefresher = Callable[[OAuthCredential], OAuthCredential]
CredentialRefreshedCallback = Callable[[OAuthCredential], None]


class UpstreamSession(Protocol):
    @property
    def authenticated(self) -> bool:
        ...

    def fetch_feed(self) -> ResultPage:
        ...

    def fetch_trending(self) -> ResultPage:
        ...

    def fetch_search(self, query: str, filters: SearchFilters | None = None) -> ResultPage:
        ...

    def fetch_channel(self, channel_id: str) -> ResultPage:
        ...

    def fetch_history(self) -> ResultPage:
        ...

    def fetch_continuation(self, cursor: Cursor) -> ResultPage:
        ...

    def fetch_video_info(self, video_id: str) -> VideoInfo:
        ...

    def fetch_caption_text(self, track: CaptionTrack) -> str:
        ...


class UpstreamFactory(Protocol):
    def create_session(
        self,
        credential: Credential | None = None,
        *,
        on_credential_refreshed: CredentialRefreshedCallback | None = None,
    ) -> UpstreamSession:
        ...


class Transport(Protocol):
    def post_json(
        self,
        url: str,
        *,
        body: dict[str, Any],
        headers: dict[str, str],
        timeout_seconds: float,
    ) -> dict[str, Any]:
        ...

    def get_json(self, url: str, *, timeout_seconds: float) -> dict[str, Any]:
        ...


class UrllibTransport:
    def post_json(
        self,
        url: str,
        *,
        body: dict[str, Any],
        headers: dict[str, str],
        timeout_seconds: float,
    ) -> dict[str, Any]:
        request = Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        return _read_json(request, timeout_seconds=timeout_seconds)

    def get_json(self, url: str, *, timeout_seconds: float) -> dict[str, Any]:
        request = Request(url, headers={"accept": "application/json"}, method="GET")
        return _read_json(request, timeout_seconds=timeout_seconds)


@dataclass(frozen=True)
class InnertubeConfig:
    base_url: str
    client_version: str
    language: str
    region: str
    timeout_seconds: float

    @classmethod
    def from_settings(cls, settings: AppSettings) -> InnertubeConfig:
        return cls(
            base_url=settings.innertube_base_url,
            client_version=settings.innertube_client_version,
            language=settings.innertube_language,
            region=settings.innertube_region,
            timeout_seconds=settings.upstream_timeout_seconds,
        )


class InnertubeClientFactory:
    def __init__(
        self,
        *,
        config: InnertubeConfig,
        token_refresher: TokenRefresher | None = None,
        transport: Transport | None = None,
    ) -> None:
        self._config = config
        self._token_refresher = token_refresher
        self._transport = transport or UrllibTransport()

    def create_session(
        self,
        credential: Credential | None = None,
        *,
        on_credential_refreshed: CredentialRefreshedCallback | None = None,
    ) -> InnertubeSession:
        if isinstance(credential, CookieCredential) and _extract_sapisid(credential.value) is None:
            raise UpstreamAuthError("cookie has no SAPISID value to sign requests with")
        session = InnertubeSession(
            config=self._config,
            transport=self._transport,
            credential=credential,
            token_refresher=self._token_refresher,
            on_credential_refreshed=on_credential_refreshed,
        )
        LOGGER.info(
            "upstream session created kind=%s",
            credential.kind if credential is not None else "anonymous",
        )
        return session


class InnertubeSession:
    """One handle to the InnerTube API, bound to zero or one credential."""

    def __init__(
        self,
        *,
        config: InnertubeConfig,
        transport: Transport,
        credential: Credential | None,
        token_refresher: TokenRefresher | None,
        on_credential_refreshed: CredentialRefreshedCallback | None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._credential = credential
        self._token_refresher = token_refresher
        self._on_credential_refreshed = on_credential_refreshed
        self._refresh_lock = threading.Lock()

    @property
    def authenticated(self) -> bool:
        return self._credential is not None

    @property
    def credential(self) -> Credential | None:
        return self._credential

    def fetch_feed(self) -> ResultPage:
        return parse_browse_page(self._post("browse", {"browseId": HOME_BROWSE_ID}))

    def fetch_trending(self) -> ResultPage:
        return parse_browse_page(self._post("browse", {"browseId": TRENDING_BROWSE_ID}))

    def fetch_search(self, query: str, filters: SearchFilters | None = None) -> ResultPage:
        body: dict[str, Any] = {
            "query": query,
            "params": encode_search_params(filters or SearchFilters()),
        }
        return parse_search_page(self._post("search", body))

    def fetch_channel(self, channel_id: str) -> ResultPage:
        payload = self._post(
            "browse",
            {"browseId": channel_id, "params": CHANNEL_VIDEOS_PARAMS},
        )
        return parse_channel_page(payload)

    def fetch_history(self) -> ResultPage:
        return parse_history_page(self._post("browse", {"browseId": HISTORY_BROWSE_ID}))

    def fetch_continuation(self, cursor: Cursor) -> ResultPage:
        payload = self._post(cursor.endpoint, {"continuation": cursor.token})
        return parse_continuation_page(payload, cursor)

    def fetch_video_info(self, video_id: str) -> VideoInfo:
        payload = self._post("player", {"videoId": video_id})
        playability = payload.get("playabilityStatus")
        status = _as_text(playability.get("status")) if isinstance(playability, dict) else ""
        if status and status not in {"OK", "LIVE_STREAM_OFFLINE"}:
            LOGGER.info("video not playable video_id=%s status=%s", video_id, status)
        return parse_video_info(video_id, payload)

    def fetch_caption_text(self, track: CaptionTrack) -> str:
        separator = "&" if "?" in track.base_url else "?"
        payload = self._transport.get_json(
            f"{track.base_url}{separator}fmt=json3",
            timeout_seconds=self._config.timeout_seconds,
        )
        return parse_caption_events(payload)

    def _post(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        request_body = dict(body)
        request_body["context"] = self._client_context()
        url = f"{self._config.base_url}/{endpoint}?prettyPrint=false"
        started = time.monotonic()
        payload = self._transport.post_json(
            url,
            body=request_body,
            headers=self._headers(),
            timeout_seconds=self._config.timeout_seconds,
        )
        LOGGER.debug(
            "upstream call endpoint=%s authenticated=%s duration_ms=%s",
            endpoint,
            self.authenticated,
            int((time.monotonic() - started) * 1000),
        )
        return payload

    def _client_context(self) -> dict[str, Any]:
        return {
            "client": {
                "clientName": "WEB",
                "clientVersion": self._config.client_version,
                "hl": self._config.language,
                "gl": self._config.region,
            }
        }

    def _headers(self) -> dict[str, str]:
        headers = {
            "content-type": "application/json",
            "accept": "application/json",
            "origin": YOUTUBE_ORIGIN,
            "x-youtube-client-name": "1",
            "x-youtube-client-version": self._config.client_version,
            "accept-language": self._config.language,
        }
        credential = self._credential
        if isinstance(credential, CookieCredential):
            sapisid = _extract_sapisid(credential.value)
            if sapisid is None:
                raise UpstreamAuthError("cookie has no SAPISID value to sign requests with")
            headers["cookie"] = credential.value
            headers["authorization"] = sapisid_hash_header(sapisid)
            headers["x-goog-authuser"] = "0"
            headers["x-origin"] = YOUTUBE_ORIGIN
        elif isinstance(credential, OAuthCredential):
            active = self._fresh_oauth_credential(credential)
            headers["authorization"] = f"{active.token_type} {active.access_token}"
        return headers

    def _fresh_oauth_credential(self, credential: OAuthCredential) -> OAuthCredential:
        if not credential.is_expired():
            return credential
        with self._refresh_lock:
            current = self._credential
            if isinstance(current, OAuthCredential) and not current.is_expired():
                return current
            if self._token_refresher is None:
                raise UpstreamAuthError("oauth token expired and no refresher is configured")
            try:
                refreshed = self._token_refresher(credential)
            except UpstreamAuthError:
                raise
            except Exception as exc:
                raise UpstreamAuthError(f"oauth token refresh failed: {exc}") from exc
            self._credential = refreshed
            LOGGER.info("oauth token refreshed expiry=%s", refreshed.expiry.isoformat())
            if self._on_credential_refreshed is not None:
                self._on_credential_refreshed(refreshed)
            return refreshed


def encode_search_params(filters: SearchFilters) -> str:
    """Encode a filter set into the protobuf `params` blob the search endpoint takes."""

    inner = bytearray()
    upload_code = _UPLOAD_DATE_CODES.get(filters.upload_date)
    if upload_code is not None:
        inner += _varint_field(1, upload_code)
    inner += _varint_field(2, _VIDEO_TYPE_CODE)
    duration_code = _DURATION_CODES.get(filters.duration)
    if duration_code is not None:
        inner += _varint_field(3, duration_code)

    message = bytearray()
    sort_code = _SORT_CODES.get(filters.sort_by, 0)
    if sort_code:
        message += _varint_field(1, sort_code)
    message += _bytes_field(2, bytes(inner))
    return base64.b64encode(bytes(message)).decode("ascii")


def sapisid_hash_header(sapisid: str, *, now: float | None = None) -> str:
    timestamp = int(now if now is not None else time.time())
    digest = hashlib.sha1(f"{timestamp} {sapisid} {YOUTUBE_ORIGIN}".encode()).hexdigest()
    return f"SAPISIDHASH {timestamp}_{digest}"


def parse_cookie_header(raw_cookie: str) -> dict[str, str]:
    cookies: dict[str, str] = {}
    for chunk in raw_cookie.split(";"):
        name, separator, value = chunk.strip().partition("=")
        if separator and name:
            cookies[name.strip()] = value.strip()
    return cookies


def _extract_sapisid(raw_cookie: str) -> str | None:
    cookies = parse_cookie_header(raw_cookie)
    for name in _SAPISID_COOKIE_NAMES:
        value = cookies.get(name)
        if value:
            return value
    return None


def _varint(value: int) -> bytes:
    encoded = bytearray()
    while True:
        chunk = value & 0x7F
        value >>= 7
        if value:
            encoded.append(chunk | 0x80)
        else:
            encoded.append(chunk)
            return bytes(encoded)


def _varint_field(field_number: int, value: int) -> bytes:
    return _varint(field_number << 3) + _varint(value)


def _bytes_field(field_number: int, value: bytes) -> bytes:
    return _varint((field_number << 3) | 2) + _varint(len(value)) + value


def _read_json(request: Request, *, timeout_seconds: float) -> dict[str, Any]:
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            raw_body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        if exc.code in {401, 403}:
            raise UpstreamAuthError(f"upstream rejected credentials status={exc.code}") from exc
        raise UpstreamError(f"upstream request failed status={exc.code}") from exc
    except (URLError, TimeoutError, OSError) as exc:
        raise UpstreamError(f"upstream request failed: {exc}") from exc

    if not raw_body.strip():
        return {}
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError as exc:
        raise UpstreamError("upstream returned a non-JSON body") from exc
    if not isinstance(parsed, dict):
        raise UpstreamError("upstream returned an unexpected JSON shape")
    return {str(key): value for key, value in parsed.items()}


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""
