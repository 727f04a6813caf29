from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Literal, Protocol, TypeVar

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types
from openai import APIConnectionError, APIError, APITimeoutError, OpenAI, RateLimitError

from mytube.app.config import AppSettings
from mytube.app.models.listing import CaptionTrack, VideoInfo
from mytube.app.repositories.summary_repository import SummaryRepository
from mytube.app.services.innertube_client import UpstreamError, UpstreamSession
from mytube.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("mytube.summary")

SummaryMode = Literal["openrouter", "gemini"]
SUMMARY_MODES: tuple[str, ...] = ("openrouter", "gemini")
PREFERRED_CAPTION_LANGUAGE = "ko"
_RATE_LIMIT_MARKERS: tuple[str, ...] = ("429", "rate limit", "resource_exhausted", "quota")

T = TypeVar("T")


class SummaryError(Exception):
    pass


class SummaryConfigError(SummaryError):
    pass


class SummaryRateLimitedError(SummaryError):
    pass


class SummaryValidationError(SummaryError, ValueError):
    pass


class TextSummarizer(Protocol):
    def summarize(self, prompt: str) -> str:
        ...


class VideoSummarizer(Protocol):
    def summarize_video(self, video_url: str, instruction: str) -> str:
        ...


class ApiKeyPool:
    """Round-robin key rotation with at most one attempt per key per call.

    The rotation cursor survives between calls, so the next call starts at
    the key after the last one that was rate limited.
    """

    def __init__(self, keys: Sequence[str]) -> None:
        self._keys = tuple(key for key in keys if key)
        self._cursor = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def cursor(self) -> int:
        with self._lock:
            return self._cursor

    def run(
        self,
        call: Callable[[str], T],
        *,
        is_rate_limited: Callable[[Exception], bool],
    ) -> T:
        if not self._keys:
            raise SummaryConfigError("no Gemini API keys are configured (MYTUBE_GEMINI_API_KEYS)")

        tried: set[int] = set()
        while len(tried) < len(self._keys):
            with self._lock:
                index = self._cursor % len(self._keys)
            tried.add(index)
            try:
                return call(self._keys[index])
            except Exception as exc:
                if not is_rate_limited(exc):
                    raise
                LOGGER.warning("summary api key rate limited key_index=%s; rotating", index + 1)
                with self._lock:
                    self._cursor = (index + 1) % len(self._keys)

        raise SummaryRateLimitedError("every configured Gemini API key is rate limited")


def is_rate_limit_error(exc: Exception) -> bool:
    if isinstance(exc, genai_errors.APIError) and exc.code == 429:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


class OpenRouterSummarizer:
    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        model: str,
        timeout_seconds: float = 120.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._model = model
        self._timeout_seconds = timeout_seconds
        self._client: OpenAI | None = None

    def _get_client(self) -> OpenAI:
        if not self._api_key:
            raise SummaryConfigError("OpenRouter is not configured (MYTUBE_OPENROUTER_API_KEY)")
        if self._client is None:
            self._client = OpenAI(
                base_url=self._base_url,
                api_key=self._api_key,
                timeout=self._timeout_seconds,
            )
        return self._client

    def summarize(self, prompt: str) -> str:
        client = self._get_client()
        try:
            completion = client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
            )
        except RateLimitError as exc:
            raise SummaryRateLimitedError("OpenRouter rate limited the request") from exc
        except (APITimeoutError, APIConnectionError) as exc:
            raise SummaryError(f"OpenRouter request failed: {exc}") from exc
        except APIError as exc:
            raise SummaryError(f"OpenRouter returned an error: {exc}") from exc

        if not completion.choices:
            return ""
        return completion.choices[0].message.content or ""


class GeminiVideoSummarizer:
    """Sends the watch URL to Gemini as a video part, rotating keys on rate limits."""

    def __init__(self, *, keys: Sequence[str], model: str) -> None:
        self._pool = ApiKeyPool(keys)
        self._model = model

    @property
    def pool(self) -> ApiKeyPool:
        return self._pool

    def summarize_video(self, video_url: str, instruction: str) -> str:
        contents = genai_types.Content(
            role="user",
            parts=[
                genai_types.Part(
                    file_data=genai_types.FileData(file_uri=video_url, mime_type="video/mp4")
                ),
                genai_types.Part(text=instruction),
            ],
        )

        def call(api_key: str) -> str:
            client = genai.Client(api_key=api_key)
            response = client.models.generate_content(model=self._model, contents=contents)
            return _response_text(response)

        try:
            return self._pool.run(call, is_rate_limited=is_rate_limit_error)
        except genai_errors.APIError as exc:
            LOGGER.warning("summary gemini request rejected code=%s", exc.code)
            raise SummaryError(f"Gemini returned an error: {exc}") from exc
        except httpx.HTTPError as exc:
            raise SummaryError(f"Gemini request failed: {exc}") from exc


@dataclass(frozen=True)
class SummaryResult:
    video_id: str
    mode: SummaryMode
    summary: str
    cached: bool


class SummaryService:
    def __init__(
        self,
        *,
        session_provider: Callable[[], UpstreamSession],
        repository: SummaryRepository,
        openrouter: TextSummarizer,
        gemini: VideoSummarizer,
        transcript_max_chars: int = 12000,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._session_provider = session_provider
        self._repository = repository
        self._openrouter = openrouter
        self._gemini = gemini
        self._transcript_max_chars = transcript_max_chars
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def summarize(self, video_id: str | None, mode: str | None = None) -> SummaryResult:
        normalized_id = (video_id or "").strip()
        if not normalized_id:
            raise SummaryValidationError("videoId is required")
        resolved_mode = (mode or "openrouter").strip()
        if resolved_mode not in SUMMARY_MODES:
            raise SummaryValidationError(f"mode must be one of: {', '.join(SUMMARY_MODES)}")
        summary_mode: SummaryMode = "gemini" if resolved_mode == "gemini" else "openrouter"

        cached = self._repository.get(video_id=normalized_id, mode=summary_mode)
        if cached is not None:
            LOGGER.info("summary cache hit video_id=%s mode=%s", normalized_id, summary_mode)
            return SummaryResult(
                video_id=normalized_id,
                mode=summary_mode,
                summary=cached.summary,
                cached=True,
            )

        started_at = time.perf_counter()
        if summary_mode == "gemini":
            summary = self._gemini.summarize_video(
                watch_url(normalized_id),
                "이 유튜브 영상의 핵심 내용을 한국어로 요약해줘.",
            )
        else:
            summary = self._openrouter.summarize(self._openrouter_prompt(normalized_id))

        summary = summary.strip()
        self._telemetry.summary_generated(summary_mode, summary=summary, started_at=started_at)
        if not summary:
            raise SummaryError("the model returned an empty summary")

        self._repository.put(video_id=normalized_id, mode=summary_mode, summary=summary)
        return SummaryResult(
            video_id=normalized_id,
            mode=summary_mode,
            summary=summary,
            cached=False,
        )

    def _openrouter_prompt(self, video_id: str) -> str:
        session = self._session_provider()
        try:
            info = session.fetch_video_info(video_id)
        except UpstreamError as exc:
            raise SummaryError(f"could not load video details: {exc}") from exc

        transcript = ""
        track = preferred_caption_track(info)
        if track is not None:
            try:
                transcript = session.fetch_caption_text(track)
            except UpstreamError:
                LOGGER.warning(
                    "summary caption fetch failed video_id=%s", video_id, exc_info=True
                )
        return build_openrouter_prompt(
            info,
            transcript=transcript,
            max_chars=self._transcript_max_chars,
        )


def preferred_caption_track(info: VideoInfo) -> CaptionTrack | None:
    for track in info.caption_tracks:
        if track.language_code == PREFERRED_CAPTION_LANGUAGE:
            return track
    return info.caption_tracks[0] if info.caption_tracks else None


def build_openrouter_prompt(info: VideoInfo, *, transcript: str, max_chars: int) -> str:
    if transcript:
        trimmed = transcript[:max_chars]
        return (
            f"제목: {info.title}\n채널: {info.author}\n자막:\n{trimmed}\n\n"
            "위 자막을 기반으로 이 유튜브 영상의 핵심 내용을 한국어로 요약해줘."
        )
    return (
        f"{watch_url(info.video_id)}\n제목: {info.title}\n채널: {info.author}\n\n"
        "이 유튜브 영상의 핵심 내용을 웹에서 검색해서 한국어로 요약해줘."
    )


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def build_summarizers(settings: AppSettings) -> tuple[OpenRouterSummarizer, GeminiVideoSummarizer]:
    return (
        OpenRouterSummarizer(
            api_key=settings.openrouter_api_key,
            base_url=settings.openrouter_base_url,
            model=settings.openrouter_model,
        ),
        GeminiVideoSummarizer(keys=settings.gemini_api_keys, model=settings.gemini_model),
    )


def _response_text(response: Any) -> str:
    # `text` is None when the candidate was blocked and carries no text part.
    text = getattr(response, "text", None)
    if not isinstance(text, str):
        LOGGER.warning("summary gemini response had no text part")
        return ""
    return text
