from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mytube.app.models.auth import AuthStatus, LoginResult
from mytube.app.models.listing import (
    ChannelMeta,
    HistorySection,
    PageFetch,
    ResultPage,
    VideoRecord,
)
from mytube.app.models.outcomes import NextAction


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CookieLoginRequest(CamelModel):
    cookie: str | None = None


class SiteLoginRequest(CamelModel):
    id: str | None = None
    pw: str | None = None


class SummaryRequest(CamelModel):
    video_id: str | None = None
    mode: str | None = None


class OkResponse(CamelModel):
    ok: bool = True


class PendingChallengePayload(CamelModel):
    verification_url: str
    user_code: str


class AuthStatusResponse(CamelModel):
    authenticated: bool
    login_in_progress: bool
    pending_challenge: PendingChallengePayload | None = None
    state: str
    method: str | None = None
    error: str | None = None

    @classmethod
    def from_status(cls, status: AuthStatus) -> AuthStatusResponse:
        challenge = status.pending_challenge
        return cls(
            authenticated=status.authenticated,
            login_in_progress=status.login_in_progress,
            pending_challenge=(
                PendingChallengePayload(
                    verification_url=challenge.verification_url,
                    user_code=challenge.user_code,
                )
                if challenge is not None
                else None
            ),
            state=status.state.value,
            method=status.method,
            error=status.error,
        )


class LoginStartResponse(CamelModel):
    ok: bool = True
    oauth: bool = False
    verification_url: str | None = None
    user_code: str | None = None
    authenticated: bool = False

    @classmethod
    def from_result(cls, result: LoginResult) -> LoginStartResponse:
        challenge = result.challenge
        return cls(
            ok=True,
            oauth=challenge is not None,
            verification_url=challenge.verification_url if challenge is not None else None,
            user_code=challenge.user_code if challenge is not None else None,
            authenticated=result.authenticated,
        )


class CookieLoginResponse(CamelModel):
    ok: bool = True
    authenticated: bool
    error: str | None = None
    next_action: NextAction | None = None


class VideoPayload(CamelModel):
    id: str
    title: str
    thumbnail: str
    channel_name: str = ""
    channel_thumbnail: str = ""
    channel_url: str = ""
    view_count: str = ""
    published_time: str = ""
    duration: str = ""

    @classmethod
    def from_record(cls, record: VideoRecord) -> VideoPayload:
        return cls(
            id=record.id,
            title=record.title,
            thumbnail=record.thumbnail,
            channel_name=record.channel_name,
            channel_thumbnail=record.channel_thumbnail,
            channel_url=record.channel_url,
            view_count=record.view_count,
            published_time=record.published_time,
            duration=record.duration,
        )


class HistorySectionPayload(CamelModel):
    title: str
    videos: list[VideoPayload] = Field(default_factory=list)

    @classmethod
    def from_section(cls, section: HistorySection) -> HistorySectionPayload:
        return cls(
            title=section.title,
            videos=[VideoPayload.from_record(video) for video in section.videos],
        )


class ChannelPayload(CamelModel):
    name: str
    avatar: str = ""
    banner: str = ""
    subscriber_count: str = ""

    @classmethod
    def from_meta(cls, meta: ChannelMeta) -> ChannelPayload:
        return cls(
            name=meta.name,
            avatar=meta.avatar,
            banner=meta.banner,
            subscriber_count=meta.subscriber_count,
        )


class VideoListResponse(CamelModel):
    videos: list[VideoPayload] = Field(default_factory=list)
    has_more: bool = False

    @classmethod
    def from_fetch(cls, fetch: PageFetch) -> VideoListResponse:
        return cls(
            videos=[VideoPayload.from_record(video) for video in _fresh_page(fetch).videos()],
            has_more=fetch.has_more,
        )


class ChannelListResponse(VideoListResponse):
    channel: ChannelPayload | None = None

    @classmethod
    def from_channel_fetch(cls, fetch: PageFetch) -> ChannelListResponse:
        meta = fetch.page.channel
        return cls(
            videos=[VideoPayload.from_record(video) for video in _fresh_page(fetch).videos()],
            has_more=fetch.has_more,
            channel=ChannelPayload.from_meta(meta) if meta is not None else None,
        )


class HistoryResponse(CamelModel):
    sections: list[HistorySectionPayload] = Field(default_factory=list)
    has_more: bool = False

    @classmethod
    def from_fetch(cls, fetch: PageFetch) -> HistoryResponse:
        return cls(
            sections=[
                HistorySectionPayload.from_section(item) for item in _fresh_page(fetch).sections()
            ],
            has_more=fetch.has_more,
        )


class SummaryResponse(CamelModel):
    summary: str
    cached: bool = False


def _fresh_page(fetch: PageFetch) -> ResultPage:
    # A degraded page repeats what the client already appended; send no items.
    return fetch.page if fetch.fresh else ResultPage()
