from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Literal

from mytube.app.models.outcomes import ResultKind

SortBy = Literal["relevance", "upload_date", "view_count", "rating"]
UploadDate = Literal["all", "hour", "today", "week", "month", "year"]
Duration = Literal["all", "short", "medium", "long"]

SORT_BY_VALUES: tuple[str, ...] = ("relevance", "upload_date", "view_count", "rating")
UPLOAD_DATE_VALUES: tuple[str, ...] = ("all", "hour", "today", "week", "month", "year")
DURATION_VALUES: tuple[str, ...] = ("all", "short", "medium", "long")


class ListingKind(str, Enum):
    FEED = "feed"
    SEARCH = "search"
    CHANNEL = "channel"
    HISTORY = "history"


@dataclass(frozen=True)
class VideoRecord:
    id: str
    title: str
    thumbnail: str
    channel_name: str = ""
    channel_thumbnail: str = ""
    channel_url: str = ""
    view_count: str = ""
    published_time: str = ""
    duration: str = ""


@dataclass(frozen=True)
class HistorySection:
    title: str
    videos: tuple[VideoRecord, ...]


ListingItem = VideoRecord | HistorySection


@dataclass(frozen=True)
class ChannelMeta:
    name: str = ""
    avatar: str = ""
    banner: str = ""
    subscriber_count: str = ""


@dataclass(frozen=True)
class Cursor:
    """Opaque continuation token plus the endpoint that accepts it.

    `grouped` marks cursors whose continuation pages hold dated sections
    rather than flat video lists.
    """

    token: str
    endpoint: Literal["browse", "search"] = "browse"
    grouped: bool = False


@dataclass(frozen=True)
class ResultPage:
    items: tuple[ListingItem, ...] = ()
    cursor: Cursor | None = None
    channel: ChannelMeta | None = None

    @property
    def has_more(self) -> bool:
        return self.cursor is not None

    @property
    def is_empty(self) -> bool:
        return not self.items

    def exhausted(self) -> ResultPage:
        return replace(self, cursor=None)

    def videos(self) -> list[VideoRecord]:
        return [item for item in self.items if isinstance(item, VideoRecord)]

    def sections(self) -> list[HistorySection]:
        return [item for item in self.items if isinstance(item, HistorySection)]


@dataclass(frozen=True)
class SearchFilters:
    sort_by: SortBy = "relevance"
    upload_date: UploadDate = "all"
    duration: Duration = "all"


@dataclass(frozen=True)
class SearchIdentity:
    query: str
    filters: SearchFilters = field(default_factory=SearchFilters)


@dataclass(frozen=True)
class PageFetch:
    """Outcome of one `getPage` call.

    `page_index` counts continuation hops, so it runs ahead of the requested
    page once empty pages have been skipped. `already_served` marks a page an
    earlier call already returned (an unreachable target).
    """

    page: ResultPage
    page_index: int
    kind: ResultKind = ResultKind.OK
    upstream_calls: int = 0
    already_served: bool = False

    @property
    def has_more(self) -> bool:
        return self.page.has_more

    @property
    def fresh(self) -> bool:
        """False when the page is a fallback the client has already shown."""
        return self.kind is ResultKind.OK and not self.already_served


@dataclass(frozen=True)
class VideoInfo:
    video_id: str
    title: str
    author: str
    caption_tracks: tuple[CaptionTrack, ...] = ()


@dataclass(frozen=True)
class CaptionTrack:
    base_url: str
    language_code: str
    name: str = ""
