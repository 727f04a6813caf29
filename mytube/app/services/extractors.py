"""Adapters from loosely-shaped InnerTube payloads to uniform listing records.

Everything that sniffs raw response shapes lives here; the rest of the
backend only sees `ResultPage`, `VideoRecord`, `HistorySection`,
`ChannelMeta` and `VideoInfo`.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from typing import Any, Literal, cast

from mytube.app.models.listing import (
    CaptionTrack,
    ChannelMeta,
    Cursor,
    HistorySection,
    ListingItem,
    ResultPage,
    VideoInfo,
    VideoRecord,
)

_CLASSIC_RENDERER_KEYS: tuple[str, ...] = (
    "videoRenderer",
    "gridVideoRenderer",
    "compactVideoRenderer",
)
_DURATION_PATTERN = re.compile(r"\d+:\d+")
_VIEW_COUNT_MARKERS: tuple[str, ...] = ("조회수", "회", "view", "watching")
_PUBLISHED_MARKERS: tuple[str, ...] = ("전", "ago", "streamed", "스트리밍")
_SHORTS_ENTITY_PREFIXES: tuple[str, ...] = (
    "history-shorts-shelf-item-",
    "shorts-shelf-item-",
)
_CHANNEL_VIDEO_TAB_TITLES: frozenset[str] = frozenset({"Videos", "동영상"})


def default_thumbnail(video_id: str) -> str:
    return f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg"


def parse_browse_page(payload: dict[str, Any]) -> ResultPage:
    root = _as_dict(payload.get("contents"))
    items, token = _collect_videos(root)
    return ResultPage(items=tuple(items), cursor=_cursor(token, "browse"))


def parse_search_page(payload: dict[str, Any]) -> ResultPage:
    root = _as_dict(payload.get("contents"))
    items, token = _collect_videos(root)
    return ResultPage(items=tuple(items), cursor=_cursor(token, "search"))


def parse_channel_page(payload: dict[str, Any]) -> ResultPage:
    tab_content = _selected_channel_tab(payload)
    items, token = _collect_videos(tab_content)
    return ResultPage(
        items=tuple(items),
        cursor=_cursor(token, "browse"),
        channel=parse_channel_meta(payload),
    )


def parse_history_page(payload: dict[str, Any]) -> ResultPage:
    root = _as_dict(payload.get("contents"))
    sections, token = _collect_sections(root)
    return ResultPage(items=tuple(sections), cursor=_cursor(token, "browse", grouped=True))


def parse_continuation_page(payload: dict[str, Any], cursor: Cursor) -> ResultPage:
    continuation_items: list[Any] = []
    for key in ("onResponseReceivedActions", "onResponseReceivedCommands"):
        for action in _as_list(payload.get(key)):
            action_dict = _as_dict(action)
            for action_key in ("appendContinuationItemsAction", "reloadContinuationItemsCommand"):
                action_body = _as_dict(action_dict.get(action_key))
                continuation_items.extend(_as_list(action_body.get("continuationItems")))

    root: dict[str, Any] = {"items": continuation_items}
    if cursor.grouped:
        sections, token = _collect_sections(root)
        items: list[ListingItem] = list(sections)
    else:
        videos, token = _collect_videos(root)
        items = list(videos)
    return ResultPage(
        items=tuple(items),
        cursor=_cursor(token, cursor.endpoint, grouped=cursor.grouped),
    )


def parse_channel_meta(payload: dict[str, Any]) -> ChannelMeta:
    name = ""
    avatar = ""
    banner = ""
    subscriber_count = ""

    header = _as_dict(payload.get("header"))
    c4_header = _as_dict(header.get("c4TabbedHeaderRenderer"))
    if c4_header:
        name = _text(c4_header.get("title"))
        subscriber_count = _text(c4_header.get("subscriberCountText"))
        avatar = _last_thumbnail(c4_header.get("avatar"))
        banner = _last_thumbnail(c4_header.get("banner"))

    if not name:
        metadata = _dig(payload, "metadata", "channelMetadataRenderer")
        name = _text(metadata.get("title"))
        avatar = avatar or _last_thumbnail(metadata.get("avatar"))

    page_header = _as_dict(header.get("pageHeaderRenderer"))
    if page_header:
        view_model = _dig(page_header, "content", "pageHeaderViewModel")
        if not name:
            name = _text(page_header.get("pageTitle")) or _text(
                _dig(view_model, "title", "dynamicTextViewModel").get("text")
            )
        if not avatar:
            avatar = _last_source(
                _dig(
                    view_model,
                    "image",
                    "decoratedAvatarViewModel",
                    "avatar",
                    "avatarViewModel",
                    "image",
                )
            )
        if not banner:
            banner = _last_source(_dig(view_model, "banner", "imageBannerViewModel", "image"))
        if not subscriber_count:
            rows = _as_list(
                _dig(view_model, "metadata", "contentMetadataViewModel").get("metadataRows")
            )
            # Row 0 carries the handle, row 1 the subscriber and video counts.
            if len(rows) > 1:
                parts = _as_list(_as_dict(rows[1]).get("metadataParts"))
                if parts:
                    subscriber_count = _text(_as_dict(parts[0]).get("text"))

    return ChannelMeta(
        name=name,
        avatar=avatar,
        banner=banner,
        subscriber_count=subscriber_count,
    )


def parse_video_info(video_id: str, payload: dict[str, Any]) -> VideoInfo:
    details = _as_dict(payload.get("videoDetails"))
    tracks: list[CaptionTrack] = []
    renderer = _dig(payload, "captions", "playerCaptionsTracklistRenderer")
    for raw_track in _as_list(renderer.get("captionTracks")):
        track = _as_dict(raw_track)
        base_url = track.get("baseUrl")
        language_code = track.get("languageCode")
        if isinstance(base_url, str) and isinstance(language_code, str):
            tracks.append(
                CaptionTrack(
                    base_url=base_url,
                    language_code=language_code,
                    name=_text(track.get("name")),
                )
            )
    title = details.get("title")
    author = details.get("author")
    return VideoInfo(
        video_id=video_id,
        title=title if isinstance(title, str) else "",
        author=author if isinstance(author, str) else "",
        caption_tracks=tuple(tracks),
    )


def parse_caption_events(payload: dict[str, Any]) -> str:
    lines: list[str] = []
    for event in _as_list(payload.get("events")):
        segments = _as_list(_as_dict(event).get("segs"))
        if not segments:
            continue
        text = "".join(
            str(_as_dict(segment).get("utf8", "")) for segment in segments
        ).strip()
        if text:
            lines.append(text)
    return " ".join(lines)


def _cursor(
    token: str | None,
    endpoint: Literal["browse", "search"],
    *,
    grouped: bool = False,
) -> Cursor | None:
    if token is None:
        return None
    return Cursor(token=token, endpoint=endpoint, grouped=grouped)


def _collect_videos(root: Any) -> tuple[list[VideoRecord], str | None]:
    videos: list[VideoRecord] = []
    token: str | None = None
    for kind, node in _walk(root):
        if kind == "continuation":
            token = token or _continuation_token(node)
        elif kind == "video":
            video = _extract_video(node)
            if video is not None:
                videos.append(video)
    return videos, token


def _collect_sections(root: Any) -> tuple[list[HistorySection], str | None]:
    sections: list[HistorySection] = []
    token: str | None = None
    for kind, node in _walk(root, stop_at_sections=True):
        if kind == "continuation":
            token = token or _continuation_token(node)
        elif kind == "section":
            title = _text(_dig(node, "header", "itemSectionHeaderRenderer").get("title"))
            videos, _ = _collect_videos(node.get("contents"))
            if videos:
                sections.append(HistorySection(title=title, videos=tuple(videos)))
        elif kind == "video":
            video = _extract_video(node)
            if video is not None:
                sections.append(HistorySection(title="", videos=(video,)))
    return sections, token


def _walk(node: Any, *, stop_at_sections: bool = False) -> Iterator[tuple[str, dict[str, Any]]]:
    if isinstance(node, list):
        for child in cast(list[Any], node):
            yield from _walk(child, stop_at_sections=stop_at_sections)
        return
    if not isinstance(node, dict):
        return

    node_dict = _as_dict(node)
    for key, value in node_dict.items():
        if key == "continuationItemRenderer":
            yield "continuation", _as_dict(value)
        elif key in _CLASSIC_RENDERER_KEYS or key in {
            "lockupViewModel",
            "reelItemRenderer",
            "shortsLockupViewModel",
        }:
            yield "video", {key: value}
        elif stop_at_sections and key == "itemSectionRenderer":
            yield "section", _as_dict(value)
        elif isinstance(value, dict | list):
            yield from _walk(value, stop_at_sections=stop_at_sections)


def _continuation_token(node: dict[str, Any]) -> str | None:
    command = _dig(node, "continuationEndpoint", "continuationCommand")
    token = command.get("token")
    if isinstance(token, str) and token.strip():
        return token
    button_command = _dig(
        node, "button", "buttonRenderer", "command", "continuationCommand"
    )
    token = button_command.get("token")
    if isinstance(token, str) and token.strip():
        return token
    return None


def _extract_video(wrapper: dict[str, Any]) -> VideoRecord | None:
    for key in _CLASSIC_RENDERER_KEYS:
        if key in wrapper:
            return _extract_classic_renderer(_as_dict(wrapper[key]))
    if "lockupViewModel" in wrapper:
        return _extract_lockup_view(_as_dict(wrapper["lockupViewModel"]))
    if "reelItemRenderer" in wrapper:
        return _extract_reel_item(_as_dict(wrapper["reelItemRenderer"]))
    if "shortsLockupViewModel" in wrapper:
        return _extract_shorts_lockup(_as_dict(wrapper["shortsLockupViewModel"]))
    return None


def _extract_classic_renderer(renderer: dict[str, Any]) -> VideoRecord | None:
    video_id = renderer.get("videoId")
    if not isinstance(video_id, str) or not video_id:
        return None

    owner = (
        _as_dict(renderer.get("ownerText"))
        or _as_dict(renderer.get("shortBylineText"))
        or _as_dict(renderer.get("longBylineText"))
    )
    owner_runs = _as_list(owner.get("runs"))
    channel_url = ""
    if owner_runs:
        browse = _dig(_as_dict(owner_runs[0]), "navigationEndpoint", "browseEndpoint")
        canonical = browse.get("canonicalBaseUrl") or browse.get("browseId")
        if isinstance(canonical, str):
            channel_url = canonical

    duration = _text(renderer.get("lengthText"))
    if not duration:
        for overlay in _as_list(renderer.get("thumbnailOverlays")):
            duration = _text(
                _dig(_as_dict(overlay), "thumbnailOverlayTimeStatusRenderer").get("text")
            )
            if duration:
                break

    channel_thumbnail = _first_thumbnail(
        _dig(
            renderer,
            "channelThumbnailSupportedRenderers",
            "channelThumbnailWithLinkRenderer",
        ).get("thumbnail")
    ) or _first_thumbnail(renderer.get("channelThumbnail"))

    return VideoRecord(
        id=video_id,
        title=_text(renderer.get("title")),
        thumbnail=_last_thumbnail(renderer.get("thumbnail")) or default_thumbnail(video_id),
        channel_name=_text(owner),
        channel_thumbnail=channel_thumbnail,
        channel_url=channel_url,
        view_count=_text(renderer.get("shortViewCountText"))
        or _text(renderer.get("viewCountText")),
        published_time=_text(renderer.get("publishedTimeText")),
        duration=duration,
    )


def _extract_lockup_view(lockup: dict[str, Any]) -> VideoRecord | None:
    video_id = lockup.get("contentId")
    if not isinstance(video_id, str) or not video_id:
        return None
    content_type = lockup.get("contentType")
    if isinstance(content_type, str) and content_type not in {
        "LOCKUP_CONTENT_TYPE_VIDEO",
        "LOCKUP_CONTENT_TYPE_UNSPECIFIED",
    }:
        return None

    metadata = _dig(lockup, "metadata", "lockupMetadataViewModel")
    rows = _as_list(_dig(metadata, "metadata", "contentMetadataViewModel").get("metadataRows"))

    channel_name = ""
    view_count = ""
    published_time = ""
    for row_index, row in enumerate(rows):
        for part_index, part in enumerate(_as_list(_as_dict(row).get("metadataParts"))):
            text = _text(_as_dict(part).get("text"))
            if not text:
                continue
            if row_index == 0 and part_index == 0:
                channel_name = text
            elif not view_count and _contains_any(text, _VIEW_COUNT_MARKERS):
                view_count = text
            elif not published_time and _contains_any(text, _PUBLISHED_MARKERS):
                published_time = text

    thumbnail_view = _dig(lockup, "contentImage", "thumbnailViewModel")
    duration = ""
    for overlay in _as_list(thumbnail_view.get("overlays")):
        for badge_holder in _iter_badges(_as_dict(overlay)):
            candidate = _text(badge_holder.get("text"))
            if _DURATION_PATTERN.search(candidate):
                duration = candidate
                break
        if duration:
            break

    channel_thumbnail = _first_source(
        _dig(metadata, "image", "decoratedAvatarViewModel", "avatar", "avatarViewModel", "image")
    )

    return VideoRecord(
        id=video_id,
        title=_text(metadata.get("title")),
        thumbnail=_first_source(_as_dict(thumbnail_view.get("image")))
        or default_thumbnail(video_id),
        channel_name=channel_name,
        channel_thumbnail=channel_thumbnail,
        view_count=view_count,
        published_time=published_time,
        duration=duration,
    )


def _iter_badges(overlay: dict[str, Any]) -> Iterator[dict[str, Any]]:
    for key in ("thumbnailOverlayBadgeViewModel", "thumbnailBottomOverlayViewModel"):
        container = _as_dict(overlay.get(key))
        for badge in _as_list(container.get("thumbnailBadges")) + _as_list(
            container.get("badges")
        ):
            yield _as_dict(_as_dict(badge).get("thumbnailBadgeViewModel"))


def _extract_reel_item(reel: dict[str, Any]) -> VideoRecord | None:
    video_id = reel.get("videoId")
    if not isinstance(video_id, str) or not video_id:
        return None
    return VideoRecord(
        id=video_id,
        title=_text(reel.get("headline")),
        thumbnail=_first_thumbnail(reel.get("thumbnail")) or default_thumbnail(video_id),
        view_count=_text(reel.get("viewCountText")),
        duration="Shorts",
    )


def _extract_shorts_lockup(lockup: dict[str, Any]) -> VideoRecord | None:
    video_id = _dig(lockup, "onTap", "innertubeCommand", "reelWatchEndpoint").get("videoId")
    if not isinstance(video_id, str) or not video_id:
        entity_id = lockup.get("entityId")
        if not isinstance(entity_id, str):
            return None
        video_id = entity_id
        for prefix in _SHORTS_ENTITY_PREFIXES:
            if video_id.startswith(prefix):
                video_id = video_id[len(prefix) :]
                break
    if not video_id:
        return None

    overlay = _as_dict(lockup.get("overlayMetadata"))
    return VideoRecord(
        id=video_id,
        title=_text(overlay.get("primaryText")),
        thumbnail=_first_source(_as_dict(lockup.get("thumbnail")))
        or default_thumbnail(video_id),
        view_count=_text(overlay.get("secondaryText")),
        duration="Shorts",
    )


def _selected_channel_tab(payload: dict[str, Any]) -> dict[str, Any]:
    tabs = _as_list(_dig(payload, "contents", "twoColumnBrowseResultsRenderer").get("tabs"))
    for tab in tabs:
        tab_renderer = _as_dict(_as_dict(tab).get("tabRenderer"))
        if not tab_renderer:
            continue
        if tab_renderer.get("title") in _CHANNEL_VIDEO_TAB_TITLES or tab_renderer.get(
            "selected"
        ):
            content = _as_dict(tab_renderer.get("content"))
            return _as_dict(content.get("richGridRenderer")) or _as_dict(
                content.get("sectionListRenderer")
            )
    return {}


def _contains_any(text: str, markers: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in markers)


def _text(value: Any) -> str:
    if isinstance(value, str):
        return value
    node = _as_dict(value)
    simple = node.get("simpleText")
    if isinstance(simple, str):
        return simple
    content = node.get("content")
    if isinstance(content, str):
        return content
    runs = _as_list(node.get("runs"))
    if runs:
        return "".join(str(_as_dict(run).get("text", "")) for run in runs)
    return ""


def _last_thumbnail(value: Any) -> str:
    thumbnails = _as_list(_as_dict(value).get("thumbnails"))
    if not thumbnails:
        return ""
    url = _as_dict(thumbnails[-1]).get("url")
    return url if isinstance(url, str) else ""


def _first_thumbnail(value: Any) -> str:
    thumbnails = _as_list(_as_dict(value).get("thumbnails"))
    if not thumbnails:
        return ""
    url = _as_dict(thumbnails[0]).get("url")
    return url if isinstance(url, str) else ""


def _first_source(image: dict[str, Any]) -> str:
    sources = _as_list(image.get("sources"))
    if not sources:
        return ""
    url = _as_dict(sources[0]).get("url")
    return url if isinstance(url, str) else ""


def _last_source(image: dict[str, Any]) -> str:
    sources = _as_list(image.get("sources"))
    if not sources:
        return ""
    url = _as_dict(sources[-1]).get("url")
    return url if isinstance(url, str) else ""


def _dig(value: Any, *keys: str) -> dict[str, Any]:
    current = _as_dict(value)
    for key in keys:
        current = _as_dict(current.get(key))
    return current


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return list(cast(list[Any], value))
    return []
