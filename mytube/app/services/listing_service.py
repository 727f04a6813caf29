from __future__ import annotations

import logging
from collections.abc import Callable, Hashable
from typing import Any, cast

from mytube.app.models.listing import (
    DURATION_VALUES,
    SORT_BY_VALUES,
    UPLOAD_DATE_VALUES,
    ListingKind,
    PageFetch,
    ResultPage,
    SearchFilters,
    SearchIdentity,
)
from mytube.app.models.outcomes import ResultKind
from mytube.app.services.auth_state import AuthStateMachine
from mytube.app.services.innertube_client import UpstreamAuthError, UpstreamError, UpstreamSession
from mytube.app.services.pagination_cache import (
    DEFAULT_MAX_EMPTY_HOPS,
    FirstPageSource,
    ListingCaches,
    PaginationCache,
)
from mytube.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("mytube.listing")

FEED_IDENTITY = "home"
HISTORY_IDENTITY = "history"


class ListingValidationError(ValueError):
    pass


class AuthenticationRequiredError(Exception):
    pass


class ListingFetchError(Exception):
    """Page 0 of a listing could not be fetched, even after one session reset."""

    def __init__(self, kind: ResultKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class ListingService:
    def __init__(
        self,
        *,
        auth: AuthStateMachine,
        feed_fallback_query: str,
        max_empty_hops: int = DEFAULT_MAX_EMPTY_HOPS,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._auth = auth
        self._feed_fallback_query = feed_fallback_query
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

        def build(kind: ListingKind, source: FirstPageSource[Any]) -> PaginationCache[Hashable]:
            return PaginationCache(
                kind,
                source,
                max_empty_hops=max_empty_hops,
                telemetry=self._telemetry,
            )

        self._caches = ListingCaches(
            {
                ListingKind.FEED: build(ListingKind.FEED, self._feed_first_page),
                ListingKind.SEARCH: build(ListingKind.SEARCH, _search_first_page),
                ListingKind.CHANNEL: build(ListingKind.CHANNEL, _channel_first_page),
                ListingKind.HISTORY: build(ListingKind.HISTORY, _history_first_page),
            }
        )
        auth.add_auth_listener(self._caches.invalidate_on_auth_change)

    @property
    def caches(self) -> ListingCaches:
        return self._caches

    def feed(self, page_index: int) -> PageFetch:
        return self._get(ListingKind.FEED, FEED_IDENTITY, page_index)

    def search(
        self,
        query: str | None,
        page_index: int,
        *,
        sort_by: str | None = None,
        upload_date: str | None = None,
        duration: str | None = None,
    ) -> PageFetch:
        normalized_query = (query or "").strip()
        if not normalized_query:
            raise ListingValidationError("a search query is required")
        filters = validate_search_filters(
            sort_by=sort_by,
            upload_date=upload_date,
            duration=duration,
        )
        identity = SearchIdentity(query=normalized_query, filters=filters)
        return self._get(ListingKind.SEARCH, identity, page_index)

    def channel(self, channel_id: str | None, page_index: int) -> PageFetch:
        normalized_id = (channel_id or "").strip()
        if not normalized_id:
            raise ListingValidationError("a channel id is required")
        return self._get(ListingKind.CHANNEL, normalized_id, page_index)

    def history(self, page_index: int) -> PageFetch:
        if not self._auth.poll_status().authenticated:
            raise AuthenticationRequiredError("watch history needs a signed-in session")
        return self._get(ListingKind.HISTORY, HISTORY_IDENTITY, page_index, retry_anonymously=False)

    def _get(
        self,
        kind: ListingKind,
        identity: Hashable,
        page_index: int,
        *,
        retry_anonymously: bool = True,
    ) -> PageFetch:
        if page_index < 0:
            raise ListingValidationError("page must be zero or greater")
        cache = self._caches[kind]
        try:
            fetch = cache.get_page(identity, page_index, self._auth.get_session)
        except UpstreamAuthError as exc:
            LOGGER.warning(
                "listing upstream rejected session kind=%s error=%s; resetting session",
                kind.value,
                exc,
            )
            self._telemetry.listing_auth_expired(kind)
            self._auth.reset_session()
            if not retry_anonymously:
                raise ListingFetchError(ResultKind.AUTH_EXPIRED, str(exc)) from exc
        except UpstreamError as exc:
            LOGGER.warning("listing first page failed kind=%s error=%s", kind.value, exc)
            raise ListingFetchError(ResultKind.TRANSIENT_FAILURE, str(exc)) from exc
        else:
            if fetch.kind is ResultKind.AUTH_EXPIRED:
                # The walk already degraded; drop the session so the next request rebuilds it.
                LOGGER.warning(
                    "listing continuation rejected session kind=%s page=%s; resetting session",
                    kind.value,
                    page_index,
                )
                self._telemetry.listing_auth_expired(kind, page_index=page_index)
                self._auth.reset_session()
            return fetch

        try:
            return cache.get_page(identity, 0, self._auth.get_session)
        except UpstreamAuthError as exc:
            raise ListingFetchError(ResultKind.AUTH_EXPIRED, str(exc)) from exc
        except UpstreamError as exc:
            raise ListingFetchError(ResultKind.TRANSIENT_FAILURE, str(exc)) from exc

    def _feed_first_page(self, session: UpstreamSession, _identity: object) -> ResultPage:
        page = self._first_feed_source(session, include_home=True)
        if page is not None:
            return page

        LOGGER.warning("feed all sources failed; resetting session and retrying")
        self._auth.reset_session()
        page = self._first_feed_source(self._auth.get_session(), include_home=False)
        if page is not None:
            return page
        LOGGER.warning("feed recovery failed; returning an empty feed")
        return ResultPage()

    def _first_feed_source(
        self,
        session: UpstreamSession,
        *,
        include_home: bool,
    ) -> ResultPage | None:
        sources: list[tuple[str, Callable[[], ResultPage]]] = []
        if include_home:
            sources.append(("home", session.fetch_feed))
        sources.append(("trending", session.fetch_trending))
        sources.append(
            ("search", lambda: session.fetch_search(self._feed_fallback_query, SearchFilters()))
        )

        for name, fetch in sources:
            try:
                page = fetch()
            except UpstreamError as exc:
                LOGGER.info("feed source failed source=%s error=%s", name, exc)
                continue
            if page.is_empty:
                LOGGER.info("feed source empty source=%s", name)
                continue
            LOGGER.info("feed using source=%s items=%s", name, len(page.items))
            return page
        return None


def validate_search_filters(
    *,
    sort_by: str | None,
    upload_date: str | None,
    duration: str | None,
) -> SearchFilters:
    resolved_sort = _validated_choice("sort_by", sort_by, SORT_BY_VALUES, "relevance")
    resolved_upload = _validated_choice("upload_date", upload_date, UPLOAD_DATE_VALUES, "all")
    resolved_duration = _validated_choice("duration", duration, DURATION_VALUES, "all")
    return SearchFilters(
        sort_by=cast(Any, resolved_sort),
        upload_date=cast(Any, resolved_upload),
        duration=cast(Any, resolved_duration),
    )


def _validated_choice(
    name: str,
    raw_value: str | None,
    allowed: tuple[str, ...],
    default: str,
) -> str:
    if raw_value is None or not raw_value.strip():
        return default
    value = raw_value.strip()
    if value not in allowed:
        raise ListingValidationError(f"{name} must be one of: {', '.join(allowed)}")
    return value


def _search_first_page(session: UpstreamSession, identity: SearchIdentity) -> ResultPage:
    return session.fetch_search(identity.query, identity.filters)


def _channel_first_page(session: UpstreamSession, channel_id: str) -> ResultPage:
    return session.fetch_channel(channel_id)


def _history_first_page(session: UpstreamSession, _identity: object) -> ResultPage:
    return session.fetch_history()
