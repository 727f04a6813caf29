from __future__ import annotations

import logging
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Generic, TypeVar

from mytube.app.models.listing import ListingKind, PageFetch, ResultPage
from mytube.app.models.outcomes import ResultKind
from mytube.app.services.innertube_client import UpstreamAuthError, UpstreamError, UpstreamSession
from mytube.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("mytube.pagination")

DEFAULT_MAX_EMPTY_HOPS = 3

IdentityT = TypeVar("IdentityT", bound=Hashable)
SessionProvider = Callable[[], UpstreamSession]
FirstPageSource = Callable[[UpstreamSession, IdentityT], ResultPage]


@dataclass(frozen=True)
class PaginationCacheEntry(Generic[IdentityT]):
    identity: IdentityT
    current_page: int
    current_result_page: ResultPage
    served_page: int = 0


class PaginationCache(Generic[IdentityT]):
    """Single-entry continuation cache for one listing kind.

    The entry's `current_page` is always the number of continuation hops taken
    since its page-0 fetch; `served_page` is the client page index that entry
    answered. The two drift apart when empty pages are skipped. Walks only
    move forward; an earlier page is reachable only by asking for page 0 again.

    There is no locking. Two overlapping requests for the same kind can
    interleave their hops and leave the entry at either request's page; this
    backend serves one browsing user, so the last writer wins.
    """

    def __init__(
        self,
        kind: ListingKind,
        first_page: FirstPageSource[IdentityT],
        *,
        max_empty_hops: int = DEFAULT_MAX_EMPTY_HOPS,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._kind = kind
        self._first_page = first_page
        self._max_empty_hops = max(1, max_empty_hops)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._entry: PaginationCacheEntry[IdentityT] | None = None

    @property
    def kind(self) -> ListingKind:
        return self._kind

    @property
    def entry(self) -> PaginationCacheEntry[IdentityT] | None:
        return self._entry

    def clear(self) -> None:
        self._entry = None

    def get_page(
        self,
        identity: IdentityT,
        page_index: int,
        session_provider: SessionProvider,
        *,
        first_page: FirstPageSource[IdentityT] | None = None,
    ) -> PageFetch:
        """Return page `page_index` of the listing named by `identity`.

        Page-0 failures propagate to the caller. Failures during a forward
        walk do not: the last good page comes back with its cursor dropped
        and `kind` set to the failure.
        """

        if page_index < 0:
            raise ValueError("page_index must be >= 0")

        entry = self._entry
        if page_index == 0 or entry is None or entry.identity != identity:
            return self._fetch_first(identity, session_provider, first_page or self._first_page)

        if page_index == entry.served_page:
            return PageFetch(page=entry.current_result_page, page_index=entry.current_page)

        if page_index < entry.served_page or not entry.current_result_page.has_more:
            LOGGER.debug(
                "pagination target unreachable kind=%s requested=%s served=%s",
                self._kind.value,
                page_index,
                entry.served_page,
            )
            return PageFetch(
                page=entry.current_result_page.exhausted(),
                page_index=entry.current_page,
                already_served=True,
            )

        return self._walk_forward(entry, page_index, session_provider)

    def _fetch_first(
        self,
        identity: IdentityT,
        session_provider: SessionProvider,
        source: FirstPageSource[IdentityT],
    ) -> PageFetch:
        self._entry = None
        page = source(session_provider(), identity)
        self._entry = PaginationCacheEntry(
            identity=identity,
            current_page=0,
            current_result_page=page,
        )
        LOGGER.info(
            "pagination first page kind=%s items=%s has_more=%s",
            self._kind.value,
            len(page.items),
            page.has_more,
        )
        return PageFetch(page=page, page_index=0, upstream_calls=1)

    def _walk_forward(
        self,
        entry: PaginationCacheEntry[IdentityT],
        page_index: int,
        session_provider: SessionProvider,
    ) -> PageFetch:
        session = session_provider()
        identity = entry.identity
        current_page = entry.current_page
        target_hop = entry.current_page + (page_index - entry.served_page)
        page = entry.current_result_page
        upstream_calls = 0
        empty_streak = 0

        # Past the target, keep hopping only while the pages stay empty.
        while current_page < target_hop or empty_streak > 0:
            cursor = page.cursor
            if cursor is None:
                break

            started_at = time.perf_counter()
            try:
                next_page = session.fetch_continuation(cursor)
            except UpstreamError as exc:
                kind = (
                    ResultKind.AUTH_EXPIRED
                    if isinstance(exc, UpstreamAuthError)
                    else ResultKind.TRANSIENT_FAILURE
                )
                LOGGER.warning(
                    "pagination hop failed kind=%s from_page=%s result=%s error=%s",
                    self._kind.value,
                    current_page,
                    kind.value,
                    exc,
                )
                self._telemetry.pagination_hop(
                    self._kind, current_page + 1, outcome="error", started_at=started_at
                )
                return PageFetch(
                    page=page.exhausted(),
                    page_index=current_page,
                    kind=kind,
                    upstream_calls=upstream_calls + 1,
                )

            upstream_calls += 1
            current_page += 1
            page = next_page
            self._telemetry.pagination_hop(
                self._kind,
                current_page,
                outcome="empty" if page.is_empty else "ok",
                started_at=started_at,
                items=len(page.items),
            )
            served_page = page_index - max(0, target_hop - current_page)

            if page.is_empty:
                empty_streak += 1
                if empty_streak >= self._max_empty_hops:
                    LOGGER.info(
                        "pagination stopped after empty pages kind=%s page=%s empty_hops=%s",
                        self._kind.value,
                        current_page,
                        empty_streak,
                    )
                    page = page.exhausted()
                    self._store(identity, current_page, page, served_page)
                    break
            else:
                empty_streak = 0
            self._store(identity, current_page, page, served_page)

        if current_page > target_hop:
            LOGGER.debug(
                "pagination skipped empty pages kind=%s requested=%s hops=%s",
                self._kind.value,
                page_index,
                current_page,
            )
        return PageFetch(page=page, page_index=current_page, upstream_calls=upstream_calls)

    def _store(
        self,
        identity: IdentityT,
        current_page: int,
        page: ResultPage,
        served_page: int,
    ) -> None:
        self._entry = PaginationCacheEntry(
            identity=identity,
            current_page=current_page,
            current_result_page=page,
            served_page=served_page,
        )


class ListingCaches:
    """The four per-kind caches, cleared together when sign-in status flips."""

    def __init__(self, caches: dict[ListingKind, PaginationCache[Hashable]]) -> None:
        self._caches = caches

    def __getitem__(self, kind: ListingKind) -> PaginationCache[Hashable]:
        return self._caches[kind]

    def invalidate_on_auth_change(self, authenticated: bool) -> None:
        for cache in self._caches.values():
            cache.clear()
        LOGGER.info(
            "pagination caches cleared authenticated=%s kinds=%s",
            authenticated,
            ",".join(kind.value for kind in self._caches),
        )
