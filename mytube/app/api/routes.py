from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Response

from mytube.app.config import AppSettings, FatalConfigError
from mytube.app.dependencies import (
    get_auth_state,
    get_listing_service,
    get_settings,
    get_summary_service,
)
from mytube.app.models.api_contracts import (
    AuthStatusResponse,
    ChannelListResponse,
    CookieLoginRequest,
    CookieLoginResponse,
    HistoryResponse,
    LoginStartResponse,
    OkResponse,
    SiteLoginRequest,
    SummaryRequest,
    SummaryResponse,
    VideoListResponse,
)
from mytube.app.models.auth import LoginResult
from mytube.app.models.outcomes import NextAction, ResultKind, guidance_for
from mytube.app.models.listing import PageFetch
from mytube.app.services.auth_state import AuthStateMachine, CookieValidationError
from mytube.app.services.listing_service import (
    AuthenticationRequiredError,
    ListingFetchError,
    ListingService,
    ListingValidationError,
)
from mytube.app.services.site_auth import (
    SESSION_COOKIE_NAME,
    SiteLoginRejectedError,
    authenticate_site_user,
)
from mytube.app.services.summary_service import (
    SummaryConfigError,
    SummaryError,
    SummaryRateLimitedError,
    SummaryService,
    SummaryValidationError,
)

router = APIRouter(prefix="/api")

_LOGIN_STATUS_BY_KIND: dict[ResultKind, int] = {
    ResultKind.STRATEGY_UNAVAILABLE: 501,
    ResultKind.FATAL: 500,
    ResultKind.TRANSIENT_FAILURE: 500,
    ResultKind.CREDENTIAL_INVALID: 400,
}


class ApiError(Exception):
    """Rendered as `{error, nextAction?, detail?}` with `status_code`."""

    def __init__(
        self,
        status_code: int,
        error: str,
        *,
        next_action: NextAction | None = None,
        detail: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.next_action = next_action
        self.detail = detail
        self.extra = extra or {}

    @classmethod
    def for_kind(
        cls,
        status_code: int,
        kind: ResultKind,
        *,
        message: str | None = None,
        detail: str | None = None,
    ) -> ApiError:
        guidance = guidance_for(kind)
        next_action = guidance.next_action if guidance.next_action is not NextAction.NONE else None
        extra: dict[str, Any] = {}
        if kind is ResultKind.STRATEGY_UNAVAILABLE:
            extra["needsCookieMethod"] = True
        return cls(
            status_code,
            message or guidance.message,
            next_action=next_action,
            detail=detail,
            extra=extra,
        )

    def to_content(self) -> dict[str, Any]:
        content: dict[str, Any] = {"error": self.error}
        if self.next_action is not None:
            content["nextAction"] = self.next_action.value
        if self.detail is not None:
            content["detail"] = self.detail
        content.update(self.extra)
        return content


def _login_response(result: LoginResult) -> LoginStartResponse:
    if result.ok:
        return LoginStartResponse.from_result(result)
    raise ApiError.for_kind(
        _LOGIN_STATUS_BY_KIND.get(result.kind, 500),
        result.kind,
        message=result.message,
    )


def _listing_failure(exc: ListingFetchError) -> ApiError:
    status_code = 401 if exc.kind is ResultKind.AUTH_EXPIRED else 502
    return ApiError.for_kind(status_code, exc.kind, detail=str(exc))


@router.post(
    "/auth",
    response_model=LoginStartResponse,
    tags=["auth"],
    operation_id="begin_login",
)
def begin_login(
    auth: Annotated[AuthStateMachine, Depends(get_auth_state)],
) -> LoginStartResponse:
    return _login_response(auth.begin_login())


@router.post(
    "/auth/oauth",
    response_model=LoginStartResponse,
    tags=["auth"],
    operation_id="begin_oauth_login",
)
def begin_oauth_login(
    auth: Annotated[AuthStateMachine, Depends(get_auth_state)],
) -> LoginStartResponse:
    return _login_response(auth.begin_oauth_login())


@router.delete("/auth", response_model=OkResponse, tags=["auth"], operation_id="sign_out")
def sign_out(
    auth: Annotated[AuthStateMachine, Depends(get_auth_state)],
) -> OkResponse:
    auth.sign_out()
    return OkResponse()


@router.post(
    "/auth/cookie",
    response_model=CookieLoginResponse,
    response_model_exclude_none=True,
    tags=["auth"],
    operation_id="apply_cookie",
)
def apply_cookie(
    request: CookieLoginRequest,
    auth: Annotated[AuthStateMachine, Depends(get_auth_state)],
) -> CookieLoginResponse:
    try:
        result = auth.apply_cookie(request.cookie or "")
    except CookieValidationError as exc:
        raise ApiError(
            400,
            "A valid cookie string is required.",
            next_action=NextAction.REENTER_COOKIE,
            detail=str(exc),
        ) from exc
    if result.ok:
        return CookieLoginResponse(authenticated=True)
    return CookieLoginResponse(
        authenticated=auth.poll_status().authenticated,
        error=result.message,
        next_action=result.next_action,
    )


@router.get(
    "/auth/status",
    response_model=AuthStatusResponse,
    tags=["auth"],
    operation_id="auth_status",
)
def auth_status(
    auth: Annotated[AuthStateMachine, Depends(get_auth_state)],
) -> AuthStatusResponse:
    return AuthStatusResponse.from_status(auth.poll_status())


@router.post(
    "/auth/cancel",
    response_model=AuthStatusResponse,
    tags=["auth"],
    operation_id="cancel_login",
)
def cancel_login(
    auth: Annotated[AuthStateMachine, Depends(get_auth_state)],
) -> AuthStatusResponse:
    return AuthStatusResponse.from_status(auth.cancel_login())


@router.get("/feed", response_model=VideoListResponse, tags=["listing"], operation_id="feed")
def feed(
    listings: Annotated[ListingService, Depends(get_listing_service)],
    page: Annotated[int, Query(ge=0)] = 0,
) -> VideoListResponse:
    try:
        fetch = listings.feed(page)
    except ListingFetchError as exc:
        raise _listing_failure(exc) from exc
    return VideoListResponse.from_fetch(fetch)


@router.get("/search", response_model=VideoListResponse, tags=["listing"], operation_id="search")
def search(
    listings: Annotated[ListingService, Depends(get_listing_service)],
    q: str | None = None,
    page: Annotated[int, Query(ge=0)] = 0,
    sort_by: str | None = None,
    upload_date: str | None = None,
    duration: str | None = None,
) -> VideoListResponse:
    fetch = _run_listing(
        lambda: listings.search(
            q,
            page,
            sort_by=sort_by,
            upload_date=upload_date,
            duration=duration,
        )
    )
    return VideoListResponse.from_fetch(fetch)


@router.get(
    "/channel",
    response_model=ChannelListResponse,
    tags=["listing"],
    operation_id="channel",
)
def channel(
    listings: Annotated[ListingService, Depends(get_listing_service)],
    id: str | None = None,
    page: Annotated[int, Query(ge=0)] = 0,
) -> ChannelListResponse:
    fetch = _run_listing(lambda: listings.channel(id, page))
    return ChannelListResponse.from_channel_fetch(fetch)


@router.get("/history", response_model=HistoryResponse, tags=["listing"], operation_id="history")
def history(
    listings: Annotated[ListingService, Depends(get_listing_service)],
    page: Annotated[int, Query(ge=0)] = 0,
) -> HistoryResponse:
    try:
        fetch = _run_listing(lambda: listings.history(page))
    except AuthenticationRequiredError as exc:
        raise ApiError(
            401,
            "Sign in to YouTube to see your watch history.",
            next_action=NextAction.SIGN_IN_AGAIN,
        ) from exc
    return HistoryResponse.from_fetch(fetch)


def _run_listing(call: Any) -> PageFetch:
    try:
        fetch: PageFetch = call()
    except ListingValidationError as exc:
        raise ApiError(400, str(exc)) from exc
    except ListingFetchError as exc:
        raise _listing_failure(exc) from exc
    return fetch


@router.post(
    "/summary",
    response_model=SummaryResponse,
    tags=["summary"],
    operation_id="summarize_video",
)
def summarize_video(
    request: SummaryRequest,
    summaries: Annotated[SummaryService, Depends(get_summary_service)],
) -> SummaryResponse:
    try:
        result = summaries.summarize(request.video_id, request.mode)
    except SummaryValidationError as exc:
        raise ApiError(400, str(exc)) from exc
    except SummaryConfigError as exc:
        raise ApiError.for_kind(500, ResultKind.FATAL, detail=str(exc)) from exc
    except SummaryRateLimitedError as exc:
        raise ApiError.for_kind(
            429,
            ResultKind.TRANSIENT_FAILURE,
            message="Every summary API key is rate limited. Try again later.",
            detail=str(exc),
        ) from exc
    except SummaryError as exc:
        raise ApiError(500, "The summary could not be generated.", detail=str(exc)) from exc
    return SummaryResponse(summary=result.summary, cached=result.cached)


@router.post("/login", response_model=OkResponse, tags=["site"], operation_id="site_login")
def site_login(
    request: SiteLoginRequest,
    response: Response,
    settings: Annotated[AppSettings, Depends(get_settings)],
) -> OkResponse:
    try:
        token = authenticate_site_user(settings, request.id or "", request.pw or "")
    except FatalConfigError as exc:
        raise ApiError(500, "Site login is not configured on the server.", detail=str(exc)) from exc
    except SiteLoginRejectedError as exc:
        raise ApiError(401, "The id or password is incorrect.") from exc

    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=settings.site_session_ttl_seconds,
        httponly=True,
        secure=settings.site_cookie_secure,
        samesite="lax",
        path="/",
    )
    return OkResponse()


@router.delete("/login", response_model=OkResponse, tags=["site"], operation_id="site_logout")
def site_logout(
    response: Response,
    settings: Annotated[AppSettings, Depends(get_settings)],
) -> OkResponse:
    response.delete_cookie(
        SESSION_COOKIE_NAME,
        httponly=True,
        secure=settings.site_cookie_secure,
        samesite="lax",
        path="/",
    )
    return OkResponse()
