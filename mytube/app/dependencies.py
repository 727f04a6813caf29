from __future__ import annotations

from functools import lru_cache

from mytube.app.config import AppSettings, load_settings
from mytube.app.repositories.credential_store import CredentialStore
from mytube.app.repositories.database import Database
from mytube.app.repositories.summary_repository import SummaryRepository
from mytube.app.services.auth_state import AuthStateMachine
from mytube.app.services.browser_login import PlaywrightCookieLogin
from mytube.app.services.innertube_client import InnertubeClientFactory, InnertubeConfig
from mytube.app.services.listing_service import ListingService
from mytube.app.services.oauth_device_flow import GoogleDeviceFlow
from mytube.app.services.site_auth import SiteSessionSigner
from mytube.app.services.summary_service import SummaryService, build_summarizers
from mytube.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_credential_store() -> CredentialStore:
    settings = get_settings()
    return CredentialStore(
        cookie_path=settings.credential_path,
        oauth_token_path=settings.oauth_token_path,
    )


@lru_cache(maxsize=1)
def get_device_flow() -> GoogleDeviceFlow:
    return GoogleDeviceFlow.from_settings(get_settings())


@lru_cache(maxsize=1)
def get_upstream_factory() -> InnertubeClientFactory:
    return InnertubeClientFactory(
        config=InnertubeConfig.from_settings(get_settings()),
        token_refresher=get_device_flow().refresh,
    )


@lru_cache(maxsize=1)
def get_auth_state() -> AuthStateMachine:
    settings = get_settings()
    device_flow = get_device_flow()
    machine = AuthStateMachine(
        store=get_credential_store(),
        upstream=get_upstream_factory(),
        browser=(
            PlaywrightCookieLogin.from_settings(settings)
            if settings.browser_login_enabled
            else None
        ),
        device_flow=device_flow if device_flow.configured else None,
        telemetry=get_telemetry(),
        browser_launch_timeout_seconds=settings.browser_launch_timeout_seconds,
        oauth_challenge_timeout_seconds=settings.oauth_challenge_timeout_seconds,
    )
    machine.load_credential()
    return machine


@lru_cache(maxsize=1)
def get_listing_service() -> ListingService:
    settings = get_settings()
    return ListingService(
        auth=get_auth_state(),
        feed_fallback_query=settings.feed_fallback_query,
        max_empty_hops=settings.pagination_max_empty_hops,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_summary_service() -> SummaryService:
    settings = get_settings()
    openrouter, gemini = build_summarizers(settings)
    return SummaryService(
        session_provider=get_auth_state().get_session,
        repository=SummaryRepository(get_database()),
        openrouter=openrouter,
        gemini=gemini,
        transcript_max_chars=settings.summary_transcript_max_chars,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_site_session_signer() -> SiteSessionSigner | None:
    settings = get_settings()
    if settings.site_session_secret is None:
        return None
    return SiteSessionSigner(
        secret=settings.site_session_secret,
        ttl_seconds=settings.site_session_ttl_seconds,
    )


def reset_cached_dependencies() -> None:
    get_site_session_signer.cache_clear()
    get_summary_service.cache_clear()
    get_listing_service.cache_clear()
    get_auth_state.cache_clear()
    get_upstream_factory.cache_clear()
    get_device_flow.cache_clear()
    get_credential_store.cache_clear()
    get_database.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
