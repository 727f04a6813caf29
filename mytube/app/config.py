from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_DATA_DIR = ".mytube"
DEFAULT_OAUTH_SCOPE = "http://gdata.youtube.com https://www.googleapis.com/auth/youtube-paid-content"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("credential_path", Path("youtube-cookie.txt")),
    ("oauth_token_path", Path("youtube-oauth-token.json")),
    ("db_path", Path("state.db")),
    ("browser_profile_dir", Path("chrome-login")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "browser_login_enabled",
    "telemetry_enabled",
    "site_login_enabled",
    "site_cookie_secure",
)
_OPTIONAL_TEXT_FIELDS: tuple[str, ...] = (
    "oauth_client_id",
    "oauth_client_secret",
    "openrouter_api_key",
    "site_login_id",
    "site_login_password",
    "site_session_secret",
)


class FatalConfigError(Exception):
    """A required secret or key is missing; nothing the caller can retry."""


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{MYTUBE_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _split_key_list(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        raw_items: list[Any] = value.split(",")
    elif isinstance(value, list | tuple):
        raw_items = list(value)
    else:
        return ()
    keys: list[str] = []
    for item in raw_items:
        if isinstance(item, str) and item.strip():
            keys.append(item.strip())
    return tuple(keys)


class AppSettings(BaseSettings):
    """
    Runtime configuration for the MyTube backend.

    Every option is read from a `MYTUBE_*` environment variable (or `.env`).
    Path options left unset are derived from `data_dir` by `load_settings()`.
    """

    model_config = SettingsConfigDict(
        env_prefix="MYTUBE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Local state.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for credentials, the summary cache, and logs.",
    )
    credential_path: Path = Field(
        default=_default_in_data_dir(Path("youtube-cookie.txt")),
        description=(
            "Cookie credential blob. "
            f"{_data_dir_default_note(Path('youtube-cookie.txt'))}"
        ),
    )
    oauth_token_path: Path = Field(
        default=_default_in_data_dir(Path("youtube-oauth-token.json")),
        description=(
            "OAuth token set JSON. "
            f"{_data_dir_default_note(Path('youtube-oauth-token.json'))}"
        ),
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database for cached summaries. {_data_dir_default_note(Path('state.db'))}",
    )

    # Upstream InnerTube API.
    innertube_base_url: str = Field(
        default="https://www.youtube.com/youtubei/v1",
        description="Base URL of the InnerTube JSON API.",
    )
    innertube_client_version: str = Field(
        default="2.20250312.04.00",
        description="WEB client version sent in the InnerTube request context.",
    )
    innertube_language: str = Field(default="ko", description="InnerTube `hl` language.")
    innertube_region: str = Field(default="KR", description="InnerTube `gl` region.")
    upstream_timeout_seconds: float = Field(
        default=15.0,
        description="Timeout applied to every upstream HTTP call.",
    )
    feed_fallback_query: str = Field(
        default="한국 인기 영상 2025",
        description="Search query used when neither the home feed nor trending yields videos.",
    )

    # Interactive browser login.
    browser_profile_dir: Path = Field(
        default=_default_in_data_dir(Path("chrome-login")),
        description=(
            "Persistent browser profile used by the interactive login. "
            f"{_data_dir_default_note(Path('chrome-login'))}"
        ),
    )
    browser_login_enabled: bool = Field(
        default=True,
        description="Offer the interactive browser login. Disable on hosts without a display.",
    )
    browser_channel: str = Field(
        default="chrome",
        description="Playwright browser channel used for the interactive login.",
    )
    browser_launch_timeout_seconds: float = Field(
        default=30.0,
        description="How long to wait for the login browser to report that it launched.",
    )
    login_page_timeout_seconds: float = Field(
        default=300.0,
        description="How long the user has to finish signing in inside the login browser.",
    )
    login_settle_seconds: float = Field(
        default=2.0,
        description="Delay after landing on YouTube before cookies are captured.",
    )

    # OAuth device flow.
    oauth_client_id: str | None = Field(
        default=None,
        description="OAuth client id used for the device authorization flow.",
    )
    oauth_client_secret: str | None = Field(
        default=None,
        description="OAuth client secret used for the device authorization flow.",
    )
    oauth_scope: str = Field(
        default=DEFAULT_OAUTH_SCOPE,
        description="Space-separated scopes requested by the device flow.",
    )
    oauth_challenge_timeout_seconds: float = Field(
        default=30.0,
        description="How long to wait for the provider to issue a verification code.",
    )

    # Pagination.
    pagination_max_empty_hops: int = Field(
        default=3,
        ge=1,
        description="Consecutive empty continuation pages tolerated before a walk stops.",
    )

    # Summaries.
    openrouter_api_key: str | None = Field(default=None, description="OpenRouter API key.")
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        description="OpenRouter OpenAI-compatible base URL.",
    )
    openrouter_model: str = Field(
        default="google/gemini-3-pro-preview",
        description="Model used for transcript-based summaries.",
    )
    gemini_api_keys: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        description="Comma-separated Gemini API keys rotated on rate limiting.",
    )
    gemini_model: str = Field(default="gemini-2.5-flash", description="Gemini model name.")
    summary_transcript_max_chars: int = Field(
        default=12_000,
        description="Transcript characters included in a summary prompt.",
    )

    # Site login gate.
    site_login_enabled: bool = Field(
        default=True,
        description="Require the signed `session` cookie on every non-public route.",
    )
    site_login_id: str | None = Field(default=None, description="Site login id.")
    site_login_password: str | None = Field(default=None, description="Site login password.")
    site_session_secret: str | None = Field(
        default=None,
        description="HMAC secret used to sign site session tokens.",
    )
    site_session_ttl_seconds: int = Field(
        default=7 * 24 * 3600,
        description="Lifetime of a site session token.",
    )
    site_cookie_secure: bool = Field(
        default=False,
        description="Mark the site session cookie as Secure (enable behind HTTPS).",
    )

    # Logging and telemetry.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(default="INFO", description="Console log level (stdout).")
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="Telemetry sink backend. `log` emits structured events; `none` drops them.",
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("MYTUBE_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("MYTUBE_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("innertube_base_url", "openrouter_base_url", mode="before")
    @classmethod
    def _normalize_base_urls(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Base URLs must be non-empty strings.")
        return value.strip().rstrip("/")

    @field_validator("gemini_api_keys", mode="before")
    @classmethod
    def _normalize_gemini_keys(cls, value: Any) -> tuple[str, ...]:
        return _split_key_list(value)

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator(*_OPTIONAL_TEXT_FIELDS, mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name)) for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def require_site_login_secrets(settings: AppSettings) -> tuple[str, str, str]:
    missing: list[str] = []
    if settings.site_login_id is None:
        missing.append("MYTUBE_SITE_LOGIN_ID")
    if settings.site_login_password is None:
        missing.append("MYTUBE_SITE_LOGIN_PASSWORD")
    if settings.site_session_secret is None:
        missing.append("MYTUBE_SITE_SESSION_SECRET")
    if missing:
        raise FatalConfigError(f"Site login is not configured: missing {', '.join(missing)}.")
    assert settings.site_login_id is not None
    assert settings.site_login_password is not None
    assert settings.site_session_secret is not None
    return settings.site_login_id, settings.site_login_password, settings.site_session_secret


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
