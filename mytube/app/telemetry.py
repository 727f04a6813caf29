from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, Protocol

import structlog

_REDACTED = "[redacted]"
_SENSITIVE_ATTRIBUTE_TOKENS: frozenset[str] = frozenset(
    {
        "api_key",
        "authorization",
        "cookie",
        "device_code",
        "password",
        "secret",
        "token",
        "transcript",
        "user_code",
    }
)
_MAX_STRING_LENGTH = 120

AttributeValue = bool | int | float | str | None


class TelemetryEvent(str, Enum):
    HTTP_REQUEST_START = "http.request.start"
    HTTP_REQUEST_FINISH = "http.request.finish"
    HTTP_REQUEST_ERROR = "http.request.error"
    AUTH_TRANSITION = "auth.transition"
    AUTH_LOGIN_START = "auth.login.start"
    AUTH_LOGIN_FINISH = "auth.login.finish"
    AUTH_COOKIE_ACCEPTED = "auth.cookie.accepted"
    AUTH_COOKIE_REJECTED = "auth.cookie.rejected"
    AUTH_OAUTH_REFRESHED = "auth.oauth.refreshed"
    PAGINATION_HOP = "pagination.hop"
    LISTING_AUTH_EXPIRED = "listing.auth_expired"
    SUMMARY_GENERATE = "summary.generate"


def elapsed_ms(started_at: float) -> int:
    """Milliseconds since a `time.perf_counter()` reading."""
    return int((time.perf_counter() - started_at) * 1000)


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, AttributeValue]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, AttributeValue]) -> None:
        _ = (event_name, attributes)


class StructuredLogTelemetrySink:
    def __init__(self, logger_name: str = "mytube.telemetry") -> None:
        self._logger = structlog.get_logger(logger_name)

    def emit(self, *, event_name: str, attributes: Mapping[str, AttributeValue]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    """Emits named events for auth transitions and listing walks.

    Attribute names that look like credentials are replaced before they reach
    the sink, so callers may pass request context through unchanged.
    """

    enabled: bool
    sink: TelemetrySink

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def emit(self, event: TelemetryEvent | str, **attributes: Any) -> None:
        if not self.enabled:
            return
        event_name = event.value if isinstance(event, TelemetryEvent) else event
        self.sink.emit(event_name=event_name, attributes=sanitize_attributes(attributes))

    def auth_transition(
        self,
        from_state: Enum,
        to_state: Enum,
        *,
        reason: str,
        method: str | None = None,
    ) -> None:
        self.emit(
            TelemetryEvent.AUTH_TRANSITION,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            method=method,
        )

    def pagination_hop(
        self,
        listing_kind: Enum,
        page_index: int,
        *,
        outcome: Literal["ok", "empty", "error"],
        started_at: float,
        items: int | None = None,
    ) -> None:
        self.emit(
            TelemetryEvent.PAGINATION_HOP,
            listing_kind=listing_kind,
            page_index=page_index,
            outcome=outcome,
            items=items,
            duration_ms=elapsed_ms(started_at),
        )

    def listing_auth_expired(self, listing_kind: Enum, *, page_index: int = 0) -> None:
        # page_index 0 means the first page was rejected, later pages mean a hop was.
        self.emit(
            TelemetryEvent.LISTING_AUTH_EXPIRED,
            listing_kind=listing_kind,
            page_index=page_index,
        )

    def summary_generated(self, mode: str, *, summary: str, started_at: float) -> None:
        self.emit(
            TelemetryEvent.SUMMARY_GENERATE,
            mode=mode,
            outcome="ok" if summary else "empty",
            summary_chars=len(summary),
            duration_ms=elapsed_ms(started_at),
        )


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if not enabled or sink == "none":
        return TelemetryClient.disabled()
    if sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())

    logging.getLogger("mytube.telemetry").warning(
        "unknown telemetry sink; telemetry disabled sink=%s", sink
    )
    return TelemetryClient.disabled()


def sanitize_attributes(attributes: Mapping[str, Any]) -> dict[str, AttributeValue]:
    sanitized: dict[str, AttributeValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        if any(token in key for token in _SENSITIVE_ATTRIBUTE_TOKENS):
            sanitized[key] = _REDACTED if raw_value is not None else None
            continue
        sanitized[key] = _coerce_value(raw_value)
    return sanitized


def _coerce_value(value: Any) -> AttributeValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if hasattr(value, "value") and isinstance(value.value, str):
        # Enum members render as their wire value.
        return value.value
    if isinstance(value, str):
        compact = " ".join(value.split())
        if len(compact) <= _MAX_STRING_LENGTH:
            return compact
        return f"{compact[:_MAX_STRING_LENGTH]}..."
    return type(value).__name__
