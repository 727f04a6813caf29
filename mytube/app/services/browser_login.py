from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlparse

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from mytube.app.config import AppSettings
from mytube.app.models.auth import LoginCancelledError

LOGGER = logging.getLogger("mytube.auth.browser")

LOGIN_ENTRY_URL = "https://accounts.google.com/ServiceLogin?continue=https://www.youtube.com/"
LOGIN_DONE_HOSTNAME = "www.youtube.com"
COOKIE_SOURCE_URL = "https://www.youtube.com"
_POLL_INTERVAL_MS = 500
_LAUNCH_ARGS: tuple[str, ...] = (
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-blink-features=AutomationControlled",
    "--window-size=500,700",
)
_HIDE_WEBDRIVER_SCRIPT = (
    "Object.defineProperty(navigator, 'webdriver', { get: () => undefined });"
)


class BrowserLoginError(Exception):
    pass


class BrowserUnavailableError(BrowserLoginError):
    """No controllable browser could be launched on this host."""


class BrowserLoginStrategy(Protocol):
    def run(self, *, on_launched: Callable[[], None], cancel_event: threading.Event) -> str:
        """Drive an interactive sign-in and return the captured cookie header.

        Must raise `BrowserUnavailableError` before calling `on_launched` when
        the browser cannot be started.
        """
        ...


class PlaywrightCookieLogin:
    """Opens a visible Chrome window on the Google sign-in page and waits for
    the user to land back on YouTube, then reads the YouTube cookies."""

    def __init__(
        self,
        *,
        profile_dir: Path,
        channel: str,
        login_timeout_seconds: float,
        settle_seconds: float,
    ) -> None:
        self._profile_dir = profile_dir
        self._channel = channel
        self._login_timeout_seconds = login_timeout_seconds
        self._settle_seconds = settle_seconds

    @classmethod
    def from_settings(cls, settings: AppSettings) -> PlaywrightCookieLogin:
        return cls(
            profile_dir=settings.browser_profile_dir,
            channel=settings.browser_channel,
            login_timeout_seconds=float(settings.login_page_timeout_seconds),
            settle_seconds=float(settings.login_settle_seconds),
        )

    def run(self, *, on_launched: Callable[[], None], cancel_event: threading.Event) -> str:
        self._profile_dir.mkdir(parents=True, exist_ok=True)
        try:
            playwright = sync_playwright().start()
        except PlaywrightError as exc:
            raise BrowserUnavailableError(f"playwright driver could not start: {exc}") from exc

        try:
            try:
                context = playwright.chromium.launch_persistent_context(
                    user_data_dir=str(self._profile_dir),
                    headless=False,
                    channel=self._channel,
                    args=list(_LAUNCH_ARGS),
                    ignore_default_args=["--enable-automation"],
                    viewport={"width": 480, "height": 640},
                )
            except PlaywrightError as exc:
                raise BrowserUnavailableError(f"browser launch failed: {exc}") from exc

            LOGGER.info("browser login launched channel=%s", self._channel)
            on_launched()
            try:
                return self._capture_cookies(context, cancel_event)
            finally:
                _close_quietly(context)
        finally:
            playwright.stop()

    def _capture_cookies(self, context: Any, cancel_event: threading.Event) -> str:
        context.add_init_script(_HIDE_WEBDRIVER_SCRIPT)
        page = context.pages[0] if context.pages else context.new_page()
        try:
            page.goto(LOGIN_ENTRY_URL, wait_until="domcontentloaded")
        except PlaywrightError as exc:
            raise BrowserLoginError(f"could not open the sign-in page: {exc}") from exc

        LOGGER.info("browser login waiting for user timeout_seconds=%s", self._login_timeout_seconds)
        deadline = time.monotonic() + self._login_timeout_seconds
        while urlparse(page.url).hostname != LOGIN_DONE_HOSTNAME:
            if cancel_event.is_set():
                raise LoginCancelledError("browser login cancelled")
            if time.monotonic() >= deadline:
                raise BrowserLoginError("timed out waiting for the user to finish signing in")
            try:
                page.wait_for_timeout(_POLL_INTERVAL_MS)
            except PlaywrightError as exc:
                # The user closed the window.
                raise BrowserLoginError(f"browser closed before sign-in finished: {exc}") from exc

        page.wait_for_timeout(int(self._settle_seconds * 1000))
        cookies = context.cookies([COOKIE_SOURCE_URL])
        LOGGER.info("browser login captured cookie_count=%s", len(cookies))
        return "; ".join(f"{cookie['name']}={cookie['value']}" for cookie in cookies)


def _close_quietly(context: Any) -> None:
    try:
        context.close()
    except PlaywrightError:
        LOGGER.debug("browser context already closed", exc_info=True)
