from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import pytest
from playwright.sync_api import Error as PlaywrightError

from mytube.app.models.auth import LoginCancelledError
from mytube.app.services.browser_login import (
    BrowserLoginError,
    BrowserUnavailableError,
    PlaywrightCookieLogin,
)


class _FakePage:
    def __init__(self, urls: list[str]) -> None:
        self._urls = urls
        self.url = "about:blank"
        self.visited: list[str] = []

    def goto(self, url: str, wait_until: str) -> None:
        self.visited.append(url)
        self.url = self._urls.pop(0) if self._urls else url

    def wait_for_timeout(self, timeout_ms: int) -> None:
        if self._urls:
            self.url = self._urls.pop(0)


class _FakeContext:
    def __init__(self, page: _FakePage) -> None:
        self.pages = [page]
        self.closed = False
        self.init_scripts: list[str] = []

    def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    def cookies(self, urls: list[str]) -> list[dict[str, str]]:
        return [{"name": "SID", "value": "sid-1"}, {"name": "SAPISID", "value": "sap-1"}]

    def close(self) -> None:
        self.closed = True


class _FakePlaywright:
    def __init__(self, context: _FakeContext | None, launch_error: Exception | None) -> None:
        self.context = context
        self.launch_error = launch_error
        self.stopped = False
        self.launch_kwargs: dict[str, Any] = {}
        self.chromium = self

    def launch_persistent_context(self, **kwargs: Any) -> _FakeContext:
        self.launch_kwargs = kwargs
        if self.launch_error is not None:
            raise self.launch_error
        assert self.context is not None
        return self.context

    def start(self) -> _FakePlaywright:
        return self

    def stop(self) -> None:
        self.stopped = True


def _install_playwright(
    monkeypatch: pytest.MonkeyPatch,
    *,
    context: _FakeContext | None = None,
    launch_error: Exception | None = None,
) -> _FakePlaywright:
    fake = _FakePlaywright(context, launch_error)
    monkeypatch.setattr("mytube.app.services.browser_login.sync_playwright", lambda: fake)
    return fake


def _login(tmp_path: Path, *, timeout: float = 5.0) -> PlaywrightCookieLogin:
    return PlaywrightCookieLogin(
        profile_dir=tmp_path / "chrome-login",
        channel="chrome",
        login_timeout_seconds=timeout,
        settle_seconds=0.0,
    )


def test_run_returns_cookies_once_user_lands_on_youtube(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    page = _FakePage(
        [
            "https://accounts.google.com/signin",
            "https://accounts.google.com/challenge",
            "https://www.youtube.com/",
        ]
    )
    context = _FakeContext(page)
    fake = _install_playwright(monkeypatch, context=context)
    launched = threading.Event()

    cookie = _login(tmp_path).run(on_launched=launched.set, cancel_event=threading.Event())

    assert cookie == "SID=sid-1; SAPISID=sap-1"
    assert launched.is_set()
    assert context.closed is True
    assert fake.stopped is True
    assert fake.launch_kwargs["headless"] is False
    assert fake.launch_kwargs["user_data_dir"] == str(tmp_path / "chrome-login")


def test_launch_failure_is_reported_as_unavailable(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    fake = _install_playwright(monkeypatch, launch_error=PlaywrightError("no display"))
    launched = threading.Event()

    with pytest.raises(BrowserUnavailableError):
        _login(tmp_path).run(on_launched=launched.set, cancel_event=threading.Event())

    assert not launched.is_set()
    assert fake.stopped is True


def test_cancel_event_stops_waiting(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    context = _FakeContext(_FakePage(["https://accounts.google.com/signin"]))
    _install_playwright(monkeypatch, context=context)
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(LoginCancelledError):
        _login(tmp_path).run(on_launched=lambda: None, cancel_event=cancel_event)

    assert context.closed is True


def test_login_times_out_when_user_never_finishes(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    context = _FakeContext(_FakePage(["https://accounts.google.com/signin"]))
    _install_playwright(monkeypatch, context=context)

    with pytest.raises(BrowserLoginError):
        _login(tmp_path, timeout=0.0).run(on_launched=lambda: None, cancel_event=threading.Event())
