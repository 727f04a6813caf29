from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from mytube.app.config import FatalConfigError
from mytube.app.models.auth import (
    AuthState,
    AuthStatus,
    CookieCredential,
    Credential,
    DeviceChallenge,
    LoginCancelledError,
    LoginMethod,
    LoginResult,
    OAuthCredential,
    PendingChallenge,
)
from mytube.app.models.outcomes import ResultKind
from mytube.app.repositories.credential_store import CredentialStore
from mytube.app.services.browser_login import BrowserLoginStrategy, BrowserUnavailableError
from mytube.app.services.innertube_client import UpstreamError, UpstreamFactory, UpstreamSession
from mytube.app.services.oauth_device_flow import DeviceFlowError, DeviceFlowProvider
from mytube.app.telemetry import TelemetryClient, TelemetryEvent, elapsed_ms

LOGGER = logging.getLogger("mytube.auth")

MIN_COOKIE_LENGTH = 10

AuthChangeListener = Callable[[bool], None]


class CookieValidationError(ValueError):
    """A pasted cookie string is too short to be a credential."""


@dataclass
class _LoginTask:
    method: LoginMethod
    login_id: str = field(default_factory=lambda: uuid4().hex[:12])
    cancel_event: threading.Event = field(default_factory=threading.Event)
    ready: threading.Event = field(default_factory=threading.Event)
    challenge: PendingChallenge | None = None
    failure_kind: ResultKind | None = None
    failure_message: str | None = None
    started_at: float = field(default_factory=time.perf_counter)


class AuthStateMachine:
    """Owns the process-wide credential, the upstream session and the login flows.

    Browser and device-code logins run on background threads; callers only
    wait for the first observable milestone (browser launched, device code
    issued). Every state change happens under one re-entrant lock, and login
    threads check that their task is still the current one before applying a
    result, so `cancel_login` and `sign_out` win any race with a late finish.
    """

    def __init__(
        self,
        *,
        store: CredentialStore,
        upstream: UpstreamFactory,
        browser: BrowserLoginStrategy | None = None,
        device_flow: DeviceFlowProvider | None = None,
        telemetry: TelemetryClient | None = None,
        browser_launch_timeout_seconds: float = 30.0,
        oauth_challenge_timeout_seconds: float = 30.0,
    ) -> None:
        self._store = store
        self._upstream = upstream
        self._browser = browser
        self._device_flow = device_flow
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._browser_launch_timeout_seconds = browser_launch_timeout_seconds
        self._oauth_challenge_timeout_seconds = oauth_challenge_timeout_seconds

        self._lock = threading.RLock()
        self._credential: Credential | None = None
        self._session: UpstreamSession | None = None
        self._authenticated = False
        self._state = AuthState.ANONYMOUS
        self._method: LoginMethod | None = None
        self._error: str | None = None
        self._login: _LoginTask | None = None
        self._listeners: list[AuthChangeListener] = []

    def add_auth_listener(self, listener: AuthChangeListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def load_credential(self) -> Credential | None:
        credential = self._store.load()
        with self._lock:
            self._credential = credential
            self._session = None
            self._authenticated = credential is not None
            self._state = AuthState.AUTHENTICATED if credential else AuthState.ANONYMOUS
            self._method = _method_for(credential)
        LOGGER.info("auth credential restored present=%s", credential is not None)
        return credential

    def poll_status(self) -> AuthStatus:
        with self._lock:
            login = self._login
            return AuthStatus(
                authenticated=self._authenticated,
                login_in_progress=login is not None,
                pending_challenge=login.challenge if login is not None else None,
                state=self._state,
                method=self._method,
                error=self._error,
            )

    def get_session(self) -> UpstreamSession:
        with self._lock:
            if self._session is not None:
                return self._session
            previous = self._authenticated
            credential = self._credential
            if credential is not None:
                try:
                    self._session = self._upstream.create_session(
                        credential,
                        on_credential_refreshed=self._persist_refreshed_credential,
                    )
                    return self._session
                except UpstreamError:
                    LOGGER.warning(
                        "auth sign-in with stored credential failed; using anonymous session",
                        exc_info=True,
                    )
                    self._credential = None
                    self._authenticated = False
                    self._transition(AuthState.ANONYMOUS, reason="sign_in_failed")
            self._session = self._upstream.create_session(None)
            session = self._session
        self._notify_if_changed(previous)
        return session

    def begin_login(self) -> LoginResult:
        """Browser login first, falling back to the device flow when no browser exists."""

        result = self.begin_interactive_login()
        if result.kind is not ResultKind.STRATEGY_UNAVAILABLE:
            return result
        LOGGER.info("auth browser strategy unavailable; falling back to device flow")
        return self.begin_oauth_login()

    def begin_interactive_login(self) -> LoginResult:
        with self._lock:
            if self._login is not None:
                return LoginResult.success(
                    authenticated=self._authenticated, challenge=self._login.challenge
                )
            if self._browser is None:
                return LoginResult.failure(ResultKind.STRATEGY_UNAVAILABLE)
            task = self._start_task("browser")

        thread = threading.Thread(
            target=self._run_browser_login,
            args=(task,),
            name=f"mytube-browser-login-{task.login_id}",
            daemon=True,
        )
        thread.start()

        if not task.ready.wait(self._browser_launch_timeout_seconds):
            LOGGER.warning(
                "auth browser launch timed out timeout_seconds=%s",
                self._browser_launch_timeout_seconds,
            )
            self._abandon(task, reason="launch_timeout")
            return LoginResult.failure(
                ResultKind.STRATEGY_UNAVAILABLE,
                message="The login browser did not start in time.",
            )

        with self._lock:
            if task.failure_kind is not None:
                return LoginResult.failure(task.failure_kind, message=task.failure_message)
            return LoginResult.success(authenticated=self._authenticated)

    def begin_oauth_login(self) -> LoginResult:
        with self._lock:
            current = self._login
            if current is not None and current.method != "oauth":
                return LoginResult.success(authenticated=self._authenticated)
            if current is not None and current.challenge is not None:
                return LoginResult.success(
                    authenticated=self._authenticated, challenge=current.challenge
                )
            if current is None:
                if self._device_flow is None:
                    return LoginResult.failure(
                        ResultKind.STRATEGY_UNAVAILABLE,
                        message=(
                            "Device-code sign-in is not available. "
                            "Paste your YouTube cookies instead."
                        ),
                    )
                task = self._start_task("oauth")
                start_thread = True
            else:
                task = current
                start_thread = False

        if start_thread:
            thread = threading.Thread(
                target=self._run_oauth_login,
                args=(task,),
                name=f"mytube-oauth-login-{task.login_id}",
                daemon=True,
            )
            thread.start()

        if not task.ready.wait(self._oauth_challenge_timeout_seconds):
            LOGGER.warning(
                "auth device code not issued in time timeout_seconds=%s",
                self._oauth_challenge_timeout_seconds,
            )
            self._abandon(task, reason="challenge_timeout")
            return LoginResult.failure(ResultKind.TRANSIENT_FAILURE)

        with self._lock:
            if task.challenge is not None:
                return LoginResult.success(
                    authenticated=self._authenticated, challenge=task.challenge
                )
            return LoginResult.failure(
                task.failure_kind or ResultKind.TRANSIENT_FAILURE,
                message=task.failure_message,
            )

    def apply_cookie(self, raw_cookie: str) -> LoginResult:
        cookie = raw_cookie.strip()
        if len(cookie) < MIN_COOKIE_LENGTH:
            raise CookieValidationError(
                f"cookie must be at least {MIN_COOKIE_LENGTH} characters"
            )

        self.cancel_login()
        started_at = time.perf_counter()
        credential = CookieCredential(value=cookie)
        try:
            trial_session = self._upstream.create_session(credential)
            trial_session.fetch_feed()
        except UpstreamError as exc:
            LOGGER.info("auth cookie rejected error_type=%s", type(exc).__name__)
            self._telemetry.emit(
                TelemetryEvent.AUTH_COOKIE_REJECTED,
                error_type=type(exc).__name__,
                duration_ms=elapsed_ms(started_at),
            )
            with self._lock:
                if not self._authenticated:
                    self._transition(AuthState.ANONYMOUS, reason="cookie_rejected")
            return LoginResult.failure(ResultKind.CREDENTIAL_INVALID)

        self._store.save(credential)
        with self._lock:
            previous = self._authenticated
            self._install_credential(credential, trial_session, method="cookie")
        self._telemetry.emit(
            TelemetryEvent.AUTH_COOKIE_ACCEPTED,
            duration_ms=elapsed_ms(started_at),
        )
        self._notify(previous_authenticated=previous, force=True)
        return LoginResult.success(authenticated=True)

    def cancel_login(self) -> AuthStatus:
        with self._lock:
            task = self._login
        if task is not None:
            self._abandon(task, reason="cancelled")
        return self.poll_status()

    def sign_out(self) -> None:
        self.cancel_login()
        with self._lock:
            credential = self._credential

        if isinstance(credential, OAuthCredential) and self._device_flow is not None:
            try:
                self._device_flow.revoke(credential)
            except (DeviceFlowError, FatalConfigError):
                LOGGER.warning("auth oauth revoke failed; signing out locally", exc_info=True)

        self._store.delete()
        with self._lock:
            previous = self._authenticated
            self._credential = None
            self._session = None
            self._authenticated = False
            self._method = None
            self._error = None
            self._transition(AuthState.ANONYMOUS, reason="sign_out")
        self._notify(previous_authenticated=previous, force=True)

    def reset_session(self) -> None:
        with self._lock:
            previous = self._authenticated
            self._credential = None
            self._session = None
            self._authenticated = False
            self._method = None
            self._transition(AuthState.ANONYMOUS, reason="session_reset")
        LOGGER.info("auth session reset previously_authenticated=%s", previous)
        self._notify_if_changed(previous)

    def _start_task(self, method: LoginMethod) -> _LoginTask:
        task = _LoginTask(method=method)
        self._login = task
        self._error = None
        self._transition(AuthState.LOGIN_PENDING, reason="login_start", method=method)
        self._telemetry.emit(
            TelemetryEvent.AUTH_LOGIN_START, method=method, login_id=task.login_id
        )
        return task

    def _run_browser_login(self, task: _LoginTask) -> None:
        assert self._browser is not None
        tokens = bind_contextvars(auth_login_id=task.login_id, auth_method="browser")
        try:
            try:
                raw_cookie = self._browser.run(
                    on_launched=task.ready.set,
                    cancel_event=task.cancel_event,
                )
            except BrowserUnavailableError as exc:
                LOGGER.info("auth browser unavailable: %s", exc)
                self._finish_unavailable(task, str(exc))
                return
            except LoginCancelledError:
                LOGGER.info("auth browser login cancelled")
                return
            except Exception as exc:
                LOGGER.warning("auth browser login failed", exc_info=True)
                self._fail(task, ResultKind.TRANSIENT_FAILURE, f"Browser sign-in failed: {exc}")
                return

            self._complete_cookie_capture(task, raw_cookie)
        finally:
            task.ready.set()
            reset_contextvars(**tokens)

    def _complete_cookie_capture(self, task: _LoginTask, raw_cookie: str) -> None:
        if len(raw_cookie.strip()) < MIN_COOKIE_LENGTH:
            self._fail(task, ResultKind.CREDENTIAL_INVALID, "No YouTube cookies were captured.")
            return
        credential = CookieCredential(value=raw_cookie.strip())
        try:
            session = self._upstream.create_session(credential)
        except UpstreamError as exc:
            self._fail(
                task, ResultKind.CREDENTIAL_INVALID, f"Captured cookies cannot sign in: {exc}"
            )
            return
        try:
            session.fetch_feed()
        except UpstreamError:
            # The cookies came straight from a completed sign-in, so keep them.
            LOGGER.warning("auth browser probe failed; applying captured cookies", exc_info=True)

        with self._lock:
            if self._login is not task:
                return
            self._store.save(credential)
            previous = self._authenticated
            self._install_credential(credential, session, method="browser")
        self._finish_telemetry(task, outcome="ok")
        self._notify(previous_authenticated=previous, force=True)

    def _run_oauth_login(self, task: _LoginTask) -> None:
        assert self._device_flow is not None
        tokens = bind_contextvars(auth_login_id=task.login_id, auth_method="oauth")

        def on_pending(challenge: DeviceChallenge) -> None:
            with self._lock:
                if self._login is task:
                    task.challenge = PendingChallenge(
                        verification_url=challenge.verification_url,
                        user_code=challenge.user_code,
                    )
            task.ready.set()

        try:
            try:
                credential = self._device_flow.run(
                    on_pending=on_pending,
                    cancel_event=task.cancel_event,
                )
            except LoginCancelledError:
                LOGGER.info("auth device flow cancelled")
                return
            except FatalConfigError as exc:
                LOGGER.error("auth device flow misconfigured: %s", exc)
                self._fail(task, ResultKind.FATAL, str(exc))
                return
            except DeviceFlowError as exc:
                LOGGER.info("auth device flow ended without a token: %s", exc)
                self._fail(task, ResultKind.TRANSIENT_FAILURE, str(exc))
                return
            except Exception as exc:
                LOGGER.warning("auth device flow failed", exc_info=True)
                self._fail(task, ResultKind.TRANSIENT_FAILURE, f"Device sign-in failed: {exc}")
                return

            with self._lock:
                if self._login is not task:
                    return
                self._store.save(credential)
                previous = self._authenticated
                # The session is rebuilt lazily so it picks up the refresh callback.
                self._install_credential(credential, None, method="oauth")
            self._finish_telemetry(task, outcome="ok")
            self._notify(previous_authenticated=previous, force=True)
        finally:
            task.ready.set()
            reset_contextvars(**tokens)

    def _persist_refreshed_credential(self, credential: OAuthCredential) -> None:
        with self._lock:
            if not isinstance(self._credential, OAuthCredential):
                return
            self._credential = credential
            self._store.save(credential)
        self._telemetry.emit(
            TelemetryEvent.AUTH_OAUTH_REFRESHED, expiry=credential.expiry.isoformat()
        )

    def _install_credential(
        self,
        credential: Credential,
        session: UpstreamSession | None,
        *,
        method: LoginMethod,
    ) -> None:
        self._credential = credential
        self._session = session
        self._authenticated = True
        self._method = method
        self._error = None
        self._login = None
        self._transition(AuthState.AUTHENTICATED, reason="login_success", method=method)

    def _finish_unavailable(self, task: _LoginTask, message: str) -> None:
        with self._lock:
            task.failure_kind = ResultKind.STRATEGY_UNAVAILABLE
            task.failure_message = None
            if self._login is not task:
                return
            self._login = None
            self._restore_idle_state(reason="strategy_unavailable")
        self._finish_telemetry(task, outcome="unavailable", detail=message)

    def _fail(self, task: _LoginTask, kind: ResultKind, message: str) -> None:
        with self._lock:
            task.failure_kind = kind
            task.failure_message = message
            if self._login is not task:
                return
            self._login = None
            self._error = message
            if self._authenticated:
                # A failed re-login leaves the previous credential in charge.
                self._transition(AuthState.AUTHENTICATED, reason="login_failed")
            else:
                self._transition(AuthState.LOGIN_FAILED, reason="login_failed")
        self._finish_telemetry(task, outcome="failed", detail=kind.value)

    def _abandon(self, task: _LoginTask, *, reason: str) -> None:
        task.cancel_event.set()
        with self._lock:
            if self._login is not task:
                return
            self._login = None
            self._error = None
            self._restore_idle_state(reason=reason)
        self._finish_telemetry(task, outcome=reason)

    def _restore_idle_state(self, *, reason: str) -> None:
        if self._authenticated:
            self._transition(AuthState.AUTHENTICATED, reason=reason)
        else:
            self._transition(AuthState.ANONYMOUS, reason=reason)

    def _transition(
        self,
        new_state: AuthState,
        *,
        reason: str,
        method: LoginMethod | None = None,
    ) -> None:
        old_state = self._state
        self._state = new_state
        if old_state is new_state:
            return
        LOGGER.info(
            "auth transition from=%s to=%s reason=%s",
            old_state.value,
            new_state.value,
            reason,
        )
        self._telemetry.auth_transition(old_state, new_state, reason=reason, method=method)

    def _finish_telemetry(
        self,
        task: _LoginTask,
        *,
        outcome: str,
        detail: str | None = None,
    ) -> None:
        self._telemetry.emit(
            TelemetryEvent.AUTH_LOGIN_FINISH,
            method=task.method,
            login_id=task.login_id,
            outcome=outcome,
            detail=detail,
            duration_ms=elapsed_ms(task.started_at),
        )

    def _notify_if_changed(self, previous_authenticated: bool) -> None:
        self._notify(previous_authenticated=previous_authenticated, force=False)

    def _notify(self, *, previous_authenticated: bool, force: bool) -> None:
        with self._lock:
            current = self._authenticated
            listeners = list(self._listeners)
        if not force and current == previous_authenticated:
            return
        for listener in listeners:
            listener(current)


def _method_for(credential: Credential | None) -> LoginMethod | None:
    if credential is None:
        return None
    if isinstance(credential, OAuthCredential):
        return "oauth"
    return "cookie"
