from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from mytube.app.config import FatalConfigError, load_settings, require_site_login_secrets
from mytube.app.models.auth import CookieCredential, OAuthCredential
from mytube.app.repositories.credential_store import CredentialStore
from mytube.app.repositories.database import Database
from mytube.app.repositories.summary_repository import SummaryRepository


def test_load_settings_derives_paths_from_data_dir(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MYTUBE_DATA_DIR", str(tmp_path / "runtime"))
    monkeypatch.setenv("MYTUBE_DB_PATH", str(tmp_path / "elsewhere" / "summaries.db"))

    settings = load_settings()

    assert settings.credential_path == (tmp_path / "runtime" / "youtube-cookie.txt").resolve()
    assert settings.oauth_token_path == (
        tmp_path / "runtime" / "youtube-oauth-token.json"
    ).resolve()
    assert settings.log_dir == (tmp_path / "runtime" / "logs").resolve()
    assert settings.db_path == (tmp_path / "elsewhere" / "summaries.db").resolve()


def test_load_settings_parses_lists_and_booleans(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MYTUBE_GEMINI_API_KEYS", " key-a, ,key-b ,key-c")
    monkeypatch.setenv("MYTUBE_SITE_LOGIN_ENABLED", "off")
    monkeypatch.setenv("MYTUBE_BROWSER_LOGIN_ENABLED", "not-a-bool")
    monkeypatch.setenv("MYTUBE_OPENROUTER_API_KEY", "   ")
    monkeypatch.setenv("MYTUBE_TELEMETRY_SINK", " NONE ")

    settings = load_settings()

    assert settings.gemini_api_keys == ("key-a", "key-b", "key-c")
    assert settings.site_login_enabled is False
    assert settings.browser_login_enabled is True
    assert settings.openrouter_api_key is None
    assert settings.telemetry_sink == "none"


def test_invalid_telemetry_sink_is_rejected(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MYTUBE_TELEMETRY_SINK", "kafka")

    with pytest.raises(ValueError):
        load_settings()


def test_require_site_login_secrets_names_missing_variables(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MYTUBE_SITE_LOGIN_ID", "owner")
    for name in ("MYTUBE_SITE_LOGIN_PASSWORD", "MYTUBE_SITE_SESSION_SECRET"):
        monkeypatch.delenv(name, raising=False)

    with pytest.raises(FatalConfigError) as exc_info:
        require_site_login_secrets(load_settings())

    message = str(exc_info.value)
    assert "MYTUBE_SITE_LOGIN_PASSWORD" in message
    assert "MYTUBE_SITE_SESSION_SECRET" in message
    assert "MYTUBE_SITE_LOGIN_ID" not in message


def _store(tmp_path: Path) -> CredentialStore:
    return CredentialStore(
        cookie_path=tmp_path / "creds" / "cookie.txt",
        oauth_token_path=tmp_path / "creds" / "token.json",
    )


def test_credential_store_keeps_a_single_credential_kind(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert store.load() is None

    store.save(CookieCredential(value="SID=1; SAPISID=2"))
    assert store.load() == CookieCredential(value="SID=1; SAPISID=2")
    assert store.cookie_path.stat().st_mode & 0o777 == 0o600

    oauth = OAuthCredential(
        access_token="access",
        refresh_token="refresh",
        expiry=datetime(2030, 1, 1, tzinfo=UTC),
        scope="scope-a",
    )
    store.save(oauth)
    assert store.load() == oauth
    assert not store.cookie_path.exists()

    store.delete()
    assert store.load() is None
    store.delete()


def test_credential_store_ignores_malformed_token_file(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.oauth_token_path.parent.mkdir(parents=True)
    store.oauth_token_path.write_text('{"access_token": "only"}', encoding="utf-8")
    store.cookie_path.write_text("SID=fallback-cookie", encoding="utf-8")

    assert store.load() == CookieCredential(value="SID=fallback-cookie")


def test_oauth_credential_expiry_includes_skew() -> None:
    now = datetime(2030, 1, 1, tzinfo=UTC)
    credential = OAuthCredential(
        access_token="a",
        refresh_token="r",
        expiry=now + timedelta(seconds=30),
    )
    assert credential.is_expired(now=now) is True
    assert credential.is_expired(now=now - timedelta(minutes=5)) is False


def test_summary_repository_upserts_per_video_and_mode(tmp_path: Path) -> None:
    db = Database(tmp_path / "state.db")
    db.initialize()
    repository = SummaryRepository(db)

    repository.put(video_id="vid", mode="gemini", summary="first")
    repository.put(video_id="vid", mode="gemini", summary="second")

    cached = repository.get(video_id="vid", mode="gemini")
    assert cached is not None
    assert cached.summary == "second"
    assert repository.get(video_id="vid", mode="openrouter") is None
