from __future__ import annotations

from collections.abc import Iterator
from functools import lru_cache
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from mytube.app.dependencies import reset_cached_dependencies
from mytube.app.main import create_app
from tests.fakes import FakeUpstream

_ISOLATED_ENV_NAMES: tuple[str, ...] = (
    "MYTUBE_OAUTH_CLIENT_ID",
    "MYTUBE_OAUTH_CLIENT_SECRET",
    "MYTUBE_OPENROUTER_API_KEY",
    "MYTUBE_GEMINI_API_KEYS",
    "MYTUBE_SITE_LOGIN_ID",
    "MYTUBE_SITE_LOGIN_PASSWORD",
    "MYTUBE_SITE_SESSION_SECRET",
)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def app_env(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, upstream: FakeUpstream
) -> Path:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.chdir(tmp_path)
    for name in _ISOLATED_ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MYTUBE_DATA_DIR", str(data_dir))
    monkeypatch.setenv("MYTUBE_SITE_LOGIN_ENABLED", "0")
    monkeypatch.setenv("MYTUBE_BROWSER_LOGIN_ENABLED", "0")
    monkeypatch.setenv("MYTUBE_TELEMETRY_SINK", "none")
    monkeypatch.setenv("MYTUBE_LOG_LEVEL", "warning")

    # Wrapped in lru_cache so reset_cached_dependencies() can clear it like the real getter.
    monkeypatch.setattr(
        "mytube.app.dependencies.get_upstream_factory",
        lru_cache(maxsize=1)(lambda: upstream),
    )
    return data_dir


@pytest.fixture
def client(app_env: Path) -> Iterator[TestClient]:
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
