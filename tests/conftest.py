from __future__ import annotations

from pathlib import Path

import pytest

from feed_digest.config import get_settings
from feed_digest.db import init_db, session_scope


@pytest.fixture
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    db_path = tmp_path / "feed_digest_test.db"
    env_path = tmp_path / ".env"
    monkeypatch.setenv("FEED_DIGEST_DB_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("FEED_DIGEST_ENV_FILE", str(env_path))
    monkeypatch.setenv("UNSUBSCRIBE_SECRET", "test-secret")
    monkeypatch.setenv("SITE_URL", "https://digest.example.com/")
    monkeypatch.setenv("SMTP_FROM", "noreply@digest.example.com")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("SMTP_HOST", raising=False)
    monkeypatch.delenv("SMTP_REPLY_TO", raising=False)
    monkeypatch.delenv("DIGEST_TIMEZONE", raising=False)
    monkeypatch.delenv("TIMEOUT_POLICY", raising=False)
    monkeypatch.delenv("DIGEST_TIME", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(isolated_env):
    active = get_settings()
    init_db(active)
    return active


@pytest.fixture
def session(settings):
    with session_scope(settings) as db_session:
        yield db_session
