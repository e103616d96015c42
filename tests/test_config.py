from __future__ import annotations

from feed_digest.config import DEFAULT_DB_URL, get_settings


def test_defaults(isolated_env, monkeypatch):
    monkeypatch.delenv("FEED_DIGEST_DB_URL", raising=False)
    for name in ("FETCH_CONCURRENCY", "DIGEST_TIME", "AUTO_PAUSE_THRESHOLD", "MAIL_SEND_TIMEOUT_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()

    settings = get_settings()

    assert settings.db_url == DEFAULT_DB_URL
    assert settings.fetch_concurrency == 2
    assert settings.digest_hour_minute() == (9, 0)
    assert settings.auto_pause_threshold == 5
    assert settings.mail_send_timeout_seconds == 30
    assert settings.timeout_policy == "multiplicative"
    assert settings.preview_mail is True
    assert settings.redis_url is None


def test_site_url_trailing_slash_is_dropped(isolated_env):
    assert get_settings().site_url == "https://digest.example.com"


def test_reply_to_falls_back_to_from(isolated_env, monkeypatch):
    settings = get_settings()
    assert settings.resolved_reply_to() == "noreply@digest.example.com"

    monkeypatch.setenv("SMTP_REPLY_TO", "support@digest.example.com")
    get_settings.cache_clear()
    assert get_settings().resolved_reply_to() == "support@digest.example.com"


def test_invalid_values_fall_back(isolated_env, monkeypatch):
    monkeypatch.setenv("FETCH_CONCURRENCY", "zero")
    monkeypatch.setenv("DIGEST_MAX_ITEMS", "-3")
    monkeypatch.setenv("DIGEST_TIME", "25:99")
    monkeypatch.setenv("TIMEOUT_POLICY", "random")
    monkeypatch.setenv("SMTP_SECURE", "maybe")
    get_settings.cache_clear()

    settings = get_settings()

    assert settings.fetch_concurrency == 2
    assert settings.digest_max_items == 10
    assert settings.digest_hour_minute() == (9, 0)
    assert settings.timeout_policy == "multiplicative"
    assert settings.smtp_secure is False


def test_env_file_values_are_loaded(isolated_env, monkeypatch, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("DIGEST_TIME=07:30\nTIMEOUT_POLICY=progressive\n", encoding="utf-8")
    # Register both names with monkeypatch so values loaded by dotenv are removed afterwards.
    for name in ("DIGEST_TIME", "TIMEOUT_POLICY"):
        monkeypatch.setenv(name, "placeholder")
        monkeypatch.delenv(name)
    get_settings.cache_clear()

    settings = get_settings()

    assert settings.digest_hour_minute() == (7, 30)
    assert settings.timeout_policy == "progressive"
