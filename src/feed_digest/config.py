from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


DEFAULT_DB_URL = "sqlite:///data/feed_digest.db"
DEFAULT_SITE_URL = "http://localhost:8000"
DEFAULT_FROM_EMAIL = "noreply@feed-digest.local"
TIMEOUT_POLICIES = ("multiplicative", "progressive")


@dataclass(frozen=True)
class Settings:
    db_url: str
    redis_url: str | None
    fetch_concurrency: int
    default_refresh_interval_minutes: int
    timeout_policy: str
    auto_pause_threshold: int
    feed_cache_ttl_seconds: int
    store_retry_seconds: int
    max_stored_items: int
    digest_time: str
    digest_timezone: str
    digest_max_items: int
    digest_window_hours: int
    digest_max_attempts: int
    digest_retry_seconds: int
    site_url: str
    smtp_host: str | None
    smtp_port: int
    smtp_user: str | None
    smtp_pass: str | None
    smtp_secure: bool
    smtp_from: str
    smtp_reply_to: str | None
    mail_send_timeout_seconds: int
    unsubscribe_secret: str | None
    api_host: str
    api_port: int
    log_level: str

    @property
    def preview_mail(self) -> bool:
        return not self.smtp_host

    def resolved_reply_to(self) -> str:
        return self.smtp_reply_to or self.smtp_from

    def digest_hour_minute(self) -> tuple[int, int]:
        return _parse_clock(self.digest_time)


def _parse_clock(raw: str) -> tuple[int, int]:
    try:
        hour_text, minute_text = raw.strip().split(":", 1)
        hour, minute = int(hour_text), int(minute_text)
    except ValueError:
        return 9, 0
    if not (0 <= hour < 24 and 0 <= minute < 60):
        return 9, 0
    return hour, minute


def _to_int(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value <= 0:
        return default
    return value


def _to_bool(raw: str | None, default: bool) -> bool:
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def get_default_env_file() -> Path:
    custom_path = os.getenv("FEED_DIGEST_ENV_FILE", "").strip()
    if custom_path:
        return Path(custom_path).expanduser()

    xdg_root = os.getenv("XDG_CONFIG_HOME", "").strip()
    if xdg_root:
        return Path(xdg_root).expanduser() / "feed-digest" / ".env"
    return Path.home() / ".config" / "feed-digest" / ".env"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    # Prefer a local .env for development; fill missing values from global config.
    load_dotenv(override=False)
    load_dotenv(dotenv_path=get_default_env_file(), override=False)

    timeout_policy = os.getenv("TIMEOUT_POLICY", "multiplicative").strip().lower()
    if timeout_policy not in TIMEOUT_POLICIES:
        timeout_policy = "multiplicative"

    return Settings(
        db_url=os.getenv("FEED_DIGEST_DB_URL", DEFAULT_DB_URL),
        redis_url=os.getenv("REDIS_URL") or None,
        fetch_concurrency=_to_int(os.getenv("FETCH_CONCURRENCY"), 2),
        default_refresh_interval_minutes=_to_int(os.getenv("DEFAULT_REFRESH_INTERVAL_MINUTES"), 180),
        timeout_policy=timeout_policy,
        auto_pause_threshold=_to_int(os.getenv("AUTO_PAUSE_THRESHOLD"), 5),
        feed_cache_ttl_seconds=_to_int(os.getenv("FEED_CACHE_TTL_SECONDS"), 7200),
        store_retry_seconds=_to_int(os.getenv("STORE_RETRY_SECONDS"), 300),
        max_stored_items=_to_int(os.getenv("MAX_STORED_ITEMS"), 50000),
        digest_time=os.getenv("DIGEST_TIME", "09:00"),
        digest_timezone=os.getenv("DIGEST_TIMEZONE", "UTC").strip() or "UTC",
        digest_max_items=_to_int(os.getenv("DIGEST_MAX_ITEMS"), 10),
        digest_window_hours=_to_int(os.getenv("DIGEST_WINDOW_HOURS"), 24),
        digest_max_attempts=_to_int(os.getenv("DIGEST_MAX_ATTEMPTS"), 3),
        digest_retry_seconds=_to_int(os.getenv("DIGEST_RETRY_SECONDS"), 300),
        site_url=os.getenv("SITE_URL", DEFAULT_SITE_URL).rstrip("/"),
        smtp_host=os.getenv("SMTP_HOST") or None,
        smtp_port=_to_int(os.getenv("SMTP_PORT"), 587),
        smtp_user=os.getenv("SMTP_USER") or None,
        smtp_pass=os.getenv("SMTP_PASS") or None,
        smtp_secure=_to_bool(os.getenv("SMTP_SECURE"), False),
        smtp_from=os.getenv("SMTP_FROM") or DEFAULT_FROM_EMAIL,
        smtp_reply_to=os.getenv("SMTP_REPLY_TO") or None,
        mail_send_timeout_seconds=_to_int(os.getenv("MAIL_SEND_TIMEOUT_SECONDS"), 30),
        unsubscribe_secret=os.getenv("UNSUBSCRIBE_SECRET") or None,
        api_host=os.getenv("API_HOST", "127.0.0.1"),
        api_port=_to_int(os.getenv("API_PORT"), 8000),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
