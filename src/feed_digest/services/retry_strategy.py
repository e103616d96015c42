from __future__ import annotations

from datetime import datetime, timedelta, timezone

from ..errors import NetworkFailure, UpstreamHttpError, UpstreamRejection, UpstreamServerError
from ..models import FEED_STATUS_PAUSED, MIN_REFRESH_INTERVAL_MINUTES, Feed
from ..schemas import (
    CLASSIFICATION_BLOCKED,
    CLASSIFICATION_OTHER,
    CLASSIFICATION_SERVER_ERROR,
    CLASSIFICATION_TIMEOUT,
    FeedState,
)

BLOCKED_STATUS_CODES = frozenset({403, 522})

BLOCKED_RETRY_DELAY = timedelta(hours=24)
BASE_BACKOFF = timedelta(hours=1)
MAX_BACKOFF = timedelta(hours=24)

DEFAULT_TIMEOUT_SECONDS = 15
MIN_TIMEOUT_SECONDS = 15
MAX_TIMEOUT_SECONDS = 60
TIMEOUT_MULTIPLIER = 1.5
TIMEOUT_STEP_SECONDS = 10
TIMEOUT_REDUCTION_FACTOR = 0.9
SUCCESSES_BEFORE_REDUCTION = 10


def feed_state(feed: Feed) -> FeedState:
    return FeedState(
        status=feed.status,
        is_active=bool(feed.is_active),
        refresh_interval_minutes=feed.refresh_interval_minutes or MIN_REFRESH_INTERVAL_MINUTES,
        consecutive_failures=feed.consecutive_failures or 0,
        consecutive_successes=feed.consecutive_successes or 0,
        timeout_seconds=feed.timeout_seconds,
    )


def _clamp_timeout(seconds: float) -> int:
    return int(min(max(seconds, MIN_TIMEOUT_SECONDS), MAX_TIMEOUT_SECONDS))


def _effective_classification(classification: str, status_code: int | None) -> str:
    if status_code in BLOCKED_STATUS_CODES:
        return CLASSIFICATION_BLOCKED
    if status_code is not None and 500 <= status_code < 600:
        return CLASSIFICATION_SERVER_ERROR
    return classification


def get_exponential_backoff(consecutive_failures: int) -> timedelta:
    attempt = max(int(consecutive_failures), 1)
    # 2**5 hours already exceeds the cap; avoid huge shifts for long failure streaks.
    if attempt > 6:
        return MAX_BACKOFF
    return min(BASE_BACKOFF * (2 ** (attempt - 1)), MAX_BACKOFF)


def calculate_next_retry(
    state: FeedState,
    classification: str,
    status_code: int | None = None,
    now: datetime | None = None,
) -> datetime:
    current = now or datetime.now(timezone.utc)
    effective = _effective_classification(classification, status_code)

    if effective == CLASSIFICATION_BLOCKED:
        return current + BLOCKED_RETRY_DELAY
    if effective == CLASSIFICATION_SERVER_ERROR:
        return current + get_exponential_backoff(state.consecutive_failures)

    interval = max(state.refresh_interval_minutes, MIN_REFRESH_INTERVAL_MINUTES)
    return current + timedelta(minutes=interval)


def adjust_timeout(current_timeout: int | None, timed_out: bool) -> int:
    current = current_timeout or DEFAULT_TIMEOUT_SECONDS
    if not timed_out:
        return _clamp_timeout(current)
    # Round half up, so 15 -> 23 rather than banker's 22.
    return _clamp_timeout(int(current * TIMEOUT_MULTIPLIER + 0.5))


def calculate_progressive_timeout(current_timeout: int | None, timed_out: bool) -> int:
    current = current_timeout or DEFAULT_TIMEOUT_SECONDS
    if not timed_out:
        return _clamp_timeout(current)
    return _clamp_timeout(current + TIMEOUT_STEP_SECONDS)


def calculate_timeout_reduction(current_timeout: int | None, consecutive_successes: int) -> int:
    current = current_timeout or DEFAULT_TIMEOUT_SECONDS
    if consecutive_successes < SUCCESSES_BEFORE_REDUCTION:
        return _clamp_timeout(current)
    return _clamp_timeout(int(current * TIMEOUT_REDUCTION_FACTOR + 0.5))


def next_timeout_after_failure(state: FeedState, timed_out: bool, policy: str = "multiplicative") -> int:
    if policy == "progressive":
        return calculate_progressive_timeout(state.timeout_seconds, timed_out)
    return adjust_timeout(state.timeout_seconds, timed_out)


def should_retry_now(state: FeedState) -> bool:
    return state.is_active and state.status != FEED_STATUS_PAUSED


def classify_failure(exc: BaseException) -> tuple[str, int | None]:
    if isinstance(exc, UpstreamRejection):
        return CLASSIFICATION_BLOCKED, exc.status_code
    if isinstance(exc, UpstreamServerError):
        return CLASSIFICATION_SERVER_ERROR, exc.status_code
    if isinstance(exc, UpstreamHttpError):
        return CLASSIFICATION_OTHER, exc.status_code
    if isinstance(exc, NetworkFailure) and exc.timed_out:
        return CLASSIFICATION_TIMEOUT, None
    return CLASSIFICATION_OTHER, None
