from __future__ import annotations

from ..models import FEED_STATUS_ACTIVE, FEED_STATUS_DEGRADED, FEED_STATUS_PAUSED
from ..schemas import FeedState

DEGRADED_RECOVERY_SUCCESSES = 5


def status_after_failure(state: FeedState, auto_pause_threshold: int = 5) -> tuple[str, bool]:
    """Return (status, is_active) once a failure has been counted into state."""
    if state.status == FEED_STATUS_PAUSED:
        return FEED_STATUS_PAUSED, False
    if state.consecutive_failures >= auto_pause_threshold:
        return FEED_STATUS_PAUSED, False
    return FEED_STATUS_DEGRADED, state.is_active


def status_after_success(state: FeedState) -> str:
    if state.status == FEED_STATUS_DEGRADED:
        if state.consecutive_successes >= DEGRADED_RECOVERY_SUCCESSES:
            return FEED_STATUS_ACTIVE
        return FEED_STATUS_DEGRADED
    return state.status
