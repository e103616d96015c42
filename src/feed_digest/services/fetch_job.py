from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import (
    FeedNotFound,
    NetworkFailure,
    UpstreamHttpError,
    UpstreamRejection,
    UpstreamServerError,
    ValidationFailure,
)
from ..models import Feed, FeedHealthLog, utcnow
from ..providers.feed_client import FeedClient
from ..providers.user_agents import random_user_agent
from ..schemas import CLASSIFICATION_SUCCESS, CLASSIFICATION_TIMEOUT, CandidateItem, FeedState, FetchOutcome
from .cache import CacheLayer, cache_key
from .feed_status import status_after_failure, status_after_success
from .reconciler import ItemReconciler, prune_old_items
from .retry_strategy import (
    DEFAULT_TIMEOUT_SECONDS,
    calculate_next_retry,
    calculate_timeout_reduction,
    classify_failure,
    feed_state,
    next_timeout_after_failure,
    should_retry_now,
)

logger = logging.getLogger(__name__)

PARSE_CACHE_PREFIX = "feed:parse"
EMPTY_RESULT_TTL_SECONDS = 60
HEALTH_LOGS_PER_FEED = 100

FETCH_ERRORS = (NetworkFailure, UpstreamRejection, UpstreamServerError, UpstreamHttpError, ValidationFailure)


class FeedFetchJob:
    """One firing of a feed: fetch, classify, reconcile, persist the outcome.

    The caller owns the session and commits it. Fetch errors never escape;
    they are classified and written to the feed as the next retry time.
    """

    def __init__(
        self,
        feed_client: FeedClient,
        reconciler: ItemReconciler,
        cache: CacheLayer,
        timeout_policy: str = "multiplicative",
        auto_pause_threshold: int = 5,
        feed_cache_ttl_seconds: int = 7200,
        max_stored_items: int = 50000,
        user_agent_fn: Callable[[], str] = random_user_agent,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.feed_client = feed_client
        self.reconciler = reconciler
        self.cache = cache
        self.timeout_policy = timeout_policy
        self.auto_pause_threshold = max(auto_pause_threshold, 1)
        self.feed_cache_ttl_seconds = feed_cache_ttl_seconds
        self.max_stored_items = max_stored_items
        self.user_agent_fn = user_agent_fn
        self.clock = clock

    def process(self, session: Session, feed_id: int, manual: bool = False) -> FetchOutcome:
        feed = session.get(Feed, feed_id)
        if feed is None:
            raise FeedNotFound(feed_id)

        state = feed_state(feed)
        if not should_retry_now(state):
            reason = "paused" if feed.is_active else "inactive"
            logger.debug("Skipping feed %s (%s)", feed.id, reason)
            return FetchOutcome(feed_id=feed.id, classification=None, skipped=True, reason=reason)

        now = self.clock()
        feed.last_attempt_at = now
        feed.total_attempts = (feed.total_attempts or 0) + 1
        timeout = feed.timeout_seconds or DEFAULT_TIMEOUT_SECONDS

        started = time.monotonic()
        try:
            candidates = self._load_candidates(feed.url, timeout_seconds=timeout, manual=manual)
        except FETCH_ERRORS as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            return self._record_failure(session, feed, state, exc, now, elapsed_ms, manual)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        return self._record_success(session, feed, state, candidates, now, elapsed_ms, manual)

    def _load_candidates(self, url: str, timeout_seconds: int, manual: bool) -> list[CandidateItem]:
        key = cache_key(PARSE_CACHE_PREFIX, url)
        if not manual:
            hit = self.cache.get(key)
            if isinstance(hit, list):
                logger.debug("Parse cache hit for %s", url)
                return [CandidateItem.from_cache(payload) for payload in hit]

        candidates = self.feed_client.fetch(url, timeout_seconds=timeout_seconds, user_agent=self.user_agent_fn())
        ttl = self.feed_cache_ttl_seconds if candidates else EMPTY_RESULT_TTL_SECONDS
        self.cache.set_in_background(key, [item.to_cache() for item in candidates], ttl)
        return candidates

    def _record_success(
        self,
        session: Session,
        feed: Feed,
        state: FeedState,
        candidates: list[CandidateItem],
        now: datetime,
        elapsed_ms: int,
        manual: bool,
    ) -> FetchOutcome:
        successes = state.consecutive_successes + 1
        updated = replace(state, consecutive_failures=0, consecutive_successes=successes)

        feed.consecutive_failures = 0
        feed.consecutive_successes = successes
        if feed.timeout_seconds is not None:
            feed.timeout_seconds = calculate_timeout_reduction(feed.timeout_seconds, successes)
        feed.status = status_after_success(updated)

        result = self.reconciler.reconcile(session, feed, candidates)

        feed.last_fetched_at = now
        feed.last_success_at = now
        feed.next_attempt_at = now + timedelta(minutes=feed.refresh_interval_minutes)
        feed.last_error = None
        feed.total_successes = (feed.total_successes or 0) + 1
        self._track_health(session, feed, now, True, None, None, None, elapsed_ms, manual)
        self._prune(session)

        logger.debug(
            "Fetched feed %s: %s created, %s updated, %s skipped, %s failed",
            feed.id,
            result.created,
            result.updated,
            result.skipped,
            result.failed,
        )
        return FetchOutcome(
            feed_id=feed.id,
            classification=CLASSIFICATION_SUCCESS,
            response_time_ms=elapsed_ms,
            next_attempt_at=feed.next_attempt_at,
            reconcile=result,
        )

    def _record_failure(
        self,
        session: Session,
        feed: Feed,
        state: FeedState,
        exc: Exception,
        now: datetime,
        elapsed_ms: int,
        manual: bool,
    ) -> FetchOutcome:
        classification, status_code = classify_failure(exc)
        failures = state.consecutive_failures + 1
        updated = replace(state, consecutive_failures=failures, consecutive_successes=0)

        feed.consecutive_failures = failures
        feed.consecutive_successes = 0
        if classification == CLASSIFICATION_TIMEOUT:
            feed.timeout_seconds = next_timeout_after_failure(updated, timed_out=True, policy=self.timeout_policy)
        feed.next_attempt_at = calculate_next_retry(updated, classification, status_code=status_code, now=now)
        feed.status, feed.is_active = status_after_failure(updated, self.auto_pause_threshold)
        feed.last_error = str(exc)
        feed.total_failures = (feed.total_failures or 0) + 1
        self._track_health(session, feed, now, False, status_code, classification, str(exc), elapsed_ms, manual)

        logger.warning(
            "Fetch failed for feed %s (%s, %s consecutive): %s; next attempt %s",
            feed.id,
            classification,
            failures,
            exc,
            feed.next_attempt_at.isoformat(),
        )
        if not feed.is_active:
            logger.warning("Feed %s auto-paused after %s consecutive failures", feed.id, failures)
        return FetchOutcome(
            feed_id=feed.id,
            classification=classification,
            status_code=status_code,
            error_message=str(exc),
            response_time_ms=elapsed_ms,
            next_attempt_at=feed.next_attempt_at,
        )

    def _track_health(
        self,
        session: Session,
        feed: Feed,
        now: datetime,
        success: bool,
        status_code: int | None,
        error_kind: str | None,
        error_message: str | None,
        elapsed_ms: int,
        manual: bool,
    ) -> None:
        attempts = max(feed.total_attempts or 1, 1)
        if feed.avg_response_time_ms is None:
            feed.avg_response_time_ms = elapsed_ms
        else:
            feed.avg_response_time_ms = int(round((feed.avg_response_time_ms * (attempts - 1) + elapsed_ms) / attempts))

        session.add(
            FeedHealthLog(
                feed_id=feed.id,
                attempted_at=now,
                success=success,
                status_code=status_code,
                error_kind=error_kind,
                error_message=error_message[:500] if error_message else None,
                response_time_ms=elapsed_ms,
                manual=manual,
            )
        )
        session.flush()

        stale_ids = session.scalars(
            select(FeedHealthLog.id)
            .where(FeedHealthLog.feed_id == feed.id)
            .order_by(FeedHealthLog.attempted_at.desc(), FeedHealthLog.id.desc())
            .offset(HEALTH_LOGS_PER_FEED)
        ).all()
        if stale_ids:
            session.execute(delete(FeedHealthLog).where(FeedHealthLog.id.in_(stale_ids)))

    def _prune(self, session: Session) -> None:
        try:
            with session.begin_nested():
                prune_old_items(session, self.max_stored_items)
        except SQLAlchemyError as exc:
            logger.warning("Item pruning failed: %s", exc)
