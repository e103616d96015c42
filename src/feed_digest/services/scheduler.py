from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select

from ..config import Settings
from ..db import session_scope, store_guard
from ..errors import FeedInactive, FeedNotFound, StoreUnavailable
from ..models import FEED_STATUS_PAUSED, Feed, utcnow
from ..schemas import DigestResult, FetchOutcome
from ..time_utils import ensure_aware, next_daily_run
from .digest import DigestService
from .fetch_job import FeedFetchJob
from .retry_strategy import feed_state, should_retry_now

logger = logging.getLogger(__name__)

TimerFactory = Callable[..., threading.Timer]


def next_fire_at(feed: Feed, now: datetime) -> datetime:
    if feed.consecutive_failures and feed.next_attempt_at is not None:
        return ensure_aware(feed.next_attempt_at)
    if feed.last_fetched_at is None:
        return now
    return ensure_aware(feed.last_fetched_at) + timedelta(minutes=feed.refresh_interval_minutes)


class FetchScheduler:
    """Keeps one timer per schedulable feed and runs firings on a bounded pool."""

    def __init__(
        self,
        settings: Settings,
        fetch_job: FeedFetchJob,
        executor: ThreadPoolExecutor | None = None,
        timer_factory: TimerFactory = threading.Timer,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.fetch_job = fetch_job
        self.timer_factory = timer_factory
        self.clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(settings.fetch_concurrency, 1),
            thread_name_prefix="feed-fetch",
        )
        self._timers: dict[int, threading.Timer] = {}
        self._in_flight: set[int] = set()
        self._lock = threading.Lock()
        self._stopped = False

    @property
    def scheduled_feed_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._timers)

    def is_in_flight(self, feed_id: int) -> bool:
        with self._lock:
            return feed_id in self._in_flight

    def start(self) -> int:
        now = self.clock()
        with session_scope(self.settings) as session, store_guard("load schedulable feeds"):
            feeds = session.scalars(
                select(Feed).where(Feed.is_active.is_(True), Feed.status != FEED_STATUS_PAUSED).order_by(Feed.id)
            ).all()
            plan = [(feed.id, next_fire_at(feed, now)) for feed in feeds]

        for feed_id, fire_at in plan:
            self._arm(feed_id, (fire_at - now).total_seconds())
        logger.info("Scheduled %s feeds", len(plan))
        return len(plan)

    def schedule_feed(self, feed_id: int) -> datetime | None:
        """Arm (or re-arm) the feed from its persisted state; None when it is not schedulable."""
        now = self.clock()
        with session_scope(self.settings) as session, store_guard(f"load feed {feed_id}"):
            feed = session.get(Feed, feed_id)
            if feed is None:
                raise FeedNotFound(feed_id)
            if not should_retry_now(feed_state(feed)):
                fire_at = None
            else:
                fire_at = next_fire_at(feed, now)

        if fire_at is None:
            self.unschedule_feed(feed_id)
            return None
        self._arm(feed_id, (fire_at - now).total_seconds())
        return fire_at

    reschedule = schedule_feed

    def unschedule_feed(self, feed_id: int) -> bool:
        with self._lock:
            timer = self._timers.pop(feed_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def fetch_now(self, feed_id: int) -> Future | None:
        with session_scope(self.settings) as session, store_guard(f"load feed {feed_id}"):
            feed = session.get(Feed, feed_id)
            if feed is None:
                raise FeedNotFound(feed_id)
            if not should_retry_now(feed_state(feed)):
                raise FeedInactive(feed_id, feed.status)

        with self._lock:
            if feed_id in self._in_flight:
                logger.info("Feed %s already being fetched, manual trigger ignored", feed_id)
                return None
            self._in_flight.add(feed_id)
        return self._submit(feed_id, manual=True)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._stopped = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def _arm(self, feed_id: int, delay_seconds: float) -> None:
        with self._lock:
            previous = self._timers.pop(feed_id, None)
            if previous is not None:
                previous.cancel()
            if self._stopped:
                return
            timer = self.timer_factory(max(delay_seconds, 0.0), self._fire, args=(feed_id,))
            timer.daemon = True
            self._timers[feed_id] = timer
        timer.start()

    def _fire(self, feed_id: int) -> Future | None:
        with self._lock:
            if self._stopped:
                return None
            if feed_id in self._in_flight:
                # The running fetch re-arms the feed when it finishes.
                logger.debug("Feed %s still in flight, skipping timer firing", feed_id)
                return None
            self._in_flight.add(feed_id)
        return self._submit(feed_id, manual=False)

    def _submit(self, feed_id: int, manual: bool) -> Future | None:
        try:
            return self._executor.submit(self._execute, feed_id, manual)
        except RuntimeError as exc:
            with self._lock:
                self._in_flight.discard(feed_id)
            logger.debug("Fetch pool closed, dropping feed %s: %s", feed_id, exc)
            return None

    def _execute(self, feed_id: int, manual: bool) -> FetchOutcome | None:
        outcome = None
        retry_delay = None
        try:
            outcome = self._run(feed_id, manual)
        except FeedNotFound:
            logger.info("Feed %s no longer exists, dropping its schedule", feed_id)
            self.unschedule_feed(feed_id)
            return None
        except StoreUnavailable as exc:
            logger.error("Fetch job for feed %s failed: %s", feed_id, exc)
            retry_delay = self.settings.store_retry_seconds
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected error fetching feed %s", feed_id)
            retry_delay = self.settings.store_retry_seconds
        finally:
            with self._lock:
                self._in_flight.discard(feed_id)

        if retry_delay is not None:
            self._arm(feed_id, retry_delay)
            return None

        try:
            self.schedule_feed(feed_id)
        except StoreUnavailable as exc:
            logger.error("Could not reschedule feed %s: %s", feed_id, exc)
            self._arm(feed_id, self.settings.store_retry_seconds)
        except FeedNotFound:
            self.unschedule_feed(feed_id)
        return outcome

    def _run(self, feed_id: int, manual: bool) -> FetchOutcome:
        with session_scope(self.settings) as session, store_guard(f"fetch feed {feed_id}"):
            outcome = self.fetch_job.process(session, feed_id, manual=manual)
            session.commit()
            return outcome


class DailyDigestTimer:
    """Fires the digest once a day at the configured local time, one run at a time."""

    def __init__(
        self,
        settings: Settings,
        digest_service: DigestService,
        timer_factory: TimerFactory = threading.Timer,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.digest_service = digest_service
        self.timer_factory = timer_factory
        self.clock = clock
        self._run_lock = threading.Lock()
        self._timer_lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._stopped = False

    def start(self) -> datetime:
        return self._arm_next_day()

    def shutdown(self) -> None:
        with self._timer_lock:
            self._stopped = True
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def run_now(self, force: bool = False) -> DigestResult | None:
        if not self._run_lock.acquire(blocking=False):
            logger.info("Digest already running, skipping")
            return None
        try:
            with session_scope(self.settings) as session, store_guard("daily digest"):
                result = self.digest_service.run(session, force=force)
                session.commit()
        finally:
            self._run_lock.release()
        logger.info("Daily digest finished: %s", result.as_dict())
        return result

    def _fire(self, attempt: int = 1) -> None:
        try:
            self.run_now()
        except StoreUnavailable as exc:
            if attempt < self.settings.digest_max_attempts:
                logger.error(
                    "Daily digest attempt %s/%s failed: %s",
                    attempt,
                    self.settings.digest_max_attempts,
                    exc,
                )
                self._arm(self.settings.digest_retry_seconds, attempt + 1)
                return
            logger.error("Daily digest gave up after %s attempts: %s", attempt, exc)
        except Exception:  # noqa: BLE001
            logger.exception("Daily digest failed")
        self._arm_next_day()

    def _arm_next_day(self) -> datetime:
        now = self.clock()
        hour, minute = self.settings.digest_hour_minute()
        fire_at = next_daily_run(now, hour, minute, self.settings.digest_timezone)
        self._arm((fire_at - now).total_seconds(), 1)
        logger.info("Next daily digest at %s", fire_at.isoformat())
        return fire_at

    def _arm(self, delay_seconds: float, attempt: int) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
            if self._stopped:
                return
            self._timer = self.timer_factory(max(delay_seconds, 0.0), self._fire, args=(attempt,))
            self._timer.daemon = True
            timer = self._timer
        timer.start()
