from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from feed_digest.errors import FeedInactive, FeedNotFound, StoreUnavailable
from feed_digest.models import Feed
from feed_digest.schemas import CandidateItem, DigestResult, FetchOutcome
from feed_digest.services.cache import CacheLayer
from feed_digest.services.fetch_job import FeedFetchJob
from feed_digest.services.reconciler import ItemReconciler
from feed_digest.services.scheduler import DailyDigestTimer, FetchScheduler

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeTimer:
    created: list[FakeTimer] = []

    def __init__(self, interval, function, args=None) -> None:
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self):
        return self.function(*self.args)


class FakeFeedClient:
    def __init__(self) -> None:
        self.calls = 0

    def fetch(self, url, timeout_seconds, user_agent=None):
        self.calls += 1
        return [CandidateItem(title="One", url="https://example.com/1", source_guid="1", published_at=NOW)]


class BlockingJob:
    def __init__(self) -> None:
        self.release = threading.Event()
        self.entered = threading.Event()
        self.calls: list[tuple[int, bool]] = []

    def process(self, session, feed_id, manual=False):
        self.calls.append((feed_id, manual))
        self.entered.set()
        self.release.wait(timeout=5)
        return FetchOutcome(feed_id=feed_id, classification="success")


class StoreDownJob:
    def process(self, session, feed_id, manual=False):
        raise StoreUnavailable("database is locked")


@pytest.fixture(autouse=True)
def reset_timers():
    FakeTimer.created = []
    yield
    FakeTimer.created = []


def _live_timers(feed_id: int) -> list[FakeTimer]:
    return [timer for timer in FakeTimer.created if timer.args == (feed_id,) and not timer.cancelled]


def _add_feed(session, url: str, **overrides) -> int:
    feed = Feed(title="Example", url=url, **overrides)
    session.add(feed)
    session.flush()
    feed_id = feed.id
    # Commit without reloading so the test session holds no SQLite read lock.
    session.commit()
    return feed_id


def _scheduler(settings, job) -> FetchScheduler:
    return FetchScheduler(
        settings,
        job,
        timer_factory=FakeTimer,
        clock=lambda: NOW,
    )


def _real_job(client=None) -> FeedFetchJob:
    return FeedFetchJob(
        feed_client=client or FakeFeedClient(),
        reconciler=ItemReconciler(),
        cache=CacheLayer(None),
        clock=lambda: NOW,
    )


def test_start_schedules_active_feeds_from_persisted_state(settings, session):
    never = _add_feed(session, url="https://example.com/never.xml")
    recent = _add_feed(session, url="https://example.com/recent.xml", last_fetched_at=NOW - timedelta(hours=1))
    failing = _add_feed(
        session,
        url="https://example.com/failing.xml",
        consecutive_failures=2,
        next_attempt_at=NOW + timedelta(hours=2),
        last_fetched_at=NOW - timedelta(days=2),
    )
    paused = _add_feed(session, url="https://example.com/paused.xml", status="paused", is_active=False)

    scheduler = _scheduler(settings, _real_job())
    assert scheduler.start() == 3

    assert scheduler.scheduled_feed_ids == sorted([never, recent, failing])
    assert _live_timers(never)[0].interval == 0
    assert _live_timers(recent)[0].interval == pytest.approx(2 * 3600)
    assert _live_timers(failing)[0].interval == pytest.approx(2 * 3600)
    assert _live_timers(paused) == []
    scheduler.shutdown()


def test_rescheduling_never_leaves_two_live_timers(settings, session):
    feed_id = _add_feed(session, url="https://example.com/a.xml")
    scheduler = _scheduler(settings, _real_job())

    scheduler.schedule_feed(feed_id)
    scheduler.schedule_feed(feed_id)
    scheduler.reschedule(feed_id)

    assert len(_live_timers(feed_id)) == 1
    assert all(timer.daemon for timer in FakeTimer.created)
    assert scheduler.unschedule_feed(feed_id) is True
    assert _live_timers(feed_id) == []
    assert scheduler.unschedule_feed(feed_id) is False
    scheduler.shutdown()


def test_schedule_paused_feed_returns_none(settings, session):
    feed_id = _add_feed(session, url="https://example.com/p.xml", status="paused", is_active=False)
    scheduler = _scheduler(settings, _real_job())

    assert scheduler.schedule_feed(feed_id) is None
    assert scheduler.scheduled_feed_ids == []
    with pytest.raises(FeedNotFound):
        scheduler.schedule_feed(9999)
    scheduler.shutdown()


def test_firing_fetches_then_rearms_from_new_state(settings, session):
    feed_id = _add_feed(session, url="https://example.com/fire.xml")
    client = FakeFeedClient()
    scheduler = _scheduler(settings, _real_job(client))
    scheduler.start()

    timer = _live_timers(feed_id)[0]
    future = timer.fire()
    future.result(timeout=5)
    scheduler.shutdown(wait=True)

    assert client.calls == 1
    rearmed = [t for t in FakeTimer.created if t.args == (feed_id,) and t is not timer]
    assert rearmed
    assert rearmed[-1].interval == pytest.approx(180 * 60)


def test_fetch_now_rejections(settings, session):
    paused = _add_feed(session, url="https://example.com/paused2.xml", status="paused", is_active=False)
    scheduler = _scheduler(settings, _real_job())

    with pytest.raises(FeedNotFound):
        scheduler.fetch_now(12345)
    with pytest.raises(FeedInactive):
        scheduler.fetch_now(paused)
    scheduler.shutdown()


def test_fetch_now_is_noop_while_in_flight(settings, session):
    feed_id = _add_feed(session, url="https://example.com/busy.xml")
    job = BlockingJob()
    scheduler = _scheduler(settings, job)

    future = scheduler.fetch_now(feed_id)
    assert future is not None
    assert job.entered.wait(timeout=5)
    assert scheduler.is_in_flight(feed_id)

    assert scheduler.fetch_now(feed_id) is None
    # A timer firing for the busy feed is skipped too.
    scheduler._fire(feed_id)

    job.release.set()
    outcome = future.result(timeout=5)
    assert outcome.ok
    assert job.calls == [(feed_id, True)]
    assert not scheduler.is_in_flight(feed_id)
    scheduler.shutdown()


def test_store_unavailable_rearms_after_retry_delay(settings, session):
    feed_id = _add_feed(session, url="https://example.com/down.xml")
    scheduler = _scheduler(settings, StoreDownJob())

    future = scheduler.fetch_now(feed_id)
    assert future.result(timeout=5) is None

    timers = _live_timers(feed_id)
    assert len(timers) == 1
    assert timers[0].interval == settings.store_retry_seconds
    scheduler.shutdown()


def test_shutdown_cancels_everything(settings, session):
    first = _add_feed(session, url="https://example.com/1.xml")
    second = _add_feed(session, url="https://example.com/2.xml")
    scheduler = _scheduler(settings, _real_job())
    scheduler.start()

    scheduler.shutdown()

    assert _live_timers(first) == []
    assert _live_timers(second) == []
    assert scheduler.scheduled_feed_ids == []


class FlakyDigestService:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def run(self, session, now=None, force=False):
        self.calls += 1
        if self.calls <= self.failures:
            raise StoreUnavailable("database is locked")
        return DigestResult(recipients=1, items=2)


def test_daily_timer_arms_next_local_run(settings):
    timer = DailyDigestTimer(settings, FlakyDigestService(0), timer_factory=FakeTimer, clock=lambda: NOW)

    fire_at = timer.start()

    assert fire_at == datetime(2025, 3, 2, 9, 0, tzinfo=timezone.utc)
    assert FakeTimer.created[-1].interval == pytest.approx(21 * 3600)
    timer.shutdown()
    assert FakeTimer.created[-1].cancelled


def test_daily_timer_retries_store_failures_then_moves_on(settings):
    service = FlakyDigestService(failures=10)
    timer = DailyDigestTimer(settings, service, timer_factory=FakeTimer, clock=lambda: NOW)

    timer._fire()
    retry = FakeTimer.created[-1]
    assert retry.interval == settings.digest_retry_seconds
    assert retry.args == (2,)

    retry.fire()
    FakeTimer.created[-1].fire()

    assert service.calls == settings.digest_max_attempts
    assert FakeTimer.created[-1].args == (1,)
    assert FakeTimer.created[-1].interval == pytest.approx(21 * 3600)
    timer.shutdown()


def test_daily_timer_run_now_returns_result(settings):
    timer = DailyDigestTimer(settings, FlakyDigestService(0), timer_factory=FakeTimer, clock=lambda: NOW)
    result = timer.run_now()
    assert result.as_dict() == {"recipients": 1, "items": 2, "failed": 0, "skipped": False}
