from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from feed_digest.errors import NetworkFailure, UpstreamRejection, UpstreamServerError
from feed_digest.models import Feed, FeedHealthLog, Item
from feed_digest.schemas import CandidateItem
from feed_digest.services.cache import CacheLayer
from feed_digest.services.fetch_job import FeedFetchJob
from feed_digest.services.reconciler import ItemReconciler

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeFeedClient:
    def __init__(self, results=None, error: Exception | None = None) -> None:
        self.results = results or []
        self.error = error
        self.calls: list[dict] = []

    def fetch(self, url, timeout_seconds, user_agent=None):
        self.calls.append({"url": url, "timeout_seconds": timeout_seconds, "user_agent": user_agent})
        if self.error is not None:
            raise self.error
        return list(self.results)


class FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    def delete(self, key):
        self.store.pop(key, None)

    def ping(self):
        return True

    def close(self):
        return None


def _job(client: FakeFeedClient, cache: CacheLayer | None = None, **kwargs) -> FeedFetchJob:
    return FeedFetchJob(
        feed_client=client,
        reconciler=ItemReconciler(),
        cache=cache or CacheLayer(None),
        user_agent_fn=lambda: "TestAgent/1.0",
        clock=lambda: NOW,
        **kwargs,
    )


def _feed(session, **overrides) -> Feed:
    values = {"title": "Example", "url": "https://example.com/feed.xml"}
    values.update(overrides)
    feed = Feed(**values)
    session.add(feed)
    session.commit()
    return feed


def _items():
    return [
        CandidateItem(title="One", url="https://example.com/1", source_guid="1", published_at=NOW),
        CandidateItem(title="Two", url="https://example.com/2", source_guid="2", published_at=NOW),
    ]


def test_success_reconciles_and_resets_failures(session):
    feed = _feed(session, consecutive_failures=2, status="degraded", timeout_seconds=30)
    client = FakeFeedClient(results=_items())

    outcome = _job(client).process(session, feed.id)
    session.commit()

    assert outcome.ok
    assert outcome.reconcile.created == 2
    assert client.calls[0]["timeout_seconds"] == 30
    assert client.calls[0]["user_agent"] == "TestAgent/1.0"
    session.refresh(feed)
    assert feed.consecutive_failures == 0
    assert feed.consecutive_successes == 1
    assert feed.status == "degraded"
    assert feed.last_error is None
    assert feed.total_successes == 1
    assert feed.next_attempt_at.replace(tzinfo=timezone.utc) == NOW + timedelta(minutes=180)
    assert session.scalar(select(func.count(Item.id))) == 2
    log = session.scalar(select(FeedHealthLog))
    assert log.success is True
    assert log.manual is False


def test_timeout_grows_timeout_and_uses_interval(session):
    feed = _feed(session, refresh_interval_minutes=240)
    client = FakeFeedClient(error=NetworkFailure("timed out", timed_out=True))

    outcome = _job(client).process(session, feed.id)
    session.commit()

    assert outcome.classification == "timeout"
    assert outcome.next_attempt_at == NOW + timedelta(minutes=240)
    session.refresh(feed)
    assert feed.timeout_seconds == 23
    assert feed.consecutive_failures == 1
    assert feed.status == "degraded"
    assert feed.is_active is True


def test_progressive_policy(session):
    feed = _feed(session)
    client = FakeFeedClient(error=NetworkFailure("timed out", timed_out=True))

    _job(client, timeout_policy="progressive").process(session, feed.id)
    session.commit()

    session.refresh(feed)
    assert feed.timeout_seconds == 25


def test_blocked_waits_a_day(session):
    feed = _feed(session)
    client = FakeFeedClient(error=UpstreamRejection("Status code 403", status_code=403))

    outcome = _job(client).process(session, feed.id)

    assert outcome.classification == "blocked"
    assert outcome.status_code == 403
    assert outcome.next_attempt_at == NOW + timedelta(hours=24)


def test_server_error_backoff_counts_this_failure(session):
    feed = _feed(session, consecutive_failures=2)
    client = FakeFeedClient(error=UpstreamServerError("Status code 503", status_code=503))

    outcome = _job(client).process(session, feed.id)

    # Third consecutive failure: 1h * 2^2.
    assert outcome.next_attempt_at == NOW + timedelta(hours=4)


def test_auto_pause_after_threshold(session):
    feed = _feed(session, consecutive_failures=4, status="degraded")
    client = FakeFeedClient(error=NetworkFailure("connection refused"))

    _job(client, auto_pause_threshold=5).process(session, feed.id)
    session.commit()

    session.refresh(feed)
    assert feed.status == "paused"
    assert feed.is_active is False
    assert feed.last_error == "connection refused"


def test_paused_feed_is_skipped_without_fetching(session):
    feed = _feed(session, status="paused", is_active=False)
    client = FakeFeedClient(results=_items())

    outcome = _job(client).process(session, feed.id)

    assert outcome.skipped is True
    assert client.calls == []


def test_parse_cache_is_used_unless_manual(session):
    feed = _feed(session)
    redis_client = FakeRedis()
    cache = CacheLayer(redis_client)
    client = FakeFeedClient(results=_items())
    job = _job(client, cache=cache)

    job.process(session, feed.id)
    cache._writer.shutdown(wait=True)
    key = "feed:parse:https://example.com/feed.xml"
    assert len(json.loads(redis_client.store[key])) == 2
    assert redis_client.ttls[key] == 7200

    cache = CacheLayer(redis_client)
    job = _job(client, cache=cache)
    job.process(session, feed.id)
    assert len(client.calls) == 1

    job.process(session, feed.id, manual=True)
    assert len(client.calls) == 2
    cache.close()


def test_empty_result_cached_briefly(session):
    feed = _feed(session)
    redis_client = FakeRedis()
    cache = CacheLayer(redis_client)

    _job(FakeFeedClient(results=[]), cache=cache).process(session, feed.id)
    cache.close()

    assert redis_client.ttls["feed:parse:https://example.com/feed.xml"] == 60


def test_health_logs_trimmed_to_most_recent(session):
    feed = _feed(session)
    for index in range(100):
        session.add(
            FeedHealthLog(
                feed_id=feed.id,
                attempted_at=NOW - timedelta(hours=index + 1),
                success=True,
                response_time_ms=10,
            )
        )
    session.commit()

    _job(FakeFeedClient(results=[])).process(session, feed.id, manual=True)
    session.commit()

    logs = session.scalars(select(FeedHealthLog).where(FeedHealthLog.feed_id == feed.id)).all()
    assert len(logs) == 100
    assert any(log.manual for log in logs)
