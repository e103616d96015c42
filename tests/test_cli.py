from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from typer.testing import CliRunner

from feed_digest.cli import app
from feed_digest.config import get_settings
from feed_digest.db import session_scope
from feed_digest.errors import UpstreamRejection
from feed_digest.models import Feed, Item, Subscriber
from feed_digest.providers.feed_client import FeedClient
from feed_digest.schemas import CandidateItem
from feed_digest.services.fetch_job import FeedFetchJob

runner = CliRunner()


def test_feed_lifecycle(isolated_env):
    result = runner.invoke(
        app,
        ["feed", "add", "--url", "https://example.com/feed.xml", "--title", "Example", "--interval", "60"],
    )
    assert result.exit_code == 0
    assert "every 180 min" in result.output

    duplicate = runner.invoke(app, ["feed", "add", "--url", "https://example.com/feed.xml"])
    assert "already exists" in duplicate.output

    listed = runner.invoke(app, ["feed", "list"])
    assert listed.exit_code == 0
    assert "Example" in listed.output

    paused = runner.invoke(app, ["feed", "pause", "1"])
    assert "now paused" in paused.output
    resumed = runner.invoke(app, ["feed", "resume", "1"])
    assert "now active" in resumed.output

    missing = runner.invoke(app, ["feed", "pause", "99"])
    assert missing.exit_code == 1


def test_subscriber_add_and_approve(isolated_env):
    result = runner.invoke(app, ["subscriber", "add", "--email", " Ann@Example.com ", "--name", "Ann"])
    assert result.exit_code == 0
    assert "ann@example.com (pending)" in result.output

    approved = runner.invoke(app, ["subscriber", "approve", "ANN@example.com"])
    assert approved.exit_code == 0

    listed = runner.invoke(app, ["subscriber", "list"])
    assert "ann@example.com" in listed.output
    assert "approved" in listed.output

    with session_scope(get_settings()) as session:
        sub = session.scalar(select(Subscriber))
        assert sub.status == "approved"
        assert sub.approved_at is not None


def test_fetch_command_stores_items(isolated_env, monkeypatch):
    def fake_fetch(self, url, timeout_seconds, user_agent=None):
        return [
            CandidateItem(
                title="Hello",
                url="https://example.com/hello",
                source_guid="hello",
                published_at=datetime.now(timezone.utc),
            )
        ]

    monkeypatch.setattr(FeedClient, "fetch", fake_fetch)
    runner.invoke(app, ["feed", "add", "--url", "https://example.com/feed.xml"])

    result = runner.invoke(app, ["fetch", "--feed-id", "1"])

    assert result.exit_code == 0
    assert "1 new" in result.output
    with session_scope(get_settings()) as session:
        assert session.scalars(select(Item.title)).all() == ["Hello"]


def test_fetch_command_reports_failure(isolated_env, monkeypatch):
    def fake_fetch(self, url, timeout_seconds, user_agent=None):
        raise UpstreamRejection("Status code 403", status_code=403)

    monkeypatch.setattr(FeedClient, "fetch", fake_fetch)
    runner.invoke(app, ["feed", "add", "--url", "https://example.com/feed.xml"])

    result = runner.invoke(app, ["fetch"])

    assert result.exit_code == 1
    assert "blocked" in result.output
    with session_scope(get_settings()) as session:
        feed = session.scalar(select(Feed))
        assert feed.consecutive_failures == 1
        assert feed.status == "degraded"


def test_fetch_command_reports_store_errors_cleanly(isolated_env, monkeypatch):
    def locked(self, session, feed_id, manual=False):
        raise OperationalError("UPDATE feeds", {}, Exception("database is locked"))

    monkeypatch.setattr(FeedFetchJob, "process", locked)
    runner.invoke(app, ["feed", "add", "--url", "https://example.com/feed.xml"])

    result = runner.invoke(app, ["fetch", "--feed-id", "1"])

    assert result.exit_code == 1
    assert "Fetch failed: fetch feed 1" in result.output
    assert not isinstance(result.exception, OperationalError)


def test_digest_command_runs_once_per_day(isolated_env):
    runner.invoke(app, ["subscriber", "add", "--email", "a@example.com", "--approve"])

    first = runner.invoke(app, ["digest"])
    assert first.exit_code == 0
    assert "Digest sent to 0 subscribers with 0 items" in first.output

    second = runner.invoke(app, ["digest"])
    assert "already sent today" in second.output

    forced = runner.invoke(app, ["digest", "--force"])
    assert "Digest sent to" in forced.output


def test_status_command(isolated_env):
    runner.invoke(app, ["feed", "add", "--url", "https://example.com/feed.xml", "--title", "Example"])
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "feeds=1 items=0 approved_subscribers=0" in result.output
    assert "No digest has been sent yet." in result.output
    assert "mail=preview" in result.output
