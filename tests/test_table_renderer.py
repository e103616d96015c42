from __future__ import annotations

from datetime import datetime, timezone

from feed_digest.models import Feed, Subscriber
from feed_digest.views.table_renderer import render_feeds, render_subscribers


def test_render_feeds_shows_state_columns():
    feed = Feed(
        id=3,
        title="Example Blog",
        url="https://example.com/feed.xml",
        status="degraded",
        refresh_interval_minutes=180,
        consecutive_failures=2,
        timeout_seconds=23,
        last_fetched_at=datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc),
        last_error="Status code 503 from https://example.com/feed.xml",
    )

    rendered = render_feeds([feed])

    assert "Example Blog" in rendered
    assert "degraded" in rendered
    assert "180m" in rendered
    assert "23s" in rendered
    assert "Status code 503" in rendered


def test_render_feeds_empty():
    assert "No feeds configured." in render_feeds([])


def test_render_subscribers():
    rendered = render_subscribers(
        [
            Subscriber(id=1, email="ann@example.com", name="Ann", status="approved"),
            Subscriber(id=2, email="bob@example.com", status="pending"),
        ]
    )

    assert "ann@example.com" in rendered
    assert "approved" in rendered
    assert "pending" in rendered
    assert "No subscribers yet." in render_subscribers([])
