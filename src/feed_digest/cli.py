from __future__ import annotations

import logging

import typer
from sqlalchemy import func, select

from .config import Settings, get_settings
from .db import init_db, session_scope, store_guard
from .errors import ConfigurationError, FeedNotFound, StoreUnavailable
from .models import (
    FEED_STATUS_ACTIVE,
    FEED_STATUS_PAUSED,
    SUBSCRIBER_STATUS_APPROVED,
    SUBSCRIBER_STATUS_PENDING,
    DigestRun,
    Feed,
    Item,
    Subscriber,
    utcnow,
)
from .views.table_renderer import render_feeds, render_subscribers
from .worker import build_runtime, run_worker

app = typer.Typer(help="RSS/Atom ingestion and daily email digest worker", no_args_is_help=True)
feed_app = typer.Typer(help="Feed management")
subscriber_app = typer.Typer(help="Subscriber management")
app.add_typer(feed_app, name="feed")
app.add_typer(subscriber_app, name="subscriber")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO), format=LOG_FORMAT)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _bootstrap() -> Settings:
    settings = get_settings()
    _configure_logging(settings)
    init_db(settings)
    return settings


@app.command("init-db")
def init_db_command() -> None:
    """Create the database tables."""
    settings = _bootstrap()
    typer.echo(f"Database ready: {settings.db_url}")


@feed_app.command("add")
def feed_add(
    url: str = typer.Option(..., "--url"),
    title: str | None = typer.Option(None, "--title"),
    interval: int | None = typer.Option(None, "--interval", help="Refresh interval in minutes (min 180)"),
) -> None:
    settings = _bootstrap()
    clean_url = url.strip()
    with session_scope(settings) as session:
        existing = session.scalar(select(Feed).where(Feed.url == clean_url))
        if existing is not None:
            typer.echo(f"Feed already exists: #{existing.id} {existing.title}")
            return
        feed = Feed(
            title=(title or "").strip() or clean_url,
            url=clean_url,
            is_active=True,
            status=FEED_STATUS_ACTIVE,
            refresh_interval_minutes=interval or settings.default_refresh_interval_minutes,
        )
        session.add(feed)
        session.commit()
        typer.echo(f"Added feed #{feed.id}: {feed.title} (every {feed.refresh_interval_minutes} min)")


@feed_app.command("list")
def feed_list() -> None:
    settings = _bootstrap()
    with session_scope(settings) as session:
        feeds = session.scalars(select(Feed).order_by(Feed.id.asc())).all()
        typer.echo(render_feeds(list(feeds)), nl=False)


def _set_feed_paused(feed_id: int, paused: bool) -> None:
    settings = _bootstrap()
    with session_scope(settings) as session:
        feed = session.get(Feed, feed_id)
        if feed is None:
            typer.echo(f"Feed not found: {feed_id}")
            raise typer.Exit(code=1)
        if paused:
            feed.status = FEED_STATUS_PAUSED
            feed.is_active = False
        else:
            feed.status = FEED_STATUS_ACTIVE
            feed.is_active = True
            feed.consecutive_failures = 0
            feed.next_attempt_at = None
        session.commit()
        typer.echo(f"Feed #{feed.id} is now {feed.status}")


@feed_app.command("pause")
def feed_pause(feed_id: int = typer.Argument(...)) -> None:
    _set_feed_paused(feed_id, paused=True)


@feed_app.command("resume")
def feed_resume(feed_id: int = typer.Argument(...)) -> None:
    _set_feed_paused(feed_id, paused=False)


@subscriber_app.command("add")
def subscriber_add(
    email: str = typer.Option(..., "--email"),
    name: str | None = typer.Option(None, "--name"),
    approve: bool = typer.Option(False, "--approve", help="Approve immediately"),
) -> None:
    settings = _bootstrap()
    normalized = email.strip().lower()
    if "@" not in normalized:
        raise typer.BadParameter("email must contain '@'")
    with session_scope(settings) as session:
        existing = session.scalar(select(Subscriber).where(Subscriber.email == normalized))
        if existing is not None:
            typer.echo(f"Subscriber already exists: {existing.email} ({existing.status})")
            return
        sub = Subscriber(email=normalized, name=name, status=SUBSCRIBER_STATUS_PENDING)
        if approve:
            sub.status = SUBSCRIBER_STATUS_APPROVED
            sub.approved_at = utcnow()
        session.add(sub)
        session.commit()
        typer.echo(f"Added subscriber {sub.email} ({sub.status})")


@subscriber_app.command("approve")
def subscriber_approve(email: str = typer.Argument(...)) -> None:
    settings = _bootstrap()
    with session_scope(settings) as session:
        sub = session.scalar(select(Subscriber).where(Subscriber.email == email.strip().lower()))
        if sub is None:
            typer.echo(f"Subscriber not found: {email}")
            raise typer.Exit(code=1)
        sub.status = SUBSCRIBER_STATUS_APPROVED
        sub.approved_at = utcnow()
        session.commit()
        typer.echo(f"Approved {sub.email}")


@subscriber_app.command("list")
def subscriber_list() -> None:
    settings = _bootstrap()
    with session_scope(settings) as session:
        subscribers = session.scalars(select(Subscriber).order_by(Subscriber.id.asc())).all()
        typer.echo(render_subscribers(list(subscribers)), nl=False)


@app.command("fetch")
def fetch(feed_id: int | None = typer.Option(None, "--feed-id", help="Only fetch this feed")) -> None:
    """Fetch feeds once, bypassing the parse cache.

    Runs in this process, outside a running worker's scheduler, so it does not
    see the worker's in-flight fetches.
    """
    settings = _bootstrap()
    runtime = build_runtime(settings)
    failed = 0
    try:
        with session_scope(settings) as session:
            if feed_id is not None:
                feed_ids = [feed_id]
            else:
                feed_ids = list(session.scalars(select(Feed.id).where(Feed.is_active.is_(True)).order_by(Feed.id)))
            for current_id in feed_ids:
                try:
                    with store_guard(f"fetch feed {current_id}"):
                        outcome = runtime.fetch_job.process(session, current_id, manual=True)
                        session.commit()
                except FeedNotFound as exc:
                    typer.echo(str(exc))
                    raise typer.Exit(code=1) from exc
                except StoreUnavailable as exc:
                    typer.echo(f"Fetch failed: {exc}")
                    raise typer.Exit(code=1) from exc

                if outcome.skipped:
                    typer.echo(f"Feed #{current_id}: skipped ({outcome.reason})")
                elif outcome.ok and outcome.reconcile is not None:
                    result = outcome.reconcile
                    typer.echo(
                        f"Feed #{current_id}: ok, {result.created} new, {result.updated} updated, "
                        f"{result.skipped} skipped, {result.failed} failed ({outcome.response_time_ms} ms)"
                    )
                else:
                    failed += 1
                    typer.echo(
                        f"Feed #{current_id}: {outcome.classification} - {outcome.error_message}; "
                        f"next attempt {outcome.next_attempt_at.isoformat() if outcome.next_attempt_at else '-'}"
                    )
    finally:
        runtime.close()
    if failed:
        raise typer.Exit(code=1)


@app.command("digest")
def digest(force: bool = typer.Option(False, "--force", help="Send even if a digest already went out today")) -> None:
    """Run the daily digest once."""
    settings = _bootstrap()
    runtime = build_runtime(settings)
    try:
        result = runtime.digest_timer.run_now(force=force)
    except (ConfigurationError, StoreUnavailable) as exc:
        typer.echo(f"Digest failed: {exc}")
        raise typer.Exit(code=1) from exc
    finally:
        runtime.close()

    if result is None:
        typer.echo("A digest run is already in progress.")
        return
    if result.skipped:
        typer.echo("Digest already sent today (use --force to send again).")
        return
    typer.echo(f"Digest sent to {result.recipients} subscribers with {result.items} items ({result.failed} failed)")


@app.command("status")
def status() -> None:
    settings = _bootstrap()
    with session_scope(settings) as session:
        feed_count = session.scalar(select(func.count(Feed.id))) or 0
        item_count = session.scalar(select(func.count(Item.id))) or 0
        approved = (
            session.scalar(
                select(func.count(Subscriber.id)).where(Subscriber.status == SUBSCRIBER_STATUS_APPROVED)
            )
            or 0
        )
        last_run = session.scalar(select(DigestRun).order_by(DigestRun.sent_at.desc()).limit(1))
        typer.echo(f"feeds={feed_count} items={item_count} approved_subscribers={approved}")
        if last_run is None:
            typer.echo("No digest has been sent yet.")
        else:
            typer.echo(
                f"Last digest: {last_run.sent_at.isoformat()} "
                f"recipients={last_run.recipient_count} items={last_run.item_count}"
            )
        feeds = session.scalars(select(Feed).order_by(Feed.id.asc())).all()
        typer.echo(render_feeds(list(feeds)), nl=False)
    typer.echo(f"mail={'preview' if settings.preview_mail else settings.smtp_host}")


@app.command("worker")
def worker() -> None:
    """Run the scheduler, the daily digest timer and the admin API."""
    settings = _bootstrap()
    run_worker(settings)


if __name__ == "__main__":
    app()
