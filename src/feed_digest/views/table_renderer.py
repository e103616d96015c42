from __future__ import annotations

from datetime import datetime, timezone

from rich import box
from rich.console import Console
from rich.table import Table
from rich.text import Text

from ..models import FEED_STATUS_ACTIVE, FEED_STATUS_DEGRADED, Feed, Subscriber

_STATUS_STYLES = {
    FEED_STATUS_ACTIVE: "green",
    FEED_STATUS_DEGRADED: "yellow",
}


def _format_time(dt: datetime | None) -> str:
    if dt is None:
        return "-"
    value = dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)
    return value.astimezone().strftime("%Y-%m-%d %H:%M")


def _status_cell(status: str) -> Text:
    return Text(status, style=_STATUS_STYLES.get(status, "red"))


def _console() -> Console:
    return Console(
        force_terminal=True,
        color_system="standard",
        markup=False,
        highlight=False,
        width=160,
    )


def render_feeds(feeds: list[Feed]) -> str:
    console = _console()
    with console.capture() as capture:
        if not feeds:
            console.print("No feeds configured.")
            return capture.get()

        table = Table(show_header=True, header_style="bold cyan", box=box.SQUARE, expand=True)
        table.add_column("ID", justify="right", width=4, no_wrap=True)
        table.add_column("Title", ratio=2, overflow="fold")
        table.add_column("Status", width=9, no_wrap=True)
        table.add_column("Interval", justify="right", width=8, no_wrap=True)
        table.add_column("Fails", justify="right", width=5, no_wrap=True)
        table.add_column("Timeout", justify="right", width=7, no_wrap=True)
        table.add_column("Last fetch", width=16, no_wrap=True)
        table.add_column("Next attempt", width=16, no_wrap=True)
        table.add_column("Last error", ratio=3, overflow="fold")

        for feed in feeds:
            table.add_row(
                str(feed.id),
                Text(feed.title, style=f"link {feed.url}"),
                _status_cell(feed.status),
                f"{feed.refresh_interval_minutes}m",
                str(feed.consecutive_failures or 0),
                f"{feed.timeout_seconds}s" if feed.timeout_seconds else "-",
                _format_time(feed.last_fetched_at),
                _format_time(feed.next_attempt_at),
                feed.last_error or "-",
            )
        console.print(table)
    return capture.get()


def render_subscribers(subscribers: list[Subscriber]) -> str:
    console = _console()
    with console.capture() as capture:
        if not subscribers:
            console.print("No subscribers yet.")
            return capture.get()

        table = Table(show_header=True, header_style="bold cyan", box=box.SQUARE)
        table.add_column("ID", justify="right", width=4, no_wrap=True)
        table.add_column("Email", overflow="fold")
        table.add_column("Name", overflow="fold")
        table.add_column("Status", no_wrap=True)
        table.add_column("Approved", no_wrap=True)

        for sub in subscribers:
            table.add_row(str(sub.id), sub.email, sub.name or "-", sub.status, _format_time(sub.approved_at))
        console.print(table)
    return capture.get()
