from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def ensure_aware(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def resolve_timezone(name: str | None):
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def local_day_bounds_utc(target_date: date, tz_name: str | None = None) -> tuple[datetime, datetime]:
    local_tz = resolve_timezone(tz_name)
    start_local = datetime.combine(target_date, time.min).replace(tzinfo=local_tz)
    end_local = start_local + timedelta(days=1)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def next_daily_run(now: datetime, hour: int, minute: int, tz_name: str | None = None) -> datetime:
    """Next wall-clock occurrence of hour:minute in tz_name strictly after now, in UTC."""
    local_tz = resolve_timezone(tz_name)
    local_now = ensure_aware(now).astimezone(local_tz)
    candidate = datetime.combine(local_now.date(), time(hour, minute)).replace(tzinfo=local_tz)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), time(hour, minute)).replace(
            tzinfo=local_tz
        )
    return candidate.astimezone(timezone.utc)


def format_long_date(dt: datetime, tz_name: str | None = None) -> str:
    local = ensure_aware(dt).astimezone(resolve_timezone(tz_name))
    return f"{local.strftime('%B')} {local.day}, {local.year}"


def format_short_date(dt: datetime, tz_name: str | None = None) -> str:
    local = ensure_aware(dt).astimezone(resolve_timezone(tz_name))
    return local.strftime("%d/%m/%Y")
