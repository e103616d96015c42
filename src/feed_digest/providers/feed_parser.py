from __future__ import annotations

import calendar
import html
import re
from datetime import datetime, timezone

import feedparser

from ..errors import ValidationFailure
from ..schemas import CandidateItem

SUMMARY_CHAR_LIMIT = 500


def _to_utc_datetime(value) -> datetime | None:
    if value is None:
        return None
    try:
        timestamp = calendar.timegm(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _entry_published_at(entry) -> datetime | None:
    candidate = _to_utc_datetime(entry.get("published_parsed"))
    if candidate is not None:
        return candidate

    candidate = _to_utc_datetime(entry.get("updated_parsed"))
    if candidate is not None:
        return candidate

    return None


_TAG_RE = re.compile(r"<[^>]+>")
_IMG_RE = re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE)


def _clean_text(text: str) -> str:
    unescaped = html.unescape(text)
    no_tag = _TAG_RE.sub(" ", unescaped)
    no_space = re.sub(r"\s+", " ", no_tag).strip()
    return no_space


def _entry_content(entry) -> str | None:
    content_items = entry.get("content") or []
    if content_items and isinstance(content_items, list):
        first = content_items[0]
        if isinstance(first, dict):
            value = first.get("value")
            if isinstance(value, str) and value.strip():
                return value
    return None


def _entry_summary(entry, content: str | None) -> str | None:
    for key in ("summary", "description"):
        candidate = entry.get(key)
        if isinstance(candidate, str) and candidate.strip():
            cleaned = _clean_text(candidate)
            if cleaned:
                return cleaned[:SUMMARY_CHAR_LIMIT]
    if content:
        cleaned = _clean_text(content)
        return cleaned[:SUMMARY_CHAR_LIMIT] or None
    return None


def _entry_image(entry, content: str | None) -> str | None:
    for key in ("media_thumbnail", "media_content"):
        media = entry.get(key) or []
        if media and isinstance(media, list) and isinstance(media[0], dict):
            url = media[0].get("url")
            if url:
                return str(url)
    if content:
        match = _IMG_RE.search(content)
        if match:
            return match.group(1)
    return None


def _entry_url(entry) -> str:
    link = str(entry.get("link") or "").strip()
    if link:
        return link
    entry_id = str(entry.get("id") or "").strip()
    if entry_id.startswith(("http://", "https://")):
        return entry_id
    return ""


def parse_feed(content: str | bytes, source_url: str) -> list[CandidateItem]:
    parsed = feedparser.parse(content)
    if parsed.get("bozo") and not parsed.entries:
        reason = parsed.get("bozo_exception") or "unparsable document"
        raise ValidationFailure(f"Could not parse feed {source_url}: {reason}")

    results: list[CandidateItem] = []
    for entry in parsed.entries:
        content_html = _entry_content(entry)
        url = _entry_url(entry)
        source_guid = str(entry.get("id") or "").strip() or url or None
        author = str(entry.get("author") or "").strip() or None

        results.append(
            CandidateItem(
                title=_clean_text(str(entry.get("title") or "")),
                url=url,
                published_at=_entry_published_at(entry),
                source_guid=source_guid,
                summary=_entry_summary(entry, content_html),
                content=content_html,
                author=author,
                image_url=_entry_image(entry, content_html),
            )
        )

    return results
