from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

CLASSIFICATION_SUCCESS = "success"
CLASSIFICATION_TIMEOUT = "timeout"
CLASSIFICATION_BLOCKED = "blocked"
CLASSIFICATION_SERVER_ERROR = "server_error"
CLASSIFICATION_OTHER = "other"


@dataclass(frozen=True, slots=True)
class FeedState:
    """Snapshot of the scheduling-relevant part of a feed, passed by value."""

    VERSION = 1

    status: str
    is_active: bool
    refresh_interval_minutes: int
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    timeout_seconds: int | None = None
    version: int = VERSION


@dataclass(slots=True)
class CandidateItem:
    title: str
    url: str
    published_at: datetime | None = None
    source_guid: str | None = None
    summary: str | None = None
    content: str | None = None
    author: str | None = None
    image_url: str | None = None

    def to_cache(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "source_guid": self.source_guid,
            "summary": self.summary,
            "content": self.content,
            "author": self.author,
            "image_url": self.image_url,
        }

    @classmethod
    def from_cache(cls, payload: dict[str, Any]) -> CandidateItem:
        published_raw = payload.get("published_at")
        return cls(
            title=payload.get("title") or "",
            url=payload.get("url") or "",
            published_at=datetime.fromisoformat(published_raw) if published_raw else None,
            source_guid=payload.get("source_guid"),
            summary=payload.get("summary"),
            content=payload.get("content"),
            author=payload.get("author"),
            image_url=payload.get("image_url"),
        )


@dataclass(slots=True)
class ReconcileResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.created + self.updated + self.skipped + self.failed


@dataclass(slots=True)
class FetchOutcome:
    feed_id: int
    classification: str | None
    skipped: bool = False
    reason: str | None = None
    status_code: int | None = None
    error_message: str | None = None
    response_time_ms: int = 0
    next_attempt_at: datetime | None = None
    reconcile: ReconcileResult | None = None

    @property
    def ok(self) -> bool:
        return self.classification == CLASSIFICATION_SUCCESS


@dataclass(slots=True)
class DigestItem:
    id: int
    title: str
    url: str
    feed_title: str
    likes: int = 0
    summary: str | None = None
    author: str | None = None
    published_at: datetime | None = None


@dataclass(slots=True)
class Recipient:
    email: str
    name: str | None = None

    @property
    def display_name(self) -> str:
        if self.name and self.name.strip():
            return self.name.strip()
        return self.email.split("@", 1)[0]


@dataclass(slots=True)
class OutboundMail:
    from_addr: str
    to: str
    reply_to: str
    subject: str
    html: str
    text: str
    message_id: str
    date: datetime
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class DigestResult:
    recipients: int = 0
    items: int = 0
    failed: int = 0
    skipped: bool = False

    def as_dict(self) -> dict[str, int | bool]:
        return {
            "recipients": self.recipients,
            "items": self.items,
            "failed": self.failed,
            "skipped": self.skipped,
        }


@dataclass(slots=True)
class CacheHealth:
    available: bool
    connected: bool
    error: str | None = None
