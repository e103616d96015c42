from __future__ import annotations

import logging
from datetime import timezone

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ..errors import ValidationFailure
from ..models import Feed, Item
from ..schemas import CandidateItem, ReconcileResult
from ..time_utils import ensure_aware

logger = logging.getLogger(__name__)

PRUNE_BATCH_SIZE = 1000


def _normalize(candidate: CandidateItem) -> CandidateItem:
    published_at = candidate.published_at
    if published_at is not None:
        # SQLite keeps naive wall-clock values, so identity lookups compare in UTC.
        published_at = ensure_aware(published_at).astimezone(timezone.utc)
    return CandidateItem(
        title=(candidate.title or "").strip(),
        url=(candidate.url or "").strip(),
        published_at=published_at,
        source_guid=(candidate.source_guid or "").strip() or None,
        summary=candidate.summary,
        content=candidate.content,
        author=candidate.author,
        image_url=candidate.image_url,
    )


class ItemReconciler:
    def reconcile(self, session: Session, feed: Feed, candidates: list[CandidateItem]) -> ReconcileResult:
        result = ReconcileResult()
        for raw in candidates:
            candidate = _normalize(raw)
            if not candidate.url or not candidate.title:
                result.skipped += 1
                continue

            try:
                with session.begin_nested():
                    created = self._upsert(session=session, feed=feed, candidate=candidate)
                    session.flush()
            except ValidationFailure as exc:
                logger.debug("Skipping item %s from feed %s: %s", candidate.url, feed.id, exc)
                result.skipped += 1
                continue
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to store item %s from feed %s: %s", candidate.url, feed.id, exc)
                result.failed += 1
                continue

            if created:
                result.created += 1
            else:
                result.updated += 1
        return result

    def find_existing(self, session: Session, feed_id: int, candidate: CandidateItem) -> Item | None:
        if candidate.source_guid:
            return session.scalar(select(Item).where(Item.source_guid == candidate.source_guid))

        stmt = select(Item).where(Item.feed_id == feed_id, Item.url == candidate.url)
        if candidate.published_at is None:
            stmt = stmt.where(Item.published_at.is_(None))
        else:
            stmt = stmt.where(Item.published_at == candidate.published_at)
        return session.scalars(stmt.order_by(Item.id.asc()).limit(1)).first()

    def _upsert(self, session: Session, feed: Feed, candidate: CandidateItem) -> bool:
        if len(candidate.title) > 1024:
            raise ValidationFailure("title too long")

        existing = self.find_existing(session, feed_id=feed.id, candidate=candidate)
        if existing is not None:
            existing.title = candidate.title
            existing.summary = candidate.summary
            existing.content = candidate.content
            existing.author = candidate.author
            existing.image_url = candidate.image_url
            existing.published_at = candidate.published_at
            return False

        session.add(
            Item(
                feed_id=feed.id,
                url=candidate.url,
                title=candidate.title,
                summary=candidate.summary,
                content=candidate.content,
                author=candidate.author,
                image_url=candidate.image_url,
                published_at=candidate.published_at,
                source_guid=candidate.source_guid,
            )
        )
        return True


def prune_old_items(session: Session, max_items: int) -> int:
    """Delete the oldest items until at most max_items remain; returns the number removed."""
    total = session.scalar(select(func.count(Item.id))) or 0
    excess = total - max_items
    removed = 0
    age = func.coalesce(Item.published_at, Item.created_at)
    while excess > 0:
        batch = min(excess, PRUNE_BATCH_SIZE)
        ids = session.scalars(select(Item.id).order_by(age.asc(), Item.id.asc()).limit(batch)).all()
        if not ids:
            break
        session.execute(delete(Item).where(Item.id.in_(ids)))
        removed += len(ids)
        excess -= len(ids)
    if removed:
        logger.info("Pruned %s old items (limit %s)", removed, max_items)
    return removed
