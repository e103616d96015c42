from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import store_guard
from ..errors import ConfigurationError, DeliveryFailure
from ..models import SUBSCRIBER_STATUS_APPROVED, DigestRun, Feed, Item, Subscriber, utcnow
from ..schemas import DigestItem, DigestResult, Recipient
from ..time_utils import ensure_aware, local_day_bounds_utc, resolve_timezone
from .email_builder import EmailBuilder
from .mailer import Mailer
from .unsubscribe import UnsubscribeTokenSigner

logger = logging.getLogger(__name__)


def _newest_first_key(item: DigestItem) -> tuple[float, int]:
    published = ensure_aware(item.published_at)
    return (-(published.timestamp() if published else 0.0), -item.id)


def select_items(items: list[DigestItem], max_items: int = 10) -> list[DigestItem]:
    """Liked items first (most likes, then newest), topped up with the newest of the rest."""
    liked = sorted(
        (item for item in items if item.likes > 0),
        key=lambda item: (-item.likes, *_newest_first_key(item)),
    )
    selected = liked[:max_items]
    if len(selected) >= max_items:
        return selected

    chosen = {item.id for item in selected}
    remaining = sorted((item for item in items if item.id not in chosen), key=_newest_first_key)
    selected.extend(remaining[: max_items - len(selected)])
    return selected


class DigestService:
    def __init__(
        self,
        mailer: Mailer,
        builder: EmailBuilder,
        signer: UnsubscribeTokenSigner | None,
        max_items: int = 10,
        window_hours: int = 24,
        tz_name: str = "UTC",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.mailer = mailer
        self.builder = builder
        self.signer = signer
        self.max_items = max_items
        self.window_hours = window_hours
        self.tz_name = tz_name
        self.clock = clock

    def run(self, session: Session, now: datetime | None = None, force: bool = False) -> DigestResult:
        moment = ensure_aware(now or self.clock()).astimezone(timezone.utc)

        if not force and self.already_ran_today(session, moment):
            logger.info("Daily digest already sent today, skipping")
            return DigestResult(skipped=True)

        with store_guard("collect digest items"):
            candidates = self.collect(session, moment)
            recipients = self.approved_recipients(session)
        selected = select_items(candidates, self.max_items)

        sent = 0
        failed = 0
        if selected and recipients:
            if self.signer is None:
                raise ConfigurationError("UNSUBSCRIBE_SECRET is required to send digests")
            for recipient in recipients:
                try:
                    mail = self.builder.build(
                        recipient,
                        selected,
                        unsubscribe_token=self.signer.generate(recipient.email),
                        now=moment,
                    )
                    self.mailer.send(mail)
                    sent += 1
                except DeliveryFailure as exc:
                    failed += 1
                    logger.error("Digest delivery failed for %s: %s", recipient.email, exc)
                except Exception as exc:  # noqa: BLE001
                    failed += 1
                    logger.error("Could not build digest for %s: %s", recipient.email, exc)
        elif not selected:
            logger.info("No items in the last %s hours, no digest emails sent", self.window_hours)

        session.add(DigestRun(recipient_count=sent, item_count=len(selected), sent_at=moment))
        session.flush()

        result = DigestResult(recipients=sent, items=len(selected), failed=failed)
        logger.info("Digest run complete: %s sent, %s failed, %s items", sent, failed, len(selected))
        return result

    def already_ran_today(self, session: Session, now: datetime) -> bool:
        local_day = now.astimezone(resolve_timezone(self.tz_name)).date()
        start, end = local_day_bounds_utc(local_day, self.tz_name)
        with store_guard("check digest log"):
            existing = session.scalar(
                select(DigestRun.id).where(DigestRun.sent_at >= start, DigestRun.sent_at < end).limit(1)
            )
        return existing is not None

    def collect(self, session: Session, now: datetime) -> list[DigestItem]:
        window_start = now - timedelta(hours=self.window_hours)
        rows = session.execute(
            select(Item, Feed.title)
            .join(Feed, Feed.id == Item.feed_id)
            .where(Item.published_at.is_not(None), Item.published_at >= window_start)
        ).all()
        return [
            DigestItem(
                id=item.id,
                title=item.title,
                url=item.url,
                feed_title=feed_title,
                likes=item.likes or 0,
                summary=item.summary,
                author=item.author,
                published_at=ensure_aware(item.published_at),
            )
            for item, feed_title in rows
        ]

    def approved_recipients(self, session: Session) -> list[Recipient]:
        subscribers = session.scalars(
            select(Subscriber).where(Subscriber.status == SUBSCRIBER_STATUS_APPROVED).order_by(Subscriber.id)
        ).all()
        return [Recipient(email=sub.email, name=sub.name) for sub in subscribers]
