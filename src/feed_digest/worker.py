from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

import httpx
import redis
import uvicorn

from .config import Settings
from .db import init_db
from .errors import ConfigurationError
from .providers.feed_client import FeedClient
from .services.cache import CacheLayer, connect_redis
from .services.digest import DigestService
from .services.email_builder import EmailBuilder
from .services.fetch_job import FeedFetchJob
from .services.mailer import Mailer, MailTransport, build_transport
from .services.reconciler import ItemReconciler
from .services.scheduler import DailyDigestTimer, FetchScheduler, TimerFactory
from .services.unsubscribe import UnsubscribeTokenSigner

logger = logging.getLogger(__name__)


@dataclass
class WorkerRuntime:
    settings: Settings
    cache: CacheLayer
    feed_client: FeedClient
    mailer: Mailer
    signer: UnsubscribeTokenSigner | None
    fetch_job: FeedFetchJob
    scheduler: FetchScheduler
    digest_service: DigestService
    digest_timer: DailyDigestTimer

    def start(self) -> None:
        scheduled = self.scheduler.start()
        next_digest = self.digest_timer.start()
        logger.info("Worker started: %s feeds scheduled, next digest at %s", scheduled, next_digest.isoformat())

    def close(self) -> None:
        self.digest_timer.shutdown()
        self.scheduler.shutdown(wait=True)
        self.feed_client.close()
        self.cache.close()


def build_signer(settings: Settings) -> UnsubscribeTokenSigner | None:
    try:
        return UnsubscribeTokenSigner(settings.unsubscribe_secret)
    except ConfigurationError:
        logger.warning("UNSUBSCRIBE_SECRET not configured, digests cannot be sent")
        return None


def build_runtime(
    settings: Settings,
    redis_client: redis.Redis | None = None,
    transport: MailTransport | None = None,
    http_client: httpx.Client | None = None,
    timer_factory: TimerFactory = threading.Timer,
) -> WorkerRuntime:
    cache = CacheLayer(redis_client if redis_client is not None else connect_redis(settings.redis_url))
    feed_client = FeedClient(http_client)
    mailer = Mailer(transport or build_transport(settings), timeout_seconds=settings.mail_send_timeout_seconds)
    signer = build_signer(settings)

    fetch_job = FeedFetchJob(
        feed_client=feed_client,
        reconciler=ItemReconciler(),
        cache=cache,
        timeout_policy=settings.timeout_policy,
        auto_pause_threshold=settings.auto_pause_threshold,
        feed_cache_ttl_seconds=settings.feed_cache_ttl_seconds,
        max_stored_items=settings.max_stored_items,
    )
    digest_service = DigestService(
        mailer=mailer,
        builder=EmailBuilder(
            from_addr=settings.smtp_from,
            reply_to=settings.resolved_reply_to(),
            site_url=settings.site_url,
            tz_name=settings.digest_timezone,
        ),
        signer=signer,
        max_items=settings.digest_max_items,
        window_hours=settings.digest_window_hours,
        tz_name=settings.digest_timezone,
    )
    return WorkerRuntime(
        settings=settings,
        cache=cache,
        feed_client=feed_client,
        mailer=mailer,
        signer=signer,
        fetch_job=fetch_job,
        scheduler=FetchScheduler(settings, fetch_job, timer_factory=timer_factory),
        digest_service=digest_service,
        digest_timer=DailyDigestTimer(settings, digest_service, timer_factory=timer_factory),
    )


def run_worker(settings: Settings) -> None:
    from .api import create_app

    init_db(settings)
    runtime = build_runtime(settings)
    runtime.start()
    try:
        uvicorn.run(
            create_app(runtime),
            host=settings.api_host,
            port=settings.api_port,
            log_level=settings.log_level.lower(),
        )
    finally:
        runtime.close()
