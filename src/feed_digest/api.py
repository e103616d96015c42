"""
Administrative HTTP endpoints for the worker.

 - POST   /schedule/immediate/{feed_id} : one out-of-band fetch
 - POST   /schedule/{feed_id}           : (re)arm a feed's schedule
 - DELETE /schedule/{feed_id}           : drop a feed's schedule
 - GET    /health                       : store + cache health and counts
 - GET|POST /unsubscribe/{token}        : one-click unsubscribe
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text

from .config import Settings
from .db import session_scope, store_guard
from .errors import FeedInactive, FeedNotFound, StoreUnavailable
from .models import Feed, Item, Subscriber
from .services.cache import cache_key
from .services.unsubscribe import apply_unsubscribe

if TYPE_CHECKING:
    from .worker import WorkerRuntime

logger = logging.getLogger(__name__)

HEALTH_CACHE_KEY = cache_key("health", "summary")
HEALTH_CACHE_TTL_SECONDS = 60
INVALID_LINK = {"error": "Invalid or expired link"}


def store_ping(settings: Settings) -> None:
    with session_scope(settings) as session, store_guard("health ping"):
        session.execute(text("SELECT 1"))


def create_app(runtime: WorkerRuntime) -> FastAPI:
    app = FastAPI(title="Feed Digest", version="0.1.0")
    settings = runtime.settings

    def _counts() -> dict[str, int]:
        with session_scope(settings) as session, store_guard("health counts"):
            return {
                "feeds": session.scalar(select(func.count(Feed.id))) or 0,
                "items": session.scalar(select(func.count(Item.id))) or 0,
                "subscribers": session.scalar(select(func.count(Subscriber.id))) or 0,
            }

    @app.post("/schedule/immediate/{feed_id}")
    def schedule_immediate(feed_id: int):
        try:
            future = runtime.scheduler.fetch_now(feed_id)
        except FeedNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except FeedInactive as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except StoreUnavailable as exc:
            logger.error("Manual fetch for feed %s failed: %s", feed_id, exc)
            raise HTTPException(status_code=503, detail="Data store unavailable") from exc

        if future is None:
            return JSONResponse(status_code=200, content={"feed_id": feed_id, "queued": False, "reason": "in_flight"})
        return JSONResponse(status_code=202, content={"feed_id": feed_id, "queued": True})

    @app.post("/schedule/{feed_id}")
    def schedule_feed(feed_id: int):
        try:
            fire_at = runtime.scheduler.schedule_feed(feed_id)
        except FeedNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except StoreUnavailable as exc:
            raise HTTPException(status_code=503, detail="Data store unavailable") from exc
        return {
            "feed_id": feed_id,
            "scheduled": fire_at is not None,
            "next_run_at": fire_at.isoformat() if fire_at else None,
        }

    @app.delete("/schedule/{feed_id}")
    def unschedule_feed(feed_id: int):
        removed = runtime.scheduler.unschedule_feed(feed_id)
        return {"feed_id": feed_id, "unscheduled": removed}

    @app.get("/health")
    def health():
        cache_health = runtime.cache.health()
        payload = {
            "status": "ok",
            "database": {"connected": True},
            "cache": {
                "available": cache_health.available,
                "connected": cache_health.connected,
                "error": cache_health.error,
            },
        }
        try:
            store_ping(settings)
            payload["counts"] = runtime.cache.cached(HEALTH_CACHE_KEY, _counts, HEALTH_CACHE_TTL_SECONDS)
        except StoreUnavailable as exc:
            logger.error("Health check could not reach the data store: %s", exc)
            payload["status"] = "degraded"
            payload["database"] = {"connected": False, "error": str(exc)}
            return JSONResponse(status_code=503, content=payload)
        return payload

    def _unsubscribe(token: str):
        if runtime.signer is None:
            return JSONResponse(status_code=400, content=INVALID_LINK)
        try:
            with session_scope(settings) as session, store_guard("unsubscribe"):
                subscriber = apply_unsubscribe(session, runtime.signer, token)
                if subscriber is None:
                    return JSONResponse(status_code=400, content=INVALID_LINK)
                session.commit()
        except StoreUnavailable as exc:
            logger.error("Unsubscribe failed: %s", exc)
            return JSONResponse(status_code=400, content=INVALID_LINK)
        return {"success": True, "message": "You have been unsubscribed"}

    @app.get("/unsubscribe/{token}")
    def unsubscribe_get(token: str):
        return _unsubscribe(token)

    @app.post("/unsubscribe/{token}")
    def unsubscribe_post(token: str):
        return _unsubscribe(token)

    return app
