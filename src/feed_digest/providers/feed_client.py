from __future__ import annotations

import time
from typing import Callable

import httpx

from ..errors import NetworkFailure, UpstreamHttpError, UpstreamRejection, UpstreamServerError
from ..schemas import CandidateItem
from .feed_parser import parse_feed
from .user_agents import random_user_agent

BLOCKED_STATUS_CODES = frozenset({403, 522})
FEED_ACCEPT = "application/rss+xml,application/atom+xml,application/xml,text/xml,*/*"


class FeedClient:
    """Fetches a feed document over HTTP and hands it to the parser.

    httpx errors are translated here, once, into the pipeline's error taxonomy
    so callers only ever see NetworkFailure / UpstreamRejection /
    UpstreamServerError / UpstreamHttpError / ValidationFailure.
    """

    def __init__(self, client: httpx.Client | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._owns_client = client is None
        self.client = client or httpx.Client(follow_redirects=True)
        self.clock = clock

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def fetch(self, url: str, timeout_seconds: float, user_agent: str | None = None) -> list[CandidateItem]:
        body = self.fetch_document(url, timeout_seconds=timeout_seconds, user_agent=user_agent)
        return parse_feed(body, source_url=url)

    def fetch_document(self, url: str, timeout_seconds: float, user_agent: str | None = None) -> bytes:
        headers = {
            "Accept": FEED_ACCEPT,
            "User-Agent": user_agent or random_user_agent(),
        }
        # httpx timeouts apply per connect/read; the deadline bounds the whole transfer.
        deadline = self.clock() + timeout_seconds
        try:
            with self.client.stream("GET", url, headers=headers, timeout=timeout_seconds) as response:
                response.raise_for_status()
                chunks: list[bytes] = []
                for chunk in response.iter_bytes():
                    chunks.append(chunk)
                    if self.clock() > deadline:
                        raise NetworkFailure(f"Request timed out after {timeout_seconds}s: {url}", timed_out=True)
        except httpx.TimeoutException as exc:
            raise NetworkFailure(f"Request timed out after {timeout_seconds}s: {url}", timed_out=True) from exc
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            message = f"Status code {code} from {url}"
            if code in BLOCKED_STATUS_CODES:
                raise UpstreamRejection(message, status_code=code) from exc
            if 500 <= code < 600:
                raise UpstreamServerError(message, status_code=code) from exc
            raise UpstreamHttpError(message, status_code=code) from exc
        except httpx.RequestError as exc:
            raise NetworkFailure(f"{type(exc).__name__}: {exc}") from exc

        content = b"".join(chunks)
        if content.startswith(b"\xef\xbb\xbf"):
            content = content[3:]
        return content.strip()
