from __future__ import annotations


class FeedDigestError(RuntimeError):
    """Base class for every error raised by the pipeline."""


class NetworkFailure(FeedDigestError):
    """Timeout, DNS failure or refused connection while fetching a feed."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class UpstreamRejection(FeedDigestError):
    """The upstream explicitly denied the request (403/522)."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamServerError(FeedDigestError):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamHttpError(FeedDigestError):
    """Any other non-success HTTP status (404, 410, 429, ...)."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationFailure(FeedDigestError):
    pass


class DeliveryFailure(FeedDigestError):
    pass


class StoreUnavailable(FeedDigestError):
    pass


class CacheUnavailable(FeedDigestError):
    pass


class FeedNotFound(FeedDigestError):
    def __init__(self, feed_id: int) -> None:
        super().__init__(f"Feed {feed_id} not found")
        self.feed_id = feed_id


class FeedInactive(FeedDigestError):
    def __init__(self, feed_id: int, status: str) -> None:
        super().__init__(f"Feed {feed_id} is not active (status={status})")
        self.feed_id = feed_id
        self.status = status


class ConfigurationError(FeedDigestError):
    pass
