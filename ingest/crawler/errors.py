"""Exception taxonomy for the crawl engine.

Item-level failures (parse, validation, persistence) are caught by the
orchestrator and recorded on the run result; transport failures carry enough
detail for `RetryHandler` to classify them.
"""

from __future__ import annotations


class CrawlerError(Exception):
    """Base class for all crawler errors."""


class NetworkError(CrawlerError):
    """Connection failure or timeout before a complete response was read."""

    def __init__(self, message: str, *, url: str | None = None, timed_out: bool = False) -> None:
        super().__init__(message)
        self.url = url
        self.timed_out = timed_out


class HttpStatusError(CrawlerError):
    """Server answered with a non-2xx status."""

    def __init__(self, status_code: int, *, url: str | None = None, reason: str | None = None) -> None:
        detail = f"HTTP {status_code}"
        if reason:
            detail = f"{detail}: {reason}"
        if url:
            detail = f"{detail} for {url}"
        super().__init__(detail)
        self.status_code = status_code
        self.url = url


class PayloadTooLargeError(CrawlerError):
    """Response body exceeded the configured byte limit."""

    def __init__(self, limit: int, *, url: str | None = None) -> None:
        super().__init__(f"Response exceeds {limit} bytes" + (f" for {url}" if url else ""))
        self.limit = limit
        self.url = url


class ParseError(CrawlerError):
    """Selector chain exhausted for a value that has no sentinel fallback."""


class ValidationError(CrawlerError):
    """Required field missing after normalization."""


class PersistenceError(CrawlerError):
    """Record or checkpoint store write/read failed."""


class QueueError(CrawlerError):
    """Downstream queue send failed after retries."""


class CrawlInProgressError(CrawlerError):
    """Another run holds the lock for the same (source, item type) pair."""


class InvalidRequestError(CrawlerError, ValueError):
    """Trigger/status request with unknown source, type, or bad limit."""


__all__ = [
    "CrawlInProgressError",
    "CrawlerError",
    "HttpStatusError",
    "InvalidRequestError",
    "NetworkError",
    "ParseError",
    "PayloadTooLargeError",
    "PersistenceError",
    "QueueError",
    "ValidationError",
]
