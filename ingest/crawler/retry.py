"""Retry-with-backoff executor plus the canonical HTTP/storage retry policies."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .config import CrawlConfig
from .constants import HTTP_RETRYABLE_STATUS_CODES
from .errors import HttpStatusError, NetworkError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_HTTP_MARKERS = ("timeout", "timed out", "connection", "network")
_TRANSIENT_STORAGE_MARKERS = ("locked", "busy", "timeout")


def _never(_exc: BaseException) -> bool:
    return False


@dataclass(frozen=True, slots=True)
class RetryConfig:
    max_attempts: int
    delay_seconds: float
    backoff_multiplier: float = 2.0
    is_retryable: Callable[[BaseException], bool] = _never

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after failed attempt number `attempt` (1-based)."""

        return self.delay_seconds * (self.backoff_multiplier ** (attempt - 1))


class RetryHandler:
    """Run an operation, sleeping with exponential backoff between failed attempts.

    The original exception propagates unchanged once attempts are exhausted or
    the error is classified as non-retryable.
    """

    def __init__(self, sleep: Callable[[float], None] = time.sleep) -> None:
        self._sleep = sleep

    def execute(self, operation: Callable[[], T], config: RetryConfig, *, label: str = "operation") -> T:
        attempt = 1
        while True:
            try:
                return operation()
            except Exception as exc:
                if attempt >= config.max_attempts or not config.is_retryable(exc):
                    raise
                delay = config.delay_for(attempt)
                LOGGER.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    label,
                    attempt,
                    config.max_attempts,
                    exc,
                    delay,
                )
                if delay > 0:
                    self._sleep(delay)
                attempt += 1


def is_retryable_http_error(exc: BaseException) -> bool:
    if isinstance(exc, HttpStatusError):
        return exc.status_code in HTTP_RETRYABLE_STATUS_CODES
    if isinstance(exc, NetworkError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_HTTP_MARKERS)


def is_retryable_storage_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_STORAGE_MARKERS)


def http_retry_config(config: CrawlConfig) -> RetryConfig:
    return RetryConfig(
        max_attempts=config.http_retry_attempts,
        delay_seconds=config.http_retry_delay_seconds,
        backoff_multiplier=config.backoff_multiplier,
        is_retryable=is_retryable_http_error,
    )


def storage_retry_config(config: CrawlConfig) -> RetryConfig:
    return RetryConfig(
        max_attempts=config.storage_retry_attempts,
        delay_seconds=config.storage_retry_delay_seconds,
        backoff_multiplier=config.backoff_multiplier,
        is_retryable=is_retryable_storage_error,
    )


__all__ = [
    "RetryConfig",
    "RetryHandler",
    "http_retry_config",
    "is_retryable_http_error",
    "is_retryable_storage_error",
    "storage_retry_config",
]
