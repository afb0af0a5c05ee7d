"""HTTP fetching over a shared `requests.Session` with hard deadlines and rate limiting."""

from __future__ import annotations

import codecs
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

import requests

from .config import CrawlConfig
from .errors import HttpStatusError, NetworkError, ParseError, PayloadTooLargeError

LOGGER = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024

# IANA labels Python has no codec alias for.
_CHARSET_ALIASES = {
    "windows-31j": "cp932",
    "x-sjis": "shift_jis",
}


def resolve_charset(label: str | None) -> str:
    """Map a declared charset label to a Python codec name, defaulting to utf-8."""

    if not label:
        return "utf-8"
    name = label.strip().strip("\"'").lower()
    name = _CHARSET_ALIASES.get(name, name)
    try:
        return codecs.lookup(name).name
    except LookupError:
        LOGGER.warning("Unknown charset %r; decoding as utf-8", label)
        return "utf-8"


@dataclass(frozen=True, slots=True)
class FetchedBytes:
    body: bytes
    content_type: str | None
    final_url: str


class RateLimiter:
    """Enforce a minimum delay between consecutive requests of one run.

    `clock` and `sleep` are injectable so tests can assert exact waits.
    """

    def __init__(
        self,
        delay_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.delay_seconds = max(0.0, delay_seconds)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_allowed: float | None = None

    def wait(self) -> float:
        """Block until the next request is allowed; return seconds slept."""

        if self.delay_seconds <= 0:
            return 0.0

        with self._lock:
            now = self._clock()
            sleep_for = 0.0
            if self._next_allowed is not None and now < self._next_allowed:
                sleep_for = self._next_allowed - now
            self._next_allowed = now + sleep_for + self.delay_seconds

        if sleep_for > 0:
            self._sleep(sleep_for)
        return sleep_for


class HttpFetcher:
    """Fetch pages and binary payloads.

    Each call streams the body and checks a total deadline between chunks, so a
    server that trickles bytes cannot hold the request open past
    `timeout_seconds`. Errors are raised as crawler exceptions and retry policy
    is left to `RetryHandler`.
    """

    def __init__(
        self,
        config: CrawlConfig,
        *,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._session = session or requests.Session()
        self._owns_session = session is None
        self._clock = clock

    def fetch_page(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
        source_id: str | None = None,
    ) -> str:
        """Return decoded HTML for `url`."""

        fetched, encoding = self._get(
            url,
            headers=headers,
            timeout_seconds=timeout_seconds or self.config.timeout_seconds,
            max_bytes=None,
            source_id=source_id,
        )
        charset = resolve_charset(encoding)
        try:
            return fetched.body.decode(charset, errors="replace")
        except LookupError as exc:
            # Codecs such as base64 resolve but are not text encodings.
            raise ParseError(f"Cannot decode {url} as {charset}: {exc}") from exc

    def fetch_bytes(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
        max_bytes: int | None = None,
        source_id: str | None = None,
    ) -> FetchedBytes:
        fetched, _ = self._get(
            url,
            headers=headers,
            timeout_seconds=timeout_seconds or self.config.image_timeout_seconds,
            max_bytes=max_bytes,
            source_id=source_id,
        )
        return fetched

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def __enter__(self) -> "HttpFetcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _get(
        self,
        url: str,
        *,
        headers: dict[str, str] | None,
        timeout_seconds: float,
        max_bytes: int | None,
        source_id: str | None,
    ) -> tuple[FetchedBytes, str | None]:
        merged_headers = self.config.headers_for(source_id)
        if headers:
            merged_headers.update(headers)

        deadline = self._clock() + timeout_seconds
        started = time.perf_counter()

        try:
            response = self._session.get(
                url,
                headers=merged_headers,
                timeout=timeout_seconds,
                allow_redirects=True,
                stream=True,
            )
        except requests.Timeout as exc:
            raise NetworkError(f"Request timed out: {exc}", url=url, timed_out=True) from exc
        except requests.RequestException as exc:
            raise NetworkError(f"Connection error: {exc.__class__.__name__}: {exc}", url=url) from exc

        try:
            if not 200 <= response.status_code < 300:
                raise HttpStatusError(response.status_code, url=url, reason=response.reason)

            declared = response.headers.get("Content-Length")
            if max_bytes is not None and declared and declared.isdigit() and int(declared) > max_bytes:
                raise PayloadTooLargeError(max_bytes, url=url)

            chunks: list[bytes] = []
            total = 0
            for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                if self._clock() > deadline:
                    raise NetworkError(
                        f"Request timed out after {timeout_seconds:.1f}s",
                        url=url,
                        timed_out=True,
                    )
                if not chunk:
                    continue
                total += len(chunk)
                if max_bytes is not None and total > max_bytes:
                    raise PayloadTooLargeError(max_bytes, url=url)
                chunks.append(chunk)
        except requests.RequestException as exc:
            raise NetworkError(f"Connection error while reading body: {exc}", url=url) from exc
        finally:
            response.close()

        LOGGER.debug(
            "Fetched %s (%d bytes, %d ms)",
            url,
            total,
            int((time.perf_counter() - started) * 1000),
        )
        fetched = FetchedBytes(
            body=b"".join(chunks),
            content_type=response.headers.get("Content-Type"),
            final_url=response.url or url,
        )
        # requests assumes ISO-8859-1 for text/* without a charset.
        declared_charset = "charset=" in (fetched.content_type or "").lower()
        return fetched, response.encoding if declared_charset else None


__all__ = ["FetchedBytes", "HttpFetcher", "RateLimiter", "resolve_charset"]
