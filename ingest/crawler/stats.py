"""Thread-safe crawl statistics aggregation utilities."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import threading
from typing import Any

from .types import parse_iso, utc_now_iso


@dataclass(slots=True)
class CrawlStats:
    """Core counters for one crawl run."""

    list_pages_ok: int = 0
    list_pages_error: int = 0
    details_fetched: int = 0
    items_new: int = 0
    items_updated: int = 0
    items_skipped_known: int = 0
    item_errors: int = 0
    images_archived: int = 0
    images_derived: int = 0
    images_skipped: int = 0
    messages_sent: int = 0
    messages_dead_lettered: int = 0
    started_at: str = field(default_factory=utc_now_iso)
    finished_at: str | None = None

    def to_json(self) -> dict[str, Any]:
        return asdict(self)


class StatsCollector:
    """Collect and summarize crawler runtime statistics.

    The collector is thread-safe so `crawl-all` workers can merge into one
    summary.
    """

    def __init__(self, base: CrawlStats | None = None) -> None:
        self._lock = threading.Lock()
        self._core = base or CrawlStats()
        self._list_strategy_counts: dict[str, int] = defaultdict(int)
        self._error_type_counts: dict[str, int] = defaultdict(int)
        self._fetch_elapsed_ms_total = 0
        self._fetch_elapsed_samples = 0

    def record_list_page(self, *, ok: bool, strategy: str | None = None) -> None:
        with self._lock:
            if ok:
                self._core.list_pages_ok += 1
                if strategy:
                    self._list_strategy_counts[strategy] += 1
            else:
                self._core.list_pages_error += 1

    def record_detail(self, elapsed_ms: int | None = None) -> None:
        with self._lock:
            self._core.details_fetched += 1
            if elapsed_ms is not None:
                self._fetch_elapsed_ms_total += int(elapsed_ms)
                self._fetch_elapsed_samples += 1

    def record_item(self, *, created: bool) -> None:
        with self._lock:
            if created:
                self._core.items_new += 1
            else:
                self._core.items_updated += 1

    def record_known(self) -> None:
        with self._lock:
            self._core.items_skipped_known += 1

    def record_error(self, exc: BaseException) -> None:
        with self._lock:
            self._core.item_errors += 1
            self._error_type_counts[exc.__class__.__name__] += 1

    def record_image(self, *, has_original: bool, has_derived: bool) -> None:
        with self._lock:
            if has_original:
                self._core.images_archived += 1
            else:
                self._core.images_skipped += 1
            if has_derived:
                self._core.images_derived += 1

    def record_messages(self, *, sent: int = 0, dead_lettered: int = 0) -> None:
        with self._lock:
            self._core.messages_sent += sent
            self._core.messages_dead_lettered += dead_lettered

    def finish(self) -> None:
        """Mark crawl as finished."""

        with self._lock:
            self._core.finished_at = utc_now_iso()

    def merge(self, other: "StatsCollector") -> None:
        """Merge another collector's counters into this one."""

        payload = other.to_json()
        with self._lock:
            for name in (
                "list_pages_ok",
                "list_pages_error",
                "details_fetched",
                "items_new",
                "items_updated",
                "items_skipped_known",
                "item_errors",
                "images_archived",
                "images_derived",
                "images_skipped",
                "messages_sent",
                "messages_dead_lettered",
            ):
                setattr(self._core, name, getattr(self._core, name) + int(payload.get(name, 0)))

            for key, value in payload.get("list_strategy_counts", {}).items():
                self._list_strategy_counts[str(key)] += int(value)
            for key, value in payload.get("error_type_counts", {}).items():
                self._error_type_counts[str(key)] += int(value)
            self._fetch_elapsed_ms_total += int(payload.get("detail_elapsed_ms_total", 0))
            self._fetch_elapsed_samples += int(payload.get("detail_elapsed_ms_samples", 0))

    def to_json(self) -> dict[str, Any]:
        """Return a JSON-serializable summary payload."""

        with self._lock:
            core = self._core.to_json()

            start = parse_iso(self._core.started_at) or datetime.now(timezone.utc)
            end = parse_iso(self._core.finished_at) or datetime.now(timezone.utc)
            duration_seconds = max(0.0, (end - start).total_seconds())

            return {
                **core,
                "duration_seconds": duration_seconds,
                "list_strategy_counts": dict(self._list_strategy_counts),
                "error_type_counts": dict(self._error_type_counts),
                "detail_elapsed_ms_total": self._fetch_elapsed_ms_total,
                "detail_elapsed_ms_samples": self._fetch_elapsed_samples,
                "detail_elapsed_ms_avg": (
                    self._fetch_elapsed_ms_total / self._fetch_elapsed_samples
                    if self._fetch_elapsed_samples > 0
                    else 0.0
                ),
            }


__all__ = ["CrawlStats", "StatsCollector"]
