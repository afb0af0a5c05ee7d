"""Differential crawl orchestration for one (source, item type) pair."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, TypeVar

from .checkpoint import CheckpointStore
from .config import CrawlConfig
from .constants import DEFAULT_CRAWL_LIMIT
from .errors import CrawlerError, QueueError
from .fetcher import RateLimiter
from .images import ImageArchiver
from .persistence import Persistence
from .queues import QueueDispatcher
from .retry import RetryHandler, http_retry_config, storage_retry_config
from .sources import SourceAdapter
from .stats import StatsCollector
from .types import (
    CanonicalItem,
    Checkpoint,
    CrawlResult,
    CrawlState,
    ListItem,
    PetType,
    QueueProgress,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def make_batch_id(item_type: PetType, now: datetime) -> str:
    return f"batch-{int(now.timestamp() * 1000)}-{item_type.value}"


class CrawlOrchestrator:
    """Drive one crawl run through the state machine and return a `CrawlResult`.

    States: INIT, LOAD_CHECKPOINT, then FETCH_LIST_PAGE and per item
    FETCH_DETAIL, NORMALIZE, PERSIST, ARCHIVE_IMAGE, ACCUMULATE; finally
    DISPATCH_PENDING, SAVE_CHECKPOINT, DONE. A failing item moves to ERROR and
    the loop continues with the next one.

    Callers serialize runs for the same key with `CheckpointStore.lock`.
    """

    def __init__(
        self,
        source: SourceAdapter,
        *,
        config: CrawlConfig,
        persistence: Persistence,
        checkpoints: CheckpointStore,
        archiver: ImageArchiver,
        screenshot_dispatcher: QueueDispatcher,
        conversion_dispatcher: QueueDispatcher,
        retry: RetryHandler,
        rate_limiter: RateLimiter,
        stats: StatsCollector | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.source = source
        self.config = config
        self.persistence = persistence
        self.checkpoints = checkpoints
        self.archiver = archiver
        self.screenshot_dispatcher = screenshot_dispatcher
        self.conversion_dispatcher = conversion_dispatcher
        self.retry = retry
        self.rate_limiter = rate_limiter
        self.stats = stats or StatsCollector()
        self._now = now

        self._http_retry = http_retry_config(config)
        self._storage_retry = storage_retry_config(config)

        self.state = CrawlState.INIT
        self.batch_id: str | None = None

    def crawl(
        self,
        item_type: PetType | str,
        *,
        limit: int = DEFAULT_CRAWL_LIMIT,
        differential: bool = True,
    ) -> CrawlResult:
        item_type = PetType(item_type)
        result = CrawlResult()

        self._enter(CrawlState.INIT)
        self.batch_id = make_batch_id(item_type, self._now())
        LOGGER.info(
            "Starting %s crawl %s/%s (limit=%d, batch=%s)",
            "differential" if differential else "full-scan",
            self.source.source_id,
            item_type.value,
            limit,
            self.batch_id,
        )

        self._enter(CrawlState.LOAD_CHECKPOINT)
        try:
            existing = self._storage(
                lambda: self.checkpoints.get(self.source.source_id, item_type),
                "load checkpoint",
            )
        except Exception as exc:
            LOGGER.error("Cannot load checkpoint for %s/%s: %s", self.source.source_id, item_type.value, exc)
            result.errors.append(f"Failed to load checkpoint: {exc}")
            self._enter(CrawlState.ERROR)
            self.stats.finish()
            return result

        known = existing if differential else None
        processed: list[ListItem] = []
        items: list[CanonicalItem] = []

        self._scan(item_type, limit, known, processed, items, result)

        base = existing or Checkpoint(source_id=self.source.source_id, item_type=item_type)
        screenshot, conversion = self._dispatch(item_type, base, items, result)

        self._enter(CrawlState.SAVE_CHECKPOINT)
        if processed or existing is not None:
            self._save_checkpoint(base, processed, items, screenshot, conversion, result)

        self._enter(CrawlState.DONE)
        self.stats.finish()
        LOGGER.info(
            "Finished crawl %s/%s: total=%d new=%d updated=%d errors=%d",
            self.source.source_id,
            item_type.value,
            result.total_items,
            result.new_items,
            result.updated_items,
            len(result.errors),
        )
        return result

    def _scan(
        self,
        item_type: PetType,
        limit: int,
        known: Checkpoint | None,
        processed: list[ListItem],
        items: list[CanonicalItem],
        result: CrawlResult,
    ) -> None:
        attempted = 0
        known_streak = 0
        list_failures = 0
        # Listings shift while a run pages through them.
        seen: set[str] = set()
        max_pages = self.config.max_pages_for(self.source.source_id)

        for page in range(1, max_pages + 1):
            if attempted >= limit:
                return

            self._enter(CrawlState.FETCH_LIST_PAGE)
            self.rate_limiter.wait()
            try:
                html = self._http(
                    lambda: self.source.fetch_list_page(item_type, page),
                    f"list page {page}",
                )
                list_items = self.source.parse_list_page(html)
            except CrawlerError as exc:
                list_failures += 1
                self.stats.record_list_page(ok=False)
                LOGGER.warning("Skipping list page %d for %s: %s", page, item_type.value, exc)
                if list_failures >= self.config.list_failure_threshold:
                    result.errors.append(
                        f"Aborted after {list_failures} consecutive list page failures: {exc}"
                    )
                    return
                continue

            list_failures = 0
            if not list_items:
                LOGGER.info("List page %d is empty; ending scan", page)
                return
            self.stats.record_list_page(ok=True, strategy=list_items[0].strategy)

            for list_item in list_items:
                if attempted >= limit:
                    return

                try:
                    item_id = self.source.canonical_id(list_item.native_id)
                except CrawlerError as exc:
                    self._record_item_error(list_item.native_id, exc, result)
                    continue

                if item_id in seen:
                    LOGGER.debug("Skipping %s; already handled this run", item_id)
                    continue
                seen.add(item_id)

                if known is not None and known.is_known(item_id):
                    known_streak += 1
                    self.stats.record_known()
                    if known_streak >= self.config.known_streak_threshold:
                        LOGGER.info(
                            "Reached %d consecutive known items at %s; stopping scan",
                            known_streak,
                            item_id,
                        )
                        return
                    continue

                known_streak = 0
                attempted += 1
                item = self._process_item(list_item, item_id, item_type, result)
                if item is not None:
                    processed.append(list_item)
                    items.append(item)

    def _process_item(
        self,
        list_item: ListItem,
        item_id: str,
        item_type: PetType,
        result: CrawlResult,
    ) -> CanonicalItem | None:
        try:
            self._enter(CrawlState.FETCH_DETAIL)
            self.rate_limiter.wait()
            started = time.perf_counter()
            html = self._http(lambda: self.source.fetch_detail_page(list_item), f"detail {item_id}")
            self.stats.record_detail(int((time.perf_counter() - started) * 1000))

            self._enter(CrawlState.NORMALIZE)
            detail = self.source.parse_detail_page(html)
            item = self.source.normalize(list_item, detail, item_type)

            self._enter(CrawlState.PERSIST)
            upsert = self.persistence.upsert(item)
        except Exception as exc:
            self._record_item_error(item_id, exc, result)
            return None

        self._enter(CrawlState.ARCHIVE_IMAGE)
        try:
            if item.image_url:
                self.rate_limiter.wait()
            archive = self.archiver.archive(item)
            self.stats.record_image(has_original=archive.has_original, has_derived=archive.has_derived)
        except Exception as exc:
            # The record is stored; only the image step failed.
            self._record_item_error(item_id, exc, result)

        self._enter(CrawlState.ACCUMULATE)
        result.total_items += 1
        if upsert.created:
            result.new_items += 1
            result.new_item_ids.append(item.id)
        else:
            result.updated_items += 1
        self.stats.record_item(created=upsert.created)
        return item

    def _dispatch(
        self,
        item_type: PetType,
        base: Checkpoint,
        items: list[CanonicalItem],
        result: CrawlResult,
    ) -> tuple[QueueProgress, QueueProgress]:
        self._enter(CrawlState.DISPATCH_PENDING)
        screenshot = base.screenshot_queue.with_pending(
            [item.id for item in items if not item.has_original]
        )
        conversion = base.conversion_queue.with_pending(
            [item.id for item in items if item.has_original and not item.has_derived]
        )

        return (
            self._send(self.screenshot_dispatcher, item_type, screenshot, result),
            self._send(self.conversion_dispatcher, item_type, conversion, result),
        )

    def _send(
        self,
        dispatcher: QueueDispatcher,
        item_type: PetType,
        progress: QueueProgress,
        result: CrawlResult,
    ) -> QueueProgress:
        if not progress.pending:
            return progress
        try:
            sent = dispatcher.enqueue_pending(
                self.batch_id or make_batch_id(item_type, self._now()),
                item_type,
                progress.pending,
                expected_total=len(progress.pending),
            )
        except QueueError as exc:
            LOGGER.error("Queue dispatch to %s failed: %s", dispatcher.queue.name, exc)
            result.errors.append(f"Failed to dispatch to {dispatcher.queue.name}: {exc}")
            self.stats.record_messages(dead_lettered=len(progress.pending))
            return progress

        self.stats.record_messages(sent=sent)
        return progress.mark_sent(sent)

    def _save_checkpoint(
        self,
        base: Checkpoint,
        processed: list[ListItem],
        items: list[CanonicalItem],
        screenshot: QueueProgress,
        conversion: QueueProgress,
        result: CrawlResult,
    ) -> None:
        checkpoint = base.advance(
            processed_ids=[item.id for item in items],
            recent_window=self.config.recent_window,
            now=self._now(),
            batch_id=self.batch_id,
            metadata=self.source.checkpoint_metadata(processed, base.metadata),
            errors=result.errors[-self.config.recent_window :],
        )
        # Queue progress and the new position land in one write.
        checkpoint = replace(checkpoint, screenshot_queue=screenshot, conversion_queue=conversion)

        try:
            self._storage(lambda: self.checkpoints.put(checkpoint), "save checkpoint")
        except Exception as exc:
            LOGGER.error("Failed to save checkpoint: %s", exc)
            result.errors.append(f"Failed to save checkpoint: {exc}")

    def _record_item_error(self, item_id: str, exc: Exception, result: CrawlResult) -> None:
        self._enter(CrawlState.ERROR)
        LOGGER.error("Failed to process pet %s: %s", item_id, exc)
        result.errors.append(f"Failed to process pet {item_id}: {exc}")
        self.stats.record_error(exc)

    def _enter(self, state: CrawlState) -> None:
        self.state = state
        LOGGER.debug("state=%s", state.value)

    def _http(self, operation: Callable[[], T], label: str) -> T:
        return self.retry.execute(operation, self._http_retry, label=label)

    def _storage(self, operation: Callable[[], T], label: str) -> T:
        return self.retry.execute(operation, self._storage_retry, label=label)


__all__ = ["CrawlOrchestrator", "make_batch_id"]
