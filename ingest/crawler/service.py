"""Trigger/status operations over the crawl engine.

CrawlService wires stores, queues, and adapters from one `CrawlConfig` and
serializes same-key runs through the checkpoint lock.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Mapping

from .checkpoint import CheckpointStore
from .config import CrawlConfig, SourceConfig
from .constants import (
    CONVERSION_DLQ_NAME,
    CONVERSION_QUEUE_NAME,
    DEFAULT_BLOB_SUBDIR,
    DEFAULT_CRAWL_LIMIT,
    DEFAULT_QUEUE_SUBDIR,
    MAX_CRAWL_LIMIT,
    SCREENSHOT_DLQ_NAME,
    SCREENSHOT_QUEUE_NAME,
)
from .database import Database
from .errors import CrawlInProgressError, InvalidRequestError
from .fetcher import HttpFetcher, RateLimiter
from .images import ImageArchiver
from .orchestrator import CrawlOrchestrator
from .persistence import Persistence, SQLiteRecordStore
from .queues import JsonlQueue, QueueDispatcher
from .retry import RetryHandler, http_retry_config, storage_retry_config
from .sources import SOURCE_FACTORIES, SourceFactory
from .stats import StatsCollector
from .storage import FileBlobStore
from .types import JSONDict, PetType, utc_now_iso

LOGGER = logging.getLogger(__name__)

FetcherFactory = Callable[[CrawlConfig], HttpFetcher]


def _default_fetcher_factory(config: CrawlConfig) -> HttpFetcher:
    return HttpFetcher(config)


def validate_limit(limit: Any) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_CRAWL_LIMIT:
        raise InvalidRequestError(f"limit must be an integer in 1..{MAX_CRAWL_LIMIT}, got {limit!r}")
    return limit


class CrawlService:
    def __init__(
        self,
        config: CrawlConfig,
        *,
        fetcher_factory: FetcherFactory = _default_fetcher_factory,
        source_factories: Mapping[str, SourceFactory] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._fetcher_factory = fetcher_factory
        self._source_factories = dict(source_factories or SOURCE_FACTORIES)
        self._sleep = sleep

        data_dir = Path(config.data_dir)
        self.database = Database(config.database_path)
        self.checkpoints = CheckpointStore(self.database)
        self.records = SQLiteRecordStore(self.database)
        self.blobs = FileBlobStore(data_dir / DEFAULT_BLOB_SUBDIR)

        queue_dir = data_dir / DEFAULT_QUEUE_SUBDIR
        self.queues: dict[str, JsonlQueue] = {
            name: JsonlQueue(queue_dir / f"{name}.jsonl", name=name)
            for name in (
                SCREENSHOT_QUEUE_NAME,
                SCREENSHOT_DLQ_NAME,
                CONVERSION_QUEUE_NAME,
                CONVERSION_DLQ_NAME,
            )
        }

        self.retry = RetryHandler(sleep=sleep)
        self.stats = StatsCollector()

    def validate(self, source: str, pet_type: str, limit: Any = DEFAULT_CRAWL_LIMIT) -> tuple[SourceConfig, PetType]:
        source_cfg = self.config.get_source(str(source or ""))
        if source_cfg is None or source_cfg.source_id not in self._source_factories:
            raise InvalidRequestError(f"Unknown source: {source!r}")

        try:
            item_type = PetType(str(pet_type or "").strip().lower())
        except ValueError as exc:
            raise InvalidRequestError(f"Unknown pet type: {pet_type!r}") from exc
        if item_type not in source_cfg.pet_types:
            raise InvalidRequestError(f"Source '{source_cfg.source_id}' does not list {item_type.value}")

        validate_limit(limit)
        return source_cfg, item_type

    def build_orchestrator(
        self,
        source_cfg: SourceConfig,
        fetcher: HttpFetcher,
        *,
        stats: StatsCollector | None = None,
    ) -> CrawlOrchestrator:
        storage_retry = storage_retry_config(self.config)
        adapter = self._source_factories[source_cfg.source_id](source_cfg, fetcher, self.config)
        persistence = Persistence(self.records, self.retry, storage_retry)
        archiver = ImageArchiver(
            fetcher,
            self.blobs,
            persistence,
            self.retry,
            http_retry_config(self.config),
            max_bytes=self.config.max_image_bytes,
            timeout_seconds=self.config.image_timeout_seconds,
        )

        def dispatcher(queue_name: str, dlq_name: str) -> QueueDispatcher:
            return QueueDispatcher(
                self.queues[queue_name],
                self.queues[dlq_name],
                self.retry,
                storage_retry,
                source_id=source_cfg.source_id,
                max_redeliveries=self.config.max_redeliveries,
            )

        return CrawlOrchestrator(
            adapter,
            config=self.config,
            persistence=persistence,
            checkpoints=self.checkpoints,
            archiver=archiver,
            screenshot_dispatcher=dispatcher(SCREENSHOT_QUEUE_NAME, SCREENSHOT_DLQ_NAME),
            conversion_dispatcher=dispatcher(CONVERSION_QUEUE_NAME, CONVERSION_DLQ_NAME),
            retry=self.retry,
            rate_limiter=RateLimiter(self.config.request_delay_for(source_cfg.source_id), sleep=self._sleep),
            stats=stats,
        )

    def trigger(
        self,
        source: str,
        pet_type: str,
        limit: Any = DEFAULT_CRAWL_LIMIT,
        differential: bool = True,
    ) -> JSONDict:
        """Run one crawl and return `{source, petType, result, timestamp}`.

        Raises `InvalidRequestError` for bad input and `CrawlInProgressError`
        when the same key is already running.
        """

        source_cfg, item_type = self.validate(source, pet_type, limit)
        run_stats = StatsCollector()

        with self.checkpoints.lock(source_cfg.source_id, item_type):
            fetcher = self._fetcher_factory(self.config)
            try:
                orchestrator = self.build_orchestrator(source_cfg, fetcher, stats=run_stats)
                result = orchestrator.crawl(item_type, limit=limit, differential=differential)
            finally:
                fetcher.close()

        self.stats.merge(run_stats)
        return {
            "source": source_cfg.source_id,
            "petType": item_type.value,
            "result": result.to_json(),
            "timestamp": utc_now_iso(),
        }

    def trigger_all(self, *, limit: int = DEFAULT_CRAWL_LIMIT, differential: bool = True) -> list[JSONDict]:
        """Crawl every enabled (source, type) pair, one thread per pair."""

        validate_limit(limit)
        pairs = [
            (source_cfg.source_id, item_type.value)
            for source_cfg in self.config.sources
            if source_cfg.enabled and source_cfg.source_id in self._source_factories
            for item_type in source_cfg.pet_types
        ]
        outcomes: dict[tuple[str, str], JSONDict] = {}
        lock = threading.Lock()

        def run(source_id: str, pet_type: str) -> None:
            try:
                payload = self.trigger(source_id, pet_type, limit, differential)
            except CrawlInProgressError as exc:
                LOGGER.warning("%s", exc)
                payload = {"source": source_id, "petType": pet_type, "error": str(exc), "timestamp": utc_now_iso()}
            except Exception as exc:
                LOGGER.exception("Crawl %s/%s failed", source_id, pet_type)
                payload = {"source": source_id, "petType": pet_type, "error": str(exc), "timestamp": utc_now_iso()}
            with lock:
                outcomes[(source_id, pet_type)] = payload

        workers = [
            threading.Thread(target=run, args=pair, name=f"crawl-{pair[0]}-{pair[1]}", daemon=True)
            for pair in pairs
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        return [outcomes[pair] for pair in pairs if pair in outcomes]

    def status(self, source: str | None = None, pet_type: str | None = None) -> list[JSONDict]:
        if pet_type:
            try:
                pet_type = PetType(str(pet_type).strip().lower()).value
            except ValueError as exc:
                raise InvalidRequestError(f"Unknown pet type: {pet_type!r}") from exc

        rows: list[JSONDict] = []
        for checkpoint in self.checkpoints.list(source or None, pet_type or None):
            rows.append(
                {
                    "source_id": checkpoint.source_id,
                    "pet_type": checkpoint.item_type.value,
                    "checkpoint": checkpoint.to_json(),
                    "total_processed": checkpoint.total_processed,
                    "updated_at": checkpoint.updated_at,
                }
            )
        return rows


__all__ = ["CrawlService", "FetcherFactory", "validate_limit"]
