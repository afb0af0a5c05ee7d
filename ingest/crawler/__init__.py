"""Crawler package: config, shared types, and differential crawl components."""

from .checkpoint import CheckpointStore
from .config import CrawlConfig, SourceConfig, apply_env_overrides, load_config, save_config
from .database import Database
from .errors import (
    CrawlerError,
    CrawlInProgressError,
    HttpStatusError,
    InvalidRequestError,
    NetworkError,
    ParseError,
    PayloadTooLargeError,
    PersistenceError,
    QueueError,
    ValidationError,
)
from .fetcher import FetchedBytes, HttpFetcher, RateLimiter
from .images import ImageArchiver
from .normalizer import Normalizer
from .orchestrator import CrawlOrchestrator
from .parsers import HtmlParser, HtmlParserConfig
from .persistence import Persistence, SQLiteRecordStore
from .queues import JsonlQueue, QueueDispatcher
from .retry import RetryConfig, RetryHandler
from .service import CrawlService
from .sources import PetHomeAdapter, SourceAdapter
from .stats import CrawlStats, StatsCollector
from .storage import FileBlobStore, atomic_write_json
from .types import (
    CanonicalItem,
    Checkpoint,
    CrawlResult,
    CrawlState,
    DetailFields,
    Gender,
    ListItem,
    PetType,
    QueueMessage,
    QueueProgress,
    utc_now_iso,
)

__all__ = [
    "CanonicalItem",
    "Checkpoint",
    "CheckpointStore",
    "CrawlConfig",
    "CrawlInProgressError",
    "CrawlOrchestrator",
    "CrawlResult",
    "CrawlService",
    "CrawlState",
    "CrawlStats",
    "CrawlerError",
    "Database",
    "DetailFields",
    "FetchedBytes",
    "FileBlobStore",
    "Gender",
    "HtmlParser",
    "HtmlParserConfig",
    "HttpFetcher",
    "HttpStatusError",
    "ImageArchiver",
    "InvalidRequestError",
    "JsonlQueue",
    "ListItem",
    "NetworkError",
    "Normalizer",
    "ParseError",
    "PayloadTooLargeError",
    "Persistence",
    "PersistenceError",
    "PetHomeAdapter",
    "PetType",
    "QueueDispatcher",
    "QueueError",
    "QueueMessage",
    "QueueProgress",
    "RateLimiter",
    "RetryConfig",
    "RetryHandler",
    "SQLiteRecordStore",
    "SourceAdapter",
    "SourceConfig",
    "StatsCollector",
    "ValidationError",
    "apply_env_overrides",
    "atomic_write_json",
    "load_config",
    "save_config",
    "utc_now_iso",
]
