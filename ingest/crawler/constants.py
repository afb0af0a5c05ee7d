"""Default values shared by crawler config, fetcher, and stores."""

from __future__ import annotations

DEFAULT_DATA_DIR = "data/crawler_state"
DEFAULT_DATABASE_NAME = "crawler.sqlite3"
DEFAULT_BLOB_SUBDIR = "images"
DEFAULT_QUEUE_SUBDIR = "queues"

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; PawMatchCrawler/1.0; +https://pawmatch.jp/bot)"
DEFAULT_HTTP_HEADERS: dict[str, str] = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "ja,en-US;q=0.7,en;q=0.3",
}

DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_IMAGE_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_IMAGE_BYTES = 10 * 1024 * 1024
DEFAULT_REQUEST_DELAY_SECONDS = 1.0

DEFAULT_MAX_PAGES = 10
DEFAULT_CRAWL_LIMIT = 10
MAX_CRAWL_LIMIT = 100

DEFAULT_HTTP_RETRY_ATTEMPTS = 3
DEFAULT_HTTP_RETRY_DELAY_SECONDS = 2.0
DEFAULT_STORAGE_RETRY_ATTEMPTS = 2
DEFAULT_STORAGE_RETRY_DELAY_SECONDS = 0.5
DEFAULT_BACKOFF_MULTIPLIER = 2.0

DEFAULT_KNOWN_STREAK_THRESHOLD = 3
DEFAULT_LIST_FAILURE_THRESHOLD = 3
DEFAULT_RECENT_WINDOW = 20
DEFAULT_MAX_REDELIVERIES = 3
DEFAULT_LOCK_TTL_SECONDS = 3600.0
SQLITE_TIMEOUT_SECONDS = 30.0

DEFAULT_PREFECTURE = "東京都"
UNKNOWN = "unknown"

SCREENSHOT_QUEUE_NAME = "screenshot"
SCREENSHOT_DLQ_NAME = "screenshot-dlq"
CONVERSION_QUEUE_NAME = "conversion"
CONVERSION_DLQ_NAME = "conversion-dlq"

CHECKPOINT_SCHEMA_VERSION = 1
JSON_INDENT = 2
SUPPORTED_CONFIG_SUFFIXES = (".json", ".yaml", ".yml")

HTTP_RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})
