"""SQLite connection handling and schema for records, checkpoints, and locks."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .constants import SQLITE_TIMEOUT_SECONDS
from .errors import PersistenceError

LOGGER = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS pets (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    source_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    has_original INTEGER NOT NULL DEFAULT 0,
    has_derived INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_pets_source_type ON pets (source_id, type);

CREATE TABLE IF NOT EXISTS crawler_states (
    source_id TEXT NOT NULL,
    pet_type TEXT NOT NULL,
    checkpoint TEXT NOT NULL,
    total_processed INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (source_id, pet_type)
);

CREATE TABLE IF NOT EXISTS crawl_locks (
    source_id TEXT NOT NULL,
    pet_type TEXT NOT NULL,
    owner TEXT NOT NULL,
    acquired_at REAL NOT NULL,
    PRIMARY KEY (source_id, pet_type)
);
"""


class Database:
    """Thin wrapper over one SQLite file.

    Each `connect()` opens a fresh connection, commits on success, and rolls
    back on error, so callers get one transaction per `with` block.
    """

    def __init__(self, path: str | Path, *, timeout_seconds: float = SQLITE_TIMEOUT_SECONDS) -> None:
        self.path = Path(path)
        self.timeout_seconds = timeout_seconds
        self._init_lock = threading.Lock()
        self._initialized = False

    def initialize(self) -> None:
        with self._init_lock:
            if self._initialized:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.connect() as conn:
                conn.executescript(SCHEMA)
            self._initialized = True
            LOGGER.debug("Initialized SQLite schema at %s", self.path)

    @contextmanager
    def connect(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.path, timeout=self.timeout_seconds)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open database {self.path}: {exc}") from exc

        conn.row_factory = sqlite3.Row
        try:
            if immediate:
                # Take the write lock up front so read-then-write is atomic.
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


__all__ = ["Database", "SCHEMA"]
