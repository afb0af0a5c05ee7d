"""Idempotent record storage for canonical pet items."""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Iterable, Protocol

from .database import Database
from .errors import PersistenceError
from .retry import RetryConfig, RetryHandler
from .types import CanonicalItem, SaveManyResult, UpsertResult, utc_now_iso

LOGGER = logging.getLogger(__name__)


class RecordStore(Protocol):
    def exists(self, item_id: str) -> bool: ...

    def upsert(self, item: CanonicalItem) -> UpsertResult: ...

    def get(self, item_id: str) -> CanonicalItem | None: ...

    def mark_images(self, item_id: str, *, has_original: bool, has_derived: bool) -> None: ...


class SQLiteRecordStore:
    """`pets` table keyed by canonical id; rows are never deleted."""

    def __init__(self, database: Database) -> None:
        self.database = database
        self.database.initialize()

    def exists(self, item_id: str) -> bool:
        try:
            with self.database.connect() as conn:
                row = conn.execute("SELECT 1 FROM pets WHERE id = ?", (item_id,)).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to check pet {item_id}: {exc}") from exc
        return row is not None

    def upsert(self, item: CanonicalItem) -> UpsertResult:
        payload = json.dumps(item.to_json(), ensure_ascii=False)
        now = utc_now_iso()
        try:
            with self.database.connect(immediate=True) as conn:
                existing = conn.execute(
                    "SELECT has_original, has_derived FROM pets WHERE id = ?",
                    (item.id,),
                ).fetchone()
                if existing is None:
                    conn.execute(
                        "INSERT INTO pets (id, type, source_id, payload, has_original, has_derived, "
                        "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            item.id,
                            item.type.value,
                            item.source_id,
                            payload,
                            int(item.has_original),
                            int(item.has_derived),
                            now,
                            now,
                        ),
                    )
                    return UpsertResult(created=True)

                # Image flags are owned by the archiver; a re-crawl must not clear them.
                conn.execute(
                    "UPDATE pets SET type = ?, source_id = ?, payload = ?, updated_at = ? WHERE id = ?",
                    (item.type.value, item.source_id, payload, now, item.id),
                )
                return UpsertResult(created=False)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to upsert pet {item.id}: {exc}") from exc

    def get(self, item_id: str) -> CanonicalItem | None:
        try:
            with self.database.connect() as conn:
                row = conn.execute(
                    "SELECT payload, has_original, has_derived FROM pets WHERE id = ?",
                    (item_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to read pet {item_id}: {exc}") from exc

        if row is None:
            return None
        item = CanonicalItem.from_json(json.loads(row["payload"]))
        item.has_original = bool(row["has_original"])
        item.has_derived = bool(row["has_derived"])
        return item

    def timestamps(self, item_id: str) -> tuple[str, str] | None:
        """Return `(created_at, updated_at)` for one record."""

        try:
            with self.database.connect() as conn:
                row = conn.execute(
                    "SELECT created_at, updated_at FROM pets WHERE id = ?",
                    (item_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to read pet {item_id}: {exc}") from exc
        return None if row is None else (row["created_at"], row["updated_at"])

    def count(self) -> int:
        try:
            with self.database.connect() as conn:
                return int(conn.execute("SELECT COUNT(*) FROM pets").fetchone()[0])
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to count pets: {exc}") from exc

    def mark_images(self, item_id: str, *, has_original: bool, has_derived: bool) -> None:
        try:
            with self.database.connect() as conn:
                conn.execute(
                    "UPDATE pets SET has_original = ?, has_derived = ?, updated_at = ? WHERE id = ?",
                    (int(has_original), int(has_derived), utc_now_iso(), item_id),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to update image flags for {item_id}: {exc}") from exc


class Persistence:
    """Retrying facade over a `RecordStore` with a partial-failure batch entry point."""

    def __init__(self, store: RecordStore, retry: RetryHandler, retry_config: RetryConfig) -> None:
        self.store = store
        self.retry = retry
        self.retry_config = retry_config

    def exists(self, item_id: str) -> bool:
        return self.retry.execute(lambda: self.store.exists(item_id), self.retry_config, label=f"exists {item_id}")

    def upsert(self, item: CanonicalItem) -> UpsertResult:
        return self.retry.execute(lambda: self.store.upsert(item), self.retry_config, label=f"upsert {item.id}")

    def mark_images(self, item_id: str, *, has_original: bool, has_derived: bool) -> None:
        self.retry.execute(
            lambda: self.store.mark_images(item_id, has_original=has_original, has_derived=has_derived),
            self.retry_config,
            label=f"mark_images {item_id}",
        )

    def save_many(self, items: Iterable[CanonicalItem]) -> SaveManyResult:
        result = SaveManyResult()
        for item in items:
            try:
                outcome = self.upsert(item)
            except Exception as exc:
                LOGGER.error("Failed to save pet %s: %s", item.id, exc)
                result.errors.append(f"Failed to save pet {item.id}: {exc}")
                continue

            if outcome.created:
                result.new_count += 1
            else:
                result.updated_count += 1
        return result


__all__ = ["Persistence", "RecordStore", "SQLiteRecordStore"]
