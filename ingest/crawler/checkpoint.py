"""Durable per-(source, item type) crawl checkpoints and run locks."""

from __future__ import annotations

import json
import logging
import os
import socket
import sqlite3
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator

from .constants import DEFAULT_LOCK_TTL_SECONDS
from .database import Database
from .errors import CrawlInProgressError, PersistenceError
from .types import Checkpoint, PetType, utc_now_iso

LOGGER = logging.getLogger(__name__)


def _lock_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class CheckpointStore:
    """Checkpoint rows in `crawler_states`, run locks in `crawl_locks`.

    `put` is a single upsert statement, so the checkpoint blob and
    `total_processed` change together or not at all. `total_processed` is
    clamped with `MAX` so it never moves backwards.
    """

    def __init__(
        self,
        database: Database,
        *,
        lock_ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.database = database
        self.lock_ttl_seconds = lock_ttl_seconds
        self._clock = clock
        self.database.initialize()

    def get(self, source_id: str, item_type: PetType | str) -> Checkpoint | None:
        pet_type = PetType(item_type)
        try:
            with self.database.connect() as conn:
                row = conn.execute(
                    "SELECT checkpoint, total_processed, updated_at FROM crawler_states "
                    "WHERE source_id = ? AND pet_type = ?",
                    (source_id, pet_type.value),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to read checkpoint {source_id}/{pet_type.value}: {exc}") from exc

        if row is None:
            return None
        return self._decode(source_id, pet_type.value, row)

    def put(self, checkpoint: Checkpoint) -> None:
        payload = json.dumps(checkpoint.to_json(), ensure_ascii=False)
        updated_at = utc_now_iso()
        try:
            with self.database.connect(immediate=True) as conn:
                conn.execute(
                    """
                    INSERT INTO crawler_states (source_id, pet_type, checkpoint, total_processed, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (source_id, pet_type) DO UPDATE SET
                        checkpoint = excluded.checkpoint,
                        total_processed = MAX(crawler_states.total_processed, excluded.total_processed),
                        updated_at = excluded.updated_at
                    """,
                    (
                        checkpoint.source_id,
                        checkpoint.item_type.value,
                        payload,
                        checkpoint.total_processed,
                        updated_at,
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(
                f"Failed to write checkpoint {checkpoint.source_id}/{checkpoint.item_type.value}: {exc}"
            ) from exc

        LOGGER.debug(
            "Saved checkpoint %s/%s last_item_id=%s total=%d",
            checkpoint.source_id,
            checkpoint.item_type.value,
            checkpoint.last_item_id,
            checkpoint.total_processed,
        )

    @contextmanager
    def lock(self, source_id: str, item_type: PetType | str) -> Iterator[str]:
        """Hold the single-writer lock for one key; yields the owner token."""

        pet_type = PetType(item_type)
        owner = _lock_owner()
        now = self._clock()
        try:
            with self.database.connect(immediate=True) as conn:
                conn.execute(
                    "DELETE FROM crawl_locks WHERE source_id = ? AND pet_type = ? AND acquired_at < ?",
                    (source_id, pet_type.value, now - self.lock_ttl_seconds),
                )
                conn.execute(
                    "INSERT INTO crawl_locks (source_id, pet_type, owner, acquired_at) VALUES (?, ?, ?, ?)",
                    (source_id, pet_type.value, owner, now),
                )
        except sqlite3.IntegrityError as exc:
            raise CrawlInProgressError(
                f"Crawl already in progress for {source_id}/{pet_type.value}"
            ) from exc
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to acquire lock {source_id}/{pet_type.value}: {exc}") from exc

        try:
            yield owner
        finally:
            try:
                with self.database.connect() as conn:
                    conn.execute(
                        "DELETE FROM crawl_locks WHERE source_id = ? AND pet_type = ? AND owner = ?",
                        (source_id, pet_type.value, owner),
                    )
            except sqlite3.Error as exc:
                LOGGER.error("Failed to release lock %s/%s: %s", source_id, pet_type.value, exc)

    def list(self, source_id: str | None = None, item_type: PetType | str | None = None) -> list[Checkpoint]:
        clauses: list[str] = []
        params: list[str] = []
        if source_id:
            clauses.append("source_id = ?")
            params.append(source_id)
        if item_type:
            clauses.append("pet_type = ?")
            params.append(PetType(item_type).value)

        query = "SELECT source_id, pet_type, checkpoint, total_processed, updated_at FROM crawler_states"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY source_id, pet_type"

        try:
            with self.database.connect() as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to list checkpoints: {exc}") from exc

        return [self._decode(row["source_id"], row["pet_type"], row) for row in rows]

    @staticmethod
    def _decode(source_id: str, pet_type: str, row: sqlite3.Row) -> Checkpoint:
        try:
            payload = json.loads(row["checkpoint"])
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Corrupt checkpoint JSON for {source_id}/{pet_type}: {exc}") from exc
        if not isinstance(payload, dict):
            raise PersistenceError(f"Checkpoint for {source_id}/{pet_type} is not an object")

        return Checkpoint.from_json(
            payload,
            source_id=source_id,
            item_type=pet_type,
            total_processed=int(row["total_processed"] or 0),
            updated_at=row["updated_at"],
        )


__all__ = ["CheckpointStore"]
