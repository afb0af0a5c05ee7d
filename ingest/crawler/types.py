"""Core type definitions for the crawl engine.

This module is intentionally dependency-light so other crawler modules can import
shared records without introducing cycles.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping

from .constants import CHECKPOINT_SCHEMA_VERSION, UNKNOWN


class PetType(str, Enum):
    """Item types a source can list."""

    DOG = "dog"
    CAT = "cat"

    @property
    def plural(self) -> str:
        return f"{self.value}s"

    @property
    def mixed_breed_label(self) -> str:
        return "雑種犬" if self is PetType.DOG else "雑種猫"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    UNKNOWN = "unknown"


class CrawlState(str, Enum):
    """Orchestrator states, in the order a healthy run visits them."""

    INIT = "init"
    LOAD_CHECKPOINT = "load_checkpoint"
    FETCH_LIST_PAGE = "fetch_list_page"
    FETCH_DETAIL = "fetch_detail"
    NORMALIZE = "normalize"
    PERSIST = "persist"
    ARCHIVE_IMAGE = "archive_image"
    ACCUMULATE = "accumulate"
    DISPATCH_PENDING = "dispatch_pending"
    SAVE_CHECKPOINT = "save_checkpoint"
    DONE = "done"
    ERROR = "error"


JSONPrimitive = str | int | float | bool | None
JSONValue = JSONPrimitive | list["JSONValue"] | dict[str, "JSONValue"]
JSONDict = dict[str, JSONValue]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Return an RFC3339-like UTC timestamp with microsecond precision."""

    return utc_now().isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_known(value: str | None) -> bool:
    """True when an extracted value is present and not the unknown sentinel."""

    return bool(value) and value != UNKNOWN


@dataclass(frozen=True, slots=True)
class ListItem:
    """One candidate found on a listing page."""

    native_id: str
    detail_url: str
    title: str | None = None
    strategy: str | None = None


@dataclass(slots=True)
class DetailFields:
    """Raw values extracted from a detail page; missing values are `UNKNOWN`."""

    name: str = UNKNOWN
    breed: str = UNKNOWN
    age: str = UNKNOWN
    gender: Gender = Gender.UNKNOWN
    location: str = UNKNOWN
    prefecture: str = UNKNOWN
    city: str = UNKNOWN
    description: str = UNKNOWN
    image_url: str = UNKNOWN
    adoption_fee: int | None = None
    vaccination: str = UNKNOWN
    neutering: str = UNKNOWN


@dataclass(frozen=True, slots=True)
class Provenance:
    """Where a canonical item came from. `crawled_at` is excluded from equality."""

    original_id: str
    source: str
    crawled_at: str = field(default_factory=utc_now_iso, compare=False)

    def to_json(self) -> JSONDict:
        return {
            "originalId": self.original_id,
            "crawledAt": self.crawled_at,
            "source": self.source,
        }

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "Provenance":
        return cls(
            original_id=str(payload.get("originalId") or ""),
            source=str(payload.get("source") or ""),
            crawled_at=str(payload.get("crawledAt") or ""),
        )


@dataclass(slots=True)
class CanonicalItem:
    """Normalized, source-agnostic pet record."""

    id: str
    type: PetType
    name: str
    source_id: str
    provenance: Provenance
    breed: str | None = None
    age: str | None = None
    gender: Gender = Gender.UNKNOWN
    prefecture: str | None = None
    city: str | None = None
    location: str | None = None
    description: str | None = None
    personality: list[str] = field(default_factory=list)
    image_url: str | None = None
    source_url: str | None = None
    adoption_fee: int = 0
    is_vaccinated: bool = False
    is_neutered: bool = False
    has_original: bool = False
    has_derived: bool = False

    def to_json(self) -> JSONDict:
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "breed": self.breed,
            "age": self.age,
            "gender": self.gender.value,
            "prefecture": self.prefecture,
            "city": self.city,
            "location": self.location,
            "description": self.description,
            "personality": list(self.personality),
            "image_url": self.image_url,
            "source_url": self.source_url,
            "source_id": self.source_id,
            "adoption_fee": self.adoption_fee,
            "is_vaccinated": self.is_vaccinated,
            "is_neutered": self.is_neutered,
            "has_original": self.has_original,
            "has_derived": self.has_derived,
            "metadata": self.provenance.to_json(),
        }

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "CanonicalItem":
        return cls(
            id=str(payload["id"]),
            type=PetType(payload["type"]),
            name=str(payload["name"]),
            source_id=str(payload.get("source_id") or ""),
            provenance=Provenance.from_json(payload.get("metadata") or {}),
            breed=payload.get("breed"),
            age=payload.get("age"),
            gender=Gender(payload.get("gender") or Gender.UNKNOWN.value),
            prefecture=payload.get("prefecture"),
            city=payload.get("city"),
            location=payload.get("location"),
            description=payload.get("description"),
            personality=list(payload.get("personality") or []),
            image_url=payload.get("image_url"),
            source_url=payload.get("source_url"),
            adoption_fee=int(payload.get("adoption_fee") or 0),
            is_vaccinated=bool(payload.get("is_vaccinated")),
            is_neutered=bool(payload.get("is_neutered")),
            has_original=bool(payload.get("has_original")),
            has_derived=bool(payload.get("has_derived")),
        )


@dataclass(slots=True)
class QueueProgress:
    """Sent counter and pending ids for one downstream queue."""

    sent: int = 0
    pending: list[str] = field(default_factory=list)

    def to_json(self) -> JSONDict:
        return {"sent": self.sent, "pending": list(self.pending)}

    @classmethod
    def from_json(cls, payload: Mapping[str, Any] | None) -> "QueueProgress":
        if not payload:
            return cls()
        return cls(
            sent=int(payload.get("sent") or 0),
            pending=[str(item) for item in payload.get("pending") or []],
        )

    def with_pending(self, ids: list[str]) -> "QueueProgress":
        merged = list(self.pending)
        for item_id in ids:
            if item_id not in merged:
                merged.append(item_id)
        return QueueProgress(sent=self.sent, pending=merged)

    def mark_sent(self, count: int) -> "QueueProgress":
        return QueueProgress(sent=self.sent + count, pending=[])


@dataclass(slots=True)
class Checkpoint:
    """Durable crawl progress for one (source, item type) pair.

    The JSON shape is versioned. Older payloads written as
    `{lastItemId, lastCrawlAt, metadata: {processedIds}}` or as the pipeline
    form `{batchId, processedPetIds, screenshotQueue, ...}` are upgraded on load.
    """

    source_id: str
    item_type: PetType
    last_item_id: str | None = None
    recent_item_ids: list[str] = field(default_factory=list)
    total_processed: int = 0
    last_crawl_at: str | None = None
    metadata: dict[str, JSONValue] = field(default_factory=dict)
    batch_id: str | None = None
    screenshot_queue: QueueProgress = field(default_factory=QueueProgress)
    conversion_queue: QueueProgress = field(default_factory=QueueProgress)
    last_errors: list[str] = field(default_factory=list)
    updated_at: str | None = None

    def is_known(self, item_id: str) -> bool:
        return item_id == self.last_item_id or item_id in self.recent_item_ids

    def advance(
        self,
        *,
        processed_ids: list[str],
        recent_window: int,
        now: datetime,
        batch_id: str | None = None,
        metadata: Mapping[str, JSONValue] | None = None,
        errors: list[str] | None = None,
    ) -> "Checkpoint":
        """Return the checkpoint for the end of a run that processed `processed_ids`.

        `processed_ids` is newest-first. `last_crawl_at` always moves forward,
        even if the wall clock does not.
        """

        recent: list[str] = []
        for item_id in [*processed_ids, *self.recent_item_ids]:
            if item_id not in recent:
                recent.append(item_id)

        stamp = now if now.tzinfo else now.replace(tzinfo=timezone.utc)
        previous = parse_iso(self.last_crawl_at)
        if previous is not None and stamp <= previous:
            stamp = previous + timedelta(microseconds=1)

        merged_metadata = dict(self.metadata)
        if metadata:
            merged_metadata.update(dict(metadata))

        return replace(
            self,
            last_item_id=processed_ids[0] if processed_ids else self.last_item_id,
            recent_item_ids=recent[: max(0, recent_window)],
            total_processed=self.total_processed + len(processed_ids),
            last_crawl_at=stamp.isoformat(timespec="microseconds"),
            metadata=merged_metadata,
            batch_id=batch_id or self.batch_id,
            last_errors=list(errors or []),
        )

    def to_json(self) -> JSONDict:
        return {
            "version": CHECKPOINT_SCHEMA_VERSION,
            "lastItemId": self.last_item_id,
            "recentItemIds": list(self.recent_item_ids),
            "lastCrawlAt": self.last_crawl_at,
            "metadata": dict(self.metadata),
            "batchId": self.batch_id,
            "screenshotQueue": self.screenshot_queue.to_json(),
            "conversionQueue": self.conversion_queue.to_json(),
            "errors": list(self.last_errors),
        }

    @classmethod
    def from_json(
        cls,
        payload: Mapping[str, Any],
        *,
        source_id: str,
        item_type: PetType | str,
        total_processed: int = 0,
        updated_at: str | None = None,
    ) -> "Checkpoint":
        metadata = dict(payload.get("metadata") or {})

        recent = payload.get("recentItemIds")
        if recent is None:
            # Legacy simple form kept the window under metadata; pipeline form
            # recorded every id processed by the batch.
            recent = metadata.pop("processedIds", None) or payload.get("processedPetIds") or []

        last_crawl_at = payload.get("lastCrawlAt") or payload.get("lastProcessedAt")
        last_item_id = payload.get("lastItemId")
        if last_item_id is None and recent:
            last_item_id = recent[0]

        return cls(
            source_id=source_id,
            item_type=PetType(item_type),
            last_item_id=None if last_item_id is None else str(last_item_id),
            recent_item_ids=[str(item) for item in recent],
            total_processed=int(total_processed),
            last_crawl_at=None if last_crawl_at is None else str(last_crawl_at),
            metadata=metadata,
            batch_id=payload.get("batchId"),
            screenshot_queue=QueueProgress.from_json(payload.get("screenshotQueue")),
            conversion_queue=QueueProgress.from_json(payload.get("conversionQueue")),
            last_errors=[str(item) for item in payload.get("errors") or []],
            updated_at=updated_at,
        )


@dataclass(frozen=True, slots=True)
class QueueMessage:
    """One downstream processing request for a single item."""

    batch_id: str
    item_id: str
    item_type: PetType
    expected_total: int
    source: str
    timestamp: str = field(default_factory=utc_now_iso)
    retry_count: int = 0

    def to_json(self) -> JSONDict:
        return {
            "batchId": self.batch_id,
            "petId": self.item_id,
            "petType": self.item_type.value,
            "expectedTotal": self.expected_total,
            "source": self.source,
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
        }

    def to_dead_letter(self, error: str, failed_at: str | None = None) -> JSONDict:
        payload = self.to_json()
        payload["error"] = error
        payload["failedAt"] = failed_at or utc_now_iso()
        return payload

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "QueueMessage":
        return cls(
            batch_id=str(payload["batchId"]),
            item_id=str(payload["petId"]),
            item_type=PetType(payload["petType"]),
            expected_total=int(payload.get("expectedTotal") or 0),
            source=str(payload.get("source") or ""),
            timestamp=str(payload.get("timestamp") or utc_now_iso()),
            retry_count=int(payload.get("retryCount") or 0),
        )


@dataclass(slots=True)
class CrawlResult:
    """Outcome of one crawl run. `success` is derived from `errors`."""

    total_items: int = 0
    new_items: int = 0
    updated_items: int = 0
    errors: list[str] = field(default_factory=list)
    new_item_ids: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_json(self) -> JSONDict:
        return {
            "success": self.success,
            "totalItems": self.total_items,
            "newItems": self.new_items,
            "updatedItems": self.updated_items,
            "errors": list(self.errors),
        }


@dataclass(frozen=True, slots=True)
class UpsertResult:
    created: bool


@dataclass(slots=True)
class SaveManyResult:
    new_count: int = 0
    updated_count: int = 0
    errors: list[str] = field(default_factory=list)

    def to_json(self) -> JSONDict:
        return {
            "newCount": self.new_count,
            "updatedCount": self.updated_count,
            "errors": list(self.errors),
        }


@dataclass(frozen=True, slots=True)
class ArchiveResult:
    has_original: bool = False
    has_derived: bool = False


__all__ = [
    "ArchiveResult",
    "CanonicalItem",
    "Checkpoint",
    "CrawlResult",
    "CrawlState",
    "DetailFields",
    "Gender",
    "JSONDict",
    "JSONPrimitive",
    "JSONValue",
    "ListItem",
    "PetType",
    "Provenance",
    "QueueMessage",
    "QueueProgress",
    "SaveManyResult",
    "UpsertResult",
    "is_known",
    "parse_iso",
    "utc_now",
    "utc_now_iso",
]
