"""Map raw listing/detail fields onto the canonical pet record."""

from __future__ import annotations

import re
from typing import Callable

from .constants import UNKNOWN
from .errors import ValidationError
from .parsers.html_parser import collapse_whitespace
from .types import CanonicalItem, DetailFields, ListItem, PetType, Provenance, is_known, utc_now_iso

# Insertion order matters: the first alias found in the raw breed wins.
BREED_ALIASES: dict[str, str] = {
    "柴": "柴犬",
    "ラブ": "ラブラドール",
    "ゴールデン": "ゴールデンレトリバー",
    "チワワmix": "チワワ（ミックス）",
    "アメショー": "アメリカンショートヘア",
    "スコティッシュ": "スコティッシュフォールド",
    "ロシアンブルー": "ロシアンブルー",
    "雑種": "ミックス",
}

PERSONALITY_TRAITS: tuple[str, ...] = (
    "人懐っこい",
    "おとなしい",
    "活発",
    "甘えん坊",
    "遊び好き",
    "賢い",
    "優しい",
)

_DONE_MARKERS = ("済", "あり", "有")
_NOT_DONE_MARKERS = ("未", "なし", "無")


def namespace_id(source_id: str, native_id: str) -> str:
    digits = re.sub(r"\D", "", native_id)
    if not digits:
        raise ValidationError(f"Native id has no digits: {native_id!r}")
    return f"{source_id}_{digits}"


def normalize_breed(raw: str | None, item_type: PetType) -> str:
    breed = collapse_whitespace(raw)
    if not is_known(breed):
        return item_type.mixed_breed_label
    for alias, canonical in BREED_ALIASES.items():
        if alias in breed:
            return canonical
    return breed


def extract_personality(description: str | None) -> list[str]:
    if not description:
        return []
    return [trait for trait in PERSONALITY_TRAITS if trait in description]


def _is_done(text: str) -> bool:
    if not is_known(text):
        return False
    if any(marker in text for marker in _NOT_DONE_MARKERS):
        return False
    return any(marker in text for marker in _DONE_MARKERS)


def _optional(value: str) -> str | None:
    text = collapse_whitespace(value)
    return text if is_known(text) else None


class Normalizer:
    """Pure mapping from `(ListItem, DetailFields)` to `CanonicalItem`.

    Only the provenance timestamp depends on `clock`.
    """

    def __init__(self, source_id: str, *, clock: Callable[[], str] = utc_now_iso) -> None:
        self.source_id = source_id
        self._clock = clock

    def canonical_id(self, native_id: str) -> str:
        return namespace_id(self.source_id, native_id)

    def normalize(self, list_item: ListItem, detail: DetailFields, item_type: PetType) -> CanonicalItem:
        item_id = self.canonical_id(list_item.native_id)

        name = _optional(detail.name) or _optional(list_item.title or "")
        if not name:
            raise ValidationError(f"Missing name for {item_id}")

        description = _optional(detail.description)
        prefecture = _optional(detail.prefecture)
        city = _optional(detail.city)
        location = f"{prefecture} {city}" if prefecture and city else prefecture

        return CanonicalItem(
            id=item_id,
            type=item_type,
            name=name,
            source_id=self.source_id,
            provenance=Provenance(
                original_id=list_item.native_id,
                source=self.source_id,
                crawled_at=self._clock(),
            ),
            breed=normalize_breed(detail.breed, item_type),
            age=None if detail.age == UNKNOWN else detail.age,
            gender=detail.gender,
            prefecture=prefecture,
            city=city,
            location=location,
            description=description,
            personality=extract_personality(description),
            image_url=_optional(detail.image_url),
            source_url=list_item.detail_url,
            adoption_fee=detail.adoption_fee or 0,
            is_vaccinated=_is_done(detail.vaccination),
            is_neutered=_is_done(detail.neutering),
        )


__all__ = [
    "BREED_ALIASES",
    "Normalizer",
    "PERSONALITY_TRAITS",
    "extract_personality",
    "namespace_id",
    "normalize_breed",
]
