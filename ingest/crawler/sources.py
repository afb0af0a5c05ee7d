"""Per-source adapters: listing URLs, fetching, parsing, and normalization."""

from __future__ import annotations

import re
from typing import Callable, Mapping, Protocol

from .config import PET_HOME_SOURCE_ID, CrawlConfig, SourceConfig
from .fetcher import HttpFetcher
from .normalizer import Normalizer
from .parsers.html_parser import HtmlParser, HtmlParserConfig
from .types import CanonicalItem, DetailFields, JSONValue, ListItem, PetType, utc_now_iso


class SourceAdapter(Protocol):
    """Capability set the orchestrator needs from a source."""

    source_id: str
    pet_types: list[PetType]

    def fetch_list_page(self, item_type: PetType, page: int) -> str: ...

    def fetch_detail_page(self, list_item: ListItem) -> str: ...

    def parse_list_page(self, html: str) -> list[ListItem]: ...

    def parse_detail_page(self, html: str) -> DetailFields: ...

    def normalize(self, list_item: ListItem, detail: DetailFields, item_type: PetType) -> CanonicalItem: ...

    def canonical_id(self, native_id: str) -> str: ...

    def checkpoint_metadata(self, processed: list[ListItem], previous: Mapping[str, JSONValue]) -> dict[str, JSONValue]: ...


class PetHomeAdapter:
    """pet-home.jp: `/{type}s/status_2/?page=N` listings, `pn{digits}` ids."""

    def __init__(
        self,
        source: SourceConfig,
        fetcher: HttpFetcher,
        config: CrawlConfig,
        *,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.source = source
        self.source_id = source.source_id
        self.pet_types = list(source.pet_types)
        self.fetcher = fetcher
        self.parser = HtmlParser(
            HtmlParserConfig(
                base_url=source.base_url,
                default_prefecture=config.default_prefecture,
            )
        )
        self.normalizer = Normalizer(source.source_id, clock=clock)

    def list_page_url(self, item_type: PetType, page: int) -> str:
        return f"{self.source.base_url}/{item_type.plural}/status_2/?page={page}"

    def fetch_list_page(self, item_type: PetType, page: int) -> str:
        return self.fetcher.fetch_page(self.list_page_url(item_type, page), source_id=self.source_id)

    def fetch_detail_page(self, list_item: ListItem) -> str:
        return self.fetcher.fetch_page(list_item.detail_url, source_id=self.source_id)

    def parse_list_page(self, html: str) -> list[ListItem]:
        return self.parser.parse_list_page(html)

    def parse_detail_page(self, html: str) -> DetailFields:
        return self.parser.parse_detail_page(html)

    def normalize(self, list_item: ListItem, detail: DetailFields, item_type: PetType) -> CanonicalItem:
        return self.normalizer.normalize(list_item, detail, item_type)

    def canonical_id(self, native_id: str) -> str:
        return self.normalizer.canonical_id(native_id)

    def checkpoint_metadata(
        self,
        processed: list[ListItem],
        previous: Mapping[str, JSONValue],
    ) -> dict[str, JSONValue]:
        """Track the highest listing number seen so far as `lastItemNumber`."""

        numbers = [int(re.sub(r"\D", "", item.native_id)) for item in processed if re.search(r"\d", item.native_id)]
        last = previous.get("lastItemNumber")
        if isinstance(last, int):
            numbers.append(last)
        if not numbers:
            return {}
        return {"lastItemNumber": max(numbers)}


SourceFactory = Callable[[SourceConfig, HttpFetcher, CrawlConfig], SourceAdapter]

SOURCE_FACTORIES: dict[str, SourceFactory] = {
    PET_HOME_SOURCE_ID: PetHomeAdapter,
}


__all__ = [
    "PetHomeAdapter",
    "SOURCE_FACTORIES",
    "SourceAdapter",
    "SourceFactory",
]
