"""Listing/detail HTML extraction with ordered selector fallbacks."""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag
from bs4.builder import ParserRejectedMarkup

from ..constants import DEFAULT_PREFECTURE, UNKNOWN
from ..errors import ParseError
from ..types import DetailFields, Gender, ListItem

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ListSelector:
    """One (container, link) pair tried against a listing page."""

    container: str
    link: str

    @property
    def name(self) -> str:
        return f"{self.container} {self.link}"


DEFAULT_LIST_SELECTORS: tuple[ListSelector, ...] = (
    ListSelector(".contribute_result", "h3.title a"),
    ListSelector(".pet-card", "a"),
    ListSelector(".pet-item", "a"),
    ListSelector(".animal-card", "a"),
    ListSelector(".search-result-item", "a"),
    ListSelector("article", 'a[href*="pn"]'),
    ListSelector('div[class*="result"]', 'a[href*="pn"]'),
    ListSelector('div[class*="card"]', 'a[href*="pn"]'),
)
LINK_SCAN_STRATEGY = 'a[href*="pn"]'

_LABEL_ELEMENTS = "dt, th, .list_title, label"
_VALUE_ELEMENTS = ["dd", "td", "p"]

_MONTH_MARKERS = ("ヶ月", "か月", "カ月", "ケ月", "month")
_MALE_MARKERS = ("オス", "♂", "男の子", "male")
_FEMALE_MARKERS = ("メス", "♀", "女の子", "female")
_PREFECTURE_SUFFIXES = ("都", "道", "府", "県")
_CITY_SUFFIXES = ("市", "区", "町", "村")

TOKYO_SPECIAL_WARDS = frozenset(
    {
        "千代田区", "中央区", "港区", "新宿区", "文京区", "台東区", "墨田区", "江東区",
        "品川区", "目黒区", "大田区", "世田谷区", "渋谷区", "中野区", "杉並区", "豊島区",
        "北区", "荒川区", "板橋区", "練馬区", "足立区", "葛飾区", "江戸川区",
    }
)
_TOKYO = "東京都"


def collapse_whitespace(text: str | None) -> str:
    """Collapse runs of ASCII and full-width whitespace into single spaces."""

    if not text:
        return ""
    return re.sub(r"[\s　]+", " ", text).strip()


def parse_age(text: str | None) -> str:
    """Return age in whole years as a string, or `UNKNOWN`.

    Month-denominated ages are floor-divided by 12 with a minimum of 1.
    """

    normalized = unicodedata.normalize("NFKC", text or "")
    match = re.search(r"\d+", normalized)
    if match is None:
        return UNKNOWN

    value = int(match.group(0))
    lowered = normalized.lower()
    if any(marker in lowered for marker in _MONTH_MARKERS):
        value = max(1, value // 12)
    return str(value)


def _has_marker(text: str, marker: str) -> bool:
    if marker.isascii():
        return re.search(rf"(?<![a-z]){re.escape(marker)}", text) is not None
    return marker in text


def parse_gender(text: str | None) -> Gender:
    """Classify gender by case-insensitive marker match, male markers first.

    ASCII markers only match when not preceded by a letter, so "female" is
    never read as "male". Japanese markers match as plain substrings.
    """

    normalized = unicodedata.normalize("NFKC", text or "").lower()
    if not normalized:
        return Gender.UNKNOWN
    if any(_has_marker(normalized, marker) for marker in _MALE_MARKERS):
        return Gender.MALE
    if any(_has_marker(normalized, marker) for marker in _FEMALE_MARKERS):
        return Gender.FEMALE
    return Gender.UNKNOWN


def parse_location(text: str | None, default_prefecture: str = DEFAULT_PREFECTURE) -> tuple[str, str]:
    """Split free-form location text into `(prefecture, city)`.

    The last whitespace token ending in a prefecture suffix wins, likewise for
    the city. Missing city is `UNKNOWN`.
    """

    prefecture: str | None = None
    city: str | None = None
    for token in collapse_whitespace(text).split(" "):
        if not token:
            continue
        if token.endswith(_PREFECTURE_SUFFIXES):
            prefecture = token
        elif token.endswith(_CITY_SUFFIXES):
            city = token

    if prefecture is None:
        prefecture = _TOKYO if city in TOKYO_SPECIAL_WARDS else default_prefecture
    return prefecture, city or UNKNOWN


def parse_fee(text: str | None) -> int | None:
    normalized = unicodedata.normalize("NFKC", text or "")
    if not normalized.strip():
        return None
    if "無料" in normalized:
        return 0
    match = re.search(r"\d[\d,]*", normalized)
    if match is None:
        return None
    return int(match.group(0).replace(",", ""))


@dataclass(frozen=True, slots=True)
class FieldRule:
    """Primary selectors tried in order, then label patterns."""

    selectors: tuple[str, ...] = ()
    labels: tuple[str, ...] = ()
    attribute: str | None = None


@dataclass(slots=True)
class HtmlParserConfig:
    base_url: str = "https://www.pet-home.jp"
    item_id_pattern: str = r"pn(\d+)"
    item_id_prefix: str = "pn"
    default_prefecture: str = DEFAULT_PREFECTURE
    list_selectors: tuple[ListSelector, ...] = DEFAULT_LIST_SELECTORS
    detail_rules: dict[str, FieldRule] = field(
        default_factory=lambda: {
            "name": FieldRule(selectors=("h3.main_title", "h1.pet-name", ".pet-name"), labels=("名前",)),
            "breed": FieldRule(selectors=('a[href*="/cg_"]', ".breed", ".pet-breed"), labels=("種類", "品種")),
            "age": FieldRule(selectors=(".age", ".pet-age"), labels=("年齢",)),
            "gender": FieldRule(selectors=(".gender", ".pet-gender"), labels=("雄雌", "性別")),
            "location": FieldRule(selectors=(".location", ".pet-location"), labels=("現在所在地", "所在地")),
            "description": FieldRule(
                selectors=('.list_title:-soup-contains("性格・特徴") + p.info', ".pet-description", ".description"),
                labels=("性格・特徴",),
            ),
            "image_url": FieldRule(
                selectors=(".main_photo img", ".photo_main img", ".pet-main-image img"),
                attribute="src",
            ),
            "og_image": FieldRule(selectors=('meta[property="og:image"]',), attribute="content"),
            "adoption_fee": FieldRule(selectors=(".adoption-fee", ".fee"), labels=("譲渡費用", "費用")),
            "vaccination": FieldRule(labels=("ワクチン", "予防接種")),
            "neutering": FieldRule(labels=("去勢・避妊", "避妊・去勢", "去勢", "避妊")),
        }
    )


class HtmlParser:
    """Extract listing candidates and detail fields from source HTML.

    Listing pages try `list_selectors` in order and stop at the first pair that
    yields at least one item; a raw link scan is the last resort. Missing detail
    values are `UNKNOWN`; only markup the parser rejects raises `ParseError`.
    """

    def __init__(self, config: HtmlParserConfig | None = None) -> None:
        self.config = config or HtmlParserConfig()
        self._id_re = re.compile(self.config.item_id_pattern)

    def parse_list_page(self, html: str | bytes) -> list[ListItem]:
        soup = self._soup(html)

        for selector in self.config.list_selectors:
            items = self._match_selector(soup, selector)
            if items:
                LOGGER.debug("Found %d items with selector %s", len(items), selector.name)
                return items

        items = self._scan_links(soup)
        LOGGER.debug("Link scan fallback found %d items", len(items))
        return items

    def parse_detail_page(self, html: str | bytes) -> DetailFields:
        soup = self._soup(html)
        rules = self.config.detail_rules

        location_text = self._extract(soup, rules["location"])
        prefecture, city = parse_location(location_text, self.config.default_prefecture)

        image_url = self._extract(soup, rules["image_url"]) or self._extract(soup, rules["og_image"])

        return DetailFields(
            name=self._extract(soup, rules["name"]) or UNKNOWN,
            breed=self._extract(soup, rules["breed"]) or UNKNOWN,
            age=parse_age(self._extract(soup, rules["age"])),
            gender=parse_gender(self._extract(soup, rules["gender"])),
            location=location_text or UNKNOWN,
            prefecture=prefecture,
            city=city,
            description=self._extract(soup, rules["description"]) or UNKNOWN,
            image_url=self._resolve(image_url) if image_url else UNKNOWN,
            adoption_fee=parse_fee(self._extract(soup, rules["adoption_fee"])),
            vaccination=self._extract(soup, rules["vaccination"]) or UNKNOWN,
            neutering=self._extract(soup, rules["neutering"]) or UNKNOWN,
        )

    def _match_selector(self, soup: BeautifulSoup, selector: ListSelector) -> list[ListItem]:
        items: list[ListItem] = []
        seen: set[str] = set()
        for container in soup.select(selector.container):
            link = container.select_one(selector.link)
            if link is None:
                continue
            item = self._to_list_item(link, selector.name, seen)
            if item is not None:
                items.append(item)
        return items

    def _scan_links(self, soup: BeautifulSoup) -> list[ListItem]:
        items: list[ListItem] = []
        seen: set[str] = set()
        for link in soup.select("a[href]"):
            item = self._to_list_item(link, LINK_SCAN_STRATEGY, seen)
            if item is not None:
                items.append(item)
        return items

    def _to_list_item(self, link: Tag, strategy: str, seen: set[str]) -> ListItem | None:
        href = str(link.get("href") or "").strip()
        match = self._id_re.search(href)
        if match is None:
            return None

        native_id = f"{self.config.item_id_prefix}{match.group(1)}"
        if native_id in seen:
            return None
        seen.add(native_id)

        title = collapse_whitespace(link.get_text(" ", strip=True)) or None
        return ListItem(
            native_id=native_id,
            detail_url=self._resolve(href),
            title=title,
            strategy=strategy,
        )

    def _extract(self, soup: BeautifulSoup, rule: FieldRule) -> str:
        for selector in rule.selectors:
            node = soup.select_one(selector)
            if node is None:
                continue
            if rule.attribute:
                value = str(node.get(rule.attribute) or "").strip()
            else:
                value = collapse_whitespace(node.get_text(" ", strip=True))
            if value:
                return value

        for label in rule.labels:
            value = self._extract_labelled(soup, label)
            if value:
                return value
        return ""

    @staticmethod
    def _extract_labelled(soup: BeautifulSoup, label: str) -> str:
        for label_node in soup.select(_LABEL_ELEMENTS):
            if label not in label_node.get_text(strip=True):
                continue
            value_node = label_node.find_next_sibling(_VALUE_ELEMENTS)
            if value_node is None:
                continue
            value = collapse_whitespace(value_node.get_text(" ", strip=True))
            if value:
                return value
        return ""

    def _resolve(self, href: str) -> str:
        return urljoin(self.config.base_url.rstrip("/") + "/", href)

    def _soup(self, html: str | bytes) -> BeautifulSoup:
        try:
            return BeautifulSoup(self._coerce_html_text(html), "lxml")
        except ParserRejectedMarkup as exc:
            raise ParseError(f"Unparseable HTML: {exc}") from exc

    @staticmethod
    def _coerce_html_text(html: str | bytes) -> str:
        if isinstance(html, bytes):
            return html.decode("utf-8", errors="replace")
        return html


__all__ = [
    "DEFAULT_LIST_SELECTORS",
    "FieldRule",
    "HtmlParser",
    "HtmlParserConfig",
    "LINK_SCAN_STRATEGY",
    "ListSelector",
    "TOKYO_SPECIAL_WARDS",
    "collapse_whitespace",
    "parse_age",
    "parse_fee",
    "parse_gender",
    "parse_location",
]
