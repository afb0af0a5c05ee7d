"""Parser package exports."""

from .html_parser import (
    DEFAULT_LIST_SELECTORS,
    FieldRule,
    HtmlParser,
    HtmlParserConfig,
    ListSelector,
    collapse_whitespace,
    parse_age,
    parse_fee,
    parse_gender,
    parse_location,
)

__all__ = [
    "DEFAULT_LIST_SELECTORS",
    "FieldRule",
    "HtmlParser",
    "HtmlParserConfig",
    "ListSelector",
    "collapse_whitespace",
    "parse_age",
    "parse_fee",
    "parse_gender",
    "parse_location",
]
