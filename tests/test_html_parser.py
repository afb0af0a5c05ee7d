"""Unit tests for listing/detail extraction and the field parsers."""

import pytest

from ingest.crawler.constants import UNKNOWN
from ingest.crawler.parsers import (
    DEFAULT_LIST_SELECTORS,
    HtmlParser,
    HtmlParserConfig,
    parse_age,
    parse_fee,
    parse_gender,
    parse_location,
)
from ingest.crawler.parsers.html_parser import LINK_SCAN_STRATEGY
from ingest.crawler.types import Gender

from conftest import detail_page_html, list_page_html

DETAIL_HTML = """
<html>
<head><meta property="og:image" content="https://cdn.example.jp/og.jpg"></head>
<body>
  <h3 class="main_title">元気なポチ</h3>
  <ul class="breadcrumb"><li><a href="/dogs/cg_12/">柴犬</a></li></ul>
  <div class="main_photo"><img src="/images/pn123.jpg"></div>
  <dl>
    <dt>年齢</dt><dd>約3ヶ月</dd>
    <dt>雄雌</dt><dd>オス</dd>
    <dt>現在所在地</dt><dd>神奈川県　横浜市</dd>
  </dl>
  <p class="list_title">性格・特徴</p>
  <p class="info">人懐っこい子です</p>
  <table>
    <tr><th>譲渡費用</th><td>30,000円</td></tr>
    <tr><th>ワクチン</th><td>接種済</td></tr>
    <tr><th>去勢・避妊</th><td>未</td></tr>
  </table>
</body>
</html>
"""


class TestListPage:
    def test_primary_selector_extracts_ids_and_urls(self):
        parser = HtmlParser()

        items = parser.parse_list_page(list_page_html([105, 104, 104, 103]))

        assert [item.native_id for item in items] == ["pn105", "pn104", "pn103"]
        assert items[0].detail_url == "https://www.pet-home.jp/dogs/cg_12/pn105/"
        assert items[0].title == "里親募集 105"
        assert items[0].strategy == DEFAULT_LIST_SELECTORS[0].name

    def test_fallback_stops_at_first_matching_pair(self, monkeypatch):
        """The third pair matches, so the fourth is never tried."""
        html = """
        <html><body>
          <div class="pet-item"><a href="/cats/cg_3/pn200/">ミケ</a></div>
          <div class="pet-item"><a href="/cats/cg_3/pn199/">タマ</a></div>
          <div class="animal-card"><a href="/cats/cg_3/pn198/">クロ</a></div>
        </body></html>
        """
        tried = []
        original = HtmlParser._match_selector

        def spy(self, soup, selector):
            tried.append(selector)
            return original(self, soup, selector)

        monkeypatch.setattr(HtmlParser, "_match_selector", spy)

        items = HtmlParser().parse_list_page(html)

        assert tried == list(DEFAULT_LIST_SELECTORS[:3])
        assert [item.native_id for item in items] == ["pn200", "pn199"]
        assert {item.strategy for item in items} == {".pet-item a"}

    def test_link_scan_is_last_resort(self):
        html = '<html><body><p><a href="/dogs/cg_1/pn42/">ハチ</a><a href="/about/">about</a></p></body></html>'

        items = HtmlParser().parse_list_page(html)

        assert [item.native_id for item in items] == ["pn42"]
        assert items[0].strategy == LINK_SCAN_STRATEGY

    def test_page_without_candidates_is_empty(self):
        assert HtmlParser().parse_list_page("<html><body><p>0件</p></body></html>") == []

    def test_bytes_input_is_decoded(self):
        items = HtmlParser().parse_list_page(list_page_html([7]).encode("utf-8"))
        assert [item.native_id for item in items] == ["pn7"]


class TestDetailPage:
    def test_extracts_labelled_fields(self):
        detail = HtmlParser().parse_detail_page(DETAIL_HTML)

        assert detail.name == "元気なポチ"
        assert detail.breed == "柴犬"
        assert detail.age == "1"
        assert detail.gender is Gender.MALE
        assert detail.prefecture == "神奈川県"
        assert detail.city == "横浜市"
        assert detail.description == "人懐っこい子です"
        assert detail.image_url == "https://www.pet-home.jp/images/pn123.jpg"
        assert detail.adoption_fee == 30000
        assert detail.vaccination == "接種済"
        assert detail.neutering == "未"

    def test_og_image_used_when_main_photo_missing(self):
        html = DETAIL_HTML.replace('<div class="main_photo"><img src="/images/pn123.jpg"></div>', "")

        detail = HtmlParser().parse_detail_page(html)

        assert detail.image_url == "https://cdn.example.jp/og.jpg"

    def test_missing_fields_are_unknown(self):
        detail = HtmlParser(HtmlParserConfig(default_prefecture="大阪府")).parse_detail_page(
            "<html><body><p>掲載終了</p></body></html>"
        )

        assert detail.name == UNKNOWN
        assert detail.breed == UNKNOWN
        assert detail.age == UNKNOWN
        assert detail.gender is Gender.UNKNOWN
        assert detail.prefecture == "大阪府"
        assert detail.city == UNKNOWN
        assert detail.image_url == UNKNOWN
        assert detail.adoption_fee is None

    def test_fixture_detail_page_parses(self):
        detail = HtmlParser().parse_detail_page(detail_page_html(101))

        assert detail.name == "ポチ101"
        assert detail.age == "2"
        assert detail.image_url == "https://www.pet-home.jp/images/pn101.png"


class TestFieldParsers:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("2歳", "2"),
            ("２歳", "2"),
            ("18ヶ月", "1"),
            ("30か月", "2"),
            ("3ヶ月", "1"),
            ("不明", UNKNOWN),
            (None, UNKNOWN),
        ],
    )
    def test_parse_age(self, text, expected):
        assert parse_age(text) == expected

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("オス", Gender.MALE),
            ("♂", Gender.MALE),
            ("メス", Gender.FEMALE),
            ("♀", Gender.FEMALE),
            ("Female", Gender.FEMALE),
            ("male", Gender.MALE),
            ("不明", Gender.UNKNOWN),
            ("", Gender.UNKNOWN),
        ],
    )
    def test_parse_gender(self, text, expected):
        assert parse_gender(text) is expected

    def test_parse_location(self):
        assert parse_location("北海道 札幌市") == ("北海道", "札幌市")
        assert parse_location("東京都 渋谷区") == ("東京都", "渋谷区")
        assert parse_location("世田谷区", "大阪府") == ("東京都", "世田谷区")
        assert parse_location("横浜市", "神奈川県") == ("神奈川県", "横浜市")
        assert parse_location("お問い合わせください", "大阪府") == ("大阪府", UNKNOWN)

    def test_parse_fee(self):
        assert parse_fee("無料") == 0
        assert parse_fee("12,500円") == 12500
        assert parse_fee("要相談") is None
        assert parse_fee("") is None
