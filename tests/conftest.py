from __future__ import annotations

import io
from pathlib import Path
from typing import Callable

import pytest
from PIL import Image

from ingest.crawler.config import CrawlConfig
from ingest.crawler.errors import HttpStatusError
from ingest.crawler.fetcher import FetchedBytes

BASE_URL = "https://www.pet-home.jp"


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class StubFetcher:
    """URL-keyed fetcher double.

    Values may be a body or an exception instance to raise. Unknown list pages
    come back empty so a scan ends naturally; anything else is a 404.
    """

    def __init__(
        self,
        pages: dict[str, str | Exception] | None = None,
        blobs: dict[str, bytes | Exception] | None = None,
    ) -> None:
        self.pages = dict(pages or {})
        self.blobs = dict(blobs or {})
        self.page_requests: list[str] = []
        self.blob_requests: list[str] = []
        self.closed = False

    def fetch_page(self, url: str, **_kwargs) -> str:
        self.page_requests.append(url)
        value = self.pages.get(url)
        if value is None:
            if "/status_2/" in url:
                return "<html><body></body></html>"
            raise HttpStatusError(404, url=url, reason="Not Found")
        if isinstance(value, Exception):
            raise value
        return value

    def fetch_bytes(self, url: str, **_kwargs) -> FetchedBytes:
        self.blob_requests.append(url)
        value = self.blobs.get(url)
        if value is None:
            raise HttpStatusError(404, url=url, reason="Not Found")
        if isinstance(value, Exception):
            raise value
        return FetchedBytes(body=value, content_type="image/png", final_url=url)

    def close(self) -> None:
        self.closed = True


def list_url(pet_type: str = "dog", page: int = 1) -> str:
    return f"{BASE_URL}/{pet_type}s/status_2/?page={page}"


def detail_url(number: int, pet_type: str = "dog") -> str:
    return f"{BASE_URL}/{pet_type}s/cg_12/pn{number}/"


def image_url(number: int) -> str:
    return f"{BASE_URL}/images/pn{number}.png"


def list_page_html(numbers: list[int], pet_type: str = "dog") -> str:
    cards = "\n".join(
        f'<div class="contribute_result"><h3 class="title">'
        f'<a href="/{pet_type}s/cg_12/pn{number}/">里親募集 {number}</a></h3></div>'
        for number in numbers
    )
    return f"<html><body>{cards}</body></html>"


def detail_page_html(number: int, *, with_image: bool = True) -> str:
    photo = f'<div class="main_photo"><img src="/images/pn{number}.png"></div>' if with_image else ""
    return f"""
    <html><body>
      <h3 class="main_title">ポチ{number}</h3>
      <a href="/dogs/cg_12/">柴犬</a>
      {photo}
      <dl>
        <dt>年齢</dt><dd>2歳</dd>
        <dt>雄雌</dt><dd>オス</dd>
        <dt>現在所在地</dt><dd>神奈川県 横浜市</dd>
      </dl>
      <p class="list_title">性格・特徴</p>
      <p class="info">人懐っこい甘えん坊です</p>
    </body></html>
    """


def make_image_bytes(fmt: str = "PNG", size: tuple[int, int] = (8, 8)) -> bytes:
    output = io.BytesIO()
    Image.new("RGB", size, color=(200, 120, 40)).save(output, format=fmt)
    return output.getvalue()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., CrawlConfig]:
    def factory(**overrides) -> CrawlConfig:
        payload = {
            "data_dir": str(tmp_path / "state"),
            "request_delay_seconds": 0.0,
            "http_retry_delay_seconds": 1.0,
            "storage_retry_delay_seconds": 0.5,
        }
        payload.update(overrides)
        return CrawlConfig.from_dict(payload)

    return factory


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes("PNG")
