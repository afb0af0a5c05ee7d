"""Tests for HttpFetcher error mapping, limits, deadlines, and RateLimiter."""

import pytest
import requests

from ingest.crawler.errors import HttpStatusError, NetworkError, ParseError, PayloadTooLargeError
from ingest.crawler.fetcher import HttpFetcher, RateLimiter, resolve_charset


class FakeResponse:
    def __init__(self, status_code=200, chunks=(b"",), headers=None, encoding=None, url="https://example.test/"):
        self.status_code = status_code
        self.reason = "OK" if status_code == 200 else "Error"
        self.headers = headers or {}
        self.encoding = encoding
        self.url = url
        self._chunks = list(chunks)
        self.closed = False

    def iter_content(self, chunk_size=1):
        yield from self._chunks

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    def close(self):
        pass


class TestHttpFetcher:
    def test_fetch_page_decodes_declared_charset(self, make_config):
        body = "柴犬の里親募集".encode("shift_jis")
        response = FakeResponse(
            chunks=[body],
            headers={"Content-Type": "text/html; charset=Shift_JIS"},
            encoding="Shift_JIS",
        )
        session = FakeSession(response)
        fetcher = HttpFetcher(make_config(user_agent="test-agent/1.0"), session=session)

        assert fetcher.fetch_page("https://example.test/") == "柴犬の里親募集"
        assert response.closed
        url, kwargs = session.requests[0]
        assert kwargs["headers"]["User-Agent"] == "test-agent/1.0"
        assert kwargs["stream"] is True

    def test_fetch_page_defaults_to_utf8(self, make_config):
        response = FakeResponse(
            chunks=["ポチ".encode("utf-8")],
            headers={"Content-Type": "text/html"},
            encoding="ISO-8859-1",
        )
        fetcher = HttpFetcher(make_config(), session=FakeSession(response))

        assert fetcher.fetch_page("https://example.test/") == "ポチ"

    def test_windows_31j_label_decodes_as_cp932(self, make_config):
        response = FakeResponse(
            chunks=["里親募集・髙橋".encode("cp932")],
            headers={"Content-Type": "text/html; charset=Windows-31J"},
            encoding="Windows-31J",
        )
        fetcher = HttpFetcher(make_config(), session=FakeSession(response))

        assert fetcher.fetch_page("https://example.test/") == "里親募集・髙橋"

    def test_unknown_charset_falls_back_to_utf8(self, make_config):
        response = FakeResponse(
            chunks=["ポチ".encode("utf-8")],
            headers={"Content-Type": "text/html; charset=x-made-up"},
            encoding="x-made-up",
        )
        fetcher = HttpFetcher(make_config(), session=FakeSession(response))

        assert fetcher.fetch_page("https://example.test/") == "ポチ"

    def test_non_text_codec_raises_parse_error(self, make_config):
        response = FakeResponse(
            chunks=[b"<html></html>"],
            headers={"Content-Type": "text/html; charset=base64"},
            encoding="base64",
        )
        fetcher = HttpFetcher(make_config(), session=FakeSession(response))

        with pytest.raises(ParseError, match="Cannot decode"):
            fetcher.fetch_page("https://example.test/")

    def test_non_2xx_raises_status_error(self, make_config):
        response = FakeResponse(status_code=503)
        fetcher = HttpFetcher(make_config(), session=FakeSession(response))

        with pytest.raises(HttpStatusError) as excinfo:
            fetcher.fetch_page("https://example.test/")

        assert excinfo.value.status_code == 503
        assert response.closed

    def test_declared_length_over_limit(self, make_config):
        response = FakeResponse(headers={"Content-Length": str(11 * 1024 * 1024)})
        fetcher = HttpFetcher(make_config(), session=FakeSession(response))

        with pytest.raises(PayloadTooLargeError):
            fetcher.fetch_bytes("https://example.test/a.jpg", max_bytes=10 * 1024 * 1024)

    def test_streamed_length_over_limit(self, make_config):
        response = FakeResponse(chunks=[b"x" * 600, b"x" * 600])
        fetcher = HttpFetcher(make_config(), session=FakeSession(response))

        with pytest.raises(PayloadTooLargeError):
            fetcher.fetch_bytes("https://example.test/a.jpg", max_bytes=1000)

    def test_slow_body_hits_total_deadline(self, make_config):
        ticks = iter([0.0, 5.0, 20.0])
        response = FakeResponse(chunks=[b"a", b"b"])
        fetcher = HttpFetcher(make_config(), session=FakeSession(response), clock=lambda: next(ticks))

        with pytest.raises(NetworkError) as excinfo:
            fetcher.fetch_page("https://example.test/", timeout_seconds=15.0)

        assert excinfo.value.timed_out is True
        assert response.closed

    def test_transport_errors_become_network_errors(self, make_config):
        timeout = HttpFetcher(make_config(), session=FakeSession(error=requests.ReadTimeout("slow")))
        refused = HttpFetcher(make_config(), session=FakeSession(error=requests.ConnectionError("refused")))

        with pytest.raises(NetworkError) as excinfo:
            timeout.fetch_page("https://example.test/")
        assert excinfo.value.timed_out is True

        with pytest.raises(NetworkError) as excinfo:
            refused.fetch_page("https://example.test/")
        assert excinfo.value.timed_out is False

    def test_fetch_bytes_returns_body_and_type(self, make_config):
        response = FakeResponse(chunks=[b"\x89PNG", b"rest"], headers={"Content-Type": "image/png"})
        fetcher = HttpFetcher(make_config(), session=FakeSession(response))

        fetched = fetcher.fetch_bytes("https://example.test/a.png")

        assert fetched.body == b"\x89PNGrest"
        assert fetched.content_type == "image/png"


class TestRateLimiter:
    def test_spaces_consecutive_requests(self, fake_sleep):
        now = [100.0]
        limiter = RateLimiter(1.0, clock=lambda: now[0], sleep=fake_sleep)

        assert limiter.wait() == 0.0
        now[0] = 100.25
        assert limiter.wait() == pytest.approx(0.75)
        now[0] = 105.0
        assert limiter.wait() == 0.0
        assert fake_sleep.calls == [pytest.approx(0.75)]

    def test_zero_delay_never_sleeps(self, fake_sleep):
        limiter = RateLimiter(0.0, sleep=fake_sleep)
        for _ in range(3):
            limiter.wait()
        assert fake_sleep.calls == []


@pytest.mark.parametrize(
    ("label", "expected"),
    [
        (None, "utf-8"),
        ("Shift_JIS", "shift_jis"),
        ("Windows-31J", "cp932"),
        ('"EUC-JP"', "euc_jp"),
        ("no-such-charset", "utf-8"),
    ],
)
def test_resolve_charset(label, expected):
    assert resolve_charset(label) == expected
