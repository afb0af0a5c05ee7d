"""Unit tests for RetryHandler and the HTTP/storage retry classifiers."""

import pytest

from ingest.crawler.errors import HttpStatusError, NetworkError, PersistenceError
from ingest.crawler.retry import (
    RetryConfig,
    RetryHandler,
    http_retry_config,
    is_retryable_http_error,
    is_retryable_storage_error,
    storage_retry_config,
)


class FlakyOperation:
    def __init__(self, failures: list[Exception], result: str = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class TestRetryHandler:
    def test_backoff_delays_double_between_attempts(self, fake_sleep):
        """Two 503s then success: attempts at t=0, 1, 3 seconds."""
        handler = RetryHandler(sleep=fake_sleep)
        config = RetryConfig(3, 1.0, 2.0, is_retryable_http_error)
        operation = FlakyOperation([HttpStatusError(503), HttpStatusError(503)])

        assert handler.execute(operation, config) == "ok"
        assert operation.calls == 3
        assert fake_sleep.calls == [1.0, 2.0]

        elapsed = [0.0]
        for delay in fake_sleep.calls:
            elapsed.append(elapsed[-1] + delay)
        assert elapsed == [0.0, 1.0, 3.0]

    def test_exhausted_attempts_reraise_original_exception(self, fake_sleep):
        handler = RetryHandler(sleep=fake_sleep)
        last = NetworkError("Request timed out", timed_out=True)
        operation = FlakyOperation([NetworkError("timeout"), NetworkError("timeout"), last])

        with pytest.raises(NetworkError) as excinfo:
            handler.execute(operation, RetryConfig(3, 1.0, 2.0, is_retryable_http_error))

        assert excinfo.value is last
        assert operation.calls == 3
        assert fake_sleep.calls == [1.0, 2.0]

    def test_non_retryable_error_fails_immediately(self, fake_sleep):
        handler = RetryHandler(sleep=fake_sleep)
        operation = FlakyOperation([HttpStatusError(404)])

        with pytest.raises(HttpStatusError):
            handler.execute(operation, RetryConfig(3, 1.0, 2.0, is_retryable_http_error))

        assert operation.calls == 1
        assert fake_sleep.calls == []

    def test_zero_delay_does_not_sleep(self, fake_sleep):
        handler = RetryHandler(sleep=fake_sleep)
        operation = FlakyOperation([PersistenceError("database is locked")])

        assert handler.execute(operation, RetryConfig(2, 0.0, 2.0, is_retryable_storage_error)) == "ok"
        assert fake_sleep.calls == []

    def test_invalid_config_is_rejected(self):
        with pytest.raises(ValueError):
            RetryConfig(0, 1.0)
        with pytest.raises(ValueError):
            RetryConfig(1, -1.0)


class TestClassifiers:
    @pytest.mark.parametrize("status", [429, 502, 503, 504])
    def test_transient_statuses_are_retryable(self, status):
        assert is_retryable_http_error(HttpStatusError(status)) is True

    @pytest.mark.parametrize("status", [400, 403, 404, 500])
    def test_other_statuses_are_not_retryable(self, status):
        assert is_retryable_http_error(HttpStatusError(status)) is False

    def test_network_errors_and_transient_messages_are_retryable(self):
        assert is_retryable_http_error(NetworkError("reset by peer")) is True
        assert is_retryable_http_error(OSError("Connection reset")) is True
        assert is_retryable_http_error(ValueError("bad markup")) is False

    def test_storage_classifier_matches_lock_contention(self):
        assert is_retryable_storage_error(PersistenceError("database is locked")) is True
        assert is_retryable_storage_error(PersistenceError("SQLITE_BUSY")) is True
        assert is_retryable_storage_error(PersistenceError("no such table: pets")) is False

    def test_policies_follow_config(self, make_config):
        config = make_config(http_retry_attempts=4, storage_retry_attempts=2, backoff_multiplier=3.0)

        http = http_retry_config(config)
        storage = storage_retry_config(config)

        assert http.max_attempts == 4
        assert http.delay_for(2) == pytest.approx(3.0)
        assert storage.max_attempts == 2
        assert storage.delay_for(1) == pytest.approx(0.5)
