import pytest

from ingest.crawler.errors import QueueError
from ingest.crawler.queues import JsonlQueue, QueueDispatcher
from ingest.crawler.retry import RetryConfig, RetryHandler, is_retryable_storage_error
from ingest.crawler.types import PetType, QueueMessage

NOW = "2026-03-01T00:00:00.000000+00:00"


class BrokenQueue:
    name = "screenshot"

    def __init__(self, error: Exception) -> None:
        self.error = error
        self.attempts = 0

    def send(self, message):
        self.send_batch([message])

    def send_batch(self, messages):
        self.attempts += 1
        raise self.error


@pytest.fixture
def queues(tmp_path):
    return (
        JsonlQueue(tmp_path / "screenshot.jsonl", name="screenshot"),
        JsonlQueue(tmp_path / "screenshot-dlq.jsonl", name="screenshot-dlq"),
    )


def make_dispatcher(queue, dlq, sleep, *, max_redeliveries=3):
    return QueueDispatcher(
        queue,
        dlq,
        RetryHandler(sleep=sleep),
        RetryConfig(2, 0.5, 2.0, is_retryable_storage_error),
        source_id="pet-home",
        max_redeliveries=max_redeliveries,
        clock=lambda: NOW,
    )


def test_enqueue_pending_writes_one_message_per_id(queues, fake_sleep):
    queue, dlq = queues
    dispatcher = make_dispatcher(queue, dlq, fake_sleep)

    sent = dispatcher.enqueue_pending("batch-1-dog", PetType.DOG, ["pet-home_2", "pet-home_1"])

    assert sent == 2
    assert queue.read_all() == [
        {
            "batchId": "batch-1-dog",
            "petId": "pet-home_2",
            "petType": "dog",
            "expectedTotal": 2,
            "source": "pet-home",
            "timestamp": NOW,
            "retryCount": 0,
        },
        {
            "batchId": "batch-1-dog",
            "petId": "pet-home_1",
            "petType": "dog",
            "expectedTotal": 2,
            "source": "pet-home",
            "timestamp": NOW,
            "retryCount": 0,
        },
    ]
    assert dlq.read_all() == []


def test_empty_pending_sends_nothing(queues, fake_sleep):
    queue, dlq = queues
    assert make_dispatcher(queue, dlq, fake_sleep).enqueue_pending("b", PetType.CAT, []) == 0
    assert not queue.path.exists()


def test_failed_send_goes_to_dead_letter_queue(queues, fake_sleep):
    _, dlq = queues
    broken = BrokenQueue(OSError("connection refused"))
    dispatcher = make_dispatcher(broken, dlq, fake_sleep)

    with pytest.raises(QueueError, match="Failed to send 2 messages to screenshot"):
        dispatcher.enqueue_pending("batch-9-cat", PetType.CAT, ["pet-home_5", "pet-home_4"])

    assert broken.attempts == 1
    dead = dlq.read_all()
    assert [message["petId"] for message in dead] == ["pet-home_5", "pet-home_4"]
    assert dead[0]["error"] == "connection refused"
    assert dead[0]["failedAt"] == NOW


def test_transient_send_failure_is_retried_before_dead_lettering(queues, fake_sleep):
    _, dlq = queues
    broken = BrokenQueue(OSError("queue busy"))
    dispatcher = make_dispatcher(broken, dlq, fake_sleep)

    with pytest.raises(QueueError):
        dispatcher.enqueue_pending("batch-9-cat", PetType.CAT, ["pet-home_5"])

    assert broken.attempts == 2
    assert fake_sleep.calls == [0.5]
    assert len(dlq.read_all()) == 1


def test_redeliver_increments_retry_count(queues, fake_sleep):
    queue, dlq = queues
    dispatcher = make_dispatcher(queue, dlq, fake_sleep)
    message = QueueMessage("batch-1-dog", "pet-home_1", PetType.DOG, 1, "pet-home", "2026-01-01T00:00:00+00:00")

    assert dispatcher.redeliver(message, "render failed") is True

    (resent,) = queue.read_all()
    assert resent["retryCount"] == 1
    assert resent["timestamp"] == NOW
    assert dlq.read_all() == []


def test_redeliver_dead_letters_after_max_retries(queues, fake_sleep):
    queue, dlq = queues
    dispatcher = make_dispatcher(queue, dlq, fake_sleep, max_redeliveries=3)
    message = QueueMessage("batch-1-dog", "pet-home_1", PetType.DOG, 1, "pet-home", retry_count=3)

    assert dispatcher.redeliver(message, "render failed") is False

    assert queue.read_all() == []
    (dead,) = dlq.read_all()
    assert dead["retryCount"] == 3
    assert dead["error"] == "render failed"


def test_message_round_trip():
    message = QueueMessage("batch-1-dog", "pet-home_1", PetType.DOG, 4, "pet-home", NOW, 2)
    assert QueueMessage.from_json(message.to_json()) == message
