"""Downstream queue dispatch with dead-letter routing and bounded redelivery."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol

from .constants import DEFAULT_MAX_REDELIVERIES
from .errors import QueueError
from .retry import RetryConfig, RetryHandler
from .types import JSONDict, PetType, QueueMessage, utc_now_iso

LOGGER = logging.getLogger(__name__)


class MessageQueue(Protocol):
    name: str

    def send(self, message: Mapping[str, Any]) -> None: ...

    def send_batch(self, messages: Iterable[Mapping[str, Any]]) -> None: ...


class JsonlQueue:
    """Append-only JSONL file standing in for a message queue.

    `send_batch` writes every line with a single write call, so a batch is
    appended whole or not at all from the reader's point of view.
    """

    def __init__(self, path: str | Path, *, name: str | None = None) -> None:
        self.path = Path(path)
        self.name = name or self.path.stem
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def send(self, message: Mapping[str, Any]) -> None:
        self.send_batch([message])

    def send_batch(self, messages: Iterable[Mapping[str, Any]]) -> None:
        lines = [json.dumps(dict(message), ensure_ascii=False, sort_keys=True) for message in messages]
        if not lines:
            return
        data = ("\n".join(lines) + "\n").encode("utf-8")
        with self._lock:
            with self.path.open("ab") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())

    def read_all(self) -> list[JSONDict]:
        if not self.path.exists():
            return []
        messages: list[JSONDict] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    messages.append(json.loads(line))
                except json.JSONDecodeError:
                    LOGGER.warning("Skipping malformed line in %s", self.path)
        return messages


class QueueDispatcher:
    """Send pending item ids to one downstream queue.

    A batch that still fails after retries is copied to the dead-letter queue
    and surfaced as `QueueError`; the caller keeps the ids pending so the next
    run retries them.
    """

    def __init__(
        self,
        queue: MessageQueue,
        dead_letter_queue: MessageQueue,
        retry: RetryHandler,
        retry_config: RetryConfig,
        *,
        source_id: str,
        max_redeliveries: int = DEFAULT_MAX_REDELIVERIES,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.queue = queue
        self.dead_letter_queue = dead_letter_queue
        self.retry = retry
        self.retry_config = retry_config
        self.source_id = source_id
        self.max_redeliveries = max_redeliveries
        self._clock = clock

    def build_messages(
        self,
        batch_id: str,
        item_type: PetType,
        pending_ids: list[str],
        expected_total: int,
    ) -> list[QueueMessage]:
        timestamp = self._clock()
        return [
            QueueMessage(
                batch_id=batch_id,
                item_id=item_id,
                item_type=item_type,
                expected_total=expected_total,
                source=self.source_id,
                timestamp=timestamp,
            )
            for item_id in pending_ids
        ]

    def enqueue_pending(
        self,
        batch_id: str,
        item_type: PetType,
        pending_ids: list[str],
        expected_total: int | None = None,
    ) -> int:
        if not pending_ids:
            return 0

        total = len(pending_ids) if expected_total is None else expected_total
        messages = self.build_messages(batch_id, item_type, pending_ids, total)
        payloads = [message.to_json() for message in messages]

        try:
            self.retry.execute(
                lambda: self.queue.send_batch(payloads),
                self.retry_config,
                label=f"send {self.queue.name}",
            )
        except Exception as exc:
            self._dead_letter(messages, str(exc))
            raise QueueError(
                f"Failed to send {len(messages)} messages to {self.queue.name}: {exc}"
            ) from exc

        LOGGER.info("Sent %d messages to %s (batch %s)", len(messages), self.queue.name, batch_id)
        return len(messages)

    def redeliver(self, message: QueueMessage, error: str) -> bool:
        """Consumer-side retry: re-send with `retry_count + 1` or dead-letter.

        Returns True when the message was re-sent.
        """

        if message.retry_count >= self.max_redeliveries:
            LOGGER.warning(
                "Message for %s exceeded %d redeliveries; dead-lettering",
                message.item_id,
                self.max_redeliveries,
            )
            self._dead_letter([message], error)
            return False

        retried = replace(message, retry_count=message.retry_count + 1, timestamp=self._clock())
        self.queue.send(retried.to_json())
        return True

    def _dead_letter(self, messages: list[QueueMessage], error: str) -> None:
        failed_at = self._clock()
        payloads = [message.to_dead_letter(error, failed_at) for message in messages]
        try:
            self.dead_letter_queue.send_batch(payloads)
        except Exception as exc:
            raise QueueError(
                f"Failed to dead-letter {len(payloads)} messages to {self.dead_letter_queue.name}: {exc}"
            ) from exc
        LOGGER.error(
            "Dead-lettered %d messages to %s: %s",
            len(payloads),
            self.dead_letter_queue.name,
            error,
        )


__all__ = ["JsonlQueue", "MessageQueue", "QueueDispatcher"]
