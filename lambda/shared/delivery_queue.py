"""
Ordered Delivery Queue

FIFO per ordering group (object key), at-least-once, deduplicating buffer
between the object store's lifecycle events and the Broadcast Consumer.

- Received messages are leased: hidden from other receivers until their
  visibility deadline passes or they are acknowledged
- Unacknowledged messages become visible again and are redelivered
- A message redelivered max_redelivery_count times goes to the dead-letter
  sink instead of being delivered again
"""

import itertools
import threading
import time
import traceback
import uuid
from collections import OrderedDict
from dataclasses import replace
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from lifecycle_events import LifecycleEvent, QueueMessage
from pipeline_config import PipelineConfig
from pipeline_errors import DuplicateWindowActive, InvalidReceipt, QueueUnavailable
from retry_policy import call_with_retry


class InMemoryMessageStore:
    """Backing store for queue rows, iterated in enqueue order"""

    def __init__(self):
        self._rows: "OrderedDict[str, QueueMessage]" = OrderedDict()

    def put(self, message: QueueMessage) -> None:
        self._rows[message.message_id] = message

    def remove(self, message_id: str) -> None:
        self._rows.pop(message_id, None)

    def get(self, message_id: str) -> Optional[QueueMessage]:
        return self._rows.get(message_id)

    def __iter__(self) -> Iterator[QueueMessage]:
        return iter(list(self._rows.values()))

    def __len__(self) -> int:
        return len(self._rows)


class InMemoryDeadLetterSink:
    """Dead-letter sink that keeps poisoned messages in a list"""

    def __init__(self):
        self.messages: List[QueueMessage] = []

    def record_poison(self, message: QueueMessage) -> None:
        self.messages.append(message)


class OrderedDeliveryQueue:
    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        store=None,
        dead_letter_sink=None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or PipelineConfig()
        self.store = store if store is not None else InMemoryMessageStore()
        self.dead_letter_sink = dead_letter_sink if dead_letter_sink is not None else InMemoryDeadLetterSink()
        self._clock = clock
        self._sleep = sleep
        # One lock for all rows; makes each lease check-and-swap atomic
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)
        # dedup_key -> (message_id, expires_at)
        self._dedup: Dict[str, Tuple[str, float]] = {}
        # receipt_handle -> message_id, current handles only
        self._receipts: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self.store)

    def enqueue(self, event: LifecycleEvent, strict: bool = False) -> str:
        """
        Add an event to its ordering group and return its message id.

        A duplicate inside the dedup window returns the existing message id,
        or raises DuplicateWindowActive when strict is set.
        """
        dedup_key = event.dedup_key(self.config.dedup_window)

        with self._lock:
            now = self._clock()
            self._purge_dedup(now)

            existing = self._dedup.get(dedup_key)
            if existing is not None:
                message_id = existing[0]
                print(f"Duplicate enqueue for {event.event_type.value} {event.object_key}, keeping {message_id}")
                if strict:
                    raise DuplicateWindowActive(dedup_key, message_id)
                return message_id

            message = QueueMessage(
                message_id=uuid.uuid4().hex,
                event=event,
                dedup_key=dedup_key,
                sequence=next(self._sequence),
                enqueued_at=now,
            )

            try:
                call_with_retry(
                    self.store.put,
                    message,
                    policy=self.config.retry,
                    retry_on=(OSError,),
                    sleep=self._sleep,
                    description=f"Enqueue of {event.object_key}",
                )
            except OSError as e:
                raise QueueUnavailable(f"Backing store rejected {event.object_key}: {str(e)}") from e

            self._dedup[dedup_key] = (message.message_id, now + self.config.dedup_window)
            return message.message_id

    def receive(
        self,
        max_messages: Optional[int] = None,
        visibility_timeout: Optional[float] = None,
    ) -> List[QueueMessage]:
        """
        Lease up to max_messages visible messages, oldest first.

        Within an ordering group, nothing is returned past a message that is
        still in flight. An empty list means nothing is available.
        """
        max_messages = self.config.batch_size if max_messages is None else max_messages
        if visibility_timeout is None:
            visibility_timeout = self.config.visibility_timeout
        if max_messages < 1:
            return []

        with self._lock:
            now = self._clock()
            leased = itertools.islice(self._lease_visible(now, visibility_timeout), max_messages)
            return [replace(message) for message in leased]

    def acknowledge(self, receipt_handle: str) -> None:
        """Permanently remove a received message"""
        with self._lock:
            message = self._current_row(receipt_handle)
            del self._receipts[receipt_handle]
            self.store.remove(message.message_id)

    def extend_visibility(self, receipt_handle: str, additional_time: float) -> float:
        """Push a received message's visibility deadline out; returns the new deadline"""
        with self._lock:
            message = self._current_row(receipt_handle)
            message.visibility_deadline = max(message.visibility_deadline, self._clock()) + additional_time
            return message.visibility_deadline

    def pending_count(self) -> int:
        """Messages visible to the next receive"""
        with self._lock:
            now = self._clock()
            return sum(1 for m in self.store if not m.is_in_flight(now))

    def in_flight_count(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for m in self.store if m.is_in_flight(now))

    def _lease_visible(self, now: float, visibility_timeout: float) -> Iterator[QueueMessage]:
        blocked_groups = set()

        for message in self.store:
            if message.group_id in blocked_groups:
                continue
            if message.is_in_flight(now):
                blocked_groups.add(message.group_id)
                continue

            redeliveries = message.receive_count - 1
            if message.receive_count and redeliveries >= self.config.max_redelivery_count:
                if not self._dead_letter(message):
                    # Stays at the head of its group until the sink accepts it
                    blocked_groups.add(message.group_id)
                continue

            if message.receipt_handle is not None:
                self._receipts.pop(message.receipt_handle, None)
            message.receipt_handle = uuid.uuid4().hex
            message.visibility_deadline = now + visibility_timeout
            message.receive_count += 1
            self._receipts[message.receipt_handle] = message.message_id
            yield message

    def _dead_letter(self, message: QueueMessage) -> bool:
        """Hand a message to the dead-letter sink; the row is removed only once the sink accepts it"""
        print(
            f"Dead-lettering message {message.message_id} ({message.event.event_type.value} "
            f"{message.event.object_key}) after {message.receive_count} deliveries"
        )
        try:
            self.dead_letter_sink.record_poison(replace(message))
        except Exception as e:
            print(f"Dead-letter sink rejected message {message.message_id}, keeping it queued: {str(e)}")
            traceback.print_exc()
            return False

        if message.receipt_handle is not None:
            self._receipts.pop(message.receipt_handle, None)
        self.store.remove(message.message_id)
        return True

    def _current_row(self, receipt_handle: str) -> QueueMessage:
        message_id = self._receipts.get(receipt_handle)
        message = self.store.get(message_id) if message_id else None
        if message is None or message.receipt_handle != receipt_handle:
            raise InvalidReceipt(receipt_handle)
        return message

    def _purge_dedup(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._dedup.items() if expires_at <= now]
        for key in expired:
            del self._dedup[key]
