"""
Broadcast Consumer: batched polling loop over the Ordered Delivery Queue

Idle -> Polling -> Processing(batch) -> Acknowledging -> Idle, until stopped.
Each message's outcome is independent: successes are acknowledged right
away, failures stay unacknowledged and are redelivered after the visibility
timeout.
"""

import threading
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pipeline_config import PipelineConfig
from pipeline_errors import InvalidReceipt


class ConsumerState(str, Enum):
    IDLE = "IDLE"
    POLLING = "POLLING"
    PROCESSING = "PROCESSING"
    ACKNOWLEDGING = "ACKNOWLEDGING"
    STOPPED = "STOPPED"


@dataclass
class BatchResult:
    received: int = 0
    acknowledged: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    # Broadcast, but the lease had already passed to another receiver
    stale: List[str] = field(default_factory=list)


class BroadcastConsumer:
    def __init__(
        self,
        queue,
        sink,
        config: Optional[PipelineConfig] = None,
        on_alert: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> None:
        self.queue = queue
        self.sink = sink
        self.config = config or queue.config
        self.on_alert = on_alert
        self.state = ConsumerState.IDLE
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self.state = ConsumerState.IDLE
        self._thread = threading.Thread(target=self.run, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Ask the loop to stop after its current batch and wait for it"""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    def run(self) -> None:
        print("Broadcast consumer started")
        try:
            while not self._stop_event.is_set():
                try:
                    result = self.poll_once()
                except Exception as e:
                    print(f"Broadcast consumer poll failed: {str(e)}")
                    traceback.print_exc()
                    self.state = ConsumerState.IDLE
                    if self.on_alert:
                        self.on_alert({
                            'kind': 'poll_failed',
                            'error': str(e),
                        })
                    self._stop_event.wait(self.config.poll_interval)
                    continue

                if not result.received:
                    self._stop_event.wait(self.config.poll_interval)
        finally:
            self.state = ConsumerState.STOPPED
            print("Broadcast consumer stopped")

    def poll_once(self) -> BatchResult:
        """Receive one batch, broadcast each message and acknowledge the successes"""
        result = BatchResult()

        self.state = ConsumerState.POLLING
        messages = self.queue.receive(
            max_messages=self.config.batch_size,
            visibility_timeout=self.config.visibility_timeout,
        )
        result.received = len(messages)

        if messages:
            print(f"Received batch of {len(messages)} messages")

        for message in messages:
            self.state = ConsumerState.PROCESSING
            event = message.event
            try:
                self.sink.broadcast(event)
            except Exception as e:
                print(
                    f"Broadcast failed for message {message.message_id} "
                    f"({event.event_type.value} {event.object_key}), "
                    f"delivery {message.receive_count}: {str(e)}"
                )
                traceback.print_exc()
                result.failed.append(message.message_id)
                continue

            self.state = ConsumerState.ACKNOWLEDGING
            try:
                self.queue.acknowledge(message.receipt_handle)
            except InvalidReceipt as e:
                # Lease expired and the message was handed out again
                print(f"Ignoring stale acknowledgment for {message.message_id}: {str(e)}")
                result.stale.append(message.message_id)
                continue
            result.acknowledged.append(message.message_id)

        self.state = ConsumerState.IDLE

        if result.failed and self.on_alert:
            self.on_alert({
                'kind': 'broadcast_failed',
                'message_ids': list(result.failed),
                'received': result.received,
            })

        return result
