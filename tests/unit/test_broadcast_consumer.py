"""
Unit tests for the Broadcast Consumer polling loop
"""

import threading
import time
from unittest.mock import Mock

import pytest

from broadcast_consumer import BroadcastConsumer, ConsumerState
from delivery_queue import OrderedDeliveryQueue
from pipeline_config import PipelineConfig
from pipeline_errors import BroadcastError, InvalidReceipt
from retry_policy import RetryPolicy


class RecordingSink:
    """Broadcast sink that fails for chosen object keys"""

    def __init__(self, failing_keys=()):
        self.failing_keys = set(failing_keys)
        self.broadcasts = []

    def broadcast(self, event):
        if event.object_key in self.failing_keys:
            raise BroadcastError(f"subscriber rejected {event.object_key}")
        self.broadcasts.append(event)


@pytest.fixture
def config():
    return PipelineConfig(
        max_redelivery_count=3,
        visibility_timeout=30.0,
        batch_size=5,
        poll_interval=0.01,
        retry=RetryPolicy(attempts=1),
    )


@pytest.fixture
def queue(config, clock):
    return OrderedDeliveryQueue(config=config, clock=clock, sleep=lambda s: None)


class TestPollOnce:
    """Tests for a single batch cycle"""

    def test_empty_poll(self, queue):
        consumer = BroadcastConsumer(queue, RecordingSink())

        result = consumer.poll_once()

        assert result.received == 0
        assert consumer.state == ConsumerState.IDLE

    def test_batch_with_one_failure(self, queue, make_event, clock):
        ids = [queue.enqueue(make_event(key=f'{i}.png')) for i in range(1, 6)]
        sink = RecordingSink(failing_keys={'3.png'})
        alerts = []
        consumer = BroadcastConsumer(queue, sink, on_alert=alerts.append)

        result = consumer.poll_once()

        assert result.received == 5
        assert result.acknowledged == [ids[0], ids[1], ids[3], ids[4]]
        assert result.failed == [ids[2]]
        assert len(queue) == 1
        assert alerts[0]['message_ids'] == [ids[2]]

        # Still leased until the visibility timeout passes
        assert consumer.poll_once().received == 0

        clock.advance(31)
        sink.failing_keys.clear()
        retry = consumer.poll_once()

        assert retry.acknowledged == [ids[2]]
        assert len(queue) == 0
        assert [e.object_key for e in sink.broadcasts] == ['1.png', '2.png', '4.png', '5.png', '3.png']

    def test_uses_configured_batch_size(self, queue, make_event):
        for i in range(8):
            queue.enqueue(make_event(key=f'{i}.png'))
        consumer = BroadcastConsumer(queue, RecordingSink())

        assert consumer.poll_once().received == 5
        assert consumer.poll_once().received == 3

    def test_stale_receipt_is_ignored(self, make_event, config):
        queue = Mock()
        queue.config = config
        real = OrderedDeliveryQueue(config=config)
        real.enqueue(make_event())
        queue.receive.return_value = real.receive()
        queue.acknowledge.side_effect = InvalidReceipt('stale')
        consumer = BroadcastConsumer(queue, RecordingSink())

        result = consumer.poll_once()

        assert result.acknowledged == []
        assert len(result.stale) == 1
        assert result.failed == []

    def test_poison_message_reaches_dead_letter(self, queue, make_event, clock):
        message_id = queue.enqueue(make_event(key='poison.png'))
        consumer = BroadcastConsumer(queue, RecordingSink(failing_keys={'poison.png'}))

        for _ in range(4):
            assert consumer.poll_once().failed == [message_id]
            clock.advance(31)

        assert consumer.poll_once().received == 0
        assert [m.message_id for m in queue.dead_letter_sink.messages] == [message_id]


class TestRunLoop:
    """Tests for the background loop and cooperative shutdown"""

    def test_processes_until_stopped(self, queue, make_event):
        sink = RecordingSink()
        consumer = BroadcastConsumer(queue, sink)
        consumer.start()

        for i in range(12):
            queue.enqueue(make_event(key=f'{i}.png'))

        deadline = time.time() + 5
        while len(queue) and time.time() < deadline:
            time.sleep(0.01)

        consumer.stop(timeout=5)

        assert len(queue) == 0
        assert len(sink.broadcasts) == 12
        assert consumer.state == ConsumerState.STOPPED

    def test_stop_finishes_current_batch(self, queue, make_event):
        started = threading.Event()
        release = threading.Event()
        broadcasts = []

        class BlockingSink:
            def broadcast(self, event):
                started.set()
                release.wait(5)
                broadcasts.append(event)

        for i in range(3):
            queue.enqueue(make_event(key=f'{i}.png'))
        consumer = BroadcastConsumer(queue, BlockingSink())
        consumer.start()

        assert started.wait(5)
        stopper = threading.Thread(target=consumer.stop, kwargs={'timeout': 5})
        stopper.start()
        release.set()
        stopper.join(5)

        assert consumer.state == ConsumerState.STOPPED
        assert len(broadcasts) == 3
        assert len(queue) == 0

    def test_concurrent_workers_share_queue(self, queue, make_event):
        sinks = [RecordingSink() for _ in range(3)]
        consumers = [BroadcastConsumer(queue, sink) for sink in sinks]
        for i in range(30):
            queue.enqueue(make_event(key=f'{i}.png'))

        for consumer in consumers:
            consumer.start()

        deadline = time.time() + 5
        while len(queue) and time.time() < deadline:
            time.sleep(0.01)
        for consumer in consumers:
            consumer.stop(timeout=5)

        keys = [e.object_key for sink in sinks for e in sink.broadcasts]
        assert sorted(keys) == sorted(f'{i}.png' for i in range(30))

    def test_survives_receive_failure(self, queue, make_event):
        sink = RecordingSink()
        alerts = []
        real_receive = queue.receive
        calls = []

        def receive_once_broken(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("queue store unreachable")
            return real_receive(*args, **kwargs)

        queue.receive = receive_once_broken
        queue.enqueue(make_event(key='after.png'))
        consumer = BroadcastConsumer(queue, sink, on_alert=alerts.append)
        consumer.start()

        deadline = time.time() + 5
        while len(queue) and time.time() < deadline:
            time.sleep(0.01)

        assert consumer._thread.is_alive()
        consumer.stop(timeout=5)

        assert [e.object_key for e in sink.broadcasts] == ['after.png']
        assert alerts[0] == {'kind': 'poll_failed', 'error': 'queue store unreachable'}
        assert consumer.state == ConsumerState.STOPPED

    def test_survives_dead_letter_sink_failure(self, config, clock, make_event):
        class UnreachableSink:
            def record_poison(self, message):
                raise ConnectionError("dead-letter store unreachable")

        config.max_redelivery_count = 0
        queue = OrderedDeliveryQueue(
            config=config, dead_letter_sink=UnreachableSink(), clock=clock, sleep=lambda s: None
        )
        queue.enqueue(make_event(key='poison.png'))
        queue.receive()
        clock.advance(31)
        queue.enqueue(make_event(key='other.png'))
        sink = RecordingSink()
        consumer = BroadcastConsumer(queue, sink)
        consumer.start()

        deadline = time.time() + 5
        while not sink.broadcasts and time.time() < deadline:
            time.sleep(0.01)

        assert consumer._thread.is_alive()
        consumer.stop(timeout=5)

        assert [e.object_key for e in sink.broadcasts] == ['other.png']
        assert len(queue) == 1
