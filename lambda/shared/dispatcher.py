"""
Dispatcher: routes object store mutations to their sinks

Each mutation produces two independent side effects:
- Push branch: matching subscriptions (the Invalidator for Removed events)
  are called synchronously, with bounded retry
- Queue branch: the event is enqueued onto the Ordered Delivery Queue on a
  background executor; the queue retries its own store writes

Neither branch can fail the mutation; any failure raises an alert.
"""

import time
import traceback
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from lifecycle_events import EventType, LifecycleEvent, Subscription
from pipeline_errors import QueueUnavailable
from retry_policy import RetryPolicy, call_with_retry


def default_subscriptions(invalidation_consumer) -> List[Subscription]:
    """Removed events are pushed to the Invalidation Consumer"""
    return [
        Subscription(
            event_types=frozenset({EventType.REMOVED}),
            sink=invalidation_consumer.invalidate,
            name="invalidator",
        )
    ]


def print_alert(alert: Dict[str, Any]) -> None:
    print(f"ALERT [{alert['kind']}] {alert['event_type']} {alert['object_key']}: {alert['error']}")


class Dispatcher:
    def __init__(
        self,
        queue,
        subscriptions: Iterable[Subscription] = (),
        queue_event_types: Iterable[EventType] = (EventType.CREATED, EventType.REMOVED),
        retry_policy: Optional[RetryPolicy] = None,
        executor: Optional[Executor] = None,
        on_alert: Optional[Callable[[Dict[str, Any]], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.queue = queue
        self.subscriptions = list(subscriptions)
        self.queue_event_types = frozenset(queue_event_types)
        self.retry_policy = retry_policy or RetryPolicy()
        self.on_alert = on_alert or print_alert
        self._sleep = sleep
        self._owns_executor = executor is None
        # One worker keeps enqueue order per object key
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="enqueue")

    def attach(self, object_store) -> None:
        """Register for lifecycle events on the object store's mutation hook"""
        object_store.on_mutation(self.dispatch)

    def dispatch(self, event: LifecycleEvent) -> Optional["Future[Optional[str]]"]:
        """
        Notify all sinks of one mutation.

        Returns the future of the enqueue branch, or None when the event
        type is not queued.
        """
        future = None
        if event.event_type in self.queue_event_types:
            future = self._executor.submit(self._enqueue, event)

        for subscription in self.subscriptions:
            if subscription.matches(event):
                self._push(subscription, event)

        return future

    def close(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def _push(self, subscription: Subscription, event: LifecycleEvent) -> bool:
        try:
            call_with_retry(
                subscription.sink,
                event,
                policy=self.retry_policy,
                sleep=self._sleep,
                description=f"Push of {event.object_key} to {subscription.name}",
            )
            return True
        except Exception as e:
            traceback.print_exc()
            self._alert(f"push_failed:{subscription.name}", event, e)
            return False

    def _enqueue(self, event: LifecycleEvent) -> Optional[str]:
        # Store write retries happen inside the queue
        try:
            return self.queue.enqueue(event)
        except QueueUnavailable as e:
            print(f"Enqueue of {event.object_key} failed: {str(e)}")
            self._alert("enqueue_failed", event, e)
            return None
        except Exception as e:
            traceback.print_exc()
            self._alert("enqueue_failed", event, e)
            return None

    def _alert(self, kind: str, event: LifecycleEvent, error: Exception) -> None:
        self.on_alert({
            'kind': kind,
            'object_key': event.object_key,
            'event_type': event.event_type.value,
            'error': str(error),
            'ts': datetime.now(timezone.utc).isoformat(),
        })
