"""
Lifecycle event model for the image store pipeline

- LifecycleEvent: immutable notification that an object was created or removed
- QueueMessage: a LifecycleEvent wrapped with delivery bookkeeping
- Subscription: a static (event type filter, sink) pair
- Parsing of S3 notification records into LifecycleEvents
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Union
from urllib.parse import unquote_plus


class EventType(str, Enum):
    CREATED = "Created"
    REMOVED = "Removed"

    @classmethod
    def from_s3_event_name(cls, event_name: str) -> "EventType":
        """Map an S3 eventName (e.g. 'ObjectRemoved:Delete') to an EventType"""
        if event_name.startswith('ObjectCreated:'):
            return cls.CREATED
        if event_name.startswith('ObjectRemoved:'):
            return cls.REMOVED
        raise ValueError(f"Unsupported S3 event name: {event_name}")


@dataclass(frozen=True)
class LifecycleEvent:
    object_key: str
    event_type: EventType
    timestamp: datetime
    source_bucket_id: str

    @classmethod
    def from_s3_record(cls, record: Dict[str, Any]) -> "LifecycleEvent":
        """Build an event from one entry of an S3 notification's Records list"""
        s3_info = record['s3']
        # S3 URL-encodes keys in notifications
        key = unquote_plus(s3_info['object']['key'])

        return cls(
            object_key=key,
            event_type=EventType.from_s3_event_name(record['eventName']),
            timestamp=parse_timestamp(record['eventTime']),
            source_bucket_id=s3_info['bucket']['name'],
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LifecycleEvent":
        return cls(
            object_key=data['objectKey'],
            event_type=EventType(data['eventType']),
            timestamp=parse_timestamp(data['timestamp']),
            source_bucket_id=data['sourceBucketId'],
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            'objectKey': self.object_key,
            'eventType': self.event_type.value,
            'timestamp': self.timestamp.isoformat(),
            'sourceBucketId': self.source_bucket_id,
        }

    def dedup_key(self, dedup_window: float) -> str:
        """
        Key under which duplicate enqueues collapse.

        Derived from object key, event type and the timestamp bucket of
        width dedup_window seconds.
        """
        bucket = int(self.timestamp.timestamp() // dedup_window)
        raw = f"{self.object_key}|{self.event_type.value}|{bucket}"
        return hashlib.sha256(raw.encode('utf-8')).hexdigest()


@dataclass
class QueueMessage:
    message_id: str
    event: LifecycleEvent
    dedup_key: str
    sequence: int
    enqueued_at: float
    receipt_handle: Optional[str] = None
    visibility_deadline: float = 0.0
    receive_count: int = 0

    @property
    def group_id(self) -> str:
        """Ordering group; one per object key"""
        return self.event.object_key

    def is_in_flight(self, now: float) -> bool:
        return self.receipt_handle is not None and now < self.visibility_deadline


@dataclass(frozen=True)
class Subscription:
    event_types: FrozenSet[EventType]
    sink: Callable[[LifecycleEvent], Any]
    name: str = field(default="subscription")

    def matches(self, event: LifecycleEvent) -> bool:
        return event.event_type in self.event_types


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO-8601 timestamp (S3 uses a trailing 'Z') into an aware UTC datetime"""
    if isinstance(value, datetime):
        parsed = value
    else:
        if value.endswith('Z'):
            value = value[:-1] + '+00:00'
        parsed = datetime.fromisoformat(value)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_s3_notification(body: Union[str, Dict[str, Any]]) -> List[LifecycleEvent]:
    """
    Parse an S3 notification (dict or JSON string) into LifecycleEvents.

    The s3:TestEvent sent when a destination is configured yields no events.
    """
    if isinstance(body, str):
        body = json.loads(body)

    if body.get('Event') == 's3:TestEvent':
        print(f"Skipping S3 test event for bucket {body.get('Bucket', 'unknown')}")
        return []

    return [LifecycleEvent.from_s3_record(record) for record in body.get('Records', [])]


def filter_events(events: Iterable[LifecycleEvent], event_type: EventType) -> List[LifecycleEvent]:
    return [e for e in events if e.event_type == event_type]
