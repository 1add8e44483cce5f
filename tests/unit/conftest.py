"""
Shared fixtures for pipeline unit tests
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add lambda/shared to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../lambda/shared'))

# boto3 clients are created at handler import time
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-east-1')

from lifecycle_events import EventType, LifecycleEvent

BASE_TIME = datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for lease and dedup window tests"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryObjectStore:
    """Object store double: put/delete emit lifecycle events after mutating"""

    def __init__(self, bucket: str = 'image-store'):
        self.bucket = bucket
        self.objects = {}
        self._callbacks = []

    def on_mutation(self, callback):
        self._callbacks.append(callback)

    def put(self, key: str, data: bytes, when: datetime = BASE_TIME):
        self.objects[key] = data
        return self._emit(key, EventType.CREATED, when)

    def delete(self, key: str, when: datetime = BASE_TIME):
        self.objects.pop(key, None)
        return self._emit(key, EventType.REMOVED, when)

    def _emit(self, key, event_type, when):
        event = LifecycleEvent(key, event_type, when, self.bucket)
        for callback in self._callbacks:
            callback(event)
        return event


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def object_store():
    return InMemoryObjectStore()


@pytest.fixture
def make_event():
    def _make(key='a.png', event_type=EventType.CREATED, offset_seconds=0, bucket='image-store'):
        return LifecycleEvent(
            object_key=key,
            event_type=event_type,
            timestamp=BASE_TIME + timedelta(seconds=offset_seconds),
            source_bucket_id=bucket,
        )
    return _make


def s3_record(key='a.png', event_name='ObjectCreated:Put', bucket='image-store',
              event_time='2024-01-15T10:30:00.000Z'):
    """One S3 notification record as delivered by S3"""
    return {
        'eventVersion': '2.1',
        'eventSource': 'aws:s3',
        'awsRegion': 'us-east-1',
        'eventTime': event_time,
        'eventName': event_name,
        's3': {
            'bucket': {'name': bucket, 'arn': f'arn:aws:s3:::{bucket}'},
            'object': {'key': key, 'size': 1024},
        },
    }
