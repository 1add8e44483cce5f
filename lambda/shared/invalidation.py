"""
Invalidation Consumer

Push handler for Removed events: invalidates the removed object's cached
path. Idempotent per event, so retried or redelivered invalidations are
no-ops.
"""

import hashlib
import threading
from typing import Optional, Set, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from lifecycle_events import EventType, LifecycleEvent
from pipeline_errors import InvalidationError


class InvalidationConsumer:
    def __init__(self, cloudfront_client=None, distribution_id: Optional[str] = None, path_prefix: str = "/"):
        self.cloudfront_client = cloudfront_client
        self.distribution_id = distribution_id
        self.path_prefix = path_prefix
        self._invalidated: Set[Tuple[str, str, str]] = set()
        self._lock = threading.Lock()

    def invalidate(self, event: LifecycleEvent) -> bool:
        """
        Invalidate the cached path of a removed object.

        Returns True when work was done, False for ignored or already
        handled events. Raises InvalidationError if the CDN call fails.
        """
        if event.event_type != EventType.REMOVED:
            print(f"Ignoring {event.event_type.value} event for {event.object_key}")
            return False

        identity = _event_identity(event)
        with self._lock:
            if identity in self._invalidated:
                print(f"Already invalidated: {event.object_key}")
                return False

        if self.distribution_id:
            self._create_invalidation(event)
        else:
            print(f"No distribution configured, recording invalidation of {event.object_key}")

        with self._lock:
            self._invalidated.add(identity)
        return True

    def is_invalidated(self, event: LifecycleEvent) -> bool:
        with self._lock:
            return _event_identity(event) in self._invalidated

    def _create_invalidation(self, event: LifecycleEvent) -> None:
        path = self.path_prefix.rstrip('/') + '/' + event.object_key.lstrip('/')

        print(f"Invalidating {path} on distribution {self.distribution_id}")

        try:
            response = self.cloudfront_client.create_invalidation(
                DistributionId=self.distribution_id,
                InvalidationBatch={
                    'Paths': {'Quantity': 1, 'Items': [path]},
                    # Same reference for the same event, so CloudFront dedupes retries
                    'CallerReference': caller_reference(event),
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise InvalidationError(f"Invalidation of {path} failed: {str(e)}") from e

        invalidation = response.get('Invalidation', {})
        print(f"Invalidation {invalidation.get('Id', 'unknown')} status: {invalidation.get('Status', 'unknown')}")


def caller_reference(event: LifecycleEvent) -> str:
    raw = '|'.join(_event_identity(event))
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()


def _event_identity(event: LifecycleEvent) -> Tuple[str, str, str]:
    return (event.source_bucket_id, event.object_key, event.timestamp.isoformat())
