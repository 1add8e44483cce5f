"""
Lambda: Invalidator

Invoked directly by S3 for every ObjectRemoved notification.
- Parses the notification records into lifecycle events
- Invalidates the cached path of each removed object
- Raises on failure so Lambda's async retry delivers the event again;
  already-invalidated events are skipped on redelivery
"""

import json
import os
import sys

import boto3

# Shared pipeline code (Lambda layer path, then repo path for local runs)
sys.path.insert(0, '/opt')
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../shared'))

from invalidation import InvalidationConsumer
from lifecycle_events import EventType, filter_events, parse_s3_notification
from pipeline_errors import InvalidationError

# Environment variables
DISTRIBUTION_ID = os.environ.get('DISTRIBUTION_ID', '')
INVALIDATION_PATH_PREFIX = os.environ.get('INVALIDATION_PATH_PREFIX', '/')

# Initialize client and consumer (reused across warm invocations)
cloudfront_client = boto3.client('cloudfront') if DISTRIBUTION_ID else None
consumer = InvalidationConsumer(
    cloudfront_client=cloudfront_client,
    distribution_id=DISTRIBUTION_ID or None,
    path_prefix=INVALIDATION_PATH_PREFIX,
)

print(f"Lambda initialized - DISTRIBUTION_ID: {DISTRIBUTION_ID or '(none)'}")


def handler(event, context):
    """
    Main handler for Invalidator Lambda

    Args:
        event: S3 notification with ObjectRemoved records
        context: Lambda context

    Returns:
        Dict with counts of invalidated and skipped objects
    """
    print(f"Received event: {json.dumps(event)}")

    lifecycle_events = parse_s3_notification(event)
    removed = filter_events(lifecycle_events, EventType.REMOVED)

    invalidated = 0
    skipped = len(lifecycle_events) - len(removed)
    failures = []

    for lifecycle_event in removed:
        try:
            if consumer.invalidate(lifecycle_event):
                invalidated += 1
            else:
                skipped += 1
        except InvalidationError as e:
            print(f"Error invalidating {lifecycle_event.object_key}: {str(e)}")
            failures.append(lifecycle_event.object_key)

    print(f"Invalidated {invalidated} objects, skipped {skipped}")

    if failures:
        raise InvalidationError(f"Failed to invalidate {len(failures)} objects: {', '.join(failures)}")

    return {
        'statusCode': 200,
        'invalidated': invalidated,
        'skipped': skipped,
    }
