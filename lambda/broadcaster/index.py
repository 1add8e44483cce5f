"""
Lambda: Broadcaster

Consumes the broadcaster queue through an SQS event source.
- Each SQS record carries an S3 notification (ObjectCreated / ObjectRemoved)
- Every lifecycle event is published to the broadcast topic
- Records are independent: failed ones are reported as batch item failures
  and redelivered, the rest are deleted by the event source
"""

import json
import os
import sys
import traceback

import boto3

# Shared pipeline code (Lambda layer path, then repo path for local runs)
sys.path.insert(0, '/opt')
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../shared'))

from broadcast import SnsBroadcastSink
from lifecycle_events import parse_s3_notification

# Initialize client
sns_client = boto3.client('sns')

# Environment variables
TOPIC_ARN = os.environ['TOPIC_ARN']

sink = SnsBroadcastSink(sns_client, TOPIC_ARN)

print(f"Lambda initialized - TOPIC_ARN: {TOPIC_ARN}")


def handler(event, context):
    """
    Main handler for Broadcaster Lambda

    Args:
        event: SQS batch; each record body is an S3 notification
        context: Lambda context

    Returns:
        Partial batch response listing the records to redeliver
    """
    records = event.get('Records', [])
    print(f"Processing batch of {len(records)} records")

    failures = []
    broadcast_count = 0

    for record in records:
        message_id = record['messageId']
        try:
            broadcast_count += process_record(record)
        except Exception as e:
            receive_count = record.get('attributes', {}).get('ApproximateReceiveCount', '?')
            print(f"Error processing record {message_id} (receive count {receive_count}): {str(e)}")
            traceback.print_exc()
            failures.append({'itemIdentifier': message_id})

    print(f"Broadcast {broadcast_count} events, {len(failures)} records failed")

    return {'batchItemFailures': failures}


def process_record(record: dict) -> int:
    """Broadcast every lifecycle event in one SQS record; returns the count"""
    lifecycle_events = parse_s3_notification(record['body'])

    for lifecycle_event in lifecycle_events:
        print(f"Broadcasting {json.dumps(lifecycle_event.to_dict())}")
        sink.broadcast(lifecycle_event)

    return len(lifecycle_events)
