"""
Broadcast sink: fans lifecycle events out to an SNS topic
"""

import json

from botocore.exceptions import BotoCoreError, ClientError

from lifecycle_events import LifecycleEvent
from pipeline_errors import BroadcastError


class SnsBroadcastSink:
    def __init__(self, sns_client, topic_arn: str):
        self.sns_client = sns_client
        self.topic_arn = topic_arn

    def broadcast(self, event: LifecycleEvent) -> str:
        """Publish the event to the topic and return the SNS message id"""
        try:
            response = self.sns_client.publish(
                TopicArn=self.topic_arn,
                Message=json.dumps(event.to_dict()),
                MessageAttributes={
                    'event_type': {
                        'DataType': 'String',
                        'StringValue': event.event_type.value,
                    }
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise BroadcastError(f"Broadcast of {event.object_key} failed: {str(e)}") from e

        message_id = response.get('MessageId', '')
        print(f"Broadcast {event.event_type.value} {event.object_key} as {message_id}")
        return message_id
