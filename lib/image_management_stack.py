"""
Image Management Stack - Lifecycle event pipeline for the image store

This stack creates:
- S3 bucket for stored images (SSL only, no public access)
- Invalidator Lambda, notified directly on object removal
- Broadcaster SQS queue (with dead-letter queue) fed by created and removed
  notifications
- Broadcaster Lambda consuming the queue in batches and publishing to an
  SNS topic
- Lambda layer with the shared pipeline code
"""

import json
import os

from aws_cdk import (
    Stack,
    Duration,
    RemovalPolicy,
    CfnOutput,
    aws_iam as iam,
    aws_lambda as lambda_,
    aws_lambda_event_sources as event_sources,
    aws_logs as logs,
    aws_s3 as s3,
    aws_s3_notifications as s3n,
    aws_sns as sns,
    aws_sqs as sqs,
)
from constructs import Construct

from config.constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_REDELIVERY_COUNT,
    DEFAULT_POLL_INTERVAL,
    ENV_DISTRIBUTION_ID,
    ENV_INVALIDATION_PATH_PREFIX,
    ENV_TOPIC_ARN,
    FUNCTION_TIMEOUT_SECONDS,
    QUEUE_VISIBILITY_TIMEOUT_SECONDS,
)


class ImageManagementStack(Stack):
    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        source_ip: str = None,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        # Load configuration
        config = self._load_config()

        # S3 data store bucket
        self.image_store_bucket = s3.Bucket(
            self,
            "ImageStoreBucket",
            removal_policy=RemovalPolicy.DESTROY,
            enforce_ssl=True,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
        )

        # Temporary read/write access for testing, restricted to one source IP
        source_ip = source_ip if source_ip is not None else os.environ.get("SOURCE_IP")
        if source_ip:
            self._add_source_ip_policy(source_ip)

        # Layer with the shared pipeline modules
        self.shared_layer = lambda_.LayerVersion(
            self,
            "PipelineSharedLayer",
            code=lambda_.Code.from_asset("lambda/shared"),
            compatible_runtimes=[lambda_.Runtime.PYTHON_3_11],
            description="Lifecycle event pipeline shared code",
        )

        # Invalidator: direct push for removed objects
        self.invalidator_lambda = self._create_invalidator_lambda(config)
        self.image_store_bucket.add_event_notification(
            s3.EventType.OBJECT_REMOVED,
            s3n.LambdaDestination(self.invalidator_lambda),
        )

        # Broadcaster queue: created and removed notifications
        self.broadcaster_queue = self._create_broadcaster_queue(config)
        self.image_store_bucket.add_event_notification(
            s3.EventType.OBJECT_CREATED,
            s3n.SqsDestination(self.broadcaster_queue),
        )
        self.image_store_bucket.add_event_notification(
            s3.EventType.OBJECT_REMOVED,
            s3n.SqsDestination(self.broadcaster_queue),
        )

        # Downstream fan-out topic
        self.broadcast_topic = sns.Topic(
            self,
            "BroadcastTopic",
            display_name="Image store lifecycle events",
        )

        # Broadcaster: pulls batches from the queue
        self.broadcaster_lambda = self._create_broadcaster_lambda(config)

        CfnOutput(
            self,
            "ImageStoreBucketAddedBroadcasterQueue",
            value=self.broadcaster_queue.queue_name,
            description="Queue feeding the Broadcaster function",
        )
        CfnOutput(
            self,
            "BroadcastTopicArn",
            value=self.broadcast_topic.topic_arn,
            description="SNS topic receiving broadcast lifecycle events",
        )

    def _load_config(self) -> dict:
        """Load configuration from context or use defaults"""
        env = self.node.try_get_context("environment") or "dev"
        config_path = f"config/{env}.json"

        try:
            with open(config_path, "r") as f:
                return json.load(f)
        except FileNotFoundError:
            # Return default config
            return {
                "pipeline": {
                    "max_redelivery_count": DEFAULT_MAX_REDELIVERY_COUNT,
                    "visibility_timeout_seconds": QUEUE_VISIBILITY_TIMEOUT_SECONDS,
                    "batch_size": DEFAULT_BATCH_SIZE,
                    "poll_interval_seconds": DEFAULT_POLL_INTERVAL,
                },
                "invalidation": {
                    "distribution_id": "",
                    "path_prefix": "/",
                },
            }

    def _add_source_ip_policy(self, source_ip: str) -> None:
        """Allow object get/put from a single source IP"""
        policy = iam.PolicyStatement(
            actions=[
                "s3:GetObject",
                "s3:PutObject",
            ],
            resources=[self.image_store_bucket.arn_for_objects("*")],
            principals=[iam.AnyPrincipal()],
        )
        policy.add_condition("IpAddress", {"aws:SourceIp": [source_ip]})

        result = self.image_store_bucket.add_to_resource_policy(policy)
        if not result.statement_added:
            print(f"Failed to add source IP policy to {self.image_store_bucket.bucket_name}")

    def _create_invalidator_lambda(self, config: dict) -> lambda_.Function:
        """Create Invalidator Lambda"""
        invalidation = config["invalidation"]
        distribution_id = invalidation["distribution_id"]

        function = lambda_.Function(
            self,
            "Invalidator",
            runtime=lambda_.Runtime.PYTHON_3_11,
            handler="index.handler",
            code=lambda_.Code.from_asset("lambda/invalidator"),
            layers=[self.shared_layer],
            timeout=Duration.seconds(FUNCTION_TIMEOUT_SECONDS),
            memory_size=256,
            log_retention=logs.RetentionDays.THREE_DAYS,  # Auto-delete logs after 3 days
            # Async invoke retries before the event is dropped
            retry_attempts=2,
            environment={
                ENV_DISTRIBUTION_ID: distribution_id,
                ENV_INVALIDATION_PATH_PREFIX: invalidation["path_prefix"],
            },
        )

        if distribution_id:
            function.add_to_role_policy(
                iam.PolicyStatement(
                    actions=["cloudfront:CreateInvalidation"],
                    resources=[
                        f"arn:aws:cloudfront::{self.account}:distribution/{distribution_id}"
                    ],
                )
            )

        return function

    def _create_broadcaster_queue(self, config: dict) -> sqs.Queue:
        """Create the Broadcaster queue and its dead-letter queue"""
        pipeline = config["pipeline"]

        dead_letter_queue = sqs.Queue(
            self,
            "BroadcasterDeadLetterQueue",
            retention_period=Duration.days(14),
        )

        return sqs.Queue(
            self,
            "BroadcasterQueue",
            visibility_timeout=Duration.seconds(pipeline["visibility_timeout_seconds"]),
            enforce_ssl=True,
            dead_letter_queue=sqs.DeadLetterQueue(
                # First delivery plus the allowed redeliveries
                max_receive_count=pipeline["max_redelivery_count"] + 1,
                queue=dead_letter_queue,
            ),
        )

    def _create_broadcaster_lambda(self, config: dict) -> lambda_.Function:
        """Create Broadcaster Lambda with the queue as its event source"""
        pipeline = config["pipeline"]

        function = lambda_.Function(
            self,
            "Broadcaster",
            runtime=lambda_.Runtime.PYTHON_3_11,
            handler="index.handler",
            code=lambda_.Code.from_asset("lambda/broadcaster"),
            layers=[self.shared_layer],
            timeout=Duration.seconds(FUNCTION_TIMEOUT_SECONDS),
            memory_size=256,
            log_retention=logs.RetentionDays.THREE_DAYS,  # Auto-delete logs after 3 days
            environment={
                ENV_TOPIC_ARN: self.broadcast_topic.topic_arn,
            },
        )

        self.broadcast_topic.grant_publish(function)

        function.add_event_source(
            event_sources.SqsEventSource(
                self.broadcaster_queue,
                batch_size=pipeline["batch_size"],
                max_batching_window=Duration.seconds(pipeline["poll_interval_seconds"]),
                report_batch_item_failures=True,
            )
        )

        return function
