"""
Shared constants for the Image Management stack
"""

# Broadcaster queue defaults
DEFAULT_MAX_REDELIVERY_COUNT = 3
DEFAULT_BATCH_SIZE = 10
DEFAULT_POLL_INTERVAL = 1  # seconds, used as the event source batching window

# Lambda timeouts (seconds)
FUNCTION_TIMEOUT_SECONDS = 30
# At least the function timeout; AWS recommends 6x for SQS event sources
QUEUE_VISIBILITY_TIMEOUT_SECONDS = FUNCTION_TIMEOUT_SECONDS * 6

# Lambda function environment
ENV_DISTRIBUTION_ID = "DISTRIBUTION_ID"
ENV_INVALIDATION_PATH_PREFIX = "INVALIDATION_PATH_PREFIX"
ENV_TOPIC_ARN = "TOPIC_ARN"
