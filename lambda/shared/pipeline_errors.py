"""
Error kinds raised by the lifecycle event pipeline
"""


class PipelineError(Exception):
    """Base class for pipeline errors"""


class QueueUnavailable(PipelineError):
    """The queue's backing store did not accept a write after bounded retries"""


class InvalidReceipt(PipelineError):
    """
    Receipt handle is stale: the message was already acknowledged,
    dead-lettered, or redelivered under a newer handle.
    """

    def __init__(self, receipt_handle: str):
        super().__init__(f"Stale or unknown receipt handle: {receipt_handle}")
        self.receipt_handle = receipt_handle


class DuplicateWindowActive(PipelineError):
    """Raised by a strict enqueue when the dedup window already holds the event"""

    def __init__(self, dedup_key: str, message_id: str):
        super().__init__(
            f"Duplicate within dedup window (dedup_key={dedup_key}, message_id={message_id})"
        )
        self.dedup_key = dedup_key
        self.message_id = message_id


class InvalidationError(PipelineError):
    """Cache invalidation for a removed object failed"""


class BroadcastError(PipelineError):
    """Fan-out of a lifecycle event to downstream subscribers failed"""
