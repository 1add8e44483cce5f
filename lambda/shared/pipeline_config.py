"""
Pipeline configuration (queue leases, dedup window, batching, retry)
"""

from dataclasses import dataclass, field

from retry_policy import RetryPolicy


@dataclass
class PipelineConfig:
    max_redelivery_count: int = 3
    visibility_timeout: float = 30.0
    dedup_window: float = 300.0
    batch_size: int = 10
    poll_interval: float = 1.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self):
        if self.max_redelivery_count < 0:
            raise ValueError(f"max_redelivery_count must be >= 0, got {self.max_redelivery_count}")
        if self.visibility_timeout <= 0:
            raise ValueError(f"visibility_timeout must be > 0, got {self.visibility_timeout}")
        if self.dedup_window <= 0:
            raise ValueError(f"dedup_window must be > 0, got {self.dedup_window}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.poll_interval < 0:
            raise ValueError(f"poll_interval must be >= 0, got {self.poll_interval}")

