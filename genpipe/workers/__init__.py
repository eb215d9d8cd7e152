# Workers package - asyncio job orchestration

from genpipe.workers.base import (
    PipelineError,
    ValidationError,
    JobNotFoundError,
    QueueFullError,
    ProviderError,
    StitchError,
    WorkerException,
    NonRetryableError,
    RetryableError,
    with_retry,
    bounded_call,
    BaseWorker
)
from genpipe.workers.events import (
    EventChannel,
    InMemoryEventChannel,
    RedisEventChannel,
    build_event_channel
)
from genpipe.workers.store import (
    JobStore,
    InMemoryJobStore,
    SqlJobStore,
    build_job_store
)

__all__ = [
    # Errors
    "PipelineError",
    "ValidationError",
    "JobNotFoundError",
    "QueueFullError",
    "ProviderError",
    "StitchError",
    "WorkerException",
    "NonRetryableError",
    "RetryableError",
    "with_retry",
    "bounded_call",
    "BaseWorker",
    # Events
    "EventChannel",
    "InMemoryEventChannel",
    "RedisEventChannel",
    "build_event_channel",
    # Store
    "JobStore",
    "InMemoryJobStore",
    "SqlJobStore",
    "build_job_store"
]
