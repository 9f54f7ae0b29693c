"""Durable outbound queue and the worker draining it."""

from email_pipeline.queue.store import (
    BulkEnqueueResult,
    EnqueueResult,
    MessageQueue,
    backoff_delay,
)
from email_pipeline.queue.worker import QueueRunResult, QueueWorker

__all__ = [
    "BulkEnqueueResult",
    "EnqueueResult",
    "MessageQueue",
    "QueueRunResult",
    "QueueWorker",
    "backoff_delay",
]
