"""Usage output connector.

Upstream records → RecordBatcher → InFlightLimiter → IngestClient, with:
- count / period / byte sealing
- RetryPolicy with exponential backoff and jitter
- DeadLetterRouter (NDJSON file or webhook sink)
- Backpressure feedback on limiter saturation
"""

from .batcher import RecordBatcher
from .client import IngestClient, classify_status
from .connector import OutputHealth, UsageOutput
from .dlq import (
    DeadLetterRecord,
    DeadLetterRouter,
    DeadLetterSink,
    FileDeadLetterSink,
    WebhookDeadLetterSink,
    build_dead_letter_sink,
)
from .feedback import BackpressureLevel, FeedbackBus, FeedbackEvent
from .limiter import InFlightLimiter, Slot
from .policy import RetryAction, RetryDecision, RetryPolicy

__all__ = [
    # batching
    "RecordBatcher",
    # delivery
    "IngestClient",
    "classify_status",
    "RetryPolicy",
    "RetryDecision",
    "RetryAction",
    # backpressure
    "InFlightLimiter",
    "Slot",
    "FeedbackBus",
    "FeedbackEvent",
    "BackpressureLevel",
    # dead letters
    "DeadLetterRouter",
    "DeadLetterRecord",
    "DeadLetterSink",
    "FileDeadLetterSink",
    "WebhookDeadLetterSink",
    "build_dead_letter_sink",
    # runtime
    "UsageOutput",
    "OutputHealth",
]
