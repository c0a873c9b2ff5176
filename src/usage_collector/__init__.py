"""
Usage Collector

Batching, retrying output that delivers usage events to a usage-ingestion
HTTP API with at-least-once semantics, bounded in-flight batches and
dead-lettering of undeliverable batches.

Usage:
    from usage_collector import UsageOutput, CollectorSettings

    async with UsageOutput(CollectorSettings()) as out:
        await out.add({"event_name": "api_call", "external_customer_id": "cust-1"})
"""

from .config import CollectorSettings, get_settings
from .errors import (
    ClientRejection,
    CollectorClosedError,
    CollectorError,
    DeadLetterSinkUnavailable,
    EventValidationError,
    RetryExhausted,
    ServerUnavailable,
    TransientNetworkError,
)
from .models import Batch, BatchResult, BatchState, DeliveryOutcome, Event, OutcomeKind
from .output import UsageOutput

__version__ = "0.1.0"
__all__ = [
    "UsageOutput",
    "CollectorSettings",
    "get_settings",
    "Event",
    "Batch",
    "BatchResult",
    "BatchState",
    "DeliveryOutcome",
    "OutcomeKind",
    "CollectorError",
    "EventValidationError",
    "ClientRejection",
    "TransientNetworkError",
    "ServerUnavailable",
    "RetryExhausted",
    "DeadLetterSinkUnavailable",
    "CollectorClosedError",
]
