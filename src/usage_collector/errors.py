"""
Custom exceptions for the usage collector.

Provides structured error handling with retry classification and
dead-letter routing.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import DeliveryOutcome


class CollectorError(Exception):
    """Base error for the usage collector."""

    pass


class EventValidationError(CollectorError):
    """Malformed upstream record. Never retried."""

    kind = "validation_error"


class CollectorClosedError(CollectorError):
    """Raised when records are pushed after close()."""

    pass


class DeliveryError(CollectorError):
    """Failed delivery attempt, carries the classified outcome."""

    kind = "delivery_error"
    retryable = False

    def __init__(self, message: str, outcome: Optional["DeliveryOutcome"] = None):
        super().__init__(message)
        self.outcome = outcome

    @property
    def status_code(self) -> int | None:
        return self.outcome.status_code if self.outcome is not None else None


class ClientRejection(DeliveryError):
    """4xx from the ingestion API (malformed payload, unknown customer or meter)."""

    kind = "client_rejection"


class TransientNetworkError(DeliveryError):
    """Connection failure, DNS failure or timeout."""

    kind = "transport_error"
    retryable = True


class ServerUnavailable(DeliveryError):
    """5xx from the ingestion API."""

    kind = "server_error"
    retryable = True


class RetryExhausted(DeliveryError):
    """Transient failures persisted through every allowed attempt."""

    kind = "retry_exhausted"

    def __init__(self, attempts: int, last_error: DeliveryError):
        super().__init__(
            f"gave up after {attempts} attempt(s): {last_error}", outcome=last_error.outcome
        )
        self.attempts = attempts
        self.last_error = last_error


class DeadLetterSinkUnavailable(CollectorError):
    """The dead-letter sink could not accept a record. Fatal for the batch."""

    kind = "dead_letter_unavailable"


def error_for_outcome(outcome: "DeliveryOutcome") -> DeliveryError | None:
    """Map a delivery outcome onto the error taxonomy (None for success)."""
    from .models import OutcomeKind

    if outcome.kind is OutcomeKind.SUCCESS:
        return None
    if outcome.kind is OutcomeKind.CLIENT_ERROR:
        return ClientRejection(f"rejected with HTTP {outcome.status_code}: {outcome.detail}", outcome)
    if outcome.kind is OutcomeKind.SERVER_ERROR:
        return ServerUnavailable(f"server error HTTP {outcome.status_code}: {outcome.detail}", outcome)
    return TransientNetworkError(f"transport error: {outcome.detail}", outcome)
