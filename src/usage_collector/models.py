"""
Data models for the usage collector.

Events are validated pydantic models; batches and delivery bookkeeping are
plain frozen dataclasses.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import EventValidationError
from .utils import format_timestamp, generate_id, parse_datetime, utc_now


def _ingestion_time() -> str:
    return format_timestamp(utc_now())


class Event(BaseModel):
    """Usage event for one billing meter and one customer."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    event_name: str
    external_customer_id: str
    properties: Dict[str, str] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=_ingestion_time)
    source: Optional[str] = None
    event_id: Optional[str] = None

    @field_validator("event_name", "external_customer_id")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must be a non-empty string")
        return v

    @field_validator("properties", mode="before")
    @classmethod
    def _stringify_properties(cls, v: Any) -> Dict[str, str]:
        if v is None:
            return {}
        if not isinstance(v, Mapping):
            raise ValueError("properties must be a mapping")
        out: Dict[str, str] = {}
        for key, value in v.items():
            if isinstance(value, bool):
                out[str(key)] = "true" if value else "false"
            elif isinstance(value, (str, int, float)):
                out[str(key)] = str(value)
            else:
                raise ValueError(
                    f"property {key!r} has unsupported type {type(value).__name__}"
                )
        return out

    @field_validator("timestamp", mode="before")
    @classmethod
    def _normalise_timestamp(cls, v: Any) -> str:
        if v is None:
            return _ingestion_time()
        if not isinstance(v, (str, datetime)):
            raise ValueError("timestamp must be an ISO-8601 string")
        try:
            return format_timestamp(parse_datetime(v))
        except ValueError as exc:
            raise ValueError(f"invalid ISO-8601 timestamp {v!r}") from exc

    @classmethod
    def from_record(cls, record: Any) -> "Event":
        """Validate one upstream record; raises EventValidationError."""
        if not isinstance(record, Mapping):
            raise EventValidationError(f"record must be a mapping, got {type(record).__name__}")
        try:
            return cls.model_validate(dict(record))
        except ValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in e["loc"]) for e in exc.errors())
            raise EventValidationError(f"invalid event ({fields}): {exc}") from exc

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class SealReason(str, Enum):
    """Why a batch was sealed."""

    COUNT = "count"
    PERIOD = "period"
    BYTES = "bytes"
    FLUSH = "flush"


@dataclass(frozen=True)
class Batch:
    """Sealed, immutable group of events delivered in one request."""

    seq: int
    events: Tuple[Event, ...]
    reason: SealReason
    id: str = field(default_factory=generate_id)
    sealed_at: datetime = field(default_factory=utc_now)

    def __len__(self) -> int:
        return len(self.events)

    def to_wire(self) -> list[dict]:
        return [e.to_wire() for e in self.events]


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True)
class DeliveryOutcome:
    """Classified result of one POST."""

    kind: OutcomeKind
    status_code: Optional[int] = None
    detail: str = ""
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @property
    def retryable(self) -> bool:
        return self.kind in (OutcomeKind.SERVER_ERROR, OutcomeKind.TRANSPORT_ERROR)


@dataclass(frozen=True)
class DeliveryAttempt:
    batch_id: str
    attempt: int
    outcome: DeliveryOutcome
    at: datetime = field(default_factory=utc_now)


class BatchState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    DEAD_LETTERED = "dead_lettered"

    @property
    def terminal(self) -> bool:
        return self in (BatchState.SUCCEEDED, BatchState.DEAD_LETTERED)


_TRANSITIONS = {
    BatchState.PENDING: {BatchState.IN_FLIGHT},
    BatchState.IN_FLIGHT: {BatchState.SUCCEEDED, BatchState.RETRYING, BatchState.DEAD_LETTERED},
    BatchState.RETRYING: {BatchState.IN_FLIGHT},
    BatchState.SUCCEEDED: set(),
    BatchState.DEAD_LETTERED: set(),
}


class BatchLifecycle:
    """State machine for one batch, from sealing to a terminal state."""

    def __init__(self, batch: Batch):
        self.batch = batch
        self.state = BatchState.PENDING
        self.attempts: list[DeliveryAttempt] = []

    def advance(self, new_state: BatchState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"batch {self.batch.id}: illegal transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def record(self, outcome: DeliveryOutcome) -> DeliveryAttempt:
        attempt = DeliveryAttempt(self.batch.id, len(self.attempts) + 1, outcome)
        self.attempts.append(attempt)
        return attempt

    @property
    def last_outcome(self) -> Optional[DeliveryOutcome]:
        return self.attempts[-1].outcome if self.attempts else None


@dataclass(frozen=True)
class BatchResult:
    """Acknowledgment handed back upstream once a batch is resolved."""

    batch_id: str
    state: BatchState
    attempts: int
    events: int

    @property
    def delivered(self) -> bool:
        return self.state is BatchState.SUCCEEDED
