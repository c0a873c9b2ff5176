"""
Unit tests for event validation and the batch lifecycle.
"""

from datetime import datetime, timezone

import pytest

from usage_collector.errors import (
    ClientRejection,
    EventValidationError,
    ServerUnavailable,
    TransientNetworkError,
    error_for_outcome,
)
from usage_collector.models import (
    Batch,
    BatchLifecycle,
    BatchState,
    DeliveryOutcome,
    Event,
    OutcomeKind,
    SealReason,
)


def test_event_from_record_minimal():
    ev = Event.from_record({"event_name": "api_call", "external_customer_id": "cust-1"})
    assert ev.properties == {}
    assert ev.timestamp.endswith("Z")
    assert ev.to_wire().keys() == {"event_name", "external_customer_id", "properties", "timestamp"}


def test_event_keeps_optional_fields_and_ignores_unknown():
    ev = Event.from_record(
        {
            "event_name": "storage",
            "external_customer_id": "cust-1",
            "source": "kafka",
            "event_id": "evt-42",
            "tenant": "ignored",
        }
    )
    wire = ev.to_wire()
    assert wire["source"] == "kafka"
    assert wire["event_id"] == "evt-42"
    assert "tenant" not in wire


@pytest.mark.parametrize(
    "record",
    [
        {"external_customer_id": "c1"},
        {"event_name": "api_call"},
        {"event_name": "", "external_customer_id": "c1"},
        {"event_name": "api_call", "external_customer_id": "   "},
        {"event_name": "api_call", "external_customer_id": 17},
        {"event_name": "api_call", "external_customer_id": "c1", "properties": ["a"]},
        {"event_name": "api_call", "external_customer_id": "c1", "properties": {"a": {"b": 1}}},
        {"event_name": "api_call", "external_customer_id": "c1", "timestamp": "yesterday"},
        "not a mapping",
    ],
)
def test_invalid_records_rejected(record):
    with pytest.raises(EventValidationError):
        Event.from_record(record)


def test_properties_are_stringified():
    ev = Event.from_record(
        {
            "event_name": "tokens",
            "external_customer_id": "c1",
            "properties": {"count": 12, "ratio": 0.5, "cached": True, "model": "m1"},
        }
    )
    assert ev.properties == {"count": "12", "ratio": "0.5", "cached": "true", "model": "m1"}


def test_timestamp_normalised_to_utc():
    ev = Event.from_record(
        {
            "event_name": "x",
            "external_customer_id": "c1",
            "timestamp": "2026-03-01T12:00:00+02:00",
        }
    )
    assert ev.timestamp == "2026-03-01T10:00:00Z"

    naive = Event(event_name="x", external_customer_id="c1", timestamp=datetime(2026, 3, 1, 8, 30))
    assert naive.timestamp == "2026-03-01T08:30:00Z"

    aware = Event(
        event_name="x",
        external_customer_id="c1",
        timestamp=datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc),
    )
    assert aware.timestamp == "2026-03-01T08:30:00Z"


def test_event_is_frozen():
    ev = Event(event_name="x", external_customer_id="c1")
    with pytest.raises(Exception):
        ev.event_name = "y"  # type: ignore


def _batch() -> Batch:
    return Batch(seq=1, events=(Event(event_name="x", external_customer_id="c1"),), reason=SealReason.COUNT)


def test_batch_is_immutable():
    batch = _batch()
    with pytest.raises(Exception):
        batch.events = ()  # type: ignore
    assert len(batch) == 1


def test_lifecycle_retry_loop_then_success():
    life = BatchLifecycle(_batch())
    life.advance(BatchState.IN_FLIGHT)
    life.record(DeliveryOutcome(OutcomeKind.SERVER_ERROR, 500))
    life.advance(BatchState.RETRYING)
    life.advance(BatchState.IN_FLIGHT)
    attempt = life.record(DeliveryOutcome(OutcomeKind.SUCCESS, 200))
    life.advance(BatchState.SUCCEEDED)

    assert attempt.attempt == 2
    assert life.state.terminal
    assert life.last_outcome.ok


@pytest.mark.parametrize(
    "path",
    [
        [BatchState.SUCCEEDED],
        [BatchState.IN_FLIGHT, BatchState.SUCCEEDED, BatchState.IN_FLIGHT],
        [BatchState.IN_FLIGHT, BatchState.DEAD_LETTERED, BatchState.RETRYING],
        [BatchState.IN_FLIGHT, BatchState.RETRYING, BatchState.SUCCEEDED],
    ],
)
def test_lifecycle_rejects_illegal_transitions(path):
    life = BatchLifecycle(_batch())
    with pytest.raises(RuntimeError):
        for state in path:
            life.advance(state)


@pytest.mark.parametrize(
    "outcome, expected",
    [
        (DeliveryOutcome(OutcomeKind.CLIENT_ERROR, 404, "unknown meter"), ClientRejection),
        (DeliveryOutcome(OutcomeKind.SERVER_ERROR, 502), ServerUnavailable),
        (DeliveryOutcome(OutcomeKind.TRANSPORT_ERROR, None, "ConnectError"), TransientNetworkError),
    ],
)
def test_error_for_outcome(outcome, expected):
    err = error_for_outcome(outcome)
    assert isinstance(err, expected)
    assert err.outcome is outcome
    assert err.status_code == outcome.status_code
    assert err.retryable is outcome.retryable


def test_error_for_success_is_none():
    assert error_for_outcome(DeliveryOutcome(OutcomeKind.SUCCESS, 200)) is None
