"""
Backpressure feedback for the output connector.

Provides in-process pub/sub for backpressure signals emitted by the
in-flight limiter. Subscribers (pipeline rate control, logging) react when
delivery capacity saturates and when it recovers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from loguru import logger


class BackpressureLevel(str, Enum):
    """Backpressure severity levels."""

    OK = "ok"  # Slots available - normal operation
    HARD = "hard"  # Every slot taken - producers are blocked


@dataclass(frozen=True)
class FeedbackEvent:
    """Immutable backpressure feedback event.

    Attributes:
        output_id: Identifies the output (e.g., "usage-output")
        in_flight: Batches currently between sealing and a terminal state
        limit: Maximum batches allowed in flight
        level: Backpressure severity (OK, HARD)
        reason: Optional context (e.g., "saturated", "recovered")
    """

    output_id: str
    in_flight: int
    limit: int
    level: BackpressureLevel
    reason: str | None = None

    @property
    def utilization(self) -> float:
        """In-flight utilization as a fraction (0.0 to 1.0)."""
        return self.in_flight / self.limit if self.limit > 0 else 0.0


class FeedbackSubscriber(Protocol):
    """Async callable accepting FeedbackEvent."""

    async def __call__(self, event: FeedbackEvent) -> None: ...


class FeedbackBus:
    """In-process pub/sub bus for backpressure feedback.

    One subscriber's failure does not affect others. Best-effort delivery.
    Instances are injected into the limiter; there is no global bus.

    Example:
        bus = FeedbackBus()

        async def on_feedback(event: FeedbackEvent):
            if event.level == BackpressureLevel.HARD:
                await pause_consumer()

        bus.subscribe(on_feedback)
    """

    def __init__(self) -> None:
        self._subs: list[FeedbackSubscriber] = []

    def subscribe(self, callback: FeedbackSubscriber) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Feedback subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: FeedbackSubscriber) -> None:
        """Remove a subscriber. No-op if it was never added."""
        try:
            self._subs.remove(callback)
            logger.debug(f"Feedback subscriber removed (total: {len(self._subs)})")
        except ValueError:
            pass

    async def publish(self, event: FeedbackEvent) -> None:
        """Publish to all subscribers in registration order."""
        if not self._subs:
            return

        logger.debug(
            f"Publishing feedback: output={event.output_id} "
            f"level={event.level.value} "
            f"in_flight={event.in_flight}/{event.limit} ({event.utilization:.1%})"
        )

        # Iterate over copy to allow unsubscribe during iteration
        for callback in list(self._subs):
            try:
                await callback(event)
            except Exception as exc:
                logger.warning(f"Feedback subscriber error (ignored): {type(exc).__name__}: {exc}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)
