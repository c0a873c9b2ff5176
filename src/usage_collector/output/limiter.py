"""
In-flight concurrency limiter.

Caps the number of batches between sealing and a terminal state and
publishes backpressure feedback on saturation and recovery.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from loguru import logger

from .feedback import BackpressureLevel, FeedbackBus, FeedbackEvent


class Slot:
    """One unit of in-flight capacity. Must be released exactly once."""

    __slots__ = ("_limiter", "_released")

    def __init__(self, limiter: "InFlightLimiter"):
        self._limiter = limiter
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            raise RuntimeError("slot released twice")
        self._released = True
        self._limiter._release()


class InFlightLimiter:
    """Bounds the number of batches in flight; acquire() blocks when full.

    Emits HARD feedback once when every slot is taken and OK when a slot
    frees up again, so upstream producers can pause instead of piling up.
    """

    def __init__(
        self,
        limit: int,
        *,
        name: str = "usage-output",
        bus: Optional[FeedbackBus] = None,
        on_change: Optional[Callable[[int], None]] = None,
    ):
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._name = name
        self._bus = bus
        self._on_change = on_change

        self._sem = asyncio.Semaphore(limit)
        self._in_flight = 0
        self._peak = 0
        self._saturated = False  # avoid duplicate signals
        self._signals: set[asyncio.Task] = set()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def available(self) -> int:
        return self._limit - self._in_flight

    @property
    def peak(self) -> int:
        return self._peak

    async def acquire(self) -> Slot:
        await self._sem.acquire()
        self._in_flight += 1
        self._peak = max(self._peak, self._in_flight)
        self._changed()
        slot = Slot(self)
        if not self._saturated and self._in_flight >= self._limit:
            self._saturated = True
            logger.debug(f"In-flight limit reached: {self._in_flight}/{self._limit}")
            try:
                await self._publish(self._event(BackpressureLevel.HARD, "saturated"))
            except asyncio.CancelledError:
                slot.release()
                raise
        return slot

    def _release(self) -> None:
        self._in_flight -= 1
        self._sem.release()
        self._changed()
        if self._saturated and self._in_flight < self._limit:
            self._saturated = False
            self._schedule(BackpressureLevel.OK, "recovered")

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self._in_flight)

    def _event(self, level: BackpressureLevel, reason: str) -> FeedbackEvent:
        return FeedbackEvent(self._name, self._in_flight, self._limit, level, reason)

    async def _publish(self, event: FeedbackEvent) -> None:
        if self._bus is not None:
            await self._bus.publish(event)

    def _schedule(self, level: BackpressureLevel, reason: str) -> None:
        # release() is sync (it runs from task done-callbacks)
        if self._bus is None or self._bus.subscriber_count == 0:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._publish(self._event(level, reason)))
        self._signals.add(task)
        task.add_done_callback(self._signals.discard)
