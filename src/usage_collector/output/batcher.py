"""
Record batcher for the usage output.

Accumulates validated events and seals immutable batches on count, byte
size or elapsed period, whichever comes first.
"""

from __future__ import annotations

import asyncio
from time import monotonic
from typing import Awaitable, Callable, List, Optional

from loguru import logger

from ..models import Batch, Event, SealReason
from ..utils import estimate_size

SealCallback = Callable[[Batch], Awaitable[None]]


class RecordBatcher:
    """
    Count/time/bytes batcher for outgoing usage events.

    Usage:

        batcher = RecordBatcher(max_count=100, period=5.0, on_seal=dispatch)
        await batcher.start()
        batch = await batcher.add(event)   # sealed batch when count is reached
        ...
        await batcher.stop()
        tail = await batcher.flush()

    Count and byte seals are returned from add(). Period seals happen on a
    background timer and are handed to ``on_seal``.
    """

    def __init__(
        self,
        max_count: int,
        period: float,
        *,
        max_bytes: int = 0,
        on_seal: Optional[SealCallback] = None,
    ):
        if max_count <= 0:
            raise ValueError("max_count must be > 0")
        if period <= 0:
            raise ValueError("period must be > 0")
        if max_bytes < 0:
            raise ValueError("max_bytes must be >= 0")

        self._max_count = max_count
        self._period = period
        self._max_bytes = max_bytes
        self._on_seal = on_seal

        # Open batch
        self._events: List[Event] = []
        self._bytes = 0
        self._opened_at = 0.0
        self._seq = 0

        self._lock = asyncio.Lock()
        self._changed = asyncio.Event()
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

    # --------------- properties

    @property
    def pending(self) -> int:
        return len(self._events)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    # --------------- lifecycle

    async def start(self) -> None:
        if self.running:
            return
        if self._on_seal is None:
            raise ValueError("on_seal is required to run the period timer")
        self._stopping = False
        self._task = asyncio.create_task(self._run_timer(), name="batcher-timer")

    async def stop(self) -> None:
        """Stop the timer. A seal already being handed off completes first."""
        if self._task is None:
            return
        async with self._lock:
            self._stopping = True
            self._changed.set()
        try:
            await self._task
        finally:
            self._task = None

    # --------------- public API

    async def add(self, event: Event) -> Optional[Batch]:
        size = estimate_size(event.to_wire()) if self._max_bytes else 0
        async with self._lock:
            if not self._events:
                self._opened_at = monotonic()
                self._changed.set()
            self._events.append(event)
            self._bytes += size

            if len(self._events) >= self._max_count:
                return self._seal_locked(SealReason.COUNT)
            if self._max_bytes and self._bytes >= self._max_bytes:
                return self._seal_locked(SealReason.BYTES)
            return None

    async def flush(self) -> Optional[Batch]:
        """Seal whatever is open; None when nothing is pending."""
        async with self._lock:
            if not self._events:
                return None
            return self._seal_locked(SealReason.FLUSH)

    # --------------- internals

    def _seal_locked(self, reason: SealReason) -> Batch:
        self._seq += 1
        batch = Batch(seq=self._seq, events=tuple(self._events), reason=reason)
        self._events = []
        self._bytes = 0
        logger.debug(f"Sealed batch seq={batch.seq} events={len(batch)} reason={reason.value}")
        return batch

    async def _run_timer(self) -> None:
        while True:
            batch: Optional[Batch] = None
            remaining: Optional[float] = None
            async with self._lock:
                if self._stopping:
                    return
                if self._events:
                    remaining = self._opened_at + self._period - monotonic()
                    if remaining <= 0:
                        batch = self._seal_locked(SealReason.PERIOD)
                self._changed.clear()

            if batch is not None:
                await self._on_seal(batch)
                continue

            try:
                await asyncio.wait_for(self._changed.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass
