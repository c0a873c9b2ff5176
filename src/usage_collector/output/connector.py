"""
UsageOutput: batching, retrying output to the usage ingestion API.

Composes the batcher, in-flight limiter, HTTP client, retry policy and
dead-letter router. The host pipeline pushes records with add() or
write_batch(), and gets one acknowledgment per batch (delivered or
dead-lettered) or a DeadLetterSinkUnavailable.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional

from loguru import logger

from ..config import CollectorSettings
from ..errors import (
    CollectorClosedError,
    DeadLetterSinkUnavailable,
    DeliveryError,
    EventValidationError,
)
from ..metrics.registry import MetricsSink, NullMetrics
from ..models import Batch, BatchLifecycle, BatchResult, BatchState, Event, SealReason
from ..utils import generate_id
from .batcher import RecordBatcher
from .client import IngestClient
from .dlq import DeadLetterRouter, DeadLetterSink, build_dead_letter_sink
from .feedback import FeedbackBus
from .limiter import InFlightLimiter, Slot
from .policy import RetryAction, RetryPolicy

_RESOLVED_MEMORY = 4096


@dataclass(frozen=True)
class OutputHealth:
    running: bool
    in_flight: int
    max_in_flight: int
    peak_in_flight: int
    pending_events: int
    fatal_error: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.running and self.fatal_error is None


class UsageOutput:
    """Output connector exposing add / send / write_batch / close.

    Usage:

        settings = CollectorSettings()
        async with UsageOutput(settings) as out:
            for record in records:
                await out.add(record)
        # open batch flushed and in-flight batches drained on exit
    """

    def __init__(
        self,
        settings: CollectorSettings,
        *,
        client: Optional[IngestClient] = None,
        dead_letter_sink: Optional[DeadLetterSink] = None,
        metrics: Optional[MetricsSink] = None,
        bus: Optional[FeedbackBus] = None,
        policy: Optional[RetryPolicy] = None,
        name: str = "usage-output",
    ):
        self._settings = settings
        self._name = name
        self._metrics = metrics or NullMetrics()

        self._client = client or IngestClient(
            settings.api_host, settings.api_key, timeout=settings.request_timeout
        )
        self._policy = policy or RetryPolicy(
            max_attempts=settings.max_attempts,
            base_delay=settings.backoff_base,
            max_delay=settings.backoff_max,
            jitter=settings.backoff_jitter,
        )
        sink = dead_letter_sink or build_dead_letter_sink(
            settings.dead_letter_target, timeout=settings.request_timeout
        )
        self._router = DeadLetterRouter(sink, metrics=self._metrics)
        self._limiter = InFlightLimiter(
            settings.max_in_flight, name=name, bus=bus, on_change=self._metrics.in_flight
        )
        self._batcher = RecordBatcher(
            settings.batch_count,
            settings.batch_period,
            max_bytes=settings.batch_max_bytes,
            on_seal=self._on_period_seal,
        )

        self._tasks: set[asyncio.Task] = set()
        self._active: set[str] = set()
        self._resolved: OrderedDict[str, None] = OrderedDict()
        self._stranded: List[Batch] = []
        self._fatal: Optional[DeadLetterSinkUnavailable] = None
        self._started = False
        self._closed = False
        self._drained = False
        self._dispatching = 0

    # --------------- context management

    async def __aenter__(self) -> "UsageOutput":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # --------------- lifecycle

    async def start(self) -> None:
        if self._closed:
            raise CollectorClosedError("output already closed")
        if self._started:
            return
        await self._batcher.start()
        self._started = True
        logger.info(
            f"Output started: name={self._name} url={self._client.url} "
            f"batch_count={self._settings.batch_count} period={self._settings.batch_period}s "
            f"max_in_flight={self._limiter.limit} max_attempts={self._policy.max_attempts}"
        )

    async def close(self, drain_timeout: Optional[float] = None) -> None:
        """Stop accepting, flush, drain in-flight batches, release resources.

        Batches still in flight after ``drain_timeout`` are cancelled with a
        warning. A recorded fatal error is raised at the end.
        """
        if self._closed:
            return
        self._closed = True
        timeout = self._settings.drain_timeout if drain_timeout is None else drain_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        try:
            await asyncio.wait_for(self._flush_for_close(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Drain timeout while flushing: pending_events={self._batcher.pending} "
                f"stranded_batches={len(self._stranded)} abandoned"
            )

        remaining = max(0.0, deadline - loop.time())
        if self._tasks or self._dispatching:
            logger.info(
                f"Draining in-flight batches: tasks={len(self._tasks)} "
                f"waiting={self._dispatching} timeout={remaining:.1f}s"
            )
        # Producers blocked on a slot before close() may still start deliveries
        while self._tasks or self._dispatching:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            if self._tasks:
                await asyncio.wait(
                    set(self._tasks), timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
            else:
                await asyncio.sleep(min(0.01, remaining))

        self._drained = True
        pending = set(self._tasks)
        if pending or self._dispatching:
            logger.warning(
                f"Abandoning {len(pending)} in-flight batch(es) and {self._dispatching} "
                f"waiting batch(es) after drain timeout; their events are not acknowledged"
            )
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        await self._client.aclose()
        await self._router.close()
        self._started = False
        logger.info(f"Output closed: name={self._name} peak_in_flight={self._limiter.peak}")

        if self._fatal is not None:
            raise self._fatal

    async def _flush_for_close(self) -> None:
        await self._batcher.stop()
        tail = await self._batcher.flush()
        if tail is not None:
            self._stranded.append(tail)
        while self._stranded:
            await self._dispatch(self._stranded.pop(0))

    # --------------- public API

    async def add(self, record: Mapping[str, Any] | Event) -> Optional[asyncio.Task]:
        """Push one record.

        Returns the delivery task of the batch this record sealed, if any.
        Invalid records are dead-lettered on their own and return None.
        """
        self._check_open()
        self._metrics.events_received(1)
        try:
            event = record if isinstance(record, Event) else Event.from_record(record)
        except EventValidationError as exc:
            await self._dead_letter_invalid([record], exc)
            return None

        batch = await self._batcher.add(event)
        if batch is None:
            return None
        return await self._dispatch(batch)

    async def send(self, batch: Batch) -> BatchResult:
        """Deliver a sealed batch and wait for its terminal state."""
        self._check_open()
        task = await self._dispatch(batch)
        return await task

    async def write_batch(self, records: Iterable[Mapping[str, Any]]) -> List[BatchResult]:
        """Deliver a whole upstream batch, split at ``batch_count`` events.

        Any invalid record dead-letters the entire upstream batch.
        """
        self._check_open()
        records = list(records)
        if not records:
            return []
        self._metrics.events_received(len(records))

        events: List[Event] = []
        for record in records:
            try:
                events.append(Event.from_record(record))
            except EventValidationError as exc:
                await self._dead_letter_invalid(records, exc)
                return [BatchResult(generate_id(), BatchState.DEAD_LETTERED, 0, len(records))]

        size = self._settings.batch_count
        tasks = []
        for seq, start in enumerate(range(0, len(events), size), start=1):
            chunk = Batch(seq=seq, events=tuple(events[start : start + size]), reason=SealReason.FLUSH)
            tasks.append(await self._dispatch(chunk))
        return list(await asyncio.gather(*tasks))

    def health(self) -> OutputHealth:
        return OutputHealth(
            running=self._started and not self._closed and self._batcher.running,
            in_flight=self._limiter.in_flight,
            max_in_flight=self._limiter.limit,
            peak_in_flight=self._limiter.peak,
            pending_events=self._batcher.pending,
            fatal_error=str(self._fatal) if self._fatal is not None else None,
        )

    @property
    def limiter(self) -> InFlightLimiter:
        return self._limiter

    @property
    def router(self) -> DeadLetterRouter:
        return self._router

    # --------------- internals

    def _check_open(self) -> None:
        if self._fatal is not None:
            raise self._fatal
        if self._closed:
            raise CollectorClosedError("output is closed")
        if not self._started:
            raise CollectorClosedError("output not started")

    async def _on_period_seal(self, batch: Batch) -> None:
        await self._dispatch(batch)

    async def _dispatch(self, batch: Batch) -> asyncio.Task:
        """Reserve a slot (blocking = backpressure), then deliver in a task."""
        if batch.id in self._active or batch.id in self._resolved:
            raise ValueError(f"batch {batch.id} already submitted")
        if self._drained:
            raise CollectorClosedError(f"output closed; batch {batch.id} not sent")
        self._active.add(batch.id)
        self._dispatching += 1
        try:
            slot = await self._limiter.acquire()
        except asyncio.CancelledError:
            if not self._drained:
                # Sealed but not yet scheduled; close() picks it up
                self._stranded.append(batch)
            self._active.discard(batch.id)
            raise
        finally:
            self._dispatching -= 1

        if self._drained:
            # close() gave up waiting; the client is about to be closed
            slot.release()
            self._active.discard(batch.id)
            logger.warning(
                f"Batch abandoned at shutdown: batch={batch.id} seq={batch.seq} events={len(batch)}"
            )
            raise CollectorClosedError(f"output closed before batch {batch.id} could be sent")

        task = asyncio.create_task(self._deliver(batch), name=f"deliver-{batch.seq}-{batch.id[:8]}")
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, batch, slot))
        return task

    def _on_done(self, task: asyncio.Task, batch: Batch, slot: Slot) -> None:
        slot.release()
        self._tasks.discard(task)
        self._active.discard(batch.id)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, DeadLetterSinkUnavailable):
            if self._fatal is None:
                self._fatal = exc
        elif exc is not None:
            logger.opt(exception=exc).error(f"Delivery task crashed: batch={batch.id}")

    def _remember(self, batch_id: str) -> None:
        self._resolved[batch_id] = None
        while len(self._resolved) > _RESOLVED_MEMORY:
            self._resolved.popitem(last=False)

    async def _deliver(self, batch: Batch) -> BatchResult:
        life = BatchLifecycle(batch)
        while True:
            life.advance(BatchState.IN_FLIGHT)
            try:
                outcome = await self._client.send(batch)
            except Exception as exc:
                # Not a classified outcome (e.g. the client was closed under us)
                logger.opt(exception=exc).error(
                    f"Unexpected delivery failure: batch={batch.id} seq={batch.seq}"
                )
                error = DeliveryError(f"unexpected delivery failure: {type(exc).__name__}: {exc}")
                error.__cause__ = exc
                return await self._give_up(life, error, len(life.attempts) + 1, None)

            attempt = life.record(outcome)
            self._metrics.delivery_latency(outcome.elapsed)
            decision = self._policy.decide(attempt.attempt, outcome)

            if decision.action is RetryAction.DONE:
                life.advance(BatchState.SUCCEEDED)
                self._remember(batch.id)
                self._metrics.batch_sent()
                self._metrics.events_sent(len(batch))
                logger.info(
                    f"Batch delivered: batch={batch.id} seq={batch.seq} events={len(batch)} "
                    f"attempts={attempt.attempt} status={outcome.status_code}"
                )
                return BatchResult(batch.id, life.state, attempt.attempt, len(batch))

            self._metrics.batch_send_error(outcome.kind.value)

            if decision.action is RetryAction.RETRY:
                life.advance(BatchState.RETRYING)
                logger.warning(
                    f"Batch send failed, retrying: batch={batch.id} attempt={attempt.attempt}/"
                    f"{self._policy.max_attempts} kind={outcome.kind.value} "
                    f"status={outcome.status_code} delay={decision.delay:.3f}s"
                )
                await asyncio.sleep(decision.delay)
                continue

            logger.warning(
                f"Batch send failed, giving up: batch={batch.id} attempts={attempt.attempt} "
                f"kind={outcome.kind.value} status={outcome.status_code} detail={outcome.detail!r}"
            )
            return await self._give_up(life, decision.error, attempt.attempt, outcome.status_code)

    async def _give_up(
        self,
        life: BatchLifecycle,
        error: Exception,
        attempts: int,
        status_code: Optional[int],
    ) -> BatchResult:
        batch = life.batch
        await self._router.route(
            batch.id,
            batch.to_wire(),
            error,
            attempts=attempts,
            status_code=status_code,
            metadata={"seq": batch.seq, "reason": batch.reason.value, "output": self._name},
        )
        life.advance(BatchState.DEAD_LETTERED)
        self._remember(batch.id)
        return BatchResult(batch.id, life.state, attempts, len(batch))

    async def _dead_letter_invalid(self, records: List[Any], error: EventValidationError) -> None:
        logger.warning(f"Invalid record(s) rejected: count={len(records)} error={error}")
        payload = [dict(r) if isinstance(r, Mapping) else {"raw": repr(r)} for r in records]
        try:
            await self._router.route(
                generate_id(), payload, error, attempts=0, metadata={"output": self._name}
            )
        except DeadLetterSinkUnavailable as exc:
            if self._fatal is None:
                self._fatal = exc
            raise
