"""
Dead-letter routing for batches that cannot be delivered.

Records are written to a secondary sink (NDJSON file or webhook). A sink
failure is fatal for the batch and is raised as DeadLetterSinkUnavailable;
nothing is dropped silently.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from loguru import logger

from ..errors import DeadLetterSinkUnavailable
from ..metrics.registry import MetricsSink, NullMetrics


@dataclass
class DeadLetterRecord:
    """A failed batch plus its terminal classification."""

    batch_id: str
    events: List[Dict[str, Any]]
    error_kind: str
    error: str
    attempts: int
    status_code: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, line: str) -> "DeadLetterRecord":
        return cls(**json.loads(line))


class DeadLetterSink(Protocol):
    async def write(self, record: DeadLetterRecord) -> None: ...

    async def close(self) -> None: ...


class FileDeadLetterSink:
    """Append-only NDJSON file sink.

    Example:
        sink = FileDeadLetterSink(".dlq/events.ndjson")
        await sink.write(record)
        recs = await sink.replay(100)
    """

    def __init__(self, path: str | Path, *, mkdirs: bool = True, fsync: bool = True):
        self.path = Path(path)
        self._fsync = fsync
        if mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def write(self, record: DeadLetterRecord) -> None:
        line = record.to_json() + "\n"
        async with self._lock:
            await asyncio.to_thread(self._append, line)

    def _append(self, line: str) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            if self._fsync:
                os.fsync(f.fileno())

    async def replay(self, max_records: int = 1000) -> List[DeadLetterRecord]:
        """Read back up to ``max_records`` records, oldest first."""
        if not self.path.exists():
            return []
        return await asyncio.to_thread(self._read, max_records)

    def _read(self, max_records: int) -> List[DeadLetterRecord]:
        out: List[DeadLetterRecord] = []
        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if len(out) >= max_records:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    out.append(DeadLetterRecord.from_json(line))
                except (ValueError, TypeError) as e:
                    # torn tail after a crash mid-append
                    logger.warning(
                        f"Skipping unreadable dead-letter line: path={self.path} "
                        f"line={lineno} error={e}"
                    )
        return out

    async def close(self) -> None:
        pass


class WebhookDeadLetterSink:
    """POSTs each record as JSON; any non-2xx response is a failure."""

    def __init__(
        self, url: str, *, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None
    ):
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def write(self, record: DeadLetterRecord) -> None:
        resp = await self._client.post(
            self.url, content=record.to_json(), headers={"content-type": "application/json"}
        )
        resp.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_dead_letter_sink(target: str, *, timeout: float = 10.0) -> DeadLetterSink:
    """``http(s)://`` targets become a webhook sink, anything else a file path."""
    if target.startswith(("http://", "https://")):
        return WebhookDeadLetterSink(target, timeout=timeout)
    return FileDeadLetterSink(target)


class DeadLetterRouter:
    """Hands failed batches to the dead-letter sink."""

    def __init__(self, sink: DeadLetterSink, *, metrics: Optional[MetricsSink] = None):
        self._sink = sink
        self._metrics = metrics or NullMetrics()

    @property
    def sink(self) -> DeadLetterSink:
        return self._sink

    async def route(
        self,
        batch_id: str,
        events: Sequence[Dict[str, Any]],
        error: Exception,
        *,
        attempts: int,
        status_code: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DeadLetterRecord:
        """Write one record; raises DeadLetterSinkUnavailable if the sink fails."""
        kind = getattr(error, "kind", type(error).__name__)
        record = DeadLetterRecord(
            batch_id=batch_id,
            events=list(events),
            error_kind=kind,
            error=str(error),
            attempts=attempts,
            status_code=status_code,
            metadata=dict(metadata or {}),
        )
        try:
            await self._sink.write(record)
        except Exception as exc:
            logger.critical(
                f"Dead-letter sink unavailable: batch={batch_id} events={len(record.events)} "
                f"error={type(exc).__name__}: {exc}"
            )
            raise DeadLetterSinkUnavailable(
                f"could not dead-letter batch {batch_id}: {type(exc).__name__}: {exc}"
            ) from exc

        self._metrics.batch_dead_lettered(kind, len(record.events))
        logger.error(
            f"Batch dead-lettered: batch={batch_id} events={len(record.events)} "
            f"kind={kind} attempts={attempts} status={status_code}"
        )
        return record

    async def close(self) -> None:
        await self._sink.close()
