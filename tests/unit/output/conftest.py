"""
Fakes for output unit tests: an in-process ingestion API and DLQ sinks.
"""

import asyncio
import json
from typing import Callable, Optional

import httpx
import pytest

from usage_collector.output import IngestClient
from usage_collector.output.dlq import DeadLetterRecord


class FakeIngestAPI:
    """httpx.MockTransport-backed ingestion API recording every request.

    ``responder(request_number, events)`` returns a status code or raises an
    httpx exception; the default accepts everything.
    """

    def __init__(self, responder: Optional[Callable] = None, delay: float = 0.0):
        self.responder = responder or (lambda n, events: 202)
        self.delay = delay
        self.requests: list[dict] = []
        self.active = 0
        self.max_active = 0

    async def handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(
            {"url": str(request.url), "headers": dict(request.headers), "events": body}
        )
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            status = self.responder(len(self.requests), body)
        finally:
            self.active -= 1
        return httpx.Response(status, json={"accepted": status < 300})

    def client(self, host: str = "http://ingest.test", api_key: str = "test-key") -> IngestClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self.handle))
        return IngestClient(host, api_key, timeout=1.0, client=http)


class MemoryDeadLetterSink:
    def __init__(self, fail: bool = False):
        self.records: list[DeadLetterRecord] = []
        self.fail = fail
        self.closed = False

    async def write(self, record: DeadLetterRecord) -> None:
        if self.fail:
            raise ConnectionError("dlq topic unreachable")
        self.records.append(record)

    async def close(self) -> None:
        self.closed = True


def make_record(n: int, **extra) -> dict:
    rec = {
        "event_name": "api_call",
        "external_customer_id": f"cust-{n % 3}",
        "properties": {"n": n},
        "timestamp": "2026-01-01T00:00:00Z",
    }
    rec.update(extra)
    return rec


@pytest.fixture
def fake_api():
    return FakeIngestAPI()


@pytest.fixture
def dlq_sink():
    return MemoryDeadLetterSink()
