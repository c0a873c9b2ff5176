"""
Unit tests for the /healthz and /metrics endpoints.
"""

import httpx
import pytest

from usage_collector.errors import DeadLetterSinkUnavailable
from usage_collector.metrics import PrometheusMetrics
from usage_collector.output import UsageOutput
from usage_collector.service.app import create_app

from .output.conftest import FakeIngestAPI, MemoryDeadLetterSink, make_record


def _build(make_settings, sink=None, api=None):
    metrics = PrometheusMetrics()
    api = api or FakeIngestAPI()
    out = UsageOutput(
        make_settings(batch_count=2),
        client=api.client(),
        dead_letter_sink=sink or MemoryDeadLetterSink(),
        metrics=metrics,
    )
    app = create_app(out, metrics.registry)
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://svc")
    return out, http


@pytest.mark.asyncio
async def test_healthz_unhealthy_before_start(make_settings):
    out, http = _build(make_settings)
    async with http:
        resp = await http.get("/healthz")
    assert resp.status_code == 503
    assert resp.json()["status"] == "unhealthy"
    assert resp.json()["running"] is False


@pytest.mark.asyncio
async def test_healthz_ok_while_running(make_settings):
    out, http = _build(make_settings)
    async with out, http:
        resp = await http.get("/healthz")
        body = resp.json()
    assert resp.status_code == 200
    assert body["status"] == "ok"
    assert body["max_in_flight"] == 2
    assert body["fatal_error"] is None


@pytest.mark.asyncio
async def test_healthz_reports_fatal_dead_letter_failure(make_settings):
    out, http = _build(
        make_settings,
        sink=MemoryDeadLetterSink(fail=True),
        api=FakeIngestAPI(lambda n, events: 400),
    )
    await out.start()
    task = await out.add(make_record(0))
    task = task or await out.add(make_record(1))
    with pytest.raises(DeadLetterSinkUnavailable):
        await task

    async with http:
        resp = await http.get("/healthz")
    assert resp.status_code == 503
    assert "dead-letter" in resp.json()["fatal_error"]

    with pytest.raises(DeadLetterSinkUnavailable):
        await out.close()


@pytest.mark.asyncio
async def test_metrics_exposition(make_settings):
    out, http = _build(make_settings)
    async with out, http:
        await out.add(make_record(0))
        task = await out.add(make_record(1))
        await task
        resp = await http.get("/metrics")

    assert resp.status_code == 200
    assert "collector_events_received_total 2.0" in resp.text
    assert "collector_batches_sent_total 1.0" in resp.text
