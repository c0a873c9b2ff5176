"""
Unit tests for InFlightLimiter and backpressure feedback.
"""

import asyncio

import pytest

from usage_collector.output import BackpressureLevel, FeedbackBus, InFlightLimiter


@pytest.mark.asyncio
async def test_acquire_blocks_at_limit():
    lim = InFlightLimiter(2)
    s1 = await lim.acquire()
    s2 = await lim.acquire()
    assert lim.in_flight == 2
    assert lim.available == 0

    waiter = asyncio.create_task(lim.acquire())
    await asyncio.sleep(0.02)
    assert not waiter.done()

    s1.release()
    s3 = await asyncio.wait_for(waiter, timeout=1.0)
    assert lim.in_flight == 2

    s2.release()
    s3.release()
    assert lim.in_flight == 0
    assert lim.peak == 2


@pytest.mark.asyncio
async def test_release_twice_raises():
    lim = InFlightLimiter(1)
    slot = await lim.acquire()
    slot.release()
    with pytest.raises(RuntimeError):
        slot.release()
    assert lim.in_flight == 0


@pytest.mark.asyncio
async def test_never_exceeds_limit_under_contention():
    lim = InFlightLimiter(3)
    observed = []

    async def worker(delay):
        slot = await lim.acquire()
        observed.append(lim.in_flight)
        await asyncio.sleep(delay)
        slot.release()

    await asyncio.gather(*[worker(0.001 * (i % 5)) for i in range(40)])
    assert max(observed) <= 3
    assert lim.peak == 3


@pytest.mark.asyncio
async def test_feedback_on_saturation_and_recovery():
    bus = FeedbackBus()
    events = []

    async def sub(evt):
        events.append(evt)

    bus.subscribe(sub)
    lim = InFlightLimiter(2, name="out-test", bus=bus)

    a = await lim.acquire()
    b = await lim.acquire()
    assert [e.level for e in events] == [BackpressureLevel.HARD]
    assert events[0].output_id == "out-test"
    assert events[0].utilization == 1.0

    a.release()
    await asyncio.sleep(0)  # recovery is published from a task
    await asyncio.sleep(0)
    assert [e.level for e in events] == [BackpressureLevel.HARD, BackpressureLevel.OK]

    b.release()
    await asyncio.sleep(0)
    assert len(events) == 2


@pytest.mark.asyncio
async def test_on_change_reports_in_flight():
    seen = []
    lim = InFlightLimiter(2, on_change=seen.append)
    slot = await lim.acquire()
    slot.release()
    assert seen == [1, 0]


def test_invalid_limit():
    with pytest.raises(ValueError):
        InFlightLimiter(0)
