"""Tests for the delivery worker pool."""

import asyncio
import logging

import pytest

from tests.conftest import FakeClock, Receiver, register
from webhook_engine.models.delivery import DeliveryStatus
from webhook_engine.services.engine import build_memory_engine
from webhook_engine.services.worker_pool import DeliveryWorkerPool


@pytest.mark.asyncio
async def test_jobs_run_on_workers() -> None:
    pool = DeliveryWorkerPool(3)
    done: list[int] = []

    async def job(n: int) -> None:
        await asyncio.sleep(0)
        done.append(n)

    for n in range(10):
        pool.submit(lambda n=n: job(n), label=f"job-{n}")
    assert pool.backlog == 10
    assert not pool.running

    pool.start()
    await pool.join()

    assert sorted(done) == list(range(10))
    assert pool.backlog == 0
    await pool.stop()
    assert not pool.running


@pytest.mark.asyncio
async def test_failing_job_does_not_stop_the_worker(caplog: pytest.LogCaptureFixture) -> None:
    pool = DeliveryWorkerPool(1)
    done: list[str] = []

    async def boom() -> None:
        raise RuntimeError("boom")

    async def fine() -> None:
        done.append("fine")

    pool.start()
    with caplog.at_level(logging.ERROR):
        pool.submit(boom, label="boom")
        pool.submit(fine, label="fine")
        await pool.join()

    assert done == ["fine"]
    assert any("job boom failed" in r.getMessage() for r in caplog.records)
    await pool.stop()


@pytest.mark.asyncio
async def test_engine_with_workers_delivers_in_background(clock: FakeClock) -> None:
    receiver = Receiver(200)
    engine = build_memory_engine(clock=clock, client=receiver.client(), worker_count=2)
    await engine.start(background=False)
    webhook = await register(engine)

    result = await engine.dispatcher.publish(
        "document.processing.completed", {"document_id": "doc-1"}
    )
    # Accepted before the attempt ran
    assert result.deliveries[0].status == DeliveryStatus.PENDING

    await engine.pool.join()
    deliveries = await engine.deliveries.list_for_webhook(webhook.webhook_id)
    assert [d.status for d in deliveries] == [DeliveryStatus.SUCCESS]
    assert len(receiver.requests) == 1
    await engine.stop()
