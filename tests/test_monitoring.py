"""Tests for delivery analytics, trend alerts, escalation and health reports."""

import uuid
from datetime import datetime, timedelta

import pytest

from tests.conftest import FakeClock, Receiver, make_test_engine, register, store_event
from webhook_engine.exceptions import WebhookNotFoundError
from webhook_engine.models.delivery import DeliveryLog
from webhook_engine.models.webhook import Webhook
from webhook_engine.services.engine import WebhookEngine

NO_RETRIES = {
    "max_retries": 0,
    "initial_delay_ms": 1000,
    "backoff_multiplier": 2.0,
    "max_delay_ms": 1000,
}


async def _record(
    engine: WebhookEngine,
    webhook: Webhook,
    response_time_ms: float,
    status_code: int | None = 200,
    attempted_at: datetime | None = None,
    error_kind: str | None = None,
) -> None:
    success = status_code is not None and 200 <= status_code < 300
    await engine.logs.record(DeliveryLog(
        log_id=uuid.uuid4(),
        delivery_id=uuid.uuid4(),
        webhook_id=webhook.webhook_id,
        event_id=uuid.uuid4(),
        event_type="document.processing.completed",
        attempt_number=1,
        attempted_at=attempted_at or engine.clock(),
        request_url=webhook.url,
        request_method="POST",
        request_headers={},
        request_body="{}",
        response_status_code=status_code,
        response_headers=None,
        response_body=None,
        response_time_ms=response_time_ms,
        success=success,
        error_kind=error_kind if not success else None,
        error_message=None,
        resulting_status="success" if success else "retrying",
        retry_delay_ms=None,
    ))


@pytest.mark.asyncio
async def test_metrics_aggregate_the_window(engine: WebhookEngine, clock: FakeClock) -> None:
    webhook = await register(engine)
    for ms in (100, 200, 300):
        await _record(engine, webhook, ms)
    await _record(engine, webhook, 400, status_code=503, error_kind="http_error")
    # Outside the window
    await _record(engine, webhook, 9000, attempted_at=clock() - timedelta(days=2))

    metrics = await engine.monitoring.get_metrics(
        webhook.webhook_id, clock() - timedelta(hours=1), clock()
    )

    assert metrics.total_attempts == 4
    assert metrics.successful_attempts == 3
    assert metrics.failed_attempts == 1
    assert metrics.success_rate == 0.75
    assert metrics.average_response_time_ms == 250
    assert metrics.p50_response_time_ms == 200
    assert metrics.p95_response_time_ms == 400
    assert metrics.p99_response_time_ms == 400
    assert metrics.status_code_breakdown == {"200": 3, "503": 1}
    assert metrics.error_breakdown == {"http_error": 1}
    assert metrics.event_breakdown == {"document.processing.completed": 4}


@pytest.mark.asyncio
async def test_metrics_for_an_empty_window(engine: WebhookEngine, clock: FakeClock) -> None:
    webhook = await register(engine)
    metrics = await engine.monitoring.get_metrics(
        webhook.webhook_id, clock() - timedelta(hours=1), clock()
    )
    assert metrics.total_attempts == 0
    assert metrics.success_rate == 0.0
    assert metrics.average_response_time_ms == 0.0
    assert metrics.p95_response_time_ms == 0.0


@pytest.mark.asyncio
async def test_metrics_count_delivery_statuses(engine: WebhookEngine, clock: FakeClock) -> None:
    webhook = await register(engine)
    await engine.scheduler.schedule(webhook, await store_event(engine))
    await engine.scheduler.schedule(webhook, await store_event(engine))

    metrics = await engine.monitoring.get_metrics(
        webhook.webhook_id, clock() - timedelta(hours=1), clock()
    )
    assert metrics.delivery_status_breakdown == {"success": 2}


@pytest.mark.asyncio
async def test_delivery_status_counts_only_cover_the_period(clock: FakeClock) -> None:
    engine = make_test_engine(clock, Receiver(500))
    webhook = await register(engine, retry_policy=NO_RETRIES)
    await engine.scheduler.schedule(webhook, await store_event(engine))
    clock.advance(hours=2)
    await engine.scheduler.schedule(webhook, await store_event(engine))
    await engine.scheduler.schedule(webhook, await store_event(engine))

    metrics = await engine.monitoring.get_metrics(
        webhook.webhook_id, clock() - timedelta(hours=1), clock()
    )
    assert metrics.delivery_status_breakdown == {"abandoned": 2}
    await engine.stop()


@pytest.mark.asyncio
async def test_trend_raises_success_rate_alert_once_per_cooldown(
    engine: WebhookEngine, clock: FakeClock
) -> None:
    webhook = await register(engine)
    for ms in (100, 200, 300):
        await _record(engine, webhook, ms)
    await _record(engine, webhook, 400, status_code=500, error_kind="http_error")

    analysis = await engine.monitoring.analyze_trend(webhook.webhook_id)
    assert analysis.degradation_detected
    assert [(a.type, a.severity) for a in analysis.alerts] == [("success_rate_low", "high")]

    clock.advance(minutes=5)
    again = await engine.monitoring.analyze_trend(webhook.webhook_id)
    assert again.degradation_detected
    assert again.alerts == []

    clock.advance(minutes=15)
    later = await engine.monitoring.analyze_trend(webhook.webhook_id)
    assert len(later.alerts) == 1
    assert len(engine.monitoring.recent_alerts(webhook.webhook_id)) == 2


@pytest.mark.asyncio
async def test_trend_flags_slow_responses(engine: WebhookEngine) -> None:
    webhook = await register(engine)
    await _record(engine, webhook, 6000)
    await _record(engine, webhook, 8000)

    analysis = await engine.monitoring.analyze_trend(webhook.webhook_id)

    assert analysis.degradation_detected
    assert analysis.success_rate == 1.0
    assert [(a.type, a.severity) for a in analysis.alerts] == [("response_time_high", "medium")]


@pytest.mark.asyncio
async def test_trend_without_traffic_is_not_degraded(engine: WebhookEngine) -> None:
    webhook = await register(engine)
    analysis = await engine.monitoring.analyze_trend(webhook.webhook_id)
    assert not analysis.degradation_detected
    assert analysis.alerts == []


@pytest.mark.asyncio
async def test_consecutive_abandonments_escalate(clock: FakeClock) -> None:
    engine = make_test_engine(clock, Receiver(500))
    webhook = await register(engine, retry_policy=NO_RETRIES)

    for _ in range(4):
        await engine.scheduler.schedule(webhook, await store_event(engine))
        clock.advance(seconds=1)
    assert engine.monitoring.recent_escalations() == []

    await engine.scheduler.schedule(webhook, await store_event(engine))
    escalations = engine.monitoring.recent_escalations()
    assert len(escalations) == 1
    assert escalations[0].webhook_id == webhook.webhook_id
    assert escalations[0].consecutive_failures == 5
    assert escalations[0].escalation_level == "immediate"
    alert_types = [a.type for a in engine.monitoring.recent_alerts(webhook.webhook_id)]
    assert "consecutive_failures" in alert_types

    # Within the cooldown a further abandonment does not escalate again
    clock.advance(seconds=1)
    await engine.scheduler.schedule(webhook, await store_event(engine))
    assert len(engine.monitoring.recent_escalations()) == 1
    await engine.stop()


@pytest.mark.asyncio
async def test_a_success_breaks_the_failure_streak(clock: FakeClock) -> None:
    engine = make_test_engine(clock, Receiver(500, 500, 200, 500, 500, 500))
    webhook = await register(engine, retry_policy=NO_RETRIES)

    for _ in range(6):
        await engine.scheduler.schedule(webhook, await store_event(engine))
        clock.advance(seconds=1)

    assert engine.monitoring.recent_escalations() == []
    report = await engine.monitoring.health_report(webhook.webhook_id)
    assert report.consecutive_failures == 3
    assert report.last_successful_delivery is not None
    await engine.stop()


@pytest.mark.asyncio
async def test_health_report_for_healthy_webhook(engine: WebhookEngine) -> None:
    webhook = await register(engine)
    await engine.scheduler.schedule(webhook, await store_event(engine))

    report = await engine.monitoring.health_report(webhook.webhook_id)

    assert report.is_healthy
    assert report.webhook_name == "Document pipeline"
    assert report.success_rate == 1.0
    assert report.error_rate == 0.0
    assert report.total_deliveries == 1
    assert report.consecutive_failures == 0


@pytest.mark.asyncio
async def test_health_report_unknown_webhook(engine: WebhookEngine) -> None:
    with pytest.raises(WebhookNotFoundError):
        await engine.monitoring.health_report(uuid.uuid4())


@pytest.mark.asyncio
async def test_system_health_rolls_up_webhooks(engine: WebhookEngine) -> None:
    healthy = await register(engine, name="Healthy")
    flaky = await register(engine, name="Flaky")
    await register(engine, name="Paused", is_active=False)

    await _record(engine, healthy, 120)
    await _record(engine, flaky, 150)
    for _ in range(3):
        await _record(engine, flaky, 150, status_code=502, error_kind="http_error")

    report = await engine.monitoring.system_health()

    assert report.total_webhooks == 3
    assert report.active_webhooks == 2
    assert report.healthy_webhooks == 1
    assert report.critical_webhooks == 1
    assert report.overall_health == "critical"
    assert [f.webhook_id for f in report.top_failing_webhooks] == [flaky.webhook_id]
    assert report.top_failing_webhooks[0].failure_rate == 0.75


@pytest.mark.asyncio
async def test_system_health_degraded(engine: WebhookEngine) -> None:
    webhook = await register(engine)
    for _ in range(9):
        await _record(engine, webhook, 100)
    await _record(engine, webhook, 100, status_code=500, error_kind="http_error")

    report = await engine.monitoring.system_health()

    assert report.degraded_webhooks == 1
    assert report.overall_health == "degraded"
