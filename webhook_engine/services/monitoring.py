"""Delivery analytics, degradation alerts and failure escalation.

Everything here is derived from the delivery log and delivery records;
the monitor never touches delivery state.
"""

import asyncio
import logging
import math
import uuid
from collections import Counter, deque
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from webhook_engine.config import settings
from webhook_engine.exceptions import WebhookNotFoundError
from webhook_engine.models.delivery import DeliveryStatus
from webhook_engine.models.webhook import Webhook
from webhook_engine.schemas.monitoring import (
    Alert,
    AlertType,
    CriticalFailureSignal,
    DeliveryMetrics,
    Escalation,
    FailingWebhook,
    SystemHealth,
    TrendAnalysis,
    TrendThresholds,
    WebhookHealth,
)
from webhook_engine.stores.base import DeliveryLogStore, DeliveryStore, WebhookStore

logger = logging.getLogger(__name__)

MAX_RECENT_ALERTS = 500
# Terminal deliveries inspected when counting a failure streak
_STREAK_LOOKBACK = 100


def _percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile of an already sorted list."""
    if not values:
        return 0.0
    rank = max(0, math.ceil(pct / 100 * len(values)) - 1)
    return values[rank]


class MonitoringService:
    def __init__(
        self,
        webhooks: WebhookStore,
        deliveries: DeliveryStore,
        logs: DeliveryLogStore,
        clock: Callable[[], datetime] | None = None,
        thresholds: TrendThresholds | None = None,
        consecutive_failures_threshold: int | None = None,
        alert_cooldown: timedelta | None = None,
    ) -> None:
        self._webhooks = webhooks
        self._deliveries = deliveries
        self._logs = logs
        self._clock = clock or (lambda: datetime.now(UTC))
        self._thresholds = thresholds or TrendThresholds(
            success_rate=settings.monitoring_success_rate_threshold,
            response_time_ms=settings.monitoring_response_time_threshold_ms,
            window_minutes=settings.monitoring_window_minutes,
        )
        self._failure_threshold = (
            consecutive_failures_threshold or settings.monitoring_consecutive_failures_threshold
        )
        self._cooldown = alert_cooldown or timedelta(
            minutes=settings.monitoring_alert_cooldown_minutes
        )
        self._alerts: deque[Alert] = deque(maxlen=MAX_RECENT_ALERTS)
        self._escalations: deque[Escalation] = deque(maxlen=MAX_RECENT_ALERTS)
        self._last_alerted: dict[tuple[uuid.UUID, str], datetime] = {}

    # -- analytics --------------------------------------------------------

    async def get_metrics(
        self, webhook_id: uuid.UUID, start: datetime, end: datetime
    ) -> DeliveryMetrics:
        logs = await self._logs.window(webhook_id, start, end)
        total = len(logs)
        successes = sum(1 for log in logs if log.success)
        times = sorted(log.response_time_ms for log in logs if log.response_time_ms is not None)

        status_codes = Counter(
            str(log.response_status_code) for log in logs if log.response_status_code is not None
        )
        errors = Counter(log.error_kind for log in logs if log.error_kind)
        event_types = Counter(log.event_type for log in logs)

        delivery_statuses = await self._deliveries.count_by_status(webhook_id, start, end)

        return DeliveryMetrics(
            webhook_id=webhook_id,
            period_start=start,
            period_end=end,
            total_attempts=total,
            successful_attempts=successes,
            failed_attempts=total - successes,
            success_rate=round(successes / total, 4) if total else 0.0,
            average_response_time_ms=round(sum(times) / len(times), 2) if times else 0.0,
            p50_response_time_ms=_percentile(times, 50),
            p95_response_time_ms=_percentile(times, 95),
            p99_response_time_ms=_percentile(times, 99),
            status_code_breakdown=dict(status_codes),
            error_breakdown=dict(errors),
            event_breakdown=dict(event_types),
            delivery_status_breakdown={
                status.value: count for status, count in delivery_statuses.items()
            },
        )

    async def analyze_trend(
        self, webhook_id: uuid.UUID, thresholds: TrendThresholds | None = None
    ) -> TrendAnalysis:
        """Compare the recent window against thresholds and raise degradation alerts."""
        thresholds = thresholds or self._thresholds
        now = self._clock()
        start = now - timedelta(minutes=thresholds.window_minutes)
        metrics = await self.get_metrics(webhook_id, start, now)

        degraded = False
        alerts: list[Alert] = []
        if metrics.total_attempts:
            if metrics.success_rate < thresholds.success_rate:
                degraded = True
                far = metrics.success_rate < thresholds.success_rate * 0.5
                alert = self._raise_alert(
                    webhook_id, "success_rate_low",
                    "critical" if far else "high",
                    f"Success rate {metrics.success_rate:.1%} below "
                    f"{thresholds.success_rate:.1%}",
                    thresholds.success_rate, metrics.success_rate, now,
                )
                if alert is not None:
                    alerts.append(alert)
            if metrics.average_response_time_ms > thresholds.response_time_ms:
                degraded = True
                far = metrics.average_response_time_ms > thresholds.response_time_ms * 2
                alert = self._raise_alert(
                    webhook_id, "response_time_high",
                    "critical" if far else "medium",
                    f"Average response time {metrics.average_response_time_ms:.0f}ms above "
                    f"{thresholds.response_time_ms:.0f}ms",
                    thresholds.response_time_ms, metrics.average_response_time_ms, now,
                )
                if alert is not None:
                    alerts.append(alert)

        return TrendAnalysis(
            webhook_id=webhook_id,
            window_start=start,
            window_end=now,
            degradation_detected=degraded,
            success_rate=metrics.success_rate,
            average_response_time_ms=metrics.average_response_time_ms,
            alerts=alerts,
        )

    # -- escalation -------------------------------------------------------

    async def handle_critical_failure(self, signal: CriticalFailureSignal) -> Escalation | None:
        """Escalate when the latest N terminal deliveries of a webhook were all abandoned."""
        recent = await self._deliveries.recent_terminal(signal.webhook_id, self._failure_threshold)
        if len(recent) < self._failure_threshold:
            return None
        if any(d.status != DeliveryStatus.ABANDONED for d in recent):
            return None

        now = self._clock()
        key = (signal.webhook_id, "escalation")
        last = self._last_alerted.get(key)
        if last is not None and now - last < self._cooldown:
            logger.debug("Escalation for webhook %s suppressed by cooldown", signal.webhook_id)
            return None
        self._last_alerted[key] = now

        escalation = Escalation(
            webhook_id=signal.webhook_id,
            consecutive_failures=len(recent),
            threshold=self._failure_threshold,
            last_delivery_id=signal.delivery_id,
            message=(
                f"Last {len(recent)} deliveries abandoned; latest failed with "
                f"{signal.error_kind or 'unknown error'} after {signal.attempts} attempts"
            ),
            created_at=now,
        )
        self._escalations.append(escalation)
        self._raise_alert(
            signal.webhook_id, "consecutive_failures", "critical", escalation.message,
            float(self._failure_threshold), float(len(recent)), now, respect_cooldown=False,
        )
        logger.error(
            "Escalating webhook %s: %s", signal.webhook_id, escalation.message,
            extra={
                "webhook_id": str(signal.webhook_id),
                "event_id": str(signal.event_id),
                "attempt": signal.attempts,
                "status_code": None,
                "duration": None,
                "error": signal.error,
            },
        )
        return escalation

    # -- health -----------------------------------------------------------

    async def health_report(self, webhook_id: uuid.UUID) -> WebhookHealth:
        webhook = await self._webhooks.get(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(webhook_id)
        return await self._health(webhook)

    async def system_health(self) -> SystemHealth:
        webhooks = await self._webhooks.find()
        active = [w for w in webhooks if w.is_active]
        healthy = degraded = critical = 0
        failing: list[FailingWebhook] = []

        for webhook in active:
            report = await self._health(webhook)
            if report.is_healthy:
                healthy += 1
            elif self._is_critical(report):
                critical += 1
            else:
                degraded += 1
            if report.total_deliveries and report.error_rate > 0:
                failing.append(FailingWebhook(
                    webhook_id=webhook.webhook_id,
                    name=webhook.name,
                    failure_rate=report.error_rate,
                    consecutive_failures=report.consecutive_failures,
                ))

        failing.sort(key=lambda f: (f.failure_rate, f.consecutive_failures), reverse=True)
        if critical:
            overall = "critical"
        elif degraded:
            overall = "degraded"
        else:
            overall = "healthy"

        return SystemHealth(
            overall_health=overall,
            total_webhooks=len(webhooks),
            active_webhooks=len(active),
            healthy_webhooks=healthy,
            degraded_webhooks=degraded,
            critical_webhooks=critical,
            top_failing_webhooks=failing[:5],
            recent_alerts=self.recent_alerts(limit=10),
            checked_at=self._clock(),
        )

    def recent_alerts(self, webhook_id: uuid.UUID | None = None, limit: int = 50) -> list[Alert]:
        alerts = [a for a in self._alerts if webhook_id is None or a.webhook_id == webhook_id]
        return list(reversed(alerts))[:limit]

    def recent_escalations(self, limit: int = 50) -> list[Escalation]:
        return list(reversed(self._escalations))[:limit]

    async def run_health_checks(self, interval_seconds: float | None = None) -> None:
        """Analyze every active webhook periodically until cancelled."""
        interval = interval_seconds or settings.monitoring_interval_seconds
        logger.info("Health checks started (every %ss)", interval)
        while True:
            try:
                for webhook in await self._webhooks.find(active=True):
                    analysis = await self.analyze_trend(webhook.webhook_id)
                    if analysis.degradation_detected:
                        logger.warning(
                            "Webhook %s degraded: success_rate=%.3f avg_response_ms=%.1f",
                            webhook.webhook_id, analysis.success_rate,
                            analysis.average_response_time_ms,
                        )
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                logger.info("Health checks shutting down")
                break
            except Exception:
                logger.exception("Health check pass failed")
                await asyncio.sleep(interval)

    # -- internals --------------------------------------------------------

    async def _health(self, webhook: Webhook) -> WebhookHealth:
        now = self._clock()
        start = now - timedelta(minutes=self._thresholds.window_minutes)
        metrics = await self.get_metrics(webhook.webhook_id, start, now)

        terminal = await self._deliveries.recent_terminal(webhook.webhook_id, _STREAK_LOOKBACK)
        streak = 0
        for delivery in terminal:
            if delivery.status != DeliveryStatus.ABANDONED:
                break
            streak += 1
        last_success = next(
            (d.completed_at for d in terminal if d.status == DeliveryStatus.SUCCESS), None
        )

        total = metrics.total_attempts
        error_rate = round(1 - metrics.success_rate, 4) if total else 0.0
        is_healthy = (
            (total == 0 or metrics.success_rate >= self._thresholds.success_rate)
            and metrics.average_response_time_ms <= self._thresholds.response_time_ms
            and streak < self._failure_threshold
        )
        return WebhookHealth(
            webhook_id=webhook.webhook_id,
            webhook_name=webhook.name,
            is_healthy=is_healthy,
            success_rate=metrics.success_rate,
            error_rate=error_rate,
            average_response_time_ms=metrics.average_response_time_ms,
            consecutive_failures=streak,
            total_deliveries=total,
            last_successful_delivery=last_success,
            alerts=self.recent_alerts(webhook.webhook_id, limit=10),
            checked_at=now,
        )

    def _is_critical(self, report: WebhookHealth) -> bool:
        if report.consecutive_failures >= self._failure_threshold:
            return True
        return bool(report.total_deliveries) and (
            report.success_rate < self._thresholds.success_rate * 0.5
        )

    def _raise_alert(
        self,
        webhook_id: uuid.UUID,
        alert_type: AlertType,
        severity: str,
        message: str,
        threshold: float,
        current_value: float,
        now: datetime,
        respect_cooldown: bool = True,
    ) -> Alert | None:
        key = (webhook_id, alert_type)
        last = self._last_alerted.get(key)
        if respect_cooldown and last is not None and now - last < self._cooldown:
            return None
        self._last_alerted[key] = now
        alert = Alert(
            webhook_id=webhook_id,
            type=alert_type,
            severity=severity,
            message=message,
            threshold=threshold,
            current_value=current_value,
            created_at=now,
        )
        self._alerts.append(alert)
        logger.warning("Alert %s (%s) for webhook %s: %s", alert_type, severity, webhook_id, message)
        return alert
