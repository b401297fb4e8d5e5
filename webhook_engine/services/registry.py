"""Webhook registration, updates and connectivity tests."""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from webhook_engine.config import settings
from webhook_engine.exceptions import WebhookNotFoundError
from webhook_engine.models.event import WebhookEvent
from webhook_engine.models.webhook import CONFIG_VERSION, AuthMode, Webhook
from webhook_engine.schemas.webhook import (
    AuthConfig,
    ConnectivityResult,
    FieldError,
    RateLimits,
    RetryPolicy,
    WebhookCreate,
    WebhookUpdate,
    check_auth,
)
from webhook_engine.services.executor import DeliveryExecutor
from webhook_engine.services.signing import generate_secret
from webhook_engine.stores.base import WebhookStore

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = (
    "name",
    "description",
    "url",
    "events",
    "event_filters",
    "custom_headers",
    "integration_type",
    "integration_config",
    "timeout_seconds",
    "priority",
    "is_active",
    "secret",
)
_NULLABLE_FIELDS = frozenset({"description", "secret"})


@dataclass
class RegistrationResult:
    success: bool
    webhook: Webhook | None = None
    errors: list[FieldError] = field(default_factory=list)


def _field_errors(exc: ValidationError) -> list[FieldError]:
    errors = []
    for err in exc.errors():
        message = err["msg"]
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        loc = ".".join(str(part) for part in err["loc"]) or "__root__"
        errors.append(FieldError(field=loc, message=message))
    return errors


class WebhookRegistry:
    def __init__(
        self,
        webhooks: WebhookStore,
        executor: DeliveryExecutor,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._webhooks = webhooks
        self._executor = executor
        self._clock = clock or (lambda: datetime.now(UTC))

    async def register(self, owner_id: str, data: dict[str, Any]) -> RegistrationResult:
        """Validate and persist a new webhook; every violation is reported at once."""
        try:
            config = WebhookCreate.model_validate(data)
        except ValidationError as e:
            return RegistrationResult(success=False, errors=_field_errors(e))

        retry = config.retry_policy or RetryPolicy.defaults()
        limits = config.rate_limits or RateLimits.defaults()
        secret = config.secret
        if config.auth_mode == AuthMode.HMAC_SHA256 and not secret:
            secret = generate_secret()

        now = self._clock()
        webhook = Webhook(
            webhook_id=uuid.uuid4(),
            owner_id=owner_id,
            name=config.name,
            description=config.description,
            url=config.url,
            events=config.events,
            event_filters=config.event_filters,
            is_active=config.is_active,
            auth_mode=config.auth_mode,
            auth_config=config.auth_config.model_dump(mode="json", exclude_none=True),
            secret=secret,
            custom_headers=config.custom_headers,
            integration_type=config.integration_type,
            integration_config=config.integration_config,
            timeout_seconds=config.timeout_seconds or settings.webhook_timeout_seconds,
            max_retries=retry.max_retries,
            initial_delay_ms=retry.initial_delay_ms,
            backoff_multiplier=retry.backoff_multiplier,
            max_delay_ms=retry.max_delay_ms,
            rate_limit_per_hour=limits.per_hour,
            rate_limit_per_day=limits.per_day,
            priority=config.priority,
            config_version=CONFIG_VERSION,
            created_at=now,
            updated_at=now,
            last_triggered_at=None,
        )
        webhook = await self._webhooks.add(webhook)
        logger.info(
            "Registered webhook %s (%s) for owner %s: %s",
            webhook.webhook_id, webhook.name, owner_id, ", ".join(webhook.events),
        )
        return RegistrationResult(success=True, webhook=webhook)

    async def update(self, webhook_id: uuid.UUID, patch: dict[str, Any]) -> RegistrationResult:
        """Merge a partial update onto an existing webhook."""
        webhook = await self.get(webhook_id)
        try:
            changes = WebhookUpdate.model_validate(patch)
        except ValidationError as e:
            return RegistrationResult(success=False, errors=_field_errors(e))

        supplied = changes.model_fields_set
        auth_mode = changes.auth_mode or webhook.auth_mode
        auth_config = (
            changes.auth_config if changes.auth_config is not None
            else AuthConfig.model_validate(webhook.auth_config or {})
        )
        try:
            check_auth(auth_mode, auth_config)
        except ValueError as e:
            return RegistrationResult(
                success=False, errors=[FieldError(field="auth_config", message=str(e))]
            )

        for name in _UPDATABLE_FIELDS:
            if name not in supplied:
                continue
            value = getattr(changes, name)
            if value is None and name not in _NULLABLE_FIELDS:
                continue
            setattr(webhook, name, value)

        webhook.auth_mode = auth_mode
        webhook.auth_config = auth_config.model_dump(mode="json", exclude_none=True)
        if webhook.auth_mode == AuthMode.HMAC_SHA256 and not webhook.secret:
            webhook.secret = generate_secret()

        if changes.retry_policy is not None:
            webhook.max_retries = changes.retry_policy.max_retries
            webhook.initial_delay_ms = changes.retry_policy.initial_delay_ms
            webhook.backoff_multiplier = changes.retry_policy.backoff_multiplier
            webhook.max_delay_ms = changes.retry_policy.max_delay_ms
        if changes.rate_limits is not None:
            webhook.rate_limit_per_hour = changes.rate_limits.per_hour
            webhook.rate_limit_per_day = changes.rate_limits.per_day

        webhook.config_version += 1
        webhook.updated_at = self._clock()
        webhook = await self._webhooks.save(webhook)
        logger.info(
            "Updated webhook %s (version %d): %s",
            webhook_id, webhook.config_version, ", ".join(sorted(supplied)),
        )
        return RegistrationResult(success=True, webhook=webhook)

    async def get(self, webhook_id: uuid.UUID) -> Webhook:
        webhook = await self._webhooks.get(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(webhook_id)
        return webhook

    async def list_webhooks(
        self, owner_id: str | None = None, active: bool | None = None
    ) -> list[Webhook]:
        return await self._webhooks.find(owner_id=owner_id, active=active)

    async def delete(self, webhook_id: uuid.UUID) -> None:
        if not await self._webhooks.delete(webhook_id):
            raise WebhookNotFoundError(webhook_id)
        logger.info("Deleted webhook %s", webhook_id)

    async def test_connectivity(
        self,
        webhook_id: uuid.UUID,
        test_payload: dict[str, Any] | None = None,
        event_type: str | None = None,
    ) -> ConnectivityResult:
        """Send one signed test delivery, outside the retry and logging pipeline."""
        webhook = await self.get(webhook_id)
        event = WebhookEvent(
            event_id=uuid.uuid4(),
            event_type=event_type or webhook.events[0],
            payload=test_payload if test_payload is not None else {"test": True},
            owner_id=webhook.owner_id,
            created_at=self._clock(),
        )
        outcome = await self._executor.attempt(webhook, event, 1, uuid.uuid4())
        logger.info(
            "Connectivity test for webhook %s: status=%s error=%s",
            webhook_id, outcome.status_code, outcome.error,
        )
        return ConnectivityResult(
            success=outcome.succeeded,
            status_code=outcome.status_code,
            response_time_ms=outcome.response_time_ms,
            error=outcome.error,
        )
