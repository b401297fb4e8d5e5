"""Tests for webhook registration, updates, deletion and connectivity tests."""

import uuid

import httpx
import pytest

from tests.conftest import FakeClock, Receiver, make_test_engine, make_webhook_data, register
from webhook_engine.config import settings
from webhook_engine.exceptions import WebhookNotFoundError
from webhook_engine.models.webhook import CONFIG_VERSION, AuthMode, Priority
from webhook_engine.services.engine import WebhookEngine
from webhook_engine.services.registry import RegistrationResult


def _fields(result: RegistrationResult) -> set[str]:
    return {e.field for e in result.errors}


@pytest.mark.asyncio
async def test_register_applies_defaults(engine: WebhookEngine, clock: FakeClock) -> None:
    webhook = await register(engine)

    assert webhook.owner_id == "owner-1"
    assert webhook.is_active
    assert webhook.priority == Priority.NORMAL
    assert webhook.max_retries == settings.webhook_max_retries
    assert webhook.initial_delay_ms == settings.webhook_initial_delay_ms
    assert webhook.rate_limit_per_hour == settings.webhook_rate_limit_per_hour
    assert webhook.timeout_seconds == settings.webhook_timeout_seconds
    assert webhook.config_version == CONFIG_VERSION
    assert webhook.created_at == webhook.updated_at == clock()
    assert await engine.webhooks.get(webhook.webhook_id) is webhook


@pytest.mark.asyncio
async def test_register_reports_every_violation(engine: WebhookEngine) -> None:
    result = await engine.registry.register(
        "owner-1", make_webhook_data(name="   ", url="ftp://files.example.com", events=[])
    )

    assert not result.success
    assert result.webhook is None
    assert _fields(result) == {"name", "url", "events"}
    assert await engine.webhooks.find() == []


@pytest.mark.asyncio
async def test_register_rejects_unknown_event_type(engine: WebhookEngine) -> None:
    result = await engine.registry.register(
        "owner-1", make_webhook_data(events=["document.uploaded", "document.exploded"])
    )
    assert not result.success
    assert "document.exploded" in result.errors[0].message


@pytest.mark.asyncio
@pytest.mark.parametrize("url", [
    "http://10.0.0.5/hook",
    "http://127.0.0.1:8080/hook",
    "http://192.168.1.20/hook",
    "http://localhost/hook",
])
async def test_register_rejects_internal_targets(engine: WebhookEngine, url: str) -> None:
    result = await engine.registry.register("owner-1", make_webhook_data(url=url))
    assert not result.success
    assert _fields(result) == {"url"}


@pytest.mark.asyncio
async def test_private_targets_allowed_when_configured(engine: WebhookEngine) -> None:
    settings.webhook_allow_private_targets = True
    result = await engine.registry.register(
        "owner-1", make_webhook_data(url="http://127.0.0.1:8080/hook")
    )
    assert result.success


@pytest.mark.asyncio
async def test_register_rejects_reserved_custom_headers(engine: WebhookEngine) -> None:
    result = await engine.registry.register(
        "owner-1", make_webhook_data(custom_headers={"Authorization": "Basic abc"})
    )
    assert not result.success
    assert _fields(result) == {"custom_headers"}


@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{"X-Team": "Équipe"}, {"X-Équipe": "core"}])
async def test_register_rejects_non_ascii_custom_headers(
    engine: WebhookEngine, headers: dict[str, str]
) -> None:
    result = await engine.registry.register("owner-1", make_webhook_data(custom_headers=headers))
    assert not result.success
    assert _fields(result) == {"custom_headers"}
    assert "ASCII" in result.errors[0].message
    assert await engine.webhooks.find() == []


@pytest.mark.asyncio
async def test_update_rejects_non_ascii_custom_headers(engine: WebhookEngine) -> None:
    webhook = await register(engine, custom_headers={"X-Team": "core"})

    result = await engine.registry.update(
        webhook.webhook_id, {"custom_headers": {"X-Team": "Équipe"}}
    )

    assert not result.success
    assert _fields(result) == {"custom_headers"}
    assert (await engine.registry.get(webhook.webhook_id)).custom_headers == {"X-Team": "core"}


@pytest.mark.asyncio
async def test_register_rejects_non_ascii_credentials(engine: WebhookEngine) -> None:
    result = await engine.registry.register("owner-1", make_webhook_data(
        auth_mode="bearer_token", auth_config={"bearer_token": "jeton-équipe"}
    ))
    assert not result.success
    assert _fields(result) == {"auth_config"}


@pytest.mark.asyncio
async def test_register_rejects_inconsistent_retry_policy(engine: WebhookEngine) -> None:
    result = await engine.registry.register("owner-1", make_webhook_data(retry_policy={
        "max_retries": 3,
        "initial_delay_ms": 10_000,
        "backoff_multiplier": 2.0,
        "max_delay_ms": 1000,
    }))
    assert not result.success
    assert _fields(result) == {"retry_policy"}


@pytest.mark.asyncio
@pytest.mark.parametrize("auth_mode", ["api_key", "bearer_token", "oauth2"])
async def test_auth_mode_requires_credentials(engine: WebhookEngine, auth_mode: str) -> None:
    result = await engine.registry.register("owner-1", make_webhook_data(auth_mode=auth_mode))
    assert not result.success
    assert _fields(result) == {"auth_config"}


@pytest.mark.asyncio
async def test_hmac_mode_generates_secret(engine: WebhookEngine) -> None:
    webhook = await register(engine, auth_mode="hmac_sha256", secret=None)
    assert webhook.auth_mode == AuthMode.HMAC_SHA256
    assert webhook.secret
    assert len(webhook.secret) >= 32


@pytest.mark.asyncio
async def test_update_merges_and_bumps_version(engine: WebhookEngine, clock: FakeClock) -> None:
    webhook = await register(engine)
    clock.advance(minutes=5)

    result = await engine.registry.update(webhook.webhook_id, {
        "name": "Renamed",
        "priority": "high",
        "retry_policy": {
            "max_retries": 5,
            "initial_delay_ms": 500,
            "backoff_multiplier": 3.0,
            "max_delay_ms": 60_000,
        },
    })

    assert result.success
    updated = result.webhook
    assert updated.name == "Renamed"
    assert updated.priority == Priority.HIGH
    assert updated.max_retries == 5
    assert updated.backoff_multiplier == 3.0
    assert updated.url == "https://hooks.example.com/receive"
    assert updated.config_version == CONFIG_VERSION + 1
    assert updated.updated_at == clock()


@pytest.mark.asyncio
async def test_invalid_update_leaves_webhook_unchanged(engine: WebhookEngine) -> None:
    webhook = await register(engine)

    result = await engine.registry.update(webhook.webhook_id, {"url": "not a url", "name": "X"})
    assert not result.success
    assert "url" in _fields(result)

    result = await engine.registry.update(webhook.webhook_id, {"auth_mode": "api_key"})
    assert not result.success
    assert _fields(result) == {"auth_config"}

    stored = await engine.registry.get(webhook.webhook_id)
    assert stored.name == "Document pipeline"
    assert stored.auth_mode == AuthMode.NONE
    assert stored.config_version == CONFIG_VERSION


@pytest.mark.asyncio
async def test_update_can_clear_description(engine: WebhookEngine) -> None:
    webhook = await register(engine, description="Pushes to the indexer")
    result = await engine.registry.update(webhook.webhook_id, {"description": None})
    assert result.success
    assert result.webhook.description is None


@pytest.mark.asyncio
async def test_update_unknown_webhook(engine: WebhookEngine) -> None:
    with pytest.raises(WebhookNotFoundError):
        await engine.registry.update(uuid.uuid4(), {"name": "Nope"})


@pytest.mark.asyncio
async def test_list_filters_by_owner_and_active(engine: WebhookEngine) -> None:
    first = await register(engine, owner_id="owner-1")
    await register(engine, owner_id="owner-2")
    await register(engine, owner_id="owner-1", is_active=False)

    owned = await engine.registry.list_webhooks(owner_id="owner-1")
    assert len(owned) == 2
    active = await engine.registry.list_webhooks(owner_id="owner-1", active=True)
    assert [w.webhook_id for w in active] == [first.webhook_id]


@pytest.mark.asyncio
async def test_delete_then_get_raises(engine: WebhookEngine) -> None:
    webhook = await register(engine)
    await engine.registry.delete(webhook.webhook_id)

    with pytest.raises(WebhookNotFoundError):
        await engine.registry.get(webhook.webhook_id)
    with pytest.raises(WebhookNotFoundError):
        await engine.registry.delete(webhook.webhook_id)


@pytest.mark.asyncio
async def test_connectivity_success_is_not_logged(engine: WebhookEngine, receiver: Receiver) -> None:
    webhook = await register(engine)

    result = await engine.registry.test_connectivity(webhook.webhook_id, {"ping": 1})

    assert result.success
    assert result.status_code == 200
    assert result.error is None
    assert len(receiver.requests) == 1
    assert receiver.requests[0].headers["X-Webhook-Event"] == "document.processing.completed"
    assert "X-Webhook-Signature" in receiver.requests[0].headers
    assert await engine.deliveries.list_for_webhook(webhook.webhook_id) == []


@pytest.mark.asyncio
async def test_connectivity_reports_failures(clock: FakeClock) -> None:
    engine = make_test_engine(clock, Receiver(500, httpx.ConnectError("refused")))
    webhook = await register(engine)

    failed = await engine.registry.test_connectivity(webhook.webhook_id)
    assert not failed.success
    assert failed.status_code == 500
    assert failed.error == "HTTP 500"

    unreachable = await engine.registry.test_connectivity(webhook.webhook_id)
    assert not unreachable.success
    assert unreachable.status_code is None
    assert "refused" in unreachable.error
    await engine.stop()


@pytest.mark.asyncio
async def test_connectivity_reports_request_that_cannot_be_built(
    engine: WebhookEngine, receiver: Receiver
) -> None:
    webhook = await register(engine)
    # Stored before header values were restricted to ASCII
    webhook.custom_headers = {"X-Team": "Équipe"}

    result = await engine.registry.test_connectivity(webhook.webhook_id)

    assert not result.success
    assert result.status_code is None
    assert "could not be built" in result.error
    assert receiver.requests == []
