"""Tests for selecting the webhooks an event is delivered to."""

import pytest

from tests.conftest import FakeClock, register
from webhook_engine.services.engine import WebhookEngine
from webhook_engine.services.matcher import passes_filters

EVENT = "document.processing.completed"


def test_filters_resolve_dotted_paths() -> None:
    payload = {"document": {"status": "ready", "kind": "pdf"}, "size": 10}
    assert passes_filters({"document.status": "ready"}, payload)
    assert passes_filters({"document.kind": ["pdf", "docx"], "size": 10}, payload)
    assert not passes_filters({"document.kind": ["docx"]}, payload)
    assert not passes_filters({"document.missing": "x"}, payload)
    assert not passes_filters({"size.bytes": 10}, payload)
    assert passes_filters({}, payload)


@pytest.mark.asyncio
async def test_only_active_subscribers_match(engine: WebhookEngine) -> None:
    subscribed = await register(engine)
    await register(engine, is_active=False)
    await register(engine, events=["document.uploaded"])

    matched = await engine.matcher.match(EVENT, {"document_id": "doc-1"})

    assert [w.webhook_id for w in matched] == [subscribed.webhook_id]


@pytest.mark.asyncio
async def test_event_filters_exclude_non_matching_payloads(engine: WebhookEngine) -> None:
    pdf_only = await register(engine, event_filters={"document.kind": "pdf"})

    assert await engine.matcher.match(EVENT, {"document": {"kind": "png"}}) == []
    matched = await engine.matcher.match(EVENT, {"document": {"kind": "pdf"}})
    assert [w.webhook_id for w in matched] == [pdf_only.webhook_id]


@pytest.mark.asyncio
async def test_priority_then_creation_order(engine: WebhookEngine, clock: FakeClock) -> None:
    low = await register(engine, priority="low")
    clock.advance(seconds=1)
    normal_old = await register(engine)
    clock.advance(seconds=1)
    critical = await register(engine, priority="critical")
    clock.advance(seconds=1)
    normal_new = await register(engine)

    matched = await engine.matcher.match(EVENT, {})

    assert [w.webhook_id for w in matched] == [
        critical.webhook_id,
        normal_old.webhook_id,
        normal_new.webhook_id,
        low.webhook_id,
    ]


@pytest.mark.asyncio
async def test_predicate_narrows_matches(engine: WebhookEngine) -> None:
    await register(engine, owner_id="owner-1")
    other = await register(engine, owner_id="owner-2")

    matched = await engine.matcher.match(
        EVENT, {}, lambda webhook, payload: webhook.owner_id == "owner-2"
    )

    assert [w.webhook_id for w in matched] == [other.webhook_id]
