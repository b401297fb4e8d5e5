"""Selects the webhooks an event should be delivered to."""

import logging
from collections.abc import Callable
from typing import Any

from webhook_engine.models.webhook import Webhook
from webhook_engine.stores.base import WebhookStore

logger = logging.getLogger(__name__)

Predicate = Callable[[Webhook, dict[str, Any]], bool]

_MISSING = object()


def _lookup(payload: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path like ``document.status`` inside the payload."""
    value: Any = payload
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def passes_filters(filters: dict[str, Any], payload: dict[str, Any]) -> bool:
    """Every filter key must resolve; a list filter means "one of"."""
    for path, expected in (filters or {}).items():
        actual = _lookup(payload, path)
        if actual is _MISSING:
            return False
        if isinstance(expected, list):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class EventMatcher:
    def __init__(self, webhooks: WebhookStore) -> None:
        self._webhooks = webhooks

    async def match(
        self,
        event_type: str,
        payload: dict[str, Any],
        predicate: Predicate | None = None,
    ) -> list[Webhook]:
        """Active subscribers of event_type, highest priority first, then oldest first."""
        matched = []
        for webhook in await self._webhooks.find(active=True):
            if not webhook.subscribes_to(event_type):
                continue
            if not passes_filters(webhook.event_filters, payload):
                logger.debug("Webhook %s filtered out %s", webhook.webhook_id, event_type)
                continue
            if predicate is not None and not predicate(webhook, payload):
                continue
            matched.append(webhook)
        matched.sort(key=lambda w: (-w.priority.rank, w.created_at))
        return matched
