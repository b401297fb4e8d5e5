"""Single HTTP delivery attempt.

Builds the signed envelope, POSTs it and classifies what came back. Retry
decisions live in the scheduler; this module never sleeps or loops.
"""

import enum
import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx

from webhook_engine.config import settings
from webhook_engine.models.event import WebhookEvent
from webhook_engine.models.webhook import AuthMode, Webhook
from webhook_engine.services.signing import sign_payload

logger = logging.getLogger(__name__)

_REDACTED = "[redacted]"
_SENSITIVE_HEADERS = frozenset({"authorization", "x-api-key"})


class OutcomeKind(enum.Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    CLIENT_ERROR = "client_error"


@dataclass
class AttemptOutcome:
    """Result of one HTTP attempt, captured whatever happened."""

    kind: OutcomeKind
    request_url: str
    request_headers: dict[str, str]
    request_body: str
    response_time_ms: float
    status_code: int | None = None
    response_headers: dict[str, str] | None = None
    response_body: str | None = None
    error_kind: str | None = None
    error: str | None = None
    attempted_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    def request_snapshot(self) -> dict[str, Any]:
        return {
            "url": self.request_url,
            "method": "POST",
            "headers": self.request_headers,
            "body": self.request_body,
        }

    def response_snapshot(self) -> dict[str, Any] | None:
        if self.status_code is None:
            return None
        return {
            "status_code": self.status_code,
            "headers": self.response_headers or {},
            "body": self.response_body,
        }


def build_envelope(
    webhook: Webhook,
    event: WebhookEvent,
    attempt_number: int,
    delivery_id: uuid.UUID,
) -> dict[str, Any]:
    return {
        "event": {
            "id": str(event.event_id),
            "type": event.event_type,
            "timestamp": event.created_at.isoformat(),
            "data": event.payload,
        },
        "webhook": {"id": str(webhook.webhook_id), "name": webhook.name},
        "delivery": {"id": str(delivery_id), "attempt": attempt_number},
    }


def encode_body(envelope: dict[str, Any]) -> bytes:
    """Compact JSON; the signature is computed over exactly these bytes."""
    return json.dumps(envelope, separators=(",", ":"), default=str).encode()


def build_headers(
    webhook: Webhook,
    event: WebhookEvent,
    delivery_id: uuid.UUID,
    body: bytes,
    sent_at: datetime,
) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": settings.webhook_user_agent,
    }
    headers.update(webhook.custom_headers or {})

    auth = webhook.auth_config or {}
    if webhook.auth_mode == AuthMode.API_KEY and auth.get("api_key"):
        headers["X-API-Key"] = auth["api_key"]
    elif webhook.auth_mode == AuthMode.BEARER_TOKEN and auth.get("bearer_token"):
        headers["Authorization"] = f"Bearer {auth['bearer_token']}"
    elif webhook.auth_mode == AuthMode.OAUTH2 and (auth.get("oauth2") or {}).get("access_token"):
        headers["Authorization"] = f"Bearer {auth['oauth2']['access_token']}"

    headers["X-Webhook-Event"] = event.event_type
    headers["X-Webhook-Delivery"] = str(delivery_id)
    headers["X-Webhook-Timestamp"] = sent_at.isoformat()
    if webhook.secret:
        headers["X-Webhook-Signature"] = sign_payload(webhook.secret, body)
    return headers


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    return {
        k: (_REDACTED if k.lower() in _SENSITIVE_HEADERS else v)
        for k, v in headers.items()
    }


def classify_status(status_code: int) -> OutcomeKind:
    if 200 <= status_code < 300:
        return OutcomeKind.SUCCESS
    if status_code == 429:
        return OutcomeKind.RETRYABLE
    if 400 <= status_code < 500:
        return OutcomeKind.CLIENT_ERROR
    # 5xx, and anything else that is neither 2xx nor 4xx
    return OutcomeKind.RETRYABLE


class DeliveryExecutor:
    """Performs one signed POST per call over a shared httpx client."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
        body_max_bytes: int | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(follow_redirects=False)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._body_max_bytes = body_max_bytes or settings.webhook_response_body_max_bytes

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def attempt(
        self,
        webhook: Webhook,
        event: WebhookEvent,
        attempt_number: int,
        delivery_id: uuid.UUID,
    ) -> AttemptOutcome:
        sent_at = self._clock()
        body = encode_body(build_envelope(webhook, event, attempt_number, delivery_id))
        headers = build_headers(webhook, event, delivery_id, body, sent_at)

        def outcome(kind: OutcomeKind, elapsed_ms: float, **kwargs: Any) -> AttemptOutcome:
            return AttemptOutcome(
                kind=kind,
                request_url=webhook.url,
                request_headers=redact_headers(headers),
                request_body=body.decode(),
                response_time_ms=elapsed_ms,
                attempted_at=sent_at,
                **kwargs,
            )

        start = time.perf_counter()
        try:
            resp = await self._client.post(
                webhook.url,
                content=body,
                headers=headers,
                timeout=webhook.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            return outcome(
                OutcomeKind.RETRYABLE, _elapsed_ms(start),
                error_kind="timeout",
                error=f"Request timed out after {webhook.timeout_seconds}s: {e!r}",
            )
        except httpx.ConnectError as e:
            return outcome(
                OutcomeKind.RETRYABLE, _elapsed_ms(start),
                error_kind="connection",
                error=f"Connection failed: {e}",
            )
        except httpx.RequestError as e:
            return outcome(
                OutcomeKind.RETRYABLE, _elapsed_ms(start),
                error_kind="network",
                error=f"Network error: {e!r}",
            )
        except (httpx.InvalidURL, UnicodeEncodeError) as e:
            # Rejected before anything was sent
            logger.warning("Could not build request for webhook %s: %s", webhook.webhook_id, e)
            return outcome(
                OutcomeKind.RETRYABLE, _elapsed_ms(start),
                error_kind="invalid_request",
                error=f"Request could not be built: {e}",
            )

        elapsed = _elapsed_ms(start)
        kind = classify_status(resp.status_code)
        error_kind = None
        error = None
        if kind == OutcomeKind.RETRYABLE:
            error_kind = "http_error"
            error = f"HTTP {resp.status_code}"
        elif kind == OutcomeKind.CLIENT_ERROR:
            error_kind = "client_error"
            error = f"HTTP {resp.status_code}"

        return outcome(
            kind, elapsed,
            status_code=resp.status_code,
            response_headers=dict(resp.headers),
            response_body=resp.content[:self._body_max_bytes].decode(errors="replace"),
            error_kind=error_kind,
            error=error,
        )


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)
