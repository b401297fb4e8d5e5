"""Pydantic v2 schemas for webhook registration and responses."""

import ipaddress
import uuid
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from webhook_engine.config import settings
from webhook_engine.models.event import KNOWN_EVENT_TYPES
from webhook_engine.models.webhook import AuthMode, IntegrationType, Priority, Webhook

# Private/internal IP ranges for SSRF protection
_BLOCKED_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
]

# Headers a webhook owner may not set through custom_headers
_RESERVED_HEADERS = frozenset({
    "authorization",
    "cookie",
    "host",
    "x-forwarded-for",
    "x-real-ip",
    "content-type",
    "content-length",
    "x-webhook-signature",
})

MAX_HOURLY_LIMIT = 10_000
MAX_DAILY_LIMIT = 100_000


def _validate_target_url(url: str) -> str:
    """Validate target URL: absolute http(s), no private IPs unless allowed."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValueError("url must be an absolute http or https URL")
    if not parsed.hostname:
        raise ValueError("url must have a valid hostname")

    if settings.webhook_allow_private_targets:
        return url

    if parsed.hostname == "localhost":
        raise ValueError("url must not point to localhost")
    try:
        addr = ipaddress.ip_address(parsed.hostname)
    except ValueError:
        # Not an IP literal, a domain name
        return url
    for network in _BLOCKED_NETWORKS:
        if addr in network:
            raise ValueError("url must not point to a private/internal IP")
    return url


def _validate_events(events: list[str]) -> list[str]:
    if not events:
        raise ValueError("at least one event type is required")
    unknown = sorted(set(events) - KNOWN_EVENT_TYPES)
    if unknown:
        raise ValueError(f"unknown event type(s): {', '.join(unknown)}")
    # Preserve first-seen order, drop duplicates
    return list(dict.fromkeys(events))


def _validate_name(name: str) -> str:
    name = name.strip()
    if not name:
        raise ValueError("name must not be empty")
    return name


def _validate_custom_headers(headers: dict[str, str]) -> dict[str, str]:
    reserved = sorted(h for h in headers if h.lower() in _RESERVED_HEADERS)
    if reserved:
        raise ValueError(f"custom headers cannot override: {', '.join(reserved)}")
    for key, value in headers.items():
        if len(value) > 1000:
            raise ValueError(f"header {key} exceeds 1000 characters")
        if "\r" in value or "\n" in value or "\r" in key or "\n" in key:
            raise ValueError(f"header {key} contains line breaks")
        # HTTP/1.1 header fields are sent as ASCII
        if not key.isascii() or not value.isascii():
            raise ValueError(f"header {key} must contain only ASCII characters")
    return headers


class RetryPolicy(BaseModel):
    max_retries: int = Field(..., ge=0, le=10)
    initial_delay_ms: int = Field(..., gt=0, le=3_600_000)
    backoff_multiplier: float = Field(..., ge=1.0, le=10.0)
    max_delay_ms: int = Field(..., gt=0, le=86_400_000)

    @model_validator(mode="after")
    def check_delay_bounds(self) -> "RetryPolicy":
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        return self

    @classmethod
    def defaults(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.webhook_max_retries,
            initial_delay_ms=settings.webhook_initial_delay_ms,
            backoff_multiplier=settings.webhook_backoff_multiplier,
            max_delay_ms=settings.webhook_max_delay_ms,
        )


class RateLimits(BaseModel):
    per_hour: int = Field(..., ge=1, le=MAX_HOURLY_LIMIT)
    per_day: int = Field(..., ge=1, le=MAX_DAILY_LIMIT)

    @model_validator(mode="after")
    def check_day_covers_hour(self) -> "RateLimits":
        if self.per_day < self.per_hour:
            raise ValueError("per_day must be >= per_hour")
        return self

    @classmethod
    def defaults(cls) -> "RateLimits":
        return cls(
            per_hour=settings.webhook_rate_limit_per_hour,
            per_day=settings.webhook_rate_limit_per_day,
        )


class OAuth2Config(BaseModel):
    client_id: str = Field(..., min_length=1)
    client_secret: str | None = None
    access_token: str = Field(..., min_length=1)
    refresh_token: str | None = None
    token_expires_at: datetime | None = None


class AuthConfig(BaseModel):
    api_key: str | None = Field(None, min_length=1, max_length=512)
    bearer_token: str | None = Field(None, min_length=1, max_length=4096)
    oauth2: OAuth2Config | None = None


def check_auth(auth_mode: AuthMode, auth_config: AuthConfig) -> None:
    if auth_mode == AuthMode.API_KEY and not auth_config.api_key:
        raise ValueError("auth_config.api_key is required for api_key auth")
    if auth_mode == AuthMode.BEARER_TOKEN and not auth_config.bearer_token:
        raise ValueError("auth_config.bearer_token is required for bearer_token auth")
    if auth_mode == AuthMode.OAUTH2 and auth_config.oauth2 is None:
        raise ValueError("auth_config.oauth2 is required for oauth2 auth")
    # Credentials travel in request headers
    credentials = [auth_config.api_key, auth_config.bearer_token]
    if auth_config.oauth2 is not None:
        credentials.append(auth_config.oauth2.access_token)
    if any(c is not None and not c.isascii() for c in credentials):
        raise ValueError("auth_config credentials must contain only ASCII characters")


class WebhookCreate(BaseModel):
    name: str = Field(..., max_length=255)
    description: str | None = Field(None, max_length=1000)
    url: str = Field(..., max_length=2048)
    events: list[str]
    event_filters: dict[str, Any] = Field(default_factory=dict)
    auth_mode: AuthMode = AuthMode.NONE
    auth_config: AuthConfig = Field(default_factory=AuthConfig, validate_default=True)
    secret: str | None = Field(None, min_length=16, max_length=256)
    custom_headers: dict[str, str] = Field(default_factory=dict)
    integration_type: IntegrationType = IntegrationType.CUSTOM
    integration_config: dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: int | None = Field(None, ge=1, le=300)
    retry_policy: RetryPolicy | None = None
    rate_limits: RateLimits | None = None
    priority: Priority = Priority.NORMAL
    is_active: bool = True

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_name(v)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _validate_target_url(v)

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        return _validate_events(v)

    @field_validator("custom_headers")
    @classmethod
    def validate_headers(cls, v: dict[str, str]) -> dict[str, str]:
        return _validate_custom_headers(v)

    @field_validator("auth_config")
    @classmethod
    def validate_auth_config(cls, v: AuthConfig, info: ValidationInfo) -> AuthConfig:
        auth_mode = info.data.get("auth_mode")
        if auth_mode is not None:
            check_auth(auth_mode, v)
        return v


class WebhookUpdate(BaseModel):
    name: str | None = Field(None, max_length=255)
    description: str | None = Field(None, max_length=1000)
    url: str | None = Field(None, max_length=2048)
    events: list[str] | None = None
    event_filters: dict[str, Any] | None = None
    auth_mode: AuthMode | None = None
    auth_config: AuthConfig | None = None
    secret: str | None = Field(None, min_length=16, max_length=256)
    custom_headers: dict[str, str] | None = None
    integration_type: IntegrationType | None = None
    integration_config: dict[str, Any] | None = None
    timeout_seconds: int | None = Field(None, ge=1, le=300)
    retry_policy: RetryPolicy | None = None
    rate_limits: RateLimits | None = None
    priority: Priority | None = None
    is_active: bool | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _validate_name(v)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _validate_target_url(v)

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        return _validate_events(v)

    @field_validator("custom_headers")
    @classmethod
    def validate_headers(cls, v: dict[str, str] | None) -> dict[str, str] | None:
        if v is None:
            return v
        return _validate_custom_headers(v)


class FieldError(BaseModel):
    field: str
    message: str


class WebhookResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    webhook_id: uuid.UUID
    owner_id: str
    name: str
    description: str | None
    url: str
    events: list[str]
    event_filters: dict[str, Any]
    is_active: bool
    auth_mode: AuthMode
    integration_type: IntegrationType
    custom_headers: dict[str, str]
    timeout_seconds: int
    retry_policy: RetryPolicy
    rate_limits: RateLimits
    priority: Priority
    signing_enabled: bool
    config_version: int
    created_at: datetime
    updated_at: datetime
    last_triggered_at: datetime | None = None

    @classmethod
    def from_webhook(cls, webhook: Webhook) -> "WebhookResponse":
        return cls(
            webhook_id=webhook.webhook_id,
            owner_id=webhook.owner_id,
            name=webhook.name,
            description=webhook.description,
            url=webhook.url,
            events=list(webhook.events),
            event_filters=webhook.event_filters,
            is_active=webhook.is_active,
            auth_mode=webhook.auth_mode,
            integration_type=webhook.integration_type,
            custom_headers=webhook.custom_headers,
            timeout_seconds=webhook.timeout_seconds,
            retry_policy=RetryPolicy(
                max_retries=webhook.max_retries,
                initial_delay_ms=webhook.initial_delay_ms,
                backoff_multiplier=webhook.backoff_multiplier,
                max_delay_ms=webhook.max_delay_ms,
            ),
            rate_limits=RateLimits(
                per_hour=webhook.rate_limit_per_hour,
                per_day=webhook.rate_limit_per_day,
            ),
            priority=webhook.priority,
            signing_enabled=bool(webhook.secret),
            config_version=webhook.config_version,
            created_at=webhook.created_at,
            updated_at=webhook.updated_at,
            last_triggered_at=webhook.last_triggered_at,
        )


class WebhookCreatedResponse(WebhookResponse):
    """Returned once on registration; the only response that carries the secret."""

    secret: str | None = None


class ConnectivityTestRequest(BaseModel):
    event_type: str | None = None
    payload: dict[str, Any] = Field(default_factory=lambda: {"test": True})


class ConnectivityResult(BaseModel):
    success: bool
    status_code: int | None = None
    response_time_ms: float
    error: str | None = None
