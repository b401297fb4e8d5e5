"""Unit tests for webhook_engine/config.py."""

import pytest

from webhook_engine.config import Settings


def test_default_settings_testable() -> None:
    """Default settings keep everything in-process."""
    s = Settings()
    assert s.env != "production"
    assert s.store_backend == "memory"
    assert s.rate_limit_backend == "memory"
    assert not s.uses_sql_store


def test_delivery_defaults() -> None:
    s = Settings()
    assert s.webhook_max_retries == 3
    assert s.webhook_initial_delay_ms == 1000
    assert s.webhook_backoff_multiplier == 2.0
    assert s.webhook_max_delay_ms == 3_600_000
    assert s.webhook_rate_limit_per_hour == 1000
    assert s.webhook_rate_limit_per_day == 10000
    assert s.webhook_retry_client_errors is True
    assert s.webhook_rate_limit_consumes_attempt is False


def test_uses_sql_store() -> None:
    assert Settings(store_backend="sql").uses_sql_store


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WEBHOOK_MAX_RETRIES", "7")
    monkeypatch.setenv("DISPATCH_WORKER_COUNT", "2")
    monkeypatch.setenv("WEBHOOK_RETRY_CLIENT_ERRORS", "false")
    s = Settings()
    assert s.webhook_max_retries == 7
    assert s.dispatch_worker_count == 2
    assert s.webhook_retry_client_errors is False
