"""Tests for application middleware (body size limit, security headers)."""

import pytest
from httpx import AsyncClient

from tests.conftest import make_webhook_data


@pytest.mark.asyncio
async def test_security_headers_present(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.headers["strict-transport-security"] == "max-age=63072000; includeSubDomains"
    assert resp.headers["x-content-type-options"] == "nosniff"
    assert resp.headers["x-frame-options"] == "DENY"
    assert resp.headers["cache-control"] == "no-store"
    assert resp.headers["referrer-policy"] == "no-referrer"


@pytest.mark.asyncio
async def test_security_headers_on_error_response(client: AsyncClient) -> None:
    resp = await client.get("/webhooks/00000000-0000-0000-0000-000000000000")
    assert resp.status_code == 404
    assert resp.headers["x-content-type-options"] == "nosniff"
    assert resp.headers["x-frame-options"] == "DENY"


@pytest.mark.asyncio
async def test_body_size_limit_exceeded(client: AsyncClient) -> None:
    """POST with Content-Length > 1MB is rejected with 413."""
    resp = await client.post(
        "/events",
        content=b"x",
        headers={"Content-Length": "2000000", "Content-Type": "application/json"},
    )
    assert resp.status_code == 413


@pytest.mark.asyncio
async def test_body_size_limit_patch_checked(client: AsyncClient) -> None:
    resp = await client.patch(
        "/webhooks/00000000-0000-0000-0000-000000000000",
        content=b"x",
        headers={"Content-Length": "2000000", "Content-Type": "application/json"},
    )
    assert resp.status_code == 413


@pytest.mark.asyncio
async def test_invalid_content_length_rejected(client: AsyncClient) -> None:
    resp = await client.post(
        "/events",
        content=b"{}",
        headers={"Content-Length": "lots", "Content-Type": "application/json"},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_body_within_limit_passes(client: AsyncClient) -> None:
    resp = await client.post(
        "/webhooks", json=make_webhook_data(), headers={"X-Owner-Id": "owner-1"}
    )
    assert resp.status_code == 201
    assert resp.headers["strict-transport-security"] == "max-age=63072000; includeSubDomains"


@pytest.mark.asyncio
async def test_body_size_limit_exact_boundary(client: AsyncClient) -> None:
    """Content-Length of exactly 1MB passes the size check."""
    resp = await client.post(
        "/events",
        content=b"x",
        headers={"Content-Length": "1048576", "Content-Type": "application/json"},
    )
    assert resp.status_code != 413
