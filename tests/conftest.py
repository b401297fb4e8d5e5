"""Test configuration and fixtures.

Everything runs in-process: in-memory stores, scripted receivers behind
``httpx.MockTransport`` and a clock the tests move by hand. Deliveries run
inline (``worker_count=0``) so a publish returns only after its first
attempt has been settled. SQL store tests use SQLite through aiosqlite.
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from webhook_engine.config import settings
from webhook_engine.database import create_tables, make_session_factory
from webhook_engine.deps import get_engine
from webhook_engine.main import app
from webhook_engine.models.event import WebhookEvent
from webhook_engine.models.webhook import Webhook
from webhook_engine.services.engine import WebhookEngine, build_memory_engine

START = datetime(2026, 1, 15, 10, 30, tzinfo=UTC)


class FakeClock:
    """Callable clock; ``advance`` moves it forward."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class Receiver:
    """Scripted webhook endpoint.

    Each request consumes the next scripted reply: an int status code or an
    exception instance to raise. The last reply repeats once the script runs out.
    """

    def __init__(self, *replies: int | Exception) -> None:
        self.replies = list(replies) or [200]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return httpx.Response(reply, json={"received": True})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


# ---------------------------------------------------------------------------
# Settings isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def receiver() -> Receiver:
    return Receiver(200)


def make_test_engine(clock: FakeClock, receiver: Receiver, **options: Any) -> WebhookEngine:
    return build_memory_engine(
        clock=clock, client=receiver.client(), worker_count=0, **options
    )


@pytest_asyncio.fixture
async def engine(clock: FakeClock, receiver: Receiver) -> AsyncGenerator[WebhookEngine, None]:
    eng = make_test_engine(clock, receiver)
    yield eng
    await eng.stop()


@pytest_asyncio.fixture
async def client(engine: WebhookEngine) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client bound to the in-memory engine (lifespan not run)."""
    app.dependency_overrides[get_engine] = lambda: engine
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# SQLite fixtures for the SQL stores
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def sqlite_engine() -> AsyncGenerator[AsyncEngine, None]:
    db_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(sqlite_engine)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_webhook_data(**overrides: Any) -> dict[str, Any]:
    """Factory for a valid webhook registration payload."""
    data: dict[str, Any] = {
        "name": "Document pipeline",
        "url": "https://hooks.example.com/receive",
        "events": ["document.processing.completed"],
        "secret": "s3cret-signing-key-0123456789",
    }
    data.update(overrides)
    return data


async def register(
    engine: WebhookEngine, owner_id: str = "owner-1", **overrides: Any
) -> Webhook:
    result = await engine.registry.register(owner_id, make_webhook_data(**overrides))
    assert result.success, result.errors
    return result.webhook


async def store_event(
    engine: WebhookEngine,
    event_type: str = "document.processing.completed",
    payload: dict[str, Any] | None = None,
) -> WebhookEvent:
    return await engine.events.add(WebhookEvent(
        event_id=uuid.uuid4(),
        event_type=event_type,
        payload=payload if payload is not None else {"document_id": "doc-1"},
        owner_id=None,
        created_at=engine.clock(),
    ))
