"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from webhook_engine.config import settings
from webhook_engine.logging_config import configure_logging
from webhook_engine.middleware import BodySizeLimitMiddleware, SecurityHeadersMiddleware
from webhook_engine.routers import deliveries, events, monitoring, webhooks
from webhook_engine.services.engine import build_engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build the engine, recover deliveries, start background tasks."""
    configure_logging()
    engine = await build_engine(settings)
    app.state.engine = engine
    await engine.start()

    yield

    await engine.stop()


app = FastAPI(
    title="Webhook Engine",
    description="Event-driven webhook dispatch, delivery and retry service",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - restrict to configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware (the last one added runs first)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=1_048_576)

# Routers
app.include_router(webhooks.router)
app.include_router(deliveries.router)
app.include_router(events.router)
app.include_router(monitoring.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
