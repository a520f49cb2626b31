"""
FarmChain - Produce Ownership Ledger

Main application entry point.

Every batch of produce is a chain of events: one harvest, then purchases
and transfers. Nothing is edited; ownership is whatever the chain says.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.errors import install_error_handlers
from app.api.routes import router
from app.core import LedgerService
from app.observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)
from app.services import build_ledger_from_env

logger = get_logger(__name__)

DESCRIPTION = """
## Produce Ownership Ledger

An append-only record of who holds how much of each harvested batch.

### Core Principles

- **Immutable**: Events are never edited or deleted
- **Content-addressed**: Every event is stored under the hash of its document
- **Chained**: Each event names the hash of the event before it
- **Derived**: Ownership is recomputed by replaying the chain

### API Design

**Commands** (write operations):
- All writes are append-only events
- No PATCH, no PUT, no DELETE

**Queries** (read operations):
- Replayed from the event chain on every request
- Verification reports never fail the request

### Storage Backends

- **Content store**: in-memory (default) or Pinata (`PINATA_JWT`)
- **Event index**: in-memory (default) or PostgreSQL (`DATABASE_URL`)
"""


def create_app(ledger: Optional[LedgerService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        ledger: Use this ledger instead of building one from the
            environment (tests pass an in-memory ledger here)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        resources = None
        if ledger is None:
            setup_logging()
            resources = await build_ledger_from_env()
            app.state.ledger = resources.ledger
        else:
            app.state.ledger = ledger

        store = app.state.ledger.event_store
        logger.info(
            "Application startup complete",
            content_store=type(store.content_store).__name__,
            event_index=type(store.index).__name__,
        )

        yield

        if resources is not None:
            await resources.close()
            logger.info("Storage connections closed")

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="FarmChain Ledger",
        description=DESCRIPTION,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add request context middleware for logging
    app.add_middleware(RequestContextMiddleware)

    # CORS configuration for the marketplace frontend
    # In production, restrict to your actual domain
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",  # Vite dev server
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    install_error_handlers(app)
    app.include_router(router)

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "farmchain-ledger"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """
        Detailed health check.

        Checks:
        - Service liveness
        - Event index connectivity
        - Configured content store

        Returns 200 if healthy, 503 if unhealthy.
        """
        store = request.app.state.ledger.event_store
        health_status = await check_health(
            event_index=store.index,
            content_store=store.content_store,
        )
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """
        Get application metrics.

        Returns counters and latency percentiles.
        """
        return get_metrics().get_summary()

    return app


app = create_app()
