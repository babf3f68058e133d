"""
Provenance Ledger - Product Ownership History

Main application entry point.

Every product has one history. Every change to it is signed off by
whoever holds the product at that moment.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from provenance import __version__
from provenance.config import IdentityConfig, ServerConfig
from provenance.core import IdentityVerifier, ProvenanceLedger
from provenance.observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    ledger = app.state.ledger
    verifier = app.state.verifier

    # Verify chain integrity on startup
    if ledger.record_count > 0:
        if ledger.verify_chain_integrity():
            logger.info("Chain integrity verified OK", record_count=ledger.record_count)
        else:
            logger.error("Chain integrity check FAILED!")

    logger.info(
        "Application startup complete",
        product_count=ledger.product_count,
        record_count=ledger.record_count,
        store_type=type(ledger.store).__name__,
        auth_enabled=verifier.enabled,
    )

    yield

    logger.info("Application shutdown complete")


def create_app(
    verifier: Optional[IdentityVerifier] = None,
    ledger: Optional[ProvenanceLedger] = None,
    server_config: Optional[ServerConfig] = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators default to environment-configured instances; tests pass
    their own.
    """
    server_config = server_config or ServerConfig.from_env()

    app = FastAPI(
        title="Provenance Ledger",
        description="""
## Product Provenance Ledger

Append-only ownership history for physical products, keyed by wallet.

### Core Principles

- **Append-only**: Records are never edited or deleted
- **Owner-authorized**: Only the current owner can transfer, repair or retire
- **Chained**: Every record hashes its predecessor

### Product Lifecycle

```
Manufacture → Transfer* / Repair* → EndOfLife
```

### Authentication

Sign a login message with your wallet, exchange it at `/api/auth/login`
for a credential, then send `Authorization: Bearer <credential>`.
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.state.verifier = verifier or IdentityVerifier(IdentityConfig.from_env())
    app.state.ledger = ledger or ProvenanceLedger()

    # Add request context middleware for logging
    app.add_middleware(RequestContextMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(server_config.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )

    from provenance.api.routes_auth import router as auth_router
    from provenance.api.routes_products import router as products_router
    app.include_router(auth_router)
    app.include_router(products_router)

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "provenance-ledger"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """
        Detailed health check with chain verification.

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = check_health(
            ledger=request.app.state.ledger,
            verifier=request.app.state.verifier,
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
