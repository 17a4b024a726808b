"""
Audit Ledger service

Main application entry point.

Every significant mutation leaves one immutable, hash-linked entry.
Nothing here edits history; it only appends and checks.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .api import router
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)
from .shared import (
    get_autologger,
    get_ledger_store,
    get_scheduler,
    get_verifier,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    store = get_ledger_store()
    app.state.store = store

    # Fallback logging for watched mutations made through this store
    get_autologger()

    scheduler = get_scheduler()
    app.state.anchor_scheduler = scheduler
    scheduler.start()  # Starts background thread if enabled

    # Verify every chain on startup; broken chains are reported, not repaired
    broken = [r for r in get_verifier().verify_all() if not r.ok]
    for result in broken:
        logger.error(
            "Chain integrity check FAILED",
            organization_id=str(result.organization_id),
            broken_at_seq=result.broken_at_seq,
        )

    logger.info(
        "Application startup complete",
        entry_count=store.entry_count(),
        store_type=type(store).__name__,
        anchor_enabled=scheduler.config.enabled,
        broken_chains=len(broken),
    )

    yield

    scheduler.stop()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Audit Ledger",
    description="""
## Tamper-evident audit ledger

An append-only, hash-chained record of every significant change to jobs,
hazard controls, evidence and exports.

### Guarantees

- **Append-only**: entries are never updated or deleted
- **Chained**: each entry commits to its organization's previous entry
- **Ordered**: a global sequence orders entries across organizations
- **Anchored**: periodic Merkle roots checkpoint committed history

### Storage Backends

- **InMemoryLedgerStore**: Development/testing (default)
- **PostgresLedgerStore**: Production with full durability

Set `DATABASE_URL` or `DATABASE_HOST` to use PostgreSQL.
    """,
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)
app.include_router(router)


@app.get("/health", tags=["System"])
async def health():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    For detailed health, use /health/detailed
    """
    return {"status": "healthy", "service": "auditledger"}


@app.get("/health/detailed", tags=["System"])
def health_detailed():
    """
    Detailed health check with chain verification.

    Checks:
    - Service liveness
    - Ledger store connectivity and latest root
    - Chain integrity of every organization

    Returns 200 if healthy, 503 if unhealthy.
    """
    health_status = check_health(store=get_ledger_store(), verifier=get_verifier())

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

    Returns counters and append latency percentiles.
    """
    return get_metrics().get_summary()
