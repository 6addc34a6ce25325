"""
Evidence Store - Evidence Integrity Service

Main application entry point.

Evidence is only as good as the proof behind it. Every status answer is
recomputed from a fresh ledger digest.
"""

from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Optional

import psycopg2
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.routes import evidence_store_error_handler, router
from .config import ServiceConfig
from .core.errors import EvidenceStoreError
from .core.ledger_client import DigestEndpoint, HttpDigestEndpoint, InMemoryDigestEndpoint
from .core.locator import ObjectLocator
from .core.object_store import (
    EvidenceContentRepository,
    HttpObjectStore,
    InMemoryObjectStore,
    ObjectStore,
)
from .core.verification import VerificationService
from .db.config import DatabaseConfig, StoreDriver, get_store_driver
from .db.store import (
    EvidenceMetadataStore,
    InMemoryEvidenceMetadataStore,
    PostgresEvidenceMetadataStore,
)
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    setup_logging,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


def build_metadata_store() -> EvidenceMetadataStore:
    """Pick the metadata store from EVIDENCE_STORE_DRIVER / DATABASE_*."""
    driver = get_store_driver()

    if driver == StoreDriver.PSYCOPG2:
        db_config = DatabaseConfig.from_env()
        store = PostgresEvidenceMetadataStore(
            connection_factory=lambda: psycopg2.connect(db_config.to_dsn()),
            lock_timeout_ms=db_config.lock_timeout_ms,
            statement_timeout_ms=db_config.statement_timeout_ms,
        )
        store.create_schema()
        logger.info(
            "Using PostgreSQL metadata store",
            database=db_config.to_url(include_password=False),
        )
        return store

    logger.info("Using in-memory metadata store")
    return InMemoryEvidenceMetadataStore()


def build_digest_endpoint(config: ServiceConfig) -> DigestEndpoint:
    if config.digest_url:
        return HttpDigestEndpoint(
            base_url=config.digest_url,
            ledger_name=config.ledger_name,
            default_timeout=config.default_timeout,
        )
    logger.warning("EVIDENCE_STORE_DIGEST_URL not set, using in-memory digest endpoint")
    return InMemoryDigestEndpoint()


def build_object_store(config: ServiceConfig) -> ObjectStore:
    if config.object_endpoint:
        return HttpObjectStore(
            endpoint_url=config.object_endpoint,
            default_timeout=config.default_timeout,
        )
    return InMemoryObjectStore()


def build_service_from_env() -> VerificationService:
    """Wire a VerificationService from environment configuration."""
    config = ServiceConfig.from_env()
    locator = ObjectLocator(
        host=config.object_host,
        signing_secret=config.url_signing_secret,
        aliases=config.object_host_aliases,
    )
    content = EvidenceContentRepository(
        store=build_object_store(config),
        locator=locator,
        bucket=config.content_bucket,
    )
    if config.object_endpoint is None and config.verify_content:
        logger.warning(
            "EVIDENCE_STORE_OBJECT_ENDPOINT not set, off-ledger content checks disabled"
        )
        config = replace(config, verify_content=False)
    return VerificationService(
        store=build_metadata_store(),
        digest_endpoint=build_digest_endpoint(config),
        content=content,
        config=config,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    if getattr(app.state, "service", None) is None:
        app.state.service = build_service_from_env()

    service: VerificationService = app.state.service
    logger.info(
        "Application startup complete",
        store_type=type(service.store).__name__,
        ledger=service.config.ledger_name,
        table=service.config.table_name,
    )

    yield

    service.close()

    logger.info("Application shutdown complete")


def create_app(service: Optional[VerificationService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        service: Pre-wired service (tests). If None, one is built from the
                 environment at startup.
    """
    app = FastAPI(
        title="Evidence Store",
        description="""
## Evidence Integrity Service

Answers one question for every piece of evidence: is it still exactly
what the ledger committed?

### Flow

```
change stream → ingest → metadata store
status request → fresh digest proof → recompute → Verified | Failed
```

### Guarantees

- **Version-ordered**: out-of-order and duplicate revisions are no-ops
- **Fresh**: every status request fetches a new digest proof
- **Honest**: transient failures return 503 and change nothing

### Storage Backends

- **InMemoryEvidenceMetadataStore**: Development/testing (default)
- **PostgresEvidenceMetadataStore**: Production with full durability

Set `DATABASE_URL` or `DATABASE_HOST` environment variables to use PostgreSQL.
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.service = service

    # Add request context middleware for logging
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(EvidenceStoreError, evidence_store_error_handler)
    app.include_router(router)

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "evidence-store"}

    @app.get("/health/detailed", tags=["System"])
    def health_detailed(request: Request):
        """
        Detailed health check.

        Checks:
        - Service liveness
        - Metadata store connectivity

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = check_health(metadata_store=request.app.state.service.store)

        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics(request: Request):
        """
        Get application metrics.

        Returns ingest counters, verification outcomes and latency percentiles.
        """
        return request.app.state.service.metrics.get_summary()

    return app


app = create_app()
