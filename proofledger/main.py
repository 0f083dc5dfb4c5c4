"""
proofledger - Proof-of-Existence Claim Ledger

Main application entry point.

Claim a fingerprint, revoke it, or take it over.
Every call is signed; every change is an event.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import RuntimeConfig
from .core import Runtime
from .db import create_proof_store
from .observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)
from .api.routes import router


logger = get_logger(__name__)


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Build the application.

    Args:
        runtime: Use this runtime instead of building one from the
                 environment at startup (tests pass their own).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if runtime is None:
            setup_logging()
            app.state.runtime = Runtime(
                store=create_proof_store(),
                config=RuntimeConfig.from_env(),
            )
        else:
            app.state.runtime = runtime

        logger.info(
            "Application startup complete",
            store_type=type(app.state.runtime.store).__name__,
            claim_count=app.state.runtime.store.count(),
            block_number=app.state.runtime.block_number,
        )

        yield

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="proofledger",
        description="""
## Proof-of-Existence Claim Ledger

Maps an opaque fingerprint (a "proof") to the account that registered it
and the block at which it was registered.

### Claim Lifecycle

```
Unclaimed --create--> Claimed(owner) --revoke (owner)--> Unclaimed
                      Claimed(owner) --transfer (anyone else)--> Claimed(receiver)
```

Transfer is initiated by the RECEIVER; the current owner does not sign.

### Calls

Every command is an Ed25519-signed call carrying the signer's next nonce.
The signer's public key is the account.
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)
    app.include_router(router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health():
        """Returns 200 if the service is running."""
        return {"status": "healthy", "service": "proofledger"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """
        Detailed health check.

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = check_health(runtime=request.app.state.runtime)
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
        """Counters, and latency percentiles."""
        return get_metrics().get_summary()

    return app


app = create_app()
