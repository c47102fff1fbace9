"""
FastAPI Application Entry Point

Sets up the FastAPI app, the database pool and the audit log client,
and includes all routers.
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from audit_backend.config import settings
from audit_backend.crypto import EventHashMismatch
from audit_backend.database import database
from audit_backend.routers import audit, health, users
from audit_backend.services.audit_logs import (
    AuditLogsService,
    AuditRequestError,
    create_audit_http_client,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: open the database pool and the audit service clients.
    Shutdown: close them.
    """
    logger.info("Starting Audit Backend...")
    await database.connect()

    audit_client = create_audit_http_client(settings)
    arweave_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    app.state.audit_service = AuditLogsService(
        audit_client, settings, arweave_client=arweave_client
    )
    logger.info("Audit Backend started successfully")

    yield

    logger.info("Shutting down Audit Backend...")
    await audit_client.aclose()
    await arweave_client.aclose()
    await database.disconnect()
    logger.info("Audit Backend stopped")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    # Users API with Secure Audit Logging

    - **Users**: CRUD over PostgreSQL, writes stamped with their author
    - **Audit trail**: every change is sent to a tamper-evident audit log
    - **Verification**: envelope hashes, event signatures and Merkle
      proofs are checked on every response, against roots published on Arweave
    """,
    docs_url="/api" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(EventHashMismatch)
async def hash_mismatch_handler(request: Request, exc: EventHashMismatch):
    """Integrity violation reported by the audit log client."""
    logger.error(f"Audit integrity failure: hash={exc.hash} envelope={exc.envelope}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Audit log integrity verification failed"}
    )


@app.exception_handler(AuditRequestError)
async def audit_request_error_handler(request: Request, exc: AuditRequestError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(httpx.HTTPError)
async def audit_transport_error_handler(request: Request, exc: httpx.HTTPError):
    logger.error(f"Audit log service unreachable: {exc}")
    return JSONResponse(
        status_code=502,
        content={"detail": "Audit log service unavailable"}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Generic 500; details stay in the logs."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


# ============================================================================
# Include Routers
# ============================================================================

app.include_router(users.router)
app.include_router(audit.router)
app.include_router(health.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "audit_backend.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers
    )
