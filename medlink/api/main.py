"""Main FastAPI application for the MedLink federation hub.

This module sets up the FastAPI application with all routes, middleware,
exception mapping and configuration.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from medlink.api.dependencies import get_federation
from medlink.api.logging_config import setup_logging
from medlink.api.middleware import setup_middleware
from medlink.api.routes import central, emergency, health
from medlink.domain.ports import AuditWriteError, StorageError, UnauthorizedError
from medlink.domain.services.consent_service import UnknownHospitalError
from medlink.infrastructure.settings import APP_VERSION, settings

# Configure structured logging
setup_logging(use_json=settings.json_logs, log_level=settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    logger.info(f"{settings.app_name} starting up...")
    logger.info("API documentation available at /api/docs")
    logger.info(f"Logging level: {settings.log_level}")
    logger.info(f"JSON logs: {settings.json_logs}")
    get_federation()
    yield
    logger.info(f"{settings.app_name} shutting down...")
    if get_federation.cache_info().currsize:
        get_federation().close()
        get_federation.cache_clear()


# ============================================================================
# Domain error mapping
# ============================================================================

async def unauthorized_handler(request: Request, exc: UnauthorizedError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})


async def audit_write_handler(request: Request, exc: AuditWriteError) -> JSONResponse:
    # The operation was aborted because it could not be audited
    logger.error(f"Aborted {request.method} {request.url.path}: audit write failed ({exc.action})")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Audit log unavailable; the request was not completed"},
    )


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(f"Storage failure on {request.url.path}: {exc.operation}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Central store unavailable"},
    )


async def unknown_hospital_handler(request: Request, exc: UnknownHospitalError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


def create_app() -> FastAPI:
    """Create the FastAPI application.

    Each call returns a fresh app with its own middleware state, so tests
    never share rate-limit counters.
    """
    app = FastAPI(
        title="MedLink Federation API",
        description="Federated cross-hospital medical record queries with consent and audit",
        version=APP_VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Process-Time", "X-RateLimit-Remaining", "Retry-After"],
    )

    setup_middleware(app)

    app.add_exception_handler(UnauthorizedError, unauthorized_handler)
    app.add_exception_handler(AuditWriteError, audit_write_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(UnknownHospitalError, unknown_hospital_handler)

    app.include_router(health.router)
    app.include_router(central.router)
    app.include_router(emergency.router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "MedLink Federation API",
            "version": APP_VERSION,
            "docs": "/api/docs",
            "health": "/api/health"
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "medlink.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
