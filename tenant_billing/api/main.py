"""
Main FastAPI application.

Tenant billing API with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tenant_billing.config import get_settings
from tenant_billing.core.context import BillingContext
from tenant_billing.core.exceptions import BillingError
from tenant_billing.monitoring.logging import setup_logging

from .routes import (
    ERROR_STATUS_CODES,
    admin_router,
    billing_router,
    monitoring_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


def create_app(context: Optional[BillingContext] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        context: Billing context to serve. When omitted, one is created on
            startup and closed on shutdown.
    """
    settings = context.settings if context is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
        )
        owned = getattr(app.state, "billing", None) is None
        if owned:
            try:
                app.state.billing = await BillingContext.create(settings, create_tables=True)
                logger.info("database_initialized")
            except Exception as e:
                logger.error("database_initialization_failed", error=str(e))
                raise

        yield

        logger.info("application_shutdown")
        if owned:
            try:
                await app.state.billing.aclose()
                logger.info("database_connections_closed")
            except Exception as e:
                logger.error("database_shutdown_error", error=str(e))

    app = FastAPI(
        title="Tenant Billing",
        description=(
            "Multi-gateway subscription billing: country-based gateway selection, "
            "idempotent webhook processing, dunning and revenue reporting."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.billing = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        status_code = ERROR_STATUS_CODES.get(exc.error_code, status.HTTP_400_BAD_REQUEST)
        logger.warning(
            "billing_error",
            error=exc.message,
            error_code=exc.error_code,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.message, "error_code": exc.error_code},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    app.include_router(billing_router)
    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "status": "operational",
            "environment": settings.app_env,
            "gateways": app.state.billing.registry.configured() if app.state.billing else [],
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


def main() -> None:
    import uvicorn

    setup_logging()
    settings = get_settings()
    uvicorn.run(
        "tenant_billing.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
