"""Main entry point for the Auth Broker service."""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from starlette.middleware.cors import CORSMiddleware

from auth_broker import __version__
from auth_broker.api.middleware import MetricsAuthMiddleware, NoStoreCacheControl, RequestIDMiddleware
from auth_broker.api.routes_auth import router as auth_router
from auth_broker.auth.broker import AuthBroker
from auth_broker.auth.errors import EntropySourceUnavailable
from auth_broker.utils.config import Settings, get_settings
from auth_broker.utils.logging_utils import redact_sensitive_data, setup_json_logging

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    """Use structured JSON logging, falling back to INFO on an unknown level."""
    log_level = settings.log_level
    if not isinstance(log_level, str) or not hasattr(logging, log_level.upper()):
        log_level = "INFO"
    setup_json_logging(log_level, settings.log_output, settings.log_file_path)


async def _sweep_rate_limits(broker: AuthBroker, interval_seconds: float) -> None:
    """Evict expired rate-limit buckets until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        await broker.rate_limiter.cleanup()


@asynccontextmanager
async def lifespan(app: FastAPI) -> Any:
    """
    Application startup and shutdown events.

    Args:
        app: The FastAPI application instance

    Yields:
        None
    """
    settings: Settings = app.state.settings
    logger.info("Starting Auth Broker...", extra={"service_env": settings.service_env})

    # Refuse to serve with configuration that weakens session protection
    settings.validate_for_startup()
    if not app.state.broker.codec.encrypted:
        logger.warning("Auth cookies are stored unencrypted; development use only")

    sweeper = asyncio.create_task(
        _sweep_rate_limits(app.state.broker, settings.rate_limit_cleanup_interval_seconds)
    )
    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        logger.info("Shutting down Auth Broker...")


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to use instead of the cached environment settings
        transport: Optional httpx transport for IdP requests

    Returns:
        FastAPI: The configured FastAPI application
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Auth Broker",
        description="OAuth2 authorization code + PKCE broker between browser clients and the identity provider",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.broker = AuthBroker.from_settings(settings, transport=transport)

    # Add middlewares
    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # Auth responses carry tokens and cookies; never cache them
    app.add_middleware(NoStoreCacheControl, paths=["/auth/"])

    # Add Request ID middleware
    app.add_middleware(RequestIDMiddleware)

    # Add routers
    app.include_router(auth_router, prefix="/auth")

    @app.get("/health")
    async def health_check() -> Dict[str, str]:
        """
        Health check endpoint.

        Returns:
            dict: Health status
        """
        logger.info("Health check endpoint called", extra={"endpoint": "/health"})
        return {"status": "healthy", "service": "auth-broker"}

    # Mount the Prometheus metrics endpoint with auth middleware
    metrics_app = make_asgi_app()
    app.mount(
        "/metrics",
        MetricsAuthMiddleware(metrics_app, settings.metrics_user, settings.metrics_pass.get_secret_value()),
    )

    # Global exception handler to prevent leaking sensitive data
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        if isinstance(exc, HTTPException):
            detail = exc.detail
            status_code = exc.status_code
        else:
            if isinstance(exc, EntropySourceUnavailable):
                logger.critical("Secure random source unavailable", exc_info=exc)
            else:
                logger.error(f"Unhandled error: {type(exc).__name__}", exc_info=exc)
            detail = "Internal server error"
            status_code = 500
        # Redact sensitive data if detail is a dict or list
        safe_detail = redact_sensitive_data(detail) if isinstance(detail, (dict, list)) else detail
        return JSONResponse(
            status_code=status_code,
            content={
                "status": "error",
                "message": safe_detail,
            },
        )

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the application with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "auth_broker.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.service_env == "development",
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
