"""FastAPI application entrypoint and configuration.

This module provides the main FastAPI application factory that sets up
logging and CORS middleware, includes the upload and points routers,
translates feature store errors into JSON error responses, and exposes a
health check endpoint for monitoring.

Example:
    The application can be run with uvicorn:
        $ uvicorn featurestore.main:app --reload

    Or imported and used programmatically:
        >>> from featurestore.main import app
        >>> # Use app in ASGI server
"""

import logging

import fastapi
from fastapi import responses
from fastapi.middleware import cors

from featurestore.api import points, upload
from featurestore.core import config, errors

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Attach a stream handler to the root logger once and set the app level."""
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("featurestore").setLevel(level.upper())


async def _feature_store_error_handler(
    request: fastapi.Request,
    exc: errors.FeatureStoreError,
) -> responses.JSONResponse:
    """Render a FeatureStoreError as ``{"error": ..., "code": ...}``."""
    if exc.status_code >= 500:
        logger.error(
            "%s %s failed: %s", request.method, request.url.path, exc.message
        )
    else:
        logger.warning(
            "%s %s rejected: %s", request.method, request.url.path, exc.message
        )
    return responses.JSONResponse(
        status_code=exc.status_code,
        content=exc.to_error_dict(),
    )


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures logging, includes the upload and points routers, registers
    the error handler for the feature store exception taxonomy, adds CORS
    middleware and a health check endpoint.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    configure_logging(settings.log_level)
    app = fastapi.FastAPI(title="Feature Store", version="0.1.0")

    app.include_router(upload.router)
    app.include_router(points.router)

    app.add_exception_handler(
        errors.FeatureStoreError,
        _feature_store_error_handler,  # type: ignore[arg-type]
    )

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
