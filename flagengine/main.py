"""
Flag engine FastAPI application.

Main application entry point with route registration and engine lifecycle.
"""
from contextlib import asynccontextmanager
import logging
from typing import Optional

import httpx
from fastapi import FastAPI

from flagengine.config import Settings, settings as default_settings
from flagengine.api.routes import features
from flagengine.features import FeatureFlagService, JsonFileStorage, KeyValueStorage, create_feature_service

# Configure logging with configurable level
_log_level = getattr(logging, default_settings.log_level.upper(), logging.INFO)
logging.basicConfig(
    level=_log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[KeyValueStorage] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use; defaults to the environment-derived settings
        storage: Flag storage; defaults to a JSON file at settings.local_storage_path
        http_client: Client for the remote flag endpoint; one is created and
            closed with the app if omitted

    Returns:
        FastAPI application whose lifespan initializes and cleans up the engine
    """
    app_settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context manager for startup and shutdown events.
        """
        # Startup
        logger.info(f"Starting {app_settings.app_name} v{app_settings.app_version} ({app_settings.environment})")

        owned_client = None
        client = http_client
        if client is None:
            owned_client = client = httpx.AsyncClient(
                timeout=httpx.Timeout(app_settings.remote_timeout_seconds)
            )

        service = create_feature_service(
            app_settings,
            storage or JsonFileStorage(app_settings.local_storage_path),
            http_client=client,
        )
        await service.initialize()
        app.state.feature_service = service

        yield

        # Shutdown
        logger.info("Shutting down application...")
        service.cleanup()
        if owned_client is not None:
            await owned_client.aclose()

    app = FastAPI(
        title=app_settings.app_name,
        version=app_settings.app_version,
        description="Feature flag and experimentation engine API",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.include_router(features.router)

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "name": app_settings.app_name,
            "version": app_settings.app_version,
            "status": "running",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint reporting engine state."""
        service: Optional[FeatureFlagService] = getattr(app.state, "feature_service", None)
        initialized = service is not None and service.initialized

        return {
            "status": "healthy" if initialized else "unhealthy",
            "version": app_settings.app_version,
            "environment": app_settings.environment,
            "flags": len(service.store) if service is not None else 0,
        }

    return app


# Create FastAPI application
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "flagengine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=default_settings.debug,
    )
