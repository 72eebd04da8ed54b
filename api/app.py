"""
FastAPI Application Entry Point

This module creates and configures the FastAPI application for the
face authentication service.

The application provides:
- WebSocket endpoint for enrollment
- WebSocket endpoint for verification (face sign-in)
- REST endpoints for enrollment status and opt-out
- Health check endpoint

Usage:
    # From project root:
    uvicorn api.app:app --host 0.0.0.0 --port 8000 --reload

    # Or run directly:
    python -m api.app
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from api.routes import authentication_router, enrollment_router, management_router
from api.schemas import HealthResponse, RootResponse
from faceauth import __version__
from faceauth.bootstrap import FaceAuthComponents, build_components
from faceauth.config import get_config, get_server_config
from faceauth.matching import ManagedRecognitionClient


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

ComponentsFactory = Callable[[], Awaitable[FaceAuthComponents]]


def create_app(components_factory: ComponentsFactory = build_components) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        components_factory: Coroutine function returning the FaceAuthComponents
                            the routes use. Tests inject prebuilt components.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan handler.

        Runs on startup:
        - Build the credential store, matching backend and session bridge
        - Ensure the managed face collection exists (managed backend only)

        Runs on shutdown:
        - Close the HTTP client and database connection
        """
        logger.info("=" * 60)
        logger.info("Starting Face Authentication API")
        logger.info("=" * 60)

        components = await components_factory()
        app.state.components = components

        enrolled = await asyncio.to_thread(
            components.store.count_active, components.backend.kind
        )
        logger.info(
            f"Backend: {components.backend.kind.value}, {enrolled} active enrollment(s)"
        )
        logger.info("API startup complete!")

        yield

        logger.info("Shutting down API...")
        await components.aclose()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Face Authentication API",
        description="""
Biometric sign-in for existing accounts.

## Features
- **Enrollment**: Register a signed-in user's face over a WebSocket
- **Verification**: Sign in with a face; returns session tokens
- **Enrollment management**: Check status, opt out

## WebSocket flows
Connect to `/ws/enroll/{user_id}` or `/ws/verify?user_id=...`.
The server asks the client to open its camera (`camera_request`) and to grab
frames (`capture_request`); the client answers with `camera_ready` and
`{"type": "frame", "data": "<base64 JPEG>"}`.
        """,
        version=__version__,
        lifespan=lifespan,
    )

    api_config = get_config().get("api", {})
    app.add_middleware(
        CORSMiddleware,
        allow_origins=api_config.get("cors_origins", ["*"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(enrollment_router)
    app.include_router(authentication_router)
    app.include_router(management_router)

    @app.get("/health", response_model=HealthResponse, tags=["system"])
    async def health_check(request: Request):
        """
        Check the health of the API and its dependencies.

        Returns:
        - Active backend kind
        - Collection readiness (managed backend)
        - Number of active enrollments on the active backend
        """
        components = request.app.state.components
        backend = components.backend
        enrolled = await asyncio.to_thread(components.store.count_active, backend.kind)

        collection_ready = None
        if isinstance(backend, ManagedRecognitionClient):
            collection_ready = backend.collection_ready

        status = "degraded" if collection_ready is False else "healthy"

        return HealthResponse(
            status=status,
            backend_kind=backend.kind.value,
            collection_ready=collection_ready,
            enrolled_users=enrolled,
        )

    @app.get("/", response_model=RootResponse, tags=["system"])
    async def root():
        """Root endpoint with API information."""
        return RootResponse(
            name="Face Authentication API",
            version=__version__,
            endpoints=[
                "/ws/enroll/{user_id}",
                "/ws/verify",
                "/enrollments/{user_id}",
            ],
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    server = get_server_config()

    logger.info(f"Starting server on {server['host']}:{server['port']}")
    uvicorn.run(
        "api.app:app",
        host=server["host"],
        port=server["port"],
        reload=True,
        log_level="info",
    )
