"""FastAPI application factory and entry point."""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

import taskhub
from taskhub.common.config import Config
from taskhub.common.logging_config import setup_logging
from taskhub.runtime import TaskRuntime, create_runtime

from .dependencies import get_runtime
from .middleware import RequestLoggingMiddleware, register_exception_handlers
from .schemas.tasks import HealthCheckResponse
from .settings import get_settings

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan context manager.

    Handles startup and shutdown events:
    - Startup: Build the task runtime (stores, queues, AI client) and start workers
    - Shutdown: Stop workers, close the AI client and the database
    """
    config: Config = app.state.config
    settings = get_settings()
    logger.info("api_starting", host=settings.host, port=settings.port)

    runtime = await create_runtime(config)
    app.state.runtime = runtime
    await runtime.start()

    logger.info(
        "api_ready",
        version=taskhub.__version__,
        store_backend=config.store_backend,
        ai_configured=runtime.ai_client.is_configured,
    )

    yield

    logger.info("api_shutting_down")
    app.state.runtime = None
    await runtime.close()


def create_app(config: Optional[Config] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This factory function creates the app with:
    - CORS middleware
    - Request logging middleware (if enabled)
    - Exception handlers for queue errors
    - Health check endpoint
    - Task and admin routers

    Args:
        config: Configuration to run with (default: load_config())

    Returns:
        Configured FastAPI application instance

    Example:
        # For testing
        from taskhub.web.main import create_app
        app = create_app(Config(store_backend="memory"))

        # With TestClient
        from fastapi.testclient import TestClient
        with TestClient(app) as client:
            ...
    """
    settings = get_settings()

    if config is None:
        config = taskhub.load_config(Path(settings.config_path) if settings.config_path else None)
    setup_logging(config.logging, config.config_dir)

    app = FastAPI(
        title="TaskHub API",
        version=taskhub.__version__,
        description="""Asynchronous AI task queue.

Submit text, image, document and spreadsheet tasks with `POST /tasks`, then poll
`GET /tasks/{external_id}` until the task is `completed` or `failed`.
""",
        openapi_url=settings.openapi_url,
        openapi_tags=[
            {
                "name": "Health",
                "description": "Health check and status endpoints",
            },
            {
                "name": "Tasks",
                "description": "AI task submission and status polling",
            },
            {
                "name": "Admin",
                "description": "Queue statistics and retention for the admin dashboard",
            },
        ],
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.config = config
    app.state.runtime = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.log_requests:
        app.add_middleware(RequestLoggingMiddleware)

    register_exception_handlers(app)

    @app.get(
        "/health",
        tags=["Health"],
        summary="Health check",
        response_model=HealthCheckResponse,
        response_description="Health status of the API",
    )
    async def health_check(
        runtime: TaskRuntime = Depends(get_runtime),
    ) -> HealthCheckResponse:
        """
        Check API health status.

        Returns the API version, the job store in use and whether the AI
        service has an API key.
        """
        return HealthCheckResponse(
            status="ok",
            version=taskhub.__version__,
            store_backend=runtime.config.store_backend,
            ai_configured=runtime.ai_client.is_configured,
        )

    from .routes import admin, tasks

    app.include_router(tasks.router)
    app.include_router(admin.router)

    return app


def run(
    host: Optional[str] = None,
    port: Optional[int] = None,
    config_path: Optional[Path] = None,
) -> None:
    """
    Run the API server with uvicorn.

    This is the entry point for `taskhub serve`.
    """
    settings = get_settings()
    config = taskhub.load_config(config_path) if config_path else None

    uvicorn.run(
        create_app(config),
        host=host or settings.host,
        port=port or settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
