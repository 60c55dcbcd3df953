"""FastAPI application entry point for the agent builder backend.

This module initializes the FastAPI application with all middleware,
routers, and background tasks configured.

Usage:
    uv run uvicorn main:app --reload
"""

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents.utils import LLMClient
from api.routes import router, set_store, set_workflow
from cache import ResponseCache
from config import configure_logging, settings
from models.database import ProjectStore
from sandbox import SandboxManager
from workflow import CodeAgentWorkflow

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


async def reap_sandboxes_loop(
    sandbox_manager: SandboxManager, interval_seconds: float
) -> None:
    """Periodically remove sandboxes past their expiry."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await sandbox_manager.reap_expired()
        except Exception as e:
            logger.warning("sandbox_reap_failed", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Initializes the store, sandbox manager and workflow, and runs the
    sandbox reaper while the application is up.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        model=settings.default_model,
    )

    store = ProjectStore(settings.database_path)
    await store.init()

    sandbox_manager = SandboxManager()
    workflow = CodeAgentWorkflow(
        store=store,
        sandbox_manager=sandbox_manager,
        llm_client=LLMClient(),
        cache=ResponseCache(
            ttl_seconds=settings.cache_ttl_seconds,
            capacity=settings.cache_capacity,
        ),
    )

    set_store(store)
    set_workflow(workflow)

    app.state.store = store
    app.state.workflow = workflow

    reaper_task = asyncio.create_task(
        reap_sandboxes_loop(
            sandbox_manager, settings.sandbox_reap_interval_minutes * 60.0
        ),
        name="sandbox_reaper",
    )
    app.state.reaper_task = reaper_task

    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down", pending_runs=workflow.pending)

    reaper_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await reaper_task

    await workflow.cancel_all()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Agent Builder",
    description="Backend API that builds small agent applications from a prompt "
    "with an LLM coding agent working inside a Docker sandbox.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["projects"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing to the API documentation."""
    return {
        "message": "Agent Builder API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
