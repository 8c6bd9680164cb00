"""
AgentGate Main Application

FastAPI application entry point.
"""

from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from . import __version__
from .api.routes import router
from .config import get_config
from .runtime import AgentRuntime, build_runtime


# Configure logging
logging.basicConfig(
    level=getattr(logging, get_config().log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


def create_app(runtime: Optional[AgentRuntime] = None) -> FastAPI:
    """
    Build the FastAPI app.

    With no runtime given, one is built from the environment at startup.
    """
    app = FastAPI(
        title="AgentGate",
        description="""
## AgentGate - Policy-gated AI workflow engine

Runs multi-step AI workflows (AI actions, tool calls, conditions, loops,
parallel branches, human approval) while enforcing the node's data
disclosure policy on every provider call.

### Operations
- `POST /api/v1/workflows/{id}/start` - Start a workflow instance
- `GET /api/v1/instances/{id}` - Inspect an instance
- `POST /api/v1/instances/{id}/approval` - Answer a human approval step
- `POST /api/v1/instances/{id}/resume` - Resume a paused instance
- `POST /api/v1/instances/{id}/cancel` - Cancel an instance
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    app.state.runtime = runtime

    @app.on_event("startup")
    async def startup_event():
        """Initialize on startup."""
        if app.state.runtime is None:
            app.state.runtime = build_runtime()
        logging.info("AgentGate starting...")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown."""
        if app.state.runtime is not None:
            await app.state.runtime.engine.close()
        logging.info("AgentGate shutting down...")

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint."""
        return {
            "name": "AgentGate",
            "version": __version__,
            "docs": "/docs",
            "health": "/api/v1/health",
        }

    return app


app = create_app()
