"""FastAPI application entry point for the Roundtable backend.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.routes import set_orchestrator as set_routes_orchestrator
from api.websocket import set_orchestrator as set_websocket_orchestrator
from api.websocket import websocket_router
from config import configure_logging, settings
from docs_store import DocumentationStore, InMemoryDocumentationStore, SqliteDocumentationStore
from events import EventBus
from orchestrator import ConversationOrchestrator

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


async def create_docs_store() -> DocumentationStore:
    """Open the SQLite documentation store, falling back to memory if it fails."""
    try:
        store = SqliteDocumentationStore(settings.docs_database_path)
        await store.init()
        return store
    except Exception as e:
        # Keep the API available even if persistence initialization fails.
        logger.warning("docs_store_init_failed", error=str(e))
        return InMemoryDocumentationStore()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the orchestrator on startup and cancel its background work on shutdown."""
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_agents=settings.use_mock_agents,
        default_agents=settings.default_agents,
    )

    docs_store = await create_docs_store()
    orchestrator = ConversationOrchestrator.from_settings(settings, EventBus(), docs_store)

    set_routes_orchestrator(orchestrator)
    set_websocket_orchestrator(orchestrator)

    app.state.orchestrator = orchestrator
    app.state.docs_store = docs_store

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await app.state.orchestrator.cleanup_all()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Roundtable",
    description="Orchestration backend for multi-agent LLM conversation threads: "
    "planning, concurrent agent turns, cost and limit enforcement, and moderation.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(router, tags=["conversations"])
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    return {
        "message": "Roundtable API",
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
