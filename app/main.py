"""Scrape Orchestrator Service - FastAPI application."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.agent.transport import OutboxTransport
from app.api.v1.router import v1_router
from app.config import Settings, settings as default_config
from app.errors import QuotaExceededError, StorageError
from app.jobs.orchestrator import JobOrchestrator
from app.logging_utils import configure_logging
from app.messaging.router import MessageRouter
from app.sink.client import ExternalSink
from app.storage.backend import MemoryBackend, StorageBackend
from app.storage.engine import StorageEngine
from app.storage.file_backend import FileBackend

logger = logging.getLogger(__name__)


def build_backend(config: Settings) -> StorageBackend:
    """Pick the key/value backend named by ``STORAGE_BACKEND``."""
    kind = config.storage_backend.lower()
    if kind == "memory":
        return MemoryBackend(quota_bytes=config.storage_quota_bytes)
    if kind == "file":
        return FileBackend(config.data_dir, quota_bytes=config.storage_quota_bytes)
    if kind == "supabase":
        from app.db.supabase_client import get_supabase
        from app.storage.supabase_backend import SupabaseBackend

        return SupabaseBackend(
            get_supabase(config), config.supabase_table, quota_bytes=config.storage_quota_bytes
        )
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")


def create_app(
    config: Settings = default_config,
    backend: Optional[StorageBackend] = None,
    sink: Optional[ExternalSink] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        configure_logging(config.log_level)
        logger.info("Starting Scrape Orchestrator Service on port %s", config.service_port)
        logger.info("Storage backend: %s", config.storage_backend)

        storage = StorageEngine(backend or build_backend(config), config=config)
        await storage.initialize()
        await storage.start()

        transport = OutboxTransport()
        orchestrator = JobOrchestrator(
            storage,
            transport,
            sink or ExternalSink(timeout=config.sink_timeout_seconds),
            config=config,
        )
        await orchestrator.start()
        logger.info("Job orchestrator started")

        app.state.storage = storage
        app.state.transport = transport
        app.state.orchestrator = orchestrator
        app.state.message_router = MessageRouter(orchestrator, storage, transport)

        yield

        logger.info("Shutting down Scrape Orchestrator Service")
        await orchestrator.stop()
        await storage.stop()

    app = FastAPI(
        title="Scrape Orchestrator Service",
        description="Scrape job orchestration with bounded session storage",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
        detail = "Storage quota exceeded" if isinstance(exc, QuotaExceededError) else str(exc)
        return JSONResponse(status_code=507, content={"detail": detail})

    app.include_router(v1_router)
    return app


app = create_app()
