"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter, Depends

from app.api.dependencies import get_orchestrator, get_storage
from app.jobs.orchestrator import JobOrchestrator
from app.storage.engine import StorageEngine

router = APIRouter()


@router.get("/health")
async def health_check(
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
    storage: StorageEngine = Depends(get_storage),
):
    """Service health, job load and storage usage."""
    status = orchestrator.status()
    stats = await storage.get_stats()
    backend = storage.backend
    return {
        "status": "healthy",
        "running_jobs": status.running_count,
        "queued_requests": status.queue_length,
        "max_concurrent_scrapes": orchestrator.settings.max_concurrent_scrapes,
        "storage": {
            "backend": type(backend).__name__,
            "bytes_in_use": await backend.bytes_in_use(),
            "quota_bytes": backend.quota_bytes,
            "total_sessions": stats.total_sessions,
        },
        "python_version": sys.version,
        "platform": platform.platform(),
    }
