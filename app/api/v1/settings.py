"""Runtime scraper settings API."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from app.api.dependencies import get_orchestrator, get_storage
from app.common.models import ScraperSettings
from app.jobs.orchestrator import JobOrchestrator
from app.storage.engine import StorageEngine

router = APIRouter()


@router.get("/settings", response_model=ScraperSettings)
async def get_settings(storage: StorageEngine = Depends(get_storage)):
    return await storage.get_settings()


@router.patch("/settings", response_model=ScraperSettings)
async def update_settings(
    partial: Dict[str, Any],
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Merge the given keys onto the stored settings and apply them."""
    try:
        return await orchestrator.update_settings(partial)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))
