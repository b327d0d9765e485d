"""Stored session API: list, search, export, delete, stats, backup."""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from app.api.dependencies import get_storage
from app.common.models import JobStatus
from app.errors import UnsupportedFormatError
from app.storage.engine import StorageEngine
from app.storage.models import ResultFilters, SessionFilters, SortKey

router = APIRouter()


def session_filters(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    title: Optional[str] = None,
    location: Optional[str] = None,
    status: Optional[JobStatus] = None,
    min_results: Optional[int] = Query(default=None, ge=0),
) -> SessionFilters:
    return SessionFilters(
        start_date=start_date,
        end_date=end_date,
        title=title,
        location=location,
        status=status,
        min_results=min_results,
    )


@router.get("/sessions")
async def list_sessions(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=1000),
    filters: SessionFilters = Depends(session_filters),
    storage: StorageEngine = Depends(get_storage),
):
    """Index entries, newest first, with pagination."""
    page = await storage.list_sessions(filters, offset, limit)
    return page.model_dump(mode="json")


@router.get("/sessions/search")
async def search_results(
    q: str = "",
    company: Optional[str] = None,
    location: Optional[str] = None,
    seniority_level: Optional[str] = None,
    employment_type: Optional[str] = None,
    posted_within_days: Optional[int] = Query(default=None, ge=0),
    sort_by: SortKey = SortKey.NONE,
    limit: int = Query(default=100, ge=1, le=1000),
    storage: StorageEngine = Depends(get_storage),
):
    """Full-text search over the records of the most recent sessions."""
    filters = ResultFilters(
        company=company,
        location=location,
        seniority_level=seniority_level,
        employment_type=employment_type,
        posted_within_days=posted_within_days,
    )
    response = await storage.search(q, filters, sort_by, limit)
    return response.model_dump(mode="json")


@router.get("/sessions/export")
async def export_sessions(
    format: str = "json",
    include_raw_sessions: bool = True,
    filters: SessionFilters = Depends(session_filters),
    storage: StorageEngine = Depends(get_storage),
):
    """Download matching sessions as a JSON or CSV file."""
    try:
        result = await storage.export(format, filters, include_raw_sessions)
    except UnsupportedFormatError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return Response(
        content=result.content,
        media_type=result.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, storage: StorageEngine = Depends(get_storage)):
    record = await storage.get_session(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return record.model_dump(mode="json")


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, storage: StorageEngine = Depends(get_storage)):
    if not await storage.delete_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"success": True}


@router.delete("/sessions")
async def delete_sessions(
    all: bool = False,
    filters: SessionFilters = Depends(session_filters),
    storage: StorageEngine = Depends(get_storage),
):
    """Delete matching sessions, or everything with ``all=true``."""
    deleted = await storage.delete_sessions(filters, delete_all=all)
    return {"success": True, "deleted": deleted}


@router.get("/storage/stats")
async def storage_stats(storage: StorageEngine = Depends(get_storage)):
    stats = await storage.get_stats()
    return {
        **stats.model_dump(mode="json"),
        "bytes_in_use": await storage.backend.bytes_in_use(),
        "quota_bytes": storage.backend.quota_bytes,
    }


@router.get("/history")
async def scrape_history(storage: StorageEngine = Depends(get_storage)):
    return [entry.model_dump(mode="json") for entry in await storage.get_history()]


@router.get("/storage/backup")
async def create_backup(storage: StorageEngine = Depends(get_storage)):
    backup = await storage.create_backup()
    return backup.model_dump(mode="json")


@router.post("/storage/restore")
async def restore_backup(payload: Dict[str, Any], storage: StorageEngine = Depends(get_storage)):
    try:
        restored = await storage.restore_backup(payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid backup: {e}")
    return {"success": True, "restored_keys": restored}
