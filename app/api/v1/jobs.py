"""Job management API: submit scrapes, poll status, cancel."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from app.api.dependencies import get_orchestrator
from app.common.models import ScrapeParams
from app.jobs.models import Admission, AdmissionOutcome
from app.jobs.orchestrator import JobOrchestrator

router = APIRouter()


class JobSubmitRequest(BaseModel):
    context_id: str
    params: ScrapeParams


@router.post("/jobs", response_model=Admission, response_model_exclude_none=True)
async def submit_job(
    request: JobSubmitRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Submit a scrape. It starts now, waits in the queue, or is rejected."""
    admission = await orchestrator.submit(request.context_id, request.params)
    if admission.outcome == AdmissionOutcome.REJECTED:
        raise HTTPException(status_code=409, detail=admission.reason)
    return admission


@router.get("/jobs")
async def list_jobs(orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    """Running jobs and queued requests, in admission order."""
    listing = orchestrator.list_jobs()
    return {
        "status": orchestrator.status().model_dump(),
        "running": [job.model_dump(mode="json") for job in listing["running"]],
        "queued": [req.model_dump(mode="json") for req in listing["queued"]],
    }


@router.get("/jobs/{context_id}")
async def get_job_status(
    context_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Current state of the job running for a context."""
    job = orchestrator.get_job(context_id)
    if job is None:
        raise HTTPException(status_code=404, detail="No running job for this context")
    return job.model_dump(mode="json")


@router.delete("/jobs/{context_id}")
async def cancel_job(
    context_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Cancel the context's running job or drop its queued request."""
    if not await orchestrator.cancel(context_id):
        raise HTTPException(status_code=404, detail="Nothing to cancel for this context")
    return {"success": True}
