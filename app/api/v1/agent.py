"""Agent-facing API: register, fetch pending signals, report progress."""

from fastapi import APIRouter, Depends, HTTPException, Query

from app.agent.messages import ProgressMessage, StatusReply
from app.agent.transport import OutboxTransport
from app.api.dependencies import get_orchestrator, get_transport
from app.errors import TransportError
from app.jobs.orchestrator import JobOrchestrator

router = APIRouter(prefix="/agent")


@router.post("/{context_id}/ping", response_model=StatusReply)
async def ping(context_id: str, transport: OutboxTransport = Depends(get_transport)):
    await transport.register(context_id)
    return StatusReply(ready=True)


@router.get("/{context_id}/outbox")
async def fetch_outbox(
    context_id: str,
    wait: float = Query(default=0.0, ge=0.0, le=30.0),
    transport: OutboxTransport = Depends(get_transport),
):
    """Pending start/stop signals, long-polling up to ``wait`` seconds."""
    try:
        messages = await transport.fetch(context_id, wait_seconds=wait)
    except TransportError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"messages": [m.model_dump(mode="json") for m in messages]}


@router.post("/{context_id}/progress")
async def report_progress(
    context_id: str,
    event: ProgressMessage,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    # Late events for a finished job are accepted and dropped.
    return {"accepted": await orchestrator.report(context_id, event)}


@router.delete("/{context_id}")
async def close_context(
    context_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """The agent's context went away."""
    await orchestrator.context_closed(context_id)
    return {"success": True}
