"""Request-scoped accessors for the services built during lifespan."""

from fastapi import HTTPException, Request

from app.agent.transport import OutboxTransport
from app.jobs.orchestrator import JobOrchestrator
from app.messaging.router import MessageRouter
from app.storage.engine import StorageEngine


def _service(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return service


def get_orchestrator(request: Request) -> JobOrchestrator:
    return _service(request, "orchestrator")


def get_storage(request: Request) -> StorageEngine:
    return _service(request, "storage")


def get_transport(request: Request) -> OutboxTransport:
    return _service(request, "transport")


def get_message_router(request: Request) -> MessageRouter:
    return _service(request, "message_router")
