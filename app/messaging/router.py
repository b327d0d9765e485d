"""Routes tagged messages from callers and agents to the core services."""

import logging
from typing import Any, Awaitable, Callable, Dict

from pydantic import ValidationError

from app.agent.messages import PingMessage, ProgressMessage, StatusReply, agent_message_adapter
from app.agent.transport import AgentTransport
from app.errors import ScrapeCoreError
from app.jobs.orchestrator import JobOrchestrator
from app.messaging.commands import (
    COMMAND_ACTIONS,
    DeleteCommand,
    ExportCommand,
    GetDataCommand,
    GetSettingsCommand,
    GetStatusCommand,
    StartScrapingCommand,
    StopScrapingCommand,
    UpdateSettingsCommand,
    command_adapter,
)
from app.storage.engine import StorageEngine

logger = logging.getLogger(__name__)

AGENT_KINDS = frozenset({"progress", "ping"})

Handler = Callable[[str, Any], Awaitable[Dict[str, Any]]]


def _unrecognized(tag: Any) -> Dict[str, Any]:
    return {"error": f"Unrecognized message: {tag!r}"}


class MessageRouter:
    """Dispatches one raw message from ``context_id`` and returns the reply.

    Messages carrying ``kind`` come from agents; messages carrying
    ``action`` come from callers. Anything else gets an error reply.
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        storage: StorageEngine,
        transport: AgentTransport,
    ):
        self._orchestrator = orchestrator
        self._storage = storage
        self._transport = transport
        self._handlers: Dict[type, Handler] = {
            StartScrapingCommand: self._start_scraping,
            StopScrapingCommand: self._stop_scraping,
            GetStatusCommand: self._get_status,
            GetDataCommand: self._get_data,
            ExportCommand: self._export,
            DeleteCommand: self._delete,
            GetSettingsCommand: self._get_settings,
            UpdateSettingsCommand: self._update_settings,
            ProgressMessage: self._progress,
            PingMessage: self._ping,
        }

    async def handle(self, context_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if "kind" in payload:
            tag = payload.get("kind")
            if tag not in AGENT_KINDS:
                return _unrecognized(tag)
            adapter = agent_message_adapter
        else:
            tag = payload.get("action")
            if tag not in COMMAND_ACTIONS:
                return _unrecognized(tag)
            adapter = command_adapter

        try:
            message = adapter.validate_python(payload)
        except ValidationError as e:
            logger.warning("Invalid %s message from %s: %s", tag, context_id, e)
            return {"error": f"Invalid {tag} message", "details": e.errors(include_url=False)}

        handler = self._handlers[type(message)]
        try:
            return await handler(context_id, message)
        except ScrapeCoreError as e:
            return {"error": str(e)}

    # -- agent messages -------------------------------------------------

    async def _progress(self, context_id: str, message: ProgressMessage) -> Dict[str, Any]:
        accepted = await self._orchestrator.report(context_id, message)
        return {"success": accepted}

    async def _ping(self, context_id: str, message: PingMessage) -> Dict[str, Any]:
        await self._transport.register(context_id)
        return StatusReply(ready=True).model_dump()

    # -- caller commands ------------------------------------------------

    async def _start_scraping(self, context_id: str, command: StartScrapingCommand) -> Dict[str, Any]:
        admission = await self._orchestrator.submit(context_id, command.params)
        return admission.model_dump(mode="json", exclude_none=True)

    async def _stop_scraping(self, context_id: str, command: StopScrapingCommand) -> Dict[str, Any]:
        return {"success": await self._orchestrator.cancel(context_id)}

    async def _get_status(self, context_id: str, command: GetStatusCommand) -> Dict[str, Any]:
        job = self._orchestrator.get_job(context_id)
        return {
            "job": job.model_dump(mode="json") if job else None,
            "orchestrator": self._orchestrator.status().model_dump(),
            "agent_ready": self._transport.is_ready(context_id),
        }

    async def _get_data(self, context_id: str, command: GetDataCommand) -> Dict[str, Any]:
        page = await self._storage.list_sessions(command.filters, command.offset, command.limit)
        detailed = await self._storage.get_sessions([e.id for e in page.entries])
        return {
            "summary": page.model_dump(mode="json"),
            "detailed": [s.model_dump(mode="json") for s in detailed],
        }

    async def _export(self, context_id: str, command: ExportCommand) -> Dict[str, Any]:
        result = await self._storage.export(
            command.format, command.filters, command.include_raw_sessions
        )
        return result.model_dump()

    async def _delete(self, context_id: str, command: DeleteCommand) -> Dict[str, Any]:
        deleted = await self._storage.delete_sessions(command.filters, command.delete_all)
        return {"success": True, "deleted": deleted}

    async def _get_settings(self, context_id: str, command: GetSettingsCommand) -> Dict[str, Any]:
        return (await self._storage.get_settings()).model_dump()

    async def _update_settings(self, context_id: str, command: UpdateSettingsCommand) -> Dict[str, Any]:
        try:
            updated = await self._orchestrator.update_settings(command.settings)
        except ValidationError as e:
            logger.warning("Rejected settings update from %s: %s", context_id, e)
            return {"error": "Invalid settings", "details": e.errors(include_url=False)}
        return updated.model_dump()
