"""Signal delivery to scraping agents."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List

from app.agent.messages import OutboundMessage
from app.errors import TransportError

logger = logging.getLogger(__name__)


class AgentTransport(ABC):
    """Abstract channel from the orchestrator to the agent of one context."""

    @abstractmethod
    async def send(self, context_id: str, message: OutboundMessage) -> None:
        """Deliver a start/stop signal. Raises TransportError on failure."""
        ...

    @abstractmethod
    async def register(self, context_id: str) -> None:
        """Mark the agent of ``context_id`` as connected."""
        ...

    @abstractmethod
    async def unregister(self, context_id: str) -> None:
        ...

    @abstractmethod
    def is_ready(self, context_id: str) -> bool:
        ...


class OutboxTransport(AgentTransport):
    """Per-context outboxes that agents poll.

    An agent announces itself with a ping (``register``) and then fetches
    pending signals with ``fetch``. Sending to a context whose agent never
    registered, or whose outbox is full, fails with ``TransportError``.
    """

    def __init__(self, max_pending: int = 100):
        self._max_pending = max_pending
        self._outboxes: Dict[str, asyncio.Queue] = {}

    async def register(self, context_id: str) -> None:
        if context_id not in self._outboxes:
            self._outboxes[context_id] = asyncio.Queue(maxsize=self._max_pending)
            logger.info("Agent registered for context %s", context_id)

    async def unregister(self, context_id: str) -> None:
        if self._outboxes.pop(context_id, None) is not None:
            logger.info("Agent unregistered for context %s", context_id)

    def is_ready(self, context_id: str) -> bool:
        return context_id in self._outboxes

    async def send(self, context_id: str, message: OutboundMessage) -> None:
        outbox = self._outboxes.get(context_id)
        if outbox is None:
            raise TransportError(f"No agent connected for context {context_id}")
        try:
            outbox.put_nowait(message)
        except asyncio.QueueFull:
            raise TransportError(f"Outbox full for context {context_id}")

    async def fetch(self, context_id: str, wait_seconds: float = 0.0) -> List[OutboundMessage]:
        """Return every pending signal, waiting up to ``wait_seconds`` for the first."""
        outbox = self._outboxes.get(context_id)
        if outbox is None:
            raise TransportError(f"No agent connected for context {context_id}")

        messages: List[OutboundMessage] = []
        if outbox.empty() and wait_seconds > 0:
            try:
                messages.append(await asyncio.wait_for(outbox.get(), timeout=wait_seconds))
            except asyncio.TimeoutError:
                return messages
        while not outbox.empty():
            messages.append(outbox.get_nowait())
        return messages
