"""Job dispatcher interface."""

from abc import ABC, abstractmethod
from typing import Optional

from app.agent.messages import ProgressMessage
from app.common.models import ScrapeParams
from app.jobs.models import Admission, JobSnapshot, OrchestratorStatus


class JobDispatcher(ABC):
    """Abstract interface for admitting and tracking scrape jobs."""

    @abstractmethod
    async def submit(self, context_id: str, params: ScrapeParams) -> Admission:
        """Admit, queue or reject a scrape request for a context."""
        ...

    @abstractmethod
    async def report(self, context_id: str, event: ProgressMessage) -> bool:
        """Feed one progress event. Returns False if it was dropped."""
        ...

    @abstractmethod
    async def cancel(self, context_id: str) -> bool:
        ...

    @abstractmethod
    def get_job(self, context_id: str) -> Optional[JobSnapshot]:
        ...

    @abstractmethod
    def status(self) -> OrchestratorStatus:
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (e.g., start the watchdog)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
