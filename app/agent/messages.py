"""Message shapes exchanged with scraping agents, tagged by ``kind``."""

from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from app.common.models import ResultRecord


class StartMessage(BaseModel):
    kind: Literal["start"] = "start"
    job_id: str
    title: str
    location: str
    page_limit: int
    delay_between_pages_ms: int = 3000
    delay_between_jobs_ms: int = 2000
    rate_limit_delay_ms: int = 5000
    max_retries: int = 3


class StopMessage(BaseModel):
    kind: Literal["stop"] = "stop"


class ProgressType(str, Enum):
    INFO = "info"
    COMPLETE = "complete"
    ERROR = "error"


class ProgressMessage(BaseModel):
    """A progress event for the context's running job.

    ``complete`` carries the full record set and implies 100 percent; a
    ``complete`` without ``records`` keeps what ``info`` events delivered.
    ``error`` is a per-result failure; the job keeps running.
    """
    kind: Literal["progress"] = "progress"
    type: ProgressType
    percent: Optional[float] = Field(default=None, ge=0, le=100)
    message: str = ""
    records: Optional[List[ResultRecord]] = None

    @property
    def effective_percent(self) -> Optional[float]:
        if self.type == ProgressType.COMPLETE and self.percent is None:
            return 100.0
        return self.percent


class PingMessage(BaseModel):
    kind: Literal["ping"] = "ping"


class StatusReply(BaseModel):
    ready: bool


AgentMessage = Annotated[
    Union[StartMessage, StopMessage, ProgressMessage, PingMessage],
    Field(discriminator="kind"),
]
OutboundMessage = Union[StartMessage, StopMessage]

agent_message_adapter = TypeAdapter(AgentMessage)
