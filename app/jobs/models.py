"""Live scrape job models owned by the orchestrator."""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field
import uuid

from app.common.models import JobError, JobStatus, ResultRecord, ScrapeParams, UtcDatetime, utc_now
from app.storage.models import SessionRecord


class ScrapeJob(BaseModel):
    """Tracks the lifecycle of one scrape in one originating context."""
    id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex}")
    context_id: str
    params: ScrapeParams
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0.0
    message: str = ""
    results: List[ResultRecord] = Field(default_factory=list)
    errors: List[JobError] = Field(default_factory=list)
    started_at: UtcDatetime = Field(default_factory=utc_now)
    last_update: UtcDatetime = Field(default_factory=utc_now)
    ended_at: Optional[UtcDatetime] = None

    def touch(self, now: datetime) -> None:
        self.last_update = now

    def add_error(self, message: str, now: datetime) -> None:
        self.errors.append(JobError(timestamp=now, message=message))

    def to_session(self) -> SessionRecord:
        return SessionRecord(
            id=self.id,
            params=self.params,
            start_time=self.started_at,
            end_time=self.ended_at,
            status=self.status,
            results=list(self.results),
            errors=list(self.errors),
        )

    def snapshot(self) -> "JobSnapshot":
        return JobSnapshot(
            job_id=self.id,
            context_id=self.context_id,
            params=self.params,
            status=self.status,
            progress=self.progress,
            message=self.message,
            result_count=len(self.results),
            error_count=len(self.errors),
            started_at=self.started_at,
            last_update=self.last_update,
            ended_at=self.ended_at,
        )


class QueuedRequest(BaseModel):
    context_id: str
    params: ScrapeParams
    queued_at: UtcDatetime = Field(default_factory=utc_now)


class JobSnapshot(BaseModel):
    """Read-only view of a job, handed to listeners and API callers."""
    job_id: str
    context_id: str
    params: ScrapeParams
    status: JobStatus
    progress: float
    message: str
    result_count: int
    error_count: int
    started_at: UtcDatetime
    last_update: UtcDatetime
    ended_at: Optional[UtcDatetime] = None


class AdmissionOutcome(str, Enum):
    ADMITTED = "admitted"
    QUEUED = "queued"
    REJECTED = "rejected"


class Admission(BaseModel):
    outcome: AdmissionOutcome
    job_id: Optional[str] = None
    position: Optional[int] = None
    reason: Optional[str] = None


class OrchestratorStatus(BaseModel):
    running_count: int
    queue_length: int
