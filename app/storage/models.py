"""Persisted session, index and stats models plus query shapes."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.common.models import JobError, JobStatus, ResultRecord, ScrapeParams, UtcDatetime, utc_now


class SessionRecord(BaseModel):
    """Full persisted outcome of one completed, cancelled or timed-out job."""
    id: str
    params: ScrapeParams = Field(default_factory=ScrapeParams)
    start_time: UtcDatetime = Field(default_factory=utc_now)
    end_time: Optional[UtcDatetime] = None
    status: JobStatus = JobStatus.COMPLETED
    results: List[ResultRecord] = Field(default_factory=list)
    errors: List[JobError] = Field(default_factory=list)
    migrated: bool = False

    @property
    def duration_ms(self) -> int:
        if self.end_time is None:
            return 0
        return int((self.end_time - self.start_time).total_seconds() * 1000)


class IndexEntry(BaseModel):
    """List-friendly summary of a SessionRecord."""
    id: str
    timestamp: UtcDatetime
    end_time: Optional[UtcDatetime] = None
    params: ScrapeParams
    result_count: int = 0
    duration_ms: int = 0
    status: JobStatus
    byte_size: int = 0

    @classmethod
    def for_session(cls, record: SessionRecord, byte_size: int) -> "IndexEntry":
        return cls(
            id=record.id,
            timestamp=record.start_time,
            end_time=record.end_time,
            params=record.params,
            result_count=len(record.results),
            duration_ms=record.duration_ms,
            status=record.status,
            byte_size=byte_size,
        )


class StorageStats(BaseModel):
    total_results: int = 0
    total_sessions: int = 0
    bytes_used: int = 0
    computed_at: UtcDatetime = Field(default_factory=utc_now)


class HistoryEntry(BaseModel):
    id: str
    params: ScrapeParams
    start_time: UtcDatetime
    status: JobStatus
    end_time: Optional[UtcDatetime] = None
    result_count: Optional[int] = None


class SaveResult(BaseModel):
    session_id: str
    byte_size: int


class SessionFilters(BaseModel):
    """Index-level filters; none of them needs the full session payload."""
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None
    title: Optional[str] = None
    location: Optional[str] = None
    status: Optional[JobStatus] = None
    min_results: Optional[int] = None

    def matches(self, entry: IndexEntry) -> bool:
        if self.start_date and entry.timestamp < self.start_date:
            return False
        if self.end_date and entry.timestamp > self.end_date:
            return False
        if self.title and self.title.lower() not in entry.params.title.lower():
            return False
        if self.location and self.location.lower() not in entry.params.location.lower():
            return False
        if self.status and entry.status != self.status:
            return False
        if self.min_results and entry.result_count < self.min_results:
            return False
        return True


class SessionPage(BaseModel):
    entries: List[IndexEntry]
    total: int
    has_more: bool
    next_offset: int


class ResultFilters(BaseModel):
    company: Optional[str] = None
    location: Optional[str] = None
    seniority_level: Optional[str] = None
    employment_type: Optional[str] = None
    posted_within_days: Optional[int] = None


class SortKey(str, Enum):
    DATE = "date"
    COMPANY = "company"
    TITLE = "title"
    SESSION_DATE = "session_date"
    NONE = "none"


class SearchHit(BaseModel):
    record: ResultRecord
    session_id: str
    session_timestamp: UtcDatetime


class SearchResponse(BaseModel):
    results: List[SearchHit]
    total: int
    query: str
    filters: ResultFilters


class ExportResult(BaseModel):
    content: str
    filename: str
    mime_type: str


class Backup(BaseModel):
    version: str
    timestamp: UtcDatetime
    data: Dict[str, Any]
