"""Data types shared by the orchestrator and the storage engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.config import Settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Naive datetimes are taken as UTC so stored and computed times always compare.
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.QUEUED, JobStatus.RUNNING)


class ScrapeParams(BaseModel):
    """What to scrape: a search title, a location and a page budget.

    Older clients send ``jobTitle`` and ``numPages``; both are accepted.
    """
    title: str = Field(default="", validation_alias=AliasChoices("title", "jobTitle", "job_title"))
    location: str = ""
    page_limit: int = Field(
        default=5,
        ge=1,
        validation_alias=AliasChoices("page_limit", "pageLimit", "numPages"),
    )


class JobError(BaseModel):
    timestamp: UtcDatetime = Field(default_factory=utc_now)
    message: str


class ResultRecord(BaseModel):
    """One scraped posting as produced by the agent.

    Agents send camelCase keys; both spellings are accepted. Fields the
    agent adds beyond the known set are kept as-is.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        coerce_numbers_to_str=True,
    )

    job_id: Optional[str] = None
    job_url: Optional[str] = None
    job_title: Optional[str] = None
    company_name: Optional[str] = None
    location: Optional[str] = None
    job_description: Optional[str] = None
    seniority_level: Optional[str] = None
    employment_type: Optional[str] = None
    job_function: Optional[str] = None
    industries: Optional[str] = None
    applicants: Optional[str] = None
    date_posted: Optional[str] = None
    listing_date: Optional[str] = None

    @property
    def dedup_key(self) -> tuple:
        return (self.job_id, self.job_url)


class ScraperSettings(BaseModel):
    """Runtime settings, persisted by the storage engine and editable by callers."""
    max_concurrent_scrapes: int = Field(default=2, ge=1)
    max_pages_per_scrape: int = Field(default=5, ge=1)
    delay_between_pages_ms: int = Field(default=3000, ge=0)
    delay_between_jobs_ms: int = Field(default=2000, ge=0)
    max_retries: int = Field(default=3, ge=0)
    rate_limit_delay_ms: int = Field(default=5000, ge=0)
    data_retention_days: int = Field(default=30, ge=1)
    enable_logging: bool = True
    api_endpoint: str = ""
    api_key: str = ""

    @classmethod
    def from_config(cls, config: Settings) -> "ScraperSettings":
        return cls(
            max_concurrent_scrapes=config.max_concurrent_scrapes,
            max_pages_per_scrape=config.max_pages_per_scrape,
            delay_between_pages_ms=config.delay_between_pages_ms,
            delay_between_jobs_ms=config.delay_between_jobs_ms,
            max_retries=config.max_retries,
            rate_limit_delay_ms=config.rate_limit_delay_ms,
            data_retention_days=config.data_retention_days,
            api_endpoint=config.api_endpoint or "",
            api_key=config.api_key or "",
        )

    @property
    def sink_configured(self) -> bool:
        return bool(self.api_endpoint and self.api_key)
