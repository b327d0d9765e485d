"""
Shared fixtures: a controllable clock, record/session factories and a
config with small limits so eviction paths are easy to reach.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.common.models import JobStatus, ResultRecord, ScrapeParams
from app.config import Settings
from app.storage.models import SessionRecord

BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def config() -> Settings:
    return Settings(
        storage_backend="memory",
        max_index_entries=1000,
        max_concurrent_scrapes=2,
        stale_job_minutes=30,
        api_endpoint=None,
        api_key=None,
    )


@pytest.fixture()
def make_record():
    def _make(n: int, **fields) -> ResultRecord:
        data = {
            "job_id": str(n),
            "job_url": f"https://jobs.example.com/view/{n}",
            "job_title": f"Engineer {n}",
            "company_name": f"Company {n}",
            "location": "City A",
            "job_description": f"Build things number {n}",
        }
        data.update(fields)
        return ResultRecord(**data)

    return _make


@pytest.fixture()
def make_session(make_record):
    def _make(
        session_id: str,
        start_time: datetime = BASE_TIME,
        results: int = 2,
        title: str = "Engineer",
        location: str = "City A",
        status: JobStatus = JobStatus.COMPLETED,
    ) -> SessionRecord:
        return SessionRecord(
            id=session_id,
            params=ScrapeParams(title=title, location=location, page_limit=2),
            start_time=start_time,
            end_time=start_time + timedelta(minutes=5),
            status=status,
            results=[make_record(i) for i in range(results)],
        )

    return _make
