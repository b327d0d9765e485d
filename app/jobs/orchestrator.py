"""In-process scrape job orchestrator on the asyncio loop.

Admits requests up to a concurrency ceiling, queues the rest FIFO, consumes
agent progress events, and on every terminal transition persists the
session, attempts sink delivery and hands the freed slot to the next queued
request.

Locking: ``_lock`` guards the running registry and the admission queue.
Each live job has its own lock acting as its mailbox, so its events are
processed one at a time in arrival order. A job lock may be held while
taking ``_lock``, never the other way round.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional

from app.agent.messages import ProgressMessage, ProgressType, StartMessage, StopMessage
from app.agent.transport import AgentTransport
from app.common.models import JobStatus, ScrapeParams, ScraperSettings, utc_now
from app.common.periodic import PeriodicTask
from app.config import Settings, settings as default_config
from app.errors import StorageError, TransportError
from app.jobs.dispatcher import JobDispatcher
from app.jobs.models import (
    Admission,
    AdmissionOutcome,
    JobSnapshot,
    OrchestratorStatus,
    QueuedRequest,
    ScrapeJob,
)
from app.logging_utils import log_event, set_core_verbosity
from app.sink.client import ExternalSink
from app.storage.engine import StorageEngine
from app.storage.models import HistoryEntry

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Job timed out due to inactivity"

JobListener = Callable[[JobSnapshot], None]


class JobOrchestrator(JobDispatcher):
    def __init__(
        self,
        storage: StorageEngine,
        transport: AgentTransport,
        sink: ExternalSink,
        config: Settings = default_config,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._storage = storage
        self._transport = transport
        self._sink = sink
        self._clock = clock
        self._settings = ScraperSettings.from_config(config)
        self._stale_after = timedelta(minutes=config.stale_job_minutes)

        self._running: Dict[str, ScrapeJob] = {}
        self._queue: Deque[QueuedRequest] = deque()
        self._job_locks: Dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()
        self._listeners: List[JobListener] = []
        self._watchdog = PeriodicTask(
            "stale_job_watchdog", config.watchdog_interval_seconds, self.check_stale_jobs
        )

    @property
    def settings(self) -> ScraperSettings:
        return self._settings

    async def start(self) -> None:
        await self.apply_settings(await self._storage.get_settings())
        await self._watchdog.start()

    async def stop(self) -> None:
        await self._watchdog.stop()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def submit(self, context_id: str, params: ScrapeParams) -> Admission:
        async with self._lock:
            if context_id in self._running:
                return self._rejected(context_id, "Scraping already active in this context")
            if any(q.context_id == context_id for q in self._queue):
                return self._rejected(context_id, "Scrape request already queued for this context")

            if len(self._running) < self._settings.max_concurrent_scrapes:
                try:
                    job = await self._start_job_locked(context_id, params)
                except TransportError as e:
                    return self._rejected(context_id, str(e))
                return Admission(outcome=AdmissionOutcome.ADMITTED, job_id=job.id)

            self._queue.append(
                QueuedRequest(context_id=context_id, params=params, queued_at=self._clock())
            )
            position = len(self._queue)

        log_event(logger, logging.INFO, "scrape_queued", context_id=context_id, position=position)
        return Admission(outcome=AdmissionOutcome.QUEUED, position=position)

    def _rejected(self, context_id: str, reason: str) -> Admission:
        log_event(logger, logging.WARNING, "scrape_rejected", context_id=context_id, reason=reason)
        return Admission(outcome=AdmissionOutcome.REJECTED, reason=reason)

    async def _start_job_locked(self, context_id: str, params: ScrapeParams) -> ScrapeJob:
        """Register a running job and signal its agent. Caller holds ``_lock``."""
        page_limit = min(params.page_limit, self._settings.max_pages_per_scrape)
        params = params.model_copy(update={"page_limit": page_limit})
        now = self._clock()
        job = ScrapeJob(
            context_id=context_id,
            params=params,
            status=JobStatus.RUNNING,
            started_at=now,
            last_update=now,
        )
        self._running[context_id] = job
        self._job_locks[job.id] = asyncio.Lock()

        start = StartMessage(
            job_id=job.id,
            title=params.title,
            location=params.location,
            page_limit=params.page_limit,
            delay_between_pages_ms=self._settings.delay_between_pages_ms,
            delay_between_jobs_ms=self._settings.delay_between_jobs_ms,
            rate_limit_delay_ms=self._settings.rate_limit_delay_ms,
            max_retries=self._settings.max_retries,
        )
        try:
            await self._transport.send(context_id, start)
        except TransportError as e:
            del self._running[context_id]
            del self._job_locks[job.id]
            log_event(
                logger,
                logging.ERROR,
                "scrape_start_failed",
                context_id=context_id,
                job_id=job.id,
                error=str(e),
            )
            raise

        log_event(
            logger,
            logging.INFO,
            "scrape_started",
            context_id=context_id,
            job_id=job.id,
            title=params.title,
            location=params.location,
            page_limit=params.page_limit,
        )
        await self._record_history(job)
        self._notify(job)
        return job

    async def _drain_queue_locked(self) -> None:
        while self._queue and len(self._running) < self._settings.max_concurrent_scrapes:
            request = self._queue.popleft()
            try:
                await self._start_job_locked(request.context_id, request.params)
            except TransportError:
                continue

    # ------------------------------------------------------------------
    # Progress ingestion
    # ------------------------------------------------------------------

    async def report(self, context_id: str, event: ProgressMessage) -> bool:
        job = self._running.get(context_id)
        lock = self._job_locks.get(job.id) if job else None
        if job is None or lock is None:
            logger.debug("Dropping %s event for idle context %s", event.type.value, context_id)
            return False

        async with lock:
            if job.status.is_terminal:
                logger.debug("Dropping %s event for finished job %s", event.type.value, job.id)
                return False

            now = self._clock()
            job.touch(now)
            percent = event.effective_percent
            if percent is not None:
                job.progress = percent

            if event.type == ProgressType.INFO:
                if event.message:
                    job.message = event.message
                if event.records:
                    job.results.extend(event.records)
            elif event.type == ProgressType.ERROR:
                job.add_error(event.message or "Unknown extraction error", now)
                log_event(
                    logger,
                    logging.WARNING,
                    "scrape_partial_failure",
                    job_id=job.id,
                    error=event.message,
                )
            else:
                if event.records is not None:
                    job.results = list(event.records)
                job.message = event.message or job.message
                await self._finish_locked(job, JobStatus.COMPLETED)
                return True

        self._notify(job)
        return True

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def cancel(self, context_id: str) -> bool:
        job = self._running.get(context_id)
        lock = self._job_locks.get(job.id) if job else None
        if job is None or lock is None:
            return await self._dequeue(context_id)

        async with lock:
            if job.status.is_terminal:
                return False
            await self._signal_stop(job)
            await self._finish_locked(job, JobStatus.CANCELLED)
        return True

    async def _dequeue(self, context_id: str) -> bool:
        async with self._lock:
            for request in self._queue:
                if request.context_id == context_id:
                    self._queue.remove(request)
                    log_event(logger, logging.INFO, "scrape_dequeued", context_id=context_id)
                    return True
        return False

    async def context_closed(self, context_id: str) -> None:
        """The originating context went away: cancel its work and forget its agent."""
        await self.cancel(context_id)
        await self._transport.unregister(context_id)

    async def check_stale_jobs(self, now: Optional[datetime] = None) -> List[str]:
        """Force ``timeout`` on running jobs with no update within the stale window."""
        now = now or self._clock()
        timed_out = []
        for job in list(self._running.values()):
            if now - job.last_update <= self._stale_after:
                continue
            lock = self._job_locks.get(job.id)
            if lock is None:
                continue
            async with lock:
                if job.status.is_terminal or now - job.last_update <= self._stale_after:
                    continue
                log_event(
                    logger,
                    logging.WARNING,
                    "stale_job_detected",
                    context_id=job.context_id,
                    job_id=job.id,
                    last_update=job.last_update,
                )
                await self._signal_stop(job)
                await self._finish_locked(job, JobStatus.TIMEOUT, error=TIMEOUT_MESSAGE, now=now)
                timed_out.append(job.id)
        return timed_out

    async def _signal_stop(self, job: ScrapeJob) -> None:
        try:
            await self._transport.send(job.context_id, StopMessage())
        except TransportError as e:
            log_event(logger, logging.WARNING, "stop_signal_failed", job_id=job.id, error=str(e))

    async def _finish_locked(
        self,
        job: ScrapeJob,
        status: JobStatus,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Terminal transition. Caller holds the job's lock; runs once per job."""
        now = now or self._clock()
        job.status = status
        job.ended_at = now
        if error:
            job.add_error(error, now)
        if status == JobStatus.COMPLETED:
            job.progress = 100.0

        session = job.to_session()
        try:
            await self._storage.save_session(session)
        except StorageError as e:
            log_event(
                logger,
                logging.ERROR,
                "session_persist_failed",
                job_id=job.id,
                results_lost=len(job.results),
                error=str(e),
            )

        if status == JobStatus.COMPLETED:
            await self._sink.deliver(session, self._settings)

        log_event(
            logger,
            logging.INFO,
            "scrape_finished",
            context_id=job.context_id,
            job_id=job.id,
            status=status.value,
            results=len(job.results),
            errors=len(job.errors),
        )
        await self._record_history(job)
        self._notify(job)
        await self._release(job)

    async def _release(self, job: ScrapeJob) -> None:
        async with self._lock:
            if self._running.get(job.context_id) is job:
                del self._running[job.context_id]
            self._job_locks.pop(job.id, None)
            await self._drain_queue_locked()

    # ------------------------------------------------------------------
    # Settings and observers
    # ------------------------------------------------------------------

    async def apply_settings(self, new_settings: ScraperSettings) -> None:
        """Adopt new runtime settings; a raised ceiling admits queued requests."""
        self._settings = new_settings
        set_core_verbosity(new_settings.enable_logging)
        async with self._lock:
            await self._drain_queue_locked()

    async def update_settings(self, partial: dict) -> ScraperSettings:
        updated = await self._storage.update_settings(partial)
        await self.apply_settings(updated)
        return updated

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    def _notify(self, job: ScrapeJob) -> None:
        snapshot = job.snapshot()
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Job listener failed for job %s", job.id)

    async def _record_history(self, job: ScrapeJob) -> None:
        entry = HistoryEntry(
            id=job.id,
            params=job.params,
            start_time=job.started_at,
            status=job.status,
            end_time=job.ended_at,
            result_count=len(job.results) if job.status.is_terminal else None,
        )
        try:
            await self._storage.record_history(entry)
        except StorageError as e:
            log_event(logger, logging.WARNING, "history_write_failed", job_id=job.id, error=str(e))

    def get_job(self, context_id: str) -> Optional[JobSnapshot]:
        job = self._running.get(context_id)
        return job.snapshot() if job else None

    def running_jobs(self) -> List[JobSnapshot]:
        return [job.snapshot() for job in self._running.values()]

    def queued_requests(self) -> List[QueuedRequest]:
        return list(self._queue)

    def list_jobs(self) -> Dict[str, list]:
        """Live job snapshots and queued requests, each in admission order."""
        return {"running": self.running_jobs(), "queued": self.queued_requests()}

    def status(self) -> OrchestratorStatus:
        return OrchestratorStatus(running_count=len(self._running), queue_length=len(self._queue))
