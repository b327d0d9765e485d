"""Bounded session storage with a secondary index, quota eviction and retention.

Persisted layout (one backend key each):

* ``settings``            runtime ScraperSettings
* ``session_index``       IndexEntry list, newest first; the source of truth
                          for which sessions exist
* ``session:<id>``        one SessionRecord per index entry
* ``storage_stats``       cached StorageStats
* ``scrape_history``      recent job starts/ends
* ``schema_version``      layout version, drives legacy migration

Every read-modify-write of the index, stats, history or settings runs under
one asyncio lock so concurrent events cannot lose updates.
"""

import asyncio
import logging
import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from app.common.models import JobStatus, ResultRecord, ScrapeParams, ScraperSettings, utc_now
from app.common.periodic import PeriodicTask
from app.config import Settings, settings as default_config
from app.errors import QuotaExceededError, StorageError
from app.logging_utils import log_event
from app.storage.backend import StorageBackend, encode_value, entry_size
from app.storage.export import build_export, check_format
from app.storage.models import (
    Backup,
    ExportResult,
    HistoryEntry,
    IndexEntry,
    ResultFilters,
    SaveResult,
    SearchHit,
    SearchResponse,
    SessionFilters,
    SessionPage,
    SessionRecord,
    SortKey,
    StorageStats,
)
from app.storage.normalize import TextNormalizer, canonicalize_whitespace, normalize_session, parse_date

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"
INDEX_KEY = "session_index"
STATS_KEY = "storage_stats"
HISTORY_KEY = "scrape_history"
SCHEMA_KEY = "schema_version"
SESSION_PREFIX = "session:"
LEGACY_PREFIX = "linkedin_jobs_"

SCHEMA_VERSION = 2
BACKUP_VERSION = "1.0"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


class StorageEngine:
    """Owns session records, their index, aggregate stats and eviction policy."""

    def __init__(
        self,
        backend: StorageBackend,
        config: Settings = default_config,
        text_normalizer: TextNormalizer = canonicalize_whitespace,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._backend = backend
        self._config = config
        self._text_normalizer = text_normalizer
        self._clock = clock
        self._lock = asyncio.Lock()
        self._stats_dirty = True
        self._retention = PeriodicTask(
            "retention_sweep", config.retention_interval_seconds, self.sweep_expired
        )

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create missing top-level keys and run the legacy migration once."""
        async with self._lock:
            existing = await self._backend.get_many(
                [INDEX_KEY, HISTORY_KEY, STATS_KEY, SCHEMA_KEY]
            )
            updates: Dict[str, Any] = {}
            if INDEX_KEY not in existing:
                updates[INDEX_KEY] = []
            if HISTORY_KEY not in existing:
                updates[HISTORY_KEY] = []
            if STATS_KEY not in existing:
                updates[STATS_KEY] = StorageStats(computed_at=self._clock()).model_dump(mode="json")
            if updates:
                await self._backend.set(updates)

        if (existing.get(SCHEMA_KEY) or 0) < SCHEMA_VERSION:
            migrated = await self.migrate_legacy_data()
            await self._backend.set({SCHEMA_KEY: SCHEMA_VERSION})
            log_event(
                logger,
                logging.INFO,
                "schema_upgraded",
                version=SCHEMA_VERSION,
                migrated_sessions=migrated,
            )

    async def start(self) -> None:
        await self._retention.start()

    async def stop(self) -> None:
        await self._retention.stop()

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_settings(self) -> ScraperSettings:
        stored = await self._backend.get(SETTINGS_KEY) or {}
        merged = ScraperSettings.from_config(self._config).model_dump()
        merged.update(stored)
        return ScraperSettings.model_validate(merged)

    async def update_settings(self, partial: Dict[str, Any]) -> ScraperSettings:
        """Merge ``partial`` onto the stored settings. Unknown keys are ignored."""
        async with self._lock:
            current = await self.get_settings()
            known = {k: v for k, v in partial.items() if k in ScraperSettings.model_fields}
            updated = ScraperSettings.model_validate({**current.model_dump(), **known})
            await self._backend.set({SETTINGS_KEY: updated.model_dump(mode="json")})
        log_event(logger, logging.INFO, "settings_updated", keys=sorted(known))
        return updated

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def save_session(self, record: SessionRecord) -> SaveResult:
        normalized = normalize_session(record, self._text_normalizer)
        payload = normalized.model_dump(mode="json")
        byte_size = len(encode_value(payload).encode("utf-8"))
        key = session_key(normalized.id)

        async with self._lock:
            await self._enforce_quota_locked()

            previous = await self._backend.get(key)
            await self._backend.set({key: payload})

            index = await self._load_index()
            entry = IndexEntry.for_session(normalized, byte_size)
            position = next((i for i, e in enumerate(index) if e.id == entry.id), None)
            if position is None:
                index.insert(0, entry)
            else:
                index[position] = entry

            index, trimmed = self._trim_index(index)
            try:
                await self._write_index(index)
            except StorageError:
                if previous is None:
                    await self._backend.remove([key])
                else:
                    await self._backend.set({key: previous})
                raise

            if trimmed:
                await self._backend.remove([session_key(e.id) for e in trimmed])
                log_event(
                    logger,
                    logging.INFO,
                    "index_trimmed",
                    removed=len(trimmed),
                    cap=self._config.max_index_entries,
                )
            self._stats_dirty = True

        log_event(
            logger,
            logging.INFO,
            "session_saved",
            session_id=normalized.id,
            results=len(normalized.results),
            byte_size=byte_size,
            status=normalized.status.value,
        )
        return SaveResult(session_id=normalized.id, byte_size=byte_size)

    def _trim_index(self, index: List[IndexEntry]):
        cap = self._config.max_index_entries
        if len(index) <= cap:
            return index, []
        newest_first = sorted(index, key=lambda e: e.timestamp, reverse=True)
        trimmed = newest_first[cap:]
        doomed = {e.id for e in trimmed}
        return [e for e in index if e.id not in doomed], trimmed

    async def _enforce_quota_locked(self) -> None:
        used = await self._backend.bytes_in_use()
        quota = self._backend.quota_bytes
        if quota <= 0 or used <= quota * self._config.quota_eviction_threshold:
            return

        index = await self._load_index()
        count = math.floor(len(index) * self._config.quota_eviction_fraction)
        log_event(
            logger,
            logging.WARNING,
            "storage_quota_pressure",
            bytes_in_use=used,
            quota=quota,
            usage_percent=round(used / quota * 100, 2),
            evicting=count,
        )
        if count > 0:
            await self._evict_locked(count)

    # ------------------------------------------------------------------
    # Eviction, retention, deletion
    # ------------------------------------------------------------------

    async def evict_oldest(self, count: int) -> List[str]:
        async with self._lock:
            return await self._evict_locked(count)

    async def _evict_locked(self, count: int) -> List[str]:
        index = await self._load_index()
        oldest = sorted(index, key=lambda e: e.timestamp)[:count]
        ids = [e.id for e in oldest]
        await self._delete_locked(ids, index)
        if ids:
            log_event(logger, logging.INFO, "sessions_evicted", count=len(ids))
        return ids

    async def _delete_locked(self, ids: List[str], index: Optional[List[IndexEntry]] = None) -> None:
        if not ids:
            return
        if index is None:
            index = await self._load_index()
        doomed = set(ids)
        await self._backend.remove([session_key(i) for i in ids])
        remaining = [e for e in index if e.id not in doomed]
        await self._write_index(remaining)
        await self._recompute_stats_locked(remaining)

    async def sweep_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Delete every session that started before the retention window."""
        now = now or self._clock()
        current = await self.get_settings()
        cutoff = now - timedelta(days=current.data_retention_days)
        async with self._lock:
            index = await self._load_index()
            expired = [e.id for e in index if e.timestamp < cutoff]
            await self._delete_locked(expired, index)
        if expired:
            log_event(
                logger,
                logging.INFO,
                "retention_sweep",
                removed=len(expired),
                retention_days=current.data_retention_days,
            )
        return expired

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            index = await self._load_index()
            if not any(e.id == session_id for e in index):
                return False
            await self._delete_locked([session_id], index)
        return True

    async def delete_sessions(
        self,
        filters: Optional[SessionFilters] = None,
        delete_all: bool = False,
    ) -> int:
        async with self._lock:
            index = await self._load_index()
            if delete_all:
                orphans = await self._backend.keys(SESSION_PREFIX)
                await self._backend.remove(orphans)
                await self._backend.set({INDEX_KEY: [], HISTORY_KEY: []})
                await self._recompute_stats_locked([])
                deleted = len(index)
            else:
                filters = filters or SessionFilters()
                ids = [e.id for e in index if filters.matches(e)]
                await self._delete_locked(ids, index)
                deleted = len(ids)
        log_event(logger, logging.INFO, "sessions_deleted", count=deleted, all=delete_all)
        return deleted

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def _load_index(self) -> List[IndexEntry]:
        raw = await self._backend.get(INDEX_KEY) or []
        return [IndexEntry.model_validate(item) for item in raw]

    async def _write_index(self, index: List[IndexEntry]) -> None:
        await self._backend.set({INDEX_KEY: [e.model_dump(mode="json") for e in index]})

    async def get_index(self) -> List[IndexEntry]:
        return await self._load_index()

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        raw = await self._backend.get(session_key(session_id))
        if raw is None:
            return None
        return SessionRecord.model_validate(raw)

    async def get_sessions(self, session_ids: List[str]) -> List[SessionRecord]:
        """Load sessions in the given order, skipping ids with no record."""
        found = await self._backend.get_many([session_key(i) for i in session_ids])
        return [
            SessionRecord.model_validate(found[session_key(i)])
            for i in session_ids
            if session_key(i) in found
        ]

    async def list_sessions(
        self,
        filters: Optional[SessionFilters] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> SessionPage:
        filters = filters or SessionFilters()
        index = [e for e in await self._load_index() if filters.matches(e)]
        index.sort(key=lambda e: e.timestamp, reverse=True)
        return SessionPage(
            entries=index[offset: offset + limit],
            total=len(index),
            has_more=offset + limit < len(index),
            next_offset=offset + limit,
        )

    async def search(
        self,
        query: str = "",
        filters: Optional[ResultFilters] = None,
        sort_by: SortKey = SortKey.NONE,
        limit: int = 100,
    ) -> SearchResponse:
        filters = filters or ResultFilters()
        page = await self.list_sessions(limit=self._config.search_session_limit)
        sessions = await self.get_sessions([e.id for e in page.entries])

        hits = [
            SearchHit(record=r, session_id=s.id, session_timestamp=s.start_time)
            for s in sessions
            for r in s.results
        ]

        if query:
            term = query.lower()
            hits = [h for h in hits if _matches_text(h.record, term)]

        hits = _apply_result_filters(hits, filters, self._clock())
        hits = _sort_hits(hits, sort_by)[:limit]
        return SearchResponse(results=hits, total=len(hits), query=query, filters=filters)

    async def export(
        self,
        fmt: str,
        filters: Optional[SessionFilters] = None,
        include_raw_sessions: bool = True,
    ) -> ExportResult:
        fmt = check_format(fmt)
        page = await self.list_sessions(filters, limit=self._config.export_session_limit)
        sessions = await self.get_sessions([e.id for e in page.entries])
        result = build_export(fmt, sessions, include_raw_sessions, self._clock())
        log_event(
            logger,
            logging.INFO,
            "data_exported",
            format=fmt,
            sessions=len(sessions),
            filename=result.filename,
        )
        return result

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_stats(self) -> StorageStats:
        raw = await self._backend.get(STATS_KEY)
        stats = StorageStats.model_validate(raw) if raw else None
        max_age = timedelta(seconds=self._config.stats_max_age_seconds)
        if stats is None or self._stats_dirty or self._clock() - stats.computed_at > max_age:
            async with self._lock:
                stats = await self._recompute_stats_locked()
        return stats

    async def _recompute_stats_locked(self, index: Optional[List[IndexEntry]] = None) -> StorageStats:
        if index is None:
            index = await self._load_index()
        stats = StorageStats(
            total_results=sum(e.result_count for e in index),
            total_sessions=len(index),
            bytes_used=sum(e.byte_size for e in index),
            computed_at=self._clock(),
        )
        await self._backend.set({STATS_KEY: stats.model_dump(mode="json")})
        self._stats_dirty = False
        return stats

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def record_history(self, entry: HistoryEntry) -> None:
        """Insert or update a history entry, keeping the newest N."""
        async with self._lock:
            history = await self._backend.get(HISTORY_KEY) or []
            payload = entry.model_dump(mode="json")
            for i, item in enumerate(history):
                if item.get("id") == entry.id:
                    history[i] = {**item, **{k: v for k, v in payload.items() if v is not None}}
                    break
            else:
                history.insert(0, payload)
            await self._backend.set({HISTORY_KEY: history[: self._config.history_max_entries]})

    async def get_history(self) -> List[HistoryEntry]:
        history = await self._backend.get(HISTORY_KEY) or []
        return [HistoryEntry.model_validate(item) for item in history]

    # ------------------------------------------------------------------
    # Legacy migration
    # ------------------------------------------------------------------

    async def migrate_legacy_data(self) -> int:
        """Wrap every legacy-format key in a SessionRecord and remove it.

        A legacy key is removed only after its session was saved, so a failed
        conversion is retried on the next run and a converted one never is.
        """
        legacy_keys = await self._backend.keys(LEGACY_PREFIX)
        if not legacy_keys:
            return 0

        log_event(logger, logging.INFO, "migration_started", legacy_keys=len(legacy_keys))
        migrated = 0
        for key in legacy_keys:
            data = await self._backend.get(key)
            try:
                record = self._legacy_to_session(data)
                await self.save_session(record)
            except (ValidationError, StorageError) as e:
                log_event(
                    logger,
                    logging.ERROR,
                    "migration_failed",
                    key=key,
                    error=f"{type(e).__name__}: {e}",
                )
                continue
            await self._backend.remove([key])
            migrated += 1

        log_event(logger, logging.INFO, "migration_completed", migrated=migrated)
        return migrated

    def _legacy_to_session(self, data: Any) -> SessionRecord:
        now = self._clock()
        if isinstance(data, list):
            results, params, started, ended = data, {}, None, None
        elif isinstance(data, dict):
            results = data.get("jobs") or data.get("results") or []
            params = data.get("searchParams") or data.get("params") or {}
            started = data.get("timestamp") or data.get("start_time") or data.get("startTime")
            ended = data.get("end_time") or data.get("endTime")
        else:
            results, params, started, ended = [], {}, None, None

        start_time = _coerce_timestamp(started) or now
        return SessionRecord(
            id=f"migrated_{uuid.uuid4().hex}",
            params=ScrapeParams.model_validate(params),
            start_time=start_time,
            end_time=_coerce_timestamp(ended) or start_time,
            status=JobStatus.COMPLETED,
            results=[ResultRecord.model_validate(r) for r in results if isinstance(r, dict)],
            migrated=True,
        )

    # ------------------------------------------------------------------
    # Backup / restore
    # ------------------------------------------------------------------

    async def create_backup(self) -> Backup:
        return Backup(
            version=BACKUP_VERSION,
            timestamp=self._clock(),
            data=await self._backend.get_all(),
        )

    async def restore_backup(self, payload: Dict[str, Any]) -> int:
        """Replace all stored data with a backup. Returns the key count restored."""
        backup = Backup.model_validate(payload)
        required = sum(entry_size(k, encode_value(v)) for k, v in backup.data.items())
        if required > self._backend.quota_bytes:
            raise QuotaExceededError(
                f"Backup of {required} bytes exceeds quota ({self._backend.quota_bytes} bytes)"
            )
        async with self._lock:
            await self._backend.clear()
            await self._backend.set(backup.data)
            self._stats_dirty = True
        await self.initialize()
        await self.get_stats()
        log_event(logger, logging.INFO, "backup_restored", keys=len(backup.data))
        return len(backup.data)


def _coerce_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Millisecond epochs are what older clients stored.
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        return parse_date(value)
    return None


def _matches_text(record: ResultRecord, term: str) -> bool:
    for value in (record.job_title, record.company_name, record.job_description, record.location):
        if value and term in value.lower():
            return True
    return False


def _contains(value: Optional[str], term: str) -> bool:
    return bool(value) and term.lower() in value.lower()


def _posted_at(record: ResultRecord) -> Optional[datetime]:
    if not record.date_posted:
        return None
    return parse_date(record.date_posted)


def _apply_result_filters(hits: List[SearchHit], filters: ResultFilters, now: datetime) -> List[SearchHit]:
    if filters.company:
        hits = [h for h in hits if _contains(h.record.company_name, filters.company)]
    if filters.location:
        hits = [h for h in hits if _contains(h.record.location, filters.location)]
    if filters.seniority_level:
        hits = [h for h in hits if h.record.seniority_level == filters.seniority_level]
    if filters.employment_type:
        hits = [h for h in hits if h.record.employment_type == filters.employment_type]
    # 0 means no date filter.
    if filters.posted_within_days:
        cutoff = now - timedelta(days=filters.posted_within_days)
        kept = []
        for hit in hits:
            posted = _posted_at(hit.record)
            if posted is not None and posted >= cutoff:
                kept.append(hit)
        hits = kept
    return hits


def _sort_hits(hits: List[SearchHit], sort_by: SortKey) -> List[SearchHit]:
    if sort_by == SortKey.DATE:
        return sorted(hits, key=lambda h: _posted_at(h.record) or _EPOCH, reverse=True)
    if sort_by == SortKey.COMPANY:
        return sorted(hits, key=lambda h: (h.record.company_name or "").casefold())
    if sort_by == SortKey.TITLE:
        return sorted(hits, key=lambda h: (h.record.job_title or "").casefold())
    if sort_by == SortKey.SESSION_DATE:
        return sorted(hits, key=lambda h: h.session_timestamp, reverse=True)
    return list(hits)
