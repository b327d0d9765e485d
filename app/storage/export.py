"""Render stored sessions as JSON or CSV downloads."""

import csv
import io
import json
from datetime import datetime
from typing import List

from app.errors import UnsupportedFormatError
from app.storage.models import ExportResult, SessionRecord

RECORD_COLUMNS = [
    "job_id",
    "job_title",
    "company_name",
    "location",
    "job_url",
    "job_description",
    "seniority_level",
    "employment_type",
    "job_function",
    "industries",
    "applicants",
    "date_posted",
    "listing_date",
]
SESSION_COLUMNS = ["session_id", "search_params", "session_date"]

SUPPORTED_FORMATS = ("json", "csv")
# Declared so callers get a clear refusal instead of a silent fallback.
DECLARED_UNSUPPORTED = ("xlsx",)


def _cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _to_csv(rows: List[dict], columns: List[str]) -> str:
    if not rows:
        return ""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(columns)
    for row in rows:
        writer.writerow([_cell(row.get(column)) for column in columns])
    return buffer.getvalue()


def records_to_csv(sessions: List[SessionRecord]) -> str:
    rows = [r.model_dump(mode="json") for s in sessions for r in s.results]
    return _to_csv(rows, RECORD_COLUMNS)


def sessions_to_csv(sessions: List[SessionRecord]) -> str:
    """Flatten every result, tagging each row with its session."""
    rows = []
    for session in sessions:
        search_params = session.params.model_dump_json()
        session_date = session.start_time.isoformat()
        for record in session.results:
            row = record.model_dump(mode="json")
            row.update(
                session_id=session.id,
                search_params=search_params,
                session_date=session_date,
            )
            rows.append(row)
    return _to_csv(rows, RECORD_COLUMNS + SESSION_COLUMNS)


def check_format(fmt: str) -> str:
    """Return the normalized format name or raise ``UnsupportedFormatError``."""
    fmt = (fmt or "").lower()
    if fmt in DECLARED_UNSUPPORTED:
        raise UnsupportedFormatError(f"{fmt.upper()} export is not implemented")
    if fmt not in SUPPORTED_FORMATS:
        raise UnsupportedFormatError(f"Unsupported format: {fmt or '<empty>'}")
    return fmt


def build_export(
    fmt: str,
    sessions: List[SessionRecord],
    include_raw_sessions: bool,
    now: datetime,
) -> ExportResult:
    fmt = check_format(fmt)
    stamp = int(now.timestamp() * 1000)
    if fmt == "json":
        if include_raw_sessions:
            payload = [s.model_dump(mode="json") for s in sessions]
        else:
            payload = [r.model_dump(mode="json") for s in sessions for r in s.results]
        return ExportResult(
            content=json.dumps(payload, indent=2),
            filename=f"scraped_jobs_{stamp}.json",
            mime_type="application/json",
        )

    content = sessions_to_csv(sessions) if include_raw_sessions else records_to_csv(sessions)
    return ExportResult(
        content=content,
        filename=f"scraped_jobs_{stamp}.csv",
        mime_type="text/csv",
    )
