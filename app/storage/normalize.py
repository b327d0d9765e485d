"""Record normalization applied before a session is written.

The steps mirror what the write path promises callers:

* null or empty fields become the ``MISSING`` marker
* free-text dates are rewritten to ISO-8601 UTC when they can be parsed,
  and left untouched otherwise
* short text fields are trimmed, descriptions go through a pluggable
  text normalizer (whitespace canonicalization by default)
* results are deduplicated by ``(job_id, job_url)``, first occurrence wins
"""

import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Iterable, List, Optional

from pydantic import TypeAdapter, ValidationError

from app.common.models import ResultRecord
from app.storage.models import SessionRecord

MISSING = "N/A"

DATE_FIELDS = ("date_posted", "listing_date")
TEXT_FIELDS = (
    "job_title",
    "company_name",
    "location",
    "seniority_level",
    "employment_type",
    "job_function",
    "industries",
)

_FALLBACK_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%B %d, %Y", "%b %d, %Y", "%d %B %Y")

_datetime_adapter = TypeAdapter(datetime)

_HSPACE = re.compile(r"[ \t\f\v]+")
_NEWLINE_RUN = re.compile(r" *\n[ \n]*")

TextNormalizer = Callable[[str], str]


def canonicalize_whitespace(text: str) -> str:
    """Collapse blank runs to one space and newline runs to one newline.

    Line endings are unified to ``\\n`` and the result is stripped. This is
    canonicalization, not compression: byte sizes are computed afterwards.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _HSPACE.sub(" ", text)
    text = _NEWLINE_RUN.sub("\n", text)
    return text.strip()


def parse_date(value: str) -> Optional[datetime]:
    """Best-effort parse of a free-text date. Naive values are taken as UTC."""
    value = value.strip()
    if not value:
        return None

    parsed = None
    try:
        parsed = _datetime_adapter.validate_python(value)
    except ValidationError:
        pass

    if parsed is None:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            parsed = None

    if parsed is None:
        for fmt in _FALLBACK_DATE_FORMATS:
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def standardize_date(value: str) -> str:
    parsed = parse_date(value)
    if parsed is None:
        return value
    return parsed.isoformat()


def clean_record(
    record: ResultRecord,
    text_normalizer: TextNormalizer = canonicalize_whitespace,
) -> ResultRecord:
    data = record.model_dump()
    for key, value in data.items():
        if value is None or value == "":
            data[key] = MISSING

    for field in DATE_FIELDS:
        value = data.get(field)
        if isinstance(value, str) and value != MISSING:
            data[field] = standardize_date(value)

    for field in TEXT_FIELDS:
        value = data.get(field)
        if isinstance(value, str):
            data[field] = value.strip() or MISSING

    description = data.get("job_description")
    if isinstance(description, str) and description != MISSING:
        data["job_description"] = text_normalizer(description) or MISSING

    return ResultRecord.model_validate(data)


def deduplicate(records: Iterable[ResultRecord]) -> List[ResultRecord]:
    seen = set()
    unique = []
    for record in records:
        key = record.dedup_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


def normalize_session(
    record: SessionRecord,
    text_normalizer: TextNormalizer = canonicalize_whitespace,
) -> SessionRecord:
    """Return a normalized copy of ``record``; the input is not modified."""
    cleaned = [clean_record(r, text_normalizer) for r in record.results]
    return record.model_copy(update={"results": deduplicate(cleaned)})
