"""Map provider-specific raw records into :class:`ExternalJobRecord`.

Everything here is pure: no I/O, no clock. Missing or wrongly typed optional
fields degrade to ``None`` instead of failing the record.
"""

from __future__ import annotations

import hashlib
import math
import re
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from common.utils import clean_optional, normalize_text

from ingestor.models import ExternalJobRecord

UNTITLED = "Untitled"
CONTENT_ID_PREFIX = "hash:"
SQLITE_INT_MAX = 2**63 - 1

_AMOUNT_RE = re.compile(r"(\d[\d,]*(?:\.\d+)?)\s*([kK])?(?![\w])")
_RANGE_SEPARATOR_RE = re.compile(r"\d[\d,.]*\s*[kK]?\s*(?:-|–|—|\bto\b)\s*\D{0,3}\d")
_OPEN_ENDED_RE = re.compile(
    r"\b(up to|from|starting|start at|min(?:imum)?|max(?:imum)?|at least|over|above|below|under)\b|\+",
    re.IGNORECASE,
)


def content_identity(title: str | None, company: str | None, location: str | None) -> str:
    base = "|".join(normalize_text(part or "") for part in (title, company, location))
    digest = hashlib.sha1(base.encode()).hexdigest()
    return f"{CONTENT_ID_PREFIX}{digest[:24]}"


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value <= 0 or value > SQLITE_INT_MAX:
        return None
    return int(round(value))


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    return None


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in (clean_optional(entry) for entry in value) if item]


def _identifier(value: Any) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return str(value)
    return clean_optional(value)


def parse_iso_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def parse_epoch_seconds(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return None
    try:
        return datetime.fromtimestamp(value, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def parse_compensation_text(text: str | None) -> tuple[int | None, int | None]:
    """Extract ``(min, max)`` from free-text pay only when the text is unambiguous.

    ``"$60,000 - $80,000 a year"`` gives both bounds and ``"$25 an hour"`` gives
    the same value for both. Open-ended phrasing (``"Up to $90K"``,
    ``"From $50,000"``, ``"$100k+"``) and anything with more than two amounts
    yields ``(None, None)``.
    """
    if not text:
        return None, None
    amounts: list[int] = []
    for match in _AMOUNT_RE.finditer(text):
        number = float(match.group(1).replace(",", ""))
        if match.group(2):
            number *= 1000
        amount = _as_int(number)
        if amount is None:
            return None, None
        amounts.append(amount)

    if len(amounts) == 1 and not _OPEN_ENDED_RE.search(text):
        return amounts[0], amounts[0]
    if len(amounts) == 2 and _RANGE_SEPARATOR_RE.search(text):
        low, high = sorted(amounts)
        return low, high
    return None, None


def _salary_bounds(
    salary_min: Any,
    salary_max: Any,
    compensation_text: str | None,
) -> tuple[int | None, int | None]:
    low = _as_int(salary_min)
    high = _as_int(salary_max)
    if low is None and high is None:
        return parse_compensation_text(compensation_text)
    return low, high


def _indeed_location(value: Any) -> str | None:
    if isinstance(value, Mapping):
        return clean_optional(value.get("formattedAddressShort")) or clean_optional(
            value.get("city")
        )
    return clean_optional(value)


def normalize_indeed(raw: Mapping[str, Any]) -> ExternalJobRecord:
    title = clean_optional(raw.get("title")) or UNTITLED
    company = clean_optional(raw.get("companyName"))
    location = _indeed_location(raw.get("location"))
    job_url = clean_optional(raw.get("jobUrl"))
    external_id = (
        _identifier(raw.get("jobKey")) or job_url or content_identity(title, company, location)
    )

    salary = raw.get("salary")
    if not isinstance(salary, Mapping):
        salary = {}
    compensation_text = clean_optional(salary.get("salaryText"))
    salary_min, salary_max = _salary_bounds(
        salary.get("salaryMin"), salary.get("salaryMax"), compensation_text
    )

    job_type = raw.get("jobType")
    if isinstance(job_type, list):
        job_type = ",".join(_string_list(job_type)) or None
    else:
        job_type = clean_optional(job_type)

    occupations = _string_list(raw.get("occupation"))

    return ExternalJobRecord(
        source="indeed",
        external_id=external_id,
        title=title,
        company_name=company,
        company_url=clean_optional(raw.get("companyUrl")),
        company_logo_url=clean_optional(raw.get("companyLogoUrl")),
        location=location,
        is_remote=_as_bool(raw.get("isRemote")),
        job_type=job_type,
        salary_min=salary_min,
        salary_max=salary_max,
        salary_currency=clean_optional(salary.get("salaryCurrency")),
        compensation_text=compensation_text,
        category=occupations[0] if occupations else None,
        skills=_string_list(raw.get("attributes")),
        description=_text(raw.get("descriptionText")),
        description_html=_text(raw.get("descriptionHtml")),
        apply_url=clean_optional(raw.get("applyUrl")) or job_url,
        job_url=job_url,
        posted_at=parse_iso_datetime(raw.get("datePublished")),
        raw=dict(raw),
    )


def normalize_wellfound(raw: Mapping[str, Any]) -> ExternalJobRecord:
    title = clean_optional(raw.get("title")) or UNTITLED
    company = clean_optional(raw.get("company_name"))
    locations = _string_list(raw.get("location_names"))
    location = locations[0] if locations else None
    external_id = _identifier(raw.get("id")) or content_identity(title, company, location)

    compensation = raw.get("compensation_parsed")
    base_salary = compensation.get("base_salary") if isinstance(compensation, Mapping) else None
    if not isinstance(base_salary, Mapping):
        base_salary = {}
    compensation_text = clean_optional(raw.get("compensation"))
    salary_min, salary_max = _salary_bounds(
        base_salary.get("min_value"), base_salary.get("max_value"), compensation_text
    )
    url = clean_optional(raw.get("url"))

    return ExternalJobRecord(
        source="wellfound",
        external_id=external_id,
        title=title,
        company_name=company,
        company_logo_url=clean_optional(raw.get("company_logo_url")),
        location=location,
        is_remote=_as_bool(raw.get("remote")),
        job_type=clean_optional(raw.get("job_type")),
        salary_min=salary_min,
        salary_max=salary_max,
        salary_currency=clean_optional(base_salary.get("currency")),
        compensation_text=compensation_text,
        description=_text(raw.get("description")),
        apply_url=url,
        job_url=url,
        posted_at=parse_epoch_seconds(raw.get("live_start_at")),
        raw=dict(raw),
    )


NORMALIZERS: dict[str, Callable[[Mapping[str, Any]], ExternalJobRecord]] = {
    "indeed": normalize_indeed,
    "wellfound": normalize_wellfound,
}


def normalize_record(provider: str, raw: Mapping[str, Any]) -> ExternalJobRecord:
    try:
        normalizer = NORMALIZERS[provider]
    except KeyError:
        raise ValueError(f"Unsupported provider: {provider}") from None
    return normalizer(raw)
