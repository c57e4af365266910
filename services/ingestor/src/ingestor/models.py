from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

Provider = Literal["indeed", "wellfound"]
PROVIDERS: tuple[str, ...] = ("indeed", "wellfound")
TriggerKind = Literal["manual", "scheduled"]


class ExternalJobRecord(BaseModel):
    """Canonical, storage-ready job posting.

    ``(source, external_id)`` is the identity of a posting. Every other field is
    optional because providers routinely omit them.
    """

    source: Provider
    external_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    company_name: str | None = None
    company_url: str | None = None
    company_logo_url: str | None = None
    location: str | None = None
    is_remote: bool | None = None
    job_type: str | None = None
    salary_min: int | None = None
    salary_max: int | None = None
    salary_currency: str | None = None
    compensation_text: str | None = None
    experience_level: str | None = None
    category: str | None = None
    skills: list[str] = Field(default_factory=list)
    description: str | None = None
    description_html: str | None = None
    apply_url: str | None = None
    job_url: str | None = None
    posted_at: datetime | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class StoredExternalJob(ExternalJobRecord):
    created_at: str
    updated_at: str


class RunStage(str, Enum):
    PENDING = "pending"
    RATE_CHECKED = "rate_checked"
    FETCHED = "fetched"
    NORMALIZED = "normalized"
    DEDUPED = "deduped"
    PERSISTED = "persisted"
    DONE = "done"
    FAILED = "failed"


class UpsertFailure(BaseModel):
    key: str
    error: str


class UpsertSummary(BaseModel):
    created: int = 0
    existing: int = 0
    failed: int = 0
    failures: list[UpsertFailure] = Field(default_factory=list)


class IngestionRunResult(BaseModel):
    run_id: str
    source: str
    trigger: TriggerKind
    status: Literal["running", "done", "failed"] = "running"
    stage: RunStage = RunStage.PENDING
    started_at: str
    finished_at: str | None = None
    fetched_count: int = 0
    deduped_count: int = 0
    created_count: int = 0
    existing_count: int = 0
    failed_count: int = 0
    failures: list[UpsertFailure] = Field(default_factory=list)
    error: str | None = None

    @computed_field
    @property
    def skipped_count(self) -> int:
        return self.existing_count

    @computed_field
    @property
    def duplicates_dropped(self) -> int:
        return self.fetched_count - self.deduped_count


class IngestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    country: str | None = None
    query: str | None = None
    from_days: str | int | None = Field(default=None, alias="fromDays")
    limit: int | None = None
    urls: list[str] | None = None
    max_rows_per_url: int | None = Field(default=None, alias="maxRowsPerUrl")

    @model_validator(mode="before")
    @classmethod
    def drop_unusable_fields(cls, data: Any) -> dict[str, Any]:
        """Keep only well-typed fields; anything else falls back to its default."""
        if not isinstance(data, dict):
            return {}
        cleaned: dict[str, Any] = {}
        for name in ("country", "query"):
            if isinstance(data.get(name), str):
                cleaned[name] = data[name]
        from_days = data.get("fromDays", data.get("from_days"))
        if isinstance(from_days, str) or _lenient_int(from_days) is not None:
            cleaned["fromDays"] = from_days if isinstance(from_days, str) else int(from_days)
        for alias, name in (("limit", "limit"), ("maxRowsPerUrl", "max_rows_per_url")):
            number = _lenient_int(data.get(alias, data.get(name)))
            if number is not None:
                cleaned[alias] = number
        urls = data.get("urls")
        if isinstance(urls, list):
            cleaned["urls"] = [url for url in urls if isinstance(url, str)]
        return cleaned


def _lenient_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return int(number)


class IngestResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    fetched: int
    created_posts: int = Field(..., alias="createdPosts")
    summary: IngestionRunResult


class CronRefreshResponse(IngestResponse):
    cleared: dict[str, Any] = Field(default_factory=dict)


class ExternalJobsResponse(BaseModel):
    jobs: list[StoredExternalJob]


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]
    ingestion: dict[str, int]
