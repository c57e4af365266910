"""Source adapters for job-aggregation providers.

Each adapter returns the provider's raw records untouched (apart from dropping
items that are not JSON objects); mapping into the canonical shape happens in
:mod:`ingestor.normalize`. Adapters never retry: a failed upstream call raises
:class:`~ingestor.errors.UpstreamFetchError` and the run is aborted.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Annotated, Any, Literal
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field

from ingestor.errors import MisconfigurationError, UpstreamFetchError

LOGGER = logging.getLogger("jobingest.ingestor.sources")

APIFY_BASE_URL = "https://api.apify.com/v2/acts"
INDEED_ACTOR = "borderline~indeed-scraper"
WELLFOUND_ACTOR = "clearpath~wellfound-api-job-scraper"
ERROR_BODY_PREVIEW = 500

RawSourceRecord = dict[str, Any]


class IndeedQuery(BaseModel):
    provider: Literal["indeed"] = "indeed"
    country: str = "us"
    query: str = "Growth Marketing"
    from_days: str = "3"
    urls: list[str] = Field(default_factory=list)
    max_rows_per_url: int | None = Field(default=None, ge=1)


class WellfoundQuery(BaseModel):
    provider: Literal["wellfound"] = "wellfound"
    query: str | None = None
    locations: list[str] = Field(default_factory=list)
    remote_only: bool = False
    page_limit: int = Field(default=1, ge=1)


SourceQuery = Annotated[IndeedQuery | WellfoundQuery, Field(discriminator="provider")]


class SourceAdapter(ABC):
    provider: str

    @abstractmethod
    def ensure_configured(self) -> None:
        """Raise MisconfigurationError when the adapter cannot reach its provider."""
        raise NotImplementedError

    @abstractmethod
    def fetch(self, query: Any, limit: int) -> list[RawSourceRecord]:
        """Return at most ``limit`` raw records; an empty result is not an error."""
        raise NotImplementedError


class _Deadline:
    def __init__(self, seconds: float) -> None:
        self._expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return self._expires_at - time.monotonic()


class ApifyActorSource(SourceAdapter):
    """Runs an Apify actor synchronously and returns its dataset items."""

    actor: str

    def __init__(
        self,
        token: str | None,
        *,
        timeout_seconds: float = 60.0,
        deadline_seconds: float = 180.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._token = (token or "").strip() or None
        self._timeout = timeout_seconds
        self._deadline_seconds = deadline_seconds
        self._transport = transport

    def ensure_configured(self) -> None:
        if not self._token:
            raise MisconfigurationError("Missing APIFY_TOKEN")

    def endpoint(self) -> str:
        return f"{APIFY_BASE_URL}/{self.actor}/run-sync-get-dataset-items"

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self._timeout,
            transport=self._transport,
            headers={"Content-Type": "application/json"},
        )

    def _run_actor(
        self,
        client: httpx.Client,
        body: dict[str, Any],
        deadline: _Deadline,
    ) -> list[RawSourceRecord]:
        remaining = deadline.remaining()
        if remaining <= 0:
            raise self._fetch_failed(
                f"{self.provider} fetch exceeded {self._deadline_seconds:g}s deadline"
            )
        url = f"{self.endpoint()}?token={quote(self._token or '', safe='')}"
        try:
            response = client.post(url, json=body, timeout=min(self._timeout, remaining))
        except httpx.TimeoutException as exc:
            raise self._fetch_failed(f"{self.provider} fetch timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise self._fetch_failed(f"{self.provider} fetch failed: {exc}") from exc

        if not response.is_success:
            text = response.text[:ERROR_BODY_PREVIEW]
            detail = f" - {text}" if text else ""
            raise self._fetch_failed(
                f"{self.provider.capitalize()} fetch failed: {response.status_code}{detail}",
                status=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise self._fetch_failed(f"{self.provider} returned malformed JSON") from exc
        if not isinstance(payload, list):
            raise self._fetch_failed(f"{self.provider} payload must be a JSON list")
        return [item for item in payload if isinstance(item, dict)]

    def _fetch_failed(self, message: str, *, status: int | None = None) -> UpstreamFetchError:
        LOGGER.warning(
            json.dumps(
                {
                    "event": "ingest_fetch_failed",
                    "provider": self.provider,
                    "actor": self.actor,
                    "status": status,
                    "error": message,
                }
            )
        )
        return UpstreamFetchError(message, status=status)


class IndeedSource(ApifyActorSource):
    provider = "indeed"
    actor = INDEED_ACTOR

    def fetch(self, query: IndeedQuery, limit: int) -> list[RawSourceRecord]:
        self.ensure_configured()
        limit = max(limit, 0)
        if limit == 0:
            return []

        deadline = _Deadline(self._deadline_seconds)
        per_url_cap = min(query.max_rows_per_url or limit, limit)
        records: list[RawSourceRecord] = []
        with self._client() as client:
            if not query.urls:
                body = self._build_body(query, urls=[], max_rows=limit, per_url_cap=per_url_cap)
                records.extend(self._run_actor(client, body, deadline)[:limit])
                return records

            for seed_url in query.urls:
                remaining = limit - len(records)
                if remaining <= 0:
                    break
                cap = min(per_url_cap, remaining)
                body = self._build_body(query, urls=[seed_url], max_rows=cap, per_url_cap=cap)
                batch = self._run_actor(client, body, deadline)[:cap]
                LOGGER.debug(
                    "indeed seed url returned %d records (cap %d): %s", len(batch), cap, seed_url
                )
                records.extend(batch)
        return records[:limit]

    @staticmethod
    def _build_body(
        query: IndeedQuery,
        *,
        urls: list[str],
        max_rows: int,
        per_url_cap: int,
    ) -> dict[str, Any]:
        return {
            "country": query.country,
            "query": query.query,
            "fromDays": query.from_days,
            "maxRows": max_rows,
            "maxRowsPerUrl": per_url_cap,
            "urls": urls,
        }


class WellfoundSource(ApifyActorSource):
    provider = "wellfound"
    actor = WELLFOUND_ACTOR

    def fetch(self, query: WellfoundQuery, limit: int) -> list[RawSourceRecord]:
        self.ensure_configured()
        limit = max(limit, 0)
        if limit == 0:
            return []
        body: dict[str, Any] = {"pageLimit": query.page_limit, "remoteOnly": query.remote_only}
        if query.query:
            body["query"] = query.query
        if query.locations:
            body["locations"] = query.locations
        with self._client() as client:
            items = self._run_actor(client, body, _Deadline(self._deadline_seconds))
        return items[:limit]


def build_source_adapters(
    token: str | None,
    *,
    timeout_seconds: float = 60.0,
    deadline_seconds: float = 180.0,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, SourceAdapter]:
    options: dict[str, Any] = {
        "timeout_seconds": timeout_seconds,
        "deadline_seconds": deadline_seconds,
        "transport": transport,
    }
    return {
        IndeedSource.provider: IndeedSource(token, **options),
        WellfoundSource.provider: WellfoundSource(token, **options),
    }
