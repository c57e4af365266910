from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping

from pydantic import BaseModel, Field

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "job-ingest", "ingestor.sqlite3")
DEFAULT_SEED_URLS = [
    "https://www.indeed.com/jobs?q=Growth+Marketing+Manager&l=Remote&fromage=7",
]
TRUTHY = {"1", "true", "yes", "on"}


class IngestorSettings(BaseModel):
    database_path: str = DEFAULT_DB_PATH
    ingest_secret: str | None = None
    require_secret: bool = False
    apify_token: str | None = None
    max_limit: int = Field(default=50, ge=1)
    rate_capacity: int = Field(default=3, ge=1)
    rate_refill_ms: int = Field(default=60_000, ge=1)
    fetch_timeout_seconds: float = Field(default=60.0, gt=0)
    fetch_deadline_seconds: float = Field(default=180.0, gt=0)
    seed_urls: list[str] = Field(default_factory=lambda: list(DEFAULT_SEED_URLS))
    cron_query: str = "Growth Marketing"
    cron_country: str = "us"
    cron_from_days: str = "3"
    cron_limit: int = Field(default=50, ge=1)
    log_level: str = "INFO"


def parse_seed_urls(raw: str) -> list[str]:
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        raise ValueError("INGEST_SEED_URLS must be a JSON list of strings.")
    return [str(url).strip() for url in parsed if isinstance(url, str) and url.strip()]


def load_settings(environ: Mapping[str, str] | None = None) -> IngestorSettings:
    env = os.environ if environ is None else environ

    def read(name: str) -> str | None:
        value = env.get(name, "").strip()
        return value or None

    values: dict[str, object] = {
        "database_path": read("INGESTOR_DB_PATH"),
        "ingest_secret": read("INGEST_SECRET"),
        "apify_token": read("APIFY_TOKEN"),
        "max_limit": read("INGEST_MAX_LIMIT"),
        "rate_capacity": read("INGEST_RATE_CAPACITY"),
        "rate_refill_ms": read("INGEST_RATE_REFILL_MS"),
        "fetch_timeout_seconds": read("INGEST_FETCH_TIMEOUT_SECONDS"),
        "fetch_deadline_seconds": read("INGEST_FETCH_DEADLINE_SECONDS"),
        "cron_query": read("CRON_QUERY"),
        "cron_country": read("CRON_COUNTRY"),
        "cron_from_days": read("CRON_FROM_DAYS"),
        "cron_limit": read("CRON_LIMIT"),
        "log_level": read("INGESTOR_LOG_LEVEL"),
    }
    require_secret = read("INGEST_REQUIRE_SECRET")
    if require_secret is not None:
        values["require_secret"] = require_secret.lower() in TRUTHY
    seed_urls = read("INGEST_SEED_URLS")
    if seed_urls is not None:
        values["seed_urls"] = parse_seed_urls(seed_urls)
    return IngestorSettings(**{key: value for key, value in values.items() if value is not None})
