from __future__ import annotations

import json
import math
import sqlite3
import threading
from pathlib import Path
from typing import Any, Protocol

from common.utils import now_utc_iso

from ingestor.dedupe import identity_key
from ingestor.errors import PersistenceWriteError
from ingestor.models import ExternalJobRecord, StoredExternalJob

RECORD_COLUMNS = (
    "source",
    "external_id",
    "title",
    "company_name",
    "company_url",
    "company_logo_url",
    "location",
    "is_remote",
    "job_type",
    "salary_min",
    "salary_max",
    "salary_currency",
    "compensation_text",
    "experience_level",
    "category",
    "skills",
    "description",
    "description_html",
    "apply_url",
    "job_url",
    "posted_at",
    "raw",
)


class ExternalJobStore(Protocol):
    def upsert_by_key(self, record: ExternalJobRecord) -> bool:
        """Insert or overwrite the posting keyed by ``(source, external_id)``; True when created."""
        ...

    def count_by_source(self, source: str | None = None) -> dict[str, int]: ...


class ExternalJobRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS external_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    company_name TEXT,
                    company_url TEXT,
                    company_logo_url TEXT,
                    location TEXT,
                    is_remote INTEGER,
                    job_type TEXT,
                    salary_min INTEGER,
                    salary_max INTEGER,
                    salary_currency TEXT,
                    compensation_text TEXT,
                    experience_level TEXT,
                    category TEXT,
                    skills TEXT NOT NULL DEFAULT '[]',
                    description TEXT,
                    description_html TEXT,
                    apply_url TEXT,
                    job_url TEXT,
                    posted_at TEXT,
                    raw TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (source, external_id)
                );

                CREATE INDEX IF NOT EXISTS idx_external_jobs_posted_at
                    ON external_jobs (posted_at DESC);
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def upsert_by_key(self, record: ExternalJobRecord) -> bool:
        values = _record_values(record)
        now = now_utc_iso()
        update_clause = ",\n".join(
            f"{column} = excluded.{column}"
            for column in RECORD_COLUMNS
            if column not in ("source", "external_id")
        )
        with self._lock:
            try:
                existing = self.connection.execute(
                    "SELECT 1 FROM external_jobs WHERE source = ? AND external_id = ?",
                    (record.source, record.external_id),
                ).fetchone()
                self.connection.execute(
                    f"""
                    INSERT INTO external_jobs ({", ".join(RECORD_COLUMNS)}, created_at, updated_at)
                    VALUES ({", ".join("?" for _ in RECORD_COLUMNS)}, ?, ?)
                    ON CONFLICT(source, external_id) DO UPDATE SET
                        {update_clause},
                        updated_at = excluded.updated_at
                    """,
                    (*values, now, now),
                )
                self.connection.commit()
            except sqlite3.Error as exc:
                self.connection.rollback()
                raise PersistenceWriteError(
                    f"upsert failed for {identity_key(record)}: {exc}",
                    key=identity_key(record),
                ) from exc
            return existing is None

    def count_by_source(self, source: str | None = None) -> dict[str, int]:
        with self._lock:
            if source is None:
                rows = self.connection.execute(
                    "SELECT source, COUNT(1) AS c FROM external_jobs GROUP BY source"
                ).fetchall()
            else:
                rows = self.connection.execute(
                    "SELECT source, COUNT(1) AS c FROM external_jobs WHERE source = ? GROUP BY source",
                    (source,),
                ).fetchall()
            return {row["source"]: int(row["c"]) for row in rows}

    def list_jobs(self, limit: int, source: str | None = None) -> list[StoredExternalJob]:
        query = f"SELECT {', '.join(RECORD_COLUMNS)}, created_at, updated_at FROM external_jobs"
        params: list[Any] = []
        if source is not None:
            query += " WHERE source = ?"
            params.append(source)
        query += " ORDER BY posted_at IS NULL, posted_at DESC, updated_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.connection.execute(query, params).fetchall()
        return [_row_to_job(row) for row in rows]


def _record_values(record: ExternalJobRecord) -> tuple[Any, ...]:
    data = record.model_dump(mode="json")
    data["is_remote"] = None if record.is_remote is None else int(record.is_remote)
    data["skills"] = json.dumps(data["skills"])
    data["raw"] = json.dumps(_finite_only(data["raw"]), default=str, allow_nan=False)
    return tuple(data[column] for column in RECORD_COLUMNS)


def _finite_only(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {key: _finite_only(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_finite_only(item) for item in value]
    return value


def _row_to_job(row: sqlite3.Row) -> StoredExternalJob:
    data = dict(row)
    data["is_remote"] = None if data["is_remote"] is None else bool(data["is_remote"])
    data["skills"] = json.loads(data["skills"] or "[]")
    data["raw"] = json.loads(data["raw"] or "{}")
    return StoredExternalJob(**data)
