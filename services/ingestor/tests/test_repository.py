from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest
from ingestor.errors import PersistenceWriteError
from ingestor.models import ExternalJobRecord
from ingestor.repository import ExternalJobRepository

pytestmark = pytest.mark.integration


@pytest.fixture
def repository(tmp_path: Path):
    repo = ExternalJobRepository(database_path=str(tmp_path / "nested" / "ingestor.sqlite3"))
    repo.connect()
    yield repo
    repo.close()


def record(external_id: str, **fields) -> ExternalJobRecord:
    fields.setdefault("title", "Growth Marketer")
    return ExternalJobRecord(source="indeed", external_id=external_id, **fields)


def test_first_write_creates_and_second_write_reports_existing(repository) -> None:
    assert repository.upsert_by_key(record("a")) is True
    assert repository.upsert_by_key(record("a")) is False
    assert repository.count_by_source() == {"indeed": 1}


def test_reingesting_a_key_overwrites_non_identity_fields(repository) -> None:
    repository.upsert_by_key(record("a", title="Old title", salary_min=50000, skills=["SEO"]))
    repository.upsert_by_key(record("a", title="New title", salary_min=None, skills=[]))

    [job] = repository.list_jobs(limit=10)
    assert job.title == "New title"
    assert job.salary_min is None
    assert job.skills == []


def test_round_trip_preserves_typed_fields(repository) -> None:
    posted = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)
    repository.upsert_by_key(
        record("a", is_remote=True, posted_at=posted, raw={"jobKey": "a", "nested": {"x": 1}})
    )

    [job] = repository.list_jobs(limit=10)
    assert job.is_remote is True
    assert job.posted_at == posted
    assert job.raw == {"jobKey": "a", "nested": {"x": 1}}
    assert job.created_at
    assert job.updated_at


def test_list_jobs_orders_by_posted_date_and_filters_source(repository) -> None:
    repository.upsert_by_key(record("old", posted_at=datetime(2026, 1, 1, tzinfo=UTC)))
    repository.upsert_by_key(record("undated"))
    repository.upsert_by_key(record("new", posted_at=datetime(2026, 9, 1, tzinfo=UTC)))
    repository.upsert_by_key(
        ExternalJobRecord(source="wellfound", external_id="w", title="Head of Growth")
    )

    ordered = [job.external_id for job in repository.list_jobs(limit=10, source="indeed")]
    assert ordered == ["new", "old", "undated"]
    assert repository.count_by_source("wellfound") == {"wellfound": 1}
    assert len(repository.list_jobs(limit=2)) == 2


def test_write_before_connect_raises(tmp_path: Path) -> None:
    repo = ExternalJobRepository(database_path=str(tmp_path / "db.sqlite3"))

    with pytest.raises(RuntimeError):
        repo.upsert_by_key(record("a"))


def test_sqlite_failure_is_wrapped_with_the_record_key(repository) -> None:
    repository.connection.execute("DROP TABLE external_jobs")

    with pytest.raises(PersistenceWriteError) as excinfo:
        repository.upsert_by_key(record("a"))

    assert excinfo.value.key == "indeed:a"


def test_non_finite_numbers_in_raw_payload_are_stored_as_null(repository) -> None:
    repository.upsert_by_key(
        record("a", raw={"salary": {"salaryMin": float("inf"), "list": [float("nan"), 1.5]}})
    )

    [job] = repository.list_jobs(limit=10)
    assert job.raw == {"salary": {"salaryMin": None, "list": [None, 1.5]}}
