"""One ingestion run: admit, fetch, normalize, dedupe, persist.

Runs are sequential and independent; the rate limiter's bucket store is the
only state shared between concurrent runs. An adapter failure aborts the run
before anything is written. Per-record write failures do not fail the run.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable, Mapping

from common.utils import now_utc_iso
from pydantic import BaseModel, Field

from ingestor.dedupe import dedupe_records
from ingestor.errors import AdmissionDenied, IngestionError, MisconfigurationError
from ingestor.models import IngestionRunResult, RunStage, TriggerKind
from ingestor.normalize import normalize_record
from ingestor.rate_limit import RateLimiter
from ingestor.sources import SourceAdapter, SourceQuery
from ingestor.upsert import UpsertCoordinator

LOGGER = logging.getLogger("jobingest.ingestor.pipeline")


class IngestionTrigger(BaseModel):
    params: SourceQuery
    limit: int = Field(..., ge=1)
    trigger: TriggerKind = "manual"

    @property
    def source(self) -> str:
        return self.params.provider


class IngestionPipeline:
    def __init__(
        self,
        adapters: Mapping[str, SourceAdapter],
        coordinator: UpsertCoordinator,
        *,
        rate_limiter: RateLimiter | None = None,
        on_complete: Callable[[IngestionRunResult], None] | None = None,
    ) -> None:
        self.adapters = dict(adapters)
        self.coordinator = coordinator
        self.rate_limiter = rate_limiter
        self._on_complete = on_complete

    def run(
        self,
        trigger: IngestionTrigger,
        *,
        rate_key: str | None = None,
        capacity: int | None = None,
        refill_per_ms: int | None = None,
        run_id: str | None = None,
    ) -> IngestionRunResult:
        result = IngestionRunResult(
            run_id=run_id or str(uuid.uuid4()),
            source=trigger.source,
            trigger=trigger.trigger,
            started_at=now_utc_iso(),
        )
        try:
            self._admit(result, rate_key, capacity, refill_per_ms)
            adapter = self.adapters.get(trigger.source)
            if adapter is None:
                raise MisconfigurationError(f"No source adapter registered for {trigger.source}")
            adapter.ensure_configured()

            raw_records = adapter.fetch(trigger.params, trigger.limit)
            result.stage = RunStage.FETCHED
            result.fetched_count = len(raw_records)

            records = [normalize_record(trigger.source, raw) for raw in raw_records]
            result.stage = RunStage.NORMALIZED

            unique = dedupe_records(records)
            result.stage = RunStage.DEDUPED
            result.deduped_count = len(unique)

            summary = self.coordinator.upsert(unique)
            result.stage = RunStage.PERSISTED
            result.created_count = summary.created
            result.existing_count = summary.existing
            result.failed_count = summary.failed
            result.failures = summary.failures
        except IngestionError as exc:
            self._finish(result, status="failed", error=exc.message)
            raise
        except Exception as exc:
            self._finish(result, status="failed", error=f"{type(exc).__name__}: {exc}")
            raise

        self._finish(result, status="done")
        return result

    def _admit(
        self,
        result: IngestionRunResult,
        rate_key: str | None,
        capacity: int | None,
        refill_per_ms: int | None,
    ) -> None:
        if rate_key is not None and self.rate_limiter is not None:
            decision = self.rate_limiter.check(
                rate_key,
                capacity=capacity,
                refill_per_ms=refill_per_ms,
            )
            if not decision.allowed:
                LOGGER.info(
                    json.dumps(
                        {
                            "event": "ingest_rate_limited",
                            "run_id": result.run_id,
                            "rate_key": rate_key,
                        }
                    )
                )
                raise AdmissionDenied(remaining=decision.remaining)
        result.stage = RunStage.RATE_CHECKED

    def _finish(self, result: IngestionRunResult, *, status: str, error: str | None = None) -> None:
        result.finished_at = now_utc_iso()
        if status == "failed":
            result.status = "failed"
            result.error = error
            failed_at = result.stage
            result.stage = RunStage.FAILED
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "ingest_run_failed",
                        "run_id": result.run_id,
                        "source": result.source,
                        "trigger": result.trigger,
                        "failed_after": failed_at.value,
                        "error": error,
                    }
                )
            )
        else:
            result.status = "done"
            result.stage = RunStage.DONE
            LOGGER.info(
                json.dumps(
                    {
                        "event": "ingest_run_complete",
                        "run_id": result.run_id,
                        "source": result.source,
                        "trigger": result.trigger,
                        "fetched": result.fetched_count,
                        "deduped": result.deduped_count,
                        "created": result.created_count,
                        "existing": result.existing_count,
                        "failed": result.failed_count,
                    }
                )
            )
        if self._on_complete is not None:
            self._on_complete(result)
