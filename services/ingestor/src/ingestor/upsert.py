from __future__ import annotations

import json
import logging
from collections.abc import Iterable

from ingestor.dedupe import identity_key
from ingestor.models import ExternalJobRecord, UpsertFailure, UpsertSummary
from ingestor.repository import ExternalJobStore

LOGGER = logging.getLogger("jobingest.ingestor.upsert")


class UpsertCoordinator:
    """Writes canonical records one key at a time.

    A record whose write fails is counted and reported; the rest of the batch is
    still written. Re-ingesting a key overwrites its non-identity fields.
    """

    def __init__(self, store: ExternalJobStore) -> None:
        self.store = store

    def upsert(self, records: Iterable[ExternalJobRecord]) -> UpsertSummary:
        summary = UpsertSummary()
        for record in records:
            key = identity_key(record)
            try:
                created = self.store.upsert_by_key(record)
            except Exception as exc:
                summary.failed += 1
                summary.failures.append(UpsertFailure(key=key, error=str(exc)))
                LOGGER.warning(
                    json.dumps({"event": "ingest_write_failed", "key": key, "error": str(exc)})
                )
                continue
            if created:
                summary.created += 1
            else:
                summary.existing += 1
        return summary
