from __future__ import annotations

from collections.abc import Iterable

from ingestor.models import ExternalJobRecord


def identity_key(record: ExternalJobRecord) -> str:
    return f"{record.source}:{record.external_id}"


def dedupe_records(records: Iterable[ExternalJobRecord]) -> list[ExternalJobRecord]:
    """Collapse records sharing ``source:external_id``; the first occurrence wins."""
    seen: set[str] = set()
    out: list[ExternalJobRecord] = []
    for record in records:
        key = identity_key(record)
        if key in seen:
            continue
        seen.add(key)
        out.append(record)
    return out
