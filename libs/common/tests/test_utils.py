from __future__ import annotations

from datetime import datetime

import pytest
from common.utils import clean_optional, normalize_text, normalize_whitespace, now_utc_iso

pytestmark = pytest.mark.unit


def test_normalize_text_lowercases_and_strips_punctuation() -> None:
    assert normalize_text("  Growth  Marketing, Manager! ") == "growth marketing manager"


def test_normalize_whitespace_collapses_runs() -> None:
    assert normalize_whitespace("Acme\n  Corp\t") == "Acme Corp"


def test_clean_optional_rejects_blank_and_non_strings() -> None:
    assert clean_optional("   ") is None
    assert clean_optional(42) is None
    assert clean_optional(" Remote ") == "Remote"


def test_now_utc_iso_returns_parseable_utc_timestamp() -> None:
    parsed = datetime.fromisoformat(now_utc_iso())
    assert parsed.tzinfo is not None
    assert parsed.utcoffset() is not None
    assert parsed.utcoffset().total_seconds() == 0
