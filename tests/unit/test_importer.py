"""Unit tests for the database-free parts of streetlifting_etl.importer."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from streetlifting_etl.importer import (
    ImportCounters,
    ImportResult,
    _Participant,
    compute_ranks,
    ingest_with_retry,
)
from streetlifting_etl.shared import PersistenceConflict, ValidationError


def _make_participant(pid: str, total: str, bodyweight: str | None = "75", dq: bool = False, cat: str = "-75kg"):
    return _Participant(
        participant_id=pid,
        category_key=(cat, "M"),
        gender="M",
        bodyweight=Decimal(bodyweight) if bodyweight else None,
        is_disqualified=dq,
        total=Decimal(total),
    )


# ---------------------------------------------------------------------------
# compute_ranks
# ---------------------------------------------------------------------------

class TestComputeRanks:
    def test_total_descending(self):
        ranks = compute_ranks([
            _make_participant("a", "300"),
            _make_participant("b", "350"),
            _make_participant("c", "200"),
        ])
        assert ranks == {"b": 1, "a": 2, "c": 3}

    def test_lighter_wins_tie(self):
        ranks = compute_ranks([
            _make_participant("heavy", "300", bodyweight="74.9"),
            _make_participant("light", "300", bodyweight="72.1"),
        ])
        assert ranks == {"light": 1, "heavy": 2}

    def test_exact_tie_shares_rank(self):
        ranks = compute_ranks([
            _make_participant("a", "300"),
            _make_participant("b", "300"),
            _make_participant("c", "250"),
        ])
        assert ranks == {"a": 1, "b": 1, "c": 3}

    def test_missing_bodyweight_ranks_after_equal_total(self):
        ranks = compute_ranks([
            _make_participant("unknown", "300", bodyweight=None),
            _make_participant("known", "300"),
        ])
        assert ranks == {"known": 1, "unknown": 2}

    def test_disqualified_and_zero_total_unranked(self):
        ranks = compute_ranks([
            _make_participant("dq", "400", dq=True),
            _make_participant("zero", "0"),
            _make_participant("ok", "100"),
        ])
        assert ranks == {"dq": None, "zero": None, "ok": 1}

    def test_ranked_per_category(self):
        ranks = compute_ranks([
            _make_participant("a", "300", cat="-75kg"),
            _make_participant("b", "250", cat="-85kg"),
        ])
        assert ranks == {"a": 1, "b": 1}


# ---------------------------------------------------------------------------
# ingest_with_retry
# ---------------------------------------------------------------------------

class TestIngestWithRetry:
    def test_retries_conflicts(self):
        result = ImportResult(competition_id="id", competition_slug="slug")
        with patch("streetlifting_etl.importer.ingest") as ingest, patch("streetlifting_etl.importer.time.sleep"):
            ingest.side_effect = [PersistenceConflict("busy"), result]
            assert ingest_with_retry(MagicMock(), MagicMock(), max_attempts=3) is result
            assert ingest.call_count == 2

    def test_gives_up_after_max_attempts(self):
        with patch("streetlifting_etl.importer.ingest") as ingest, patch("streetlifting_etl.importer.time.sleep"):
            ingest.side_effect = PersistenceConflict("busy")
            with pytest.raises(PersistenceConflict):
                ingest_with_retry(MagicMock(), MagicMock(), max_attempts=2)
            assert ingest.call_count == 2

    def test_other_errors_not_retried(self):
        with patch("streetlifting_etl.importer.ingest") as ingest:
            ingest.side_effect = ValidationError([])
            with pytest.raises(ValidationError):
                ingest_with_retry(MagicMock(), MagicMock(), max_attempts=3)
            assert ingest.call_count == 1

    def test_kwargs_forwarded(self):
        with patch("streetlifting_etl.importer.ingest") as ingest:
            ingest_with_retry(MagicMock(), MagicMock(), dry_run=True, on_missing_formula="fail")
            _, kwargs = ingest.call_args
            assert kwargs == {"dry_run": True, "on_missing_formula": "fail"}


# ---------------------------------------------------------------------------
# Result serialization
# ---------------------------------------------------------------------------

class TestImportResult:
    def test_to_dict(self):
        result = ImportResult(competition_id="id", competition_slug="slug", formula_year=2025)
        result.counters.scores_computed = 3
        out = result.to_dict()
        assert out["formula_year"] == 2025
        assert out["counters"]["scores_computed"] == 3
        assert set(out["counters"]) == set(ImportCounters().to_dict())
