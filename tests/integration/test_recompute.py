"""Integration tests for streetlifting_etl.recompute (batch + on-demand scoring)."""

from __future__ import annotations

from decimal import Decimal

import pytest
from psycopg_pool import ConnectionPool

from streetlifting_etl.canonical import parse_document
from streetlifting_etl.formula_ledger import RIS_2025
from streetlifting_etl.importer import ingest
from streetlifting_etl.recompute import compute_current_score, load_score_targets, recompute_scores
from streetlifting_etl.scoring import compute_score
from streetlifting_etl.shared import ResolutionError


def _add_2026(conn) -> None:
    m, w = RIS_2025.men, RIS_2025.women
    conn.execute(
        "UPDATE ris_formula_versions SET effective_until = '2026-01-01', is_current = FALSE WHERE year = 2025"
    )
    conn.execute(
        """
        INSERT INTO ris_formula_versions
          (year, effective_from, is_current,
           men_a, men_k, men_b, men_v, men_q,
           women_a, women_k, women_b, women_v, women_q)
        VALUES (2026, '2026-01-01', TRUE, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (m.a, m.k + 10, m.b, m.v, m.q, w.a, w.k + 10, w.b, w.v, w.q),
    )
    conn.commit()


def _cached_scores(conn) -> dict:
    return dict(conn.execute(
        """
        SELECT a.first_name, cp.ris_score
        FROM competition_participants cp
        JOIN athletes a ON a.athlete_id = cp.athlete_id
        """
    ).fetchall())


def _history_years(conn) -> list[int]:
    return [r[0] for r in conn.execute(
        """
        SELECT f.year FROM ris_scores_history h
        JOIN ris_formula_versions f ON f.formula_id = h.formula_id
        ORDER BY f.year
        """
    ).fetchall()]


@pytest.fixture
def imported(db_conn, make_raw_document):
    conn, dsn = db_conn
    ingest(conn, parse_document(make_raw_document()))
    conn.commit()
    return conn, dsn


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------

class TestLoadScoreTargets:
    def test_totals_from_lifts(self, imported):
        conn, _ = imported
        targets = {t.total: t for t in load_score_targets(conn)}
        assert set(targets) == {Decimal("180"), Decimal("95")}
        assert targets[Decimal("180")].bodyweight == Decimal("74.3")
        assert targets[Decimal("180")].gender == "M"

    def test_missing_bodyweight_excluded(self, db_conn, make_raw_document):
        conn, _ = db_conn
        doc = make_raw_document()
        del doc["categories"][0]["athletes"][1]["bodyweight"]
        ingest(conn, parse_document(doc))
        assert len(load_score_targets(conn)) == 1


# ---------------------------------------------------------------------------
# Batch recompute
# ---------------------------------------------------------------------------

class TestRecomputeScores:
    def test_current_formula_keeps_historical_cache(self, imported):
        conn, dsn = imported
        before = _cached_scores(conn)
        _add_2026(conn)
        with ConnectionPool(conninfo=dsn, min_size=1, max_size=2) as pool:
            result = recompute_scores(pool, max_workers=2)
        conn.commit()

        assert result.formula_years == [2026]
        assert result.scores_written == 2
        assert result.cached_scores_updated == 0
        assert result.failures == 0
        assert _cached_scores(conn) == before
        assert _history_years(conn) == [2025, 2025, 2026, 2026]

    def test_all_versions(self, imported):
        conn, dsn = imported
        _add_2026(conn)
        with ConnectionPool(conninfo=dsn, min_size=1, max_size=2) as pool:
            result = recompute_scores(pool, all_versions=True, batch_size=1)
        conn.commit()

        assert result.formula_years == [2025, 2026]
        assert result.scores_written == 4
        assert result.cached_scores_updated == 2
        assert len(_history_years(conn)) == 4

    def test_restores_effective_formula_cache(self, imported):
        conn, dsn = imported
        conn.execute("UPDATE competition_participants SET ris_score = 1")
        conn.commit()
        with ConnectionPool(conninfo=dsn, min_size=1, max_size=2) as pool:
            result = recompute_scores(pool, formula_year=2025)
        conn.commit()

        assert result.cached_scores_updated == 2
        assert _cached_scores(conn)["John"] == compute_score(Decimal("180"), Decimal("74.3"), "M", RIS_2025)

    def test_unchanged_scores_leave_history_rows_identical(self, imported):
        conn, dsn = imported
        query = (
            "SELECT participant_id, formula_id, ris_score, bodyweight, total_weight, computed_at "
            "FROM ris_scores_history ORDER BY participant_id"
        )
        before = conn.execute(query).fetchall()
        conn.commit()
        with ConnectionPool(conninfo=dsn, min_size=1, max_size=2) as pool:
            result = recompute_scores(pool, formula_year=2025)
        assert conn.execute(query).fetchall() == before
        assert result.scores_written == 2

    def test_unknown_year(self, imported):
        _, dsn = imported
        with ConnectionPool(conninfo=dsn, min_size=1, max_size=1) as pool:
            with pytest.raises(ResolutionError):
                recompute_scores(pool, formula_year=1999)

    def test_result_to_dict(self, imported):
        _, dsn = imported
        with ConnectionPool(conninfo=dsn, min_size=1, max_size=1) as pool:
            out = recompute_scores(pool).to_dict()
        assert out["participants_considered"] == 2
        assert out["errors"] == []


# ---------------------------------------------------------------------------
# On-demand scoring
# ---------------------------------------------------------------------------

class TestComputeCurrentScore:
    def test_uses_current_version(self, db_conn):
        conn, _ = db_conn
        score, formula = compute_current_score(conn, Decimal("450"), Decimal("75"), "M")
        assert formula.year == 2025
        assert Decimal("94.2") < score < Decimal("94.5")

    def test_follows_current_flag(self, db_conn):
        conn, _ = db_conn
        _add_2026(conn)
        score, formula = compute_current_score(conn, Decimal("450"), Decimal("75"), "M")
        assert formula.year == 2026
        assert score < compute_score(Decimal("450"), Decimal("75"), "M", RIS_2025)

    def test_no_current_version(self, db_conn):
        conn, _ = db_conn
        conn.execute("UPDATE ris_formula_versions SET is_current = FALSE")
        with pytest.raises(ResolutionError):
            compute_current_score(conn, Decimal("450"), Decimal("75"), "M")
