"""streetlifting_etl.recompute

Batch score recomputation and on-demand scoring.

recompute_scores() scores every participant with a bodyweight and a
positive total (sum of lifts.max_weight) against one formula version (the
current one by default, or every version), upserting one
ris_scores_history row per (participant, formula). Work is split into
batches scored in parallel by a ThreadPoolExecutor, each batch on its own
pooled connection and transaction.

The cached competition_participants.ris_score is only rewritten when the
formula is the one effective on the competition's start date, so a
historical result keeps the score of its own era.

Nothing here runs automatically when a new formula becomes current; a
batch must be requested explicitly (CLI --mode recompute_scores).
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

import psycopg
from psycopg_pool import ConnectionPool

from streetlifting_etl.formula_ledger import FormulaLedger, FormulaVersion, load_formula_ledger
from streetlifting_etl.importer import write_score
from streetlifting_etl.scoring import compute_score
from streetlifting_etl.shared import EtlError

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500


@dataclass
class ScoreTarget:
    participant_id: str
    gender: str
    bodyweight: Decimal
    total: Decimal
    start_date: date


@dataclass
class RecomputeResult:
    formula_years: list[int] = field(default_factory=list)
    participants_considered: int = 0
    scores_written: int = 0
    cached_scores_updated: int = 0
    failures: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "formula_years": self.formula_years,
            "participants_considered": self.participants_considered,
            "scores_written": self.scores_written,
            "cached_scores_updated": self.cached_scores_updated,
            "failures": self.failures,
            "errors": self.errors,
        }


def load_score_targets(conn: psycopg.Connection) -> list[ScoreTarget]:
    rows = conn.execute(
        """
        SELECT cp.participant_id,
               a.gender,
               cp.bodyweight,
               COALESCE(SUM(l.max_weight), 0) AS total,
               c.start_date
        FROM competition_participants cp
        JOIN athletes a ON a.athlete_id = cp.athlete_id
        JOIN competitions c ON c.competition_id = cp.competition_id
        LEFT JOIN lifts l ON l.participant_id = cp.participant_id
        WHERE cp.bodyweight IS NOT NULL
        GROUP BY cp.participant_id, a.gender, cp.bodyweight, c.start_date
        HAVING COALESCE(SUM(l.max_weight), 0) > 0
        ORDER BY c.start_date, cp.participant_id
        """
    ).fetchall()
    return [
        ScoreTarget(
            participant_id=str(r[0]),
            gender=r[1],
            bodyweight=r[2],
            total=r[3],
            start_date=r[4],
        )
        for r in rows
    ]


def _effective_year(ledger: FormulaLedger, on: date) -> int | None:
    matches = [v for v in ledger.versions if v.covers(on)]
    return matches[0].year if len(matches) == 1 else None


def _score_batch(
    pool: ConnectionPool,
    batch: list[ScoreTarget],
    formulas: list[FormulaVersion],
    ledger: FormulaLedger,
) -> tuple[int, int]:
    written = 0
    cached = 0
    with pool.connection() as conn:
        with conn.transaction():
            for target in batch:
                effective = _effective_year(ledger, target.start_date)
                for formula in formulas:
                    score = compute_score(target.total, target.bodyweight, target.gender, formula)
                    update_cached = formula.year == effective
                    write_score(
                        conn, target.participant_id, formula, score,
                        target.bodyweight, target.total, update_cached=update_cached,
                    )
                    written += 1
                    cached += int(update_cached)
    return written, cached


def recompute_scores(
    pool: ConnectionPool,
    formula_year: int | None = None,
    all_versions: bool = False,
    max_workers: int = 4,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> RecomputeResult:
    """Recompute and upsert scores for every scorable participant.

    Args:
        pool: connection pool; one connection per in-flight batch.
        formula_year: version to score with; default is the current version.
        all_versions: score with every known version instead.
    """
    with pool.connection() as conn:
        ledger = load_formula_ledger(conn)
        targets = load_score_targets(conn)

    if all_versions:
        formulas = list(ledger.versions)
    elif formula_year is not None:
        formulas = [ledger.by_year(formula_year)]
    else:
        formulas = [ledger.current()]

    result = RecomputeResult(
        formula_years=[f.year for f in formulas],
        participants_considered=len(targets),
    )
    batches = [targets[i:i + batch_size] for i in range(0, len(targets), batch_size)]
    log.info(
        "Recomputing %d participant(s) in %d batch(es) with formula(s) %s",
        len(targets), len(batches), result.formula_years,
    )

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {
            executor.submit(_score_batch, pool, batch, formulas, ledger): idx
            for idx, batch in enumerate(batches)
        }
        for future in as_completed(futures):
            idx = futures[future]
            try:
                written, cached = future.result()
            except (EtlError, psycopg.Error) as exc:
                log.error("Batch %d failed: %s", idx, exc)
                result.failures += len(batches[idx])
                result.errors.append(f"batch {idx}: {exc}")
                continue
            result.scores_written += written
            result.cached_scores_updated += cached

    log.info(
        "Recompute finished: %d written, %d cached updated, %d failed",
        result.scores_written, result.cached_scores_updated, result.failures,
    )
    return result


def compute_current_score(
    conn: psycopg.Connection,
    total: Decimal,
    bodyweight: Decimal,
    gender: str,
) -> tuple[Decimal, FormulaVersion]:
    """Score a hypothetical lift with the version flagged current."""
    formula = load_formula_ledger(conn).current()
    return compute_score(total, bodyweight, gender, formula), formula
