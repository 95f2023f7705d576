"""streetlifting_etl.importer

Transactional import of one canonical document.

Processing order (single transaction, commit only on full success):
  1.  Re-validate the document; any error → ValidationError before any write
  2.  pg_advisory_xact_lock(hashtext(slug)): same-slug ingests serialize
  3.  Upsert federation (name) → movements (name) → categories (name, gender)
  4.  Upsert competition (slug) + competition_movements
  5.  Per athlete:
      a.  Resolve by dedup key (unordered names, gender, country) or create
          with a unique slug (first-last, first-last-2, ...)
      b.  Upsert participant (competition, category, athlete)
      c.  Upsert lifts (participant, movement) with derived max_weight and
          attempts (lift, attempt_number); delete lifts/attempts that are no
          longer in the document
  6.  Delete participants of the competition absent from the document
  7.  Rank within category (total desc, lighter bodyweight first;
      disqualified or zero total → no rank)
  8.  Resolve the formula effective on start_date and score every
      participant with a bodyweight and a positive total; cache the score
      on competition_participants and upsert ris_scores_history
      (participant, formula)

Re-ingesting the same document is a no-op on the persisted state.

If the connection already has a transaction open, the ingest runs as a
savepoint inside it and the caller owns the final commit.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import psycopg
from psycopg import errors as pg_errors

from streetlifting_etl.canonical import (
    AthleteData,
    CanonicalDocument,
    CategoryData,
    CompetitionData,
    FederationData,
    LiftData,
    MovementData,
    document_to_dict,
)
from streetlifting_etl.formula_ledger import FormulaVersion, load_formula_ledger
from streetlifting_etl.normalize import athlete_slug
from streetlifting_etl.scoring import compute_score, lift_best, participant_total
from streetlifting_etl.shared import (
    NoFormulaForDateError,
    PersistenceConflict,
    ValidationError,
)
from streetlifting_etl.validator import ValidationRules, default_validation_rules, validate_document

log = logging.getLogger(__name__)

ON_MISSING_FORMULA = ("warn", "fail")

_RETRYABLE = (pg_errors.UniqueViolation, pg_errors.SerializationFailure, pg_errors.DeadlockDetected)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class ImportCounters:
    athletes_created: int = 0
    athletes_matched: int = 0
    participants_upserted: int = 0
    participants_deleted: int = 0
    lifts_upserted: int = 0
    lifts_deleted: int = 0
    attempts_upserted: int = 0
    attempts_deleted: int = 0
    scores_computed: int = 0
    participants_skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


@dataclass
class ImportResult:
    competition_id: str
    competition_slug: str
    counters: ImportCounters = field(default_factory=ImportCounters)
    warnings: list[str] = field(default_factory=list)
    formula_year: int | None = None
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "competition_id": self.competition_id,
            "competition_slug": self.competition_slug,
            "formula_year": self.formula_year,
            "dry_run": self.dry_run,
            "counters": self.counters.to_dict(),
            "warnings": self.warnings,
        }


@dataclass
class _Participant:
    participant_id: str
    category_key: tuple[str, str]
    gender: str
    bodyweight: Decimal | None
    is_disqualified: bool
    total: Decimal


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------

def _upsert_federation(conn: psycopg.Connection, federation: FederationData) -> str:
    row = conn.execute(
        """
        INSERT INTO federations (name, abbreviation, country)
        VALUES (%s, %s, %s)
        ON CONFLICT (name) DO UPDATE SET
          abbreviation = COALESCE(EXCLUDED.abbreviation, federations.abbreviation),
          country = COALESCE(EXCLUDED.country, federations.country)
        RETURNING federation_id
        """,
        (federation.name, federation.abbreviation, federation.country),
    ).fetchone()
    return str(row[0])


def _upsert_movements(
    conn: psycopg.Connection,
    movements: list[MovementData],
    rules: ValidationRules,
) -> None:
    for movement in movements:
        conn.execute(
            """
            INSERT INTO movements (name, display_order)
            VALUES (%s, %s)
            ON CONFLICT (name) DO NOTHING
            """,
            (movement.name, rules.display_order(movement.name)),
        )


def _upsert_category(conn: psycopg.Connection, category: CategoryData) -> str:
    """Categories are shared reference data: the first writer's bounds stick."""
    conn.execute(
        """
        INSERT INTO categories (name, gender, weight_class_min, weight_class_max)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (name, gender) DO NOTHING
        """,
        (category.name, category.gender, category.weight_class_min, category.weight_class_max),
    )
    row = conn.execute(
        "SELECT category_id FROM categories WHERE name = %s AND gender = %s",
        (category.name, category.gender),
    ).fetchone()
    return str(row[0])


# ---------------------------------------------------------------------------
# Competition
# ---------------------------------------------------------------------------

def _upsert_competition(
    conn: psycopg.Connection,
    competition: CompetitionData,
    federation_id: str,
) -> str:
    row = conn.execute(
        """
        INSERT INTO competitions
          (name, slug, status, federation_id, venue, city, country,
           start_date, end_date, number_of_judge)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (slug) DO UPDATE SET
          name = EXCLUDED.name,
          status = EXCLUDED.status,
          federation_id = EXCLUDED.federation_id,
          venue = EXCLUDED.venue,
          city = EXCLUDED.city,
          country = EXCLUDED.country,
          start_date = EXCLUDED.start_date,
          end_date = EXCLUDED.end_date,
          number_of_judge = EXCLUDED.number_of_judge,
          updated_at = CASE
            WHEN (competitions.name, competitions.status, competitions.federation_id,
                  competitions.venue, competitions.city, competitions.country,
                  competitions.start_date, competitions.end_date, competitions.number_of_judge)
                 IS DISTINCT FROM
                 (EXCLUDED.name, EXCLUDED.status, EXCLUDED.federation_id,
                  EXCLUDED.venue, EXCLUDED.city, EXCLUDED.country,
                  EXCLUDED.start_date, EXCLUDED.end_date, EXCLUDED.number_of_judge)
            THEN CURRENT_TIMESTAMP
            ELSE competitions.updated_at
          END
        RETURNING competition_id
        """,
        (competition.name, competition.slug, competition.status, federation_id,
         competition.venue, competition.city, competition.country,
         competition.start_date, competition.end_date, competition.number_of_judges),
    ).fetchone()
    return str(row[0])


def _replace_competition_movements(
    conn: psycopg.Connection,
    competition_id: str,
    movements: list[MovementData],
) -> None:
    for movement in movements:
        conn.execute(
            """
            INSERT INTO competition_movements
              (competition_id, movement_name, is_required, display_order)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (competition_id, movement_name) DO UPDATE SET
              is_required = EXCLUDED.is_required,
              display_order = EXCLUDED.display_order
            """,
            (competition_id, movement.name, movement.is_required, movement.order),
        )
    conn.execute(
        """
        DELETE FROM competition_movements
        WHERE competition_id = %s
          AND movement_name <> ALL(%s::text[])
        """,
        (competition_id, [m.name for m in movements]),
    )


# ---------------------------------------------------------------------------
# Athletes
# ---------------------------------------------------------------------------

def resolve_athlete(
    conn: psycopg.Connection,
    first_name: str,
    last_name: str,
    gender: str,
    country: str,
) -> str | None:
    """Find an athlete by the order- and case-insensitive identity key."""
    row = conn.execute(
        """
        SELECT athlete_id FROM athletes
        WHERE LEAST(LOWER(first_name), LOWER(last_name)) = LEAST(LOWER(%s), LOWER(%s))
          AND GREATEST(LOWER(first_name), LOWER(last_name)) = GREATEST(LOWER(%s), LOWER(%s))
          AND gender = %s
          AND country = %s
        """,
        (first_name, last_name, first_name, last_name, gender, country),
    ).fetchone()
    return str(row[0]) if row else None


def unique_athlete_slug(conn: psycopg.Connection, first_name: str, last_name: str) -> str:
    """first-last, then first-last-2, first-last-3, ... until unused.

    Superseded slugs in slug_history count as used.
    """
    base = athlete_slug(first_name, last_name)
    candidate = base
    n = 2
    while conn.execute(
        "SELECT 1 FROM athletes WHERE slug = %s OR slug_history ? %s LIMIT 1",
        (candidate, candidate),
    ).fetchone():
        candidate = f"{base}-{n}"
        n += 1
    return candidate


def _resolve_or_create_athlete(
    conn: psycopg.Connection,
    athlete: AthleteData,
    gender: str,
    counters: ImportCounters,
) -> str:
    athlete_id = resolve_athlete(conn, athlete.first_name, athlete.last_name, gender, athlete.country)
    if athlete_id:
        if athlete.nationality:
            conn.execute(
                "UPDATE athletes SET nationality = COALESCE(nationality, %s) WHERE athlete_id = %s",
                (athlete.nationality, athlete_id),
            )
        counters.athletes_matched += 1
        return athlete_id

    slug = unique_athlete_slug(conn, athlete.first_name, athlete.last_name)
    row = conn.execute(
        """
        INSERT INTO athletes (first_name, last_name, gender, country, nationality, slug)
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING athlete_id
        """,
        (athlete.first_name, athlete.last_name, gender, athlete.country, athlete.nationality, slug),
    ).fetchone()
    counters.athletes_created += 1
    return str(row[0])


# ---------------------------------------------------------------------------
# Participants, lifts, attempts
# ---------------------------------------------------------------------------

def _upsert_participant(
    conn: psycopg.Connection,
    competition_id: str,
    category_id: str,
    athlete_id: str,
    athlete: AthleteData,
) -> str:
    row = conn.execute(
        """
        INSERT INTO competition_participants
          (competition_id, category_id, athlete_id, bodyweight,
           is_disqualified, disqualified_reason)
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (competition_id, category_id, athlete_id) DO UPDATE SET
          bodyweight = EXCLUDED.bodyweight,
          is_disqualified = EXCLUDED.is_disqualified,
          disqualified_reason = EXCLUDED.disqualified_reason
        RETURNING participant_id
        """,
        (competition_id, category_id, athlete_id, athlete.bodyweight,
         athlete.is_disqualified, athlete.disqualified_reason),
    ).fetchone()
    return str(row[0])


def _replace_lift(
    conn: psycopg.Connection,
    participant_id: str,
    lift: LiftData,
    counters: ImportCounters,
) -> None:
    row = conn.execute(
        """
        INSERT INTO lifts (participant_id, movement_name, max_weight)
        VALUES (%s, %s, %s)
        ON CONFLICT (participant_id, movement_name) DO UPDATE SET
          max_weight = EXCLUDED.max_weight,
          updated_at = CASE
            WHEN lifts.max_weight IS DISTINCT FROM EXCLUDED.max_weight THEN CURRENT_TIMESTAMP
            ELSE lifts.updated_at
          END
        RETURNING lift_id
        """,
        (participant_id, lift.movement, lift_best(lift.attempts)),
    ).fetchone()
    lift_id = str(row[0])
    counters.lifts_upserted += 1

    for attempt in lift.attempts:
        conn.execute(
            """
            INSERT INTO attempts (lift_id, attempt_number, weight, is_successful, no_rep_reason)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (lift_id, attempt_number) DO UPDATE SET
              weight = EXCLUDED.weight,
              is_successful = EXCLUDED.is_successful,
              no_rep_reason = EXCLUDED.no_rep_reason
            """,
            (lift_id, attempt.attempt_number, attempt.weight,
             attempt.is_successful, attempt.no_rep_reason),
        )
        counters.attempts_upserted += 1

    cur = conn.execute(
        "DELETE FROM attempts WHERE lift_id = %s AND attempt_number <> ALL(%s::int[])",
        (lift_id, [a.attempt_number for a in lift.attempts]),
    )
    counters.attempts_deleted += max(cur.rowcount, 0)


def _replace_lifts(
    conn: psycopg.Connection,
    participant_id: str,
    lifts: list[LiftData],
    counters: ImportCounters,
) -> None:
    for lift in lifts:
        _replace_lift(conn, participant_id, lift, counters)
    cur = conn.execute(
        "DELETE FROM lifts WHERE participant_id = %s AND movement_name <> ALL(%s::text[])",
        (participant_id, [lift.movement for lift in lifts]),
    )
    counters.lifts_deleted += max(cur.rowcount, 0)


def _delete_stale_participants(
    conn: psycopg.Connection,
    competition_id: str,
    kept_ids: list[str],
    counters: ImportCounters,
) -> None:
    cur = conn.execute(
        """
        DELETE FROM competition_participants
        WHERE competition_id = %s
          AND participant_id <> ALL(%s::uuid[])
        """,
        (competition_id, kept_ids),
    )
    counters.participants_deleted += max(cur.rowcount, 0)


# ---------------------------------------------------------------------------
# Derived results: rank and score
# ---------------------------------------------------------------------------

def _rank_key(p: _Participant) -> tuple[Decimal, Decimal]:
    bodyweight = p.bodyweight if p.bodyweight is not None else Decimal("Infinity")
    return -p.total, bodyweight


def compute_ranks(participants: list[_Participant]) -> dict[str, int | None]:
    """Rank within category: total desc, then lighter bodyweight.

    Equal (total, bodyweight) share a rank; disqualified athletes and zero
    totals are unranked.
    """
    ranks: dict[str, int | None] = {}
    by_category: dict[tuple[str, str], list[_Participant]] = {}
    for p in participants:
        if p.is_disqualified or p.total <= 0:
            ranks[p.participant_id] = None
        else:
            by_category.setdefault(p.category_key, []).append(p)
    for members in by_category.values():
        keys = [_rank_key(p) for p in members]
        for p, key in zip(members, keys):
            ranks[p.participant_id] = 1 + sum(1 for other in keys if other < key)
    return ranks


def write_score(
    conn: psycopg.Connection,
    participant_id: str,
    formula: FormulaVersion,
    score: Decimal,
    bodyweight: Decimal,
    total: Decimal,
    update_cached: bool = True,
) -> None:
    """Upsert the (participant, formula) history row; optionally cache the score."""
    conn.execute(
        """
        INSERT INTO ris_scores_history
          (participant_id, formula_id, ris_score, bodyweight, total_weight)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (participant_id, formula_id) DO UPDATE SET
          ris_score = EXCLUDED.ris_score,
          bodyweight = EXCLUDED.bodyweight,
          total_weight = EXCLUDED.total_weight,
          computed_at = CURRENT_TIMESTAMP
        WHERE (ris_scores_history.ris_score, ris_scores_history.bodyweight, ris_scores_history.total_weight)
              IS DISTINCT FROM (EXCLUDED.ris_score, EXCLUDED.bodyweight, EXCLUDED.total_weight)
        """,
        (participant_id, formula.formula_id, score, bodyweight, total),
    )
    if update_cached:
        conn.execute(
            "UPDATE competition_participants SET ris_score = %s WHERE participant_id = %s",
            (score, participant_id),
        )


def clear_score(
    conn: psycopg.Connection,
    participant_id: str,
    formula: FormulaVersion | None,
) -> None:
    conn.execute(
        "UPDATE competition_participants SET ris_score = NULL WHERE participant_id = %s",
        (participant_id,),
    )
    if formula is not None:
        conn.execute(
            "DELETE FROM ris_scores_history WHERE participant_id = %s AND formula_id = %s",
            (participant_id, formula.formula_id),
        )


def _resolve_formula(
    conn: psycopg.Connection,
    competition: CompetitionData,
    on_missing_formula: str,
    result: ImportResult,
) -> FormulaVersion | None:
    ledger = load_formula_ledger(conn)
    try:
        return ledger.resolve_for_date(competition.start_date)
    except NoFormulaForDateError as exc:
        if on_missing_formula == "fail":
            raise
        msg = f"{exc}; scoring skipped for '{competition.slug}'"
        log.warning("%s", msg)
        result.warnings.append(msg)
        return None


def _score_participants(
    conn: psycopg.Connection,
    participants: list[_Participant],
    formula: FormulaVersion | None,
    result: ImportResult,
) -> None:
    counters = result.counters
    for p in participants:
        if formula is None or p.bodyweight is None or p.total <= 0:
            clear_score(conn, p.participant_id, formula)
            counters.participants_skipped += 1
            continue
        score = compute_score(p.total, p.bodyweight, p.gender, formula)
        write_score(conn, p.participant_id, formula, score, p.bodyweight, p.total)
        counters.scores_computed += 1


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def ingest(
    conn: psycopg.Connection,
    document: CanonicalDocument,
    rules: ValidationRules | None = None,
    on_missing_formula: str = "warn",
    run_id: str | None = None,
    dry_run: bool = False,
) -> ImportResult:
    """Import one canonical document atomically.

    Raises:
        ValidationError: the document has blocking validation errors.
        NoFormulaForDateError: no formula covers start_date and
            on_missing_formula='fail'.
        AmbiguousFormulaError: several formula versions cover start_date.
        PersistenceConflict: unique violation / serialization failure.
    """
    if on_missing_formula not in ON_MISSING_FORMULA:
        raise ValueError(f"on_missing_formula must be one of {ON_MISSING_FORMULA}")
    rules = rules or default_validation_rules()

    report = validate_document(document_to_dict(document), rules)
    if report.errors:
        raise ValidationError(report.errors)

    comp = document.competition
    result = ImportResult(
        competition_id="",
        competition_slug=comp.slug,
        warnings=[str(w) for w in report.warnings],
        dry_run=dry_run,
    )
    counters = result.counters
    tag = f"[{run_id}] " if run_id else ""
    log.info("%singesting '%s' (%d categories)", tag, comp.slug, len(document.categories))

    try:
        with conn.transaction(force_rollback=dry_run):
            conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (comp.slug,))

            federation_id = _upsert_federation(conn, comp.federation)
            _upsert_movements(conn, document.movements, rules)
            category_ids = {
                (c.name, c.gender): _upsert_category(conn, c) for c in document.categories
            }
            competition_id = _upsert_competition(conn, comp, federation_id)
            result.competition_id = competition_id
            _replace_competition_movements(conn, competition_id, document.movements)

            participants: list[_Participant] = []
            for category, athlete in document.iter_athletes():
                gender = athlete.effective_gender(category.gender)
                athlete_id = _resolve_or_create_athlete(conn, athlete, gender, counters)
                category_key = (category.name, category.gender)
                participant_id = _upsert_participant(
                    conn, competition_id, category_ids[category_key], athlete_id, athlete,
                )
                counters.participants_upserted += 1
                _replace_lifts(conn, participant_id, athlete.lifts, counters)
                participants.append(_Participant(
                    participant_id=participant_id,
                    category_key=category_key,
                    gender=gender,
                    bodyweight=athlete.bodyweight,
                    is_disqualified=athlete.is_disqualified,
                    total=participant_total(athlete.lifts),
                ))

            # duplicate identities collapse onto one participant row
            unique = list({p.participant_id: p for p in participants}.values())
            _delete_stale_participants(conn, competition_id, [p.participant_id for p in unique], counters)

            for participant_id, rank in compute_ranks(unique).items():
                conn.execute(
                    "UPDATE competition_participants SET rank = %s WHERE participant_id = %s",
                    (rank, participant_id),
                )

            formula = _resolve_formula(conn, comp, on_missing_formula, result)
            result.formula_year = formula.year if formula else None
            _score_participants(conn, unique, formula, result)
    except _RETRYABLE as exc:
        raise PersistenceConflict(f"Conflict while ingesting '{comp.slug}': {exc}") from exc

    log.info(
        "%singested '%s': %d participants, %d scores, %d skipped%s",
        tag, comp.slug, counters.participants_upserted, counters.scores_computed,
        counters.participants_skipped, " (dry run, rolled back)" if dry_run else "",
    )
    return result


def ingest_with_retry(
    conn: psycopg.Connection,
    document: CanonicalDocument,
    max_attempts: int = 3,
    backoff_seconds: float = 0.2,
    **kwargs: Any,
) -> ImportResult:
    """ingest(), retried from scratch on PersistenceConflict only."""
    attempt = 1
    while True:
        try:
            return ingest(conn, document, **kwargs)
        except PersistenceConflict as exc:
            if attempt >= max_attempts:
                raise
            log.warning("Attempt %d/%d failed (%s); retrying", attempt, max_attempts, exc)
            time.sleep(backoff_seconds * attempt)
            attempt += 1
