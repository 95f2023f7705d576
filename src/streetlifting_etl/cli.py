"""streetlifting_etl.cli

Unified CLI entrypoint for streetlifting results ingestion.

Modes (--mode):
  canonical_import      - validate + import one canonical JSON file (default)
  validate              - validate a canonical JSON file, no database
  liftcontrol_export    - fetch a predefined LiftControl competition and
                          write its canonical JSON (optionally import it)
  results_table_export  - convert a CSV / HTML results table + metadata YAML
                          into canonical JSON (optionally import it)
  recompute_scores      - batch recomputation of RIS scores
  compute_score         - score a hypothetical total with the current formula

Usage (canonical_import):
    streetlifting-etl \\
        --mode canonical_import \\
        --db-dsn "$DATABASE_URL" \\
        --canonical-path "artifacts/canonical/annecy-4-lift-2025.json"

Usage (liftcontrol_export):
    streetlifting-etl --mode liftcontrol_export --competition annecy --auto-import

Exit status is 0 on full success and 1 on any validation, transformation,
resolution or persistence failure; failures print a JSON error summary on
stderr.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any, NoReturn

import click
import psycopg

from streetlifting_etl.canonical import (
    CanonicalDocument,
    document_to_dict,
    dump_document,
    load_document,
    parse_document,
)
from streetlifting_etl.normalize import parse_numeric
from streetlifting_etl.shared import (
    EtlError,
    RejectWriter,
    RunCounters,
    ValidationError,
    utc_now_iso,
    write_run_report,
)
from streetlifting_etl.validator import (
    DEFAULT_RULES_PATH,
    ValidationReport,
    ValidationRules,
    load_validation_rules,
    validate_document,
)

log = logging.getLogger(__name__)

MODES = [
    "canonical_import",
    "validate",
    "liftcontrol_export",
    "results_table_export",
    "recompute_scores",
    "compute_score",
]


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

def _fail(run_id: str, payload: dict[str, Any], message: str) -> NoReturn:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    click.echo(json.dumps({"run_id": run_id, **payload}, indent=2, default=str), err=True)
    sys.exit(1)


def _require(run_id: str, mode: str, **flags: Any) -> None:
    missing = [f"--{name.replace('_', '-')}" for name, value in flags.items() if value in (None, "")]
    if missing:
        click.echo(f"[{run_id}] FATAL: {mode} mode requires: {', '.join(missing)}", err=True)
        sys.exit(1)


def _record_report(
    report: ValidationReport,
    source_path: str,
    counters: RunCounters,
    rejects: RejectWriter,
) -> None:
    counters.validation_errors += len(report.errors)
    counters.validation_warnings += len(report.warnings)
    for issue in report.errors:
        rejects.write(source_path, "error", issue)
    for issue in report.warnings:
        rejects.write(source_path, "warning", issue)
        counters.warnings.append(str(issue))


def _echo_report(run_id: str, report: ValidationReport) -> None:
    for issue in report.errors:
        click.echo(f"[{run_id}]   ERROR   {issue}", err=True)
    for issue in report.warnings:
        click.echo(f"[{run_id}]   warning {issue}")


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

def _connect(run_id: str, db_dsn: str, autocommit: bool = False) -> psycopg.Connection:
    try:
        return psycopg.connect(db_dsn, autocommit=autocommit)
    except psycopg.Error as exc:
        _fail(run_id, {"error": "database_error", "message": str(exc)}, f"cannot connect to database: {exc}")


def _import_document(
    run_id: str,
    db_dsn: str,
    document: CanonicalDocument,
    rules: ValidationRules,
    counters: RunCounters,
    on_missing_formula: str,
    max_retries: int,
    dry_run: bool,
) -> None:
    from streetlifting_etl.importer import ingest_with_retry

    conn = _connect(run_id, db_dsn)
    try:
        result = ingest_with_retry(
            conn, document,
            max_attempts=max_retries,
            rules=rules,
            on_missing_formula=on_missing_formula,
            run_id=run_id,
            dry_run=dry_run,
        )
    except EtlError as exc:
        counters.documents_rejected += 1
        _fail(run_id, exc.to_dict(), str(exc))
    except psycopg.Error as exc:
        counters.documents_rejected += 1
        _fail(run_id, {"error": "database_error", "message": str(exc)}, f"database error: {exc}")
    finally:
        conn.close()

    c = result.counters
    counters.documents_imported += 1
    counters.athletes_created += c.athletes_created
    counters.athletes_matched += c.athletes_matched
    counters.participants_upserted += c.participants_upserted
    counters.lifts_upserted += c.lifts_upserted
    counters.lifts_deleted += c.lifts_deleted
    counters.attempts_upserted += c.attempts_upserted
    counters.attempts_deleted += c.attempts_deleted
    counters.scores_computed += c.scores_computed
    counters.participants_skipped += c.participants_skipped
    counters.formula_year = result.formula_year
    for warning in result.warnings:
        if warning not in counters.warnings:
            counters.warnings.append(warning)

    prefix = "[dry-run] " if dry_run else ""
    click.echo(
        f"[{run_id}] {prefix}Imported '{result.competition_slug}' "
        f"(athletes created={c.athletes_created} matched={c.athletes_matched}, "
        f"participants={c.participants_upserted}, lifts={c.lifts_upserted}, "
        f"attempts={c.attempts_upserted}, scores={c.scores_computed}, "
        f"skipped={c.participants_skipped}, formula={result.formula_year})"
    )
    if dry_run:
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")


def _validated_export(
    run_id: str,
    document: CanonicalDocument,
    rules: ValidationRules,
    output_dir: Path,
    counters: RunCounters,
    rejects: RejectWriter,
) -> Path:
    report = validate_document(document_to_dict(document), rules)
    out_path = output_dir / f"{document.competition.slug}.json"
    _record_report(report, str(out_path), counters, rejects)
    _echo_report(run_id, report)
    if report.errors:
        counters.documents_rejected += 1
        _fail(run_id, ValidationError(report.errors).to_dict(), "converted document failed validation")
    dump_document(document, out_path)
    click.echo(f"[{run_id}] Wrote canonical document: {out_path}")
    return out_path


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _run_validate(
    run_id: str,
    canonical_path: str,
    rules: ValidationRules,
    counters: RunCounters,
    rejects: RejectWriter,
) -> CanonicalDocument:
    path = Path(canonical_path)
    try:
        raw = load_document(path)
    except (OSError, ValueError) as exc:
        counters.documents_rejected += 1
        _fail(run_id, {"error": "unreadable_document", "message": str(exc)}, f"cannot read {path}: {exc}")
    counters.documents_read += 1
    report = validate_document(raw, rules)
    _record_report(report, str(path), counters, rejects)
    _echo_report(run_id, report)
    if report.errors:
        counters.documents_rejected += 1
        _fail(
            run_id,
            ValidationError(report.errors).to_dict(),
            f"{path.name}: {len(report.errors)} validation error(s), {len(report.warnings)} warning(s)",
        )
    click.echo(f"[{run_id}] {path.name}: valid ({len(report.warnings)} warning(s))")
    return parse_document(raw)


def _run_liftcontrol_export(
    run_id: str,
    competition: str | None,
    list_competitions: bool,
    registry_path: str | None,
    output_dir: Path,
    rules: ValidationRules,
    counters: RunCounters,
    rejects: RejectWriter,
) -> CanonicalDocument | None:
    from streetlifting_etl.source_liftcontrol import find_competition, load_liftcontrol_registry
    from streetlifting_etl.sources import get_transformer, transform

    registry = load_liftcontrol_registry(Path(registry_path) if registry_path else None)
    if list_competitions:
        for base_slug, comp in sorted(registry.items()):
            click.echo(f"{base_slug}  ({len(comp.sub_slugs)} session(s)) {comp.metadata.name}")
        return None
    _require(run_id, "liftcontrol_export", competition=competition)
    try:
        target = find_competition(registry, competition)  # type: ignore[arg-type]
        click.echo(f"[{run_id}] Fetching {target.base_slug}: {', '.join(target.sub_slugs)}")
        document = transform(get_transformer("liftcontrol"), target)
    except EtlError as exc:
        _fail(run_id, exc.to_dict(), str(exc))
    counters.documents_read += 1
    _validated_export(run_id, document, rules, output_dir, counters, rejects)
    return document


def _run_results_table_export(
    run_id: str,
    table_path: str,
    metadata_path: str,
    weight_unit: str,
    output_dir: Path,
    rules: ValidationRules,
    counters: RunCounters,
    rejects: RejectWriter,
) -> CanonicalDocument:
    from streetlifting_etl.sources import get_transformer, load_competition_metadata, transform

    is_url = table_path.startswith(("http://", "https://"))
    suffix = Path(table_path).suffix.lower()
    name = "results_html" if is_url or suffix in (".html", ".htm") else "results_csv"
    try:
        metadata = load_competition_metadata(Path(metadata_path))
        transformer = get_transformer(name, metadata=metadata, weight_unit=weight_unit)
        document = transform(transformer, table_path if is_url else Path(table_path))
    except EtlError as exc:
        _fail(run_id, exc.to_dict(), str(exc))
    except ValueError as exc:
        _fail(run_id, {"error": "invalid_metadata", "message": str(exc)}, str(exc))
    counters.documents_read += 1
    _validated_export(run_id, document, rules, output_dir, counters, rejects)
    return document


def _run_recompute(
    run_id: str,
    db_dsn: str,
    formula_year: int | None,
    all_versions: bool,
    max_workers: int,
    counters: RunCounters,
) -> None:
    from psycopg_pool import ConnectionPool, PoolTimeout

    from streetlifting_etl.recompute import recompute_scores

    try:
        with ConnectionPool(
            conninfo=db_dsn,
            min_size=1,
            max_size=max(max_workers, 1),
            name="streetlifting_recompute",
        ) as pool:
            result = recompute_scores(
                pool, formula_year=formula_year, all_versions=all_versions, max_workers=max_workers,
            )
    except EtlError as exc:
        _fail(run_id, exc.to_dict(), str(exc))
    except (PoolTimeout, psycopg.Error) as exc:
        _fail(run_id, {"error": "database_error", "message": str(exc)}, f"database error: {exc}")
    counters.scores_recomputed = result.scores_written
    counters.score_failures = result.failures
    counters.warnings.extend(result.errors)
    click.echo(
        f"[{run_id}] Recomputed {result.scores_written} score(s) for "
        f"{result.participants_considered} participant(s) with formula(s) {result.formula_years}; "
        f"{result.cached_scores_updated} cached score(s) updated"
    )
    if result.failures:
        _fail(run_id, {"error": "recompute_failures", **result.to_dict()}, f"{result.failures} participant(s) failed")


def _run_compute_score(
    run_id: str,
    db_dsn: str,
    bodyweight: str,
    total: str,
    gender: str,
) -> None:
    from streetlifting_etl.recompute import compute_current_score

    parsed = {"total": parse_numeric(total), "bodyweight": parse_numeric(bodyweight)}
    invalid = [f"--{name}" for name, value in parsed.items() if value is None]
    if invalid:
        _fail(
            run_id,
            {"error": "invalid_argument", "message": f"not a number: {', '.join(invalid)}"},
            f"compute_score needs numeric {', '.join(invalid)}",
        )

    conn = _connect(run_id, db_dsn, autocommit=True)
    try:
        score, formula = compute_current_score(conn, parsed["total"], parsed["bodyweight"], gender)
    except EtlError as exc:
        _fail(run_id, exc.to_dict(), str(exc))
    except psycopg.Error as exc:
        _fail(run_id, {"error": "database_error", "message": str(exc)}, f"database error: {exc}")
    finally:
        conn.close()
    click.echo(json.dumps({
        "ris_score": str(score),
        "formula_year": formula.year,
        "bodyweight": bodyweight,
        "total": total,
        "gender": gender,
    }))


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option("--mode", default="canonical_import", type=click.Choice(MODES), show_default=True)
@click.option("--db-dsn", default=None, envvar="DATABASE_URL", help="PostgreSQL DSN (env: DATABASE_URL)")
@click.option("--rules-path", default=None, type=click.Path(), help="Validation rules YAML")
# canonical_import / validate
@click.option("--canonical-path", default=None, type=click.Path(), help="[canonical_import|validate] Canonical JSON file")
@click.option(
    "--on-missing-formula",
    default="warn",
    type=click.Choice(["warn", "fail"]),
    show_default=True,
    help="No formula effective on the competition date: skip scoring with a warning, or fail",
)
@click.option("--max-retries", default=3, type=int, show_default=True, help="Attempts on persistence conflicts")
# exports
@click.option("--competition", default=None, help="[liftcontrol_export] Competition id or alias")
@click.option("--list-competitions", is_flag=True, default=False, help="[liftcontrol_export] List predefined competitions")
@click.option("--registry-path", default=None, type=click.Path(), help="[liftcontrol_export] Competitions YAML")
@click.option("--table-path", default=None, help="[results_table_export] .csv / .html file or URL")
@click.option("--metadata-path", default=None, type=click.Path(), help="[results_table_export] Competition metadata YAML")
@click.option("--weight-unit", default="kg", type=click.Choice(["kg", "lb"]), show_default=True)
@click.option("--output-dir", default="./artifacts/canonical", type=click.Path(), show_default=True)
@click.option("--auto-import", is_flag=True, default=False, help="Import the exported document")
# scoring
@click.option("--formula-year", default=None, type=int, help="[recompute_scores] Formula version (default: current)")
@click.option("--all-versions", is_flag=True, default=False, help="[recompute_scores] Score with every formula version")
@click.option("--max-workers", default=4, type=int, show_default=True)
@click.option("--bodyweight", default=None, help="[compute_score] Bodyweight in kg")
@click.option("--total", default=None, help="[compute_score] Total in kg")
@click.option("--gender", default=None, type=click.Choice(["M", "F"]), help="[compute_score]")
# shared
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/validation_issues.csv",
    show_default=True,
    help="CSV of validation errors and warnings",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--verbose", is_flag=True, default=False)
def main(
    mode: str,
    db_dsn: str | None,
    rules_path: str | None,
    canonical_path: str | None,
    on_missing_formula: str,
    max_retries: int,
    competition: str | None,
    list_competitions: bool,
    registry_path: str | None,
    table_path: str | None,
    metadata_path: str | None,
    weight_unit: str,
    output_dir: str,
    auto_import: bool,
    formula_year: int | None,
    all_versions: bool,
    max_workers: int,
    bodyweight: str | None,
    total: str | None,
    gender: str | None,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    verbose: bool,
) -> None:
    """Streetlifting results ingestion CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = utc_now_iso()
    counters = RunCounters()
    rejects = RejectWriter(Path(rejects_path))

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    try:
        rules = load_validation_rules(Path(rules_path) if rules_path else DEFAULT_RULES_PATH)
    except (OSError, ValueError) as exc:
        _fail(run_id, {"error": "invalid_rules", "message": str(exc)}, f"cannot load validation rules: {exc}")

    source_paths: dict[str, str] = {}
    try:
        if mode == "validate":
            _require(run_id, mode, canonical_path=canonical_path)
            source_paths["canonical_path"] = canonical_path  # type: ignore[assignment]
            _run_validate(run_id, canonical_path, rules, counters, rejects)  # type: ignore[arg-type]
        elif mode == "canonical_import":
            _require(run_id, mode, canonical_path=canonical_path, db_dsn=db_dsn)
            source_paths["canonical_path"] = canonical_path  # type: ignore[assignment]
            document = _run_validate(run_id, canonical_path, rules, counters, rejects)  # type: ignore[arg-type]
            _import_document(
                run_id, db_dsn, document, rules, counters,  # type: ignore[arg-type]
                on_missing_formula, max_retries, dry_run,
            )
        elif mode == "liftcontrol_export":
            if auto_import:
                _require(run_id, mode, db_dsn=db_dsn)
            document = _run_liftcontrol_export(
                run_id, competition, list_competitions, registry_path,
                Path(output_dir), rules, counters, rejects,
            )
            source_paths["competition"] = competition or ""
            if document is not None and auto_import:
                _import_document(
                    run_id, db_dsn, document, rules, counters,  # type: ignore[arg-type]
                    on_missing_formula, max_retries, dry_run,
                )
        elif mode == "results_table_export":
            _require(run_id, mode, table_path=table_path, metadata_path=metadata_path)
            if auto_import:
                _require(run_id, mode, db_dsn=db_dsn)
            source_paths.update({"table_path": table_path, "metadata_path": metadata_path})  # type: ignore[dict-item]
            document = _run_results_table_export(
                run_id, table_path, metadata_path, weight_unit,  # type: ignore[arg-type]
                Path(output_dir), rules, counters, rejects,
            )
            if auto_import:
                _import_document(
                    run_id, db_dsn, document, rules, counters,  # type: ignore[arg-type]
                    on_missing_formula, max_retries, dry_run,
                )
        elif mode == "recompute_scores":
            _require(run_id, mode, db_dsn=db_dsn)
            _run_recompute(run_id, db_dsn, formula_year, all_versions, max_workers, counters)  # type: ignore[arg-type]
        elif mode == "compute_score":
            _require(run_id, mode, db_dsn=db_dsn, bodyweight=bodyweight, total=total, gender=gender)
            _run_compute_score(run_id, db_dsn, bodyweight, total, gender)  # type: ignore[arg-type]
            return
    finally:
        rejects.close()

    if mode == "liftcontrol_export" and list_competitions:
        return

    report_path = write_run_report(run_id, started_at, mode, dry_run, source_paths, counters)
    click.echo(f"[{run_id}] Run report: {report_path}")
    if rejects.rows_written:
        click.echo(f"[{run_id}] Validation issues: {rejects_path}")


if __name__ == "__main__":
    main()
