"""streetlifting_etl.shared

Shared utilities used by every CLI mode: the exception taxonomy,
RejectWriter (itemized validation issues), RunCounters and run-report
writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from streetlifting_etl.validator import ValidationIssue


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class EtlError(Exception):
    """Root of every error raised by the ingestion pipeline."""

    kind = "etl_error"

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": str(self)}


class ValidationError(EtlError):
    """A canonical document failed validation; nothing was written."""

    kind = "validation_error"

    def __init__(self, issues: list[ValidationIssue], message: str | None = None) -> None:
        self.issues = list(issues)
        super().__init__(message or f"{len(self.issues)} validation error(s)")

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["issues"] = [i.to_dict() for i in self.issues]
        return out


class TransformationError(EtlError):
    """A source payload could not be converted to canonical form."""

    kind = "transformation_error"


class ResolutionError(EtlError):
    """A reference (formula version, movement, ...) could not be resolved."""

    kind = "resolution_error"


class NoFormulaForDateError(ResolutionError):
    kind = "no_formula_for_date"


class AmbiguousFormulaError(ResolutionError):
    kind = "ambiguous_formula"


class PersistenceConflict(EtlError):
    """Unique violation or serialization failure; the ingest may be retried."""

    kind = "persistence_conflict"


class ArithmeticDomainError(EtlError, ArithmeticError):
    """Scoring input outside the formula's domain (zero / negative)."""

    kind = "arithmetic_domain_error"


class RuleSetValidationError(ValueError):
    """Raised when a YAML rule or config file fails schema validation."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for validation issues of rejected documents."""

    fieldnames = ["source_path", "severity", "path", "message"]

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.rows_written = 0

    def write(self, source_path: str, severity: str, issue: ValidationIssue) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(self._fh, fieldnames=self.fieldnames)
            self._writer.writeheader()
        self._writer.writerow({
            "source_path": source_path,
            "severity": severity,
            "path": issue.path,
            "message": issue.message,
        })
        self._fh.flush()
        self.rows_written += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    documents_read: int = 0
    documents_rejected: int = 0
    documents_imported: int = 0
    validation_errors: int = 0
    validation_warnings: int = 0
    athletes_created: int = 0
    athletes_matched: int = 0
    participants_upserted: int = 0
    lifts_upserted: int = 0
    lifts_deleted: int = 0
    attempts_upserted: int = 0
    attempts_deleted: int = 0
    scores_computed: int = 0
    participants_skipped: int = 0
    scores_recomputed: int = 0
    score_failures: int = 0
    formula_year: int | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "documents_read": self.documents_read,
            "documents_rejected": self.documents_rejected,
            "documents_imported": self.documents_imported,
            "validation_errors": self.validation_errors,
            "validation_warnings": self.validation_warnings,
            "athletes_created": self.athletes_created,
            "athletes_matched": self.athletes_matched,
            "participants_upserted": self.participants_upserted,
            "lifts_upserted": self.lifts_upserted,
            "lifts_deleted": self.lifts_deleted,
            "attempts_upserted": self.attempts_upserted,
            "attempts_deleted": self.attempts_deleted,
            "scores_computed": self.scores_computed,
            "participants_skipped": self.participants_skipped,
            "scores_recomputed": self.scores_recomputed,
            "score_failures": self.score_failures,
            "formula_year": self.formula_year,
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: RunCounters,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": utc_now_iso(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
