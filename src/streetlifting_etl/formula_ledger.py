"""streetlifting_etl.formula_ledger

Versioned RIS formula constants.

A FormulaLedger is an immutable, ordered collection of FormulaVersion rows
as stored in ris_formula_versions. Versions are resolved by the date a
competition took place, never by whichever version happens to be current:
a 2024 meet keeps its 2024 score after a 2026 formula is published.

"Current" is the is_current attribute of a version, used only for
on-demand scoring of hypothetical lifts and for default recomputation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable

import psycopg

from streetlifting_etl.shared import (
    AmbiguousFormulaError,
    NoFormulaForDateError,
    ResolutionError,
)


@dataclass(frozen=True)
class FormulaConstants:
    """A, K, B, v, Q for one gender."""

    a: Decimal
    k: Decimal
    b: Decimal
    v: Decimal
    q: Decimal


@dataclass(frozen=True)
class FormulaVersion:
    year: int
    effective_from: date
    effective_until: date | None
    is_current: bool
    men: FormulaConstants
    women: FormulaConstants
    formula_id: str | None = None
    notes: str | None = None

    def covers(self, on: date) -> bool:
        """True when on ∈ [effective_from, effective_until)."""
        if on < self.effective_from:
            return False
        return self.effective_until is None or on < self.effective_until

    def constants_for_gender(self, gender: str) -> FormulaConstants:
        if gender == "M":
            return self.men
        if gender == "F":
            return self.women
        raise ResolutionError(f"No RIS constants for gender {gender!r}; expected 'M' or 'F'")


RIS_2025 = FormulaVersion(
    year=2025,
    effective_from=date(2025, 1, 1),
    effective_until=None,
    is_current=True,
    men=FormulaConstants(
        a=Decimal("338.00000"),
        k=Decimal("549.00000"),
        b=Decimal("0.11354"),
        v=Decimal("74.77700"),
        q=Decimal("0.53096"),
    ),
    women=FormulaConstants(
        a=Decimal("164.00000"),
        k=Decimal("270.00000"),
        b=Decimal("0.13776"),
        v=Decimal("57.85500"),
        q=Decimal("0.37089"),
    ),
    notes="RIS 2025 Edition - Created by Waris Radji & Mathieu Ardoin",
)


class FormulaLedger:
    """Read-only view over every known formula version."""

    def __init__(self, versions: Iterable[FormulaVersion]) -> None:
        self._versions = tuple(sorted(versions, key=lambda v: (v.effective_from, v.year)))

    @property
    def versions(self) -> tuple[FormulaVersion, ...]:
        return self._versions

    def __len__(self) -> int:
        return len(self._versions)

    def resolve_for_date(self, on: date) -> FormulaVersion:
        """Return the single version whose effective window contains on.

        Raises:
            NoFormulaForDateError: no window contains the date.
            AmbiguousFormulaError: several windows contain the date.
        """
        matches = [v for v in self._versions if v.covers(on)]
        if not matches:
            raise NoFormulaForDateError(f"No RIS formula version is effective on {on.isoformat()}")
        if len(matches) > 1:
            years = ", ".join(str(v.year) for v in matches)
            raise AmbiguousFormulaError(
                f"{len(matches)} RIS formula versions are effective on {on.isoformat()} (years {years})"
            )
        return matches[0]

    def current(self) -> FormulaVersion:
        """Return the version flagged is_current.

        Raises:
            ResolutionError: no version is flagged current.
            AmbiguousFormulaError: more than one version is flagged current.
        """
        flagged = [v for v in self._versions if v.is_current]
        if not flagged:
            raise ResolutionError("No RIS formula version is flagged as current")
        if len(flagged) > 1:
            years = ", ".join(str(v.year) for v in flagged)
            raise AmbiguousFormulaError(f"{len(flagged)} RIS formula versions are flagged current (years {years})")
        return flagged[0]

    def by_year(self, year: int) -> FormulaVersion:
        for version in self._versions:
            if version.year == year:
                return version
        raise ResolutionError(f"No RIS formula version for year {year}")


# ---------------------------------------------------------------------------
# DB loader
# ---------------------------------------------------------------------------

def load_formula_ledger(conn: psycopg.Connection) -> FormulaLedger:
    rows = conn.execute(
        """
        SELECT formula_id, year, effective_from, effective_until, is_current,
               men_a, men_k, men_b, men_v, men_q,
               women_a, women_k, women_b, women_v, women_q,
               notes
        FROM ris_formula_versions
        ORDER BY effective_from, year
        """
    ).fetchall()
    return FormulaLedger(
        FormulaVersion(
            formula_id=str(r[0]),
            year=r[1],
            effective_from=r[2],
            effective_until=r[3],
            is_current=r[4],
            men=FormulaConstants(*r[5:10]),
            women=FormulaConstants(*r[10:15]),
            notes=r[15],
        )
        for r in rows
    )
