"""streetlifting_etl.source_results_table

Tabular results-sheet sources: one row per attempt, as a CSV file or as the
first <table> of an HTML page.

Expected columns (header names are case/space insensitive):
    category, gender, first_name, last_name, country, nationality,
    bodyweight, is_disqualified, disqualified_reason,
    movement, attempt_number, weight, result, no_rep_reason

Competition-level fields come from a CompetitionMetadata YAML file.
Weights given in pounds (weight_unit='lb') are converted to kilograms.
A category whose athletes are of both genders becomes an MX category and
every athlete in it carries their own gender.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

import requests
from bs4 import BeautifulSoup

from streetlifting_etl.canonical import (
    AthleteData,
    AttemptData,
    CanonicalDocument,
    CategoryData,
    LiftData,
    MovementData,
    SourceMetadata,
)
from streetlifting_etl.normalize import (
    VOCABULARY,
    athlete_dedup_key,
    lb_to_kg,
    map_gender,
    map_movement,
    normalize_space,
    parse_bool,
    parse_numeric,
    parse_weight_class,
    trim,
)
from streetlifting_etl.shared import TransformationError
from streetlifting_etl.sources import CompetitionMetadata, register_transformer

log = logging.getLogger(__name__)

REQUIRED_COLUMNS = frozenset({
    "category",
    "gender",
    "first_name",
    "last_name",
    "movement",
    "attempt_number",
    "weight",
    "result",
})

WEIGHT_UNITS = ("kg", "lb")


@dataclass
class ResultsTable:
    rows: list[dict[str, str]]
    original_filename: str | None = None
    url: str | None = None


def normalize_header(name: str) -> str:
    return "_".join((name or "").strip().lower().replace("-", " ").split())


def normalize_headers(raw: dict[str, Any]) -> dict[str, str]:
    """Return a new dict keyed by normalized header names."""
    return {normalize_header(k): ("" if v is None else str(v)) for k, v in raw.items() if k is not None}


# ---------------------------------------------------------------------------
# Shared row → canonical conversion
# ---------------------------------------------------------------------------

class _ResultsTableTransformer:
    source_type = "csv"
    extractor = "results-table-v1"

    def __init__(self, metadata: CompetitionMetadata, weight_unit: str = "kg") -> None:
        if weight_unit not in WEIGHT_UNITS:
            raise TransformationError(f"weight_unit must be one of {WEIGHT_UNITS}, got {weight_unit!r}")
        self.metadata = metadata
        self.weight_unit = weight_unit

    def _kg(self, value: Decimal) -> Decimal:
        return lb_to_kg(value) if self.weight_unit == "lb" else value

    def convert(self, raw: ResultsTable) -> CanonicalDocument:
        if not raw.rows:
            raise TransformationError("Results table has no data rows")
        missing = REQUIRED_COLUMNS - set(raw.rows[0].keys())
        if missing:
            raise TransformationError(f"Results table is missing columns: {sorted(missing)}")

        # category name → {athlete key → (gender, AthleteData)}
        grouped: dict[str, dict[tuple, tuple[str, AthleteData]]] = {}
        lifts_by_athlete: dict[int, dict[str, LiftData]] = {}
        used_movements: set[str] = set()

        for idx, row in enumerate(raw.rows, start=1):
            where = f"row {idx}"
            category = normalize_space(row.get("category"))
            if not category:
                raise TransformationError(f"{where}: category is empty")
            gender = map_gender(row.get("gender"))
            if gender is None:
                raise TransformationError(f"{where}: unknown gender {row.get('gender')!r}")
            first = normalize_space(row.get("first_name"))
            last = normalize_space(row.get("last_name"))
            if not first or not last:
                raise TransformationError(f"{where}: first_name and last_name are required")
            country = normalize_space(row.get("country")) or self.metadata.default_athlete_country
            if not country:
                raise TransformationError(f"{where}: country is empty and no default_athlete_country is set")

            key = athlete_dedup_key(first, last, gender, country)
            athletes = grouped.setdefault(category, {})
            if key not in athletes:
                athletes[key] = (gender, self._athlete(row, first, last, country, where))
            athlete = athletes[key][1]
            if athlete.bodyweight is None:
                athlete.bodyweight = self._bodyweight(row, where)

            movement = map_movement(row.get("movement"))
            if movement is None:
                raise TransformationError(f"{where}: unknown movement {row.get('movement')!r}")
            attempt = self._attempt(row, where)
            if attempt is None:
                continue
            used_movements.add(movement)
            lifts = lifts_by_athlete.setdefault(id(athlete), {})
            lift = lifts.setdefault(movement, LiftData(movement=movement))
            if any(a.attempt_number == attempt.attempt_number for a in lift.attempts):
                raise TransformationError(
                    f"{where}: duplicate attempt {attempt.attempt_number} for {first} {last} ({movement})"
                )
            lift.attempts.append(attempt)

        if not used_movements:
            raise TransformationError("Results table contains no attempted lifts")

        categories = []
        for name, athletes in grouped.items():
            genders = {g for g, _ in athletes.values()}
            cat_gender = genders.pop() if len(genders) == 1 else "MX"
            lo, hi = parse_weight_class(name)
            cat = CategoryData(name=name, gender=cat_gender, weight_class_min=lo, weight_class_max=hi)
            for gender, athlete in athletes.values():
                if cat_gender == "MX":
                    athlete.gender = gender
                lifts = lifts_by_athlete.get(id(athlete), {})
                athlete.lifts = [
                    LiftData(movement=m, attempts=sorted(lifts[m].attempts, key=lambda a: a.attempt_number))
                    for m in VOCABULARY if m in lifts
                ]
                cat.athletes.append(athlete)
            categories.append(cat)

        log.info(
            "Converted %d rows into %d categories (%s)",
            len(raw.rows), len(categories), self.source_type,
        )
        return CanonicalDocument(
            source=SourceMetadata(
                type=self.source_type,
                url=raw.url,
                extracted_at=datetime.now(timezone.utc).replace(microsecond=0),
                extractor=self.extractor,
                original_filename=raw.original_filename,
            ),
            competition=self.metadata.to_competition(),
            movements=[
                MovementData(name=m, order=VOCABULARY.index(m) + 1)
                for m in VOCABULARY if m in used_movements
            ],
            categories=categories,
        )

    def _athlete(self, row: dict[str, str], first: str, last: str, country: str, where: str) -> AthleteData:
        dq = parse_bool(row.get("is_disqualified") or "")
        return AthleteData(
            first_name=first,
            last_name=last,
            country=country,
            nationality=normalize_space(row.get("nationality")) or self.metadata.default_athlete_nationality,
            bodyweight=self._bodyweight(row, where),
            is_disqualified=bool(dq),
            disqualified_reason=normalize_space(row.get("disqualified_reason")),
        )

    def _bodyweight(self, row: dict[str, str], where: str) -> Decimal | None:
        raw = trim(row.get("bodyweight"))
        if raw is None:
            return None
        value = parse_numeric(raw)
        if value is None:
            raise TransformationError(f"{where}: bodyweight {raw!r} is not numeric")
        return self._kg(value) if value > 0 else None

    def _attempt(self, row: dict[str, str], where: str) -> AttemptData | None:
        raw_weight = trim(row.get("weight"))
        if raw_weight is None:
            return None
        weight = parse_numeric(raw_weight)
        if weight is None:
            raise TransformationError(f"{where}: weight {raw_weight!r} is not numeric")
        if weight <= 0:
            return None
        try:
            number = int(trim(row.get("attempt_number")) or "")
        except ValueError:
            raise TransformationError(f"{where}: attempt_number {row.get('attempt_number')!r} is not an integer") from None
        if not 1 <= number <= 3:
            raise TransformationError(f"{where}: attempt_number must be 1..3, got {number}")
        success = parse_bool(row.get("result")) if trim(row.get("result")) else None
        if success is None:
            raise TransformationError(f"{where}: unrecognised result {row.get('result')!r}")
        return AttemptData(
            attempt_number=number,
            weight=self._kg(weight),
            is_successful=success,
            no_rep_reason=normalize_space(row.get("no_rep_reason")),
        )


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------

@register_transformer("results_csv")
class ResultsCsvTransformer(_ResultsTableTransformer):
    source_type = "csv"
    extractor = "results-csv-v1"

    def fetch(self, location: Path) -> ResultsTable:
        path = Path(location)
        try:
            with path.open(newline="", encoding="utf-8-sig") as fh:
                rows = [normalize_headers(r) for r in csv.DictReader(fh)]
        except OSError as exc:
            raise TransformationError(f"Cannot read results CSV {str(path)!r}: {exc}") from exc
        return ResultsTable(rows=rows, original_filename=path.name)


# ---------------------------------------------------------------------------
# HTML
# ---------------------------------------------------------------------------

def parse_html_table(html: str) -> list[dict[str, str]]:
    """Rows of the first <table> as dicts keyed by normalized header."""
    soup = BeautifulSoup(html, "html.parser")
    table = soup.find("table")
    if table is None:
        raise TransformationError("HTML page contains no <table>")
    trs = table.find_all("tr")
    if not trs:
        raise TransformationError("HTML table has no rows")
    headers = [
        normalize_header(cell.get_text(separator=" ", strip=True))
        for cell in trs[0].find_all(["th", "td"])
    ]
    rows = []
    for tr in trs[1:]:
        cells = tr.find_all(["td", "th"])
        if not cells:
            continue
        values = [cell.get_text(separator=" ", strip=True) for cell in cells]
        rows.append(dict(zip(headers, values)))
    return rows


@register_transformer("results_html")
class ResultsHtmlTransformer(_ResultsTableTransformer):
    source_type = "html"
    extractor = "results-html-v1"

    def __init__(
        self,
        metadata: CompetitionMetadata,
        weight_unit: str = "kg",
        session: requests.Session | None = None,
        timeout: int = 30,
    ) -> None:
        super().__init__(metadata, weight_unit)
        self.session = session
        self.timeout = timeout

    def fetch(self, location: str | Path) -> ResultsTable:
        location_str = str(location)
        if location_str.startswith(("http://", "https://")):
            session = self.session or requests.Session()
            try:
                resp = session.get(location_str, timeout=self.timeout)
                resp.raise_for_status()
            except requests.RequestException as exc:
                log.error("Results page GET %s failed: %s", location_str, exc)
                raise TransformationError(f"Results page unreachable: {exc}") from exc
            return ResultsTable(rows=parse_html_table(resp.text), url=location_str)
        path = Path(location)
        try:
            html = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise TransformationError(f"Cannot read results page {location_str!r}: {exc}") from exc
        return ResultsTable(rows=parse_html_table(html), original_filename=path.name)
