"""streetlifting_etl.canonical

Canonical competition-results document (format_version 1.0.0).

Every source transformer emits a CanonicalDocument; the importer consumes
one. Numeric fields are Decimal, dates are datetime.date, and derived
values (best lift, total, rank, score) are never part of the document.

Usage:
    raw = load_document(Path("annecy-4-lift-2025.json"))
    report = validate_document(raw)          # streetlifting_etl.validator
    if report.ok:
        document = parse_document(raw)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping

from streetlifting_etl.normalize import (
    format_utc,
    normalize_space,
    parse_iso_date,
    parse_iso_datetime,
    parse_numeric,
)

FORMAT_VERSION = "1.0.0"

SOURCE_TYPES = ("liftcontrol", "pdf", "html", "csv", "manual")
COMPETITION_STATUSES = ("draft", "upcoming", "live", "completed", "cancelled")
CATEGORY_GENDERS = ("M", "F", "MX")
ATHLETE_GENDERS = ("M", "F")


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass
class SourceMetadata:
    type: str
    extracted_at: datetime
    extractor: str
    url: str | None = None
    original_filename: str | None = None


@dataclass
class FederationData:
    name: str
    abbreviation: str | None = None
    country: str | None = None


@dataclass
class CompetitionData:
    name: str
    slug: str
    federation: FederationData
    start_date: date
    end_date: date
    venue: str | None = None
    city: str | None = None
    country: str | None = None
    number_of_judges: int | None = None
    status: str = "completed"


@dataclass
class MovementData:
    name: str
    order: int
    is_required: bool = True


@dataclass
class AttemptData:
    attempt_number: int
    weight: Decimal
    is_successful: bool
    no_rep_reason: str | None = None


@dataclass
class LiftData:
    movement: str
    attempts: list[AttemptData] = field(default_factory=list)


@dataclass
class AthleteData:
    first_name: str
    last_name: str
    country: str
    gender: str | None = None
    bodyweight: Decimal | None = None
    nationality: str | None = None
    is_disqualified: bool = False
    disqualified_reason: str | None = None
    lifts: list[LiftData] = field(default_factory=list)

    def effective_gender(self, category_gender: str) -> str:
        """The athlete's own gender when given, else the category's."""
        return self.gender or category_gender


@dataclass
class CategoryData:
    name: str
    gender: str
    weight_class_min: Decimal | None = None
    weight_class_max: Decimal | None = None
    athletes: list[AthleteData] = field(default_factory=list)


@dataclass
class CanonicalDocument:
    source: SourceMetadata
    competition: CompetitionData
    movements: list[MovementData]
    categories: list[CategoryData]
    format_version: str = FORMAT_VERSION

    def iter_athletes(self):
        """Yield (category, athlete) pairs in document order."""
        for category in self.categories:
            for athlete in category.athletes:
                yield category, athlete


# ---------------------------------------------------------------------------
# Mapping → dataclasses
# ---------------------------------------------------------------------------

def _opt_str(value: Any) -> str | None:
    return normalize_space(value) if isinstance(value, str) else None


def _parse_attempt(raw: Mapping[str, Any]) -> AttemptData:
    return AttemptData(
        attempt_number=int(raw["attempt_number"]),
        weight=parse_numeric(raw["weight"]),
        is_successful=bool(raw["is_successful"]),
        no_rep_reason=_opt_str(raw.get("no_rep_reason")),
    )


def _parse_athlete(raw: Mapping[str, Any]) -> AthleteData:
    return AthleteData(
        first_name=normalize_space(raw["first_name"]),
        last_name=normalize_space(raw["last_name"]),
        country=normalize_space(raw["country"]),
        gender=_opt_str(raw.get("gender")),
        bodyweight=parse_numeric(raw.get("bodyweight")),
        nationality=_opt_str(raw.get("nationality")),
        is_disqualified=bool(raw.get("is_disqualified") or False),
        disqualified_reason=_opt_str(raw.get("disqualified_reason")),
        lifts=[
            LiftData(
                movement=lift["movement"],
                attempts=[_parse_attempt(a) for a in lift.get("attempts") or []],
            )
            for lift in raw.get("lifts") or []
        ],
    )


def parse_document(data: Mapping[str, Any]) -> CanonicalDocument:
    """Build a CanonicalDocument from a mapping that validated without errors.

    No checks are repeated here: call validate_document first.
    """
    src = data["source"]
    comp = data["competition"]
    fed = comp["federation"]
    judges = comp.get("number_of_judges")
    return CanonicalDocument(
        format_version=data["format_version"],
        source=SourceMetadata(
            type=src["type"],
            extracted_at=parse_iso_datetime(src["extracted_at"]),
            extractor=src["extractor"],
            url=_opt_str(src.get("url")),
            original_filename=_opt_str(src.get("original_filename")),
        ),
        competition=CompetitionData(
            name=normalize_space(comp["name"]),
            slug=comp["slug"].strip(),
            federation=FederationData(
                name=normalize_space(fed["name"]),
                abbreviation=_opt_str(fed.get("abbreviation")),
                country=_opt_str(fed.get("country")),
            ),
            start_date=parse_iso_date(comp["start_date"]),
            end_date=parse_iso_date(comp["end_date"]),
            venue=_opt_str(comp.get("venue")),
            city=_opt_str(comp.get("city")),
            country=_opt_str(comp.get("country")),
            number_of_judges=int(judges) if judges is not None else None,
            status=comp.get("status") or "completed",
        ),
        movements=[
            MovementData(
                name=m["name"],
                order=int(m["order"]),
                is_required=m.get("is_required", True) is not False,
            )
            for m in data["movements"]
        ],
        categories=[
            CategoryData(
                name=normalize_space(c["name"]),
                gender=c["gender"],
                weight_class_min=parse_numeric(c.get("weight_class_min")),
                weight_class_max=parse_numeric(c.get("weight_class_max")),
                athletes=[_parse_athlete(a) for a in c.get("athletes") or []],
            )
            for c in data["categories"]
        ],
    )


# ---------------------------------------------------------------------------
# Dataclasses → mapping / JSON
# ---------------------------------------------------------------------------

def document_to_dict(document: CanonicalDocument) -> dict[str, Any]:
    """Render a document as the canonical JSON mapping.

    Decimals stay Decimal and dates become ISO strings, so the result can be
    fed straight back into validate_document.
    """
    comp = document.competition
    return {
        "format_version": document.format_version,
        "source": {
            "type": document.source.type,
            "url": document.source.url,
            "extracted_at": format_utc(document.source.extracted_at),
            "extractor": document.source.extractor,
            "original_filename": document.source.original_filename,
        },
        "competition": {
            "name": comp.name,
            "slug": comp.slug,
            "federation": {
                "name": comp.federation.name,
                "abbreviation": comp.federation.abbreviation,
                "country": comp.federation.country,
            },
            "start_date": comp.start_date.isoformat(),
            "end_date": comp.end_date.isoformat(),
            "venue": comp.venue,
            "city": comp.city,
            "country": comp.country,
            "number_of_judges": comp.number_of_judges,
            "status": comp.status,
        },
        "movements": [
            {"name": m.name, "order": m.order, "is_required": m.is_required}
            for m in document.movements
        ],
        "categories": [
            {
                "name": c.name,
                "gender": c.gender,
                "weight_class_min": c.weight_class_min,
                "weight_class_max": c.weight_class_max,
                "athletes": [
                    {
                        "first_name": a.first_name,
                        "last_name": a.last_name,
                        "gender": a.gender,
                        "country": a.country,
                        "bodyweight": a.bodyweight,
                        "nationality": a.nationality,
                        "is_disqualified": a.is_disqualified,
                        "disqualified_reason": a.disqualified_reason,
                        "lifts": [
                            {
                                "movement": lift.movement,
                                "attempts": [
                                    {
                                        "attempt_number": att.attempt_number,
                                        "weight": att.weight,
                                        "is_successful": att.is_successful,
                                        "no_rep_reason": att.no_rep_reason,
                                    }
                                    for att in lift.attempts
                                ],
                            }
                            for lift in a.lifts
                        ],
                    }
                    for a in c.athletes
                ],
            }
            for c in document.categories
        ],
    }


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dump_document(document: CanonicalDocument, path: Path) -> Path:
    """Write a document as pretty-printed canonical JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(document_to_dict(document), indent=2, ensure_ascii=False, default=_json_default),
        encoding="utf-8",
    )
    return path


def load_document(path: Path) -> Any:
    """Read a canonical JSON file; numbers with a fraction load as Decimal."""
    return json.loads(path.read_text(encoding="utf-8"), parse_float=Decimal)
