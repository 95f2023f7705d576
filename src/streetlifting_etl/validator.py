"""streetlifting_etl.validator

Canonical-document validator.

Responsibilities:
  - Load and validate the YAML rule file (config/validation_rules.yml):
    movement vocabulary + display order, plausible weight ranges,
    plausible bodyweight range, supported format versions
  - Check a raw canonical mapping and return a ValidationReport of blocking
    errors and non-blocking warnings, each located by a JSONPath-like path
    (e.g. categories[0].athletes[2].lifts[1].attempts[0].weight)

validate_document is read-only and never raises for document problems;
callers decide what to do with report.errors.

Usage:
    rules = load_validation_rules(Path("config/validation_rules.yml"))
    report = validate_document(raw, rules)
    report.raise_for_errors()
"""

from __future__ import annotations

import functools
import hashlib
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping

import yaml

from streetlifting_etl.canonical import (
    ATHLETE_GENDERS,
    CATEGORY_GENDERS,
    COMPETITION_STATUSES,
    SOURCE_TYPES,
)
from streetlifting_etl.normalize import (
    athlete_dedup_key,
    parse_iso_date,
    parse_iso_datetime,
    parse_numeric,
)
from streetlifting_etl.shared import RuleSetValidationError, ValidationError

DEFAULT_RULES_PATH = Path(__file__).resolve().parents[2] / "config" / "validation_rules.yml"

COMPUTED_FIELDS = frozenset({"rank", "total", "best", "max_weight", "ris", "ris_score", "score"})

MAX_ATTEMPTS = 3


# ---------------------------------------------------------------------------
# Issues and report
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ValidationIssue:
    path: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "message": self.message}

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass
class ValidationReport:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def error(self, path: str, message: str) -> None:
        self.errors.append(ValidationIssue(path, message))

    def warn(self, path: str, message: str) -> None:
        self.warnings.append(ValidationIssue(path, message))

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ValidationError(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.ok,
            "errors": [i.to_dict() for i in self.errors],
            "warnings": [i.to_dict() for i in self.warnings],
        }


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MovementRule:
    name: str
    order: int
    weight_min: Decimal | None = None
    weight_max: Decimal | None = None


@dataclass
class ValidationRules:
    """Parsed, validated rule set loaded from a YAML file."""

    version: str
    format_versions: tuple[str, ...]
    movements: dict[str, MovementRule]
    bodyweight_min: Decimal | None = None
    bodyweight_max: Decimal | None = None
    yaml_hash: str = ""

    @property
    def vocabulary(self) -> tuple[str, ...]:
        return tuple(sorted(self.movements, key=lambda n: self.movements[n].order))

    def display_order(self, movement: str) -> int:
        return self.movements[movement].order


def load_validation_rules(yaml_path: Path | None = None) -> ValidationRules:
    """Load, validate, and return ValidationRules from a YAML file.

    Raises:
        RuleSetValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    yaml_path = yaml_path or DEFAULT_RULES_PATH
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    validate_rules(data)

    movements: dict[str, MovementRule] = {}
    for entry in data["movements"]:
        plausible = entry.get("plausible_weight") or {}
        movements[entry["name"]] = MovementRule(
            name=entry["name"],
            order=int(entry["order"]),
            weight_min=parse_numeric(plausible.get("min")),
            weight_max=parse_numeric(plausible.get("max")),
        )
    bodyweight = data.get("bodyweight") or {}
    return ValidationRules(
        version=str(data.get("version", "1")),
        format_versions=tuple(str(v) for v in data["format_versions"]),
        movements=movements,
        bodyweight_min=parse_numeric(bodyweight.get("min")),
        bodyweight_max=parse_numeric(bodyweight.get("max")),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )


@functools.lru_cache(maxsize=1)
def default_validation_rules() -> ValidationRules:
    return load_validation_rules(DEFAULT_RULES_PATH)


def _check_range(label: str, bounds: Any) -> None:
    if bounds is None:
        return
    if not isinstance(bounds, dict):
        raise RuleSetValidationError(f"'{label}' must be a mapping with min/max.")
    lo = parse_numeric(bounds.get("min"))
    hi = parse_numeric(bounds.get("max"))
    if bounds.get("min") is not None and lo is None:
        raise RuleSetValidationError(f"'{label}.min' value {bounds.get('min')!r} is not numeric.")
    if bounds.get("max") is not None and hi is None:
        raise RuleSetValidationError(f"'{label}.max' value {bounds.get('max')!r} is not numeric.")
    if lo is not None and hi is not None and lo >= hi:
        raise RuleSetValidationError(f"'{label}.min' ({lo}) must be < '{label}.max' ({hi}).")


def validate_rules(data: Any) -> None:
    """Raise RuleSetValidationError if data does not match the rule schema."""
    if not isinstance(data, dict):
        raise RuleSetValidationError("YAML root must be a mapping.")

    versions = data.get("format_versions")
    if not isinstance(versions, list) or not versions:
        raise RuleSetValidationError("'format_versions' must be a non-empty list.")

    movements = data.get("movements")
    if not isinstance(movements, list) or not movements:
        raise RuleSetValidationError("'movements' must be a non-empty list.")

    seen: set[str] = set()
    for idx, entry in enumerate(movements):
        if not isinstance(entry, dict):
            raise RuleSetValidationError(f"movements[{idx}] must be a mapping.")
        name = entry.get("name")
        if not isinstance(name, str) or not name.strip():
            raise RuleSetValidationError(f"movements[{idx}].name must be a non-empty string.")
        if name in seen:
            raise RuleSetValidationError(f"Duplicate movement '{name}'.")
        seen.add(name)
        order = entry.get("order")
        if not isinstance(order, int) or isinstance(order, bool) or order < 1:
            raise RuleSetValidationError(f"movements[{idx}].order must be an integer >= 1.")
        _check_range(f"movements[{idx}].plausible_weight", entry.get("plausible_weight"))

    _check_range("bodyweight", data.get("bodyweight"))


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _missing(obj: Mapping[str, Any], key: str) -> bool:
    return obj.get(key) is None


def _require_str(report: ValidationReport, obj: Mapping[str, Any], key: str, path: str) -> str | None:
    value = obj.get(key)
    if value is None:
        report.error(f"{path}.{key}", "required field is missing")
        return None
    if not isinstance(value, str) or not value.strip():
        report.error(f"{path}.{key}", "must be a non-empty string")
        return None
    return value


def _optional_str(report: ValidationReport, obj: Mapping[str, Any], key: str, path: str) -> None:
    value = obj.get(key)
    if value is not None and not isinstance(value, str):
        report.error(f"{path}.{key}", "must be a string")


def _require_object(report: ValidationReport, obj: Mapping[str, Any], key: str, path: str) -> Mapping | None:
    value = obj.get(key)
    loc = f"{path}.{key}" if path else key
    if value is None:
        report.error(loc, "required field is missing")
        return None
    if not isinstance(value, Mapping):
        report.error(loc, "must be an object")
        return None
    return value


def _require_list(report: ValidationReport, obj: Mapping[str, Any], key: str, path: str) -> list | None:
    value = obj.get(key)
    loc = f"{path}.{key}" if path else key
    if value is None:
        report.error(loc, "required field is missing")
        return None
    if not isinstance(value, list):
        report.error(loc, "must be an array")
        return None
    return value


def _check_computed(report: ValidationReport, obj: Mapping[str, Any], path: str) -> None:
    for key in sorted(COMPUTED_FIELDS & set(obj.keys())):
        report.error(f"{path}.{key}", "computed field must not be present; it is derived on import")


def _outside(value: Decimal, lo: Decimal | None, hi: Decimal | None) -> bool:
    return (lo is not None and value < lo) or (hi is not None and value > hi)


# ---------------------------------------------------------------------------
# Section checks
# ---------------------------------------------------------------------------

def _check_source(report: ValidationReport, data: Mapping[str, Any]) -> None:
    source = _require_object(report, data, "source", "")
    if source is None:
        return
    stype = _require_str(report, source, "type", "source")
    if stype is not None and stype not in SOURCE_TYPES:
        report.error("source.type", f"'{stype}' is not one of {list(SOURCE_TYPES)}")
    extracted_at = source.get("extracted_at")
    if extracted_at is None:
        report.error("source.extracted_at", "required field is missing")
    elif parse_iso_datetime(extracted_at) is None:
        report.error("source.extracted_at", f"'{extracted_at}' is not an ISO-8601 timestamp")
    _require_str(report, source, "extractor", "source")
    _optional_str(report, source, "url", "source")
    _optional_str(report, source, "original_filename", "source")


def _check_competition(report: ValidationReport, data: Mapping[str, Any]) -> None:
    comp = _require_object(report, data, "competition", "")
    if comp is None:
        return
    _require_str(report, comp, "name", "competition")
    _require_str(report, comp, "slug", "competition")

    federation = _require_object(report, comp, "federation", "competition")
    if federation is not None:
        _require_str(report, federation, "name", "competition.federation")
        _optional_str(report, federation, "abbreviation", "competition.federation")
        _optional_str(report, federation, "country", "competition.federation")

    dates = {}
    for key in ("start_date", "end_date"):
        raw = comp.get(key)
        if raw is None:
            report.error(f"competition.{key}", "required field is missing")
            continue
        parsed = parse_iso_date(raw)
        if parsed is None:
            report.error(f"competition.{key}", f"'{raw}' is not a valid YYYY-MM-DD date")
        else:
            dates[key] = parsed
    if len(dates) == 2 and dates["end_date"] < dates["start_date"]:
        report.error("competition.end_date", "end_date is before start_date")

    for key in ("venue", "city", "country"):
        _optional_str(report, comp, key, "competition")

    judges = comp.get("number_of_judges")
    if judges is None:
        report.warn("competition.number_of_judges", "optional field is missing")
    elif not _is_int(judges) or judges not in (1, 3):
        report.error("competition.number_of_judges", f"must be 1 or 3, got {judges!r}")

    status = comp.get("status")
    if status is not None and status not in COMPETITION_STATUSES:
        report.error("competition.status", f"'{status}' is not one of {list(COMPETITION_STATUSES)}")


def _check_movements(report: ValidationReport, data: Mapping[str, Any], rules: ValidationRules) -> set[str]:
    declared: set[str] = set()
    movements = _require_list(report, data, "movements", "")
    if movements is None:
        return declared
    if not movements:
        report.error("movements", "competition must declare at least one movement")
    for idx, movement in enumerate(movements):
        path = f"movements[{idx}]"
        if not isinstance(movement, Mapping):
            report.error(path, "must be an object")
            continue
        name = _require_str(report, movement, "name", path)
        if name is not None:
            if name not in rules.movements:
                report.error(f"{path}.name", f"'{name}' is not in the movement vocabulary {list(rules.vocabulary)}")
            elif name in declared:
                report.error(f"{path}.name", f"duplicate movement '{name}'")
            declared.add(name)
        order = movement.get("order")
        if order is None:
            report.error(f"{path}.order", "required field is missing")
        elif not _is_int(order) or order < 1:
            report.error(f"{path}.order", f"must be an integer >= 1, got {order!r}")
        is_required = movement.get("is_required")
        if is_required is not None and not isinstance(is_required, bool):
            report.error(f"{path}.is_required", "must be a boolean")
    return declared


def _check_attempt(
    report: ValidationReport,
    attempt: Any,
    path: str,
    movement: str | None,
    seen_numbers: set[int],
    rules: ValidationRules,
) -> None:
    if not isinstance(attempt, Mapping):
        report.error(path, "must be an object")
        return
    number = attempt.get("attempt_number")
    if number is None:
        report.error(f"{path}.attempt_number", "required field is missing")
    elif not _is_int(number) or not 1 <= number <= MAX_ATTEMPTS:
        report.error(f"{path}.attempt_number", f"must be 1, 2 or 3, got {number!r}")
    elif number in seen_numbers:
        report.error(f"{path}.attempt_number", f"duplicate attempt number {number}")
    else:
        seen_numbers.add(number)

    weight = attempt.get("weight")
    if weight is None:
        report.error(f"{path}.weight", "required field is missing")
    elif not _is_number(weight) or parse_numeric(weight) is None:
        report.error(f"{path}.weight", f"must be a number, got {weight!r}")
    else:
        w = parse_numeric(weight)
        if w <= 0:
            report.error(f"{path}.weight", f"must be > 0, got {w}")
        elif movement in rules.movements:
            rule = rules.movements[movement]
            if _outside(w, rule.weight_min, rule.weight_max):
                report.warn(
                    f"{path}.weight",
                    f"{w} kg is outside the plausible range for {movement} "
                    f"[{rule.weight_min}, {rule.weight_max}]",
                )

    if attempt.get("is_successful") is None:
        report.error(f"{path}.is_successful", "required field is missing")
    elif not isinstance(attempt.get("is_successful"), bool):
        report.error(f"{path}.is_successful", "must be a boolean")
    _optional_str(report, attempt, "no_rep_reason", path)


def _check_lift(
    report: ValidationReport,
    lift: Any,
    path: str,
    declared: set[str],
    seen_movements: set[str],
    rules: ValidationRules,
) -> None:
    if not isinstance(lift, Mapping):
        report.error(path, "must be an object")
        return
    _check_computed(report, lift, path)
    movement = _require_str(report, lift, "movement", path)
    if movement is not None:
        if movement not in rules.movements:
            report.error(f"{path}.movement", f"'{movement}' is not in the movement vocabulary")
        elif movement not in declared:
            report.error(f"{path}.movement", f"'{movement}' is not in the competition's movement list")
        if movement in seen_movements:
            report.error(f"{path}.movement", f"duplicate lift for movement '{movement}'")
        seen_movements.add(movement)

    attempts = _require_list(report, lift, "attempts", path)
    if attempts is None:
        return
    if not attempts:
        report.error(f"{path}.attempts", "lift must have at least one attempt")
    elif len(attempts) > MAX_ATTEMPTS:
        report.error(f"{path}.attempts", f"lift has {len(attempts)} attempts; at most {MAX_ATTEMPTS} allowed")
    numbers: set[int] = set()
    for a_idx, attempt in enumerate(attempts):
        _check_attempt(report, attempt, f"{path}.attempts[{a_idx}]", movement, numbers, rules)


def _check_athlete(
    report: ValidationReport,
    athlete: Any,
    path: str,
    category_gender: str | None,
    declared: set[str],
    rules: ValidationRules,
    seen_keys: dict[tuple, str],
) -> None:
    if not isinstance(athlete, Mapping):
        report.error(path, "must be an object")
        return
    _check_computed(report, athlete, path)
    first = _require_str(report, athlete, "first_name", path)
    last = _require_str(report, athlete, "last_name", path)
    country = _require_str(report, athlete, "country", path)

    own_gender = athlete.get("gender")
    if own_gender is not None and own_gender not in ATHLETE_GENDERS:
        report.error(f"{path}.gender", f"'{own_gender}' is not one of {list(ATHLETE_GENDERS)}")
    gender = own_gender or category_gender
    if own_gender is None and category_gender == "MX":
        report.error(f"{path}.gender", "athletes in a mixed (MX) category must carry their own gender")

    bodyweight = athlete.get("bodyweight")
    if bodyweight is None:
        report.warn(f"{path}.bodyweight", "optional field is missing; no score will be computed")
    elif not _is_number(bodyweight) or parse_numeric(bodyweight) is None:
        report.error(f"{path}.bodyweight", f"must be a number, got {bodyweight!r}")
    else:
        bw = parse_numeric(bodyweight)
        if bw <= 0:
            report.error(f"{path}.bodyweight", f"must be > 0, got {bw}")
        elif _outside(bw, rules.bodyweight_min, rules.bodyweight_max):
            report.warn(
                f"{path}.bodyweight",
                f"{bw} kg is outside the plausible range [{rules.bodyweight_min}, {rules.bodyweight_max}]",
            )

    if _missing(athlete, "nationality"):
        report.warn(f"{path}.nationality", "optional field is missing")
    else:
        _optional_str(report, athlete, "nationality", path)
    dq = athlete.get("is_disqualified")
    if dq is not None and not isinstance(dq, bool):
        report.error(f"{path}.is_disqualified", "must be a boolean")
    _optional_str(report, athlete, "disqualified_reason", path)

    if first and last and country and gender in ATHLETE_GENDERS:
        key = athlete_dedup_key(first, last, gender, country)
        if key in seen_keys:
            report.warn(path, f"same athlete identity as {seen_keys[key]} ({first} {last})")
        else:
            seen_keys[key] = path

    lifts = _require_list(report, athlete, "lifts", path)
    if lifts is None:
        return
    if not lifts:
        report.warn(f"{path}.lifts", "athlete has no lifts")
    seen_movements: set[str] = set()
    for l_idx, lift in enumerate(lifts):
        _check_lift(report, lift, f"{path}.lifts[{l_idx}]", declared, seen_movements, rules)


def _check_categories(
    report: ValidationReport,
    data: Mapping[str, Any],
    declared: set[str],
    rules: ValidationRules,
) -> None:
    categories = _require_list(report, data, "categories", "")
    if categories is None:
        return
    if not categories:
        report.error("categories", "document must contain at least one category")
    seen_keys: dict[tuple, str] = {}
    for c_idx, category in enumerate(categories):
        path = f"categories[{c_idx}]"
        if not isinstance(category, Mapping):
            report.error(path, "must be an object")
            continue
        _require_str(report, category, "name", path)
        gender = category.get("gender")
        if gender is None:
            report.error(f"{path}.gender", "required field is missing")
        elif gender not in CATEGORY_GENDERS:
            report.error(f"{path}.gender", f"'{gender}' is not one of {list(CATEGORY_GENDERS)}")
            gender = None

        bounds = {}
        for key in ("weight_class_min", "weight_class_max"):
            raw = category.get(key)
            if raw is None:
                continue
            value = parse_numeric(raw) if _is_number(raw) else None
            if value is None:
                report.error(f"{path}.{key}", f"must be a number, got {raw!r}")
            elif value <= 0:
                report.error(f"{path}.{key}", f"must be > 0, got {value}")
            else:
                bounds[key] = value
        if len(bounds) == 2 and bounds["weight_class_max"] <= bounds["weight_class_min"]:
            report.error(f"{path}.weight_class_max", "weight_class_max must be greater than weight_class_min")

        athletes = _require_list(report, category, "athletes", path)
        if athletes is None:
            continue
        if not athletes:
            report.warn(f"{path}.athletes", "category has no athletes")
        for a_idx, athlete in enumerate(athletes):
            _check_athlete(
                report, athlete, f"{path}.athletes[{a_idx}]",
                gender, declared, rules, seen_keys,
            )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def validate_document(data: Any, rules: ValidationRules | None = None) -> ValidationReport:
    """Check a raw canonical mapping; never raises for document problems."""
    rules = rules or default_validation_rules()
    report = ValidationReport()
    if not isinstance(data, Mapping):
        report.error("$", "document root must be an object")
        return report

    version = data.get("format_version")
    if version is None:
        report.error("format_version", "required field is missing")
    elif version not in rules.format_versions:
        report.error("format_version", f"unsupported format_version {version!r}; supported: {list(rules.format_versions)}")

    _check_source(report, data)
    _check_competition(report, data)
    declared = _check_movements(report, data, rules)
    _check_categories(report, data, declared, rules)
    return report
