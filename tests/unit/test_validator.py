"""Unit tests for streetlifting_etl.validator."""

from __future__ import annotations

import copy
from decimal import Decimal
from pathlib import Path

import pytest

from streetlifting_etl.shared import RuleSetValidationError, ValidationError
from streetlifting_etl.validator import (
    DEFAULT_RULES_PATH,
    load_validation_rules,
    validate_document,
    validate_rules,
)


def _make_document(**overrides) -> dict:
    doc = {
        "format_version": "1.0.0",
        "source": {
            "type": "liftcontrol",
            "url": "https://app.liftcontrol.com/contest/annecy-4-lift-2025",
            "extracted_at": "2025-03-17T09:00:00Z",
            "extractor": "liftcontrol-api-v1",
        },
        "competition": {
            "name": "Annecy 4 Lift 2025",
            "slug": "annecy-4-lift-2025",
            "federation": {"name": "Fédération Française de Streetlifting", "abbreviation": "FFSL"},
            "start_date": "2025-03-16",
            "end_date": "2025-03-16",
            "city": "Annecy",
            "country": "France",
            "number_of_judges": 3,
        },
        "movements": [
            {"name": "Pull-up", "order": 1},
            {"name": "Dips", "order": 2},
        ],
        "categories": [
            {
                "name": "-75kg",
                "gender": "M",
                "weight_class_max": 75,
                "athletes": [
                    {
                        "first_name": "John",
                        "last_name": "Smith",
                        "country": "France",
                        "nationality": "French",
                        "bodyweight": Decimal("74.3"),
                        "lifts": [
                            {
                                "movement": "Pull-up",
                                "attempts": [
                                    {"attempt_number": 1, "weight": 80, "is_successful": True},
                                    {"attempt_number": 2, "weight": Decimal("85.5"), "is_successful": False},
                                ],
                            },
                            {
                                "movement": "Dips",
                                "attempts": [
                                    {"attempt_number": 1, "weight": 100, "is_successful": True},
                                ],
                            },
                        ],
                    }
                ],
            }
        ],
    }
    doc.update(overrides)
    return doc


def _athlete(doc: dict, c: int = 0, a: int = 0) -> dict:
    return doc["categories"][c]["athletes"][a]


def _error_paths(report) -> list[str]:
    return [i.path for i in report.errors]


def _warning_paths(report) -> list[str]:
    return [i.path for i in report.warnings]


# ---------------------------------------------------------------------------
# Rule file
# ---------------------------------------------------------------------------

class TestLoadValidationRules:
    def test_default_file_loads(self):
        rules = load_validation_rules(DEFAULT_RULES_PATH)
        assert rules.vocabulary == ("Muscle-up", "Pull-up", "Dips", "Squat", "Bench Press", "Deadlift")
        assert "1.0.0" in rules.format_versions
        assert len(rules.yaml_hash) == 64

    def test_display_order(self):
        rules = load_validation_rules(DEFAULT_RULES_PATH)
        assert rules.display_order("Squat") == 4

    def test_hash_changes_with_content(self, tmp_path: Path):
        a = tmp_path / "a.yml"
        b = tmp_path / "b.yml"
        a.write_text("format_versions: ['1.0.0']\nmovements:\n  - {name: Dips, order: 1}\n")
        b.write_text("format_versions: ['1.0.0']\nmovements:\n  - {name: Dips, order: 2}\n")
        assert load_validation_rules(a).yaml_hash != load_validation_rules(b).yaml_hash


class TestValidateRules:
    def test_root_must_be_mapping(self):
        with pytest.raises(RuleSetValidationError):
            validate_rules(["nope"])

    def test_movements_required(self):
        with pytest.raises(RuleSetValidationError, match="movements"):
            validate_rules({"format_versions": ["1.0.0"]})

    def test_duplicate_movement(self):
        with pytest.raises(RuleSetValidationError, match="Duplicate"):
            validate_rules({
                "format_versions": ["1.0.0"],
                "movements": [{"name": "Dips", "order": 1}, {"name": "Dips", "order": 2}],
            })

    def test_inverted_range(self):
        with pytest.raises(RuleSetValidationError, match="must be <"):
            validate_rules({
                "format_versions": ["1.0.0"],
                "movements": [{"name": "Dips", "order": 1, "plausible_weight": {"min": 200, "max": 10}}],
            })

    def test_rule_error_is_value_error(self):
        with pytest.raises(ValueError):
            validate_rules({"format_versions": [], "movements": []})


# ---------------------------------------------------------------------------
# Valid document
# ---------------------------------------------------------------------------

class TestValidDocument:
    def test_no_errors_no_warnings(self):
        report = validate_document(_make_document())
        assert report.ok
        assert report.errors == []
        assert report.warnings == []

    def test_does_not_mutate_input(self):
        doc = _make_document()
        before = copy.deepcopy(doc)
        validate_document(doc)
        assert doc == before

    def test_to_dict(self):
        out = validate_document(_make_document()).to_dict()
        assert out == {"valid": True, "errors": [], "warnings": []}


# ---------------------------------------------------------------------------
# Structural errors
# ---------------------------------------------------------------------------

class TestStructuralErrors:
    def test_root_not_object(self):
        report = validate_document(["not", "a", "document"])
        assert _error_paths(report) == ["$"]

    def test_unsupported_format_version(self):
        report = validate_document(_make_document(format_version="2.0.0"))
        assert "format_version" in _error_paths(report)

    def test_missing_source(self):
        doc = _make_document()
        del doc["source"]
        assert "source" in _error_paths(validate_document(doc))

    def test_unknown_source_type(self):
        doc = _make_document()
        doc["source"]["type"] = "fax"
        assert "source.type" in _error_paths(validate_document(doc))

    def test_bad_extracted_at(self):
        doc = _make_document()
        doc["source"]["extracted_at"] = "last tuesday"
        assert "source.extracted_at" in _error_paths(validate_document(doc))

    def test_missing_federation_name(self):
        doc = _make_document()
        doc["competition"]["federation"] = {"abbreviation": "FFSL"}
        assert "competition.federation.name" in _error_paths(validate_document(doc))

    def test_bad_date_format(self):
        doc = _make_document()
        doc["competition"]["start_date"] = "16/03/2025"
        assert "competition.start_date" in _error_paths(validate_document(doc))

    def test_end_before_start(self):
        doc = _make_document()
        doc["competition"]["end_date"] = "2025-03-15"
        assert "competition.end_date" in _error_paths(validate_document(doc))

    @pytest.mark.parametrize("judges", [2, 0, "3"])
    def test_number_of_judges(self, judges):
        doc = _make_document()
        doc["competition"]["number_of_judges"] = judges
        assert "competition.number_of_judges" in _error_paths(validate_document(doc))

    def test_unknown_status(self):
        doc = _make_document()
        doc["competition"]["status"] = "finished"
        assert "competition.status" in _error_paths(validate_document(doc))

    def test_empty_movements(self):
        assert "movements" in _error_paths(validate_document(_make_document(movements=[])))

    def test_movement_outside_vocabulary(self):
        doc = _make_document()
        doc["movements"].append({"name": "Snatch", "order": 3})
        assert "movements[2].name" in _error_paths(validate_document(doc))

    def test_empty_categories(self):
        assert "categories" in _error_paths(validate_document(_make_document(categories=[])))

    def test_category_gender(self):
        doc = _make_document()
        doc["categories"][0]["gender"] = "X"
        assert "categories[0].gender" in _error_paths(validate_document(doc))

    def test_category_bounds_inverted(self):
        doc = _make_document()
        doc["categories"][0]["weight_class_min"] = 80
        assert "categories[0].weight_class_max" in _error_paths(validate_document(doc))


# ---------------------------------------------------------------------------
# Athlete / lift / attempt errors
# ---------------------------------------------------------------------------

class TestAthleteErrors:
    def test_missing_country(self):
        doc = _make_document()
        del _athlete(doc)["country"]
        assert "categories[0].athletes[0].country" in _error_paths(validate_document(doc))

    def test_nonpositive_bodyweight(self):
        doc = _make_document()
        _athlete(doc)["bodyweight"] = 0
        assert "categories[0].athletes[0].bodyweight" in _error_paths(validate_document(doc))

    def test_computed_field_rejected(self):
        doc = _make_document()
        _athlete(doc)["rank"] = 1
        _athlete(doc)["total"] = 180
        paths = _error_paths(validate_document(doc))
        assert "categories[0].athletes[0].rank" in paths
        assert "categories[0].athletes[0].total" in paths

    def test_computed_max_weight_on_lift_rejected(self):
        doc = _make_document()
        _athlete(doc)["lifts"][0]["max_weight"] = 80
        assert "categories[0].athletes[0].lifts[0].max_weight" in _error_paths(validate_document(doc))

    def test_mx_category_requires_own_gender(self):
        doc = _make_document()
        doc["categories"][0]["gender"] = "MX"
        assert "categories[0].athletes[0].gender" in _error_paths(validate_document(doc))

    def test_mx_category_with_own_gender_ok(self):
        doc = _make_document()
        doc["categories"][0]["gender"] = "MX"
        _athlete(doc)["gender"] = "F"
        assert validate_document(doc).ok

    def test_lift_movement_not_declared(self):
        doc = _make_document()
        _athlete(doc)["lifts"].append({
            "movement": "Squat",
            "attempts": [{"attempt_number": 1, "weight": 150, "is_successful": True}],
        })
        assert "categories[0].athletes[0].lifts[2].movement" in _error_paths(validate_document(doc))

    def test_duplicate_lift_movement(self):
        doc = _make_document()
        _athlete(doc)["lifts"].append(copy.deepcopy(_athlete(doc)["lifts"][0]))
        assert "categories[0].athletes[0].lifts[2].movement" in _error_paths(validate_document(doc))

    def test_lift_without_attempts(self):
        doc = _make_document()
        _athlete(doc)["lifts"][1]["attempts"] = []
        assert "categories[0].athletes[0].lifts[1].attempts" in _error_paths(validate_document(doc))

    def test_more_than_three_attempts(self):
        doc = _make_document()
        _athlete(doc)["lifts"][1]["attempts"] = [
            {"attempt_number": n, "weight": 100, "is_successful": True} for n in (1, 2, 3, 3)
        ]
        assert "categories[0].athletes[0].lifts[1].attempts" in _error_paths(validate_document(doc))

    def test_attempt_number_out_of_range(self):
        doc = _make_document()
        _athlete(doc)["lifts"][1]["attempts"][0]["attempt_number"] = 4
        assert (
            "categories[0].athletes[0].lifts[1].attempts[0].attempt_number"
            in _error_paths(validate_document(doc))
        )

    def test_duplicate_attempt_number(self):
        doc = _make_document()
        _athlete(doc)["lifts"][0]["attempts"][1]["attempt_number"] = 1
        assert (
            "categories[0].athletes[0].lifts[0].attempts[1].attempt_number"
            in _error_paths(validate_document(doc))
        )

    def test_negative_weight(self):
        doc = _make_document()
        _athlete(doc)["lifts"][0]["attempts"][0]["weight"] = -5
        assert "categories[0].athletes[0].lifts[0].attempts[0].weight" in _error_paths(validate_document(doc))

    def test_string_weight(self):
        doc = _make_document()
        _athlete(doc)["lifts"][0]["attempts"][0]["weight"] = "80"
        assert "categories[0].athletes[0].lifts[0].attempts[0].weight" in _error_paths(validate_document(doc))

    def test_is_successful_must_be_bool(self):
        doc = _make_document()
        _athlete(doc)["lifts"][0]["attempts"][0]["is_successful"] = "yes"
        assert (
            "categories[0].athletes[0].lifts[0].attempts[0].is_successful"
            in _error_paths(validate_document(doc))
        )


# ---------------------------------------------------------------------------
# Warnings
# ---------------------------------------------------------------------------

class TestWarnings:
    def test_missing_bodyweight_is_warning(self):
        doc = _make_document()
        del _athlete(doc)["bodyweight"]
        report = validate_document(doc)
        assert report.ok
        assert "categories[0].athletes[0].bodyweight" in _warning_paths(report)

    def test_missing_nationality_is_warning(self):
        doc = _make_document()
        del _athlete(doc)["nationality"]
        report = validate_document(doc)
        assert report.ok
        assert "categories[0].athletes[0].nationality" in _warning_paths(report)

    def test_missing_judges_is_warning(self):
        doc = _make_document()
        del doc["competition"]["number_of_judges"]
        report = validate_document(doc)
        assert report.ok
        assert "competition.number_of_judges" in _warning_paths(report)

    def test_implausible_weight_is_warning(self):
        doc = _make_document()
        _athlete(doc)["lifts"][0]["attempts"][0]["weight"] = 400
        report = validate_document(doc)
        assert report.ok
        assert "categories[0].athletes[0].lifts[0].attempts[0].weight" in _warning_paths(report)

    def test_implausible_bodyweight_is_warning(self):
        doc = _make_document()
        _athlete(doc)["bodyweight"] = 20
        report = validate_document(doc)
        assert report.ok
        assert "categories[0].athletes[0].bodyweight" in _warning_paths(report)

    def test_duplicate_identity_is_warning(self):
        doc = _make_document()
        twin = copy.deepcopy(_athlete(doc))
        twin["first_name"], twin["last_name"] = "smith", "JOHN"
        doc["categories"][0]["athletes"].append(twin)
        report = validate_document(doc)
        assert report.ok
        assert "categories[0].athletes[1]" in _warning_paths(report)


# ---------------------------------------------------------------------------
# Report helpers
# ---------------------------------------------------------------------------

class TestReport:
    def test_raise_for_errors(self):
        report = validate_document(_make_document(format_version="9"))
        with pytest.raises(ValidationError) as exc_info:
            report.raise_for_errors()
        assert exc_info.value.issues == report.errors
        assert exc_info.value.to_dict()["error"] == "validation_error"

    def test_issue_str(self):
        report = validate_document(_make_document(format_version="9"))
        assert str(report.errors[0]).startswith("format_version: ")
