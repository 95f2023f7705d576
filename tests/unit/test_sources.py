"""Unit tests for streetlifting_etl.sources (registry + competition metadata)."""

from __future__ import annotations

from datetime import date
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from streetlifting_etl.shared import RuleSetValidationError, TransformationError
from streetlifting_etl.sources import (
    TRANSFORMERS,
    get_transformer,
    load_competition_metadata,
    metadata_from_dict,
    transform,
)


def _make_metadata_dict(**overrides) -> dict:
    data = {
        "name": "Lyon Open 2025",
        "federation": {"name": "FFSL", "country": "France"},
        "start_date": "2025-05-10",
        "end_date": "2025-05-11",
        "city": "Lyon",
        "number_of_judges": 3,
        "default_athlete_country": "France",
    }
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TestRegistry:
    def test_builtin_sources_registered(self):
        get_transformer("liftcontrol")
        assert {"liftcontrol", "results_csv", "results_html"} <= set(TRANSFORMERS)

    def test_unknown_source(self):
        with pytest.raises(TransformationError, match="Unknown source 'pdf'"):
            get_transformer("pdf")

    def test_kwargs_forwarded(self):
        metadata = metadata_from_dict(_make_metadata_dict())
        transformer = get_transformer("results_csv", metadata=metadata, weight_unit="lb")
        assert transformer.weight_unit == "lb"


class TestTransform:
    def test_fetch_then_convert(self):
        transformer = MagicMock()
        transformer.fetch.return_value = "raw"
        transformer.convert.return_value = "doc"
        assert transform(transformer, "target") == "doc"
        transformer.fetch.assert_called_once_with("target")
        transformer.convert.assert_called_once_with("raw")

    def test_unexpected_error_wrapped(self):
        transformer = MagicMock(source_type="csv")
        transformer.fetch.return_value = {}
        transformer.convert.side_effect = KeyError("categories")
        with pytest.raises(TransformationError, match="malformed payload"):
            transform(transformer, "target")

    def test_transformation_error_passes_through(self):
        transformer = MagicMock(source_type="csv")
        transformer.fetch.side_effect = TransformationError("unreachable")
        with pytest.raises(TransformationError, match="unreachable"):
            transform(transformer, "target")


# ---------------------------------------------------------------------------
# Competition metadata
# ---------------------------------------------------------------------------

class TestMetadataFromDict:
    def test_valid(self):
        metadata = metadata_from_dict(_make_metadata_dict())
        assert metadata.start_date == date(2025, 5, 10)
        assert metadata.status == "completed"
        assert metadata.federation.country == "France"

    def test_slug_derived_from_name(self):
        competition = metadata_from_dict(_make_metadata_dict()).to_competition()
        assert competition.slug == "lyon-open-2025"

    def test_explicit_slug_wins(self):
        competition = metadata_from_dict(_make_metadata_dict(slug="lyon-2025")).to_competition()
        assert competition.slug == "lyon-2025"

    def test_missing_name(self):
        with pytest.raises(RuleSetValidationError, match="name"):
            metadata_from_dict(_make_metadata_dict(name=None))

    def test_missing_federation(self):
        with pytest.raises(RuleSetValidationError, match="federation"):
            metadata_from_dict(_make_metadata_dict(federation=None))

    def test_bad_date(self):
        with pytest.raises(RuleSetValidationError, match="start_date"):
            metadata_from_dict(_make_metadata_dict(start_date="10/05/2025"))

    def test_end_before_start(self):
        with pytest.raises(RuleSetValidationError, match="before"):
            metadata_from_dict(_make_metadata_dict(end_date="2025-05-01"))

    def test_bad_judges(self):
        with pytest.raises(RuleSetValidationError, match="number_of_judges"):
            metadata_from_dict(_make_metadata_dict(number_of_judges=2))

    def test_bad_status(self):
        with pytest.raises(RuleSetValidationError, match="status"):
            metadata_from_dict(_make_metadata_dict(status="done"))


class TestLoadCompetitionMetadata:
    def test_yaml_file(self, tmp_path: Path):
        path = tmp_path / "meta.yml"
        path.write_text(
            "name: Lyon Open 2025\n"
            "federation: {name: FFSL}\n"
            "start_date: '2025-05-10'\n"
            "end_date: '2025-05-11'\n",
            encoding="utf-8",
        )
        metadata = load_competition_metadata(path)
        assert metadata.name == "Lyon Open 2025"
        assert metadata.end_date == date(2025, 5, 11)

    def test_unquoted_yaml_dates_accepted(self, tmp_path: Path):
        path = tmp_path / "meta.yml"
        path.write_text(
            "name: Lyon Open 2025\n"
            "federation: {name: FFSL}\n"
            "start_date: 2025-05-10\n"
            "end_date: 2025-05-10\n",
            encoding="utf-8",
        )
        assert load_competition_metadata(path).start_date == date(2025, 5, 10)
