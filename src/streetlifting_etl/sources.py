"""streetlifting_etl.sources

Source-transformer contract and registry.

A source transformer turns one kind of raw result source into a
CanonicalDocument in two steps:

  fetch(target)     → raw payload   (HTTP call, file read, ...)
  convert(payload)  → CanonicalDocument

Each source maps its own units, naming and structure onto canonical
fields, emits movement names only from the vocabulary, and never emits
derived values (best lift, total, rank, score). Any failure raises
TransformationError; a partial document is never returned.

Adding a source means adding a class decorated with
@register_transformer("<name>").
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

import yaml

from streetlifting_etl.canonical import (
    COMPETITION_STATUSES,
    CanonicalDocument,
    CompetitionData,
    FederationData,
)
from streetlifting_etl.normalize import normalize_space, parse_iso_date, slug_name
from streetlifting_etl.shared import RuleSetValidationError, TransformationError

_BUILTIN_SOURCE_MODULES = (
    "streetlifting_etl.source_liftcontrol",
    "streetlifting_etl.source_results_table",
)


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class SourceTransformer(Protocol):
    source_type: str

    def fetch(self, target: Any) -> Any:
        ...

    def convert(self, raw: Any) -> CanonicalDocument:
        ...


TRANSFORMERS: dict[str, Callable[..., SourceTransformer]] = {}


def register_transformer(name: str):
    def decorator(cls):
        TRANSFORMERS[name] = cls
        return cls
    return decorator


def get_transformer(name: str, **kwargs: Any) -> SourceTransformer:
    """Instantiate the transformer registered under name."""
    for module in _BUILTIN_SOURCE_MODULES:
        importlib.import_module(module)
    try:
        factory = TRANSFORMERS[name]
    except KeyError:
        raise TransformationError(
            f"Unknown source '{name}'. Available: {', '.join(sorted(TRANSFORMERS))}"
        ) from None
    return factory(**kwargs)


def transform(transformer: SourceTransformer, target: Any) -> CanonicalDocument:
    """fetch + convert, with unexpected failures surfaced as TransformationError."""
    try:
        return transformer.convert(transformer.fetch(target))
    except TransformationError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise TransformationError(f"{transformer.source_type}: malformed payload ({exc!r})") from exc


# ---------------------------------------------------------------------------
# Competition metadata
# ---------------------------------------------------------------------------

@dataclass
class CompetitionMetadata:
    """Competition-level fields that result sources do not carry."""

    name: str
    federation: FederationData
    start_date: date
    end_date: date
    slug: str | None = None
    venue: str | None = None
    city: str | None = None
    country: str | None = None
    number_of_judges: int | None = None
    status: str = "completed"
    default_athlete_country: str | None = None
    default_athlete_nationality: str | None = None

    def to_competition(self, slug: str | None = None) -> CompetitionData:
        resolved = slug or self.slug or slug_name(self.name)
        return CompetitionData(
            name=self.name,
            slug=resolved,
            federation=self.federation,
            start_date=self.start_date,
            end_date=self.end_date,
            venue=self.venue,
            city=self.city,
            country=self.country,
            number_of_judges=self.number_of_judges,
            status=self.status,
        )


def metadata_from_dict(data: Any, slug: str | None = None) -> CompetitionMetadata:
    """Build CompetitionMetadata from a YAML mapping.

    Raises:
        RuleSetValidationError: missing or malformed fields.
    """
    if not isinstance(data, Mapping):
        raise RuleSetValidationError("Competition metadata must be a mapping.")
    name = normalize_space(data.get("name")) if isinstance(data.get("name"), str) else None
    if not name:
        raise RuleSetValidationError("Competition metadata requires 'name'.")

    fed = data.get("federation")
    if not isinstance(fed, Mapping) or not isinstance(fed.get("name"), str):
        raise RuleSetValidationError("Competition metadata requires 'federation.name'.")

    dates = {}
    for key in ("start_date", "end_date"):
        parsed = parse_iso_date(data.get(key))
        if parsed is None:
            raise RuleSetValidationError(f"Competition metadata '{key}' must be a YYYY-MM-DD date.")
        dates[key] = parsed
    if dates["end_date"] < dates["start_date"]:
        raise RuleSetValidationError("Competition metadata 'end_date' is before 'start_date'.")

    judges = data.get("number_of_judges")
    if judges is not None and judges not in (1, 3):
        raise RuleSetValidationError(f"'number_of_judges' must be 1 or 3, got {judges!r}.")
    status = data.get("status") or "completed"
    if status not in COMPETITION_STATUSES:
        raise RuleSetValidationError(f"Invalid status '{status}'.")

    return CompetitionMetadata(
        name=name,
        slug=slug or data.get("slug"),
        federation=FederationData(
            name=normalize_space(fed["name"]),
            abbreviation=fed.get("abbreviation"),
            country=fed.get("country"),
        ),
        start_date=dates["start_date"],
        end_date=dates["end_date"],
        venue=data.get("venue"),
        city=data.get("city"),
        country=data.get("country"),
        number_of_judges=judges,
        status=status,
        default_athlete_country=data.get("default_athlete_country"),
        default_athlete_nationality=data.get("default_athlete_nationality"),
    )


def load_competition_metadata(yaml_path: Path) -> CompetitionMetadata:
    data = yaml.safe_load(yaml_path.read_text(encoding="utf-8"))
    return metadata_from_dict(data)
