"""streetlifting_etl.source_liftcontrol

LiftControl live-results source.

A LiftControl competition is a base slug plus one sub-slug per session
(e.g. Sunday morning / Sunday afternoon). The general results table of
every session is fetched from

    https://liftcontrol.fr/evenements-liftcontrol/get-live-data/tableau-general/{slug}

and the sessions are merged into one canonical document.

Payload shape (per session):
    contest{id, name, slug, status}
    results.categories{cat_id: {id, name, genre}}
    results.results{cat_id: {athlete_id: {athleteInfo{...}, results{mov_id: {results{"1".."3": attempt|null}, max}},
                                          total, RIS, rank}}}
    results.movements{mov_id: {id, name, order}}

Mapping rules:
  - movement names via the alias table (traction → Pull-up, ...)
  - category 'genre' via map_gender; unknown labels are fatal
  - category name is the part before ' - '; bounds parsed from it
  - attempt succeeds when at least two judges passed it, or the decision
    reads 'validé' / 'valide'
  - attempts with a null or non-positive charge were never taken: dropped
  - total, RIS, rank and max in the payload are ignored
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

import requests
import yaml

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
    map_gender,
    map_movement,
    normalize_space,
    parse_numeric,
    parse_weight_class,
)
from streetlifting_etl.shared import RuleSetValidationError, TransformationError
from streetlifting_etl.sources import (
    CompetitionMetadata,
    metadata_from_dict,
    register_transformer,
)

log = logging.getLogger(__name__)

BASE_URL = "https://liftcontrol.fr"
LIVE_TABLE_PATH = "/evenements-liftcontrol/get-live-data/tableau-general/{slug}"
PUBLIC_CONTEST_URL = "https://app.liftcontrol.com/contest/{slug}"
EXTRACTOR = "liftcontrol-api-v1"
USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7)"

DEFAULT_REGISTRY_PATH = Path(__file__).resolve().parents[2] / "config" / "liftcontrol_competitions.yml"

_VALID_WORDS = frozenset({"validé", "valide"})


# ---------------------------------------------------------------------------
# Competition registry
# ---------------------------------------------------------------------------

@dataclass
class LiftControlCompetition:
    base_slug: str
    sub_slugs: list[str]
    metadata: CompetitionMetadata
    aliases: list[str] = field(default_factory=list)


def _registry_key(name: str) -> str:
    return name.strip().lower().replace("_", "-")


def load_liftcontrol_registry(yaml_path: Path | None = None) -> dict[str, LiftControlCompetition]:
    """Load predefined competitions keyed by base slug.

    Raises:
        RuleSetValidationError: malformed registry file.
    """
    yaml_path = yaml_path or DEFAULT_REGISTRY_PATH
    data = yaml.safe_load(yaml_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict) or not isinstance(data.get("competitions"), dict):
        raise RuleSetValidationError("Registry root must contain a 'competitions' mapping.")

    registry: dict[str, LiftControlCompetition] = {}
    for base_slug, entry in data["competitions"].items():
        if not isinstance(entry, dict):
            raise RuleSetValidationError(f"Competition '{base_slug}' must be a mapping.")
        sub_slugs = entry.get("sub_slugs")
        if not isinstance(sub_slugs, list) or not sub_slugs:
            raise RuleSetValidationError(f"Competition '{base_slug}' requires a non-empty 'sub_slugs' list.")
        registry[base_slug] = LiftControlCompetition(
            base_slug=base_slug,
            sub_slugs=[str(s) for s in sub_slugs],
            metadata=metadata_from_dict(entry.get("metadata"), slug=base_slug),
            aliases=[str(a) for a in entry.get("aliases") or []],
        )
    return registry


def find_competition(
    registry: dict[str, LiftControlCompetition],
    name: str,
) -> LiftControlCompetition:
    """Look a competition up by base slug or alias (case / '_' insensitive)."""
    key = _registry_key(name)
    for competition in registry.values():
        if key == competition.base_slug or key in (_registry_key(a) for a in competition.aliases):
            return competition
    raise TransformationError(
        f"Unknown competition: '{name}'. Available: {', '.join(sorted(registry))}"
    )


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class LiftControlClient:
    """Thin requests wrapper around the LiftControl live-data endpoint."""

    def __init__(
        self,
        session: requests.Session | None = None,
        base_url: str = BASE_URL,
        timeout: int = 30,
    ) -> None:
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def fetch_live_general_table(self, event_slug: str) -> dict[str, Any]:
        url = self.base_url + LIVE_TABLE_PATH.format(slug=event_slug)
        log.info("Fetching LiftControl session %s", event_slug)
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            log.error("LiftControl GET %s failed: %s", url, exc)
            raise TransformationError(f"LiftControl unreachable for '{event_slug}': {exc}") from exc
        if resp.status_code != 200:
            raise TransformationError(
                f"LiftControl returned HTTP {resp.status_code} for '{event_slug}'"
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise TransformationError(f"LiftControl returned invalid JSON for '{event_slug}'") from exc
        if not isinstance(payload, dict):
            raise TransformationError(f"LiftControl payload for '{event_slug}' is not an object")
        return payload


# ---------------------------------------------------------------------------
# Transformer
# ---------------------------------------------------------------------------

@dataclass
class LiftControlPayload:
    competition: LiftControlCompetition
    sessions: list[dict[str, Any]]


def passing_judges(decision: int) -> int:
    """Number of passing judges encoded in a numeric decision.

    Small values are already a count; multi-digit values are one 0/1 digit
    per judge (111 → 3, 101 → 2, 100 → 1).
    """
    if 0 <= decision <= 3:
        return decision
    digits = str(decision)
    if set(digits) <= {"0", "1"}:
        return digits.count("1")
    return 0


def decision_is_successful(decision: Any) -> bool:
    if isinstance(decision, bool):
        return decision
    if isinstance(decision, int):
        return passing_judges(decision) >= 2
    if isinstance(decision, str):
        v = decision.strip().lower()
        if v.isdigit():
            return passing_judges(int(v)) >= 2
        return v in _VALID_WORDS
    return False


def parse_category_name(name: str) -> tuple[str, Decimal | None, Decimal | None]:
    """'-75kg - Hommes' → ('-75kg', None, 75)."""
    weight_class = normalize_space(name.split(" - ")[0]) or normalize_space(name) or ""
    lo, hi = parse_weight_class(weight_class)
    return weight_class, lo, hi


@register_transformer("liftcontrol")
class LiftControlTransformer:
    source_type = "liftcontrol"

    def __init__(self, client: LiftControlClient | None = None) -> None:
        self.client = client or LiftControlClient()

    def fetch(self, target: LiftControlCompetition) -> LiftControlPayload:
        sessions = [self.client.fetch_live_general_table(slug) for slug in target.sub_slugs]
        log.info("Fetched %d LiftControl session(s) for %s", len(sessions), target.base_slug)
        return LiftControlPayload(competition=target, sessions=sessions)

    def convert(self, raw: LiftControlPayload) -> CanonicalDocument:
        try:
            return self._convert(raw)
        except TransformationError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise TransformationError(f"Malformed LiftControl payload: {exc!r}") from exc

    # -- internals ---------------------------------------------------------

    def _convert(self, raw: LiftControlPayload) -> CanonicalDocument:
        if not raw.sessions:
            raise TransformationError(f"No LiftControl sessions for '{raw.competition.base_slug}'")
        metadata = raw.competition.metadata
        if not metadata.default_athlete_country:
            raise TransformationError(
                f"Competition '{raw.competition.base_slug}' metadata lacks default_athlete_country"
            )

        movements: dict[str, MovementData] = {}
        categories: dict[tuple[str, str], CategoryData] = {}
        athletes_by_key: dict[tuple[str, str, str], AthleteData] = {}

        for session in raw.sessions:
            results = session["results"]
            session_movements = self._session_movements(results.get("movements") or {})
            for mov_id, (canonical, order) in session_movements.items():
                current = movements.get(canonical)
                if current is None or order < current.order:
                    movements[canonical] = MovementData(name=canonical, order=order, is_required=True)

            for cat_id, cat_info in (results.get("categories") or {}).items():
                gender = map_gender(cat_info.get("genre"))
                if gender is None:
                    raise TransformationError(
                        f"Unknown gender {cat_info.get('genre')!r} for category {cat_info.get('name')!r}"
                    )
                name, lo, hi = parse_category_name(cat_info["name"])
                category = categories.setdefault(
                    (name, gender),
                    CategoryData(name=name, gender=gender, weight_class_min=lo, weight_class_max=hi),
                )
                for ath_id, athlete_raw in ((results.get("results") or {}).get(str(cat_id)) or {}).items():
                    athlete = self._athlete(athlete_raw, session_movements, metadata)
                    key = (name, gender, str(athlete_raw["athleteInfo"].get("id", ath_id)))
                    if key in athletes_by_key:
                        category.athletes.remove(athletes_by_key[key])
                    athletes_by_key[key] = athlete
                    category.athletes.append(athlete)

        first_contest = raw.sessions[0].get("contest") or {}
        public_slug = first_contest.get("slug") or raw.competition.base_slug
        return CanonicalDocument(
            source=SourceMetadata(
                type=self.source_type,
                url=PUBLIC_CONTEST_URL.format(slug=public_slug),
                extracted_at=datetime.now(timezone.utc).replace(microsecond=0),
                extractor=EXTRACTOR,
            ),
            competition=metadata.to_competition(slug=raw.competition.base_slug),
            movements=sorted(movements.values(), key=lambda m: m.order),
            categories=list(categories.values()),
        )

    def _session_movements(self, raw_movements: dict[str, Any]) -> dict[str, tuple[str, int]]:
        mapped: dict[str, tuple[str, int]] = {}
        for mov_id, movement in raw_movements.items():
            canonical = map_movement(movement.get("name"))
            if canonical is None:
                raise TransformationError(f"Unknown movement: {movement.get('name')!r}")
            mapped[str(movement.get("id", mov_id))] = (canonical, int(movement["order"]))
        return mapped

    def _athlete(
        self,
        raw: dict[str, Any],
        session_movements: dict[str, tuple[str, int]],
        metadata: CompetitionMetadata,
    ) -> AthleteData:
        info = raw["athleteInfo"]
        bodyweight = parse_numeric(info.get("pesee"))
        if bodyweight is not None and bodyweight <= 0:
            bodyweight = None

        lifts = []
        movement_results = raw.get("results") or {}
        for mov_id, (canonical, _order) in sorted(session_movements.items(), key=lambda kv: kv[1][1]):
            mov = movement_results.get(mov_id)
            if not mov:
                continue
            attempts = self._attempts(mov.get("results") or {})
            if attempts:
                lifts.append(LiftData(movement=canonical, attempts=attempts))

        first = normalize_space(info.get("firstName"))
        last = normalize_space(info.get("lastName"))
        if not first or not last:
            raise TransformationError(f"LiftControl athlete {info.get('id')!r} has no first/last name")
        return AthleteData(
            first_name=first,
            last_name=last,
            country=metadata.default_athlete_country,
            nationality=metadata.default_athlete_nationality,
            bodyweight=bodyweight,
            is_disqualified=bool(info.get("isOut")),
            disqualified_reason=normalize_space(info.get("reasonOut")),
            lifts=lifts,
        )

    def _attempts(self, raw_attempts: dict[str, Any]) -> list[AttemptData]:
        attempts = []
        for slot in ("1", "2", "3"):
            attempt = raw_attempts.get(slot)
            if not attempt:
                continue
            charge = parse_numeric(attempt.get("charge"))
            if charge is None or charge <= 0:
                continue
            attempts.append(AttemptData(
                attempt_number=int(attempt.get("noEssai") or slot),
                weight=charge,
                is_successful=decision_is_successful(attempt.get("decisionRep")),
                no_rep_reason=normalize_space(attempt.get("justificationNoRep")),
            ))
        return attempts
