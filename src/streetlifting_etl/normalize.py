"""Normalization functions shared by the source transformers, the validator
and the importer.

All functions accept str | None (or a raw JSON scalar) and return the
appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

VOCABULARY = (
    "Muscle-up",
    "Pull-up",
    "Dips",
    "Squat",
    "Bench Press",
    "Deadlift",
)

_MOVEMENT_ALIASES = {
    "muscle-up": "Muscle-up",
    "muscle up": "Muscle-up",
    "muscleup": "Muscle-up",
    "mu": "Muscle-up",
    "pull-up": "Pull-up",
    "pull up": "Pull-up",
    "pullup": "Pull-up",
    "traction": "Pull-up",
    "tractions": "Pull-up",
    "weighted pull-up": "Pull-up",
    "dips": "Dips",
    "dip": "Dips",
    "weighted dips": "Dips",
    "squat": "Squat",
    "back squat": "Squat",
    "bench press": "Bench Press",
    "bench": "Bench Press",
    "developpe couche": "Bench Press",
    "deadlift": "Deadlift",
    "souleve de terre": "Deadlift",
}

_GENDER_ALIASES = {
    "m": "M",
    "male": "M",
    "man": "M",
    "men": "M",
    "homme": "M",
    "hommes": "M",
    "h": "M",
    "f": "F",
    "female": "F",
    "woman": "F",
    "women": "F",
    "femme": "F",
    "femmes": "F",
}

_TRUE_WORDS = frozenset({"true", "yes", "y", "1", "good", "valid", "valide", "ok", "x"})
_FALSE_WORDS = frozenset({"false", "no", "n", "0", "fail", "failed", "no rep", "norep", "bad", ""})

_WEIGHT_RANGE_RE = re.compile(r"^(\d+(?:[.,]\d+)?)\s*-\s*(\d+(?:[.,]\d+)?)\s*(?:kg)?$", re.IGNORECASE)
_WEIGHT_MAX_RE = re.compile(r"^-\s*(\d+(?:[.,]\d+)?)\s*(?:kg)?$", re.IGNORECASE)
_WEIGHT_MIN_RE = re.compile(r"^(?:\+\s*(\d+(?:[.,]\d+)?)\s*(?:kg)?|(\d+(?:[.,]\d+)?)\s*(?:kg)?\s*\+)$", re.IGNORECASE)

LB_TO_KG = Decimal("0.45359237")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


def _fold(value: str) -> str:
    v = unicodedata.normalize("NFKD", value)
    return "".join(c for c in v if not unicodedata.combining(c))


# ---------------------------------------------------------------------------
# Rule 3: slug_name  (competition and athlete slugs)
# ---------------------------------------------------------------------------

def slug_name(value: str | None) -> str | None:
    """Lowercase alnum with '-' separators."""
    v = trim(value)
    if v is None:
        return None
    v = _fold(v).lower()
    v = re.sub(r"[^a-z0-9]+", "-", v)
    v = v.strip("-")
    return v if v else None


def athlete_slug(first_name: str | None, last_name: str | None) -> str:
    """Base slug 'first-last' for an athlete; 'athlete' when nothing survives."""
    parts = [p for p in (first_name, last_name) if trim(p)]
    return slug_name(" ".join(parts)) or "athlete"


# ---------------------------------------------------------------------------
# Rule 4: parse_numeric
# ---------------------------------------------------------------------------

def parse_numeric(value: Any) -> Decimal | None:
    """Parse a decimal number from a string or JSON number, None on failure.

    Booleans are rejected; a comma decimal separator is accepted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(repr(value))
    if not isinstance(value, str):
        return None
    v = trim(value)
    if v is None:
        return None
    v = v.replace(",", ".")
    try:
        d = Decimal(v)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def lb_to_kg(value: Decimal) -> Decimal:
    """Convert pounds to kilograms, rounded to 0.01 kg."""
    return (value * LB_TO_KG).quantize(Decimal("0.01"))


# ---------------------------------------------------------------------------
# Rule 5: ISO dates
# ---------------------------------------------------------------------------

def parse_iso_date(value: Any) -> date | None:
    """Parse 'YYYY-MM-DD'.  Anything else → None."""
    if isinstance(value, datetime):
        return None
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    v = trim(value)
    if v is None:
        return None
    try:
        return datetime.strptime(v, "%Y-%m-%d").date()
    except ValueError:
        return None


def parse_iso_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    A trailing 'Z' is accepted.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    v = trim(value)
    if v is None:
        return None
    if v.endswith("Z") or v.endswith("z"):
        v = v[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(v)
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def format_utc(ts: datetime) -> str:
    """Render a timestamp as ISO-8601 UTC with a 'Z' suffix."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# Rule 6: gender, movement, result words
# ---------------------------------------------------------------------------

def map_gender(value: str | None) -> str | None:
    """Map a free-form gender label (English or French) to 'M' / 'F'.

    Unknown labels → None; callers decide whether that is fatal.
    """
    v = normalize_space(value)
    if v is None:
        return None
    return _GENDER_ALIASES.get(v.lower())


def map_movement(value: str | None) -> str | None:
    """Map a movement label to its vocabulary name, or None if unknown."""
    v = normalize_space(value)
    if v is None:
        return None
    if v in VOCABULARY:
        return v
    key = _fold(v).lower().replace("_", " ")
    return _MOVEMENT_ALIASES.get(key)


def parse_bool(value: Any) -> bool | None:
    """Interpret a result / flag cell.  Unrecognised → None."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if value is None:
        return None
    v = normalize_space(str(value))
    v = "" if v is None else _fold(v).lower()
    if v in _TRUE_WORDS:
        return True
    if v in _FALSE_WORDS:
        return False
    return None


# ---------------------------------------------------------------------------
# Rule 7: weight classes
# ---------------------------------------------------------------------------

def _dec(text: str) -> Decimal:
    return Decimal(text.replace(",", "."))


def parse_weight_class(value: str | None) -> tuple[Decimal | None, Decimal | None]:
    """Return (min, max) bounds parsed from a weight-class label.

    '-75kg' → (None, 75); '+100kg' / '100+' → (100, None);
    '66-75kg' → (66, 75); anything else (e.g. 'Open') → (None, None).
    """
    v = normalize_space(value)
    if v is None:
        return None, None
    m = _WEIGHT_MAX_RE.match(v)
    if m:
        return None, _dec(m.group(1))
    m = _WEIGHT_MIN_RE.match(v)
    if m:
        return _dec(m.group(1) or m.group(2)), None
    m = _WEIGHT_RANGE_RE.match(v)
    if m:
        return _dec(m.group(1)), _dec(m.group(2))
    return None, None


# ---------------------------------------------------------------------------
# Rule 8: athlete deduplication key
# ---------------------------------------------------------------------------

def athlete_dedup_key(
    first_name: str | None,
    last_name: str | None,
    gender: str | None,
    country: str | None,
) -> tuple[str, str, str, str]:
    """Order-insensitive identity key: (least name, greatest name, gender, country).

    Mirrors the athletes_unique_normalized_names index, so "John Smith" and
    "smith  JOHN" produce the same key.
    """
    first = (normalize_space(first_name) or "").lower()
    last = (normalize_space(last_name) or "").lower()
    lo, hi = sorted((first, last))
    return lo, hi, (gender or "").upper(), normalize_space(country) or ""
