"""Integration test fixtures.

Applies migrations 0001–0004 against an ephemeral PostgreSQL database
provided by pytest-postgresql before any integration test runs.
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_core_schema.sql",
    PROJECT_ROOT / "migrations" / "0002_athlete_dedup_index.sql",
    PROJECT_ROOT / "migrations" / "0003_ris_formula_tables.sql",
    PROJECT_ROOT / "migrations" / "0004_seed_movements.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture - applies all migrations for every test
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (psycopg connection, dsn) with the schema applied.

    Each test gets a fresh schema via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Canonical document builder
# ---------------------------------------------------------------------------

def _lift(movement: str, *attempts: tuple[int, float, bool]) -> dict:
    return {
        "movement": movement,
        "attempts": [
            {"attempt_number": n, "weight": Decimal(str(w)), "is_successful": ok}
            for n, w, ok in attempts
        ],
    }


def _default_athletes() -> list[dict]:
    return [
        {
            "first_name": "John",
            "last_name": "Smith",
            "country": "France",
            "nationality": "French",
            "bodyweight": Decimal("74.3"),
            "lifts": [
                _lift("Pull-up", (1, 80, True), (2, 85, False)),
                _lift("Dips", (1, 100, True), (2, 110, False)),
            ],
        },
        {
            "first_name": "Paul",
            "last_name": "Martin",
            "country": "France",
            "nationality": "French",
            "bodyweight": Decimal("72.0"),
            "lifts": [
                _lift("Pull-up", (1, 60, False)),
                _lift("Dips", (1, 95, True)),
            ],
        },
    ]


@pytest.fixture
def make_raw_document():
    """Factory for raw canonical mappings (as loaded from JSON)."""

    def _make(
        slug: str = "annecy-4-lift-2025",
        start_date: str = "2025-03-16",
        athletes: list[dict] | None = None,
        movements: tuple[str, ...] = ("Pull-up", "Dips"),
    ) -> dict:
        return {
            "format_version": "1.0.0",
            "source": {
                "type": "liftcontrol",
                "url": f"https://app.liftcontrol.com/contest/{slug}",
                "extracted_at": "2025-03-17T09:00:00Z",
                "extractor": "liftcontrol-api-v1",
            },
            "competition": {
                "name": slug.replace("-", " ").title(),
                "slug": slug,
                "federation": {"name": "Fédération Française de Streetlifting", "abbreviation": "FFSL"},
                "start_date": start_date,
                "end_date": start_date,
                "city": "Annecy",
                "country": "France",
                "number_of_judges": 3,
            },
            "movements": [{"name": name, "order": i} for i, name in enumerate(movements, start=1)],
            "categories": [
                {
                    "name": "-75kg",
                    "gender": "M",
                    "weight_class_max": 75,
                    "athletes": _default_athletes() if athletes is None else athletes,
                }
            ],
        }

    return _make
