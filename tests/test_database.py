"""Tests for database initialization and operations."""

import json

from app.database import PostgresAdapter, _seed_demo_data, _sqlite_path_from_url, init_db


async def test_init_creates_tables(db):
    """Test that init_db creates the expected tables."""
    rows = await db.fetch_all(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
    )
    tables = [row[0] for row in rows]
    for table in (
        "patients",
        "encounters",
        "scans",
        "medical_history",
        "medications",
        "external_reports",
        "triage_reports",
    ):
        assert table in tables


async def test_init_is_idempotent(db):
    """Running init twice leaves the schema in place."""
    await init_db()
    row = await db.fetch_one("SELECT COUNT(*) FROM patients")
    assert row[0] == 0


async def test_report_defaults(db):
    """Test that default values are applied."""
    await db.execute(
        "INSERT INTO triage_reports (id, encounter_id, created_at) VALUES (?, ?, ?)",
        ("RPT-X", "enc-x", "2026-01-01T00:00:00+00:00"),
    )
    await db.commit()

    row = await db.fetch_one("SELECT * FROM triage_reports WHERE id = ?", ("RPT-X",))
    assert row["status"] == "DRAFT"
    assert row["urgency_level"] == "PENDING"
    assert json.loads(row["suggested_icd10"]) == []
    assert json.loads(row["suggested_cpt"]) == []


async def test_seed_demo_data(db):
    """Seeding inserts one fully linked demo record and is safe to repeat."""
    await _seed_demo_data(db)
    await _seed_demo_data(db)

    patients = await db.fetch_all("SELECT id FROM patients")
    assert [row["id"] for row in patients] == ["demo-patient"]

    encounter = await db.fetch_one("SELECT * FROM encounters WHERE patient_id = ?", ("demo-patient",))
    assert encounter["id"] == "demo-encounter"
    assert json.loads(encounter["vital_signs"])["heart_rate"] == 112

    meds = await db.fetch_all("SELECT name FROM medications WHERE patient_id = ?", ("demo-patient",))
    assert {row["name"] for row in meds} == {"Apixaban", "Lisinopril"}

    scan = await db.fetch_one("SELECT encounter_id FROM scans WHERE id = ?", ("demo-scan",))
    assert scan["encounter_id"] == "demo-encounter"


class TestSqlitePathFromUrl:
    def test_relative_path(self):
        assert _sqlite_path_from_url("sqlite:///triage.db") == "triage.db"

    def test_absolute_path(self):
        assert _sqlite_path_from_url("sqlite:////var/data/triage.db") == "/var/data/triage.db"

    def test_missing_path(self):
        assert _sqlite_path_from_url("sqlite://") == ""


class TestTranslateQuery:
    def test_placeholders_numbered(self):
        query = "SELECT * FROM scans WHERE encounter_id = ? AND type = ?"
        assert PostgresAdapter._translate_query(query) == (
            "SELECT * FROM scans WHERE encounter_id = $1 AND type = $2"
        )

    def test_already_numbered_unchanged(self):
        query = "SELECT * FROM scans WHERE id = $1"
        assert PostgresAdapter._translate_query(query) == query
