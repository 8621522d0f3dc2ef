from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Iterable, Sequence
from urllib.parse import urlparse

import aiosqlite

from app.config import DATABASE_MAX_CONNECTIONS, DATABASE_PATH, DATABASE_URL, SEED_DEMO_DATA

try:  # Optional: only required when DATABASE_URL is set (Cloud SQL / Postgres)
    import asyncpg  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    asyncpg = None

logger = logging.getLogger(__name__)


class DatabaseAdapter:
    engine: str

    async def execute(self, query: str, params: Sequence | None = None) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_one(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_all(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def commit(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class SQLiteAdapter(DatabaseAdapter):
    conn: aiosqlite.Connection
    engine: str = "sqlite"

    async def execute(self, query: str, params: Sequence | None = None) -> None:
        await self.conn.execute(query, params or ())

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        await self.conn.executemany(query, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchone()

    async def fetch_all(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchall()

    async def commit(self) -> None:
        await self.conn.commit()

    async def close(self) -> None:
        await self.conn.close()


@dataclass
class PostgresAdapter(DatabaseAdapter):
    pool: "asyncpg.Pool"  # type: ignore[name-defined]
    engine: str = "postgres"

    @staticmethod
    def _translate_query(query: str) -> str:
        # Convert SQLite-style ? placeholders to asyncpg-style $1, $2, ...
        if "$1" in query:
            return query
        idx = 1
        out = []
        for ch in query:
            if ch == "?":
                out.append(f"${idx}")
                idx += 1
            else:
                out.append(ch)
        return "".join(out)

    async def execute(self, query: str, params: Sequence | None = None) -> None:
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            await conn.execute(q, *(params or ()))

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            await conn.executemany(q, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(q, *(params or ()))

    async def fetch_all(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            return await conn.fetch(q, *(params or ()))

    async def commit(self) -> None:
        # asyncpg autocommits per statement unless an explicit transaction is used.
        return

    async def close(self) -> None:
        await self.pool.close()


_db: DatabaseAdapter | None = None


async def get_db() -> DatabaseAdapter:
    global _db
    if _db is None:
        if DATABASE_URL and not DATABASE_URL.startswith("sqlite"):
            if asyncpg is None:
                raise RuntimeError(
                    "DATABASE_URL is set but asyncpg is not installed. "
                    "Install asyncpg or unset DATABASE_URL."
                )
            pool = await asyncpg.create_pool(
                dsn=DATABASE_URL,
                min_size=1,
                max_size=DATABASE_MAX_CONNECTIONS,
            )
            _db = PostgresAdapter(pool)
            logger.info("Connected to Postgres database")
        else:
            sqlite_path = DATABASE_PATH
            if DATABASE_URL:
                sqlite_path = _sqlite_path_from_url(DATABASE_URL) or DATABASE_PATH
            conn = await aiosqlite.connect(sqlite_path)
            conn.row_factory = aiosqlite.Row
            _db = SQLiteAdapter(conn)
            logger.info("Connected to SQLite database at %s", sqlite_path)
    return _db


def _sqlite_path_from_url(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path or ""
    if not path or path == "/":
        return ""
    # sqlite:///relative.db -> relative.db, sqlite:////abs.db -> /abs.db
    if path.startswith("/"):
        return path[1:]
    return path


# Timestamps are ISO-8601 strings so the same statements run on both engines.
SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS patients (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        date_of_birth TEXT NOT NULL,
        gender TEXT NOT NULL,
        phone TEXT,
        email TEXT,
        address TEXT,
        mrn TEXT,
        medical_history_summary TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS encounters (
        id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL REFERENCES patients(id),
        encounter_type TEXT NOT NULL DEFAULT 'ambulatory',
        status TEXT NOT NULL DEFAULT 'in-progress',
        symptoms TEXT NOT NULL DEFAULT '',
        chief_complaint TEXT,
        voice_transcript TEXT,
        vital_signs TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scans (
        id TEXT PRIMARY KEY,
        encounter_id TEXT NOT NULL REFERENCES encounters(id),
        type TEXT NOT NULL,
        modality TEXT,
        body_part TEXT,
        file_url TEXT NOT NULL,
        preview_url TEXT,
        file_format TEXT NOT NULL DEFAULT 'image',
        analysis TEXT,
        analysis_completed_at TEXT,
        study_description TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS medical_history (
        id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL REFERENCES patients(id),
        type TEXT NOT NULL DEFAULT 'condition',
        clinical_status TEXT NOT NULL DEFAULT 'active',
        description TEXT NOT NULL,
        onset_date TEXT,
        abatement_date TEXT,
        severity TEXT,
        icd10_code TEXT,
        snomed_code TEXT,
        notes TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS medications (
        id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL REFERENCES patients(id),
        name TEXT NOT NULL,
        generic_name TEXT,
        rx_norm_code TEXT,
        dosage TEXT,
        frequency TEXT,
        route TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        start_date TEXT,
        end_date TEXT,
        prescribed_by TEXT,
        reason TEXT,
        notes TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS external_reports (
        id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL REFERENCES patients(id),
        type TEXT NOT NULL DEFAULT 'other',
        title TEXT NOT NULL,
        description TEXT,
        report_date TEXT NOT NULL,
        provider_name TEXT,
        file_url TEXT,
        findings TEXT,
        conclusion TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS triage_reports (
        id TEXT PRIMARY KEY,
        encounter_id TEXT NOT NULL REFERENCES encounters(id),
        summary TEXT NOT NULL DEFAULT '',
        urgency_level TEXT NOT NULL DEFAULT 'PENDING',
        recommended_action TEXT NOT NULL DEFAULT '',
        reasoning_chain TEXT,
        confidence_score REAL,
        suggested_icd10 TEXT NOT NULL DEFAULT '[]',
        suggested_cpt TEXT NOT NULL DEFAULT '[]',
        report_json TEXT,
        status TEXT NOT NULL DEFAULT 'DRAFT',
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_encounters_patient ON encounters (patient_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_scans_encounter ON scans (encounter_id)",
    "CREATE INDEX IF NOT EXISTS idx_reports_encounter ON triage_reports (encounter_id, created_at)",
]


async def init_db() -> None:
    db = await get_db()

    for stmt in SCHEMA:
        await db.execute(stmt)
    await db.commit()

    if SEED_DEMO_DATA:
        await _seed_demo_data(db)


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _seed_demo_data(db: DatabaseAdapter) -> None:
    """Seed one demo patient with a full record for UI previews."""
    existing = await db.fetch_one("SELECT id FROM patients WHERE id = ?", ("demo-patient",))
    if existing:
        return

    now = datetime.now(UTC)
    earlier = (now - timedelta(days=90)).isoformat()

    await db.execute(
        """INSERT INTO patients (
            id, name, date_of_birth, gender, phone, mrn, medical_history_summary, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            "demo-patient",
            "Maria Lopez",
            "1957-03-14",
            "Female",
            "+1-555-0142",
            "MRN-004512",
            "68-year-old female with hypertension and atrial fibrillation on anticoagulation.",
            earlier,
            earlier,
        ),
    )
    await db.executemany(
        """INSERT INTO medical_history (
            id, patient_id, type, clinical_status, description, onset_date, severity, icd10_code, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        [
            ("demo-hx-1", "demo-patient", "condition", "active", "Essential hypertension",
             "2009-06-01", "moderate", "I10", earlier),
            ("demo-hx-2", "demo-patient", "condition", "active", "Atrial fibrillation",
             "2019-02-11", "moderate", "I48.91", earlier),
            ("demo-hx-3", "demo-patient", "allergy", "active", "Penicillin allergy",
             None, "severe", "Z88.0", earlier),
        ],
    )
    await db.executemany(
        """INSERT INTO medications (
            id, patient_id, name, dosage, frequency, route, status, reason, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        [
            ("demo-med-1", "demo-patient", "Apixaban", "5mg", "twice daily", "oral", "active",
             "Atrial fibrillation", earlier),
            ("demo-med-2", "demo-patient", "Lisinopril", "10mg", "once daily", "oral", "active",
             "Hypertension", earlier),
        ],
    )
    await db.execute(
        """INSERT INTO external_reports (
            id, patient_id, type, title, report_date, provider_name, findings, conclusion, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            "demo-report-1", "demo-patient", "lab", "Basic metabolic panel", earlier,
            "Oakridge Labs", "Creatinine 1.3 mg/dL, eGFR 52", "Mild renal impairment", earlier,
        ),
    )
    await db.execute(
        """INSERT INTO encounters (
            id, patient_id, encounter_type, status, symptoms, chief_complaint, vital_signs, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            "demo-encounter",
            "demo-patient",
            "emergency",
            "in-progress",
            "Sudden onset shortness of breath and pleuritic chest pain",
            "Shortness of breath",
            json.dumps({"heart_rate": 112, "oxygen_saturation": 91, "respiratory_rate": 24}),
            now.isoformat(),
            now.isoformat(),
        ),
    )
    await db.execute(
        """INSERT INTO scans (
            id, encounter_id, type, body_part, file_url, file_format, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            "demo-scan",
            "demo-encounter",
            "X-RAY",
            "Chest",
            "https://example-bucket.s3.amazonaws.com/scans/demo-chest.png",
            "image",
            now.isoformat(),
        ),
    )
    await db.commit()
    logger.info("Seeded demo patient record")
