"""Loads a patient's clinical record into a PatientContext snapshot.

The snapshot is rebuilt on every workflow run. Only a bounded, most-recent-first
window of encounters and external reports is loaded so prompt size stays
bounded for long-standing patients.
"""

import json
import logging
from datetime import date, datetime

from app.config import CONTEXT_ENCOUNTER_LIMIT, CONTEXT_REPORT_LIMIT
from app.database import DatabaseAdapter
from app.models.patient import (
    EncounterContext,
    ExternalReportContext,
    MedicalHistoryContext,
    MedicationContext,
    PatientContext,
    ScanContext,
    TriageReportContext,
    VitalSigns,
)

logger = logging.getLogger(__name__)

# Reports in these states carry no clinical content yet (or any more).
_EXCLUDED_REPORT_STATUSES = ("PROCESSING", "DELETED", "FAILED")


class NotFoundError(ValueError):
    """A patient, encounter or scan the workflow was asked about does not exist."""


def calculate_age(date_of_birth: str, today: date | None = None) -> int:
    today = today or date.today()
    born = datetime.fromisoformat(date_of_birth[:10]).date()
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return max(age, 0)


def _vital_signs(raw: str | None) -> VitalSigns | None:
    if not raw:
        return None
    try:
        return VitalSigns.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValueError):
        logger.warning("Ignoring unparseable vital signs payload")
        return None


def scan_from_row(row) -> ScanContext:
    return ScanContext(
        id=row["id"],
        type=row["type"],
        modality=row["modality"],
        body_part=row["body_part"],
        file_url=row["file_url"],
        preview_url=row["preview_url"],
        file_format=row["file_format"] or "image",
        analysis=row["analysis"],
        study_description=row["study_description"],
        created_at=row["created_at"],
    )


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


async def _load_encounters(
    db: DatabaseAdapter,
    patient_id: str,
    encounter_id: str | None,
) -> list:
    rows = list(await db.fetch_all(
        "SELECT * FROM encounters WHERE patient_id = ? ORDER BY created_at DESC LIMIT ?",
        (patient_id, CONTEXT_ENCOUNTER_LIMIT),
    ))
    if encounter_id and all(row["id"] != encounter_id for row in rows):
        # The target encounter is older than the window; it is still needed.
        target = await db.fetch_one(
            "SELECT * FROM encounters WHERE id = ? AND patient_id = ?",
            (encounter_id, patient_id),
        )
        if target:
            rows.append(target)
    return rows


async def gather_patient_context(
    db: DatabaseAdapter,
    patient_id: str,
    encounter_id: str | None = None,
    symptoms: str | None = None,
) -> PatientContext:
    """Build the full clinical snapshot for one patient.

    Args:
        db: Store to read from
        patient_id: Patient to load
        encounter_id: Encounter the run is about (defaults to the most recent)
        symptoms: Presenting symptoms overriding the encounter's stored text

    Raises:
        NotFoundError: the patient does not exist
    """
    patient = await db.fetch_one("SELECT * FROM patients WHERE id = ?", (patient_id,))
    if not patient:
        raise NotFoundError(f"Patient not found: {patient_id}")

    encounter_rows = await _load_encounters(db, patient_id, encounter_id)
    encounter_ids = [row["id"] for row in encounter_rows]

    scans_by_encounter: dict[str, list[ScanContext]] = {eid: [] for eid in encounter_ids}
    latest_report: dict[str, TriageReportContext] = {}
    if encounter_ids:
        scan_rows = await db.fetch_all(
            f"SELECT * FROM scans WHERE encounter_id IN ({_placeholders(len(encounter_ids))}) "
            "ORDER BY created_at ASC",
            encounter_ids,
        )
        for row in scan_rows:
            scans_by_encounter[row["encounter_id"]].append(scan_from_row(row))

        report_rows = await db.fetch_all(
            f"SELECT * FROM triage_reports WHERE encounter_id IN ({_placeholders(len(encounter_ids))}) "
            f"AND status NOT IN ({_placeholders(len(_EXCLUDED_REPORT_STATUSES))}) "
            "ORDER BY created_at DESC",
            [*encounter_ids, *_EXCLUDED_REPORT_STATUSES],
        )
        for row in report_rows:
            if row["encounter_id"] in latest_report:
                continue
            latest_report[row["encounter_id"]] = TriageReportContext(
                id=row["id"],
                summary=row["summary"] or "",
                urgency_level=row["urgency_level"] or "",
                recommended_action=row["recommended_action"] or "",
                confidence_score=row["confidence_score"],
                status=row["status"],
            )

    encounters = tuple(
        EncounterContext(
            id=row["id"],
            encounter_type=row["encounter_type"] or "ambulatory",
            symptoms=row["symptoms"] or "",
            chief_complaint=row["chief_complaint"],
            voice_transcript=row["voice_transcript"],
            vital_signs=_vital_signs(row["vital_signs"]),
            created_at=row["created_at"],
            scans=tuple(scans_by_encounter.get(row["id"], [])),
            triage_report=latest_report.get(row["id"]),
        )
        for row in encounter_rows
    )

    history_rows = await db.fetch_all(
        "SELECT * FROM medical_history WHERE patient_id = ? ORDER BY created_at DESC",
        (patient_id,),
    )
    medication_rows = await db.fetch_all(
        "SELECT * FROM medications WHERE patient_id = ? "
        "ORDER BY CASE WHEN status = 'active' THEN 0 ELSE 1 END, created_at DESC",
        (patient_id,),
    )
    report_rows = await db.fetch_all(
        "SELECT * FROM external_reports WHERE patient_id = ? ORDER BY report_date DESC LIMIT ?",
        (patient_id, CONTEXT_REPORT_LIMIT),
    )

    if encounter_id:
        current = next((e for e in encounters if e.id == encounter_id), None)
    else:
        current = encounters[0] if encounters else None

    return PatientContext(
        id=patient["id"],
        name=patient["name"],
        age=calculate_age(patient["date_of_birth"]),
        gender=patient["gender"],
        date_of_birth=patient["date_of_birth"],
        phone=patient["phone"],
        email=patient["email"],
        address=patient["address"],
        mrn=patient["mrn"],
        medical_history_summary=patient["medical_history_summary"],
        encounters=encounters,
        medical_history=tuple(
            MedicalHistoryContext(
                id=h["id"],
                type=h["type"],
                clinical_status=h["clinical_status"],
                description=h["description"],
                onset_date=h["onset_date"],
                abatement_date=h["abatement_date"],
                severity=h["severity"],
                icd10_code=h["icd10_code"],
                snomed_code=h["snomed_code"],
                notes=h["notes"],
            )
            for h in history_rows
        ),
        medications=tuple(
            MedicationContext(
                id=m["id"],
                name=m["name"],
                generic_name=m["generic_name"],
                rx_norm_code=m["rx_norm_code"],
                dosage=m["dosage"],
                frequency=m["frequency"],
                route=m["route"],
                status=m["status"],
                start_date=m["start_date"],
                end_date=m["end_date"],
                prescribed_by=m["prescribed_by"],
                reason=m["reason"],
                notes=m["notes"],
            )
            for m in medication_rows
        ),
        external_reports=tuple(
            ExternalReportContext(
                id=r["id"],
                type=r["type"],
                title=r["title"],
                description=r["description"],
                report_date=r["report_date"],
                provider_name=r["provider_name"],
                file_url=r["file_url"],
                findings=r["findings"],
                conclusion=r["conclusion"],
            )
            for r in report_rows
        ),
        current_symptoms=symptoms or (current.symptoms if current else ""),
        voice_transcript=current.voice_transcript if current else None,
    )


def require_encounter(patient: PatientContext, encounter_id: str) -> EncounterContext:
    encounter = patient.find_encounter(encounter_id)
    if encounter is None:
        raise NotFoundError(f"Encounter not found: {encounter_id}")
    return encounter
