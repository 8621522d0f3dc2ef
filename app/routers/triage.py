import json
import logging
import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException

from app.models.events import TRIAGE_REQUESTED, TriageRequested
from app.models.report import ReportStatus, TriageReportRecord
from app.models.triage import (
    QuickAssessmentRequest,
    QuickAssessmentResponse,
    TriageCreate,
    TriageCreated,
)
from app.services.container import Services, get_services
from app.services.diagnosis_agent import generate_quick_assessment
from app.services.orchestrator import new_report_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/triage", tags=["triage"])

PLACEHOLDER_SUMMARY = "AI analysis in progress..."


def report_from_row(row) -> TriageReportRecord:
    return TriageReportRecord(
        id=row["id"],
        encounter_id=row["encounter_id"],
        summary=row["summary"],
        urgency_level=row["urgency_level"],
        recommended_action=row["recommended_action"],
        reasoning_chain=row["reasoning_chain"],
        confidence_score=row["confidence_score"],
        suggested_icd10=json.loads(row["suggested_icd10"] or "[]"),
        suggested_cpt=json.loads(row["suggested_cpt"] or "[]"),
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


@router.post("", response_model=TriageCreated)
async def start_triage(body: TriageCreate, services: Services = Depends(get_services)):
    """Open an encounter, allocate a placeholder report and queue the triage workflow."""
    if not body.symptoms.strip():
        raise HTTPException(status_code=400, detail="Symptoms are required")

    db = services.db
    now = datetime.now(UTC).isoformat()

    if body.patient_id:
        patient = await db.fetch_one("SELECT id FROM patients WHERE id = ?", (body.patient_id,))
        if not patient:
            raise HTTPException(status_code=404, detail="Patient not found")
        patient_id = body.patient_id
    elif body.new_patient:
        patient_id = str(uuid.uuid4())
        p = body.new_patient
        await db.execute(
            """INSERT INTO patients (
                id, name, date_of_birth, gender, phone, email, mrn, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (patient_id, p.name, p.date_of_birth.isoformat(), p.gender, p.phone, p.email, p.mrn, now, now),
        )
    else:
        raise HTTPException(status_code=400, detail="Either patient_id or new_patient is required")

    encounter_id = str(uuid.uuid4())
    await db.execute(
        """INSERT INTO encounters (
            id, patient_id, encounter_type, status, symptoms, chief_complaint,
            voice_transcript, vital_signs, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            encounter_id,
            patient_id,
            body.encounter_type,
            "in-progress",
            body.symptoms,
            body.chief_complaint,
            body.voice_transcript,
            body.vital_signs.model_dump_json(exclude_none=True) if body.vital_signs else None,
            now,
            now,
        ),
    )

    report_id = new_report_id()
    await db.execute(
        """INSERT INTO triage_reports (
            id, encounter_id, summary, urgency_level, recommended_action, status, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (report_id, encounter_id, PLACEHOLDER_SUMMARY, "PENDING", "", ReportStatus.PROCESSING.value, now, now),
    )
    await db.commit()

    await services.bus.publish(TRIAGE_REQUESTED, TriageRequested(
        encounter_id=encounter_id,
        patient_id=patient_id,
        symptoms=body.symptoms,
        voice_transcript=body.voice_transcript,
        scan_ids=body.scan_ids,
        triage_report_id=report_id,
    ).model_dump(mode="json"))
    logger.info("Queued triage %s for encounter %s", report_id, encounter_id)

    return TriageCreated(
        report_id=report_id,
        encounter_id=encounter_id,
        patient_id=patient_id,
        status=ReportStatus.PROCESSING.value,
    )


@router.post("/quick-assessment", response_model=QuickAssessmentResponse)
async def quick_assessment(body: QuickAssessmentRequest, services: Services = Depends(get_services)):
    """Fast preliminary urgency estimate from symptoms alone."""
    if not body.symptoms.strip():
        raise HTTPException(status_code=400, detail="Symptoms are required")
    result = await generate_quick_assessment(body.symptoms, body.age, body.gender, services.reasoning)
    return QuickAssessmentResponse(urgency=result.urgency, key_considerations=result.key_considerations)


@router.get("/{report_id}", response_model=TriageReportRecord)
async def get_triage_report(report_id: str, services: Services = Depends(get_services)):
    row = await services.db.fetch_one("SELECT * FROM triage_reports WHERE id = ?", (report_id,))
    if not row:
        raise HTTPException(status_code=404, detail="Report not found")
    return report_from_row(row)
