"""Store rows and LLM doubles shared by the test modules."""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from app.models.responses import (
    CodingPayload,
    DiagnosisPayload,
    HistoryAnalysisPayload,
    QuickAssessmentPayload,
)


def iso(days_ago: float = 0, seconds_ago: float = 0) -> str:
    return (datetime.now(UTC) - timedelta(days=days_ago, seconds=seconds_ago)).isoformat()


HISTORY_PAYLOAD = {
    "risk_factors": ["Hypertension", "Anticoagulation"],
    "relevant_conditions": ["Atrial fibrillation"],
    "medication_interactions": ["Apixaban increases bleeding risk"],
    "contraindications": ["Avoid NSAIDs"],
    "context_summary": "Older patient with AF on apixaban presenting with dyspnea.",
    "age_related_considerations": ["Elevated cardiovascular risk"],
    "gender_specific_factors": [],
    "relevant_lab_findings": ["eGFR 52"],
    "report_insights": ["Mild renal impairment"],
    "previous_triage_analysis": "Stable compared with prior visit.",
}

DIAGNOSIS_PAYLOAD = {
    "primary_diagnosis": "Community-acquired pneumonia",
    "differential_diagnoses": ["Pulmonary embolism", "Acute bronchitis"],
    "confidence": 0.8,
    "reasoning": "Fever with productive cough and focal crackles.",
    "urgency_level": "MEDIUM",
    "recommended_actions": [
        "**DIAGNOSTIC:** Chest X-ray and CBC",
        "**THERAPEUTIC:** Start empiric antibiotics",
    ],
    "follow_up_recommendations": ["Review in 48 hours"],
    "red_flags": [],
}

CODING_PAYLOAD = {
    "icd10_codes": [
        {"code": "J18.9", "description": "Pneumonia, unspecified organism", "is_primary": True},
        {"code": "I10", "description": "Essential hypertension", "is_primary": False},
    ],
    "cpt_codes": [
        {"code": "99284", "description": "Emergency department visit", "units": 1},
        {"code": "71046", "description": "Chest X-ray, 2 views", "units": 1},
    ],
    "confidence": 0.9,
}

DEFAULT_PAYLOADS = {
    HistoryAnalysisPayload: HISTORY_PAYLOAD,
    DiagnosisPayload: DIAGNOSIS_PAYLOAD,
    CodingPayload: CODING_PAYLOAD,
    QuickAssessmentPayload: {"urgency": "HIGH", "key_considerations": ["Rule out sepsis"]},
}


def fake_reasoning(payloads: dict | None = None, text: str = "Generated summary.", error: Exception | None = None):
    """Reasoning double. ``payloads`` maps response models to dicts or exceptions."""
    payloads = {**DEFAULT_PAYLOADS, **(payloads or {})}

    async def generate_json(*, system, user, response_model, max_tokens=2048, tier=None):
        if error is not None:
            raise error
        value = payloads.get(response_model, {})
        if isinstance(value, Exception):
            raise value
        return response_model.model_validate(value)

    async def generate_text(*, system, user, max_tokens=1024, tier=None):
        if error is not None:
            raise error
        if isinstance(text, Exception):
            raise text
        return text

    reasoning = MagicMock()
    reasoning.generate_json = AsyncMock(side_effect=generate_json)
    reasoning.generate_text = AsyncMock(side_effect=generate_text)
    return reasoning


def fake_vision(payload: dict | None = None, error: Exception | None = None):
    async def analyze_image_json(*, system, user, response_model, image_url=None, max_tokens=2000):
        if error is not None:
            raise error
        return response_model.model_validate(payload or {})

    vision = MagicMock()
    vision.analyze_image_json = AsyncMock(side_effect=analyze_image_json)
    return vision


async def add_patient(
    db,
    patient_id: str = "pat-1",
    name: str = "Jane Doe",
    date_of_birth: str = "1958-04-02",
    gender: str = "Female",
    summary: str | None = None,
) -> str:
    await db.execute(
        """INSERT INTO patients (id, name, date_of_birth, gender, medical_history_summary, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (patient_id, name, date_of_birth, gender, summary, iso(days_ago=400)),
    )
    await db.commit()
    return patient_id


async def add_encounter(
    db,
    encounter_id: str = "enc-1",
    patient_id: str = "pat-1",
    symptoms: str = "Fever and productive cough for three days",
    created_at: str | None = None,
    voice_transcript: str | None = None,
    vital_signs: dict | None = None,
) -> str:
    await db.execute(
        """INSERT INTO encounters (id, patient_id, symptoms, voice_transcript, vital_signs, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            encounter_id,
            patient_id,
            symptoms,
            voice_transcript,
            json.dumps(vital_signs) if vital_signs else None,
            created_at or iso(),
        ),
    )
    await db.commit()
    return encounter_id


async def add_scan(
    db,
    scan_id: str = "scan-1",
    encounter_id: str = "enc-1",
    scan_type: str = "X-RAY",
    body_part: str | None = "Chest",
    file_url: str = "https://bucket.s3.amazonaws.com/scans/chest.png",
    preview_url: str | None = None,
    file_format: str = "image",
    analysis: str | None = None,
) -> str:
    await db.execute(
        """INSERT INTO scans (
            id, encounter_id, type, body_part, file_url, preview_url, file_format, analysis, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (scan_id, encounter_id, scan_type, body_part, file_url, preview_url, file_format, analysis, iso()),
    )
    await db.commit()
    return scan_id


async def add_report(
    db,
    report_id: str = "RPT-1",
    encounter_id: str = "enc-1",
    status: str = "DRAFT",
    created_at: str | None = None,
    urgency_level: str = "MEDIUM",
    summary: str = "Prior assessment",
    confidence: float | None = 0.7,
) -> str:
    await db.execute(
        """INSERT INTO triage_reports (
            id, encounter_id, summary, urgency_level, recommended_action, confidence_score,
            status, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (report_id, encounter_id, summary, urgency_level, "- Rest", confidence, status,
         created_at or iso(), created_at or iso()),
    )
    await db.commit()
    return report_id


async def add_history(db, history_id: str, patient_id: str = "pat-1", description: str = "Hypertension",
                      status: str = "active", history_type: str = "condition") -> None:
    await db.execute(
        """INSERT INTO medical_history (id, patient_id, type, clinical_status, description, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (history_id, patient_id, history_type, status, description, iso()),
    )
    await db.commit()


async def add_medication(db, medication_id: str, patient_id: str = "pat-1", name: str = "Lisinopril",
                         status: str = "active", dosage: str | None = "10mg", created_at: str | None = None) -> None:
    await db.execute(
        """INSERT INTO medications (id, patient_id, name, dosage, status, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (medication_id, patient_id, name, dosage, status, created_at or iso()),
    )
    await db.commit()


async def add_external_report(db, report_id: str, patient_id: str = "pat-1", title: str = "Lipid panel",
                              report_date: str | None = None) -> None:
    await db.execute(
        """INSERT INTO external_reports (id, patient_id, type, title, report_date, findings, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (report_id, patient_id, "lab", title, report_date or iso(), "LDL 160 mg/dL", iso()),
    )
    await db.commit()
