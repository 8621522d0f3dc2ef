import logging
import time

from app.models.analysis import ClinicalHistoryAnalysis
from app.models.patient import PatientContext
from app.models.responses import HistoryAnalysisPayload
from app.services.llm import ReasoningService

logger = logging.getLogger(__name__)

HISTORY_SYSTEM_PROMPT = """You are a clinical history analyst AI. Your role is to analyze a patient's
complete medical record and identify every clinically relevant factor that could influence
diagnosis and treatment.

Consider:
1. How the patient's age affects risk profiles and differential diagnoses
2. Gender-specific health considerations
3. Patterns in their medical history, including recurring or related conditions
4. Medication interactions and contraindications
5. Lab findings and report insights relevant to the current presentation
6. Red flags or warning signs across the complete record
7. Whether previous triage reports show the condition improving, stable or declining

Respond with ONLY valid JSON in this exact format:
{
  "risk_factors": ["identified risk factors"],
  "relevant_conditions": ["pre-existing conditions relevant to the presentation"],
  "medication_interactions": ["medication concerns given current meds and presentation"],
  "contraindications": ["treatment approaches to avoid"],
  "context_summary": "narrative summary of the clinically relevant context (2-3 paragraphs)",
  "age_related_considerations": ["considerations for the patient's age group"],
  "gender_specific_factors": ["gender-specific factors"],
  "relevant_lab_findings": ["key lab values or results from external reports"],
  "report_insights": ["insights from external reports that should inform diagnosis"],
  "previous_triage_analysis": "trend across previous triage reports, or null if there are none"
}"""

LONGITUDINAL_SYSTEM_PROMPT = """Summarize this patient's longitudinal medical history in 3-4 concise
sentences suitable for a medical chart. Include key chronic conditions, patterns, medications
and relevant history. Return plain text only."""

MAX_REPORTS_IN_BRIEF = 10
MAX_PRIOR_TRIAGE_REPORTS = 5


def age_considerations(age: int) -> list[str]:
    if age < 18:
        return [
            "Pediatric patient - weight-based dosing may be required",
            "Growth and development considerations",
            "Parental/guardian consent required",
        ]
    if age < 40:
        return [
            "Generally lower risk for age-related conditions",
            "Consider lifestyle factors",
        ]
    if age < 60:
        return [
            "Increased screening for cardiovascular disease",
            "Consider metabolic syndrome risk",
            "Age-appropriate cancer screening",
        ]
    if age < 75:
        return [
            "Elevated cardiovascular risk",
            "Polypharmacy considerations",
            "Renal function may affect medication dosing",
            "Falls risk assessment recommended",
        ]
    return [
        "Geriatric patient - polypharmacy review essential",
        "High falls risk - careful medication selection",
        "Cognitive assessment may be warranted",
        "Reduced renal and hepatic function expected",
        "Frailty considerations in treatment planning",
    ]


def _format_history(patient: PatientContext) -> str:
    if not patient.medical_history:
        return "No structured medical history on file"
    lines = []
    for h in patient.medical_history:
        line = f"- [{h.type}] {h.description}"
        if h.onset_date:
            line += f" (since {h.onset_date})"
        if h.clinical_status != "active":
            line += f" [{h.clinical_status}]"
        if h.severity:
            line += f" - {h.severity}"
        if h.icd10_code:
            line += f" (ICD-10: {h.icd10_code})"
        lines.append(line)
    return "\n".join(lines)


def _format_medications(patient: PatientContext) -> str:
    active = patient.active_medications
    if not active:
        return "No current medications on file"
    lines = []
    for m in active:
        line = f"- {m.name}"
        if m.dosage:
            line += f" {m.dosage}"
        if m.frequency:
            line += f" {m.frequency}"
        if m.route:
            line += f" ({m.route})"
        if m.reason:
            line += f" - for {m.reason}"
        lines.append(line)
    return "\n".join(lines)


def _format_reports(patient: PatientContext) -> str:
    if not patient.external_reports:
        return "No external reports on file"
    lines = []
    for r in patient.external_reports[:MAX_REPORTS_IN_BRIEF]:
        line = f"- [{r.type}] {r.title} ({r.report_date})"
        if r.findings:
            line += f" - Findings: {r.findings[:200]}"
        if r.conclusion:
            line += f" Conclusion: {r.conclusion[:200]}"
        lines.append(line)
    return "\n".join(lines)


def _format_encounters(patient: PatientContext) -> str:
    blocks = []
    for i, enc in enumerate(patient.encounters, start=1):
        if enc.scans:
            scans = "Scans: " + ", ".join(
                f"{s.type} ({s.body_part})" if s.body_part else s.type for s in enc.scans
            )
        else:
            scans = "No scans"
        lines = [
            f"Encounter {i} ({enc.created_at}):",
            f"  - Type: {enc.encounter_type}",
            f"  - Chief Complaint: {enc.chief_complaint or enc.symptoms}",
        ]
        if enc.voice_transcript:
            lines.append(f"  - Voice Notes: {enc.voice_transcript}")
        lines.append(f"  - {scans}")
        if enc.triage_report:
            lines.append(
                f"  - Triage: {enc.triage_report.urgency_level} - {enc.triage_report.summary[:200]}"
            )
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) or "No previous encounters on record"


def _format_prior_triage(patient: PatientContext) -> str:
    reports = [enc.triage_report for enc in patient.encounters if enc.triage_report]
    blocks = []
    for i, report in enumerate(reports[:MAX_PRIOR_TRIAGE_REPORTS], start=1):
        confidence = (
            f"{round(report.confidence_score * 100)}%" if report.confidence_score is not None else "N/A"
        )
        blocks.append(
            f"Previous Report {i}:\n"
            f"  - Urgency: {report.urgency_level}\n"
            f"  - Confidence: {confidence}\n"
            f"  - Summary: {report.summary[:300]}\n"
            f"  - Recommended Action: {report.recommended_action or 'N/A'}"
        )
    return "\n\n".join(blocks) or "No previous triage reports on file"


def build_history_brief(patient: PatientContext) -> str:
    identity = [
        f"- Name: {patient.name}",
        f"- Age: {patient.age} years old",
        f"- Gender: {patient.gender}",
        f"- Date of Birth: {patient.date_of_birth}",
    ]
    if patient.mrn:
        identity.append(f"- MRN: {patient.mrn}")

    presentation = [f"- Presenting Symptoms: {patient.current_symptoms}"]
    if patient.voice_transcript:
        presentation.append(f"- Patient's Own Words: {patient.voice_transcript}")

    return (
        "## Patient Information\n" + "\n".join(identity) + "\n\n"
        "## Structured Medical History (EHR)\n" + _format_history(patient) + "\n\n"
        "## Current Medications\n" + _format_medications(patient) + "\n\n"
        "## External Medical Reports\n" + _format_reports(patient) + "\n\n"
        "## Legacy Medical History Summary\n"
        + (patient.medical_history_summary or "No legacy summary available") + "\n\n"
        "## Current Presentation\n" + "\n".join(presentation) + "\n\n"
        "## Previous Encounters\n" + _format_encounters(patient) + "\n\n"
        "## Previous Triage Reports (for trend analysis)\n" + _format_prior_triage(patient)
    )


def fallback_history_analysis(patient: PatientContext) -> ClinicalHistoryAnalysis:
    return ClinicalHistoryAnalysis(
        patient_id=patient.id,
        risk_factors=["Advanced age"] if patient.age > 60 else [],
        relevant_conditions=[h.description for h in patient.medical_history],
        context_summary=(
            f"Patient is a {patient.age}-year-old {patient.gender} presenting with: "
            f"{patient.current_symptoms}. "
            f"{patient.medical_history_summary or 'Limited medical history available.'}"
        ),
        age_related_considerations=age_considerations(patient.age),
    )


async def analyze_patient_history(
    patient: PatientContext,
    reasoning: ReasoningService,
) -> tuple[ClinicalHistoryAnalysis, bool]:
    """Analyze the patient's full record for risk factors and clinical context.

    Returns the analysis and whether it is the deterministic fallback. Never
    raises: any reasoning-service failure degrades to an analysis built from
    the record itself.
    """
    start = time.monotonic()
    try:
        payload = await reasoning.generate_json(
            system=HISTORY_SYSTEM_PROMPT,
            user=build_history_brief(patient),
            response_model=HistoryAnalysisPayload,
            max_tokens=2048,
        )
    except Exception as e:
        logger.error("History analysis failed for patient %s: %s", patient.id, e)
        return fallback_history_analysis(patient), True

    logger.info(
        "Analyzed history for patient %s in %dms",
        patient.id,
        int((time.monotonic() - start) * 1000),
    )
    return ClinicalHistoryAnalysis(patient_id=patient.id, **payload.model_dump()), False


async def generate_longitudinal_summary(
    patient: PatientContext,
    reasoning: ReasoningService,
) -> str:
    """Chart-style summary used to refresh the patient's stored history summary.

    Falls back to the existing summary (or "") when the service fails.
    """
    conditions = ", ".join(h.description for h in patient.active_conditions)
    medications = ", ".join(m.name for m in patient.active_medications)
    encounters = "\n".join(f"{enc.created_at}: {enc.symptoms}" for enc in patient.encounters[:10])

    user_content = (
        f"Patient: {patient.name}, {patient.age}y {patient.gender}\n\n"
        f"Active Conditions: {conditions or 'None documented'}\n"
        f"Current Medications: {medications or 'None documented'}\n\n"
        f"Recent Encounters:\n{encounters or 'None documented'}\n\n"
        f"Current Medical History Summary:\n{patient.medical_history_summary or 'None documented'}"
    )
    try:
        return await reasoning.generate_text(
            system=LONGITUDINAL_SYSTEM_PROMPT,
            user=user_content,
            max_tokens=512,
        )
    except Exception as e:
        logger.error("Longitudinal summary failed for patient %s: %s", patient.id, e)
        return patient.medical_history_summary or ""
