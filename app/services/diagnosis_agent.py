import logging
import time

from app.models.analysis import (
    ClinicalHistoryAnalysis,
    DiagnosisResult,
    RecommendedAction,
    ScanAnalysisResult,
    UrgencyLevel,
    max_urgency,
    urgency_for_severity,
)
from app.models.patient import PatientContext
from app.models.responses import DiagnosisPayload, QuickAssessmentPayload
from app.services.llm import ReasoningService

logger = logging.getLogger(__name__)

DIAGNOSIS_SYSTEM_PROMPT = """You are an expert clinical diagnostician AI. Synthesize all available
patient information into an accurate diagnosis with clear clinical reasoning.

Your reasoning should:
1. Consider the patient's age, gender and risk profile
2. Integrate imaging findings with the clinical presentation
3. Account for the patient's medical history
4. Identify any red flags requiring immediate attention
5. Suggest appropriate follow-up

Respond with ONLY valid JSON in this exact format:
{
  "primary_diagnosis": "most likely diagnosis with brief supporting rationale",
  "differential_diagnoses": ["second most likely", "third most likely", "fourth possibility"],
  "confidence": 0.0-1.0,
  "reasoning": "step-by-step clinical reasoning (3-4 paragraphs)",
  "urgency_level": "one of LOW, MEDIUM, HIGH, CRITICAL",
  "recommended_actions": [
    "**IMMEDIATE:** most urgent action",
    "**DIAGNOSTIC:** labs or imaging to order",
    "**THERAPEUTIC:** treatment to initiate",
    "**MONITORING:** what to watch for"
  ],
  "follow_up_recommendations": ["when to follow up", "what to monitor", "specialist referrals"],
  "red_flags": ["warning signs requiring immediate attention; empty array if none"]
}

Format each recommended action as "**CATEGORY:** action details" where CATEGORY is one of
IMMEDIATE, DIAGNOSTIC, THERAPEUTIC, MONITORING, CONSULT."""

QUICK_ASSESSMENT_SYSTEM_PROMPT = """You are a triage nurse AI giving a fast preliminary urgency estimate.
Respond with ONLY valid JSON:
{
  "urgency": "one of LOW, MEDIUM, HIGH, CRITICAL",
  "key_considerations": ["2-3 key clinical considerations"]
}"""


def _join(items: list[str], sep: str, empty: str) -> str:
    return sep.join(items) if items else empty


def format_scan_findings(scans: list[ScanAnalysisResult]) -> str:
    if not scans:
        return "No imaging studies available for this encounter."
    blocks = []
    for scan in scans:
        blocks.append(
            f"### {scan.scan_type} Scan Analysis\n"
            f"- Findings: {scan.findings}\n"
            f"- Abnormalities: {_join(scan.abnormalities, ', ', 'None identified')}\n"
            f"- Severity: {scan.severity.value}\n"
            f"- Confidence: {round(scan.confidence * 100)}%\n"
            f"- Recommendations: {_join(scan.recommendations, '; ', 'None')}"
        )
    return "\n\n".join(blocks)


def build_diagnosis_brief(
    patient: PatientContext,
    history: ClinicalHistoryAnalysis,
    scans: list[ScanAnalysisResult],
) -> str:
    lines = [
        "## Patient Profile",
        f"- Name: {patient.name}",
        f"- Age: {patient.age} years old",
        f"- Gender: {patient.gender}",
        "",
        "## Current Presentation",
        f"Chief Complaint/Symptoms: {patient.current_symptoms}",
    ]
    if patient.voice_transcript:
        lines.append(f'Patient\'s Own Description: "{patient.voice_transcript}"')
    lines += [
        "",
        "## Clinical History Analysis",
        f"Context Summary: {history.context_summary}",
        f"Risk Factors: {_join(history.risk_factors, ', ', 'None identified')}",
        f"Relevant Pre-existing Conditions: {_join(history.relevant_conditions, ', ', 'None documented')}",
        f"Age-Related Considerations: {_join(history.age_related_considerations, '; ', 'None')}",
        f"Gender-Specific Factors: {_join(history.gender_specific_factors, '; ', 'None specific')}",
        f"Medication Interactions: {_join(history.medication_interactions, '; ', 'None identified')}",
        f"Contraindications: {_join(history.contraindications, ', ', 'None identified')}",
    ]
    if history.relevant_lab_findings:
        lines.append(f"Relevant Lab Findings: {'; '.join(history.relevant_lab_findings)}")
    if history.previous_triage_analysis:
        lines.append(f"Previous Triage Trend: {history.previous_triage_analysis}")
    lines += ["", "## Imaging Results", format_scan_findings(scans)]
    return "\n".join(lines)


def fallback_diagnosis() -> DiagnosisResult:
    return DiagnosisResult(
        primary_diagnosis="Automated diagnosis unavailable - manual clinical review required",
        confidence=0.0,
        reasoning=(
            "The AI diagnostic system was unable to complete the analysis. "
            "Please perform standard clinical evaluation."
        ),
        urgency_level=UrgencyLevel.MEDIUM,
        recommended_actions=[
            RecommendedAction(action="Complete physical examination"),
            RecommendedAction(action="Review all available imaging and labs"),
            RecommendedAction(action="Consider specialist consultation"),
        ],
        follow_up_recommendations=[
            "Follow up within 48-72 hours if symptoms persist",
            "Return immediately if symptoms worsen",
        ],
    )


async def generate_diagnosis(
    patient: PatientContext,
    history: ClinicalHistoryAnalysis,
    scans: list[ScanAnalysisResult],
    reasoning: ReasoningService,
) -> DiagnosisResult:
    """Synthesize history and imaging into a diagnosis. Never raises."""
    start = time.monotonic()
    try:
        payload = await reasoning.generate_json(
            system=DIAGNOSIS_SYSTEM_PROMPT,
            user=build_diagnosis_brief(patient, history, scans),
            response_model=DiagnosisPayload,
            max_tokens=3000,
            tier="high",
        )
    except Exception as e:
        logger.error("Diagnosis failed for patient %s: %s", patient.id, e)
        return fallback_diagnosis()

    logger.info(
        "Generated diagnosis for patient %s in %dms",
        patient.id,
        int((time.monotonic() - start) * 1000),
    )
    return DiagnosisResult(**payload.model_dump())


def calculate_overall_urgency(
    scans: list[ScanAnalysisResult],
    diagnosis: DiagnosisResult,
) -> UrgencyLevel:
    """Combine the diagnosis urgency with scan severities and red flags.

    SEVERE scans raise the result to CRITICAL; MODERATE scans or any red flag
    raise it to HIGH. The result is never below the diagnosis urgency.
    """
    levels = [diagnosis.urgency_level]
    levels += [urgency_for_severity(scan.severity) for scan in scans]
    if diagnosis.red_flags:
        levels.append(UrgencyLevel.HIGH)
    return max_urgency(*levels)


async def generate_quick_assessment(
    symptoms: str,
    age: int,
    gender: str,
    reasoning: ReasoningService,
) -> QuickAssessmentPayload:
    try:
        return await reasoning.generate_json(
            system=QUICK_ASSESSMENT_SYSTEM_PROMPT,
            user=f"Quick triage assessment for a {age}y {gender} patient presenting with: {symptoms}",
            response_model=QuickAssessmentPayload,
            max_tokens=512,
            tier="fast",
        )
    except Exception as e:
        logger.error("Quick assessment failed: %s", e)
        return QuickAssessmentPayload()
