"""Sequences the clinical agents into one orchestrated triage report.

Stages run strictly in order. Only context gathering is fatal; every other
stage degrades to its component fallback and is recorded as such in the
report's stage audit.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from app.database import DatabaseAdapter
from app.models.analysis import (
    ClinicalHistoryAnalysis,
    CodingResult,
    DiagnosisResult,
    ScanAnalysisResult,
    UrgencyLevel,
)
from app.models.patient import EncounterContext, PatientContext, ScanContext
from app.models.report import OrchestratedMedicalReport, PatientSummary, StageRecord
from app.services.coding_agent import generate_medical_codes
from app.services.context_gatherer import (
    NotFoundError,
    calculate_age,
    gather_patient_context,
    require_encounter,
    scan_from_row,
)
from app.services.diagnosis_agent import calculate_overall_urgency, generate_diagnosis
from app.services.dicom import fetch_dicom_metadata
from app.services.history_agent import (
    analyze_patient_history,
    generate_longitudinal_summary,
)
from app.services.llm import ReasoningService, VisionService
from app.services.scan_agent import DicomFetcher, analyze_scan, analyze_scans
from app.services.storage import ObjectStorage

logger = logging.getLogger(__name__)

GATHER_CONTEXT = "GATHER_CONTEXT"
ANALYZE_HISTORY = "ANALYZE_HISTORY"
ANALYZE_SCANS = "ANALYZE_SCANS"
SYNTHESIZE_DIAGNOSIS = "SYNTHESIZE_DIAGNOSIS"
GENERATE_CODES = "GENERATE_CODES"
UPDATE_LONGITUDINAL_SUMMARY = "UPDATE_LONGITUDINAL_SUMMARY"
COMPILE_SUMMARY = "COMPILE_SUMMARY"

HISTORY_AGENT = "Clinical History Agent"
SCAN_AGENT = "Medical Scan Agent"
DIAGNOSIS_AGENT = "Diagnosis Agent"
CODING_AGENT = "Coding Agent"
ORCHESTRATOR_AGENT = "Orchestrator Agent"

EXECUTIVE_SUMMARY_SYSTEM_PROMPT = """Generate a clinical summary for a physician using Markdown.
Make it scannable and efficient to read.

FORMAT REQUIREMENTS:
1. Start with "**Executive Summary: [Urgency Level] Alert**" if urgency is HIGH or CRITICAL,
   otherwise "**Executive Summary:**"
2. Use "**Patient:**" to introduce the patient briefly
3. Use "**Primary Impression:**" followed by the main diagnosis in bold
4. Include a brief clinical context paragraph
5. Add a "**Key Clinical Points:**" section with 3-5 bullet points
6. If there are red flags, highlight them with "⚠️ **Warning:**"
7. Use **bold** for critical values, diagnoses and action items
8. Keep it concise"""


@dataclass
class AnalysisOptions:
    analyze_scans: bool = True
    scan_ids: list[str] | None = None
    generate_codes: bool = True
    update_patient_history: bool = True
    symptoms: str | None = None


def new_report_id() -> str:
    return f"RPT-{uuid.uuid4().hex[:12].upper()}"


def overall_confidence(
    diagnosis: DiagnosisResult,
    scans: list[ScanAnalysisResult],
    coding: CodingResult,
) -> float:
    """Mean of diagnosis, scan and coding confidence, rounded to 2 places."""
    if scans:
        scan_confidence = sum(s.confidence for s in scans) / len(scans)
    else:
        scan_confidence = diagnosis.confidence
    return round((diagnosis.confidence + scan_confidence + coding.confidence) / 3, 2)


def build_reasoning_chain(
    history: ClinicalHistoryAnalysis,
    scans: list[ScanAnalysisResult],
    diagnosis: DiagnosisResult,
) -> str:
    lines = [
        "## Clinical Reasoning Chain",
        "",
        "### 1. Patient History Analysis",
        f"Risk factors identified: {', '.join(history.risk_factors) or 'None'}",
        f"Relevant conditions: {', '.join(history.relevant_conditions) or 'None'}",
        f"Age considerations: {'; '.join(history.age_related_considerations) or 'None'}",
        f"Medication interactions: {', '.join(history.medication_interactions) or 'None identified'}",
    ]
    if history.relevant_lab_findings:
        lines += ["", "### 1.5. Relevant Lab Findings"]
        lines += [f"- {finding}" for finding in history.relevant_lab_findings]
    if history.report_insights:
        lines += ["", "### 1.6. External Report Insights"]
        lines += [f"- {insight}" for insight in history.report_insights]

    lines += ["", "### 2. Imaging Analysis"]
    if scans:
        for i, scan in enumerate(scans, start=1):
            label = f"{scan.scan_type} - {scan.body_part}" if scan.body_part else scan.scan_type
            lines += [
                "",
                f"**Scan {i} ({label}):**",
                f"- Findings: {scan.findings}",
                f"- Severity: {scan.severity.value}",
                f"- Confidence: {round(scan.confidence * 100)}%",
            ]
    else:
        lines.append("No imaging studies performed.")

    lines += [
        "",
        "### 3. Diagnostic Reasoning",
        diagnosis.reasoning,
        "",
        "### 4. Conclusion",
        f"**Primary Diagnosis:** {diagnosis.primary_diagnosis}",
        f"**Differential:** {', '.join(diagnosis.differential_diagnoses) or 'None'}",
        f"**Urgency Level:** {diagnosis.urgency_level.value}",
    ]
    if diagnosis.red_flags:
        lines += ["", "### ⚠️ Red Flags"]
        lines += [f"- {flag}" for flag in diagnosis.red_flags]
    return "\n".join(lines)


def fallback_executive_summary(patient: PatientContext, diagnosis: DiagnosisResult) -> str:
    if diagnosis.red_flags:
        flags = f"- ⚠️ **Red Flags:** {', '.join(diagnosis.red_flags)}"
    else:
        flags = "- No red flags identified"
    first_action = (
        diagnosis.recommended_actions[0].display()
        if diagnosis.recommended_actions else "Further evaluation recommended"
    )
    return (
        f"**Executive Summary:** **Patient:** {patient.name}, {patient.age}y {patient.gender}\n\n"
        f"**Primary Impression:** {diagnosis.primary_diagnosis}\n\n"
        f"Patient presenting with {patient.current_symptoms}.\n\n"
        f"**Key Points:**\n"
        f"- Urgency: **{diagnosis.urgency_level.value}**\n"
        f"{flags}\n"
        f"- {first_action}"
    )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class TriageOrchestrator:
    """Coordinates history, scan, diagnosis and coding agents for one encounter."""

    def __init__(
        self,
        db: DatabaseAdapter,
        reasoning: ReasoningService,
        vision: VisionService,
        storage: ObjectStorage,
        dicom_fetcher: DicomFetcher = fetch_dicom_metadata,
    ) -> None:
        self.db = db
        self.reasoning = reasoning
        self.vision = vision
        self.storage = storage
        self.dicom_fetcher = dicom_fetcher

    async def run(
        self,
        encounter_id: str,
        patient_id: str,
        options: AnalysisOptions | None = None,
    ) -> OrchestratedMedicalReport:
        """Run the full analysis pipeline for an encounter.

        Raises:
            NotFoundError: the patient or encounter does not exist
        """
        options = options or AnalysisOptions()
        started = time.monotonic()
        stages: list[StageRecord] = []
        agents_used: list[str] = []
        logger.info("Starting full analysis for encounter %s", encounter_id)

        t = time.monotonic()
        patient = await gather_patient_context(self.db, patient_id, encounter_id, options.symptoms)
        encounter = require_encounter(patient, encounter_id)
        stages.append(StageRecord(stage=GATHER_CONTEXT, status="ok", elapsed_ms=_elapsed_ms(t)))

        t = time.monotonic()
        agents_used.append(HISTORY_AGENT)
        history, history_fell_back = await analyze_patient_history(patient, self.reasoning)
        status = "fallback" if history_fell_back else "ok"
        stages.append(StageRecord(stage=ANALYZE_HISTORY, status=status, elapsed_ms=_elapsed_ms(t)))

        t = time.monotonic()
        scan_analyses: list[ScanAnalysisResult] = []
        scans: list[ScanContext] = []
        if options.analyze_scans:
            scans = await self._scans_to_analyze(patient, encounter, options.scan_ids)
        if scans:
            agents_used.append(SCAN_AGENT)
            scan_analyses = await analyze_scans(
                scans,
                history.context_summary,
                self.vision,
                self.storage,
                self.dicom_fetcher,
            )
            await self._persist_scan_analyses(scan_analyses)
            degraded = any(not s.reused and s.confidence == 0 for s in scan_analyses)
            status = "fallback" if degraded else "ok"
        else:
            status = "skipped"
        stages.append(StageRecord(stage=ANALYZE_SCANS, status=status, elapsed_ms=_elapsed_ms(t)))

        t = time.monotonic()
        agents_used.append(DIAGNOSIS_AGENT)
        diagnosis = await generate_diagnosis(patient, history, scan_analyses, self.reasoning)
        status = "fallback" if diagnosis.confidence == 0 else "ok"
        stages.append(StageRecord(stage=SYNTHESIZE_DIAGNOSIS, status=status, elapsed_ms=_elapsed_ms(t)))

        t = time.monotonic()
        coding = CodingResult()
        if options.generate_codes:
            agents_used.append(CODING_AGENT)
            scan_types = [s.type for s in scans] or [s.type for s in encounter.scans]
            coding = await generate_medical_codes(diagnosis, scan_types, [], self.reasoning)
            status = "fallback" if coding.confidence == 0 else "ok"
        else:
            status = "skipped"
        stages.append(StageRecord(stage=GENERATE_CODES, status=status, elapsed_ms=_elapsed_ms(t)))

        t = time.monotonic()
        if options.update_patient_history:
            status = await self._update_longitudinal_summary(patient)
        else:
            status = "skipped"
        stages.append(StageRecord(
            stage=UPDATE_LONGITUDINAL_SUMMARY, status=status, elapsed_ms=_elapsed_ms(t),
        ))

        t = time.monotonic()
        agents_used.append(ORCHESTRATOR_AGENT)
        overall_urgency = calculate_overall_urgency(scan_analyses, diagnosis)
        executive_summary, status = await self._executive_summary(
            patient, history, scan_analyses, diagnosis, overall_urgency,
        )
        stages.append(StageRecord(stage=COMPILE_SUMMARY, status=status, elapsed_ms=_elapsed_ms(t)))

        processing_time_ms = _elapsed_ms(started)
        logger.info(
            "Analysis complete for encounter %s in %dms (urgency %s)",
            encounter_id,
            processing_time_ms,
            overall_urgency.value,
        )

        return OrchestratedMedicalReport(
            report_id=new_report_id(),
            patient_id=patient_id,
            encounter_id=encounter_id,
            generated_at=datetime.now(UTC).isoformat(),
            patient_summary=PatientSummary(
                name=patient.name,
                age=patient.age,
                gender=patient.gender,
                presenting_symptoms=patient.current_symptoms,
                active_medications=[
                    f"{m.name} {m.dosage}" if m.dosage else m.name for m in patient.active_medications
                ],
                relevant_history=[h.description for h in patient.active_conditions[:5]],
            ),
            clinical_history=history,
            scan_analyses=scan_analyses,
            diagnosis=diagnosis,
            coding=coding,
            executive_summary=executive_summary,
            overall_urgency=overall_urgency,
            overall_confidence=overall_confidence(diagnosis, scan_analyses, coding),
            reasoning_chain=build_reasoning_chain(history, scan_analyses, diagnosis),
            agents_used=agents_used,
            stages=stages,
            processing_time_ms=processing_time_ms,
        )

    async def analyze_single_scan(self, scan_id: str) -> ScanAnalysisResult:
        """Analyze one uploaded scan and persist the structured result on its row."""
        row = await self.db.fetch_one(
            """SELECT s.*, p.name AS patient_name, p.date_of_birth AS patient_dob,
                      p.gender AS patient_gender, p.medical_history_summary AS patient_summary
               FROM scans s
               JOIN encounters e ON e.id = s.encounter_id
               JOIN patients p ON p.id = e.patient_id
               WHERE s.id = ?""",
            (scan_id,),
        )
        if not row:
            raise NotFoundError(f"Scan not found: {scan_id}")

        scan = scan_from_row(row)
        clinical_context = (
            f"Patient: {row['patient_name']}, {calculate_age(row['patient_dob'])}y "
            f"{row['patient_gender']}. {row['patient_summary'] or ''}"
        ).strip()
        result = await analyze_scan(
            scan, clinical_context, self.vision, self.storage, self.dicom_fetcher,
        )
        await self._persist_scan_analyses([result])
        return result

    async def _scans_to_analyze(
        self,
        patient: PatientContext,
        encounter: EncounterContext,
        scan_ids: list[str] | None,
    ) -> list[ScanContext]:
        if not scan_ids:
            return list(encounter.scans)

        placeholders = ", ".join("?" for _ in scan_ids)
        rows = await self.db.fetch_all(
            f"""SELECT s.* FROM scans s
                JOIN encounters e ON e.id = s.encounter_id
                WHERE s.id IN ({placeholders}) AND e.patient_id = ?""",
            [*scan_ids, patient.id],
        )
        by_id = {row["id"]: scan_from_row(row) for row in rows}
        missing = [sid for sid in scan_ids if sid not in by_id]
        if missing:
            logger.warning(
                "Ignoring scans %s: not found for patient %s", ", ".join(missing), patient.id
            )
        return [by_id[sid] for sid in scan_ids if sid in by_id]

    async def _persist_scan_analyses(self, results: list[ScanAnalysisResult]) -> None:
        # Reused and fallback results are not written back; a fallback must not
        # block a later successful analysis.
        fresh = [r for r in results if not r.reused and r.confidence > 0]
        if not fresh:
            return
        now = datetime.now(UTC).isoformat()
        try:
            for result in fresh:
                await self.db.execute(
                    "UPDATE scans SET analysis = ?, analysis_completed_at = ? WHERE id = ?",
                    (result.model_dump_json(exclude={"reused"}), now, result.scan_id),
                )
            await self.db.commit()
        except Exception as e:
            logger.error("Failed to persist scan analyses: %s", e)

    async def _update_longitudinal_summary(self, patient: PatientContext) -> str:
        summary = await generate_longitudinal_summary(patient, self.reasoning)
        if not summary or summary == patient.medical_history_summary:
            return "fallback"
        try:
            await self.db.execute(
                "UPDATE patients SET medical_history_summary = ?, updated_at = ? WHERE id = ?",
                (summary, datetime.now(UTC).isoformat(), patient.id),
            )
            await self.db.commit()
        except Exception as e:
            logger.error("Failed to update history summary for patient %s: %s", patient.id, e)
            return "fallback"
        return "ok"

    async def _executive_summary(
        self,
        patient: PatientContext,
        history: ClinicalHistoryAnalysis,
        scans: list[ScanAnalysisResult],
        diagnosis: DiagnosisResult,
        overall_urgency: UrgencyLevel,
    ) -> tuple[str, str]:
        imaging = "; ".join(f"{s.scan_type}: {s.findings[:100]}" for s in scans) or "No imaging"
        medications = ", ".join(m.name for m in patient.active_medications[:5])
        labs = "; ".join(history.relevant_lab_findings[:3]) or "No recent labs"
        actions = "; ".join(a.display() for a in diagnosis.recommended_actions[:3])
        user_content = (
            f"**Patient:** {patient.name}, {patient.age}y {patient.gender}\n"
            f"**Presenting Symptoms:** {patient.current_symptoms}\n"
            f"**Key History:** {', '.join(history.risk_factors[:3]) or 'None'}\n"
            f"**Current Medications:** {medications or 'None'}\n"
            f"**Recent Lab Findings:** {labs}\n"
            f"**Imaging:** {imaging}\n"
            f"**Primary Diagnosis:** {diagnosis.primary_diagnosis}\n"
            f"**Urgency:** {overall_urgency.value}\n"
            f"**Key Actions:** {actions or 'None'}"
        )
        if diagnosis.red_flags:
            user_content += f"\n**RED FLAGS:** {', '.join(diagnosis.red_flags)}"

        try:
            text = await self.reasoning.generate_text(
                system=EXECUTIVE_SUMMARY_SYSTEM_PROMPT,
                user=user_content,
                max_tokens=1024,
            )
            return text, "ok"
        except Exception as e:
            logger.error("Executive summary failed for patient %s: %s", patient.id, e)
            return fallback_executive_summary(patient, diagnosis), "fallback"
