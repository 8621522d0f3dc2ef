from enum import Enum

from pydantic import BaseModel, Field

from app.models.analysis import (
    ClinicalHistoryAnalysis,
    CodingResult,
    DiagnosisResult,
    ScanAnalysisResult,
    UrgencyLevel,
)


class ReportStatus(str, Enum):
    PROCESSING = "PROCESSING"
    DRAFT = "DRAFT"
    FINALIZED = "FINALIZED"
    DELETED = "DELETED"
    FAILED = "FAILED"


class PatientSummary(BaseModel):
    name: str
    age: int
    gender: str
    presenting_symptoms: str = ""
    active_medications: list[str] = []
    relevant_history: list[str] = []


class StageRecord(BaseModel):
    """Audit entry for one orchestration stage."""
    stage: str
    status: str  # "ok", "fallback", "skipped"
    elapsed_ms: int = 0


class OrchestratedMedicalReport(BaseModel):
    report_id: str
    patient_id: str
    encounter_id: str
    generated_at: str

    patient_summary: PatientSummary
    clinical_history: ClinicalHistoryAnalysis
    scan_analyses: list[ScanAnalysisResult] = []
    diagnosis: DiagnosisResult
    coding: CodingResult

    executive_summary: str = ""
    overall_urgency: UrgencyLevel = UrgencyLevel.MEDIUM
    overall_confidence: float = Field(0.0, ge=0.0, le=1.0)
    reasoning_chain: str = ""

    agents_used: list[str] = []
    stages: list[StageRecord] = []
    processing_time_ms: int = 0


class TriageReportRecord(BaseModel):
    """A persisted triage report row as returned by the API."""
    id: str
    encounter_id: str
    summary: str
    urgency_level: str
    recommended_action: str
    reasoning_chain: str | None = None
    confidence_score: float | None = None
    suggested_icd10: list[str] = []
    suggested_cpt: list[str] = []
    status: str
    created_at: str
    updated_at: str | None = None
