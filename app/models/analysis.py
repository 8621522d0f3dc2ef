"""Agent output models: scan findings, history analysis, diagnosis, coding."""

from enum import Enum

from pydantic import BaseModel, Field


class Severity(str, Enum):
    """Imaging finding severity, ordered NORMAL < MILD < MODERATE < SEVERE."""
    NORMAL = "NORMAL"
    MILD = "MILD"
    MODERATE = "MODERATE"
    SEVERE = "SEVERE"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


class UrgencyLevel(str, Enum):
    """Clinical priority, ordered LOW < MEDIUM < HIGH < CRITICAL."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _URGENCY_ORDER.index(self)


_SEVERITY_ORDER = [Severity.NORMAL, Severity.MILD, Severity.MODERATE, Severity.SEVERE]
_URGENCY_ORDER = [UrgencyLevel.LOW, UrgencyLevel.MEDIUM, UrgencyLevel.HIGH, UrgencyLevel.CRITICAL]


def max_urgency(*levels: UrgencyLevel) -> UrgencyLevel:
    """Highest of the given urgency levels (LOW when none are given)."""
    return max(levels, key=lambda level: level.rank, default=UrgencyLevel.LOW)


def urgency_for_severity(severity: Severity) -> UrgencyLevel:
    """Urgency floor implied by a single scan finding."""
    if severity == Severity.SEVERE:
        return UrgencyLevel.CRITICAL
    if severity == Severity.MODERATE:
        return UrgencyLevel.HIGH
    return UrgencyLevel.LOW


class ActionCategory(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    DIAGNOSTIC = "DIAGNOSTIC"
    THERAPEUTIC = "THERAPEUTIC"
    MONITORING = "MONITORING"
    CONSULT = "CONSULT"


class RecommendedAction(BaseModel):
    category: ActionCategory | None = None  # None when the model did not tag the action
    action: str = ""

    def display(self) -> str:
        if self.category is None:
            return self.action
        return f"**{self.category.value}:** {self.action}"


class ScanAnalysisResult(BaseModel):
    scan_id: str = ""
    scan_type: str = ""
    body_part: str | None = None
    findings: str = ""
    abnormalities: list[str] = []
    severity: Severity = Severity.NORMAL
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    recommendations: list[str] = []
    raw_analysis: str = ""
    reused: bool = False


class ClinicalHistoryAnalysis(BaseModel):
    patient_id: str
    risk_factors: list[str] = []
    relevant_conditions: list[str] = []
    medication_interactions: list[str] = []
    contraindications: list[str] = []
    context_summary: str = ""
    age_related_considerations: list[str] = []
    gender_specific_factors: list[str] = []
    relevant_lab_findings: list[str] = []
    report_insights: list[str] = []
    previous_triage_analysis: str | None = None


class DiagnosisResult(BaseModel):
    primary_diagnosis: str
    differential_diagnoses: list[str] = []
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    reasoning: str = ""
    urgency_level: UrgencyLevel = UrgencyLevel.MEDIUM
    recommended_actions: list[RecommendedAction] = []
    follow_up_recommendations: list[str] = []
    red_flags: list[str] = []


class ICD10Code(BaseModel):
    code: str
    description: str
    is_primary: bool = False


class CPTCode(BaseModel):
    code: str
    description: str
    units: int = 1


class CodingResult(BaseModel):
    icd10_codes: list[ICD10Code] = []
    cpt_codes: list[CPTCode] = []
    confidence: float = Field(0.0, ge=0.0, le=1.0)
