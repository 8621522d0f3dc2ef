"""Workflow event payloads.

Event names are the routing keys on the event bus.
"""

from enum import Enum

from pydantic import BaseModel

from app.models.analysis import UrgencyLevel

TRIAGE_REQUESTED = "triage.requested"
FULL_ANALYSIS_REQUESTED = "analysis.full.requested"
SCAN_UPLOADED = "scan.uploaded"
REPORT_GENERATED = "report.generated"


class TriggerType(str, Enum):
    TRIAGE = "TRIAGE"
    SCAN_UPLOAD = "SCAN_UPLOAD"
    MANUAL = "MANUAL"


class TriageRequested(BaseModel):
    encounter_id: str
    patient_id: str
    symptoms: str
    voice_transcript: str | None = None
    scan_ids: list[str] = []
    triage_report_id: str | None = None
    trigger_type: TriggerType = TriggerType.TRIAGE
    analyze_scans: bool = True
    generate_codes: bool = True


class FullAnalysisRequested(BaseModel):
    encounter_id: str
    patient_id: str
    trigger_type: TriggerType = TriggerType.MANUAL
    include_scans: bool = True
    generate_codes: bool = True


class ScanUploaded(BaseModel):
    scan_id: str
    encounter_id: str
    patient_id: str
    scan_type: str
    file_url: str
    preview_url: str | None = None
    body_part: str | None = None


class ReportGenerated(BaseModel):
    report_id: str
    encounter_id: str
    patient_id: str
    urgency_level: UrgencyLevel
    processing_time_ms: int
