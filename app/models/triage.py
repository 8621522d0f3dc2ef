from datetime import date

from pydantic import BaseModel, field_validator

from app.models.analysis import UrgencyLevel
from app.models.patient import VitalSigns


class NewPatient(BaseModel):
    name: str
    date_of_birth: date
    gender: str
    phone: str | None = None
    email: str | None = None
    mrn: str | None = None

    @field_validator("date_of_birth")
    @classmethod
    def _not_in_future(cls, value: date) -> date:
        if value > date.today():
            raise ValueError("date_of_birth cannot be in the future")
        return value


class TriageCreate(BaseModel):
    patient_id: str | None = None
    new_patient: NewPatient | None = None
    symptoms: str = ""
    voice_transcript: str | None = None
    chief_complaint: str | None = None
    encounter_type: str = "ambulatory"
    vital_signs: VitalSigns | None = None
    scan_ids: list[str] = []


class TriageCreated(BaseModel):
    report_id: str
    encounter_id: str
    patient_id: str
    status: str


class ScanCreate(BaseModel):
    encounter_id: str
    type: str
    file_url: str
    preview_url: str | None = None
    body_part: str | None = None
    modality: str | None = None
    file_format: str = "image"
    study_description: str | None = None


class ScanCreated(BaseModel):
    id: str
    encounter_id: str
    status: str


class AnalysisQueued(BaseModel):
    encounter_id: str
    patient_id: str
    status: str


class QuickAssessmentRequest(BaseModel):
    symptoms: str
    age: int
    gender: str


class QuickAssessmentResponse(BaseModel):
    urgency: UrgencyLevel
    key_considerations: list[str]
