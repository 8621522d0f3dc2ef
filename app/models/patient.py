"""Patient context snapshot handed to the agents.

Built fresh from the store on every workflow run. The shapes follow FHIR
resources (Condition, MedicationStatement, DiagnosticReport) so records can be
exchanged with EHR systems without remapping.
"""

from pydantic import BaseModel, ConfigDict


class VitalSigns(BaseModel):
    blood_pressure_systolic: float | None = None
    blood_pressure_diastolic: float | None = None
    heart_rate: float | None = None
    temperature: float | None = None
    weight: float | None = None
    height: float | None = None
    respiratory_rate: float | None = None
    oxygen_saturation: float | None = None


class ScanContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: str                                   # X-RAY, MRI, CT, DERM, ULTRASOUND
    modality: str | None = None                 # DICOM modality code
    body_part: str | None = None
    file_url: str
    preview_url: str | None = None              # rendered PNG for DICOM sources
    file_format: str = "image"                  # dicom | image
    analysis: str | None = None
    study_description: str | None = None
    created_at: str = ""

    @property
    def is_dicom(self) -> bool:
        url = self.file_url.lower()
        return self.file_format == "dicom" or ".dcm" in url or "dicom" in url

    @property
    def has_saved_analysis(self) -> bool:
        return bool(self.analysis and self.analysis.strip())


class TriageReportContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    summary: str = ""
    urgency_level: str = ""
    recommended_action: str = ""
    confidence_score: float | None = None
    status: str = ""


class EncounterContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    encounter_type: str = "ambulatory"          # ambulatory | emergency | inpatient | virtual
    symptoms: str = ""
    chief_complaint: str | None = None
    voice_transcript: str | None = None
    vital_signs: VitalSigns | None = None
    created_at: str = ""
    scans: tuple[ScanContext, ...] = ()
    triage_report: TriageReportContext | None = None


class MedicalHistoryContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: str = "condition"                     # condition | allergy | surgery | family_history | ...
    clinical_status: str = "active"             # active | recurrence | inactive | remission | resolved
    description: str
    onset_date: str | None = None
    abatement_date: str | None = None
    severity: str | None = None
    icd10_code: str | None = None
    snomed_code: str | None = None
    notes: str | None = None


class MedicationContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    generic_name: str | None = None
    rx_norm_code: str | None = None
    dosage: str | None = None
    frequency: str | None = None
    route: str | None = None
    status: str = "active"                      # active | completed | stopped | on-hold
    start_date: str | None = None
    end_date: str | None = None
    prescribed_by: str | None = None
    reason: str | None = None
    notes: str | None = None


class ExternalReportContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: str = "other"                         # lab | pathology | radiology | cardiology | other
    title: str
    description: str | None = None
    report_date: str = ""
    provider_name: str | None = None
    file_url: str | None = None
    findings: str | None = None
    conclusion: str | None = None


class PatientContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    age: int
    gender: str
    date_of_birth: str
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    mrn: str | None = None
    medical_history_summary: str | None = None

    encounters: tuple[EncounterContext, ...] = ()
    medical_history: tuple[MedicalHistoryContext, ...] = ()
    medications: tuple[MedicationContext, ...] = ()
    external_reports: tuple[ExternalReportContext, ...] = ()

    current_symptoms: str = ""
    voice_transcript: str | None = None

    @property
    def active_medications(self) -> list[MedicationContext]:
        return [m for m in self.medications if m.status == "active"]

    @property
    def active_conditions(self) -> list[MedicalHistoryContext]:
        return [h for h in self.medical_history if h.clinical_status == "active"]

    def find_encounter(self, encounter_id: str) -> EncounterContext | None:
        for encounter in self.encounters:
            if encounter.id == encounter_id:
                return encounter
        return None
