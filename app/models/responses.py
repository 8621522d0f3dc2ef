"""Structured LLM response payloads.

Each payload validates the JSON shape a prompt asks for. Fields the model
omits fall back to the defaults below; fields it fills with the wrong type or
an out-of-range value are normalized by the validators instead of failing the
whole response.
"""

import re

from pydantic import BaseModel, field_validator

from app.models.analysis import (
    ActionCategory,
    CPTCode,
    ICD10Code,
    RecommendedAction,
    Severity,
    UrgencyLevel,
)

_ACTION_RE = re.compile(
    r"^[\s*_]*(IMMEDIATE|DIAGNOSTIC|THERAPEUTIC|MONITORING|CONSULT)[\s*_]*:[\s*_]*(.*)$",
    re.IGNORECASE | re.DOTALL,
)


def _string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    items = []
    for item in value:
        if item is None or isinstance(item, (dict, list)):
            continue
        text = str(item).strip()
        if text:
            items.append(text)
    return items


def _confidence(value: object, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, str):
        match = re.search(r"(\d+(?:\.\d+)?)", value)
        if not match:
            return default
        value = float(match.group(1))
    if not isinstance(value, (int, float)):
        return default
    value = float(value)
    if 1.0 < value <= 100.0:
        value = value / 100.0
    return max(0.0, min(1.0, value))


def _enum_value(value: object, enum_cls, default):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().upper())
        except ValueError:
            return default
    return default


def parse_action(item: object) -> RecommendedAction | None:
    """Parse a "**CATEGORY:** action" string or a {category, action} object."""
    if isinstance(item, dict):
        text = str(item.get("action") or item.get("text") or "").strip()
        if not text:
            return None
        category = _enum_value(item.get("category"), ActionCategory, None)
        return RecommendedAction(category=category, action=text)
    if item is None or isinstance(item, list):
        return None
    text = str(item).strip()
    if not text:
        return None
    match = _ACTION_RE.match(text)
    if match:
        return RecommendedAction(
            category=ActionCategory(match.group(1).upper()),
            action=match.group(2).strip(),
        )
    return RecommendedAction(category=None, action=text)


class ScanAnalysisPayload(BaseModel):
    findings: str = "Analysis completed based on available data."
    abnormalities: list[str] = []
    severity: Severity = Severity.NORMAL
    confidence: float = 0.85
    recommendations: list[str] = []
    detailed_analysis: str = ""

    @field_validator("abnormalities", "recommendations", mode="before")
    @classmethod
    def _lists(cls, value):
        return _string_list(value)

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, value):
        return _enum_value(value, Severity, Severity.NORMAL)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value):
        return _confidence(value, 0.85)

    @field_validator("findings", "detailed_analysis", mode="before")
    @classmethod
    def _text(cls, value):
        return str(value) if value is not None else ""


class HistoryAnalysisPayload(BaseModel):
    risk_factors: list[str] = []
    relevant_conditions: list[str] = []
    medication_interactions: list[str] = []
    contraindications: list[str] = []
    context_summary: str = "Clinical context analysis completed."
    age_related_considerations: list[str] = []
    gender_specific_factors: list[str] = []
    relevant_lab_findings: list[str] = []
    report_insights: list[str] = []
    previous_triage_analysis: str | None = None

    @field_validator(
        "risk_factors",
        "relevant_conditions",
        "medication_interactions",
        "contraindications",
        "age_related_considerations",
        "gender_specific_factors",
        "relevant_lab_findings",
        "report_insights",
        mode="before",
    )
    @classmethod
    def _lists(cls, value):
        return _string_list(value)

    @field_validator("context_summary", mode="before")
    @classmethod
    def _summary(cls, value):
        if not isinstance(value, str) or not value.strip():
            return "Clinical context analysis completed."
        return value

    @field_validator("previous_triage_analysis", mode="before")
    @classmethod
    def _trend(cls, value):
        if not isinstance(value, str) or not value.strip():
            return None
        return value


class DiagnosisPayload(BaseModel):
    primary_diagnosis: str = "Diagnosis pending further evaluation"
    differential_diagnoses: list[str] = []
    confidence: float = 0.75
    reasoning: str = "Clinical reasoning available upon request."
    urgency_level: UrgencyLevel = UrgencyLevel.MEDIUM
    recommended_actions: list[RecommendedAction] = []
    follow_up_recommendations: list[str] = []
    red_flags: list[str] = []

    @field_validator("differential_diagnoses", "follow_up_recommendations", "red_flags", mode="before")
    @classmethod
    def _lists(cls, value):
        return _string_list(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value):
        return _confidence(value, 0.75)

    @field_validator("urgency_level", mode="before")
    @classmethod
    def _urgency(cls, value):
        return _enum_value(value, UrgencyLevel, UrgencyLevel.MEDIUM)

    @field_validator("recommended_actions", mode="before")
    @classmethod
    def _actions(cls, value):
        if not isinstance(value, list):
            return []
        return [action for action in (parse_action(item) for item in value) if action is not None]

    @field_validator("primary_diagnosis", mode="before")
    @classmethod
    def _primary(cls, value):
        if not isinstance(value, str) or not value.strip():
            return "Diagnosis pending further evaluation"
        return value

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning(cls, value):
        if not isinstance(value, str) or not value.strip():
            return "Clinical reasoning available upon request."
        return value


class CodingPayload(BaseModel):
    icd10_codes: list[ICD10Code] = []
    cpt_codes: list[CPTCode] = []
    confidence: float = 0.80

    @field_validator("icd10_codes", mode="before")
    @classmethod
    def _icd10(cls, value):
        if not isinstance(value, list):
            return []
        return [
            ICD10Code(
                code=str(item.get("code") or "R69"),
                description=str(item.get("description") or "Unspecified"),
                is_primary=bool(item.get("is_primary")),
            )
            for item in value
            if isinstance(item, dict)
        ]

    @field_validator("cpt_codes", mode="before")
    @classmethod
    def _cpt(cls, value):
        if not isinstance(value, list):
            return []
        codes = []
        for item in value:
            if not isinstance(item, dict):
                continue
            units = item.get("units")
            codes.append(CPTCode(
                code=str(item.get("code") or "99201"),
                description=str(item.get("description") or "Unspecified service"),
                units=units if isinstance(units, int) and not isinstance(units, bool) and units > 0 else 1,
            ))
        return codes

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value):
        return _confidence(value, 0.80)


class QuickAssessmentPayload(BaseModel):
    urgency: UrgencyLevel = UrgencyLevel.MEDIUM
    key_considerations: list[str] = []

    @field_validator("urgency", mode="before")
    @classmethod
    def _urgency(cls, value):
        return _enum_value(value, UrgencyLevel, UrgencyLevel.MEDIUM)

    @field_validator("key_considerations", mode="before")
    @classmethod
    def _lists(cls, value):
        return _string_list(value)
