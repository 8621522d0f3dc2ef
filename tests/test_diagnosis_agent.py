"""Tests for the diagnosis agent and urgency aggregation."""

import pytest

from app.models.analysis import (
    ActionCategory,
    ClinicalHistoryAnalysis,
    DiagnosisResult,
    ScanAnalysisResult,
    Severity,
    UrgencyLevel,
)
from app.models.patient import PatientContext
from app.models.responses import DiagnosisPayload, QuickAssessmentPayload
from app.services.diagnosis_agent import (
    build_diagnosis_brief,
    calculate_overall_urgency,
    fallback_diagnosis,
    format_scan_findings,
    generate_diagnosis,
    generate_quick_assessment,
)
from app.services.llm import LLMResponseError
from tests.factories import DIAGNOSIS_PAYLOAD, fake_reasoning

PATIENT = PatientContext(
    id="pat-1",
    name="Jane Doe",
    age=68,
    gender="Female",
    date_of_birth="1958-04-02",
    current_symptoms="Fever and productive cough",
    voice_transcript="I can't stop coughing",
)

HISTORY = ClinicalHistoryAnalysis(
    patient_id="pat-1",
    risk_factors=["Smoker"],
    context_summary="Former smoker with COPD.",
    previous_triage_analysis="Worsening since last visit.",
)


def scan(severity: Severity, confidence: float = 0.9) -> ScanAnalysisResult:
    return ScanAnalysisResult(
        scan_id=f"scan-{severity.value}",
        scan_type="X-RAY",
        findings="Findings",
        severity=severity,
        confidence=confidence,
    )


def diagnosis(urgency: UrgencyLevel, red_flags: list[str] | None = None) -> DiagnosisResult:
    return DiagnosisResult(primary_diagnosis="Dx", urgency_level=urgency, red_flags=red_flags or [])


class TestBrief:
    def test_without_scans(self):
        brief = build_diagnosis_brief(PATIENT, HISTORY, [])
        assert "No imaging studies available for this encounter." in brief
        assert "Risk Factors: Smoker" in brief
        assert "Contraindications: None identified" in brief
        assert 'Patient\'s Own Description: "I can\'t stop coughing"' in brief
        assert "Previous Triage Trend: Worsening since last visit." in brief

    def test_scan_block(self):
        text = format_scan_findings([scan(Severity.MODERATE, 0.876)])
        assert "### X-RAY Scan Analysis" in text
        assert "- Severity: MODERATE" in text
        assert "- Confidence: 88%" in text
        assert "- Abnormalities: None identified" in text


async def test_diagnosis_from_model_output():
    reasoning = fake_reasoning()

    result = await generate_diagnosis(PATIENT, HISTORY, [], reasoning)

    assert result.primary_diagnosis == DIAGNOSIS_PAYLOAD["primary_diagnosis"]
    assert result.urgency_level == UrgencyLevel.MEDIUM
    assert result.confidence == 0.8
    assert [a.category for a in result.recommended_actions] == [
        ActionCategory.DIAGNOSTIC,
        ActionCategory.THERAPEUTIC,
    ]
    assert reasoning.generate_json.call_args.kwargs["tier"] == "high"


async def test_invalid_urgency_becomes_medium():
    reasoning = fake_reasoning({DiagnosisPayload: {**DIAGNOSIS_PAYLOAD, "urgency_level": "EMERGENT"}})

    result = await generate_diagnosis(PATIENT, HISTORY, [], reasoning)

    assert result.urgency_level == UrgencyLevel.MEDIUM


async def test_failure_returns_fallback():
    reasoning = fake_reasoning({DiagnosisPayload: LLMResponseError("DiagnosisPayload: invalid JSON")})

    result = await generate_diagnosis(PATIENT, HISTORY, [], reasoning)

    assert result == fallback_diagnosis()
    assert result.confidence == 0.0
    assert result.urgency_level == UrgencyLevel.MEDIUM
    assert result.primary_diagnosis.startswith("Automated diagnosis unavailable")
    assert all(a.category is None for a in result.recommended_actions)
    assert len(result.follow_up_recommendations) == 2


class TestOverallUrgency:
    def test_no_scans_keeps_diagnosis_urgency(self):
        assert calculate_overall_urgency([], diagnosis(UrgencyLevel.MEDIUM)) == UrgencyLevel.MEDIUM

    def test_severe_scan_is_critical(self):
        result = calculate_overall_urgency([scan(Severity.SEVERE)], diagnosis(UrgencyLevel.MEDIUM))
        assert result == UrgencyLevel.CRITICAL

    def test_moderate_scan_is_high(self):
        result = calculate_overall_urgency([scan(Severity.MODERATE)], diagnosis(UrgencyLevel.LOW))
        assert result == UrgencyLevel.HIGH

    def test_red_flag_is_high(self):
        result = calculate_overall_urgency([], diagnosis(UrgencyLevel.LOW, ["Hypoxia"]))
        assert result == UrgencyLevel.HIGH

    def test_mild_scan_does_not_raise(self):
        result = calculate_overall_urgency([scan(Severity.MILD)], diagnosis(UrgencyLevel.LOW))
        assert result == UrgencyLevel.LOW

    @pytest.mark.parametrize("urgency", list(UrgencyLevel))
    @pytest.mark.parametrize("severity", list(Severity))
    def test_never_below_diagnosis_urgency(self, urgency, severity):
        result = calculate_overall_urgency([scan(severity)], diagnosis(urgency))
        assert result.rank >= urgency.rank


class TestQuickAssessment:
    async def test_model_output(self):
        reasoning = fake_reasoning()

        result = await generate_quick_assessment("Chest pain", 54, "Male", reasoning)

        assert result.urgency == UrgencyLevel.HIGH
        assert result.key_considerations == ["Rule out sepsis"]
        assert "54y Male" in reasoning.generate_json.call_args.kwargs["user"]

    async def test_failure_defaults(self):
        reasoning = fake_reasoning({QuickAssessmentPayload: RuntimeError("down")})

        result = await generate_quick_assessment("Chest pain", 54, "Male", reasoning)

        assert result.urgency == UrgencyLevel.MEDIUM
        assert result.key_considerations == []
