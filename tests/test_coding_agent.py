"""Tests for the medical coding agent."""

from app.models.analysis import (
    CodingResult,
    CPTCode,
    DiagnosisResult,
    ICD10Code,
    RecommendedAction,
    UrgencyLevel,
)
from app.models.responses import CodingPayload
from app.services.coding_agent import (
    MAX_CPT_CODES,
    MAX_ICD10_CODES,
    fallback_coding,
    format_codes_for_display,
    generate_imaging_codes,
    generate_medical_codes,
    imaging_fallback_codes,
    normalize_icd10_codes,
)
from tests.factories import fake_reasoning

DIAGNOSIS = DiagnosisResult(
    primary_diagnosis="Community-acquired pneumonia",
    differential_diagnoses=["Bronchitis"],
    confidence=0.8,
    urgency_level=UrgencyLevel.HIGH,
    recommended_actions=[RecommendedAction(action="Chest X-ray")],
)


def icd(code: str, primary: bool = False) -> ICD10Code:
    return ICD10Code(code=code, description=f"Desc {code}", is_primary=primary)


class TestNormalizeIcd10:
    def test_first_code_promoted_when_none_primary(self):
        codes = normalize_icd10_codes([icd("J18.9"), icd("I10")])
        assert [c.is_primary for c in codes] == [True, False]

    def test_extra_primaries_demoted(self):
        codes = normalize_icd10_codes([icd("I10"), icd("J18.9", True), icd("E11.9", True)])
        assert [c.code for c in codes if c.is_primary] == ["J18.9"]

    def test_capped(self):
        codes = normalize_icd10_codes([icd(f"R{n:02d}") for n in range(9)])
        assert len(codes) == MAX_ICD10_CODES
        assert sum(c.is_primary for c in codes) == 1

    def test_empty(self):
        assert normalize_icd10_codes([]) == []


async def test_codes_from_model_output():
    reasoning = fake_reasoning()

    result = await generate_medical_codes(DIAGNOSIS, ["X-RAY"], [], reasoning)

    assert [c.code for c in result.icd10_codes] == ["J18.9", "I10"]
    assert result.icd10_codes[0].is_primary
    assert [c.code for c in result.cpt_codes] == ["99284", "71046"]
    assert result.confidence == 0.9
    kwargs = reasoning.generate_json.call_args.kwargs
    assert kwargs["tier"] == "fast"
    assert "## Imaging Studies Performed\nX-RAY" in kwargs["user"]
    assert "## Urgency Level\nHIGH" in kwargs["user"]


async def test_cpt_codes_capped():
    payload = {
        "icd10_codes": [{"code": "J18.9", "description": "Pneumonia"}],
        "cpt_codes": [{"code": f"9{n:04d}", "description": "Service"} for n in range(14)],
    }
    reasoning = fake_reasoning({CodingPayload: payload})

    result = await generate_medical_codes(DIAGNOSIS, [], [], reasoning)

    assert len(result.cpt_codes) == MAX_CPT_CODES
    assert result.icd10_codes[0].is_primary


async def test_failure_returns_fallback():
    reasoning = fake_reasoning(error=RuntimeError("rate limited"))

    result = await generate_medical_codes(DIAGNOSIS, [], [], reasoning)

    assert result == fallback_coding()
    assert result.icd10_codes[0].code == "R69"
    assert result.icd10_codes[0].is_primary
    assert result.cpt_codes[0].code == "99201"
    assert result.confidence == 0.0


class TestImagingCodes:
    async def test_model_output(self):
        reasoning = fake_reasoning({CodingPayload: {"cpt_codes": [{"code": "70450", "description": "CT head w/o"}]}})

        codes = await generate_imaging_codes("CT", "Head", reasoning)

        assert [c.code for c in codes] == ["70450"]
        assert "- With Contrast: No" in reasoning.generate_json.call_args.kwargs["user"]

    async def test_empty_answer_uses_modality_default(self):
        reasoning = fake_reasoning({CodingPayload: {"cpt_codes": []}})

        codes = await generate_imaging_codes("MRI", "Brain", reasoning, with_contrast=True)

        assert [c.code for c in codes] == ["70553"]

    async def test_failure_uses_modality_default(self):
        reasoning = fake_reasoning(error=RuntimeError("down"))

        assert [c.code for c in await generate_imaging_codes("ultrasound", None, reasoning)] == ["76700"]

    def test_unknown_modality_defaults_to_xray(self):
        assert imaging_fallback_codes("PET")[0].code == "71046"


def test_display_format():
    coding = CodingResult(
        icd10_codes=[icd("J18.9", True), icd("I10")],
        cpt_codes=[
            CPTCode(code="71046", description="Chest X-ray"),
            CPTCode(code="96374", description="IV push", units=2),
        ],
        confidence=0.9,
    )

    icd10, cpt = format_codes_for_display(coding)

    assert icd10 == ["J18.9 - Desc J18.9 (Primary)", "I10 - Desc I10"]
    assert cpt == ["71046 - Chest X-ray", "96374 - IV push x2"]
