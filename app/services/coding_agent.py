import logging
import time

from app.models.analysis import CodingResult, CPTCode, DiagnosisResult, ICD10Code
from app.models.responses import CodingPayload
from app.services.llm import ReasoningService

logger = logging.getLogger(__name__)

MAX_ICD10_CODES = 6
MAX_CPT_CODES = 10

CODING_SYSTEM_PROMPT = """You are a medical coding specialist AI. Generate accurate ICD-10 and CPT
codes for billing and documentation based on the clinical information provided.

Respond with ONLY valid JSON in this exact format:
{
  "icd10_codes": [
    {"code": "CODE", "description": "Description", "is_primary": true},
    {"code": "CODE", "description": "Description", "is_primary": false}
  ],
  "cpt_codes": [
    {"code": "CODE", "description": "Description", "units": 1}
  ],
  "confidence": 0.0-1.0
}

Include:
- Exactly one primary ICD-10 diagnosis code (is_primary: true)
- 2-4 secondary ICD-10 codes for documented conditions
- CPT codes for all imaging studies and procedures
- Evaluation and management (E/M) codes as appropriate"""

IMAGING_CODE_SYSTEM_PROMPT = """Generate the appropriate CPT code for an imaging study.
Respond with ONLY valid JSON: {"cpt_codes": [{"code": "XXXXX", "description": "Description", "units": 1}]}"""

_IMAGING_FALLBACK_CODES = {
    "X-RAY": CPTCode(code="71046", description="Chest X-ray, 2 views"),
    "MRI": CPTCode(code="70553", description="MRI brain with contrast"),
    "CT": CPTCode(code="70460", description="CT head with contrast"),
    "ULTRASOUND": CPTCode(code="76700", description="Ultrasound, abdominal"),
    "DERM": CPTCode(code="96902", description="Dermoscopy"),
}


def normalize_icd10_codes(codes: list[ICD10Code]) -> list[ICD10Code]:
    """Cap the list and guarantee exactly one primary code (the first marked one)."""
    codes = codes[:MAX_ICD10_CODES]
    if not codes:
        return []
    primary_index = next((i for i, c in enumerate(codes) if c.is_primary), 0)
    return [
        c.model_copy(update={"is_primary": i == primary_index})
        for i, c in enumerate(codes)
    ]


def fallback_coding() -> CodingResult:
    return CodingResult(
        icd10_codes=[ICD10Code(code="R69", description="Illness, unspecified", is_primary=True)],
        cpt_codes=[CPTCode(code="99201", description="Office or other outpatient visit, new patient")],
        confidence=0.0,
    )


def imaging_fallback_codes(scan_type: str) -> list[CPTCode]:
    code = _IMAGING_FALLBACK_CODES.get(scan_type.upper(), _IMAGING_FALLBACK_CODES["X-RAY"])
    return [code.model_copy()]


async def generate_medical_codes(
    diagnosis: DiagnosisResult,
    scan_types: list[str],
    procedures: list[str],
    reasoning: ReasoningService,
) -> CodingResult:
    """Generate ICD-10 and CPT codes for a diagnosis. Never raises."""
    differentials = "\n".join(f"- {d}" for d in diagnosis.differential_diagnoses) or "None"
    actions = "\n".join(f"- {a.display()}" for a in diagnosis.recommended_actions) or "None"
    user_content = (
        f"## Primary Diagnosis\n{diagnosis.primary_diagnosis}\n\n"
        f"## Differential Diagnoses\n{differentials}\n\n"
        f"## Recommended Actions/Procedures\n{actions}\n\n"
        f"## Imaging Studies Performed\n{', '.join(scan_types) or 'None'}\n\n"
        f"## Additional Procedures\n{', '.join(procedures) or 'None documented'}\n\n"
        f"## Urgency Level\n{diagnosis.urgency_level.value}"
    )

    start = time.monotonic()
    try:
        payload = await reasoning.generate_json(
            system=CODING_SYSTEM_PROMPT,
            user=user_content,
            response_model=CodingPayload,
            max_tokens=1500,
            tier="fast",
        )
    except Exception as e:
        logger.error("Medical coding failed: %s", e)
        return fallback_coding()

    logger.info("Generated medical codes in %dms", int((time.monotonic() - start) * 1000))
    return CodingResult(
        icd10_codes=normalize_icd10_codes(payload.icd10_codes),
        cpt_codes=payload.cpt_codes[:MAX_CPT_CODES],
        confidence=payload.confidence,
    )


async def generate_imaging_codes(
    scan_type: str,
    body_part: str | None,
    reasoning: ReasoningService,
    with_contrast: bool = False,
) -> list[CPTCode]:
    """CPT codes for a single imaging study, with a per-modality fallback."""
    try:
        payload = await reasoning.generate_json(
            system=IMAGING_CODE_SYSTEM_PROMPT,
            user=(
                f"- Type: {scan_type}\n"
                f"- Body Part: {body_part or 'Unspecified'}\n"
                f"- With Contrast: {'Yes' if with_contrast else 'No'}"
            ),
            response_model=CodingPayload,
            max_tokens=300,
            tier="fast",
        )
    except Exception as e:
        logger.warning("Imaging code lookup failed for %s: %s", scan_type, e)
        return imaging_fallback_codes(scan_type)
    return payload.cpt_codes[:MAX_CPT_CODES] or imaging_fallback_codes(scan_type)


def format_codes_for_display(coding: CodingResult) -> tuple[list[str], list[str]]:
    """Render codes as "CODE - description" lines (ICD-10 list, CPT list)."""
    icd10 = [
        f"{c.code} - {c.description}{' (Primary)' if c.is_primary else ''}"
        for c in coding.icd10_codes
    ]
    cpt = [
        f"{c.code} - {c.description}{f' x{c.units}' if c.units > 1 else ''}"
        for c in coding.cpt_codes
    ]
    return icd10, cpt
