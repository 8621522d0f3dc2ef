"""Medical scan analysis via the vision service.

A scan that already carries a persisted analysis is never sent to the vision
service again. DICOM sources without a rendered preview are analyzed from
their header metadata alone.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from pydantic import ValidationError

from app.models.analysis import ScanAnalysisResult, Severity
from app.models.patient import ScanContext
from app.models.responses import ScanAnalysisPayload
from app.services.dicom import DicomMetadata, fetch_dicom_metadata
from app.services.llm import VisionService
from app.services.storage import ObjectStorage

logger = logging.getLogger(__name__)

DicomFetcher = Callable[[str], Awaitable[DicomMetadata | None]]

SCAN_TYPE_PROMPTS = {
    "X-RAY": """You are an expert radiologist AI assistant specializing in X-ray analysis.
Analyze this X-ray image and provide a detailed clinical assessment.

Focus on:
- Bone structure and alignment
- Soft tissue abnormalities
- Cardiac silhouette (if chest X-ray)
- Lung fields and parenchyma (if chest X-ray)
- Joint spaces and articular surfaces (if extremity)
- Any foreign bodies or implants
- Signs of fractures, dislocations, or degenerative changes""",

    "MRI": """You are an expert radiologist AI assistant specializing in MRI analysis.
Analyze this MRI image and provide a detailed clinical assessment.

Focus on:
- Tissue contrast and signal intensity
- Anatomical structures and their boundaries
- Any masses, lesions, or abnormal findings
- Edema or inflammation patterns
- Vascular structures
- Neural structures (if applicable)""",

    "CT": """You are an expert radiologist AI assistant specializing in CT scan analysis.
Analyze this CT image and provide a detailed clinical assessment.

Focus on:
- Cross-sectional anatomy
- Density and contrast enhancement
- Organ morphology and size
- Vascular structures and patency
- Any masses, nodules, or lesions
- Bone windows (if applicable)
- Signs of acute pathology""",

    "DERM": """You are an expert dermatologist AI assistant specializing in skin lesion analysis.
Analyze this dermatological image and provide a detailed clinical assessment.

Focus on:
- ABCDE criteria (Asymmetry, Border, Color, Diameter, Evolution)
- Lesion morphology and distribution pattern
- Surface texture and color variation within the lesion
- Comparison to common benign vs malignant patterns
- Signs requiring urgent attention""",

    "ULTRASOUND": """You are an expert sonographer AI assistant specializing in ultrasound analysis.
Analyze this ultrasound image and provide a detailed clinical assessment.

Focus on:
- Echogenicity patterns
- Anatomical landmarks and orientation
- Fluid collections or cysts
- Solid masses and their characteristics
- Blood flow patterns (if Doppler)
- Organ size and morphology""",
}

RESPONSE_FORMAT = """Provide your analysis in the following JSON format (respond ONLY with valid JSON, no markdown):
{
  "findings": "detailed description of all findings",
  "abnormalities": ["specific abnormalities found"],
  "severity": "one of NORMAL, MILD, MODERATE, SEVERE",
  "confidence": 0.0-1.0,
  "recommendations": ["clinical recommendations"],
  "detailed_analysis": "step-by-step radiological analysis"
}"""

METADATA_ONLY_NOTE = """NOTE: The image pixel data is not available for direct visual analysis. Base the
assessment on the DICOM metadata and clinical context provided.

If the metadata is insufficient to form a detailed medical opinion you MUST still return valid
JSON: set "findings" to "Insufficient metadata available for automated analysis. Manual review
required.", "severity" to "NORMAL" and "confidence" to 0.1. Do not refuse."""

# Confidence given to legacy plain-text analyses that carry no structured fields.
SAVED_TEXT_CONFIDENCE = 0.8


def build_scan_prompt(scan: ScanContext, clinical_context: str | None) -> str:
    parts = [SCAN_TYPE_PROMPTS.get(scan.type.upper(), SCAN_TYPE_PROMPTS["X-RAY"])]
    if scan.body_part:
        parts.append(f"This is a {scan.type} scan of the {scan.body_part}.")
    if clinical_context:
        parts.append(f"Clinical Context:\n{clinical_context}")
    parts.append(RESPONSE_FORMAT)
    return "\n\n".join(parts)


def restore_saved_analysis(scan: ScanContext) -> ScanAnalysisResult:
    """Rebuild a result from the analysis persisted on the scan row."""
    text = scan.analysis or ""
    try:
        saved = ScanAnalysisResult.model_validate_json(text)
    except (ValidationError, ValueError):
        saved = None
    if saved is not None:
        return saved.model_copy(update={
            "scan_id": scan.id,
            "scan_type": saved.scan_type or scan.type,
            "body_part": saved.body_part or scan.body_part,
            "reused": True,
        })
    return ScanAnalysisResult(
        scan_id=scan.id,
        scan_type=scan.type,
        body_part=scan.body_part,
        findings=text,
        severity=Severity.MODERATE,
        confidence=SAVED_TEXT_CONFIDENCE,
        raw_analysis=text,
        reused=True,
    )


def fallback_scan_analysis(scan: ScanContext) -> ScanAnalysisResult:
    return ScanAnalysisResult(
        scan_id=scan.id,
        scan_type=scan.type,
        body_part=scan.body_part,
        findings=(
            f"Unable to perform automated analysis of this {scan.type} scan. "
            "Manual radiologist review recommended."
        ),
        severity=Severity.NORMAL,
        confidence=0.0,
        recommendations=[
            "Manual radiologist review required",
            "Compare with prior imaging if available",
            "Correlate with clinical findings",
        ],
        raw_analysis="Automated analysis unavailable - please review manually.",
    )


async def _request_analysis(
    scan: ScanContext,
    clinical_context: str | None,
    vision: VisionService,
    storage: ObjectStorage,
    dicom_fetcher: DicomFetcher,
) -> ScanAnalysisPayload:
    file_url = await storage.signed_view_url(scan.file_url)
    preview_url = await storage.signed_view_url(scan.preview_url) if scan.preview_url else None
    prompt = build_scan_prompt(scan, clinical_context)

    metadata = await dicom_fetcher(file_url) if scan.is_dicom else None
    metadata_block = metadata.to_prompt_context(scan.body_part) if metadata else None

    if scan.is_dicom and not preview_url:
        logger.info("Analyzing DICOM scan %s from metadata only", scan.id)
        system = "\n\n".join([
            prompt,
            METADATA_ONLY_NOTE,
            f"DICOM METADATA EXTRACTED:\n{metadata_block}"
            if metadata_block else "DICOM metadata could not be extracted.",
        ])
        return await vision.analyze_image_json(
            system=system,
            user="Please analyze this medical case based on the provided DICOM metadata and "
                 "clinical context. Return valid JSON.",
            response_model=ScanAnalysisPayload,
        )

    system = prompt
    if metadata_block:
        system += (
            "\n\nNOTE: This is a DICOM scan. The rendered preview image AND the extracted "
            f"metadata are provided. Use both.\nDICOM METADATA:\n{metadata_block}"
        )
    return await vision.analyze_image_json(
        system=system,
        user="Please analyze this medical scan image and provide a comprehensive clinical assessment.",
        response_model=ScanAnalysisPayload,
        image_url=preview_url or file_url,
    )


async def analyze_scan(
    scan: ScanContext,
    clinical_context: str | None,
    vision: VisionService,
    storage: ObjectStorage,
    dicom_fetcher: DicomFetcher = fetch_dicom_metadata,
) -> ScanAnalysisResult:
    """Analyze one scan, reusing its persisted analysis when present. Never raises."""
    if scan.has_saved_analysis:
        logger.info("Reusing saved analysis for scan %s", scan.id)
        return restore_saved_analysis(scan)

    start = time.monotonic()
    try:
        payload = await _request_analysis(scan, clinical_context, vision, storage, dicom_fetcher)
    except Exception as e:
        logger.error("Scan analysis failed for %s: %s", scan.id, e)
        return fallback_scan_analysis(scan)

    logger.info(
        "Analyzed %s scan %s in %dms",
        scan.type,
        scan.id,
        int((time.monotonic() - start) * 1000),
    )
    return ScanAnalysisResult(
        scan_id=scan.id,
        scan_type=scan.type,
        body_part=scan.body_part,
        findings=payload.findings,
        abnormalities=payload.abnormalities,
        severity=payload.severity,
        confidence=payload.confidence,
        recommendations=payload.recommendations,
        raw_analysis=payload.detailed_analysis or payload.findings,
    )


async def analyze_scans(
    scans: list[ScanContext],
    clinical_context: str | None,
    vision: VisionService,
    storage: ObjectStorage,
    dicom_fetcher: DicomFetcher = fetch_dicom_metadata,
) -> list[ScanAnalysisResult]:
    """Analyze scans concurrently; results keep the input order."""
    return list(await asyncio.gather(*(
        analyze_scan(scan, clinical_context, vision, storage, dicom_fetcher) for scan in scans
    )))
