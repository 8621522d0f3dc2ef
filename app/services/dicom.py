"""DICOM header extraction for scans the vision model cannot see directly."""

import asyncio
import logging
from io import BytesIO

import httpx
import pydicom
from pydicom.errors import InvalidDicomError
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class DicomMetadata(BaseModel):
    modality: str | None = None
    study_description: str | None = None
    series_description: str | None = None
    body_part_examined: str | None = None
    study_date: str | None = None
    manufacturer: str | None = None
    institution_name: str | None = None

    def to_prompt_context(self, fallback_body_part: str | None = None) -> str:
        return "\n".join([
            f"- Modality: {self.modality or 'Unknown'}",
            f"- Study Description: {self.study_description or 'N/A'}",
            f"- Series Description: {self.series_description or 'N/A'}",
            f"- Body Part: {self.body_part_examined or fallback_body_part or 'N/A'}",
            f"- Date: {self.study_date or 'N/A'}",
        ])


def _text(dataset, keyword: str) -> str | None:
    value = dataset.get(keyword)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_dicom_metadata(data: bytes) -> DicomMetadata | None:
    """Read identifying study fields from DICOM bytes; pixel data is skipped."""
    try:
        dataset = pydicom.dcmread(BytesIO(data), stop_before_pixels=True, force=True)
    except (InvalidDicomError, EOFError, ValueError, TypeError) as exc:
        logger.warning("Error parsing DICOM: %s", exc)
        return None
    return DicomMetadata(
        modality=_text(dataset, "Modality"),
        study_description=_text(dataset, "StudyDescription"),
        series_description=_text(dataset, "SeriesDescription"),
        body_part_examined=_text(dataset, "BodyPartExamined"),
        study_date=_text(dataset, "StudyDate"),
        manufacturer=_text(dataset, "Manufacturer"),
        institution_name=_text(dataset, "InstitutionName"),
    )


async def fetch_dicom_metadata(url: str, timeout: float = 30.0) -> DicomMetadata | None:
    """Download a DICOM file and extract its metadata. Returns None on any failure."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            data = resp.content
    except httpx.HTTPError as exc:
        logger.warning("Failed to download DICOM file for metadata: %s", exc)
        return None
    return await asyncio.to_thread(parse_dicom_metadata, data)
