import logging
import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException

from app.models.events import SCAN_UPLOADED, ScanUploaded
from app.models.triage import ScanCreate, ScanCreated
from app.services.container import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scans", tags=["scans"])


@router.post("", response_model=ScanCreated)
async def register_scan(body: ScanCreate, services: Services = Depends(get_services)):
    """Record an uploaded scan on its encounter and queue its analysis."""
    encounter = await services.db.fetch_one(
        "SELECT id, patient_id FROM encounters WHERE id = ?", (body.encounter_id,)
    )
    if not encounter:
        raise HTTPException(status_code=404, detail="Encounter not found")

    scan_id = str(uuid.uuid4())
    scan_type = body.type.upper()
    await services.db.execute(
        """INSERT INTO scans (
            id, encounter_id, type, modality, body_part, file_url, preview_url,
            file_format, study_description, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            scan_id,
            body.encounter_id,
            scan_type,
            body.modality,
            body.body_part,
            body.file_url,
            body.preview_url,
            body.file_format,
            body.study_description,
            datetime.now(UTC).isoformat(),
        ),
    )
    await services.db.commit()

    await services.bus.publish(SCAN_UPLOADED, ScanUploaded(
        scan_id=scan_id,
        encounter_id=body.encounter_id,
        patient_id=encounter["patient_id"],
        scan_type=scan_type,
        file_url=body.file_url,
        preview_url=body.preview_url,
        body_part=body.body_part,
    ).model_dump(mode="json"))
    logger.info("Registered %s scan %s on encounter %s", scan_type, scan_id, body.encounter_id)

    return ScanCreated(id=scan_id, encounter_id=body.encounter_id, status="QUEUED")
