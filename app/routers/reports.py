import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException

from app.models.events import FULL_ANALYSIS_REQUESTED, FullAnalysisRequested
from app.models.report import ReportStatus, TriageReportRecord
from app.models.triage import AnalysisQueued
from app.routers.triage import report_from_row
from app.services.container import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["reports"])


async def _load_report(services: Services, report_id: str):
    row = await services.db.fetch_one("SELECT * FROM triage_reports WHERE id = ?", (report_id,))
    if not row:
        raise HTTPException(status_code=404, detail="Report not found")
    return row


async def _set_status(services: Services, report_id: str, status: ReportStatus) -> TriageReportRecord:
    await services.db.execute(
        "UPDATE triage_reports SET status = ?, updated_at = ? WHERE id = ?",
        (status.value, datetime.now(UTC).isoformat(), report_id),
    )
    await services.db.commit()
    return report_from_row(await _load_report(services, report_id))


@router.post("/reports/{report_id}/approve", response_model=TriageReportRecord)
async def approve_report(report_id: str, services: Services = Depends(get_services)):
    """Finalize a DRAFT report after clinician review."""
    row = await _load_report(services, report_id)
    if row["status"] != ReportStatus.DRAFT.value:
        raise HTTPException(
            status_code=409,
            detail=f"Only DRAFT reports can be approved (status is {row['status']})",
        )
    logger.info("Report %s finalized", report_id)
    return await _set_status(services, report_id, ReportStatus.FINALIZED)


@router.delete("/reports/{report_id}", response_model=TriageReportRecord)
async def delete_report(report_id: str, services: Services = Depends(get_services)):
    await _load_report(services, report_id)
    return await _set_status(services, report_id, ReportStatus.DELETED)


@router.post("/analysis/{encounter_id}", response_model=AnalysisQueued)
async def request_full_analysis(encounter_id: str, services: Services = Depends(get_services)):
    """Queue a manual re-analysis; bypasses the debounce window."""
    encounter = await services.db.fetch_one(
        "SELECT id, patient_id FROM encounters WHERE id = ?", (encounter_id,)
    )
    if not encounter:
        raise HTTPException(status_code=404, detail="Encounter not found")

    await services.bus.publish(FULL_ANALYSIS_REQUESTED, FullAnalysisRequested(
        encounter_id=encounter_id,
        patient_id=encounter["patient_id"],
    ).model_dump(mode="json"))
    return AnalysisQueued(encounter_id=encounter_id, patient_id=encounter["patient_id"], status="QUEUED")
