"""Event-driven triage workflow.

Each handler runs its work as named steps under a RetryPolicy. Re-running a
workflow for the same encounter is safe: scan analyses are reused, recent
reports debounce new runs and the report upsert only touches one row.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Awaitable, Callable, TypeVar

from app.config import DEBOUNCE_WINDOW_SECONDS
from app.database import DatabaseAdapter
from app.models.analysis import UrgencyLevel
from app.models.events import (
    FULL_ANALYSIS_REQUESTED,
    REPORT_GENERATED,
    SCAN_UPLOADED,
    TRIAGE_REQUESTED,
    FullAnalysisRequested,
    ReportGenerated,
    ScanUploaded,
    TriageRequested,
    TriggerType,
)
from app.models.report import OrchestratedMedicalReport, ReportStatus
from app.services.coding_agent import format_codes_for_display
from app.services.event_bus import EventBus
from app.services.orchestrator import AnalysisOptions, TriageOrchestrator
from app.services.retry import RetryPolicy, run_step

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Reports in these states never suppress a new run.
_IGNORED_BY_DEBOUNCE = (ReportStatus.DELETED.value, ReportStatus.FAILED.value)


@dataclass
class WorkflowResult:
    success: bool
    skipped: bool = False
    report_id: str | None = None
    scan_id: str | None = None
    urgency_level: str | None = None
    processing_time_ms: int | None = None
    reason: str | None = None
    error: str | None = None
    steps: list[str] = field(default_factory=list)


def recommended_action_text(report: OrchestratedMedicalReport) -> str:
    return "\n".join(f"- {action.display()}" for action in report.diagnosis.recommended_actions)


class WorkflowRunner:
    def __init__(
        self,
        db: DatabaseAdapter,
        orchestrator: TriageOrchestrator,
        bus: EventBus,
        retry_policy: RetryPolicy | None = None,
        debounce_seconds: int = DEBOUNCE_WINDOW_SECONDS,
    ) -> None:
        self.db = db
        self.orchestrator = orchestrator
        self.bus = bus
        self.retry_policy = retry_policy or RetryPolicy()
        self.debounce_seconds = debounce_seconds

    def register(self) -> None:
        self.bus.on(TRIAGE_REQUESTED, self.handle_triage_requested)
        self.bus.on(FULL_ANALYSIS_REQUESTED, self.handle_full_analysis_requested)
        self.bus.on(SCAN_UPLOADED, self.handle_scan_uploaded)
        self.bus.on(REPORT_GENERATED, self.handle_report_generated)

    async def _step(self, result: WorkflowResult, name: str, fn: Callable[[], Awaitable[T]]) -> T:
        value = await run_step(name, fn, self.retry_policy)
        result.steps.append(name)
        return value

    # --- handlers ---

    async def handle_triage_requested(self, data: dict) -> WorkflowResult:
        event = TriageRequested.model_validate(data)
        return await self._run_analysis(
            encounter_id=event.encounter_id,
            patient_id=event.patient_id,
            trigger_type=event.trigger_type,
            placeholder_id=event.triage_report_id,
            options=AnalysisOptions(
                analyze_scans=event.analyze_scans,
                scan_ids=event.scan_ids or None,
                generate_codes=event.generate_codes,
                symptoms=event.symptoms,
            ),
            encounter_update=(event.symptoms, event.voice_transcript),
        )

    async def handle_full_analysis_requested(self, data: dict) -> WorkflowResult:
        event = FullAnalysisRequested.model_validate(data)
        return await self._run_analysis(
            encounter_id=event.encounter_id,
            patient_id=event.patient_id,
            trigger_type=event.trigger_type,
            placeholder_id=None,
            options=AnalysisOptions(
                analyze_scans=event.include_scans,
                generate_codes=event.generate_codes,
            ),
        )

    async def handle_scan_uploaded(self, data: dict) -> WorkflowResult:
        """Analyze a freshly uploaded scan. Never starts a diagnosis."""
        event = ScanUploaded.model_validate(data)
        result = WorkflowResult(success=False, scan_id=event.scan_id)
        try:
            analysis = await self._step(
                result, "analyze-scan",
                lambda: self.orchestrator.analyze_single_scan(event.scan_id),
            )
        except Exception as e:
            logger.error("Scan analysis workflow failed for %s: %s", event.scan_id, e)
            result.error = str(e)
            return result

        logger.info(
            "Scan %s analyzed (severity %s, reused %s)",
            event.scan_id,
            analysis.severity.value,
            analysis.reused,
        )
        result.success = True
        return result

    async def handle_report_generated(self, data: dict) -> WorkflowResult:
        event = ReportGenerated.model_validate(data)
        result = WorkflowResult(
            success=True,
            report_id=event.report_id,
            urgency_level=event.urgency_level.value,
            processing_time_ms=event.processing_time_ms,
        )
        logger.info(
            "Report %s generated for encounter %s (urgency %s, %dms)",
            event.report_id,
            event.encounter_id,
            event.urgency_level.value,
            event.processing_time_ms,
        )
        if event.urgency_level == UrgencyLevel.CRITICAL:
            await self._step(result, "log-critical-alert", lambda: self._log_critical_alert(event))
        return result

    # --- analysis pipeline ---

    async def _run_analysis(
        self,
        encounter_id: str,
        patient_id: str,
        trigger_type: TriggerType,
        placeholder_id: str | None,
        options: AnalysisOptions,
        encounter_update: tuple[str, str | None] | None = None,
    ) -> WorkflowResult:
        result = WorkflowResult(success=False, report_id=placeholder_id)
        started = time.monotonic()
        try:
            if trigger_type != TriggerType.MANUAL:
                recent_id = await self._step(
                    result, "check-recent-report",
                    lambda: self._recent_report_id(encounter_id, exclude_id=placeholder_id),
                )
                if recent_id:
                    logger.info(
                        "Skipping analysis for encounter %s: report %s created within %ds",
                        encounter_id,
                        recent_id,
                        self.debounce_seconds,
                    )
                    if placeholder_id:
                        await self._set_status(placeholder_id, ReportStatus.DELETED)
                    result.success = True
                    result.skipped = True
                    result.report_id = recent_id
                    result.reason = "Recent report exists"
                    return result

            if encounter_update is not None:
                symptoms, transcript = encounter_update
                await self._step(
                    result, "update-encounter",
                    lambda: self._update_encounter(encounter_id, symptoms, transcript),
                )

            report = await self._step(
                result, "orchestrate-analysis",
                lambda: self.orchestrator.run(encounter_id, patient_id, options),
            )
            report_id = await self._step(
                result, "save-report",
                lambda: self._save_report(report, placeholder_id),
            )
            await self._step(
                result, "emit-report-generated",
                lambda: self.bus.publish(REPORT_GENERATED, ReportGenerated(
                    report_id=report_id,
                    encounter_id=encounter_id,
                    patient_id=patient_id,
                    urgency_level=report.overall_urgency,
                    processing_time_ms=report.processing_time_ms,
                ).model_dump(mode="json")),
            )
        except Exception as e:
            logger.error("Triage workflow failed for encounter %s: %s", encounter_id, e)
            if placeholder_id:
                await self._mark_failed(placeholder_id, str(e))
            result.error = str(e)
            return result

        result.success = True
        result.report_id = report_id
        result.urgency_level = report.overall_urgency.value
        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        return result

    async def _recent_report_id(self, encounter_id: str, exclude_id: str | None) -> str | None:
        """Earliest live report for the encounter inside the debounce window.

        The request's own placeholder is excluded, and so is anything created
        after it, so of two concurrent requests the first one runs.
        """
        cutoff = (datetime.now(UTC) - timedelta(seconds=self.debounce_seconds)).isoformat()
        upper = "9999"
        if exclude_id:
            own = await self.db.fetch_one(
                "SELECT created_at FROM triage_reports WHERE id = ?", (exclude_id,)
            )
            if own:
                upper = own["created_at"]
        row = await self.db.fetch_one(
            """SELECT id FROM triage_reports
               WHERE encounter_id = ? AND created_at >= ? AND created_at < ? AND id != ?
                 AND status NOT IN (?, ?)
               ORDER BY created_at ASC LIMIT 1""",
            (encounter_id, cutoff, upper, exclude_id or "", *_IGNORED_BY_DEBOUNCE),
        )
        return row["id"] if row else None

    async def _update_encounter(
        self,
        encounter_id: str,
        symptoms: str,
        voice_transcript: str | None,
    ) -> None:
        await self.db.execute(
            """UPDATE encounters
               SET symptoms = ?, voice_transcript = COALESCE(?, voice_transcript), updated_at = ?
               WHERE id = ?""",
            (symptoms, voice_transcript, datetime.now(UTC).isoformat(), encounter_id),
        )
        await self.db.commit()

    async def _save_report(self, report: OrchestratedMedicalReport, placeholder_id: str | None) -> str:
        """Upsert: the request's placeholder, else the latest DRAFT, else a new row."""
        target_id = None
        if placeholder_id:
            row = await self.db.fetch_one(
                "SELECT id FROM triage_reports WHERE id = ? AND encounter_id = ?",
                (placeholder_id, report.encounter_id),
            )
            target_id = row["id"] if row else None
        if target_id is None:
            row = await self.db.fetch_one(
                """SELECT id FROM triage_reports WHERE encounter_id = ? AND status = ?
                   ORDER BY created_at DESC LIMIT 1""",
                (report.encounter_id, ReportStatus.DRAFT.value),
            )
            target_id = row["id"] if row else None

        now = datetime.now(UTC).isoformat()
        report_id = target_id or report.report_id
        report = report.model_copy(update={"report_id": report_id})
        icd10, cpt = format_codes_for_display(report.coding)
        values = (
            report.executive_summary,
            report.overall_urgency.value,
            recommended_action_text(report),
            report.reasoning_chain,
            report.overall_confidence,
            json.dumps(icd10),
            json.dumps(cpt),
            report.model_dump_json(),
            ReportStatus.DRAFT.value,
            now,
        )

        if target_id:
            await self.db.execute(
                """UPDATE triage_reports SET
                    summary = ?, urgency_level = ?, recommended_action = ?, reasoning_chain = ?,
                    confidence_score = ?, suggested_icd10 = ?, suggested_cpt = ?, report_json = ?,
                    status = ?, updated_at = ?
                   WHERE id = ?""",
                (*values, target_id),
            )
            logger.info("Updated triage report %s", target_id)
        else:
            await self.db.execute(
                """INSERT INTO triage_reports (
                    summary, urgency_level, recommended_action, reasoning_chain,
                    confidence_score, suggested_icd10, suggested_cpt, report_json,
                    status, updated_at, id, encounter_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (*values, report_id, report.encounter_id, now),
            )
            logger.info("Created triage report %s", report_id)
        await self.db.commit()
        return report_id

    async def _set_status(self, report_id: str, status: ReportStatus) -> None:
        await self.db.execute(
            "UPDATE triage_reports SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, datetime.now(UTC).isoformat(), report_id),
        )
        await self.db.commit()

    async def _mark_failed(self, report_id: str, error: str) -> None:
        try:
            await self.db.execute(
                "UPDATE triage_reports SET status = ?, summary = ?, updated_at = ? WHERE id = ?",
                (
                    ReportStatus.FAILED.value,
                    f"Automated analysis failed: {error}",
                    datetime.now(UTC).isoformat(),
                    report_id,
                ),
            )
            await self.db.commit()
        except Exception as e:
            logger.error("Failed to mark report %s as failed: %s", report_id, e)

    async def _log_critical_alert(self, event: ReportGenerated) -> None:
        logger.warning(
            "CRITICAL ALERT: report %s for patient %s (encounter %s) requires immediate attention",
            event.report_id,
            event.patient_id,
            event.encounter_id,
        )
