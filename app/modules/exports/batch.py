"""
Batch export orchestration

Synchronous batches export every report independently (one failure never
stops its siblings), keep outcomes in input order and optionally bundle the
successful artifacts into a zip archive.

Scheduled batches are split into one queued job per distinct report. The
manifest lists the expected report ids and every job leaves a per-report
marker (_done or _failed), so the status is computed from the batch
directory alone and redelivered jobs are never counted twice.
"""

import json
import logging
import re
import secrets
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, time, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set
from uuid import UUID

from app.core.config import settings
from app.modules.exports import audit
from app.modules.exports.audit import AuditSink
from app.modules.exports.bundler import ArchiveBundler
from app.modules.exports.context import ExportContext
from app.modules.exports.errors import QueueFailure, ReportNotFound, StorageFailure, ZipFailure
from app.modules.exports.naming import FilenameAllocator, IssuedNames, join
from app.modules.exports.queue import JobQueue
from app.modules.exports.schemas import (
    ArchiveMetadata, BatchFile, BatchManifest, BatchResult, BatchStatus, BatchStatusValue,
    ExportOptions, ExportOutcome, ScheduledBatch
)
from app.modules.exports.service import ReportExportService
from app.modules.exports.storage import ArtifactStore
from app.modules.reports.schemas import Report, ReportFilter, ReportStatus

logger = logging.getLogger(__name__)

MANIFEST_NAME = "_manifest.json"
DONE_DIR = "_done"
FAILED_DIR = "_failed"
BATCH_ID_PATTERN = re.compile(r"^batch_export_[0-9a-f]+$")


class BatchExportService:
    """Batch, cooperative-year, date-range and scheduled exports"""

    def __init__(
        self,
        export_service: ReportExportService,
        store: ArtifactStore,
        audit_sink: AuditSink,
        job_queue: Optional[JobQueue] = None,
        max_workers: Optional[int] = None
    ):
        self.exports = export_service
        self.provider = export_service.provider
        self.allocator = export_service.allocator
        self.store = store
        self.audit_sink = audit_sink
        self.job_queue = job_queue
        self.bundler = ArchiveBundler(store)
        self.max_workers = max_workers or settings.EXPORT_MAX_WORKERS

    # Synchronous batches

    def export_batch(self, report_ids: Sequence[UUID], options: ExportOptions, context: ExportContext) -> BatchResult:
        """Export each report, collecting one outcome per id in input order.

        Raises:
            ReportNotFound: none of the ids resolved
            StorageFailure: the report set could not be loaded
        """
        ids = list(report_ids)
        reports = self.provider.get_reports(ids)
        if not reports:
            raise ReportNotFound("No financial reports found for the given ids")
        return self._run(ids, reports, options, context)

    def _export_one(self, report_id: UUID, reports: Dict[UUID, Report], options: ExportOptions,
                    context: ExportContext, issued: IssuedNames) -> ExportOutcome:
        report = reports.get(report_id)
        if report is None:
            return ExportOutcome.failed(report_id, ReportNotFound(f"Financial report {report_id} not found"))
        try:
            return ExportOutcome.succeeded(report_id, self.exports.export_loaded(report, options, context, issued))
        except Exception as e:
            logger.error(f"Export of report {report_id} failed: {e}")
            return ExportOutcome.failed(report_id, e)

    def _run(self, ids: List[UUID], reports: Iterable[Report], options: ExportOptions,
             context: ExportContext) -> BatchResult:
        by_id = {report.id: report for report in reports}
        issued = IssuedNames()
        workers = min(self.max_workers, len(ids))

        def export(report_id: UUID) -> ExportOutcome:
            return self._export_one(report_id, by_id, options, context, issued)

        if workers <= 1:
            outcomes = [export(report_id) for report_id in ids]
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="export") as pool:
                outcomes = list(pool.map(export, ids))

        exported = [outcome.artifact for outcome in outcomes if outcome.success]
        archive: Optional[ArchiveMetadata] = None
        archive_error: Optional[str] = None
        if options.create_zip and exported:
            name = options.zip_name or self.allocator.batch_zip(options.format, context.now())
            try:
                archive = self.bundler.bundle(exported, name, context)
            except ZipFailure as e:
                archive_error = str(e)

        result = BatchResult(
            outcomes=tuple(outcomes),
            exported_count=len(exported),
            error_count=len(outcomes) - len(exported),
            archive=archive,
            archive_error=archive_error
        )
        self.audit_sink.emit(
            audit.BATCH_EXPORT_COMPLETED,
            f"Batch export finished: {result.exported_count} exported, {result.error_count} failed",
            context,
            total_reports=len(ids),
            exported_count=result.exported_count,
            error_count=result.error_count,
            format=options.format.value,
            zip_file=archive.filename if archive else None
        )
        logger.info(
            f"Batch export of {len(ids)} reports finished: "
            f"{result.exported_count} exported, {result.error_count} failed"
        )
        return result

    def export_cooperative_year(self, cooperative_id: UUID, year: int, options: ExportOptions,
                                context: ExportContext) -> BatchResult:
        """Export every approved report of a cooperative for one year into a zip"""
        reports = self.provider.find_reports(ReportFilter(
            cooperative_id=cooperative_id,
            reporting_year=year,
            status=ReportStatus.APPROVED
        ))
        if not reports:
            raise ReportNotFound(f"No approved reports for cooperative {cooperative_id} in {year}")

        zip_name = options.zip_name or self.allocator.cooperative_year_zip(
            reports[0].cooperative_name, year, context.now()
        )
        options = options.model_copy(update={"create_zip": True, "zip_name": zip_name})
        return self._run([report.id for report in reports], reports, options, context)

    def export_by_date_range(self, start: date, end: date, options: ExportOptions,
                             context: ExportContext) -> BatchResult:
        """Export approved reports created between ``start`` and ``end`` (inclusive) into a zip"""
        reports = self.provider.find_reports(ReportFilter(
            status=ReportStatus.APPROVED,
            created_from=datetime.combine(start, time.min, tzinfo=timezone.utc),
            created_to=datetime.combine(end, time.max, tzinfo=timezone.utc)
        ))
        if not reports:
            raise ReportNotFound(f"No approved reports created between {start} and {end}")

        zip_name = options.zip_name or self.allocator.date_range_zip(start, end, context.now())
        options = options.model_copy(update={"create_zip": True, "zip_name": zip_name})
        return self._run([report.id for report in reports], reports, options, context)

    # Scheduled batches

    def schedule_batch_export(self, report_ids: Sequence[UUID], options: ExportOptions,
                              context: ExportContext) -> ScheduledBatch:
        """Queue one export job per distinct report and return immediately.

        Reports the queue refuses are recorded as failed in the batch so its
        status still completes.

        Raises:
            ReportNotFound: no ids given
            StorageFailure: the manifest could not be written
            QueueFailure: the queue refused every job; nothing is left behind
        """
        if self.job_queue is None:
            raise RuntimeError("No job queue configured for scheduled exports")
        ids = list(dict.fromkeys(report_ids))
        if not ids:
            raise ReportNotFound("No report ids given")

        batch_id = f"batch_export_{secrets.token_hex(8)}"
        options = options.model_copy(update={"batch_id": batch_id, "create_zip": False})
        options_data = options.model_dump(mode="json")

        manifest = BatchManifest(
            batch_id=batch_id,
            expected_count=len(ids),
            report_ids=ids,
            options=options_data,
            created_at=context.now(),
            actor_id=context.actor_id
        )
        manifest_path = join(FilenameAllocator.batch_directory(batch_id), MANIFEST_NAME)
        self.store.put(manifest_path, manifest.model_dump_json().encode("utf-8"), content_type="application/json")

        rejected: List[ExportOutcome] = []
        for report_id in ids:
            try:
                self.job_queue.enqueue_export(report_id, options_data, context.actor_id)
            except Exception as e:
                logger.error(f"Could not queue report {report_id} for batch {batch_id}: {e}")
                rejected.append(ExportOutcome.failed(report_id, QueueFailure(str(e))))

        if len(rejected) == len(ids):
            self._discard(manifest_path)
            raise QueueFailure(f"Could not queue batch export: {rejected[0].error}")
        for outcome in rejected:
            self._record_marker(batch_id, FAILED_DIR, outcome, context)

        scheduled = len(ids) - len(rejected)
        self.audit_sink.emit(
            audit.BATCH_EXPORT_SCHEDULED,
            f"Scheduled batch export {batch_id} of {scheduled} reports",
            context,
            batch_id=batch_id,
            report_count=scheduled,
            rejected_count=len(rejected),
            format=options.format.value
        )
        logger.info(f"Scheduled batch export {batch_id} with {scheduled} reports, {len(rejected)} rejected")
        if rejected:
            return ScheduledBatch(
                batch_id=batch_id,
                scheduled_count=scheduled,
                rejected_count=len(rejected),
                message="Batch export has been scheduled; some reports could not be queued."
            )
        return ScheduledBatch(batch_id=batch_id, scheduled_count=scheduled)

    def run_scheduled_export(self, report_id: UUID, options: ExportOptions, context: ExportContext) -> ExportOutcome:
        """Body of one queued job; leaves a _done or _failed marker in the batch directory"""
        try:
            report = self.exports.load_report(report_id)
            outcome = ExportOutcome.succeeded(report_id, self.exports.export_loaded(report, options, context))
            if options.batch_id:
                self._record_marker(options.batch_id, DONE_DIR, outcome, context, strict=True)
            return outcome
        except Exception as e:
            logger.error(f"Scheduled export of report {report_id} failed: {e}")
            outcome = ExportOutcome.failed(report_id, e)
            if options.batch_id:
                self._record_marker(options.batch_id, FAILED_DIR, outcome, context)
            return outcome

    def _record_marker(self, batch_id: str, marker_dir: str, outcome: ExportOutcome, context: ExportContext,
                       strict: bool = False) -> None:
        marker = join(join(FilenameAllocator.batch_directory(batch_id), marker_dir), f"{outcome.report_id}.json")
        payload = {
            "report_id": str(outcome.report_id),
            "success": outcome.success,
            "storage_path": outcome.artifact.storage_path if outcome.artifact else None,
            "error": outcome.error,
            "error_kind": outcome.error_kind,
            "recorded_at": context.now().isoformat(),
        }
        try:
            self.store.put(marker, json.dumps(payload).encode("utf-8"), content_type="application/json")
        except StorageFailure as e:
            if strict:
                raise
            logger.error(f"Could not record report {outcome.report_id} in batch {batch_id}: {e}")

    def _discard(self, path: str) -> None:
        try:
            self.store.delete(path)
        except StorageFailure as e:
            logger.error(f"Could not remove {path}: {e}")

    def get_batch_status(self, batch_id: str) -> BatchStatus:
        if not BATCH_ID_PATTERN.match(batch_id):
            return BatchStatus(batch_id=batch_id, status=BatchStatusValue.ERROR, error="Invalid batch id")

        directory = FilenameAllocator.batch_directory(batch_id)
        try:
            manifest_path = join(directory, MANIFEST_NAME)
            if not self.store.exists(manifest_path):
                logger.warning(f"Batch manifest missing for {batch_id}")
                return BatchStatus(batch_id=batch_id, status=BatchStatusValue.ERROR, error="Batch not found")
            manifest = BatchManifest.model_validate_json(self.store.get(manifest_path))

            files: List[BatchFile] = []
            done: Set[str] = set()
            failed: Set[str] = set()
            for obj in self.store.list(directory):
                relative = obj.path[len(directory) + 1:]
                marker_dir, _, marker = relative.partition("/")
                if marker_dir == DONE_DIR:
                    done.add(marker.rsplit(".", 1)[0])
                elif marker_dir == FAILED_DIR:
                    failed.add(marker.rsplit(".", 1)[0])
                elif not relative.startswith("_"):
                    files.append(BatchFile(
                        filename=relative.rsplit("/", 1)[-1],
                        filepath=obj.path,
                        file_size=obj.size,
                        download_url=self.store.url(obj.path)
                    ))
        except StorageFailure as e:
            logger.error(f"Could not read batch {batch_id}: {e}")
            return BatchStatus(batch_id=batch_id, status=BatchStatusValue.ERROR, error=str(e))

        # A redelivered job that succeeded after failing counts as done
        expected = {str(report_id) for report_id in manifest.report_ids}
        done &= expected
        failed = (failed & expected) - done
        return BatchStatus(
            batch_id=batch_id,
            status=BatchStatusValue.COMPLETED if done | failed == expected else BatchStatusValue.PROCESSING,
            completed_files=len(done),
            failed_files=len(failed),
            expected_files=len(expected),
            files=files
        )
