from fastapi import APIRouter, Query, Request, status
from fastapi.responses import JSONResponse
from typing import Optional
from uuid import UUID
import logging

from app.core.config import settings
from app.modules.exports.dependencies import BatchServiceDep, ContextDep, ExportServiceDep, RetentionDep
from app.modules.exports.errors import ExportError, QueueFailure, ReportNotFound, StorageFailure
from app.modules.exports.schemas import (
    BatchExportRequest, BatchResult, BatchStatus, CleanupResult, DateRangeExportRequest,
    ExportArtifact, ExportOptions, ExportStatistics, ScheduledBatch
)

logger = logging.getLogger(__name__)

exports_router = APIRouter(prefix="/exports", tags=["Exports"])


def export_error_handler(request: Request, exc: ExportError) -> JSONResponse:
    """Map export engine errors to HTTP responses"""
    if isinstance(exc, ReportNotFound):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (StorageFailure, QueueFailure)):
        logger.error(f"{exc.kind} on {request.url.path}: {exc}")
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "kind": exc.kind})


@exports_router.post("/reports/{report_id}", response_model=ExportArtifact)
def export_report(
    report_id: UUID,
    service: ExportServiceDep,
    context: ContextDep,
    options: Optional[ExportOptions] = None
):
    """
    Export a single financial report to PDF (format=document) or XLSX (format=spreadsheet).
    """
    return service.export_report(report_id, options or ExportOptions(), context)


@exports_router.post("/batch", response_model=BatchResult)
def export_batch(request: BatchExportRequest, service: BatchServiceDep, context: ContextDep):
    """
    Export several reports in one request.

    Every report is exported independently: failures are reported per report
    and never abort the rest of the batch.
    """
    return service.export_batch(request.report_ids, request.options, context)


@exports_router.post("/cooperatives/{cooperative_id}/years/{year}", response_model=BatchResult)
def export_cooperative_year(
    cooperative_id: UUID,
    year: int,
    service: BatchServiceDep,
    context: ContextDep,
    options: Optional[ExportOptions] = None
):
    """
    Export all approved reports of a cooperative for a year as one zip archive.
    """
    return service.export_cooperative_year(cooperative_id, year, options or ExportOptions(), context)


@exports_router.post("/date-range", response_model=BatchResult)
def export_by_date_range(request: DateRangeExportRequest, service: BatchServiceDep, context: ContextDep):
    """
    Export approved reports created within a date range as one zip archive.
    """
    return service.export_by_date_range(request.start_date, request.end_date, request.options, context)


@exports_router.post("/combined", response_model=ExportArtifact)
def export_combined(request: BatchExportRequest, service: ExportServiceDep, context: ContextDep):
    """
    Render several reports into a single PDF, one report per page group.
    """
    return service.export_multiple_reports(request.report_ids, request.options, context)


@exports_router.post("/batch/schedule", response_model=ScheduledBatch, status_code=status.HTTP_202_ACCEPTED)
def schedule_batch_export(request: BatchExportRequest, service: BatchServiceDep, context: ContextDep):
    """
    Queue a batch export and return its batch id without waiting.
    Poll GET /exports/batch/{batch_id} for progress.
    """
    return service.schedule_batch_export(request.report_ids, request.options, context)


@exports_router.get("/batch/{batch_id}", response_model=BatchStatus)
def get_batch_status(batch_id: str, service: BatchServiceDep):
    """
    Progress of a scheduled batch: processing, completed or error.
    """
    return service.get_batch_status(batch_id)


@exports_router.post("/cleanup", response_model=CleanupResult)
def cleanup_exports(
    sweeper: RetentionDep,
    context: ContextDep,
    days_old: int = Query(settings.EXPORT_RETENTION_DAYS, ge=0)
):
    """
    Delete export files older than `days_old` days.
    """
    return sweeper.cleanup(days_old, context)


@exports_router.get("/statistics", response_model=ExportStatistics)
def get_export_statistics(sweeper: RetentionDep):
    """
    File count and size per export directory.
    """
    return sweeper.get_statistics()
