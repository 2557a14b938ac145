"""
FastAPI dependencies for the exports module
"""
from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends, Request

from app.database.database import SessionLocal
from app.modules.exports.audit import AuditSink, LoggingAuditSink
from app.modules.exports.batch import BatchExportService
from app.modules.exports.context import ExportContext
from app.modules.exports.queue import CeleryJobQueue, JobQueue
from app.modules.exports.retention import RetentionSweeper
from app.modules.exports.service import ReportExportService
from app.modules.exports.storage import ArtifactStore, MinIOArtifactStore
from app.modules.reports.provider import ReportDataProvider, SqlAlchemyReportProvider


@lru_cache
def get_artifact_store() -> ArtifactStore:
    return MinIOArtifactStore()


@lru_cache
def get_audit_sink() -> AuditSink:
    return LoggingAuditSink()


def get_report_provider() -> ReportDataProvider:
    return SqlAlchemyReportProvider(SessionLocal)


def get_job_queue() -> JobQueue:
    return CeleryJobQueue()


def get_export_context(request: Request) -> ExportContext:
    """Caller identity comes from ActorMiddleware (X-User-Id header)"""
    actor_id: Optional[str] = getattr(request.state, "actor_id", None)
    return ExportContext(actor_id=actor_id)


StoreDep = Annotated[ArtifactStore, Depends(get_artifact_store)]
AuditSinkDep = Annotated[AuditSink, Depends(get_audit_sink)]
ProviderDep = Annotated[ReportDataProvider, Depends(get_report_provider)]
JobQueueDep = Annotated[JobQueue, Depends(get_job_queue)]
ContextDep = Annotated[ExportContext, Depends(get_export_context)]


def get_export_service(provider: ProviderDep, store: StoreDep, audit_sink: AuditSinkDep) -> ReportExportService:
    return ReportExportService(provider, store, audit_sink)


ExportServiceDep = Annotated[ReportExportService, Depends(get_export_service)]


def get_batch_service(
    export_service: ExportServiceDep,
    store: StoreDep,
    audit_sink: AuditSinkDep,
    job_queue: JobQueueDep
) -> BatchExportService:
    return BatchExportService(export_service, store, audit_sink, job_queue=job_queue)


def get_retention_sweeper(store: StoreDep, audit_sink: AuditSinkDep) -> RetentionSweeper:
    return RetentionSweeper(store, audit_sink)


BatchServiceDep = Annotated[BatchExportService, Depends(get_batch_service)]
RetentionDep = Annotated[RetentionSweeper, Depends(get_retention_sweeper)]
