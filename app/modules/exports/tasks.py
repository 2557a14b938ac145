"""
Background tasks for export operations
"""
import logging
from functools import lru_cache
from uuid import UUID

from app.core.celery import celery_app
from app.core.config import settings
from app.database.database import SessionLocal
from app.modules.exports.audit import LoggingAuditSink
from app.modules.exports.batch import BatchExportService
from app.modules.exports.context import ExportContext
from app.modules.exports.queue import CeleryJobQueue
from app.modules.exports.retention import RetentionSweeper
from app.modules.exports.schemas import ExportOptions
from app.modules.exports.service import ReportExportService
from app.modules.exports.storage import MinIOArtifactStore
from app.modules.reports.provider import SqlAlchemyReportProvider

logger = logging.getLogger(__name__)


@lru_cache
def get_worker_store() -> MinIOArtifactStore:
    return MinIOArtifactStore()


def build_batch_service() -> BatchExportService:
    store = get_worker_store()
    audit_sink = LoggingAuditSink()
    export_service = ReportExportService(SqlAlchemyReportProvider(SessionLocal), store, audit_sink)
    return BatchExportService(export_service, store, audit_sink, job_queue=CeleryJobQueue())


@celery_app.task(name="app.modules.exports.tasks.export_report_task")
def export_report_task(report_id: str, options: dict, actor_id: str = None):
    """
    Export one report of a scheduled batch.

    Not retried: a failure is recorded as a marker in the batch directory
    so the batch can still complete.
    """
    logger.info(f"Exporting report {report_id} for batch {options.get('batch_id')}")
    outcome = build_batch_service().run_scheduled_export(
        UUID(report_id),
        ExportOptions.model_validate(options),
        ExportContext(actor_id=actor_id)
    )
    return outcome.model_dump(mode="json")


@celery_app.task(name="app.modules.exports.tasks.cleanup_old_exports")
def cleanup_old_exports(days_old: int = None):
    """
    Periodic task removing export files past the retention period
    """
    days = days_old if days_old is not None else settings.EXPORT_RETENTION_DAYS
    logger.info(f"Starting cleanup of exports older than {days} days")
    store = get_worker_store()
    result = RetentionSweeper(store, LoggingAuditSink()).cleanup(days, ExportContext.system())
    if not result.success:
        logger.error(f"Export cleanup incomplete: {result.error}")
    return result.model_dump(mode="json")
