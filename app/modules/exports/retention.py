"""
Age-based cleanup of stored exports
"""

import logging
from datetime import timedelta
from typing import Optional

from app.core.config import settings
from app.modules.exports import audit
from app.modules.exports.audit import AuditSink
from app.modules.exports.context import ExportContext
from app.modules.exports.errors import StorageFailure
from app.modules.exports.naming import MANAGED_DIRS, FilenameAllocator
from app.modules.exports.schemas import CleanupResult, DirectoryStatistics, ExportStatistics
from app.modules.exports.storage import ArtifactStore

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Deletes export files older than a number of days"""

    def __init__(self, store: ArtifactStore, audit_sink: AuditSink):
        self.store = store
        self.audit_sink = audit_sink

    def cleanup(self, days_old: Optional[int], context: ExportContext) -> CleanupResult:
        if days_old is None:
            days_old = settings.EXPORT_RETENTION_DAYS
        if days_old < 0:
            raise ValueError("days_old must not be negative")

        cutoff = context.now() - timedelta(days=days_old)
        deleted_files = 0
        deleted_size = 0
        error = None

        try:
            for name in MANAGED_DIRS:
                for obj in self.store.list(FilenameAllocator.managed_directory(name)):
                    if obj.last_modified < cutoff:
                        self.store.delete(obj.path)
                        deleted_files += 1
                        deleted_size += obj.size
        except StorageFailure as e:
            logger.error(f"Export cleanup stopped after {deleted_files} files: {e}")
            error = str(e)

        result = CleanupResult(
            success=error is None,
            deleted_files=deleted_files,
            deleted_size=deleted_size,
            cutoff_date=cutoff.date(),
            error=error
        )
        self.audit_sink.emit(
            audit.EXPORT_FILES_CLEANED,
            f"Cleaned up {deleted_files} export files older than {days_old} days",
            context,
            days_old=days_old,
            deleted_files=deleted_files,
            deleted_size=deleted_size,
            cutoff_date=result.cutoff_date.isoformat(),
            success=result.success
        )
        logger.info(f"Export cleanup removed {deleted_files} files ({deleted_size} bytes), cutoff {cutoff}")
        return result

    def get_statistics(self) -> ExportStatistics:
        """File count and size per managed export directory"""
        by_type = {}
        for name in MANAGED_DIRS:
            objects = self.store.list(FilenameAllocator.managed_directory(name))
            by_type[name] = DirectoryStatistics(
                file_count=len(objects),
                total_size=sum(obj.size for obj in objects)
            )
        return ExportStatistics(
            total_files=sum(stats.file_count for stats in by_type.values()),
            total_size=sum(stats.total_size for stats in by_type.values()),
            by_type=by_type
        )
