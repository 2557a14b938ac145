"""
Deferred job submission

The batch service only needs to hand one job per report to a worker; the
Celery implementation routes them to the exports queue.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from uuid import UUID

from app.core.config import settings

logger = logging.getLogger(__name__)


class JobQueue(ABC):
    @abstractmethod
    def enqueue_export(self, report_id: UUID, options: Dict[str, Any], actor_id: Optional[str]) -> str:
        """Submit one report export and return the job id."""


class CeleryJobQueue(JobQueue):
    """Sends export jobs to the Celery exports queue"""

    def __init__(self, queue_name: Optional[str] = None):
        self.queue_name = queue_name or settings.EXPORT_QUEUE

    def enqueue_export(self, report_id: UUID, options: Dict[str, Any], actor_id: Optional[str]) -> str:
        # Imported here so the web process does not import the worker tasks at startup
        from app.modules.exports.tasks import export_report_task

        result = export_report_task.apply_async(
            args=[str(report_id), options, actor_id],
            queue=self.queue_name
        )
        logger.debug(f"Queued export of report {report_id} as task {result.id}")
        return result.id
