"""
Audit events emitted by the export engine

Persistence of the audit trail lives outside this service; the engine only
hands events to an AuditSink. The default sink writes them to the
``app.audit`` logger so a log shipper can pick them up.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from app.modules.exports.context import ExportContext

REPORT_EXPORTED_PDF = "report_exported_pdf"
REPORT_EXPORTED_EXCEL = "report_exported_excel"
MULTIPLE_REPORTS_EXPORTED_PDF = "multiple_reports_exported_pdf"
BATCH_EXPORT_COMPLETED = "batch_export_completed"
BATCH_EXPORT_SCHEDULED = "batch_export_scheduled"
EXPORT_FILES_CLEANED = "export_files_cleaned"


class AuditEvent(BaseModel):
    action: str
    description: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    actor_id: Optional[str] = None
    occurred_at: datetime


class AuditSink(ABC):
    @abstractmethod
    def record(self, event: AuditEvent) -> None:
        pass

    def emit(self, action: str, description: str, context: ExportContext, **properties) -> AuditEvent:
        event = AuditEvent(
            action=action,
            description=description,
            properties=properties,
            actor_id=context.actor_id,
            occurred_at=context.now()
        )
        self.record(event)
        return event


class LoggingAuditSink(AuditSink):
    """Writes audit events as structured log records"""

    def __init__(self, logger_name: str = "app.audit"):
        self.logger = logging.getLogger(logger_name)

    def record(self, event: AuditEvent) -> None:
        self.logger.info(
            f"{event.action}: {event.description}",
            extra={"audit": event.model_dump(mode="json")}
        )
