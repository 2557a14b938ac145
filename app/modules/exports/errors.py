"""Errors raised by the export engine."""


class ExportError(Exception):
    """Base class for export engine errors."""

    kind = "export_error"


class ReportNotFound(ExportError):
    """Raised when no report matches the requested ids or filter."""

    kind = "not_found"


class RenderFailure(ExportError):
    """Raised when a single report cannot be aggregated or rendered."""

    kind = "render_failure"


class UnsupportedReportType(RenderFailure):
    """Raised when no aggregation strategy is registered for a report type."""

    kind = "unsupported_report_type"

    def __init__(self, report_type) -> None:
        self.report_type = report_type
        super().__init__(f"Unsupported report type: {report_type!r}")


class InvalidLineItem(RenderFailure):
    """Raised when a line item's category is outside its report type's set."""

    kind = "invalid_line_item"


class StorageFailure(ExportError):
    """Raised when the artifact store or the report source cannot be used."""

    kind = "storage_failure"


class ZipFailure(ExportError):
    """Raised when an archive cannot be opened, written or persisted.

    Only the bundling step fails; artifacts already exported stay valid.
    """

    kind = "zip_failure"


class QueueFailure(ExportError):
    """Raised when deferred export jobs cannot be handed to the job queue."""

    kind = "queue_failure"
