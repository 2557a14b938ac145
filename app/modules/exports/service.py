"""
Single-report export pipeline

    provider -> aggregate -> render (PDF | XLSX) -> name -> store -> audit
"""

import logging
from typing import List, Optional, Sequence
from uuid import UUID

from app.core.config import settings
from app.modules.exports import audit
from app.modules.exports.aggregation import aggregate
from app.modules.exports.audit import AuditSink
from app.modules.exports.comparison import ComparisonAssembler, ComparisonData
from app.modules.exports.context import ExportContext
from app.modules.exports.document import render_combined_document, render_document
from app.modules.exports.errors import ExportError, RenderFailure, ReportNotFound
from app.modules.exports.naming import FilenameAllocator, IssuedNames, join
from app.modules.exports.schemas import ExportArtifact, ExportFormat, ExportOptions
from app.modules.exports.spreadsheet import grid_to_xlsx, render_grid
from app.modules.exports.storage import ArtifactStore
from app.modules.reports.provider import ReportDataProvider
from app.modules.reports.schemas import Report

logger = logging.getLogger(__name__)


class ReportExportService:
    """Exports single reports, or several reports as one PDF"""

    def __init__(
        self,
        provider: ReportDataProvider,
        store: ArtifactStore,
        audit_sink: AuditSink,
        allocator: Optional[FilenameAllocator] = None
    ):
        self.provider = provider
        self.store = store
        self.audit_sink = audit_sink
        self.allocator = allocator or FilenameAllocator(unique_suffix=settings.EXPORT_UNIQUE_SUFFIX)
        self.comparison = ComparisonAssembler(provider)

    def load_report(self, report_id: UUID) -> Report:
        report = self.provider.get_report(report_id)
        if report is None:
            raise ReportNotFound(f"Financial report {report_id} not found")
        return report

    def _comparison(self, report: Report, options: ExportOptions) -> Optional[ComparisonData]:
        if not options.include_comparison:
            return None
        return self.comparison.compare(report, options.comparison_years)

    def render(self, report: Report, options: ExportOptions, context: ExportContext) -> bytes:
        """Aggregate and render one report in the requested format"""
        try:
            aggregation = aggregate(report)
            if options.format == ExportFormat.DOCUMENT:
                return render_document(report, aggregation, self._comparison(report, options), options, context)
            return grid_to_xlsx(render_grid(report, aggregation, options, context))
        except ExportError:
            raise
        except Exception as e:
            logger.exception(f"Rendering report {report.id} failed")
            raise RenderFailure(f"Could not render report {report.id}: {e}") from e

    def _store(self, filename: str, data: bytes, options: ExportOptions, context: ExportContext) -> ExportArtifact:
        now = context.now()
        storage_path = join(self.allocator.directory(options.format, now, options.batch_id), filename)
        size = self.store.put(storage_path, data, content_type=options.format.content_type)
        return ExportArtifact(
            filename=filename,
            storage_path=storage_path,
            size=size,
            created_at=now,
            format=options.format,
            download_url=self.store.url(storage_path)
        )

    def export_loaded(
        self,
        report: Report,
        options: ExportOptions,
        context: ExportContext,
        issued: Optional[IssuedNames] = None
    ) -> ExportArtifact:
        """Export a report snapshot that has already been loaded.

        ``issued`` holds the names already used by the surrounding batch, so
        two reports rendered in the same second never share a storage path.
        Queued jobs of one scheduled batch run in separate workers and get a
        random suffix instead.
        """
        data = self.render(report, options, context)
        filename = self.allocator.report_filename(
            report, options.format, context.now(), unique=options.batch_id is not None
        )
        if issued is not None:
            filename = issued.claim(filename)
        artifact = self._store(filename, data, options, context)

        if options.format == ExportFormat.DOCUMENT:
            action, label = audit.REPORT_EXPORTED_PDF, "PDF"
        else:
            action, label = audit.REPORT_EXPORTED_EXCEL, "Excel"
        self.audit_sink.emit(
            action,
            f"Exported {report.report_type.value} {report.reporting_year} to {label}",
            context,
            report_id=str(report.id),
            report_type=report.report_type.value,
            cooperative_id=str(report.cooperative_id),
            filename=artifact.filename,
            storage_path=artifact.storage_path,
            file_size=artifact.size
        )
        logger.info(f"Exported report {report.id} to {artifact.storage_path} ({artifact.size} bytes)")
        return artifact

    def export_report(self, report_id: UUID, options: ExportOptions, context: ExportContext) -> ExportArtifact:
        return self.export_loaded(self.load_report(report_id), options, context)

    def export_multiple_reports(
        self,
        report_ids: Sequence[UUID],
        options: ExportOptions,
        context: ExportContext
    ) -> ExportArtifact:
        """Render several reports into a single combined PDF, in the given order"""
        by_id = {report.id: report for report in self.provider.get_reports(report_ids)}
        reports: List[Report] = [by_id[report_id] for report_id in dict.fromkeys(report_ids) if report_id in by_id]
        if not reports:
            raise ReportNotFound("No financial reports found for the given ids")
        missing = [str(report_id) for report_id in report_ids if report_id not in by_id]
        if missing:
            logger.warning(f"Combined export skips unknown reports: {', '.join(missing)}")

        document_options = options.model_copy(update={"format": ExportFormat.DOCUMENT})
        try:
            entries = [(report, aggregate(report), self._comparison(report, document_options)) for report in reports]
            data = render_combined_document(entries, document_options, context)
        except ExportError:
            raise
        except Exception as e:
            logger.exception("Rendering combined report failed")
            raise RenderFailure(f"Could not render combined report: {e}") from e

        filename = self.allocator.combined_filename(reports[0], context.now())
        artifact = self._store(filename, data, document_options, context)
        self.audit_sink.emit(
            audit.MULTIPLE_REPORTS_EXPORTED_PDF,
            f"Exported {len(reports)} reports to one PDF",
            context,
            report_ids=[str(report.id) for report in reports],
            report_count=len(reports),
            filename=artifact.filename,
            storage_path=artifact.storage_path,
            file_size=artifact.size
        )
        logger.info(f"Exported {len(reports)} reports to {artifact.storage_path}")
        return artifact
