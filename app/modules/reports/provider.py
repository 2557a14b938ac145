"""
Report data providers

Supplies immutable Report snapshots to the export engine, either by id or
by filter. The SQLAlchemy provider loads each report with its cooperative
and line items in one round trip and detaches the result from the session.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.modules.exports.errors import StorageFailure
from app.modules.reports.models import FinancialReport
from app.modules.reports.schemas import LineItem, Report, ReportFilter, ReportStatus, ReportType

logger = logging.getLogger(__name__)


class ReportDataProvider(ABC):
    """Read access to financial report snapshots"""

    @abstractmethod
    def get_reports(self, report_ids: Iterable[UUID]) -> List[Report]:
        """Return the reports matching ``report_ids``; unknown ids are skipped."""

    @abstractmethod
    def find_reports(self, report_filter: ReportFilter) -> List[Report]:
        """Return reports matching the filter, oldest first."""

    def get_report(self, report_id: UUID) -> Optional[Report]:
        reports = self.get_reports([report_id])
        return reports[0] if reports else None

    def find_approved(self, cooperative_id: UUID, report_type: ReportType, year: int) -> Optional[Report]:
        """First approved report of a cooperative for a type and year, if any"""
        reports = self.find_reports(ReportFilter(
            cooperative_id=cooperative_id,
            report_type=report_type,
            reporting_year=year,
            status=ReportStatus.APPROVED
        ))
        return reports[0] if reports else None


def _to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _attribute_value(value):
    # JSON columns hand floats back; keep measures exact
    if isinstance(value, float):
        return Decimal(str(value))
    return value


def report_from_model(model: FinancialReport) -> Report:
    """Build a detached snapshot from an ORM report"""
    items = sorted(model.line_items, key=lambda item: item.position)
    return Report(
        id=model.id,
        cooperative_id=model.cooperative_id,
        cooperative_name=model.cooperative.name if model.cooperative else "Koperasi",
        report_type=model.report_type,
        reporting_year=model.reporting_year,
        reporting_period=model.reporting_period,
        status=model.status,
        line_items=tuple(
            LineItem(
                code=item.code,
                name=item.name,
                category=item.category,
                subcategory=item.subcategory,
                amount=_to_decimal(item.current_amount),
                previous_amount=_to_decimal(item.previous_amount),
                is_subtotal=bool(item.is_subtotal),
                sort_order=item.sort_order or 0,
                attributes={
                    key: _attribute_value(value)
                    for key, value in (item.attributes or {}).items()
                    if value is not None
                }
            )
            for item in items
        ),
        metadata=dict(model.data or {}),
        created_at=model.created_at
    )


class SqlAlchemyReportProvider(ReportDataProvider):
    """Loads report snapshots from the relational store"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _base_query(self):
        return select(FinancialReport).options(
            selectinload(FinancialReport.line_items),
            selectinload(FinancialReport.cooperative)
        )

    def _load(self, query) -> List[Report]:
        try:
            with self.session_factory() as db:
                models = db.execute(query).scalars().all()
                return [report_from_model(model) for model in models]
        except SQLAlchemyError as e:
            logger.error(f"Could not load financial reports: {e}")
            raise StorageFailure(f"Could not load financial reports: {e}") from e

    def get_reports(self, report_ids: Iterable[UUID]) -> List[Report]:
        ids = list(report_ids)
        if not ids:
            return []
        query = self._base_query().where(FinancialReport.id.in_(ids))
        return self._load(query)

    def find_reports(self, report_filter: ReportFilter) -> List[Report]:
        query = self._base_query()
        if report_filter.cooperative_id is not None:
            query = query.where(FinancialReport.cooperative_id == report_filter.cooperative_id)
        if report_filter.report_type is not None:
            query = query.where(FinancialReport.report_type == report_filter.report_type)
        if report_filter.reporting_year is not None:
            query = query.where(FinancialReport.reporting_year == report_filter.reporting_year)
        if report_filter.status is not None:
            query = query.where(FinancialReport.status == report_filter.status)
        if report_filter.created_from is not None:
            query = query.where(FinancialReport.created_at >= report_filter.created_from)
        if report_filter.created_to is not None:
            query = query.where(FinancialReport.created_at <= report_filter.created_to)
        query = query.order_by(FinancialReport.created_at, FinancialReport.id)
        return self._load(query)
