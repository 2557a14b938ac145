"""
Tests for the SQLAlchemy report provider

Runs against an in-memory SQLite database with the reports tables only.
"""

import pytest
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database.database import Base
from app.modules.exports.errors import StorageFailure
from app.modules.reports.models import Cooperative, FinancialReport, FinancialReportLineItem
from app.modules.reports.provider import SqlAlchemyReportProvider
from app.modules.reports.schemas import ReportFilter, ReportStatus, ReportType


# ===== FIXTURES =====

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def cooperative(session_factory):
    with session_factory() as db:
        coop = Cooperative(id=uuid4(), name="Koperasi Simpan Pinjam Makmur")
        db.add(coop)
        db.commit()
        return coop.id


def _add_report(session_factory, cooperative_id, report_type=ReportType.BALANCE_SHEET, year=2023,
                status=ReportStatus.APPROVED, created_at=datetime(2024, 1, 10, 9, 0), items=(), data=None):
    with session_factory() as db:
        report = FinancialReport(
            id=uuid4(),
            cooperative_id=cooperative_id,
            report_type=report_type,
            reporting_year=year,
            reporting_period=f"1 Januari - 31 Desember {year}",
            status=status,
            data=data or {},
            created_at=created_at,
            updated_at=created_at
        )
        for position, values in enumerate(items):
            report.line_items.append(FinancialReportLineItem(position=position, **values))
        db.add(report)
        db.commit()
        return report.id


class TestSqlAlchemyReportProvider:
    """Snapshots loaded from the relational store"""

    def test_get_reports_builds_snapshots(self, session_factory, cooperative):
        report_id = _add_report(session_factory, cooperative, items=[
            {"code": "1102", "name": "Bank", "category": "asset", "current_amount": Decimal("750000.00"),
             "previous_amount": Decimal("600000.00"), "sort_order": 1},
            {"code": "1101", "name": "Kas", "category": "asset", "current_amount": Decimal("250000.00"),
             "sort_order": 1, "attributes": {"interest_rate": 1.5, "note": None}},
        ], data={"beginning_cash_balance": 100000})

        reports = SqlAlchemyReportProvider(session_factory).get_reports([report_id, uuid4()])

        assert len(reports) == 1
        report = reports[0]
        assert report.cooperative_name == "Koperasi Simpan Pinjam Makmur"
        assert report.report_type == ReportType.BALANCE_SHEET
        assert report.is_approved
        assert [item.code for item in report.line_items] == ["1102", "1101"]
        assert report.line_items[0].amount == Decimal("750000.00")
        assert report.line_items[1].previous_amount == Decimal("0")
        assert report.line_items[1].attributes == {"interest_rate": Decimal("1.5")}
        assert report.metadata == {"beginning_cash_balance": 100000}

    def test_get_report_unknown(self, session_factory, cooperative):
        assert SqlAlchemyReportProvider(session_factory).get_report(uuid4()) is None

    def test_empty_id_list(self, session_factory):
        assert SqlAlchemyReportProvider(session_factory).get_reports([]) == []

    def test_find_reports_by_filter(self, session_factory, cooperative):
        later = _add_report(session_factory, cooperative, ReportType.INCOME_STATEMENT,
                            created_at=datetime(2024, 2, 1, 9, 0))
        earlier = _add_report(session_factory, cooperative, ReportType.BALANCE_SHEET,
                              created_at=datetime(2024, 1, 5, 9, 0))
        _add_report(session_factory, cooperative, status=ReportStatus.DRAFT)
        _add_report(session_factory, cooperative, year=2022)

        provider = SqlAlchemyReportProvider(session_factory)
        found = provider.find_reports(ReportFilter(
            cooperative_id=cooperative,
            reporting_year=2023,
            status=ReportStatus.APPROVED
        ))

        assert [report.id for report in found] == [earlier, later]

    def test_find_approved(self, session_factory, cooperative):
        _add_report(session_factory, cooperative, year=2022, status=ReportStatus.SUBMITTED)
        approved = _add_report(session_factory, cooperative, year=2022)

        provider = SqlAlchemyReportProvider(session_factory)

        assert provider.find_approved(cooperative, ReportType.BALANCE_SHEET, 2022).id == approved
        assert provider.find_approved(cooperative, ReportType.CASH_FLOW, 2022) is None

    def test_database_errors_become_storage_failures(self, engine, session_factory, cooperative):
        Base.metadata.drop_all(engine)
        with pytest.raises(StorageFailure):
            SqlAlchemyReportProvider(session_factory).get_reports([uuid4()])
