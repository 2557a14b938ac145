"""
Tests for the exports module

Covers:
- Aggregation and year-over-year comparison
- Spreadsheet and PDF rendering
- File naming, storage and zip bundling
- Single, batch and scheduled exports
- Cleanup, statistics, Celery tasks and the HTTP API

Everything runs against in-memory doubles for the report provider, the
artifact store, the audit sink and the job queue.
"""

import pytest
import io
import json
import logging
import re
import zipfile
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from io import BytesIO
from types import SimpleNamespace
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from uuid import UUID, uuid4

from fastapi.testclient import TestClient
from openpyxl import load_workbook

from app.core.config import settings
from app.main import app
from app.modules.exports import tasks
from app.modules.exports.aggregation import AGGREGATORS, CATEGORY_LABELS, aggregate
from app.modules.exports.audit import AuditEvent, AuditSink
from app.modules.exports.batch import BATCH_ID_PATTERN, BatchExportService
from app.modules.exports.bundler import ArchiveBundler
from app.modules.exports.comparison import ComparisonAssembler
from app.modules.exports.context import ExportContext
from app.modules.exports.dependencies import (
    get_artifact_store, get_audit_sink, get_job_queue, get_report_provider
)
from app.modules.exports.document import (
    TEMPLATES, ChartBlock, Heading, Note, _page_size, build_document, format_amount,
    render_combined_document, render_document, resolve_font
)
from app.modules.exports.errors import (
    InvalidLineItem, QueueFailure, RenderFailure, ReportNotFound, StorageFailure, UnsupportedReportType, ZipFailure
)
from app.modules.exports.naming import FilenameAllocator, IssuedNames, cooperative_slug, join, report_type_slug
from app.modules.exports.queue import CeleryJobQueue, JobQueue
from app.modules.exports.retention import RetentionSweeper
from app.modules.exports.schemas import BatchStatusValue, ExportArtifact, ExportFormat, ExportOptions
from app.modules.exports.service import ReportExportService
from app.modules.exports.spreadsheet import INTEGER_FORMAT, RowStyle, grid_to_xlsx, render_grid, whole
from app.modules.exports.storage import ArtifactStore, MinIOArtifactStore, StoredObject
from app.modules.reports.provider import ReportDataProvider
from app.modules.reports.schemas import LineItem, Report, ReportFilter, ReportStatus, ReportType


# ===== DOUBLES AND BUILDERS =====

FIXED_NOW = datetime(2024, 3, 15, 10, 30, 45, tzinfo=timezone.utc)
COOPERATIVE_ID = UUID("11111111-1111-1111-1111-111111111111")


class FixedClock:
    def __init__(self, now: datetime = FIXED_NOW):
        self.current = now

    def __call__(self) -> datetime:
        return self.current


class InMemoryArtifactStore(ArtifactStore):
    """Dict-backed store; modification times can be set per object"""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or FixedClock()
        self.objects: Dict[str, Tuple[bytes, datetime]] = {}
        self.fail_get: set = set()
        self.fail_delete: set = set()
        self.fail_put = False
        self.fail_put_prefix = None
        self.fail_list = False

    def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> int:
        if self.fail_put or (self.fail_put_prefix and path.startswith(self.fail_put_prefix)):
            raise StorageFailure(f"Could not store {path}")
        self.objects[path] = (bytes(data), self.clock())
        return len(data)

    def get(self, path: str) -> bytes:
        if path in self.fail_get or path not in self.objects:
            raise StorageFailure(f"Could not read {path}")
        return self.objects[path][0]

    def list(self, prefix: str) -> List[StoredObject]:
        if self.fail_list:
            raise StorageFailure(f"Could not list {prefix}")
        prefix = prefix.rstrip("/") + "/"
        return [
            StoredObject(path=path, size=len(data), last_modified=modified)
            for path, (data, modified) in sorted(self.objects.items())
            if path.startswith(prefix)
        ]

    def delete(self, path: str) -> None:
        if path in self.fail_delete:
            raise StorageFailure(f"Could not delete {path}")
        self.objects.pop(path, None)

    def exists(self, path: str) -> bool:
        return path in self.objects

    def url(self, path, expires=None):
        return f"https://files.example.test/{path}"

    def set_modified(self, path: str, modified: datetime) -> None:
        data, _ = self.objects[path]
        self.objects[path] = (data, modified)


class InMemoryReportProvider(ReportDataProvider):
    """Returns reports in reverse insertion order to catch order assumptions"""

    def __init__(self, reports: Iterable[Report] = ()):
        self.reports: List[Report] = list(reports)
        self.fail = False

    def add(self, *reports: Report) -> None:
        self.reports.extend(reports)

    def _check(self):
        if self.fail:
            raise StorageFailure("Report database unavailable")

    def get_reports(self, report_ids):
        self._check()
        wanted = set(report_ids)
        return [report for report in reversed(self.reports) if report.id in wanted]

    def find_reports(self, report_filter: ReportFilter):
        self._check()
        found = []
        for report in self.reports:
            if report_filter.cooperative_id is not None and report.cooperative_id != report_filter.cooperative_id:
                continue
            if report_filter.report_type is not None and report.report_type != report_filter.report_type:
                continue
            if report_filter.reporting_year is not None and report.reporting_year != report_filter.reporting_year:
                continue
            if report_filter.status is not None and report.status != report_filter.status:
                continue
            if report_filter.created_from is not None and report.created_at < report_filter.created_from:
                continue
            if report_filter.created_to is not None and report.created_at > report_filter.created_to:
                continue
            found.append(report)
        return found


class RecordingAuditSink(AuditSink):
    def __init__(self):
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [event.action for event in self.events]


class RecordingJobQueue(JobQueue):
    def __init__(self):
        self.jobs = []
        self.fail = False
        self.fail_ids = set()

    def enqueue_export(self, report_id, options, actor_id):
        if self.fail or report_id in self.fail_ids:
            raise ConnectionError("Error 111 connecting to redis:6379. Connection refused.")
        self.jobs.append((report_id, options, actor_id))
        return f"job-{len(self.jobs)}"


def item(code: str, name: str, category: str, amount="0", previous="0", **kwargs) -> LineItem:
    return LineItem(
        code=code,
        name=name,
        category=category,
        amount=Decimal(str(amount)),
        previous_amount=Decimal(str(previous)),
        **kwargs
    )


def make_report(
    report_type: ReportType,
    line_items: Iterable[LineItem] = (),
    year: int = 2023,
    status: ReportStatus = ReportStatus.APPROVED,
    cooperative_id: UUID = COOPERATIVE_ID,
    cooperative_name: str = "Koperasi Sejahtera Bersama",
    metadata: Optional[dict] = None,
    created_at: datetime = FIXED_NOW,
    report_id: Optional[UUID] = None
) -> Report:
    return Report(
        id=report_id or uuid4(),
        cooperative_id=cooperative_id,
        cooperative_name=cooperative_name,
        report_type=report_type,
        reporting_year=year,
        reporting_period=f"1 Januari - 31 Desember {year}",
        status=status,
        line_items=tuple(line_items),
        metadata=metadata or {},
        created_at=created_at
    )


def balance_sheet(assets="1000000", liabilities="400000", equity="600000", **kwargs) -> Report:
    return make_report(ReportType.BALANCE_SHEET, [
        item("1101", "Kas", "asset", assets, "900000", sort_order=1),
        item("2101", "Simpanan Anggota", "liability", liabilities, "350000", sort_order=1),
        item("3101", "Modal Anggota", "equity", equity, "550000", sort_order=1),
    ], **kwargs)


def income_statement(**kwargs) -> Report:
    return make_report(ReportType.INCOME_STATEMENT, [
        item("4101", "Pendapatan Jasa Pinjaman", "revenue", "500000", "450000", sort_order=1),
        item("4102", "Pendapatan Administrasi", "revenue", "100000", "80000", sort_order=2),
        item("5101", "Beban Gaji", "expense", "300000", "280000", sort_order=1),
        item("6101", "Pendapatan Bunga Bank", "other_income", "20000", "15000"),
        item("7101", "Beban Pajak", "other_expense", "20000", "10000"),
    ], **kwargs)


def member_savings(**kwargs) -> Report:
    return make_report(ReportType.MEMBER_SAVINGS, [
        item("A001", "Budi Santoso", "simpanan_pokok", "100000", attributes={
            "beginning_balance": Decimal("100000"), "deposits": Decimal("0"),
            "withdrawals": Decimal("0"), "interest_earned": Decimal("0")}),
        item("A001", "Budi Santoso", "simpanan_wajib", "1200000", attributes={
            "beginning_balance": Decimal("1000000"), "deposits": Decimal("240000"),
            "withdrawals": Decimal("50000"), "interest_earned": Decimal("10000")}),
        item("A002", "Siti Aminah", "simpanan_wajib", "800000", attributes={
            "beginning_balance": Decimal("600000"), "deposits": Decimal("200000"),
            "withdrawals": Decimal("0"), "interest_earned": Decimal("0")}),
    ], **kwargs)


# ===== FIXTURES =====

@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def context(clock):
    return ExportContext(actor_id="user-42", clock=clock)


@pytest.fixture
def store(clock):
    return InMemoryArtifactStore(clock)


@pytest.fixture
def provider():
    return InMemoryReportProvider()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def job_queue():
    return RecordingJobQueue()


@pytest.fixture
def export_service(provider, store, audit_sink):
    return ReportExportService(provider, store, audit_sink, allocator=FilenameAllocator())


@pytest.fixture
def batch_service(export_service, store, audit_sink, job_queue):
    return BatchExportService(export_service, store, audit_sink, job_queue=job_queue, max_workers=1)


@pytest.fixture
def sweeper(store, audit_sink):
    return RetentionSweeper(store, audit_sink)


@pytest.fixture
def client(provider, store, audit_sink, job_queue):
    app.dependency_overrides[get_report_provider] = lambda: provider
    app.dependency_overrides[get_artifact_store] = lambda: store
    app.dependency_overrides[get_audit_sink] = lambda: audit_sink
    app.dependency_overrides[get_job_queue] = lambda: job_queue
    yield TestClient(app)
    app.dependency_overrides.clear()


# ===== AGGREGATION =====

class TestStrategyTable:
    """Every report type has aggregation rules and labels"""

    def test_every_report_type_registered(self):
        assert set(AGGREGATORS) == set(ReportType)
        assert set(CATEGORY_LABELS) == set(ReportType)

    def test_unregistered_type_is_rejected(self):
        report = balance_sheet().model_copy(update={"report_type": "loan_ledger"})
        with pytest.raises(UnsupportedReportType) as exc_info:
            aggregate(report)
        assert "loan_ledger" in str(exc_info.value)
        assert isinstance(exc_info.value, RenderFailure)


class TestCategoryTotals:
    """Sums, subtotal handling and ordering"""

    def test_balance_sheet_scenario(self):
        result = aggregate(balance_sheet())

        assert result.total("asset") == Decimal("1000000")
        assert result.total("liability") == Decimal("400000")
        assert result.total("equity") == Decimal("600000")
        assert result.metric("total_liabilities_and_equity") == Decimal("1000000")
        assert result.metric("balance_check") == Decimal("0")

    def test_unbalanced_sheet_reports_difference(self):
        result = aggregate(balance_sheet(equity="500000"))
        assert result.metric("balance_check") == Decimal("100000")

    def test_subtotals_are_kept_but_not_summed(self):
        report = make_report(ReportType.BALANCE_SHEET, [
            item("1101", "Kas", "asset", "250000", "200000"),
            item("1102", "Bank", "asset", "750000", "600000"),
            item("1100", "Jumlah Kas dan Bank", "asset", "1000000", "800000", is_subtotal=True),
        ])
        result = aggregate(report)

        asset = result.category("asset")
        assert asset.total == Decimal("1000000")
        assert asset.previous_total == Decimal("800000")
        assert len(asset.items) == 3

    def test_total_matches_non_subtotal_sum(self):
        report = income_statement()
        result = aggregate(report)
        for category in result.categories:
            expected = sum(
                (i.amount for i in report.line_items if i.category == category.category and not i.is_subtotal),
                Decimal("0")
            )
            assert category.total == expected

    def test_items_sorted_by_sort_order_with_stable_ties(self):
        report = make_report(ReportType.BALANCE_SHEET, [
            item("1103", "Piutang", "asset", "1", sort_order=2),
            item("1101", "Kas", "asset", "1", sort_order=1),
            item("1102", "Bank", "asset", "1", sort_order=1),
        ])
        codes = [i.code for i in aggregate(report).category("asset").items]
        assert codes == ["1101", "1102", "1103"]

    def test_categories_follow_declared_order(self):
        report = make_report(ReportType.BALANCE_SHEET, [
            item("3101", "Modal", "equity", "10"),
            item("1101", "Kas", "asset", "10"),
        ])
        result = aggregate(report)
        assert [c.category for c in result.categories] == ["asset", "liability", "equity"]
        assert result.total("liability") == Decimal("0")

    def test_unknown_category_is_rejected(self):
        report = make_report(ReportType.BALANCE_SHEET, [item("9999", "Lainnya", "revenue", "10")])
        with pytest.raises(InvalidLineItem):
            aggregate(report)

    def test_input_is_not_modified(self):
        report = make_report(ReportType.BALANCE_SHEET, [
            item("1102", "Bank", "asset", "5", sort_order=2),
            item("1101", "Kas", "asset", "5", sort_order=1),
        ])
        before = report.model_dump()
        aggregate(report)
        assert report.model_dump() == before


class TestIncomeStatement:
    def test_net_income_and_margin(self):
        result = aggregate(income_statement())

        assert result.metric("total_revenue") == Decimal("600000")
        assert result.metric("total_expenses") == Decimal("300000")
        assert result.metric("net_income") == Decimal("300000")
        assert result.metric("profit_margin") == Decimal("50.00")

    def test_all_zero_input(self):
        report = make_report(ReportType.INCOME_STATEMENT, [
            item("4101", "Pendapatan", "revenue", "0"),
            item("5101", "Beban", "expense", "0"),
        ])
        result = aggregate(report)
        assert result.metric("net_income") == Decimal("0")
        assert result.metric("profit_margin") == Decimal("0")

    def test_margin_rounded_to_two_places(self):
        report = make_report(ReportType.INCOME_STATEMENT, [
            item("4101", "Pendapatan", "revenue", "300000"),
            item("5101", "Beban", "expense", "200000"),
        ])
        assert aggregate(report).metric("profit_margin") == Decimal("33.33")


class TestCashFlow:
    def _report(self, metadata=None):
        return make_report(ReportType.CASH_FLOW, [
            item("CF01", "Penerimaan dari anggota", "operating", "200000"),
            item("CF02", "Pembelian inventaris", "investing", "-50000"),
            item("CF03", "Setoran modal", "financing", "0"),
        ], metadata=metadata)

    def test_reconciles_with_metadata(self):
        result = aggregate(self._report({"beginning_cash_balance": "100000", "ending_cash_balance": "250000"}))

        assert result.metric("net_cash_flow") == Decimal("150000")
        assert result.metric("expected_ending_cash") == Decimal("250000")
        assert result.metric("cash_discrepancy") == Decimal("0")

    def test_missing_metadata_defaults_to_zero(self):
        result = aggregate(self._report())

        assert result.metric("beginning_cash") == Decimal("0")
        assert result.metric("ending_cash") == Decimal("0")
        assert result.metric("cash_discrepancy") == Decimal("-150000")


class TestEquityChanges:
    def test_movement_matches_net_change(self):
        report = make_report(ReportType.EQUITY_CHANGES, [
            item("E1", "Saldo awal", "opening_balance", "1000000"),
            item("E2", "SHU tahun berjalan", "addition", "300000"),
            item("E3", "Pembagian SHU", "reduction", "100000"),
            item("E4", "Saldo akhir", "closing_balance", "1200000"),
        ])
        result = aggregate(report)

        assert result.metric("net_change") == Decimal("200000")
        assert result.metric("movement") == Decimal("200000")
        assert result.metric("equity_discrepancy") == Decimal("0")


class TestMemberReports:
    def test_member_savings(self):
        result = aggregate(member_savings())

        assert result.counts["total_members"] == 2
        assert result.metric("total_beginning_balance") == Decimal("1700000")
        assert result.metric("total_deposits") == Decimal("440000")
        assert result.metric("total_withdrawals") == Decimal("50000")
        assert result.metric("total_interest_earned") == Decimal("10000")
        assert result.metric("total_ending_balance") == Decimal("2100000")

        by_type = result.groups["by_savings_type"]
        assert by_type["simpanan_pokok"].count == 1
        assert by_type["simpanan_wajib"].count == 2
        assert by_type["simpanan_wajib"].totals["total_balance"] == Decimal("2000000")

    def test_member_receivables(self):
        report = make_report(ReportType.MEMBER_RECEIVABLES, [
            item("A001", "Budi", "productive", "6000000", subcategory="current",
                 attributes={"loan_amount": Decimal("10000000"), "interest_rate": Decimal("12")}),
            item("A002", "Siti", "consumptive", "4000000", subcategory="overdue",
                 attributes={"loan_amount": Decimal("5000000"), "interest_rate": Decimal("15")}),
            item("SUB", "Jumlah", "consumptive", "10000000", is_subtotal=True),
        ])
        result = aggregate(report)

        assert result.counts["total_loans"] == 2
        assert result.metric("total_loan_amount") == Decimal("15000000")
        assert result.metric("total_outstanding") == Decimal("10000000")
        assert result.metric("average_interest_rate") == Decimal("13.50")
        assert result.groups["by_payment_status"]["current"].totals["total_outstanding"] == Decimal("6000000")
        assert result.groups["by_loan_type"]["consumptive"].count == 1

    def test_npl_receivables(self):
        report = make_report(ReportType.NPL_RECEIVABLES, [
            item("A003", "Joko", "substandard", "2000000", attributes={
                "original_loan_amount": Decimal("5000000"), "provision_amount": Decimal("300000"),
                "days_past_due": 100}),
            item("A004", "Rina", "loss", "1000000", attributes={
                "original_loan_amount": Decimal("3000000"), "provision_amount": Decimal("1000000"),
                "days_past_due": 200}),
        ])
        result = aggregate(report)

        assert result.counts["total_npl_loans"] == 2
        assert result.metric("total_original_amount") == Decimal("8000000")
        assert result.metric("total_provision") == Decimal("1300000")
        assert result.metric("average_days_past_due") == Decimal("150.00")
        assert result.groups["by_classification"]["loss"].totals["total_provision"] == Decimal("1000000")

    def test_shu_distribution(self):
        report = make_report(ReportType.SHU_DISTRIBUTION, [
            item("A001", "Budi", "regular", "1000000", subcategory="paid",
                 attributes={"tax_deduction": Decimal("100000")}),
            item("A002", "Siti", "founder", "500000", subcategory="pending",
                 attributes={"tax_deduction": Decimal("0"), "net_shu_received": Decimal("500000")}),
        ])
        result = aggregate(report)

        assert result.counts["total_members"] == 2
        assert result.metric("total_distributed") == Decimal("1500000")
        assert result.metric("total_tax_deduction") == Decimal("100000")
        assert result.metric("total_net_shu") == Decimal("1400000")
        assert result.metric("average_per_member") == Decimal("750000.00")
        assert result.groups["by_payment_status"]["paid"].totals["total_amount"] == Decimal("900000")


class TestBudgetPlan:
    def test_net_budget_and_variance(self):
        report = make_report(ReportType.BUDGET_PLAN, [
            item("B1", "Jasa pinjaman", "revenue", "1000000", subcategory="high",
                 attributes={"comparison_amount": Decimal("800000")}),
            item("B2", "Gaji", "expense", "600000", subcategory="medium",
                 attributes={"comparison_amount": Decimal("700000")}),
        ])
        result = aggregate(report)

        assert result.metric("net_budget") == Decimal("400000")
        assert result.metric("variance_percentage") == Decimal("6.67")
        assert result.groups["by_priority"]["high"].totals["total_amount"] == Decimal("1000000")

    def test_variance_zero_without_comparison(self):
        report = make_report(ReportType.BUDGET_PLAN, [item("B1", "Jasa pinjaman", "revenue", "1000000")])
        result = aggregate(report)

        assert result.metric("variance_percentage") == Decimal("0")
        assert "unspecified" in result.groups["by_priority"]


# ===== COMPARISON =====

class TestComparisonAssembler:

    def test_one_matching_prior_year(self, provider):
        current = balance_sheet(year=2023)
        provider.add(current, balance_sheet(year=2022, assets="800000", liabilities="300000", equity="500000"))

        comparison = ComparisonAssembler(provider).compare(current, 2)

        assert list(comparison) == [2022]
        assert comparison[2022] == {
            "total_assets": Decimal("800000"),
            "total_liabilities": Decimal("300000"),
            "total_equity": Decimal("500000"),
        }

    def test_only_approved_reports_of_same_cooperative(self, provider):
        current = balance_sheet(year=2023)
        provider.add(
            current,
            balance_sheet(year=2022, status=ReportStatus.DRAFT),
            balance_sheet(year=2021, cooperative_id=uuid4()),
        )
        assert ComparisonAssembler(provider).compare(current, 2) == {}

    def test_years_outside_window_are_ignored(self, provider):
        current = balance_sheet(year=2023)
        provider.add(current, balance_sheet(year=2020), balance_sheet(year=2023, assets="1"))
        assert ComparisonAssembler(provider).compare(current, 2) == {}

    def test_income_statement_uses_aggregated_net_income(self, provider):
        current = income_statement(year=2023)
        provider.add(current, income_statement(year=2022))

        comparison = ComparisonAssembler(provider).compare(current, 1)
        assert comparison[2022]["net_income"] == Decimal("300000")
        assert comparison[2022]["total_revenue"] == Decimal("600000")

    def test_type_without_extractor_yields_empty_metrics(self, provider):
        current = member_savings(year=2023)
        provider.add(current, member_savings(year=2022))
        assert ComparisonAssembler(provider).compare(current, 2) == {2022: {}}

    def test_non_positive_window(self, provider):
        current = balance_sheet(year=2023)
        provider.add(balance_sheet(year=2022))
        assert ComparisonAssembler(provider).compare(current, 0) == {}
        assert ComparisonAssembler(provider).compare(current, -1) == {}


# ===== SPREADSHEET =====

def _grid(report, context, **options):
    return render_grid(report, aggregate(report), ExportOptions(format="spreadsheet", **options), context)


class TestHeader:
    def test_four_header_rows(self, context):
        grid = _grid(balance_sheet(), context)

        assert grid.rows[0].cells == ("Koperasi Sejahtera Bersama",)
        assert grid.rows[1].cells == ("NERACA",)
        assert grid.rows[2].cells == ("Periode: 1 Januari - 31 Desember 2023",)
        assert grid.rows[3].cells == ("Dibuat pada: 15/03/2024 10:30:45",)
        assert [row.style for row in grid.rows[:4]] == [RowStyle.TITLE, RowStyle.TITLE, RowStyle.INFO, RowStyle.INFO]

    def test_rendering_is_deterministic_apart_from_timestamp(self, context):
        report = balance_sheet()
        later = ExportContext(actor_id="user-42", clock=FixedClock(datetime(2024, 4, 1, 8, 0, 0, tzinfo=timezone.utc)))

        first = _grid(report, context).rows
        second = _grid(report, later).rows

        assert len(first) == len(second)
        differing = [i for i, (a, b) in enumerate(zip(first, second)) if a != b]
        assert differing == [3]


class TestCategoryLayout:
    def test_balance_sheet_sections_and_totals(self, context):
        grid = _grid(balance_sheet(), context)

        assert [row.cells[0] for row in grid.rows_of(RowStyle.SECTION)] == ["ASET", "KEWAJIBAN", "EKUITAS"]
        totals = grid.rows_of(RowStyle.CATEGORY_TOTAL)
        assert totals[0].cells == ("", "TOTAL ASET", 1000000, 900000)
        grand = grid.rows_of(RowStyle.GRAND_TOTAL)
        assert grand[0].cells == ("", "TOTAL KEWAJIBAN + EKUITAS", 1000000, 900000)

    def test_income_statement_net_income_row(self, context):
        grid = _grid(income_statement(), context)
        grand = grid.rows_of(RowStyle.GRAND_TOTAL)
        assert grand[0].cells == ("", "LABA (RUGI) BERSIH", 300000, 255000)

    def test_item_amounts_are_whole_numbers(self, context):
        report = make_report(ReportType.BALANCE_SHEET, [item("1101", "Kas", "asset", "1234.50", "99.49")])
        row = _grid(report, context).rows_of(RowStyle.ITEM)[0]
        assert row.cells == ("1101", "Kas", 1235, 99)

    def test_subtotal_items_are_styled(self, context):
        report = make_report(ReportType.BALANCE_SHEET, [
            item("1101", "Kas", "asset", "10"),
            item("1100", "Jumlah Kas", "asset", "10", is_subtotal=True, sort_order=1),
        ])
        grid = _grid(report, context)
        assert [row.cells[0] for row in grid.rows_of(RowStyle.SUBTOTAL_ITEM)] == ["1100"]
        assert grid.rows_of(RowStyle.CATEGORY_TOTAL)[0].cells[2] == 10


class TestTabularLayout:
    def test_member_savings_rows(self, context):
        grid = _grid(member_savings(), context)

        header = grid.rows_of(RowStyle.COLUMN_HEADER)[0]
        assert header.cells[0] == "No. Anggota"
        assert len(grid.rows_of(RowStyle.ITEM)) == 3
        total = grid.rows_of(RowStyle.GRAND_TOTAL)[0]
        assert total.cells[3] == 1700000
        assert total.cells[7] == 2100000
        assert grid.column_count == len(header.cells)


class TestXlsxOutput:
    def test_workbook_contents(self, context):
        grid = _grid(balance_sheet(), context, orientation="landscape")
        wb = load_workbook(BytesIO(grid_to_xlsx(grid)))
        ws = wb.active

        assert ws["A1"].value == "Koperasi Sejahtera Bersama"
        assert ws.title == "Neraca"
        assert ws.page_setup.orientation == "landscape"

        total_row = grid.rows.index(grid.rows_of(RowStyle.CATEGORY_TOTAL)[0]) + 1
        cell = ws.cell(row=total_row, column=3)
        assert cell.value == 1000000
        assert cell.number_format == INTEGER_FORMAT
        assert cell.font.bold

    def test_whole_rounds_half_up(self):
        assert whole(Decimal("0.5")) == 1
        assert whole(Decimal("-1.5")) == -2
        assert whole(Decimal("2.49")) == 2


class TestShuLayout:
    def test_net_shu_falls_back_to_amount_less_tax(self, context):
        report = make_report(ReportType.SHU_DISTRIBUTION, [
            item("A001", "Budi Santoso", "regular", "1000000", subcategory="paid",
                 attributes={"tax_deduction": Decimal("100000")}),
            item("A002", "Siti Aminah", "founder", "500000", subcategory="pending",
                 attributes={"tax_deduction": Decimal("50000"), "net_shu_received": Decimal("460000")}),
        ])
        grid = _grid(report, context)
        rows = grid.rows_of(RowStyle.ITEM)

        assert rows[0].cells[3:] == (1000000, 100000, 900000, "Paid")
        assert rows[1].cells[3:] == (500000, 50000, 460000, "Pending")
        assert grid.rows_of(RowStyle.GRAND_TOTAL)[0].cells[5] == 1360000


# ===== DOCUMENT =====

def _build(report, context, comparison=None, **options):
    return build_document(report, aggregate(report), comparison, ExportOptions(**options), context)


class TestDocumentModel:
    def test_balance_sheet_document(self, context):
        model = _build(balance_sheet(), context)

        assert model.title == "NERACA"
        assert model.cooperative_name == "Koperasi Sejahtera Bersama"
        assert model.generated_at == "Dibuat pada: 15/03/2024 10:30:45"
        headings = [block.text for block in model.blocks if isinstance(block, Heading)]
        assert headings[:3] == ["ASET", "KEWAJIBAN", "EKUITAS"]
        assert "RINGKASAN" in headings
        assert not any(isinstance(block, Note) for block in model.blocks)

    def test_unbalanced_sheet_adds_note(self, context):
        model = _build(balance_sheet(equity="500000"), context)
        notes = [block.text for block in model.blocks if isinstance(block, Note)]
        assert notes == ["Neraca tidak seimbang, selisih 100.000"]

    def test_category_table_rows(self, context):
        model = _build(balance_sheet(), context)
        asset_table = model.tables()[0]

        assert asset_table.headers == ("Kode", "Uraian", "2023", "2022")
        assert asset_table.rows[0] == ("1101", "Kas", "1.000.000", "900.000")
        assert asset_table.rows[-1][1] == "Total Aset"
        assert asset_table.emphasis == (1,)

    def test_types_without_template_use_generic(self, context):
        assert ReportType.EQUITY_CHANGES not in TEMPLATES
        report = make_report(ReportType.EQUITY_CHANGES, [
            item("E1", "Saldo awal", "opening_balance", "100"),
            item("E4", "Saldo akhir", "closing_balance", "150"),
        ])
        model = _build(report, context)

        headings = [block.text for block in model.blocks if isinstance(block, Heading)]
        assert headings[:4] == ["SALDO AWAL", "PENAMBAHAN", "PENGURANGAN", "SALDO AKHIR"]
        assert "RINGKASAN" in headings

    def test_tabular_document(self, context):
        model = _build(member_savings(), context)
        table = model.tables()[0]
        assert table.headers[0] == "No. Anggota"
        assert len(table.rows) == 4  # three members and the total row
        assert table.emphasis == (3,)

    def test_comparison_table(self, context):
        comparison = {2022: {"total_revenue": Decimal("500000"), "total_expenses": Decimal("250000"),
                             "net_income": Decimal("250000")}}
        model = _build(income_statement(), context, comparison=comparison, include_comparison=True)

        trend = model.tables()[-1]
        assert trend.headers == ("Keterangan", "2022", "2023")
        assert trend.rows[-1] == ("Laba (Rugi) Bersih", "250.000", "300.000")

    def test_comparison_without_prior_years(self, context):
        model = _build(income_statement(), context, comparison={}, include_comparison=True)
        assert isinstance(model.blocks[-1], Note)

    def test_chart_descriptors(self, context):
        comparison = {2022: {"total_assets": Decimal("900000"), "total_liabilities": Decimal("300000"),
                             "total_equity": Decimal("600000")}}
        model = _build(balance_sheet(), context, comparison=comparison, include_charts=True)

        charts = model.charts()
        assert [chart.kind for chart in charts] == ["pie", "line"]
        assert charts[0].labels == ("ASET", "KEWAJIBAN", "EKUITAS")
        assert charts[0].series["Total"] == (Decimal("1000000"), Decimal("400000"), Decimal("600000"))
        assert charts[1].labels == ("2022", "2023")

    def test_charts_omitted_by_default(self, context):
        assert _build(balance_sheet(), context).charts() == []

    def test_unknown_chart_kind_rejected(self):
        with pytest.raises(ValueError):
            ChartBlock(kind="radar", title="x", labels=())


class TestFormatting:
    def test_format_amount(self):
        assert format_amount(Decimal("1234567.6")) == "1.234.568"
        assert format_amount(Decimal("-1500")) == "(1.500)"
        assert format_amount(Decimal("0")) == "0"

    def test_known_fonts(self):
        assert resolve_font("Arial") == ("Helvetica", "Helvetica-Bold")
        assert resolve_font("Times New Roman") == ("Times-Roman", "Times-Bold")

    def test_unknown_font_falls_back(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert resolve_font("Comic Sans") == ("Helvetica", "Helvetica-Bold")
        assert "Comic Sans" in caplog.text

    def test_page_size_orientation(self):
        width, height = _page_size(ExportOptions(paper_size="a4", orientation="landscape"))
        assert width > height
        width, height = _page_size(ExportOptions(paper_size="LETTER", orientation="portrait"))
        assert width < height


class TestPdfOutput:
    def test_render_document(self, context):
        report = balance_sheet(cooperative_name="Koperasi Tani & Nelayan")
        pdf = render_document(report, aggregate(report), None, ExportOptions(font="Courier"), context)
        assert pdf.startswith(b"%PDF")

    def test_render_combined_document(self, context):
        reports = [balance_sheet(), income_statement(), member_savings()]
        entries = [(report, aggregate(report), None) for report in reports]
        pdf = render_combined_document(entries, ExportOptions(), context)
        assert pdf.startswith(b"%PDF")

    def test_combined_requires_reports(self, context):
        with pytest.raises(RenderFailure):
            render_combined_document([], ExportOptions(), context)


# ===== NAMING =====

class TestSlugs:
    def test_cooperative_slug(self):
        assert cooperative_slug("Koperasi Sejahtera Bersama") == "Koperasi-Sejahtera-Bersama"
        assert cooperative_slug("  KSP  Maju/Jaya & Co. ") == "KSP-MajuJaya--Co"

    def test_empty_slug_falls_back(self):
        assert cooperative_slug("../") == "koperasi"

    def test_report_type_slug(self):
        assert report_type_slug(ReportType.NPL_RECEIVABLES) == "npl-receivables"


class TestFilenameAllocator:
    def test_report_filename(self):
        name = FilenameAllocator().report_filename(balance_sheet(), ExportFormat.DOCUMENT, FIXED_NOW)
        assert name == "Koperasi-Sejahtera-Bersama_balance-sheet_2023_2024-03-15_10-30-45.pdf"

    def test_spreadsheet_extension(self):
        name = FilenameAllocator().report_filename(balance_sheet(), ExportFormat.SPREADSHEET, FIXED_NOW)
        assert name.endswith(".xlsx")

    def test_unique_suffix(self):
        allocator = FilenameAllocator(unique_suffix=True)
        first = allocator.report_filename(balance_sheet(), ExportFormat.DOCUMENT, FIXED_NOW)
        second = allocator.report_filename(balance_sheet(), ExportFormat.DOCUMENT, FIXED_NOW)

        assert re.match(r"^.+_2024-03-15_10-30-45_[0-9a-f]{8}\.pdf$", first)
        assert first != second

    def test_archive_names(self):
        allocator = FilenameAllocator()
        assert allocator.cooperative_year_zip("Koperasi Maju", 2023, FIXED_NOW) == \
            "Koperasi-Maju_laporan_keuangan_2023_2024-03-15_10-30-45.zip"
        assert allocator.date_range_zip(date(2023, 1, 1), date(2023, 12, 31), FIXED_NOW) == \
            "laporan_keuangan_2023-01-01_to_2023-12-31_2024-03-15_10-30-45.zip"
        assert allocator.batch_zip(ExportFormat.SPREADSHEET, FIXED_NOW) == \
            "batch_export_excel_2024-03-15_10-30-45.zip"

    def test_combined_filename(self):
        name = FilenameAllocator().combined_filename(balance_sheet(), FIXED_NOW)
        assert name == "Koperasi-Sejahtera-Bersama_combined_reports_2023_2024-03-15_10-30-45.pdf"

    def test_directories(self):
        assert FilenameAllocator.directory(ExportFormat.DOCUMENT, FIXED_NOW) == "exports/pdf/2024/03"
        assert FilenameAllocator.directory(ExportFormat.SPREADSHEET, FIXED_NOW) == "exports/excel/2024/03"
        assert FilenameAllocator.directory(ExportFormat.DOCUMENT, FIXED_NOW, "batch_export_ab") == \
            "exports/batch/batch_export_ab"
        assert FilenameAllocator.zip_directory(FIXED_NOW) == "exports/zip/2024/03"

    def test_join(self):
        assert join("exports/pdf/2024/03/", "a.pdf") == "exports/pdf/2024/03/a.pdf"

    def test_forced_unique_suffix(self):
        name = FilenameAllocator().report_filename(balance_sheet(), ExportFormat.DOCUMENT, FIXED_NOW, unique=True)
        assert re.match(r"^.+_2024-03-15_10-30-45_[0-9a-f]{8}\.pdf$", name)


class TestIssuedNames:
    def test_repeats_get_a_counter(self):
        issued = IssuedNames()
        assert issued.claim("laporan.pdf") == "laporan.pdf"
        assert issued.claim("laporan.pdf") == "laporan_2.pdf"
        assert issued.claim("laporan.pdf") == "laporan_3.pdf"
        assert issued.claim("neraca.xlsx") == "neraca.xlsx"

    def test_counter_skips_names_already_claimed(self):
        issued = IssuedNames()
        issued.claim("laporan_2.pdf")
        issued.claim("laporan.pdf")
        assert issued.claim("laporan.pdf") == "laporan_3.pdf"


# ===== STORAGE =====

class FakeResponse:
    def __init__(self, data):
        self.data = data
        self.closed = False
        self.released = False

    def read(self):
        return self.data

    def close(self):
        self.closed = True

    def release_conn(self):
        self.released = True


class FakeMinio:
    def __init__(self, buckets=()):
        self.buckets = set(buckets)
        self.objects = {}
        self.responses = []
        self.list_calls = []

    def bucket_exists(self, bucket_name):
        return bucket_name in self.buckets

    def make_bucket(self, bucket_name):
        self.buckets.add(bucket_name)

    def put_object(self, bucket_name, object_name, data, length, content_type):
        self.objects[object_name] = (data.read(), content_type)

    def get_object(self, bucket_name, object_name):
        response = FakeResponse(self.objects[object_name][0])
        self.responses.append(response)
        return response

    def list_objects(self, bucket_name, prefix, recursive):
        self.list_calls.append((prefix, recursive))
        entries = [
            SimpleNamespace(object_name=name, size=len(data), last_modified=FIXED_NOW, is_dir=False)
            for name, (data, _) in self.objects.items() if name.startswith(prefix)
        ]
        entries.append(SimpleNamespace(object_name=prefix + "sub/", size=None, last_modified=None, is_dir=True))
        return iter(entries)

    def remove_object(self, bucket_name, object_name):
        self.objects.pop(object_name, None)

    def presigned_get_object(self, bucket_name, object_name, expires):
        return f"http://minio:9000/{bucket_name}/{object_name}?expires={int(expires.total_seconds())}"


class TestMinIOArtifactStore:
    def test_creates_missing_bucket(self):
        client = FakeMinio()
        MinIOArtifactStore(client=client, bucket_name="laporan")
        assert "laporan" in client.buckets

    def test_put_get_and_release(self):
        client = FakeMinio(buckets={"laporan"})
        store = MinIOArtifactStore(client=client, bucket_name="laporan")

        size = store.put("exports/pdf/2024/03/a.pdf", b"%PDF", content_type="application/pdf")

        assert size == 4
        assert client.objects["exports/pdf/2024/03/a.pdf"] == (b"%PDF", "application/pdf")
        assert store.get("exports/pdf/2024/03/a.pdf") == b"%PDF"
        assert client.responses[0].closed and client.responses[0].released

    def test_list_is_recursive_and_skips_directories(self):
        client = FakeMinio(buckets={"laporan"})
        store = MinIOArtifactStore(client=client, bucket_name="laporan")
        store.put("exports/pdf/2024/03/a.pdf", b"12")

        objects = store.list("exports/pdf")

        assert [obj.path for obj in objects] == ["exports/pdf/2024/03/a.pdf"]
        assert objects[0].size == 2
        assert client.list_calls == [("exports/pdf/", True)]

    def test_delete(self):
        client = FakeMinio(buckets={"laporan"})
        store = MinIOArtifactStore(client=client, bucket_name="laporan")
        store.put("exports/zip/2024/03/a.zip", b"PK")
        store.delete("exports/zip/2024/03/a.zip")
        assert client.objects == {}

    def test_presigned_url(self):
        store = MinIOArtifactStore(client=FakeMinio(buckets={"laporan"}), bucket_name="laporan")
        assert store.url("exports/zip/a.zip", expires=timedelta(minutes=5)) == \
            "http://minio:9000/laporan/exports/zip/a.zip?expires=300"


# ===== BUNDLER =====

def _artifact(store, path, data=b"%PDF-1.4 test"):
    store.put(path, data)
    return ExportArtifact(
        filename=path.rsplit("/", 1)[-1],
        storage_path=path,
        size=len(data),
        created_at=FIXED_NOW,
        format=ExportFormat.DOCUMENT
    )


class TestArchiveBundler:
    def test_bundle_contains_every_artifact(self, store, context):
        artifacts = [
            _artifact(store, "exports/pdf/2024/03/neraca.pdf", b"one"),
            _artifact(store, "exports/pdf/2024/03/laba-rugi.pdf", b"two"),
        ]
        archive = ArchiveBundler(store).bundle(artifacts, "laporan.zip", context)

        assert archive.storage_path == "exports/zip/2024/03/laporan.zip"
        assert archive.file_count == 2
        assert archive.download_url == "https://files.example.test/exports/zip/2024/03/laporan.zip"

        with zipfile.ZipFile(io.BytesIO(store.get(archive.storage_path))) as zf:
            assert zf.namelist() == ["neraca.pdf", "laba-rugi.pdf"]
            assert zf.read("laba-rugi.pdf") == b"two"
        assert archive.size == len(store.get(archive.storage_path))

    def test_duplicate_entry_names_are_renamed(self, store, context):
        artifacts = [
            _artifact(store, "exports/batch/batch_export_a1/neraca.pdf", b"a"),
            _artifact(store, "exports/batch/batch_export_b2/neraca.pdf", b"b"),
        ]
        archive = ArchiveBundler(store).bundle(artifacts, "laporan.zip", context)
        assert archive.entries == ("neraca.pdf", "neraca_2.pdf")

    def test_unreadable_artifact_fails(self, store, context):
        artifact = _artifact(store, "exports/pdf/2024/03/neraca.pdf")
        store.fail_get.add(artifact.storage_path)

        with pytest.raises(ZipFailure):
            ArchiveBundler(store).bundle([artifact], "laporan.zip", context)
        assert not store.exists("exports/zip/2024/03/laporan.zip")

    def test_write_failure(self, store, context):
        artifact = _artifact(store, "exports/pdf/2024/03/neraca.pdf")
        store.fail_put = True
        with pytest.raises(ZipFailure):
            ArchiveBundler(store).bundle([artifact], "laporan.zip", context)

    def test_nothing_to_bundle(self, store, context):
        with pytest.raises(ZipFailure):
            ArchiveBundler(store).bundle([], "laporan.zip", context)


# ===== SINGLE EXPORTS =====

class TestExportReport:
    def test_pdf_export_is_stored_and_audited(self, export_service, provider, store, audit_sink, context):
        report = balance_sheet()
        provider.add(report)

        artifact = export_service.export_report(report.id, ExportOptions(), context)

        assert artifact.storage_path == (
            "exports/pdf/2024/03/Koperasi-Sejahtera-Bersama_balance-sheet_2023_2024-03-15_10-30-45.pdf"
        )
        assert artifact.format == ExportFormat.DOCUMENT
        assert store.get(artifact.storage_path).startswith(b"%PDF")
        assert artifact.size == len(store.get(artifact.storage_path))
        assert artifact.created_at == context.now()

        event = audit_sink.events[-1]
        assert event.action == "report_exported_pdf"
        assert event.actor_id == "user-42"
        assert event.properties["report_id"] == str(report.id)

    def test_spreadsheet_export(self, export_service, provider, store, audit_sink, context):
        report = income_statement()
        provider.add(report)

        artifact = export_service.export_report(report.id, ExportOptions(format="excel"), context)

        assert artifact.storage_path.startswith("exports/excel/2024/03/")
        assert artifact.filename.endswith(".xlsx")
        wb = load_workbook(io.BytesIO(store.get(artifact.storage_path)))
        assert wb.active["A2"].value == "LAPORAN LABA RUGI"
        assert audit_sink.actions() == ["report_exported_excel"]

    def test_batch_id_routes_to_batch_directory(self, export_service, provider, context):
        report = balance_sheet()
        provider.add(report)
        options = ExportOptions(batch_id="batch_export_0a1b")

        artifact = export_service.export_report(report.id, options, context)
        assert artifact.storage_path.startswith("exports/batch/batch_export_0a1b/")

    def test_comparison_uses_earlier_approved_reports(self, export_service, provider, store, context):
        report = balance_sheet(year=2023)
        provider.add(report, balance_sheet(year=2022))

        artifact = export_service.export_report(
            report.id, ExportOptions(include_comparison=True, include_charts=True), context
        )
        assert store.get(artifact.storage_path).startswith(b"%PDF")

    def test_unknown_report(self, export_service, audit_sink, context):
        with pytest.raises(ReportNotFound):
            export_service.export_report(uuid4(), ExportOptions(), context)
        assert audit_sink.events == []

    def test_invalid_line_item_is_not_stored(self, export_service, provider, store, context):
        report = make_report(ReportType.BALANCE_SHEET, [item("9", "Lainnya", "revenue", "1")])
        provider.add(report)

        with pytest.raises(InvalidLineItem):
            export_service.export_report(report.id, ExportOptions(), context)
        assert store.objects == {}

    def test_storage_failure_propagates(self, export_service, provider, store, audit_sink, context):
        report = balance_sheet()
        provider.add(report)
        store.fail_put = True

        with pytest.raises(StorageFailure):
            export_service.export_report(report.id, ExportOptions(), context)
        assert audit_sink.events == []


class TestCombinedExport:
    def test_reports_in_request_order(self, export_service, provider, store, audit_sink, context):
        first, second = income_statement(), balance_sheet()
        provider.add(first, second)

        artifact = export_service.export_multiple_reports(
            [first.id, second.id, uuid4()], ExportOptions(format="spreadsheet"), context
        )

        assert artifact.format == ExportFormat.DOCUMENT
        assert artifact.filename.startswith("Koperasi-Sejahtera-Bersama_combined_reports_2023_")
        assert store.get(artifact.storage_path).startswith(b"%PDF")
        event = audit_sink.events[-1]
        assert event.action == "multiple_reports_exported_pdf"
        assert event.properties["report_ids"] == [str(first.id), str(second.id)]

    def test_no_known_reports(self, export_service, context):
        with pytest.raises(ReportNotFound):
            export_service.export_multiple_reports([uuid4()], ExportOptions(), context)


# ===== BATCH EXPORTS =====

def _broken_report():
    return make_report(ReportType.INCOME_STATEMENT, [item("1101", "Kas", "asset", "10")])


class TestExportBatch:
    def test_partial_failure_keeps_input_order(self, batch_service, provider, audit_sink, context):
        good_1, broken, good_2 = balance_sheet(), _broken_report(), member_savings()
        provider.add(good_1, broken, good_2)
        ids = [good_1.id, broken.id, good_2.id]

        result = batch_service.export_batch(ids, ExportOptions(), context)

        assert [outcome.report_id for outcome in result.outcomes] == ids
        assert [outcome.success for outcome in result.outcomes] == [True, False, True]
        assert result.exported_count == 2
        assert result.error_count == 1
        assert result.success
        assert result.errors[0].error_kind == "invalid_line_item"
        assert result.archive is None

        assert audit_sink.actions() == ["report_exported_pdf", "report_exported_pdf", "batch_export_completed"]
        completed = audit_sink.events[-1]
        assert completed.properties["exported_count"] == 2
        assert completed.properties["error_count"] == 1

    def test_unresolved_ids_become_failed_outcomes(self, batch_service, provider, context):
        report = balance_sheet()
        provider.add(report)
        missing = uuid4()

        result = batch_service.export_batch([missing, report.id], ExportOptions(), context)

        assert result.outcomes[0].report_id == missing
        assert result.outcomes[0].error_kind == "not_found"
        assert result.outcomes[1].success

    def test_archive_holds_only_successes(self, batch_service, provider, store, context):
        good, broken = balance_sheet(), _broken_report()
        provider.add(good, broken)

        result = batch_service.export_batch(
            [good.id, broken.id], ExportOptions(create_zip=True, zip_name="hasil"), context
        )

        assert result.archive.filename == "hasil.zip"
        assert result.archive.file_count == 1
        with zipfile.ZipFile(io.BytesIO(store.get(result.archive.storage_path))) as zf:
            assert zf.namelist() == [result.exported_artifacts[0].filename]

    def test_default_archive_name(self, batch_service, provider, context):
        report = balance_sheet()
        provider.add(report)

        result = batch_service.export_batch([report.id], ExportOptions(format="xlsx", create_zip=True), context)
        assert result.archive.filename == "batch_export_excel_2024-03-15_10-30-45.zip"

    def test_no_archive_when_everything_failed(self, batch_service, provider, context):
        broken = _broken_report()
        provider.add(broken)

        result = batch_service.export_batch([broken.id], ExportOptions(create_zip=True), context)
        assert result.archive is None
        assert result.archive_error is None
        assert not result.success

    def test_archive_failure_keeps_exports(self, batch_service, provider, store, context):
        report = balance_sheet()
        provider.add(report)
        store.fail_get.add(
            "exports/pdf/2024/03/Koperasi-Sejahtera-Bersama_balance-sheet_2023_2024-03-15_10-30-45.pdf"
        )

        result = batch_service.export_batch([report.id], ExportOptions(create_zip=True), context)

        assert result.exported_count == 1
        assert result.archive is None
        assert "Could not create archive" in result.archive_error

    def test_storage_failure_is_reported_per_report(self, batch_service, provider, store, context):
        report = balance_sheet()
        provider.add(report)
        store.fail_put = True

        result = batch_service.export_batch([report.id], ExportOptions(), context)
        assert result.outcomes[0].error_kind == "storage_failure"

    def test_nothing_resolves(self, batch_service, context):
        with pytest.raises(ReportNotFound):
            batch_service.export_batch([uuid4()], ExportOptions(), context)

    def test_provider_failure_propagates(self, batch_service, provider, context):
        provider.fail = True
        with pytest.raises(StorageFailure):
            batch_service.export_batch([uuid4()], ExportOptions(), context)

    def test_parallel_workers_keep_order(self, export_service, provider, store, audit_sink, context):
        reports = [balance_sheet(), income_statement(), _broken_report(), member_savings()]
        provider.add(*reports)
        service = BatchExportService(export_service, store, audit_sink, max_workers=4)

        result = service.export_batch([report.id for report in reports], ExportOptions(), context)

        assert [outcome.report_id for outcome in result.outcomes] == [report.id for report in reports]
        assert [outcome.success for outcome in result.outcomes] == [True, True, False, True]

    def test_same_second_reports_get_distinct_names(self, batch_service, provider, store, context):
        first, second = balance_sheet(assets="1000000"), balance_sheet(assets="2500000", equity="2100000")
        provider.add(first, second)

        result = batch_service.export_batch([first.id, second.id], ExportOptions(create_zip=True), context)

        paths = [outcome.artifact.storage_path for outcome in result.outcomes]
        assert paths[0] == "exports/pdf/2024/03/Koperasi-Sejahtera-Bersama_balance-sheet_2023_2024-03-15_10-30-45.pdf"
        assert paths[1] == "exports/pdf/2024/03/Koperasi-Sejahtera-Bersama_balance-sheet_2023_2024-03-15_10-30-45_2.pdf"
        assert store.get(paths[0]) != store.get(paths[1])
        with zipfile.ZipFile(io.BytesIO(store.get(result.archive.storage_path))) as zf:
            assert zf.namelist() == [outcome.artifact.filename for outcome in result.outcomes]
            assert zf.read(zf.namelist()[0]) == store.get(paths[0])
            assert zf.read(zf.namelist()[1]) == store.get(paths[1])

    def test_parallel_workers_never_share_a_path(self, export_service, provider, store, audit_sink, context):
        reports = [balance_sheet(assets=str(1000000 + i)) for i in range(6)]
        provider.add(*reports)
        service = BatchExportService(export_service, store, audit_sink, max_workers=4)

        result = service.export_batch([report.id for report in reports], ExportOptions(create_zip=True), context)

        paths = {outcome.artifact.storage_path for outcome in result.outcomes}
        assert len(paths) == 6
        assert result.archive.file_count == 6


class TestCooperativeYear:
    def test_exports_approved_reports_into_zip(self, batch_service, provider, context):
        approved = [balance_sheet(year=2023), income_statement(year=2023)]
        provider.add(
            *approved,
            balance_sheet(year=2023, status=ReportStatus.DRAFT),
            balance_sheet(year=2022),
            balance_sheet(year=2023, cooperative_id=uuid4()),
        )

        result = batch_service.export_cooperative_year(COOPERATIVE_ID, 2023, ExportOptions(), context)

        assert [outcome.report_id for outcome in result.outcomes] == [report.id for report in approved]
        assert result.archive.filename == "Koperasi-Sejahtera-Bersama_laporan_keuangan_2023_2024-03-15_10-30-45.zip"
        assert result.archive.file_count == 2

    def test_no_approved_reports(self, batch_service, provider, context):
        provider.add(balance_sheet(status=ReportStatus.SUBMITTED))
        with pytest.raises(ReportNotFound):
            batch_service.export_cooperative_year(COOPERATIVE_ID, 2023, ExportOptions(), context)


class TestDateRange:
    def test_bounds_are_inclusive(self, batch_service, provider, context):
        first_day = balance_sheet(created_at=datetime(2023, 1, 1, 0, 0, tzinfo=timezone.utc))
        last_day = income_statement(created_at=datetime(2023, 1, 31, 23, 59, 59, tzinfo=timezone.utc))
        outside = balance_sheet(created_at=datetime(2023, 2, 1, 0, 0, tzinfo=timezone.utc))
        draft = balance_sheet(status=ReportStatus.DRAFT, created_at=datetime(2023, 1, 15, tzinfo=timezone.utc))
        provider.add(first_day, last_day, outside, draft)

        result = batch_service.export_by_date_range(date(2023, 1, 1), date(2023, 1, 31), ExportOptions(), context)

        assert [outcome.report_id for outcome in result.outcomes] == [first_day.id, last_day.id]
        assert result.archive.filename == "laporan_keuangan_2023-01-01_to_2023-01-31_2024-03-15_10-30-45.zip"

    def test_empty_range(self, batch_service, context):
        with pytest.raises(ReportNotFound):
            batch_service.export_by_date_range(date(2023, 1, 1), date(2023, 1, 31), ExportOptions(), context)


# ===== SCHEDULED BATCHES =====

def _schedule(batch_service, provider, context, *reports, **options):
    provider.add(*reports)
    return batch_service.schedule_batch_export([report.id for report in reports], ExportOptions(**options), context)


def _run_jobs(batch_service, job_queue, context):
    for report_id, options, _ in job_queue.jobs:
        batch_service.run_scheduled_export(report_id, ExportOptions(**options), context)


class TestScheduleBatchExport:
    def test_enqueues_one_job_per_report(self, batch_service, provider, job_queue, store, audit_sink, context):
        reports = [balance_sheet(), income_statement()]
        scheduled = _schedule(batch_service, provider, context, *reports, create_zip=True)

        assert BATCH_ID_PATTERN.match(scheduled.batch_id)
        assert scheduled.scheduled_count == 2
        assert [job[0] for job in job_queue.jobs] == [report.id for report in reports]
        options = job_queue.jobs[0][1]
        assert options["batch_id"] == scheduled.batch_id
        assert options["create_zip"] is False
        assert job_queue.jobs[0][2] == "user-42"

        manifest = json.loads(store.get(f"exports/batch/{scheduled.batch_id}/_manifest.json"))
        assert manifest["expected_count"] == 2
        assert audit_sink.actions() == ["batch_export_scheduled"]

    def test_batch_ids_are_unique(self, batch_service, provider, context):
        report = balance_sheet()
        first = _schedule(batch_service, provider, context, report)
        second = batch_service.schedule_batch_export([report.id], ExportOptions(), context)
        assert first.batch_id != second.batch_id

    def test_requires_ids(self, batch_service, context):
        with pytest.raises(ReportNotFound):
            batch_service.schedule_batch_export([], ExportOptions(), context)

    def test_requires_queue(self, export_service, store, audit_sink, context):
        service = BatchExportService(export_service, store, audit_sink)
        with pytest.raises(RuntimeError):
            service.schedule_batch_export([uuid4()], ExportOptions(), context)

    def test_repeated_ids_are_queued_once(self, batch_service, provider, job_queue, store, context):
        first, second = balance_sheet(), income_statement()
        provider.add(first, second)

        scheduled = batch_service.schedule_batch_export(
            [first.id, second.id, first.id], ExportOptions(), context
        )

        assert scheduled.scheduled_count == 2
        assert [job[0] for job in job_queue.jobs] == [first.id, second.id]
        manifest = json.loads(store.get(f"exports/batch/{scheduled.batch_id}/_manifest.json"))
        assert manifest["expected_count"] == 2
        assert manifest["report_ids"] == [str(first.id), str(second.id)]

    def test_refused_jobs_are_recorded_as_failed(self, batch_service, provider, job_queue, store, audit_sink,
                                                 context):
        first, second = balance_sheet(), income_statement()
        provider.add(first, second)
        job_queue.fail_ids.add(second.id)

        scheduled = batch_service.schedule_batch_export([first.id, second.id], ExportOptions(), context)

        assert scheduled.scheduled_count == 1
        assert scheduled.rejected_count == 1
        assert [job[0] for job in job_queue.jobs] == [first.id]
        marker = json.loads(store.get(f"exports/batch/{scheduled.batch_id}/_failed/{second.id}.json"))
        assert marker["error_kind"] == "queue_failure"
        assert audit_sink.events[-1].properties["rejected_count"] == 1

        _run_jobs(batch_service, job_queue, context)
        status = batch_service.get_batch_status(scheduled.batch_id)
        assert status.status == BatchStatusValue.COMPLETED
        assert status.completed_files == 1
        assert status.failed_files == 1

    def test_refused_batch_leaves_nothing_behind(self, batch_service, provider, job_queue, store, audit_sink,
                                                 context):
        report = balance_sheet()
        provider.add(report)
        job_queue.fail = True

        with pytest.raises(QueueFailure):
            batch_service.schedule_batch_export([report.id], ExportOptions(), context)

        assert store.objects == {}
        assert audit_sink.events == []


class TestBatchStatus:
    def test_processing_until_every_job_ran(self, batch_service, provider, job_queue, context):
        scheduled = _schedule(batch_service, provider, context, balance_sheet(), income_statement())

        status = batch_service.get_batch_status(scheduled.batch_id)
        assert status.status == BatchStatusValue.PROCESSING
        assert status.completed_files == 0
        assert status.expected_files == 2

    def test_completed_after_all_jobs(self, batch_service, provider, job_queue, context):
        scheduled = _schedule(batch_service, provider, context, balance_sheet(), income_statement(), format="xlsx")
        _run_jobs(batch_service, job_queue, context)

        status = batch_service.get_batch_status(scheduled.batch_id)

        assert status.status == BatchStatusValue.COMPLETED
        assert status.completed_files == 2
        assert all(f.filename.endswith(".xlsx") for f in status.files)
        assert all(f.filepath.startswith(f"exports/batch/{scheduled.batch_id}/") for f in status.files)
        assert status.files[0].download_url.startswith("https://files.example.test/")

    def test_failed_jobs_count_towards_completion(self, batch_service, provider, job_queue, store, context):
        report = balance_sheet()
        provider.add(report)
        missing = uuid4()
        scheduled = batch_service.schedule_batch_export([report.id, missing], ExportOptions(), context)

        _run_jobs(batch_service, job_queue, context)
        status = batch_service.get_batch_status(scheduled.batch_id)

        assert status.status == BatchStatusValue.COMPLETED
        assert status.completed_files == 1
        assert status.failed_files == 1
        marker = json.loads(store.get(f"exports/batch/{scheduled.batch_id}/_failed/{missing}.json"))
        assert marker["error_kind"] == "not_found"

    def test_unknown_batch(self, batch_service):
        status = batch_service.get_batch_status("batch_export_deadbeef")
        assert status.status == BatchStatusValue.ERROR
        assert status.error == "Batch not found"

    def test_invalid_batch_id(self, batch_service):
        status = batch_service.get_batch_status("../../pdf")
        assert status.status == BatchStatusValue.ERROR
        assert status.error == "Invalid batch id"

    def test_storage_failure_is_an_error_status(self, batch_service, provider, store, context):
        scheduled = _schedule(batch_service, provider, context, balance_sheet())
        store.fail_list = True

        status = batch_service.get_batch_status(scheduled.batch_id)
        assert status.status == BatchStatusValue.ERROR

    def test_repeated_ids_complete(self, batch_service, provider, job_queue, context):
        report = balance_sheet()
        provider.add(report)
        scheduled = batch_service.schedule_batch_export([report.id, report.id], ExportOptions(), context)

        _run_jobs(batch_service, job_queue, context)
        status = batch_service.get_batch_status(scheduled.batch_id)

        assert status.status == BatchStatusValue.COMPLETED
        assert status.expected_files == 1
        assert status.completed_files == 1

    def test_same_type_reports_keep_both_files(self, batch_service, provider, job_queue, store, context):
        first, second = balance_sheet(assets="1000000"), balance_sheet(assets="2500000", equity="2100000")
        scheduled = _schedule(batch_service, provider, context, first, second)

        _run_jobs(batch_service, job_queue, context)
        status = batch_service.get_batch_status(scheduled.batch_id)

        assert status.status == BatchStatusValue.COMPLETED
        assert status.completed_files == 2
        assert len({f.filepath for f in status.files}) == 2
        assert store.get(status.files[0].filepath) != store.get(status.files[1].filepath)

    def test_redelivered_job_counts_once(self, batch_service, provider, job_queue, context):
        report = balance_sheet()
        scheduled = _schedule(batch_service, provider, context, report)
        provider.fail = True
        _run_jobs(batch_service, job_queue, context)
        provider.fail = False

        _run_jobs(batch_service, job_queue, context)
        _run_jobs(batch_service, job_queue, context)
        status = batch_service.get_batch_status(scheduled.batch_id)

        assert status.status == BatchStatusValue.COMPLETED
        assert status.completed_files == 1
        assert status.failed_files == 0
        assert status.expected_files == 1


class TestRunScheduledExport:
    def test_successful_job(self, batch_service, provider, context):
        report = balance_sheet()
        provider.add(report)

        outcome = batch_service.run_scheduled_export(
            report.id, ExportOptions(batch_id="batch_export_0f"), context
        )
        assert outcome.success
        assert outcome.artifact.storage_path.startswith("exports/batch/batch_export_0f/")

    def test_failure_without_batch_leaves_no_marker(self, batch_service, store, context):
        outcome = batch_service.run_scheduled_export(uuid4(), ExportOptions(), context)
        assert not outcome.success
        assert store.objects == {}

    def test_success_leaves_done_marker(self, batch_service, provider, store, context):
        report = balance_sheet()
        provider.add(report)

        outcome = batch_service.run_scheduled_export(report.id, ExportOptions(batch_id="batch_export_0f"), context)

        marker = json.loads(store.get(f"exports/batch/batch_export_0f/_done/{report.id}.json"))
        assert marker["success"] is True
        assert marker["storage_path"] == outcome.artifact.storage_path

    def test_unrecorded_success_is_a_failure(self, batch_service, provider, store, context):
        report = balance_sheet()
        provider.add(report)
        store.fail_put_prefix = "exports/batch/batch_export_0f/_done/"

        outcome = batch_service.run_scheduled_export(report.id, ExportOptions(batch_id="batch_export_0f"), context)

        assert not outcome.success
        assert outcome.error_kind == "storage_failure"
        assert store.exists(f"exports/batch/batch_export_0f/_failed/{report.id}.json")


# ===== RETENTION =====

def _stored(store, path, age_days, size=10):
    store.put(path, b"x" * size)
    store.set_modified(path, FIXED_NOW - timedelta(days=age_days))


class TestCleanup:
    def test_deletes_only_files_older_than_cutoff(self, sweeper, store, audit_sink, context):
        _stored(store, "exports/pdf/2024/01/old.pdf", 31, size=100)
        _stored(store, "exports/zip/2024/01/old.zip", 45, size=50)
        _stored(store, "exports/excel/2024/02/recent.xlsx", 29)
        _stored(store, "exports/batch/batch_export_aa/_manifest.json", 10)
        _stored(store, "uploads/other.pdf", 400)

        result = sweeper.cleanup(30, context)

        assert result.success
        assert result.deleted_files == 2
        assert result.deleted_size == 150
        assert result.cutoff_date == date(2024, 2, 14)
        assert sorted(store.objects) == [
            "exports/batch/batch_export_aa/_manifest.json",
            "exports/excel/2024/02/recent.xlsx",
            "uploads/other.pdf",
        ]
        assert audit_sink.actions() == ["export_files_cleaned"]
        assert audit_sink.events[0].properties["deleted_files"] == 2

    def test_file_exactly_at_cutoff_is_kept(self, sweeper, store, context):
        _stored(store, "exports/pdf/2024/02/edge.pdf", 30)
        assert sweeper.cleanup(30, context).deleted_files == 0

    def test_default_retention(self, sweeper, store, context):
        _stored(store, "exports/pdf/2023/01/ancient.pdf", settings.EXPORT_RETENTION_DAYS + 1)
        _stored(store, "exports/pdf/2024/03/fresh.pdf", settings.EXPORT_RETENTION_DAYS - 1)

        result = sweeper.cleanup(None, context)
        assert result.deleted_files == 1
        assert store.exists("exports/pdf/2024/03/fresh.pdf")

    def test_zero_days_removes_everything_older_than_now(self, sweeper, store, context):
        _stored(store, "exports/pdf/2024/03/a.pdf", 1)
        assert sweeper.cleanup(0, context).deleted_files == 1

    def test_negative_days_rejected(self, sweeper, context):
        with pytest.raises(ValueError):
            sweeper.cleanup(-1, context)

    def test_partial_failure_reports_progress(self, sweeper, store, audit_sink, context):
        _stored(store, "exports/pdf/2024/01/a.pdf", 40, size=5)
        _stored(store, "exports/pdf/2024/01/b.pdf", 40, size=5)
        store.fail_delete.add("exports/pdf/2024/01/b.pdf")

        result = sweeper.cleanup(30, context)

        assert not result.success
        assert result.deleted_files == 1
        assert result.deleted_size == 5
        assert "b.pdf" in result.error
        assert audit_sink.events[0].properties["success"] is False


class TestStatistics:
    def test_counts_per_directory(self, sweeper, store):
        store.put("exports/pdf/2024/03/a.pdf", b"1234")
        store.put("exports/pdf/2024/02/b.pdf", b"12")
        store.put("exports/zip/2024/03/c.zip", b"123")
        store.put("uploads/d.pdf", b"1")

        stats = sweeper.get_statistics()

        assert stats.total_files == 3
        assert stats.total_size == 9
        assert stats.by_type["pdf"].file_count == 2
        assert stats.by_type["excel"].file_count == 0
        assert set(stats.by_type) == {"pdf", "excel", "zip", "batch"}


# ===== TASKS =====

class TestExportReportTask:
    def test_runs_one_scheduled_export(self, monkeypatch, export_service, provider, store, audit_sink):
        report = balance_sheet()
        provider.add(report)
        monkeypatch.setattr(
            tasks, "build_batch_service",
            lambda: BatchExportService(export_service, store, audit_sink, max_workers=1)
        )

        result = tasks.export_report_task(str(report.id), {"batch_id": "batch_export_01"}, "user-42")

        assert result["success"] is True
        assert result["artifact"]["storage_path"].startswith("exports/batch/batch_export_01/")
        assert audit_sink.events[0].actor_id == "user-42"


class TestCleanupTask:
    def test_uses_worker_store(self, monkeypatch, store):
        store.put("exports/pdf/2020/01/old.pdf", b"x")
        store.set_modified("exports/pdf/2020/01/old.pdf", FIXED_NOW.replace(year=2020))
        monkeypatch.setattr(tasks, "get_worker_store", lambda: store)

        result = tasks.cleanup_old_exports(30)

        assert result["success"] is True
        assert result["deleted_files"] == 1


class TestCeleryJobQueue:
    def test_routes_to_exports_queue(self, monkeypatch):
        sent = {}

        def fake_apply_async(args, queue):
            sent.update(args=args, queue=queue)
            return type("AsyncResult", (), {"id": "task-1"})()

        monkeypatch.setattr(tasks.export_report_task, "apply_async", fake_apply_async)

        job_id = CeleryJobQueue(queue_name="exports").enqueue_export("abc", {"format": "document"}, None)

        assert job_id == "task-1"
        assert sent == {"args": ["abc", {"format": "document"}, None], "queue": "exports"}


# ===== API ENDPOINTS =====

class TestSingleExport:
    def test_export_report_pdf(self, client, provider, audit_sink):
        report = balance_sheet()
        provider.add(report)

        response = client.post(f"/api/v1/exports/reports/{report.id}", headers={"X-User-Id": "user-7"})

        assert response.status_code == 200
        data = response.json()
        assert data["format"] == "document"
        assert data["storage_path"].startswith("exports/pdf/")
        assert data["download_url"].startswith("https://files.example.test/")
        assert response.headers["Cache-Control"] == "no-store"
        assert audit_sink.events[0].actor_id == "user-7"

    def test_export_report_spreadsheet(self, client, provider):
        report = income_statement()
        provider.add(report)

        response = client.post(f"/api/v1/exports/reports/{report.id}", json={"format": "excel"})

        assert response.status_code == 200
        assert response.json()["filename"].endswith(".xlsx")

    def test_unknown_report_is_404(self, client):
        response = client.post(f"/api/v1/exports/reports/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["kind"] == "not_found"

    def test_storage_failure_is_503(self, client, provider, store):
        report = balance_sheet()
        provider.add(report)
        store.fail_put = True

        response = client.post(f"/api/v1/exports/reports/{report.id}")
        assert response.status_code == 503
        assert response.json()["kind"] == "storage_failure"

    def test_invalid_paper_size(self, client, provider):
        report = balance_sheet()
        provider.add(report)
        response = client.post(f"/api/v1/exports/reports/{report.id}", json={"paper_size": "b5"})
        assert response.status_code == 422

    def test_invalid_actor_header(self, client):
        response = client.post(f"/api/v1/exports/reports/{uuid4()}", headers={"X-User-Id": "a b<c>"})
        assert response.status_code == 400


class TestBatchEndpoints:
    def test_batch_export(self, client, provider):
        report = balance_sheet()
        provider.add(report)
        missing = str(uuid4())

        response = client.post("/api/v1/exports/batch", json={
            "report_ids": [missing, str(report.id)],
            "options": {"create_zip": True, "zip_name": "hasil"}
        })

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["exported_count"] == 1
        assert data["error_count"] == 1
        assert data["outcomes"][0]["report_id"] == missing
        assert data["archive"]["filename"] == "hasil.zip"

    def test_batch_requires_ids(self, client):
        response = client.post("/api/v1/exports/batch", json={"report_ids": []})
        assert response.status_code == 422

    def test_cooperative_year(self, client, provider):
        provider.add(balance_sheet(year=2023), income_statement(year=2023))

        response = client.post(f"/api/v1/exports/cooperatives/{COOPERATIVE_ID}/years/2023")

        assert response.status_code == 200
        assert response.json()["archive"]["file_count"] == 2

    def test_date_range_validation(self, client):
        response = client.post("/api/v1/exports/date-range", json={
            "start_date": "2023-02-01",
            "end_date": "2023-01-01"
        })
        assert response.status_code == 422

    def test_combined(self, client, provider):
        first, second = balance_sheet(), income_statement()
        provider.add(first, second)

        response = client.post("/api/v1/exports/combined", json={"report_ids": [str(first.id), str(second.id)]})

        assert response.status_code == 200
        assert "_combined_reports_" in response.json()["filename"]

    def test_schedule_and_poll(self, client, provider, job_queue):
        report = balance_sheet()
        provider.add(report)

        response = client.post("/api/v1/exports/batch/schedule", json={"report_ids": [str(report.id)]})

        assert response.status_code == 202
        batch_id = response.json()["batch_id"]
        assert len(job_queue.jobs) == 1

        status = client.get(f"/api/v1/exports/batch/{batch_id}").json()
        assert status["status"] == "processing"
        assert status["expected_files"] == 1

    def test_schedule_with_queue_down(self, client, provider, job_queue, store):
        report = balance_sheet()
        provider.add(report)
        job_queue.fail = True

        response = client.post("/api/v1/exports/batch/schedule", json={"report_ids": [str(report.id)]})

        assert response.status_code == 503
        assert response.json()["kind"] == "queue_failure"
        assert store.objects == {}


class TestMaintenanceEndpoints:
    def test_cleanup(self, client, audit_sink):
        response = client.post("/api/v1/exports/cleanup", params={"days_old": 7})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert audit_sink.actions() == ["export_files_cleaned"]

    def test_cleanup_rejects_negative_days(self, client):
        response = client.post("/api/v1/exports/cleanup", params={"days_old": -1})
        assert response.status_code == 422

    def test_statistics(self, client, store):
        store.put("exports/pdf/2024/03/a.pdf", b"1234")

        response = client.get("/api/v1/exports/statistics")

        assert response.status_code == 200
        assert response.json()["by_type"]["pdf"] == {"file_count": 1, "total_size": 4}
