"""
Spreadsheet rendering

Two steps: ``render_grid`` lays a report out as typed rows (pure, easy to
test) and ``grid_to_xlsx`` writes those rows into an XLSX workbook with
openpyxl. Money values are written as whole rupiah.
"""

import enum
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from io import BytesIO
from typing import Callable, Dict, List, Optional, Tuple, Union

from openpyxl import Workbook
from openpyxl.styles import Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from app.modules.exports.aggregation import REPORT_TITLES, AggregationResult, measure, net_shu
from app.modules.exports.context import ExportContext
from app.modules.exports.schemas import ExportOptions, Orientation
from app.modules.reports.schemas import LineItem, Report, ReportType

logger = logging.getLogger(__name__)

INTEGER_FORMAT = "#,##0"
DECIMAL_FORMAT = "#,##0.00"

Cell = Union[str, int, Decimal, None]


class RowStyle(str, enum.Enum):
    TITLE = "title"
    INFO = "info"
    BLANK = "blank"
    COLUMN_HEADER = "column_header"
    SECTION = "section"
    ITEM = "item"
    SUBTOTAL_ITEM = "subtotal_item"
    CATEGORY_TOTAL = "category_total"
    GRAND_TOTAL = "grand_total"


@dataclass(frozen=True)
class GridRow:
    style: RowStyle
    cells: Tuple[Cell, ...] = ()


@dataclass
class Grid:
    sheet_title: str
    column_widths: List[int]
    rows: List[GridRow] = field(default_factory=list)
    paper_size: str = "a4"
    orientation: Orientation = Orientation.PORTRAIT

    @property
    def column_count(self) -> int:
        return len(self.column_widths)

    def add(self, style: RowStyle, *cells: Cell) -> None:
        self.rows.append(GridRow(style, tuple(cells)))

    def rows_of(self, style: RowStyle) -> List[GridRow]:
        return [row for row in self.rows if row.style is style]


def whole(value: Decimal) -> int:
    """Round a money amount to whole rupiah"""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# Category based reports

GrandTotal = Tuple[str, Decimal, Optional[Decimal]]


def _previous(aggregation: AggregationResult, name: str) -> Decimal:
    return aggregation.category(name).previous_total


def _balance_sheet_totals(aggregation: AggregationResult) -> List[GrandTotal]:
    return [
        (
            "TOTAL KEWAJIBAN + EKUITAS",
            aggregation.metric("total_liabilities_and_equity"),
            _previous(aggregation, "liability") + _previous(aggregation, "equity"),
        ),
        ("SELISIH NERACA", aggregation.metric("balance_check"), None),
    ]


def _income_statement_totals(aggregation: AggregationResult) -> List[GrandTotal]:
    previous_net = (
        _previous(aggregation, "revenue") - _previous(aggregation, "expense")
        + _previous(aggregation, "other_income") - _previous(aggregation, "other_expense")
    )
    return [("LABA (RUGI) BERSIH", aggregation.metric("net_income"), previous_net)]


def _cash_flow_totals(aggregation: AggregationResult) -> List[GrandTotal]:
    previous_net = sum((category.previous_total for category in aggregation.categories), Decimal("0"))
    return [
        ("KENAIKAN (PENURUNAN) BERSIH KAS", aggregation.metric("net_cash_flow"), previous_net),
        ("KAS AWAL PERIODE", aggregation.metric("beginning_cash"), None),
        ("KAS AKHIR PERIODE", aggregation.metric("ending_cash"), None),
        ("SELISIH KAS", aggregation.metric("cash_discrepancy"), None),
    ]


def _equity_changes_totals(aggregation: AggregationResult) -> List[GrandTotal]:
    return [
        (
            "PERUBAHAN BERSIH EKUITAS",
            aggregation.metric("net_change"),
            _previous(aggregation, "closing_balance") - _previous(aggregation, "opening_balance"),
        ),
    ]


def _budget_plan_totals(aggregation: AggregationResult) -> List[GrandTotal]:
    return [
        (
            "SELISIH ANGGARAN (PENDAPATAN - BIAYA)",
            aggregation.metric("net_budget"),
            _previous(aggregation, "revenue") - _previous(aggregation, "expense"),
        ),
    ]


GRAND_TOTALS: Dict[ReportType, Callable[[AggregationResult], List[GrandTotal]]] = {
    ReportType.BALANCE_SHEET: _balance_sheet_totals,
    ReportType.INCOME_STATEMENT: _income_statement_totals,
    ReportType.CASH_FLOW: _cash_flow_totals,
    ReportType.EQUITY_CHANGES: _equity_changes_totals,
    ReportType.BUDGET_PLAN: _budget_plan_totals,
}


def _render_categories(grid: Grid, report: Report, aggregation: AggregationResult) -> None:
    grid.add(RowStyle.COLUMN_HEADER, "Kode", "Uraian", str(report.reporting_year), str(report.reporting_year - 1))
    for category in aggregation.categories:
        grid.add(RowStyle.SECTION, category.label)
        for item in category.items:
            style = RowStyle.SUBTOTAL_ITEM if item.is_subtotal else RowStyle.ITEM
            grid.add(style, item.code, item.name, whole(item.amount), whole(item.previous_amount))
        grid.add(
            RowStyle.CATEGORY_TOTAL,
            "", f"TOTAL {category.label}", whole(category.total), whole(category.previous_total)
        )
        grid.add(RowStyle.BLANK)

    for label, current, previous in GRAND_TOTALS[report.report_type](aggregation):
        grid.add(RowStyle.GRAND_TOTAL, "", label, whole(current), whole(previous) if previous is not None else None)


# Tabular reports: one row per member line

@dataclass(frozen=True)
class TabularLayout:
    headers: Tuple[str, ...]
    row: Callable[[LineItem, str], Tuple[Cell, ...]]
    total: Callable[[AggregationResult], Tuple[Cell, ...]]
    widths: Tuple[int, ...]


def _savings_row(item: LineItem, label: str) -> Tuple[Cell, ...]:
    return (
        item.code, item.name, label,
        whole(measure(item, "beginning_balance")),
        whole(measure(item, "deposits")),
        whole(measure(item, "withdrawals")),
        whole(measure(item, "interest_earned")),
        whole(item.amount),
    )


def _savings_total(aggregation: AggregationResult) -> Tuple[Cell, ...]:
    return (
        "", f"TOTAL ({aggregation.counts.get('total_members', 0)} anggota)", "",
        whole(aggregation.metric("total_beginning_balance")),
        whole(aggregation.metric("total_deposits")),
        whole(aggregation.metric("total_withdrawals")),
        whole(aggregation.metric("total_interest_earned")),
        whole(aggregation.metric("total_ending_balance")),
    )


def _receivables_row(item: LineItem, label: str) -> Tuple[Cell, ...]:
    return (
        item.code, item.name, label,
        whole(measure(item, "loan_amount")),
        measure(item, "interest_rate"),
        whole(item.amount),
        (item.subcategory or "").title(),
    )


def _receivables_total(aggregation: AggregationResult) -> Tuple[Cell, ...]:
    return (
        "", f"TOTAL ({aggregation.counts.get('total_loans', 0)} pinjaman)", "",
        whole(aggregation.metric("total_loan_amount")),
        aggregation.metric("average_interest_rate"),
        whole(aggregation.metric("total_outstanding")),
        "",
    )


def _npl_row(item: LineItem, label: str) -> Tuple[Cell, ...]:
    return (
        item.code, item.name, label,
        whole(measure(item, "original_loan_amount")),
        whole(item.amount),
        whole(measure(item, "days_past_due")),
        whole(measure(item, "provision_amount")),
    )


def _npl_total(aggregation: AggregationResult) -> Tuple[Cell, ...]:
    return (
        "", f"TOTAL ({aggregation.counts.get('total_npl_loans', 0)} pinjaman)", "",
        whole(aggregation.metric("total_original_amount")),
        whole(aggregation.metric("total_outstanding")),
        aggregation.metric("average_days_past_due"),
        whole(aggregation.metric("total_provision")),
    )


def _shu_row(item: LineItem, label: str) -> Tuple[Cell, ...]:
    return (
        item.code, item.name, label,
        whole(item.amount),
        whole(measure(item, "tax_deduction")),
        whole(net_shu(item)),
        (item.subcategory or "").title(),
    )


def _shu_total(aggregation: AggregationResult) -> Tuple[Cell, ...]:
    return (
        "", f"TOTAL ({aggregation.counts.get('total_members', 0)} anggota)", "",
        whole(aggregation.metric("total_distributed")),
        whole(aggregation.metric("total_tax_deduction")),
        whole(aggregation.metric("total_net_shu")),
        "",
    )


TABULAR_LAYOUTS: Dict[ReportType, TabularLayout] = {
    ReportType.MEMBER_SAVINGS: TabularLayout(
        headers=("No. Anggota", "Nama Anggota", "Jenis Simpanan", "Saldo Awal", "Setoran",
                 "Penarikan", "Bunga", "Saldo Akhir"),
        row=_savings_row,
        total=_savings_total,
        widths=(14, 30, 20, 16, 16, 16, 14, 16),
    ),
    ReportType.MEMBER_RECEIVABLES: TabularLayout(
        headers=("No. Anggota", "Nama Anggota", "Jenis Pinjaman", "Jumlah Pinjaman", "Bunga (%)",
                 "Sisa Pinjaman", "Status"),
        row=_receivables_row,
        total=_receivables_total,
        widths=(14, 30, 20, 18, 10, 18, 14),
    ),
    ReportType.NPL_RECEIVABLES: TabularLayout(
        headers=("No. Anggota", "Nama Anggota", "Kolektibilitas", "Pinjaman Awal", "Sisa Pinjaman",
                 "Hari Tunggakan", "Cadangan"),
        row=_npl_row,
        total=_npl_total,
        widths=(14, 30, 18, 18, 18, 14, 16),
    ),
    ReportType.SHU_DISTRIBUTION: TabularLayout(
        headers=("No. Anggota", "Nama Anggota", "Jenis Anggota", "SHU Diterima", "Potongan Pajak",
                 "SHU Bersih", "Status"),
        row=_shu_row,
        total=_shu_total,
        widths=(14, 30, 20, 16, 16, 16, 12),
    ),
}

_uncovered = set(ReportType) - set(GRAND_TOTALS) - set(TABULAR_LAYOUTS)
if _uncovered:
    raise RuntimeError(f"Report types without a spreadsheet layout: {sorted(t.value for t in _uncovered)}")


def _render_table(grid: Grid, layout: TabularLayout, aggregation: AggregationResult) -> None:
    grid.add(RowStyle.COLUMN_HEADER, *layout.headers)
    for category in aggregation.categories:
        for item in category.items:
            style = RowStyle.SUBTOTAL_ITEM if item.is_subtotal else RowStyle.ITEM
            grid.add(style, *layout.row(item, category.label))
    grid.add(RowStyle.GRAND_TOTAL, *layout.total(aggregation))


def render_grid(
    report: Report,
    aggregation: AggregationResult,
    options: ExportOptions,
    context: ExportContext
) -> Grid:
    """Lay a report out as spreadsheet rows"""
    layout = TABULAR_LAYOUTS.get(report.report_type)
    widths = list(layout.widths) if layout else [14, 48, 20, 20]
    grid = Grid(
        sheet_title=REPORT_TITLES[report.report_type].title()[:31],
        column_widths=widths,
        paper_size=options.paper_size,
        orientation=options.orientation
    )

    grid.add(RowStyle.TITLE, report.cooperative_name)
    grid.add(RowStyle.TITLE, REPORT_TITLES[report.report_type])
    grid.add(RowStyle.INFO, f"Periode: {report.reporting_period or report.reporting_year}")
    grid.add(RowStyle.INFO, f"Dibuat pada: {context.now():%d/%m/%Y %H:%M:%S}")
    grid.add(RowStyle.BLANK)

    if layout:
        _render_table(grid, layout, aggregation)
    else:
        _render_categories(grid, report, aggregation)
    return grid


# XLSX output

_THIN = Side(style="thin", color="2D3748")

_FONTS = {
    RowStyle.TITLE: Font(bold=True, size=14),
    RowStyle.INFO: Font(italic=True, size=10, color="4A5568"),
    RowStyle.COLUMN_HEADER: Font(bold=True, size=10, color="FFFFFF"),
    RowStyle.SECTION: Font(bold=True, size=11),
    RowStyle.SUBTOTAL_ITEM: Font(bold=True, italic=True),
    RowStyle.CATEGORY_TOTAL: Font(bold=True),
    RowStyle.GRAND_TOTAL: Font(bold=True, size=11),
}

_FILLS = {
    RowStyle.COLUMN_HEADER: PatternFill(start_color="2D3748", end_color="2D3748", fill_type="solid"),
    RowStyle.GRAND_TOTAL: PatternFill(start_color="E2E8F0", end_color="E2E8F0", fill_type="solid"),
}

_BORDERS = {
    RowStyle.CATEGORY_TOTAL: Border(top=_THIN),
    RowStyle.GRAND_TOTAL: Border(top=_THIN, bottom=_THIN),
}


def _cell_value(value: Cell):
    if isinstance(value, Decimal):
        return float(value)
    return value


def _apply_page_setup(ws, grid: Grid) -> None:
    paper_sizes = {
        "a3": ws.PAPERSIZE_A3,
        "a4": ws.PAPERSIZE_A4,
        "a5": ws.PAPERSIZE_A5,
        "letter": ws.PAPERSIZE_LETTER,
        "legal": ws.PAPERSIZE_LEGAL,
    }
    ws.page_setup.paperSize = paper_sizes.get(grid.paper_size, ws.PAPERSIZE_A4)
    ws.page_setup.orientation = grid.orientation.value


def grid_to_xlsx(grid: Grid) -> bytes:
    """Write a grid into a single-sheet XLSX workbook"""
    wb = Workbook()
    ws = wb.active
    ws.title = grid.sheet_title

    for row_index, row in enumerate(grid.rows, start=1):
        if row.style in (RowStyle.TITLE, RowStyle.INFO) and grid.column_count > 1:
            ws.merge_cells(start_row=row_index, start_column=1, end_row=row_index, end_column=grid.column_count)

        for column_index, value in enumerate(row.cells, start=1):
            cell = ws.cell(row=row_index, column=column_index, value=_cell_value(value))
            if isinstance(value, int):
                cell.number_format = INTEGER_FORMAT
            elif isinstance(value, Decimal):
                cell.number_format = DECIMAL_FORMAT
            if row.style in _FONTS:
                cell.font = _FONTS[row.style]
            if row.style in _FILLS:
                cell.fill = _FILLS[row.style]
            if row.style in _BORDERS:
                cell.border = _BORDERS[row.style]

    for column_index, width in enumerate(grid.column_widths, start=1):
        ws.column_dimensions[get_column_letter(column_index)].width = width
    _apply_page_setup(ws, grid)

    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()
