"""
PDF document rendering

``build_document`` turns an aggregated report into a DocumentModel (a flat
list of headings, tables, chart descriptors and notes); ``render_document``
lays that model out with reportlab. The section builder is chosen from
TEMPLATES by report type, types without an entry use the generic template.
"""

import io
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A3, A4, A5, LEGAL, LETTER, landscape, portrait
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import PageBreak, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from app.modules.exports.aggregation import REPORT_TITLES, AggregationResult
from app.modules.exports.comparison import EXTRACTORS, ComparisonData
from app.modules.exports.context import ExportContext
from app.modules.exports.errors import ExportError, RenderFailure
from app.modules.exports.schemas import ExportOptions, Orientation
from app.modules.exports.spreadsheet import TABULAR_LAYOUTS, whole
from app.modules.reports.schemas import Report, ReportType

logger = logging.getLogger(__name__)

PAGE_SIZES = {
    "a3": A3,
    "a4": A4,
    "a5": A5,
    "letter": LETTER,
    "legal": LEGAL,
}

# Requested font -> (regular, bold) among the PDF base fonts
FONTS = {
    "arial": ("Helvetica", "Helvetica-Bold"),
    "helvetica": ("Helvetica", "Helvetica-Bold"),
    "times": ("Times-Roman", "Times-Bold"),
    "times new roman": ("Times-Roman", "Times-Bold"),
    "times-roman": ("Times-Roman", "Times-Bold"),
    "courier": ("Courier", "Courier-Bold"),
    "courier new": ("Courier", "Courier-Bold"),
}
DEFAULT_FONT = FONTS["helvetica"]

CHART_KINDS = ("pie", "bar", "line")

METRIC_LABELS = {
    "total_assets": "Total Aset",
    "total_liabilities": "Total Kewajiban",
    "total_equity": "Total Ekuitas",
    "total_liabilities_and_equity": "Total Kewajiban + Ekuitas",
    "balance_check": "Selisih Neraca",
    "total_revenue": "Total Pendapatan",
    "total_expenses": "Total Beban",
    "other_income": "Pendapatan Lain-lain",
    "other_expenses": "Beban Lain-lain",
    "operating_income": "Laba Usaha",
    "net_income": "Laba (Rugi) Bersih",
    "profit_margin": "Margin Laba (%)",
    "operating_total": "Arus Kas Operasi",
    "investing_total": "Arus Kas Investasi",
    "financing_total": "Arus Kas Pendanaan",
    "net_cash_flow": "Kenaikan (Penurunan) Bersih Kas",
    "beginning_cash": "Kas Awal Periode",
    "ending_cash": "Kas Akhir Periode",
    "expected_ending_cash": "Kas Akhir Seharusnya",
    "cash_discrepancy": "Selisih Kas",
    "total_revenue_budget": "Rencana Pendapatan",
    "total_expense_budget": "Rencana Biaya",
    "total_investment_budget": "Rencana Investasi",
    "total_financing_budget": "Rencana Pendanaan",
    "net_budget": "Selisih Anggaran",
    "total_planned": "Total Anggaran",
    "total_comparison": "Total Realisasi Pembanding",
    "variance_percentage": "Varians (%)",
    "average_interest_rate": "Rata-rata Bunga (%)",
    "average_days_past_due": "Rata-rata Hari Tunggakan",
}

# Metrics that are ratios or averages rather than rupiah amounts
PLAIN_METRICS = {"profit_margin", "variance_percentage", "average_interest_rate", "average_days_past_due"}

GROUP_TITLES = {
    "by_savings_type": "Ringkasan per Jenis Simpanan",
    "by_loan_type": "Ringkasan per Jenis Pinjaman",
    "by_payment_status": "Ringkasan per Status Pembayaran",
    "by_classification": "Ringkasan per Kolektibilitas",
    "by_member_type": "Ringkasan per Jenis Anggota",
    "by_priority": "Ringkasan per Prioritas",
}


# Document model

@dataclass(frozen=True)
class Heading:
    text: str


@dataclass(frozen=True)
class Note:
    text: str


@dataclass(frozen=True)
class TableBlock:
    headers: Tuple[str, ...]
    rows: Tuple[Tuple[str, ...], ...]
    weights: Tuple[int, ...]
    emphasis: Tuple[int, ...] = ()  # row indexes drawn bold


@dataclass(frozen=True)
class ChartBlock:
    """Chart descriptor; the PDF shows its data, no image is drawn"""
    kind: str
    title: str
    labels: Tuple[str, ...]
    series: Dict[str, Tuple[Decimal, ...]] = field(default_factory=dict)

    def __post_init__(self):
        if self.kind not in CHART_KINDS:
            raise ValueError(f"Unknown chart kind: {self.kind}")


Block = Union[Heading, Note, TableBlock, ChartBlock]


@dataclass
class DocumentModel:
    title: str
    cooperative_name: str
    period: str
    generated_at: str
    paper_size: str
    orientation: Orientation
    font: str
    bold_font: str
    blocks: List[Block] = field(default_factory=list)

    def tables(self) -> List[TableBlock]:
        return [block for block in self.blocks if isinstance(block, TableBlock)]

    def charts(self) -> List[ChartBlock]:
        return [block for block in self.blocks if isinstance(block, ChartBlock)]


# Formatting

def format_amount(value: Decimal) -> str:
    """Whole rupiah with dot grouping, negatives in parentheses"""
    number = whole(value)
    text = f"{abs(number):,}".replace(",", ".")
    return f"({text})" if number < 0 else text


def format_decimal(value: Decimal) -> str:
    text = f"{value:,.2f}"
    return text.replace(",", "_").replace(".", ",").replace("_", ".")


def format_metric(name: str, value: Decimal) -> str:
    return format_decimal(value) if name in PLAIN_METRICS else format_amount(value)


def metric_label(name: str) -> str:
    return METRIC_LABELS.get(name, name.replace("_", " ").title())


def resolve_font(name: str) -> Tuple[str, str]:
    fonts = FONTS.get(name.strip().lower())
    if fonts is None:
        logger.warning(f"Font {name!r} is not available for PDF export, using Helvetica")
        return DEFAULT_FONT
    return fonts


# Section builders

def _category_sections(report: Report, aggregation: AggregationResult) -> List[Block]:
    blocks: List[Block] = []
    headers = ("Kode", "Uraian", str(report.reporting_year), str(report.reporting_year - 1))
    for category in aggregation.categories:
        rows = []
        emphasis = []
        for item in category.items:
            if item.is_subtotal:
                emphasis.append(len(rows))
            rows.append((item.code, item.name, format_amount(item.amount), format_amount(item.previous_amount)))
        emphasis.append(len(rows))
        rows.append(("", f"Total {category.label.title()}", format_amount(category.total),
                     format_amount(category.previous_total)))
        blocks.append(Heading(category.label))
        blocks.append(TableBlock(headers=headers, rows=tuple(rows), weights=(14, 48, 20, 20),
                                 emphasis=tuple(emphasis)))
    return blocks


def _summary(aggregation: AggregationResult, names: Sequence[str], emphasis: Sequence[str] = ()) -> List[Block]:
    rows = tuple((metric_label(name), format_metric(name, aggregation.metric(name))) for name in names)
    return [
        Heading("RINGKASAN"),
        TableBlock(
            headers=("Keterangan", "Jumlah"),
            rows=rows,
            weights=(60, 40),
            emphasis=tuple(i for i, name in enumerate(names) if name in emphasis)
        ),
    ]


def _group_tables(aggregation: AggregationResult) -> List[Block]:
    blocks: List[Block] = []
    for name, groups in aggregation.groups.items():
        if not groups:
            continue
        total_names = list(next(iter(groups.values())).totals)
        rows = tuple(
            (key.replace("_", " ").title(), str(summary.count),
             *(format_amount(summary.totals.get(total, Decimal("0"))) for total in total_names))
            for key, summary in groups.items()
        )
        blocks.append(Heading(GROUP_TITLES.get(name, name.replace("_", " ").title())))
        blocks.append(TableBlock(
            headers=("Kelompok", "Jumlah", *(metric_label(total) for total in total_names)),
            rows=rows,
            weights=(30, 12, *([24] * len(total_names)))
        ))
    return blocks


def _balance_sheet(report: Report, aggregation: AggregationResult) -> List[Block]:
    blocks = _category_sections(report, aggregation)
    blocks += _summary(
        aggregation,
        ("total_assets", "total_liabilities", "total_equity", "total_liabilities_and_equity", "balance_check"),
        emphasis=("total_assets", "total_liabilities_and_equity")
    )
    if aggregation.metric("balance_check") != 0:
        blocks.append(Note(
            f"Neraca tidak seimbang, selisih {format_amount(aggregation.metric('balance_check'))}"
        ))
    return blocks


def _income_statement(report: Report, aggregation: AggregationResult) -> List[Block]:
    return _category_sections(report, aggregation) + _summary(
        aggregation,
        ("total_revenue", "total_expenses", "operating_income", "other_income", "other_expenses",
         "net_income", "profit_margin"),
        emphasis=("net_income",)
    )


def _cash_flow(report: Report, aggregation: AggregationResult) -> List[Block]:
    blocks = _category_sections(report, aggregation)
    blocks += _summary(
        aggregation,
        ("operating_total", "investing_total", "financing_total", "net_cash_flow",
         "beginning_cash", "ending_cash", "cash_discrepancy"),
        emphasis=("net_cash_flow", "ending_cash")
    )
    if aggregation.metric("cash_discrepancy") != 0:
        blocks.append(Note(
            f"Saldo kas akhir berbeda dari perhitungan, selisih {format_amount(aggregation.metric('cash_discrepancy'))}"
        ))
    return blocks


def _budget_plan(report: Report, aggregation: AggregationResult) -> List[Block]:
    blocks = _category_sections(report, aggregation)
    blocks += _summary(
        aggregation,
        ("total_revenue_budget", "total_expense_budget", "total_investment_budget", "total_financing_budget",
         "net_budget", "total_comparison", "variance_percentage"),
        emphasis=("net_budget",)
    )
    return blocks + _group_tables(aggregation)


def _tabular(report: Report, aggregation: AggregationResult) -> List[Block]:
    layout = TABULAR_LAYOUTS[report.report_type]
    rows = []
    emphasis = []
    for category in aggregation.categories:
        for item in category.items:
            if item.is_subtotal:
                emphasis.append(len(rows))
            rows.append(tuple(_text(cell) for cell in layout.row(item, category.label)))
    emphasis.append(len(rows))
    rows.append(tuple(_text(cell) for cell in layout.total(aggregation)))

    blocks: List[Block] = [
        Heading(REPORT_TITLES[report.report_type]),
        TableBlock(headers=layout.headers, rows=tuple(rows), weights=layout.widths, emphasis=tuple(emphasis)),
    ]
    return blocks + _group_tables(aggregation)


def _generic(report: Report, aggregation: AggregationResult) -> List[Block]:
    blocks = _category_sections(report, aggregation)
    if aggregation.metrics:
        blocks += _summary(aggregation, tuple(aggregation.metrics))
    return blocks + _group_tables(aggregation)


def _text(cell) -> str:
    if cell is None:
        return ""
    if isinstance(cell, int):
        return f"{cell:,}".replace(",", ".")
    if isinstance(cell, Decimal):
        return format_decimal(cell)
    return str(cell)


TEMPLATES: Dict[ReportType, Callable[[Report, AggregationResult], List[Block]]] = {
    ReportType.BALANCE_SHEET: _balance_sheet,
    ReportType.INCOME_STATEMENT: _income_statement,
    ReportType.CASH_FLOW: _cash_flow,
    ReportType.BUDGET_PLAN: _budget_plan,
    ReportType.MEMBER_SAVINGS: _tabular,
    ReportType.MEMBER_RECEIVABLES: _tabular,
    ReportType.NPL_RECEIVABLES: _tabular,
    ReportType.SHU_DISTRIBUTION: _tabular,
}


def _comparison_table(report: Report, aggregation: AggregationResult, comparison: ComparisonData) -> List[Block]:
    extractor = EXTRACTORS.get(report.report_type)
    years = sorted(comparison)
    current = extractor(aggregation) if extractor else {}
    names = list(current) or sorted({name for metrics in comparison.values() for name in metrics})
    if not years or not names:
        return [Heading("PERBANDINGAN TAHUNAN"), Note("Tidak ada laporan tahun sebelumnya yang disetujui.")]

    rows = tuple(
        (metric_label(name),
         *(format_amount(comparison[year].get(name, Decimal("0"))) for year in years),
         format_amount(current.get(name, Decimal("0"))))
        for name in names
    )
    return [
        Heading("PERBANDINGAN TAHUNAN"),
        TableBlock(
            headers=("Keterangan", *(str(year) for year in years), str(report.reporting_year)),
            rows=rows,
            weights=(40, *([20] * (len(years) + 1)))
        ),
    ]


def _charts(report: Report, aggregation: AggregationResult, comparison: ComparisonData) -> List[Block]:
    labels = tuple(category.label for category in aggregation.categories)
    totals = tuple(category.total for category in aggregation.categories)
    kind = "pie" if report.report_type == ReportType.BALANCE_SHEET else "bar"
    charts: List[Block] = [ChartBlock(
        kind=kind,
        title=f"Komposisi {REPORT_TITLES[report.report_type].title()}",
        labels=labels,
        series={"Total": totals}
    )]

    extractor = EXTRACTORS.get(report.report_type)
    if comparison and extractor:
        years = sorted(comparison)
        current = extractor(aggregation)
        charts.append(ChartBlock(
            kind="line",
            title="Tren Tahunan",
            labels=tuple(str(year) for year in years) + (str(report.reporting_year),),
            series={
                metric_label(name): tuple(comparison[year].get(name, Decimal("0")) for year in years) + (value,)
                for name, value in current.items()
            }
        ))
    return charts


def build_document(
    report: Report,
    aggregation: AggregationResult,
    comparison: Optional[ComparisonData],
    options: ExportOptions,
    context: ExportContext
) -> DocumentModel:
    """Build the intermediate document for one report"""
    font, bold_font = resolve_font(options.font)
    model = DocumentModel(
        title=REPORT_TITLES[report.report_type],
        cooperative_name=report.cooperative_name,
        period=f"Periode: {report.reporting_period or report.reporting_year}",
        generated_at=f"Dibuat pada: {context.now():%d/%m/%Y %H:%M:%S}",
        paper_size=options.paper_size,
        orientation=options.orientation,
        font=font,
        bold_font=bold_font
    )

    template = TEMPLATES.get(report.report_type, _generic)
    model.blocks.extend(template(report, aggregation))
    if options.include_comparison:
        model.blocks.extend(_comparison_table(report, aggregation, comparison or {}))
    if options.include_charts:
        model.blocks.extend(_charts(report, aggregation, comparison or {}))
    return model


# PDF output

def _page_size(options: ExportOptions):
    size = PAGE_SIZES.get(options.paper_size, A4)
    return landscape(size) if options.orientation == Orientation.LANDSCAPE else portrait(size)


def _styles(font: str, bold_font: str):
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(
        name="ReportTitle",
        parent=styles["Heading1"],
        fontName=bold_font,
        fontSize=16,
        alignment=TA_CENTER,
        spaceAfter=6,
        textColor=colors.HexColor("#1a365d")
    ))
    styles.add(ParagraphStyle(
        name="ReportSubtitle",
        parent=styles["Normal"],
        fontName=font,
        fontSize=11,
        alignment=TA_CENTER,
        spaceAfter=4,
        textColor=colors.HexColor("#4a5568")
    ))
    styles.add(ParagraphStyle(
        name="SectionHeader",
        parent=styles["Heading3"],
        fontName=bold_font,
        fontSize=11,
        spaceBefore=12,
        spaceAfter=4,
        textColor=colors.HexColor("#2d3748")
    ))
    styles.add(ParagraphStyle(
        name="ReportNote",
        parent=styles["Normal"],
        fontName=font,
        fontSize=9,
        textColor=colors.HexColor("#c53030")
    ))
    styles.add(ParagraphStyle(
        name="Footer",
        parent=styles["Normal"],
        fontName=font,
        fontSize=8,
        alignment=TA_CENTER,
        textColor=colors.HexColor("#718096")
    ))
    return styles


def _table(block: TableBlock, width: float, font: str, bold_font: str) -> Table:
    total_weight = sum(block.weights) or 1
    col_widths = [width * weight / total_weight for weight in block.weights]
    table = Table([list(block.headers)] + [list(row) for row in block.rows], colWidths=col_widths, repeatRows=1)

    style_commands = [
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#e2e8f0")),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.HexColor("#2d3748")),
        ("FONTNAME", (0, 0), (-1, 0), bold_font),
        ("FONTNAME", (0, 1), (-1, -1), font),
        ("FONTSIZE", (0, 0), (-1, -1), 8),
        ("ALIGN", (2, 1), (-1, -1), "RIGHT"),
        ("TOPPADDING", (0, 0), (-1, -1), 3),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
        ("LINEBELOW", (0, 0), (-1, 0), 1, colors.HexColor("#cbd5e0")),
    ]
    if len(block.weights) == 2:
        style_commands.append(("ALIGN", (1, 1), (1, -1), "RIGHT"))
    for index in block.emphasis:
        row = index + 1
        style_commands.extend([
            ("FONTNAME", (0, row), (-1, row), bold_font),
            ("LINEABOVE", (0, row), (-1, row), 0.5, colors.HexColor("#2d3748")),
        ])
    table.setStyle(TableStyle(style_commands))
    return table


def _chart_table(block: ChartBlock) -> TableBlock:
    names = list(block.series)
    rows = tuple(
        (label, *(format_amount(block.series[name][i]) for name in names))
        for i, label in enumerate(block.labels)
    )
    return TableBlock(headers=("Label", *names), rows=rows, weights=(40, *([20] * len(names))))


def _flowables(model: DocumentModel, width: float) -> list:
    styles = _styles(model.font, model.bold_font)
    elements = [
        Paragraph(escape(model.cooperative_name), styles["ReportTitle"]),
        Paragraph(model.title, styles["ReportSubtitle"]),
        Paragraph(model.period, styles["ReportSubtitle"]),
        Spacer(1, 12),
    ]
    for block in model.blocks:
        if isinstance(block, Heading):
            elements.append(Paragraph(escape(block.text), styles["SectionHeader"]))
        elif isinstance(block, Note):
            elements.append(Spacer(1, 4))
            elements.append(Paragraph(escape(block.text), styles["ReportNote"]))
        elif isinstance(block, TableBlock):
            elements.append(_table(block, width, model.font, model.bold_font))
        elif isinstance(block, ChartBlock):
            elements.append(Paragraph(escape(f"{block.title} ({block.kind})"), styles["SectionHeader"]))
            elements.append(_table(_chart_table(block), width, model.font, model.bold_font))
    elements.append(Spacer(1, 20))
    elements.append(Paragraph(model.generated_at, styles["Footer"]))
    return elements


def _to_pdf(models: List[DocumentModel], options: ExportOptions) -> bytes:
    buffer = io.BytesIO()
    pagesize = _page_size(options)
    margin = 0.5 * inch
    doc = SimpleDocTemplate(
        buffer,
        pagesize=pagesize,
        rightMargin=margin,
        leftMargin=margin,
        topMargin=margin,
        bottomMargin=margin,
        title=models[0].title if len(models) == 1 else "Laporan Keuangan",
        author=models[0].cooperative_name
    )

    elements = []
    for index, model in enumerate(models):
        if index:
            elements.append(PageBreak())
        elements.extend(_flowables(model, doc.width))

    try:
        doc.build(elements)
    except ExportError:
        raise
    except Exception as e:
        logger.exception("PDF layout failed")
        raise RenderFailure(f"Could not render PDF: {e}") from e
    return buffer.getvalue()


def render_document(
    report: Report,
    aggregation: AggregationResult,
    comparison: Optional[ComparisonData],
    options: ExportOptions,
    context: ExportContext
) -> bytes:
    """Render one report as a PDF"""
    return _to_pdf([build_document(report, aggregation, comparison, options, context)], options)


def render_combined_document(
    entries: Sequence[Tuple[Report, AggregationResult, Optional[ComparisonData]]],
    options: ExportOptions,
    context: ExportContext
) -> bytes:
    """Render several reports into one PDF, each starting on a new page"""
    if not entries:
        raise RenderFailure("No reports to combine")
    models = [
        build_document(report, aggregation, comparison, options, context)
        for report, aggregation, comparison in entries
    ]
    return _to_pdf(models, options)
