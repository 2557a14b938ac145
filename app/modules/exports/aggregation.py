"""
Report aggregation

Rolls report line items up into category totals and derives the
type-specific figures (net income, balance check, cash reconciliation,
averages, grouped summaries) that both renderers print.

Rules shared by every report type:
- line items flagged ``is_subtotal`` are kept for display but never summed,
  counted or averaged
- categories follow the report type's declared order; items inside a
  category follow ``sort_order`` with ties kept in input order
- the input report is never modified
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from app.modules.exports.errors import InvalidLineItem, UnsupportedReportType
from app.modules.reports.schemas import REPORT_CATEGORIES, LineItem, Report, ReportType

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")


REPORT_TITLES: Dict[ReportType, str] = {
    ReportType.BALANCE_SHEET: "NERACA",
    ReportType.INCOME_STATEMENT: "LAPORAN LABA RUGI",
    ReportType.CASH_FLOW: "LAPORAN ARUS KAS",
    ReportType.EQUITY_CHANGES: "LAPORAN PERUBAHAN EKUITAS",
    ReportType.MEMBER_SAVINGS: "DAFTAR SIMPANAN ANGGOTA",
    ReportType.MEMBER_RECEIVABLES: "DAFTAR PIUTANG ANGGOTA",
    ReportType.NPL_RECEIVABLES: "DAFTAR PIUTANG BERMASALAH",
    ReportType.SHU_DISTRIBUTION: "DAFTAR PEMBAGIAN SHU",
    ReportType.BUDGET_PLAN: "RENCANA ANGGARAN",
}


CATEGORY_LABELS: Dict[ReportType, Dict[str, str]] = {
    ReportType.BALANCE_SHEET: {
        "asset": "ASET",
        "liability": "KEWAJIBAN",
        "equity": "EKUITAS",
    },
    ReportType.INCOME_STATEMENT: {
        "revenue": "PENDAPATAN",
        "expense": "BEBAN",
        "other_income": "PENDAPATAN LAIN-LAIN",
        "other_expense": "BEBAN LAIN-LAIN",
    },
    ReportType.CASH_FLOW: {
        "operating": "ARUS KAS DARI AKTIVITAS OPERASI",
        "investing": "ARUS KAS DARI AKTIVITAS INVESTASI",
        "financing": "ARUS KAS DARI AKTIVITAS PENDANAAN",
    },
    ReportType.EQUITY_CHANGES: {
        "opening_balance": "SALDO AWAL",
        "addition": "PENAMBAHAN",
        "reduction": "PENGURANGAN",
        "closing_balance": "SALDO AKHIR",
    },
    ReportType.MEMBER_SAVINGS: {
        "simpanan_pokok": "Simpanan Pokok",
        "simpanan_wajib": "Simpanan Wajib",
        "simpanan_khusus": "Simpanan Khusus",
        "simpanan_sukarela": "Simpanan Sukarela",
    },
    ReportType.MEMBER_RECEIVABLES: {
        "productive": "Pinjaman Produktif",
        "consumptive": "Pinjaman Konsumtif",
        "emergency": "Pinjaman Darurat",
        "other": "Pinjaman Lainnya",
    },
    ReportType.NPL_RECEIVABLES: {
        "substandard": "Kurang Lancar",
        "doubtful": "Diragukan",
        "loss": "Macet",
    },
    ReportType.SHU_DISTRIBUTION: {
        "regular": "Anggota Biasa",
        "founder": "Anggota Pendiri",
        "associate": "Anggota Luar Biasa",
    },
    ReportType.BUDGET_PLAN: {
        "revenue": "RENCANA PENDAPATAN",
        "expense": "RENCANA BIAYA",
        "investment": "RENCANA INVESTASI",
        "financing": "RENCANA PENDANAAN",
    },
}


class CategoryTotal(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    label: str
    total: Decimal
    previous_total: Decimal
    items: Tuple[LineItem, ...] = ()


class GroupSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    count: int = 0
    totals: Dict[str, Decimal] = Field(default_factory=dict)


class AggregationResult(BaseModel):
    """Category totals plus derived figures for one report"""
    model_config = ConfigDict(frozen=True)

    report_type: ReportType
    categories: Tuple[CategoryTotal, ...] = ()
    metrics: Dict[str, Decimal] = Field(default_factory=dict)
    counts: Dict[str, int] = Field(default_factory=dict)
    groups: Dict[str, Dict[str, GroupSummary]] = Field(default_factory=dict)

    def category(self, name: str) -> CategoryTotal:
        for category in self.categories:
            if category.category == name:
                return category
        raise KeyError(name)

    def total(self, name: str) -> Decimal:
        return self.category(name).total

    def metric(self, name: str) -> Decimal:
        return self.metrics.get(name, ZERO)


# Helpers

def measure(item: LineItem, key: str, default: Decimal = ZERO) -> Decimal:
    """Numeric attribute of a line item as Decimal"""
    value = item.attributes.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _sum(values: Iterable[Decimal]) -> Decimal:
    return sum(values, ZERO)


def _average(values: List[Decimal]) -> Decimal:
    if not values:
        return ZERO
    return (_sum(values) / len(values)).quantize(CENT, rounding=ROUND_HALF_UP)


def _percentage(part: Decimal, whole: Decimal) -> Decimal:
    if whole == 0:
        return ZERO
    return (part / whole * 100).quantize(CENT, rounding=ROUND_HALF_UP)


def _group(
    items: List[LineItem],
    key: Callable[[LineItem], Optional[str]],
    measures: Dict[str, Callable[[LineItem], Decimal]]
) -> Dict[str, GroupSummary]:
    """Group counted items, keeping groups in order of first appearance"""
    buckets: Dict[str, List[LineItem]] = {}
    for item in items:
        buckets.setdefault(key(item) or "unspecified", []).append(item)
    return {
        name: GroupSummary(
            count=len(members),
            totals={total: _sum(fn(member) for member in members) for total, fn in measures.items()}
        )
        for name, members in buckets.items()
    }


def _amount(item: LineItem) -> Decimal:
    return item.amount


# Strategies. Each receives the report, the category totals and the
# counted (non-subtotal) items and returns (metrics, counts, groups).

Derived = Tuple[Dict[str, Decimal], Dict[str, int], Dict[str, Dict[str, GroupSummary]]]


def _balance_sheet(report: Report, totals: Dict[str, Decimal], items: List[LineItem]) -> Derived:
    assets = totals["asset"]
    liabilities = totals["liability"]
    equity = totals["equity"]
    return {
        "total_assets": assets,
        "total_liabilities": liabilities,
        "total_equity": equity,
        "total_liabilities_and_equity": liabilities + equity,
        "balance_check": assets - (liabilities + equity),
    }, {}, {}


def _income_statement(report: Report, totals: Dict[str, Decimal], items: List[LineItem]) -> Derived:
    revenue = totals["revenue"]
    expenses = totals["expense"]
    other_income = totals["other_income"]
    other_expenses = totals["other_expense"]
    net_income = revenue - expenses + other_income - other_expenses
    return {
        "total_revenue": revenue,
        "total_expenses": expenses,
        "other_income": other_income,
        "other_expenses": other_expenses,
        "operating_income": revenue - expenses,
        "net_income": net_income,
        "profit_margin": _percentage(net_income, revenue),
    }, {}, {}


def _metadata_amount(report: Report, key: str) -> Decimal:
    value = report.metadata.get(key)
    if value is None or value == "":
        return ZERO
    return Decimal(str(value))


def _cash_flow(report: Report, totals: Dict[str, Decimal], items: List[LineItem]) -> Derived:
    net_cash_flow = _sum(item.amount for item in items)
    beginning = _metadata_amount(report, "beginning_cash_balance")
    ending = _metadata_amount(report, "ending_cash_balance")
    expected_ending = beginning + net_cash_flow
    return {
        "operating_total": totals["operating"],
        "investing_total": totals["investing"],
        "financing_total": totals["financing"],
        "net_cash_flow": net_cash_flow,
        "beginning_cash": beginning,
        "ending_cash": ending,
        "expected_ending_cash": expected_ending,
        "cash_discrepancy": ending - expected_ending,
    }, {}, {}


def _equity_changes(report: Report, totals: Dict[str, Decimal], items: List[LineItem]) -> Derived:
    opening = totals["opening_balance"]
    closing = totals["closing_balance"]
    net_change = closing - opening
    movement = totals["addition"] - totals["reduction"]
    return {
        "total_beginning_balance": opening,
        "total_additions": totals["addition"],
        "total_reductions": totals["reduction"],
        "total_ending_balance": closing,
        "net_change": net_change,
        "movement": movement,
        "equity_discrepancy": net_change - movement,
    }, {}, {}


def _member_savings(report: Report, totals: Dict[str, Decimal], items: List[LineItem]) -> Derived:
    metrics = {
        "total_beginning_balance": _sum(measure(item, "beginning_balance") for item in items),
        "total_deposits": _sum(measure(item, "deposits") for item in items),
        "total_withdrawals": _sum(measure(item, "withdrawals") for item in items),
        "total_interest_earned": _sum(measure(item, "interest_earned") for item in items),
        "total_ending_balance": _sum(item.amount for item in items),
    }
    counts = {"total_members": len({item.code for item in items})}
    groups = {
        "by_savings_type": _group(items, lambda item: item.category, {"total_balance": _amount}),
    }
    return metrics, counts, groups


def _member_receivables(report: Report, totals: Dict[str, Decimal], items: List[LineItem]) -> Derived:
    metrics = {
        "total_loan_amount": _sum(measure(item, "loan_amount") for item in items),
        "total_outstanding": _sum(item.amount for item in items),
        "average_interest_rate": _average([measure(item, "interest_rate") for item in items]),
    }
    counts = {"total_loans": len(items)}
    groups = {
        "by_loan_type": _group(items, lambda item: item.category, {
            "total_amount": lambda item: measure(item, "loan_amount"),
            "total_outstanding": _amount,
        }),
        "by_payment_status": _group(items, lambda item: item.subcategory, {"total_outstanding": _amount}),
    }
    return metrics, counts, groups


def _npl_receivables(report: Report, totals: Dict[str, Decimal], items: List[LineItem]) -> Derived:
    metrics = {
        "total_original_amount": _sum(measure(item, "original_loan_amount") for item in items),
        "total_outstanding": _sum(item.amount for item in items),
        "total_provision": _sum(measure(item, "provision_amount") for item in items),
        "average_days_past_due": _average([measure(item, "days_past_due") for item in items]),
    }
    counts = {"total_npl_loans": len(items)}
    groups = {
        "by_classification": _group(items, lambda item: item.category, {
            "total_outstanding": _amount,
            "total_provision": lambda item: measure(item, "provision_amount"),
        }),
    }
    return metrics, counts, groups


def net_shu(item: LineItem) -> Decimal:
    """SHU actually paid out: the recorded net amount, else amount less tax"""
    return measure(item, "net_shu_received", item.amount - measure(item, "tax_deduction"))


def _shu_distribution(report: Report, totals: Dict[str, Decimal], items: List[LineItem]) -> Derived:
    metrics = {
        "total_distributed": _sum(item.amount for item in items),
        "total_tax_deduction": _sum(measure(item, "tax_deduction") for item in items),
        "total_net_shu": _sum(net_shu(item) for item in items),
        "average_per_member": _average([item.amount for item in items]),
    }
    counts = {"total_members": len({item.code for item in items})}
    groups = {
        "by_member_type": _group(items, lambda item: item.category, {"total_shu": _amount}),
        "by_payment_status": _group(items, lambda item: item.subcategory, {"total_amount": net_shu}),
    }
    return metrics, counts, groups


def _budget_plan(report: Report, totals: Dict[str, Decimal], items: List[LineItem]) -> Derived:
    planned = _sum(item.amount for item in items)
    comparison = _sum(measure(item, "comparison_amount") for item in items)
    metrics = {
        "total_revenue_budget": totals["revenue"],
        "total_expense_budget": totals["expense"],
        "total_investment_budget": totals["investment"],
        "total_financing_budget": totals["financing"],
        "net_budget": totals["revenue"] - totals["expense"],
        "total_planned": planned,
        "total_comparison": comparison,
        "variance_percentage": _percentage(planned - comparison, comparison) if comparison > 0 else ZERO,
    }
    groups = {
        "by_priority": _group(items, lambda item: item.subcategory, {"total_amount": _amount}),
    }
    return metrics, {"total_items": len(items)}, groups


AGGREGATORS: Dict[ReportType, Callable[[Report, Dict[str, Decimal], List[LineItem]], Derived]] = {
    ReportType.BALANCE_SHEET: _balance_sheet,
    ReportType.INCOME_STATEMENT: _income_statement,
    ReportType.CASH_FLOW: _cash_flow,
    ReportType.EQUITY_CHANGES: _equity_changes,
    ReportType.MEMBER_SAVINGS: _member_savings,
    ReportType.MEMBER_RECEIVABLES: _member_receivables,
    ReportType.NPL_RECEIVABLES: _npl_receivables,
    ReportType.SHU_DISTRIBUTION: _shu_distribution,
    ReportType.BUDGET_PLAN: _budget_plan,
}

_missing = (
    (set(ReportType) - set(AGGREGATORS))
    | (set(ReportType) - set(CATEGORY_LABELS))
    | (set(ReportType) - set(REPORT_TITLES))
)
if _missing:
    raise RuntimeError(f"Report types without aggregation rules: {sorted(t.value for t in _missing)}")


def _category_totals(report: Report) -> Tuple[CategoryTotal, ...]:
    allowed = REPORT_CATEGORIES[report.report_type]
    for item in report.line_items:
        if item.category not in allowed:
            raise InvalidLineItem(
                f"Line item {item.code} has category {item.category!r}; "
                f"{report.report_type.value} expects one of {', '.join(allowed)}"
            )

    labels = CATEGORY_LABELS[report.report_type]
    categories = []
    for name in allowed:
        # sorted() is stable, so equal sort_order keeps input order
        items = sorted(
            (item for item in report.line_items if item.category == name),
            key=lambda item: item.sort_order
        )
        counted = [item for item in items if not item.is_subtotal]
        categories.append(CategoryTotal(
            category=name,
            label=labels[name],
            total=_sum(item.amount for item in counted),
            previous_total=_sum(item.previous_amount for item in counted),
            items=tuple(items)
        ))
    return tuple(categories)


def aggregate(report: Report) -> AggregationResult:
    """Aggregate a report snapshot into category totals and derived figures.

    Raises:
        UnsupportedReportType: no strategy is registered for the report type
        InvalidLineItem: a line item's category is outside the type's set
    """
    strategy = AGGREGATORS.get(report.report_type)
    if strategy is None:
        raise UnsupportedReportType(report.report_type)

    categories = _category_totals(report)
    totals = {category.category: category.total for category in categories}
    counted = [item for category in categories for item in category.items if not item.is_subtotal]

    metrics, counts, groups = strategy(report, totals, counted)
    logger.debug(f"Aggregated report {report.id} ({report.report_type.value}): {len(counted)} items")

    return AggregationResult(
        report_type=report.report_type,
        categories=categories,
        metrics=metrics,
        counts=counts,
        groups=groups
    )
