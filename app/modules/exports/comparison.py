"""
Year-over-year comparison data

For a report of year Y the assembler looks up the approved report of the
same cooperative and type for each year in [Y - window, Y - 1] and extracts
a few headline metrics. Years without an approved report are left out.
"""

import logging
from decimal import Decimal
from typing import Callable, Dict

from app.modules.exports.aggregation import AggregationResult, aggregate
from app.modules.reports.provider import ReportDataProvider
from app.modules.reports.schemas import Report, ReportType

logger = logging.getLogger(__name__)

ComparisonData = Dict[int, Dict[str, Decimal]]


def _balance_sheet(result: AggregationResult) -> Dict[str, Decimal]:
    return {
        "total_assets": result.metric("total_assets"),
        "total_liabilities": result.metric("total_liabilities"),
        "total_equity": result.metric("total_equity"),
    }


def _income_statement(result: AggregationResult) -> Dict[str, Decimal]:
    return {
        "total_revenue": result.metric("total_revenue"),
        "total_expenses": result.metric("total_expenses"),
        "net_income": result.metric("net_income"),
    }


def _cash_flow(result: AggregationResult) -> Dict[str, Decimal]:
    return {
        "operating_total": result.metric("operating_total"),
        "investing_total": result.metric("investing_total"),
        "financing_total": result.metric("financing_total"),
        "net_cash_flow": result.metric("net_cash_flow"),
    }


def _budget_plan(result: AggregationResult) -> Dict[str, Decimal]:
    return {
        "total_revenue_budget": result.metric("total_revenue_budget"),
        "total_expense_budget": result.metric("total_expense_budget"),
        "net_budget": result.metric("net_budget"),
    }


EXTRACTORS: Dict[ReportType, Callable[[AggregationResult], Dict[str, Decimal]]] = {
    ReportType.BALANCE_SHEET: _balance_sheet,
    ReportType.INCOME_STATEMENT: _income_statement,
    ReportType.CASH_FLOW: _cash_flow,
    ReportType.BUDGET_PLAN: _budget_plan,
}


class ComparisonAssembler:
    """Collects headline metrics of earlier approved reports"""

    def __init__(self, provider: ReportDataProvider):
        self.provider = provider

    def compare(self, report: Report, window_years: int) -> ComparisonData:
        if window_years <= 0:
            return {}

        extractor = EXTRACTORS.get(report.report_type)
        comparison: ComparisonData = {}
        for year in range(report.reporting_year - window_years, report.reporting_year):
            previous = self.provider.find_approved(report.cooperative_id, report.report_type, year)
            if previous is None:
                continue
            comparison[year] = extractor(aggregate(previous)) if extractor else {}

        logger.debug(
            f"Comparison for report {report.id}: {len(comparison)} of {window_years} years found"
        )
        return comparison
