"""
Snapshot schemas for financial reports

These are the read-only views the export engine works on. They are built
by a report provider from the database at export time and are never
written back.
"""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ReportType(str, enum.Enum):
    BALANCE_SHEET = "balance_sheet"            # Neraca
    INCOME_STATEMENT = "income_statement"      # Laporan laba rugi
    CASH_FLOW = "cash_flow"                    # Arus kas
    EQUITY_CHANGES = "equity_changes"          # Perubahan ekuitas
    MEMBER_SAVINGS = "member_savings"          # Simpanan anggota
    MEMBER_RECEIVABLES = "member_receivables"  # Piutang anggota
    NPL_RECEIVABLES = "npl_receivables"        # Piutang bermasalah
    SHU_DISTRIBUTION = "shu_distribution"      # Pembagian SHU
    BUDGET_PLAN = "budget_plan"                # Rencana anggaran


class ReportStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


# Fixed category set per report type, in display order
REPORT_CATEGORIES: Dict[ReportType, Tuple[str, ...]] = {
    ReportType.BALANCE_SHEET: ("asset", "liability", "equity"),
    ReportType.INCOME_STATEMENT: ("revenue", "expense", "other_income", "other_expense"),
    ReportType.CASH_FLOW: ("operating", "investing", "financing"),
    ReportType.EQUITY_CHANGES: ("opening_balance", "addition", "reduction", "closing_balance"),
    ReportType.MEMBER_SAVINGS: ("simpanan_pokok", "simpanan_wajib", "simpanan_khusus", "simpanan_sukarela"),
    ReportType.MEMBER_RECEIVABLES: ("productive", "consumptive", "emergency", "other"),
    ReportType.NPL_RECEIVABLES: ("substandard", "doubtful", "loss"),
    ReportType.SHU_DISTRIBUTION: ("regular", "founder", "associate"),
    ReportType.BUDGET_PLAN: ("revenue", "expense", "investment", "financing"),
}


AttributeValue = Union[Decimal, int, str]


class LineItem(BaseModel):
    """One row of a financial report (account, activity, member or budget line)"""
    model_config = ConfigDict(frozen=True)

    code: str = Field(..., description="Account, activity or member code")
    name: str
    category: str
    subcategory: Optional[str] = None
    amount: Decimal = Field(Decimal("0"), description="Current-period amount")
    previous_amount: Decimal = Field(Decimal("0"), description="Previous-period amount")
    is_subtotal: bool = False
    sort_order: int = 0
    attributes: Dict[str, AttributeValue] = Field(default_factory=dict)


class Report(BaseModel):
    """Immutable snapshot of a financial report and its line items"""
    model_config = ConfigDict(frozen=True)

    id: UUID
    cooperative_id: UUID
    cooperative_name: str
    report_type: ReportType
    reporting_year: int
    reporting_period: Optional[str] = None
    status: ReportStatus = ReportStatus.DRAFT
    line_items: Tuple[LineItem, ...] = ()
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @property
    def is_approved(self) -> bool:
        return self.status == ReportStatus.APPROVED


class ReportFilter(BaseModel):
    """Filter used to resolve a set of reports"""
    cooperative_id: Optional[UUID] = None
    report_type: Optional[ReportType] = None
    reporting_year: Optional[int] = None
    status: Optional[ReportStatus] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
