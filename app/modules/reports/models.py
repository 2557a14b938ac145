from app.database.database import Base
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, Numeric, Enum, JSON, Uuid, UniqueConstraint
from sqlalchemy.orm import relationship
from uuid import uuid4
from app.common.mixins import CooperativeMixin, TimestampMixin
from app.modules.reports.schemas import ReportType, ReportStatus


class Cooperative(Base, TimestampMixin):
    __tablename__ = "cooperatives"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    registration_number = Column(String(50), nullable=True)


class FinancialReport(Base, CooperativeMixin, TimestampMixin):
    __tablename__ = "financial_reports"

    id = Column(Uuid, primary_key=True, default=uuid4)

    report_type = Column(Enum(ReportType), nullable=False, index=True)
    reporting_year = Column(Integer, nullable=False, index=True)
    reporting_period = Column(String(50), nullable=True)
    status = Column(Enum(ReportStatus), nullable=False, default=ReportStatus.DRAFT, index=True)

    # Free-form report data (e.g. beginning/ending cash balance)
    data = Column(JSON, nullable=False, default=dict)

    cooperative = relationship("Cooperative")
    line_items = relationship(
        "FinancialReportLineItem",
        back_populates="report",
        cascade="all, delete-orphan",
        order_by="FinancialReportLineItem.position"
    )


class FinancialReportLineItem(Base):
    __tablename__ = "financial_report_line_items"

    id = Column(Uuid, primary_key=True, default=uuid4)
    report_id = Column(Uuid, ForeignKey("financial_reports.id", ondelete="CASCADE"), nullable=False, index=True)

    # Insertion order, used to keep sort_order ties stable
    position = Column(Integer, nullable=False, default=0)

    code = Column(String(20), nullable=False)
    name = Column(String(255), nullable=False)
    category = Column(String(50), nullable=False)
    subcategory = Column(String(50), nullable=True)
    current_amount = Column(Numeric(15, 2), nullable=False, default=0)
    previous_amount = Column(Numeric(15, 2), nullable=False, default=0)
    is_subtotal = Column(Boolean, nullable=False, default=False)
    sort_order = Column(Integer, nullable=False, default=0)

    # Extra per-row measures (deposits, interest_rate, provision_amount, ...)
    attributes = Column(JSON, nullable=False, default=dict)

    report = relationship("FinancialReport", back_populates="line_items")

    __table_args__ = (
        UniqueConstraint("report_id", "position", name="uq_line_item_report_position"),
    )
