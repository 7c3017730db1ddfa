"""
Statement models for ingested gig-platform earnings reports.

A Statement is one report for (tenant, provider, period type, period key);
its StatementLines are replaced wholesale every time extraction runs.
"""
import uuid
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from gigledger.database import Base
from gigledger.models.types import UUID, MetricNumber, Money, utcnow


class PeriodType(str, Enum):
    """Reporting period covered by a statement or snapshot."""
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    YTD = "YTD"
    YEARLY = "Yearly"


class StatementStatus(str, Enum):
    """Lifecycle of a statement with respect to ledger posting."""
    DRAFT = "Draft"                              # Extracted, not yet evaluated for posting
    SUBMITTED = "Submitted"                      # Queued for extraction and posting
    RECONCILIATION_ONLY = "ReconciliationOnly"   # Lost granularity; never posts
    POSTED = "Posted"                            # Ledger entry exists


class LineType(str, Enum):
    """Canonical classification of a statement or ledger line."""
    INCOME = "Income"
    FEE = "Fee"
    TAX_COLLECTED = "TaxCollected"
    ITC = "Itc"
    EXPENSE = "Expense"
    OTHER = "Other"
    METRIC = "Metric"

    @property
    def is_tax_only(self) -> bool:
        return self in (LineType.TAX_COLLECTED, LineType.ITC)


class Evidence(str, Enum):
    """Provenance of an extracted value."""
    EXTRACTED = "Extracted"
    INFERRED = "Inferred"


class Statement(Base):
    """One ingested earnings report."""

    __tablename__ = "statements"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False, index=True)
    file_object_id = Column(UUID(), ForeignKey("file_objects.id"), nullable=True)

    provider = Column(String(100), nullable=False)
    period_type = Column(SQLEnum(PeriodType), nullable=False)
    period_key = Column(String(20), nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)

    vendor_name = Column(String(255), nullable=True)
    statement_total_amount = Column(Money, nullable=True)
    tax_amount = Column(Money, nullable=True)
    currency_code = Column(String(3), nullable=True)
    currency_evidence = Column(SQLEnum(Evidence), nullable=True)

    status = Column(SQLEnum(StatementStatus), default=StatementStatus.DRAFT, nullable=False)

    # Rollups recomputed on every extraction
    income_total = Column(Money, nullable=False, default=Decimal("0"))
    fee_total = Column(Money, nullable=False, default=Decimal("0"))
    tax_total = Column(Money, nullable=False, default=Decimal("0"))
    line_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    lines = relationship(
        "StatementLine",
        back_populates="statement",
        cascade="all, delete-orphan",
        order_by="StatementLine.line_type",
    )
    file_object = relationship("FileObject")

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "provider", "period_type", "period_key",
            name="uq_statements_natural_key",
        ),
        Index("ix_statements_tenant_provider_start", "tenant_id", "provider", "period_start"),
    )

    def __repr__(self) -> str:
        return (
            f"<Statement {self.id} {self.provider} {self.period_type} "
            f"{self.period_key} status={self.status}>"
        )

    @property
    def year(self) -> int:
        return self.period_start.year


class StatementLine(Base):
    """
    One fact owned by a Statement.

    Either monetary (money_amount and/or tax_amount) or a metric
    (is_metric with metric_key/metric_value/unit), never both.
    """

    __tablename__ = "statement_lines"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False, index=True)
    statement_id = Column(
        UUID(), ForeignKey("statements.id", ondelete="CASCADE"), nullable=False, index=True
    )

    line_date = Column(Date, nullable=False)
    line_type = Column(SQLEnum(LineType), nullable=False)
    description = Column(String(500), nullable=True)

    currency_code = Column(String(3), nullable=True)
    currency_evidence = Column(SQLEnum(Evidence), nullable=False, default=Evidence.INFERRED)
    classification_evidence = Column(SQLEnum(Evidence), nullable=False, default=Evidence.INFERRED)

    is_metric = Column(Boolean, nullable=False, default=False)
    metric_key = Column(String(100), nullable=True)
    metric_value = Column(MetricNumber, nullable=True)
    unit = Column(String(20), nullable=True)

    money_amount = Column(Money, nullable=True)
    tax_amount = Column(Money, nullable=True)

    statement = relationship("Statement", back_populates="lines")

    __table_args__ = (
        CheckConstraint(
            "NOT (is_metric AND (money_amount IS NOT NULL OR tax_amount IS NOT NULL))",
            name="ck_statement_lines_metric_xor_money",
        ),
    )

    def __init__(self, **kwargs):
        if kwargs.get("is_metric") and (
            kwargs.get("money_amount") is not None or kwargs.get("tax_amount") is not None
        ):
            raise ValueError("Metric statement lines cannot carry money or tax amounts")
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        if self.is_metric:
            return f"<StatementLine metric {self.metric_key}={self.metric_value}{self.unit or ''}>"
        return f"<StatementLine {self.line_type} {self.description!r} {self.money_amount}/{self.tax_amount}>"

    @property
    def is_fully_evidenced(self) -> bool:
        """Both currency and classification were read directly from the document."""
        return (
            self.currency_evidence == Evidence.EXTRACTED
            and self.classification_evidence == Evidence.EXTRACTED
        )

    def money_or_zero(self) -> Decimal:
        return self.money_amount if self.money_amount is not None else Decimal("0")

    def tax_or_zero(self) -> Decimal:
        return self.tax_amount if self.tax_amount is not None else Decimal("0")

    def amount_for(self, line_type: Optional[LineType] = None) -> Decimal:
        """Relevant value for totals: tax for tax-only lines, money otherwise."""
        line_type = line_type or self.line_type
        if line_type.is_tax_only:
            return self.tax_or_zero()
        return self.money_or_zero()
