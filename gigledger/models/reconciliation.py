"""
Reconciliation models.

A run compares summed Monthly statements with the Yearly statement of the
same provider and year. It is upserted by natural key and owns one variance
row per compared metric.
"""
import uuid
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from gigledger.database import Base
from gigledger.models.types import UUID, MetricNumber, Money, utcnow


class ReconciliationStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class ReconciliationRun(Base):
    """One monthly-vs-yearly comparison."""

    __tablename__ = "reconciliation_runs"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False, index=True)

    provider = Column(String(100), nullable=False)
    period_type = Column(String(20), nullable=False, default="Yearly")
    period_key = Column(String(20), nullable=False)
    yearly_statement_id = Column(UUID(), ForeignKey("statements.id"), nullable=True)

    monthly_income_total = Column(Money, nullable=False, default=Decimal("0"))
    yearly_income_total = Column(Money, nullable=False, default=Decimal("0"))
    variance_amount = Column(Money, nullable=False, default=Decimal("0"))
    status = Column(SQLEnum(ReconciliationStatus), default=ReconciliationStatus.PENDING, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    variances = relationship(
        "ReconciliationVariance",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="ReconciliationVariance.metric_key",
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "provider", "period_type", "period_key",
            name="uq_reconciliation_runs_natural_key",
        ),
    )

    def __repr__(self) -> str:
        return f"<ReconciliationRun {self.provider} {self.period_key} status={self.status}>"

    def mark_completed(self) -> None:
        self.status = ReconciliationStatus.COMPLETED
        self.completed_at = utcnow()


class ReconciliationVariance(Base):
    """Monthly total minus yearly total for one metric."""

    __tablename__ = "reconciliation_variances"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False, index=True)
    reconciliation_run_id = Column(
        UUID(), ForeignKey("reconciliation_runs.id", ondelete="CASCADE"), nullable=False
    )

    metric_key = Column(String(100), nullable=False)
    monthly_value = Column(MetricNumber, nullable=False, default=Decimal("0"))
    yearly_value = Column(MetricNumber, nullable=False, default=Decimal("0"))
    variance_amount = Column(MetricNumber, nullable=False, default=Decimal("0"))
    notes = Column(String(500), nullable=True)

    run = relationship("ReconciliationRun", back_populates="variances")

    __table_args__ = (
        UniqueConstraint("reconciliation_run_id", "metric_key", name="uq_reconciliation_variances_metric"),
    )
