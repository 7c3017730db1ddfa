"""
Ledger snapshot models.

A snapshot is recomputed in place for (tenant, period type, period key);
details hold one row per reported metric.
"""
import uuid
from decimal import Decimal

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import relationship

from gigledger.database import Base
from gigledger.models.types import UUID, Money, Ratio, utcnow


class LedgerSnapshot(Base):
    """Aggregate totals for one reporting bucket."""

    __tablename__ = "ledger_snapshots"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False, index=True)

    period_type = Column(String(20), nullable=False)
    period_key = Column(String(20), nullable=False)
    calculated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    authority_score = Column(Integer, nullable=False, default=0)
    evidence_pct = Column(Ratio, nullable=False, default=Decimal("0"))
    estimated_pct = Column(Ratio, nullable=False, default=Decimal("1"))
    totals_json = Column(JSON, nullable=True)

    details = relationship(
        "SnapshotDetail",
        back_populates="snapshot",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "period_type", "period_key", name="uq_ledger_snapshots_period"),
    )

    def __repr__(self) -> str:
        return f"<LedgerSnapshot {self.period_type}:{self.period_key} authority={self.authority_score}>"

    def detail(self, metric_key: str) -> "SnapshotDetail":
        for d in self.details:
            if d.metric_key == metric_key:
                return d
        raise KeyError(metric_key)


class SnapshotDetail(Base):
    """One metric value inside a snapshot."""

    __tablename__ = "snapshot_details"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False, index=True)
    snapshot_id = Column(UUID(), ForeignKey("ledger_snapshots.id", ondelete="CASCADE"), nullable=False)

    metric_key = Column(String(50), nullable=False)
    value = Column(Money, nullable=False, default=Decimal("0"))
    evidence_pct = Column(Ratio, nullable=False, default=Decimal("0"))
    estimated_pct = Column(Ratio, nullable=False, default=Decimal("1"))

    snapshot = relationship("LedgerSnapshot", back_populates="details")

    __table_args__ = (
        UniqueConstraint("snapshot_id", "metric_key", name="uq_snapshot_details_metric"),
    )
