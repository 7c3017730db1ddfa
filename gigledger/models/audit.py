"""
Audit event model.

Every pipeline write and every handler failure leaves an audit row carrying
the tenant, correlation id and a JSON metadata payload.
"""
import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, Index, JSON, String

from gigledger.database import Base
from gigledger.models.types import UUID, utcnow


class AuditAction(str, Enum):
    """Types of auditable pipeline actions."""
    # Statements
    STATEMENT_UPLOADED = "statement.uploaded"
    STATEMENT_PARSED = "statement.parsed"
    STATEMENT_EXTRACT_FAILED = "statement.extract.failed"
    STATEMENT_DEMOTED = "statement.demoted"

    # Receipts
    RECEIPT_SUBMITTED = "receipt.submitted"
    RECEIPT_EXTRACTED = "receipt.extracted"
    RECEIPT_HOLD = "receipt.hold"
    RECEIPT_HOLD_RESOLVED = "receipt.hold.resolved"
    RECEIPT_EXTRACT_FAILED = "receipt.extract.failed"

    # Ledger
    LEDGER_POSTED = "ledger.posted"
    LEDGER_POST_SKIPPED = "ledger.post.skipped"
    LEDGER_POST_BLOCKED = "ledger.post.blocked"
    LEDGER_POST_FAILED = "ledger.post.failed"
    LEDGER_MANUAL_POSTED = "ledger.manual.posted"
    LEDGER_ADJUSTMENT_POSTED = "ledger.adjustment.posted"
    LEDGER_RECONCILIATION_POSTED = "ledger.reconciliation.posted"
    LEDGER_RECONCILIATION_NOOP = "ledger.reconciliation.noop"

    # Reconciliation
    RECONCILIATION_COMPLETED = "reconciliation.completed"
    RECONCILIATION_FAILED = "reconciliation.failed"

    # Snapshots
    SNAPSHOT_UPDATED = "snapshot.updated"
    SNAPSHOT_COMPUTE_FAILED = "snapshot.compute.failed"


class AuditEvent(Base):
    """Immutable record of a pipeline action."""

    __tablename__ = "audit_events"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False)

    actor_user_id = Column(String(100), nullable=False, default="system")
    action = Column(String(100), nullable=False)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String(100), nullable=False)
    occurred_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    correlation_id = Column(String(64), nullable=True)
    metadata_json = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_audit_events_tenant_occurred", "tenant_id", "occurred_at"),
        Index("ix_audit_events_entity", "entity_type", "entity_id"),
    )

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} {self.entity_type}:{self.entity_id}>"
