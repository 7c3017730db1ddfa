"""
Ledger models.

A LedgerEntry is an immutable posting identified by
(tenant_id, source_type, source_id); that triple is the idempotency anchor
for every posting handler. Corrections are new reversal/corrected entries,
never updates. A session-level listener rejects UPDATE and DELETE of any
ledger row.
"""
import uuid
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Session, relationship

from gigledger.database import Base
from gigledger.exceptions import LedgerImmutabilityError
from gigledger.models.statement import LineType
from gigledger.models.types import UUID, Money, Ratio, utcnow


class LedgerSourceType(str, Enum):
    """Kind of upstream fact a ledger entry was posted from."""
    RECEIPT = "Receipt"
    STATEMENT = "Statement"
    RECONCILIATION = "Reconciliation"
    MANUAL = "Manual"
    ADJUSTMENT = "Adjustment"


class LedgerEntry(Base):
    """One immutable posting."""

    __tablename__ = "ledger_entries"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False, index=True)

    entry_date = Column(Date, nullable=False, index=True)
    source_type = Column(SQLEnum(LedgerSourceType), nullable=False)
    source_id = Column(String(100), nullable=False)
    posted_by = Column(String(50), nullable=False, default="System")
    correlation_id = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    lines = relationship(
        "LedgerLine",
        back_populates="entry",
        cascade="save-update, merge",
        order_by="LedgerLine.created_at",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "source_type", "source_id", name="uq_ledger_entries_source"),
    )

    def __repr__(self) -> str:
        return f"<LedgerEntry {self.id} {self.source_type}:{self.source_id} date={self.entry_date}>"


class LedgerLine(Base):
    """One monetary effect of a ledger entry."""

    __tablename__ = "ledger_lines"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False, index=True)
    ledger_entry_id = Column(UUID(), ForeignKey("ledger_entries.id"), nullable=False, index=True)

    line_type = Column(SQLEnum(LineType), nullable=False)
    category_id = Column(UUID(), nullable=True)
    amount = Column(Money, nullable=False, default=Decimal("0"))
    gst_hst = Column(Money, nullable=False, default=Decimal("0"))
    deductible_pct = Column(Ratio, nullable=False, default=Decimal("1"))
    memo = Column(String(500), nullable=True)
    account_code = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    entry = relationship("LedgerEntry", back_populates="lines")
    source_links = relationship(
        "LedgerSourceLink", back_populates="line", cascade="save-update, merge"
    )

    def __repr__(self) -> str:
        return f"<LedgerLine {self.line_type} amount={self.amount} gst_hst={self.gst_hst}>"


class LedgerSourceLink(Base):
    """
    Traceability from a ledger line back to the document fact it came from.

    statement_line_id is a plain reference (no foreign key) because
    re-extraction replaces statement lines while ledger rows stay immutable.
    """

    __tablename__ = "ledger_source_links"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False, index=True)
    ledger_line_id = Column(UUID(), ForeignKey("ledger_lines.id"), nullable=False)

    receipt_id = Column(UUID(), ForeignKey("receipts.id"), nullable=True)
    statement_line_id = Column(UUID(), nullable=True, index=True)
    file_object_id = Column(UUID(), ForeignKey("file_objects.id"), nullable=True)

    line = relationship("LedgerLine", back_populates="source_links")

    __table_args__ = (
        UniqueConstraint(
            "ledger_line_id", "receipt_id", "file_object_id",
            name="uq_ledger_source_links_receipt",
        ),
        UniqueConstraint(
            "ledger_line_id", "statement_line_id", "file_object_id",
            name="uq_ledger_source_links_statement_line",
        ),
        Index("ix_ledger_source_links_line", "ledger_line_id"),
    )


IMMUTABLE_LEDGER_TYPES = (LedgerEntry, LedgerLine, LedgerSourceLink)


@event.listens_for(Session, "before_flush")
def _reject_ledger_mutation(session, flush_context, instances) -> None:
    """Block UPDATE/DELETE of posted ledger rows before any SQL is emitted."""
    for obj in session.deleted:
        if isinstance(obj, IMMUTABLE_LEDGER_TYPES):
            raise LedgerImmutabilityError(type(obj).__name__)

    for obj in session.dirty:
        if isinstance(obj, IMMUTABLE_LEDGER_TYPES) and session.is_modified(
            obj, include_collections=False
        ):
            raise LedgerImmutabilityError(type(obj).__name__)
