"""
Receipt models.

A Receipt is one uploaded expense document; ReceiptExtraction keeps each
extraction attempt with its confidence and normalized fields.
"""
import uuid
from enum import Enum

from sqlalchemy import Column, Date, DateTime, Enum as SQLEnum, ForeignKey, JSON, String, Text
from sqlalchemy.orm import relationship

from gigledger.database import Base
from gigledger.models.types import UUID, Money, Ratio, utcnow


class ReceiptStatus(str, Enum):
    """Receipt lifecycle."""
    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    HOLD = "Hold"
    READY_FOR_POSTING = "ReadyForPosting"
    POSTED = "Posted"


class Receipt(Base):
    """One uploaded expense receipt."""

    __tablename__ = "receipts"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False, index=True)
    file_object_id = Column(UUID(), ForeignKey("file_objects.id"), nullable=False)

    status = Column(SQLEnum(ReceiptStatus), default=ReceiptStatus.DRAFT, nullable=False)
    hold_reason = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    extractions = relationship(
        "ReceiptExtraction",
        back_populates="receipt",
        order_by="ReceiptExtraction.extracted_at",
        cascade="all, delete-orphan",
    )
    file_object = relationship("FileObject")

    def __repr__(self) -> str:
        return f"<Receipt {self.id} status={self.status}>"

    @property
    def latest_extraction(self):
        return self.extractions[-1] if self.extractions else None

    @property
    def is_hold(self) -> bool:
        return self.status == ReceiptStatus.HOLD


class ReceiptExtraction(Base):
    """Fields extracted from a receipt by one analyzer run."""

    __tablename__ = "receipt_extractions"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False, index=True)
    receipt_id = Column(UUID(), ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False)

    model_version = Column(String(50), nullable=False)
    vendor_name = Column(String(255), nullable=True)
    receipt_date = Column(Date, nullable=True)
    total = Column(Money, nullable=True)
    tax = Column(Money, nullable=True)
    currency_code = Column(String(3), nullable=True)
    confidence = Column(Ratio, nullable=False)
    normalized_fields_json = Column(JSON, nullable=True)
    raw_text = Column(Text, nullable=True)

    extracted_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    receipt = relationship("Receipt", back_populates="extractions")
