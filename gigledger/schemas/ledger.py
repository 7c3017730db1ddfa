"""
Pydantic schemas for ledger endpoints.
"""
from datetime import date
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from gigledger.models.ledger import LedgerSourceType
from gigledger.models.statement import LineType
from gigledger.services.posting import ManualLineInput


class LedgerLineRequest(BaseModel):
    """One line of a manual entry or correction."""

    line_type: LineType = Field(..., description="Income, Fee, TaxCollected, Itc, Expense or Other")
    amount: Decimal = Field(..., description="Line amount; must not be zero")
    gst_hst: Decimal = Field(Decimal("0"), description="GST/HST portion")
    category_id: Optional[UUID] = None
    deductible_pct: Decimal = Field(Decimal("1.0"), ge=0, le=1)
    memo: Optional[str] = Field(None, max_length=500)
    account_code: Optional[str] = Field(None, max_length=50)

    def to_input(self) -> ManualLineInput:
        return ManualLineInput(
            line_type=self.line_type,
            amount=self.amount,
            gst_hst=self.gst_hst,
            category_id=self.category_id,
            deductible_pct=self.deductible_pct,
            memo=self.memo,
            account_code=self.account_code,
        )


class ManualEntryRequest(BaseModel):
    """Manual ledger entry."""

    entry_date: Optional[date] = None
    idempotency_key: Optional[str] = Field(None, max_length=80)
    lines: List[LedgerLineRequest] = Field(..., description="At least one line")


class AdjustmentRequest(BaseModel):
    """Correction of a posted entry."""

    reverse_entry_id: UUID = Field(..., description="Entry being corrected")
    idempotency_key: Optional[str] = Field(None, max_length=80)
    lines: List[LedgerLineRequest] = Field(..., description="Corrected lines")


class ManualEntryResponse(BaseModel):
    ledger_entry_id: UUID


class AdjustmentResponse(BaseModel):
    reversal_entry_id: UUID
    corrected_entry_id: UUID


class LedgerLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    line_type: LineType
    amount: Decimal
    gst_hst: Decimal
    deductible_pct: Decimal
    memo: Optional[str] = None
    account_code: Optional[str] = None


class LedgerEntryResponse(BaseModel):
    """Posted ledger entry with its lines."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entry_date: date
    source_type: LedgerSourceType
    source_id: str
    posted_by: str
    lines: List[LedgerLineResponse] = Field(default_factory=list)
