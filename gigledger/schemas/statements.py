"""
Pydantic schemas for statement endpoints.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from gigledger.models.statement import Evidence, LineType, PeriodType, StatementStatus


class StatementLineResponse(BaseModel):
    """One normalized statement line."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    line_date: date
    line_type: LineType
    description: Optional[str] = None
    currency_code: Optional[str] = None
    currency_evidence: Evidence
    classification_evidence: Evidence
    is_metric: bool
    metric_key: Optional[str] = None
    metric_value: Optional[Decimal] = None
    unit: Optional[str] = None
    money_amount: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None


class StatementResponse(BaseModel):
    """Statement header with rollups."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Statement identifier")
    provider: str = Field(..., description="Gig platform")
    period_type: PeriodType = Field(..., description="Monthly, Quarterly, YTD or Yearly")
    period_key: str = Field(..., description="YYYY-MM, YYYY-Qn or YYYY")
    period_start: date
    period_end: date
    status: StatementStatus = Field(..., description="Draft, Submitted, ReconciliationOnly or Posted")
    currency_code: Optional[str] = None
    income_total: Decimal = Decimal("0")
    fee_total: Decimal = Decimal("0")
    tax_total: Decimal = Decimal("0")
    line_count: int = 0
    created_at: Optional[datetime] = None


class StatementDetailResponse(StatementResponse):
    """Statement with its lines."""

    lines: List[StatementLineResponse] = Field(default_factory=list)


class StatementUploadResponse(BaseModel):
    """Response for a statement upload."""

    statement_id: UUID = Field(..., description="Created statement")
    file_object_id: UUID = Field(..., description="Stored file")
    status: str = Field(..., description="Initial status")
    provider: str
    period_type: str
    period_key: str
    posted_to_ledger: bool = Field(..., description="False when stored for reconciliation only")


class StatementListResponse(BaseModel):
    """Paginated statement list."""

    items: List[StatementResponse]
    total: int
