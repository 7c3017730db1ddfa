"""
Pydantic schemas for reconciliation endpoints.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from gigledger.models.reconciliation import ReconciliationStatus


class VarianceResponse(BaseModel):
    """Monthly minus yearly for one metric."""

    model_config = ConfigDict(from_attributes=True)

    metric_key: str
    monthly_value: Decimal
    yearly_value: Decimal
    variance_amount: Decimal
    notes: Optional[str] = None


class ReconciliationRunResponse(BaseModel):
    """Result of a reconciliation run."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Run identifier")
    provider: str
    period_key: str = Field(..., description="Reconciled year")
    status: ReconciliationStatus
    monthly_income_total: Decimal
    yearly_income_total: Decimal
    variance_amount: Decimal
    completed_at: Optional[datetime] = None
    variances: List[VarianceResponse] = Field(default_factory=list)
