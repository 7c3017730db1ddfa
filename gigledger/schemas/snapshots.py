"""
Pydantic schemas for snapshot endpoints.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SnapshotDetailResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    metric_key: str
    value: Decimal
    evidence_pct: Decimal
    estimated_pct: Decimal


class SnapshotResponse(BaseModel):
    """Aggregated totals for one period bucket."""

    model_config = ConfigDict(from_attributes=True)

    period_type: str
    period_key: str
    calculated_at: datetime
    authority_score: int = Field(..., ge=0, le=100, description="Evidence-weighted confidence")
    evidence_pct: Decimal
    estimated_pct: Decimal
    totals_json: Optional[Dict[str, Any]] = None
    details: List[SnapshotDetailResponse] = Field(default_factory=list)
