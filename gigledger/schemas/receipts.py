"""
Pydantic schemas for receipt endpoints.
"""
from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ReceiptUploadResponse(BaseModel):
    """Response for a receipt upload."""

    receipt_id: UUID = Field(..., description="Receipt identifier")
    file_object_id: UUID = Field(..., description="Stored file")
    status: str = Field(..., description="Receipt status")


class ReceiptResolveRequest(BaseModel):
    """Reviewed fields for a held receipt; omitted fields keep the extracted value."""

    vendor: Optional[str] = Field(None, max_length=255)
    receipt_date: Optional[date] = None
    total: Optional[Decimal] = Field(None, description="Receipt total including tax")
    tax: Optional[Decimal] = Field(None, description="GST/HST paid")


class ReceiptResolveResponse(BaseModel):
    receipt_id: UUID
    status: str
    vendor: Optional[str] = None
    receipt_date: Optional[date] = None
    total: Optional[str] = None
    tax: Optional[str] = None
