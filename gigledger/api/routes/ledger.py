"""
Ledger API routes.

Manual entries and corrections; the ledger itself is append-only.
"""
from datetime import date
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from gigledger.api.dependencies import get_publisher, get_tenant_context
from gigledger.context import TenantContext
from gigledger.database import get_db
from gigledger.messaging.publisher import MessagePublisher
from gigledger.models.ledger import LedgerEntry
from gigledger.schemas.common import ErrorResponse
from gigledger.schemas.ledger import (
    AdjustmentRequest,
    AdjustmentResponse,
    LedgerEntryResponse,
    ManualEntryRequest,
    ManualEntryResponse,
)
from gigledger.services.posting import post_adjustment, post_manual_entry

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post(
    "/ledger/manual",
    response_model=ManualEntryResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse, "description": "Invalid lines"}},
    summary="Post a manual ledger entry",
)
def create_manual_entry(
    request: ManualEntryRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
    publisher: MessagePublisher = Depends(get_publisher),
) -> ManualEntryResponse:
    with ctx.bound(route="create_manual_entry"):
        entry_id = post_manual_entry(
            db, ctx, publisher,
            [line.to_input() for line in request.lines],
            entry_date=request.entry_date,
            idempotency_key=request.idempotency_key,
        )
    return ManualEntryResponse(ledger_entry_id=entry_id)


@router.post(
    "/ledger/adjustments",
    response_model=AdjustmentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse, "description": "Entry to correct is missing or empty"}},
    summary="Correct a posted entry",
)
def create_adjustment(
    request: AdjustmentRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
    publisher: MessagePublisher = Depends(get_publisher),
) -> AdjustmentResponse:
    with ctx.bound(route="create_adjustment"):
        reversal_id, corrected_id = post_adjustment(
            db, ctx, publisher,
            request.reverse_entry_id,
            [line.to_input() for line in request.lines],
            idempotency_key=request.idempotency_key,
        )
    return AdjustmentResponse(reversal_entry_id=reversal_id, corrected_entry_id=corrected_id)


@router.get("/ledger", response_model=List[LedgerEntryResponse], summary="List ledger entries")
def list_entries(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> List[LedgerEntry]:
    query = db.query(LedgerEntry).filter(LedgerEntry.tenant_id == ctx.tenant_id)
    if start:
        query = query.filter(LedgerEntry.entry_date >= start)
    if end:
        query = query.filter(LedgerEntry.entry_date <= end)
    return query.order_by(LedgerEntry.entry_date, LedgerEntry.created_at).limit(limit).all()
