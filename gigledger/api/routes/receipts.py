"""
Receipt API routes.
"""
import uuid

import structlog
from fastapi import APIRouter, Depends, File, UploadFile, status
from sqlalchemy.orm import Session

from gigledger.api.dependencies import get_object_store, get_publisher, get_tenant_context
from gigledger.context import TenantContext
from gigledger.database import get_db
from gigledger.messaging.publisher import MessagePublisher
from gigledger.schemas.common import ErrorResponse
from gigledger.schemas.receipts import ReceiptResolveRequest, ReceiptResolveResponse, ReceiptUploadResponse
from gigledger.services.receipts import resolve_receipt_hold, upload_receipt
from gigledger.storage import ObjectStore

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post(
    "/receipts",
    response_model=ReceiptUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={413: {"model": ErrorResponse, "description": "File too large"}},
    summary="Upload an expense receipt",
)
async def create_receipt(
    file: UploadFile = File(...),
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    publisher: MessagePublisher = Depends(get_publisher),
) -> ReceiptUploadResponse:
    """Store a receipt and queue it for extraction."""
    content = await file.read()
    with ctx.bound(route="create_receipt"):
        receipt = upload_receipt(
            db, ctx, store, publisher, content,
            file.content_type or "application/octet-stream",
            filename=file.filename,
        )
    return ReceiptUploadResponse(
        receipt_id=receipt.id,
        file_object_id=receipt.file_object_id,
        status=receipt.status.value,
    )


@router.post(
    "/receipts/{receipt_id}/resolve",
    response_model=ReceiptResolveResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Receipt is not held or fields are still invalid"},
        404: {"model": ErrorResponse, "description": "Receipt not found"},
    },
    summary="Release a held receipt for posting",
)
def resolve_receipt(
    receipt_id: uuid.UUID,
    request: ReceiptResolveRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
    publisher: MessagePublisher = Depends(get_publisher),
) -> ReceiptResolveResponse:
    with ctx.bound(route="resolve_receipt"):
        receipt = resolve_receipt_hold(
            db, ctx, publisher, receipt_id,
            vendor=request.vendor,
            receipt_date=request.receipt_date,
            total=request.total,
            tax=request.tax,
        )
    extraction = receipt.latest_extraction
    return ReceiptResolveResponse(
        receipt_id=receipt.id,
        status=receipt.status.value,
        vendor=extraction.vendor_name,
        receipt_date=extraction.receipt_date,
        total=str(extraction.total) if extraction.total is not None else None,
        tax=str(extraction.tax) if extraction.tax is not None else None,
    )
