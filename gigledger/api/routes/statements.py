"""
Statement API routes.

Upload, submit and browse gig-platform statements.
"""
import uuid
from datetime import date
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from sqlalchemy.orm import Session

from gigledger.api.dependencies import get_object_store, get_publisher, get_tenant_context
from gigledger.context import TenantContext
from gigledger.database import get_db
from gigledger.exceptions import NotFoundError, UnsupportedContentTypeError, ValidationError
from gigledger.messaging.publisher import MessagePublisher
from gigledger.models.statement import PeriodType, Statement
from gigledger.schemas.common import ErrorResponse
from gigledger.schemas.statements import (
    StatementDetailResponse,
    StatementListResponse,
    StatementResponse,
    StatementUploadResponse,
)
from gigledger.services.statement_intake import StatementIntakeService
from gigledger.storage import ObjectStore

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_intake_service(
    store: ObjectStore = Depends(get_object_store),
    publisher: MessagePublisher = Depends(get_publisher),
) -> StatementIntakeService:
    return StatementIntakeService(store=store, publisher=publisher)


@router.post(
    "/statements",
    response_model=StatementUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse, "description": "Unsupported provider or unreadable period or file type"},
        409: {"model": ErrorResponse, "description": "Duplicate statement"},
        413: {"model": ErrorResponse, "description": "File too large"},
    },
    summary="Upload a statement",
)
async def upload_statement(
    file: UploadFile = File(...),
    provider: Optional[str] = Form(None),
    period_type: Optional[PeriodType] = Form(None),
    period_key: Optional[str] = Form(None),
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
    intake: StatementIntakeService = Depends(get_intake_service),
) -> StatementUploadResponse:
    """Store a statement and start extraction."""
    content = await file.read()
    content_type = file.content_type or "application/octet-stream"

    with ctx.bound(route="upload_statement"):
        try:
            uploaded = intake.upload(
                db, ctx, content, content_type,
                filename=file.filename,
                provider=provider,
                period_type=period_type,
                period_key=period_key,
            )
        except UnsupportedContentTypeError as e:
            raise ValidationError(e.message, details=e.details)

    statement = uploaded.statement
    return StatementUploadResponse(
        statement_id=statement.id,
        file_object_id=uploaded.file_object.id,
        status=statement.status.value,
        provider=statement.provider,
        period_type=statement.period_type.value,
        period_key=statement.period_key,
        posted_to_ledger=uploaded.posted_to_ledger,
    )


@router.post(
    "/statements/{statement_id}/submit",
    response_model=StatementResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        404: {"model": ErrorResponse, "description": "Statement not found"},
        409: {"model": ErrorResponse, "description": "Posting blocked by granularity rules"},
    },
    summary="Submit a statement for posting",
)
def submit_statement(
    statement_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
    intake: StatementIntakeService = Depends(get_intake_service),
) -> Statement:
    with ctx.bound(route="submit_statement"):
        return intake.submit(db, ctx, statement_id)


@router.get("/statements", response_model=StatementListResponse, summary="List statements")
def list_statements(
    provider: Optional[str] = Query(None),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> StatementListResponse:
    query = db.query(Statement).filter(Statement.tenant_id == ctx.tenant_id)
    if provider:
        query = query.filter(Statement.provider == provider)
    if year:
        query = query.filter(
            Statement.period_start >= date(year, 1, 1),
            Statement.period_start <= date(year, 12, 31),
        )

    total = query.count()
    statements = query.order_by(Statement.period_start).offset(skip).limit(limit).all()

    return StatementListResponse(
        items=[StatementResponse.model_validate(s) for s in statements],
        total=total,
    )


@router.get(
    "/statements/{statement_id}",
    response_model=StatementDetailResponse,
    responses={404: {"model": ErrorResponse, "description": "Statement not found"}},
    summary="Get a statement with its lines",
)
def get_statement(
    statement_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> Statement:
    statement = (
        db.query(Statement)
        .filter(Statement.tenant_id == ctx.tenant_id, Statement.id == statement_id)
        .first()
    )
    if statement is None:
        raise NotFoundError("Statement", str(statement_id))
    return statement
