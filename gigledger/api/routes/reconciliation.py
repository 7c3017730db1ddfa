"""
Reconciliation API routes.
"""
import structlog
from fastapi import APIRouter, Depends, Path
from sqlalchemy.orm import Session

from gigledger.api.dependencies import get_publisher, get_tenant_context
from gigledger.context import TenantContext
from gigledger.database import get_db
from gigledger.messaging.publisher import MessagePublisher
from gigledger.models.reconciliation import ReconciliationRun
from gigledger.schemas.common import ErrorResponse
from gigledger.schemas.reconciliation import ReconciliationRunResponse
from gigledger.services.reconciliation import ReconciliationEngine
from gigledger.services.statement_intake import normalize_provider

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post(
    "/reconciliation/{provider}/{year}",
    response_model=ReconciliationRunResponse,
    responses={400: {"model": ErrorResponse, "description": "No Yearly statement for the year"}},
    summary="Reconcile monthly statements against the yearly statement",
)
def run_reconciliation(
    provider: str,
    year: int = Path(..., ge=2000, le=2100),
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
    publisher: MessagePublisher = Depends(get_publisher),
) -> ReconciliationRun:
    with ctx.bound(route="run_reconciliation"):
        return ReconciliationEngine(publisher).reconcile(db, ctx, normalize_provider(provider), year)
