"""
Snapshot API routes.
"""
import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from gigledger.api.dependencies import get_tenant_context
from gigledger.context import TenantContext
from gigledger.database import get_db
from gigledger.exceptions import InvalidPeriodKeyError, NotFoundError, ValidationError
from gigledger.models.snapshot import LedgerSnapshot
from gigledger.schemas.common import ErrorResponse
from gigledger.schemas.snapshots import SnapshotResponse
from gigledger.services.snapshots import period_range

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/snapshots/{period_type}/{period_key}",
    response_model=SnapshotResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed period key"},
        404: {"model": ErrorResponse, "description": "No snapshot computed yet"},
    },
    summary="Get a period snapshot",
)
def get_snapshot(
    period_type: str,
    period_key: str,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> LedgerSnapshot:
    try:
        period_range(period_type, period_key)
    except InvalidPeriodKeyError as e:
        raise ValidationError(e.message, details=e.details)

    snapshot = (
        db.query(LedgerSnapshot)
        .filter(
            LedgerSnapshot.tenant_id == ctx.tenant_id,
            LedgerSnapshot.period_type == period_type,
            LedgerSnapshot.period_key == period_key,
        )
        .first()
    )
    if snapshot is None:
        raise NotFoundError("LedgerSnapshot", f"{period_type}:{period_key}")
    return snapshot
