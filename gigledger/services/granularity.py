"""
Granularity policy for statements.

Within one (tenant, provider, calendar year of period_start) only the most
granular statements may post: Monthly beats Quarterly beats Yearly/YTD.
Anything outranked is kept for reconciliation only.
"""
from datetime import date
from typing import Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from gigledger.context import TenantContext
from gigledger.models.audit import AuditAction
from gigledger.models.statement import PeriodType, Statement, StatementStatus
from gigledger.services.audit import log_audit_event

logger = structlog.get_logger(__name__)

GRANULARITY_RANK = {
    PeriodType.MONTHLY: 3,
    PeriodType.QUARTERLY: 2,
    PeriodType.YEARLY: 1,
    PeriodType.YTD: 1,
}


def rank_of(period_type: PeriodType) -> int:
    return GRANULARITY_RANK.get(PeriodType(period_type), 0)


def best_rank_for_year(
    db: Session,
    tenant_id,
    provider: str,
    year: int,
    exclude_id=None,
) -> int:
    """Highest rank among the tenant's statements for a provider and year."""
    query = db.query(Statement.period_type).filter(
        Statement.tenant_id == tenant_id,
        func.lower(Statement.provider) == provider.lower(),
        Statement.period_start >= date(year, 1, 1),
        Statement.period_start <= date(year, 12, 31),
    )
    if exclude_id is not None:
        query = query.filter(Statement.id != exclude_id)
    return max((rank_of(row.period_type) for row in query.all()), default=0)


def is_outranked(
    db: Session,
    tenant_id,
    provider: str,
    period_type: PeriodType,
    period_start: date,
    exclude_id=None,
) -> bool:
    return best_rank_for_year(db, tenant_id, provider, period_start.year, exclude_id) > rank_of(period_type)


def initial_status(
    db: Session,
    tenant_id,
    provider: str,
    period_type: PeriodType,
    period_start: date,
    exclude_id: Optional[object] = None,
) -> StatementStatus:
    """Status for a newly uploaded or resubmitted statement."""
    if is_outranked(db, tenant_id, provider, period_type, period_start, exclude_id):
        return StatementStatus.RECONCILIATION_ONLY
    return StatementStatus.SUBMITTED


def ensure_may_post(db: Session, ctx: TenantContext, statement: Statement) -> bool:
    """
    Re-evaluate granularity at posting time.

    Demotes an outranked statement to ReconciliationOnly (not committed) and
    returns False; returns True when the statement may post.
    """
    if not is_outranked(
        db, statement.tenant_id, statement.provider, statement.period_type,
        statement.period_start, exclude_id=statement.id,
    ):
        return True

    statement.status = StatementStatus.RECONCILIATION_ONLY
    log_audit_event(
        db, ctx,
        action=AuditAction.STATEMENT_DEMOTED,
        entity_type="Statement",
        entity_id=statement.id,
        metadata={
            "provider": statement.provider,
            "period_type": PeriodType(statement.period_type).value,
            "period_key": statement.period_key,
        },
    )
    logger.info(
        "statement_demoted",
        statement_id=str(statement.id),
        provider=statement.provider,
        period_key=statement.period_key,
    )
    return False
