"""
Audit event writer.

Adds an AuditEvent to the caller's session; the handler's single commit
persists it together with the change it describes.
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.orm import Session

from gigledger.context import TenantContext
from gigledger.models.audit import AuditAction, AuditEvent

logger = structlog.get_logger(__name__)


def log_audit_event(
    db: Session,
    ctx: TenantContext,
    action: AuditAction,
    entity_type: str,
    entity_id: Any,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditEvent:
    """
    Record an audit event for the current tenant.

    Example:
        log_audit_event(
            db, ctx,
            action=AuditAction.LEDGER_POSTED,
            entity_type="LedgerEntry",
            entity_id=entry.id,
            metadata={"source_type": "Statement"},
        )
    """
    event = AuditEvent(
        tenant_id=ctx.tenant_id,
        actor_user_id=ctx.actor,
        action=action.value,
        entity_type=entity_type,
        entity_id=str(entity_id),
        correlation_id=ctx.correlation_id,
        metadata_json=metadata or {},
    )
    db.add(event)
    logger.debug("audit_event_recorded", action=action.value, entity_type=entity_type, entity_id=str(entity_id))
    return event
