"""
Statement posting handler (``statement.parsed`` -> ``ledger.posted``).

Posts one LedgerEntry per Statement, one LedgerLine per monetary
StatementLine. ReconciliationOnly and outranked statements never post.
"""
import uuid
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from gigledger.context import CancellationToken, TenantContext
from gigledger.exceptions import NotFoundError, RaceConditionError
from gigledger.models.audit import AuditAction
from gigledger.models.job import JobType
from gigledger.models.ledger import LedgerLine, LedgerSourceLink, LedgerSourceType
from gigledger.models.statement import Statement, StatementStatus
from gigledger.services.audit import log_audit_event
from gigledger.services.granularity import ensure_may_post
from gigledger.services.posting.base import (
    PipelineHandler,
    commit_posting,
    find_entry,
    new_entry,
    publish_ledger_posted,
)
from gigledger.services.processing_jobs import (
    is_already_succeeded,
    mark_job_succeeded,
    record_job_failure,
    start_job,
)

logger = structlog.get_logger(__name__)

JOB_TYPE = JobType.LEDGER_POST_STATEMENT


def statement_dedupe_key(statement_id) -> str:
    return f"ledger.post:statement:{statement_id}"


class StatementPostingHandler(PipelineHandler):
    """Posts parsed statements to the ledger."""

    name = "ledger.post.statement"

    def process(
        self, db: Session, ctx: TenantContext, data: dict, cancellation: CancellationToken
    ) -> Optional[uuid.UUID]:
        statement_id = uuid.UUID(str(data["statement_id"]))
        dedupe_key = statement_dedupe_key(statement_id)

        if is_already_succeeded(db, ctx, JOB_TYPE, dedupe_key):
            return None

        try:
            job = start_job(db, ctx, JOB_TYPE, dedupe_key)

            statement = (
                db.query(Statement)
                .filter(Statement.tenant_id == ctx.tenant_id, Statement.id == statement_id)
                .first()
            )
            if statement is None:
                raise NotFoundError("Statement", str(statement_id))

            if statement.status == StatementStatus.POSTED:
                job.mark_succeeded()
                commit_posting(db, cancellation)
                logger.info("statement_already_posted", statement_id=str(statement_id))
                return None

            if statement.status == StatementStatus.RECONCILIATION_ONLY or not ensure_may_post(db, ctx, statement):
                log_audit_event(
                    db, ctx,
                    action=AuditAction.LEDGER_POST_BLOCKED,
                    entity_type="Statement",
                    entity_id=statement.id,
                    metadata={"reason": "ReconciliationOnly", "period_key": statement.period_key},
                )
                job.mark_succeeded()
                commit_posting(db, cancellation)
                logger.info("statement_posting_blocked", statement_id=str(statement_id))
                return None

            existing = find_entry(db, ctx.tenant_id, LedgerSourceType.STATEMENT, str(statement.id))
            if existing is not None:
                statement.status = StatementStatus.POSTED
                job.mark_succeeded()
                commit_posting(db, cancellation)
                return existing.id

            entry = new_entry(ctx, LedgerSourceType.STATEMENT, str(statement.id), statement.period_end)
            monetary_lines = [line for line in statement.lines if not line.is_metric]
            for statement_line in monetary_lines:
                ledger_line = LedgerLine(
                    tenant_id=ctx.tenant_id,
                    entry=entry,
                    line_type=statement_line.line_type,
                    amount=statement_line.money_or_zero(),
                    gst_hst=statement_line.tax_or_zero(),
                    memo=statement_line.description,
                )
                LedgerSourceLink(
                    tenant_id=ctx.tenant_id,
                    line=ledger_line,
                    statement_line_id=statement_line.id,
                    file_object_id=statement.file_object_id,
                )
            db.add(entry)

            statement.status = StatementStatus.POSTED
            job.mark_succeeded()
            log_audit_event(
                db, ctx,
                action=AuditAction.LEDGER_POSTED,
                entity_type="LedgerEntry",
                entity_id=entry.id,
                metadata={
                    "source_type": LedgerSourceType.STATEMENT.value,
                    "statement_id": str(statement.id),
                    "line_count": len(monetary_lines),
                },
            )
            commit_posting(db, cancellation)

        except RaceConditionError:
            logger.warning("statement_posting_race_resolved", statement_id=str(statement_id))
            mark_job_succeeded(db, ctx, JOB_TYPE, dedupe_key)
            db.commit()
            existing = find_entry(db, ctx.tenant_id, LedgerSourceType.STATEMENT, str(statement_id))
            return existing.id if existing is not None else None
        except Exception as e:
            record_job_failure(
                db, ctx, JOB_TYPE, dedupe_key, e,
                action=AuditAction.LEDGER_POST_FAILED,
                entity_type="Statement",
                entity_id=statement_id,
            )
            raise

        publish_ledger_posted(self.publisher, ctx, entry)
        return entry.id
