"""
Reconciliation posting handler (``reconciliation.completed`` -> ``ledger.posted``).

Turns the variances of a completed monthly-vs-yearly run into one
adjustment entry dated December 31 of the run year. Only allowlisted money
metrics post; metric (non-money) variances never do.
"""
import uuid
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from gigledger.config import get_settings
from gigledger.context import CancellationToken, TenantContext
from gigledger.exceptions import (
    DataIntegrityError,
    NotFoundError,
    RaceConditionError,
    ValidationError,
)
from gigledger.models.audit import AuditAction
from gigledger.models.job import JobType
from gigledger.models.ledger import LedgerEntry, LedgerLine, LedgerSourceType
from gigledger.models.reconciliation import (
    ReconciliationRun,
    ReconciliationStatus,
    ReconciliationVariance,
)
from gigledger.models.statement import LineType
from gigledger.services.audit import log_audit_event
from gigledger.services.parsing import round_half_up
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

JOB_TYPE = JobType.LEDGER_POST_RECONCILIATION

# Metric key prefix -> ledger line type
PREFIX_LINE_TYPES = {
    "Income": LineType.INCOME,
    "Fee": LineType.FEE,
    "TaxCollected": LineType.TAX_COLLECTED,
    "ITC": LineType.ITC,
}


def reconciliation_dedupe_key(run_id) -> str:
    return f"ledger.post:reconciliation:{run_id}"


def adjustment_lines(
    tenant_id,
    variances: Iterable[ReconciliationVariance],
    postable_keys: Iterable[str],
    tolerance: Decimal,
) -> List[LedgerLine]:
    """
    Ledger lines that bring monthly totals in line with the yearly statement.

    The adjustment is the negated variance (monthly minus yearly), rounded
    half-up to cents; variances below the tolerance are skipped before
    rounding.
    """
    postable = set(postable_keys)
    lines = []
    for variance in variances:
        key = variance.metric_key
        if key.startswith("Metric.") or key not in postable:
            continue

        line_type = PREFIX_LINE_TYPES.get(key.split(".", 1)[0])
        if line_type is None:
            continue

        raw = -Decimal(variance.variance_amount)
        if abs(raw) < tolerance:
            continue
        delta = round_half_up(raw, 2)

        lines.append(LedgerLine(
            tenant_id=tenant_id,
            line_type=line_type,
            amount=Decimal("0") if line_type.is_tax_only else delta,
            gst_hst=delta if line_type.is_tax_only else Decimal("0"),
            memo=f"Reconciliation adjustment: {key}",
        ))
    return lines


def run_year(run: ReconciliationRun) -> int:
    try:
        return int(run.period_key)
    except (TypeError, ValueError) as e:
        raise DataIntegrityError(
            f"Reconciliation period key is not a year: {run.period_key!r}",
            details={"reconciliation_run_id": str(run.id)},
        ) from e


class ReconciliationPostingHandler(PipelineHandler):
    """Posts reconciliation adjustments to the ledger."""

    name = "ledger.post.reconciliation"

    def process(
        self, db: Session, ctx: TenantContext, data: dict, cancellation: CancellationToken
    ) -> Optional[uuid.UUID]:
        run_id = uuid.UUID(str(data["reconciliation_run_id"]))
        dedupe_key = reconciliation_dedupe_key(run_id)

        if is_already_succeeded(db, ctx, JOB_TYPE, dedupe_key):
            return None

        settings = get_settings()
        try:
            job = start_job(db, ctx, JOB_TYPE, dedupe_key)

            run = (
                db.query(ReconciliationRun)
                .filter(ReconciliationRun.tenant_id == ctx.tenant_id, ReconciliationRun.id == run_id)
                .first()
            )
            if run is None:
                raise NotFoundError("ReconciliationRun", str(run_id))
            if run.status != ReconciliationStatus.COMPLETED:
                raise ValidationError(
                    "Reconciliation run is not completed",
                    details={"reconciliation_run_id": str(run_id), "status": str(run.status)},
                )

            year = run_year(run)

            existing = find_entry(db, ctx.tenant_id, LedgerSourceType.RECONCILIATION, str(run.id))
            if existing is not None:
                job.mark_succeeded()
                commit_posting(db, cancellation)
                return existing.id

            lines = adjustment_lines(
                ctx.tenant_id,
                run.variances,
                settings.reconciliation_postable_keys,
                settings.reconciliation_tolerance,
            )
            if not lines:
                log_audit_event(
                    db, ctx,
                    action=AuditAction.LEDGER_RECONCILIATION_NOOP,
                    entity_type="ReconciliationRun",
                    entity_id=run.id,
                    metadata={"provider": run.provider, "year": year},
                )
                job.mark_succeeded()
                commit_posting(db, cancellation)
                logger.info("reconciliation_posting_noop", reconciliation_run_id=str(run_id))
                return None

            entry: LedgerEntry = new_entry(
                ctx, LedgerSourceType.RECONCILIATION, str(run.id), date(year, 12, 31)
            )
            for line in lines:
                line.entry = entry
            db.add(entry)

            job.mark_succeeded()
            log_audit_event(
                db, ctx,
                action=AuditAction.LEDGER_RECONCILIATION_POSTED,
                entity_type="LedgerEntry",
                entity_id=entry.id,
                metadata={
                    "reconciliation_run_id": str(run.id),
                    "provider": run.provider,
                    "year": year,
                    "line_count": len(lines),
                },
            )
            commit_posting(db, cancellation)

        except RaceConditionError:
            logger.warning("reconciliation_posting_race_resolved", reconciliation_run_id=str(run_id))
            mark_job_succeeded(db, ctx, JOB_TYPE, dedupe_key)
            db.commit()
            existing = find_entry(db, ctx.tenant_id, LedgerSourceType.RECONCILIATION, str(run_id))
            return existing.id if existing is not None else None
        except Exception as e:
            record_job_failure(
                db, ctx, JOB_TYPE, dedupe_key, e,
                action=AuditAction.LEDGER_POST_FAILED,
                entity_type="ReconciliationRun",
                entity_id=run_id,
            )
            raise

        publish_ledger_posted(self.publisher, ctx, entry)
        return entry.id
