"""
Manual ledger entries and corrections.

Manual entries are keyed by a caller idempotency key. Corrections never
touch the original entry: they post a reversal (every line negated) and a
corrected entry, both dated like the original. An entry is corrected at most
once; later changes correct the corrected entry.
"""
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.orm import Session

from gigledger.context import CancellationToken, TenantContext
from gigledger.exceptions import RaceConditionError, ValidationError
from gigledger.messaging.publisher import MessagePublisher
from gigledger.models.audit import AuditAction
from gigledger.models.job import JobType
from gigledger.models.ledger import LedgerEntry, LedgerLine, LedgerSourceType
from gigledger.models.statement import LineType
from gigledger.services.audit import log_audit_event
from gigledger.services.posting.base import (
    commit_posting,
    find_entry,
    new_entry,
    publish_ledger_posted,
)
from gigledger.services.processing_jobs import (
    find_job,
    mark_job_succeeded,
    record_job_failure,
    start_job,
)

logger = structlog.get_logger(__name__)


@dataclass
class ManualLineInput:
    """One caller-supplied ledger line."""

    line_type: LineType
    amount: Decimal
    gst_hst: Decimal = Decimal("0")
    category_id: Optional[uuid.UUID] = None
    deductible_pct: Decimal = Decimal("1.0")
    memo: Optional[str] = None
    account_code: Optional[str] = None


def validate_lines(lines: Sequence[ManualLineInput]) -> None:
    if not lines:
        raise ValidationError("At least one ledger line is required")
    for i, line in enumerate(lines):
        if Decimal(line.amount) == 0:
            raise ValidationError("Ledger line amount cannot be zero", details={"line_index": i})


def _build_lines(tenant_id, entry: LedgerEntry, lines: Sequence[ManualLineInput]) -> List[LedgerLine]:
    return [
        LedgerLine(
            tenant_id=tenant_id,
            entry=entry,
            line_type=LineType(line.line_type),
            category_id=line.category_id,
            amount=Decimal(line.amount),
            gst_hst=Decimal(line.gst_hst or 0),
            deductible_pct=Decimal(line.deductible_pct if line.deductible_pct is not None else 1),
            memo=line.memo,
            account_code=line.account_code,
        )
        for line in lines
    ]


def post_manual_entry(
    db: Session,
    ctx: TenantContext,
    publisher: MessagePublisher,
    lines: Sequence[ManualLineInput],
    entry_date: Optional[date] = None,
    idempotency_key: Optional[str] = None,
    cancellation: Optional[CancellationToken] = None,
) -> uuid.UUID:
    """
    Post a manual entry.

    Replaying the same idempotency key returns the entry posted the first time.
    """
    cancellation = cancellation or CancellationToken.none()
    source_id = idempotency_key or uuid.uuid4().hex
    dedupe_key = f"ledger.manual:{source_id}"
    job_type = JobType.LEDGER_POST_MANUAL

    existing = find_entry(db, ctx.tenant_id, LedgerSourceType.MANUAL, source_id)
    if existing is not None:
        logger.info("manual_entry_replayed", ledger_entry_id=str(existing.id), idempotency_key=idempotency_key)
        return existing.id

    validate_lines(lines)

    try:
        job = start_job(db, ctx, job_type, dedupe_key)
        entry = new_entry(ctx, LedgerSourceType.MANUAL, source_id, entry_date or date.today(), posted_by=ctx.actor)
        _build_lines(ctx.tenant_id, entry, lines)
        db.add(entry)

        job.mark_succeeded()
        log_audit_event(
            db, ctx,
            action=AuditAction.LEDGER_MANUAL_POSTED,
            entity_type="LedgerEntry",
            entity_id=entry.id,
            metadata={"source_id": source_id, "line_count": len(lines)},
        )
        commit_posting(db, cancellation)
    except RaceConditionError:
        logger.warning("manual_entry_race_resolved", idempotency_key=idempotency_key)
        mark_job_succeeded(db, ctx, job_type, dedupe_key)
        db.commit()
        return find_entry(db, ctx.tenant_id, LedgerSourceType.MANUAL, source_id).id
    except Exception as e:
        record_job_failure(
            db, ctx, job_type, dedupe_key, e,
            action=AuditAction.LEDGER_POST_FAILED,
            entity_type="ManualEntry",
            entity_id=source_id,
        )
        raise

    publish_ledger_posted(publisher, ctx, entry)
    return entry.id


def ensure_not_corrected(db: Session, ctx: TenantContext, entry_id: uuid.UUID) -> None:
    """
    An entry is corrected at most once.

    Raises:
        ValidationError: the entry already has a reversal; correct the corrected entry instead.
    """
    reversal = find_entry(db, ctx.tenant_id, LedgerSourceType.ADJUSTMENT, f"reverse:{entry_id}")
    if reversal is None:
        return
    corrected = find_entry(db, ctx.tenant_id, LedgerSourceType.ADJUSTMENT, f"corrected:{entry_id}")
    raise ValidationError(
        "Ledger entry was already corrected; correct the corrected entry instead",
        details={
            "reverse_entry_id": str(entry_id),
            "corrected_entry_id": str(corrected.id) if corrected is not None else None,
        },
    )


def post_adjustment(
    db: Session,
    ctx: TenantContext,
    publisher: MessagePublisher,
    reverse_entry_id: uuid.UUID,
    lines: Sequence[ManualLineInput],
    idempotency_key: Optional[str] = None,
    cancellation: Optional[CancellationToken] = None,
) -> Tuple[uuid.UUID, uuid.UUID]:
    """
    Correct a posted entry with a reversal plus a corrected entry.

    Returns:
        (reversal entry id, corrected entry id)
    """
    cancellation = cancellation or CancellationToken.none()
    dedupe_key = f"ledger.adjust:{reverse_entry_id}:{idempotency_key or 'no-key'}"
    job_type = JobType.LEDGER_POST_ADJUSTMENT
    reversal_source = f"reverse:{reverse_entry_id}"
    corrected_source = f"corrected:{reverse_entry_id}"

    job = find_job(db, ctx.tenant_id, job_type, dedupe_key)
    if job is not None and job.is_succeeded:
        reversal = find_entry(db, ctx.tenant_id, LedgerSourceType.ADJUSTMENT, reversal_source)
        corrected = find_entry(db, ctx.tenant_id, LedgerSourceType.ADJUSTMENT, corrected_source)
        if reversal is not None and corrected is not None:
            return reversal.id, corrected.id

    original = (
        db.query(LedgerEntry)
        .filter(LedgerEntry.tenant_id == ctx.tenant_id, LedgerEntry.id == reverse_entry_id)
        .first()
    )
    if original is None or not original.lines:
        raise ValidationError(
            "Ledger entry to correct was not found or has no lines",
            details={"reverse_entry_id": str(reverse_entry_id)},
        )
    ensure_not_corrected(db, ctx, reverse_entry_id)
    validate_lines(lines)

    try:
        job = start_job(db, ctx, job_type, dedupe_key)

        reversal = new_entry(
            ctx, LedgerSourceType.ADJUSTMENT, reversal_source, original.entry_date, posted_by=ctx.actor
        )
        for line in original.lines:
            LedgerLine(
                tenant_id=ctx.tenant_id,
                entry=reversal,
                line_type=line.line_type,
                category_id=line.category_id,
                amount=-line.amount,
                gst_hst=-line.gst_hst,
                deductible_pct=line.deductible_pct,
                memo=f"Reversal: {line.memo}" if line.memo else "Reversal",
                account_code=line.account_code,
            )

        corrected = new_entry(
            ctx, LedgerSourceType.ADJUSTMENT, corrected_source, original.entry_date, posted_by=ctx.actor
        )
        _build_lines(ctx.tenant_id, corrected, lines)
        db.add_all([reversal, corrected])

        job.mark_succeeded()
        log_audit_event(
            db, ctx,
            action=AuditAction.LEDGER_ADJUSTMENT_POSTED,
            entity_type="LedgerEntry",
            entity_id=reverse_entry_id,
            metadata={
                "reversal_entry_id": str(reversal.id),
                "corrected_entry_id": str(corrected.id),
                "idempotency_key": idempotency_key,
            },
        )
        commit_posting(db, cancellation)
    except RaceConditionError:
        logger.warning("adjustment_race_resolved", reverse_entry_id=str(reverse_entry_id))
        job = find_job(db, ctx.tenant_id, job_type, dedupe_key)
        if job is None or not job.is_succeeded:
            # A correction with another key won
            ensure_not_corrected(db, ctx, reverse_entry_id)
        reversal = find_entry(db, ctx.tenant_id, LedgerSourceType.ADJUSTMENT, reversal_source)
        corrected = find_entry(db, ctx.tenant_id, LedgerSourceType.ADJUSTMENT, corrected_source)
        return reversal.id, corrected.id
    except Exception as e:
        record_job_failure(
            db, ctx, job_type, dedupe_key, e,
            action=AuditAction.LEDGER_POST_FAILED,
            entity_type="LedgerEntry",
            entity_id=reverse_entry_id,
        )
        raise

    publish_ledger_posted(publisher, ctx, reversal)
    publish_ledger_posted(publisher, ctx, corrected)
    return reversal.id, corrected.id
