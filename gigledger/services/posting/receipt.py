"""
Receipt posting handler (``receipt.extracted`` -> ``ledger.posted``).

A receipt posts as an Expense line for the pre-tax amount plus an Itc line
carrying the GST/HST paid, both traced back to the receipt and its file.
"""
import uuid
from datetime import date
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from gigledger.context import CancellationToken, TenantContext
from gigledger.exceptions import NotFoundError, RaceConditionError, ValidationError
from gigledger.models.audit import AuditAction
from gigledger.models.job import JobType
from gigledger.models.ledger import LedgerLine, LedgerSourceLink, LedgerSourceType
from gigledger.models.receipt import Receipt, ReceiptStatus
from gigledger.models.statement import LineType
from gigledger.services.audit import log_audit_event
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

JOB_TYPE = JobType.LEDGER_POST_RECEIPT


def receipt_dedupe_key(receipt_id) -> str:
    return f"ledger.post:receipt:{receipt_id}"


def split_receipt_total(total: Decimal, tax: Optional[Decimal]) -> tuple:
    """(expense amount, tax) for a receipt; the expense never goes negative."""
    tax = tax if tax is not None and tax > 0 else Decimal("0")
    expense = total - tax
    if expense < 0:
        expense = total
    return expense, tax


class ReceiptPostingHandler(PipelineHandler):
    """Posts extracted receipts to the ledger."""

    name = "ledger.post.receipt"

    def process(
        self, db: Session, ctx: TenantContext, data: dict, cancellation: CancellationToken
    ) -> Optional[uuid.UUID]:
        receipt_id = uuid.UUID(str(data["receipt_id"]))
        dedupe_key = receipt_dedupe_key(receipt_id)

        if is_already_succeeded(db, ctx, JOB_TYPE, dedupe_key):
            return None

        try:
            receipt = (
                db.query(Receipt)
                .filter(Receipt.tenant_id == ctx.tenant_id, Receipt.id == receipt_id)
                .first()
            )
            if receipt is None:
                raise NotFoundError("Receipt", str(receipt_id))

            # No job for held receipts: once resolved the receipt posts under the same key.
            if receipt.is_hold:
                log_audit_event(
                    db, ctx,
                    action=AuditAction.LEDGER_POST_SKIPPED,
                    entity_type="Receipt",
                    entity_id=receipt.id,
                    metadata={"reason": receipt.hold_reason or "Hold"},
                )
                commit_posting(db, cancellation)
                logger.info("receipt_posting_skipped", receipt_id=str(receipt_id), reason=receipt.hold_reason)
                return None

            job = start_job(db, ctx, JOB_TYPE, dedupe_key)

            existing = find_entry(db, ctx.tenant_id, LedgerSourceType.RECEIPT, str(receipt.id))
            if existing is not None:
                receipt.status = ReceiptStatus.POSTED
                job.mark_succeeded()
                commit_posting(db, cancellation)
                return existing.id

            extraction = receipt.latest_extraction
            if extraction is None:
                raise ValidationError("Receipt has not been extracted", details={"receipt_id": str(receipt_id)})
            if extraction.total is None or extraction.total <= 0:
                raise ValidationError(
                    "Receipt total must be positive",
                    details={"receipt_id": str(receipt_id), "total": str(extraction.total)},
                )

            expense, tax = split_receipt_total(extraction.total, extraction.tax)
            entry = new_entry(
                ctx, LedgerSourceType.RECEIPT, str(receipt.id), extraction.receipt_date or date.today()
            )
            lines = [
                LedgerLine(
                    tenant_id=ctx.tenant_id,
                    entry=entry,
                    line_type=LineType.EXPENSE,
                    amount=expense,
                    gst_hst=Decimal("0"),
                    memo=extraction.vendor_name,
                )
            ]
            if tax > 0:
                lines.append(LedgerLine(
                    tenant_id=ctx.tenant_id,
                    entry=entry,
                    line_type=LineType.ITC,
                    amount=Decimal("0"),
                    gst_hst=tax,
                    memo=extraction.vendor_name,
                ))
            for line in lines:
                LedgerSourceLink(
                    tenant_id=ctx.tenant_id,
                    line=line,
                    receipt_id=receipt.id,
                    file_object_id=receipt.file_object_id,
                )
            db.add(entry)

            receipt.status = ReceiptStatus.POSTED
            job.mark_succeeded()
            log_audit_event(
                db, ctx,
                action=AuditAction.LEDGER_POSTED,
                entity_type="LedgerEntry",
                entity_id=entry.id,
                metadata={
                    "source_type": LedgerSourceType.RECEIPT.value,
                    "receipt_id": str(receipt.id),
                    "total": str(extraction.total),
                    "tax": str(tax),
                },
            )
            commit_posting(db, cancellation)

        except RaceConditionError:
            logger.warning("receipt_posting_race_resolved", receipt_id=str(receipt_id))
            mark_job_succeeded(db, ctx, JOB_TYPE, dedupe_key)
            db.commit()
            existing = find_entry(db, ctx.tenant_id, LedgerSourceType.RECEIPT, str(receipt_id))
            return existing.id if existing is not None else None
        except Exception as e:
            record_job_failure(
                db, ctx, JOB_TYPE, dedupe_key, e,
                action=AuditAction.LEDGER_POST_FAILED,
                entity_type="Receipt",
                entity_id=receipt_id,
            )
            raise

        publish_ledger_posted(self.publisher, ctx, entry)
        return entry.id
