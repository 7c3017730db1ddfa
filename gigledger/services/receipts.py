"""
Receipt pipeline: intake, field extraction, confidence and hold policy.

Flow:
1. upload stores the file and publishes ``receipt.received``
2. ReceiptExtractionHandler reads vendor/date/total/tax, scores confidence
   and either holds the receipt for review or marks it ready for posting
3. ``receipt.extracted`` feeds the receipt posting handler
4. resolve_receipt_hold releases a reviewed hold and publishes ``receipt.extracted`` again
"""
import hashlib
import io
import re
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.orm import Session

from gigledger.config import get_settings
from gigledger.context import CancellationToken, TenantContext
from gigledger.exceptions import (
    FileTooLargeError,
    NotFoundError,
    UnsupportedContentTypeError,
    ValidationError,
)
from gigledger.messaging import topics
from gigledger.messaging.envelope import MessageEnvelope
from gigledger.messaging.publisher import MessagePublisher
from gigledger.models.audit import AuditAction
from gigledger.models.file_object import FileObject, FileSource
from gigledger.models.job import JobType
from gigledger.models.receipt import Receipt, ReceiptExtraction, ReceiptStatus
from gigledger.services.audit import log_audit_event
from gigledger.services.document_analyzer import DocumentAnalyzer, default_analyzers, select_analyzer
from gigledger.services.extractors.metadata import extract_date_tokens
from gigledger.services.parsing import extract_currency, parse_amount, round_half_up
from gigledger.services.posting.base import PipelineHandler
from gigledger.services.processing_jobs import is_already_succeeded, record_job_failure, start_job
from gigledger.storage import LocalObjectStore, ObjectStore

logger = structlog.get_logger(__name__)

JOB_TYPE = JobType.RECEIPT_EXTRACT

MONEY_TOKEN_PATTERN = re.compile(r"\(?-?\$?\s?\d[\d,]*\.\d{2}\)?")
TOTAL_LABEL_PATTERN = re.compile(r"\b(grand\s+total|total|amount\s+due|balance\s+due)\b", re.IGNORECASE)
SUBTOTAL_LABEL_PATTERN = re.compile(r"\bsub\s*-?\s*total\b", re.IGNORECASE)
TAX_LABEL_PATTERN = re.compile(r"\b(gst|hst|pst|qst|tax)\b", re.IGNORECASE)
TAX_NOISE_PATTERN = re.compile(r"registration|reg\.?\s*(no|#)|before\s+tax|\bBN\b", re.IGNORECASE)
VENDOR_SKIP_PATTERN = re.compile(r"^(receipt|invoice|welcome|thank you|customer copy)\b", re.IGNORECASE)

LOW_CONFIDENCE = "Low confidence extraction"
INVALID_TOTAL = "Invalid total amount"
MISSING_FIELDS = "Missing required fields"
TAX_EXCEEDS_TOTAL = "Tax exceeds total"


@dataclass
class NormalizedReceipt:
    """Fields read from one receipt."""

    vendor: Optional[str] = None
    receipt_date: Optional[date] = None
    total: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    currency: Optional[str] = None
    raw_text: str = ""

    def to_fields(self) -> dict:
        return {
            "date": self.receipt_date.isoformat() if self.receipt_date else None,
            "vendor": self.vendor,
            "total": str(self.total) if self.total is not None else None,
            "tax": str(self.tax) if self.tax is not None else None,
            "currency": self.currency,
        }


def last_money_amount(line: str) -> Optional[Decimal]:
    tokens = MONEY_TOKEN_PATTERN.findall(line or "")
    if not tokens:
        return None
    return parse_amount(tokens[-1])


def _amount_after_label(lines: List[str], index: int) -> Optional[Decimal]:
    amount = last_money_amount(lines[index])
    if amount is None and index + 1 < len(lines):
        amount = last_money_amount(lines[index + 1])
    return amount


def find_vendor(lines: List[str]) -> Optional[str]:
    """First line that reads like a business name."""
    for line in lines[:10]:
        letters = sum(ch.isalpha() for ch in line)
        if letters < 2 or VENDOR_SKIP_PATTERN.match(line):
            continue
        if extract_date_tokens(line) or MONEY_TOKEN_PATTERN.search(line):
            continue
        return line.strip()
    return None


def find_total(lines: List[str]) -> Optional[Decimal]:
    """Amount on the last total-like line; grand totals print last."""
    total = None
    for i, line in enumerate(lines):
        if SUBTOTAL_LABEL_PATTERN.search(line) or not TOTAL_LABEL_PATTERN.search(line):
            continue
        if TAX_LABEL_PATTERN.search(line) and not TOTAL_LABEL_PATTERN.match(line):
            continue
        amount = _amount_after_label(lines, i)
        if amount is not None:
            total = amount
    return total


def find_tax(lines: List[str]) -> Optional[Decimal]:
    """Sum of GST/HST/tax lines, excluding registration numbers and totals."""
    found = []
    for i, line in enumerate(lines):
        if not TAX_LABEL_PATTERN.search(line) or TAX_NOISE_PATTERN.search(line):
            continue
        if TOTAL_LABEL_PATTERN.search(line) and not re.search(r"\btax\s+total\b", line, re.IGNORECASE):
            continue
        amount = _amount_after_label(lines, i)
        if amount is not None:
            found.append(amount)
    if not found:
        return None
    return sum(found, Decimal("0"))


def parse_receipt_text(text: str, default_currency: Optional[str] = None) -> NormalizedReceipt:
    """Read receipt fields out of OCR or PDF text."""
    lines = [ln.strip() for ln in (text or "").splitlines() if ln.strip()]
    dates = extract_date_tokens("\n".join(lines))
    total = find_total(lines)
    tax = find_tax(lines)
    currency = next((c for c in map(extract_currency, lines) if c), None)
    return NormalizedReceipt(
        vendor=find_vendor(lines),
        receipt_date=dates[0] if dates else None,
        total=round_half_up(total) if total is not None else None,
        tax=round_half_up(tax) if tax is not None else None,
        currency=currency or default_currency or get_settings().default_currency,
        raw_text=text or "",
    )


def compute_confidence(receipt: NormalizedReceipt) -> Decimal:
    """
    Policy confidence for an extracted receipt.

    Starts at 1.0; missing date, vendor or a positive total cost 0.30 each,
    missing or negative tax costs 0.10.
    """
    score = Decimal("1.0")
    if receipt.receipt_date is None:
        score -= Decimal("0.30")
    if not receipt.vendor or not receipt.vendor.strip():
        score -= Decimal("0.30")
    if receipt.total is None or receipt.total <= 0:
        score -= Decimal("0.30")
    if receipt.tax is None or receipt.tax < 0:
        score -= Decimal("0.10")
    return min(max(score, Decimal("0")), Decimal("1"))


def evaluate_hold(receipt: NormalizedReceipt, confidence: Decimal) -> Tuple[bool, Optional[str]]:
    """(is_hold, reason); the first failing rule wins."""
    if confidence < get_settings().receipt_hold_threshold:
        return True, LOW_CONFIDENCE
    if receipt.total is None or receipt.total <= 0:
        return True, INVALID_TOTAL
    if receipt.receipt_date is None or not receipt.vendor or not receipt.vendor.strip():
        return True, MISSING_FIELDS
    if receipt.tax is not None and receipt.tax > receipt.total:
        return True, TAX_EXCEEDS_TOTAL
    return False, None


class ReceiptAnalyzer:
    """Runs a document analyzer over a receipt file and parses its fields."""

    def __init__(self, analyzers: Optional[Sequence[DocumentAnalyzer]] = None):
        self._analyzers = list(analyzers) if analyzers is not None else None

    @property
    def analyzers(self) -> List[DocumentAnalyzer]:
        if self._analyzers is None:
            self._analyzers = default_analyzers()
        return self._analyzers

    def model_version(self, content_type: str) -> str:
        analyzer = select_analyzer(self.analyzers, content_type)
        return analyzer.model_version if analyzer else "unknown"

    def analyze(self, stream, content_type: str) -> NormalizedReceipt:
        analyzer = select_analyzer(self.analyzers, content_type)
        if analyzer is None:
            raise UnsupportedContentTypeError(content_type)
        document = analyzer.analyze(stream)
        return parse_receipt_text(document.raw_text)


def receipt_received_envelope(ctx: TenantContext, receipt: Receipt) -> MessageEnvelope:
    return MessageEnvelope.create(
        type=topics.RECEIPT_RECEIVED_V1,
        tenant_id=ctx.tenant_id,
        correlation_id=ctx.correlation_id,
        data={"receipt_id": str(receipt.id), "file_object_id": str(receipt.file_object_id)},
    )


def receipt_extracted_envelope(
    ctx: TenantContext,
    receipt_id,
    file_object_id,
    confidence: Decimal,
    is_hold: bool,
    hold_reason: Optional[str],
) -> MessageEnvelope:
    return MessageEnvelope.create(
        type=topics.RECEIPT_EXTRACTED_V1,
        tenant_id=ctx.tenant_id,
        correlation_id=ctx.correlation_id,
        data={
            "receipt_id": str(receipt_id),
            "file_object_id": str(file_object_id),
            "confidence": str(confidence),
            "is_hold": is_hold,
            "hold_reason": hold_reason,
        },
    )


def receipt_blob_path(tenant_id, sha256: str, filename: Optional[str]) -> str:
    ext = (filename or "").rsplit(".", 1)[-1].lower() if filename and "." in filename else "bin"
    return f"{tenant_id}/receipts/{sha256}.{ext}"


def upload_receipt(
    db: Session,
    ctx: TenantContext,
    store: ObjectStore,
    publisher: MessagePublisher,
    content: bytes,
    content_type: str,
    filename: Optional[str] = None,
) -> Receipt:
    """
    Store a receipt file and submit it for extraction.

    Re-uploading the same file returns the receipt created the first time.
    """
    settings = get_settings()
    if len(content) > settings.max_upload_size_bytes:
        raise FileTooLargeError(len(content), settings.max_upload_size_bytes)

    sha256 = hashlib.sha256(content).hexdigest()
    existing_file = (
        db.query(FileObject)
        .filter(
            FileObject.tenant_id == ctx.tenant_id,
            FileObject.source == FileSource.RECEIPT_UPLOAD,
            FileObject.sha256 == sha256,
        )
        .first()
    )
    if existing_file is not None:
        existing = (
            db.query(Receipt)
            .filter(Receipt.tenant_id == ctx.tenant_id, Receipt.file_object_id == existing_file.id)
            .first()
        )
        if existing is not None:
            logger.info("receipt_upload_deduplicated", receipt_id=str(existing.id), sha256=sha256)
            return existing

    blob_path = receipt_blob_path(ctx.tenant_id, sha256, filename)
    store.upload(blob_path, io.BytesIO(content), content_type)

    file_object = existing_file or FileObject(
        tenant_id=ctx.tenant_id,
        blob_path=blob_path,
        sha256=sha256,
        size=len(content),
        content_type=content_type,
        original_name=filename,
        source=FileSource.RECEIPT_UPLOAD,
    )
    db.add(file_object)
    db.flush()

    receipt = Receipt(
        tenant_id=ctx.tenant_id,
        file_object_id=file_object.id,
        status=ReceiptStatus.SUBMITTED,
    )
    db.add(receipt)
    db.flush()
    log_audit_event(
        db, ctx,
        action=AuditAction.RECEIPT_SUBMITTED,
        entity_type="Receipt",
        entity_id=receipt.id,
        metadata={"file_object_id": str(file_object.id), "sha256": sha256},
    )
    db.commit()

    logger.info("receipt_uploaded", receipt_id=str(receipt.id), file_object_id=str(file_object.id))
    publisher.publish(topics.RECEIPT_RECEIVED, receipt_received_envelope(ctx, receipt))
    return receipt


class ReceiptExtractionHandler(PipelineHandler):
    """Consumes ``receipt.received`` and publishes ``receipt.extracted``."""

    name = "receipt.extract"

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        publisher: Optional[MessagePublisher] = None,
        store: Optional[ObjectStore] = None,
        analyzer: Optional[ReceiptAnalyzer] = None,
    ):
        super().__init__(session_factory, publisher)
        self._store = store
        self._analyzer = analyzer or ReceiptAnalyzer()

    @property
    def store(self) -> ObjectStore:
        if self._store is None:
            self._store = LocalObjectStore()
        return self._store

    def process(
        self, db: Session, ctx: TenantContext, data: dict, cancellation: CancellationToken
    ) -> Optional[uuid.UUID]:
        receipt_id = uuid.UUID(str(data["receipt_id"]))
        dedupe_key = f"receipt.extract:{receipt_id}"

        if is_already_succeeded(db, ctx, JOB_TYPE, dedupe_key):
            return None

        try:
            job = start_job(db, ctx, JOB_TYPE, dedupe_key)

            receipt = (
                db.query(Receipt)
                .filter(Receipt.tenant_id == ctx.tenant_id, Receipt.id == receipt_id)
                .first()
            )
            if receipt is None:
                raise NotFoundError("Receipt", str(receipt_id))
            file_object = (
                db.query(FileObject)
                .filter(FileObject.tenant_id == ctx.tenant_id, FileObject.id == receipt.file_object_id)
                .first()
            )
            if file_object is None:
                raise NotFoundError("FileObject", str(receipt.file_object_id))

            with self.store.open_read(file_object.blob_path) as stream:
                normalized = self._analyzer.analyze(stream, file_object.content_type)

            confidence = compute_confidence(normalized)
            is_hold, hold_reason = evaluate_hold(normalized, confidence)

            extraction = ReceiptExtraction(
                tenant_id=ctx.tenant_id,
                model_version=self._analyzer.model_version(file_object.content_type),
                vendor_name=normalized.vendor,
                receipt_date=normalized.receipt_date,
                total=normalized.total,
                tax=normalized.tax,
                currency_code=normalized.currency,
                confidence=confidence,
                normalized_fields_json=normalized.to_fields(),
                raw_text=normalized.raw_text,
            )
            receipt.extractions.append(extraction)
            receipt.status = ReceiptStatus.HOLD if is_hold else ReceiptStatus.READY_FOR_POSTING
            receipt.hold_reason = hold_reason

            job.mark_succeeded()
            log_audit_event(
                db, ctx,
                action=AuditAction.RECEIPT_EXTRACTED,
                entity_type="Receipt",
                entity_id=receipt.id,
                metadata={"model_version": extraction.model_version, "confidence": str(confidence)},
            )
            if is_hold:
                log_audit_event(
                    db, ctx,
                    action=AuditAction.RECEIPT_HOLD,
                    entity_type="Receipt",
                    entity_id=receipt.id,
                    metadata={"hold_reason": hold_reason},
                )
            cancellation.raise_if_cancelled()
            db.commit()

        except Exception as e:
            record_job_failure(
                db, ctx, JOB_TYPE, dedupe_key, e,
                action=AuditAction.RECEIPT_EXTRACT_FAILED,
                entity_type="Receipt",
                entity_id=receipt_id,
            )
            raise

        logger.info(
            "receipt_extracted",
            receipt_id=str(receipt_id),
            confidence=str(confidence),
            is_hold=is_hold,
            hold_reason=hold_reason,
        )
        self.publisher.publish(
            topics.RECEIPT_EXTRACTED,
            receipt_extracted_envelope(ctx, receipt_id, file_object.id, confidence, is_hold, hold_reason),
        )
        return receipt_id


def resolve_receipt_hold(
    db: Session,
    ctx: TenantContext,
    publisher: MessagePublisher,
    receipt_id: uuid.UUID,
    vendor: Optional[str] = None,
    receipt_date: Optional[date] = None,
    total: Optional[Decimal] = None,
    tax: Optional[Decimal] = None,
) -> Receipt:
    """
    Release a held receipt after review.

    Fields given override the extracted ones; the merged receipt must pass
    the hold rules other than confidence. The receipt becomes ready for
    posting and ``receipt.extracted`` is published again.

    Raises:
        NotFoundError: no such receipt for this tenant
        ValidationError: the receipt is not held, or the reviewed fields still fail a hold rule
    """
    receipt = (
        db.query(Receipt)
        .filter(Receipt.tenant_id == ctx.tenant_id, Receipt.id == receipt_id)
        .first()
    )
    if receipt is None:
        raise NotFoundError("Receipt", str(receipt_id))
    if not receipt.is_hold:
        raise ValidationError(
            "Receipt is not on hold",
            details={"receipt_id": str(receipt_id), "status": receipt.status.value},
        )

    extraction = receipt.latest_extraction
    if extraction is None:
        extraction = ReceiptExtraction(tenant_id=ctx.tenant_id, model_version="review", confidence=Decimal("0"))
        receipt.extractions.append(extraction)

    reviewed = NormalizedReceipt(
        vendor=vendor if vendor is not None else extraction.vendor_name,
        receipt_date=receipt_date if receipt_date is not None else extraction.receipt_date,
        total=round_half_up(total) if total is not None else extraction.total,
        tax=round_half_up(tax) if tax is not None else extraction.tax,
        currency=extraction.currency_code or get_settings().default_currency,
    )
    # Review replaces the confidence check; every other hold rule still applies.
    is_hold, reason = evaluate_hold(reviewed, Decimal("1"))
    if is_hold:
        raise ValidationError(reason, details={"receipt_id": str(receipt_id), "fields": reviewed.to_fields()})

    previous_reason = receipt.hold_reason
    extraction.vendor_name = reviewed.vendor
    extraction.receipt_date = reviewed.receipt_date
    extraction.total = reviewed.total
    extraction.tax = reviewed.tax
    extraction.currency_code = reviewed.currency
    extraction.normalized_fields_json = reviewed.to_fields()
    receipt.status = ReceiptStatus.READY_FOR_POSTING
    receipt.hold_reason = None

    log_audit_event(
        db, ctx,
        action=AuditAction.RECEIPT_HOLD_RESOLVED,
        entity_type="Receipt",
        entity_id=receipt.id,
        metadata={"hold_reason": previous_reason, "fields": reviewed.to_fields()},
    )
    db.commit()

    logger.info("receipt_hold_resolved", receipt_id=str(receipt_id), hold_reason=previous_reason)
    publisher.publish(
        topics.RECEIPT_EXTRACTED,
        receipt_extracted_envelope(ctx, receipt.id, receipt.file_object_id, extraction.confidence, False, None),
    )
    return receipt
