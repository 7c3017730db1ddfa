"""
Integration tests for receipt upload, extraction, hold review and posting.
"""
import uuid
from datetime import date
from decimal import Decimal

import pytest

from gigledger.exceptions import NotFoundError, ValidationError
from gigledger.messaging import topics
from gigledger.models.audit import AuditAction, AuditEvent
from gigledger.models.job import JobStatus, JobType, ProcessingJob
from gigledger.models.ledger import LedgerEntry, LedgerSourceLink, LedgerSourceType
from gigledger.models.receipt import Receipt, ReceiptStatus
from gigledger.models.snapshot import LedgerSnapshot
from gigledger.models.statement import LineType
from gigledger.services.receipts import (
    INVALID_TOTAL,
    LOW_CONFIDENCE,
    MISSING_FIELDS,
    TAX_EXCEEDS_TOTAL,
    resolve_receipt_hold,
    upload_receipt,
)

RECEIPT_BYTES = b"\xff\xd8\xff\xe0 wiper receipt"


@pytest.fixture
def uploaded(db_session, ctx, store, publisher) -> Receipt:
    return upload_receipt(db_session, ctx, store, publisher, RECEIPT_BYTES, "image/jpeg", "wipers.JPG")


class TestUploadReceipt:
    """Tests for receipt upload."""

    def test_upload(self, db_session, ctx, store, publisher, uploaded):
        """Test the file is stored by hash and receipt.received is published."""
        assert uploaded.status == ReceiptStatus.SUBMITTED
        [path] = store.blobs
        assert path.startswith(f"{ctx.tenant_id}/receipts/")
        assert path.endswith(".jpg")

        [envelope] = publisher.published(topics.RECEIPT_RECEIVED)
        assert envelope.data["receipt_id"] == str(uploaded.id)

    def test_same_file_returns_existing_receipt(self, db_session, ctx, store, publisher, uploaded):
        """Test re-uploading identical bytes does not start a second pipeline."""
        again = upload_receipt(db_session, ctx, store, publisher, RECEIPT_BYTES, "image/jpeg", "copy.jpg")

        assert again.id == uploaded.id
        assert db_session.query(Receipt).count() == 1
        assert len(publisher.published(topics.RECEIPT_RECEIVED)) == 1


class TestReceiptPosting:
    """Tests for the receipt pipeline end to end."""

    def test_posts_expense_and_itc(self, db_session, ctx, uploaded, pipeline):
        """Test a complete receipt posts its expense and recoverable tax."""
        receipt_id = uploaded.id

        pipeline()

        receipt = db_session.get(Receipt, receipt_id)
        assert receipt.status == ReceiptStatus.POSTED
        assert receipt.latest_extraction.confidence == Decimal("1")
        assert receipt.latest_extraction.model_version == "static-text"

        entry = db_session.query(LedgerEntry).one()
        assert entry.source_type == LedgerSourceType.RECEIPT
        assert entry.entry_date == date(2024, 5, 14)
        lines = {line.line_type: line for line in entry.lines}
        assert lines[LineType.EXPENSE].amount == Decimal("50.00")
        assert lines[LineType.EXPENSE].memo == "Canadian Tire"
        assert lines[LineType.ITC].gst_hst == Decimal("3.50")
        assert lines[LineType.ITC].amount == Decimal("0")

        links = db_session.query(LedgerSourceLink).all()
        assert len(links) == 2
        assert {link.receipt_id for link in links} == {receipt_id}

    def test_ytd_snapshot(self, db_session, ctx, uploaded, pipeline):
        """Test the receipt reaches the year-to-date snapshot only."""
        pipeline()

        [snapshot] = db_session.query(LedgerSnapshot).all()
        assert (snapshot.period_type, snapshot.period_key) == ("YTD", "2024")
        assert snapshot.detail("ExpensesTotal").value == Decimal("50.00")
        assert snapshot.detail("ItcTotal").value == Decimal("3.50")
        assert snapshot.detail("NetTax").value == Decimal("-3.50")
        assert snapshot.authority_score == 0
        assert snapshot.estimated_pct == Decimal("1")

    def test_redelivered_extracted_message(self, db_session, ctx, uploaded, publisher, pipeline):
        """Test posting twice from the same message creates one entry."""
        pipeline.handlers[topics.RECEIPT_RECEIVED].handle(publisher.drain()[0][1])
        [(_, extracted)] = publisher.drain()
        handler = pipeline.handlers[topics.RECEIPT_EXTRACTED]

        assert handler.handle(extracted) is not None
        assert handler.handle(extracted) is None
        assert db_session.query(LedgerEntry).count() == 1

    def test_held_receipt_is_not_posted(self, db_session, ctx, uploaded, holding_pipeline):
        """Test an unreadable receipt is held and skipped by posting without closing its job."""
        receipt_id = uploaded.id

        handled = holding_pipeline()

        receipt = db_session.get(Receipt, receipt_id)
        assert receipt.status == ReceiptStatus.HOLD
        assert receipt.hold_reason == LOW_CONFIDENCE
        assert db_session.query(LedgerEntry).count() == 0
        assert topics.LEDGER_POSTED not in handled
        assert db_session.query(ProcessingJob).filter(
            ProcessingJob.job_type == JobType.LEDGER_POST_RECEIPT.value
        ).count() == 0
        assert db_session.query(AuditEvent).filter(
            AuditEvent.action == AuditAction.LEDGER_POST_SKIPPED.value
        ).count() == 1
        assert db_session.query(AuditEvent).filter(
            AuditEvent.action == AuditAction.RECEIPT_HOLD.value
        ).count() == 1


class TestResolveHold:
    """Tests for releasing a held receipt after review."""

    def resolve(self, db_session, ctx, publisher, receipt_id, **fields):
        values = dict(
            vendor="Canadian Tire",
            receipt_date=date(2024, 5, 14),
            total=Decimal("53.50"),
            tax=Decimal("3.50"),
        )
        values.update(fields)
        return resolve_receipt_hold(db_session, ctx, publisher, receipt_id, **values)

    def test_resolved_receipt_posts_once(self, db_session, ctx, publisher, uploaded, holding_pipeline):
        """Test the reviewed receipt is republished and posts a single entry."""
        receipt_id = uploaded.id
        holding_pipeline()

        resolved = self.resolve(db_session, ctx, publisher, receipt_id)

        assert resolved.status == ReceiptStatus.READY_FOR_POSTING
        assert resolved.hold_reason is None
        [extracted] = publisher.published(topics.RECEIPT_EXTRACTED)
        assert extracted.data["receipt_id"] == str(receipt_id)
        assert extracted.data["is_hold"] is False

        holding_pipeline()

        entry = db_session.query(LedgerEntry).one()
        assert entry.entry_date == date(2024, 5, 14)
        lines = {line.line_type: line for line in entry.lines}
        assert lines[LineType.EXPENSE].amount == Decimal("50.00")
        assert lines[LineType.EXPENSE].memo == "Canadian Tire"
        assert lines[LineType.ITC].gst_hst == Decimal("3.50")
        assert db_session.get(Receipt, receipt_id).status == ReceiptStatus.POSTED

        job = db_session.query(ProcessingJob).filter(
            ProcessingJob.job_type == JobType.LEDGER_POST_RECEIPT.value
        ).one()
        assert job.status == JobStatus.SUCCEEDED
        assert db_session.query(AuditEvent).filter(
            AuditEvent.action == AuditAction.RECEIPT_HOLD_RESOLVED.value
        ).count() == 1

    def test_stale_hold_message_after_resolve(self, db_session, ctx, publisher, uploaded, holding_pipeline):
        """Test the original held message and the resolved one post only once together."""
        receipt_id = uploaded.id
        holding_pipeline.handlers[topics.RECEIPT_RECEIVED].handle(publisher.drain()[0][1])
        [(_, held_message)] = publisher.drain()
        handler = holding_pipeline.handlers[topics.RECEIPT_EXTRACTED]
        assert handler.handle(held_message) is None

        self.resolve(db_session, ctx, publisher, receipt_id)
        [(_, resolved_message)] = publisher.drain()

        assert handler.handle(resolved_message) is not None
        assert handler.handle(held_message) is None
        assert db_session.query(LedgerEntry).count() == 1

    @pytest.mark.parametrize("fields,reason", [
        ({"total": Decimal("0")}, INVALID_TOTAL),
        ({"tax": Decimal("60.00")}, TAX_EXCEEDS_TOTAL),
    ])
    def test_reviewed_fields_must_pass_hold_rules(
        self, db_session, ctx, publisher, uploaded, holding_pipeline, fields, reason
    ):
        """Test a correction that still breaks a hold rule keeps the receipt held."""
        receipt_id = uploaded.id
        holding_pipeline()

        with pytest.raises(ValidationError) as exc_info:
            self.resolve(db_session, ctx, publisher, receipt_id, **fields)

        assert exc_info.value.message == reason
        assert db_session.get(Receipt, receipt_id).status == ReceiptStatus.HOLD
        assert publisher.published(topics.RECEIPT_EXTRACTED) == []

    def test_missing_fields_are_not_filled_in(self, db_session, ctx, publisher, uploaded, holding_pipeline):
        """Test fields the analyzer could not read must be supplied by the reviewer."""
        receipt_id = uploaded.id
        holding_pipeline()

        with pytest.raises(ValidationError) as exc_info:
            resolve_receipt_hold(db_session, ctx, publisher, receipt_id, total=Decimal("53.50"))

        assert exc_info.value.message == MISSING_FIELDS

    def test_receipt_not_held(self, db_session, ctx, publisher, uploaded):
        """Test only held receipts can be resolved."""
        with pytest.raises(ValidationError):
            self.resolve(db_session, ctx, publisher, uploaded.id)

    def test_unknown_receipt(self, db_session, ctx, publisher):
        """Test resolving a missing receipt fails with not found."""
        with pytest.raises(NotFoundError):
            self.resolve(db_session, ctx, publisher, uuid.uuid4())
