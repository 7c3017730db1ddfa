"""
Integration tests for statement upload, extraction, posting and snapshots.
"""
import uuid
from decimal import Decimal

import pytest

from gigledger.config import Settings
from gigledger.context import TenantContext
from gigledger.exceptions import (
    DuplicateStatementError,
    FileTooLargeError,
    NotFoundError,
    PostingBlockedError,
    UnsupportedProviderError,
)
from gigledger.messaging import topics
from gigledger.messaging.envelope import MessageEnvelope
from gigledger.models.audit import AuditAction, AuditEvent
from gigledger.models.job import JobStatus, ProcessingJob
from gigledger.models.ledger import LedgerEntry, LedgerSourceType
from gigledger.models.snapshot import LedgerSnapshot
from gigledger.models.statement import LineType, PeriodType, Statement, StatementStatus
from gigledger.services.posting import statement as statement_posting
from gigledger.services.posting.base import new_entry
from gigledger.services.posting.statement import StatementPostingHandler
from gigledger.services.statement_extraction import statement_parsed_envelope
from gigledger.services.statement_intake import StatementIntakeService


@pytest.fixture
def intake(store, publisher) -> StatementIntakeService:
    return StatementIntakeService(store, publisher, analyzers=[])


def upload_lyft_march(db_session, ctx, intake, content):
    return intake.upload(
        db_session, ctx, content, "text/csv", "lyft-march.csv",
        provider="Lyft", period_type=PeriodType.MONTHLY, period_key="2024-03",
    )


def snapshot_for(db_session, tenant_id, period_type, period_key) -> LedgerSnapshot:
    return (
        db_session.query(LedgerSnapshot)
        .filter(
            LedgerSnapshot.tenant_id == tenant_id,
            LedgerSnapshot.period_type == period_type,
            LedgerSnapshot.period_key == period_key,
        )
        .one()
    )


class TestUpload:
    """Tests for statement upload."""

    def test_upload_stores_and_publishes(self, db_session, ctx, intake, store, publisher, lyft_monthly_csv):
        """Test the blob is stored and statement.received is published."""
        uploaded = upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv)

        assert uploaded.statement.status == StatementStatus.SUBMITTED
        assert uploaded.posted_to_ledger is True
        assert uploaded.file_object.blob_path in store.blobs
        assert uploaded.file_object.blob_path.startswith(f"{ctx.tenant_id}/statements/Lyft/2024-03/")

        [envelope] = publisher.published(topics.STATEMENT_RECEIVED)
        assert envelope.type == topics.STATEMENT_RECEIVED_V1
        assert envelope.data["statement_id"] == str(uploaded.statement.id)
        assert envelope.data["period_start"] == "2024-03-01"
        assert envelope.correlation_id == "test-correlation"

    def test_upload_is_audited(self, db_session, ctx, intake, lyft_monthly_csv):
        """Test an audit row records the upload."""
        uploaded = upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv)

        audit = db_session.query(AuditEvent).filter(
            AuditEvent.action == AuditAction.STATEMENT_UPLOADED.value
        ).one()
        assert audit.entity_id == str(uploaded.statement.id)
        assert audit.metadata_json["period_key"] == "2024-03"

    def test_duplicate_natural_key(self, db_session, ctx, intake, lyft_monthly_csv):
        """Test a second statement for the same provider and period is rejected."""
        upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv)

        with pytest.raises(DuplicateStatementError):
            upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv.replace(b"1000.00", b"999.00"))

    def test_duplicate_file(self, db_session, ctx, intake, lyft_monthly_csv):
        """Test the same file cannot be filed under another period."""
        upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv)

        with pytest.raises(DuplicateStatementError):
            intake.upload(
                db_session, ctx, lyft_monthly_csv, "text/csv",
                provider="Lyft", period_type=PeriodType.MONTHLY, period_key="2024-04",
            )

    def test_other_tenant_may_upload_same_file(self, db_session, ctx, intake, lyft_monthly_csv):
        """Test duplicate checks are scoped to the tenant."""
        upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv)
        other = TenantContext.create(uuid.uuid4())

        uploaded = upload_lyft_march(db_session, other, intake, lyft_monthly_csv)

        assert uploaded.statement.tenant_id == other.tenant_id

    def test_unsupported_provider(self, db_session, ctx, intake, lyft_monthly_csv):
        """Test providers other than Uber and Lyft are rejected."""
        with pytest.raises(UnsupportedProviderError):
            intake.upload(
                db_session, ctx, lyft_monthly_csv, "text/csv",
                provider="DoorDash", period_type=PeriodType.MONTHLY, period_key="2024-03",
            )

    def test_file_too_large(self, db_session, ctx, intake, lyft_monthly_csv, monkeypatch):
        """Test uploads above the size limit are rejected before storage."""
        monkeypatch.setattr(
            "gigledger.services.statement_intake.get_settings",
            lambda: Settings(max_upload_size_mb=0),
        )

        with pytest.raises(FileTooLargeError):
            upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv)
        assert db_session.query(Statement).count() == 0

    def test_outranked_upload_is_reconciliation_only(self, db_session, ctx, intake, lyft_monthly_csv):
        """Test a Yearly upload after a Monthly one is kept for reconciliation."""
        upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv)

        uploaded = intake.upload(
            db_session, ctx, lyft_monthly_csv.replace(b"1000.00", b"12000.00"), "text/csv",
            provider="lyft", period_type=PeriodType.YEARLY, period_key="2024",
        )

        assert uploaded.statement.provider == "Lyft"
        assert uploaded.statement.status == StatementStatus.RECONCILIATION_ONLY
        assert uploaded.posted_to_ledger is False


class TestExtraction:
    """Tests for the statement extraction handler."""

    def test_extracts_lines(self, db_session, ctx, intake, publisher, pipeline, lyft_monthly_csv):
        """Test lines are normalized and statement.parsed carries rollups."""
        statement_id = upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv).statement.id
        [received] = publisher.drain()

        pipeline.handlers[topics.STATEMENT_RECEIVED].handle(received[1])

        statement = db_session.get(Statement, statement_id)
        assert statement.status == StatementStatus.DRAFT
        assert statement.line_count == 5
        assert statement.income_total == Decimal("1000")
        assert statement.fee_total == Decimal("150")

        [parsed] = publisher.published(topics.STATEMENT_PARSED)
        assert parsed.data["income_total"] == str(statement.income_total)

    def test_redelivery_is_skipped(self, db_session, ctx, intake, publisher, pipeline, lyft_monthly_csv):
        """Test a succeeded extraction is not repeated."""
        upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv)
        [(_, received)] = publisher.drain()
        handler = pipeline.handlers[topics.STATEMENT_RECEIVED]

        handler.handle(received)
        publisher.clear()

        assert handler.handle(received) is None
        assert publisher.messages == []

    def test_missing_blob_fails_job(self, db_session, ctx, intake, store, publisher, pipeline, lyft_monthly_csv):
        """Test an unreadable file marks the job Failed and audits it."""
        upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv)
        [(_, received)] = publisher.drain()
        store.blobs.clear()

        with pytest.raises(NotFoundError):
            pipeline.handlers[topics.STATEMENT_RECEIVED].handle(received)

        job = db_session.query(ProcessingJob).one()
        assert job.status == JobStatus.FAILED
        assert db_session.query(AuditEvent).filter(
            AuditEvent.action == AuditAction.STATEMENT_EXTRACT_FAILED.value
        ).count() == 1

    def test_reconciliation_only_is_sticky(self, db_session, ctx, intake, publisher, pipeline, lyft_monthly_csv):
        """Test extraction does not reopen a reconciliation-only statement."""
        upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv)
        yearly_id = intake.upload(
            db_session, ctx, lyft_monthly_csv.replace(b"1000.00", b"12000.00"), "text/csv",
            provider="Lyft", period_type=PeriodType.YEARLY, period_key="2024",
        ).statement.id

        pipeline()

        yearly = db_session.get(Statement, yearly_id)
        assert yearly.status == StatementStatus.RECONCILIATION_ONLY
        assert yearly.line_count == 5


class TestPosting:
    """Tests for statement posting."""

    def test_full_pipeline_posts_once(self, db_session, ctx, intake, pipeline, lyft_monthly_csv):
        """Test one entry with one line per monetary statement line."""
        statement_id = upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv).statement.id

        pipeline()

        entry = db_session.query(LedgerEntry).one()
        assert entry.source_type == LedgerSourceType.STATEMENT
        assert entry.source_id == str(statement_id)
        assert entry.entry_date.isoformat() == "2024-03-31"
        assert sorted(line.line_type.value for line in entry.lines) == ["Fee", "Income", "Itc", "TaxCollected"]
        assert db_session.get(Statement, statement_id).status == StatementStatus.POSTED

    def test_redelivered_parsed_message(self, db_session, ctx, intake, publisher, pipeline, lyft_monthly_csv):
        """Test posting the same statement.parsed twice creates one entry."""
        upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv)
        pipeline.handlers[topics.STATEMENT_RECEIVED].handle(publisher.drain()[0][1])
        [(_, parsed)] = publisher.drain()
        handler = pipeline.handlers[topics.STATEMENT_PARSED]

        first = handler.handle(parsed)
        second = handler.handle(parsed)

        assert first is not None
        assert second is None
        assert db_session.query(LedgerEntry).count() == 1
        assert len(publisher.published(topics.LEDGER_POSTED)) == 1

    def test_failed_deliveries_count_attempts(self, db_session, ctx, session_factory, publisher):
        """Test every failed delivery of a missing statement is counted on the job."""
        handler = StatementPostingHandler(session_factory, publisher)
        envelope = MessageEnvelope.create(
            type=topics.STATEMENT_PARSED_V1,
            tenant_id=ctx.tenant_id,
            correlation_id=ctx.correlation_id,
            data={"statement_id": str(uuid.uuid4())},
        )

        for _ in range(3):
            with pytest.raises(NotFoundError):
                handler.handle(envelope)

        job = db_session.query(ProcessingJob).one()
        assert job.attempts == 3
        assert job.status == JobStatus.FAILED
        assert db_session.query(AuditEvent).filter(
            AuditEvent.action == AuditAction.LEDGER_POST_FAILED.value
        ).count() == 3

    def test_concurrent_posting_keeps_first_entry(
        self, db_session, ctx, session_factory, publisher, make_statement, monkeypatch
    ):
        """Test losing the insert to a concurrent delivery resolves to the winner's entry."""
        statement = make_statement(provider="Lyft", lines=[
            {"line_type": LineType.INCOME, "description": "Gross fares", "money_amount": Decimal("100.00")},
        ])
        statement_id = statement.id
        envelope = statement_parsed_envelope(ctx, statement)

        winner = new_entry(ctx, LedgerSourceType.STATEMENT, str(statement_id), statement.period_end)
        winner_id = winner.id
        db_session.add(winner)
        db_session.commit()

        # The winner commits after this delivery's lookup.
        lookups = []
        real_find_entry = statement_posting.find_entry

        def find_entry_after_lookup(*args):
            lookups.append(args)
            return None if len(lookups) == 1 else real_find_entry(*args)

        monkeypatch.setattr(statement_posting, "find_entry", find_entry_after_lookup)

        result = StatementPostingHandler(session_factory, publisher).handle(envelope)

        assert result == winner_id
        assert db_session.query(LedgerEntry).count() == 1
        job = db_session.query(ProcessingJob).one()
        assert job.job_type == "ledger.post.statement"
        assert job.status == JobStatus.SUCCEEDED
        assert publisher.published(topics.LEDGER_POSTED) == []

    def test_reconciliation_only_never_posts(self, db_session, ctx, intake, pipeline, lyft_monthly_csv):
        """Test the outranked Yearly statement has no ledger entry."""
        upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv)
        yearly_id = intake.upload(
            db_session, ctx, lyft_monthly_csv.replace(b"1000.00", b"12000.00"), "text/csv",
            provider="Lyft", period_type=PeriodType.YEARLY, period_key="2024",
        ).statement.id

        pipeline()

        sources = [entry.source_id for entry in db_session.query(LedgerEntry).all()]
        assert str(yearly_id) not in sources
        assert len(sources) == 1
        assert db_session.query(AuditEvent).filter(
            AuditEvent.action == AuditAction.LEDGER_POST_BLOCKED.value,
            AuditEvent.entity_id == str(yearly_id),
        ).count() == 1


class TestSubmit:
    """Tests for submitting stored statements."""

    def test_submit_unknown(self, db_session, ctx, intake):
        """Test submitting a missing statement."""
        with pytest.raises(NotFoundError):
            intake.submit(db_session, ctx, uuid.uuid4())

    def test_submit_reconciliation_only(self, db_session, ctx, intake, make_statement):
        """Test reconciliation-only statements cannot be submitted."""
        statement = make_statement(status=StatementStatus.RECONCILIATION_ONLY)

        with pytest.raises(PostingBlockedError):
            intake.submit(db_session, ctx, statement.id)

    def test_submit_extracted_draft(self, db_session, ctx, intake, publisher, pipeline, lyft_monthly_csv):
        """Test a draft with extracted lines goes straight to posting."""
        statement_id = upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv).statement.id
        pipeline.handlers[topics.STATEMENT_RECEIVED].handle(publisher.drain()[0][1])
        publisher.clear()

        statement = intake.submit(db_session, ctx, statement_id)

        assert statement.status == StatementStatus.SUBMITTED
        assert [topic for topic, _ in publisher.messages] == [topics.STATEMENT_PARSED]

    def test_submit_unextracted_draft(self, db_session, ctx, intake, publisher, make_statement):
        """Test a draft without extracted lines is sent to extraction."""
        statement = make_statement(provider="Lyft", status=StatementStatus.DRAFT)

        intake.submit(db_session, ctx, statement.id)

        assert [topic for topic, _ in publisher.messages] == [topics.STATEMENT_RECEIVED]

    def test_submit_demotes_outranked_draft(self, db_session, ctx, intake, make_statement):
        """Test a Yearly draft is demoted when a Monthly statement exists."""
        make_statement(provider="Uber", period_type=PeriodType.MONTHLY, period_key="2024-02")
        yearly = make_statement(
            provider="Uber", period_type=PeriodType.YEARLY, period_key="2024", status=StatementStatus.DRAFT
        )

        with pytest.raises(PostingBlockedError):
            intake.submit(db_session, ctx, yearly.id)

        assert db_session.get(Statement, yearly.id).status == StatementStatus.RECONCILIATION_ONLY

    def test_submit_posted_is_noop(self, db_session, ctx, intake, publisher, make_statement):
        """Test resubmitting a posted statement publishes nothing."""
        statement = make_statement(status=StatementStatus.POSTED)

        assert intake.submit(db_session, ctx, statement.id).status == StatementStatus.POSTED
        assert publisher.messages == []


class TestStatementSnapshots:
    """Tests for snapshots after statement posting."""

    def test_ytd_and_monthly_snapshots(self, db_session, ctx, intake, pipeline, lyft_monthly_csv):
        """Test both buckets show the statement's totals with full authority."""
        upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv)

        pipeline()

        for period_type, period_key in (("YTD", "2024"), ("Monthly", "2024-03")):
            snapshot = snapshot_for(db_session, ctx.tenant_id, period_type, period_key)
            assert snapshot.detail("RevenueTotal").value == Decimal("1000")
            assert snapshot.detail("ExpensesTotal").value == Decimal("150")
            assert snapshot.detail("TaxCollectedTotal").value == Decimal("50")
            assert snapshot.detail("ItcTotal").value == Decimal("10")
            assert snapshot.detail("NetTax").value == Decimal("40")
            assert snapshot.authority_score == 100
            assert snapshot.estimated_pct == Decimal("0")

    def test_snapshot_jobs_succeed(self, db_session, ctx, intake, pipeline, lyft_monthly_csv):
        """Test one job per bucket is recorded."""
        upload_lyft_march(db_session, ctx, intake, lyft_monthly_csv)

        pipeline()

        keys = {
            job.dedupe_key
            for job in db_session.query(ProcessingJob).filter(ProcessingJob.job_type == "snapshot.compute")
        }
        assert keys == {"snapshot.compute:YTD:2024", "snapshot.compute:Monthly:2024-03"}
