"""
Integration tests for manual entries, adjustments, ledger immutability and snapshots.
"""
import uuid
from datetime import date
from decimal import Decimal

import pytest

from gigledger.exceptions import LedgerImmutabilityError, RaceConditionError, ValidationError
from gigledger.messaging import topics
from gigledger.models.job import JobStatus, ProcessingJob
from gigledger.models.ledger import LedgerEntry, LedgerLine, LedgerSourceType
from gigledger.models.snapshot import LedgerSnapshot
from gigledger.models.statement import LineType, PeriodType
from gigledger.services.posting import ManualLineInput, post_adjustment, post_manual_entry
from gigledger.services.posting import manual as manual_posting
from gigledger.services.posting.base import new_entry
from gigledger.services.snapshots import SnapshotCalculator, SnapshotHandler, aggregate


def fuel(amount="40.00", gst="2.00"):
    return [
        ManualLineInput(line_type=LineType.EXPENSE, amount=Decimal(amount), gst_hst=Decimal(gst), memo="Fuel"),
    ]


class TestManualEntry:
    """Tests for post_manual_entry."""

    def test_posts_entry(self, db_session, ctx, publisher):
        """Test lines are stored and ledger.posted is published."""
        entry_id = post_manual_entry(
            db_session, ctx, publisher, fuel(), entry_date=date(2024, 6, 1), idempotency_key="fuel-june"
        )

        entry = db_session.get(LedgerEntry, entry_id)
        assert entry.source_type == LedgerSourceType.MANUAL
        assert entry.source_id == "fuel-june"
        assert entry.posted_by == "tester"
        assert entry.lines[0].gst_hst == Decimal("2.00")

        [envelope] = publisher.published(topics.LEDGER_POSTED)
        assert envelope.data == {
            "ledger_entry_id": str(entry_id),
            "source_type": "Manual",
            "source_id": "fuel-june",
            "entry_date": "2024-06-01",
        }

    def test_replay_returns_first_entry(self, db_session, ctx, publisher):
        """Test the same idempotency key posts once."""
        first = post_manual_entry(db_session, ctx, publisher, fuel(), idempotency_key="k1")
        second = post_manual_entry(db_session, ctx, publisher, fuel("99.00"), idempotency_key="k1")

        assert first == second
        assert db_session.query(LedgerEntry).count() == 1
        assert len(publisher.published(topics.LEDGER_POSTED)) == 1

    def test_without_key_posts_each_time(self, db_session, ctx, publisher):
        """Test entries without a key are independent."""
        post_manual_entry(db_session, ctx, publisher, fuel())
        post_manual_entry(db_session, ctx, publisher, fuel())

        assert db_session.query(LedgerEntry).count() == 2

    def test_concurrent_replay_returns_winner(self, db_session, ctx, publisher, monkeypatch):
        """Test a key committed by another request after the replay check resolves to that entry."""
        winner = new_entry(ctx, LedgerSourceType.MANUAL, "fuel-june", date(2024, 6, 1))
        winner_id = winner.id
        db_session.add(winner)
        db_session.commit()

        lookups = []
        real_find_entry = manual_posting.find_entry

        def find_entry_after_lookup(*args):
            lookups.append(args)
            return None if len(lookups) == 1 else real_find_entry(*args)

        monkeypatch.setattr(manual_posting, "find_entry", find_entry_after_lookup)

        entry_id = post_manual_entry(db_session, ctx, publisher, fuel(), idempotency_key="fuel-june")

        assert entry_id == winner_id
        assert db_session.query(LedgerEntry).count() == 1
        assert db_session.query(ProcessingJob).one().status == JobStatus.SUCCEEDED
        assert publisher.published(topics.LEDGER_POSTED) == []

    @pytest.mark.parametrize("lines", [
        [],
        [ManualLineInput(line_type=LineType.EXPENSE, amount=Decimal("0"))],
    ])
    def test_invalid_lines(self, db_session, ctx, publisher, lines):
        """Test empty entries and zero amounts are rejected."""
        with pytest.raises(ValidationError):
            post_manual_entry(db_session, ctx, publisher, lines, idempotency_key="bad")

        assert db_session.query(LedgerEntry).count() == 0
        assert db_session.query(ProcessingJob).count() == 0


class TestAdjustment:
    """Tests for post_adjustment."""

    def test_reversal_and_corrected_entry(self, db_session, ctx, publisher):
        """Test the original is negated and the correction posted beside it."""
        original_id = post_manual_entry(
            db_session, ctx, publisher, fuel(), entry_date=date(2024, 6, 1), idempotency_key="fuel"
        )
        publisher.clear()

        reversal_id, corrected_id = post_adjustment(
            db_session, ctx, publisher, original_id, fuel("45.00", "2.25"), idempotency_key="fix-1"
        )

        reversal = db_session.get(LedgerEntry, reversal_id)
        corrected = db_session.get(LedgerEntry, corrected_id)
        assert reversal.source_id == f"reverse:{original_id}"
        assert corrected.source_id == f"corrected:{original_id}"
        assert reversal.entry_date == corrected.entry_date == date(2024, 6, 1)
        assert sorted(line.amount for line in reversal.lines) == [Decimal("-40.00")]
        assert len(publisher.published(topics.LEDGER_POSTED)) == 2

        totals = aggregate(db_session.query(LedgerEntry).all())
        assert totals.expenses == Decimal("45.00")

    def test_original_is_untouched(self, db_session, ctx, publisher):
        """Test the corrected entry leaves the original lines as posted."""
        original_id = post_manual_entry(db_session, ctx, publisher, fuel(), idempotency_key="fuel")

        post_adjustment(db_session, ctx, publisher, original_id, fuel("45.00"), idempotency_key="fix-1")

        original = db_session.get(LedgerEntry, original_id)
        assert sorted(line.amount for line in original.lines) == [Decimal("40.00")]

    def test_replay(self, db_session, ctx, publisher):
        """Test replaying an adjustment returns the same pair."""
        original_id = post_manual_entry(db_session, ctx, publisher, fuel(), idempotency_key="fuel")

        first = post_adjustment(db_session, ctx, publisher, original_id, fuel("45.00"), idempotency_key="fix-1")
        second = post_adjustment(db_session, ctx, publisher, original_id, fuel("45.00"), idempotency_key="fix-1")

        assert first == second
        assert db_session.query(LedgerEntry).count() == 3

    def test_second_correction_with_new_key_is_rejected(self, db_session, ctx, publisher):
        """Test an entry that was already corrected cannot be corrected again."""
        original_id = post_manual_entry(db_session, ctx, publisher, fuel(), idempotency_key="fuel")
        _, corrected_id = post_adjustment(
            db_session, ctx, publisher, original_id, fuel("45.00"), idempotency_key="k1"
        )

        with pytest.raises(ValidationError) as exc_info:
            post_adjustment(db_session, ctx, publisher, original_id, fuel("30.00"), idempotency_key="k2")

        assert exc_info.value.details["corrected_entry_id"] == str(corrected_id)
        assert db_session.query(LedgerEntry).count() == 3

    def test_correct_the_corrected_entry(self, db_session, ctx, publisher):
        """Test a later change is posted against the corrected entry."""
        original_id = post_manual_entry(
            db_session, ctx, publisher, fuel(), entry_date=date(2024, 6, 1), idempotency_key="fuel"
        )
        _, corrected_id = post_adjustment(
            db_session, ctx, publisher, original_id, fuel("45.00"), idempotency_key="k1"
        )

        post_adjustment(db_session, ctx, publisher, corrected_id, fuel("30.00"), idempotency_key="k2")

        totals = aggregate(db_session.query(LedgerEntry).all())
        assert totals.expenses == Decimal("30.00")
        assert db_session.query(LedgerEntry).count() == 5

    def test_unknown_entry(self, db_session, ctx, publisher):
        """Test correcting a missing entry fails validation."""
        with pytest.raises(ValidationError):
            post_adjustment(db_session, ctx, publisher, uuid.uuid4(), fuel())


class TestImmutability:
    """Tests for the ledger write guard."""

    def test_update_rejected(self, db_session, ctx, publisher):
        """Test changing a posted line fails at flush."""
        entry_id = post_manual_entry(db_session, ctx, publisher, fuel(), idempotency_key="fuel")
        line = db_session.query(LedgerLine).filter(LedgerLine.ledger_entry_id == entry_id).first()

        line.amount = Decimal("1.00")
        with pytest.raises(LedgerImmutabilityError):
            db_session.commit()
        db_session.rollback()

    def test_delete_rejected(self, db_session, ctx, publisher):
        """Test deleting a posted entry fails at flush."""
        entry_id = post_manual_entry(db_session, ctx, publisher, fuel(), idempotency_key="fuel")

        db_session.delete(db_session.get(LedgerEntry, entry_id))
        with pytest.raises(LedgerImmutabilityError):
            db_session.flush()
        db_session.rollback()


class TestManualSnapshots:
    """Tests for snapshots over manual entries."""

    def test_recompute_is_stable(self, db_session, ctx, publisher):
        """Test recomputing the same bucket twice gives the same totals."""
        post_manual_entry(db_session, ctx, publisher, fuel(), entry_date=date(2024, 6, 1), idempotency_key="fuel")
        calculator = SnapshotCalculator()

        first = calculator.compute(db_session, ctx, "YTD", "2024")
        db_session.commit()
        second = calculator.compute(db_session, ctx, "YTD", "2024")
        db_session.commit()

        assert first.id == second.id
        assert second.detail("ExpensesTotal").value == Decimal("40.00")
        assert second.totals_json["EntryCount"] == 1
        assert len(second.details) == 5


class RacingCalculator(SnapshotCalculator):
    """Inserts its snapshot blind for the first `races` computes, as if another worker got there first."""

    def __init__(self, races: int = 1):
        self.races = races
        self.calls = 0

    def compute(self, db, ctx, period_type, period_key):
        self.calls += 1
        if self.calls <= self.races:
            snapshot = LedgerSnapshot(
                tenant_id=ctx.tenant_id, period_type=PeriodType(period_type).value, period_key=period_key
            )
            db.add(snapshot)
            return snapshot
        return super().compute(db, ctx, period_type, period_key)


class TestSnapshotHandler:
    """Tests for snapshot recomputation on ledger.posted."""

    @pytest.fixture
    def posted(self, db_session, ctx, publisher):
        """ledger.posted for a fuel entry, with a stale YTD snapshot already committed."""
        post_manual_entry(db_session, ctx, publisher, fuel(), entry_date=date(2024, 6, 1), idempotency_key="fuel")
        db_session.add(LedgerSnapshot(
            tenant_id=ctx.tenant_id, period_type=PeriodType.YTD.value, period_key="2024", totals_json={"EntryCount": 0}
        ))
        db_session.commit()
        [(_, envelope)] = publisher.drain()
        return envelope

    def test_lost_insert_is_recomputed(self, db_session, ctx, session_factory, publisher, posted):
        """Test losing the snapshot insert recomputes over the winner's row from the current ledger."""
        calculator = RacingCalculator()

        SnapshotHandler(session_factory, publisher, calculator=calculator).handle(posted)

        assert calculator.calls == 2
        snapshot = db_session.query(LedgerSnapshot).one()
        assert snapshot.totals_json["EntryCount"] == 1
        assert snapshot.detail("ExpensesTotal").value == Decimal("40.00")
        job = db_session.query(ProcessingJob).filter(ProcessingJob.job_type == "snapshot.compute").one()
        assert job.status == JobStatus.SUCCEEDED

    def test_repeated_race_fails_job(self, db_session, ctx, session_factory, publisher, posted):
        """Test a delivery that keeps losing the insert fails so the message is retried."""
        handler = SnapshotHandler(session_factory, publisher, calculator=RacingCalculator(races=2))

        with pytest.raises(RaceConditionError):
            handler.handle(posted)

        snapshot = db_session.query(LedgerSnapshot).one()
        assert snapshot.totals_json["EntryCount"] == 0
        job = db_session.query(ProcessingJob).filter(ProcessingJob.job_type == "snapshot.compute").one()
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
