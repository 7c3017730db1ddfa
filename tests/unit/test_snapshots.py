"""
Unit tests for snapshot period ranges, totals and authority scoring.
"""
from datetime import date
from decimal import Decimal

import pytest

from gigledger.exceptions import InvalidPeriodKeyError
from gigledger.models.ledger import LedgerEntry, LedgerLine, LedgerSourceType
from gigledger.models.statement import Evidence, LineType, PeriodType, StatementLine
from gigledger.services.snapshots import (
    AuthorityScore,
    Bucket,
    aggregate,
    buckets_for_event,
    entry_revenue,
    period_range,
)


def ledger_entry(source_type, *lines) -> LedgerEntry:
    return LedgerEntry(
        source_type=source_type,
        source_id="src",
        entry_date=date(2024, 3, 31),
        lines=[
            LedgerLine(line_type=line_type, amount=Decimal(amount), gst_hst=Decimal(gst), memo=memo)
            for line_type, amount, gst, memo in lines
        ],
    )


def statement_line(currency=Evidence.EXTRACTED, classification=Evidence.EXTRACTED, is_metric=False):
    return StatementLine(
        line_type=LineType.METRIC if is_metric else LineType.INCOME,
        currency_evidence=currency,
        classification_evidence=classification,
        is_metric=is_metric,
    )


class TestPeriodRange:
    """Tests for period_range."""

    @pytest.mark.parametrize("period_type,key,expected", [
        (PeriodType.MONTHLY, "2024-02", (date(2024, 2, 1), date(2024, 2, 29))),
        (PeriodType.QUARTERLY, "2024-Q4", (date(2024, 10, 1), date(2024, 12, 31))),
        (PeriodType.YTD, "2024", (date(2024, 1, 1), date(2024, 12, 31))),
        (PeriodType.YEARLY, "2023", (date(2023, 1, 1), date(2023, 12, 31))),
        ("Monthly", " 2024-03 ", (date(2024, 3, 1), date(2024, 3, 31))),
    ])
    def test_valid_keys(self, period_type, key, expected):
        """Test each period type maps to its inclusive range."""
        assert period_range(period_type, key) == expected

    @pytest.mark.parametrize("period_type,key", [
        (PeriodType.MONTHLY, "2024-13"),
        (PeriodType.MONTHLY, "2024"),
        (PeriodType.QUARTERLY, "2024-Q5"),
        (PeriodType.YTD, "2024-01"),
        ("Weekly", "2024"),
    ])
    def test_invalid_keys(self, period_type, key):
        """Test keys that do not match their type are rejected."""
        with pytest.raises(InvalidPeriodKeyError):
            period_range(period_type, key)


class TestAuthorityScore:
    """Tests for evidence-weighted authority."""

    def test_fully_evidenced(self):
        """Test all lines extracted scores 100."""
        score = AuthorityScore.from_lines([statement_line(), statement_line()])

        assert score.score == 100
        assert score.evidence_pct == Decimal("1.0000")
        assert score.estimated_pct == Decimal("0.0000")

    def test_partial_evidence(self):
        """Test inferred currency or classification lowers the score."""
        score = AuthorityScore.from_lines([
            statement_line(),
            statement_line(),
            statement_line(currency=Evidence.INFERRED),
        ])

        assert score.score == 67
        assert score.evidence_pct == Decimal("0.6667")
        assert score.estimated_pct == Decimal("0.3333")

    def test_metrics_do_not_count(self):
        """Test metric lines are excluded from the score."""
        score = AuthorityScore.from_lines([
            statement_line(),
            statement_line(classification=Evidence.INFERRED, is_metric=True),
        ])

        assert score.total == 1
        assert score.score == 100

    def test_no_lines(self):
        """Test an empty bucket is fully estimated."""
        score = AuthorityScore()

        assert score.score == 0
        assert score.evidence_pct == Decimal("0")
        assert score.estimated_pct == Decimal("1")


class TestAggregate:
    """Tests for ledger totals."""

    def test_totals_by_type(self):
        """Test revenue, expenses, tax collected and ITC."""
        entry = ledger_entry(
            LedgerSourceType.STATEMENT,
            (LineType.INCOME, "1000", "0", "Gross fares"),
            (LineType.FEE, "150", "0", "Platform fees"),
            (LineType.TAX_COLLECTED, "0", "50", "GST/HST received"),
            (LineType.ITC, "0", "10", "GST/HST paid"),
        )
        receipt = ledger_entry(
            LedgerSourceType.RECEIPT,
            (LineType.EXPENSE, "20", "0", "Wipers"),
        )

        totals = aggregate([entry, receipt])

        assert totals.revenue == Decimal("1000")
        assert totals.expenses == Decimal("170")
        assert totals.tax_collected == Decimal("50")
        assert totals.itc == Decimal("10")
        assert totals.net_tax == Decimal("40")
        assert set(totals.as_details()) == {
            "RevenueTotal", "ExpensesTotal", "TaxCollectedTotal", "ItcTotal", "NetTax",
        }

    def test_gross_fares_anchor_revenue(self):
        """Test gross rides fares stand for the whole statement revenue."""
        entry = ledger_entry(
            LedgerSourceType.STATEMENT,
            (LineType.INCOME, "1200", "0", "Gross Uber rides fares"),
            (LineType.INCOME, "45", "0", "Tips"),
        )

        assert entry_revenue(entry) == Decimal("1200")

    def test_anchor_only_applies_to_statements(self):
        """Test other sources sum every income line."""
        entry = ledger_entry(
            LedgerSourceType.MANUAL,
            (LineType.INCOME, "1200", "0", "Gross Uber rides fares"),
            (LineType.INCOME, "45", "0", "Tips"),
        )

        assert entry_revenue(entry) == Decimal("1245")

    def test_reversals_cancel(self):
        """Test negated adjustment lines offset the original."""
        original = ledger_entry(LedgerSourceType.MANUAL, (LineType.EXPENSE, "40", "0", None))
        reversal = ledger_entry(LedgerSourceType.ADJUSTMENT, (LineType.EXPENSE, "-40", "0", None))

        assert aggregate([original, reversal]).expenses == Decimal("0")


class TestBuckets:
    """Tests for bucket selection."""

    def test_dedupe_key(self):
        """Test the job key names the bucket."""
        assert Bucket(PeriodType.MONTHLY, "2024-03").dedupe_key == "snapshot.compute:Monthly:2024-03"

    def test_receipt_updates_ytd(self, db_session, tenant_id):
        """Test receipts only touch the year to date."""
        buckets = buckets_for_event(db_session, tenant_id, "Receipt", "r1", date(2024, 5, 14))

        assert buckets == [Bucket(PeriodType.YTD, "2024")]

    def test_monthly_statement(self, db_session, tenant_id, make_statement):
        """Test a monthly statement updates its month and the year."""
        statement = make_statement(provider="Lyft", period_type=PeriodType.MONTHLY, period_key="2024-03")

        buckets = buckets_for_event(db_session, tenant_id, "Statement", str(statement.id), date(2024, 3, 31))

        assert buckets == [Bucket(PeriodType.YTD, "2024"), Bucket(PeriodType.MONTHLY, "2024-03")]

    def test_yearly_statement(self, db_session, tenant_id, make_statement):
        """Test yearly statements only update the year."""
        statement = make_statement(provider="Uber", period_type=PeriodType.YEARLY, period_key="2024")

        buckets = buckets_for_event(db_session, tenant_id, "Statement", str(statement.id), date(2024, 12, 31))

        assert buckets == [Bucket(PeriodType.YTD, "2024")]

    def test_unknown_statement_falls_back(self, db_session, tenant_id):
        """Test an unreadable statement id still updates the year."""
        buckets = buckets_for_event(db_session, tenant_id, "Statement", "not-a-uuid", date(2024, 1, 5))

        assert buckets == [Bucket(PeriodType.YTD, "2024")]
