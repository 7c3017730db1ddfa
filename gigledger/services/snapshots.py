"""
Ledger snapshot calculator.

On every ``ledger.posted`` event the affected period buckets are recomputed
from current ledger state (never incrementally), so out-of-order or repeated
events converge on the same snapshot.

Bucket selection:
- Receipt entries: YTD of the entry year
- Statement entries: YTD of the statement year, plus the statement's own
  Monthly or Quarterly bucket
- anything else: YTD of the entry year

Authority score is the share of monetary statement lines behind the bucket
whose currency and classification were both read from the document.
"""
import calendar
import re
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from gigledger.context import CancellationToken, TenantContext
from gigledger.exceptions import InvalidPeriodKeyError, RaceConditionError
from gigledger.models.audit import AuditAction
from gigledger.models.job import JobType
from gigledger.models.ledger import LedgerEntry, LedgerLine, LedgerSourceLink, LedgerSourceType
from gigledger.models.snapshot import LedgerSnapshot, SnapshotDetail
from gigledger.models.statement import LineType, PeriodType, Statement, StatementLine
from gigledger.models.types import utcnow
from gigledger.services.audit import log_audit_event
from gigledger.services.parsing import normalize_description, round_half_up
from gigledger.services.posting.base import PipelineHandler, commit_posting
from gigledger.services.processing_jobs import record_job_failure, start_job

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")

# Compute passes per delivery when a concurrent recompute inserts the same snapshot
RACE_ATTEMPTS = 2

# Revenue anchor: when present on a statement entry it is the whole revenue
ANCHOR_REVENUE_MEMO = "gross uber rides fares"

MONTHLY_KEY_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")
QUARTERLY_KEY_PATTERN = re.compile(r"^(\d{4})-Q([1-4])$")
YEAR_KEY_PATTERN = re.compile(r"^(\d{4})$")

DETAIL_KEYS = ("RevenueTotal", "ExpensesTotal", "TaxCollectedTotal", "ItcTotal", "NetTax")


def period_range(period_type: str, period_key: str) -> Tuple[date, date]:
    """
    Inclusive date range of a bucket.

    Raises:
        InvalidPeriodKeyError: key does not match the period type.
    """
    key = (period_key or "").strip()
    try:
        period_type = PeriodType(period_type)
    except ValueError:
        raise InvalidPeriodKeyError(str(period_type), key)

    if period_type == PeriodType.MONTHLY:
        match = MONTHLY_KEY_PATTERN.match(key)
        if match:
            year, month = int(match.group(1)), int(match.group(2))
            return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])
    elif period_type == PeriodType.QUARTERLY:
        match = QUARTERLY_KEY_PATTERN.match(key)
        if match:
            year, quarter = int(match.group(1)), int(match.group(2))
            start_month = (quarter - 1) * 3 + 1
            end_month = start_month + 2
            return date(year, start_month, 1), date(year, end_month, calendar.monthrange(year, end_month)[1])
    elif period_type in (PeriodType.YTD, PeriodType.YEARLY):
        match = YEAR_KEY_PATTERN.match(key)
        if match:
            year = int(match.group(1))
            return date(year, 1, 1), date(year, 12, 31)

    raise InvalidPeriodKeyError(period_type.value, key)


@dataclass
class SnapshotTotals:
    revenue: Decimal = ZERO
    expenses: Decimal = ZERO
    tax_collected: Decimal = ZERO
    itc: Decimal = ZERO

    @property
    def net_tax(self) -> Decimal:
        return self.tax_collected - self.itc

    def as_details(self) -> Dict[str, Decimal]:
        return {
            "RevenueTotal": self.revenue,
            "ExpensesTotal": self.expenses,
            "TaxCollectedTotal": self.tax_collected,
            "ItcTotal": self.itc,
            "NetTax": self.net_tax,
        }


@dataclass
class AuthorityScore:
    """Evidence-weighted confidence of a snapshot."""

    evidenced: int = 0
    total: int = 0

    @property
    def evidence_pct(self) -> Decimal:
        if self.total == 0:
            return ZERO
        return round_half_up(Decimal(self.evidenced) / Decimal(self.total), 4)

    @property
    def estimated_pct(self) -> Decimal:
        if self.total == 0:
            return Decimal("1")
        return Decimal("1") - self.evidence_pct

    @property
    def score(self) -> int:
        if self.total == 0:
            return 0
        return int(round_half_up(Decimal(self.evidenced) * 100 / Decimal(self.total), 0))

    @classmethod
    def from_lines(cls, lines: Iterable[StatementLine]) -> "AuthorityScore":
        monetary = [line for line in lines if not line.is_metric]
        return cls(
            evidenced=sum(1 for line in monetary if line.is_fully_evidenced),
            total=len(monetary),
        )


def entry_revenue(entry: LedgerEntry) -> Decimal:
    income = [line for line in entry.lines if line.line_type == LineType.INCOME]
    if entry.source_type == LedgerSourceType.STATEMENT:
        anchor = [line for line in income if normalize_description(line.memo).lower() == ANCHOR_REVENUE_MEMO]
        if anchor:
            return sum((line.amount for line in anchor), ZERO)
    return sum((line.amount for line in income), ZERO)


def aggregate(entries: Iterable[LedgerEntry]) -> SnapshotTotals:
    """Sum ledger lines by type across entries."""
    totals = SnapshotTotals()
    for entry in entries:
        totals.revenue += entry_revenue(entry)
        for line in entry.lines:
            if line.line_type in (LineType.FEE, LineType.EXPENSE):
                totals.expenses += line.amount
            elif line.line_type == LineType.TAX_COLLECTED:
                totals.tax_collected += line.gst_hst
            elif line.line_type == LineType.ITC:
                totals.itc += line.gst_hst
    return totals


@dataclass
class Bucket:
    period_type: PeriodType
    period_key: str

    @property
    def dedupe_key(self) -> str:
        return f"snapshot.compute:{self.period_type.value}:{self.period_key}"


def buckets_for_event(db: Session, tenant_id, source_type: str, source_id: str, entry_date: date) -> List[Bucket]:
    """Buckets affected by one posted entry."""
    ytd = Bucket(PeriodType.YTD, str(entry_date.year))
    if source_type != LedgerSourceType.STATEMENT.value:
        return [ytd]

    statement = None
    try:
        statement = (
            db.query(Statement)
            .filter(Statement.tenant_id == tenant_id, Statement.id == uuid.UUID(str(source_id)))
            .first()
        )
    except ValueError:
        logger.warning("snapshot_statement_source_invalid", source_id=source_id)
    if statement is None:
        return [ytd]

    buckets = [Bucket(PeriodType.YTD, str(statement.period_start.year))]
    if statement.period_type in (PeriodType.MONTHLY, PeriodType.QUARTERLY):
        buckets.append(Bucket(PeriodType(statement.period_type), statement.period_key))
    return buckets


class SnapshotCalculator:
    """Recomputes one snapshot bucket from ledger state."""

    def bucket_entries(self, db: Session, tenant_id, period_type: PeriodType, period_key: str) -> List[LedgerEntry]:
        start, end = period_range(period_type, period_key)
        query = db.query(LedgerEntry).filter(
            LedgerEntry.tenant_id == tenant_id,
            LedgerEntry.entry_date >= start,
            LedgerEntry.entry_date <= end,
        )

        if period_type in (PeriodType.MONTHLY, PeriodType.QUARTERLY):
            statement_ids = [
                str(row.id)
                for row in db.query(Statement.id).filter(
                    Statement.tenant_id == tenant_id,
                    Statement.period_type == period_type,
                    Statement.period_key == period_key,
                )
            ]
            if not statement_ids:
                return []
            query = query.filter(
                LedgerEntry.source_type == LedgerSourceType.STATEMENT,
                LedgerEntry.source_id.in_(statement_ids),
            )
        return query.all()

    def authority(self, db: Session, tenant_id, entries: List[LedgerEntry]) -> AuthorityScore:
        entry_ids = [e.id for e in entries if e.source_type == LedgerSourceType.STATEMENT]
        if not entry_ids:
            return AuthorityScore()

        statement_line_ids = [
            row.statement_line_id
            for row in db.query(LedgerSourceLink.statement_line_id)
            .join(LedgerLine, LedgerSourceLink.ledger_line_id == LedgerLine.id)
            .filter(
                LedgerSourceLink.tenant_id == tenant_id,
                LedgerSourceLink.statement_line_id.isnot(None),
                LedgerLine.ledger_entry_id.in_(entry_ids),
            )
        ]
        if not statement_line_ids:
            return AuthorityScore()

        lines = (
            db.query(StatementLine)
            .filter(StatementLine.tenant_id == tenant_id, StatementLine.id.in_(statement_line_ids))
            .all()
        )
        return AuthorityScore.from_lines(lines)

    def compute(
        self, db: Session, ctx: TenantContext, period_type: PeriodType, period_key: str
    ) -> LedgerSnapshot:
        """Recompute and upsert one snapshot. Does not commit."""
        period_type = PeriodType(period_type)
        entries = self.bucket_entries(db, ctx.tenant_id, period_type, period_key)
        totals = aggregate(entries)
        authority = self.authority(db, ctx.tenant_id, entries)

        snapshot = (
            db.query(LedgerSnapshot)
            .filter(
                LedgerSnapshot.tenant_id == ctx.tenant_id,
                LedgerSnapshot.period_type == period_type.value,
                LedgerSnapshot.period_key == period_key,
            )
            .first()
        )
        if snapshot is None:
            snapshot = LedgerSnapshot(
                tenant_id=ctx.tenant_id, period_type=period_type.value, period_key=period_key
            )
            db.add(snapshot)

        snapshot.calculated_at = utcnow()
        snapshot.authority_score = authority.score
        snapshot.evidence_pct = authority.evidence_pct
        snapshot.estimated_pct = authority.estimated_pct
        snapshot.totals_json = {
            key: str(value) for key, value in totals.as_details().items()
        }
        snapshot.totals_json["EntryCount"] = len(entries)

        existing = {d.metric_key: d for d in snapshot.details}
        for key, value in totals.as_details().items():
            detail = existing.get(key)
            if detail is None:
                detail = SnapshotDetail(tenant_id=ctx.tenant_id, metric_key=key)
                snapshot.details.append(detail)
            detail.value = value
            detail.evidence_pct = authority.evidence_pct
            detail.estimated_pct = authority.estimated_pct

        log_audit_event(
            db, ctx,
            action=AuditAction.SNAPSHOT_UPDATED,
            entity_type="LedgerSnapshot",
            entity_id=f"{period_type.value}:{period_key}",
            metadata={
                "authority_score": authority.score,
                "entry_count": len(entries),
                "revenue": str(totals.revenue),
                "net_tax": str(totals.net_tax),
            },
        )
        logger.info(
            "snapshot_computed",
            period_type=period_type.value,
            period_key=period_key,
            authority_score=authority.score,
            entry_count=len(entries),
        )
        return snapshot


class SnapshotHandler(PipelineHandler):
    """Consumes ``ledger.posted`` and recomputes affected snapshots."""

    name = "snapshot.compute"

    def __init__(self, session_factory=None, publisher=None, calculator: Optional[SnapshotCalculator] = None):
        super().__init__(session_factory, publisher)
        self._calculator = calculator or SnapshotCalculator()

    def process(
        self, db: Session, ctx: TenantContext, data: dict, cancellation: CancellationToken
    ) -> List[Bucket]:
        try:
            entry_date = date.fromisoformat(str(data.get("entry_date")))
        except ValueError:
            logger.warning("snapshot_entry_date_invalid", entry_date=data.get("entry_date"))
            return []

        buckets = buckets_for_event(
            db, ctx.tenant_id, str(data.get("source_type")), str(data.get("source_id")), entry_date
        )

        current: Optional[Bucket] = None
        try:
            for attempt in range(1, RACE_ATTEMPTS + 1):
                try:
                    for current in buckets:
                        job = start_job(db, ctx, JobType.SNAPSHOT_COMPUTE, current.dedupe_key)
                        self._calculator.compute(db, ctx, current.period_type, current.period_key)
                        job.mark_succeeded()
                    commit_posting(db, cancellation)
                    break
                except RaceConditionError:
                    if attempt == RACE_ATTEMPTS:
                        raise
                    # The competing row may predate entries this delivery saw; recompute over it.
                    logger.warning(
                        "snapshot_race_recomputing",
                        buckets=[b.dedupe_key for b in buckets],
                        attempt=attempt,
                    )
        except Exception as e:
            record_job_failure(
                db, ctx, JobType.SNAPSHOT_COMPUTE,
                current.dedupe_key if current else "snapshot.compute:unknown",
                e,
                action=AuditAction.SNAPSHOT_COMPUTE_FAILED,
                entity_type="LedgerSnapshot",
                entity_id=f"{current.period_type.value}:{current.period_key}" if current else "unknown",
            )
            raise

        return buckets
