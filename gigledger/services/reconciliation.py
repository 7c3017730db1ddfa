"""
Monthly-vs-yearly reconciliation engine.

Compares the sum of a provider's Monthly statements for a year with its
Yearly statement, one variance per tracked metric (monthly minus yearly).
Runs are upserted by (tenant, provider, "Yearly", year) and their variances
replaced on every rerun.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from gigledger.context import CancellationToken, TenantContext
from gigledger.exceptions import MissingYearlyStatementError
from gigledger.messaging import topics
from gigledger.messaging.envelope import MessageEnvelope
from gigledger.messaging.publisher import MessagePublisher
from gigledger.models.audit import AuditAction
from gigledger.models.reconciliation import ReconciliationRun, ReconciliationVariance
from gigledger.models.statement import LineType, PeriodType, Statement, StatementLine
from gigledger.services.audit import log_audit_event
from gigledger.services.parsing import normalize_description

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class MetricDefinition:
    """How one reconciliation metric is summed from statement lines."""

    key: str
    line_type: Optional[LineType] = None
    description: Optional[str] = None
    metric_key: Optional[str] = None

    @property
    def is_metric(self) -> bool:
        return self.metric_key is not None

    def matches(self, line: StatementLine) -> bool:
        if self.is_metric:
            return bool(line.is_metric) and (line.metric_key or "").lower() == self.metric_key.lower()
        return (
            not line.is_metric
            and LineType(line.line_type).value.lower() == self.line_type.value.lower()
            and normalize_description(line.description).lower() == self.description.lower()
        )

    def value_of(self, line: StatementLine) -> Decimal:
        if self.is_metric:
            return line.metric_value if line.metric_value is not None else ZERO
        if self.line_type.is_tax_only:
            return line.tax_or_zero()
        return line.money_or_zero()

    def total(self, lines: Iterable[StatementLine]) -> Decimal:
        return sum((self.value_of(line) for line in lines if self.matches(line)), ZERO)


METRIC_DEFINITIONS = (
    MetricDefinition("Income.UberRidesGross", LineType.INCOME, "Uber Rides Total (Gross)"),
    MetricDefinition("Income.GrossUberRidesFares", LineType.INCOME, "Gross Uber rides fares"),
    MetricDefinition("Fee.UberRidesFees", LineType.FEE, "Uber Rides Fees Total"),
    MetricDefinition("TaxCollected.GSTHST", LineType.TAX_COLLECTED, "GST/HST you collected from Riders"),
    MetricDefinition("ITC.GSTHSTPaidToUber", LineType.ITC, "GST/HST you paid to Uber"),
    MetricDefinition("Metric.OnlineKilometers", metric_key="OnlineKilometers"),
    MetricDefinition("Metric.RideKilometers", metric_key="RideKilometers"),
)

HEADER_METRIC_KEYS = ("Income.UberRidesGross", "Income.GrossUberRidesFares")


def _statements(db: Session, tenant_id, provider: str, period_type: PeriodType):
    return db.query(Statement).filter(
        Statement.tenant_id == tenant_id,
        func.lower(Statement.provider) == provider.lower(),
        Statement.period_type == period_type,
    )


def compute_variances(
    monthly_lines: List[StatementLine],
    yearly_lines: List[StatementLine],
    definitions: Iterable[MetricDefinition] = METRIC_DEFINITIONS,
) -> Dict[str, tuple]:
    """metric key -> (monthly total, yearly total, monthly minus yearly)."""
    results = {}
    for definition in definitions:
        monthly = definition.total(monthly_lines)
        yearly = definition.total(yearly_lines)
        results[definition.key] = (monthly, yearly, monthly - yearly)
    return results


def header_totals(variances: Dict[str, tuple]) -> tuple:
    """Run header income totals: gross rides total, else gross fares."""
    for key in HEADER_METRIC_KEYS:
        monthly, yearly, variance = variances.get(key, (ZERO, ZERO, ZERO))
        if monthly != 0 or yearly != 0:
            return monthly, yearly, variance
    return ZERO, ZERO, ZERO


class ReconciliationEngine:
    """Builds and publishes reconciliation runs."""

    def __init__(self, publisher: MessagePublisher):
        self._publisher = publisher

    def reconcile(
        self,
        db: Session,
        ctx: TenantContext,
        provider: str,
        year: int,
        cancellation: Optional[CancellationToken] = None,
    ) -> ReconciliationRun:
        """
        Reconcile one provider and year.

        Raises:
            MissingYearlyStatementError: no Yearly statement keyed by the year.
        """
        cancellation = cancellation or CancellationToken.none()
        year_key = str(year)

        with ctx.bound(provider=provider, year=year):
            yearly = (
                _statements(db, ctx.tenant_id, provider, PeriodType.YEARLY)
                .filter(Statement.period_key == year_key)
                .first()
            )
            if yearly is None:
                raise MissingYearlyStatementError(provider, year)

            monthly_statements = [
                s for s in _statements(db, ctx.tenant_id, provider, PeriodType.MONTHLY).all()
                if s.period_start.year == year
            ]
            monthly_lines = [line for s in monthly_statements for line in s.lines]
            variances = compute_variances(monthly_lines, list(yearly.lines))
            monthly_income, yearly_income, header_variance = header_totals(variances)

            run = (
                db.query(ReconciliationRun)
                .filter(
                    ReconciliationRun.tenant_id == ctx.tenant_id,
                    func.lower(ReconciliationRun.provider) == provider.lower(),
                    ReconciliationRun.period_type == PeriodType.YEARLY.value,
                    ReconciliationRun.period_key == year_key,
                )
                .first()
            )
            if run is None:
                run = ReconciliationRun(
                    tenant_id=ctx.tenant_id,
                    provider=yearly.provider,
                    period_type=PeriodType.YEARLY.value,
                    period_key=year_key,
                )
                db.add(run)
            elif run.variances:
                # Deletes must reach the database before the replacement rows
                run.variances.clear()
                db.flush()

            run.yearly_statement_id = yearly.id
            run.monthly_income_total = monthly_income
            run.yearly_income_total = yearly_income
            run.variance_amount = header_variance
            for key, (monthly, yearly_value, variance) in variances.items():
                run.variances.append(ReconciliationVariance(
                    tenant_id=ctx.tenant_id,
                    metric_key=key,
                    monthly_value=monthly,
                    yearly_value=yearly_value,
                    variance_amount=variance,
                ))
            run.mark_completed()
            db.flush()

            log_audit_event(
                db, ctx,
                action=AuditAction.RECONCILIATION_COMPLETED,
                entity_type="ReconciliationRun",
                entity_id=run.id,
                metadata={
                    "provider": run.provider,
                    "year": year,
                    "monthly_statement_count": len(monthly_statements),
                    "variance_amount": str(header_variance),
                },
            )
            cancellation.raise_if_cancelled()
            db.commit()

            logger.info(
                "reconciliation_completed",
                reconciliation_run_id=str(run.id),
                monthly_statement_count=len(monthly_statements),
                variance_amount=str(header_variance),
            )
            self._publisher.publish(
                topics.RECONCILIATION_COMPLETED,
                MessageEnvelope.create(
                    type=topics.RECONCILIATION_COMPLETED_V1,
                    tenant_id=ctx.tenant_id,
                    correlation_id=ctx.correlation_id,
                    data={
                        "reconciliation_run_id": str(run.id),
                        "provider": run.provider,
                        "year": year,
                    },
                ),
            )
            return run
