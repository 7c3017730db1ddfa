"""
Statement line normalizer.

Turns raw extractor output into the persisted set of StatementLines:

1. classify and type each raw line (metric vs money, absolute amounts)
2. collapse duplicates, keeping the best-evidenced copy
3. prune provider noise and apply provider allowlists
4. replace the statement's lines and recompute its rollups
"""
from collections import Counter, OrderedDict
from decimal import Decimal
from typing import Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from gigledger.config import get_settings
from gigledger.models.statement import Evidence, LineType, Statement, StatementLine
from gigledger.services.classification import (
    LineClassifier,
    get_line_classifier,
    resolve_metric_key_and_unit,
)
from gigledger.services.extractors.base import RawLine, StatementLineCandidate
from gigledger.services.extractors.provider_rules import is_noise, profile_for
from gigledger.services.parsing import (
    normalize_description,
    resolve_currency,
    round_half_up,
    round_metric,
)

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


def normalize_line(
    raw: RawLine,
    classifier: Optional[LineClassifier] = None,
    default_currency: Optional[str] = None,
) -> Optional[StatementLineCandidate]:
    """
    Classify one raw line.

    Returns:
        A candidate, or None when the line carries no usable value.
    """
    classifier = classifier or get_line_classifier()
    default_currency = default_currency or get_settings().default_currency
    description = normalize_description(raw.description) or None

    if raw.metric_key:
        line_type, evidence = LineType.METRIC, Evidence.EXTRACTED
    else:
        result = classifier.classify(description, raw.raw_type, raw.amount, raw.tax_amount)
        line_type, evidence = result.line_type, result.evidence

    if line_type == LineType.METRIC:
        metric_key, unit = raw.metric_key, raw.unit
        if not metric_key:
            metric_key, unit = resolve_metric_key_and_unit(description, raw.raw_type)
        value = raw.metric_value if raw.metric_value is not None else raw.amount
        if value is None:
            return None
        return StatementLineCandidate(
            line_type=LineType.METRIC,
            description=description,
            currency_code=None,
            currency_evidence=Evidence.INFERRED,
            classification_evidence=evidence,
            line_date=raw.line_date,
            is_metric=True,
            metric_key=metric_key or "Metric",
            metric_value=round_metric(metric_key, value),
            unit=unit,
            source=raw.source,
        )

    money = raw.amount
    if money is not None and not raw.keep_sign:
        money = abs(money)
    tax = abs(raw.tax_amount) if raw.tax_amount is not None else None

    if line_type.is_tax_only and not tax and money:
        tax, money = abs(money), ZERO
    if tax == ZERO and not line_type.is_tax_only:
        tax = None
    if money is None and tax is None:
        return None

    currency, currency_evidence = resolve_currency(
        raw.currency_cell, raw.statement_currency, raw.amount_cell, default=default_currency
    )
    return StatementLineCandidate(
        line_type=line_type,
        description=description,
        currency_code=currency,
        currency_evidence=currency_evidence,
        classification_evidence=evidence,
        line_date=raw.line_date,
        money_amount=round_half_up(money) if money is not None else None,
        tax_amount=round_half_up(tax) if tax is not None else None,
        source=raw.source,
    )


def collapse(candidates: Iterable[StatementLineCandidate]) -> List[StatementLineCandidate]:
    """Keep one candidate per dedupe key, preferring extracted evidence."""
    groups: "OrderedDict[tuple, StatementLineCandidate]" = OrderedDict()
    for candidate in candidates:
        key = candidate.dedupe_key()
        kept = groups.get(key)
        if kept is None or candidate.evidence_rank() > kept.evidence_rank():
            groups[key] = candidate
    return list(groups.values())


def prune(
    candidates: Iterable[StatementLineCandidate],
    provider: Optional[str],
    default_currency: Optional[str] = None,
) -> List[StatementLineCandidate]:
    """
    Drop identifier noise and apply the provider's allowlist.

    Providers with required canonical lines get zero-valued copies of any
    that are missing.
    """
    kept = [c for c in candidates if not is_noise(c.description)]

    profile = profile_for(provider)
    if profile is None:
        return kept

    kept = [c for c in kept if c.is_metric or profile.allows(c.description)]

    present = {normalize_description(c.description).lower() for c in kept}
    for raw_type, description in profile.required_zero_lines:
        if description.lower() in present:
            continue
        kept.append(StatementLineCandidate(
            line_type=LineType(raw_type),
            description=description,
            currency_code=default_currency or get_settings().default_currency,
            currency_evidence=Evidence.INFERRED,
            classification_evidence=Evidence.INFERRED,
            money_amount=ZERO,
            tax_amount=ZERO,
            source="required",
        ))
    return kept


def normalize_lines(
    raw_lines: Iterable[RawLine],
    provider: Optional[str],
    classifier: Optional[LineClassifier] = None,
) -> List[StatementLineCandidate]:
    """Classify, collapse and prune a statement's raw lines."""
    default_currency = get_settings().default_currency
    candidates = []
    dropped = 0
    for raw in raw_lines:
        candidate = normalize_line(raw, classifier, default_currency)
        if candidate is None:
            dropped += 1
            continue
        candidates.append(candidate)

    collapsed = collapse(candidates)
    pruned = prune(collapsed, provider, default_currency)
    logger.info(
        "statement_lines_normalized",
        provider=provider,
        raw_count=len(candidates) + dropped,
        dropped_count=dropped,
        collapsed_count=len(collapsed),
        final_count=len(pruned),
    )
    return pruned


def majority_currency(lines: Iterable[StatementLine], default: str) -> tuple:
    """Most common extracted line currency, else the default as inferred."""
    votes = Counter(
        line.currency_code
        for line in lines
        if line.currency_code and line.currency_evidence == Evidence.EXTRACTED
    )
    if not votes:
        return default, Evidence.INFERRED
    return votes.most_common(1)[0][0], Evidence.EXTRACTED


def replace_statement_lines(
    db: Session,
    statement: Statement,
    candidates: Iterable[StatementLineCandidate],
) -> List[StatementLine]:
    """
    Replace every line of a statement and recompute its rollups.

    Does not commit.
    """
    statement.lines.clear()
    db.flush()

    lines = [
        StatementLine(
            tenant_id=statement.tenant_id,
            line_date=c.line_date or statement.period_start,
            line_type=c.line_type,
            description=c.description,
            currency_code=c.currency_code,
            currency_evidence=c.currency_evidence,
            classification_evidence=c.classification_evidence,
            is_metric=c.is_metric,
            metric_key=c.metric_key,
            metric_value=c.metric_value,
            unit=c.unit,
            money_amount=c.money_amount,
            tax_amount=c.tax_amount,
        )
        for c in candidates
    ]
    statement.lines.extend(lines)

    monetary = [line for line in lines if not line.is_metric]
    statement.income_total = sum(
        (line.money_or_zero() for line in monetary if line.line_type == LineType.INCOME), ZERO
    )
    statement.fee_total = sum(
        (line.money_or_zero() for line in monetary if line.line_type == LineType.FEE), ZERO
    )
    statement.tax_total = sum(
        (line.tax_or_zero() for line in monetary if line.line_type == LineType.TAX_COLLECTED), ZERO
    )
    statement.line_count = len(lines)
    statement.currency_code, statement.currency_evidence = majority_currency(
        lines, get_settings().default_currency
    )
    db.flush()
    return lines
