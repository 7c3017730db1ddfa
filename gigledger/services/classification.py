"""
Line classification for extracted statement rows.

Explicit type hints win. Otherwise an ordered rule table is evaluated top to
bottom and the first matching rule decides the line type:

1. metric indicators (distance, trip counts, online time, rates)
2. ITC phrases
3. tax-collected phrases
4. fee phrases
5. income phrases
6. sign of the amount
7. tax-only rows
8. Other

Provider-specific rules are composed by prepending to the table.
"""
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Tuple

import structlog

from gigledger.models.statement import Evidence, LineType

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LineFacts:
    """Lower-cased text and amounts a rule can look at."""

    description: str
    raw_type: str
    amount: Optional[Decimal]
    tax_amount: Optional[Decimal]

    @classmethod
    def of(
        cls,
        description: Optional[str],
        raw_type: Optional[str] = None,
        amount: Optional[Decimal] = None,
        tax_amount: Optional[Decimal] = None,
    ) -> "LineFacts":
        return cls(
            description=(description or "").replace(" ", " ").lower(),
            raw_type=(raw_type or "").lower(),
            amount=amount,
            tax_amount=tax_amount,
        )

    def mentions(self, *phrases: str) -> bool:
        return any(p in self.description for p in phrases)


@dataclass(frozen=True)
class ClassificationRule:
    """One (predicate, line type) row of the rule table."""

    name: str
    line_type: LineType
    predicate: Callable[[LineFacts], bool]


@dataclass
class Classification:
    """Result of classifying one line."""

    line_type: LineType
    evidence: Evidence
    rule: str


DISTANCE_PATTERN = re.compile(r"\bkm\b|kilomet|\bmiles?\b|\bmi\b")
KM_PATTERN = re.compile(r"\bkm\b|kilomet")
MILE_PATTERN = re.compile(r"\bmiles?\b|\bmi\b")


def is_metric_line(facts: LineFacts) -> bool:
    if "metric" in facts.raw_type:
        return True
    d = facts.description
    if DISTANCE_PATTERN.search(d):
        return True
    if "trip" in d and ("count" in d or "trips" in d):
        return True
    if facts.mentions("online hour", "online time", "hours online"):
        return True
    return facts.mentions("acceptance rate", "cancellation rate", "rating", "%")


def _is_itc(f: LineFacts) -> bool:
    return f.mentions("itc", "gst/hst paid", "tax paid on platform", "input tax credit") or bool(
        re.search(r"gst\s*/\s*hst\s+(you\s+)?paid", f.description)
    )


def _is_tax_collected(f: LineFacts) -> bool:
    return f.mentions("gst", "hst") and (
        f.mentions("collected", "charged", "received") or "tax" in f.raw_type
    )


def _is_fee(f: LineFacts) -> bool:
    return f.mentions(
        "fee", "commission", "platform", "booking", "airport", "regulatory", "toll", "3rd party"
    ) or "fee" in f.raw_type


def _is_income(f: LineFacts) -> bool:
    return f.mentions("gross", "fare", "trip", "bonus", "promotion", "tip") or "income" in f.raw_type


DEFAULT_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule("metric", LineType.METRIC, is_metric_line),
    ClassificationRule("itc_phrase", LineType.ITC, _is_itc),
    ClassificationRule("tax_collected_phrase", LineType.TAX_COLLECTED, _is_tax_collected),
    ClassificationRule("fee_phrase", LineType.FEE, _is_fee),
    ClassificationRule("income_phrase", LineType.INCOME, _is_income),
    ClassificationRule("negative_amount", LineType.FEE, lambda f: f.amount is not None and f.amount < 0),
    ClassificationRule("positive_amount", LineType.INCOME, lambda f: f.amount is not None and f.amount > 0),
    ClassificationRule("tax_only", LineType.TAX_COLLECTED, lambda f: bool(f.tax_amount)),
)

# Raw type hints that name a line type outright
EXPLICIT_TYPE_HINTS = {
    "income": LineType.INCOME,
    "earnings": LineType.INCOME,
    "revenue": LineType.INCOME,
    "fee": LineType.FEE,
    "fees": LineType.FEE,
    "commission": LineType.FEE,
    "taxcollected": LineType.TAX_COLLECTED,
    "gstcollected": LineType.TAX_COLLECTED,
    "hstcollected": LineType.TAX_COLLECTED,
    "itc": LineType.ITC,
    "inputtaxcredit": LineType.ITC,
    "expense": LineType.EXPENSE,
    "expenses": LineType.EXPENSE,
    "metric": LineType.METRIC,
    "other": LineType.OTHER,
}


def classification_evidence(raw_type: Optional[str]) -> Evidence:
    """A raw type of at least three characters counts as extracted evidence."""
    if raw_type and len(raw_type.strip()) >= 3:
        return Evidence.EXTRACTED
    return Evidence.INFERRED


def resolve_metric_key_and_unit(
    description: Optional[str], raw_type: Optional[str] = None
) -> Tuple[Optional[str], Optional[str]]:
    """Map a metric description onto its canonical key and unit."""
    facts = LineFacts.of(description, raw_type)
    d = facts.description

    if KM_PATTERN.search(d):
        if "online" in d:
            return "OnlineKilometers", "km"
        return "RideKilometers", "km"
    if MILE_PATTERN.search(d):
        return "RideMiles", "mi"
    if ("trip" in d and "count" in d) or "total trips" in d or d.strip() == "trips":
        return "Trips", "trips"
    if facts.mentions("online hour", "online time", "hours online"):
        return "OnlineHours", "hours"
    if "acceptance rate" in d:
        return "AcceptanceRate", "%"
    if "cancellation rate" in d:
        return "CancellationRate", "%"
    if "rating" in d:
        return "Rating", None
    if "metric" in facts.raw_type or is_metric_line(facts):
        return "Metric", None
    return None, None


class LineClassifier:
    """Evaluates explicit hints and then the ordered rule table."""

    def __init__(self, rules: Optional[Sequence[ClassificationRule]] = None):
        self._rules: List[ClassificationRule] = list(rules or DEFAULT_RULES)

    @property
    def rules(self) -> List[ClassificationRule]:
        return list(self._rules)

    def with_rules(self, *extra: ClassificationRule) -> "LineClassifier":
        """New classifier with extra rules evaluated before the defaults."""
        return LineClassifier(list(extra) + self._rules)

    def classify(
        self,
        description: Optional[str],
        raw_type: Optional[str] = None,
        amount: Optional[Decimal] = None,
        tax_amount: Optional[Decimal] = None,
    ) -> Classification:
        evidence = classification_evidence(raw_type)

        hint = EXPLICIT_TYPE_HINTS.get(re.sub(r"[^a-z]", "", (raw_type or "").lower()))
        if hint is not None:
            return Classification(hint, evidence, "explicit_hint")

        facts = LineFacts.of(description, raw_type, amount, tax_amount)
        for rule in self._rules:
            if rule.predicate(facts):
                return Classification(rule.line_type, evidence, rule.name)

        return Classification(LineType.OTHER, evidence, "fallback")


_classifier_instance: Optional[LineClassifier] = None


def get_line_classifier() -> LineClassifier:
    """Get singleton line classifier."""
    global _classifier_instance
    if _classifier_instance is None:
        _classifier_instance = LineClassifier()
    return _classifier_instance
