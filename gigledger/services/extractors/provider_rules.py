"""
Provider-specific free-text rules.

Platform tax summaries lay values out as "label ... amount", often with the
amount on one of the next few lines. Each provider profile lists the labels
it understands, which canonical descriptions survive pruning, and which
zero-valued lines must always exist.
"""
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import FrozenSet, List, Optional, Pattern, Sequence, Tuple

import structlog

from gigledger.services.extractors.base import RawLine
from gigledger.services.parsing import (
    normalize_description,
    parse_amount,
    parse_ride_distance,
)

logger = structlog.get_logger(__name__)

DEFAULT_LOOKAHEAD = 4

TAX_ONLY_TYPES = ("TaxCollected", "Itc")

# Registration numbers, business numbers, trip ids: never financial facts
NOISE_PATTERN = re.compile(
    r"registration\s*(number|no\.?|#)"
    r"|business\s+(number|no\.?)"
    r"|\bBN\b"
    r"|account\s+(number|no\.?|#)"
    r"|trip\s+id"
    r"|\b\d{9}\s*RT\s*\d{4}\b",
    re.IGNORECASE,
)


def is_noise(description: Optional[str]) -> bool:
    return bool(description) and NOISE_PATTERN.search(description) is not None


@dataclass(frozen=True)
class TextRule:
    """A label to look for and the line it produces."""

    description: str
    pattern: Pattern
    raw_type: str
    keep_sign: bool = False


def rule(description: str, pattern: str, raw_type: str, keep_sign: bool = False) -> TextRule:
    return TextRule(description, re.compile(pattern, re.IGNORECASE), raw_type, keep_sign)


def find_amount_near_label(
    lines: Sequence[str], pattern: Pattern, lookahead: int = DEFAULT_LOOKAHEAD
) -> Optional[Decimal]:
    """
    First amount after the first line matching ``pattern``.

    Looks at the remainder of the label line, then up to ``lookahead``
    following lines.
    """
    for i, line in enumerate(lines):
        match = pattern.search(line)
        if not match:
            continue

        amount = parse_amount(line[match.end():])
        if amount is not None:
            return amount

        for following in lines[i + 1:i + 1 + lookahead]:
            amount = parse_amount(following)
            if amount is not None:
                return amount
        return None
    return None


@dataclass(frozen=True)
class MetricTextRule:
    """A labelled metric such as online kilometres."""

    description: str
    pattern: Pattern
    metric_key: str
    unit: str


@dataclass(frozen=True)
class ProviderProfile:
    """Free-text extraction and pruning policy for one platform."""

    name: str
    detect: Pattern
    rules: Tuple[TextRule, ...]
    distance_description: str
    metric_rules: Tuple[MetricTextRule, ...] = ()
    allowlist: Optional[FrozenSet[str]] = None
    required_zero_lines: Tuple[Tuple[str, str], ...] = ()
    currency: str = "CAD"

    def matches(self, text: Optional[str]) -> bool:
        return bool(text) and self.detect.search(text) is not None

    def allows(self, description: Optional[str]) -> bool:
        if self.allowlist is None:
            return True
        return normalize_description(description).lower() in self.allowlist

    def extract(self, text: Optional[str], lookahead: int = DEFAULT_LOOKAHEAD) -> List[RawLine]:
        """Run every rule over the document text."""
        if not self.matches(text):
            return []

        lines = [ln.strip() for ln in text.split("\n") if ln.strip()]
        results: List[RawLine] = []

        for ln in lines:
            distance = parse_ride_distance(ln)
            if distance is None or any(m.pattern.search(ln) for m in self.metric_rules):
                continue
            key, value, unit = distance
            results.append(RawLine(
                description=self.distance_description,
                raw_type="Metric",
                metric_key=key,
                metric_value=value,
                unit=unit,
                source=f"{self.name.lower()}_text",
            ))
            break

        for metric in self.metric_rules:
            value = find_amount_near_label(lines, metric.pattern, lookahead)
            if value is None:
                continue
            results.append(RawLine(
                description=metric.description,
                raw_type="Metric",
                metric_key=metric.metric_key,
                metric_value=abs(value),
                unit=metric.unit,
                source=f"{self.name.lower()}_text",
            ))

        for text_rule in self.rules:
            amount = find_amount_near_label(lines, text_rule.pattern, lookahead)
            if amount is None:
                continue
            value = amount if text_rule.keep_sign else abs(amount)
            tax_only = text_rule.raw_type in TAX_ONLY_TYPES
            results.append(RawLine(
                description=text_rule.description,
                raw_type=text_rule.raw_type,
                amount=Decimal("0") if tax_only else value,
                tax_amount=value if tax_only else None,
                currency_cell=self.currency,
                keep_sign=text_rule.keep_sign,
                source=f"{self.name.lower()}_text",
            ))

        any_non_zero = any(
            (r.amount or Decimal("0")) != 0
            or (r.tax_amount or Decimal("0")) != 0
            or (r.metric_value or Decimal("0")) != 0
            for r in results
        )
        if not any_non_zero:
            return []

        logger.debug("provider_text_rules_matched", provider=self.name, line_count=len(results))
        return results


UBER_RULES = (
    rule("Uber Rides Total (Gross)", r"\bUber\s+Rides\s+Total\s*\(\s*Gross\s*\)", "Income"),
    rule("Gross Uber rides fares", r"\bGross\s+Uber\s+rides\s+fares\b", "Income"),
    rule("Booking fee", r"\bBooking\s+fee\b", "Income"),
    rule("Regulatory Recovery Fees", r"\bRegulatory\s+Recovery\s+Fees\b", "Income"),
    rule("Airport fee", r"\bAirport\s+fee\b", "Income"),
    rule("Tips", r"\bTips\b(?!.*GST)", "Income"),
    rule("GST/HST you collected from Riders", r"\bGST\s*/\s*HST\s+you\s+collected\s+from\s+Riders\b", "TaxCollected"),
    rule("Uber Rides Fees Total", r"\bUber\s+Rides\s+Fees\s+Total\b", "Fee"),
    rule("Service Fee", r"\bService\s+Fee\b", "Fee"),
    rule("Other amounts", r"\bOther\s+amounts\b", "Fee"),
    rule("Fee Discount", r"\bFee\s+Discount\b", "Fee", keep_sign=True),
    rule("GST/HST you paid to Uber", r"\bGST\s*/\s*HST\s+you\s+paid\s+to\s+Uber\b", "Itc"),
)

UBER = ProviderProfile(
    name="Uber",
    detect=re.compile(r"\bUBER\b", re.IGNORECASE),
    rules=UBER_RULES,
    distance_description="Ride distance (Uber statement)",
    metric_rules=(
        MetricTextRule(
            "Online kilometres",
            re.compile(r"\bOnline\s+(kilomet|km\b)", re.IGNORECASE),
            "OnlineKilometers",
            "km",
        ),
    ),
    allowlist=frozenset(r.description.lower() for r in UBER_RULES),
    required_zero_lines=(
        ("TaxCollected", "GST/HST you collected from Riders"),
        ("Itc", "GST/HST you paid to Uber"),
    ),
)

LYFT = ProviderProfile(
    name="Lyft",
    detect=re.compile(r"\bLyft\b", re.IGNORECASE),
    rules=(
        rule("Gross fares", r"\bGross\s+fares\b", "Income"),
        rule("Bonuses", r"\bBonuses\b", "Income"),
        rule("Tips", r"\bTips\b(?!.*GST)", "Income"),
        rule("Lyft & 3rd party fees", r"\bLyft\s*&\s*3rd\s+party\s+fees\b", "Fee"),
        rule("GST/HST received from passengers", r"\bGST\s*/\s*HST\s+received\s+from\s+passengers\b", "TaxCollected"),
        rule("GST/HST received on bonuses", r"\bGST\s*/\s*HST\s+received\s+on\s+bonuses\b", "TaxCollected"),
        rule("GST/HST paid on Lyft and 3rd party fees", r"\bGST\s*/\s*HST\s+paid\s+on\s+Lyft\s+and\s+3rd\s+party\s+fees\b", "Itc"),
    ),
    distance_description="Ride distance (Lyft statement)",
)

PROVIDER_PROFILES: Tuple[ProviderProfile, ...] = (UBER, LYFT)


def profile_for(provider: Optional[str]) -> Optional[ProviderProfile]:
    """Profile registered for a provider name, if any."""
    if not provider:
        return None
    for profile in PROVIDER_PROFILES:
        if profile.name.lower() == provider.strip().lower():
            return profile
    return None
