"""
Statement metadata extraction.

Reads provider, reporting period and header totals from an analyzed
statement so an upload can be filed under its natural key
(tenant, provider, period type, period key) before line extraction runs.
"""
import calendar
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

import structlog

from gigledger.models.statement import PeriodType
from gigledger.services.document_analyzer import AnalyzedDocument
from gigledger.services.parsing import extract_currency, parse_amount, parse_date

logger = structlog.get_logger(__name__)

PROVIDER_BRANDS = ("Uber", "Lyft", "DoorDash", "SkipTheDishes", "Instacart")

PERIOD_KEY_HINTS = ("statement period", "period", "date range", "for period", "quarterly period")
PERIOD_START_HINTS = ("period start", "start date", "from")
PERIOD_END_HINTS = ("period end", "end date", "to")
TOTAL_AMOUNT_HINTS = (
    "total", "amount due", "statement total", "gross total", "net earnings", "total earnings",
)
TAX_AMOUNT_HINTS = ("tax", "gst", "hst", "vat")
VENDOR_HINTS = ("vendor", "merchant")

DATE_TOKEN_PATTERN = re.compile(
    r"\b(?:\d{1,2}[/-]\d{1,2}[/-]\d{2,4}"
    r"|\d{4}[/-]\d{1,2}[/-]\d{1,2}"
    r"|[A-Za-z]{3,9}[ \t]+\d{1,2},?[ \t]+\d{4}"
    r"|[A-Za-z]{3,9}[ \t]+\d{4}(?![/-]\d))\b"
)
QUARTERLY_PERIOD_PATTERN = re.compile(
    r"Quarterly\s+Period\s+([A-Za-z]+\s+\d{1,2},\s+\d{4})\s*[-–]\s*([A-Za-z]+\s+\d{1,2},\s+\d{4})",
    re.IGNORECASE,
)
EMBEDDED_YEAR_MONTH_PATTERN = re.compile(r"\b(20\d{2})\s*[/\-]\s*(0?[1-9]|1[0-2])(?![\d/\-])")
MONTH_NAME_YEAR_PATTERN = re.compile(r"\b([A-Za-z]{3,9})[ \t]+(20\d{2})\b")
YEAR_PATTERN = re.compile(r"\b(20\d{2})\b")

HEADER_SCAN_LINES = 120
PROVIDER_SCAN_LINES = 80


@dataclass
class StatementMetadata:
    """What a statement says about itself."""

    provider: Optional[str] = None
    period_type: Optional[PeriodType] = None
    period_key: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    vendor_name: Optional[str] = None
    statement_total_amount: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    currency: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.provider and self.period_type and self.period_key)


def _key_matches(key: Optional[str], hints: Iterable[str]) -> bool:
    if not key:
        return False
    lowered = key.lower()
    return any(re.search(rf"\b{re.escape(h)}\b", lowered) for h in hints)


def _month_bounds(year: int, month: int) -> Tuple[date, date]:
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


def extract_date_tokens(text: str) -> List[date]:
    """Distinct parseable date tokens in document order."""
    seen = set()
    dates = []
    for match in DATE_TOKEN_PATTERN.finditer(text or ""):
        token = match.group(0)
        if token.lower() in seen:
            continue
        seen.add(token.lower())
        parsed = parse_date(token)
        if parsed is not None:
            dates.append(parsed)
    return dates


def parse_month_year(text: str) -> Optional[Tuple[date, date]]:
    """
    Calendar month named anywhere in a sentence.

    Tries embedded ``YYYY/MM`` or ``YYYY-MM``, then ``Month YYYY``.
    """
    if not text:
        return None

    match = EMBEDDED_YEAR_MONTH_PATTERN.search(text)
    if match:
        return _month_bounds(int(match.group(1)), int(match.group(2)))

    for match in MONTH_NAME_YEAR_PATTERN.finditer(text):
        parsed = parse_date(f"{match.group(1)} {match.group(2)}")
        if parsed is not None:
            return _month_bounds(parsed.year, parsed.month)
    return None


def extract_date_range(text: str) -> Tuple[Optional[date], Optional[date]]:
    month_year = parse_month_year(text)
    if month_year:
        return month_year

    dates = extract_date_tokens(text)
    if len(dates) >= 2:
        return dates[0], dates[1]
    if len(dates) == 1:
        return dates[0], None

    match = YEAR_PATTERN.search(text or "")
    if match:
        year = int(match.group(1))
        return date(year, 1, 1), date(year, 12, 31)
    return None, None


def parse_quarterly_period(text: str) -> Optional[Tuple[date, date]]:
    match = QUARTERLY_PERIOD_PATTERN.search(text or "")
    if not match:
        return None
    start, end = parse_date(match.group(1)), parse_date(match.group(2))
    if start is None or end is None:
        return None
    return start, end


def derive_period_type(start: Optional[date], end: Optional[date]) -> Optional[PeriodType]:
    """Monthly if the range sits in one month, Quarterly if quarter-aligned, else Yearly."""
    if start is None or end is None:
        return None

    if start.year == end.year and start.month == end.month:
        return PeriodType.MONTHLY

    if start.year == end.year:
        quarter_start_month = ((start.month - 1) // 3) * 3 + 1
        quarter_end_month = quarter_start_month + 2
        starts_quarter = start.month == quarter_start_month and start.day == 1
        ends_quarter = (
            end.month == quarter_end_month
            and end.day == calendar.monthrange(end.year, end.month)[1]
        )
        if starts_quarter and ends_quarter:
            return PeriodType.QUARTERLY

    return PeriodType.YEARLY


def derive_period_key(start: Optional[date], period_type: Optional[PeriodType]) -> Optional[str]:
    if start is None or period_type is None:
        return None
    if period_type == PeriodType.MONTHLY:
        return f"{start.year:04d}-{start.month:02d}"
    if period_type == PeriodType.QUARTERLY:
        return f"{start.year:04d}-Q{(start.month - 1) // 3 + 1}"
    return str(start.year)


def detect_provider(lines: List[str]) -> Optional[str]:
    top = "\n".join(lines[:PROVIDER_SCAN_LINES]).lower()
    for brand in PROVIDER_BRANDS:
        if brand.lower() in top:
            return brand
    return None


def _period_range(document: AnalyzedDocument) -> Tuple[Optional[date], Optional[date]]:
    start: Optional[date] = None
    end: Optional[date] = None

    for key, value in document.key_values:
        if _key_matches(key, PERIOD_KEY_HINTS):
            s, e = extract_date_range(value)
            if s is not None:
                return s, e
        if start is None and _key_matches(key, PERIOD_START_HINTS):
            dates = extract_date_tokens(value)
            start = dates[0] if dates else None
        if end is None and _key_matches(key, PERIOD_END_HINTS):
            dates = extract_date_tokens(value)
            end = dates[0] if dates else None

    if start is not None and end is not None:
        return start, end

    quarterly = parse_quarterly_period(document.raw_text)
    if quarterly:
        return quarterly

    header_lines = document.lines[:HEADER_SCAN_LINES]
    for line in header_lines:
        lowered = line.lower()
        if "period" in lowered or "date range" in lowered:
            s, e = extract_date_range(line)
            if s is not None:
                return s, e

    dates = extract_date_tokens("\n".join(header_lines))
    if len(dates) >= 2:
        return dates[0], dates[1]

    return start, end


def _totals(document: AnalyzedDocument) -> Tuple[Optional[Decimal], Optional[Decimal], Optional[str]]:
    total: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    currency: Optional[str] = None

    for key, value in document.key_values:
        if total is None and _key_matches(key, TOTAL_AMOUNT_HINTS):
            total = parse_amount(value)
            currency = currency or extract_currency(value)
        if tax is None and _key_matches(key, TAX_AMOUNT_HINTS):
            tax = parse_amount(value)
            currency = currency or extract_currency(value)

    lines = document.lines[:300]
    for line in lines:
        if total is not None:
            break
        lowered = line.lower()
        if any(h in lowered for h in TOTAL_AMOUNT_HINTS):
            total = parse_amount(line)
            if total is not None:
                currency = currency or extract_currency(line)

    for line in lines:
        if tax is not None:
            break
        lowered = line.lower()
        if any(h in lowered for h in TAX_AMOUNT_HINTS):
            tax = parse_amount(line)
            if tax is not None:
                currency = currency or extract_currency(line)

    if currency is None:
        currency = next((c for c in map(extract_currency, lines) if c), None)

    return total, tax, currency


def extract_metadata(document: AnalyzedDocument) -> StatementMetadata:
    """Provider, period and header totals for one analyzed statement."""
    lines = document.lines
    start, end = _period_range(document)

    if start is None or end is None:
        s, e = extract_date_range(document.raw_text)
        start = start or s
        end = end or e
        # Only a start date: treat the statement as covering its year
        if start is not None and end is None:
            end = date(start.year, 12, 31)

    period_type = derive_period_type(start, end)
    vendor_name = next(
        (v.strip() for k, v in document.key_values if _key_matches(k, VENDOR_HINTS) and v.strip()),
        None,
    )
    total, tax, currency = _totals(document)

    metadata = StatementMetadata(
        provider=detect_provider(lines) or vendor_name,
        period_type=period_type,
        period_key=derive_period_key(start, period_type),
        period_start=start,
        period_end=end,
        vendor_name=vendor_name,
        statement_total_amount=total,
        tax_amount=tax,
        currency=currency,
    )
    logger.info(
        "statement_metadata_extracted",
        provider=metadata.provider,
        period_type=metadata.period_type.value if metadata.period_type else None,
        period_key=metadata.period_key,
    )
    return metadata
