"""
Parsing helpers for values read out of statements and receipts.

Handles:
- Amounts: $1,234.56, (123.45), 12.50 CAD, N/A
- Currency codes: explicit ISO codes, "$" defaulting to CAD
- Dates: ISO, slash and month-name formats
- Ride distance metrics: "Online kilometres 5,178.846 km", "312 mi"

Unparseable amounts return None, never 0.
"""
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Tuple

import structlog

from gigledger.models.statement import Evidence

logger = structlog.get_logger(__name__)

DEFAULT_CURRENCY = "CAD"

NOT_A_NUMBER_TOKENS = {"N/A", "NA", "NULL", "-", "—", "–"}
KNOWN_CURRENCIES = ("CAD", "USD", "EUR", "GBP")
NON_CURRENCY_TOKENS = {"GST", "HST", "PST", "QST", "VAT", "TAX", "ITC", "YTD", "TIP", "FEE", "BN"}

CURRENCY_STRIP_PATTERN = re.compile(r"CAD|USD|EUR|GBP", re.IGNORECASE)
NON_NUMBER_JUNK_PATTERN = re.compile(r"[^\d.\-]")
CURRENCY_CODE_PATTERN = re.compile(r"\b[A-Z]{3}\b")

# 5178 / 5178.846 / 5,178.846 / 5 178.846
METRIC_NUMBER_PATTERN = re.compile(r"-?\d{1,3}(?:[,\s]\d{3})*(?:\.\d+)?|-?\d+(?:\.\d+)?")
# Number printed directly before its unit
DISTANCE_VALUE_PATTERN = re.compile(
    r"(-?\d{1,3}(?:[,\s]\d{3})+(?:\.\d+)?|-?\d+(?:\.\d+)?)\s*(km\b|kilomet\w*|mi\b|miles?\b)",
    re.IGNORECASE,
)
KM_PATTERN = re.compile(r"\bkm\b|kilomet", re.IGNORECASE)
MILE_PATTERN = re.compile(r"\bmi\b|\bmiles?\b", re.IGNORECASE)
DISTANCE_WORD_PATTERN = re.compile(r"\bdistance\b", re.IGNORECASE)

KM_PER_MILE = Decimal("1.609344")

# Decimal places kept per canonical metric key
METRIC_PRECISION = {
    "Trips": 0,
    "RideKilometers": 2,
    "RideMiles": 2,
    "OnlineKilometers": 2,
    "OnlineHours": 2,
}
DEFAULT_METRIC_PRECISION = 3

DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%Y-%m-%dT%H:%M:%S",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%d/%m/%Y",
    "%m-%d-%Y",
    "%d-%m-%Y",
    "%B %d, %Y",
    "%B %d %Y",
    "%b %d, %Y",
    "%b %d %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%B %Y",
    "%b %Y",
)


def round_half_up(value: Decimal, places: int = 2) -> Decimal:
    """Round a Decimal half-up to a fixed number of places."""
    quantum = Decimal(1).scaleb(-places)
    return Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)


def round_metric(metric_key: Optional[str], value: Decimal) -> Decimal:
    """Round a metric value with the precision of its canonical key."""
    places = METRIC_PRECISION.get(metric_key or "", DEFAULT_METRIC_PRECISION)
    return round_half_up(value, places)


def first_non_empty(*values: Optional[str]) -> Optional[str]:
    for v in values:
        if v is not None and str(v).strip():
            return str(v).strip()
    return None


def normalize_description(text: Optional[str]) -> str:
    """Collapse whitespace (including NBSP) for comparisons."""
    if not text:
        return ""
    return " ".join(text.replace(" ", " ").split())


def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    """
    Parse a currency/amount string into a Decimal.

    Args:
        value: Raw cell or line text.

    Returns:
        Parsed amount, or None when nothing numeric can be read.
    """
    if value is None:
        return None
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return Decimal(str(value))

    cleaned = str(value).strip()
    if not cleaned or cleaned.upper() in NOT_A_NUMBER_TOKENS:
        return None

    negative = "(" in cleaned and ")" in cleaned

    cleaned = cleaned.replace("(", "").replace(")", "").replace(",", "").replace("$", "")
    cleaned = CURRENCY_STRIP_PATTERN.sub("", cleaned)
    cleaned = NON_NUMBER_JUNK_PATTERN.sub("", cleaned).strip()
    if not cleaned:
        return None

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None

    return -amount if negative else amount


def extract_currency(value: Optional[str]) -> Optional[str]:
    """Find a currency code in free text; a bare "$" means CAD."""
    if not value or not str(value).strip():
        return None

    upper = str(value).upper()
    for code in KNOWN_CURRENCIES:
        if code in upper:
            return code

    # Only tokens printed in capitals; tax acronyms look like ISO codes
    for match in CURRENCY_CODE_PATTERN.finditer(str(value)):
        if match.group(0) not in NON_CURRENCY_TOKENS:
            return match.group(0)

    if "$" in upper:
        return DEFAULT_CURRENCY

    return None


def resolve_currency(
    line_currency_cell: Optional[str],
    statement_currency: Optional[str],
    amount_cell: Optional[str],
    default: str = DEFAULT_CURRENCY,
) -> Tuple[str, Evidence]:
    """
    Resolve a line's currency and how we know it.

    Order: explicit line cell, statement-level currency (both Extracted),
    symbol in the amount cell, then the default (both Inferred).
    """
    code = extract_currency(line_currency_cell)
    if code:
        return code, Evidence.EXTRACTED

    code = extract_currency(statement_currency)
    if code:
        return code, Evidence.EXTRACTED

    code = extract_currency(amount_cell)
    if code:
        return code, Evidence.INFERRED

    return default, Evidence.INFERRED


def parse_date(value) -> Optional[date]:
    """Parse a date from the formats statements commonly use."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = " ".join(str(value).split()).rstrip(".")
    if not text:
        return None

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    logger.debug("date_parse_failed", value=str(value))
    return None


def parse_ride_distance(text: Optional[str]) -> Optional[Tuple[str, Decimal, str]]:
    """
    Read a ride distance from a row of text.

    Miles are converted to kilometres so the canonical metric is always
    RideKilometers/km.

    Returns:
        (metric_key, value, unit) or None.
    """
    if not text or not text.strip():
        return None

    t = text.strip()
    lowered = t.lower()
    looks_like_distance = (
        "km" in lowered
        or "kilomet" in lowered
        or "mile" in lowered
        or DISTANCE_WORD_PATTERN.search(t) is not None
    )
    if not looks_like_distance:
        return None

    match = DISTANCE_VALUE_PATTERN.search(t)
    if match:
        raw, unit = match.group(1), match.group(2).lower()
    else:
        match = METRIC_NUMBER_PATTERN.search(t)
        if not match:
            return None
        raw, unit = match.group(0), None
        if KM_PATTERN.search(t):
            unit = "km"
        elif MILE_PATTERN.search(t):
            unit = "mi"
        else:
            return None

    try:
        number = Decimal(raw.replace(",", "").replace(" ", ""))
    except InvalidOperation:
        return None

    if unit.startswith("mi"):
        return "RideKilometers", number * KM_PER_MILE, "km"
    return "RideKilometers", number, "km"
