"""
CSV statement extractor.

Detects a header row by keyword; without one, columns are read positionally
as date, description, amount, tax, type, currency.
"""
import csv
import io
from typing import BinaryIO, List, Optional, Sequence

import structlog

from gigledger.services.extractors.base import RawLine, StatementExtractor
from gigledger.services.parsing import first_non_empty, parse_amount, parse_date

logger = structlog.get_logger(__name__)

HEADER_HINTS = ("date", "amount", "description")

COLUMN_KEYWORDS = {
    "date": ("date",),
    "description": ("description", "details", "memo"),
    "type": ("type", "category", "line type"),
    "amount": ("amount", "total", "net", "gross"),
    "tax": ("tax", "gst", "hst", "vat"),
    "currency": ("currency", "curr"),
}

POSITIONAL_COLUMNS = {
    "date": 0,
    "description": 1,
    "amount": 2,
    "tax": 3,
    "type": 4,
    "currency": 5,
}


def find_header_column(headers: Sequence[str], *keywords: str) -> Optional[int]:
    """Index of the first header containing any keyword."""
    for i, header in enumerate(headers):
        if not header or not header.strip():
            continue
        lowered = header.lower()
        if any(k in lowered for k in keywords):
            return i
    return None


class CsvStatementExtractor(StatementExtractor):
    """Reads statement lines from comma-separated exports."""

    model_version = "csv"

    def can_handle(self, content_type: str) -> bool:
        ct = (content_type or "").lower()
        return "csv" in ct or "text/plain" in ct

    def extract(self, stream: BinaryIO, content_type: str = "text/csv") -> List[RawLine]:
        text = stream.read().decode("utf-8-sig", errors="replace")
        rows = [[cell.strip() for cell in row] for row in csv.reader(io.StringIO(text))]
        rows = [row for row in rows if any(row)]
        if not rows:
            return []

        first_row = rows[0]
        looks_like_header = any(
            cell and any(hint in cell.lower() for hint in HEADER_HINTS) for cell in first_row
        )

        if looks_like_header:
            columns = {
                name: find_header_column(first_row, *keywords)
                for name, keywords in COLUMN_KEYWORDS.items()
            }
            data_rows = rows[1:]
        else:
            columns = dict(POSITIONAL_COLUMNS)
            data_rows = rows

        def cell(row: List[str], name: str) -> Optional[str]:
            col = columns.get(name)
            if col is None or col >= len(row):
                return None
            return row[col]

        lines: List[RawLine] = []
        for row in data_rows:
            amount_text = cell(row, "amount")
            tax_text = cell(row, "tax")
            amount = parse_amount(amount_text)
            tax = parse_amount(tax_text)
            if amount is None and tax is None:
                continue

            type_text = cell(row, "type")
            lines.append(RawLine(
                description=first_non_empty(cell(row, "description"), type_text),
                amount=amount,
                tax_amount=tax,
                raw_type=type_text,
                line_date=parse_date(cell(row, "date")),
                currency_cell=cell(row, "currency"),
                amount_cell=amount_text,
                source="csv",
            ))

        logger.info("statement_csv_extracted", row_count=len(data_rows), candidate_count=len(lines))
        return lines
