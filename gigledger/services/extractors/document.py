"""
Statement extractor for PDFs and images.

Runs a DocumentAnalyzer and then three passes over its output:

1. structured invoice items (``Items`` field), when the analyzer provides them
2. generic table rows (ride distance rows first, otherwise the last cell is the amount)
3. provider free-text rules (Uber, Lyft)
"""
from typing import Any, BinaryIO, Dict, List, Optional, Sequence

import structlog

from gigledger.config import get_settings
from gigledger.exceptions import UnsupportedContentTypeError
from gigledger.services.document_analyzer import (
    AnalyzedDocument,
    DocumentAnalyzer,
    default_analyzers,
    select_analyzer,
)
from gigledger.services.extractors.base import RawLine, StatementExtractor
from gigledger.services.extractors.provider_rules import PROVIDER_PROFILES, ProviderProfile
from gigledger.services.parsing import first_non_empty, parse_amount, parse_date, parse_ride_distance

logger = structlog.get_logger(__name__)

STATEMENT_CURRENCY_FIELDS = ("Currency", "CurrencyCode", "InvoiceCurrency")
STATEMENT_DATE_FIELDS = ("InvoiceDate", "StatementDate")


def _field(fields: Dict[str, Any], *names: str) -> Optional[str]:
    return first_non_empty(*(fields.get(n) for n in names))


class DocumentStatementExtractor(StatementExtractor):
    """Extracts statement lines from analyzed PDF or image documents."""

    def __init__(
        self,
        analyzers: Optional[Sequence[DocumentAnalyzer]] = None,
        profiles: Sequence[ProviderProfile] = PROVIDER_PROFILES,
        lookahead: Optional[int] = None,
    ):
        self._analyzers = list(analyzers) if analyzers is not None else None
        self._profiles = tuple(profiles)
        self._lookahead = lookahead if lookahead is not None else get_settings().text_fallback_lookahead

    @property
    def analyzers(self) -> List[DocumentAnalyzer]:
        # Built lazily so Tesseract is only probed when a document is processed
        if self._analyzers is None:
            self._analyzers = default_analyzers()
        return self._analyzers

    @property
    def model_version(self) -> str:
        versions = sorted({a.model_version for a in self.analyzers})
        return "+".join(versions) or "document"

    def can_handle(self, content_type: str) -> bool:
        ct = (content_type or "").lower()
        return "pdf" in ct or ct.startswith("image/")

    def extract(self, stream: BinaryIO, content_type: str) -> List[RawLine]:
        analyzer = select_analyzer(self.analyzers, content_type)
        if analyzer is None:
            raise UnsupportedContentTypeError(content_type)

        document = analyzer.analyze(stream)
        return self.lines_from_document(document)

    def lines_from_document(self, document: AnalyzedDocument) -> List[RawLine]:
        """Run every pass over an already analyzed document."""
        lines: List[RawLine] = []
        lines.extend(self._items_pass(document.fields))
        lines.extend(self._tables_pass(document.tables))
        for profile in self._profiles:
            lines.extend(profile.extract(document.raw_text, self._lookahead))

        logger.info(
            "statement_document_extracted",
            candidate_count=len(lines),
            table_count=len(document.tables),
            page_count=document.page_count,
        )
        return lines

    def _items_pass(self, fields: Dict[str, Any]) -> List[RawLine]:
        items = fields.get("Items")
        if not isinstance(items, list):
            return []

        statement_currency = _field(fields, *STATEMENT_CURRENCY_FIELDS)
        doc_date = parse_date(_field(fields, *STATEMENT_DATE_FIELDS))

        lines = []
        for item in items:
            if not isinstance(item, dict):
                continue
            amount_text = item.get("Amount")
            lines.append(RawLine(
                description=first_non_empty(item.get("Description"), item.get("Name"), item.get("Item"))
                or "Statement item",
                amount=parse_amount(amount_text),
                tax_amount=parse_amount(item.get("Tax")),
                line_date=doc_date,
                currency_cell=item.get("Currency"),
                amount_cell=amount_text,
                statement_currency=statement_currency,
                source="items",
            ))
        return lines

    def _tables_pass(self, tables: List[List[List[Optional[str]]]]) -> List[RawLine]:
        lines = []
        for table in tables:
            for row in table:
                cells = [c.strip() for c in row if c and c.strip()]
                if not cells:
                    continue
                row_text = " ".join(cells)

                distance = parse_ride_distance(row_text)
                if distance is not None:
                    key, value, unit = distance
                    lines.append(RawLine(
                        description=row_text,
                        raw_type="Metric",
                        metric_key=key,
                        metric_value=value,
                        unit=unit,
                    ))
                    continue

                amount_text = cells[-1]
                if parse_date(amount_text) is not None:
                    continue
                amount = parse_amount(amount_text)
                if amount is None:
                    continue

                lines.append(RawLine(
                    description=row_text,
                    amount=amount,
                    currency_cell=row_text,
                    amount_cell=amount_text,
                ))
        return lines
