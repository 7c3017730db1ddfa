"""
Shared types for statement extractor adapters.

Adapters emit RawLine records straight from the document; the normalizer
turns them into typed, classified StatementLineCandidates.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import BinaryIO, List, Optional

from gigledger.models.statement import Evidence, LineType
from gigledger.services.parsing import normalize_description


@dataclass
class RawLine:
    """One line as read from a document, before classification."""

    description: Optional[str]
    amount: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    raw_type: Optional[str] = None
    line_date: Optional[date] = None
    currency_cell: Optional[str] = None
    amount_cell: Optional[str] = None
    statement_currency: Optional[str] = None
    # Pre-resolved metric (ride distance parsed by a provider rule)
    metric_key: Optional[str] = None
    metric_value: Optional[Decimal] = None
    unit: Optional[str] = None
    keep_sign: bool = False
    source: str = "table"


@dataclass
class StatementLineCandidate:
    """A normalized statement line ready to be collapsed and persisted."""

    line_type: LineType
    description: Optional[str]
    currency_code: Optional[str]
    currency_evidence: Evidence
    classification_evidence: Evidence
    line_date: Optional[date] = None
    is_metric: bool = False
    metric_key: Optional[str] = None
    metric_value: Optional[Decimal] = None
    unit: Optional[str] = None
    money_amount: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    source: str = "table"

    def __post_init__(self):
        if self.is_metric and (self.money_amount is not None or self.tax_amount is not None):
            raise ValueError("Metric candidates cannot carry money or tax amounts")

    def dedupe_key(self) -> tuple:
        """Identity of the fact: equal-valued lines with different labels are distinct."""
        return (
            self.line_type,
            normalize_description(self.description).lower(),
            self.is_metric,
            self.money_amount,
            self.tax_amount,
            self.metric_key,
            self.metric_value,
            self.unit,
            self.currency_code,
        )

    def evidence_rank(self) -> int:
        """Higher is better: classification evidence outranks currency evidence."""
        rank = 0
        if self.classification_evidence == Evidence.EXTRACTED:
            rank += 2
        if self.currency_evidence == Evidence.EXTRACTED:
            rank += 1
        return rank


class StatementExtractor(ABC):
    """Produces raw lines from one statement document."""

    model_version: str = "unknown"

    @abstractmethod
    def can_handle(self, content_type: str) -> bool:
        """Whether this adapter understands the content type."""

    @abstractmethod
    def extract(self, stream: BinaryIO, content_type: str) -> List[RawLine]:
        """Read every candidate line from the document."""
