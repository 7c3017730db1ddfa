"""Statement extractor adapters."""
from typing import List, Optional, Sequence

from gigledger.services.extractors.base import RawLine, StatementExtractor, StatementLineCandidate
from gigledger.services.extractors.csv_extractor import CsvStatementExtractor
from gigledger.services.extractors.document import DocumentStatementExtractor


def default_extractors() -> List[StatementExtractor]:
    """Extractors used by the statement workers, in selection order."""
    return [DocumentStatementExtractor(), CsvStatementExtractor()]


def select_extractor(
    extractors: Sequence[StatementExtractor], content_type: str
) -> Optional[StatementExtractor]:
    for extractor in extractors:
        if extractor.can_handle(content_type):
            return extractor
    return None


__all__ = [
    "RawLine",
    "StatementExtractor",
    "StatementLineCandidate",
    "CsvStatementExtractor",
    "DocumentStatementExtractor",
    "default_extractors",
    "select_extractor",
]
