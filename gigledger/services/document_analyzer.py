"""
Document analysis for statements and receipts.

Turns an uploaded PDF or image into an AnalyzedDocument: structured fields,
tables (rows of cell strings), key/value pairs and the full text. Uses
pdfplumber for native PDFs and falls back to Tesseract for scanned pages and
images.
"""
import io
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, List, Optional

import pdfplumber
import pytesseract
import structlog
from PIL import Image

from gigledger.config import get_settings
from gigledger.exceptions import AnalyzerError

logger = structlog.get_logger(__name__)

KEY_VALUE_PATTERN = re.compile(r"^\s*([A-Za-z][A-Za-z0-9 /&()'.-]{1,60}?)\s*[:]\s*(.+?)\s*$")

# Pages with less text than this are treated as scanned
SCANNED_PAGE_MIN_CHARS = 50


@dataclass
class AnalyzedDocument:
    """Output of one analyzer run."""

    raw_text: str = ""
    tables: List[List[List[Optional[str]]]] = field(default_factory=list)
    fields: Dict[str, Any] = field(default_factory=dict)
    key_values: List[tuple] = field(default_factory=list)
    page_count: int = 0
    is_scanned: bool = False

    @property
    def lines(self) -> List[str]:
        return [ln.strip() for ln in self.raw_text.splitlines() if ln.strip()]


class DocumentAnalyzer(ABC):
    """Contract for document analysis services."""

    model_version: str = "unknown"

    @abstractmethod
    def can_handle(self, content_type: str) -> bool:
        """Whether this analyzer understands the content type."""

    @abstractmethod
    def analyze(self, stream: BinaryIO) -> AnalyzedDocument:
        """Analyze a document stream."""


def extract_key_values(text: str) -> List[tuple]:
    """Pull "Label: value" pairs out of free text."""
    pairs = []
    for line in text.splitlines():
        match = KEY_VALUE_PATTERN.match(line)
        if match:
            pairs.append((match.group(1).strip(), match.group(2).strip()))
    return pairs


class TesseractOCR:
    """Thin wrapper around pytesseract with availability detection."""

    def __init__(self):
        self.available = self._check_tesseract()

    def _check_tesseract(self) -> bool:
        try:
            tesseract_cmd = get_settings().tesseract_cmd
            if tesseract_cmd:
                pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
            pytesseract.get_tesseract_version()
            return True
        except (pytesseract.TesseractNotFoundError, OSError) as e:
            logger.warning("tesseract_unavailable", error=str(e))
            return False

    def image_to_text(self, image: Image.Image) -> str:
        if image.mode not in ("L", "RGB"):
            image = image.convert("RGB")
        return pytesseract.image_to_string(image)


class PdfDocumentAnalyzer(DocumentAnalyzer):
    """pdfplumber text and table extraction with OCR fallback per page."""

    model_version = "pdfplumber-1"

    def __init__(self, ocr: Optional[TesseractOCR] = None):
        self._ocr = ocr or TesseractOCR()

    def can_handle(self, content_type: str) -> bool:
        return "pdf" in (content_type or "").lower()

    def analyze(self, stream: BinaryIO) -> AnalyzedDocument:
        data = stream.read()
        texts: List[str] = []
        tables: List[List[List[Optional[str]]]] = []
        is_scanned = False

        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                page_count = len(pdf.pages)
                for page_num, page in enumerate(pdf.pages, start=1):
                    text = page.extract_text() or ""
                    if len(text.strip()) < SCANNED_PAGE_MIN_CHARS and self._ocr.available:
                        logger.info("pdf_page_scanned_using_ocr", page=page_num)
                        image = page.to_image(resolution=300).original
                        text = self._ocr.image_to_text(image)
                        is_scanned = True
                    texts.append(text)

                    for table in page.extract_tables() or []:
                        rows = [[cell.strip() if cell else cell for cell in row] for row in table if row]
                        if rows:
                            tables.append(rows)
        except Exception as e:
            logger.error("pdf_analysis_failed", error=str(e), error_type=type(e).__name__)
            raise AnalyzerError(f"PDF analysis failed: {e}") from e

        raw_text = "\n".join(texts)
        logger.info("pdf_analyzed", page_count=page_count, table_count=len(tables), is_scanned=is_scanned)
        return AnalyzedDocument(
            raw_text=raw_text,
            tables=tables,
            key_values=extract_key_values(raw_text),
            page_count=page_count,
            is_scanned=is_scanned,
        )


class ImageDocumentAnalyzer(DocumentAnalyzer):
    """Tesseract OCR for photographed receipts and statements."""

    model_version = "tesseract-1"

    def __init__(self, ocr: Optional[TesseractOCR] = None):
        self._ocr = ocr or TesseractOCR()

    def can_handle(self, content_type: str) -> bool:
        return (content_type or "").lower().startswith("image/")

    def analyze(self, stream: BinaryIO) -> AnalyzedDocument:
        if not self._ocr.available:
            raise AnalyzerError("Tesseract OCR is not available for image analysis")

        try:
            with Image.open(stream) as image:
                raw_text = self._ocr.image_to_text(image)
        except (OSError, pytesseract.TesseractError) as e:
            logger.error("image_analysis_failed", error=str(e))
            raise AnalyzerError(f"Image analysis failed: {e}") from e

        return AnalyzedDocument(
            raw_text=raw_text,
            key_values=extract_key_values(raw_text),
            page_count=1,
            is_scanned=True,
        )


def default_analyzers() -> List[DocumentAnalyzer]:
    """Analyzers used by the workers, in selection order."""
    ocr = TesseractOCR()
    return [PdfDocumentAnalyzer(ocr), ImageDocumentAnalyzer(ocr)]


def select_analyzer(analyzers: List[DocumentAnalyzer], content_type: str) -> Optional[DocumentAnalyzer]:
    for analyzer in analyzers:
        if analyzer.can_handle(content_type):
            return analyzer
    return None
