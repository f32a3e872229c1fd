"""
Transform engine interface and the default text-extraction engine.

The admission and worker layers treat the engine as opaque: they need the
page count before admitting work and a transform call that reports progress
and either returns output or raises TransformFailure.
"""

import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from pdfminer.high_level import extract_text
from pdfminer.pdfpage import PDFPage
from pdfminer.psparser import PSException

from docqueue.errors import TransformFailure, ValidationError

logger = logging.getLogger(__name__)

# (progress_percent, current_page, total_pages)
ProgressCallback = Callable[[int, int, int], None]

DEFAULT_DOCUMENT_TYPE = "General Document"

# pdfminer signals malformed input with its own exceptions and with plain
# lookup and type errors from deep inside the parser
UNREADABLE_PDF_ERRORS = (PSException, KeyError, TypeError, ValueError, AttributeError, IndexError, AssertionError)

# First matching rule wins
CLASSIFICATION_RULES: list[tuple[str, tuple[str, ...], int]] = [
    ("Resume/CV", ("resume", "curriculum vitae", "experience", "education", "skills"), 2),
    ("Invoice/Bill", ("invoice", "bill", "amount due", "payment", "total", "tax"), 2),
    ("Contract/Legal", ("contract", "agreement", "terms and conditions", "whereas", "party"), 2),
    ("Report/Analysis", ("report", "analysis", "summary", "findings", "conclusion"), 2),
    ("Financial Statement", ("statement", "account", "balance", "transaction"), 2),
    ("Certificate", ("certificate", "diploma", "certification", "awarded"), 1),
]


def classify_document(text: str) -> str:
    """Keyword classification of extracted document text."""
    lowered = text.lower()
    for document_type, keywords, threshold in CLASSIFICATION_RULES:
        if sum(1 for keyword in keywords if keyword in lowered) >= threshold:
            return document_type
    return DEFAULT_DOCUMENT_TYPE


@dataclass
class TransformOutput:
    """What a successful transform produced."""

    data: bytes
    page_count: int
    document_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class TransformEngine(ABC):
    """Performs the actual document work."""

    @abstractmethod
    def count_pages(self, data: bytes) -> int:
        """
        Count pages without transforming.

        Raises:
            ValidationError: If the document cannot be read
        """
        ...

    @abstractmethod
    def transform(
        self,
        data: bytes,
        options: dict[str, Any],
        elevated: bool,
        progress: ProgressCallback | None = None,
    ) -> TransformOutput:
        """
        Transform a document.

        Raises:
            TransformFailure: On failure; ``retryable`` tells the worker
                whether another attempt can help and ``cancelled`` that the
                engine gave up on its own
        """
        ...


class PdfTextEngine(TransformEngine):
    """
    Default engine backed by pdfminer.

    Extracts text page by page, reporting progress after each page, and
    classifies the document when asked to. The document bytes are passed
    through unchanged.
    """

    def count_pages(self, data: bytes) -> int:
        try:
            pages = sum(1 for _ in PDFPage.get_pages(io.BytesIO(data)))
        except UNREADABLE_PDF_ERRORS as e:
            raise ValidationError(f"Document is not a readable PDF: {e}") from e
        if pages == 0:
            raise ValidationError("Document has no pages")
        return pages

    def transform(
        self,
        data: bytes,
        options: dict[str, Any],
        elevated: bool,
        progress: ProgressCallback | None = None,
    ) -> TransformOutput:
        try:
            total = self.count_pages(data)
        except ValidationError as e:
            raise TransformFailure(e.message, retryable=False) from e

        texts = []
        try:
            for page_number in range(total):
                texts.append(extract_text(io.BytesIO(data), page_numbers=[page_number]))
                if progress is not None:
                    progress(int((page_number + 1) * 100 / total), page_number + 1, total)
        except UNREADABLE_PDF_ERRORS as e:
            raise TransformFailure(f"Text extraction failed: {e}", retryable=False) from e

        text = "\n".join(texts)
        document_type = classify_document(text) if options.get("classify") else None
        logger.debug(f"Extracted {len(text)} characters from {total} pages")

        return TransformOutput(
            data=data,
            page_count=total,
            document_type=document_type,
            metadata={"text_characters": len(text), "elevated": elevated},
        )
