"""
Plain-text extraction from page-based documents (PDF).

Two page-rendering backends are available: pdfplumber (default) and PyMuPDF.
Both yield the text items of each page in reading order.
"""

import asyncio
import io
import logging
import re
from abc import ABC, abstractmethod
from typing import List

from .config import MIN_EXTRACTABLE_CHARS
from .errors import UnreadableDocumentError

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s")


# =============================================================================
# PAGE RENDERERS
# =============================================================================

class PageRenderer(ABC):
    """Yields ordered per-page text items for a document."""

    name = "renderer"

    @abstractmethod
    def render(self, content: bytes) -> List[List[str]]:
        """Return one list of text items per page, in page order."""
        pass


class PdfPlumberRenderer(PageRenderer):
    name = "pdfplumber"

    def render(self, content: bytes) -> List[List[str]]:
        import pdfplumber

        pages = []
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            for page in pdf.pages:
                pages.append([word["text"] for word in page.extract_words()])
        return pages


class PyMuPDFRenderer(PageRenderer):
    name = "pymupdf"

    def render(self, content: bytes) -> List[List[str]]:
        import fitz

        pages = []
        with fitz.open(stream=content, filetype="pdf") as doc:
            for page in doc:
                # (x0, y0, x1, y1, word, block_no, line_no, word_no)
                pages.append([word[4] for word in page.get_text("words")])
        return pages


def get_renderer(backend: str) -> PageRenderer:
    if backend == "pymupdf":
        return PyMuPDFRenderer()
    return PdfPlumberRenderer()


# =============================================================================
# TEXT EXTRACTOR
# =============================================================================

class DocumentTextExtractor:
    """Extracts text content from PDF documents."""

    def __init__(self, renderer: PageRenderer = None):
        self.renderer = renderer or PdfPlumberRenderer()

    async def extract_text(self, content: bytes) -> str:
        """
        Concatenate the text of every page, one line per page.

        Raises:
            UnreadableDocumentError: the document cannot be opened, or holds
                fewer than MIN_EXTRACTABLE_CHARS non-whitespace characters
                (typical of scanned PDFs).
        """
        try:
            pages = await asyncio.to_thread(self.renderer.render, content)
        except Exception as e:
            logger.error(f"{self.renderer.name} could not open document: {e}")
            raise UnreadableDocumentError(f"Could not read PDF: {e}") from e

        text = "".join(" ".join(items) + "\n" for items in pages)

        if len(_WHITESPACE.sub("", text)) < MIN_EXTRACTABLE_CHARS:
            raise UnreadableDocumentError(
                "This PDF appears to be a scanned image. Save it as a JPG/PNG "
                "and re-upload to use the image parser."
            )

        logger.info(f"Extracted {len(text)} characters from {len(pages)} page(s)")
        return text
