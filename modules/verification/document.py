"""
Document text extraction for book uploads (PDF and EPUB).

Extracted text is advisory moderation evidence, so every failure path
returns an empty string instead of raising.
"""

import io
import re
import logging
from typing import List, Optional

import chardet
import ebooklib
from bs4 import BeautifulSoup
from ebooklib import epub
from pypdf import PdfReader

from .config import VerificationConfig
from .models import EPUB_MIME_TYPE, PDF_MIME_TYPE

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


class DocumentTextExtractor:
    """Extract plain text from PDF and EPUB buffers"""

    def __init__(self, config: Optional[VerificationConfig] = None):
        self.config = config or VerificationConfig()

    def extract_text(self, data: bytes, mime_type: str, max_chars: Optional[int] = None) -> str:
        """Extract text from a document buffer

        Args:
            data: Raw document bytes
            mime_type: application/pdf or application/epub+zip
            max_chars: Truncation cap, defaults to config.text_cap

        Returns:
            str: Whitespace-collapsed text, or "" when nothing could be extracted
        """
        cap = self.config.text_cap if max_chars is None else max_chars
        mime_type = (mime_type or "").strip().lower()
        if not data:
            return ""

        try:
            if mime_type == PDF_MIME_TYPE:
                text = self._extract_pdf(data)
            elif mime_type == EPUB_MIME_TYPE:
                text = self._extract_epub(data)
            else:
                logger.warning(f"Unsupported document type for text extraction: {mime_type}")
                return ""
        except Exception as e:
            logger.warning(f"Text extraction failed for {mime_type}: {e}")
            return ""

        text = collapse_whitespace(text)
        if cap is not None and cap >= 0:
            text = text[:cap]
        logger.info(f"Extracted {len(text)} characters from {mime_type}")
        return text

    def _extract_pdf(self, data: bytes) -> str:
        reader = PdfReader(io.BytesIO(data))
        parts = []
        for page in reader.pages:
            try:
                parts.append(page.extract_text() or "")
            except Exception as e:
                logger.debug(f"Skipping unreadable PDF page: {e}")
                continue
        return "\n".join(parts)

    def _extract_epub(self, data: bytes) -> str:
        book = epub.read_epub(io.BytesIO(data), {"ignore_ncx": True})
        parts = []
        for item in self._content_documents(book):
            # raw bytes; get_content() re-renders the page through lxml
            parts.append(html_to_text(decode_document(item.content)))
        return " ".join(parts)

    def _content_documents(self, book: epub.EpubBook) -> List[epub.EpubItem]:
        """Reading-order documents from the spine, or the manifest when the spine is empty"""
        documents = []
        for itemref in book.spine or []:
            idref = itemref[0] if isinstance(itemref, (list, tuple)) else itemref
            item = book.get_item_with_id(idref)
            if item is not None and item.get_type() == ebooklib.ITEM_DOCUMENT:
                documents.append(item)
        if not documents:
            documents = list(book.get_items_of_type(ebooklib.ITEM_DOCUMENT))
        return documents[:self.config.epub_max_documents]


def decode_document(raw: bytes) -> str:
    """Decode document bytes, falling back to chardet when not UTF-8"""
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        result = chardet.detect(raw[:4096])
        encoding = result.get("encoding") or "utf-8"
        try:
            return raw.decode(encoding, errors="replace")
        except LookupError:
            return raw.decode("utf-8", errors="replace")


def html_to_text(markup: str) -> str:
    """Strip script/style elements and tags from an (X)HTML document"""
    soup = BeautifulSoup(markup, "html.parser")
    for element in soup(["script", "style"]):
        element.decompose()
    return soup.get_text(" ")


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()
