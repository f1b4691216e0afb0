"""
Direct text extraction – the cheap path that skips OCR.

One extractor per document family:
  - PDF            – PyMuPDF text layer (same engine as the renderer)
  - DOCX           – python-docx paragraphs, tables as markdown
  - plain text     – txt / md / csv / json / html read as UTF-8

Extractors may raise on corrupt input; the orchestrator treats any
exception or empty text as "route to OCR".
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import docx
import fitz  # PyMuPDF

from docparse.parsing.tables import rows_to_markdown

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


class TextExtractor(ABC):
    extensions: tuple[str, ...] = ()

    def supports(self, extension: str) -> bool:
        return extension.lower().lstrip(".") in self.extensions

    @abstractmethod
    def extract(self, path: Path) -> ExtractionResult:
        ...


class PdfTextExtractor(TextExtractor):
    extensions = ("pdf",)

    def extract(self, path: Path) -> ExtractionResult:
        doc = fitz.open(str(path))
        try:
            text = "\n".join(page.get_text("text") for page in doc)
            info = doc.metadata or {}
            metadata = {
                "page_count": len(doc),
                "title": info.get("title") or "",
                "author": info.get("author") or "",
                "producer": info.get("producer") or "",
            }
        finally:
            doc.close()
        return ExtractionResult(text=text.strip(), metadata=metadata)


class DocxTextExtractor(TextExtractor):
    extensions = ("docx",)

    def extract(self, path: Path) -> ExtractionResult:
        document = docx.Document(str(path))
        parts = [p.text for p in document.paragraphs if p.text.strip()]
        for table in document.tables:
            rows = [[cell.text.strip() for cell in row.cells] for row in table.rows]
            if rows:
                parts.append(rows_to_markdown(rows))
        props = document.core_properties
        metadata = {
            "paragraph_count": len(document.paragraphs),
            "table_count": len(document.tables),
            "title": props.title or "",
            "author": props.author or "",
        }
        return ExtractionResult(text="\n\n".join(parts), metadata=metadata)


class PlainTextExtractor(TextExtractor):
    extensions = ("txt", "md", "markdown", "csv", "json", "html", "htm", "xml", "log")

    def extract(self, path: Path) -> ExtractionResult:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
        return ExtractionResult(text=text, metadata={"char_count": len(text)})


DEFAULT_EXTRACTORS: list[TextExtractor] = [
    PdfTextExtractor(),
    DocxTextExtractor(),
    PlainTextExtractor(),
]


def find_extractor(
    extension: str,
    extractors: list[TextExtractor] | None = None,
) -> TextExtractor | None:
    for extractor in extractors or DEFAULT_EXTRACTORS:
        if extractor.supports(extension):
            return extractor
    return None


def extract_text(
    path: Path,
    extension: str | None = None,
    extractors: list[TextExtractor] | None = None,
) -> ExtractionResult:
    """Extract *path* with the first matching extractor.

    Raises ``ValueError`` when no extractor handles the extension.
    """
    path = Path(path)
    extension = (extension or path.suffix).lower().lstrip(".")
    extractor = find_extractor(extension, extractors)
    if extractor is None:
        raise ValueError(f"No text extractor for .{extension} files")
    result = extractor.extract(path)
    logger.debug("Extracted %d chars from %s (%s).", len(result.text), path.name, type(extractor).__name__)
    return result
