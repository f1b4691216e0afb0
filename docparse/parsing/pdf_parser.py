"""
PDF rendering & native text-layer access via PyMuPDF (fitz).

Responsibilities
- Rasterise every page to PNG at the configured DPI for the OCR stage.
  A page that fails to render is logged and omitted; it is not retried.
- Expose the per-page text layer for the table detector and the
  document-level text for the quick AUTO-mode extraction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import fitz  # PyMuPDF

from docparse.parsing.config import parsing_settings

logger = logging.getLogger(__name__)


@dataclass
class RenderedPage:
    """One page rasterised for OCR."""

    page_number: int  # 1-based, as in the source document
    png_bytes: bytes
    width: int
    height: int


def page_count(pdf_path: Path) -> int:
    doc = fitz.open(str(pdf_path))
    try:
        return len(doc)
    finally:
        doc.close()


def render_pdf_pages(pdf_path: Path, dpi: int | None = None) -> list[RenderedPage]:
    """Render every page to PNG, skipping pages that fail to rasterise."""
    dpi = dpi or parsing_settings.dpi
    mat = fitz.Matrix(dpi / 72, dpi / 72)
    pages: list[RenderedPage] = []

    doc = fitz.open(str(pdf_path))
    try:
        total = len(doc)
        for idx in range(total):
            try:
                pix = doc[idx].get_pixmap(matrix=mat)
                pages.append(
                    RenderedPage(
                        page_number=idx + 1,
                        png_bytes=pix.tobytes("png"),
                        width=pix.width,
                        height=pix.height,
                    )
                )
            except Exception as exc:  # fitz raises plain RuntimeError subclasses
                logger.warning("Page %d of %s failed to render: %s", idx + 1, pdf_path.name, exc)
    finally:
        doc.close()

    logger.info("Rendered %d/%d pages of %s at %d dpi.", len(pages), total, pdf_path.name, dpi)
    return pages


def extract_page_texts(pdf_path: Path) -> list[str]:
    """Native text layer, one string per page (layout whitespace preserved)."""
    doc = fitz.open(str(pdf_path))
    try:
        return [page.get_text("text", flags=fitz.TEXT_PRESERVE_WHITESPACE) for page in doc]
    finally:
        doc.close()
