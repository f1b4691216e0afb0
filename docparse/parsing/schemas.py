"""
Pydantic models for every artifact that flows through the parsing pipeline.

The OCR wire format (what a vision provider returns) maps 1:1 onto
``StructuredDocument``::

    {"pages": [{"page_no": 1, "image_size": [w, h], "layout": [
        {"element_id": "e1", "type": "table", "heading_level": null,
         "bbox": [x, y, w, h], "text": "...", "md_text": "| a | b |...",
         "confidence": 0.95, "table_info": {"headers": [...], "rows": [[...]]}}
    ]}]}

``ParsingResult`` is what callers of the pipeline receive: final text,
the structured document (OCR paths only) and a flat metadata dict.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from docparse.parsing.tables import rows_to_markdown

PAGE_SEPARATOR = "\n\n---\n\n"


# ── Enums ────────────────────────────────────────────────────────────────

class ParsingMode(str, Enum):
    SIMPLE = "SIMPLE"  # direct text extraction, OCR only if it yields nothing
    OCR = "OCR"  # render every page and OCR it
    AUTO = "AUTO"  # decide per document (PDF only)


class ParsingStatus(str, Enum):
    COMPLETE = "COMPLETE"
    PARTIAL = "PARTIAL"


class ElementType(str, Enum):
    TITLE = "title"
    HEADING = "heading"
    HEADER = "header"
    SUBTITLE = "subtitle"
    TEXT = "text"
    TABLE = "table"
    LIST = "list"
    FORMULA = "formula"
    CODE = "code"
    IMAGE = "image"
    FIGURE = "figure"
    CAPTION = "caption"
    FOOTNOTE = "footnote"
    QUOTE = "quote"


_TITLE_TYPES = {ElementType.TITLE.value, ElementType.HEADING.value, ElementType.HEADER.value}
_ITALIC_TYPES = {ElementType.IMAGE.value, ElementType.FIGURE.value, ElementType.CAPTION.value}


# ── Layout ───────────────────────────────────────────────────────────────

class TableInfo(BaseModel):
    """Structured view of a table element."""

    title: str | None = None
    caption: str | None = None
    headers: list[str] = Field(default_factory=list)
    rows: list[list[str]] = Field(default_factory=list)
    row_count: int | None = None
    column_count: int | None = None
    summary: str | None = None  # optional LLM summary

    @field_validator("headers", mode="before")
    @classmethod
    def _stringify_headers(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return ["" if v is None else str(v) for v in value]
        return value

    @field_validator("rows", mode="before")
    @classmethod
    def _stringify_rows(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [
                ["" if c is None else str(c) for c in row] if isinstance(row, list) else [str(row)]
                for row in value
            ]
        return value

    def to_markdown(self) -> str:
        if self.headers:
            return rows_to_markdown([self.headers, *self.rows])
        return rows_to_markdown(self.rows)

    def shared_context(self) -> str:
        """Title, caption and column names – prefixed to every row chunk."""
        parts: list[str] = []
        if self.title:
            parts.append(f"Table: {self.title}")
        if self.caption:
            parts.append(f"Caption: {self.caption}")
        if self.headers:
            parts.append("Columns: " + " | ".join(self.headers))
        return "\n".join(parts)

    def row_with_context(self, index: int) -> str:
        """One data row rendered as ``header: value`` pairs under the shared context."""
        if index < 0 or index >= len(self.rows):
            raise IndexError(f"row {index} out of range ({len(self.rows)} rows)")
        row = self.rows[index]
        if self.headers:
            pairs = [
                f"{self.headers[i] if i < len(self.headers) else f'col{i + 1}'}: {cell}"
                for i, cell in enumerate(row)
            ]
        else:
            pairs = list(row)
        context = self.shared_context()
        body = "; ".join(pairs)
        return f"{context}\n{body}" if context else body

    def all_rows_with_context(self) -> list[str]:
        return [self.row_with_context(i) for i in range(len(self.rows))]


class LayoutElement(BaseModel):
    """One recognised block on a page."""

    element_id: str | None = None
    parent_id: str | None = None
    type: str = ElementType.TEXT.value
    heading_level: int | None = None
    bbox: list[float] | None = None  # [x, y, w, h] in image pixels
    text: str | None = None
    md_text: str | None = None
    confidence: float | None = None
    table_info: TableInfo | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> Any:
        if value is None:
            return ElementType.TEXT.value
        if isinstance(value, Enum):
            value = value.value
        return str(value).strip().lower() or ElementType.TEXT.value

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalise_confidence(cls, value: Any) -> Any:
        """Percentages are rescaled; everything ends up in [0, 1]."""
        if value is None or isinstance(value, bool):
            return value
        try:
            value = float(value)
        except (TypeError, ValueError):
            return None
        if value > 1.0:
            value /= 100.0
        return min(1.0, max(0.0, value))

    def best_text(self) -> str:
        return self.md_text or self.text or ""

    def is_title(self) -> bool:
        return self.type in _TITLE_TYPES or self.type == ElementType.SUBTITLE

    def is_table(self) -> bool:
        return self.type == ElementType.TABLE or self.table_info is not None

    def effective_heading_level(self) -> int | None:
        if self.heading_level:
            return self.heading_level
        if self.type in _TITLE_TYPES:
            return 1
        if self.type == ElementType.SUBTITLE:
            return 2
        return None

    def to_markdown(self) -> str:
        content = self.best_text().strip()
        etype = self.type
        if not content and not (etype == ElementType.TABLE and self.table_info):
            return ""

        if etype in _TITLE_TYPES:
            if content.startswith("#"):
                return content
            level = max(1, min(6, self.effective_heading_level() or 1))
            return "#" * level + " " + content
        if etype == ElementType.SUBTITLE:
            return content if content.startswith("#") else "## " + content
        if etype == ElementType.TABLE:
            if "|" in content:
                return content
            if self.table_info and (self.table_info.rows or self.table_info.headers):
                return self.table_info.to_markdown()
            return content
        if etype == ElementType.LIST:
            if content.startswith(("-", "*", "+")) or content[:1].isdigit():
                return content
            return "- " + content
        if etype == ElementType.CODE:
            return content if content.startswith("```") else f"```\n{content}\n```"
        if etype == ElementType.FORMULA:
            return content if content.startswith("$") else f"${content}$"
        if etype in _ITALIC_TYPES:
            return content if content.startswith("*") else f"*{content}*"
        if etype == ElementType.FOOTNOTE:
            return content if content.startswith("[^") else f"[^note]: {content}"
        if etype == ElementType.QUOTE:
            return content if content.startswith(">") else "> " + content
        return content


class Page(BaseModel):
    page_no: int = 1
    image_size: list[int] | None = None  # [width, height]
    layout: list[LayoutElement] = Field(default_factory=list)

    def to_markdown(self, confidence_threshold: float = 0.0) -> str:
        parts: list[str] = []
        for element in self.layout:
            if element.confidence is not None and element.confidence < confidence_threshold:
                continue
            md = element.to_markdown()
            if md:
                parts.append(md)
        return "\n\n".join(parts)


# ── Derived views ────────────────────────────────────────────────────────

class DocumentStats(BaseModel):
    page_count: int = 0
    element_count: int = 0
    table_count: int = 0
    title_count: int = 0
    average_confidence: float = 0.0


class ChunkableUnit(BaseModel):
    """Smallest unit handed to the downstream chunker / embedder."""

    text: str
    page_no: int
    element_id: str | None = None
    element_type: str = ElementType.TEXT.value
    section_path: list[str] = Field(default_factory=list)
    heading_level: int | None = None
    confidence: float | None = None
    is_table: bool = False


class TableChunkSet(BaseModel):
    """A table split into independently embeddable rows that share context."""

    page_no: int
    element_id: str | None = None
    shared_context: str = ""
    markdown: str = ""
    rows: list[str] = Field(default_factory=list)


# ── Document ─────────────────────────────────────────────────────────────

class StructuredDocument(BaseModel):
    pages: list[Page] = Field(default_factory=list)
    model_info: str | None = None
    processing_time_ms: int | None = None

    def elements(self):
        for page in self.pages:
            for element in page.layout:
                yield page, element

    def to_markdown(self, confidence_threshold: float = 0.0) -> str:
        rendered = [p.to_markdown(confidence_threshold) for p in self.pages]
        return PAGE_SEPARATOR.join(r for r in rendered if r)

    def to_plain_text(self) -> str:
        lines = [e.text or e.md_text or "" for _, e in self.elements()]
        return "\n".join(line for line in lines if line.strip())

    def to_chunkable_units(self) -> list[ChunkableUnit]:
        units: list[ChunkableUnit] = []
        headings: list[tuple[int, str]] = []  # (level, text) stack
        for page, element in self.elements():
            text = element.best_text().strip()
            if not text:
                continue
            if element.is_title():
                level = element.effective_heading_level() or 1
                while headings and headings[-1][0] >= level:
                    headings.pop()
                headings.append((level, (element.text or text).lstrip("# ").strip()))
            units.append(
                ChunkableUnit(
                    text=text,
                    page_no=page.page_no,
                    element_id=element.element_id,
                    element_type=element.type,
                    section_path=[h[1] for h in headings],
                    heading_level=element.effective_heading_level(),
                    confidence=element.confidence,
                    is_table=element.is_table(),
                )
            )
        return units

    def table_chunk_sets(self) -> list[TableChunkSet]:
        sets: list[TableChunkSet] = []
        for page, element in self.elements():
            if not element.is_table():
                continue
            info = element.table_info
            sets.append(
                TableChunkSet(
                    page_no=page.page_no,
                    element_id=element.element_id,
                    shared_context=info.shared_context() if info else "",
                    markdown=element.to_markdown(),
                    rows=info.all_rows_with_context() if info else [],
                )
            )
        return sets

    def stats(self) -> DocumentStats:
        confidences: list[float] = []
        element_count = table_count = title_count = 0
        for _, element in self.elements():
            element_count += 1
            if element.is_table():
                table_count += 1
            if element.is_title():
                title_count += 1
            if element.confidence is not None:
                confidences.append(element.confidence)
        return DocumentStats(
            page_count=len(self.pages),
            element_count=element_count,
            table_count=table_count,
            title_count=title_count,
            average_confidence=sum(confidences) / len(confidences) if confidences else 0.0,
        )


# ── Result ───────────────────────────────────────────────────────────────

class ParsingResult(BaseModel):
    text: str = ""
    structured_document: StructuredDocument | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    parsing_method: str = ""  # text_extraction | ocr | ocr_cached | ocr_image
    quality_score: float | None = None

    @property
    def final_text(self) -> str:
        if self.text:
            return self.text
        if self.structured_document is not None:
            return self.structured_document.to_markdown()
        return ""

    @property
    def parsing_status(self) -> ParsingStatus:
        return ParsingStatus(self.metadata.get("parsing_status", ParsingStatus.COMPLETE.value))

    def chunkable_units(self) -> list[ChunkableUnit]:
        if self.structured_document is None:
            if not self.text.strip():
                return []
            return [ChunkableUnit(text=self.text.strip(), page_no=1)]
        return self.structured_document.to_chunkable_units()

    def table_chunk_sets(self) -> list[TableChunkSet]:
        if self.structured_document is None:
            return []
        return self.structured_document.table_chunk_sets()

    def document_stats(self) -> DocumentStats | None:
        if self.structured_document is None:
            return None
        return self.structured_document.stats()

    def has_tables(self) -> bool:
        stats = self.document_stats()
        return bool(stats and stats.table_count)
