"""
Cross-page table merging.

OCR runs one page at a time, so a table that continues onto the next page
comes back as two tables: the tail of page *i* and the head of page *i+1*
(usually with the header row repeated).  This stage splices them back
together on the fully assembled document.

Per adjacent page pair
----------------------
1. Bottom candidate on page *i*: a table whose bbox bottom reaches
   ``bottom_ratio`` × page height – or, without a bbox, the last element.
2. Top candidate on page *i+1*: a table whose bbox top is within
   ``top_ratio`` × page height – or, without a bbox, the first element.
3. Compare the first markdown header rows: Jaccard similarity of the
   lower-cased column names.  At ≥ ``header_threshold`` the tables merge.

The merged table replaces the bottom candidate on page *i* (keeping its
id, bbox and page number); the top candidate is removed from page *i+1*
and that page is not used as a bottom candidate for the next boundary.
Pages are never removed, so page numbering stays contiguous.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from docparse.parsing.config import ParsingSettings, parsing_settings
from docparse.parsing.schemas import ElementType, LayoutElement, Page, StructuredDocument, TableInfo
from docparse.parsing.tables import append_table_body, find_header_row, header_tokens

logger = logging.getLogger(__name__)

DEFAULT_PAGE_HEIGHT = 1000


@dataclass
class MergeCandidate:
    page_index: int
    bottom_index: int  # element index on page_index
    top_index: int  # element index on page_index + 1
    similarity: float


def header_similarity(header1: str | None, header2: str | None) -> float:
    """Jaccard similarity of two markdown header rows' column names."""
    if not header1 or not header2:
        return 0.0
    cols1, cols2 = set(header_tokens(header1)), set(header_tokens(header2))
    union = cols1 | cols2
    if not union:
        return 0.0
    return len(cols1 & cols2) / len(union)


def merge_table_elements(table1: LayoutElement, table2: LayoutElement) -> LayoutElement:
    """Table 1 in full followed by table 2's data rows."""
    merged_info = None
    if table1.table_info is not None or table2.table_info is not None:
        info1 = table1.table_info or TableInfo()
        info2 = table2.table_info or TableInfo()
        rows = info1.rows + info2.rows
        merged_info = info1.model_copy(
            update={
                "headers": info1.headers or info2.headers,
                "rows": rows,
                "row_count": len(rows),
                "column_count": info1.column_count or info2.column_count,
            }
        )

    return LayoutElement(
        element_id=table1.element_id,
        parent_id=table1.parent_id,
        type=ElementType.TABLE.value,
        bbox=table1.bbox,
        text=(table1.text or "") + "\n" + (table2.text or ""),
        md_text=append_table_body(table1.md_text or "", table2.md_text or ""),
        confidence=max(table1.confidence or 0.0, table2.confidence or 0.0),
        table_info=merged_info,
    )


class TableMerger:
    def __init__(self, settings: ParsingSettings | None = None) -> None:
        settings = settings or parsing_settings
        self.enabled = settings.enable_table_merge
        self.header_threshold = settings.table_merge_header_threshold
        self.bottom_ratio = settings.table_merge_bottom_ratio
        self.top_ratio = settings.table_merge_top_ratio

    @staticmethod
    def _page_height(page: Page) -> float:
        if page.image_size and len(page.image_size) > 1 and page.image_size[1] > 0:
            return page.image_size[1]
        return DEFAULT_PAGE_HEIGHT

    def _find_table(self, page: Page, at_bottom: bool) -> int | None:
        height = self._page_height(page)
        threshold = height * (self.bottom_ratio if at_bottom else self.top_ratio)
        last = len(page.layout) - 1
        for index, element in enumerate(page.layout):
            if element.type != ElementType.TABLE:
                continue
            bbox = element.bbox
            if not bbox or len(bbox) < 4:
                # no geometry: only the last (bottom) / first (top) element qualifies
                if (at_bottom and index == last) or (not at_bottom and index == 0):
                    return index
                continue
            top, bottom = bbox[1], bbox[1] + bbox[3]
            if at_bottom and bottom >= threshold:
                return index
            if not at_bottom and top <= threshold:
                return index
        return None

    def find_candidate(self, pages: list[Page], page_index: int) -> MergeCandidate | None:
        current, following = pages[page_index], pages[page_index + 1]
        bottom = self._find_table(current, at_bottom=True)
        if bottom is None:
            return None
        top = self._find_table(following, at_bottom=False)
        if top is None:
            return None

        similarity = header_similarity(
            find_header_row(current.layout[bottom].md_text),
            find_header_row(following.layout[top].md_text),
        )
        if similarity < self.header_threshold:
            logger.debug(
                "Pages %d/%d: table headers differ (similarity %.2f).",
                current.page_no, following.page_no, similarity,
            )
            return None
        return MergeCandidate(page_index, bottom, top, similarity)

    def process_document(self, document: StructuredDocument) -> StructuredDocument:
        """Return a copy of *document* with cross-page tables merged."""
        if not self.enabled or document is None or len(document.pages) < 2:
            return document

        pages = [p.model_copy(deep=True) for p in document.pages]
        consumed: set[int] = set()
        merges = 0

        for i in range(len(pages) - 1):
            if i in consumed:
                continue
            candidate = self.find_candidate(pages, i)
            if candidate is None:
                continue

            current, following = pages[i], pages[i + 1]
            merged = merge_table_elements(
                current.layout[candidate.bottom_index],
                following.layout[candidate.top_index],
            )
            current.layout[candidate.bottom_index] = merged
            del following.layout[candidate.top_index]
            consumed.add(i + 1)
            merges += 1
            logger.info(
                "Merged cross-page table: page %d → %d (header similarity %.2f).",
                current.page_no, following.page_no, candidate.similarity,
            )

        if not merges:
            return document
        return document.model_copy(update={"pages": pages})
