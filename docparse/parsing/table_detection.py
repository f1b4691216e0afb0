"""
Heuristic table detection on the native PDF text layer.

Digital PDFs lose table structure when their text is extracted directly,
so the AUTO mode sends anything that looks tabular to OCR.  The detector
never looks at pixels: it scores each page's text for tabular signals.

Signals per page
----------------
- tab characters                        (> 2  → +count)
- runs of ≥ 3 spaces                    (> 5  → +count // 2)
- "number  number" column patterns      (> 2  → +count × 2)
- header keywords (序号, 合计, Total, ID …) (> 2  → +count × 3)
- aligned rows: whitespace positions bucketed to 5 chars that recur on
  ≥ 3 lines                             (> 3  → +rows × 2)

A page has a table if the weighted sum exceeds 10, or if it has at least
two header keywords together with space runs (> 3) or aligned rows (> 2).

The analysis functions are pure; ``detect_tables`` is the only one that
touches a file.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from docparse.parsing.pdf_parser import extract_page_texts

logger = logging.getLogger(__name__)

_TAB_RE = re.compile(r"\t")
_MULTI_SPACE_RE = re.compile(r" {3,}")
_NUMBER_COLUMN_RE = re.compile(r"\d+\.?\d*\s{2,}\d+\.?\d*")
_HEADER_RE = re.compile(
    r"(序号|编号|名称|数量|金额|日期|时间|姓名|部门|合计|总计|小计"
    r"|No\.|ID|Name|Date|Amount|Total|Qty)",
    re.IGNORECASE,
)

_BUCKET = 5
_MIN_ALIGNED_LINES = 3
_MIN_LINE_LENGTH = 10


class ParsingRecommendation(str, Enum):
    USE_TEXT_EXTRACTION = "USE_TEXT_EXTRACTION"
    USE_OCR = "USE_OCR"
    USE_HYBRID = "USE_HYBRID"


@dataclass
class PageTableInfo:
    page_no: int
    has_table: bool = False
    indicator_count: int = 0
    indicators: list[str] = field(default_factory=list)
    tab_count: int = 0
    multi_space_count: int = 0
    number_column_count: int = 0
    header_count: int = 0
    aligned_row_count: int = 0


@dataclass
class TableDetectionResult:
    source: str
    page_count: int
    has_table: bool
    table_score: float
    page_infos: list[PageTableInfo] = field(default_factory=list)
    recommendation: ParsingRecommendation = ParsingRecommendation.USE_TEXT_EXTRACTION

    @property
    def table_pages(self) -> list[int]:
        return [p.page_no for p in self.page_infos if p.has_table]


# ═══════════════════════════════════════════════════════════════════════════
# Pure analysis
# ═══════════════════════════════════════════════════════════════════════════

def aligned_row_count(text: str) -> int:
    """Largest number of lines sharing a whitespace column bucket (≥ 3), else 0."""
    lines = text.split("\n")
    if len(lines) < _MIN_ALIGNED_LINES:
        return 0

    bucket_counts: Counter[int] = Counter()
    for line in lines:
        if len(line) < _MIN_LINE_LENGTH:
            continue
        buckets: set[int] = set()
        for i in range(1, len(line) - 1):
            if line[i] != " ":
                continue
            # a separating space borders at least one non-space character
            if line[i - 1] != " " or line[i + 1] != " ":
                buckets.add(i // _BUCKET * _BUCKET)
        bucket_counts.update(buckets)

    aligned = [count for count in bucket_counts.values() if count >= _MIN_ALIGNED_LINES]
    return max(aligned, default=0)


def analyse_page_text(text: str, page_no: int) -> PageTableInfo:
    text = text or ""
    tabs = len(_TAB_RE.findall(text))
    spaces = len(_MULTI_SPACE_RE.findall(text))
    numbers = len(_NUMBER_COLUMN_RE.findall(text))
    headers = len(_HEADER_RE.findall(text))
    aligned = aligned_row_count(text)

    score = 0
    indicators: list[str] = []
    if tabs > 2:
        score += tabs
        indicators.append(f"tabs: {tabs}")
    if spaces > 5:
        score += spaces // 2
        indicators.append(f"space runs: {spaces}")
    if numbers > 2:
        score += numbers * 2
        indicators.append(f"number columns: {numbers}")
    if headers > 2:
        score += headers * 3
        indicators.append(f"header keywords: {headers}")
    if aligned > 3:
        score += aligned * 2
        indicators.append(f"aligned rows: {aligned}")

    has_table = score > 10 or (headers >= 2 and (spaces > 3 or aligned > 2))

    return PageTableInfo(
        page_no=page_no,
        has_table=has_table,
        indicator_count=score,
        indicators=indicators,
        tab_count=tabs,
        multi_space_count=spaces,
        number_column_count=numbers,
        header_count=headers,
        aligned_row_count=aligned,
    )


def table_score(page_infos: list[PageTableInfo]) -> float:
    """0.6 · min(1, indicators / 50) + 0.4 · share of pages with a table."""
    if not page_infos:
        return 0.0
    total = sum(p.indicator_count for p in page_infos)
    with_table = sum(1 for p in page_infos if p.has_table)
    return min(1.0, total / 50.0) * 0.6 + (with_table / len(page_infos)) * 0.4


def detect_tables_in_pages(page_texts: list[str], source: str = "") -> TableDetectionResult:
    infos = [analyse_page_text(text, i + 1) for i, text in enumerate(page_texts)]
    score = table_score(infos)
    likely = any(p.has_table for p in infos) or score > 0.5

    result = TableDetectionResult(
        source=source,
        page_count=len(page_texts),
        has_table=likely,
        table_score=score,
        page_infos=infos,
        recommendation=(
            ParsingRecommendation.USE_OCR if likely else ParsingRecommendation.USE_TEXT_EXTRACTION
        ),
    )
    logger.debug(
        "Table detection %s: pages=%d has_table=%s score=%.2f table_pages=%s",
        source or "<text>", result.page_count, likely, score, result.table_pages,
    )
    return result


# ═══════════════════════════════════════════════════════════════════════════
# PDF entry point
# ═══════════════════════════════════════════════════════════════════════════

def detect_tables(pdf_path: Path) -> TableDetectionResult:
    """Analyse every page's text layer of *pdf_path*."""
    pdf_path = Path(pdf_path)
    result = detect_tables_in_pages(extract_page_texts(pdf_path), source=str(pdf_path))
    logger.info(
        "Table detection for %s: has_table=%s score=%.2f → %s",
        pdf_path.name, result.has_table, result.table_score, result.recommendation.value,
    )
    return result
