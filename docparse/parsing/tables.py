"""
Markdown table helpers shared by rendering, merging and evaluation.

OCR providers emit tables as pipe-delimited markdown (``| a | b |``) and,
when they can, as structured ``table_info`` rows.  These helpers convert
between the two and locate the pieces (header row, separator row, data
rows) the downstream stages care about.
"""

from __future__ import annotations

import csv
import io
import re

_SEPARATOR_RE = re.compile(r"^\|[-:|\s]+\|$")


def is_table_row(line: str) -> bool:
    """A markdown table row starts and ends with a pipe."""
    stripped = line.strip()
    return len(stripped) >= 2 and stripped.startswith("|") and stripped.endswith("|")


def is_separator_row(line: str) -> bool:
    """``|---|:---:|`` style alignment row."""
    return bool(_SEPARATOR_RE.match(line.strip()))


def split_cells(line: str) -> list[str]:
    """Cells of one table row, trimmed, outer pipes removed."""
    stripped = line.strip()
    if stripped.startswith("|"):
        stripped = stripped[1:]
    if stripped.endswith("|"):
        stripped = stripped[:-1]
    return [cell.strip() for cell in stripped.split("|")]


def parse_markdown_table(markdown: str | None) -> list[list[str]]:
    """Rows of cells for every table row in *markdown*, separators skipped."""
    if not markdown:
        return []
    rows: list[list[str]] = []
    for line in markdown.split("\n"):
        if not is_table_row(line) or is_separator_row(line):
            continue
        rows.append(split_cells(line))
    return rows


def find_header_row(markdown: str | None) -> str | None:
    """First table row of *markdown* that is not a separator."""
    if not markdown:
        return None
    for line in markdown.split("\n"):
        stripped = line.strip()
        if is_table_row(stripped) and not is_separator_row(stripped):
            return stripped
    return None


def header_tokens(header_row: str) -> list[str]:
    """Lower-cased, trimmed column names of a header row (empty cells dropped)."""
    return [cell.lower() for cell in split_cells(header_row) if cell]


def rows_to_markdown(rows: list[list[str]]) -> str:
    if not rows:
        return ""
    # Pad rows to uniform column count
    max_cols = max(len(r) for r in rows)
    padded = [r + [""] * (max_cols - len(r)) for r in rows]

    lines: list[str] = []
    header = "| " + " | ".join(padded[0]) + " |"
    separator = "| " + " | ".join(["---"] * max_cols) + " |"
    lines.append(header)
    lines.append(separator)
    for row in padded[1:]:
        lines.append("| " + " | ".join(row) + " |")
    return "\n".join(lines)


def rows_to_csv(rows: list[list[str]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()


def append_table_body(first: str, second: str) -> str:
    """Append *second*'s data rows to *first*, dropping its header and separator.

    Lines of *second* before its first table row (a "continued" caption,
    say) are dropped.  Only the first header row and the first separator
    row are skipped; lines after the table are carried over.
    """
    lines = first.split("\n")
    header_skipped = False
    separator_skipped = False
    for line in second.split("\n"):
        stripped = line.strip()
        if not header_skipped and not is_table_row(stripped):
            continue
        if not header_skipped and not is_separator_row(stripped):
            header_skipped = True
            continue
        if not separator_skipped and is_separator_row(stripped):
            separator_skipped = True
            continue
        lines.append(line)
    return "\n".join(lines)
