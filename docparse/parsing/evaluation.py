"""
Quality metrics for parsed output.

Ground-truth metrics (used for benchmarking a provider or a prompt):
  - character accuracy  – 1 − Levenshtein(pred, truth) / max length
  - word accuracy       – same over lower-cased whitespace tokens
  - TEDS                – table structure similarity: row-level edit
    distance over the markdown table, normalised by tree size
    (root + one node per row + one per cell)

Ground-truth-free metrics (computed for every OCR run):
  - token compression   – estimated tokens of the raw text layer vs the
    structured markdown, with an information-retention factor
  - OCR quality score   – element coverage and mean confidence

Edit distances come from ``rapidfuzz``; rows are compared as tuples of
normalised cells, so two rows cost 0 only when they have the same number
of cells and every cell matches.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass

from rapidfuzz.distance import Levenshtein

from docparse.parsing.schemas import StructuredDocument
from docparse.parsing.tables import parse_markdown_table

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_CJK_RE = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]")


@dataclass
class CompressionMetrics:
    original_tokens: int
    compressed_tokens: int
    compression_ratio: float
    information_retention: float
    effective_compression_score: float


@dataclass
class EvaluationResult:
    character_accuracy: float
    word_accuracy: float
    teds_score: float
    overall_score: float
    compression: CompressionMetrics | None = None


# ═══════════════════════════════════════════════════════════════════════════
# Normalisation
# ═══════════════════════════════════════════════════════════════════════════

def normalize_text(text: str | None) -> str:
    return _WS_RE.sub(" ", (text or "").strip()).lower()


def normalize_cell(cell: str | None) -> str:
    cell = _BOLD_RE.sub(r"\1", (cell or "").strip())
    return _WS_RE.sub(" ", cell).lower()


# ═══════════════════════════════════════════════════════════════════════════
# Accuracy
# ═══════════════════════════════════════════════════════════════════════════

def character_accuracy(predicted: str | None, ground_truth: str | None) -> float:
    if not ground_truth:
        return 0.0 if predicted else 1.0
    if not predicted:
        return 0.0
    distance = Levenshtein.distance(predicted, ground_truth)
    return 1.0 - distance / max(len(predicted), len(ground_truth))


def word_accuracy(predicted: str | None, ground_truth: str | None) -> float:
    if not ground_truth:
        return 0.0 if predicted else 1.0
    if not predicted:
        return 0.0
    pred_words = normalize_text(predicted).split(" ")
    truth_words = normalize_text(ground_truth).split(" ")
    distance = Levenshtein.distance(pred_words, truth_words)
    return 1.0 - distance / max(len(pred_words), len(truth_words))


def _table_rows(markdown: str) -> list[tuple[str, ...]]:
    return [tuple(normalize_cell(c) for c in row) for row in parse_markdown_table(markdown)]


def _node_count(rows: list[tuple[str, ...]]) -> int:
    return 1 + sum(1 + len(row) for row in rows)


def teds(predicted_table: str | None, ground_truth_table: str | None) -> float:
    """Tree-edit-distance similarity of two markdown tables, in [0, 1]."""
    if not ground_truth_table:
        return 0.0 if predicted_table else 1.0
    if not predicted_table:
        return 0.0
    pred_rows = _table_rows(predicted_table)
    truth_rows = _table_rows(ground_truth_table)
    max_nodes = max(_node_count(pred_rows), _node_count(truth_rows))
    distance = Levenshtein.distance(pred_rows, truth_rows)
    return max(0.0, min(1.0, 1.0 - distance / max_nodes))


# ═══════════════════════════════════════════════════════════════════════════
# Compression
# ═══════════════════════════════════════════════════════════════════════════

def estimate_tokens(text: str | None) -> int:
    """~1.5 CJK chars or ~4 other chars per token."""
    if not text:
        return 0
    cjk = len(_CJK_RE.findall(text))
    other = len(text) - cjk
    return math.ceil(cjk / 1.5) + math.ceil(other / 4)


def information_retention(original: str | None, compressed: str | None) -> float:
    """Share of significant original words (len > 2) still present in *compressed*."""
    if not original:
        return 1.0
    if not compressed:
        return 0.0
    compressed_words = [w for w in normalize_text(compressed).split(" ") if w]
    significant = [w for w in normalize_text(original).split(" ") if len(w) > 2]
    if not significant:
        return 1.0
    covered = sum(
        1 for word in significant
        if any(word in cw or cw in word for cw in compressed_words)
    )
    return covered / len(significant)


def compression_metrics(
    original_text: str | None,
    compressed: StructuredDocument | str | None,
) -> CompressionMetrics:
    if isinstance(compressed, StructuredDocument):
        compressed_text = compressed.to_markdown()
    else:
        compressed_text = compressed or ""
    original_tokens = estimate_tokens(original_text)
    compressed_tokens = estimate_tokens(compressed_text)
    ratio = original_tokens / compressed_tokens if compressed_tokens else 1.0
    retention = information_retention(original_text, compressed_text)
    return CompressionMetrics(
        original_tokens=original_tokens,
        compressed_tokens=compressed_tokens,
        compression_ratio=ratio,
        information_retention=retention,
        effective_compression_score=ratio * retention,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Aggregates
# ═══════════════════════════════════════════════════════════════════════════

def evaluate(
    predicted: str | None,
    ground_truth: str | None,
    predicted_table: str | None = None,
    ground_truth_table: str | None = None,
) -> EvaluationResult:
    """0.4 · character + 0.3 · word + 0.3 · TEDS (0 when no tables given)."""
    char_acc = character_accuracy(predicted, ground_truth)
    word_acc = word_accuracy(predicted, ground_truth)
    teds_score = (
        teds(predicted_table, ground_truth_table)
        if predicted_table is not None and ground_truth_table is not None
        else 0.0
    )
    return EvaluationResult(
        character_accuracy=char_acc,
        word_accuracy=word_acc,
        teds_score=teds_score,
        overall_score=char_acc * 0.4 + word_acc * 0.3 + teds_score * 0.3,
    )


def evaluate_full(
    predicted: str | None,
    ground_truth: str | None,
    predicted_table: str | None,
    ground_truth_table: str | None,
    original_text: str | None,
    compressed: StructuredDocument | str | None,
) -> EvaluationResult:
    result = evaluate(predicted, ground_truth, predicted_table, ground_truth_table)
    result.compression = compression_metrics(original_text, compressed)
    return result


def ocr_quality_score(document: StructuredDocument | None) -> float:
    """0.3 · min(1, elements / 10) + 0.7 · mean element confidence."""
    if document is None or not document.pages:
        return 0.0
    stats = document.stats()
    return min(1.0, stats.element_count / 10.0) * 0.3 + stats.average_confidence * 0.7
