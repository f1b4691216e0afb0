"""
Quality gate for directly extracted text.

Answers one question for the AUTO mode: is the PDF text layer good enough
to skip OCR?  Each check is a pure function over the text; the gate
returns ``(pass, reason)`` like the other quality gates so the caller can
log why a document was routed to OCR.

Checks (all must hold)
----------------------
1. length ≥ 100 characters
2. gibberish ratio ≤ 0.15 (runs of ≥3 chars that are neither letter,
   digit nor whitespace, as a share of all characters)
3. average whitespace-delimited token length in [1.5, 20]
4. token-count / char-count ≥ 0.08
5. when CJK text is present, CJK characters ≥ 10 % of all characters
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

MIN_LENGTH = 100
MAX_GIBBERISH_RATIO = 0.15
MIN_AVG_WORD_LENGTH = 1.5
MAX_AVG_WORD_LENGTH = 20.0
MIN_WORD_CHAR_RATIO = 0.08
MIN_CJK_RATIO = 0.10

# "\w" covers letters and digits in every script, plus the underscore
_GIBBERISH_RE = re.compile(r"(?:[^\w\s]|_){3,}")
_CJK_RE = re.compile(r"[\u4e00-\u9fa5]")


def gibberish_ratio(text: str) -> float:
    if not text:
        return 1.0
    gibberish = sum(len(m.group()) for m in _GIBBERISH_RE.finditer(text))
    return gibberish / len(text)


def average_word_length(text: str) -> float:
    words = text.split()
    if not words:
        return 0.0
    return sum(len(w) for w in words) / len(words)


def word_char_ratio(text: str) -> float:
    if not text:
        return 0.0
    return len(text.split()) / len(text)


def cjk_ratio(text: str) -> float:
    if not text:
        return 0.0
    return len(_CJK_RE.findall(text)) / len(text)


def validate_extracted_text(text: str | None) -> tuple[bool, str]:
    """Run every check; return the first failing reason."""
    if not text or not text.strip():
        return False, "Empty text"

    if len(text) < MIN_LENGTH:
        return False, f"Too short ({len(text)} chars)"

    g = gibberish_ratio(text)
    if g > MAX_GIBBERISH_RATIO:
        return False, f"High gibberish ratio ({g:.2f})"

    avg = average_word_length(text)
    if avg < MIN_AVG_WORD_LENGTH or avg > MAX_AVG_WORD_LENGTH:
        return False, f"Abnormal average word length ({avg:.2f})"

    ratio = word_char_ratio(text)
    if ratio < MIN_WORD_CHAR_RATIO:
        return False, f"Low word density ({ratio:.2f})"

    if _CJK_RE.search(text):
        cjk = cjk_ratio(text)
        if cjk < MIN_CJK_RATIO:
            return False, f"Low CJK ratio ({cjk:.2f})"

    return True, "OK"


def is_high_quality_text(text: str | None) -> bool:
    ok, reason = validate_extracted_text(text)
    logger.debug("Text quality gate: %s (%s).", ok, reason)
    return ok


def text_quality_score(text: str | None) -> float:
    """Continuous score in [0, 1]: 0.3·length + 0.4·cleanliness + 0.3·readability."""
    if not text:
        return 0.0
    length_score = min(1.0, len(text) / 1000.0)
    gibberish_score = max(0.0, 1.0 - gibberish_ratio(text) * 2)
    readability_score = min(1.0, word_char_ratio(text) * 10)
    return length_score * 0.3 + gibberish_score * 0.4 + readability_score * 0.3
