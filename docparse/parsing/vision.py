"""
Vision-model OCR provider.

Sends the page image to an OpenAI-compatible multimodal chat endpoint and
asks for the layout JSON described in ``schemas``.  Large pages (dense
tables, long forms) regularly blow the output-token budget and come back
as truncated JSON, so every response is checked before it is accepted.

Strategy
--------
1. Full prompt: titles, tables with ``table_info``, bboxes, formulas.
2. If the response is not complete, balanced, parseable JSON (or the full
   call failed for a transient reason) ask again once with a simplified
   prompt that drops bboxes and ``table_info`` and folds tables into
   markdown text.
3. If the simplified response is still unusable, raise a retryable
   ``OcrProviderError`` so the facade can retry or fail over.

Authentication and bad-request errors are not retryable and skip step 2.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from typing import Any

import openai
from pydantic import ValidationError

from docparse.config import Settings, settings as app_settings
from docparse.parsing.config import ParsingSettings, parsing_settings
from docparse.parsing.ocr import OcrProvider, OcrProviderError
from docparse.parsing.schemas import LayoutElement, Page, StructuredDocument
from docparse.services.llm import vision_chat

logger = logging.getLogger(__name__)

FULL_PROMPT = """\
Recognise the document content in the image and return JSON only.

Structure:
{"pages":[{"page_no":1,"image_size":[width,height],"layout":[elements]}]}

Element fields:
- element_id: unique id such as "e1_1"
- type: title/text/table/list/formula/code/image/caption/footnote
- heading_level: 1-6 for titles, null otherwise
- bbox: [x, y, width, height] in image pixels
- text: raw text
- md_text: markdown (tables with | syntax, formulas as $LaTeX$)
- confidence: 0-1
- table_info: required for tables {"headers":[],"rows":[[]],"row_count":0,"column_count":0}

Rules:
1. Tables must use type "table" and carry a complete table_info.
2. Table md_text format: |col1|col2|\\n|---|---|\\n|v1|v2|
3. List elements in reading order.
4. Return raw JSON without ``` fences and make sure it is complete.
"""

SIMPLIFIED_PROMPT = """\
Recognise the text in the image and return a compact JSON document.

The page may be long, so return only the essentials:
1. Only elements of type "title" or "text".
2. Convert tables to markdown tables inside md_text (type "text").
3. Omit bbox and table_info.
4. Merge adjacent text elements when there is a lot of content.
5. The JSON must be complete – never stop mid-way.

Format:
{"pages":[{"page_no":1,"layout":[{"element_id":"e1","type":"text",
"heading_level":null,"text":"...","md_text":"...","confidence":0.95}]}]}
"""

_FENCE_JSON_RE = re.compile(r"```json\s*(.*?)```", re.DOTALL)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_LINE_COMMENT_RE = re.compile(r"//.*?(\n|$)")
_BLOCK_COMMENT_RE = re.compile(r"/\*[\s\S]*?\*/")
_TRAILING_COMMA_OBJ_RE = re.compile(r",\s*}")
_TRAILING_COMMA_ARR_RE = re.compile(r",\s*]")
_SINGLE_QUOTED_KEY_RE = re.compile(r"'([^']*)':")
_SINGLE_QUOTED_VALUE_RE = re.compile(r":\s*'([^']*)'")
_UNQUOTED_KEY_RE = re.compile(r"([{,])\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*:")

_NON_RETRYABLE_API_ERRORS = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.BadRequestError,
    openai.NotFoundError,
)


# ═══════════════════════════════════════════════════════════════════════════
# JSON helpers
# ═══════════════════════════════════════════════════════════════════════════

def extract_json(content: str) -> str:
    """Strip markdown fences and surrounding prose; keep ``{ … }``."""
    content = (content or "").strip()
    if "```json" in content:
        match = _FENCE_JSON_RE.search(content)
        if match:
            content = match.group(1).strip()
    elif "```" in content:
        start = content.index("```") + 3
        end = content.rfind("```")
        if end > start:
            content = content[start:end].strip()

    first, last = content.find("{"), content.rfind("}")
    if first >= 0 and last > first:
        return content[first:last + 1]
    return content


def fix_json_format(text: str) -> str:
    """Best-effort repair of the JSON dialect vision models tend to emit."""
    if not text:
        return text
    text = text.lstrip("\ufeff")
    text = _CONTROL_CHARS_RE.sub("", text)
    text = _LINE_COMMENT_RE.sub("\n", text)
    text = _BLOCK_COMMENT_RE.sub("", text)
    text = _TRAILING_COMMA_OBJ_RE.sub("}", text)
    text = _TRAILING_COMMA_ARR_RE.sub("]", text)
    text = _SINGLE_QUOTED_KEY_RE.sub(r'"\1":', text)
    text = _SINGLE_QUOTED_VALUE_RE.sub(r': "\1"', text)
    text = _UNQUOTED_KEY_RE.sub(r'\1"\2":', text)
    text = re.sub(r"\bTrue\b", "true", text)
    text = re.sub(r"\bFalse\b", "false", text)
    text = re.sub(r"\b(?:Null|NULL|None)\b", "null", text)
    return text.strip()


def _balance(text: str) -> tuple[int, int]:
    """(brace, bracket) depth at the end of *text*, ignoring string contents."""
    braces = brackets = 0
    in_string = escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            braces += 1
        elif ch == "}":
            braces -= 1
        elif ch == "[":
            brackets += 1
        elif ch == "]":
            brackets -= 1
    return braces, brackets


def load_json_lenient(text: str) -> Any:
    """``json.loads``, retried once on the repaired text."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return json.loads(fix_json_format(text))


def validate_json_completeness(content: str | None) -> tuple[bool, str]:
    """Is *content* one complete, balanced, parseable JSON object?"""
    if not content or not content.strip():
        return False, "Empty response"
    candidate = extract_json(content).strip()
    if not candidate:
        return False, "No JSON found"
    if not candidate.startswith("{") or not candidate.endswith("}"):
        return False, "Missing opening or closing brace"
    braces, brackets = _balance(candidate)
    if braces:
        return False, f"Unbalanced braces ({braces:+d})"
    if brackets:
        return False, f"Unbalanced brackets ({brackets:+d})"
    try:
        load_json_lenient(candidate)
    except json.JSONDecodeError as exc:
        return False, f"JSON parse error: {exc}"
    return True, "OK"


def parse_layout_json(content: str) -> StructuredDocument:
    """Turn a validated response into a ``StructuredDocument``.

    A response without pages is wrapped as a single text element so the
    recognised text is not lost.
    """
    data = load_json_lenient(extract_json(content))
    if isinstance(data, dict) and data.get("pages"):
        return StructuredDocument.model_validate(data)

    logger.warning("Vision response has no pages – wrapping raw content as one text element.")
    element = LayoutElement(type="text", text=content, md_text=content, confidence=0.8)
    return StructuredDocument(pages=[Page(page_no=1, image_size=[0, 0], layout=[element])])


# ═══════════════════════════════════════════════════════════════════════════
# Provider
# ═══════════════════════════════════════════════════════════════════════════

class VisionOcrProvider(OcrProvider):
    priority = 10

    def __init__(
        self,
        settings: ParsingSettings | None = None,
        app: Settings | None = None,
    ) -> None:
        self.settings = settings or parsing_settings
        self.app = app or app_settings

    @property
    def name(self) -> str:
        return f"VisionOCR ({self.app.vision_model})"

    def is_available(self) -> bool:
        return bool(self.app.vision_api_key and self.app.vision_base_url and self.app.vision_model)

    def _call(self, prompt: str, image_bytes: bytes) -> tuple[str, str | None]:
        return vision_chat(
            prompt,
            image_bytes,
            model=self.app.vision_model,
            temperature=self.settings.vision_temperature,
            max_tokens=self.settings.vision_max_tokens,
            timeout=self.settings.vision_request_timeout_seconds,
        )

    def _raise_if_fatal(self, exc: Exception) -> None:
        if isinstance(exc, _NON_RETRYABLE_API_ERRORS):
            raise OcrProviderError(self.name, f"{type(exc).__name__}: {exc}", retryable=False) from exc

    def recognize(
        self,
        image_bytes: bytes,
        cancel: threading.Event | None = None,
    ) -> StructuredDocument:
        if not self.is_available():
            raise OcrProviderError(self.name, "vision endpoint not configured", retryable=False)

        # ── 1. full prompt ───────────────────────────────────────────────
        try:
            content, finish = self._call(FULL_PROMPT, image_bytes)
            ok, reason = validate_json_completeness(content)
            if ok:
                document = self._to_document(content)
                document.model_info = self.app.vision_model
                return document
            logger.warning(
                "Vision JSON incomplete (%s, finish=%s) – retrying with simplified prompt.",
                reason, finish,
            )
        except OcrProviderError as exc:
            logger.warning("Full vision response unusable: %s – retrying with simplified prompt.", exc)
        except openai.OpenAIError as exc:
            self._raise_if_fatal(exc)
            logger.warning("Full vision call failed: %s – retrying with simplified prompt.", exc)

        if cancel is not None and cancel.is_set():
            raise OcrProviderError(self.name, "cancelled after batch deadline", retryable=False)

        # ── 2. simplified prompt ─────────────────────────────────────────
        try:
            content, finish = self._call(SIMPLIFIED_PROMPT, image_bytes)
        except openai.OpenAIError as exc:
            self._raise_if_fatal(exc)
            raise OcrProviderError(self.name, f"simplified call failed: {exc}") from exc

        ok, reason = validate_json_completeness(content)
        if not ok:
            raise OcrProviderError(
                self.name, f"response JSON still incomplete ({reason}, finish={finish})"
            )
        document = self._to_document(content)
        document.model_info = f"{self.app.vision_model} (simplified)"
        logger.info("Vision OCR succeeded with simplified prompt (%d pages).", len(document.pages))
        return document

    def _to_document(self, content: str) -> StructuredDocument:
        try:
            return parse_layout_json(content)
        except (json.JSONDecodeError, ValidationError) as exc:
            raise OcrProviderError(self.name, f"unusable layout JSON: {exc}") from exc
