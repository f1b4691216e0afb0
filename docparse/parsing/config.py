"""
Parsing pipeline configuration.

All values can be overridden via environment variables prefixed with
``PARSING_`` (e.g. ``PARSING_PARALLEL_PAGES=8``).
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings

_BASE = Path(__file__).resolve().parent.parent.parent


class ParsingSettings(BaseSettings):
    """Tuneable knobs for every pipeline stage."""

    # ── Mode selection ───────────────────────────────────────────────────
    force_ocr: bool = False  # always OCR when no explicit mode is given
    enable_hybrid_parser: bool = True  # False = OCR everything
    scanned_text_threshold: int = 100  # chars below which a PDF is "scanned"

    # ── PDF rendering ────────────────────────────────────────────────────
    dpi: int = 300

    # ── Markdown output ──────────────────────────────────────────────────
    confidence_threshold: float = 0.0  # drop elements below this

    # ── Page scheduler ───────────────────────────────────────────────────
    parallel_pages: int = 4
    max_page_retries: int = 3  # extra rounds after the first
    page_timeout_seconds: int = 60  # static per-page budget
    max_total_timeout_seconds: int = 3600
    timeout_multiplier: float = 3.0
    timeout_buffer_seconds: int = 120
    round_backoff_seconds: float = 2.0  # linear: (round + 1) * this
    enable_dynamic_timeout: bool = True

    # ── Result cache ─────────────────────────────────────────────────────
    enable_cache: bool = True
    cache_ttl_hours: float = 24.0
    cache_dir: Path | None = _BASE / "storage" / "parsing_cache"

    # ── Table handling ───────────────────────────────────────────────────
    enable_table_detection: bool = True
    enable_table_merge: bool = True
    table_merge_header_threshold: float = 0.7
    table_merge_bottom_ratio: float = 0.85
    table_merge_top_ratio: float = 0.15

    # ── OCR providers ────────────────────────────────────────────────────
    ocr_max_retries: int = 2  # attempts per provider
    ocr_retry_delay_ms: int = 1000
    vision_max_tokens: int = 16384
    vision_temperature: float = 0.1
    vision_request_timeout_seconds: float = 120.0
    enable_local_ocr: bool = True
    ocr_languages: list[str] = ["en"]
    ocr_gpu: bool = False

    model_config = {
        "env_prefix": "PARSING_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


parsing_settings = ParsingSettings()
