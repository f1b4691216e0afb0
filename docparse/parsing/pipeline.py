"""
Hybrid document parser – the single entry point of the parsing pipeline.

Wires together: mode selection → direct text extraction or page OCR
(renderer → scheduler → cache / timeout model / OCR facade) → cross-page
table merge → quality scoring → ``ParsingResult``.

Modes
-----
SIMPLE  Direct extraction; empty text or an extractor error falls back
        to OCR.
OCR     Images are OCR'd as one page; PDFs are rendered and OCR'd page
        by page with caching and retry rounds.  Missing pages make the
        result PARTIAL, never an exception.
AUTO    PDFs only (anything else degrades to SIMPLE).  A quick text
        extraction decides: < 100 chars → scanned → OCR; tables or poor
        text quality → OCR; otherwise SIMPLE.  Any error while deciding
        defaults to OCR.

Every result carries ``parsing_mode`` (``SIMPLE``, ``OCR``,
``AUTO->OCR``, ``AUTO->SIMPLE``) in its metadata.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from docparse.parsing.cache import DocumentFingerprint, ParsingCache
from docparse.parsing.config import ParsingSettings, parsing_settings
from docparse.parsing.evaluation import compression_metrics, ocr_quality_score
from docparse.parsing.extractors import ExtractionResult, TextExtractor, extract_text
from docparse.parsing.ocr import EasyOcrProvider, OcrError, OcrFacade, OcrUnavailableError
from docparse.parsing.pdf_parser import page_count, render_pdf_pages
from docparse.parsing.scheduler import PageOcrScheduler, ScheduleResult, assign_page_number
from docparse.parsing.schemas import (
    Page,
    ParsingMode,
    ParsingResult,
    ParsingStatus,
    StructuredDocument,
)
from docparse.parsing.table_detection import detect_tables
from docparse.parsing.table_merge import TableMerger
from docparse.parsing.text_quality import text_quality_score, validate_extracted_text
from docparse.parsing.timeouts import TimeoutModel
from docparse.parsing.vision import VisionOcrProvider

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "tiff", "tif", "bmp", "webp", "gif"}

METHOD_TEXT = "text_extraction"
METHOD_OCR = "ocr"
METHOD_OCR_CACHED = "ocr_cached"
METHOD_OCR_IMAGE = "ocr_image"


class ParsingError(Exception):
    """The document produced no usable output at all."""


class HybridDocumentParser:
    def __init__(
        self,
        settings: ParsingSettings | None = None,
        facade: OcrFacade | None = None,
        cache: ParsingCache | None = None,
        timeouts: TimeoutModel | None = None,
        merger: TableMerger | None = None,
        extractors: list[TextExtractor] | None = None,
        scheduler: PageOcrScheduler | None = None,
    ) -> None:
        self.settings = settings or parsing_settings
        self.facade = facade or OcrFacade(
            [VisionOcrProvider(settings=self.settings), EasyOcrProvider(settings=self.settings)]
        )
        if cache is None and self.settings.enable_cache:
            cache = ParsingCache(ttl_hours=self.settings.cache_ttl_hours, cache_dir=self.settings.cache_dir)
        self.cache = cache
        self.timeouts = timeouts or TimeoutModel()
        self.merger = merger or TableMerger(self.settings)
        self.extractors = extractors
        self.scheduler = scheduler or PageOcrScheduler(
            self.facade, self.cache, self.timeouts, settings=self.settings
        )

    def close(self) -> None:
        self.scheduler.close()

    def default_mode(self) -> ParsingMode:
        if self.settings.force_ocr or not self.settings.enable_hybrid_parser:
            return ParsingMode.OCR
        return ParsingMode.AUTO

    # ═══════════════════════════════════════════════════════════════════
    # Public entry point
    # ═══════════════════════════════════════════════════════════════════

    def parse(
        self,
        file_path: Path,
        mode: ParsingMode | str | None = None,
        extension: str | None = None,
    ) -> ParsingResult:
        """Parse *file_path* and return a unified ``ParsingResult``.

        Args:
            file_path: Document on disk.
            mode: ``SIMPLE`` / ``OCR`` / ``AUTO``; ``None`` picks OCR when
                OCR is forced or the hybrid parser is disabled, else AUTO.
            extension: Overrides the file suffix (without the dot).

        Raises:
            ParsingError: missing file, unsupported format for OCR, or no
                page could be rendered.
            OcrUnavailableError: OCR was needed but no provider is available.
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise ParsingError(f"File does not exist: {file_path}")
        extension = (extension or file_path.suffix).lower().lstrip(".")
        mode = ParsingMode(mode.upper()) if isinstance(mode, str) else mode
        mode = mode or self.default_mode()

        logger.info("═══ Parsing %s (mode=%s) ═══", file_path.name, mode.value)
        if mode is ParsingMode.SIMPLE:
            return self._parse_simple(file_path, extension)
        if mode is ParsingMode.OCR:
            return self._parse_ocr(file_path, extension)
        return self._parse_auto(file_path, extension)

    # ═══════════════════════════════════════════════════════════════════
    # SIMPLE
    # ═══════════════════════════════════════════════════════════════════

    def _extract(self, file_path: Path, extension: str) -> ExtractionResult | None:
        try:
            return extract_text(file_path, extension, self.extractors)
        except Exception as exc:  # corrupt input, unsupported type, parser bugs
            logger.warning("Direct extraction failed for %s: %s", file_path.name, exc)
            return None

    def _parse_simple(
        self,
        file_path: Path,
        extension: str,
        extraction: ExtractionResult | None = None,
    ) -> ParsingResult:
        start = time.monotonic()
        extraction = extraction or self._extract(file_path, extension)
        if extraction is None or not extraction.text.strip():
            logger.info("No text extracted from %s → falling back to OCR.", file_path.name)
            return self._parse_ocr(file_path, extension)
        return self._text_result(extraction, start)

    @staticmethod
    def _text_result(extraction: ExtractionResult, start: float) -> ParsingResult:
        text = extraction.text
        metadata: dict[str, Any] = dict(extraction.metadata)
        metadata.update(
            {
                "char_count": len(text),
                "processing_time_ms": int((time.monotonic() - start) * 1000),
                "parsing_status": ParsingStatus.COMPLETE.value,
                "parsing_mode": ParsingMode.SIMPLE.value,
            }
        )
        return ParsingResult(
            text=text,
            metadata=metadata,
            parsing_method=METHOD_TEXT,
            quality_score=text_quality_score(text),
        )

    # ═══════════════════════════════════════════════════════════════════
    # AUTO
    # ═══════════════════════════════════════════════════════════════════

    def _parse_auto(self, file_path: Path, extension: str) -> ParsingResult:
        if extension != "pdf":
            logger.info("AUTO mode: .%s is not a PDF → SIMPLE.", extension)
            result = self._parse_simple(file_path, extension)
            result.metadata["parsing_mode"] = (
                "AUTO->SIMPLE" if result.parsing_method == METHOD_TEXT else "AUTO->OCR"
            )
            return result

        extraction: ExtractionResult | None = None
        has_table = False
        try:
            extraction = extract_text(file_path, extension, self.extractors)
            text = extraction.text or ""
            if len(text) < self.settings.scanned_text_threshold:
                detected = "scan_document"
                logger.info("AUTO: %s looks scanned (%d chars) → OCR.", file_path.name, len(text))
            else:
                has_table = self._detect_tables(file_path)
                high_quality, reason = validate_extracted_text(text)
                if has_table or not high_quality:
                    detected = "complex_document"
                    logger.info(
                        "AUTO: %s is complex (tables=%s, quality=%s) → OCR.",
                        file_path.name, has_table, reason,
                    )
                else:
                    detected = "text_document"
                    logger.info("AUTO: %s is plain high-quality text → SIMPLE.", file_path.name)
        except Exception as exc:  # deciding must never fail the request
            detected = "fallback"
            logger.warning("AUTO detection failed for %s: %s → OCR.", file_path.name, exc)

        if detected == "text_document":
            result = self._parse_simple(file_path, extension, extraction=extraction)
        else:
            result = self._parse_ocr(file_path, extension)

        result.metadata["auto_detected_type"] = detected
        result.metadata["has_table"] = has_table
        result.metadata["parsing_mode"] = (
            "AUTO->SIMPLE" if result.parsing_method == METHOD_TEXT else "AUTO->OCR"
        )
        return result

    def _detect_tables(self, file_path: Path) -> bool:
        if not self.settings.enable_table_detection:
            return False
        try:
            detection = detect_tables(file_path)
        except Exception as exc:  # a broken text layer only disables the table signal
            logger.warning("Table detection failed for %s: %s", file_path.name, exc)
            return False
        return detection.has_table

    # ═══════════════════════════════════════════════════════════════════
    # OCR
    # ═══════════════════════════════════════════════════════════════════

    def _parse_ocr(self, file_path: Path, extension: str) -> ParsingResult:
        if extension in IMAGE_EXTENSIONS:
            return self._ocr_image(file_path)
        if extension != "pdf":
            raise ParsingError(f"OCR is not supported for .{extension} files")
        return self._ocr_pdf(file_path)

    def _ocr_image(self, file_path: Path) -> ParsingResult:
        start = time.monotonic()
        try:
            document = self.facade.recognize(file_path.read_bytes())
        except OcrUnavailableError:
            raise
        except OcrError as exc:
            raise ParsingError(f"OCR failed for {file_path.name}: {exc}") from exc

        elapsed = int((time.monotonic() - start) * 1000)
        structured = StructuredDocument(
            pages=[assign_page_number(document, 1)],
            model_info=self.facade.model_info,
            processing_time_ms=elapsed,
        )
        metadata = self._document_metadata(structured, original_text="")
        metadata.update(
            {
                "total_pages": 1,
                "failed_pages": 0,
                "failed_page_numbers": [],
                "parsing_status": ParsingStatus.COMPLETE.value,
                "parsing_mode": ParsingMode.OCR.value,
            }
        )
        return ParsingResult(
            text=structured.to_markdown(self.settings.confidence_threshold),
            structured_document=structured,
            metadata=metadata,
            parsing_method=METHOD_OCR_IMAGE,
            quality_score=ocr_quality_score(structured),
        )

    def _ocr_pdf(self, file_path: Path) -> ParsingResult:
        start = time.monotonic()
        key = DocumentFingerprint.of(file_path).key
        try:
            total_pages = page_count(file_path)
        except (RuntimeError, OSError, ValueError) as exc:
            raise ParsingError(f"Cannot open {file_path.name}: {exc}") from exc
        if total_pages == 0:
            raise ParsingError(f"{file_path.name} has no pages")

        if self.cache is not None and self.cache.is_parsing_complete(key):
            pages = self.cache.successful_pages(key)
            logger.info("All %d pages of %s served from cache.", len(pages), file_path.name)
            return self._build_ocr_result(
                file_path, key, pages, failed=[], total_pages=total_pages,
                start=start, method=METHOD_OCR_CACHED, used_cache=True,
            )

        rendered = render_pdf_pages(file_path, self.settings.dpi)
        if not rendered:
            raise ParsingError(f"No page of {file_path.name} could be rendered")

        schedule = self.scheduler.run(rendered, key, total_pages=total_pages, source=file_path.name)
        failed = self._failed_pages(schedule, total_pages)
        return self._build_ocr_result(
            file_path, key, schedule.pages, failed=failed, total_pages=total_pages,
            start=start, method=METHOD_OCR, used_cache=schedule.cached_page_count > 0,
        )

    @staticmethod
    def _failed_pages(schedule: ScheduleResult, total_pages: int) -> list[int]:
        """Scheduler failures plus pages that never rendered and are not cached."""
        have = {p.page_no for p in schedule.pages}
        missing = {n for n in range(1, total_pages + 1) if n not in have}
        return sorted(missing | set(schedule.failed_pages))

    def _build_ocr_result(
        self,
        file_path: Path,
        key: str,
        pages: list[Page],
        *,
        failed: list[int],
        total_pages: int,
        start: float,
        method: str,
        used_cache: bool,
    ) -> ParsingResult:
        document = StructuredDocument(
            pages=pages,
            model_info=self.facade.model_info,
            processing_time_ms=int((time.monotonic() - start) * 1000),
        )
        if len(document.pages) > 1:
            document = self.merger.process_document(document)

        status = ParsingStatus.PARTIAL if failed else ParsingStatus.COMPLETE
        metadata = self._document_metadata(document, original_text=self._original_text(file_path))
        metadata.update(
            {
                "total_pages": total_pages,
                "used_cache": used_cache,
                "failed_pages": len(failed),
                "failed_page_numbers": failed,
                "document_key": key,
                "cache_progress": self.cache.progress_summary(key) if self.cache is not None else "",
                "parsing_status": status.value,
                "parsing_mode": ParsingMode.OCR.value,
            }
        )
        if method == METHOD_OCR_CACHED:
            metadata["from_cache"] = True
        if failed:
            logger.warning(
                "%s parsed PARTIALLY: %d/%d pages, failed %s.",
                file_path.name, len(document.pages), total_pages, failed,
            )
        else:
            logger.info(
                "%s parsed: %d pages, %d elements in %dms.",
                file_path.name, len(document.pages), metadata["element_count"],
                metadata["processing_time_ms"],
            )

        return ParsingResult(
            text=document.to_markdown(self.settings.confidence_threshold),
            structured_document=document,
            metadata=metadata,
            parsing_method=method,
            quality_score=ocr_quality_score(document),
        )

    def _original_text(self, file_path: Path) -> str:
        """Raw text layer, the baseline for compression metrics."""
        extraction = self._extract(file_path, "pdf")
        return extraction.text if extraction is not None else ""

    @staticmethod
    def _document_metadata(document: StructuredDocument, original_text: str) -> dict[str, Any]:
        stats = document.stats()
        compression = compression_metrics(original_text, document)
        return {
            "page_count": stats.page_count,
            "element_count": stats.element_count,
            "table_count": stats.table_count,
            "average_confidence": stats.average_confidence,
            "original_tokens": compression.original_tokens,
            "compressed_tokens": compression.compressed_tokens,
            "compression_ratio": compression.compression_ratio,
            "information_retention": compression.information_retention,
            "processing_time_ms": document.processing_time_ms,
            "model_info": document.model_info,
        }


# Module-level state
_parser: HybridDocumentParser | None = None


def get_parser() -> HybridDocumentParser:
    global _parser
    if _parser is None:
        _parser = HybridDocumentParser()
    return _parser


def parse_document(file_path: Path, mode: ParsingMode | str | None = None) -> ParsingResult:
    """Parse one file with the shared parser."""
    return get_parser().parse(file_path, mode=mode)
