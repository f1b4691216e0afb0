"""
Tests for the HybridDocumentParser mode selection and OCR assembly.

The renderer, page counter, text extractor and table detector are patched
at the pipeline module, so the tests need neither real PDFs nor a model.

Run: python -m pytest tests/ -v
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

import pytest

from docparse.parsing.ocr import OcrProvider, OcrProviderError

GOOD_TEXT = "The quarterly report shows steady growth in revenue across all regions. " * 3


class PageProvider(OcrProvider):
    """Returns one title per page, keyed on ``b"page-<n>"`` image bytes."""

    name = "fake"
    priority = 10

    def __init__(self, failing_pages=(), available=True):
        self.failing_pages = set(failing_pages)
        self.available = available
        self.calls: dict[int, int] = {}
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return self.available

    def recognize(self, image_bytes, cancel=None):
        from docparse.parsing.schemas import LayoutElement, Page, StructuredDocument

        page_no = int(image_bytes.decode().split("-")[1])
        with self._lock:
            self.calls[page_no] = self.calls.get(page_no, 0) + 1
        if page_no in self.failing_pages:
            raise OcrProviderError(self.name, f"page {page_no} failed")
        return StructuredDocument(pages=[Page(
            page_no=1,
            image_size=[1000, 1000],
            layout=[
                LayoutElement(element_id="e1", type="title", text=f"Page {page_no}", confidence=0.9),
                LayoutElement(element_id="e2", type="text", text="Body text.", confidence=0.8),
            ],
        )])


def _rendered(*numbers):
    from docparse.parsing.pdf_parser import RenderedPage

    return [RenderedPage(n, f"page-{n}".encode(), 1000, 1000) for n in numbers]


def _extraction(text, **metadata):
    from docparse.parsing.extractors import ExtractionResult

    return ExtractionResult(text=text, metadata=metadata)


@pytest.fixture
def make_parser():
    from docparse.parsing.config import ParsingSettings
    from docparse.parsing.ocr import OcrFacade
    from docparse.parsing.pipeline import HybridDocumentParser

    created = []

    def factory(provider, **overrides):
        values = {
            "enable_cache": False,
            "max_page_retries": 0,
            "round_backoff_seconds": 0.0,
            "parallel_pages": 2,
        }
        values.update(overrides)
        facade = OcrFacade([provider], max_retries=1, retry_delay_ms=0, sleep=lambda s: None)
        parser = HybridDocumentParser(settings=ParsingSettings(**values), facade=facade)
        created.append(parser)
        return parser

    yield factory
    for parser in created:
        parser.close()


@pytest.fixture
def pdf(tmp_path):
    path = tmp_path / "report.pdf"
    path.write_bytes(b"%PDF-1.4 placeholder")
    return path


# ═══════════════════════════════════════════════════════════════════════════
# Mode selection
# ═══════════════════════════════════════════════════════════════════════════

class TestModeSelection:
    def test_default_mode(self, make_parser):
        from docparse.parsing.schemas import ParsingMode

        assert make_parser(PageProvider()).default_mode() is ParsingMode.AUTO
        assert make_parser(PageProvider(), force_ocr=True).default_mode() is ParsingMode.OCR
        assert make_parser(PageProvider(), enable_hybrid_parser=False).default_mode() is ParsingMode.OCR

    def test_auto_high_quality_text_goes_simple(self, make_parser, pdf):
        from docparse.parsing.text_quality import text_quality_score

        provider = PageProvider()
        parser = make_parser(provider)
        with patch("docparse.parsing.pipeline.extract_text", return_value=_extraction(GOOD_TEXT, page_count=1)) as extract, \
                patch("docparse.parsing.pipeline.detect_tables", return_value=MagicMock(has_table=False)):
            result = parser.parse(pdf)

        assert result.parsing_method == "text_extraction"
        assert result.metadata["parsing_mode"] == "AUTO->SIMPLE"
        assert result.metadata["auto_detected_type"] == "text_document"
        assert result.metadata["has_table"] is False
        assert result.metadata["page_count"] == 1
        assert result.text == GOOD_TEXT
        assert result.quality_score == pytest.approx(text_quality_score(GOOD_TEXT))
        assert extract.call_count == 1
        assert provider.calls == {}

    def test_auto_short_text_is_scanned(self, make_parser, pdf):
        provider = PageProvider()
        parser = make_parser(provider)
        with patch("docparse.parsing.pipeline.extract_text", return_value=_extraction("x" * 40)), \
                patch("docparse.parsing.pipeline.detect_tables") as detect, \
                patch("docparse.parsing.pipeline.page_count", return_value=2), \
                patch("docparse.parsing.pipeline.render_pdf_pages", return_value=_rendered(1, 2)):
            result = parser.parse(pdf, mode="auto")

        detect.assert_not_called()
        assert result.parsing_method == "ocr"
        assert result.metadata["parsing_mode"] == "AUTO->OCR"
        assert result.metadata["auto_detected_type"] == "scan_document"
        assert result.metadata["parsing_status"] == "COMPLETE"
        assert provider.calls == {1: 1, 2: 1}

    def test_auto_tables_go_to_ocr(self, make_parser, pdf):
        parser = make_parser(PageProvider())
        with patch("docparse.parsing.pipeline.extract_text", return_value=_extraction(GOOD_TEXT)), \
                patch("docparse.parsing.pipeline.detect_tables", return_value=MagicMock(has_table=True)), \
                patch("docparse.parsing.pipeline.page_count", return_value=1), \
                patch("docparse.parsing.pipeline.render_pdf_pages", return_value=_rendered(1)):
            result = parser.parse(pdf)

        assert result.metadata["parsing_mode"] == "AUTO->OCR"
        assert result.metadata["auto_detected_type"] == "complex_document"
        assert result.metadata["has_table"] is True

    def test_auto_table_detection_can_be_disabled(self, make_parser, pdf):
        parser = make_parser(PageProvider(), enable_table_detection=False)
        with patch("docparse.parsing.pipeline.extract_text", return_value=_extraction(GOOD_TEXT)), \
                patch("docparse.parsing.pipeline.detect_tables") as detect:
            result = parser.parse(pdf)

        detect.assert_not_called()
        assert result.metadata["parsing_mode"] == "AUTO->SIMPLE"

    def test_auto_detection_error_falls_back_to_ocr(self, make_parser, pdf):
        parser = make_parser(PageProvider())
        with patch(
            "docparse.parsing.pipeline.extract_text",
            side_effect=[RuntimeError("corrupt xref"), _extraction("")],
        ), \
                patch("docparse.parsing.pipeline.page_count", return_value=1), \
                patch("docparse.parsing.pipeline.render_pdf_pages", return_value=_rendered(1)):
            result = parser.parse(pdf)

        assert result.metadata["auto_detected_type"] == "fallback"
        assert result.metadata["parsing_mode"] == "AUTO->OCR"

    def test_auto_non_pdf_degrades_to_simple(self, make_parser, tmp_path):
        notes = tmp_path / "notes.txt"
        notes.write_text(GOOD_TEXT, encoding="utf-8")
        parser = make_parser(PageProvider())
        with patch("docparse.parsing.pipeline.detect_tables") as detect:
            result = parser.parse(notes, mode="AUTO")

        detect.assert_not_called()
        assert result.parsing_method == "text_extraction"
        assert result.metadata["parsing_mode"] == "AUTO->SIMPLE"
        assert result.text == GOOD_TEXT

    def test_simple_empty_text_falls_back_to_ocr(self, make_parser, pdf):
        parser = make_parser(PageProvider())
        with patch("docparse.parsing.pipeline.extract_text", return_value=_extraction("   ")), \
                patch("docparse.parsing.pipeline.page_count", return_value=1), \
                patch("docparse.parsing.pipeline.render_pdf_pages", return_value=_rendered(1)):
            result = parser.parse(pdf, mode="simple")

        assert result.parsing_method == "ocr"
        assert result.metadata["parsing_mode"] == "OCR"


# ═══════════════════════════════════════════════════════════════════════════
# OCR mode
# ═══════════════════════════════════════════════════════════════════════════

class TestOcrMode:
    def test_metadata_and_markdown(self, make_parser, pdf):
        parser = make_parser(PageProvider())
        with patch("docparse.parsing.pipeline.extract_text", return_value=_extraction(GOOD_TEXT)), \
                patch("docparse.parsing.pipeline.page_count", return_value=2), \
                patch("docparse.parsing.pipeline.render_pdf_pages", return_value=_rendered(1, 2)):
            result = parser.parse(pdf, mode="ocr")

        meta = result.metadata
        for key in (
            "page_count", "total_pages", "element_count", "table_count", "average_confidence",
            "compression_ratio", "original_tokens", "compressed_tokens", "processing_time_ms",
            "used_cache", "failed_pages", "failed_page_numbers", "document_key",
            "cache_progress", "parsing_status", "parsing_mode",
        ):
            assert key in meta, key
        assert meta["page_count"] == 2
        assert meta["element_count"] == 4
        assert meta["failed_pages"] == 0
        assert meta["used_cache"] is False
        assert result.text.startswith("# Page 1")
        assert "# Page 2" in result.text
        assert result.structured_document.pages[1].layout[0].element_id == "p2_e1"
        assert 0.0 < result.quality_score <= 1.0

    def test_confidence_threshold_filters_markdown(self, make_parser, pdf):
        parser = make_parser(PageProvider(), confidence_threshold=0.85)
        with patch("docparse.parsing.pipeline.extract_text", return_value=_extraction("")), \
                patch("docparse.parsing.pipeline.page_count", return_value=1), \
                patch("docparse.parsing.pipeline.render_pdf_pages", return_value=_rendered(1)):
            result = parser.parse(pdf, mode="ocr")

        assert result.text == "# Page 1"
        assert "Body text." in result.structured_document.to_markdown()

    def test_failed_page_is_partial(self, make_parser, pdf):
        from docparse.parsing.schemas import ParsingStatus

        parser = make_parser(PageProvider(failing_pages={2}), max_page_retries=1)
        with patch("docparse.parsing.pipeline.extract_text", return_value=_extraction("")), \
                patch("docparse.parsing.pipeline.page_count", return_value=3), \
                patch("docparse.parsing.pipeline.render_pdf_pages", return_value=_rendered(1, 2, 3)):
            result = parser.parse(pdf, mode="ocr")

        assert result.parsing_status is ParsingStatus.PARTIAL
        assert result.metadata["failed_page_numbers"] == [2]
        assert result.metadata["failed_pages"] == 1
        assert [p.page_no for p in result.structured_document.pages] == [1, 3]

    def test_unrendered_page_is_reported_failed(self, make_parser, pdf):
        provider = PageProvider()
        parser = make_parser(provider)
        with patch("docparse.parsing.pipeline.extract_text", return_value=_extraction("")), \
                patch("docparse.parsing.pipeline.page_count", return_value=3), \
                patch("docparse.parsing.pipeline.render_pdf_pages", return_value=_rendered(1, 3)):
            result = parser.parse(pdf, mode="ocr")

        assert result.metadata["parsing_status"] == "PARTIAL"
        assert result.metadata["failed_page_numbers"] == [2]
        assert 2 not in provider.calls

    def test_nothing_rendered_raises(self, make_parser, pdf):
        from docparse.parsing.pipeline import ParsingError

        parser = make_parser(PageProvider())
        with patch("docparse.parsing.pipeline.page_count", return_value=2), \
                patch("docparse.parsing.pipeline.render_pdf_pages", return_value=[]):
            with pytest.raises(ParsingError):
                parser.parse(pdf, mode="ocr")

    def test_no_provider_raises(self, make_parser, pdf):
        from docparse.parsing.ocr import OcrUnavailableError

        parser = make_parser(PageProvider(available=False))
        with patch("docparse.parsing.pipeline.page_count", return_value=1), \
                patch("docparse.parsing.pipeline.render_pdf_pages", return_value=_rendered(1)):
            with pytest.raises(OcrUnavailableError):
                parser.parse(pdf, mode="ocr")

    def test_second_run_is_served_from_cache(self, make_parser, pdf, tmp_path):
        provider = PageProvider()
        parser = make_parser(provider, enable_cache=True, cache_dir=tmp_path / "cache")
        with patch("docparse.parsing.pipeline.extract_text", return_value=_extraction("")), \
                patch("docparse.parsing.pipeline.page_count", return_value=2), \
                patch("docparse.parsing.pipeline.render_pdf_pages", return_value=_rendered(1, 2)) as render:
            first = parser.parse(pdf, mode="ocr")
            second = parser.parse(pdf, mode="ocr")

        assert first.parsing_method == "ocr"
        assert second.parsing_method == "ocr_cached"
        assert second.metadata["from_cache"] is True
        assert second.metadata["used_cache"] is True
        assert render.call_count == 1
        assert provider.calls == {1: 1, 2: 1}
        assert second.text == first.text

    def test_partial_run_resumes_from_cache(self, make_parser, pdf, tmp_path):
        cache_dir = tmp_path / "cache"
        flaky = PageProvider(failing_pages={2})
        with patch("docparse.parsing.pipeline.extract_text", return_value=_extraction("")), \
                patch("docparse.parsing.pipeline.page_count", return_value=3), \
                patch("docparse.parsing.pipeline.render_pdf_pages", return_value=_rendered(1, 2, 3)):
            first = make_parser(flaky, enable_cache=True, cache_dir=cache_dir).parse(pdf, mode="ocr")
            healthy = PageProvider()
            second = make_parser(healthy, enable_cache=True, cache_dir=cache_dir).parse(pdf, mode="ocr")

        assert first.metadata["parsing_status"] == "PARTIAL"
        assert second.metadata["parsing_status"] == "COMPLETE"
        assert healthy.calls == {2: 1}


# ═══════════════════════════════════════════════════════════════════════════
# Other inputs
# ═══════════════════════════════════════════════════════════════════════════

class TestOtherInputs:
    def test_image_is_ocred_as_one_page(self, make_parser, tmp_path):
        image = tmp_path / "scan.png"
        image.write_bytes(b"page-1")
        parser = make_parser(PageProvider())
        result = parser.parse(image, mode="ocr")

        assert result.parsing_method == "ocr_image"
        assert result.structured_document.pages[0].page_no == 1
        assert result.text.startswith("# Page 1")

    def test_image_ocr_failure_raises(self, make_parser, tmp_path):
        from docparse.parsing.pipeline import ParsingError

        image = tmp_path / "scan.png"
        image.write_bytes(b"page-1")
        parser = make_parser(PageProvider(failing_pages={1}))
        with pytest.raises(ParsingError):
            parser.parse(image, mode="ocr")

    def test_ocr_of_unsupported_format_raises(self, make_parser, tmp_path):
        from docparse.parsing.pipeline import ParsingError

        sheet = tmp_path / "data.xlsx"
        sheet.write_bytes(b"PK")
        with pytest.raises(ParsingError):
            make_parser(PageProvider()).parse(sheet, mode="ocr")

    def test_missing_file_raises(self, make_parser, tmp_path):
        from docparse.parsing.pipeline import ParsingError

        with pytest.raises(ParsingError):
            make_parser(PageProvider()).parse(tmp_path / "missing.pdf")
