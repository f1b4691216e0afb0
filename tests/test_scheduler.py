"""
Tests for the page OCR scheduler: retry rounds, cache resumption,
renumbering, deadlines and the no-provider fast failure.

Providers are in-process fakes keyed on the page image bytes
(``b"page-<n>"``), so every test runs without a network or a real PDF.

Run: python -m pytest tests/ -v
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from docparse.parsing.ocr import OcrProvider, OcrProviderError


def _rendered(count: int):
    from docparse.parsing.pdf_parser import RenderedPage

    return [RenderedPage(n, f"page-{n}".encode(), 100, 100) for n in range(1, count + 1)]


def _single_page(label: str):
    from docparse.parsing.schemas import LayoutElement, Page, StructuredDocument

    return StructuredDocument(pages=[Page(
        page_no=1,
        image_size=[100, 100],
        layout=[
            LayoutElement(element_id="e1", type="title", text=label, confidence=0.9),
            LayoutElement(element_id="e2", parent_id="e1", type="text", text="body", confidence=0.9),
        ],
    )])


class PageProvider(OcrProvider):
    """Fails page *n* ``failures[n]`` times before succeeding (-1 = always)."""

    name = "fake"
    priority = 10

    def __init__(self, failures=None, slow_pages=()):
        self.failures = dict(failures or {})
        self.slow_pages = set(slow_pages)
        self.calls: dict[int, int] = {}
        self._lock = threading.Lock()

    def recognize(self, image_bytes, cancel=None):
        page_no = int(image_bytes.decode().split("-")[1])
        with self._lock:
            self.calls[page_no] = self.calls.get(page_no, 0) + 1
            attempt = self.calls[page_no]
        if page_no in self.slow_pages:
            cancel.wait(10)
        remaining = self.failures.get(page_no, 0)
        if remaining == -1 or attempt <= remaining:
            raise OcrProviderError(self.name, f"page {page_no} attempt {attempt} failed")
        return _single_page(f"Page {page_no}")


def _scheduler(provider, cache=None, sleeps=None, **overrides):
    from docparse.parsing.config import ParsingSettings
    from docparse.parsing.ocr import OcrFacade
    from docparse.parsing.scheduler import PageOcrScheduler
    from docparse.parsing.timeouts import TimeoutModel

    values = {"parallel_pages": 4, "max_page_retries": 3, "round_backoff_seconds": 2.0}
    values.update(overrides)
    settings = ParsingSettings(**values)
    facade = OcrFacade([provider], max_retries=1, retry_delay_ms=0, sleep=lambda s: None)
    sleep = sleeps.append if sleeps is not None else (lambda s: None)
    return PageOcrScheduler(facade, cache, TimeoutModel(), settings=settings, sleep=sleep)


# ═══════════════════════════════════════════════════════════════════════════
# Renumbering
# ═══════════════════════════════════════════════════════════════════════════

class TestAssignPageNumber:
    def test_ids_are_namespaced(self):
        from docparse.parsing.scheduler import assign_page_number

        page = assign_page_number(_single_page("x"), 7)
        assert page.page_no == 7
        assert [e.element_id for e in page.layout] == ["p7_e1", "p7_e2"]
        assert page.layout[1].parent_id == "p7_e1"

    def test_missing_ids_are_generated(self):
        from docparse.parsing.scheduler import assign_page_number
        from docparse.parsing.schemas import LayoutElement, Page, StructuredDocument

        doc = StructuredDocument(pages=[Page(layout=[LayoutElement(text="a"), LayoutElement(text="b")])])
        assert [e.element_id for e in assign_page_number(doc, 2).layout] == ["p2_e1", "p2_e2"]

    def test_already_prefixed_ids_are_kept(self):
        from docparse.parsing.scheduler import assign_page_number
        from docparse.parsing.schemas import LayoutElement, Page, StructuredDocument

        doc = StructuredDocument(pages=[Page(layout=[LayoutElement(element_id="p3_e1", text="a")])])
        assert assign_page_number(doc, 3).layout[0].element_id == "p3_e1"


# ═══════════════════════════════════════════════════════════════════════════
# Retry rounds
# ═══════════════════════════════════════════════════════════════════════════

class TestScheduler:
    def test_all_pages_succeed_in_one_round(self):
        from docparse.parsing.cache import ParsingCache

        provider = PageProvider()
        cache = ParsingCache()
        with _scheduler(provider, cache) as scheduler:
            result = scheduler.run(_rendered(5), "doc", source="report.pdf")

        assert result.complete
        assert result.rounds == 1
        assert [p.page_no for p in result.pages] == [1, 2, 3, 4, 5]
        assert cache.is_parsing_complete("doc")

    def test_page_recovers_after_two_failed_rounds(self):
        from docparse.parsing.cache import ParsingCache

        provider = PageProvider(failures={3: 2})
        sleeps: list[float] = []
        with _scheduler(provider, ParsingCache(), sleeps=sleeps) as scheduler:
            result = scheduler.run(_rendered(5), "doc")

        assert result.complete
        assert [p.page_no for p in result.pages] == [1, 2, 3, 4, 5]
        assert result.retry_rounds(3) == 2
        assert result.retry_rounds(1) == 0
        assert provider.calls == {1: 1, 2: 1, 3: 3, 4: 1, 5: 1}
        assert sleeps == [2.0, 4.0]
        assert result.pages[2].layout[0].element_id == "p3_e1"

    def test_staggered_failures_converge_within_retry_budget(self):
        provider = PageProvider(failures={2: 1, 4: 2, 5: 3})
        with _scheduler(provider, max_page_retries=3) as scheduler:
            result = scheduler.run(_rendered(5), "doc")
        assert result.complete
        assert result.rounds == 4

    def test_persistent_failure_is_partial_not_an_exception(self):
        from docparse.parsing.cache import ParsingCache

        provider = PageProvider(failures={2: -1})
        cache = ParsingCache()
        with _scheduler(provider, cache, max_page_retries=1) as scheduler:
            result = scheduler.run(_rendered(4), "doc")

        assert not result.complete
        assert result.failed_pages == [2]
        assert result.failures[2].startswith("OcrError")
        assert [p.page_no for p in result.pages] == [1, 3, 4]
        assert provider.calls[2] == 2
        assert cache.failed_page_numbers("doc") == [2]
        assert cache.failure_info("doc", 2).retry_count == 1

    def test_small_batches_run_serially(self):
        provider = PageProvider()
        with _scheduler(provider) as scheduler:
            result = scheduler.run(_rendered(2), "doc")
        assert result.complete
        assert result.rounds == 1


# ═══════════════════════════════════════════════════════════════════════════
# Cache resumption
# ═══════════════════════════════════════════════════════════════════════════

class TestSchedulerCache:
    def test_fully_cached_document_makes_no_provider_calls(self):
        from docparse.parsing.cache import ParsingCache

        cache = ParsingCache()
        with _scheduler(PageProvider(), cache) as scheduler:
            first = scheduler.run(_rendered(3), "doc")

        provider = MagicMock(spec=OcrProvider)
        provider.name = "mock"
        provider.priority = 10
        provider.is_available.return_value = True
        with _scheduler(provider, cache) as scheduler:
            second = scheduler.run(_rendered(3), "doc")

        provider.recognize.assert_not_called()
        assert second.cached_page_count == 3
        assert second.new_pages == []
        assert [p.model_dump() for p in second.pages] == [p.model_dump() for p in first.pages]

    def test_only_missing_pages_are_ocred(self):
        from docparse.parsing.cache import ParsingCache

        cache = ParsingCache()
        with _scheduler(PageProvider(failures={2: -1}), cache, max_page_retries=0) as scheduler:
            scheduler.run(_rendered(3), "doc")

        provider = PageProvider()
        with _scheduler(provider, cache) as scheduler:
            result = scheduler.run(_rendered(3), "doc")

        assert provider.calls == {2: 1}
        assert result.complete
        assert result.cached_page_count == 2
        assert cache.failed_page_numbers("doc") == []

    def test_no_provider_fails_fast(self):
        from docparse.parsing.ocr import OcrUnavailableError

        provider = PageProvider()
        provider.is_available = lambda: False
        with _scheduler(provider) as scheduler:
            with pytest.raises(OcrUnavailableError):
                scheduler.run(_rendered(3), "doc")
        assert provider.calls == {}


# ═══════════════════════════════════════════════════════════════════════════
# Deadlines
# ═══════════════════════════════════════════════════════════════════════════

class TestSchedulerDeadline:
    def test_batch_timeout_formula(self):
        with _scheduler(
            PageProvider(),
            enable_dynamic_timeout=False,
            page_timeout_seconds=60,
            timeout_multiplier=3.0,
            timeout_buffer_seconds=120,
            max_total_timeout_seconds=3600,
        ) as scheduler:
            # ceil(10 / 4) · 60 · 3 + 120
            assert scheduler.batch_timeout_seconds(10) == 660
            assert scheduler.batch_timeout_seconds(100) == 3600

    def test_late_page_is_abandoned_and_discarded(self):
        from docparse.parsing.cache import ParsingCache

        provider = PageProvider(slow_pages={2})
        cache = ParsingCache()
        with _scheduler(
            provider,
            cache,
            max_page_retries=0,
            enable_dynamic_timeout=False,
            page_timeout_seconds=0,
            timeout_buffer_seconds=1,
        ) as scheduler:
            result = scheduler.run(_rendered(3), "doc")

        assert result.failed_pages == [2]
        assert result.failures[2] == "timed out"
        assert [p.page_no for p in result.pages] == [1, 3]
        # the abandoned worker finishes shortly after; its result must not land
        threading.Event().wait(0.2)
        assert 2 not in cache.get_state("doc").successful_pages


class HangOnceProvider(OcrProvider):
    """First call for each page in ``hang_pages`` blocks until released and ignores ``cancel``."""

    name = "hang-once"
    priority = 10

    def __init__(self, hang_pages):
        self.hang_pages = set(hang_pages)
        self.release = threading.Event()
        self.calls: dict[int, int] = {}
        self._lock = threading.Lock()

    def recognize(self, image_bytes, cancel=None):
        page_no = int(image_bytes.decode().split("-")[1])
        with self._lock:
            self.calls[page_no] = self.calls.get(page_no, 0) + 1
            attempt = self.calls[page_no]
        if page_no in self.hang_pages and attempt == 1:
            self.release.wait(10)
        return _single_page(f"Page {page_no}")


class TestAbandonedCalls:
    def _settings(self, **overrides):
        values = {
            "parallel_pages": 3,
            "max_page_retries": 2,
            "enable_dynamic_timeout": False,
            "page_timeout_seconds": 0,
            "timeout_buffer_seconds": 1,
        }
        values.update(overrides)
        return values

    def test_hung_calls_do_not_starve_the_next_round(self):
        provider = HangOnceProvider(hang_pages={1, 2, 3})
        try:
            with _scheduler(provider, **self._settings()) as scheduler:
                result = scheduler.run(_rendered(3), "doc")
        finally:
            provider.release.set()

        assert result.complete
        assert result.rounds == 2
        assert provider.calls == {1: 2, 2: 2, 3: 2}

    def test_serial_retry_after_abandoned_round(self):
        provider = HangOnceProvider(hang_pages={1, 2})
        try:
            with _scheduler(provider, **self._settings()) as scheduler:
                result = scheduler.run(_rendered(3), "doc")
        finally:
            provider.release.set()

        assert result.complete
        assert [p.page_no for p in result.pages] == [1, 2, 3]
        assert provider.calls == {1: 2, 2: 2, 3: 1}
