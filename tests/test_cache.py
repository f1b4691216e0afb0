"""
Tests for the process-wide parsing state: the per-page result cache and
the adaptive timeout model.

Run: python -m pytest tests/ -v
"""

from __future__ import annotations

import pytest


def _page(page_no: int, text: str = "content"):
    from docparse.parsing.schemas import LayoutElement, Page

    return Page(
        page_no=page_no,
        image_size=[1000, 1400],
        layout=[LayoutElement(element_id=f"p{page_no}_e1", type="text", text=text, confidence=0.9)],
    )


class _Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# ═══════════════════════════════════════════════════════════════════════════
# Document fingerprint
# ═══════════════════════════════════════════════════════════════════════════

class TestFingerprint:
    def test_key_is_stable(self, tmp_path):
        from docparse.parsing.cache import DocumentFingerprint

        pdf = tmp_path / "report.pdf"
        pdf.write_bytes(b"%PDF-1.4 original")
        assert DocumentFingerprint.of(pdf).key == DocumentFingerprint.of(pdf).key

    def test_key_changes_with_content_size(self, tmp_path):
        from docparse.parsing.cache import DocumentFingerprint

        pdf = tmp_path / "report.pdf"
        pdf.write_bytes(b"%PDF-1.4 original")
        before = DocumentFingerprint.of(pdf).key
        pdf.write_bytes(b"%PDF-1.4 a longer replacement")
        assert DocumentFingerprint.of(pdf).key != before


# ═══════════════════════════════════════════════════════════════════════════
# Parsing cache
# ═══════════════════════════════════════════════════════════════════════════

class TestParsingCache:
    def test_success_evicts_failure(self):
        from docparse.parsing.cache import ParsingCache

        cache = ParsingCache()
        cache.get_or_create_state("doc", 3)
        cache.record_page_failure("doc", 2, "timeout")
        assert cache.failed_page_numbers("doc") == [2]

        cache.record_page_success("doc", 2, _page(2))
        state = cache.get_state("doc")
        assert 2 in state.successful_pages
        assert 2 not in state.failed_pages

    def test_failure_after_success_is_ignored(self):
        from docparse.parsing.cache import ParsingCache

        cache = ParsingCache()
        cache.get_or_create_state("doc", 3)
        cache.record_page_success("doc", 1, _page(1))
        cache.record_page_failure("doc", 1, "late failure")
        state = cache.get_state("doc")
        assert set(state.successful_pages).isdisjoint(state.failed_pages)
        assert cache.failed_page_numbers("doc") == []

    def test_retry_count_increments(self):
        from docparse.parsing.cache import ParsingCache

        cache = ParsingCache()
        cache.get_or_create_state("doc", 3)
        cache.record_page_failure("doc", 3, "first")
        cache.record_page_failure("doc", 3, "second")
        info = cache.failure_info("doc", 3)
        assert info.message == "second"
        assert info.retry_count == 1

    def test_pending_and_progress(self):
        from docparse.parsing.cache import ParsingCache

        cache = ParsingCache()
        cache.get_or_create_state("doc", 3)
        cache.record_page_success("doc", 2, _page(2))
        assert cache.pending_page_numbers("doc") == [1, 3]
        assert cache.pending_page_numbers("doc", [2, 3]) == [3]
        assert cache.has_successful_pages("doc")
        assert not cache.is_parsing_complete("doc")
        assert cache.progress_summary("doc").startswith("1/3 pages")

        cache.record_page_success("doc", 1, _page(1))
        cache.record_page_success("doc", 3, _page(3))
        assert cache.is_parsing_complete("doc")
        assert [p.page_no for p in cache.successful_pages("doc")] == [1, 2, 3]

    def test_cached_pages_are_copies(self):
        from docparse.parsing.cache import ParsingCache

        cache = ParsingCache()
        cache.get_or_create_state("doc", 1)
        page = _page(1, "original")
        cache.record_page_success("doc", 1, page)
        page.layout[0].text = "mutated"
        cache.successful_pages("doc")[0].layout[0].text = "mutated again"
        assert cache.successful_pages("doc")[0].layout[0].text == "original"

    def test_entry_expires_after_ttl(self):
        from docparse.parsing.cache import ParsingCache

        clock = _Clock()
        cache = ParsingCache(ttl_hours=1, clock=clock)
        cache.get_or_create_state("doc", 2)
        cache.record_page_success("doc", 1, _page(1))

        clock.now += 3599
        assert cache.get_state("doc") is not None
        clock.now += 3601
        assert cache.get_state("doc") is None
        assert cache.successful_pages("doc") == []

    def test_update_extends_ttl(self):
        from docparse.parsing.cache import ParsingCache

        clock = _Clock()
        cache = ParsingCache(ttl_hours=1, clock=clock)
        cache.get_or_create_state("doc", 2)
        clock.now += 3000
        cache.record_page_success("doc", 1, _page(1))
        clock.now += 3000
        assert cache.get_state("doc") is not None

    def test_page_count_change_resets_state(self):
        from docparse.parsing.cache import ParsingCache

        cache = ParsingCache()
        cache.get_or_create_state("doc", 2)
        cache.record_page_success("doc", 1, _page(1))
        state = cache.get_or_create_state("doc", 5)
        assert state.total_pages == 5
        assert state.successful_pages == {}

    def test_state_survives_restart(self, tmp_path):
        from docparse.parsing.cache import ParsingCache

        first = ParsingCache(cache_dir=tmp_path)
        first.get_or_create_state("doc", 2, "report.pdf")
        first.record_page_success("doc", 1, _page(1, "persisted"))
        first.record_page_failure("doc", 2, "rate limited")
        assert (tmp_path / "doc.json").exists()

        second = ParsingCache(cache_dir=tmp_path)
        pages = second.successful_pages("doc")
        assert [p.page_no for p in pages] == [1]
        assert pages[0].layout[0].text == "persisted"
        assert second.failed_page_numbers("doc") == [2]
        assert second.get_state("doc").source_path == "report.pdf"

    def test_invalid_cache_file_is_ignored(self, tmp_path):
        from docparse.parsing.cache import ParsingCache

        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
        cache = ParsingCache(cache_dir=tmp_path)
        assert cache.get_state("broken") is None
        assert cache.stats().total_documents == 0

    def test_merge_pages_prefers_new(self):
        from docparse.parsing.cache import ParsingCache

        merged = ParsingCache.merge_pages(
            [_page(1, "cached"), _page(3, "cached")],
            [_page(2, "new"), _page(3, "new")],
        )
        assert [(p.page_no, p.layout[0].text) for p in merged] == [
            (1, "cached"), (2, "new"), (3, "new"),
        ]

    def test_cleanup_and_stats(self, tmp_path):
        from docparse.parsing.cache import ParsingCache

        clock = _Clock()
        cache = ParsingCache(ttl_hours=1, cache_dir=tmp_path, clock=clock)
        cache.get_or_create_state("old", 1)
        clock.now += 7200
        cache.get_or_create_state("fresh", 2)
        cache.record_page_success("fresh", 1, _page(1))
        cache.record_page_failure("fresh", 2, "boom")

        assert cache.cleanup_expired() == 1
        assert not (tmp_path / "old.json").exists()
        stats = cache.stats()
        assert stats.total_documents == 1
        assert stats.partial_documents == 1
        assert stats.successful_pages == 1
        assert stats.failed_pages == 1

        cache.clear()
        assert cache.stats().total_documents == 0
        assert list(tmp_path.glob("*.json")) == []


# ═══════════════════════════════════════════════════════════════════════════
# Timeout model
# ═══════════════════════════════════════════════════════════════════════════

class TestTimeoutModel:
    def test_default_without_samples(self):
        from docparse.parsing.timeouts import DEFAULT_TIMEOUT_MS, TimeoutModel

        model = TimeoutModel()
        assert model.calculate_timeout() == DEFAULT_TIMEOUT_MS
        assert model.calculate_timeout_seconds() == 60
        assert model.network_status_description().startswith("unknown")

    def test_steady_latency(self):
        from docparse.parsing.timeouts import TimeoutModel

        model = TimeoutModel()
        for ms in (10_000, 12_000, 11_000):
            model.record_duration(ms)
        timeout = model.calculate_timeout()
        assert 15_000 <= timeout <= 40_000
        assert model.average_duration() == 11_000
        assert model.window_max_duration() == 12_000

    def test_clamped_to_floor_and_ceiling(self):
        from docparse.parsing.timeouts import MAX_TIMEOUT_MS, MIN_TIMEOUT_MS, TimeoutModel

        fast = TimeoutModel()
        for _ in range(3):
            fast.record_duration(1_000)
        assert fast.calculate_timeout() == MIN_TIMEOUT_MS

        slow = TimeoutModel()
        for _ in range(3):
            slow.record_duration(200_000)
        assert slow.calculate_timeout() == MAX_TIMEOUT_MS

    def test_window_is_bounded(self):
        from docparse.parsing.timeouts import TimeoutModel

        model = TimeoutModel(window_size=20)
        for ms in range(1, 26):
            model.record_duration(ms * 1000)
        assert model.window_size() == 20
        assert model.average_duration() == sum(range(6, 26)) * 1000 // 20

    def test_non_positive_durations_are_ignored(self):
        from docparse.parsing.timeouts import TimeoutModel

        model = TimeoutModel()
        model.record_duration(0)
        model.record_duration(-5)
        assert model.window_size() == 0
        assert model.stats_summary() == "no samples"

    def test_slow_mode_and_parallelism(self):
        from docparse.parsing.timeouts import TimeoutModel

        model = TimeoutModel()
        for _ in range(3):
            model.record_duration(100_000)
        assert model.is_slow_mode()
        assert model.suggested_parallelism(4) == 2

        fast = TimeoutModel()
        fast.record_duration(5_000)
        assert not fast.is_slow_mode()
        assert fast.suggested_parallelism(4) == 8
        assert fast.suggested_parallelism(6) == 8

    def test_reset_window_keeps_lifetime_counters(self):
        from docparse.parsing.timeouts import TimeoutModel

        model = TimeoutModel()
        model.record_duration(20_000)
        model.reset_window()
        assert model.window_size() == 0
        assert "requests=1" in model.stats_summary()

        model.reset_all()
        assert model.stats_summary() == "no samples"

    def test_estimate_total_time(self):
        from docparse.parsing.timeouts import POST_PROCESSING_MS, TimeoutModel

        model = TimeoutModel()
        model.record_duration(10_000)
        assert model.estimate_total_time(10, 4) == 3 * 10_000 + POST_PROCESSING_MS
