"""
Page-level OCR scheduler – the concurrency core of the OCR path.

Given the rendered pages of one document it OCRs every page that has no
cached result, in bounded parallel rounds, and returns whatever succeeded.

Rounds
------
For ``round = 0 … max_page_retries`` while pages are pending:

1. ≤ 2 pending pages (or ``parallel_pages`` ≤ 1) run serially on the
   calling thread.  Otherwise one task per page is submitted to a thread
   pool (size ≥ max(parallel_pages, CPU count, 4)); at most
   ``parallel_pages`` provider calls of the round run at once.  A round
   that abandons tasks leaves them its pool; the next round starts on a
   fresh one.
2. The round waits at most::

       min(max_total, ceil(pending / P) · per_page · multiplier + buffer)

   where ``per_page`` comes from the ``TimeoutModel`` (dynamic mode) or
   ``page_timeout_seconds``.  Tasks still running at the deadline are
   abandoned: their cancellation event is set (providers check it between
   calls) and anything they produce afterwards is discarded.
3. Each finished task has already written its outcome to the cache:
   a ``PageSuccess`` (page renumbered, element ids prefixed ``p<n>_``,
   duration fed to the timeout model) or a ``PageFailure``.
4. Still-pending pages wait ``(round + 1) · round_backoff_seconds`` and
   go again.

Page failures are values, never exceptions; the caller decides what a
partial result means.  Only "no provider available" is raised.
"""

from __future__ import annotations

import logging
import math
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Callable

from docparse.parsing.cache import ParsingCache
from docparse.parsing.config import ParsingSettings, parsing_settings
from docparse.parsing.ocr import OcrFacade, OcrUnavailableError
from docparse.parsing.pdf_parser import RenderedPage
from docparse.parsing.schemas import Page, StructuredDocument
from docparse.parsing.timeouts import TimeoutModel

logger = logging.getLogger(__name__)

SERIAL_THRESHOLD = 2
MIN_POOL_SIZE = 4


# ── Per-page outcomes ────────────────────────────────────────────────────

@dataclass
class PageSuccess:
    page_no: int
    page: Page
    duration_ms: int


@dataclass
class PageFailure:
    page_no: int
    message: str
    duration_ms: int = 0
    abandoned: bool = False  # finished after its batch deadline


PageOutcome = PageSuccess | PageFailure


@dataclass
class ScheduleResult:
    """Everything the orchestrator needs after the retry loop."""

    pages: list[Page] = field(default_factory=list)  # cached + new, sorted
    new_pages: list[Page] = field(default_factory=list)
    cached_page_count: int = 0
    failed_pages: list[int] = field(default_factory=list)
    failures: dict[int, str] = field(default_factory=dict)
    attempts: dict[int, int] = field(default_factory=dict)
    rounds: int = 0

    @property
    def complete(self) -> bool:
        return not self.failed_pages

    def retry_rounds(self, page_no: int) -> int:
        """How many rounds after the first one OCR'd *page_no*."""
        return max(0, self.attempts.get(page_no, 0) - 1)


def assign_page_number(document: StructuredDocument, page_no: int) -> Page:
    """Collapse a provider's single-page result into ``Page`` *page_no*.

    Element and parent ids get a ``p<page_no>_`` prefix so they stay unique
    across the whole document; elements without an id get one.
    """
    prefix = f"p{page_no}_"
    source = document.pages[0]
    layout = [el for p in document.pages for el in p.layout]
    renamed = []
    for index, element in enumerate(layout, 1):
        element_id = element.element_id or f"e{index}"
        if not element_id.startswith(prefix):
            element_id = prefix + element_id
        parent_id = element.parent_id
        if parent_id and not parent_id.startswith(prefix):
            parent_id = prefix + parent_id
        renamed.append(element.model_copy(update={"element_id": element_id, "parent_id": parent_id}))
    return Page(page_no=page_no, image_size=source.image_size, layout=renamed)


class PageOcrScheduler:
    def __init__(
        self,
        facade: OcrFacade,
        cache: ParsingCache | None,
        timeouts: TimeoutModel,
        settings: ParsingSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.facade = facade
        self.cache = cache
        self.timeouts = timeouts
        self.settings = settings or parsing_settings
        self._sleep = sleep
        self.parallelism = max(1, self.settings.parallel_pages)
        self._pool_size = max(self.parallelism, os.cpu_count() or 1, MIN_POOL_SIZE)
        self._executor = self._new_executor()
        self._record_lock = threading.Lock()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self._pool_size, thread_name_prefix="page-ocr")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> PageOcrScheduler:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ═══════════════════════════════════════════════════════════════════
    # Public entry point
    # ═══════════════════════════════════════════════════════════════════

    def run(
        self,
        pages: list[RenderedPage],
        document_key: str,
        total_pages: int | None = None,
        source: str = "",
    ) -> ScheduleResult:
        images = {p.page_number: p.png_bytes for p in pages}
        total_pages = total_pages or len(images)
        result = ScheduleResult()

        cached: list[Page] = []
        if self.cache is not None:
            self.cache.get_or_create_state(document_key, total_pages, source)
            cached = self.cache.successful_pages(document_key)
        cached_numbers = {p.page_no for p in cached}
        result.cached_page_count = len(cached_numbers & set(images))

        new_pages: dict[int, Page] = {}
        pending = sorted(n for n in images if n not in cached_numbers)
        if pending and not self.facade.is_available():
            raise OcrUnavailableError("No OCR provider available for page OCR")

        if self.settings.enable_dynamic_timeout:
            self.timeouts.reset_window()
        logger.info(
            "OCR scheduling %s: %d pages, %d cached, %d pending.",
            source or document_key[:8], len(images), result.cached_page_count, len(pending),
        )

        max_rounds = self.settings.max_page_retries + 1
        for round_no in range(max_rounds):
            if not pending:
                break
            result.rounds += 1
            if len(pending) <= SERIAL_THRESHOLD or self.parallelism <= 1:
                outcomes = self._run_serial(pending, images, document_key, result)
            else:
                outcomes = self._run_parallel(pending, images, document_key, result, round_no)

            for outcome in outcomes:
                if isinstance(outcome, PageSuccess):
                    new_pages[outcome.page_no] = outcome.page
                    result.failures.pop(outcome.page_no, None)
                elif not outcome.abandoned:
                    result.failures[outcome.page_no] = outcome.message

            before = len(pending)
            pending = [n for n in pending if n not in new_pages]
            logger.info(
                "Round %d/%d: %d succeeded, %d still pending.",
                round_no + 1, max_rounds, before - len(pending), len(pending),
            )
            if pending and round_no + 1 < max_rounds:
                delay = (round_no + 1) * self.settings.round_backoff_seconds
                logger.info("Retrying pages %s in %.1fs.", pending, delay)
                self._sleep(delay)

        for n in pending:
            result.failures.setdefault(n, "timed out")
        result.new_pages = [new_pages[n] for n in sorted(new_pages)]
        result.pages = ParsingCache.merge_pages(cached, result.new_pages)
        result.failed_pages = sorted(pending)
        if result.failed_pages:
            logger.warning(
                "OCR incomplete for %s: pages %s failed after %d rounds.",
                source or document_key[:8], result.failed_pages, result.rounds,
            )
        return result

    # ═══════════════════════════════════════════════════════════════════
    # Rounds
    # ═══════════════════════════════════════════════════════════════════

    def _run_serial(
        self,
        pending: list[int],
        images: dict[int, bytes],
        document_key: str,
        result: ScheduleResult,
    ) -> list[PageOutcome]:
        cancel = threading.Event()
        return [self._process_page(n, images[n], document_key, cancel, None, result) for n in pending]

    def batch_timeout_seconds(self, pending_count: int) -> float:
        effective = max(1, min(self.parallelism, pending_count))
        if self.settings.enable_dynamic_timeout:
            per_page = self.timeouts.calculate_timeout_seconds()
        else:
            per_page = self.settings.page_timeout_seconds
        budget = (
            math.ceil(pending_count / effective) * per_page * self.settings.timeout_multiplier
            + self.settings.timeout_buffer_seconds
        )
        return min(self.settings.max_total_timeout_seconds, budget)

    def _run_parallel(
        self,
        pending: list[int],
        images: dict[int, bytes],
        document_key: str,
        result: ScheduleResult,
        round_no: int,
    ) -> list[PageOutcome]:
        cancel = threading.Event()
        slots = threading.BoundedSemaphore(min(self.parallelism, len(pending)))
        deadline = self.batch_timeout_seconds(len(pending))
        logger.debug(
            "Round %d: %d tasks, deadline %.0fs, suggested parallelism %d (%s).",
            round_no + 1, len(pending), deadline,
            self.timeouts.suggested_parallelism(self.parallelism),
            self.timeouts.network_status_description(),
        )

        futures = {
            self._executor.submit(self._process_page, n, images[n], document_key, cancel, slots, result): n
            for n in pending
        }
        done, not_done = wait(futures, timeout=deadline)

        if not_done:
            with self._record_lock:
                cancel.set()
            for future in not_done:
                future.cancel()
            # abandoned calls keep their workers; later rounds get a fresh pool
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = self._new_executor()
            logger.warning(
                "Batch deadline (%.0fs) reached – abandoning pages %s.",
                deadline, sorted(futures[f] for f in not_done),
            )

        return [f.result() for f in done]

    # ═══════════════════════════════════════════════════════════════════
    # One page
    # ═══════════════════════════════════════════════════════════════════

    def _process_page(
        self,
        page_no: int,
        image: bytes,
        document_key: str,
        cancel: threading.Event,
        slots: threading.Semaphore | None,
        result: ScheduleResult,
    ) -> PageOutcome:
        with slots or nullcontext():
            if cancel.is_set():
                return PageFailure(page_no, "abandoned before start", abandoned=True)
            with self._record_lock:
                result.attempts[page_no] = result.attempts.get(page_no, 0) + 1

            outcome: PageOutcome
            start = time.monotonic()
            try:
                document = self.facade.recognize(image, cancel=cancel)
                if document is None or not document.pages:
                    outcome = PageFailure(page_no, "empty OCR result")
                else:
                    outcome = PageSuccess(page_no, assign_page_number(document, page_no), 0)
            except Exception as exc:  # any failure becomes a PageFailure value
                outcome = PageFailure(page_no, f"{type(exc).__name__}: {exc}")
            outcome.duration_ms = int((time.monotonic() - start) * 1000)

        with self._record_lock:
            if cancel.is_set():
                logger.debug("Page %d finished after its deadline – result discarded.", page_no)
                return PageFailure(page_no, "abandoned after deadline", outcome.duration_ms, abandoned=True)
            self._record(outcome, document_key)
        return outcome

    def _record(self, outcome: PageOutcome, document_key: str) -> None:
        if isinstance(outcome, PageSuccess):
            self.timeouts.record_duration(outcome.duration_ms)
            if self.cache is not None:
                self.cache.record_page_success(document_key, outcome.page_no, outcome.page)
            logger.debug("Page %d OCR'd in %dms.", outcome.page_no, outcome.duration_ms)
        else:
            if self.cache is not None:
                self.cache.record_page_failure(document_key, outcome.page_no, outcome.message)
            logger.warning("Page %d OCR failed: %s", outcome.page_no, outcome.message)
