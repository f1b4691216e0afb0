"""
Adaptive per-page OCR timeout.

OCR latency of a remote vision model swings with network and provider
load.  A fixed per-page timeout is either too tight on a slow day or
wastes minutes waiting on a hung request on a good one, so the scheduler
asks this model instead.

The model keeps a sliding window of the last 20 page durations and
derives::

    timeout = clamp(mean · 2.5 + 2 · stddev + 5 s, 15 s, 300 s)

Lifetime counters (min / max / count / sum) are kept alongside for
reporting.  All methods are thread-safe: page workers record while the
scheduler thread reads.
"""

from __future__ import annotations

import logging
import math
import statistics
import threading
from collections import deque

logger = logging.getLogger(__name__)

WINDOW_SIZE = 20
DEFAULT_TIMEOUT_MS = 60_000
MIN_TIMEOUT_MS = 15_000
MAX_TIMEOUT_MS = 300_000
TIMEOUT_FACTOR = 2.5
SAFETY_MARGIN_MS = 5_000
SLOW_MODE_FACTOR = 1.5
FAST_AVERAGE_MS = 15_000
MAX_SUGGESTED_PARALLELISM = 8
POST_PROCESSING_MS = 10_000


class TimeoutModel:
    """Sliding-window latency statistics for one process."""

    def __init__(self, window_size: int = WINDOW_SIZE) -> None:
        self._lock = threading.Lock()
        self._window: deque[int] = deque(maxlen=window_size)
        self._count = 0
        self._sum = 0
        self._min: int | None = None
        self._max = 0

    # ── Recording ────────────────────────────────────────────────────────

    def record_duration(self, duration_ms: int) -> None:
        if duration_ms <= 0:
            return
        duration_ms = int(duration_ms)
        with self._lock:
            self._window.append(duration_ms)
            self._count += 1
            self._sum += duration_ms
            self._min = duration_ms if self._min is None else min(self._min, duration_ms)
            self._max = max(self._max, duration_ms)
        logger.debug("Recorded page duration %dms (window=%d).", duration_ms, len(self._window))

    def reset_window(self) -> None:
        with self._lock:
            self._window.clear()
        logger.debug("Timeout window reset.")

    def reset_all(self) -> None:
        with self._lock:
            self._window.clear()
            self._count = 0
            self._sum = 0
            self._min = None
            self._max = 0
        logger.info("Timeout statistics reset.")

    # ── Derived values ───────────────────────────────────────────────────

    def _window_stats(self) -> tuple[float, float, int]:
        """(mean, population stddev, size) of the current window."""
        with self._lock:
            values = list(self._window)
        if not values:
            return float(DEFAULT_TIMEOUT_MS), 0.0, 0
        return statistics.fmean(values), statistics.pstdev(values), len(values)

    def window_size(self) -> int:
        with self._lock:
            return len(self._window)

    def calculate_timeout(self) -> int:
        """Recommended per-page timeout in milliseconds."""
        mean, stddev, size = self._window_stats()
        if size == 0:
            return DEFAULT_TIMEOUT_MS
        raw = int(mean * TIMEOUT_FACTOR + 2 * stddev + SAFETY_MARGIN_MS)
        timeout = max(MIN_TIMEOUT_MS, min(MAX_TIMEOUT_MS, raw))
        logger.debug(
            "Dynamic timeout: mean=%dms stddev=%dms raw=%dms final=%dms",
            mean, stddev, raw, timeout,
        )
        return timeout

    def calculate_timeout_seconds(self) -> int:
        return math.ceil(self.calculate_timeout() / 1000)

    def average_duration(self) -> int:
        return int(self._window_stats()[0])

    def window_max_duration(self) -> int:
        with self._lock:
            return max(self._window, default=DEFAULT_TIMEOUT_MS)

    def is_slow_mode(self) -> bool:
        mean, _, size = self._window_stats()
        return size >= 3 and mean > DEFAULT_TIMEOUT_MS * SLOW_MODE_FACTOR

    def network_status_description(self) -> str:
        mean, _, size = self._window_stats()
        if size == 0:
            return "unknown (no samples)"
        if mean < 10_000:
            return "excellent (<10s)"
        if mean < 30_000:
            return "good (10-30s)"
        if mean < 60_000:
            return "fair (30-60s)"
        if mean < 120_000:
            return "slow (60-120s)"
        return "very slow (>120s)"

    def estimate_total_time(self, page_count: int, parallelism: int) -> int:
        """Rough wall-clock estimate (ms) for *page_count* pages."""
        batches = math.ceil(page_count / max(1, parallelism))
        return self.average_duration() * batches + POST_PROCESSING_MS

    def suggested_parallelism(self, default: int) -> int:
        mean, _, size = self._window_stats()
        if size == 0:
            return default
        if self.is_slow_mode():
            return max(1, default // 2)
        if mean < FAST_AVERAGE_MS:
            return min(default * 2, MAX_SUGGESTED_PARALLELISM)
        return default

    def stats_summary(self) -> str:
        with self._lock:
            count, total = self._count, self._sum
            lo, hi = self._min, self._max
        if count == 0:
            return "no samples"
        mean, stddev, _ = self._window_stats()
        return (
            f"requests={count}, lifetime_avg={total // count}ms, "
            f"window_avg={int(mean)}ms, window_stddev={int(stddev)}ms, "
            f"min={lo or 0}ms, max={hi}ms, "
            f"timeout={self.calculate_timeout()}ms, network={self.network_status_description()}"
        )
