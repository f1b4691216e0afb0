"""
Per-page OCR result cache.

Large documents rarely OCR cleanly in one pass: a handful of pages time
out or hit a rate limit.  The cache remembers, per document and per page,
either the recognised ``Page`` or the last failure, so that retry rounds
and later re-submissions of the same file only pay for the missing pages.

Keying
------
A document is addressed by a ``DocumentFingerprint`` built from its path,
byte size and modification time; editing or replacing the file yields a
new key and therefore a fresh state.

Lifecycle
---------
- A state is created on first reference and expires 24 h (configurable)
  after its last update; expired states behave as absent.
- A page number is in at most one of ``successful_pages`` /
  ``failed_pages``; a success always evicts the failure record.
- With a ``cache_dir`` every state is also written to
  ``<cache_dir>/<key>.json`` so progress survives a process restart.
  Unreadable files are logged and ignored.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from pydantic import BaseModel, Field, ValidationError

from docparse.parsing.schemas import Page

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 24.0


@dataclass(frozen=True)
class DocumentFingerprint:
    path: str
    size: int
    mtime_ns: int

    @classmethod
    def of(cls, path: Path) -> DocumentFingerprint:
        path = Path(path)
        st = path.stat()
        return cls(path=str(path.resolve()), size=st.st_size, mtime_ns=st.st_mtime_ns)

    @property
    def key(self) -> str:
        raw = f"{self.path}|{self.size}|{self.mtime_ns}"
        return hashlib.md5(raw.encode("utf-8")).hexdigest()


class FailureInfo(BaseModel):
    message: str
    failed_at: float
    retry_count: int = 0  # previous failures of the same page


class ParsingState(BaseModel):
    document_key: str
    source_path: str = ""
    total_pages: int
    successful_pages: dict[int, Page] = Field(default_factory=dict)
    failed_pages: dict[int, FailureInfo] = Field(default_factory=dict)
    created_at: float
    updated_at: float

    def is_complete(self) -> bool:
        return self.total_pages > 0 and len(self.successful_pages) >= self.total_pages

    def progress(self) -> float:
        if self.total_pages <= 0:
            return 0.0
        return len(self.successful_pages) / self.total_pages


@dataclass
class CacheStats:
    total_documents: int = 0
    complete_documents: int = 0
    partial_documents: int = 0
    successful_pages: int = 0
    failed_pages: int = 0


class ParsingCache:
    """Thread-safe store of ``ParsingState`` objects with TTL eviction."""

    def __init__(
        self,
        ttl_hours: float = DEFAULT_TTL_HOURS,
        cache_dir: Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_hours * 3600
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self._clock = clock
        self._lock = threading.RLock()
        self._states: dict[str, ParsingState] = {}
        if self.cache_dir:
            self.cache_dir.mkdir(parents=True, exist_ok=True)

    # ═══════════════════════════════════════════════════════════════════
    # Persistence
    # ═══════════════════════════════════════════════════════════════════

    def _path_for(self, key: str) -> Path | None:
        return self.cache_dir / f"{key}.json" if self.cache_dir else None

    def _load(self, key: str) -> ParsingState | None:
        path = self._path_for(key)
        if path is None or not path.exists():
            return None
        try:
            return ParsingState.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("Ignoring unreadable cache file %s: %s", path.name, exc)
            return None

    def _save(self, state: ParsingState) -> None:
        path = self._path_for(state.document_key)
        if path is None:
            return
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(state.model_dump_json(), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            # the in-memory state stays authoritative for this process
            logger.warning("Could not persist cache entry %s: %s", state.document_key[:8], exc)

    def _delete(self, key: str) -> None:
        path = self._path_for(key)
        if path is not None and path.exists():
            path.unlink()

    # ═══════════════════════════════════════════════════════════════════
    # State access
    # ═══════════════════════════════════════════════════════════════════

    def _is_expired(self, state: ParsingState) -> bool:
        return self._clock() - state.updated_at > self.ttl_seconds

    def get_state(self, key: str) -> ParsingState | None:
        """Live state for *key*, or None when absent or expired."""
        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = self._load(key)
                if state is not None:
                    self._states[key] = state
            if state is None:
                return None
            if self._is_expired(state):
                logger.info("Cache entry %s expired – discarding.", key[:8])
                self._states.pop(key, None)
                self._delete(key)
                return None
            return state

    def get_or_create_state(self, key: str, total_pages: int, source_path: str = "") -> ParsingState:
        with self._lock:
            state = self.get_state(key)
            if state is not None and state.total_pages == total_pages:
                return state
            if state is not None:
                logger.warning(
                    "Cache entry %s page count changed (%d → %d) – resetting.",
                    key[:8], state.total_pages, total_pages,
                )
            now = self._clock()
            state = ParsingState(
                document_key=key,
                source_path=source_path,
                total_pages=total_pages,
                created_at=now,
                updated_at=now,
            )
            self._states[key] = state
            self._save(state)
            return state

    def record_page_success(self, key: str, page_no: int, page: Page) -> None:
        with self._lock:
            state = self.get_state(key)
            if state is None:
                logger.warning("No cache state for %s – page %d result not cached.", key[:8], page_no)
                return
            state.successful_pages[page_no] = page.model_copy(deep=True)
            state.failed_pages.pop(page_no, None)
            state.updated_at = self._clock()
            self._save(state)
        logger.debug("Cached page %d of %s.", page_no, key[:8])

    def record_page_failure(self, key: str, page_no: int, message: str) -> None:
        with self._lock:
            state = self.get_state(key)
            if state is None:
                logger.warning("No cache state for %s – page %d failure not recorded.", key[:8], page_no)
                return
            if page_no in state.successful_pages:
                logger.debug("Page %d of %s already succeeded – failure ignored.", page_no, key[:8])
                return
            previous = state.failed_pages.get(page_no)
            now = self._clock()
            state.failed_pages[page_no] = FailureInfo(
                message=message,
                failed_at=now,
                retry_count=previous.retry_count + 1 if previous else 0,
            )
            state.updated_at = now
            self._save(state)

    # ═══════════════════════════════════════════════════════════════════
    # Queries
    # ═══════════════════════════════════════════════════════════════════

    def successful_pages(self, key: str) -> list[Page]:
        """Deep copies of the cached pages, sorted by page number."""
        with self._lock:
            state = self.get_state(key)
            if state is None:
                return []
            return [
                state.successful_pages[n].model_copy(deep=True)
                for n in sorted(state.successful_pages)
            ]

    def failed_page_numbers(self, key: str) -> list[int]:
        with self._lock:
            state = self.get_state(key)
            return sorted(state.failed_pages) if state else []

    def failure_info(self, key: str, page_no: int) -> FailureInfo | None:
        with self._lock:
            state = self.get_state(key)
            return state.failed_pages.get(page_no) if state else None

    def pending_page_numbers(self, key: str, page_numbers: list[int] | None = None) -> list[int]:
        """Pages without a cached success (all of 1..total when *page_numbers* is None)."""
        with self._lock:
            state = self.get_state(key)
            if state is None:
                return sorted(page_numbers or [])
            candidates = page_numbers if page_numbers is not None else range(1, state.total_pages + 1)
            return sorted(n for n in candidates if n not in state.successful_pages)

    def has_successful_pages(self, key: str) -> bool:
        with self._lock:
            state = self.get_state(key)
            return bool(state and state.successful_pages)

    def is_parsing_complete(self, key: str) -> bool:
        with self._lock:
            state = self.get_state(key)
            return bool(state and state.is_complete())

    def progress_summary(self, key: str) -> str:
        with self._lock:
            state = self.get_state(key)
            if state is None:
                return "no cache entry"
            return (
                f"{len(state.successful_pages)}/{state.total_pages} pages "
                f"({state.progress():.0%}), {len(state.failed_pages)} failed"
            )

    @staticmethod
    def merge_pages(cached: list[Page], new: list[Page]) -> list[Page]:
        """Union by page number; *new* wins on conflict; sorted."""
        by_number = {p.page_no: p for p in cached}
        by_number.update({p.page_no: p for p in new})
        return [by_number[n] for n in sorted(by_number)]

    # ═══════════════════════════════════════════════════════════════════
    # Maintenance
    # ═══════════════════════════════════════════════════════════════════

    def _disk_keys(self) -> list[str]:
        if not self.cache_dir:
            return []
        return [p.stem for p in self.cache_dir.glob("*.json")]

    def clear(self, key: str | None = None) -> None:
        with self._lock:
            keys = [key] if key else list(set(self._states) | set(self._disk_keys()))
            for k in keys:
                self._states.pop(k, None)
                self._delete(k)
        logger.info("Cleared %d cache entr%s.", len(keys), "y" if len(keys) == 1 else "ies")

    def cleanup_expired(self) -> int:
        """Drop every expired state (memory and disk); return how many."""
        removed = 0
        with self._lock:
            for key in set(self._states) | set(self._disk_keys()):
                state = self._states.get(key) or self._load(key)
                if state is None or self._is_expired(state):
                    self._states.pop(key, None)
                    self._delete(key)
                    removed += 1
        if removed:
            logger.info("Removed %d expired cache entries.", removed)
        return removed

    def stats(self) -> CacheStats:
        stats = CacheStats()
        with self._lock:
            for key in set(self._states) | set(self._disk_keys()):
                state = self.get_state(key)
                if state is None:
                    continue
                stats.total_documents += 1
                if state.is_complete():
                    stats.complete_documents += 1
                else:
                    stats.partial_documents += 1
                stats.successful_pages += len(state.successful_pages)
                stats.failed_pages += len(state.failed_pages)
        return stats
